"""Queue monitoring and administration endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from contentflow.api.deps import get_runtime
from contentflow.api.schemas import ClearResponse, JobResponse, QueueCountsResponse
from contentflow.jobs.models import JobState, QueueName
from contentflow.runtime import Runtime

router = APIRouter(prefix="/api/v1/queues", tags=["queues"])


def _queue(name: str) -> QueueName:
    try:
        return QueueName(name)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {name}") from None


# ------------------------------------------------------------------
# GET: stats and jobs
# ------------------------------------------------------------------


@router.get("", response_model=dict[str, dict[str, int]])
async def get_stats(runtime: Runtime = Depends(get_runtime)) -> dict[str, dict[str, int]]:
    return runtime.manager.get_stats()


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobResponse:
    job = runtime.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(
        job,
        processing=runtime.tracker.get(job_id),
        history=runtime.store.job_history(job_id),
    )


@router.get("/{queue}", response_model=QueueCountsResponse)
async def get_queue(queue: str, runtime: Runtime = Depends(get_runtime)) -> QueueCountsResponse:
    q = _queue(queue)
    counts = runtime.store.get_counts(q)
    return QueueCountsResponse(queue=q.value, paused=counts.paused, **counts.to_dict())


@router.get("/{queue}/jobs", response_model=list[JobResponse])
async def list_jobs(
    queue: str,
    state: JobState | None = None,
    limit: int = 100,
    runtime: Runtime = Depends(get_runtime),
) -> list[JobResponse]:
    jobs = runtime.store.list_jobs(_queue(queue), state=state, limit=limit)
    return [JobResponse.from_job(j) for j in jobs]


# ------------------------------------------------------------------
# POST/DELETE: administration
# ------------------------------------------------------------------


@router.post("/pause-all", status_code=204)
async def pause_all(runtime: Runtime = Depends(get_runtime)) -> None:
    runtime.manager.pause_all()


@router.post("/resume-all", status_code=204)
async def resume_all(runtime: Runtime = Depends(get_runtime)) -> None:
    runtime.manager.resume_all()


@router.post("/{queue}/pause", status_code=204)
async def pause_queue(queue: str, runtime: Runtime = Depends(get_runtime)) -> None:
    runtime.store.pause(_queue(queue))


@router.post("/{queue}/resume", status_code=204)
async def resume_queue(queue: str, runtime: Runtime = Depends(get_runtime)) -> None:
    runtime.store.resume(_queue(queue))


@router.delete("/completed", response_model=ClearResponse)
async def clear_completed(runtime: Runtime = Depends(get_runtime)) -> ClearResponse:
    return ClearResponse(removed=runtime.manager.clear_completed())


@router.delete("/failed", response_model=ClearResponse)
async def clear_failed(runtime: Runtime = Depends(get_runtime)) -> ClearResponse:
    return ClearResponse(removed=runtime.manager.clear_failed())
