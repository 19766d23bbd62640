"""Pipeline control endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from contentflow.api.deps import get_runtime, http_error
from contentflow.api.schemas import (
    GeneratePostsRequest,
    JobCreateResponse,
    JobIdsResponse,
    ReasonRequest,
    RetryStageRequest,
    SchedulePostRequest,
    StartPipelineRequest,
)
from contentflow.errors import ContentFlowError
from contentflow.models.pipeline import BlockingItem, PipelineProgress
from contentflow.models.scheduling import ScheduledPost
from contentflow.runtime import Runtime

router = APIRouter(prefix="/api/v1/pipelines", tags=["pipelines"])


@router.post("", response_model=JobCreateResponse, status_code=201)
async def start_pipeline(
    request: StartPipelineRequest,
    runtime: Runtime = Depends(get_runtime),
) -> JobCreateResponse:
    """Start processing a transcript."""
    try:
        job_id = await runtime.orchestrator.start_pipeline(request.transcript_id)
    except ContentFlowError as e:
        raise http_error(e) from e
    return JobCreateResponse(job_id=job_id, status="queued")


@router.get("/{transcript_id}", response_model=PipelineProgress)
async def get_progress(
    transcript_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> PipelineProgress:
    try:
        return await runtime.orchestrator.get_progress(transcript_id)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.get("/{transcript_id}/blocking", response_model=list[BlockingItem])
async def get_blocking_items(
    transcript_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> list[BlockingItem]:
    try:
        return await runtime.orchestrator.get_blocking_items(transcript_id)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.post("/{transcript_id}/pause", status_code=204)
async def pause_pipeline(
    transcript_id: str,
    request: ReasonRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> None:
    try:
        runtime.orchestrator.pause(transcript_id, request.reason if request else None)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.post("/{transcript_id}/resume", response_model=JobIdsResponse)
async def resume_pipeline(
    transcript_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> JobIdsResponse:
    """Resume a paused pipeline; returns jobs enqueued by the replay."""
    try:
        job_ids = await runtime.orchestrator.resume(transcript_id)
    except ContentFlowError as e:
        raise http_error(e) from e
    return JobIdsResponse(job_ids=job_ids)


@router.post("/{transcript_id}/cancel")
async def cancel_pipeline(
    transcript_id: str,
    request: ReasonRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, int]:
    try:
        cancelled = runtime.orchestrator.cancel(transcript_id, request.reason if request else None)
    except ContentFlowError as e:
        raise http_error(e) from e
    return {"cancelled": cancelled}


@router.post("/{transcript_id}/retry", response_model=JobIdsResponse)
async def retry_from_stage(
    transcript_id: str,
    request: RetryStageRequest,
    runtime: Runtime = Depends(get_runtime),
) -> JobIdsResponse:
    try:
        job_ids = await runtime.orchestrator.retry_from_stage(transcript_id, request.stage)
    except ContentFlowError as e:
        raise http_error(e) from e
    return JobIdsResponse(job_ids=job_ids)


# ------------------------------------------------------------------
# Review-gated stages
# ------------------------------------------------------------------


@router.post("/insights/{insight_id}/generate", response_model=JobCreateResponse, status_code=201)
async def generate_posts(
    insight_id: str,
    request: GeneratePostsRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> JobCreateResponse:
    """Generate posts for an approved insight."""
    try:
        job_id = await runtime.orchestrator.trigger_post_generation(
            insight_id, request.platforms if request else None
        )
    except ContentFlowError as e:
        raise http_error(e) from e
    return JobCreateResponse(job_id=job_id, status="queued" if job_id else "deferred")


@router.post("/posts/{post_id}/schedule", response_model=ScheduledPost, status_code=201)
async def schedule_post(
    post_id: str,
    request: SchedulePostRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    try:
        return await runtime.orchestrator.schedule_post(post_id, request.scheduled_time)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.delete("/posts/{post_id}/schedule", response_model=ScheduledPost)
async def unschedule_post(
    post_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    try:
        return await runtime.orchestrator.unschedule_post(post_id)
    except ContentFlowError as e:
        raise http_error(e) from e
