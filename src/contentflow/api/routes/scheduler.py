"""Scheduled publishing endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from contentflow.api.deps import get_runtime, http_error
from contentflow.api.schemas import JobCreateResponse, RescheduleRequest, SchedulerPostRequest
from contentflow.errors import ContentFlowError
from contentflow.models.scheduling import (
    ProcessorStats,
    ScheduledPost,
    ScheduledPostStatus,
    SchedulerStats,
)
from contentflow.runtime import Runtime

router = APIRouter(prefix="/api/v1/scheduler", tags=["scheduler"])


@router.get("/stats", response_model=SchedulerStats)
async def get_stats(runtime: Runtime = Depends(get_runtime)) -> SchedulerStats:
    return runtime.scheduler.get_stats()


@router.get("/posts", response_model=list[ScheduledPost])
async def list_posts(
    platform: str | None = None,
    status: ScheduledPostStatus | None = None,
    limit: int = 100,
    runtime: Runtime = Depends(get_runtime),
) -> list[ScheduledPost]:
    return runtime.scheduler.list_posts(platform=platform, status=status, limit=limit)


@router.get("/upcoming", response_model=list[ScheduledPost])
async def get_upcoming(
    hours: float = 24,
    runtime: Runtime = Depends(get_runtime),
) -> list[ScheduledPost]:
    return runtime.scheduler.get_upcoming(hours)


@router.get("/posts/{scheduled_post_id}", response_model=ScheduledPost)
async def get_post(
    scheduled_post_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    post = runtime.scheduler.get(scheduled_post_id)
    if post is None:
        raise HTTPException(status_code=404, detail="Scheduled post not found")
    return post


@router.post("/posts", response_model=ScheduledPost, status_code=201)
async def schedule_post(
    request: SchedulerPostRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    """Schedule raw content directly, outside any pipeline."""
    try:
        scheduled_id = runtime.scheduler.schedule(
            request.platform, request.content, request.scheduled_time, request.metadata
        )
    except ContentFlowError as e:
        raise http_error(e) from e
    return runtime.scheduler.get(scheduled_id)


@router.post("/posts/{scheduled_post_id}/cancel", response_model=ScheduledPost)
async def cancel_post(
    scheduled_post_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    try:
        return runtime.scheduler.cancel(scheduled_post_id)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.post("/posts/{scheduled_post_id}/reschedule", response_model=ScheduledPost)
async def reschedule_post(
    scheduled_post_id: str,
    request: RescheduleRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ScheduledPost:
    try:
        return runtime.scheduler.reschedule(scheduled_post_id, request.scheduled_time)
    except ContentFlowError as e:
        raise http_error(e) from e


@router.post("/posts/{scheduled_post_id}/publish", response_model=JobCreateResponse, status_code=202)
async def publish_now(
    scheduled_post_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> JobCreateResponse:
    """Enqueue an immediate publish job."""
    try:
        job_id = await runtime.orchestrator.publish_now(scheduled_post_id)
    except ContentFlowError as e:
        raise http_error(e) from e
    return JobCreateResponse(job_id=job_id, status="queued")


@router.post("/run", response_model=ProcessorStats)
async def run_once(runtime: Runtime = Depends(get_runtime)) -> ProcessorStats:
    """Run one scheduler pass now."""
    return await runtime.scheduler_processor.run_once()
