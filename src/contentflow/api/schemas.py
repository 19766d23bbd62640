"""Request and response schemas for the contentflow API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from contentflow.jobs.models import Job, JobResult
from contentflow.models.pipeline import PipelineStage
from contentflow.models.processing import ProcessingJob


# ------------------------------------------------------------------
# Requests
# ------------------------------------------------------------------


class StartPipelineRequest(BaseModel):
    transcript_id: str = Field(..., description="Transcript to process")


class RetryStageRequest(BaseModel):
    stage: PipelineStage = Field(..., description="Stage to re-run from")


class ReasonRequest(BaseModel):
    reason: str | None = Field(None, description="Why the pipeline is paused or cancelled")


class GeneratePostsRequest(BaseModel):
    platforms: list[str] | None = Field(None, description="Target platforms (default: all)")


class SchedulePostRequest(BaseModel):
    scheduled_time: datetime = Field(..., description="When to publish (timezone-aware)")


class SchedulerPostRequest(BaseModel):
    platform: str
    content: str
    scheduled_time: datetime
    metadata: dict[str, Any] | None = None


class RescheduleRequest(BaseModel):
    scheduled_time: datetime


# ------------------------------------------------------------------
# Responses
# ------------------------------------------------------------------


class JobCreateResponse(BaseModel):
    job_id: str | None
    status: str


class JobIdsResponse(BaseModel):
    job_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str
    store_healthy: bool
    processors_running: bool
    workers: int = 0


class QueueCountsResponse(BaseModel):
    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


class JobResultResponse(BaseModel):
    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    processing_duration_ms: int = 0

    @classmethod
    def from_result(cls, result: JobResult) -> JobResultResponse:
        return cls(
            success=result.success,
            data=result.data,
            error=result.error,
            processing_duration_ms=result.processing_duration_ms,
        )


class JobResponse(BaseModel):
    id: str
    queue_name: str
    state: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    progress: int = 0
    last_error: str | None = None
    run_at: datetime
    created_at: datetime
    finished_at: datetime | None = None
    processing: ProcessingJob | None = None
    history: list[JobResultResponse] = Field(default_factory=list)

    @classmethod
    def from_job(
        cls,
        job: Job,
        processing: ProcessingJob | None = None,
        history: list[JobResult] | None = None,
    ) -> JobResponse:
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            state=job.state.value,
            payload=job.payload,
            priority=job.priority,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            progress=job.progress,
            last_error=job.last_error,
            run_at=_from_ms(job.run_at),
            created_at=_from_ms(job.created_at),
            finished_at=_from_ms(job.finished_at) if job.finished_at else None,
            processing=processing,
            history=[JobResultResponse.from_result(r) for r in history or []],
        )


class ClearResponse(BaseModel):
    removed: dict[str, int] = Field(default_factory=dict)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
