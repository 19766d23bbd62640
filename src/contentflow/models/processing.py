"""Processing-job models shared by every stage."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from contentflow.clock import utc_now


class ProcessingStatus(str, Enum):
    """Canonical state of one stage's processing job."""

    IDLE = "idle"
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    PERMANENTLY_FAILED = "permanentlyFailed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ProcessingStatus.COMPLETED,
        ProcessingStatus.PERMANENTLY_FAILED,
        ProcessingStatus.CANCELLED,
    }
)


class ProcessingEvent(str, Enum):
    """Events accepted by the processing-job state machine."""

    START = "START"
    PROGRESS = "PROGRESS"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    RETRY = "RETRY"
    MARK_PERMANENTLY_FAILED = "MARK_PERMANENTLY_FAILED"
    CANCEL = "CANCEL"


class ProcessingJob(BaseModel):
    """Observable view of a stage job, keyed by the store job id."""

    id: str = Field(..., description="Same id as the job in the durable store")
    job_type: str = Field(..., description="Queue the job runs on")
    entity_id: str = Field(..., description="Transcript, insight or scheduled post id")
    pipeline_id: str | None = Field(None, description="Owning pipeline (transcript id)")
    status: ProcessingStatus = ProcessingStatus.IDLE
    progress: int = Field(0, ge=0, le=100)
    attempts_made: int = Field(0, ge=0)
    max_attempts: int = Field(1, ge=1)
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
