"""Pipeline-level data models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from contentflow.models.processing import ProcessingStatus


class PipelineStage(str, Enum):
    """Steps of the content pipeline, in order."""

    CLEAN = "clean"
    EXTRACT = "extract"
    GENERATE = "generate"
    PUBLISH = "publish"


class PipelineStatus(str, Enum):
    """Pipeline status, independent of individual job attempts."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageProgress(BaseModel):
    """Latest processing job for one stage."""

    stage: PipelineStage
    job_id: str | None = None
    status: ProcessingStatus = ProcessingStatus.IDLE
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 0
    error: str | None = None
    updated_at: datetime | None = None


class PipelineProgress(BaseModel):
    """Where a transcript currently sits in the pipeline."""

    pipeline_id: str
    status: PipelineStatus
    current_stage: PipelineStage | None = None
    stages: list[StageProgress] = Field(default_factory=list)
    awaiting_review: int = Field(0, description="Insights and posts waiting for a human")
    reason: str | None = None


class BlockingItem(BaseModel):
    """Something holding the pipeline up: a review gate or a failure."""

    entity_type: str = Field(..., description="transcript, insight, post or job")
    entity_id: str
    reason: str
    status: str
