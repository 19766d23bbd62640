"""Data models for contentflow."""

from contentflow.models.content import (
    SUPPORTED_PLATFORMS,
    Insight,
    InsightStatus,
    Post,
    PostStatus,
    Transcript,
    TranscriptStatus,
)
from contentflow.models.pipeline import (
    BlockingItem,
    PipelineProgress,
    PipelineStage,
    PipelineStatus,
    StageProgress,
)
from contentflow.models.processing import (
    ProcessingEvent,
    ProcessingJob,
    ProcessingStatus,
)
from contentflow.models.scheduling import (
    MAX_RETRIES,
    PLATFORM_CONTENT_LIMITS,
    ProcessorStats,
    ScheduledPost,
    ScheduledPostStatus,
    SchedulerStats,
)

__all__ = [
    # Content
    "SUPPORTED_PLATFORMS",
    "Transcript",
    "TranscriptStatus",
    "Insight",
    "InsightStatus",
    "Post",
    "PostStatus",
    # Pipeline
    "PipelineStage",
    "PipelineStatus",
    "StageProgress",
    "PipelineProgress",
    "BlockingItem",
    # Processing
    "ProcessingEvent",
    "ProcessingJob",
    "ProcessingStatus",
    # Scheduling
    "MAX_RETRIES",
    "PLATFORM_CONTENT_LIMITS",
    "ScheduledPost",
    "ScheduledPostStatus",
    "SchedulerStats",
    "ProcessorStats",
]
