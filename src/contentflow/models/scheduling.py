"""Scheduled publishing models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

MAX_RETRIES = 3

# Hard content ceilings. Platforms without an entry (x threads long posts)
# accept any length.
PLATFORM_CONTENT_LIMITS: dict[str, int] = {
    "linkedin": 3000,
}


class ScheduledPostStatus(str, Enum):
    """Status of a scheduled publish intent."""

    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScheduledPost(BaseModel):
    """A persisted intent to publish content on a platform at a set time."""

    id: str
    platform: str
    content: str
    scheduled_time: datetime
    status: ScheduledPostStatus = ScheduledPostStatus.PENDING
    retry_count: int = Field(0, ge=0, le=MAX_RETRIES)
    last_attempt: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    external_post_id: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def post_id(self) -> str | None:
        """Id of the owning post, when scheduled through the pipeline."""
        return self.metadata.get("post_id")


class SchedulerStats(BaseModel):
    """Counts of scheduled posts grouped by status and platform."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_platform: dict[str, int] = Field(default_factory=dict)
    ready: int = 0


class ProcessorStats(BaseModel):
    """Outcome counters of one processor run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    throttled: int = 0

    def merge(self, other: "ProcessorStats") -> "ProcessorStats":
        return ProcessorStats(
            processed=self.processed + other.processed,
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            throttled=self.throttled + other.throttled,
        )
