"""Content entities: transcripts, insights and posts.

These mirror the fields of the external entity store that the pipeline
reads and writes. The pipeline never owns these records.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from contentflow.clock import utc_now

SUPPORTED_PLATFORMS: tuple[str, ...] = ("linkedin", "x")


class TranscriptStatus(str, Enum):
    """Lifecycle of a transcript."""

    RAW = "raw"
    PROCESSING = "processing"
    CLEANED = "cleaned"
    INSIGHTS_GENERATED = "insights_generated"
    FAILED = "failed"


class InsightStatus(str, Enum):
    """Lifecycle of an insight. Approval is a human decision."""

    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    POSTS_GENERATED = "posts_generated"
    FAILED = "failed"


class PostStatus(str, Enum):
    """Lifecycle of a post."""

    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"


class Transcript(BaseModel):
    """A raw transcript and its cleaned form."""

    id: str
    title: str = ""
    raw_content: str = Field(..., description="Transcript text as received")
    cleaned_content: str | None = Field(None, description="Output of the clean stage")
    status: TranscriptStatus = TranscriptStatus.RAW
    word_count: int | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Insight(BaseModel):
    """A reviewable insight extracted from a cleaned transcript."""

    id: str
    transcript_id: str
    title: str
    summary: str
    verbatim_quote: str = ""
    category: str = ""
    score: float | None = None
    status: InsightStatus = InsightStatus.NEEDS_REVIEW
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def post_source_text(self) -> str:
        """Text handed to post generation."""
        parts = [self.title, self.summary]
        if self.verbatim_quote:
            parts.append(f'Quote: "{self.verbatim_quote}"')
        return "\n\n".join(parts)


class Post(BaseModel):
    """A platform-specific post drafted from an insight."""

    id: str
    insight_id: str
    platform: str
    content: str
    status: PostStatus = PostStatus.NEEDS_REVIEW
    external_post_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
