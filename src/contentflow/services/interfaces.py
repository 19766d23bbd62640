"""Service interfaces (Protocols) for contentflow.

The pipeline only talks to the entity store, the AI services, the platform
publisher and the credentials provider through these contracts, so any of
them can be swapped out in tests or deployments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from contentflow.errors import ErrorKind
from contentflow.models.content import Insight, Post, Transcript


# ------------------------------------------------------------------
# AI results
# ------------------------------------------------------------------


@dataclass
class CleanResult:
    cleaned_content: str
    word_count: int = 0
    duration_ms: int = 0


@dataclass
class ExtractedInsight:
    title: str
    summary: str
    verbatim_quote: str = ""
    category: str = ""
    score: float | None = None


@dataclass
class ExtractResult:
    insights: list[ExtractedInsight] = field(default_factory=list)
    duration_ms: int = 0
    tokens: int = 0
    cost: float = 0.0


@dataclass
class GeneratedPost:
    platform: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerateResult:
    posts: list[GeneratedPost] = field(default_factory=list)
    duration_ms: int = 0
    tokens: int = 0
    cost: float = 0.0


# ------------------------------------------------------------------
# Publishing
# ------------------------------------------------------------------


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class PublishOutcome:
    """Tagged result of a platform publish call."""

    status: PublishStatus
    external_post_id: str | None = None
    retry_after_ms: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def published(cls, external_post_id: str | None = None) -> PublishOutcome:
        return cls(status=PublishStatus.PUBLISHED, external_post_id=external_post_id)

    @classmethod
    def rate_limited(cls, retry_after_ms: int, error: str = "rate limited") -> PublishOutcome:
        return cls(
            status=PublishStatus.RATE_LIMITED,
            retry_after_ms=max(int(retry_after_ms), 0),
            error=error,
            error_kind=ErrorKind.RATE_LIMITED,
        )

    @classmethod
    def failed(cls, error: str, kind: ErrorKind = ErrorKind.TRANSIENT) -> PublishOutcome:
        return cls(status=PublishStatus.FAILED, error=error, error_kind=kind)


# ------------------------------------------------------------------
# Protocols
# ------------------------------------------------------------------


class EntityStore(Protocol):
    """Interface for the store holding transcripts, insights and posts."""

    async def get_transcript(self, transcript_id: str) -> Transcript | None:
        ...

    async def get_insight(self, insight_id: str) -> Insight | None:
        ...

    async def get_post(self, post_id: str) -> Post | None:
        ...

    async def update_transcript(self, transcript_id: str, **fields: Any) -> Transcript:
        """Update fields of a transcript.

        Raises:
            NotFoundError: If the transcript does not exist.
        """
        ...

    async def update_insight(self, insight_id: str, **fields: Any) -> Insight:
        ...

    async def update_post(self, post_id: str, **fields: Any) -> Post:
        ...

    async def create_insights(
        self, transcript_id: str, insights: list[ExtractedInsight]
    ) -> list[Insight]:
        """Persist extracted insights with status ``needs_review``."""
        ...

    async def create_posts(self, insight_id: str, posts: list[GeneratedPost]) -> list[Post]:
        """Persist generated posts with status ``needs_review``."""
        ...

    async def list_insights(self, transcript_id: str) -> list[Insight]:
        ...

    async def list_posts(self, insight_id: str) -> list[Post]:
        ...


class ContentAI(Protocol):
    """Interface for the AI services. Each call may be slow and costly."""

    async def clean_transcript(self, transcript_id: str, raw_text: str) -> CleanResult:
        ...

    async def extract_insights(self, transcript_id: str, cleaned_text: str) -> ExtractResult:
        ...

    async def generate_posts(
        self, insight_id: str, content: str, platforms: list[str]
    ) -> GenerateResult:
        ...


class PlatformPublisher(Protocol):
    """Interface for delivering content to a social platform."""

    async def publish(
        self,
        platform: str,
        content: str,
        credentials: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PublishOutcome:
        """Publish content.

        Args:
            platform: Target platform name
            content: Post body
            credentials: Resolved platform credentials
            metadata: Platform-specific fields (e.g. reply-to id)

        Returns:
            PublishOutcome tagged published, rate_limited or failed
        """
        ...


class CredentialsProvider(Protocol):
    """Resolves per-user platform credentials at publish time."""

    async def get_credentials(
        self, platform: str, user_id: str | None = None
    ) -> dict[str, Any] | None:
        """Return credentials, or None when the platform is not connected."""
        ...
