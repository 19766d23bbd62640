"""In-memory implementations of the entity store and credentials provider."""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import uuid4

from contentflow.clock import Clock, utc_now
from contentflow.errors import NotFoundError
from contentflow.models.content import Insight, InsightStatus, Post, PostStatus, Transcript
from contentflow.services.interfaces import ExtractedInsight, GeneratedPost


class InMemoryEntityStore:
    """Dictionary-backed entity store for development and tests."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._transcripts: dict[str, Transcript] = {}
        self._insights: dict[str, Insight] = {}
        self._posts: dict[str, Post] = {}
        self._lock = asyncio.Lock()

    # Seeding helpers

    def add_transcript(self, raw_content: str, transcript_id: str | None = None, title: str = "") -> Transcript:
        transcript = Transcript(
            id=transcript_id or f"transcript_{uuid4().hex[:12]}",
            title=title,
            raw_content=raw_content,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        self._transcripts[transcript.id] = transcript
        return transcript

    def add_insight(self, insight: Insight) -> Insight:
        self._insights[insight.id] = insight
        return insight

    def add_post(self, post: Post) -> Post:
        self._posts[post.id] = post
        return post

    # EntityStore

    async def get_transcript(self, transcript_id: str) -> Transcript | None:
        return self._transcripts.get(transcript_id)

    async def get_insight(self, insight_id: str) -> Insight | None:
        return self._insights.get(insight_id)

    async def get_post(self, post_id: str) -> Post | None:
        return self._posts.get(post_id)

    async def update_transcript(self, transcript_id: str, **fields: Any) -> Transcript:
        async with self._lock:
            return self._update(self._transcripts, "Transcript", transcript_id, fields)

    async def update_insight(self, insight_id: str, **fields: Any) -> Insight:
        async with self._lock:
            return self._update(self._insights, "Insight", insight_id, fields)

    async def update_post(self, post_id: str, **fields: Any) -> Post:
        async with self._lock:
            return self._update(self._posts, "Post", post_id, fields)

    def _update(self, table: dict, label: str, entity_id: str, fields: dict[str, Any]):
        entity = table.get(entity_id)
        if entity is None:
            raise NotFoundError(f"{label} not found: {entity_id}")
        updated = entity.model_copy(update={**fields, "updated_at": self._clock()})
        table[entity_id] = updated
        return updated

    async def create_insights(
        self, transcript_id: str, insights: list[ExtractedInsight]
    ) -> list[Insight]:
        created = []
        async with self._lock:
            for item in insights:
                insight = Insight(
                    id=f"insight_{uuid4().hex[:12]}",
                    transcript_id=transcript_id,
                    title=item.title,
                    summary=item.summary,
                    verbatim_quote=item.verbatim_quote,
                    category=item.category,
                    score=item.score,
                    status=InsightStatus.NEEDS_REVIEW,
                    created_at=self._clock(),
                    updated_at=self._clock(),
                )
                self._insights[insight.id] = insight
                created.append(insight)
        return created

    async def create_posts(self, insight_id: str, posts: list[GeneratedPost]) -> list[Post]:
        created = []
        async with self._lock:
            for item in posts:
                post = Post(
                    id=f"post_{uuid4().hex[:12]}",
                    insight_id=insight_id,
                    platform=item.platform,
                    content=item.content,
                    metadata=dict(item.metadata),
                    status=PostStatus.NEEDS_REVIEW,
                    created_at=self._clock(),
                    updated_at=self._clock(),
                )
                self._posts[post.id] = post
                created.append(post)
        return created

    async def list_insights(self, transcript_id: str) -> list[Insight]:
        return sorted(
            (i for i in self._insights.values() if i.transcript_id == transcript_id),
            key=lambda i: i.created_at,
        )

    async def list_posts(self, insight_id: str) -> list[Post]:
        return sorted(
            (p for p in self._posts.values() if p.insight_id == insight_id),
            key=lambda p: p.created_at,
        )


class StaticCredentialsProvider:
    """Credentials from a fixed platform -> token mapping (e.g. settings)."""

    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self._tokens = dict(tokens or {})

    async def get_credentials(
        self, platform: str, user_id: str | None = None
    ) -> dict[str, Any] | None:
        token = self._tokens.get(platform)
        if not token:
            return None
        return {"access_token": token, "user_id": user_id}
