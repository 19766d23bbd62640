"""Shared fixtures: a controllable clock, an in-memory database and fakes
for the AI service and the platform publisher."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from contentflow.db import Database
from contentflow.jobs.manager import JobManager
from contentflow.jobs.ratelimit import FixedWindowRateLimiter
from contentflow.jobs.store import JobStore
from contentflow.jobs.tracker import ProcessingJobTracker
from contentflow.pipeline.orchestrator import PipelineOrchestrator
from contentflow.pipeline.stages import (
    CleanTranscriptProcessor,
    ExtractInsightsProcessor,
    GeneratePostsProcessor,
    PublishPostProcessor,
)
from contentflow.scheduler.processor import SchedulerProcessor
from contentflow.scheduler.service import Scheduler
from contentflow.services.interfaces import (
    CleanResult,
    ExtractedInsight,
    ExtractResult,
    GeneratedPost,
    GenerateResult,
    PublishOutcome,
)
from contentflow.services.memory import InMemoryEntityStore, StaticCredentialsProvider

START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: int = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=ms)
        return self.now


class FakeContentAI:
    """ContentAI double. Queue exceptions in ``errors`` to fail calls in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.errors: dict[str, list[Exception]] = {"clean": [], "extract": [], "generate": []}

    def _maybe_fail(self, name: str) -> None:
        if self.errors[name]:
            raise self.errors[name].pop(0)

    async def clean_transcript(self, transcript_id: str, raw_text: str) -> CleanResult:
        self.calls.append(("clean", transcript_id))
        self._maybe_fail("clean")
        cleaned = " ".join(raw_text.replace("um ", "").split())
        return CleanResult(cleaned_content=cleaned, word_count=len(cleaned.split()), duration_ms=5)

    async def extract_insights(self, transcript_id: str, cleaned_text: str) -> ExtractResult:
        self.calls.append(("extract", transcript_id))
        self._maybe_fail("extract")
        return ExtractResult(
            insights=[
                ExtractedInsight(title="Ship smaller", summary="Small batches reduce risk",
                                 verbatim_quote="ship it small", category="process"),
                ExtractedInsight(title="Measure twice", summary="Metrics before opinions"),
            ],
            duration_ms=10, tokens=120, cost=0.01,
        )

    async def generate_posts(self, insight_id: str, content: str, platforms: list[str]) -> GenerateResult:
        self.calls.append(("generate", insight_id))
        self._maybe_fail("generate")
        return GenerateResult(
            posts=[GeneratedPost(platform=p, content=f"[{p}] {content[:40]}") for p in platforms],
            duration_ms=8, tokens=90, cost=0.02,
        )


class FakePublisher:
    """PlatformPublisher double returning queued outcomes (default: published)."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.outcomes: list[PublishOutcome | Exception] = []

    async def publish(
        self,
        platform: str,
        content: str,
        credentials: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PublishOutcome:
        self.calls.append({"platform": platform, "content": content, "credentials": credentials})
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return PublishOutcome.published(external_post_id=f"ext_{len(self.calls)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db():
    database = Database(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def store(db, clock) -> JobStore:
    return JobStore(db, clock=clock)


@pytest.fixture
def tracker(db, clock) -> ProcessingJobTracker:
    return ProcessingJobTracker(db, clock=clock)


@pytest.fixture
def scheduler(db, clock) -> Scheduler:
    return Scheduler(db, clock=clock)


@pytest.fixture
def entities(clock) -> InMemoryEntityStore:
    return InMemoryEntityStore(clock=clock)


@pytest.fixture
def ai() -> FakeContentAI:
    return FakeContentAI()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def credentials() -> StaticCredentialsProvider:
    return StaticCredentialsProvider({"linkedin": "li-token", "x": "x-token", "p": "p-token"})


@pytest.fixture
def rate_limiter(db, clock) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(db, {"linkedin": (100, 60), "x": (100, 60), "p": (100, 60)}, clock=clock)


@pytest.fixture
def publish_processor(scheduler, entities, publisher, credentials) -> PublishPostProcessor:
    return PublishPostProcessor(scheduler, entities, publisher, credentials)


@pytest.fixture
def orchestrator(db, store, tracker, scheduler, entities, clock) -> PipelineOrchestrator:
    return PipelineOrchestrator(db, store, tracker, scheduler, entities, clock=clock)


@pytest.fixture
def manager(store, tracker, orchestrator, entities, ai, publish_processor, rate_limiter) -> JobManager:
    mgr = JobManager(
        store, tracker, rate_limiter=rate_limiter, advance_callback=orchestrator.advance
    )
    mgr.register(CleanTranscriptProcessor(entities, ai))
    mgr.register(ExtractInsightsProcessor(entities, ai))
    mgr.register(GeneratePostsProcessor(entities, ai))
    mgr.register(publish_processor)
    return mgr


@pytest.fixture
def scheduler_processor(scheduler, publish_processor, rate_limiter) -> SchedulerProcessor:
    async def no_sleep(seconds: float) -> None:
        return None

    return SchedulerProcessor(
        scheduler, publish_processor, rate_limiter=rate_limiter, max_concurrent=3, sleep=no_sleep
    )
