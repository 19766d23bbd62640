"""Unit tests for the stage processors."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from contentflow.errors import ClaimHeldError, RateLimitError, TransientError, ValidationError
from contentflow.jobs.models import Job, JobResult, QueueName
from contentflow.models.content import (
    Insight,
    InsightStatus,
    Post,
    PostStatus,
    TranscriptStatus,
)
from contentflow.models.pipeline import PipelineStage
from contentflow.models.scheduling import ScheduledPostStatus
from contentflow.pipeline.base import StageContext, StageProcessor
from contentflow.pipeline.stages import (
    CleanTranscriptProcessor,
    ExtractInsightsProcessor,
    GeneratePostsProcessor,
)
from contentflow.services.interfaces import PublishOutcome


def _job(queue: QueueName, payload: dict, attempts_made: int = 0, max_attempts: int = 3) -> Job:
    return Job(
        id=f"{queue.value}_test",
        queue_name=queue.value,
        payload=payload,
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


def _context(job: Job, advance: AsyncMock | None = None) -> StageContext:
    return StageContext(job=job, pipeline_id="t1", timeout_ms=5_000, advance_callback=advance)


# ---------------------------------------------------------------------------
# Base class failure policy
# ---------------------------------------------------------------------------

class _Flaky(StageProcessor):
    def __init__(self, error: Exception | None = None, delay: float = 0) -> None:
        self.error = error
        self.delay = delay
        self.failed_with: str | None = None

    @property
    def queue(self) -> QueueName:
        return QueueName.CLEAN_TRANSCRIPT

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage.CLEAN

    @property
    def display_name(self) -> str:
        return "Flaky"

    async def execute(self, payload, context) -> JobResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return JobResult.ok({"done": True})

    async def mark_entity_failed(self, payload, error: str) -> None:
        self.failed_with = error


class TestStageProcessorPolicy:
    @pytest.mark.asyncio
    async def test_success_sets_duration(self) -> None:
        job = _job(QueueName.CLEAN_TRANSCRIPT, {})
        result = await _Flaky().process(job, _context(job))
        assert result.success
        assert result.processing_duration_ms >= 0

    @pytest.mark.asyncio
    async def test_transient_error_is_reraised_before_final_attempt(self) -> None:
        processor = _Flaky(TransientError("503"))
        job = _job(QueueName.CLEAN_TRANSCRIPT, {}, attempts_made=0)
        with pytest.raises(TransientError):
            await processor.process(job, _context(job))
        assert processor.failed_with is None

    @pytest.mark.asyncio
    async def test_final_transient_failure_returns_failed_result(self) -> None:
        processor = _Flaky(TransientError("503"))
        job = _job(QueueName.CLEAN_TRANSCRIPT, {}, attempts_made=2, max_attempts=3)
        result = await processor.process(job, _context(job))
        assert not result.success
        assert result.error == "503"
        assert processor.failed_with == "503"

    @pytest.mark.asyncio
    async def test_validation_error_marks_entity_and_reraises(self) -> None:
        processor = _Flaky(ValidationError("bad input"))
        job = _job(QueueName.CLEAN_TRANSCRIPT, {})
        with pytest.raises(ValidationError):
            await processor.process(job, _context(job))
        assert processor.failed_with == "bad input"

    @pytest.mark.asyncio
    async def test_rate_limit_never_marks_entity(self) -> None:
        processor = _Flaky(RateLimitError("slow down", 1_000))
        job = _job(QueueName.CLEAN_TRANSCRIPT, {}, attempts_made=2)
        with pytest.raises(RateLimitError):
            await processor.process(job, _context(job))
        assert processor.failed_with is None

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        processor = _Flaky(delay=1)
        job = _job(QueueName.CLEAN_TRANSCRIPT, {})
        context = StageContext(job=job, timeout_ms=10)
        with pytest.raises(TransientError, match="timed out"):
            await processor.process(job, context)


# ---------------------------------------------------------------------------
# Clean / Extract / Generate
# ---------------------------------------------------------------------------

class TestCleanTranscript:
    @pytest.mark.asyncio
    async def test_cleans_and_advances(self, entities, ai) -> None:
        entities.add_transcript("um hello um world", transcript_id="t1")
        advance = AsyncMock(return_value="insights_t1_1")
        job = _job(QueueName.CLEAN_TRANSCRIPT, {"transcript_id": "t1", "raw_content": "um hello um world"})

        result = await CleanTranscriptProcessor(entities, ai).execute(job.payload, _context(job, advance))

        transcript = await entities.get_transcript("t1")
        assert transcript.status is TranscriptStatus.CLEANED
        assert transcript.cleaned_content == "hello world"
        assert result.data["next_job_id"] == "insights_t1_1"
        advance.assert_awaited_once_with(
            PipelineStage.CLEAN, "t1", {"transcript_id": "t1", "cleaned_content": "hello world"}
        )

    @pytest.mark.asyncio
    async def test_already_cleaned_skips_ai(self, entities, ai) -> None:
        entities.add_transcript("raw", transcript_id="t1")
        await entities.update_transcript(
            "t1", cleaned_content="clean", status=TranscriptStatus.INSIGHTS_GENERATED
        )
        advance = AsyncMock()
        job = _job(QueueName.CLEAN_TRANSCRIPT, {"transcript_id": "t1"})

        result = await CleanTranscriptProcessor(entities, ai).execute(job.payload, _context(job, advance))

        assert result.data["skipped"]
        assert ai.calls == []
        advance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_final_failure_marks_transcript_failed(self, entities, ai) -> None:
        entities.add_transcript("raw text", transcript_id="t1")
        ai.errors["clean"].append(TransientError("AI unavailable"))
        job = _job(QueueName.CLEAN_TRANSCRIPT, {"transcript_id": "t1"}, attempts_made=2)

        result = await CleanTranscriptProcessor(entities, ai).process(job, _context(job))

        assert not result.success
        transcript = await entities.get_transcript("t1")
        assert transcript.status is TranscriptStatus.FAILED
        assert transcript.error == "AI unavailable"

    @pytest.mark.asyncio
    async def test_empty_transcript_is_rejected(self, entities, ai) -> None:
        entities.add_transcript("   ", transcript_id="t1")
        job = _job(QueueName.CLEAN_TRANSCRIPT, {"transcript_id": "t1"})
        with pytest.raises(ValidationError):
            await CleanTranscriptProcessor(entities, ai).process(job, _context(job))
        assert (await entities.get_transcript("t1")).status is TranscriptStatus.FAILED


class TestExtractInsights:
    @pytest.mark.asyncio
    async def test_creates_insights_for_review(self, entities, ai) -> None:
        entities.add_transcript("raw", transcript_id="t1")
        await entities.update_transcript("t1", cleaned_content="clean", status=TranscriptStatus.CLEANED)
        job = _job(QueueName.EXTRACT_INSIGHTS, {"transcript_id": "t1", "cleaned_content": "clean"})

        result = await ExtractInsightsProcessor(entities, ai).execute(job.payload, _context(job))

        insights = await entities.list_insights("t1")
        assert len(insights) == 2
        assert all(i.status is InsightStatus.NEEDS_REVIEW for i in insights)
        assert result.data["insight_ids"] == [i.id for i in insights]
        assert (await entities.get_transcript("t1")).status is TranscriptStatus.INSIGHTS_GENERATED

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, entities, ai) -> None:
        entities.add_transcript("raw", transcript_id="t1")
        await entities.update_transcript("t1", cleaned_content="clean", status=TranscriptStatus.CLEANED)
        processor = ExtractInsightsProcessor(entities, ai)
        job = _job(QueueName.EXTRACT_INSIGHTS, {"transcript_id": "t1"})

        await processor.execute(job.payload, _context(job))
        second = await processor.execute(job.payload, _context(job))

        assert second.data["skipped"]
        assert len(await entities.list_insights("t1")) == 2
        assert ai.calls.count(("extract", "t1")) == 1

    @pytest.mark.asyncio
    async def test_uncleaned_transcript_is_rejected(self, entities, ai) -> None:
        entities.add_transcript("raw", transcript_id="t1")
        job = _job(QueueName.EXTRACT_INSIGHTS, {"transcript_id": "t1"})
        with pytest.raises(ValidationError):
            await ExtractInsightsProcessor(entities, ai).execute(job.payload, _context(job))


class TestGeneratePosts:
    def _insight(self, entities, status=InsightStatus.APPROVED) -> Insight:
        return entities.add_insight(
            Insight(id="i1", transcript_id="t1", title="Ship smaller", summary="Less risk", status=status)
        )

    @pytest.mark.asyncio
    async def test_generates_one_post_per_platform(self, entities, ai) -> None:
        self._insight(entities)
        job = _job(QueueName.GENERATE_POSTS, {"insight_id": "i1", "platforms": ["linkedin", "x"]})

        result = await GeneratePostsProcessor(entities, ai).execute(job.payload, _context(job))

        posts = await entities.list_posts("i1")
        assert sorted(p.platform for p in posts) == ["linkedin", "x"]
        assert all(p.status is PostStatus.NEEDS_REVIEW for p in posts)
        assert len(result.data["post_ids"]) == 2
        assert (await entities.get_insight("i1")).status is InsightStatus.POSTS_GENERATED

    @pytest.mark.asyncio
    async def test_unsupported_platform_is_a_validation_error(self, entities, ai) -> None:
        self._insight(entities)
        job = _job(QueueName.GENERATE_POSTS, {"insight_id": "i1", "platforms": ["myspace"]})
        with pytest.raises(ValidationError, match="Unsupported platform: myspace"):
            await GeneratePostsProcessor(entities, ai).process(job, _context(job))
        assert (await entities.get_insight("i1")).status is InsightStatus.FAILED


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------

class TestPublishPost:
    def _scheduled(self, scheduler, clock, **kw) -> str:
        post_id = scheduler.schedule("x", "hello", clock() + timedelta(seconds=1), **kw)
        clock.advance(seconds=2)
        return post_id

    @pytest.mark.asyncio
    async def test_publishes_and_releases_claim(self, scheduler, publish_processor, clock) -> None:
        post_id = self._scheduled(scheduler, clock)
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id})

        result = await publish_processor.execute(job.payload, _context(job))

        assert result.data["external_post_id"] == "ext_1"
        post = scheduler.get(post_id)
        assert post.status is ScheduledPostStatus.PUBLISHED
        assert post.claimed_at is None

    @pytest.mark.asyncio
    async def test_already_published_is_skipped(self, scheduler, publish_processor, publisher, clock) -> None:
        post_id = self._scheduled(scheduler, clock)
        scheduler.mark_published(post_id, "ext_0")
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id})

        result = await publish_processor.execute(job.payload, _context(job))

        assert result.data["skipped"]
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_rate_limited_outcome_raises_rate_limit_error(
        self, scheduler, publish_processor, publisher, clock
    ) -> None:
        post_id = self._scheduled(scheduler, clock)
        publisher.outcomes = [PublishOutcome.rate_limited(45_000)]
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id})

        with pytest.raises(RateLimitError) as exc_info:
            await publish_processor.execute(job.payload, _context(job))
        assert exc_info.value.retry_after_ms == 45_000
        assert scheduler.get(post_id).claimed_at is None

    @pytest.mark.asyncio
    async def test_final_failure_marks_row_and_post_failed(
        self, scheduler, publish_processor, publisher, entities, clock
    ) -> None:
        entities.add_insight(Insight(id="i1", transcript_id="t1", title="t", summary="s"))
        entities.add_post(Post(id="p1", insight_id="i1", platform="x", content="hello",
                               status=PostStatus.SCHEDULED))
        post_id = self._scheduled(scheduler, clock, metadata={"post_id": "p1"})
        publisher.outcomes = [PublishOutcome.failed("upstream 502")]
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id}, attempts_made=2)

        result = await publish_processor.process(job, _context(job))

        assert not result.success
        assert scheduler.get(post_id).status is ScheduledPostStatus.FAILED
        assert (await entities.get_post("p1")).status is PostStatus.FAILED

    @pytest.mark.asyncio
    async def test_row_claimed_elsewhere_is_requeued_not_failed(
        self, scheduler, publish_processor, publisher, clock
    ) -> None:
        post_id = self._scheduled(scheduler, clock)
        holder = scheduler.claim(post_id)
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id}, attempts_made=2)

        with pytest.raises(ClaimHeldError) as exc_info:
            await publish_processor.process(job, _context(job))

        assert exc_info.value.retry_after_ms > 0
        post = scheduler.get(post_id)
        assert post.status is ScheduledPostStatus.PENDING
        assert post.claimed_at is not None
        assert publisher.calls == []
        assert scheduler.mark_published(post_id, "ext_9", holder).status is ScheduledPostStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_final_failure_leaves_row_claimed_elsewhere(
        self, scheduler, publish_processor, entities, clock
    ) -> None:
        entities.add_insight(Insight(id="i1", transcript_id="t1", title="t", summary="s"))
        entities.add_post(Post(id="p1", insight_id="i1", platform="x", content="hello",
                               status=PostStatus.SCHEDULED))
        post_id = self._scheduled(scheduler, clock, metadata={"post_id": "p1"})
        scheduler.claim(post_id)

        await publish_processor.mark_entity_failed({"scheduled_post_id": post_id}, "gave up")

        assert scheduler.get(post_id).status is ScheduledPostStatus.PENDING
        assert (await entities.get_post("p1")).status is PostStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_post_update_error_after_publishing_still_succeeds(
        self, scheduler, publish_processor, entities, clock
    ) -> None:
        entities.add_insight(Insight(id="i1", transcript_id="t1", title="t", summary="s"))
        entities.add_post(Post(id="p1", insight_id="i1", platform="x", content="hello",
                               status=PostStatus.SCHEDULED))
        post_id = self._scheduled(scheduler, clock, metadata={"post_id": "p1"})
        entities.update_post = AsyncMock(side_effect=RuntimeError("entity store down"))
        job = _job(QueueName.PUBLISH, {"scheduled_post_id": post_id})

        result = await publish_processor.execute(job.payload, _context(job))

        assert result.data["external_post_id"] == "ext_1"
        assert scheduler.get(post_id).status is ScheduledPostStatus.PUBLISHED
        entities.update_post.assert_awaited_once()
