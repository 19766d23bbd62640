"""End-to-end scenarios run in-process against an in-memory database.

Covers the scheduled publishing path (due, not yet due, retry exhaustion)
and the review-gated content pipeline.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from contentflow.jobs.models import JobState, QueueName
from contentflow.models.content import InsightStatus, TranscriptStatus
from contentflow.models.scheduling import MAX_RETRIES, ScheduledPostStatus
from contentflow.scheduler.service import MAX_RETRIES_REASON
from contentflow.services.interfaces import PublishOutcome

pytestmark = pytest.mark.e2e


@pytest.mark.asyncio
async def test_due_post_is_published_by_one_run(scheduler, scheduler_processor, publisher, clock) -> None:
    post_id = scheduler.schedule("p", "Launch day", clock() + timedelta(seconds=1))
    clock.advance(seconds=2)

    stats = await scheduler_processor.run_once()

    post = scheduler.get(post_id)
    assert stats.succeeded == 1
    assert post.status is ScheduledPostStatus.PUBLISHED
    assert post.external_post_id == "ext_1"
    assert publisher.calls[0]["platform"] == "p"


@pytest.mark.asyncio
async def test_future_post_is_not_ready(scheduler, scheduler_processor, publisher, clock) -> None:
    post_id = scheduler.schedule("p", "Later", clock() + timedelta(hours=1))

    assert scheduler.get_ready() == []
    stats = await scheduler_processor.run_once()

    assert stats.processed == 0
    assert scheduler.get(post_id).status is ScheduledPostStatus.PENDING
    assert publisher.calls == []


@pytest.mark.asyncio
async def test_three_failures_exhaust_the_retry_budget(
    scheduler, scheduler_processor, publisher, clock
) -> None:
    post_id = scheduler.schedule("p", "Flaky", clock() + timedelta(seconds=1))
    clock.advance(seconds=2)
    publisher.outcomes.extend(PublishOutcome.failed("gateway timeout") for _ in range(MAX_RETRIES))

    for expected in range(1, MAX_RETRIES + 1):
        await scheduler_processor.run_once()
        assert scheduler.get(post_id).retry_count == expected

    post = scheduler.get(post_id)
    assert post.status is ScheduledPostStatus.FAILED
    assert post.error_message == MAX_RETRIES_REASON

    stats = await scheduler_processor.run_once()
    untouched = scheduler.get(post_id)
    assert stats.processed == 0
    assert untouched.retry_count == MAX_RETRIES
    assert untouched.updated_at == post.updated_at
    assert len(publisher.calls) == MAX_RETRIES


@pytest.mark.asyncio
async def test_clean_advances_and_extract_waits_for_review(
    manager, orchestrator, entities, store, clock
) -> None:
    entities.add_transcript("um we shipped um the new editor", transcript_id="t1")
    await orchestrator.start_pipeline("t1")
    clock.advance(ms=5)

    await manager.process_next(QueueName.CLEAN_TRANSCRIPT)

    extract_jobs = store.list_jobs(QueueName.EXTRACT_INSIGHTS, state=JobState.WAITING)
    assert len(extract_jobs) == 1
    assert extract_jobs[0].payload["cleaned_content"] == "we shipped the new editor"
    assert (await entities.get_transcript("t1")).status is TranscriptStatus.CLEANED

    clock.advance(ms=5)
    await manager.process_next(QueueName.EXTRACT_INSIGHTS)

    assert store.list_jobs(QueueName.GENERATE_POSTS) == []
    insights = await entities.list_insights("t1")
    assert len(insights) == 2
    assert all(i.status is InsightStatus.NEEDS_REVIEW for i in insights)
    assert (await entities.get_transcript("t1")).status is TranscriptStatus.INSIGHTS_GENERATED
