"""Tests for the durable job store."""

import pytest

from contentflow.errors import LeaseLostError, NotFoundError
from contentflow.jobs.models import JobResult, JobState, QueueName, backoff_delay, policy_for
from contentflow.jobs.store import STALLED_ERROR, JobStore


class TestEnqueue:
    def test_enqueue_creates_waiting_job(self, store) -> None:
        handle = store.enqueue(QueueName.CLEAN_TRANSCRIPT, {"transcript_id": "t1"})
        assert handle.created
        job = store.get_job(handle.id)
        assert job.state is JobState.WAITING
        assert job.payload == {"transcript_id": "t1"}
        assert job.max_attempts == policy_for(QueueName.CLEAN_TRANSCRIPT).max_attempts

    def test_duplicate_id_is_not_enqueued_twice(self, store) -> None:
        first = store.enqueue(QueueName.PUBLISH, {"a": 1}, job_id="publish_1")
        second = store.enqueue(QueueName.PUBLISH, {"a": 2}, job_id="publish_1")
        assert first.created
        assert not second.created
        assert store.get_job("publish_1").payload == {"a": 1}
        assert store.get_counts(QueueName.PUBLISH).waiting == 1

    def test_delayed_job_not_claimable_until_due(self, store, clock) -> None:
        store.enqueue(QueueName.PUBLISH, {}, delay_ms=5_000)
        assert store.claim(QueueName.PUBLISH) is None
        assert store.get_counts(QueueName.PUBLISH).delayed == 1

        clock.advance(seconds=5)
        assert store.claim(QueueName.PUBLISH) is not None


class TestClaim:
    def test_claim_sets_lease(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {})
        job = store.claim(QueueName.PUBLISH)
        assert job.state is JobState.ACTIVE
        assert job.lease_token
        assert store.claim(QueueName.PUBLISH) is None

    def test_claim_orders_by_priority_then_due_time(self, store, clock) -> None:
        store.enqueue(QueueName.PUBLISH, {"n": 1}, job_id="low", priority=5)
        clock.advance(ms=10)
        store.enqueue(QueueName.PUBLISH, {"n": 2}, job_id="high", priority=1)
        clock.advance(ms=10)
        store.enqueue(QueueName.PUBLISH, {"n": 3}, job_id="high_later", priority=1)

        assert store.claim(QueueName.PUBLISH).id == "high"
        assert store.claim(QueueName.PUBLISH).id == "high_later"
        assert store.claim(QueueName.PUBLISH).id == "low"

    def test_paused_queue_hands_out_nothing(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {})
        store.pause(QueueName.PUBLISH)
        assert store.is_paused(QueueName.PUBLISH)
        assert store.claim(QueueName.PUBLISH) is None

        store.resume(QueueName.PUBLISH)
        assert store.claim(QueueName.PUBLISH) is not None

    def test_queues_are_independent(self, store) -> None:
        store.enqueue(QueueName.CLEAN_TRANSCRIPT, {})
        assert store.claim(QueueName.PUBLISH) is None


class TestAckNack:
    def test_ack_completes_and_records_history(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        job = store.claim(QueueName.PUBLISH)
        store.ack(job, JobResult.ok({"external_post_id": "x1"}))

        stored = store.get_job("j1")
        assert stored.state is JobState.COMPLETED
        assert stored.progress == 100
        history = store.job_history("j1")
        assert len(history) == 1
        assert history[0].success
        assert history[0].data == {"external_post_id": "x1"}

    def test_nack_applies_exponential_backoff(self, store, clock) -> None:
        store.enqueue(QueueName.CLEAN_TRANSCRIPT, {}, job_id="j1")
        policy = policy_for(QueueName.CLEAN_TRANSCRIPT)

        job = store.nack(store.claim(QueueName.CLEAN_TRANSCRIPT), "timeout")
        assert job.state is JobState.WAITING
        assert job.attempts_made == 1
        assert job.delay_ms == policy.base_delay_ms
        assert store.claim(QueueName.CLEAN_TRANSCRIPT) is None

        clock.advance(ms=policy.base_delay_ms)
        job = store.nack(store.claim(QueueName.CLEAN_TRANSCRIPT), "timeout")
        assert job.attempts_made == 2
        assert job.delay_ms == policy.base_delay_ms * 2

    def test_exhausted_job_fails_and_is_never_reclaimed(self, store, clock) -> None:
        store.enqueue(QueueName.EXTRACT_INSIGHTS, {}, job_id="j1")
        for _ in range(2):
            job = store.claim(QueueName.EXTRACT_INSIGHTS)
            job = store.nack(job, "boom")
            clock.advance(seconds=120)

        assert job.state is JobState.FAILED
        assert job.attempts_made == job.max_attempts == 2
        assert store.claim(QueueName.EXTRACT_INSIGHTS) is None
        assert len(store.job_history("j1")) == 2

    def test_non_retryable_nack_fails_immediately(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        job = store.nack(store.claim(QueueName.PUBLISH), "bad input", retryable=False)
        assert job.state is JobState.FAILED
        assert job.attempts_made == job.max_attempts

    def test_release_does_not_consume_an_attempt(self, store, clock) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        store.release(store.claim(QueueName.PUBLISH), delay_ms=1_000)

        job = store.get_job("j1")
        assert job.state is JobState.WAITING
        assert job.attempts_made == 0
        assert store.claim(QueueName.PUBLISH) is None
        clock.advance(seconds=1)
        assert store.claim(QueueName.PUBLISH).id == "j1"


class TestLeases:
    def test_stale_lease_is_rejected(self, db, clock) -> None:
        store = JobStore(db, clock=clock, stall_timeout_ms=1_000)
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        first = store.claim(QueueName.PUBLISH)

        clock.advance(seconds=2)
        second = store.claim(QueueName.PUBLISH)
        assert second.id == "j1"
        assert second.stalled_count == 1

        with pytest.raises(LeaseLostError):
            store.ack(first, JobResult.ok())
        with pytest.raises(LeaseLostError):
            store.update_progress(first, 50)
        store.ack(second, JobResult.ok())
        assert store.get_job("j1").state is JobState.COMPLETED

    def test_job_fails_after_too_many_stalls(self, db, clock) -> None:
        store = JobStore(db, clock=clock, stall_timeout_ms=1_000, max_stalled_count=1)
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        store.claim(QueueName.PUBLISH)
        clock.advance(seconds=2)
        store.claim(QueueName.PUBLISH)
        clock.advance(seconds=2)

        assert store.claim(QueueName.PUBLISH) is None
        job = store.get_job("j1")
        assert job.state is JobState.FAILED
        assert job.last_error == STALLED_ERROR
        assert job.attempts_made == job.max_attempts

    def test_progress_is_clamped(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="j1")
        job = store.claim(QueueName.PUBLISH)
        store.update_progress(job, 150)
        assert store.get_job("j1").progress == 100


class TestAdministration:
    def test_counts(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="a")
        store.enqueue(QueueName.PUBLISH, {}, job_id="b")
        store.enqueue(QueueName.PUBLISH, {}, job_id="c", delay_ms=60_000)
        store.ack(store.claim(QueueName.PUBLISH), JobResult.ok())
        store.claim(QueueName.PUBLISH)

        counts = store.get_counts(QueueName.PUBLISH)
        assert counts.to_dict() == {
            "waiting": 0, "active": 1, "completed": 1, "failed": 0, "delayed": 1,
        }

    def test_clean_removes_finished_jobs(self, store) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="a")
        store.ack(store.claim(QueueName.PUBLISH), JobResult.ok())
        assert store.clean(QueueName.PUBLISH, JobState.COMPLETED) == 1
        assert store.get_job("a") is None
        assert store.job_history("a") == []

    def test_clean_rejects_unfinished_states(self, store) -> None:
        with pytest.raises(ValueError):
            store.clean(QueueName.PUBLISH, JobState.WAITING)

    def test_remove_only_waiting_jobs(self, store, clock) -> None:
        store.enqueue(QueueName.PUBLISH, {}, job_id="a")
        clock.advance(ms=1)
        store.enqueue(QueueName.PUBLISH, {}, job_id="b")
        store.claim(QueueName.PUBLISH)

        assert not store.remove("a")
        assert store.remove("b")
        with pytest.raises(NotFoundError):
            store.remove("missing")

    def test_ping(self, store) -> None:
        assert store.ping()


class TestBackoff:
    @pytest.mark.parametrize(
        "attempts,expected",
        [(0, 0), (1, 1_000), (2, 2_000), (3, 4_000), (4, 8_000), (10, 10_000)],
    )
    def test_backoff_delay(self, attempts, expected) -> None:
        assert backoff_delay(attempts, 1_000, 10_000) == expected
