"""Job manager: per-queue worker pools over the durable store.

Workers claim jobs, run the registered stage processor and branch on the
error kind of any failure: validation and permanent errors fail the job at
once, transient errors go through backoff, and rate-limit signals put the
job back without consuming an attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from contentflow.errors import (
    ErrorKind,
    InvalidTransitionError,
    LeaseLostError,
    RateLimitError,
    classify_error,
)
from contentflow.jobs.models import Job, JobResult, JobState, QueueName, policy_for, queue_key
from contentflow.jobs.ratelimit import GLOBAL_KEY, FixedWindowRateLimiter
from contentflow.jobs.store import JobStore
from contentflow.jobs.tracker import ProcessingJobTracker
from contentflow.models.processing import ProcessingEvent, ProcessingStatus
from contentflow.pipeline.base import AdvanceCallback, StageContext, StageProcessor

logger = logging.getLogger(__name__)

# Extra lease time on top of the queue timeout before a job counts as stalled.
LEASE_GRACE_MS = 30_000


class JobManager:
    """Runs stage processors against the job store with concurrency control.

    Each registered queue gets ``concurrency`` worker tasks (from its queue
    policy). :meth:`process_next` runs a single job and is what the workers
    loop over.
    """

    def __init__(
        self,
        store: JobStore,
        tracker: ProcessingJobTracker,
        rate_limiter: FixedWindowRateLimiter | None = None,
        poll_interval: float = 0.5,
        advance_callback: AdvanceCallback | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.advance_callback = advance_callback
        self._processors: dict[str, StageProcessor] = {}
        self._tasks: list[asyncio.Task] = []
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, processor: StageProcessor) -> None:
        """Register a stage processor for its queue."""
        self._processors[processor.queue.value] = processor
        logger.info("Registered processor: %s -> %s", processor.queue.value, processor.display_name)

    def get_processor(self, queue: QueueName | str) -> StageProcessor | None:
        return self._processors.get(queue_key(queue))

    @property
    def queues(self) -> list[str]:
        return list(self._processors)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start worker tasks for every registered queue."""
        if self._running:
            return
        self._running = True
        for queue in self._processors:
            concurrency = policy_for(queue).concurrency
            for i in range(concurrency):
                self._tasks.append(
                    asyncio.create_task(self._worker(queue), name=f"worker-{queue}-{i}")
                )
        logger.info("Started %d workers across %d queues", len(self._tasks), len(self._processors))

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop workers, letting in-flight jobs finish within ``timeout``."""
        if not self._running:
            return
        self._running = False
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("Job manager shut down")

    async def _worker(self, queue: str) -> None:
        while self._running:
            try:
                job = await self.process_next(queue)
            except Exception:
                logger.exception("Worker for %s hit an unexpected error", queue)
                job = None
            if job is None:
                await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_next(self, queue: QueueName | str) -> Job | None:
        """Claim and run one job from ``queue``.

        Returns:
            The processed job, or None if nothing was claimable
        """
        name = queue_key(queue)
        processor = self._processors.get(name)
        if processor is None:
            raise ValueError(f"No processor registered for queue: {name}")

        policy = policy_for(name)
        job = self.store.claim(name, lease_ms=policy.timeout_ms + LEASE_GRACE_MS)
        if job is None:
            return None
        if name == QueueName.PUBLISH.value and not self._admit(job):
            return None

        await self._run(job, processor)
        return job

    async def drain(self, queue: QueueName | str | None = None, max_jobs: int = 1000) -> int:
        """Process due jobs until none are left. Returns the number processed."""
        queues = [queue_key(queue)] if queue is not None else list(self._processors)
        processed = 0
        progressed = True
        while progressed and processed < max_jobs:
            progressed = False
            for name in queues:
                if await self.process_next(name) is not None:
                    processed += 1
                    progressed = True
        return processed

    def _admit(self, job: Job) -> bool:
        """Apply publish rate limits; a denied job is released, not failed."""
        if self.rate_limiter is None:
            return True
        decision = self.rate_limiter.admit(GLOBAL_KEY)
        if decision.allowed:
            platform = job.payload.get("platform")
            if not platform:
                return True
            decision = self.rate_limiter.admit(platform)
            if decision.allowed:
                return True
            self.rate_limiter.refund(GLOBAL_KEY)
        logger.info("Publish job %s throttled, retry in %dms", job.id, decision.retry_after_ms)
        self.store.release(job, decision.retry_after_ms)
        return False

    async def _run(self, job: Job, processor: StageProcessor) -> None:
        tracked = self.tracker.get(job.id)
        if tracked is None:
            tracked = self.tracker.create(
                job.id, job.queue_name, processor.entity_id(job.payload), None, job.max_attempts
            )
        if tracked.status is ProcessingStatus.CANCELLED:
            logger.info("Job %s was cancelled, skipping", job.id)
            self.store.ack(job, JobResult.ok({"skipped": "cancelled"}))
            return

        self._track_start(job)
        policy = policy_for(job.queue_name)
        context = StageContext(
            job=job,
            pipeline_id=tracked.pipeline_id,
            timeout_ms=policy.timeout_ms,
            progress_callback=lambda progress, message: self._on_progress(job, progress, message),
            advance_callback=self.advance_callback,
        )

        try:
            result = await processor.process(job, context)
        except LeaseLostError:
            logger.warning("Lost lease on %s during processing", job.id)
            return
        except Exception as e:
            self._handle_error(job, e)
            return

        try:
            if result.success:
                self.store.ack(job, result)
                self._track(job.id, ProcessingEvent.COMPLETE)
                logger.info("Job %s completed in %dms", job.id, result.processing_duration_ms)
            else:
                self.store.nack(
                    job, result.error or "failed", retryable=False,
                    duration_ms=result.processing_duration_ms,
                )
                self._track(job.id, ProcessingEvent.FAIL, attempts_made=job.attempts_made, error=result.error)
                self._track(job.id, ProcessingEvent.MARK_PERMANENTLY_FAILED)
        except LeaseLostError:
            logger.warning("Lost lease on %s before its result was recorded", job.id)

    def _handle_error(self, job: Job, exc: Exception) -> None:
        kind = classify_error(exc)
        message = str(exc) or exc.__class__.__name__
        try:
            if kind is ErrorKind.RATE_LIMITED:
                delay = exc.retry_after_ms if isinstance(exc, RateLimitError) else 0
                delay = delay or policy_for(job.queue_name).base_delay_ms
                self.store.release(job, delay)
                self._track(job.id, ProcessingEvent.FAIL, error=message)
                self._track(job.id, ProcessingEvent.RETRY)
                logger.info("Job %s rate limited, re-queued in %dms", job.id, delay)
            elif kind is ErrorKind.TRANSIENT:
                updated = self.store.nack(job, message, retryable=True)
                self._track(job.id, ProcessingEvent.FAIL, attempts_made=updated.attempts_made, error=message)
                if updated.state is JobState.FAILED:
                    self._track(job.id, ProcessingEvent.MARK_PERMANENTLY_FAILED)
                else:
                    self._track(job.id, ProcessingEvent.RETRY)
            elif kind in (ErrorKind.VALIDATION, ErrorKind.PERMANENT):
                updated = self.store.nack(job, message, retryable=False)
                self._track(job.id, ProcessingEvent.FAIL, attempts_made=updated.attempts_made, error=message)
                self._track(job.id, ProcessingEvent.MARK_PERMANENTLY_FAILED)
                logger.error("Job %s failed (%s): %s", job.id, kind.value, message)
            else:
                raise AssertionError(f"Unhandled error kind: {kind}")
        except LeaseLostError:
            logger.warning("Lost lease on %s while recording failure: %s", job.id, message)

    def _on_progress(self, job: Job, progress: int, message: str) -> None:
        try:
            self.store.update_progress(job, progress)
        except LeaseLostError:
            logger.warning("Lost lease on %s while reporting progress", job.id)
            return
        self._track(job.id, ProcessingEvent.PROGRESS, progress=progress)
        logger.debug("Job %s: %d%% %s", job.id, progress, message)

    def _track(self, job_id: str, event: ProcessingEvent, **fields: Any) -> None:
        """Update the processing-job view; the store stays authoritative."""
        try:
            self.tracker.apply(job_id, event, **fields)
        except InvalidTransitionError as e:
            logger.warning("Processing job %s not updated: %s", job_id, e)

    def _track_start(self, job: Job) -> None:
        try:
            self.tracker.start(job.id, job.attempts_made)
        except InvalidTransitionError as e:
            logger.warning("Processing job %s not started: %s", job.id, e)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        queue: QueueName | str,
        payload: dict[str, Any],
        entity_id: str = "",
        pipeline_id: str | None = None,
        **options: Any,
    ) -> str:
        """Enqueue a job directly and record its processing job."""
        handle = self.store.enqueue(queue, payload, **options)
        self.tracker.create(
            handle.id, queue, entity_id, pipeline_id,
            options.get("max_attempts") or policy_for(queue).max_attempts,
        )
        return handle.id

    def get_stats(self) -> dict[str, dict[str, int]]:
        """Per-queue counts of waiting, active, completed, failed and delayed jobs."""
        return {q.value: self.store.get_counts(q).to_dict() for q in QueueName}

    def health_check(self) -> dict[str, Any]:
        store_healthy = self.store.ping()
        alive = [t for t in self._tasks if not t.done()]
        processors_running = self._running and len(alive) == len(self._tasks) and bool(self._tasks)
        return {
            "healthy": store_healthy and processors_running,
            "store_healthy": store_healthy,
            "processors_running": processors_running,
            "workers": len(alive),
            "queues": {q.value: self.store.is_paused(q) for q in QueueName},
        }

    def pause_all(self) -> None:
        for q in QueueName:
            self.store.pause(q)

    def resume_all(self) -> None:
        for q in QueueName:
            self.store.resume(q)

    def clear_completed(self) -> dict[str, int]:
        return {q.value: self.store.clean(q, JobState.COMPLETED) for q in QueueName}

    def clear_failed(self) -> dict[str, int]:
        return {q.value: self.store.clean(q, JobState.FAILED) for q in QueueName}
