"""Scheduler processing loop.

Each run reads the ready rows from the table, publishes them in batches of
``max_concurrent`` and records the outcome on each row. One row's failure
never aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

from contentflow.errors import ErrorKind, classify_error
from contentflow.jobs.ratelimit import GLOBAL_KEY, FixedWindowRateLimiter
from contentflow.models.scheduling import ProcessorStats, ScheduledPost, ScheduledPostStatus
from contentflow.scheduler.service import Scheduler
from contentflow.services.interfaces import PublishOutcome, PublishStatus

if TYPE_CHECKING:
    from contentflow.pipeline.stages.publish_post import PublishPostProcessor

logger = logging.getLogger(__name__)


class RowOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    THROTTLED = "throttled"
    SKIPPED = "skipped"


class SchedulerProcessor:
    """Publishes due scheduled posts."""

    def __init__(
        self,
        scheduler: Scheduler,
        publisher: PublishPostProcessor,
        rate_limiter: FixedWindowRateLimiter | None = None,
        max_concurrent: int = 3,
        retry_delay_seconds: float = 1.0,
        fetch_limit: int = 100,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the processor.

        Args:
            scheduler: Scheduled post table
            publisher: Publish-Post processor whose ``deliver`` does the work
            rate_limiter: Optional admission control (global and per platform)
            max_concurrent: Rows published concurrently per batch
            retry_delay_seconds: Pause between batches
            fetch_limit: Maximum rows handled per run
            sleep: Sleep function (replaced in tests)
        """
        self.scheduler = scheduler
        self.publisher = publisher
        self.rate_limiter = rate_limiter
        self.max_concurrent = max(max_concurrent, 1)
        self.retry_delay_seconds = retry_delay_seconds
        self.fetch_limit = fetch_limit
        self._sleep = sleep
        self._stop = asyncio.Event()

    async def run_once(self) -> ProcessorStats:
        """Process everything that is ready right now.

        Returns:
            Counters of processed, succeeded, failed and throttled rows
        """
        stats = ProcessorStats()
        ready = self.scheduler.get_ready(self.fetch_limit)
        if not ready:
            logger.debug("No scheduled posts ready")
            return stats

        logger.info("Processing %d ready scheduled posts", len(ready))
        batches = [
            ready[i:i + self.max_concurrent] for i in range(0, len(ready), self.max_concurrent)
        ]
        for index, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self._process_row(row) for row in batch), return_exceptions=True
            )
            for row, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("Unexpected error processing %s: %s", row.id, result)
                    result = RowOutcome.FAILED
                if result is RowOutcome.SKIPPED:
                    continue
                stats.processed += 1
                if result is RowOutcome.SUCCEEDED:
                    stats.succeeded += 1
                elif result is RowOutcome.THROTTLED:
                    stats.throttled += 1
                else:
                    stats.failed += 1

            if index < len(batches) - 1 and self.retry_delay_seconds > 0:
                await self._sleep(self.retry_delay_seconds)

        logger.info(
            "Scheduler run: %d processed, %d succeeded, %d failed, %d throttled",
            stats.processed, stats.succeeded, stats.failed, stats.throttled,
        )
        return stats

    async def run_continuous(
        self,
        interval_minutes: float = 5.0,
        max_runs: int | None = None,
    ) -> ProcessorStats:
        """Call :meth:`run_once` every ``interval_minutes`` until stopped."""
        self._stop.clear()
        total = ProcessorStats()
        runs = 0
        logger.info("Scheduler running every %.1f minutes", interval_minutes)
        while not self._stop.is_set():
            try:
                total = total.merge(await self.run_once())
            except Exception:
                logger.exception("Scheduler run failed")
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_minutes * 60)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped after %d runs", runs)
        return total

    def stop(self) -> None:
        self._stop.set()

    async def _process_row(self, row: ScheduledPost) -> RowOutcome:
        token = self.scheduler.claim(row.id)
        if token is None:
            logger.debug("Scheduled post %s already claimed", row.id)
            return RowOutcome.SKIPPED

        if not self._admit(row.platform):
            self.scheduler.release(row.id, token)
            return RowOutcome.THROTTLED

        try:
            outcome = await self.publisher.deliver(row, token)
        except Exception as e:
            logger.warning("Publishing %s raised: %s", row.id, e)
            outcome = PublishOutcome.failed(str(e) or e.__class__.__name__, classify_error(e))

        if outcome.status is PublishStatus.PUBLISHED:
            return RowOutcome.SUCCEEDED

        if outcome.status is PublishStatus.RATE_LIMITED:
            logger.info("%s throttled %s, retry in %dms", row.platform, row.id, outcome.retry_after_ms)
            self.scheduler.release(row.id, token)
            return RowOutcome.THROTTLED

        error = outcome.error or "publish failed"
        if outcome.error_kind in (ErrorKind.VALIDATION, ErrorKind.PERMANENT):
            updated = self.scheduler.mark_failed(row.id, error, token)
            if updated.status is ScheduledPostStatus.FAILED:
                await self.publisher.mark_post_failed(row, error)
            return RowOutcome.FAILED

        updated = self.scheduler.retry(row.id, error, token)
        if updated.status is ScheduledPostStatus.FAILED:
            await self.publisher.mark_post_failed(updated, updated.error_message or error)
        return RowOutcome.FAILED

    def _admit(self, platform: str) -> bool:
        if self.rate_limiter is None:
            return True
        decision = self.rate_limiter.admit(GLOBAL_KEY)
        if not decision.allowed:
            logger.info("Global publish limit reached, retry in %dms", decision.retry_after_ms)
            return False
        decision = self.rate_limiter.admit(platform)
        if not decision.allowed:
            self.rate_limiter.refund(GLOBAL_KEY)
            logger.info("%s rate limit reached, retry in %dms", platform, decision.retry_after_ms)
            return False
        return True
