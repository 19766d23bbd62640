"""Base class for stage processors."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from contentflow.errors import ErrorKind, TransientError, classify_error
from contentflow.jobs.models import Job, JobResult, QueueName
from contentflow.models.pipeline import PipelineStage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]
AdvanceCallback = Callable[[PipelineStage, str | None, dict[str, Any]], Awaitable[str | None]]


@dataclass
class StageContext:
    """Per-attempt context handed to a processor by the job manager."""

    job: Job
    pipeline_id: str | None = None
    timeout_ms: int | None = None
    progress_callback: ProgressCallback | None = None
    advance_callback: AdvanceCallback | None = None

    @property
    def is_final_attempt(self) -> bool:
        return self.job.is_final_attempt

    def report_progress(self, progress: int, message: str) -> None:
        if self.progress_callback:
            self.progress_callback(min(max(int(progress), 0), 100), message)

    async def advance(self, completed: PipelineStage, payload: dict[str, Any]) -> str | None:
        """Ask the orchestrator for the stage after ``completed``."""
        if self.advance_callback is None:
            return None
        return await self.advance_callback(completed, self.pipeline_id, payload)


class StageProcessor(ABC):
    """Abstract base class for stage processors.

    Subclasses implement :meth:`execute`. :meth:`process` wraps it with
    timing, the per-queue timeout and the failure policy: non-retryable
    errors and the final failed attempt write a durable failed status to the
    owning entity.
    """

    @property
    @abstractmethod
    def queue(self) -> QueueName:
        """Queue this processor consumes."""
        ...

    @property
    @abstractmethod
    def stage(self) -> PipelineStage:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for logs and monitoring."""
        ...

    @abstractmethod
    async def execute(self, payload: dict[str, Any], context: StageContext) -> JobResult:
        """Do the stage's work.

        Args:
            payload: Job payload
            context: Attempt context (progress, advancement, final-attempt flag)

        Returns:
            JobResult with stage-specific data

        Raises:
            ContentFlowError: Tagged with the kind of failure
        """
        ...

    def entity_id(self, payload: dict[str, Any]) -> str:
        """Id of the entity this job works on."""
        return ""

    async def mark_entity_failed(self, payload: dict[str, Any], error: str) -> None:
        """Write a durable failed status to the owning entity.

        Override in processors that own an entity.
        """
        pass

    async def process(self, job: Job, context: StageContext) -> JobResult:
        """Run one attempt and apply the failure policy.

        Retryable errors are re-raised so the store applies backoff, except
        on the final attempt where a failed result is returned instead.
        Non-retryable errors are re-raised after the entity is marked failed.
        """
        started = time.monotonic()
        try:
            if context.timeout_ms:
                result = await asyncio.wait_for(
                    self.execute(job.payload, context), timeout=context.timeout_ms / 1000
                )
            else:
                result = await self.execute(job.payload, context)
        except asyncio.TimeoutError:
            error = TransientError(f"{self.display_name} timed out after {context.timeout_ms}ms")
            final = await self.handle_failure(job, context, error)
            if final is not None:
                final.processing_duration_ms = _elapsed_ms(started)
                return final
            raise error from None
        except Exception as e:
            final = await self.handle_failure(job, context, e)
            if final is not None:
                final.processing_duration_ms = _elapsed_ms(started)
                return final
            raise

        result.processing_duration_ms = _elapsed_ms(started)
        return result

    async def handle_failure(self, job: Job, context: StageContext, exc: BaseException) -> JobResult | None:
        """Apply the failure policy to an exception raised by :meth:`execute`.

        Returns:
            A failed JobResult when the failure is final, otherwise None
            (the caller re-raises for backoff or re-queue).
        """
        kind = classify_error(exc)
        message = str(exc) or exc.__class__.__name__
        if kind is ErrorKind.RATE_LIMITED:
            return None
        if kind is ErrorKind.TRANSIENT and not context.is_final_attempt:
            logger.warning(
                "%s attempt %d/%d failed, will retry: %s",
                self.display_name, job.attempt_number, job.max_attempts, message,
            )
            return None

        logger.error("%s failed permanently for %s: %s", self.display_name, job.id, message)
        await self.mark_entity_failed(job.payload, message)
        if kind is ErrorKind.TRANSIENT:
            return JobResult.fail(message)
        return None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
