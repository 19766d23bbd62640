"""Runtime wiring.

:class:`Runtime` constructs the database, store, limiter, scheduler,
orchestrator and job manager and owns their connect/shutdown lifecycle.
Nothing here is a module-level singleton; the API and CLI each build one.
"""

from __future__ import annotations

import logging
from pathlib import Path

from contentflow.clock import Clock, utc_now
from contentflow.config import Settings
from contentflow.db import Database
from contentflow.jobs.manager import JobManager
from contentflow.jobs.ratelimit import GLOBAL_KEY, FixedWindowRateLimiter
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
    ContentAI,
    CredentialsProvider,
    EntityStore,
    PlatformPublisher,
)
from contentflow.services.memory import InMemoryEntityStore, StaticCredentialsProvider
from contentflow.services.publisher import HttpPlatformPublisher

logger = logging.getLogger(__name__)


def build_rate_limiter(
    settings: Settings, db: Database, clock: Clock = utc_now
) -> FixedWindowRateLimiter:
    limits = dict(settings.platform_rate_limits)
    limits[GLOBAL_KEY] = (settings.global_publish_limit, settings.global_publish_window_seconds)
    return FixedWindowRateLimiter(db, limits, clock=clock)


class Runtime:
    """Everything the pipeline needs, explicitly constructed.

    The AI stages are only registered when a :class:`ContentAI` is given;
    publishing and scheduling work without one.
    """

    def __init__(
        self,
        settings: Settings,
        entities: EntityStore | None = None,
        ai: ContentAI | None = None,
        publisher: PlatformPublisher | None = None,
        credentials: CredentialsProvider | None = None,
        clock: Clock = utc_now,
        database_path: Path | str | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.db = Database(database_path if database_path is not None else settings.database_path)
        self.entities = entities or InMemoryEntityStore(clock=clock)
        self.ai = ai
        self.publisher = publisher or HttpPlatformPublisher(
            base_url=settings.publisher_base_url,
            timeout=settings.publisher_timeout_seconds,
        )
        self.credentials = credentials or StaticCredentialsProvider(settings.platform_tokens)

        self.store = JobStore(
            self.db,
            clock=clock,
            stall_timeout_ms=int(settings.stall_timeout_seconds * 1000),
            max_stalled_count=settings.max_stalled_count,
        )
        self.tracker = ProcessingJobTracker(self.db, clock=clock)
        self.rate_limiter = build_rate_limiter(settings, self.db, clock)
        self.scheduler = Scheduler(
            self.db, clock=clock, claim_timeout_seconds=settings.scheduler_claim_timeout_seconds
        )
        self.orchestrator = PipelineOrchestrator(
            self.db, self.store, self.tracker, self.scheduler, self.entities, clock=clock
        )
        self.manager = JobManager(
            self.store,
            self.tracker,
            rate_limiter=self.rate_limiter,
            poll_interval=settings.poll_interval_seconds,
            advance_callback=self.orchestrator.advance,
        )

        self.publish_processor = PublishPostProcessor(
            self.scheduler, self.entities, self.publisher, self.credentials
        )
        self.manager.register(self.publish_processor)
        if ai is not None:
            self.manager.register(CleanTranscriptProcessor(self.entities, ai))
            self.manager.register(ExtractInsightsProcessor(self.entities, ai))
            self.manager.register(GeneratePostsProcessor(self.entities, ai))

        self.scheduler_processor = SchedulerProcessor(
            self.scheduler,
            self.publish_processor,
            rate_limiter=self.rate_limiter,
            max_concurrent=settings.scheduler_max_concurrent,
            retry_delay_seconds=settings.scheduler_retry_delay_seconds,
        )

    def connect(self) -> None:
        """Open the database. Workers are started separately."""
        self.db.connect()

    async def start_workers(self) -> None:
        await self.manager.start()

    async def shutdown(self) -> None:
        """Stop the scheduler loop and workers, then close the database."""
        self.scheduler_processor.stop()
        await self.manager.shutdown()
        self.db.close()
        logger.info("Runtime shut down")
