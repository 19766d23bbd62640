"""Publish-Post stage."""

import logging
from typing import Any

from contentflow.errors import (
    ClaimHeldError,
    ErrorKind,
    NotFoundError,
    PermanentFailure,
    RateLimitError,
    TransientError,
    ValidationError,
)
from contentflow.jobs.models import JobResult, QueueName
from contentflow.models.content import PostStatus
from contentflow.models.pipeline import PipelineStage
from contentflow.models.scheduling import ScheduledPost, ScheduledPostStatus
from contentflow.pipeline.base import StageContext, StageProcessor
from contentflow.scheduler.service import Scheduler
from contentflow.services.interfaces import (
    CredentialsProvider,
    EntityStore,
    PlatformPublisher,
    PublishOutcome,
    PublishStatus,
)

logger = logging.getLogger(__name__)

CLAIM_WAIT_MS = 5_000


class PublishPostProcessor(StageProcessor):
    """Delivers a scheduled post to its platform. Terminal stage.

    :meth:`deliver` is shared with the scheduler processor; :meth:`execute`
    is the queue path used by "publish now".
    """

    def __init__(
        self,
        scheduler: Scheduler,
        entities: EntityStore,
        publisher: PlatformPublisher,
        credentials: CredentialsProvider,
    ) -> None:
        self.scheduler = scheduler
        self.entities = entities
        self.publisher = publisher
        self.credentials = credentials

    @property
    def queue(self) -> QueueName:
        return QueueName.PUBLISH

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage.PUBLISH

    @property
    def display_name(self) -> str:
        return "Publish post"

    def entity_id(self, payload: dict[str, Any]) -> str:
        return payload.get("scheduled_post_id", "")

    async def deliver(
        self, scheduled: ScheduledPost, claim_token: str | None = None
    ) -> PublishOutcome:
        """Resolve credentials, call the platform and record a success.

        Failures are returned as outcomes, not raised. The caller must hold
        the row's publish lease and pass its token. Once the row is marked
        published, errors updating the owning post are logged and the
        outcome still reports success.
        """
        creds = await self.credentials.get_credentials(
            scheduled.platform, scheduled.metadata.get("user_id")
        )
        if not creds:
            return PublishOutcome.failed(
                f"No credentials configured for {scheduled.platform}", kind=ErrorKind.VALIDATION
            )

        outcome = await self.publisher.publish(
            scheduled.platform, scheduled.content, creds, scheduled.metadata
        )
        if outcome.status is PublishStatus.PUBLISHED:
            self.scheduler.mark_published(scheduled.id, outcome.external_post_id, claim_token)
            try:
                await self._mark_post_published(scheduled, outcome.external_post_id)
            except Exception:
                logger.exception(
                    "Published %s but could not update post %s", scheduled.id, scheduled.post_id
                )
        return outcome

    async def _mark_post_published(self, scheduled: ScheduledPost, external_post_id: str | None) -> None:
        post_id = scheduled.post_id
        if post_id and await self.entities.get_post(post_id):
            await self.entities.update_post(
                post_id,
                status=PostStatus.PUBLISHED,
                external_post_id=external_post_id,
                error=None,
            )

    async def execute(self, payload: dict[str, Any], context: StageContext) -> JobResult:
        scheduled_post_id = payload.get("scheduled_post_id")
        if not scheduled_post_id:
            raise ValidationError("scheduled_post_id is required")

        context.report_progress(10, "Loading scheduled post")
        scheduled = self.scheduler.get(scheduled_post_id)
        if scheduled is None:
            raise NotFoundError(f"Scheduled post not found: {scheduled_post_id}")
        if scheduled.status is ScheduledPostStatus.PUBLISHED:
            logger.info("Scheduled post %s already published, skipping", scheduled_post_id)
            context.report_progress(100, "Already published")
            return JobResult.ok(
                {"external_post_id": scheduled.external_post_id, "skipped": True}
            )
        if scheduled.status is not ScheduledPostStatus.PENDING:
            raise ValidationError(
                f"Scheduled post {scheduled_post_id} is {scheduled.status.value}"
            )

        claim_token = self.scheduler.claim(scheduled_post_id)
        if claim_token is None:
            raise ClaimHeldError(
                f"Scheduled post {scheduled_post_id} is being published elsewhere", CLAIM_WAIT_MS
            )
        try:
            context.report_progress(70, f"Publishing to {scheduled.platform}")
            outcome = await self.deliver(scheduled, claim_token)
        finally:
            self.scheduler.release(scheduled_post_id, claim_token)

        if outcome.status is PublishStatus.RATE_LIMITED:
            raise RateLimitError(outcome.error or "rate limited", outcome.retry_after_ms)
        if outcome.status is PublishStatus.FAILED:
            if outcome.error_kind is ErrorKind.VALIDATION:
                raise ValidationError(outcome.error)
            if outcome.error_kind is ErrorKind.PERMANENT:
                raise PermanentFailure(outcome.error)
            raise TransientError(outcome.error)

        context.report_progress(100, "Published")
        return JobResult.ok(
            {
                "scheduled_post_id": scheduled_post_id,
                "platform": scheduled.platform,
                "external_post_id": outcome.external_post_id,
            }
        )

    async def mark_entity_failed(self, payload: dict[str, Any], error: str) -> None:
        scheduled_post_id = payload.get("scheduled_post_id")
        if not scheduled_post_id:
            return
        scheduled = self.scheduler.get(scheduled_post_id)
        if scheduled is None or scheduled.status is not ScheduledPostStatus.PENDING:
            return
        updated = self.scheduler.mark_failed(scheduled_post_id, error)
        if updated.status is ScheduledPostStatus.FAILED:
            await self.mark_post_failed(updated, error)

    async def mark_post_failed(self, scheduled: ScheduledPost, error: str) -> None:
        """Fail the post that owns a scheduled entry, if there is one."""
        post_id = scheduled.post_id
        if post_id and await self.entities.get_post(post_id):
            await self.entities.update_post(post_id, status=PostStatus.FAILED, error=error)
