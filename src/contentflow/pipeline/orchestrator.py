"""Pipeline orchestrator.

Owns the stage -> next-stage map and the human-review gates. It runs no
business logic: it enqueues stage jobs, keeps per-pipeline flags (paused,
cancelled) and derives where a transcript currently sits.

A pipeline is keyed by its transcript id.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from contentflow.clock import Clock, to_iso, to_ms, utc_now
from contentflow.db import Database
from contentflow.errors import InvalidTransitionError, NotFoundError, ValidationError
from contentflow.jobs.models import JobState, QueueName, policy_for
from contentflow.jobs.store import JobStore
from contentflow.jobs.tracker import ProcessingJobTracker
from contentflow.models.content import (
    SUPPORTED_PLATFORMS,
    InsightStatus,
    PostStatus,
    TranscriptStatus,
)
from contentflow.models.pipeline import (
    BlockingItem,
    PipelineProgress,
    PipelineStage,
    PipelineStatus,
    StageProgress,
)
from contentflow.models.processing import ProcessingEvent, ProcessingJob, ProcessingStatus
from contentflow.models.scheduling import ScheduledPost, ScheduledPostStatus
from contentflow.scheduler.service import Scheduler
from contentflow.services.interfaces import EntityStore

logger = logging.getLogger(__name__)

NEXT_STAGE: dict[PipelineStage, PipelineStage | None] = {
    PipelineStage.CLEAN: PipelineStage.EXTRACT,
    PipelineStage.EXTRACT: PipelineStage.GENERATE,
    PipelineStage.GENERATE: PipelineStage.PUBLISH,
    PipelineStage.PUBLISH: None,
}

# Insights and posts need human approval before the next stage.
AUTO_ADVANCE: dict[PipelineStage, bool] = {
    PipelineStage.CLEAN: True,
    PipelineStage.EXTRACT: False,
    PipelineStage.GENERATE: False,
    PipelineStage.PUBLISH: False,
}

STAGE_QUEUES: dict[PipelineStage, QueueName] = {
    PipelineStage.CLEAN: QueueName.CLEAN_TRANSCRIPT,
    PipelineStage.EXTRACT: QueueName.EXTRACT_INSIGHTS,
    PipelineStage.GENERATE: QueueName.GENERATE_POSTS,
    PipelineStage.PUBLISH: QueueName.PUBLISH,
}

QUEUE_STAGES = {q.value: s for s, q in STAGE_QUEUES.items()}

JOB_ID_PREFIXES: dict[PipelineStage, str] = {
    PipelineStage.CLEAN: "clean",
    PipelineStage.EXTRACT: "insights",
    PipelineStage.GENERATE: "posts",
    PipelineStage.PUBLISH: "publish",
}

_ACTIVE = "active"
_PAUSED = "paused"
_CANCELLED = "cancelled"

_IN_FLIGHT = frozenset(
    {
        ProcessingStatus.PENDING,
        ProcessingStatus.QUEUED,
        ProcessingStatus.PROCESSING,
        ProcessingStatus.FAILED,
        ProcessingStatus.RETRYING,
    }
)


class PipelineOrchestrator:
    """Addressable facade for human-review UIs and monitoring."""

    def __init__(
        self,
        db: Database,
        store: JobStore,
        tracker: ProcessingJobTracker,
        scheduler: Scheduler,
        entities: EntityStore,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.store = store
        self.tracker = tracker
        self.scheduler = scheduler
        self.entities = entities
        self._clock = clock

    # ------------------------------------------------------------------
    # Pipeline flags
    # ------------------------------------------------------------------

    def _get_flags(self, pipeline_id: str) -> dict[str, Any] | None:
        row = self.db.fetchone("SELECT * FROM pipelines WHERE id = ?", (pipeline_id,))
        if row is None:
            return None
        return {
            "status": row["status"],
            "deferred": json.loads(row["deferred"]),
            "reason": row["reason"],
        }

    def _set_flags(
        self,
        pipeline_id: str,
        status: str,
        deferred: list[dict[str, Any]] | None = None,
        reason: str | None = None,
    ) -> None:
        now = to_iso(self._clock())
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pipelines (id, status, deferred, reason, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status, deferred = excluded.deferred,
                    reason = excluded.reason, updated_at = excluded.updated_at
                """,
                (pipeline_id, status, json.dumps(deferred or []), reason, now, now),
            )

    def _require_flags(self, pipeline_id: str) -> dict[str, Any]:
        flags = self._get_flags(pipeline_id)
        if flags is None:
            raise NotFoundError(f"Pipeline not found: {pipeline_id}")
        return flags

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------

    def enqueue_stage(
        self,
        stage: PipelineStage,
        payload: dict[str, Any],
        entity_id: str,
        pipeline_id: str | None,
        priority: int = 0,
    ) -> str:
        """Enqueue a stage job and record its processing job."""
        queue = STAGE_QUEUES[stage]
        job_id = f"{JOB_ID_PREFIXES[stage]}_{entity_id}_{to_ms(self._clock())}_{uuid4().hex[:6]}"
        handle = self.store.enqueue(queue, payload, job_id=job_id, priority=priority)
        self.tracker.create(
            handle.id, queue, entity_id, pipeline_id, policy_for(queue).max_attempts
        )
        logger.info("Enqueued %s job %s for %s", stage.value, handle.id, entity_id)
        return handle.id

    def _active_job(self, pipeline_id: str, stage: PipelineStage) -> ProcessingJob | None:
        latest = self.tracker.latest_for_stage(pipeline_id, STAGE_QUEUES[stage])
        if latest is not None and latest.status in _IN_FLIGHT:
            return latest
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_pipeline(self, transcript_id: str) -> str:
        """Start processing a transcript with the Clean-Transcript stage.

        Returns:
            Id of the clean job (an in-flight one if the pipeline is running)
        """
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")

        flags = self._get_flags(transcript_id)
        if flags is not None and flags["status"] == _ACTIVE:
            active = self._active_job(transcript_id, PipelineStage.CLEAN)
            if active is not None:
                logger.info("Pipeline %s already running (%s)", transcript_id, active.id)
                return active.id

        self._set_flags(transcript_id, _ACTIVE)
        return self.enqueue_stage(
            PipelineStage.CLEAN,
            {"transcript_id": transcript_id, "raw_content": transcript.raw_content},
            entity_id=transcript_id,
            pipeline_id=transcript_id,
        )

    async def advance(
        self,
        completed: PipelineStage,
        pipeline_id: str | None,
        payload: dict[str, Any],
    ) -> str | None:
        """Request the stage after ``completed``.

        Gated stages stop here. While the pipeline is paused the request is
        stored and replayed on resume; once cancelled it is dropped.

        Returns:
            Id of the enqueued job, or None if nothing was enqueued
        """
        next_stage = NEXT_STAGE[completed]
        if next_stage is None:
            return None
        if not AUTO_ADVANCE[completed]:
            logger.info(
                "%s complete for %s, %s awaits human review",
                completed.value, pipeline_id, next_stage.value,
            )
            return None
        return self._request(next_stage, pipeline_id, payload)

    def _request(
        self,
        stage: PipelineStage,
        pipeline_id: str | None,
        payload: dict[str, Any],
        entity_id: str | None = None,
    ) -> str | None:
        entity_id = entity_id or payload.get("transcript_id") or pipeline_id or ""
        if pipeline_id is not None:
            flags = self._get_flags(pipeline_id)
            if flags is not None and flags["status"] == _CANCELLED:
                logger.info("Pipeline %s cancelled, dropping %s", pipeline_id, stage.value)
                return None
            if flags is not None and flags["status"] == _PAUSED:
                deferred = flags["deferred"]
                deferred.append({"stage": stage.value, "payload": payload, "entity_id": entity_id})
                self._set_flags(pipeline_id, _PAUSED, deferred, flags["reason"])
                logger.info("Pipeline %s paused, deferring %s", pipeline_id, stage.value)
                return None
            if stage in (PipelineStage.CLEAN, PipelineStage.EXTRACT):
                active = self._active_job(pipeline_id, stage)
                if active is not None:
                    return active.id
        return self.enqueue_stage(stage, payload, entity_id=entity_id, pipeline_id=pipeline_id)

    async def trigger_post_generation(
        self,
        insight_id: str,
        platforms: list[str] | None = None,
    ) -> str | None:
        """Generate posts for an approved insight.

        Returns:
            Job id, or None if the pipeline is paused and the request deferred

        Raises:
            ValidationError: If the insight is not approved, a platform is
                unsupported, or the pipeline was cancelled
        """
        insight = await self.entities.get_insight(insight_id)
        if insight is None:
            raise NotFoundError(f"Insight not found: {insight_id}")
        if insight.status is not InsightStatus.APPROVED:
            raise ValidationError(
                f"Insight {insight_id} must be approved before generating posts "
                f"(status: {insight.status.value})"
            )

        platforms = list(platforms or SUPPORTED_PLATFORMS)
        unsupported = [p for p in platforms if p not in SUPPORTED_PLATFORMS]
        if unsupported:
            raise ValidationError(f"Unsupported platform: {', '.join(unsupported)}")

        pipeline_id = insight.transcript_id
        flags = self._get_flags(pipeline_id)
        if flags is not None and flags["status"] == _CANCELLED:
            raise ValidationError(f"Pipeline {pipeline_id} has been cancelled")

        payload = {
            "insight_id": insight_id,
            "transcript_id": insight.transcript_id,
            "content": insight.post_source_text(),
            "platforms": platforms,
        }
        return self._request(PipelineStage.GENERATE, pipeline_id, payload, entity_id=insight_id)

    async def schedule_post(self, post_id: str, scheduled_time: datetime) -> ScheduledPost:
        """Schedule an approved post, or move its existing pending schedule."""
        post = await self.entities.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post not found: {post_id}")
        if post.status not in (PostStatus.APPROVED, PostStatus.SCHEDULED):
            raise ValidationError(
                f"Post {post_id} must be approved before scheduling (status: {post.status.value})"
            )

        existing = self.scheduler.find_active_for_post(post_id)
        if existing is not None:
            scheduled = self.scheduler.reschedule(existing.id, scheduled_time)
        else:
            insight = await self.entities.get_insight(post.insight_id)
            metadata = {
                **post.metadata,
                "post_id": post_id,
                "insight_id": post.insight_id,
                "pipeline_id": insight.transcript_id if insight else None,
            }
            scheduled_id = self.scheduler.schedule(
                post.platform, post.content, scheduled_time, metadata
            )
            scheduled = self.scheduler.get(scheduled_id)

        await self.entities.update_post(post_id, status=PostStatus.SCHEDULED)
        return scheduled

    async def unschedule_post(self, post_id: str) -> ScheduledPost:
        """Cancel a post's pending schedule and return it to ``approved``."""
        existing = self.scheduler.find_active_for_post(post_id)
        if existing is None:
            raise NotFoundError(f"No pending schedule for post {post_id}")
        cancelled = self.scheduler.cancel(existing.id)
        if await self.entities.get_post(post_id):
            await self.entities.update_post(post_id, status=PostStatus.APPROVED)
        return cancelled

    async def publish_now(self, scheduled_post_id: str) -> str:
        """Enqueue an immediate Publish-Post job for a pending scheduled post."""
        scheduled = self.scheduler.get(scheduled_post_id)
        if scheduled is None:
            raise NotFoundError(f"Scheduled post not found: {scheduled_post_id}")
        if scheduled.status is not ScheduledPostStatus.PENDING:
            raise ValidationError(
                f"Only pending posts can be published (status: {scheduled.status.value})"
            )
        return self.enqueue_stage(
            PipelineStage.PUBLISH,
            {"scheduled_post_id": scheduled_post_id, "platform": scheduled.platform},
            entity_id=scheduled_post_id,
            pipeline_id=scheduled.metadata.get("pipeline_id"),
        )

    def pause(self, pipeline_id: str, reason: str | None = None) -> None:
        """Stop advancement. In-flight jobs finish normally."""
        flags = self._require_flags(pipeline_id)
        if flags["status"] == _CANCELLED:
            raise ValidationError(f"Pipeline {pipeline_id} has been cancelled")
        self._set_flags(pipeline_id, _PAUSED, flags["deferred"], reason)
        logger.info("Pipeline %s paused", pipeline_id)

    async def resume(self, pipeline_id: str) -> list[str]:
        """Resume a paused pipeline and replay deferred advancements.

        Returns:
            Ids of the jobs enqueued by the replay
        """
        flags = self._require_flags(pipeline_id)
        if flags["status"] == _CANCELLED:
            raise ValidationError(f"Pipeline {pipeline_id} has been cancelled")
        self._set_flags(pipeline_id, _ACTIVE)

        job_ids = []
        for item in flags["deferred"]:
            job_id = self._request(
                PipelineStage(item["stage"]), pipeline_id, item["payload"], item.get("entity_id")
            )
            if job_id:
                job_ids.append(job_id)
        logger.info("Pipeline %s resumed, replayed %d advancements", pipeline_id, len(job_ids))
        return job_ids

    def cancel(self, pipeline_id: str, reason: str | None = None) -> int:
        """Cancel a pipeline.

        Waiting jobs are removed; a job that is already running completes and
        its result is recorded, but nothing further is enqueued.

        Returns:
            Number of queued jobs cancelled
        """
        self._require_flags(pipeline_id)
        self._set_flags(pipeline_id, _CANCELLED, [], reason)

        cancelled = 0
        for pj in self.tracker.list_for_pipeline(pipeline_id):
            if pj.status is ProcessingStatus.PROCESSING or pj.status.is_terminal:
                continue
            job = self.store.get_job(pj.id)
            if job is not None and job.state is JobState.WAITING:
                if not self.store.remove(pj.id):
                    continue
            try:
                if pj.status is ProcessingStatus.FAILED:
                    self.tracker.apply(pj.id, ProcessingEvent.RETRY)
                self.tracker.apply(pj.id, ProcessingEvent.CANCEL)
                cancelled += 1
            except InvalidTransitionError:
                logger.debug("Job %s moved on before it could be cancelled", pj.id)
        logger.info("Pipeline %s cancelled (%d queued jobs removed)", pipeline_id, cancelled)
        return cancelled

    async def retry_from_stage(self, transcript_id: str, stage: PipelineStage) -> list[str]:
        """Re-run a pipeline from ``stage``, redoing the work of that stage.

        Returns:
            Ids of the enqueued jobs
        """
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")
        self._set_flags(transcript_id, _ACTIVE)

        if stage is PipelineStage.CLEAN:
            await self.entities.update_transcript(
                transcript_id, status=TranscriptStatus.RAW, cleaned_content=None, error=None
            )
            return [await self.start_pipeline(transcript_id)]

        if stage is PipelineStage.EXTRACT:
            if not transcript.cleaned_content:
                raise ValidationError(f"Transcript {transcript_id} has not been cleaned")
            await self.entities.update_transcript(
                transcript_id, status=TranscriptStatus.CLEANED, error=None
            )
            job_id = self._request(
                PipelineStage.EXTRACT,
                transcript_id,
                {"transcript_id": transcript_id, "cleaned_content": transcript.cleaned_content},
            )
            return [job_id] if job_id else []

        if stage is PipelineStage.GENERATE:
            job_ids = []
            for insight in await self.entities.list_insights(transcript_id):
                if insight.status not in (InsightStatus.APPROVED, InsightStatus.FAILED):
                    continue
                await self.entities.update_insight(
                    insight.id, status=InsightStatus.APPROVED, error=None
                )
                job_id = await self.trigger_post_generation(insight.id)
                if job_id:
                    job_ids.append(job_id)
            return job_ids

        raise ValidationError("Publishing is retried by rescheduling the post")

    async def get_progress(self, transcript_id: str) -> PipelineProgress:
        """Fold the pipeline flags and the latest job of each stage into a status."""
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")

        jobs = self.tracker.list_for_pipeline(transcript_id)
        stages = []
        for stage, queue in STAGE_QUEUES.items():
            latest = next((j for j in reversed(jobs) if j.job_type == queue.value), None)
            stages.append(
                StageProgress(
                    stage=stage,
                    job_id=latest.id if latest else None,
                    status=latest.status if latest else ProcessingStatus.IDLE,
                    progress=latest.progress if latest else 0,
                    attempts_made=latest.attempts_made if latest else 0,
                    max_attempts=latest.max_attempts if latest else 0,
                    error=latest.error if latest else None,
                    updated_at=latest.updated_at if latest else None,
                )
            )

        awaiting = await self._awaiting_review(transcript_id)
        flags = self._get_flags(transcript_id)
        most_recent = jobs[-1] if jobs else None
        current_stage = QUEUE_STAGES.get(most_recent.job_type) if most_recent else None

        if flags is not None and flags["status"] == _CANCELLED:
            status = PipelineStatus.CANCELLED
        elif flags is not None and flags["status"] == _PAUSED:
            status = PipelineStatus.PAUSED
        elif most_recent is None:
            status = PipelineStatus.PENDING
        elif any(j.status in _IN_FLIGHT for j in jobs):
            status = PipelineStatus.PROCESSING
        elif most_recent.status in (ProcessingStatus.PERMANENTLY_FAILED, ProcessingStatus.CANCELLED):
            status = PipelineStatus.FAILED
        elif current_stage is not None and not AUTO_ADVANCE[current_stage] and awaiting:
            status = PipelineStatus.PENDING
        else:
            status = PipelineStatus.COMPLETED

        return PipelineProgress(
            pipeline_id=transcript_id,
            status=status,
            current_stage=current_stage,
            stages=stages,
            awaiting_review=awaiting,
            reason=flags["reason"] if flags else None,
        )

    async def _awaiting_review(self, transcript_id: str) -> int:
        count = 0
        for insight in await self.entities.list_insights(transcript_id):
            if insight.status is InsightStatus.NEEDS_REVIEW:
                count += 1
            for post in await self.entities.list_posts(insight.id):
                if post.status is PostStatus.NEEDS_REVIEW:
                    count += 1
        return count

    async def get_blocking_items(self, transcript_id: str) -> list[BlockingItem]:
        """Review gates and failures holding a pipeline up."""
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")

        items: list[BlockingItem] = []
        flags = self._get_flags(transcript_id)
        if flags is not None and flags["status"] == _PAUSED:
            items.append(
                BlockingItem(
                    entity_type="pipeline", entity_id=transcript_id,
                    reason=flags["reason"] or "Pipeline paused", status=_PAUSED,
                )
            )
        if transcript.status is TranscriptStatus.FAILED:
            items.append(
                BlockingItem(
                    entity_type="transcript", entity_id=transcript_id,
                    reason=transcript.error or "Processing failed", status=transcript.status.value,
                )
            )

        for insight in await self.entities.list_insights(transcript_id):
            if insight.status is InsightStatus.NEEDS_REVIEW:
                items.append(
                    BlockingItem(
                        entity_type="insight", entity_id=insight.id,
                        reason="Awaiting review", status=insight.status.value,
                    )
                )
            elif insight.status is InsightStatus.FAILED:
                items.append(
                    BlockingItem(
                        entity_type="insight", entity_id=insight.id,
                        reason=insight.error or "Post generation failed", status=insight.status.value,
                    )
                )
            for post in await self.entities.list_posts(insight.id):
                if post.status is PostStatus.NEEDS_REVIEW:
                    items.append(
                        BlockingItem(
                            entity_type="post", entity_id=post.id,
                            reason="Awaiting review", status=post.status.value,
                        )
                    )
                elif post.status is PostStatus.FAILED:
                    items.append(
                        BlockingItem(
                            entity_type="post", entity_id=post.id,
                            reason=post.error or "Publishing failed", status=post.status.value,
                        )
                    )

        for pj in self.tracker.list_for_pipeline(transcript_id):
            if pj.status is ProcessingStatus.PERMANENTLY_FAILED:
                items.append(
                    BlockingItem(
                        entity_type="job", entity_id=pj.id,
                        reason=pj.error or "Job failed", status=pj.status.value,
                    )
                )
        return items
