"""Extract-Insights stage."""

import logging
from typing import Any

from contentflow.errors import NotFoundError, ValidationError
from contentflow.jobs.models import JobResult, QueueName
from contentflow.models.content import TranscriptStatus
from contentflow.models.pipeline import PipelineStage
from contentflow.pipeline.base import StageContext, StageProcessor
from contentflow.services.interfaces import ContentAI, EntityStore

logger = logging.getLogger(__name__)


class ExtractInsightsProcessor(StageProcessor):
    """Extracts insights from a cleaned transcript.

    Insights are created as ``needs_review``; post generation waits for a
    human to approve them.
    """

    def __init__(self, entities: EntityStore, ai: ContentAI) -> None:
        self.entities = entities
        self.ai = ai

    @property
    def queue(self) -> QueueName:
        return QueueName.EXTRACT_INSIGHTS

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage.EXTRACT

    @property
    def display_name(self) -> str:
        return "Extract insights"

    def entity_id(self, payload: dict[str, Any]) -> str:
        return payload.get("transcript_id", "")

    async def execute(self, payload: dict[str, Any], context: StageContext) -> JobResult:
        transcript_id = payload.get("transcript_id")
        if not transcript_id:
            raise ValidationError("transcript_id is required")

        context.report_progress(10, "Loading transcript")
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")

        if transcript.status is TranscriptStatus.INSIGHTS_GENERATED:
            existing = await self.entities.list_insights(transcript_id)
            logger.info("Insights for %s already extracted, skipping", transcript_id)
            context.report_progress(100, "Already extracted")
            return JobResult.ok(
                {"insight_ids": [i.id for i in existing], "skipped": True}
            )

        cleaned = payload.get("cleaned_content") or transcript.cleaned_content
        if not cleaned or not cleaned.strip():
            raise ValidationError(f"Transcript {transcript_id} has not been cleaned")

        result = await self.ai.extract_insights(transcript_id, cleaned)

        context.report_progress(80, f"Saving {len(result.insights)} insights")
        insights = await self.entities.create_insights(transcript_id, result.insights)
        await self.entities.update_transcript(
            transcript_id, status=TranscriptStatus.INSIGHTS_GENERATED, error=None
        )

        context.report_progress(90, "Insights ready for review")
        await context.advance(
            self.stage,
            {"transcript_id": transcript_id, "insight_ids": [i.id for i in insights]},
        )

        context.report_progress(100, "Insights extracted")
        return JobResult.ok(
            {
                "insight_ids": [i.id for i in insights],
                "tokens": result.tokens,
                "cost": result.cost,
                "ai_duration_ms": result.duration_ms,
            }
        )

    async def mark_entity_failed(self, payload: dict[str, Any], error: str) -> None:
        transcript_id = payload.get("transcript_id")
        if transcript_id and await self.entities.get_transcript(transcript_id):
            await self.entities.update_transcript(
                transcript_id, status=TranscriptStatus.FAILED, error=error
            )
