"""Clean-Transcript stage."""

import logging
from typing import Any

from contentflow.errors import NotFoundError, ValidationError
from contentflow.jobs.models import JobResult, QueueName
from contentflow.models.content import TranscriptStatus
from contentflow.models.pipeline import PipelineStage
from contentflow.pipeline.base import StageContext, StageProcessor
from contentflow.services.interfaces import ContentAI, EntityStore

logger = logging.getLogger(__name__)


class CleanTranscriptProcessor(StageProcessor):
    """Cleans a raw transcript with the AI service.

    On success the transcript becomes ``cleaned`` and the orchestrator is
    asked for the next stage, which auto-advances to insight extraction.
    """

    def __init__(self, entities: EntityStore, ai: ContentAI) -> None:
        self.entities = entities
        self.ai = ai

    @property
    def queue(self) -> QueueName:
        return QueueName.CLEAN_TRANSCRIPT

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage.CLEAN

    @property
    def display_name(self) -> str:
        return "Clean transcript"

    def entity_id(self, payload: dict[str, Any]) -> str:
        return payload.get("transcript_id", "")

    async def execute(self, payload: dict[str, Any], context: StageContext) -> JobResult:
        """Clean the transcript.

        Payload:
            transcript_id (str): Transcript to clean
            raw_content (str): Raw text; falls back to the stored raw content
        """
        transcript_id = payload.get("transcript_id")
        if not transcript_id:
            raise ValidationError("transcript_id is required")

        context.report_progress(10, "Loading transcript")
        transcript = await self.entities.get_transcript(transcript_id)
        if transcript is None:
            raise NotFoundError(f"Transcript not found: {transcript_id}")

        if transcript.cleaned_content and transcript.status in (
            TranscriptStatus.CLEANED,
            TranscriptStatus.INSIGHTS_GENERATED,
        ):
            logger.info("Transcript %s already cleaned, skipping", transcript_id)
            if transcript.status is TranscriptStatus.CLEANED:
                await context.advance(
                    self.stage,
                    {"transcript_id": transcript_id, "cleaned_content": transcript.cleaned_content},
                )
            context.report_progress(100, "Already cleaned")
            return JobResult.ok(
                {
                    "transcript_id": transcript_id,
                    "cleaned_content": transcript.cleaned_content,
                    "skipped": True,
                }
            )

        raw_content = payload.get("raw_content") or transcript.raw_content
        if not raw_content or not raw_content.strip():
            raise ValidationError(f"Transcript {transcript_id} has no content")

        await self.entities.update_transcript(
            transcript_id, status=TranscriptStatus.PROCESSING, error=None
        )
        result = await self.ai.clean_transcript(transcript_id, raw_content)

        context.report_progress(70, "Saving cleaned transcript")
        await self.entities.update_transcript(
            transcript_id,
            cleaned_content=result.cleaned_content,
            word_count=result.word_count,
            status=TranscriptStatus.CLEANED,
        )

        context.report_progress(90, "Requesting insight extraction")
        next_job_id = await context.advance(
            self.stage,
            {"transcript_id": transcript_id, "cleaned_content": result.cleaned_content},
        )

        context.report_progress(100, "Transcript cleaned")
        return JobResult.ok(
            {
                "transcript_id": transcript_id,
                "cleaned_content": result.cleaned_content,
                "word_count": result.word_count,
                "ai_duration_ms": result.duration_ms,
                "next_job_id": next_job_id,
            }
        )

    async def mark_entity_failed(self, payload: dict[str, Any], error: str) -> None:
        transcript_id = payload.get("transcript_id")
        if transcript_id and await self.entities.get_transcript(transcript_id):
            await self.entities.update_transcript(
                transcript_id, status=TranscriptStatus.FAILED, error=error
            )
