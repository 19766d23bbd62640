"""Generate-Posts stage."""

import logging
from typing import Any

from contentflow.errors import NotFoundError, ValidationError
from contentflow.jobs.models import JobResult, QueueName
from contentflow.models.content import SUPPORTED_PLATFORMS, InsightStatus
from contentflow.models.pipeline import PipelineStage
from contentflow.pipeline.base import StageContext, StageProcessor
from contentflow.services.interfaces import ContentAI, EntityStore

logger = logging.getLogger(__name__)


class GeneratePostsProcessor(StageProcessor):
    """Drafts platform posts from an approved insight.

    Posts are created as ``needs_review`` and are only scheduled after a
    human approves them.
    """

    def __init__(
        self,
        entities: EntityStore,
        ai: ContentAI,
        supported_platforms: tuple[str, ...] = SUPPORTED_PLATFORMS,
    ) -> None:
        self.entities = entities
        self.ai = ai
        self.supported_platforms = supported_platforms

    @property
    def queue(self) -> QueueName:
        return QueueName.GENERATE_POSTS

    @property
    def stage(self) -> PipelineStage:
        return PipelineStage.GENERATE

    @property
    def display_name(self) -> str:
        return "Generate posts"

    def entity_id(self, payload: dict[str, Any]) -> str:
        return payload.get("insight_id", "")

    async def execute(self, payload: dict[str, Any], context: StageContext) -> JobResult:
        """Generate posts.

        Payload:
            insight_id (str): Approved insight
            transcript_id (str): Owning transcript
            content (str): Source text built from the insight
            platforms (list[str]): Target platforms
        """
        insight_id = payload.get("insight_id")
        if not insight_id:
            raise ValidationError("insight_id is required")
        platforms = list(payload.get("platforms") or [])
        if not platforms:
            raise ValidationError("At least one platform is required")
        unsupported = [p for p in platforms if p not in self.supported_platforms]
        if unsupported:
            raise ValidationError(f"Unsupported platform: {', '.join(unsupported)}")

        context.report_progress(10, "Loading insight")
        insight = await self.entities.get_insight(insight_id)
        if insight is None:
            raise NotFoundError(f"Insight not found: {insight_id}")

        if insight.status is InsightStatus.POSTS_GENERATED:
            existing = await self.entities.list_posts(insight_id)
            logger.info("Posts for %s already generated, skipping", insight_id)
            context.report_progress(100, "Already generated")
            return JobResult.ok({"post_ids": [p.id for p in existing], "skipped": True})

        content = payload.get("content") or insight.post_source_text()
        result = await self.ai.generate_posts(insight_id, content, platforms)

        context.report_progress(80, f"Saving {len(result.posts)} posts")
        posts = await self.entities.create_posts(insight_id, result.posts)
        await self.entities.update_insight(
            insight_id, status=InsightStatus.POSTS_GENERATED, error=None
        )

        context.report_progress(90, "Posts ready for review")
        await context.advance(self.stage, {"insight_id": insight_id, "post_ids": [p.id for p in posts]})

        context.report_progress(100, "Posts generated")
        return JobResult.ok(
            {
                "post_ids": [p.id for p in posts],
                "tokens": result.tokens,
                "cost": result.cost,
                "ai_duration_ms": result.duration_ms,
            }
        )

    async def mark_entity_failed(self, payload: dict[str, Any], error: str) -> None:
        insight_id = payload.get("insight_id")
        if insight_id and await self.entities.get_insight(insight_id):
            await self.entities.update_insight(insight_id, status=InsightStatus.FAILED, error=error)
