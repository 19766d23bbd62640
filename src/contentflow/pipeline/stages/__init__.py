"""Stage processors.

Available stages:
- CleanTranscriptProcessor: AI transcript cleaning, auto-advances to extraction
- ExtractInsightsProcessor: AI insight extraction, stops for human review
- GeneratePostsProcessor: AI post drafting per approved insight, stops for review
- PublishPostProcessor: Platform delivery (terminal)
"""

from contentflow.pipeline.stages.clean_transcript import CleanTranscriptProcessor
from contentflow.pipeline.stages.extract_insights import ExtractInsightsProcessor
from contentflow.pipeline.stages.generate_posts import GeneratePostsProcessor
from contentflow.pipeline.stages.publish_post import PublishPostProcessor

__all__ = [
    "CleanTranscriptProcessor",
    "ExtractInsightsProcessor",
    "GeneratePostsProcessor",
    "PublishPostProcessor",
]
