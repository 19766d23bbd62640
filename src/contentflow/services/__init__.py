"""Services module for contentflow."""

from contentflow.services.interfaces import (
    ContentAI,
    CredentialsProvider,
    EntityStore,
    PlatformPublisher,
    PublishOutcome,
    PublishStatus,
)
from contentflow.services.memory import InMemoryEntityStore, StaticCredentialsProvider
from contentflow.services.publisher import HttpPlatformPublisher

__all__ = [
    "ContentAI",
    "CredentialsProvider",
    "EntityStore",
    "PlatformPublisher",
    "PublishOutcome",
    "PublishStatus",
    "InMemoryEntityStore",
    "StaticCredentialsProvider",
    "HttpPlatformPublisher",
]
