"""HTTP platform publisher."""

import logging
from typing import Any

import httpx

from contentflow.errors import ErrorKind
from contentflow.models.content import SUPPORTED_PLATFORMS
from contentflow.services.interfaces import PublishOutcome

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_MS = 60_000


def _retry_after_ms(response: httpx.Response) -> int:
    """Parse a Retry-After header given in seconds."""
    value = response.headers.get("Retry-After")
    if value is None:
        return DEFAULT_RETRY_AFTER_MS
    try:
        return max(int(float(value) * 1000), 0)
    except ValueError:
        return DEFAULT_RETRY_AFTER_MS


class HttpPlatformPublisher:
    """Publishes posts through the social-media HTTP API.

    Maps responses onto :class:`PublishOutcome`: 2xx is published, 429 is
    rate limited, 5xx and network errors are transient, and any other 4xx
    is a validation failure.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: float = 30.0,
        supported_platforms: tuple[str, ...] = SUPPORTED_PLATFORMS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the publisher.

        Args:
            base_url: Base URL of the social-media API.
            timeout: HTTP request timeout in seconds.
            supported_platforms: Platforms this publisher accepts.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.supported_platforms = supported_platforms
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def publish(
        self,
        platform: str,
        content: str,
        credentials: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> PublishOutcome:
        if platform not in self.supported_platforms:
            return PublishOutcome.failed(
                f"Unsupported platform: {platform}", kind=ErrorKind.VALIDATION
            )

        headers = {}
        if credentials.get("access_token"):
            headers["Authorization"] = f"Bearer {credentials['access_token']}"

        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/social-media/{platform}/post",
                    json={"content": content, "metadata": metadata or {}},
                    headers=headers,
                )
            except httpx.TimeoutException as e:
                logger.warning("Publish to %s timed out: %s", platform, e)
                return PublishOutcome.failed(f"Timed out publishing to {platform}")
            except httpx.RequestError as e:
                logger.warning("Publish to %s failed to connect: %s", platform, e)
                return PublishOutcome.failed(f"Failed to reach {platform} API: {e}")

        if response.status_code == 429:
            return PublishOutcome.rate_limited(
                _retry_after_ms(response), error=f"{platform} rate limit exceeded"
            )
        if response.status_code >= 500:
            return PublishOutcome.failed(
                f"{platform} API error {response.status_code}", kind=ErrorKind.TRANSIENT
            )
        if response.status_code >= 400:
            return PublishOutcome.failed(
                f"{platform} rejected post ({response.status_code}): {response.text}",
                kind=ErrorKind.VALIDATION,
            )

        body = response.json() if response.content else {}
        external_id = body.get("id") or body.get("external_post_id") or body.get("postId")
        logger.info("Published to %s (external id %s)", platform, external_id)
        return PublishOutcome.published(external_post_id=external_id)

    async def health_check(self) -> bool:
        """Check whether the social-media API is reachable."""
        async with self._client() as client:
            try:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
            except httpx.RequestError:
                return False
