"""Time helpers shared by the stores.

All timestamps are UTC. Persisted ISO strings use a fixed-width format so
that lexical ordering in SQL matches chronological ordering.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    """Milliseconds since the epoch."""
    return int(dt.timestamp() * 1000)


def to_iso(dt: datetime) -> str:
    """Format as fixed-width UTC ISO-8601 (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime."""
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
