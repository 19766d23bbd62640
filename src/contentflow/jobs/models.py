"""Job domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class QueueName(str, Enum):
    """Queues of the content pipeline, one per stage."""

    CLEAN_TRANSCRIPT = "clean_transcript"
    EXTRACT_INSIGHTS = "extract_insights"
    GENERATE_POSTS = "generate_posts"
    PUBLISH = "publish"


class JobState(str, Enum):
    """Store-level state of a job.

    ``delayed`` is not a state: it is a waiting job whose ``run_at`` is in
    the future.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class QueuePolicy:
    """Retry, timeout and concurrency settings for one queue."""

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    timeout_ms: int
    concurrency: int = 1

    def backoff_delay(self, attempts_made: int) -> int:
        """Delay before the next attempt after ``attempts_made`` failures."""
        return backoff_delay(attempts_made, self.base_delay_ms, self.max_delay_ms)


def backoff_delay(attempts_made: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Exponential backoff: ``min(base * 2^(attempts_made - 1), max)``."""
    if attempts_made < 1:
        return 0
    return min(base_delay_ms * 2 ** (attempts_made - 1), max_delay_ms)


QUEUE_POLICIES: dict[QueueName, QueuePolicy] = {
    QueueName.CLEAN_TRANSCRIPT: QueuePolicy(
        max_attempts=3, base_delay_ms=5_000, max_delay_ms=30_000,
        timeout_ms=5 * 60_000, concurrency=2,
    ),
    QueueName.EXTRACT_INSIGHTS: QueuePolicy(
        max_attempts=2, base_delay_ms=10_000, max_delay_ms=60_000,
        timeout_ms=10 * 60_000, concurrency=1,
    ),
    QueueName.GENERATE_POSTS: QueuePolicy(
        max_attempts=2, base_delay_ms=15_000, max_delay_ms=120_000,
        timeout_ms=15 * 60_000, concurrency=2,
    ),
    QueueName.PUBLISH: QueuePolicy(
        max_attempts=3, base_delay_ms=2_000, max_delay_ms=60_000,
        timeout_ms=2 * 60_000, concurrency=5,
    ),
}

DEFAULT_POLICY = QueuePolicy(
    max_attempts=3, base_delay_ms=5_000, max_delay_ms=60_000, timeout_ms=5 * 60_000
)


def queue_key(queue: QueueName | str) -> str:
    """Plain string name of a queue."""
    return queue.value if isinstance(queue, QueueName) else str(queue)


def policy_for(queue: QueueName | str) -> QueuePolicy:
    """Policy for a queue, falling back to :data:`DEFAULT_POLICY`."""
    try:
        return QUEUE_POLICIES[QueueName(queue_key(queue))]
    except ValueError:
        return DEFAULT_POLICY


@dataclass
class JobResult:
    """Outcome of one job attempt. Appended to history, never mutated."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    processing_duration_ms: int = 0

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None, duration_ms: int = 0) -> JobResult:
        """Create a successful result."""
        return cls(success=True, data=data or {}, processing_duration_ms=duration_ms)

    @classmethod
    def fail(cls, error: str, data: dict[str, Any] | None = None, duration_ms: int = 0) -> JobResult:
        """Create a failed result."""
        return cls(success=False, data=data or {}, error=error, processing_duration_ms=duration_ms)


@dataclass
class Job:
    """A unit of queued work. Timestamps are epoch milliseconds."""

    id: str
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.WAITING
    priority: int = 0
    delay_ms: int = 0
    run_at: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    stalled_count: int = 0
    progress: int = 0
    lease_token: str | None = None
    locked_until: int | None = None
    last_error: str | None = None
    created_at: int = 0
    updated_at: int = 0
    finished_at: int | None = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt currently running."""
        return self.attempts_made + 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts


@dataclass(frozen=True)
class JobHandle:
    """Returned by enqueue. ``created`` is False when the id already existed."""

    id: str
    queue_name: str
    created: bool = True


@dataclass
class JobCounts:
    """Per-queue job counts."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }
