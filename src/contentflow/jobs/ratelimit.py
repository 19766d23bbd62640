"""Fixed-window admission control for publishing.

Window counters live in the shared SQLite database so every process using
the same file draws from one budget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from contentflow.clock import Clock, to_ms, utc_now
from contentflow.db import Database

logger = logging.getLogger(__name__)

GLOBAL_KEY = "__global__"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an admission check."""

    allowed: bool
    limit: int | None = None
    remaining: int | None = None
    retry_after_ms: int = 0


class FixedWindowRateLimiter:
    """Per-key fixed-window counters stored in the ``rate_limits`` table.

    Windows are aligned to multiples of the window length since the epoch.
    Keys without a configured limit are always admitted.
    """

    def __init__(
        self,
        db: Database,
        limits: dict[str, tuple[int, int]] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            db: Shared database holding the window counters.
            limits: key -> (max admissions, window seconds).
            clock: Time source.
        """
        self.db = db
        self._limits = {k: (int(n), int(w) * 1000) for k, (n, w) in (limits or {}).items()}
        self._clock = clock

    def set_limit(self, key: str, max_admissions: int, window_seconds: int) -> None:
        self._limits[key] = (int(max_admissions), int(window_seconds) * 1000)
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM rate_limits WHERE key = ?", (key,))

    def limit_for(self, key: str) -> tuple[int, int] | None:
        """Configured (max admissions, window ms) for a key."""
        return self._limits.get(key)

    def _window_start(self, window_ms: int) -> tuple[int, int]:
        now = to_ms(self._clock())
        return now, now - now % window_ms

    def admit(self, key: str) -> RateLimitDecision:
        """Count one admission for ``key`` if the current window has room."""
        limit = self._limits.get(key)
        if limit is None:
            return RateLimitDecision(allowed=True)

        max_admissions, window_ms = limit
        now, window_start = self._window_start(window_ms)

        with self.db.transaction() as conn:
            # Open the row, or roll it over when the stored window has ended
            conn.execute(
                """
                INSERT INTO rate_limits (key, window_start, count) VALUES (?, ?, 0)
                ON CONFLICT (key) DO UPDATE SET window_start = excluded.window_start, count = 0
                WHERE rate_limits.window_start < excluded.window_start
                """,
                (key, window_start),
            )
            row = conn.execute(
                """
                UPDATE rate_limits SET count = count + 1
                WHERE key = ? AND count < ?
                RETURNING count, window_start
                """,
                (key, max_admissions),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT window_start FROM rate_limits WHERE key = ?", (key,)
                ).fetchone()

        if row is None:
            retry_after = max(current["window_start"] + window_ms - now, 1)
            logger.debug("Rate limited %s, retry in %dms", key, retry_after)
            return RateLimitDecision(
                allowed=False, limit=max_admissions, remaining=0, retry_after_ms=retry_after
            )

        return RateLimitDecision(
            allowed=True, limit=max_admissions, remaining=max_admissions - row["count"]
        )

    def refund(self, key: str) -> None:
        """Give back one admission in the current window."""
        limit = self._limits.get(key)
        if limit is None:
            return
        _, window_start = self._window_start(limit[1])
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE rate_limits SET count = MAX(count - 1, 0) WHERE key = ? AND window_start = ?",
                (key, window_start),
            )

    def reset(self) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM rate_limits")
