"""Scheduled post persistence and lifecycle.

Every mutation is a single conditional statement, so concurrent scheduler
ticks never advance the same row twice. ``retry`` increments and compares
in one ``UPDATE ... RETURNING``. A publisher takes a lease with
:meth:`Scheduler.claim` and passes the returned token back when it records
the outcome; a row leased by someone else is left alone.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from contentflow.clock import Clock, from_iso, to_iso, to_ms, utc_now
from contentflow.db import Database
from contentflow.errors import NotFoundError, ValidationError
from contentflow.models.scheduling import (
    MAX_RETRIES,
    PLATFORM_CONTENT_LIMITS,
    ScheduledPost,
    ScheduledPostStatus,
    SchedulerStats,
)

logger = logging.getLogger(__name__)

MAX_RETRIES_REASON = "max retries reached"

PENDING = ScheduledPostStatus.PENDING.value

# Unleased, leased by the caller's token, or holding an expired lease
LEASE_FREE_OR_HELD = "(claimed_at IS NULL OR claim_token = ? OR claimed_at < ?)"


def _row_to_scheduled_post(row: sqlite3.Row) -> ScheduledPost:
    return ScheduledPost(
        id=row["id"],
        platform=row["platform"],
        content=row["content"],
        scheduled_time=from_iso(row["scheduled_time"]),
        status=ScheduledPostStatus(row["status"]),
        retry_count=row["retry_count"],
        last_attempt=from_iso(row["last_attempt"]),
        error_message=row["error"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        external_post_id=row["external_post_id"],
        claimed_at=from_iso(row["claimed_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def validate_content(platform: str, content: str) -> None:
    """Raise ValidationError for blank content or content over the platform ceiling."""
    if not platform or not platform.strip():
        raise ValidationError("Platform is required")
    if not content or not content.strip():
        raise ValidationError("Content cannot be empty")
    limit = PLATFORM_CONTENT_LIMITS.get(platform)
    if limit is not None and len(content) > limit:
        raise ValidationError(
            f"Content exceeds {platform} limit of {limit} characters ({len(content)})"
        )


class Scheduler:
    """Publish intents stored in the ``scheduled_posts`` table."""

    def __init__(
        self,
        db: Database,
        clock: Clock = utc_now,
        claim_timeout_seconds: float = 600.0,
    ) -> None:
        self.db = db
        self._clock = clock
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def now(self) -> datetime:
        return self._clock()

    def _stale_claim_cutoff(self, now: datetime) -> str:
        return to_iso(now - self.claim_timeout)

    def _lease_params(self, claim_token: str | None, now: datetime) -> tuple[str | None, str]:
        return claim_token, self._stale_claim_cutoff(now)

    def _new_id(self, now: datetime) -> str:
        return f"sched_{to_ms(now)}_{uuid4().hex[:9]}"

    def _validate(self, platform: str, content: str, scheduled_time: datetime, now: datetime) -> None:
        if scheduled_time.tzinfo is None:
            raise ValidationError("Scheduled time must be timezone-aware")
        if scheduled_time <= now:
            raise ValidationError("Scheduled time must be in the future")
        validate_content(platform, content)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def schedule(
        self,
        platform: str,
        content: str,
        scheduled_time: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending scheduled post.

        Args:
            platform: Target platform
            content: Post body
            scheduled_time: When to publish; must be strictly in the future
            metadata: Platform-specific fields

        Returns:
            The new scheduled post id

        Raises:
            ValidationError: If the time is not in the future, the content is
                blank, or the content exceeds the platform ceiling
        """
        return self.bulk_schedule(
            [{"platform": platform, "content": content,
              "scheduled_time": scheduled_time, "metadata": metadata}]
        )[0]

    def bulk_schedule(self, items: list[dict[str, Any]]) -> list[str]:
        """Schedule several posts at once. Nothing is stored if any item is invalid."""
        now = self.now()
        errors = []
        for i, item in enumerate(items):
            try:
                self._validate(item["platform"], item["content"], item["scheduled_time"], now)
            except ValidationError as e:
                errors.append(f"item {i}: {e}")
        if errors:
            raise ValidationError(f"Some posts failed to schedule: {'; '.join(errors)}")

        ids = []
        ts = to_iso(now)
        with self.db.transaction() as conn:
            for item in items:
                post_id = self._new_id(now)
                metadata = item.get("metadata")
                conn.execute(
                    """
                    INSERT INTO scheduled_posts (
                        id, platform, content, scheduled_time, status, retry_count,
                        metadata, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        post_id, item["platform"], item["content"], to_iso(item["scheduled_time"]),
                        PENDING, json.dumps(metadata) if metadata else None, ts, ts,
                    ),
                )
                ids.append(post_id)

        for post_id, item in zip(ids, items):
            logger.info(
                "Scheduled %s on %s for %s", post_id, item["platform"], to_iso(item["scheduled_time"])
            )
        return ids

    def _require(self, scheduled_post_id: str) -> ScheduledPost:
        post = self.get(scheduled_post_id)
        if post is None:
            raise NotFoundError(f"Scheduled post not found: {scheduled_post_id}")
        return post

    def mark_published(
        self,
        scheduled_post_id: str,
        external_post_id: str | None = None,
        claim_token: str | None = None,
    ) -> ScheduledPost:
        """Mark a pending post published. Calling it again is a no-op.

        Raises:
            ValidationError: If the post is cancelled or failed, or another
                publisher holds its lease.
        """
        now = self.now()
        ts = to_iso(now)
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE scheduled_posts
                SET status = ?, external_post_id = COALESCE(?, external_post_id),
                    error = NULL, claimed_at = NULL, claim_token = NULL,
                    last_attempt = ?, updated_at = ?
                WHERE id = ? AND status = ? AND {LEASE_FREE_OR_HELD}
                """,
                (
                    ScheduledPostStatus.PUBLISHED.value, external_post_id, ts, ts,
                    scheduled_post_id, PENDING, *self._lease_params(claim_token, now),
                ),
            )
        post = self._require(scheduled_post_id)
        if cur.rowcount == 1:
            logger.info("Published scheduled post %s", scheduled_post_id)
        elif post.status is ScheduledPostStatus.PENDING:
            raise ValidationError(f"Scheduled post {scheduled_post_id} is being published elsewhere")
        elif post.status is not ScheduledPostStatus.PUBLISHED:
            raise ValidationError(
                f"Scheduled post {scheduled_post_id} is {post.status.value}, cannot mark published"
            )
        return post

    def mark_failed(
        self, scheduled_post_id: str, reason: str, claim_token: str | None = None
    ) -> ScheduledPost:
        """Fail a pending post permanently.

        Finished posts, and posts leased by another publisher, are returned
        unchanged.
        """
        now = self.now()
        ts = to_iso(now)
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE scheduled_posts
                SET status = ?, error = ?, claimed_at = NULL, claim_token = NULL,
                    last_attempt = ?, updated_at = ?
                WHERE id = ? AND status = ? AND {LEASE_FREE_OR_HELD}
                """,
                (
                    ScheduledPostStatus.FAILED.value, reason, ts, ts, scheduled_post_id, PENDING,
                    *self._lease_params(claim_token, now),
                ),
            )
        post = self._require(scheduled_post_id)
        if cur.rowcount == 1:
            logger.warning("Scheduled post %s failed: %s", scheduled_post_id, reason)
        elif post.status is ScheduledPostStatus.PENDING:
            logger.info("Scheduled post %s is leased elsewhere, not failing it", scheduled_post_id)
        return post

    def retry(
        self,
        scheduled_post_id: str,
        error: str | None = None,
        claim_token: str | None = None,
    ) -> ScheduledPost:
        """Record a failed attempt.

        Increments ``retry_count``; the attempt that brings it to the maximum
        also sets ``status = failed`` with reason "max retries reached". Rows
        that are not pending, or are leased by another publisher, are
        returned unchanged.
        """
        now = self.now()
        ts = to_iso(now)
        with self.db.transaction() as conn:
            row = conn.execute(
                f"""
                UPDATE scheduled_posts
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ? THEN ? ELSE status END,
                    error = CASE WHEN retry_count + 1 >= ? THEN ? ELSE COALESCE(?, error) END,
                    claimed_at = NULL,
                    claim_token = NULL,
                    last_attempt = ?,
                    updated_at = ?
                WHERE id = ? AND status = ? AND retry_count < ? AND {LEASE_FREE_OR_HELD}
                RETURNING *
                """,
                (
                    MAX_RETRIES, ScheduledPostStatus.FAILED.value,
                    MAX_RETRIES, MAX_RETRIES_REASON, error,
                    ts, ts, scheduled_post_id, PENDING, MAX_RETRIES,
                    *self._lease_params(claim_token, now),
                ),
            ).fetchone()

        if row is None:
            return self._require(scheduled_post_id)

        post = _row_to_scheduled_post(row)
        if post.status is ScheduledPostStatus.FAILED:
            logger.warning("Scheduled post %s failed: %s", post.id, MAX_RETRIES_REASON)
        else:
            logger.info("Scheduled post %s will retry (%d/%d)", post.id, post.retry_count, MAX_RETRIES)
        return post

    def cancel(self, scheduled_post_id: str) -> ScheduledPost:
        """Cancel a pending post that is not currently being published.

        Raises:
            NotFoundError: If the post does not exist.
            ValidationError: If the post is not pending or is claimed.
        """
        now = self.now()
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_posts
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ? AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (
                    ScheduledPostStatus.CANCELLED.value, to_iso(now), scheduled_post_id,
                    PENDING, self._stale_claim_cutoff(now),
                ),
            )
        post = self._require(scheduled_post_id)
        if cur.rowcount != 1:
            if post.status is ScheduledPostStatus.PENDING:
                raise ValidationError(f"Scheduled post {scheduled_post_id} is being published")
            raise ValidationError(
                f"Only pending posts can be cancelled ({scheduled_post_id} is {post.status.value})"
            )
        logger.info("Cancelled scheduled post %s", scheduled_post_id)
        return post

    def reschedule(self, scheduled_post_id: str, scheduled_time: datetime) -> ScheduledPost:
        """Move a pending post to a new future time."""
        now = self.now()
        if scheduled_time.tzinfo is None or scheduled_time <= now:
            raise ValidationError("New scheduled time must be in the future")
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_posts
                SET scheduled_time = ?, updated_at = ?
                WHERE id = ? AND status = ? AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (
                    to_iso(scheduled_time), to_iso(now), scheduled_post_id,
                    PENDING, self._stale_claim_cutoff(now),
                ),
            )
        post = self._require(scheduled_post_id)
        if cur.rowcount != 1:
            raise ValidationError(
                f"Only pending posts can be rescheduled ({scheduled_post_id} is {post.status.value})"
            )
        logger.info("Rescheduled %s to %s", scheduled_post_id, to_iso(scheduled_time))
        return post

    def remove(self, scheduled_post_id: str) -> bool:
        """Delete a post that is not being published."""
        now = self.now()
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM scheduled_posts
                WHERE id = ? AND NOT (status = ? AND claimed_at IS NOT NULL AND claimed_at >= ?)
                """,
                (scheduled_post_id, PENDING, self._stale_claim_cutoff(now)),
            )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Publish lease
    # ------------------------------------------------------------------

    def claim(self, scheduled_post_id: str) -> str | None:
        """Take the publish lease on a pending row. Expired leases can be retaken.

        Returns:
            The lease token, or None if the row is not claimable
        """
        now = self.now()
        token = uuid4().hex
        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_posts SET claimed_at = ?, claim_token = ?, updated_at = ?
                WHERE id = ? AND status = ? AND retry_count < ?
                  AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                (
                    to_iso(now), token, to_iso(now), scheduled_post_id, PENDING,
                    MAX_RETRIES, self._stale_claim_cutoff(now),
                ),
            )
        return token if cur.rowcount == 1 else None

    def release(self, scheduled_post_id: str, claim_token: str | None = None) -> None:
        """Drop the publish lease without recording an attempt.

        With a token, only that lease is dropped.
        """
        with self.db.transaction() as conn:
            if claim_token is None:
                conn.execute(
                    "UPDATE scheduled_posts SET claimed_at = NULL, claim_token = NULL WHERE id = ?",
                    (scheduled_post_id,),
                )
            else:
                conn.execute(
                    """
                    UPDATE scheduled_posts SET claimed_at = NULL, claim_token = NULL
                    WHERE id = ? AND claim_token = ?
                    """,
                    (scheduled_post_id, claim_token),
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, scheduled_post_id: str) -> ScheduledPost | None:
        row = self.db.fetchone("SELECT * FROM scheduled_posts WHERE id = ?", (scheduled_post_id,))
        return _row_to_scheduled_post(row) if row else None

    def get_ready(self, limit: int = 10) -> list[ScheduledPost]:
        """Pending, due rows with retries left, earliest first.

        Rows currently leased by another publisher are skipped.
        """
        now = self.now()
        rows = self.db.fetchall(
            """
            SELECT * FROM scheduled_posts
            WHERE status = ? AND scheduled_time <= ? AND retry_count < ?
              AND (claimed_at IS NULL OR claimed_at < ?)
            ORDER BY scheduled_time ASC, created_at ASC
            LIMIT ?
            """,
            (PENDING, to_iso(now), MAX_RETRIES, self._stale_claim_cutoff(now), limit),
        )
        return [_row_to_scheduled_post(r) for r in rows]

    def list_posts(
        self,
        platform: str | None = None,
        status: ScheduledPostStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledPost]:
        clauses, params = [], []
        if platform:
            clauses.append("platform = ?")
            params.append(platform)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.fetchall(
            f"SELECT * FROM scheduled_posts {where} ORDER BY scheduled_time ASC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_scheduled_post(r) for r in rows]

    def get_upcoming(self, hours: float = 24) -> list[ScheduledPost]:
        """Pending posts due within the next ``hours``."""
        now = self.now()
        rows = self.db.fetchall(
            """
            SELECT * FROM scheduled_posts
            WHERE status = ? AND scheduled_time >= ? AND scheduled_time <= ?
            ORDER BY scheduled_time ASC
            """,
            (PENDING, to_iso(now), to_iso(now + timedelta(hours=hours))),
        )
        return [_row_to_scheduled_post(r) for r in rows]

    def find_active_for_post(self, post_id: str) -> ScheduledPost | None:
        """The pending schedule entry owned by a post, if any."""
        rows = self.db.fetchall(
            """
            SELECT * FROM scheduled_posts
            WHERE status = ? AND json_extract(metadata, '$.post_id') = ?
            ORDER BY created_at DESC LIMIT 1
            """,
            (PENDING, post_id),
        )
        return _row_to_scheduled_post(rows[0]) if rows else None

    def get_stats(self) -> SchedulerStats:
        """Counts by status and platform, plus how many rows are ready now."""
        stats = SchedulerStats()
        for row in self.db.fetchall(
            "SELECT status, COUNT(*) AS n FROM scheduled_posts GROUP BY status"
        ):
            stats.by_status[row["status"]] = row["n"]
            stats.total += row["n"]
        for row in self.db.fetchall(
            "SELECT platform, COUNT(*) AS n FROM scheduled_posts GROUP BY platform"
        ):
            stats.by_platform[row["platform"]] = row["n"]
        row = self.db.fetchone(
            """
            SELECT COUNT(*) AS n FROM scheduled_posts
            WHERE status = ? AND scheduled_time <= ? AND retry_count < ?
            """,
            (PENDING, to_iso(self.now()), MAX_RETRIES),
        )
        stats.ready = row["n"]
        return stats
