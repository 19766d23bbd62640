"""Durable job store backed by SQLite.

Claiming is a single conditional update inside a ``BEGIN IMMEDIATE``
transaction, so a job is handed to exactly one worker. The worker receives a
lease token; ``ack``, ``nack``, ``release`` and progress updates only apply
while that token still matches the row. A claimed job whose lease expires is
reclaimed on the next claim for its queue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any
from uuid import uuid4

from contentflow.clock import Clock, to_ms, utc_now
from contentflow.db import Database
from contentflow.errors import LeaseLostError, NotFoundError
from contentflow.jobs.models import (
    Job,
    JobCounts,
    JobHandle,
    JobResult,
    JobState,
    QueueName,
    policy_for,
    queue_key,
)

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        queue_name=row["queue_name"],
        payload=json.loads(row["payload"]),
        state=JobState(row["state"]),
        priority=row["priority"],
        delay_ms=row["delay_ms"],
        run_at=row["run_at"],
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        stalled_count=row["stalled_count"],
        progress=row["progress"],
        lease_token=row["lease_token"],
        locked_until=row["locked_until"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        finished_at=row["finished_at"],
    )


class JobStore:
    """Queued work items keyed by queue name."""

    def __init__(
        self,
        db: Database,
        clock: Clock = utc_now,
        stall_timeout_ms: int = 300_000,
        max_stalled_count: int = 2,
    ) -> None:
        self.db = db
        self._clock = clock
        self.stall_timeout_ms = stall_timeout_ms
        self.max_stalled_count = max_stalled_count

    def _now(self) -> int:
        return to_ms(self._clock())

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        queue: QueueName | str,
        payload: dict[str, Any],
        *,
        delay_ms: int = 0,
        priority: int = 0,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        """Add a job. An existing ``job_id`` returns the existing handle.

        Args:
            queue: Queue name.
            payload: JSON-serialisable job payload.
            delay_ms: Milliseconds before the job becomes claimable.
            priority: Lower values are claimed first.
            job_id: Optional caller-chosen id for deduplication.
            max_attempts: Overrides the queue policy.

        Returns:
            JobHandle with ``created=False`` if the id was already present.
        """
        name = queue_key(queue)
        jid = job_id or f"{name}_{uuid4().hex}"
        attempts = max_attempts or policy_for(name).max_attempts
        delay_ms = max(int(delay_ms), 0)
        now = self._now()

        with self.db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO jobs (
                    id, queue_name, payload, state, priority, delay_ms, run_at,
                    attempts_made, max_attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    jid, name, json.dumps(payload), JobState.WAITING.value,
                    priority, delay_ms, now + delay_ms, attempts, now, now,
                ),
            )
            created = cur.rowcount == 1

        if created:
            logger.debug("Enqueued %s on %s (delay=%dms)", jid, name, delay_ms)
        else:
            logger.info("Job %s already exists, not enqueued again", jid)
        return JobHandle(id=jid, queue_name=name, created=created)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim(self, queue: QueueName | str, lease_ms: int | None = None) -> Job | None:
        """Atomically claim the next due job of a queue.

        Stalled jobs of the queue are reclaimed first. Returns None when the
        queue is paused or nothing is due.
        """
        name = queue_key(queue)
        now = self._now()
        lease_ms = lease_ms or self.stall_timeout_ms

        with self.db.transaction() as conn:
            self._reclaim_stalled(conn, name, now)

            paused = conn.execute(
                "SELECT paused FROM queues WHERE name = ?", (name,)
            ).fetchone()
            if paused is not None and paused["paused"]:
                return None

            row = conn.execute(
                """
                SELECT id FROM jobs
                WHERE queue_name = ? AND state = ? AND run_at <= ?
                ORDER BY priority ASC, run_at ASC, created_at ASC
                LIMIT 1
                """,
                (name, JobState.WAITING.value, now),
            ).fetchone()
            if row is None:
                return None

            token = uuid4().hex
            conn.execute(
                """
                UPDATE jobs
                SET state = ?, lease_token = ?, locked_until = ?, updated_at = ?
                WHERE id = ? AND state = ?
                """,
                (
                    JobState.ACTIVE.value, token, now + lease_ms, now,
                    row["id"], JobState.WAITING.value,
                ),
            )
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()

        job = _row_to_job(claimed)
        logger.debug("Claimed %s (attempt %d/%d)", job.id, job.attempt_number, job.max_attempts)
        return job

    def _reclaim_stalled(self, conn: sqlite3.Connection, queue: str, now: int) -> None:
        rows = conn.execute(
            """
            SELECT id, stalled_count FROM jobs
            WHERE queue_name = ? AND state = ? AND locked_until < ?
            """,
            (queue, JobState.ACTIVE.value, now),
        ).fetchall()
        for row in rows:
            stalled = row["stalled_count"] + 1
            if stalled > self.max_stalled_count:
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, stalled_count = ?, lease_token = NULL,
                        locked_until = NULL, last_error = ?, finished_at = ?,
                        attempts_made = max_attempts, updated_at = ?
                    WHERE id = ?
                    """,
                    (JobState.FAILED.value, stalled, STALLED_ERROR, now, now, row["id"]),
                )
                logger.warning("Job %s failed after %d stalls", row["id"], stalled)
            else:
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, stalled_count = ?, lease_token = NULL,
                        locked_until = NULL, run_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (JobState.WAITING.value, stalled, now, now, row["id"]),
                )
                logger.warning("Job %s stalled, returned to queue", row["id"])

    def _update_leased(self, conn: sqlite3.Connection, job: Job, sql: str, params: tuple) -> None:
        cur = conn.execute(
            f"UPDATE jobs SET {sql} WHERE id = ? AND lease_token = ? AND state = ?",
            (*params, job.id, job.lease_token, JobState.ACTIVE.value),
        )
        if cur.rowcount != 1:
            raise LeaseLostError(f"Lease on job {job.id} is no longer held")

    def _record_result(self, conn: sqlite3.Connection, job: Job, result: JobResult, now: int) -> None:
        conn.execute(
            """
            INSERT INTO job_results (
                job_id, attempt, success, data, error, processing_duration_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id, job.attempt_number, int(result.success), json.dumps(result.data),
                result.error, result.processing_duration_ms, now,
            ),
        )

    def ack(self, job: Job, result: JobResult) -> None:
        """Mark a claimed job completed and record its result."""
        now = self._now()
        with self.db.transaction() as conn:
            self._update_leased(
                conn, job,
                """state = ?, progress = 100, lease_token = NULL, locked_until = NULL,
                   finished_at = ?, updated_at = ?""",
                (JobState.COMPLETED.value, now, now),
            )
            self._record_result(conn, job, result, now)
        job.state = JobState.COMPLETED
        job.lease_token = None

    def nack(
        self,
        job: Job,
        error: str,
        retryable: bool = True,
        duration_ms: int = 0,
    ) -> Job:
        """Record a failed attempt.

        The job goes back to ``waiting`` with exponential backoff, or to
        ``failed`` once attempts are exhausted. A non-retryable failure
        forces ``attempts_made`` to ``max_attempts``.

        Returns:
            The job with its updated bookkeeping.
        """
        now = self._now()
        attempts = job.attempts_made + 1 if retryable else job.max_attempts
        attempts = min(attempts, job.max_attempts)
        policy = policy_for(job.queue_name)

        with self.db.transaction() as conn:
            if attempts >= job.max_attempts:
                self._update_leased(
                    conn, job,
                    """state = ?, attempts_made = ?, last_error = ?, lease_token = NULL,
                       locked_until = NULL, finished_at = ?, updated_at = ?""",
                    (JobState.FAILED.value, attempts, error, now, now),
                )
                job.state = JobState.FAILED
                job.finished_at = now
            else:
                delay = policy.backoff_delay(attempts)
                self._update_leased(
                    conn, job,
                    """state = ?, attempts_made = ?, last_error = ?, lease_token = NULL,
                       locked_until = NULL, run_at = ?, delay_ms = ?, updated_at = ?""",
                    (JobState.WAITING.value, attempts, error, now + delay, delay, now),
                )
                job.state = JobState.WAITING
                job.run_at = now + delay
                job.delay_ms = delay
            self._record_result(conn, job, JobResult.fail(error, duration_ms=duration_ms), now)

        job.attempts_made = attempts
        job.last_error = error
        job.lease_token = None
        if job.state is JobState.FAILED:
            logger.warning("Job %s failed permanently: %s", job.id, error)
        else:
            logger.info(
                "Job %s failed (attempt %d/%d), retrying in %dms",
                job.id, attempts, job.max_attempts, job.delay_ms,
            )
        return job

    def release(self, job: Job, delay_ms: int = 0) -> None:
        """Return a claimed job to the queue without consuming an attempt."""
        now = self._now()
        delay_ms = max(int(delay_ms), 0)
        with self.db.transaction() as conn:
            self._update_leased(
                conn, job,
                """state = ?, lease_token = NULL, locked_until = NULL, run_at = ?,
                   delay_ms = ?, updated_at = ?""",
                (JobState.WAITING.value, now + delay_ms, delay_ms, now),
            )
        job.state = JobState.WAITING
        job.lease_token = None
        job.run_at = now + delay_ms
        logger.debug("Released %s for %dms", job.id, delay_ms)

    def update_progress(self, job: Job, progress: int) -> None:
        """Persist progress (0-100) for a claimed job."""
        progress = min(max(int(progress), 0), 100)
        with self.db.transaction() as conn:
            self._update_leased(
                conn, job, "progress = ?, updated_at = ?", (progress, self._now())
            )
        job.progress = progress

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        row = self.db.fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        queue: QueueName | str | None = None,
        state: JobState | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List jobs, most recently updated first."""
        clauses, params = [], []
        if queue is not None:
            clauses.append("queue_name = ?")
            params.append(queue_key(queue))
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.fetchall(
            f"SELECT * FROM jobs {where} ORDER BY updated_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_job(r) for r in rows]

    def job_history(self, job_id: str) -> list[JobResult]:
        """All recorded attempt results of a job, oldest first."""
        rows = self.db.fetchall(
            "SELECT * FROM job_results WHERE job_id = ? ORDER BY rowid ASC", (job_id,)
        )
        return [
            JobResult(
                success=bool(r["success"]),
                data=json.loads(r["data"]) if r["data"] else {},
                error=r["error"],
                processing_duration_ms=r["processing_duration_ms"],
            )
            for r in rows
        ]

    def get_counts(self, queue: QueueName | str) -> JobCounts:
        """Counts of waiting, active, completed, failed and delayed jobs."""
        name = queue_key(queue)
        now = self._now()
        rows = self.db.fetchall(
            """
            SELECT
                CASE WHEN state = 'waiting' AND run_at > ? THEN 'delayed' ELSE state END AS bucket,
                COUNT(*) AS n
            FROM jobs WHERE queue_name = ?
            GROUP BY bucket
            """,
            (now, name),
        )
        counts = JobCounts(paused=self.is_paused(name))
        for r in rows:
            setattr(counts, r["bucket"], r["n"])
        return counts

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def pause(self, queue: QueueName | str) -> None:
        """Stop handing out jobs from a queue. Active jobs keep running."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO queues (name, paused) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET paused = 1
                """,
                (queue_key(queue),),
            )
        logger.info("Queue %s paused", queue_key(queue))

    def resume(self, queue: QueueName | str) -> None:
        with self.db.transaction() as conn:
            conn.execute("UPDATE queues SET paused = 0 WHERE name = ?", (queue_key(queue),))
        logger.info("Queue %s resumed", queue_key(queue))

    def is_paused(self, queue: QueueName | str) -> bool:
        row = self.db.fetchone("SELECT paused FROM queues WHERE name = ?", (queue_key(queue),))
        return bool(row and row["paused"])

    def clean(self, queue: QueueName | str, state: JobState) -> int:
        """Delete finished jobs (completed or failed) of a queue with their history.

        Returns:
            Number of jobs removed.
        """
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got {state.value}")
        name = queue_key(queue)
        with self.db.transaction() as conn:
            conn.execute(
                """
                DELETE FROM job_results WHERE job_id IN (
                    SELECT id FROM jobs WHERE queue_name = ? AND state = ?
                )
                """,
                (name, state.value),
            )
            cur = conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND state = ?", (name, state.value)
            )
        logger.info("Cleaned %d %s jobs from %s", cur.rowcount, state.value, name)
        return cur.rowcount

    def remove(self, job_id: str) -> bool:
        """Remove a waiting job. Active and finished jobs are left alone."""
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM jobs WHERE id = ? AND state = ?", (job_id, JobState.WAITING.value)
            )
        return cur.rowcount == 1

    def ping(self) -> bool:
        return self.db.ping()
