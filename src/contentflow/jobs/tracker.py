"""Persistence for the processing-job view.

Every status change goes through the state machine and is written with a
compare-and-set on the previous status.
"""

from __future__ import annotations

import logging
import sqlite3

from contentflow.clock import Clock, from_iso, to_iso, utc_now
from contentflow.db import Database
from contentflow.errors import InvalidTransitionError, NotFoundError
from contentflow.jobs.models import QueueName, queue_key
from contentflow.jobs.state_machine import transition
from contentflow.models.processing import ProcessingEvent, ProcessingJob, ProcessingStatus

logger = logging.getLogger(__name__)


def _row_to_processing_job(row: sqlite3.Row) -> ProcessingJob:
    return ProcessingJob(
        id=row["id"],
        job_type=row["job_type"],
        entity_id=row["entity_id"],
        pipeline_id=row["pipeline_id"],
        status=ProcessingStatus(row["status"]),
        progress=row["progress"],
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        error=row["error"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
    )


class ProcessingJobTracker:
    """Stores one :class:`ProcessingJob` per store job."""

    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self.db = db
        self._clock = clock

    def create(
        self,
        job_id: str,
        job_type: QueueName | str,
        entity_id: str,
        pipeline_id: str | None,
        max_attempts: int,
    ) -> ProcessingJob:
        """Record a newly enqueued job as ``queued``.

        The job passes idle -> pending -> queued. An existing id is returned
        unchanged.
        """
        existing = self.get(job_id)
        if existing is not None:
            return existing

        status = transition(ProcessingStatus.IDLE, ProcessingEvent.START)
        status = transition(status, ProcessingEvent.START)
        now = to_iso(self._clock())
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO processing_jobs (
                    id, job_type, entity_id, pipeline_id, status, progress,
                    attempts_made, max_attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?, ?)
                """,
                (
                    job_id, queue_key(job_type), entity_id, pipeline_id,
                    status.value, max_attempts, now, now,
                ),
            )
        return self.get(job_id)

    def apply(
        self,
        job_id: str,
        event: ProcessingEvent,
        *,
        progress: int | None = None,
        attempts_made: int | None = None,
        error: str | None = None,
    ) -> ProcessingJob:
        """Apply an event and persist the resulting state.

        Raises:
            NotFoundError: If the job is unknown.
            InvalidTransitionError: If the event is illegal, or the row
                changed underneath us.
        """
        current = self.get(job_id)
        if current is None:
            raise NotFoundError(f"Processing job not found: {job_id}")

        new_status = transition(current.status, event)
        now = self._clock()
        fields: dict[str, object] = {"status": new_status.value, "updated_at": to_iso(now)}
        if progress is not None:
            fields["progress"] = min(max(int(progress), 0), 100)
        if attempts_made is not None:
            fields["attempts_made"] = min(attempts_made, current.max_attempts)
        if error is not None:
            fields["error"] = error
        if new_status is ProcessingStatus.PROCESSING and current.status is not ProcessingStatus.PROCESSING:
            fields["started_at"] = to_iso(now)
            fields["error"] = None
        if new_status is ProcessingStatus.COMPLETED:
            fields["progress"] = 100
        if new_status.is_terminal:
            fields["completed_at"] = to_iso(now)

        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE processing_jobs SET {assignments} WHERE id = ? AND status = ?",
                (*fields.values(), job_id, current.status.value),
            )
        if cur.rowcount != 1:
            raise InvalidTransitionError(current.status.value, event.value)

        logger.debug("Processing job %s: %s -[%s]-> %s", job_id, current.status.value, event.value, new_status.value)
        return self.get(job_id)

    def start(self, job_id: str, attempts_made: int) -> ProcessingJob:
        """Move a claimed job into ``processing`` from queued, failed or retrying."""
        current = self.get(job_id)
        if current is None:
            raise NotFoundError(f"Processing job not found: {job_id}")
        if current.status is ProcessingStatus.FAILED:
            self.apply(job_id, ProcessingEvent.RETRY)
        return self.apply(job_id, ProcessingEvent.START, attempts_made=attempts_made)

    def get(self, job_id: str) -> ProcessingJob | None:
        row = self.db.fetchone("SELECT * FROM processing_jobs WHERE id = ?", (job_id,))
        return _row_to_processing_job(row) if row else None

    def list_for_pipeline(self, pipeline_id: str) -> list[ProcessingJob]:
        """All jobs of a pipeline, oldest first."""
        rows = self.db.fetchall(
            "SELECT * FROM processing_jobs WHERE pipeline_id = ? ORDER BY created_at ASC, rowid ASC",
            (pipeline_id,),
        )
        return [_row_to_processing_job(r) for r in rows]

    def latest_for_stage(self, pipeline_id: str, job_type: QueueName | str) -> ProcessingJob | None:
        row = self.db.fetchone(
            """
            SELECT * FROM processing_jobs WHERE pipeline_id = ? AND job_type = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (pipeline_id, queue_key(job_type)),
        )
        return _row_to_processing_job(row) if row else None

    def list_for_entity(self, entity_id: str) -> list[ProcessingJob]:
        rows = self.db.fetchall(
            "SELECT * FROM processing_jobs WHERE entity_id = ? ORDER BY created_at ASC, rowid ASC",
            (entity_id,),
        )
        return [_row_to_processing_job(r) for r in rows]

    def list_jobs(self, status: ProcessingStatus | None = None, limit: int = 100) -> list[ProcessingJob]:
        if status is None:
            rows = self.db.fetchall(
                "SELECT * FROM processing_jobs ORDER BY updated_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = self.db.fetchall(
                "SELECT * FROM processing_jobs WHERE status = ? ORDER BY updated_at DESC LIMIT ?",
                (status.value, limit),
            )
        return [_row_to_processing_job(r) for r in rows]
