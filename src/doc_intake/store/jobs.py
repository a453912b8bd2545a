"""Persistence for the job queue table."""

import json
import sqlite3
from datetime import datetime
from typing import Optional

from doc_intake.models.enums import JobStatus, JobType
from doc_intake.models.jobs import Job, QueueStats
from doc_intake.store.database import Database
from doc_intake.utils.timeutils import from_db, to_db


def _row_to_job(row: sqlite3.Row) -> Job:
    """Convert a database row to a Job object."""
    return Job(
        id=row["id"],
        document_id=row["document_id"],
        job_type=JobType(row["job_type"]),
        payload=json.loads(row["payload_json"] or "{}"),
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        created_at=from_db(row["created_at"]),
        scheduled_for=from_db(row["scheduled_for"]),
        started_at=from_db(row["started_at"]),
        completed_at=from_db(row["completed_at"]),
        worker_id=row["worker_id"],
        lease_expires_at=from_db(row["lease_expires_at"]),
        error_message=row["error_message"],
    )


class JobStore:
    """Row-level access to ``job_queue``.

    Every state-changing method is a conditional ``UPDATE`` that only touches
    a row still in the expected status, and reports whether it did. The queue
    protocol on top of it lives in :class:`doc_intake.jobs.queue.JobQueue`.
    """

    def __init__(self, db: Database):
        """Initialize the store.

        Args:
            db: Shared database handle.
        """
        self._db = db

    def insert(self, conn: sqlite3.Connection, job: Job) -> Job:
        """Insert a new job row."""
        conn.execute(
            """
            INSERT INTO job_queue (
                id, document_id, job_type, payload_json, status, attempts,
                max_attempts, created_at, scheduled_for
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.document_id,
                job.job_type.value,
                json.dumps(job.payload),
                job.status.value,
                job.attempts,
                job.max_attempts,
                to_db(job.created_at),
                to_db(job.scheduled_for),
            ),
        )
        return job

    def get(self, job_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Job]:
        """Get a job by ID.

        Args:
            job_id: The job ID.
            conn: Optional connection to read through.

        Returns:
            Job object or None if not found.
        """
        with self._db.connection(conn) as c:
            row = c.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs, newest first, optionally filtered by status.

        Args:
            status: Optional status filter.
            limit: Maximum number of jobs to return.

        Returns:
            List of Job objects.
        """
        with self._db.connection() as conn:
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM job_queue
                    WHERE status = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ?
                    """,
                    (status.value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM job_queue
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()

        return [_row_to_job(row) for row in rows]

    def for_document(self, document_id: str) -> list[Job]:
        """All jobs for a document, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM job_queue
                WHERE document_id = ?
                ORDER BY created_at, rowid
                """,
                (document_id,),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def next_eligible(self, conn: sqlite3.Connection, now: datetime) -> Optional[Job]:
        """The oldest pending job that is due and still has attempts left.

        Jobs whose document already has a job processing are not eligible,
        so a document is never worked on by two jobs at once.
        """
        row = conn.execute(
            """
            SELECT * FROM job_queue AS j
            WHERE j.status = ?
              AND j.scheduled_for <= ?
              AND j.attempts < j.max_attempts
              AND NOT EXISTS (
                  SELECT 1 FROM job_queue AS running
                  WHERE running.document_id = j.document_id AND running.status = ?
              )
            ORDER BY j.created_at ASC, j.rowid ASC
            LIMIT 1
            """,
            (JobStatus.PENDING.value, to_db(now), JobStatus.PROCESSING.value),
        ).fetchone()
        return _row_to_job(row) if row else None

    def mark_processing(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        now: datetime,
        lease_expires_at: datetime,
        worker_id: Optional[str],
    ) -> bool:
        """pending -> processing, if the job is still pending."""
        cursor = conn.execute(
            """
            UPDATE job_queue
            SET status = ?, started_at = ?, lease_expires_at = ?, worker_id = ?,
                completed_at = NULL
            WHERE id = ? AND status = ? AND attempts < max_attempts
            """,
            (
                JobStatus.PROCESSING.value,
                to_db(now),
                to_db(lease_expires_at),
                worker_id,
                job_id,
                JobStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def mark_completed(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        now: datetime,
        worker_id: Optional[str] = None,
    ) -> bool:
        """processing -> completed, if the job is processing (and held by ``worker_id``)."""
        cursor = conn.execute(
            """
            UPDATE job_queue
            SET status = ?, completed_at = ?, lease_expires_at = NULL
            WHERE id = ? AND status = ? AND (? IS NULL OR worker_id = ?)
            """,
            (
                JobStatus.COMPLETED.value,
                to_db(now),
                job_id,
                JobStatus.PROCESSING.value,
                worker_id,
                worker_id,
            ),
        )
        return cursor.rowcount == 1

    def mark_retry(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        attempts: int,
        scheduled_for: datetime,
        error_message: str,
        worker_id: Optional[str] = None,
    ) -> bool:
        """processing -> pending with a new attempt count and due time."""
        cursor = conn.execute(
            """
            UPDATE job_queue
            SET status = ?, attempts = ?, scheduled_for = ?, error_message = ?,
                worker_id = NULL, lease_expires_at = NULL
            WHERE id = ? AND status = ? AND (? IS NULL OR worker_id = ?)
            """,
            (
                JobStatus.PENDING.value,
                attempts,
                to_db(scheduled_for),
                error_message,
                job_id,
                JobStatus.PROCESSING.value,
                worker_id,
                worker_id,
            ),
        )
        return cursor.rowcount == 1

    def mark_failed(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        attempts: int,
        now: datetime,
        error_message: str,
        worker_id: Optional[str] = None,
    ) -> bool:
        """processing -> failed (dead-letter)."""
        cursor = conn.execute(
            """
            UPDATE job_queue
            SET status = ?, attempts = ?, completed_at = ?, error_message = ?,
                lease_expires_at = NULL
            WHERE id = ? AND status = ? AND (? IS NULL OR worker_id = ?)
            """,
            (
                JobStatus.FAILED.value,
                attempts,
                to_db(now),
                error_message,
                job_id,
                JobStatus.PROCESSING.value,
                worker_id,
                worker_id,
            ),
        )
        return cursor.rowcount == 1

    def extend_lease(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        worker_id: str,
        lease_expires_at: datetime,
    ) -> bool:
        """Push out the lease of a processing job held by ``worker_id``."""
        cursor = conn.execute(
            """
            UPDATE job_queue
            SET lease_expires_at = ?
            WHERE id = ? AND status = ? AND worker_id = ?
            """,
            (to_db(lease_expires_at), job_id, JobStatus.PROCESSING.value, worker_id),
        )
        return cursor.rowcount == 1

    def expired_leases(self, conn: sqlite3.Connection, now: datetime) -> list[Job]:
        """Processing jobs whose lease ran out, oldest lease first."""
        rows = conn.execute(
            """
            SELECT * FROM job_queue
            WHERE status = ? AND lease_expires_at IS NOT NULL AND lease_expires_at < ?
            ORDER BY lease_expires_at, rowid
            """,
            (JobStatus.PROCESSING.value, to_db(now)),
        ).fetchall()
        return [_row_to_job(row) for row in rows]

    def stats(self) -> QueueStats:
        """Count jobs per status."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM job_queue GROUP BY status"
            ).fetchall()
        return QueueStats(**{row["status"]: row["count"] for row in rows})
