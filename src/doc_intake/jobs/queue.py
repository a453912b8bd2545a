"""Claim/complete/fail protocol over the job store."""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from statistics import fmean
from typing import Any, Optional

from doc_intake.config.defaults import DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS
from doc_intake.exceptions import InvariantViolation, JobNotFoundError
from doc_intake.jobs.backoff import BackoffPolicy
from doc_intake.lifecycle import DocumentLifecycle
from doc_intake.models.documents import Document
from doc_intake.models.enums import DocumentStatus, JobStatus, JobType, LifecycleEvent
from doc_intake.models.jobs import Job, JobResult, QueueStats
from doc_intake.store.database import Database
from doc_intake.store.documents import DocumentStore
from doc_intake.store.jobs import JobStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.jobs.queue")

LEASE_EXPIRED_MESSAGE = "lease expired"

# Candidates skipped per claim_next call when their document can't be claimed
MAX_CLAIM_SKIPS = 10


class JobQueue:
    """Durable work queue with retry, backoff and leases.

    Workers call :meth:`claim_next` to take exclusive ownership of the oldest
    due job, then report the outcome with :meth:`complete` or :meth:`fail`.
    Each of these runs in a single write transaction together with the
    document status change it causes; the resulting status is published to
    the notifier only after that transaction commits.
    """

    def __init__(
        self,
        db: Database,
        jobs: JobStore,
        documents: DocumentStore,
        lifecycle: DocumentLifecycle,
        backoff: Optional[BackoffPolicy] = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utc_now,
    ):
        """Initialize the queue.

        Args:
            db: Shared database handle.
            jobs: Job store.
            documents: Document store (for extracted fields).
            lifecycle: Document state machine driven by job outcomes.
            backoff: Retry delay policy.
            lease_seconds: How long a claim is held before it may be reclaimed.
            default_max_attempts: Retry budget when enqueue doesn't give one.
            clock: Source of the current time.
        """
        self._db = db
        self._jobs = jobs
        self._documents = documents
        self._lifecycle = lifecycle
        self._backoff = backoff or BackoffPolicy()
        self._lease = timedelta(seconds=lease_seconds)
        self._default_max_attempts = default_max_attempts
        self._clock = clock

    @property
    def lease_seconds(self) -> float:
        """Length of a claim lease in seconds."""
        return self._lease.total_seconds()

    @property
    def backoff(self) -> BackoffPolicy:
        """The retry delay policy."""
        return self._backoff

    # -- producer side -------------------------------------------------------

    def enqueue(
        self,
        document_id: str,
        job_type: JobType = JobType.DOCUMENT_PROCESSING,
        payload: Optional[dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        *,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Job:
        """Add a pending job for an existing document.

        Args:
            document_id: Owning document; must already exist.
            job_type: Kind of work.
            payload: Opaque data for the handler, stored as-is.
            max_attempts: Retry budget (defaults to the queue's).
            conn: Join this open transaction instead of starting one.

        Returns:
            The created Job.
        """
        max_attempts = self._default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            document_id=document_id,
            job_type=job_type,
            payload=dict(payload or {}),
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            scheduled_for=now,
        )

        with self._db.transaction(conn) as tx:
            self._jobs.insert(tx, job)

        logger.info(f"Enqueued {job_type.value} job {job.id} for document {document_id}")
        return job

    # -- worker side ---------------------------------------------------------

    def claim_next(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Take the oldest due pending job.

        The select and the ``pending -> processing`` update run under SQLite's
        write lock, and the update only matches a row that is still pending,
        so two callers can never receive the same job.

        Args:
            worker_id: Lease holder recorded on the job.

        Returns:
            The claimed Job, or None if nothing is eligible.
        """
        now = self._clock()
        claimed: Optional[Job] = None
        document: Optional[Document] = None

        with self._db.transaction() as conn:
            for _ in range(MAX_CLAIM_SKIPS):
                candidate = self._jobs.next_eligible(conn, now)
                if candidate is None:
                    break

                lease_until = now + self._lease
                if not self._jobs.mark_processing(conn, candidate.id, now, lease_until, worker_id):
                    continue

                try:
                    document = self._lifecycle.start_processing(
                        conn, candidate.document_id, now, retry=candidate.attempts > 0
                    )
                except InvariantViolation as e:
                    # The document is finished or belongs to another job;
                    # dead-letter instead of handing it out on every poll
                    logger.error(f"Dead-lettering job {candidate.id}: {e}")
                    self._jobs.mark_failed(
                        conn, candidate.id, candidate.max_attempts, now, str(e)
                    )
                    continue

                claimed = candidate.model_copy(
                    update={
                        "status": JobStatus.PROCESSING,
                        "started_at": now,
                        "completed_at": None,
                        "lease_expires_at": lease_until,
                        "worker_id": worker_id,
                    }
                )
                break

        if claimed is None:
            return None

        if document is not None:
            self._lifecycle.publish(document)
        logger.info(
            f"Claimed job {claimed.id} (attempt {claimed.attempts + 1}/{claimed.max_attempts})"
            + (f" for worker {worker_id}" if worker_id else "")
        )
        return claimed

    def complete(
        self,
        job_id: str,
        result: Optional[JobResult] = None,
        *,
        worker_id: Optional[str] = None,
    ) -> Job:
        """Mark a processing job completed and store its extracted fields.

        The job update, the field insert and the document's move to
        ``awaiting_review`` commit together.

        Args:
            job_id: Job to complete.
            result: Extracted fields and summary from the handler.
            worker_id: If given, the job must still be leased to this worker.

        Returns:
            The completed Job.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvariantViolation: If the job is not processing or the lease
                belongs to another worker.
        """
        result = result or JobResult()
        now = self._clock()

        with self._db.transaction() as conn:
            job = self._require_processing(conn, job_id)
            if not self._jobs.mark_completed(conn, job_id, now, worker_id):
                raise InvariantViolation(
                    f"Job {job_id} is leased to {job.worker_id}, not {worker_id}"
                )

            self._documents.insert_fields(conn, job.document_id, result.fields, now)
            confidence = result.confidence_score
            if confidence is None and result.fields:
                confidence = round(fmean(f.confidence_score for f in result.fields), 4)
            self._documents.set_extraction_summary(
                conn, job.document_id, confidence, result.document_type
            )

            document = self._lifecycle.transition(
                conn, job.document_id, LifecycleEvent.JOB_COMPLETED, now
            )
            completed = self._jobs.get(job_id, conn)

        self._lifecycle.publish(document)
        logger.info(f"Job {job_id} completed with {len(result.fields)} field(s)")
        return completed

    def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        permanent: bool = False,
        worker_id: Optional[str] = None,
    ) -> Job:
        """Record a failed attempt.

        The attempt count goes up by one. If the budget is used up (or the
        failure is ``permanent``) the job is dead-lettered and its document
        fails; otherwise it goes back to pending after a backoff delay.

        Args:
            job_id: Job that failed.
            error_message: Diagnostic message stored on the job.
            permanent: Skip remaining retries.
            worker_id: If given, the job must still be leased to this worker.

        Returns:
            The job after the failure was recorded.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvariantViolation: If the job is not processing or the lease
                belongs to another worker.
        """
        now = self._clock()

        with self._db.transaction() as conn:
            job = self._require_processing(conn, job_id)
            updated, document = self._record_failure(
                conn, job, error_message, now, permanent=permanent, worker_id=worker_id
            )

        if document is not None:
            self._lifecycle.publish(document)
        return updated

    def extend_lease(self, job_id: str, worker_id: str) -> bool:
        """Renew the lease on a job the worker still holds.

        Returns:
            False if the job is no longer processing under ``worker_id``.
        """
        lease_until = self._clock() + self._lease
        with self._db.transaction() as conn:
            extended = self._jobs.extend_lease(conn, job_id, worker_id, lease_until)
        if not extended:
            logger.warning(f"Worker {worker_id} no longer holds job {job_id}")
        return extended

    def reclaim_expired(self) -> list[Job]:
        """Return jobs whose lease ran out to the queue.

        Each expired job is treated as a failed attempt: it is retried after
        backoff, or dead-lettered if that was its last attempt.

        Returns:
            The reclaimed jobs in their new state.
        """
        now = self._clock()
        reclaimed: list[Job] = []
        documents: list[Document] = []

        with self._db.transaction() as conn:
            for job in self._jobs.expired_leases(conn, now):
                message = LEASE_EXPIRED_MESSAGE
                if job.worker_id:
                    message = f"{message} (worker {job.worker_id})"
                updated, document = self._record_failure(conn, job, message, now)
                reclaimed.append(updated)
                if document is not None:
                    documents.append(document)

        for document in documents:
            self._lifecycle.publish(document)
        if reclaimed:
            logger.warning(f"Reclaimed {len(reclaimed)} job(s) with expired leases")
        return reclaimed

    # -- queries -------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[Job]:
        """List jobs, newest first."""
        return self._jobs.list_jobs(status=status, limit=limit)

    def jobs_for_document(self, document_id: str) -> list[Job]:
        """All jobs for a document, oldest first."""
        return self._jobs.for_document(document_id)

    def stats(self) -> QueueStats:
        """Job counts per status."""
        return self._jobs.stats()

    def has_active_jobs(self) -> bool:
        """Check if there are any pending or processing jobs."""
        return self.stats().active > 0

    # -- internals -----------------------------------------------------------

    def _require_processing(self, conn: sqlite3.Connection, job_id: str) -> Job:
        job = self._jobs.get(job_id, conn)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.PROCESSING:
            raise InvariantViolation(
                f"Job {job_id} is {job.status.value}, expected processing"
            )
        return job

    def _record_failure(
        self,
        conn: sqlite3.Connection,
        job: Job,
        error_message: str,
        now: datetime,
        permanent: bool = False,
        worker_id: Optional[str] = None,
    ) -> tuple[Job, Optional[Document]]:
        attempts = job.max_attempts if permanent else min(job.attempts + 1, job.max_attempts)

        if attempts >= job.max_attempts:
            if not self._jobs.mark_failed(conn, job.id, attempts, now, error_message, worker_id):
                raise InvariantViolation(
                    f"Job {job.id} is leased to {job.worker_id}, not {worker_id}"
                )
            current = self._documents.get(job.document_id, conn)
            if current.status == DocumentStatus.PROCESSING:
                document = self._lifecycle.transition(
                    conn, job.document_id, LifecycleEvent.JOB_FAILED, now
                )
            else:
                # Another job already settled the document
                logger.warning(
                    f"Document {job.document_id} is {current.status.value}; "
                    f"dead-lettering job {job.id} without changing it"
                )
                document = None
            logger.error(
                f"Job {job.id} failed permanently after {attempts} attempt(s): {error_message}"
            )
        else:
            scheduled_for = now + self._backoff.delay(attempts)
            if not self._jobs.mark_retry(
                conn, job.id, attempts, scheduled_for, error_message, worker_id
            ):
                raise InvariantViolation(
                    f"Job {job.id} is leased to {job.worker_id}, not {worker_id}"
                )
            document = None
            logger.warning(
                f"Job {job.id} attempt {attempts}/{job.max_attempts} failed, "
                f"retry at {scheduled_for.isoformat()}: {error_message}"
            )

        return self._jobs.get(job.id, conn), document
