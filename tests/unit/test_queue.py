"""Tests for the job queue."""

import sqlite3
import threading
from datetime import timedelta

import pytest

from conftest import sample_fields
from doc_intake.exceptions import InvariantViolation, JobNotFoundError
from doc_intake.models.enums import DocumentStatus, JobStatus
from doc_intake.models.jobs import JobResult
from doc_intake.utils.timeutils import to_db


class TestEnqueue:
    """Tests for JobQueue.enqueue."""

    def test_enqueue_creates_pending_job(self, pipeline, add_document, clock):
        """Test a new job is pending, due now, with an untouched payload."""
        document, job = add_document()

        stored = pipeline.queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 0
        assert stored.max_attempts == 3
        assert stored.scheduled_for == clock.now
        assert stored.payload == {"file_path": "alice/report.txt", "filename": "report.txt"}
        assert stored.document_id == document.id

    def test_enqueue_custom_max_attempts(self, pipeline, add_document):
        """Test max_attempts is taken from the caller."""
        _, job = add_document(max_attempts=5)
        assert pipeline.queue.get_job(job.id).max_attempts == 5

    def test_enqueue_rejects_zero_attempts(self, pipeline, add_document):
        """Test max_attempts must be at least 1."""
        document, _ = add_document()
        with pytest.raises(ValueError):
            pipeline.queue.enqueue(document.id, max_attempts=0)

    def test_enqueue_requires_existing_document(self, pipeline):
        """Test a job cannot reference a missing document."""
        with pytest.raises(sqlite3.IntegrityError):
            pipeline.queue.enqueue("no-such-document")

    def test_get_unknown_job(self, pipeline):
        """Test looking up a missing job."""
        with pytest.raises(JobNotFoundError):
            pipeline.queue.get_job("missing")


class TestClaim:
    """Tests for JobQueue.claim_next."""

    def test_claim_empty_queue(self, pipeline):
        """Test claiming from an empty queue returns None."""
        assert pipeline.queue.claim_next("worker-1") is None

    def test_claim_marks_job_and_document_processing(self, pipeline, add_document, clock):
        """Test a claim sets status, start time, lease and worker."""
        document, job = add_document()

        claimed = pipeline.queue.claim_next("worker-1")

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.started_at == clock.now
        assert claimed.lease_expires_at == clock.now + timedelta(seconds=600)
        assert claimed.worker_id == "worker-1"

        stored = pipeline.queue.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.started_at is not None
        assert pipeline.documents.get(document.id).status == DocumentStatus.PROCESSING

    def test_claim_is_fifo(self, pipeline, add_document, clock):
        """Test the oldest due job is claimed first."""
        _, first = add_document(filename="a.txt")
        clock.advance(1)
        _, second = add_document(filename="b.txt")

        assert pipeline.queue.claim_next().id == first.id
        assert pipeline.queue.claim_next().id == second.id
        assert pipeline.queue.claim_next() is None

    def test_claimed_job_not_claimed_again(self, pipeline, add_document):
        """Test a processing job is invisible to other claimers."""
        add_document()
        assert pipeline.queue.claim_next("worker-1") is not None
        assert pipeline.queue.claim_next("worker-2") is None

    def test_concurrent_claims_are_exclusive(self, pipeline, add_document):
        """Test threads racing on claim_next never get the same job."""
        expected = {add_document(filename=f"f{i}.txt")[1].id for i in range(20)}
        claimed: list[str] = []
        lock = threading.Lock()
        errors: list[Exception] = []

        def worker(worker_id: str) -> None:
            try:
                while True:
                    job = pipeline.queue.claim_next(worker_id)
                    if job is None:
                        return
                    with lock:
                        claimed.append(job.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(claimed) == len(set(claimed))
        assert set(claimed) == expected

    def test_claim_dead_letters_job_of_finished_document(self, pipeline, add_document):
        """Test a job whose document is already terminal is failed, not handed out."""
        document, job = add_document()
        pipeline.queue.claim_next("worker-1")
        pipeline.queue.fail(job.id, "bad file", permanent=True, worker_id="worker-1")
        assert pipeline.documents.get(document.id).status == DocumentStatus.FAILED

        orphan = pipeline.queue.enqueue(document.id)
        _, fresh = add_document(filename="next.txt")

        claimed = pipeline.queue.claim_next("worker-1")

        assert claimed.id == fresh.id
        dead = pipeline.queue.get_job(orphan.id)
        assert dead.status == JobStatus.FAILED
        assert dead.attempts == dead.max_attempts

    def test_second_job_for_document_waits_for_the_first(self, pipeline, add_document):
        """Test two jobs of one document are never processing at the same time."""
        document, first = add_document()
        second = pipeline.queue.enqueue(document.id)

        assert pipeline.queue.claim_next("worker-1").id == first.id
        assert pipeline.queue.claim_next("worker-2") is None
        assert pipeline.queue.get_job(second.id).status == JobStatus.PENDING

        pipeline.queue.complete(first.id, JobResult(fields=sample_fields()), worker_id="worker-1")

        # The document is settled now, so the leftover job is dead-lettered
        assert pipeline.queue.claim_next("worker-2") is None
        assert pipeline.queue.get_job(second.id).status == JobStatus.FAILED
        assert pipeline.documents.get(document.id).status == DocumentStatus.AWAITING_REVIEW

    def test_new_job_for_document_mid_retry_is_dead_lettered(self, pipeline, add_document, clock):
        """Test only the retrying job may pick up a document that is already processing."""
        document, first = add_document()
        pipeline.queue.claim_next("worker-1")
        pipeline.queue.fail(first.id, "timeout", worker_id="worker-1")
        second = pipeline.queue.enqueue(document.id)

        assert pipeline.queue.claim_next("worker-2") is None
        assert pipeline.queue.get_job(second.id).status == JobStatus.FAILED

        clock.advance(30)
        assert pipeline.queue.claim_next("worker-2").id == first.id
        assert pipeline.documents.get(document.id).status == DocumentStatus.PROCESSING


class TestComplete:
    """Tests for JobQueue.complete."""

    def test_complete_stores_fields_and_awaits_review(self, pipeline, add_document, clock):
        """Test completion writes fields and moves the document on."""
        document, job = add_document()
        pipeline.queue.claim_next("worker-1")
        clock.advance(5)

        completed = pipeline.queue.complete(
            job.id, JobResult(fields=sample_fields()), worker_id="worker-1"
        )

        assert completed.status == JobStatus.COMPLETED
        assert completed.completed_at == clock.now
        assert completed.duration_seconds == 5.0

        stored = pipeline.documents.get(document.id)
        assert stored.status == DocumentStatus.AWAITING_REVIEW
        assert stored.confidence_score == pytest.approx(0.8)
        assert stored.processed_at is None

        fields = pipeline.documents.get_fields(document.id)
        assert [f.field_name for f in fields] == ["review_number", "reviewer_name"]
        assert fields[0].field_value == "R-100"

    def test_complete_uses_given_confidence(self, pipeline, add_document):
        """Test an explicit confidence score wins over the field mean."""
        document, job = add_document()
        pipeline.queue.claim_next()
        pipeline.queue.complete(
            job.id,
            JobResult(fields=sample_fields(), confidence_score=0.5, document_type="review_report"),
        )

        stored = pipeline.documents.get(document.id)
        assert stored.confidence_score == 0.5
        assert stored.document_type == "review_report"

    def test_complete_pending_job_rejected(self, pipeline, add_document):
        """Test a job that was never claimed cannot complete."""
        _, job = add_document()
        with pytest.raises(InvariantViolation):
            pipeline.queue.complete(job.id)

    def test_complete_twice_rejected(self, pipeline, add_document):
        """Test a completed job cannot complete again."""
        document, job = add_document()
        pipeline.queue.claim_next()
        pipeline.queue.complete(job.id, JobResult(fields=sample_fields()))

        with pytest.raises(InvariantViolation):
            pipeline.queue.complete(job.id, JobResult(fields=sample_fields()))
        assert len(pipeline.documents.get_fields(document.id)) == 2

    def test_complete_by_other_worker_rejected(self, pipeline, add_document):
        """Test only the lease holder can complete a job."""
        document, job = add_document()
        pipeline.queue.claim_next("worker-1")

        with pytest.raises(InvariantViolation):
            pipeline.queue.complete(job.id, JobResult(fields=sample_fields()), worker_id="worker-2")

        assert pipeline.queue.get_job(job.id).status == JobStatus.PROCESSING
        assert pipeline.documents.get_fields(document.id) == []

    def test_complete_unknown_job(self, pipeline):
        """Test completing a missing job."""
        with pytest.raises(JobNotFoundError):
            pipeline.queue.complete("missing")


class TestFail:
    """Tests for JobQueue.fail and retry behavior."""

    def test_failure_schedules_retry_with_backoff(self, pipeline, add_document, clock):
        """Test a transient failure puts the job back after the backoff delay."""
        document, job = add_document()
        pipeline.queue.claim_next("worker-1")

        retried = pipeline.queue.fail(job.id, "timeout", worker_id="worker-1")

        assert retried.status == JobStatus.PENDING
        assert retried.attempts == 1
        assert retried.scheduled_for == clock.now + timedelta(seconds=30)
        assert retried.error_message == "timeout"
        assert retried.worker_id is None
        assert pipeline.documents.get(document.id).status == DocumentStatus.PROCESSING

        # Not due yet
        assert pipeline.queue.claim_next() is None
        clock.advance(30)
        assert pipeline.queue.claim_next().id == job.id

    def test_retry_claim_keeps_document_processing(self, pipeline, add_document, clock):
        """Test re-claiming a retried job is not a second transition."""
        document, job = add_document()
        pipeline.queue.claim_next()
        pipeline.queue.fail(job.id, "timeout")
        clock.advance(30)

        claimed = pipeline.queue.claim_next()

        assert claimed.attempts == 1
        assert pipeline.documents.get(document.id).status == DocumentStatus.PROCESSING

    def test_exhausted_retries_fail_job_and_document(self, pipeline, add_document, clock):
        """Test three failures with max_attempts=3 dead-letter the job."""
        document, job = add_document(max_attempts=3)
        delays = []

        for _ in range(3):
            claimed = pipeline.queue.claim_next("worker-1")
            assert claimed is not None
            result = pipeline.queue.fail(job.id, "model timeout", worker_id="worker-1")
            assert 0 <= result.attempts <= result.max_attempts
            if result.status == JobStatus.PENDING:
                delays.append((result.scheduled_for - clock.now).total_seconds())
                clock.advance(delays[-1])

        final = pipeline.queue.get_job(job.id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert final.is_dead_lettered
        assert final.completed_at is not None
        assert delays == [30.0, 60.0]

        stored = pipeline.documents.get(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.processed_at is not None
        assert pipeline.queue.claim_next() is None

    def test_permanent_failure_skips_retries(self, pipeline, add_document):
        """Test a permanent failure uses up the whole budget at once."""
        document, job = add_document(max_attempts=5)
        pipeline.queue.claim_next()

        failed = pipeline.queue.fail(job.id, "unsupported file", permanent=True)

        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 5
        assert pipeline.documents.get(document.id).status == DocumentStatus.FAILED

    def test_fail_pending_job_rejected(self, pipeline, add_document):
        """Test a job that is not processing cannot fail."""
        _, job = add_document()
        with pytest.raises(InvariantViolation):
            pipeline.queue.fail(job.id, "nope")
        assert pipeline.queue.get_job(job.id).attempts == 0

    def test_fail_by_other_worker_rejected(self, pipeline, add_document):
        """Test only the lease holder can record a failure."""
        _, job = add_document()
        pipeline.queue.claim_next("worker-1")
        with pytest.raises(InvariantViolation):
            pipeline.queue.fail(job.id, "nope", worker_id="worker-2")
        assert pipeline.queue.get_job(job.id).attempts == 0


class TestLeases:
    """Tests for lease renewal and the reclaim sweep."""

    def test_reclaim_expired_lease(self, pipeline, add_document, clock):
        """Test an expired lease returns the job to pending with one attempt used."""
        document, job = add_document()
        pipeline.queue.claim_next("worker-1")
        clock.advance(601)

        reclaimed = pipeline.queue.reclaim_expired()

        assert [j.id for j in reclaimed] == [job.id]
        stored = pipeline.queue.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.worker_id is None
        assert "lease expired" in stored.error_message
        assert pipeline.documents.get(document.id).status == DocumentStatus.PROCESSING

    def test_live_lease_not_reclaimed(self, pipeline, add_document, clock):
        """Test a job within its lease is left alone."""
        add_document()
        pipeline.queue.claim_next("worker-1")
        clock.advance(599)
        assert pipeline.queue.reclaim_expired() == []

    def test_reclaim_last_attempt_dead_letters(self, pipeline, add_document, clock):
        """Test an expired lease on the final attempt fails the job."""
        document, job = add_document(max_attempts=1)
        pipeline.queue.claim_next("worker-1")
        clock.advance(601)

        pipeline.queue.reclaim_expired()

        assert pipeline.queue.get_job(job.id).status == JobStatus.FAILED
        assert pipeline.documents.get(document.id).status == DocumentStatus.FAILED

    def test_extend_lease(self, pipeline, add_document, clock):
        """Test the lease holder can push out its lease."""
        _, job = add_document()
        pipeline.queue.claim_next("worker-1")
        clock.advance(500)

        assert pipeline.queue.extend_lease(job.id, "worker-1") is True
        assert pipeline.queue.get_job(job.id).lease_expires_at == clock.now + timedelta(seconds=600)
        assert pipeline.queue.extend_lease(job.id, "worker-2") is False

        clock.advance(500)
        assert pipeline.queue.reclaim_expired() == []

    def test_late_completion_after_reclaim_rejected(self, pipeline, add_document, clock):
        """Test a worker that lost its lease cannot complete the job."""
        _, job = add_document()
        pipeline.queue.claim_next("worker-1")
        clock.advance(601)
        pipeline.queue.reclaim_expired()

        with pytest.raises(InvariantViolation):
            pipeline.queue.complete(job.id, JobResult(fields=sample_fields()), worker_id="worker-1")

    def test_reclaim_stale_job_of_settled_document(self, pipeline, add_document, clock):
        """Test an expired job whose document moved on fails alone without blocking the sweep."""
        document, first = add_document()
        pipeline.queue.claim_next("worker-1")
        pipeline.queue.complete(first.id, JobResult(fields=sample_fields()), worker_id="worker-1")
        stale = pipeline.queue.enqueue(document.id, max_attempts=1)
        with pipeline.db.transaction() as conn:
            conn.execute(
                """
                UPDATE job_queue
                SET status = 'processing', worker_id = 'gone', lease_expires_at = ?
                WHERE id = ?
                """,
                (to_db(clock.now), stale.id),
            )
        _, other = add_document(filename="other.txt")
        pipeline.queue.claim_next("worker-2")
        clock.advance(601)

        reclaimed = pipeline.queue.reclaim_expired()

        assert {j.id for j in reclaimed} == {stale.id, other.id}
        assert pipeline.queue.get_job(stale.id).status == JobStatus.FAILED
        assert pipeline.documents.get(document.id).status == DocumentStatus.AWAITING_REVIEW
        retried = pipeline.queue.get_job(other.id)
        assert retried.status == JobStatus.PENDING
        assert retried.attempts == 1


class TestStats:
    """Tests for queue statistics."""

    def test_stats_counts_by_status(self, pipeline, add_document):
        """Test counts reflect each job's status."""
        _, first = add_document(filename="a.txt")
        add_document(filename="b.txt")
        add_document(filename="c.txt")
        pipeline.queue.claim_next()
        pipeline.queue.complete(first.id, JobResult(fields=sample_fields()))
        pipeline.queue.claim_next()

        stats = pipeline.queue.stats()
        assert stats.pending == 1
        assert stats.processing == 1
        assert stats.completed == 1
        assert stats.failed == 0
        assert pipeline.queue.has_active_jobs() is True

    def test_jobs_for_document(self, pipeline, add_document):
        """Test listing a document's jobs."""
        document, job = add_document()
        assert [j.id for j in pipeline.queue.jobs_for_document(document.id)] == [job.id]
