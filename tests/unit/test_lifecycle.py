"""Tests for the document lifecycle state machine."""

from unittest.mock import MagicMock

import pytest

from doc_intake.exceptions import DocumentNotFoundError, InvariantViolation
from doc_intake.lifecycle import TRANSITIONS, DocumentLifecycle, next_status
from doc_intake.models.enums import DocumentStatus, LifecycleEvent


class TestNextStatus:
    """Tests for the transition table."""

    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (DocumentStatus.QUEUED, LifecycleEvent.JOB_CLAIMED, DocumentStatus.PROCESSING),
            (DocumentStatus.PROCESSING, LifecycleEvent.JOB_COMPLETED, DocumentStatus.AWAITING_REVIEW),
            (DocumentStatus.PROCESSING, LifecycleEvent.JOB_FAILED, DocumentStatus.FAILED),
            (DocumentStatus.AWAITING_REVIEW, LifecycleEvent.REVIEW_ACCEPTED, DocumentStatus.COMPLETED),
        ],
    )
    def test_allowed_transitions(self, current, event, expected):
        """Test every defined transition."""
        assert next_status(current, event) == expected

    def test_everything_else_rejected(self):
        """Test pairs outside the table raise."""
        for current in DocumentStatus:
            for event in LifecycleEvent:
                if (current, event) in TRANSITIONS:
                    continue
                with pytest.raises(InvariantViolation):
                    next_status(current, event)

    def test_terminal_statuses_have_no_exits(self):
        """Test completed and failed are terminal."""
        for current, _ in TRANSITIONS:
            assert not current.is_terminal
        assert DocumentStatus.COMPLETED.is_terminal
        assert DocumentStatus.FAILED.is_terminal


class TestDocumentLifecycle:
    """Tests for DocumentLifecycle against the store."""

    def test_transition_updates_document(self, pipeline, add_document, clock):
        """Test a transition persists the new status."""
        document, _ = add_document()
        clock.advance(10)

        with pipeline.db.transaction() as conn:
            updated = pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.JOB_CLAIMED)

        assert updated.status == DocumentStatus.PROCESSING
        stored = pipeline.documents.get(document.id)
        assert stored.status == DocumentStatus.PROCESSING
        assert stored.updated_at == clock.now
        assert stored.processed_at is None

    def test_terminal_transition_sets_processed_at(self, pipeline, add_document, clock):
        """Test reaching a terminal status records the processing time."""
        document, _ = add_document()
        with pipeline.db.transaction() as conn:
            pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.JOB_CLAIMED)
            pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.JOB_FAILED)

        stored = pipeline.documents.get(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.processed_at == clock.now

    def test_illegal_transition_rolls_back(self, pipeline, add_document):
        """Test an illegal event leaves the document untouched."""
        document, _ = add_document()
        with pytest.raises(InvariantViolation):
            with pipeline.db.transaction() as conn:
                pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.REVIEW_ACCEPTED)

        assert pipeline.documents.get(document.id).status == DocumentStatus.QUEUED

    def test_unknown_document(self, pipeline):
        """Test transitioning a missing document."""
        with pytest.raises(DocumentNotFoundError):
            with pipeline.db.transaction() as conn:
                pipeline.lifecycle.transition(conn, "missing", LifecycleEvent.JOB_CLAIMED)

    def test_start_processing_is_idempotent_for_retries(self, pipeline, add_document):
        """Test a retried claim on a document already processing is not a transition."""
        document, _ = add_document()
        with pipeline.db.transaction() as conn:
            first = pipeline.lifecycle.start_processing(conn, document.id)
            second = pipeline.lifecycle.start_processing(conn, document.id, retry=True)

        assert first.status == DocumentStatus.PROCESSING
        assert second is None

    def test_start_processing_rejects_a_second_job(self, pipeline, add_document):
        """Test a first attempt cannot join a document another job is processing."""
        document, _ = add_document()
        with pipeline.db.transaction() as conn:
            pipeline.lifecycle.start_processing(conn, document.id)
            with pytest.raises(InvariantViolation):
                pipeline.lifecycle.start_processing(conn, document.id)

    def test_transition_records_outbox_event(self, pipeline, add_document):
        """Test every transition writes the new status to the event outbox."""
        document, _ = add_document()
        before = pipeline.events.last_sequence()
        with pipeline.db.transaction() as conn:
            pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.JOB_CLAIMED)

        [stored] = pipeline.events.after(before)
        assert stored.owner_id == "alice"
        assert stored.event.document_id == document.id
        assert stored.event.status == DocumentStatus.PROCESSING

    def test_rolled_back_transition_leaves_no_event(self, pipeline, add_document):
        """Test an aborted transaction takes its outbox row with it."""
        document, _ = add_document()
        before = pipeline.events.last_sequence()
        with pytest.raises(RuntimeError):
            with pipeline.db.transaction() as conn:
                pipeline.lifecycle.transition(conn, document.id, LifecycleEvent.JOB_CLAIMED)
                raise RuntimeError("abort")

        assert pipeline.events.after(before) == []

    def test_compare_and_set_status(self, pipeline, add_document, clock):
        """Test the store only updates a row still in the expected status."""
        document, _ = add_document()
        with pipeline.db.transaction() as conn:
            assert pipeline.documents.update_status(
                conn, document.id, DocumentStatus.QUEUED, DocumentStatus.PROCESSING, clock.now
            )
            assert not pipeline.documents.update_status(
                conn, document.id, DocumentStatus.QUEUED, DocumentStatus.PROCESSING, clock.now
            )

    def test_publish_errors_are_swallowed(self, pipeline, add_document):
        """Test a failing notifier never breaks the caller."""
        document, _ = add_document()
        notifier = MagicMock()
        notifier.tails_outbox = False
        notifier.publish.side_effect = RuntimeError("boom")
        lifecycle = DocumentLifecycle(pipeline.documents, notifier)

        lifecycle.publish(document)

        notifier.publish.assert_called_once_with(
            document.id,
            DocumentStatus.QUEUED,
            owner_id="alice",
            filename="report.txt",
        )

    def test_publish_reads_outbox_when_notifier_tails_it(self, pipeline, add_document):
        """Test an outbox-backed notifier is asked to read the outbox instead."""
        document, _ = add_document()
        notifier = MagicMock()
        notifier.tails_outbox = True
        lifecycle = DocumentLifecycle(pipeline.documents, notifier, events=pipeline.events)

        lifecycle.publish(document)

        notifier.flush.assert_called_once_with()
        notifier.publish.assert_not_called()
