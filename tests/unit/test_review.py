"""Tests for the review feedback loop."""

import pytest

from doc_intake.exceptions import DocumentNotFoundError, InvariantViolation, PermissionDenied
from doc_intake.models.enums import AuditAction, DocumentStatus, UserRole
from doc_intake.models.events import Actor
from doc_intake.review import diff_corrections

REVIEWER = Actor(user_id="rita", role=UserRole.REVIEWER)


class TestDiffCorrections:
    """Tests for diff_corrections."""

    def test_identical_values_produce_no_feedback(self, pipeline, awaiting_review, clock):
        """Test submitting the extracted values unchanged logs nothing."""
        fields = pipeline.documents.get_fields(awaiting_review.id)
        corrected = {f.field_name: f.field_value for f in fields}
        assert diff_corrections(fields, corrected, "rita", clock.now) == []

    def test_absent_and_unknown_keys_ignored(self, pipeline, awaiting_review, clock):
        """Test missing keys mean unchanged and extra keys are ignored."""
        fields = pipeline.documents.get_fields(awaiting_review.id)
        assert diff_corrections(fields, {"not_extracted": "x"}, "rita", clock.now) == []


class TestAcceptReview:
    """Tests for ReviewService.accept_review."""

    def test_review_without_changes(self, pipeline, awaiting_review):
        """Test an unchanged review completes the document with no feedback."""
        outcome = pipeline.reviews.accept_review(
            awaiting_review.id,
            {"review_number": "R-100", "reviewer_name": "Jane Doe"},
            REVIEWER,
        )

        assert outcome.changes_made == 0
        assert outcome.document.status == DocumentStatus.COMPLETED
        assert pipeline.documents.list_feedback(awaiting_review.id) == []

        stored = pipeline.documents.get(awaiting_review.id)
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.processed_at is not None

    def test_one_correction_logs_one_feedback_record(self, pipeline, awaiting_review):
        """Test a single changed value yields exactly one feedback record."""
        outcome = pipeline.reviews.accept_review(
            awaiting_review.id,
            {"review_number": "R-101", "reviewer_name": "Jane Doe"},
            REVIEWER,
        )

        assert outcome.changes_made == 1
        records = pipeline.documents.list_feedback(awaiting_review.id)
        assert len(records) == 1
        assert records[0].field_name == "review_number"
        assert records[0].ai_value == "R-100"
        assert records[0].human_value == "R-101"
        assert records[0].reviewer_id == "rita"

    def test_extracted_fields_stay_immutable(self, pipeline, awaiting_review):
        """Test corrections go to feedback, not into the extracted data."""
        pipeline.reviews.accept_review(awaiting_review.id, {"review_number": "R-101"}, REVIEWER)
        values = {f.field_name: f.field_value for f in pipeline.documents.get_fields(awaiting_review.id)}
        assert values["review_number"] == "R-100"

    def test_audit_entry_written(self, pipeline, awaiting_review):
        """Test the review is recorded in the audit log."""
        outcome = pipeline.reviews.accept_review(
            awaiting_review.id, {"reviewer_name": "J. Doe"}, REVIEWER
        )

        entries = pipeline.audit.list_entries(action=AuditAction.DOCUMENT_REVIEWED)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.id == outcome.audit_entry.id
        assert entry.user_id == "rita"
        assert entry.target_resource_type == "document"
        assert entry.target_resource_id == awaiting_review.id
        assert entry.details == {"changes_made": 1, "filename": "awaiting.txt"}

    def test_second_review_rejected(self, pipeline, awaiting_review):
        """Test a completed document cannot be reviewed again."""
        pipeline.reviews.accept_review(awaiting_review.id, {}, REVIEWER)

        with pytest.raises(InvariantViolation):
            pipeline.reviews.accept_review(awaiting_review.id, {"review_number": "X"}, REVIEWER)

        assert pipeline.documents.list_feedback(awaiting_review.id) == []
        assert len(pipeline.audit.list_entries(action=AuditAction.DOCUMENT_REVIEWED)) == 1

    def test_review_before_extraction_rejected(self, pipeline, add_document):
        """Test a queued document is not reviewable."""
        document, _ = add_document()
        with pytest.raises(InvariantViolation):
            pipeline.reviews.accept_review(document.id, {}, REVIEWER)

    def test_owner_may_not_review(self, pipeline, awaiting_review):
        """Test the owner role is not allowed to accept reviews."""
        with pytest.raises(PermissionDenied):
            pipeline.reviews.accept_review(
                awaiting_review.id, {}, Actor(user_id="alice", role=UserRole.OWNER)
            )
        assert pipeline.documents.get(awaiting_review.id).status == DocumentStatus.AWAITING_REVIEW

    def test_admin_may_review(self, pipeline, awaiting_review):
        """Test admins can accept reviews."""
        outcome = pipeline.reviews.accept_review(
            awaiting_review.id, {}, Actor(user_id="root", role=UserRole.ADMIN)
        )
        assert outcome.document.status == DocumentStatus.COMPLETED

    def test_unknown_document(self, pipeline):
        """Test reviewing a missing document."""
        with pytest.raises(DocumentNotFoundError):
            pipeline.reviews.accept_review("missing", {}, REVIEWER)


class TestGetReview:
    """Tests for loading review items."""

    def test_get_review_returns_fields(self, pipeline, awaiting_review):
        """Test the review item carries the document and its fields."""
        item = pipeline.reviews.get_review(awaiting_review.id)
        assert item.document.id == awaiting_review.id
        assert [f.field_name for f in item.fields] == ["review_number", "reviewer_name"]

    def test_pending_reviews(self, pipeline, awaiting_review, add_document):
        """Test only awaiting-review documents are listed."""
        add_document(filename="queued.txt")
        assert [d.id for d in pipeline.reviews.pending_reviews()] == [awaiting_review.id]


class TestDocumentStats:
    """Tests for DocumentStore.stats."""

    def test_counts_and_average_processing_time(self, pipeline, add_document, awaiting_review, clock):
        """Test per-status counts and the upload-to-completion average."""
        add_document(owner_id="bob", filename="queued.txt")
        clock.advance(90)
        pipeline.reviews.accept_review(awaiting_review.id, {}, REVIEWER)

        stats = pipeline.documents.stats()

        assert stats.queued == 1
        assert stats.completed == 1
        assert stats.total == 2
        assert stats.in_queue == 1
        assert stats.completion_rate == 0.5
        assert stats.average_processing_seconds == 90.0

    def test_owner_filter(self, pipeline, add_document):
        """Test stats can be limited to one user's documents."""
        add_document(owner_id="alice", filename="a.txt")
        add_document(owner_id="bob", filename="b.txt")

        stats = pipeline.documents.stats(owner_id="bob")

        assert stats.total == 1
        assert stats.average_processing_seconds is None
