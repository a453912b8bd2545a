"""Human review of extracted fields.

Accepting a review compares the reviewer's values with what the model
extracted, logs every difference as feedback for prompt tuning, completes
the document and writes an audit entry, all in one transaction.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from doc_intake.exceptions import InvariantViolation, PermissionDenied
from doc_intake.lifecycle import DocumentLifecycle
from doc_intake.models.documents import (
    AuditEntry,
    Document,
    ExtractedField,
    FeedbackRecord,
)
from doc_intake.models.enums import AuditAction, DocumentStatus, LifecycleEvent
from doc_intake.models.events import Actor
from doc_intake.store.audit import AuditStore
from doc_intake.store.database import Database
from doc_intake.store.documents import DocumentStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.review")


class ReviewItem(BaseModel):
    """A document with the fields a reviewer is asked to check."""

    document: Document
    fields: list[ExtractedField] = Field(default_factory=list)


class ReviewOutcome(BaseModel):
    """Result of an accepted review."""

    document: Document
    feedback: list[FeedbackRecord] = Field(default_factory=list)
    audit_entry: Optional[AuditEntry] = None

    @property
    def changes_made(self) -> int:
        """Number of fields the reviewer corrected."""
        return len(self.feedback)


def diff_corrections(
    fields: Iterable[ExtractedField],
    corrected_fields: Mapping[str, str],
    reviewer_id: str,
    now: datetime,
) -> list[FeedbackRecord]:
    """Build a feedback record for every field whose value the reviewer changed.

    Fields missing from ``corrected_fields`` count as unchanged. Corrections
    for names that were never extracted are ignored.
    """
    records = []
    for field in fields:
        if field.field_name not in corrected_fields:
            continue
        human_value = corrected_fields[field.field_name]
        if human_value == field.field_value:
            continue
        records.append(
            FeedbackRecord(
                id=str(uuid.uuid4()),
                document_id=field.document_id,
                field_name=field.field_name,
                ai_value=field.field_value,
                human_value=human_value,
                reviewer_id=reviewer_id,
                created_at=now,
            )
        )
    return records


class ReviewService:
    """Entry point for reviewers."""

    def __init__(
        self,
        db: Database,
        documents: DocumentStore,
        audit: AuditStore,
        lifecycle: DocumentLifecycle,
        clock: Clock = utc_now,
    ):
        self._db = db
        self._documents = documents
        self._audit = audit
        self._lifecycle = lifecycle
        self._clock = clock

    def get_review(self, document_id: str) -> ReviewItem:
        """Load a document and its extracted fields.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        with self._db.connection() as conn:
            document = self._documents.get(document_id, conn)
            fields = self._documents.get_fields(document_id, conn)
        return ReviewItem(document=document, fields=fields)

    def pending_reviews(self, limit: int = 100) -> list[Document]:
        """Documents waiting for a reviewer, newest first."""
        return self._documents.list_documents(
            status=DocumentStatus.AWAITING_REVIEW, limit=limit
        )

    def accept_review(
        self,
        document_id: str,
        corrected_fields: Mapping[str, str],
        reviewer: Actor,
    ) -> ReviewOutcome:
        """Accept a reviewed document.

        Args:
            document_id: Document under review.
            corrected_fields: Reviewer's value per field name.
            reviewer: Acting user; must be a reviewer or admin.

        Returns:
            The completed document with the feedback and audit entry written.

        Raises:
            PermissionDenied: If the actor may not review.
            DocumentNotFoundError: If the document does not exist.
            InvariantViolation: If the document is not awaiting review,
                including when another reviewer finished it first.
        """
        if not reviewer.can_review:
            raise PermissionDenied(
                f"User {reviewer.user_id} ({reviewer.role.value}) may not review documents"
            )

        now = self._clock()
        with self._db.transaction() as conn:
            document = self._documents.get(document_id, conn)
            if document.status != DocumentStatus.AWAITING_REVIEW:
                raise InvariantViolation(
                    f"Document {document_id} is {document.status.value}, not awaiting review"
                )

            fields = self._documents.get_fields(document_id, conn)
            feedback = diff_corrections(fields, corrected_fields, reviewer.user_id, now)
            self._documents.insert_feedback(conn, feedback)

            completed = self._lifecycle.transition(
                conn, document_id, LifecycleEvent.REVIEW_ACCEPTED, now
            )

            entry = self._audit.log(
                conn,
                AuditEntry(
                    user_id=reviewer.user_id,
                    action=AuditAction.DOCUMENT_REVIEWED,
                    target_resource_type="document",
                    target_resource_id=document_id,
                    details={
                        "changes_made": len(feedback),
                        "filename": document.filename,
                    },
                    created_at=now,
                ),
            )

        self._lifecycle.publish(completed)
        logger.info(
            f"Document {document_id} reviewed by {reviewer.user_id} "
            f"with {len(feedback)} correction(s)"
        )
        return ReviewOutcome(document=completed, feedback=feedback, audit_entry=entry)
