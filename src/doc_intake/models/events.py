"""Realtime event and identity models."""

from datetime import datetime

from pydantic import BaseModel

from doc_intake.models.enums import DocumentStatus, UserRole


class DocumentEvent(BaseModel):
    """A document status change delivered to its owner's subscriptions."""

    document_id: str
    status: DocumentStatus
    filename: str


class Actor(BaseModel):
    """The current user as seen by the core."""

    user_id: str
    role: UserRole = UserRole.OWNER

    @property
    def can_review(self) -> bool:
        """Reviewers and admins may accept reviews."""
        return self.role in (UserRole.REVIEWER, UserRole.ADMIN)


class StoredEvent(BaseModel):
    """A document event as recorded in the ``document_events`` outbox."""

    sequence: int
    owner_id: str
    event: DocumentEvent
    created_at: datetime
