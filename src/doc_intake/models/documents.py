"""Document, extracted data and review models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from doc_intake.models.enums import AuditAction, DocumentStatus
from doc_intake.utils.timeutils import utc_now


class BoundingBox(BaseModel):
    """Where on a page an extracted value was found."""

    page: int = Field(default=1, ge=1)
    left: float = 0.0
    top: float = 0.0
    width: float = 0.0
    height: float = 0.0


class Document(BaseModel):
    """A file submitted for processing."""

    id: str
    filename: str
    file_path: str
    status: DocumentStatus = DocumentStatus.QUEUED
    owner_id: str
    file_size: int = Field(default=0, ge=0)
    building_id: Optional[str] = None
    revision_type_id: Optional[str] = None
    document_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Check if the document is completed or failed."""
        return self.status.is_terminal


class ExtractedFieldInput(BaseModel):
    """A field produced by the extractor, before it is stored."""

    field_name: str = Field(..., min_length=1)
    field_value: str
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    bounding_box: BoundingBox = Field(default_factory=BoundingBox)


class ExtractedField(ExtractedFieldInput):
    """A stored, immutable machine-extracted value."""

    id: str
    document_id: str
    created_at: datetime = Field(default_factory=utc_now)


class FeedbackRecord(BaseModel):
    """A human correction of a machine-extracted value."""

    id: str
    document_id: str
    field_name: str
    ai_value: str
    human_value: str
    reviewer_id: str
    created_at: datetime = Field(default_factory=utc_now)


class AuditEntry(BaseModel):
    """One row of the audit trail."""

    id: Optional[int] = None
    user_id: Optional[str] = None
    action: AuditAction
    target_resource_type: Optional[str] = None
    target_resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class DocumentStats(BaseModel):
    """Document counts per status, plus how long finished reviews took."""

    queued: int = 0
    processing: int = 0
    awaiting_review: int = 0
    completed: int = 0
    failed: int = 0
    average_processing_seconds: Optional[float] = None

    @property
    def total(self) -> int:
        """All documents."""
        return (
            self.queued + self.processing + self.awaiting_review + self.completed + self.failed
        )

    @property
    def in_queue(self) -> int:
        """Documents not yet extracted."""
        return self.queued + self.processing

    @property
    def completion_rate(self) -> float:
        """Share of documents that are completed, 0.0 when there are none."""
        return self.completed / self.total if self.total else 0.0
