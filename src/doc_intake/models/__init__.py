"""Domain models for the document intake pipeline."""

from doc_intake.models.documents import (
    AuditEntry,
    BoundingBox,
    Document,
    DocumentStats,
    ExtractedField,
    ExtractedFieldInput,
    FeedbackRecord,
)
from doc_intake.models.enums import (
    AuditAction,
    DocumentStatus,
    JobStatus,
    JobType,
    LifecycleEvent,
    PromptStatus,
    UserRole,
)
from doc_intake.models.events import Actor, DocumentEvent, StoredEvent
from doc_intake.models.jobs import DocumentJobPayload, Job, JobResult, QueueStats
from doc_intake.models.prompts import PromptVersion

__all__ = [
    "Actor",
    "AuditAction",
    "AuditEntry",
    "BoundingBox",
    "Document",
    "DocumentEvent",
    "DocumentJobPayload",
    "DocumentStats",
    "DocumentStatus",
    "ExtractedField",
    "ExtractedFieldInput",
    "FeedbackRecord",
    "Job",
    "JobResult",
    "JobStatus",
    "JobType",
    "LifecycleEvent",
    "PromptStatus",
    "PromptVersion",
    "QueueStats",
    "StoredEvent",
    "UserRole",
]
