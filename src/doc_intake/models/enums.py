"""Enumerations for the document intake pipeline.

Values are persisted as-is and must not change.
"""

from enum import Enum


class DocumentStatus(str, Enum):
    """Lifecycle status of an uploaded document."""

    QUEUED = "queued"
    PROCESSING = "processing"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is defined from this status."""
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class JobStatus(str, Enum):
    """Status of a job in the queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Kinds of queued work. Each member needs a registered handler."""

    DOCUMENT_PROCESSING = "document_processing"


class PromptStatus(str, Enum):
    """Status of a prompt version."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class LifecycleEvent(str, Enum):
    """Events that drive document status transitions."""

    JOB_CLAIMED = "job_claimed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    REVIEW_ACCEPTED = "review_accepted"


class UserRole(str, Enum):
    """Coarse roles supplied by the identity boundary."""

    OWNER = "owner"
    REVIEWER = "reviewer"
    ADMIN = "admin"


class AuditAction(str, Enum):
    """Actions written to the audit log."""

    DOCUMENT_REVIEWED = "DOCUMENT_REVIEWED"
    PROMPT_ACTIVATED = "PROMPT_ACTIVATED"
