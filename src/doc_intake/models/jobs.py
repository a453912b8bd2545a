"""Job queue data models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from doc_intake.models.documents import ExtractedFieldInput
from doc_intake.models.enums import JobStatus, JobType
from doc_intake.utils.timeutils import utc_now


class DocumentJobPayload(BaseModel):
    """Payload shape for ``document_processing`` jobs.

    The queue stores and returns payloads untouched; this model is what the
    intake service writes and the processing handler reads.
    """

    file_path: str
    filename: str
    building_id: Optional[str] = None
    revision_type_id: Optional[str] = None


class Job(BaseModel):
    """One attempt-tracked unit of queued work."""

    id: str = Field(..., description="Unique job identifier")
    document_id: str = Field(..., description="Document this job works on")
    job_type: JobType = Field(default=JobType.DOCUMENT_PROCESSING)
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = Field(default=JobStatus.PENDING)

    # Retry budget
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    scheduled_for: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Lease
    worker_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Check if the job will never be claimed again."""
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_dead_lettered(self) -> bool:
        """A failed job that has used up its retry budget."""
        return self.status == JobStatus.FAILED and self.attempts >= self.max_attempts

    @property
    def duration_seconds(self) -> float | None:
        """Calculate job duration in seconds."""
        if self.started_at is None:
            return None
        end = self.completed_at or utc_now()
        return (end - self.started_at).total_seconds()


class JobResult(BaseModel):
    """What a handler hands back to the queue on success."""

    fields: list[ExtractedFieldInput] = Field(default_factory=list)
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    document_type: Optional[str] = None


class QueueStats(BaseModel):
    """Job counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def active(self) -> int:
        """Jobs that are waiting or running."""
        return self.pending + self.processing
