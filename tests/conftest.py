"""Pytest configuration and fixtures."""

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from doc_intake.config import (
    DocIntakeConfig,
    NotifierConfig,
    QueueConfig,
    StorageConfig,
    WorkerConfig,
)
from doc_intake.models.documents import Document, ExtractedFieldInput
from doc_intake.models.enums import DocumentStatus
from doc_intake.models.jobs import Job, JobResult
from doc_intake.pipeline import Pipeline

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeExtractor:
    """Extractor returning canned fields, or raising a given error."""

    model_name = "fake-model"

    def __init__(
        self,
        fields: Optional[list[ExtractedFieldInput]] = None,
        error: Optional[Exception] = None,
    ):
        self.fields = fields if fields is not None else sample_fields()
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.parameters: list[Optional[dict[str, Any]]] = []

    async def extract(
        self,
        document_text: str,
        prompt: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> list[ExtractedFieldInput]:
        self.calls.append((document_text, prompt))
        self.parameters.append(parameters)
        if self.error is not None:
            raise self.error
        return self.fields


def sample_fields() -> list[ExtractedFieldInput]:
    return [
        ExtractedFieldInput(field_name="review_number", field_value="R-100", confidence_score=0.9),
        ExtractedFieldInput(field_name="reviewer_name", field_value="Jane Doe", confidence_score=0.7),
    ]


@pytest.fixture
def clock() -> FakeClock:
    """A clock fixed at 2025-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> DocIntakeConfig:
    """Configuration pointing at a temporary database and storage root."""
    return DocIntakeConfig(
        database_path=tmp_path / "intake.db",
        queue=QueueConfig(
            max_attempts=3,
            backoff_base_seconds=30.0,
            backoff_cap_seconds=900.0,
            lease_seconds=600.0,
        ),
        worker=WorkerConfig(
            poll_interval_seconds=0.01,
            idle_timeout_seconds=0.05,
            reclaim_interval_seconds=0.01,
        ),
        notifier=NotifierConfig(poll_interval_seconds=0.01),
        storage=StorageConfig(root=tmp_path / "files"),
    )


@pytest.fixture
def pipeline(config: DocIntakeConfig, clock: FakeClock) -> Pipeline:
    """A fully wired pipeline on the temporary database."""
    return Pipeline(config, clock=clock)


@pytest.fixture
def add_document(pipeline: Pipeline):
    """Factory that registers a queued document with its processing job."""

    def _add(
        owner_id: str = "alice",
        filename: str = "report.txt",
        max_attempts: Optional[int] = None,
    ) -> tuple[Document, Job]:
        now = pipeline.clock()
        document = Document(
            id=str(uuid.uuid4()),
            filename=filename,
            file_path=f"{owner_id}/{filename}",
            owner_id=owner_id,
            status=DocumentStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        with pipeline.db.transaction() as conn:
            pipeline.documents.insert(conn, document)
            job = pipeline.queue.enqueue(
                document.id,
                payload={"file_path": document.file_path, "filename": filename},
                max_attempts=max_attempts,
                conn=conn,
            )
        return document, job

    return _add


@pytest.fixture
def awaiting_review(pipeline: Pipeline, add_document):
    """A document whose extraction has completed."""
    document, _ = add_document(filename="awaiting.txt")
    job = pipeline.queue.claim_next("worker-1")
    pipeline.queue.complete(job.id, JobResult(fields=sample_fields()), worker_id="worker-1")
    return pipeline.documents.get(document.id)
