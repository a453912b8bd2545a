"""Document upload: store the file, register the document, queue its job."""

import logging
import uuid
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from doc_intake.config.defaults import DEFAULT_MAX_ATTEMPTS
from doc_intake.exceptions import UploadError
from doc_intake.jobs.queue import JobQueue
from doc_intake.lifecycle import DocumentLifecycle
from doc_intake.models.documents import Document
from doc_intake.models.enums import DocumentStatus, JobType
from doc_intake.models.jobs import DocumentJobPayload, Job
from doc_intake.storage import Storage
from doc_intake.store.database import Database
from doc_intake.store.documents import DocumentStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.intake")


class UploadFile(BaseModel):
    """A file as received from the client."""

    filename: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class UploadFailure(BaseModel):
    """A file from a batch that was not accepted."""

    filename: str
    error: str


class BatchUploadResult(BaseModel):
    """Outcome of a batch upload; files succeed or fail independently."""

    documents: list[Document] = Field(default_factory=list)
    jobs: list[Job] = Field(default_factory=list)
    failures: list[UploadFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.documents)

    @property
    def failed(self) -> int:
        return len(self.failures)


class IntakeService:
    """Accepts uploads and hands them to the job queue."""

    def __init__(
        self,
        db: Database,
        documents: DocumentStore,
        queue: JobQueue,
        storage: Storage,
        lifecycle: Optional[DocumentLifecycle] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utc_now,
    ):
        """Initialize the service.

        Args:
            db: Shared database handle.
            documents: Document store.
            queue: Queue the processing job is added to.
            storage: Where file contents are written.
            lifecycle: Used to announce new documents; optional.
            max_attempts: Retry budget for the processing job.
            clock: Source of the current time.
        """
        self._db = db
        self._documents = documents
        self._queue = queue
        self._storage = storage
        self._lifecycle = lifecycle
        self._max_attempts = max_attempts
        self._clock = clock

    async def upload(
        self,
        file: UploadFile,
        owner_id: str,
        building_id: Optional[str] = None,
        revision_type_id: Optional[str] = None,
    ) -> tuple[Document, Job]:
        """Store one file and queue it for processing.

        The document row and its job are written in one transaction. If
        anything fails the stored file is removed again.

        Raises:
            UploadError: If the file could not be stored or registered.
        """
        if not file.filename.strip():
            raise UploadError(file.filename, "filename is empty")

        try:
            path = await self._storage.put(file.filename, file.content, owner_id)
        except Exception as e:
            raise UploadError(file.filename, f"storage failed: {e}") from e

        now = self._clock()
        document = Document(
            id=str(uuid.uuid4()),
            filename=file.filename,
            file_path=path,
            status=DocumentStatus.QUEUED,
            owner_id=owner_id,
            file_size=file.size,
            building_id=building_id,
            revision_type_id=revision_type_id,
            created_at=now,
            updated_at=now,
        )
        payload = DocumentJobPayload(
            file_path=path,
            filename=file.filename,
            building_id=building_id,
            revision_type_id=revision_type_id,
        )

        try:
            with self._db.transaction() as conn:
                self._documents.insert(conn, document)
                if self._lifecycle is not None:
                    self._lifecycle.record(conn, document, now)
                job = self._queue.enqueue(
                    document.id,
                    JobType.DOCUMENT_PROCESSING,
                    payload.model_dump(exclude_none=True),
                    self._max_attempts,
                    conn=conn,
                )
        except Exception as e:
            await self._discard(path)
            raise UploadError(file.filename, f"could not register document: {e}") from e

        if self._lifecycle is not None:
            self._lifecycle.publish(document)
        logger.info(f"Uploaded {file.filename} as document {document.id}")
        return document, job

    async def upload_batch(
        self,
        files: Iterable[UploadFile],
        owner_id: str,
        building_id: Optional[str] = None,
        revision_type_id: Optional[str] = None,
    ) -> BatchUploadResult:
        """Upload several files; one file failing does not stop the others."""
        result = BatchUploadResult()

        for file in files:
            try:
                document, job = await self.upload(
                    file, owner_id, building_id, revision_type_id
                )
            except UploadError as e:
                logger.error(f"Upload failed: {e}")
                result.failures.append(UploadFailure(filename=e.filename, error=e.message))
                continue
            result.documents.append(document)
            result.jobs.append(job)

        logger.info(
            f"Batch upload: {result.succeeded} accepted, {result.failed} failed"
        )
        return result

    async def _discard(self, path: str) -> None:
        try:
            await self._storage.delete(path)
        except Exception as e:
            logger.warning(f"Could not remove orphaned file {path}: {e}")
