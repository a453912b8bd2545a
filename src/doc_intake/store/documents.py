"""Persistence for documents, extracted fields and review feedback."""

import json
import sqlite3
import uuid
from datetime import datetime
from statistics import fmean
from typing import Iterable, Optional

from doc_intake.exceptions import DocumentNotFoundError
from doc_intake.models.documents import (
    BoundingBox,
    Document,
    DocumentStats,
    ExtractedField,
    ExtractedFieldInput,
    FeedbackRecord,
)
from doc_intake.models.enums import DocumentStatus
from doc_intake.store.database import Database
from doc_intake.utils.timeutils import from_db, to_db


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        filename=row["filename"],
        file_path=row["file_path"],
        status=DocumentStatus(row["status"]),
        owner_id=row["owner_id"],
        file_size=row["file_size"],
        building_id=row["building_id"],
        revision_type_id=row["revision_type_id"],
        document_type=row["document_type"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
        processed_at=from_db(row["processed_at"]),
        confidence_score=row["confidence_score"],
        metadata=json.loads(row["metadata_json"] or "{}"),
    )


def _row_to_field(row: sqlite3.Row) -> ExtractedField:
    return ExtractedField(
        id=row["id"],
        document_id=row["document_id"],
        field_name=row["field_name"],
        field_value=row["field_value"],
        confidence_score=row["confidence_score"],
        bounding_box=BoundingBox(**json.loads(row["bounding_box_json"] or "{}")),
        created_at=from_db(row["created_at"]),
    )


def _row_to_feedback(row: sqlite3.Row) -> FeedbackRecord:
    return FeedbackRecord(
        id=row["id"],
        document_id=row["document_id"],
        field_name=row["field_name"],
        ai_value=row["ai_value"],
        human_value=row["human_value"],
        reviewer_id=row["reviewer_id"],
        created_at=from_db(row["created_at"]),
    )


class DocumentStore:
    """Row-level access to the document tables.

    Write methods take an open connection so callers can group them into one
    transaction. Status changes are only made through
    :class:`doc_intake.lifecycle.DocumentLifecycle`.
    """

    def __init__(self, db: Database):
        """Initialize the store.

        Args:
            db: Shared database handle.
        """
        self._db = db

    # -- documents -----------------------------------------------------------

    def insert(self, conn: sqlite3.Connection, document: Document) -> Document:
        """Insert a new document row."""
        conn.execute(
            """
            INSERT INTO documents (
                id, filename, file_path, status, owner_id, file_size,
                building_id, revision_type_id, document_type,
                created_at, updated_at, processed_at, confidence_score, metadata_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.filename,
                document.file_path,
                document.status.value,
                document.owner_id,
                document.file_size,
                document.building_id,
                document.revision_type_id,
                document.document_type,
                to_db(document.created_at),
                to_db(document.updated_at),
                to_db(document.processed_at),
                document.confidence_score,
                json.dumps(document.metadata),
            ),
        )
        return document

    def find(
        self, document_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Document]:
        """Get a document by ID, or None."""
        with self._db.connection(conn) as c:
            row = c.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _row_to_document(row) if row else None

    def get(
        self, document_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Document:
        """Get a document by ID.

        Raises:
            DocumentNotFoundError: If no such document exists.
        """
        document = self.find(document_id, conn)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return document

    def list_documents(
        self,
        owner_id: Optional[str] = None,
        status: Optional[DocumentStatus] = None,
        limit: int = 100,
    ) -> list[Document]:
        """List documents, newest first.

        Args:
            owner_id: Only documents uploaded by this user.
            status: Only documents in this status.
            limit: Maximum number of documents to return.

        Returns:
            List of Document objects.
        """
        clauses = []
        params: list = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM documents {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    def stats(self, owner_id: Optional[str] = None) -> DocumentStats:
        """Count documents per status.

        The average processing time runs from upload to ``processed_at`` and
        only covers completed documents.

        Args:
            owner_id: Only documents uploaded by this user.
        """
        owner_filter = "AND owner_id = ?" if owner_id is not None else ""
        params = (owner_id,) if owner_id is not None else ()

        with self._db.connection() as conn:
            counts = conn.execute(
                f"""
                SELECT status, COUNT(*) AS count FROM documents
                WHERE 1 = 1 {owner_filter}
                GROUP BY status
                """,
                params,
            ).fetchall()
            finished = conn.execute(
                f"""
                SELECT created_at, processed_at FROM documents
                WHERE status = ? AND processed_at IS NOT NULL {owner_filter}
                """,
                (DocumentStatus.COMPLETED.value, *params),
            ).fetchall()

        durations = [
            (from_db(row["processed_at"]) - from_db(row["created_at"])).total_seconds()
            for row in finished
        ]
        return DocumentStats(
            **{row["status"]: row["count"] for row in counts},
            average_processing_seconds=fmean(durations) if durations else None,
        )

    def update_status(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        expected: DocumentStatus,
        new_status: DocumentStatus,
        now: datetime,
    ) -> bool:
        """Compare-and-set a document's status.

        ``processed_at`` is written when entering a terminal status.

        Returns:
            True if the row was in ``expected`` status and has been updated.
        """
        processed_at = to_db(now) if new_status.is_terminal else None
        cursor = conn.execute(
            """
            UPDATE documents
            SET status = ?, updated_at = ?, processed_at = ?
            WHERE id = ? AND status = ?
            """,
            (new_status.value, to_db(now), processed_at, document_id, expected.value),
        )
        return cursor.rowcount == 1

    def set_extraction_summary(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        confidence_score: Optional[float],
        document_type: Optional[str] = None,
    ) -> None:
        """Record the overall confidence (and detected type) of an extraction."""
        conn.execute(
            """
            UPDATE documents
            SET confidence_score = ?, document_type = COALESCE(?, document_type)
            WHERE id = ?
            """,
            (confidence_score, document_type, document_id),
        )

    # -- extracted fields ----------------------------------------------------

    def insert_fields(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        fields: Iterable[ExtractedFieldInput],
        now: datetime,
    ) -> list[ExtractedField]:
        """Batch-insert extracted fields for a document."""
        stored = [
            ExtractedField(
                id=str(uuid.uuid4()),
                document_id=document_id,
                created_at=now,
                **field.model_dump(),
            )
            for field in fields
        ]
        conn.executemany(
            """
            INSERT INTO extracted_data (
                id, document_id, field_name, field_value,
                confidence_score, bounding_box_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    f.id,
                    f.document_id,
                    f.field_name,
                    f.field_value,
                    f.confidence_score,
                    f.bounding_box.model_dump_json(),
                    to_db(f.created_at),
                )
                for f in stored
            ],
        )
        return stored

    def get_fields(
        self, document_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> list[ExtractedField]:
        """Get extracted fields for a document, ordered by field name."""
        with self._db.connection(conn) as c:
            rows = c.execute(
                """
                SELECT * FROM extracted_data
                WHERE document_id = ?
                ORDER BY field_name, rowid
                """,
                (document_id,),
            ).fetchall()
        return [_row_to_field(row) for row in rows]

    # -- feedback ------------------------------------------------------------

    def insert_feedback(
        self, conn: sqlite3.Connection, records: Iterable[FeedbackRecord]
    ) -> None:
        """Insert human correction records."""
        conn.executemany(
            """
            INSERT INTO ai_feedback_log (
                id, document_id, field_name, ai_value, human_value,
                reviewer_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    r.id,
                    r.document_id,
                    r.field_name,
                    r.ai_value,
                    r.human_value,
                    r.reviewer_id,
                    to_db(r.created_at),
                )
                for r in records
            ],
        )

    def list_feedback(self, document_id: Optional[str] = None) -> list[FeedbackRecord]:
        """List feedback records, oldest first."""
        with self._db.connection() as conn:
            if document_id is None:
                rows = conn.execute(
                    "SELECT * FROM ai_feedback_log ORDER BY created_at, rowid"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM ai_feedback_log
                    WHERE document_id = ?
                    ORDER BY created_at, rowid
                    """,
                    (document_id,),
                ).fetchall()
        return [_row_to_feedback(row) for row in rows]
