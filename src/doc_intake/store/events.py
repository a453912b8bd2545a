"""Outbox of document status changes, read by every process's notifier."""

import sqlite3
from datetime import datetime
from typing import Optional

from doc_intake.models.documents import Document
from doc_intake.models.enums import DocumentStatus
from doc_intake.models.events import DocumentEvent, StoredEvent
from doc_intake.store.database import Database
from doc_intake.utils.timeutils import from_db, to_db


def _row_to_event(row: sqlite3.Row) -> StoredEvent:
    return StoredEvent(
        sequence=row["id"],
        owner_id=row["owner_id"],
        event=DocumentEvent(
            document_id=row["document_id"],
            status=DocumentStatus(row["status"]),
            filename=row["filename"],
        ),
        created_at=from_db(row["created_at"]),
    )


class EventStore:
    """Appends and tails ``document_events`` rows.

    Rows are appended inside the transaction that changed the document, so a
    reader only ever sees events whose change has committed. Writers hold
    SQLite's write lock from ``BEGIN IMMEDIATE`` to commit, which makes the
    sequence numbers increase in commit order; tailing by sequence therefore
    never skips a committed event.
    """

    def __init__(self, db: Database):
        self._db = db

    def append(
        self, conn: sqlite3.Connection, document: Document, now: datetime
    ) -> int:
        """Record ``document``'s current status. Returns the sequence number."""
        cursor = conn.execute(
            """
            INSERT INTO document_events (document_id, owner_id, status, filename, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.owner_id,
                document.status.value,
                document.filename,
                to_db(now),
            ),
        )
        return cursor.lastrowid

    def after(self, sequence: int, limit: int = 500) -> list[StoredEvent]:
        """Events recorded after ``sequence``, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM document_events WHERE id > ? ORDER BY id LIMIT ?",
                (sequence, limit),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def last_sequence(self) -> int:
        """Sequence number of the newest event, 0 if there are none."""
        with self._db.connection() as conn:
            row = conn.execute("SELECT MAX(id) AS last FROM document_events").fetchone()
        return row["last"] or 0

    def prune(self, before: datetime, conn: Optional[sqlite3.Connection] = None) -> int:
        """Delete events recorded before ``before``. Returns the number removed."""
        with self._db.transaction(conn) as tx:
            removed = tx.execute(
                "DELETE FROM document_events WHERE created_at < ?", (to_db(before),)
            ).rowcount
        return removed
