"""Append-only audit trail."""

import json
import sqlite3
from typing import Optional

from doc_intake.models.documents import AuditEntry
from doc_intake.models.enums import AuditAction
from doc_intake.store.database import Database
from doc_intake.utils.timeutils import from_db, to_db


def _row_to_audit(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        user_id=row["user_id"],
        action=AuditAction(row["action"]),
        target_resource_type=row["target_resource_type"],
        target_resource_id=row["target_resource_id"],
        details=json.loads(row["details_json"] or "{}"),
        created_at=from_db(row["created_at"]),
    )


class AuditStore:
    """Writes and reads ``audit_log`` rows."""

    def __init__(self, db: Database):
        self._db = db

    def log(self, conn: sqlite3.Connection, entry: AuditEntry) -> AuditEntry:
        """Append an entry inside the caller's transaction."""
        cursor = conn.execute(
            """
            INSERT INTO audit_log (
                user_id, action, target_resource_type, target_resource_id,
                details_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.action.value,
                entry.target_resource_type,
                entry.target_resource_id,
                json.dumps(entry.details),
                to_db(entry.created_at),
            ),
        )
        return entry.model_copy(update={"id": cursor.lastrowid})

    def list_entries(
        self,
        action: Optional[AuditAction] = None,
        target_resource_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """List audit entries, oldest first."""
        clauses = []
        params: list = []
        if action is not None:
            clauses.append("action = ?")
            params.append(action.value)
        if target_resource_id is not None:
            clauses.append("target_resource_id = ?")
            params.append(target_resource_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY id", params
            ).fetchall()
        return [_row_to_audit(row) for row in rows]
