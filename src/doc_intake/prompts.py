"""Versioned prompt store.

Each prompt name has a sequence of versions ``1, 2, 3, ...``. At most one
version per name is ``active``; the extractor always uses that one. Older
active versions are ``archived`` when a new one is activated, and drafts sit
alongside until someone activates them.
"""

import json
import logging
import sqlite3
import uuid
from typing import Any, Optional

from doc_intake.exceptions import InvariantViolation, PromptNotFoundError
from doc_intake.models.documents import AuditEntry
from doc_intake.models.enums import AuditAction, PromptStatus
from doc_intake.models.prompts import DEFAULT_MODEL_PARAMETERS, PromptVersion
from doc_intake.store.audit import AuditStore
from doc_intake.store.database import Database
from doc_intake.utils.timeutils import Clock, from_db, to_db, utc_now

logger = logging.getLogger("doc_intake.prompts")

_BOUNDING_BOX_FORMAT = """[
  {
    "field_name": "%s",
    "field_value": "extracted_value",
    "confidence": 0.95,
    "bounding_box": {
      "page": 1,
      "left": 100,
      "top": 200,
      "width": 150,
      "height": 20
    }
  }
]"""

DEFAULT_PROMPTS: dict[str, dict[str, str]] = {
    "classify_document": {
        "text": """Analyze the following document text and classify it into one of these categories: "review_report", "handover_protocol", "technical_specification", "contract", "invoice", or "other".

Document text:
{{document_text}}

Respond with a JSON object in this exact format:
{
  "document_type": "category_name",
  "confidence": 0.95
}""",
        "changelog": "Initial document classification prompt",
    },
    "extract_review_report_data": {
        "text": """Extract key information from this review report document. Focus on finding:
- Review number/ID
- Date of review
- Reviewer name
- Location/facility
- Key findings
- Recommendations
- Status/conclusion

Document text:
{{document_text}}

For each piece of information found, provide the exact text and its location coordinates if available. Respond with a JSON array of objects in this format:
"""
        + _BOUNDING_BOX_FORMAT % "review_number",
        "changelog": "Initial review report extraction prompt",
    },
    "extract_handover_protocol_data": {
        "text": """Extract key information from this handover protocol document. Focus on finding:
- Protocol number/ID
- Date of handover
- Handover from (person/department)
- Handover to (person/department)
- Items/responsibilities transferred
- Conditions/notes
- Signatures

Document text:
{{document_text}}

For each piece of information found, provide the exact text and its location coordinates if available. Respond with a JSON array of objects in this format:
"""
        + _BOUNDING_BOX_FORMAT % "protocol_number",
        "changelog": "Initial handover protocol extraction prompt",
    },
}


def _row_to_prompt(row: sqlite3.Row) -> PromptVersion:
    return PromptVersion(
        id=row["id"],
        name=row["prompt_name"],
        version=row["version"],
        text=row["prompt_text"],
        parameters=json.loads(row["parameters_json"] or "{}"),
        status=PromptStatus(row["status"]),
        changelog=row["changelog"],
        created_by=row["created_by"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


class PromptStore:
    """Creates, activates and looks up prompt versions."""

    def __init__(
        self,
        db: Database,
        audit: Optional[AuditStore] = None,
        clock: Clock = utc_now,
    ):
        """Initialize the store.

        Args:
            db: Shared database handle.
            audit: Audit trail for activations (skipped when None).
            clock: Source of the current time.
        """
        self._db = db
        self._audit = audit
        self._clock = clock

    def create_version(
        self,
        name: str,
        text: str,
        parameters: Optional[dict[str, Any]] = None,
        changelog: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> PromptVersion:
        """Add a draft version after the newest existing one.

        Args:
            name: Prompt name.
            text: Prompt text, with ``{{variable}}`` placeholders.
            parameters: Model parameters (temperature, max_tokens, ...).
            changelog: What changed in this version.
            created_by: Author's user id.

        Returns:
            The new draft version.
        """
        if not name.strip():
            raise ValueError("Prompt name must not be empty")
        if not text.strip():
            raise ValueError("Prompt text must not be empty")

        now = self._clock()
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT MAX(version) AS latest FROM prompts WHERE prompt_name = ?",
                (name,),
            ).fetchone()
            version = (row["latest"] or 0) + 1

            prompt = PromptVersion(
                id=str(uuid.uuid4()),
                name=name,
                version=version,
                text=text,
                parameters=dict(parameters) if parameters else dict(DEFAULT_MODEL_PARAMETERS),
                status=PromptStatus.DRAFT,
                changelog=changelog,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self._insert(conn, prompt)

        logger.info(f"Created {name} v{version} (draft)")
        return prompt

    def activate(
        self,
        prompt_id: str,
        name: str,
        actor_id: Optional[str] = None,
    ) -> PromptVersion:
        """Make a version the active one for its name.

        The previously active version is archived in the same transaction, so
        readers never see zero or two active versions.

        Args:
            prompt_id: Version to activate.
            name: Prompt name the version must belong to.
            actor_id: User performing the activation, for the audit log.

        Returns:
            The activated version.

        Raises:
            PromptNotFoundError: If no version has ``prompt_id``.
            InvariantViolation: If the version belongs to a different name.
        """
        now = self._clock()

        with self._db.transaction() as conn:
            target = self._get(conn, prompt_id)
            if target is None:
                raise PromptNotFoundError(f"Prompt version {prompt_id} not found")
            if target.name != name:
                raise InvariantViolation(
                    f"Prompt version {prompt_id} belongs to {target.name}, not {name}"
                )
            if target.status == PromptStatus.ACTIVE:
                logger.debug(f"{name} v{target.version} is already active")
                return target

            previous = conn.execute(
                "SELECT version FROM prompts WHERE prompt_name = ? AND status = ?",
                (name, PromptStatus.ACTIVE.value),
            ).fetchone()

            conn.execute(
                """
                UPDATE prompts SET status = ?, updated_at = ?
                WHERE prompt_name = ? AND status = ?
                """,
                (PromptStatus.ARCHIVED.value, to_db(now), name, PromptStatus.ACTIVE.value),
            )
            conn.execute(
                "UPDATE prompts SET status = ?, updated_at = ? WHERE id = ?",
                (PromptStatus.ACTIVE.value, to_db(now), prompt_id),
            )

            if self._audit is not None:
                self._audit.log(
                    conn,
                    AuditEntry(
                        user_id=actor_id,
                        action=AuditAction.PROMPT_ACTIVATED,
                        target_resource_type="prompt",
                        target_resource_id=prompt_id,
                        details={
                            "prompt_name": name,
                            "version": target.version,
                            "previous_version": previous["version"] if previous else None,
                        },
                        created_at=now,
                    ),
                )

        logger.info(f"Activated {name} v{target.version}")
        return target.model_copy(update={"status": PromptStatus.ACTIVE, "updated_at": now})

    def get(self, prompt_id: str) -> PromptVersion:
        """Get a version by id.

        Raises:
            PromptNotFoundError: If it does not exist.
        """
        with self._db.connection() as conn:
            prompt = self._get(conn, prompt_id)
        if prompt is None:
            raise PromptNotFoundError(f"Prompt version {prompt_id} not found")
        return prompt

    def find_active(self, name: str) -> Optional[PromptVersion]:
        """The active version of ``name``, or None."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM prompts WHERE prompt_name = ? AND status = ?",
                (name, PromptStatus.ACTIVE.value),
            ).fetchone()
        return _row_to_prompt(row) if row else None

    def get_active(self, name: str) -> PromptVersion:
        """The active version of ``name``.

        Raises:
            PromptNotFoundError: If ``name`` has no active version.
        """
        prompt = self.find_active(name)
        if prompt is None:
            raise PromptNotFoundError(f"No active version of prompt {name}")
        return prompt

    def list_versions(self, name: Optional[str] = None) -> list[PromptVersion]:
        """List versions by name, newest version first."""
        with self._db.connection() as conn:
            if name is None:
                rows = conn.execute(
                    "SELECT * FROM prompts ORDER BY prompt_name, version DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM prompts WHERE prompt_name = ? ORDER BY version DESC",
                    (name,),
                ).fetchall()
        return [_row_to_prompt(row) for row in rows]

    def seed_defaults(self) -> list[PromptVersion]:
        """Install the built-in prompts as active v1 where a name has none.

        Returns:
            The versions that were created.
        """
        now = self._clock()
        created = []

        with self._db.transaction() as conn:
            for name, default in DEFAULT_PROMPTS.items():
                exists = conn.execute(
                    "SELECT 1 FROM prompts WHERE prompt_name = ? LIMIT 1", (name,)
                ).fetchone()
                if exists:
                    continue

                prompt = PromptVersion(
                    id=str(uuid.uuid4()),
                    name=name,
                    version=1,
                    text=default["text"],
                    status=PromptStatus.ACTIVE,
                    changelog=default["changelog"],
                    created_at=now,
                    updated_at=now,
                )
                self._insert(conn, prompt)
                created.append(prompt)

        if created:
            logger.info(f"Seeded {len(created)} default prompt(s)")
        return created

    def _get(self, conn: sqlite3.Connection, prompt_id: str) -> Optional[PromptVersion]:
        row = conn.execute("SELECT * FROM prompts WHERE id = ?", (prompt_id,)).fetchone()
        return _row_to_prompt(row) if row else None

    def _insert(self, conn: sqlite3.Connection, prompt: PromptVersion) -> None:
        conn.execute(
            """
            INSERT INTO prompts (
                id, prompt_name, version, prompt_text, parameters_json, status,
                changelog, created_by, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                prompt.id,
                prompt.name,
                prompt.version,
                prompt.text,
                json.dumps(prompt.parameters),
                prompt.status.value,
                prompt.changelog,
                prompt.created_by,
                to_db(prompt.created_at),
                to_db(prompt.updated_at),
            ),
        )
