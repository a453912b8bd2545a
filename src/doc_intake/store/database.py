"""SQLite database access shared by all stores."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger("doc_intake.store.database")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        filename TEXT NOT NULL,
        file_path TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued'
            CHECK (status IN ('queued', 'processing', 'awaiting_review', 'completed', 'failed')),
        owner_id TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        building_id TEXT,
        revision_type_id TEXT,
        document_type TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        processed_at TEXT,
        confidence_score REAL,
        metadata_json TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_queue (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        job_type TEXT NOT NULL DEFAULT 'document_processing',
        payload_json TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        created_at TEXT NOT NULL,
        scheduled_for TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        worker_id TEXT,
        lease_expires_at TEXT,
        error_message TEXT,
        CHECK (max_attempts >= 1),
        CHECK (attempts >= 0 AND attempts <= max_attempts)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS extracted_data (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        field_name TEXT NOT NULL,
        field_value TEXT NOT NULL,
        confidence_score REAL NOT NULL DEFAULT 0.0,
        bounding_box_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_feedback_log (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        field_name TEXT NOT NULL,
        ai_value TEXT NOT NULL,
        human_value TEXT NOT NULL,
        reviewer_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS prompts (
        id TEXT PRIMARY KEY,
        prompt_name TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        prompt_text TEXT NOT NULL,
        parameters_json TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'draft'
            CHECK (status IN ('draft', 'active', 'archived')),
        changelog TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (prompt_name, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        action TEXT NOT NULL,
        target_resource_type TEXT,
        target_resource_id TEXT,
        details_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        status TEXT NOT NULL,
        filename TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status)",
    "CREATE INDEX IF NOT EXISTS idx_job_queue_claim ON job_queue(status, scheduled_for, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_job_queue_document ON job_queue(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_extracted_data_document ON extracted_data(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_feedback_document ON ai_feedback_log(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action)",
    "CREATE INDEX IF NOT EXISTS idx_document_events_created ON document_events(created_at)",
    # At most one active version per prompt name
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_prompts_one_active
    ON prompts(prompt_name) WHERE status = 'active'
    """,
]


class Database:
    """Opens connections and transactions against one SQLite file.

    Every operation opens its own connection, so a ``Database`` can be shared
    between threads and worker coroutines. Writes go through
    :meth:`transaction`, which takes SQLite's write lock up front
    (``BEGIN IMMEDIATE``) so a read-then-update inside it cannot interleave
    with another writer.
    """

    def __init__(self, db_path: Path | str, timeout: float = 30.0):
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait for a competing writer's lock.
        """
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._initialized = False

    @property
    def path(self) -> Path:
        """Path to the database file."""
        return self._db_path

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection with foreign keys enabled."""
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

        self._initialized = True
        logger.debug(f"Database initialized at {self._db_path}")

    @contextmanager
    def connection(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        """Yield ``conn`` if given, otherwise a short-lived connection for reads."""
        if conn is not None:
            yield conn
            return

        own = self.connect()
        try:
            yield own
        finally:
            own.close()

    @contextmanager
    def transaction(
        self, conn: Optional[sqlite3.Connection] = None
    ) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic write transaction.

        Args:
            conn: A connection already inside a transaction. When given, the
                block joins that transaction and commit/rollback is left to
                its owner.

        Yields:
            The connection to execute statements on.
        """
        if conn is not None:
            yield conn
            return

        own = self.connect()
        try:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                own.execute("ROLLBACK")
                raise
            own.execute("COMMIT")
        finally:
            own.close()
