"""SQLite-backed stores."""

from doc_intake.store.audit import AuditStore
from doc_intake.store.database import Database
from doc_intake.store.documents import DocumentStore
from doc_intake.store.events import EventStore
from doc_intake.store.jobs import JobStore

__all__ = [
    "AuditStore",
    "Database",
    "DocumentStore",
    "EventStore",
    "JobStore",
]
