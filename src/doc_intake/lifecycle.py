"""Document lifecycle state machine.

Transitions::

    queued ──job claimed──▶ processing ──job completed──▶ awaiting_review
                               │                               │
                      job failed (terminal)              review accepted
                               ▼                               ▼
                             failed                        completed

``completed`` and ``failed`` are terminal. Any other (status, event) pair is
an :class:`~doc_intake.exceptions.InvariantViolation`.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from doc_intake.exceptions import InvariantViolation
from doc_intake.models.documents import Document
from doc_intake.models.enums import DocumentStatus, LifecycleEvent
from doc_intake.notifier import Notifier
from doc_intake.store.documents import DocumentStore
from doc_intake.store.events import EventStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.lifecycle")

TRANSITIONS: dict[tuple[DocumentStatus, LifecycleEvent], DocumentStatus] = {
    (DocumentStatus.QUEUED, LifecycleEvent.JOB_CLAIMED): DocumentStatus.PROCESSING,
    (DocumentStatus.PROCESSING, LifecycleEvent.JOB_COMPLETED): DocumentStatus.AWAITING_REVIEW,
    (DocumentStatus.PROCESSING, LifecycleEvent.JOB_FAILED): DocumentStatus.FAILED,
    (DocumentStatus.AWAITING_REVIEW, LifecycleEvent.REVIEW_ACCEPTED): DocumentStatus.COMPLETED,
}


def next_status(current: DocumentStatus, event: LifecycleEvent) -> DocumentStatus:
    """Look up the status ``event`` leads to from ``current``.

    Raises:
        InvariantViolation: If the transition is not defined.
    """
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        if current.is_terminal:
            raise InvariantViolation(
                f"Document is {current.value} (terminal); cannot apply {event.value}"
            ) from None
        raise InvariantViolation(
            f"No transition from {current.value} on {event.value}"
        ) from None


class DocumentLifecycle:
    """Applies lifecycle events to stored documents and announces the result.

    :meth:`transition` runs inside the caller's transaction so the status
    change commits together with whatever caused it, along with its row in
    the event outbox. Callers announce the new status with :meth:`publish`
    once that transaction has committed.
    """

    def __init__(
        self,
        documents: DocumentStore,
        notifier: Optional[Notifier] = None,
        events: Optional[EventStore] = None,
        clock: Clock = utc_now,
    ):
        """Initialize the lifecycle.

        Args:
            documents: Document store to read and update.
            notifier: Where status changes are published; None disables it.
            events: Outbox every status change is recorded in; None disables it.
            clock: Source of the current time.
        """
        self._documents = documents
        self._notifier = notifier
        self._events = events
        self._clock = clock

    def transition(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        event: LifecycleEvent,
        now: Optional[datetime] = None,
    ) -> Document:
        """Apply ``event`` to a document.

        Args:
            conn: Connection inside the caller's write transaction.
            document_id: Document to transition.
            event: What happened.
            now: Transition time (defaults to the clock).

        Returns:
            The document as it is after the transition.

        Raises:
            DocumentNotFoundError: If the document does not exist.
            InvariantViolation: If the transition is not allowed, or the
                document changed status underneath us.
        """
        now = now or self._clock()
        document = self._documents.get(document_id, conn)
        new_status = next_status(document.status, event)

        if not self._documents.update_status(conn, document_id, document.status, new_status, now):
            raise InvariantViolation(
                f"Document {document_id} left {document.status.value} concurrently"
            )

        logger.info(
            f"Document {document_id} {document.status.value} -> {new_status.value} "
            f"({event.value})"
        )
        updated = document.model_copy(
            update={
                "status": new_status,
                "updated_at": now,
                "processed_at": now if new_status.is_terminal else None,
            }
        )
        self.record(conn, updated, now)
        return updated

    def record(
        self,
        conn: sqlite3.Connection,
        document: Document,
        now: Optional[datetime] = None,
    ) -> None:
        """Write ``document``'s status to the event outbox in the caller's transaction.

        Transitions do this themselves; intake calls it for new documents.
        """
        if self._events is not None:
            self._events.append(conn, document, now or self._clock())

    def start_processing(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        now: Optional[datetime] = None,
        *,
        retry: bool = False,
    ) -> Optional[Document]:
        """Apply a job claim.

        A retried job is claimed while its document is still ``processing``
        from the earlier attempt; that is not a transition and returns None.

        Args:
            conn: Connection inside the caller's write transaction.
            document_id: Document the claimed job belongs to.
            now: Claim time (defaults to the clock).
            retry: The claimed job has been attempted before.

        Raises:
            InvariantViolation: If the document cannot start processing, for
                example because a different job already started it.
        """
        document = self._documents.get(document_id, conn)
        if document.status == DocumentStatus.PROCESSING:
            if retry:
                logger.debug(f"Document {document_id} already processing (retry)")
                return None
            raise InvariantViolation(
                f"Document {document_id} is already being processed by another job"
            )
        return self.transition(conn, document_id, LifecycleEvent.JOB_CLAIMED, now)

    def publish(self, document: Document) -> None:
        """Announce a document's current status. Errors are logged, never raised.

        A notifier that tails the outbox is asked to read it right away, so
        subscribers in this process don't wait for the next poll.
        """
        if self._notifier is None:
            return
        try:
            if self._notifier.tails_outbox:
                self._notifier.flush()
            else:
                self._notifier.publish(
                    document.id,
                    document.status,
                    owner_id=document.owner_id,
                    filename=document.filename,
                )
        except Exception as e:
            logger.warning(f"Failed to publish status for document {document.id}: {e}")
