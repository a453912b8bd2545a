"""Publish/subscribe channel for document status changes.

Delivery is at-most-once with no replay: a subscription only sees events
published while it is open, and a subscriber that reconnects has to re-read
current document state. Each subscription buffers undelivered events keyed by
document, so a burst of changes to one document collapses into its latest
status instead of flooding a slow consumer.

Status changes are recorded in the ``document_events`` table in the same
transaction as the change itself. A notifier attached to that table tails
it, which is how a worker running as its own process reaches subscribers
held by another.
"""

import asyncio
import logging
import sqlite3
import threading
from collections import OrderedDict, defaultdict
from datetime import timedelta
from typing import Optional

from doc_intake.config.defaults import (
    DEFAULT_EVENT_POLL_INTERVAL,
    DEFAULT_EVENT_RETENTION_SECONDS,
    DEFAULT_MAX_PENDING_EVENTS,
)
from doc_intake.models.enums import DocumentStatus
from doc_intake.models.events import DocumentEvent
from doc_intake.store.events import EventStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.notifier")

# Rows read from the outbox per query
OUTBOX_BATCH_SIZE = 500

# Tail polls between outbox prunes
PRUNE_EVERY_POLLS = 600


class Subscription:
    """A live, ordered stream of events for one user's documents.

    Iterate with ``async for``. The stream only ends when :meth:`close` is
    called. Delivered events are always a subsequence of the published ones,
    in publish order.
    """

    def __init__(
        self,
        notifier: "Notifier",
        user_id: str,
        loop: asyncio.AbstractEventLoop,
        max_pending: int,
    ):
        self._notifier = notifier
        self._loop = loop
        self._max_pending = max_pending
        self._pending: OrderedDict[str, DocumentEvent] = OrderedDict()
        self._ready = asyncio.Event()
        self._closed = False
        self.user_id = user_id
        self.coalesced = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        """Whether the subscription has been closed."""
        return self._closed

    @property
    def pending(self) -> int:
        """Number of buffered, undelivered events."""
        return len(self._pending)

    def _offer(self, event: DocumentEvent) -> None:
        """Hand an event to this subscription from any thread."""
        try:
            running: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._deliver(event)
        else:
            self._loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event: DocumentEvent) -> None:
        # Runs on the subscription's loop
        if self._closed:
            return

        if event.document_id in self._pending:
            # Replace the stale status and move it to the back so ordering
            # still follows publish order
            del self._pending[event.document_id]
            self.coalesced += 1
        self._pending[event.document_id] = event

        if len(self._pending) > self._max_pending:
            dropped_id, _ = self._pending.popitem(last=False)
            self.dropped += 1
            logger.debug(
                f"Subscription for {self.user_id} full, dropped event for {dropped_id}"
            )

        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> DocumentEvent:
        while not self._pending:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

        _, event = self._pending.popitem(last=False)
        return event

    async def get(self, timeout: Optional[float] = None) -> DocumentEvent:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``.
            StopAsyncIteration: If the subscription is closed.
        """
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        """Stop receiving events and release the subscription."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        self._ready.set()
        self._notifier._remove(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class Notifier:
    """Fans document events out to the owner's open subscriptions.

    Given an :class:`~doc_intake.store.events.EventStore`, the notifier tails
    the ``document_events`` outbox while anyone is subscribed, so changes
    committed by any process on the same database (a separate worker, the
    CLI) reach this process's subscribers. Without one it only delivers what
    is handed to :meth:`publish`.
    """

    def __init__(
        self,
        max_pending: int = DEFAULT_MAX_PENDING_EVENTS,
        events: Optional[EventStore] = None,
        poll_interval: float = DEFAULT_EVENT_POLL_INTERVAL,
        retention_seconds: float = DEFAULT_EVENT_RETENTION_SECONDS,
        clock: Clock = utc_now,
    ):
        """Initialize the notifier.

        Args:
            max_pending: Per-subscription limit on buffered documents.
            events: Outbox to tail; None for a purely in-process notifier.
            poll_interval: Seconds between outbox reads.
            retention_seconds: Age after which outbox rows are deleted.
            clock: Source of the current time, for pruning.
        """
        self._max_pending = max_pending
        self._events = events
        self._poll_interval = poll_interval
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()
        self._cursor_lock = threading.Lock()
        self._cursor = 0
        self._tail_task: Optional[asyncio.Task] = None

    @property
    def tails_outbox(self) -> bool:
        """Whether events come from the database outbox."""
        return self._events is not None

    def subscribe(self, user_id: str) -> Subscription:
        """Open a subscription for ``user_id``'s documents.

        Must be called from a running event loop; events are delivered on it.
        """
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, user_id, loop, self._max_pending)

        with self._cursor_lock:
            with self._lock:
                first = not self._subscriptions
                self._subscriptions[user_id].add(subscription)
            if first and self._events is not None:
                # No replay: start after the newest event recorded so far
                self._cursor = self._events.last_sequence()

        if self._events is not None and (self._tail_task is None or self._tail_task.done()):
            self._tail_task = loop.create_task(self._tail())

        logger.debug(f"Subscribed to document events for {user_id}")
        return subscription

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        """Number of open subscriptions, for one user or in total."""
        with self._lock:
            if user_id is not None:
                return len(self._subscriptions.get(user_id, ()))
            return sum(len(subs) for subs in self._subscriptions.values())

    def publish(
        self,
        document_id: str,
        status: DocumentStatus,
        *,
        owner_id: str,
        filename: str,
    ) -> int:
        """Publish a status change to the owner's subscriptions.

        Never raises and never blocks; a failure to reach one subscriber is
        logged and does not affect the others.

        Returns:
            Number of subscriptions the event was handed to.
        """
        event = DocumentEvent(document_id=document_id, status=status, filename=filename)
        return self._dispatch(owner_id, event)

    def flush(self) -> int:
        """Deliver outbox events recorded since the last read.

        Safe to call from any thread. Does nothing while nobody is subscribed.

        Returns:
            Number of events read from the outbox.
        """
        if self._events is None or not self.subscriber_count():
            return 0

        read = 0
        with self._cursor_lock:
            while True:
                batch = self._events.after(self._cursor, limit=OUTBOX_BATCH_SIZE)
                for stored in batch:
                    self._cursor = stored.sequence
                    self._dispatch(stored.owner_id, stored.event)
                read += len(batch)
                if len(batch) < OUTBOX_BATCH_SIZE:
                    break
        return read

    async def _tail(self) -> None:
        polls = 0
        while self.subscriber_count():
            await asyncio.sleep(self._poll_interval)
            polls += 1
            try:
                self.flush()
                if polls % PRUNE_EVERY_POLLS == 0:
                    removed = self._events.prune(self._clock() - self._retention)
                    if removed:
                        logger.debug(f"Pruned {removed} old document event(s)")
            except sqlite3.Error as e:
                logger.warning(f"Could not read document events: {e}")
        logger.debug("No subscribers left, stopped tailing document events")

    def _dispatch(self, owner_id: str, event: DocumentEvent) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(owner_id, ()))

        delivered = 0
        for subscription in targets:
            try:
                subscription._offer(event)
                delivered += 1
            except RuntimeError as e:
                # The subscriber's loop is gone
                logger.warning(f"Dropping subscription for {owner_id}: {e}")
                self._remove(subscription)

        logger.debug(
            f"Published {event.document_id} -> {event.status.value} "
            f"to {delivered} subscriber(s)"
        )
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.user_id)
            if subs is None:
                return
            subs.discard(subscription)
            if not subs:
                del self._subscriptions[subscription.user_id]
