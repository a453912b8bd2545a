"""Timestamp helpers shared by the stores and the queue."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage.

    Naive values are assumed to be UTC. All stored timestamps share the same
    offset, so their ISO strings sort chronologically.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if value is None:
        return None
    return datetime.fromisoformat(value)
