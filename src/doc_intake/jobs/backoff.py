"""Retry delay policy for failed jobs."""

from datetime import timedelta

from pydantic import BaseModel, Field

from doc_intake.config.defaults import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
)


class BackoffPolicy(BaseModel):
    """Exponential backoff: ``base * 2**(attempts - 1)``, capped at ``cap``."""

    base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0.0)
    cap_seconds: float = Field(default=DEFAULT_BACKOFF_CAP_SECONDS, ge=0.0)

    def delay_seconds(self, attempts: int) -> float:
        """Seconds to wait before the next try after ``attempts`` failures."""
        if attempts < 1:
            return 0.0
        # 2**64 seconds is already far past any sane cap
        exponent = min(attempts - 1, 64)
        return min(self.base_seconds * (2 ** exponent), self.cap_seconds)

    def delay(self, attempts: int) -> timedelta:
        """Same as :meth:`delay_seconds`, as a timedelta."""
        return timedelta(seconds=self.delay_seconds(attempts))
