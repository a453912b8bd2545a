"""Shared utilities for the doc-intake pipeline."""

from doc_intake.utils.logging import setup_logging
from doc_intake.utils.timeutils import utc_now

__all__ = [
    "setup_logging",
    "utc_now",
]
