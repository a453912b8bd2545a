"""Handler contract and registry for queued work."""

from typing import Optional, Protocol, runtime_checkable

from doc_intake.models.enums import JobType
from doc_intake.models.jobs import Job, JobResult


@runtime_checkable
class JobHandler(Protocol):
    """Processes one claimed job.

    Raise :class:`~doc_intake.exceptions.TerminalProcessingError` for failures
    that retrying cannot fix. Any other exception counts as a transient
    failure and uses up one attempt.
    """

    async def handle(self, job: Job) -> JobResult:
        ...


class HandlerRegistry:
    """Maps each job type to its handler."""

    def __init__(self, handlers: Optional[dict[JobType, JobHandler]] = None):
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        """Register (or replace) the handler for ``job_type``."""
        if not isinstance(handler, JobHandler):
            raise TypeError(f"{handler!r} does not implement handle(job)")
        self._handlers[job_type] = handler

    def get(self, job_type: JobType) -> Optional[JobHandler]:
        """Handler for ``job_type``, or None."""
        return self._handlers.get(job_type)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def missing(self) -> list[JobType]:
        """Job types that have no handler yet."""
        return [job_type for job_type in JobType if job_type not in self._handlers]
