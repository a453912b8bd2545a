"""Job queue system for background document processing."""

from doc_intake.jobs.backoff import BackoffPolicy
from doc_intake.jobs.handlers import HandlerRegistry, JobHandler
from doc_intake.jobs.queue import JobQueue
from doc_intake.jobs.worker import LOG_FILE, Worker, is_worker_running, start_worker

__all__ = [
    "BackoffPolicy",
    "HandlerRegistry",
    "JobHandler",
    "JobQueue",
    "LOG_FILE",
    "Worker",
    "is_worker_running",
    "start_worker",
]
