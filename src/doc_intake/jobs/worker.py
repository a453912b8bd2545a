"""Background worker that claims and processes queued jobs."""

import asyncio
import logging
import os
import signal
import socket
import time
import uuid
from pathlib import Path
from typing import Optional

from doc_intake.config import DocIntakeConfig, WorkerConfig, load_config
from doc_intake.config.defaults import DEFAULT_DATA_DIR
from doc_intake.exceptions import InvariantViolation, TerminalProcessingError
from doc_intake.jobs.handlers import HandlerRegistry
from doc_intake.jobs.queue import JobQueue
from doc_intake.models.jobs import Job

logger = logging.getLogger("doc_intake.jobs.worker")

# PID and log file locations
PID_FILE = DEFAULT_DATA_DIR / "worker.pid"
LOG_FILE = DEFAULT_DATA_DIR / "worker.log"


def default_worker_id() -> str:
    """A worker id that is unique across hosts and processes."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class Worker:
    """Polls the queue and runs each claimed job through its handler.

    Up to ``concurrency`` jobs run at once. While a job runs its lease is
    renewed in the background; jobs whose worker died are returned to the
    queue by the periodic reclaim sweep.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: HandlerRegistry,
        config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None,
    ):
        """Initialize the worker.

        Args:
            queue: Job queue to claim from.
            handlers: Handler for each job type.
            config: Poll, idle and concurrency settings.
            worker_id: Lease holder id (generated if omitted).
        """
        self._queue = queue
        self._handlers = handlers
        self._config = config or WorkerConfig()
        self.worker_id = worker_id or default_worker_id()
        self._running = True
        self._tasks: set[asyncio.Task] = set()
        self._last_job_time = time.monotonic()
        self._last_reclaim = 0.0
        self.processed = 0

        for job_type in handlers.missing():
            logger.warning(f"No handler registered for {job_type.value} jobs")

    @property
    def running(self) -> bool:
        """Whether the loop should keep going."""
        return self._running

    @property
    def active_jobs(self) -> int:
        """Jobs currently being handled."""
        return len(self._tasks)

    def stop(self) -> None:
        """Ask the loop to exit once in-flight jobs have finished."""
        self._running = False

    def _handle_signal(self, signum, frame=None):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    async def _heartbeat(self, job: Job) -> None:
        interval = max(self._queue.lease_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                if not self._queue.extend_lease(job.id, self.worker_id):
                    return
            except Exception as e:
                # Try again next beat; the lease may still be valid
                logger.warning(f"Could not extend lease of job {job.id}: {e}")

    async def _run_job(self, job: Job) -> None:
        """Run a single claimed job and record its outcome.

        Args:
            job: The job, already claimed by this worker.
        """
        handler = self._handlers.get(job.job_type)
        heartbeat: Optional[asyncio.Task] = None

        try:
            if handler is None:
                raise TerminalProcessingError(
                    f"No handler registered for job type {job.job_type.value}"
                )

            logger.info(f"Starting job {job.id} for document {job.document_id}")
            heartbeat = asyncio.create_task(self._heartbeat(job))
            result = await handler.handle(job)
            heartbeat.cancel()

            try:
                self._queue.complete(job.id, result, worker_id=self.worker_id)
            except InvariantViolation as e:
                # Lease was lost (reclaimed) while the handler ran
                logger.warning(f"Dropping result of job {job.id}: {e}")
                return
            logger.info(f"Job {job.id} completed successfully")

        except TerminalProcessingError as e:
            logger.error(f"Job {job.id} failed permanently: {e}")
            self._record_failure(job, str(e), permanent=True)

        except Exception as e:
            logger.exception(f"Job {job.id} failed: {e}")
            self._record_failure(job, str(e) or type(e).__name__, permanent=False)

        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            self.processed += 1
            self._last_job_time = time.monotonic()

    def _record_failure(self, job: Job, message: str, permanent: bool) -> None:
        try:
            self._queue.fail(job.id, message, permanent=permanent, worker_id=self.worker_id)
        except InvariantViolation as e:
            logger.warning(f"Could not record failure of job {job.id}: {e}")

    def _maybe_reclaim(self) -> None:
        now = time.monotonic()
        if now - self._last_reclaim < self._config.reclaim_interval_seconds:
            return
        self._last_reclaim = now
        try:
            self._queue.reclaim_expired()
        except Exception as e:
            # Retried on the next sweep; the loop keeps serving claims
            logger.exception(f"Reclaim sweep failed: {e}")

    async def run_once(self) -> Optional[Job]:
        """Claim and process at most one job.

        Returns:
            The job that was processed, or None if the queue had nothing due.
        """
        job = self._queue.claim_next(self.worker_id)
        if job is None:
            return None
        await self._run_job(job)
        return job

    async def run(self, once: bool = False, handle_signals: bool = True) -> None:
        """Run the worker loop.

        Args:
            once: If True, process one job and exit (useful for testing).
            handle_signals: Install SIGTERM/SIGINT handlers that stop the loop.
        """
        logger.info(
            f"Worker {self.worker_id} started (concurrency {self._config.concurrency})"
        )

        if handle_signals:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, self._handle_signal, sig)
                except (NotImplementedError, RuntimeError):
                    signal.signal(sig, self._handle_signal)

        if once:
            self._maybe_reclaim()
            await self.run_once()
            logger.info("Worker stopped")
            return

        while self._running:
            self._maybe_reclaim()

            claimed = False
            while len(self._tasks) < self._config.concurrency:
                job = self._queue.claim_next(self.worker_id)
                if job is None:
                    break
                claimed = True
                task = asyncio.create_task(self._run_job(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            if not claimed and not self._tasks:
                # Check idle timeout
                idle_time = time.monotonic() - self._last_job_time
                if idle_time > self._config.idle_timeout_seconds:
                    logger.info(
                        f"No jobs for {self._config.idle_timeout_seconds:.0f}s, shutting down"
                    )
                    break

            if self._tasks:
                await asyncio.wait(
                    self._tasks,
                    timeout=self._config.poll_interval_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            else:
                # Wait before checking again
                await asyncio.sleep(self._config.poll_interval_seconds)

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} running job(s) to finish")
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("Worker stopped")


def is_worker_running() -> bool:
    """Check if a worker process is already running.

    Returns:
        True if a worker is running.
    """
    if not PID_FILE.exists():
        return False

    try:
        pid = int(PID_FILE.read_text().strip())
        # Check if process exists
        os.kill(pid, 0)
        return True
    except (ValueError, OSError):
        # Invalid PID or process doesn't exist
        PID_FILE.unlink(missing_ok=True)
        return False


def write_pid_file() -> None:
    """Write the current process PID to the PID file."""
    PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    PID_FILE.write_text(str(os.getpid()))


def remove_pid_file() -> None:
    """Remove the PID file."""
    PID_FILE.unlink(missing_ok=True)


def start_worker(config: Optional[DocIntakeConfig] = None, once: bool = False) -> None:
    """Start the worker process.

    Args:
        config: Pipeline configuration (loaded from file/env if omitted).
        once: If True, process one job and exit.
    """
    from doc_intake.pipeline import Pipeline

    if is_worker_running():
        logger.warning("Worker is already running")
        return

    config = config or load_config()
    try:
        write_pid_file()
        worker = Pipeline(config).build_worker()
        asyncio.run(worker.run(once=once))
    finally:
        remove_pid_file()


def main():
    """Entry point for doc-intake-worker command."""
    import argparse

    from doc_intake.utils.logging import setup_logging

    parser = argparse.ArgumentParser(description="Doc Intake background worker")
    parser.add_argument("--once", action="store_true", help="Process one job and exit")
    parser.add_argument("--db", type=str, help="Path to the database")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--concurrency", type=int, help="Jobs to run at once")
    parser.add_argument("-v", "--verbose", action="count", default=None)
    args = parser.parse_args()

    config = load_config(
        config_path=Path(args.config) if args.config else None,
        database=Path(args.db) if args.db else None,
        concurrency=args.concurrency,
        verbose=args.verbose,
    )
    setup_logging(verbosity=config.verbosity, log_file=LOG_FILE)

    start_worker(config=config, once=args.once)


if __name__ == "__main__":
    main()
