"""Wires the stores, queue and services together from configuration."""

import logging
from typing import Optional

from doc_intake.config import DocIntakeConfig
from doc_intake.intake import IntakeService
from doc_intake.jobs.backoff import BackoffPolicy
from doc_intake.jobs.handlers import HandlerRegistry
from doc_intake.jobs.queue import JobQueue
from doc_intake.jobs.worker import Worker
from doc_intake.lifecycle import DocumentLifecycle
from doc_intake.models.enums import JobType
from doc_intake.notifier import Notifier
from doc_intake.processing.claude import ClaudeExtractor
from doc_intake.processing.handler import DocumentProcessingHandler
from doc_intake.processing.protocol import Extractor
from doc_intake.prompts import PromptStore
from doc_intake.review import ReviewService
from doc_intake.storage import LocalStorage, Storage
from doc_intake.store import AuditStore, Database, DocumentStore, EventStore, JobStore
from doc_intake.utils.timeutils import Clock, utc_now

logger = logging.getLogger("doc_intake.pipeline")


class Pipeline:
    """Everything one process needs, built around a single database.

    Components are plain attributes so callers (the CLI, a web layer, tests)
    can use them directly.
    """

    def __init__(
        self,
        config: Optional[DocIntakeConfig] = None,
        notifier: Optional[Notifier] = None,
        storage: Optional[Storage] = None,
        clock: Clock = utc_now,
    ):
        """Initialize the pipeline.

        Args:
            config: Pipeline configuration (defaults if omitted).
            notifier: Realtime channel (a new one if omitted).
            storage: File storage (local storage from config if omitted).
            clock: Source of the current time.
        """
        self.config = config or DocIntakeConfig()
        self.clock = clock

        self.db = Database(self.config.database_path)
        self.db.initialize()

        self.events = EventStore(self.db)
        notifier_config = self.config.notifier
        self.notifier = notifier or Notifier(
            max_pending=notifier_config.max_pending,
            events=self.events,
            poll_interval=notifier_config.poll_interval_seconds,
            retention_seconds=notifier_config.event_retention_seconds,
            clock=clock,
        )
        self.storage = storage or LocalStorage(
            self.config.storage.root, base_url=self.config.storage.base_url
        )

        self.documents = DocumentStore(self.db)
        self.jobs = JobStore(self.db)
        self.audit = AuditStore(self.db)
        self.lifecycle = DocumentLifecycle(
            self.documents, self.notifier, events=self.events, clock=clock
        )

        queue_config = self.config.queue
        self.queue = JobQueue(
            self.db,
            self.jobs,
            self.documents,
            self.lifecycle,
            backoff=BackoffPolicy(
                base_seconds=queue_config.backoff_base_seconds,
                cap_seconds=queue_config.backoff_cap_seconds,
            ),
            lease_seconds=queue_config.lease_seconds,
            default_max_attempts=queue_config.max_attempts,
            clock=clock,
        )

        self.prompts = PromptStore(self.db, audit=self.audit, clock=clock)
        self.reviews = ReviewService(
            self.db, self.documents, self.audit, self.lifecycle, clock=clock
        )
        self.intake = IntakeService(
            self.db,
            self.documents,
            self.queue,
            self.storage,
            lifecycle=self.lifecycle,
            max_attempts=queue_config.max_attempts,
            clock=clock,
        )

    def build_extractor(self) -> ClaudeExtractor:
        """Claude extractor from the LLM settings."""
        llm = self.config.llm
        return ClaudeExtractor(
            model=llm.model,
            max_tokens=llm.max_tokens,
            temperature=llm.temperature,
            max_retries=llm.retry_attempts,
        )

    def build_handlers(self, extractor: Optional[Extractor] = None) -> HandlerRegistry:
        """Handler table with the ``document_processing`` handler registered."""
        registry = HandlerRegistry()
        registry.register(
            JobType.DOCUMENT_PROCESSING,
            DocumentProcessingHandler(
                self.prompts,
                self.storage,
                extractor or self.build_extractor(),
                prompt_name=self.config.llm.extraction_prompt,
            ),
        )
        return registry

    def build_worker(
        self,
        extractor: Optional[Extractor] = None,
        worker_id: Optional[str] = None,
    ) -> Worker:
        """A worker over this pipeline's queue."""
        return Worker(
            self.queue,
            self.build_handlers(extractor),
            config=self.config.worker,
            worker_id=worker_id,
        )
