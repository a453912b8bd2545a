"""Pydantic configuration models for the doc-intake pipeline."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from doc_intake.config.defaults import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_DB_PATH,
    DEFAULT_EVENT_POLL_INTERVAL,
    DEFAULT_EVENT_RETENTION_SECONDS,
    DEFAULT_EXTRACTION_PROMPT,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_LLM_MODEL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_PENDING_EVENTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECLAIM_INTERVAL,
    DEFAULT_STORAGE_ROOT,
)


class QueueConfig(BaseModel):
    """Retry, backoff and lease settings for the job queue."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=20)
    backoff_base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0.0)
    backoff_cap_seconds: float = Field(default=DEFAULT_BACKOFF_CAP_SECONDS, ge=0.0)
    lease_seconds: float = Field(default=DEFAULT_LEASE_SECONDS, gt=0.0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "QueueConfig":
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self


class WorkerConfig(BaseModel):
    """Background worker loop settings."""

    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0.0)
    idle_timeout_seconds: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0.0)
    reclaim_interval_seconds: float = Field(default=DEFAULT_RECLAIM_INTERVAL, gt=0.0)
    concurrency: int = Field(default=1, ge=1, le=32)


class NotifierConfig(BaseModel):
    """Realtime notifier settings."""

    max_pending: int = Field(default=DEFAULT_MAX_PENDING_EVENTS, ge=1)
    poll_interval_seconds: float = Field(default=DEFAULT_EVENT_POLL_INTERVAL, gt=0.0)
    event_retention_seconds: float = Field(default=DEFAULT_EVENT_RETENTION_SECONDS, gt=0.0)


class StorageConfig(BaseModel):
    """Local file storage settings."""

    root: Path = DEFAULT_STORAGE_ROOT
    base_url: Optional[str] = None


class LLMConfig(BaseModel):
    """Extraction model configuration."""

    model: str = DEFAULT_LLM_MODEL
    max_tokens: int = Field(default=4096, ge=1, le=100000)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    extraction_prompt: str = DEFAULT_EXTRACTION_PROMPT


class DocIntakeConfig(BaseModel):
    """Root configuration model."""

    database_path: Path = DEFAULT_DB_PATH
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    verbosity: int = Field(default=1, ge=0, le=3)

    model_config = ConfigDict(extra="ignore")  # Ignore unknown fields in config file
