"""Configuration management for the doc-intake pipeline."""

from doc_intake.config.loader import load_config
from doc_intake.config.models import (
    DocIntakeConfig,
    LLMConfig,
    NotifierConfig,
    QueueConfig,
    StorageConfig,
    WorkerConfig,
)

__all__ = [
    "DocIntakeConfig",
    "LLMConfig",
    "NotifierConfig",
    "QueueConfig",
    "StorageConfig",
    "WorkerConfig",
    "load_config",
]
