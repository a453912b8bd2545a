"""Configuration loading and merging logic."""

import json
import os
from pathlib import Path
from typing import Any, Optional

from doc_intake.config.defaults import CONFIG_SEARCH_PATHS
from doc_intake.config.models import DocIntakeConfig


def find_config_file(explicit_path: Optional[Path] = None) -> Optional[Path]:
    """Find the configuration file.

    Args:
        explicit_path: Explicitly specified config file path (from CLI).

    Returns:
        Path to config file if found, None otherwise.
    """
    if explicit_path is not None:
        if explicit_path.exists():
            return explicit_path
        raise FileNotFoundError(f"Config file not found: {explicit_path}")

    for search_path in CONFIG_SEARCH_PATHS:
        if search_path.exists():
            return search_path

    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        Parsed configuration dictionary.
    """
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def merge_cli_overrides(
    config: DocIntakeConfig,
    database: Optional[Path] = None,
    storage_root: Optional[Path] = None,
    max_attempts: Optional[int] = None,
    concurrency: Optional[int] = None,
    model: Optional[str] = None,
    verbose: Optional[int] = None,
) -> DocIntakeConfig:
    """Merge CLI overrides into the configuration.

    CLI arguments take precedence over config file values.

    Args:
        config: Base configuration from file.
        database: Database path override.
        storage_root: Storage root directory override.
        max_attempts: Retry budget override for new jobs.
        concurrency: Worker concurrency override.
        model: LLM model override.
        verbose: Verbosity level override.

    Returns:
        Configuration with CLI overrides applied.
    """
    data = config.model_dump()

    if database is not None:
        data["database_path"] = database
    if storage_root is not None:
        data["storage"]["root"] = storage_root
    if max_attempts is not None:
        data["queue"]["max_attempts"] = max_attempts
    if concurrency is not None:
        data["worker"]["concurrency"] = concurrency
    if model is not None:
        data["llm"]["model"] = model
    if verbose is not None:
        data["verbosity"] = verbose

    return DocIntakeConfig.model_validate(data)


def load_config(
    config_path: Optional[Path] = None,
    **cli_overrides: Any,
) -> DocIntakeConfig:
    """Load configuration with CLI overrides.

    Configuration is loaded from the following sources (in order of priority):
    1. CLI arguments (highest priority)
    2. Environment variables
    3. Config file (if found)
    4. Default values (lowest priority)

    Args:
        config_path: Explicit config file path (from --config CLI option).
        **cli_overrides: CLI argument overrides.

    Returns:
        Merged configuration object.
    """
    config = DocIntakeConfig()

    found_config = find_config_file(config_path)
    if found_config is not None:
        config = DocIntakeConfig.model_validate(load_config_file(found_config))

    if database := os.environ.get("DOC_INTAKE_DB"):
        cli_overrides.setdefault("database", Path(database))
    if model := os.environ.get("DOC_INTAKE_MODEL"):
        cli_overrides.setdefault("model", model)

    # Drop unset CLI options so they don't mask file/env values
    overrides = {k: v for k, v in cli_overrides.items() if v is not None}
    return merge_cli_overrides(config, **overrides)
