"""Tests for configuration loading."""

import json

import pytest
from pydantic import ValidationError

from doc_intake.config import DocIntakeConfig, QueueConfig, load_config
from doc_intake.config.loader import merge_cli_overrides


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("DOC_INTAKE_DB", raising=False)
    monkeypatch.delenv("DOC_INTAKE_MODEL", raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "doc-intake.config.json"
    path.write_text(
        json.dumps(
            {
                "database_path": str(tmp_path / "from-file.db"),
                "queue": {"max_attempts": 5, "backoff_base_seconds": 10},
                "llm": {"model": "claude-from-file"},
                "unknown_section": {"ignored": True},
            }
        )
    )
    return path


class TestLoadConfig:
    """Tests for load_config."""

    def test_file_values(self, config_file, tmp_path):
        """Test values are read from the config file."""
        config = load_config(config_path=config_file)

        assert config.database_path == tmp_path / "from-file.db"
        assert config.queue.max_attempts == 5
        assert config.queue.backoff_base_seconds == 10
        assert config.queue.backoff_cap_seconds == 900
        assert config.llm.model == "claude-from-file"

    def test_env_overrides_file(self, config_file, tmp_path, monkeypatch):
        """Test environment variables win over the file."""
        monkeypatch.setenv("DOC_INTAKE_MODEL", "claude-from-env")
        monkeypatch.setenv("DOC_INTAKE_DB", str(tmp_path / "env.db"))

        config = load_config(config_path=config_file)

        assert config.llm.model == "claude-from-env"
        assert config.database_path == tmp_path / "env.db"

    def test_cli_overrides_env(self, config_file, monkeypatch):
        """Test CLI options win over environment variables."""
        monkeypatch.setenv("DOC_INTAKE_MODEL", "claude-from-env")

        config = load_config(config_path=config_file, model="claude-from-cli", concurrency=4)

        assert config.llm.model == "claude-from-cli"
        assert config.worker.concurrency == 4

    def test_unset_cli_options_ignored(self, config_file):
        """Test None CLI options don't mask file values."""
        config = load_config(config_path=config_file, model=None, max_attempts=None)

        assert config.llm.model == "claude-from-file"
        assert config.queue.max_attempts == 5

    def test_missing_explicit_file(self, tmp_path):
        """Test an explicit config path must exist."""
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nope.json")


class TestConfigModels:
    """Tests for configuration validation."""

    def test_defaults(self):
        """Test the default retry and lease settings."""
        config = DocIntakeConfig()
        assert config.queue.max_attempts == 3
        assert config.queue.lease_seconds == 600
        assert config.worker.concurrency == 1

    def test_cap_below_base_rejected(self):
        """Test the backoff cap can't be smaller than the base delay."""
        with pytest.raises(ValidationError):
            QueueConfig(backoff_base_seconds=60, backoff_cap_seconds=30)

    def test_merge_keeps_nested_values(self, tmp_path):
        """Test overriding one nested value leaves its siblings alone."""
        base = DocIntakeConfig(queue=QueueConfig(max_attempts=7, lease_seconds=120))
        merged = merge_cli_overrides(base, storage_root=tmp_path / "files")

        assert merged.storage.root == tmp_path / "files"
        assert merged.queue.max_attempts == 7
        assert merged.queue.lease_seconds == 120
