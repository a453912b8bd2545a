"""Default configuration values for the doc-intake pipeline."""

from pathlib import Path

# Default configuration file name
DEFAULT_CONFIG_FILENAME = "doc-intake.config.json"

# Search paths for configuration file (in order of priority)
CONFIG_SEARCH_PATHS = [
    Path.cwd() / DEFAULT_CONFIG_FILENAME,
    Path.home() / ".config" / "doc-intake" / "config.json",
]

# Default data directory (database, stored files, worker pid/log)
DEFAULT_DATA_DIR = Path.home() / ".doc-intake"

# Default database path
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "intake.db"

# Default storage root for uploaded files
DEFAULT_STORAGE_ROOT = DEFAULT_DATA_DIR / "files"

# Retry budget for document_processing jobs
DEFAULT_MAX_ATTEMPTS = 3

# Exponential backoff: base * 2**(attempts - 1), capped
DEFAULT_BACKOFF_BASE_SECONDS = 30.0
DEFAULT_BACKOFF_CAP_SECONDS = 900.0

# How long a claimed job may run before it can be reclaimed
DEFAULT_LEASE_SECONDS = 600.0

# Worker loop settings
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_IDLE_TIMEOUT = 300.0
DEFAULT_RECLAIM_INTERVAL = 60.0

# Per-subscription notifier buffer (documents with undelivered events)
DEFAULT_MAX_PENDING_EVENTS = 100

# How often a notifier reads the document_events outbox, and how long rows are kept
DEFAULT_EVENT_POLL_INTERVAL = 0.5
DEFAULT_EVENT_RETENTION_SECONDS = 3600.0

# Default LLM model
DEFAULT_LLM_MODEL = "claude-sonnet-4-20250514"

# Prompt used by the document_processing handler
DEFAULT_EXTRACTION_PROMPT = "extract_review_report_data"
