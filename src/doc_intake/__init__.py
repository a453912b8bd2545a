"""Doc Intake.

Asynchronous document intake pipeline: uploads are queued as durable jobs,
extracted by an LLM in a background worker, reviewed by a human, and the
corrections are kept as feedback for prompt tuning.
"""

__version__ = "0.1.0"

from doc_intake.models.enums import DocumentStatus, JobStatus, PromptStatus

__all__ = [
    "__version__",
    "DocumentStatus",
    "JobStatus",
    "PromptStatus",
]
