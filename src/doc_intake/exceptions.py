"""Exception hierarchy for the document intake pipeline."""


class DocIntakeError(Exception):
    """Base exception for all doc-intake errors."""


class InvariantViolation(DocIntakeError):
    """An operation would break a state-machine or queue invariant.

    Raised for illegal document transitions, completing or failing a job that
    is not being processed, reviewing a document that is not awaiting review,
    and similar caller mistakes. Never retried.
    """


class NotFoundError(DocIntakeError, LookupError):
    """A referenced record does not exist."""


class DocumentNotFoundError(NotFoundError):
    """No document with the given id."""


class JobNotFoundError(NotFoundError):
    """No job with the given id."""


class PromptNotFoundError(NotFoundError):
    """No prompt version with the given id or name."""


class PermissionDenied(DocIntakeError):
    """The acting user's role does not allow the operation."""


class ProcessingError(DocIntakeError):
    """Base exception for failures reported by a job handler."""


class TransientProcessingError(ProcessingError):
    """A failure worth retrying; counts toward the job's attempt budget."""


class TerminalProcessingError(ProcessingError):
    """A failure that will not go away on retry; dead-letters the job."""


class UploadError(DocIntakeError):
    """A single file in a batch upload could not be stored or registered."""

    def __init__(self, filename: str, message: str):
        self.filename = filename
        self.message = message
        super().__init__(f"{filename}: {message}")
