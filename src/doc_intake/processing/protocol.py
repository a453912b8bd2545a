"""Protocol definitions for field extractors."""

from typing import Any, Optional, Protocol, runtime_checkable

from doc_intake.models.documents import ExtractedFieldInput


@runtime_checkable
class Extractor(Protocol):
    """Protocol for extraction backends.

    This enables swapping the model behind the ``document_processing``
    handler (Claude, a local model, a fake in tests) without touching the
    queue or the handler.
    """

    @property
    def model_name(self) -> str:
        """Return the model identifier being used."""
        ...

    async def extract(
        self,
        document_text: str,
        prompt: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> list[ExtractedFieldInput]:
        """Extract fields from a document.

        Args:
            document_text: Plain text of the document.
            prompt: Fully rendered extraction prompt.
            parameters: Model parameters stored with the prompt version
                (temperature, max_tokens, ...); they override the
                backend's configured values.

        Returns:
            The extracted fields.

        Raises:
            TransientProcessingError: The backend is unavailable; worth retrying.
            TerminalProcessingError: The request or response can never succeed.
        """
        ...
