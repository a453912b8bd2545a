"""Handler for ``document_processing`` jobs."""

import logging

from pydantic import ValidationError

from doc_intake.config.defaults import DEFAULT_EXTRACTION_PROMPT
from doc_intake.exceptions import (
    PromptNotFoundError,
    TerminalProcessingError,
    TransientProcessingError,
)
from doc_intake.models.jobs import DocumentJobPayload, Job, JobResult
from doc_intake.processing.protocol import Extractor
from doc_intake.prompts import PromptStore
from doc_intake.storage import Storage

logger = logging.getLogger("doc_intake.processing.handler")


class DocumentProcessingHandler:
    """Reads the uploaded file, runs the active extraction prompt over it."""

    def __init__(
        self,
        prompts: PromptStore,
        storage: Storage,
        extractor: Extractor,
        prompt_name: str = DEFAULT_EXTRACTION_PROMPT,
    ):
        """Initialize the handler.

        Args:
            prompts: Where the active extraction prompt is looked up.
            storage: Where the uploaded file is read from.
            extractor: Model backend that does the extraction.
            prompt_name: Name of the extraction prompt to use.
        """
        self._prompts = prompts
        self._storage = storage
        self._extractor = extractor
        self._prompt_name = prompt_name

    async def handle(self, job: Job) -> JobResult:
        try:
            payload = DocumentJobPayload.model_validate(job.payload)
        except ValidationError as e:
            raise TerminalProcessingError(f"Invalid job payload: {e}") from e

        try:
            prompt = self._prompts.get_active(self._prompt_name)
        except PromptNotFoundError as e:
            # An admin can still activate one before the next attempt
            raise TransientProcessingError(str(e)) from e

        try:
            content = await self._storage.read(payload.file_path)
        except (FileNotFoundError, ValueError) as e:
            raise TerminalProcessingError(
                f"Stored file for {payload.filename} is unavailable: {e}"
            ) from e

        document_text = content.decode("utf-8", errors="replace")
        if not document_text.strip():
            raise TerminalProcessingError(f"{payload.filename} has no text content")

        logger.info(
            f"Extracting {payload.filename} with {prompt.name} v{prompt.version} "
            f"({self._extractor.model_name})"
        )
        fields = await self._extractor.extract(
            document_text,
            prompt.render(document_text=document_text),
            parameters=prompt.parameters,
        )
        return JobResult(fields=fields)
