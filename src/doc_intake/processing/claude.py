"""Claude/Anthropic field extractor."""

import logging
from typing import Any, Optional

from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic, RateLimitError
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from doc_intake.config.defaults import DEFAULT_LLM_MODEL
from doc_intake.exceptions import TerminalProcessingError, TransientProcessingError
from doc_intake.models.documents import ExtractedFieldInput
from doc_intake.processing.response_parser import parse_extraction_response

logger = logging.getLogger("doc_intake.processing.claude")

EXTRACTION_SYSTEM_PROMPT = (
    "You extract structured data from building inspection and handover documents. "
    "Respond ONLY with the JSON requested by the user. Do not add commentary."
)

# Prompt parameters passed through to messages.create
MODEL_PARAMETERS = ("temperature", "max_tokens", "top_p", "top_k", "stop_sequences")


class ClaudeExtractor:
    """Claude/Anthropic implementation of the extractor protocol."""

    def __init__(
        self,
        model: str = DEFAULT_LLM_MODEL,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        api_key: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        """Initialize the Claude extractor.

        Args:
            model: Claude model ID to use.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature.
            max_retries: Attempts per call for connection and rate-limit errors.
            retry_delay: Base delay between retries (exponential backoff).
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var).
            client: Pre-built client, mainly for tests.
        """
        self._client = client or AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    @property
    def model_name(self) -> str:
        """Return the model identifier."""
        return self._model

    async def extract(
        self,
        document_text: str,
        prompt: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> list[ExtractedFieldInput]:
        """Run the extraction prompt and parse the returned fields.

        ``document_text`` is expected to already be rendered into ``prompt``;
        it is only used here for logging. ``parameters`` from the prompt
        version override the configured temperature and max_tokens.
        """
        logger.debug(
            f"Extracting with {self._model} ({len(document_text)} chars of document text)"
        )
        content = await self._complete(prompt, parameters or {})

        try:
            fields = parse_extraction_response(content)
        except ValueError as e:
            raise TerminalProcessingError(f"Unparseable extraction response: {e}") from e

        logger.info(f"Extracted {len(fields)} field(s) with {self._model}")
        return fields

    async def _complete(self, prompt: str, parameters: dict[str, Any]) -> str:
        """Send one user message, retrying transient API errors."""
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": EXTRACTION_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        for key, value in parameters.items():
            if key in MODEL_PARAMETERS:
                kwargs[key] = value
            else:
                logger.debug(f"Ignoring unsupported model parameter {key!r}")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._retry_delay, min=self._retry_delay, max=120),
            retry=retry_if_exception_type((APIConnectionError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.messages.create(**kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise TransientProcessingError(
                f"Claude API unavailable after {self._max_retries} attempt(s): {cause}"
            ) from cause
        except APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProcessingError(f"Claude API error {e.status_code}: {e}") from e
            raise TerminalProcessingError(f"Claude API rejected request: {e}") from e

        if response.stop_reason == "max_tokens":
            logger.warning("Extraction response was truncated at max_tokens")

        # Extract text content
        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text
        return content
