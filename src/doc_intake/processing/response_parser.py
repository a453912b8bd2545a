"""Parse and validate LLM extraction responses."""

import json
import logging
import re
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from doc_intake.models.documents import BoundingBox, ExtractedFieldInput

logger = logging.getLogger("doc_intake.processing.response_parser")

_CLOSERS = {"{": "}", "[": "]"}


class RawExtractedField(BaseModel):
    """One extracted field as the model returns it."""

    field_name: str = Field(..., min_length=1)
    field_value: Any = None
    confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("confidence", "confidence_score"),
    )
    bounding_box: Optional[dict[str, Any]] = None

    @field_validator("field_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("field_name is blank")
        return value


def extract_json_from_response(content: str) -> str:
    """Extract JSON from LLM response that may contain markdown.

    Args:
        content: Raw LLM response content.

    Returns:
        Extracted JSON string.
    """
    content = content.strip()

    # Try to find JSON in code blocks
    json_block_pattern = r"```(?:json)?\s*\n?([\s\S]*?)\n?```"
    matches = re.findall(json_block_pattern, content)
    if matches:
        return matches[0].strip()

    # No code block: take the first balanced object or array
    starts = [i for i in (content.find("["), content.find("{")) if i >= 0]
    if not starts:
        return content

    start = min(starts)
    opener = content[start]
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(content)):
        char = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return content[start : i + 1]

    return content[start:]


def _to_bounding_box(raw: Optional[dict[str, Any]]) -> BoundingBox:
    if not raw:
        return BoundingBox()
    try:
        return BoundingBox.model_validate(raw)
    except ValidationError:
        logger.debug(f"Ignoring malformed bounding box: {raw}")
        return BoundingBox()


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_extraction_response(content: str) -> list[ExtractedFieldInput]:
    """Parse an LLM extraction response into field inputs.

    Accepts a JSON array of fields or an object with a ``fields`` array,
    optionally wrapped in a markdown code block. Items that don't look like a
    field are skipped with a warning.

    Args:
        content: Raw LLM response content.

    Returns:
        Parsed fields in response order.

    Raises:
        ValueError: If the response has no parseable field list.
    """
    json_str = extract_json_from_response(content)

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON: {e}")
        logger.debug(f"Content was: {content[:500]}")
        raise ValueError(f"Invalid JSON in LLM response: {e}")

    if isinstance(data, dict):
        data = data.get("fields")
    if not isinstance(data, list):
        raise ValueError("LLM response is not a list of fields")

    fields = []
    for i, item in enumerate(data):
        try:
            raw = RawExtractedField.model_validate(item)
        except ValidationError as e:
            logger.warning(f"Skipping invalid field at index {i}: {e.errors()[0]['msg']}")
            continue

        fields.append(
            ExtractedFieldInput(
                field_name=raw.field_name,
                field_value=_to_text(raw.field_value),
                confidence_score=raw.confidence,
                bounding_box=_to_bounding_box(raw.bounding_box),
            )
        )

    return fields
