"""Prompt version models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from doc_intake.models.enums import PromptStatus
from doc_intake.utils.timeutils import utc_now

DEFAULT_MODEL_PARAMETERS: dict[str, Any] = {"temperature": 0.7, "max_tokens": 2048}


class PromptVersion(BaseModel):
    """One version of a named prompt consumed by the extractor."""

    id: str
    name: str
    version: int = Field(..., ge=1)
    text: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_PARAMETERS)
    )
    status: PromptStatus = PromptStatus.DRAFT
    changelog: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def render(self, **variables: str) -> str:
        """Fill ``{{name}}`` placeholders in the prompt text."""
        text = self.text
        for key, value in variables.items():
            text = text.replace("{{" + key + "}}", value)
        return text
