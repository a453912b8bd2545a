"""LLM-backed field extraction for queued documents."""

from doc_intake.processing.claude import ClaudeExtractor
from doc_intake.processing.handler import DocumentProcessingHandler
from doc_intake.processing.protocol import Extractor
from doc_intake.processing.response_parser import (
    extract_json_from_response,
    parse_extraction_response,
)

__all__ = [
    "ClaudeExtractor",
    "DocumentProcessingHandler",
    "Extractor",
    "extract_json_from_response",
    "parse_extraction_response",
]
