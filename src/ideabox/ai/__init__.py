"""OpenAI-backed email analysis."""

from ideabox.ai.analyzer import CATEGORIZE_FUNCTION_SCHEMA, EmailAnalyzer, format_email_for_analysis
from ideabox.ai.client import (
    CallOptions,
    FunctionSchema,
    OpenAIClient,
    map_openai_error,
    mask_api_key,
    validate_api_key,
)
from ideabox.ai.service import AnalysisService

__all__ = [
    "CATEGORIZE_FUNCTION_SCHEMA",
    "AnalysisService",
    "CallOptions",
    "EmailAnalyzer",
    "FunctionSchema",
    "OpenAIClient",
    "format_email_for_analysis",
    "map_openai_error",
    "mask_api_key",
    "validate_api_key",
]
