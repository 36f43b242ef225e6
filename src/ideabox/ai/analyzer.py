"""Email categorization and extraction.

``EmailAnalyzer`` turns one stored message into an ``EmailAnalysis`` with a
single forced function call: category, urgency, summary, topics, actions,
key dates and ideas.
"""

from __future__ import annotations

from typing import Any

import structlog

from ideabox.ai.client import CallOptions, FunctionSchema, OpenAIClient
from ideabox.config import Settings
from ideabox.gmail.parsing import truncate_body
from ideabox.models import AnalysisResult, EmailAnalysis, EmailCategory, StoredMessage

logger = structlog.get_logger()

FUNCTION_NAME = "categorize_email"

SYSTEM_PROMPT = """You are an email triage assistant. Your job is to protect the user's attention.

For every email decide WHAT, if anything, the user has to do about it and pick exactly one category:

- action_required: a real person or service needs the user to reply, decide, pay, sign or submit something
- event: an invitation, appointment, reservation or anything with a date and place
- newsletter: editorial content the user subscribed to
- promo: marketing, sales and discounts
- admin: receipts, statements, account notices, shipping and security alerts
- personal: direct correspondence from friends, family or colleagues with no explicit ask
- noise: cold outreach, fake awards, mass PR and anything not worth reading

Rate urgency from 1 (can wait indefinitely) to 10 (needs attention today).
Summarize in one or two sentences. Extract concrete actions with due dates
(YYYY-MM-DD) only when the email states or clearly implies them, and key
dates worth putting on a calendar. List up to three ideas the email sparks
for the user, or none. Never invent dates, people or amounts."""


def _build_schema() -> FunctionSchema:
    return FunctionSchema(
        name=FUNCTION_NAME,
        description="Categorizes an email by what action (if any) is needed from the user",
        parameters={
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": [category.value for category in EmailCategory],
                    "description": "The single best-fitting category",
                },
                "urgency_score": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 10,
                    "description": "1 = can wait, 10 = urgent",
                },
                "summary": {"type": "string", "description": "One or two sentence summary"},
                "topics": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Up to five short topic tags",
                },
                "actions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string"},
                            "description": {"type": "string"},
                            "due_date": {"type": "string", "description": "YYYY-MM-DD"},
                        },
                        "required": ["title"],
                    },
                },
                "key_dates": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "date": {"type": "string", "description": "YYYY-MM-DD"},
                            "description": {"type": "string"},
                        },
                        "required": ["date", "description"],
                    },
                },
                "ideas": {"type": "array", "items": {"type": "string"}},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "reasoning": {"type": "string", "description": "Brief explanation"},
            },
            "required": ["category", "urgency_score", "summary", "confidence"],
        },
    )


CATEGORIZE_FUNCTION_SCHEMA = _build_schema()


def format_email_for_analysis(message: StoredMessage, max_body_chars: int) -> str:
    """Render a stored message as the user prompt."""

    parts = [
        f"From: {message.sender_name or ''} <{message.sender_email}>",
        f"Date: {message.date}",
        f"Subject: {message.subject or '(no subject)'}",
    ]
    if message.labels:
        parts.append(f"Labels: {', '.join(message.labels)}")

    parts.append("")
    parts.append("--- Email Body ---")

    if message.body_text:
        parts.append(truncate_body(message.body_text, max_body_chars))
    elif message.snippet:
        parts.append(f"[Snippet only]: {message.snippet}")
    else:
        parts.append("[No body content available]")

    return "\n".join(parts)


class EmailAnalyzer:
    """Categorizes and extracts structured data from one email."""

    def __init__(
        self,
        client: OpenAIClient | None = None,
        settings: Settings | None = None,
        *,
        options: CallOptions | None = None,
    ) -> None:
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.client = client or OpenAIClient(self.settings)
        self.options = options or CallOptions(temperature=0.2)

    async def analyze(self, message: StoredMessage) -> AnalysisResult[Any]:
        """Analyze a message, retrying transient failures."""

        content = format_email_for_analysis(message, self.settings.max_body_chars)
        logger.debug(
            "email_analysis_started",
            message_id=message.id,
            gmail_id=message.gmail_id,
            content_length=len(content),
        )
        result = await self.client.analyze_with_retry(
            SYSTEM_PROMPT,
            content,
            CATEGORIZE_FUNCTION_SCHEMA,
            self.options,
            EmailAnalysis,
        )
        analysis: EmailAnalysis = result.data
        logger.info(
            "email_analysis_completed",
            message_id=message.id,
            category=analysis.category.value,
            urgency_score=analysis.urgency_score,
            confidence=analysis.confidence,
        )
        return result
