"""AI analysis models.

``EmailAnalysis`` is the structured output requested from the model; its
field names match the function schema in ``ideabox.ai.analyzer``.
"""

from __future__ import annotations

from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class EmailCategory(str, Enum):
    """Action-focused email category."""

    ACTION_REQUIRED = "action_required"
    EVENT = "event"
    NEWSLETTER = "newsletter"
    PROMO = "promo"
    ADMIN = "admin"
    PERSONAL = "personal"
    NOISE = "noise"


class ExtractedAction(BaseModel):
    """Something the recipient needs to do."""

    title: str = Field(description="Short imperative title")
    description: str | None = Field(default=None, description="Extra detail")
    due_date: str | None = Field(default=None, description="Deadline as YYYY-MM-DD")


class KeyDate(BaseModel):
    """A date mentioned in the message worth putting on a calendar."""

    date: str = Field(description="Date as YYYY-MM-DD")
    description: str = Field(description="What happens on that date")


class EmailAnalysis(BaseModel):
    """Categorization and extraction result for one email."""

    category: EmailCategory = Field(description="Assigned category")
    urgency_score: int = Field(ge=1, le=10, description="1 = can wait, 10 = urgent")
    summary: str = Field(description="One or two sentence summary")
    topics: list[str] = Field(default_factory=list, description="Short topic tags")
    actions: list[ExtractedAction] = Field(default_factory=list)
    key_dates: list[KeyDate] = Field(default_factory=list)
    ideas: list[str] = Field(default_factory=list, description="Ideas sparked by the email")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence score")
    reasoning: str = Field(default="", description="Explanation for categorization")


class AnalysisResult(BaseModel, Generic[T]):
    """Parsed output of one function-calling request plus usage metrics."""

    data: T
    tokens_input: int = 0
    tokens_output: int = 0
    tokens_total: int = 0
    estimated_cost: float = 0.0
    duration_ms: int = 0


class AnalysisRunSummary(BaseModel):
    """Aggregate outcome of analyzing a batch of stored messages."""

    success_count: int = 0
    failure_count: int = 0
    actions_created: int = 0
    tokens_used: int = 0
    estimated_cost: float = 0.0
    processing_time_ms: int = 0
    categorized: dict[str, int] = Field(default_factory=dict)
    error: str | None = None
