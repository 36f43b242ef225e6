"""Data models for IdeaBox.

This module contains Pydantic models for data validation and serialization.
"""

from ideabox.models.analysis import (
    AnalysisResult,
    AnalysisRunSummary,
    EmailAnalysis,
    EmailCategory,
    ExtractedAction,
    KeyDate,
)
from ideabox.models.message import MessageRecord, ParsedMessage, StoredMessage
from ideabox.models.sync import (
    AccountSyncResult,
    GmailAccount,
    MessageFailure,
    SyncConfig,
    SyncReport,
    SyncResult,
    SyncRun,
    SyncStatus,
    SyncTotals,
    SyncType,
)

__all__ = [
    "AccountSyncResult",
    "AnalysisResult",
    "AnalysisRunSummary",
    "EmailAnalysis",
    "EmailCategory",
    "ExtractedAction",
    "GmailAccount",
    "KeyDate",
    "MessageFailure",
    "MessageRecord",
    "ParsedMessage",
    "StoredMessage",
    "SyncConfig",
    "SyncReport",
    "SyncResult",
    "SyncRun",
    "SyncStatus",
    "SyncTotals",
    "SyncType",
]
