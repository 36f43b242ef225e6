"""Sync-related models: accounts, configuration, audit runs and results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ideabox.models.analysis import AnalysisRunSummary


class SyncType(str, Enum):
    """Kind of sync recorded in the audit log."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Lifecycle status of a sync run."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class GmailAccount(BaseModel):
    """A connected Gmail account and its OAuth/sync state."""

    id: str = Field(description="Account ID")
    user_id: str = Field(description="Owning user ID")
    email: str = Field(description="Gmail address")
    access_token: str = Field(default="", description="Current OAuth access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    token_expiry: datetime | None = Field(default=None, description="Access token expiry (UTC)")
    last_history_id: str | None = Field(default=None, description="Incremental sync cursor")
    last_sync_at: datetime | None = Field(default=None, description="Time of the last sync")
    sync_enabled: bool = Field(default=True, description="Whether the account is synced")


class SyncConfig(BaseModel):
    """Options for one sync invocation."""

    max_results: int = Field(default=100, ge=1, le=500, description="Message IDs to list")
    query: str | None = Field(default=None, description="Extra Gmail search filter")
    full_sync: bool = Field(default=False, description="Record the run as a full sync")
    run_analysis: bool = Field(default=True, description="Analyze new messages afterwards")
    analysis_max_emails: int = Field(
        default=50, ge=1, le=200, description="Cap on messages analyzed after sync"
    )

    @property
    def sync_type(self) -> SyncType:
        return SyncType.FULL if self.full_sync else SyncType.INCREMENTAL


class SyncRun(BaseModel):
    """Audit record for a single account sync."""

    id: int | None = None
    user_id: str
    account_id: str
    sync_type: SyncType
    status: SyncStatus = SyncStatus.STARTED
    messages_fetched: int = 0
    messages_created: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class MessageFailure(BaseModel):
    """A message that could not be fetched, parsed or stored."""

    message_id: str
    error: str


class SyncResult(BaseModel):
    """Outcome of syncing one account."""

    success: bool = True
    messages_fetched: int = 0
    messages_created: int = 0
    messages_skipped: int = 0
    messages_failed: int = 0
    history_id: str | None = None
    duration_ms: int = 0
    errors: list[MessageFailure] = Field(default_factory=list)


class AccountSyncResult(BaseModel):
    """A ``SyncResult`` labelled with the account it belongs to."""

    account_id: str
    email: str
    result: SyncResult


class SyncTotals(BaseModel):
    """Counters summed across every account in a sync invocation."""

    success: bool = True
    accounts_synced: int = 0
    total_fetched: int = 0
    total_created: int = 0
    total_skipped: int = 0
    total_failed: int = 0


class SyncReport(BaseModel):
    """Result of syncing all requested accounts of a user."""

    totals: SyncTotals
    results: list[AccountSyncResult] = Field(default_factory=list)
    analysis: AnalysisRunSummary | None = None
    duration_ms: int = 0
