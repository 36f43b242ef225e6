"""Persistence contract used by the sync pipeline and the analysis service."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from ideabox.models import (
    EmailAnalysis,
    GmailAccount,
    MessageRecord,
    StoredMessage,
    SyncRun,
    SyncStatus,
    SyncType,
)


@runtime_checkable
class MessageStore(Protocol):
    """Async storage for accounts, messages, sync runs and API usage.

    ``insert_message`` must raise ``DuplicateMessageError`` when the
    ``(account_id, gmail_id)`` pair already exists, and ``finish_sync_run``
    must leave an already finalized run untouched.
    """

    async def list_accounts(
        self,
        user_id: str,
        account_id: str | None = None,
        *,
        enabled_only: bool = True,
    ) -> list[GmailAccount]: ...

    async def get_account(self, account_id: str) -> GmailAccount | None: ...

    async def save_account(self, account: GmailAccount) -> None: ...

    async def update_account_token(
        self,
        account_id: str,
        *,
        access_token: str,
        token_expiry: datetime,
        refresh_token: str | None = None,
    ) -> None: ...

    async def update_sync_state(
        self,
        account_id: str,
        *,
        last_sync_at: datetime,
        last_history_id: str | None = None,
    ) -> None: ...

    async def get_existing_gmail_ids(self, account_id: str, gmail_ids: list[str]) -> set[str]: ...

    async def insert_message(self, record: MessageRecord) -> int: ...

    async def start_sync_run(self, user_id: str, account_id: str, sync_type: SyncType) -> SyncRun: ...

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: SyncStatus,
        messages_fetched: int = 0,
        messages_created: int = 0,
        messages_skipped: int = 0,
        messages_failed: int = 0,
        duration_ms: int | None = None,
        error_message: str | None = None,
    ) -> bool: ...

    async def list_sync_runs(self, user_id: str, limit: int = 20) -> list[SyncRun]: ...

    async def list_unanalyzed_messages(self, user_id: str, limit: int = 50) -> list[StoredMessage]: ...

    async def save_analysis(self, message_id: int, analysis: EmailAnalysis) -> None: ...

    async def mark_analysis_failed(self, message_id: int, error: str) -> None: ...

    async def log_api_usage(
        self,
        user_id: str,
        *,
        service: str,
        model: str,
        function_name: str,
        tokens_input: int,
        tokens_output: int,
        estimated_cost: float,
        duration_ms: int,
        message_id: int | None = None,
    ) -> None: ...
