"""Gmail sync orchestration.

``SyncOrchestrator.sync_account`` runs one account through
list -> diff -> fetch -> parse -> store -> cursor -> audit. Individual
messages may fail without failing the account; account-level failures are
recorded on the sync run and raised as ``SyncError``. ``sync_user`` drives
every enabled account of a user and optionally kicks off analysis.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from ideabox.config import Settings
from ideabox.exceptions import DuplicateMessageError, SyncError
from ideabox.gmail.client import GmailClient
from ideabox.gmail.parsing import EmailParser
from ideabox.gmail.tokens import TokenManager
from ideabox.models import (
    AccountSyncResult,
    AnalysisRunSummary,
    GmailAccount,
    MessageFailure,
    SyncConfig,
    SyncReport,
    SyncResult,
    SyncStatus,
    SyncTotals,
)

if TYPE_CHECKING:
    from ideabox.ai.service import AnalysisService
    from ideabox.storage.base import MessageStore

logger = structlog.get_logger()

ClientFactory = Callable[[str, GmailAccount], Awaitable[GmailClient]]


def _history_as_int(history_id: str | None) -> int | None:
    if not history_id:
        return None
    try:
        return int(history_id)
    except ValueError:
        return None


def max_history_id(history_ids: list[str | None]) -> str | None:
    """Largest history ID by numeric value; non-numeric IDs are ignored."""

    best: tuple[int, str] | None = None
    for history_id in history_ids:
        value = _history_as_int(history_id)
        if value is not None and (best is None or value > best[0]):
            best = (value, str(history_id))
    return best[1] if best else None


def cursor_advances(candidate: str | None, current: str | None) -> bool:
    """True when ``candidate`` is strictly newer than the stored cursor."""

    new_value = _history_as_int(candidate)
    if new_value is None:
        return False
    current_value = _history_as_int(current)
    return current_value is None or new_value > current_value


class SyncOrchestrator:
    """Synchronizes Gmail accounts into the message store."""

    def __init__(
        self,
        store: MessageStore,
        settings: Settings | None = None,
        *,
        token_manager: TokenManager | None = None,
        client_factory: ClientFactory | None = None,
        parser: EmailParser | None = None,
        analysis_service: AnalysisService | None = None,
        log: Any | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Persistence for accounts, messages and sync runs.
            settings: Application settings. If None, uses default settings.
            token_manager: Provides valid access tokens.
            client_factory: Builds a ``GmailClient`` from an access token.
            parser: Message parser; defaults to one using ``max_body_chars``.
            analysis_service: Runs after a sync that created messages.
            log: Bound structlog logger; defaults to the module logger.
        """
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.store = store
        self.token_manager = token_manager or TokenManager(store, self.settings)
        self.client_factory = client_factory or self._default_client_factory
        self.parser = parser or EmailParser(self.settings.max_body_chars)
        self.analysis_service = analysis_service
        self.log = log or logger

    async def _default_client_factory(self, access_token: str, account: GmailAccount) -> GmailClient:
        return await GmailClient.from_access_token(
            access_token, account_id=account.id, settings=self.settings
        )

    async def sync_account(self, account: GmailAccount, config: SyncConfig | None = None) -> SyncResult:
        """Sync one Gmail account.

        Args:
            account: The account to sync.
            config: Listing options.

        Returns:
            SyncResult: Counters, new cursor and per-message failures.

        Raises:
            SyncError: If the account could not be synced at all.
        """

        config = config or SyncConfig(max_results=self.settings.sync_max_results)
        started = time.perf_counter()
        log = self.log.bind(account_id=account.id, user_id=account.user_id)

        try:
            run = await self.store.start_sync_run(account.user_id, account.id, config.sync_type)
        except Exception as exc:  # noqa: BLE001
            # Without an audit run there is nothing to finalize.
            log.error("sync_run_start_failed", error=str(exc), error_type=type(exc).__name__)
            raise SyncError(
                f"Could not start sync run for account {account.id}: {exc}",
                account_id=account.id,
                failed_at="start",
            ) from exc
        assert run.id is not None
        log.info("sync_account_started", sync_run_id=run.id, sync_type=config.sync_type.value)

        result = SyncResult()
        stage = "token"

        def elapsed_ms() -> int:
            return round((time.perf_counter() - started) * 1000)

        try:
            access_token = await self.token_manager.get_valid_token(account)
            client = await self.client_factory(access_token, account)

            stage = "list"
            refs = await client.list_messages(max_results=config.max_results, query=config.query)
            listed_ids = [ref["id"] for ref in refs if ref.get("id")]
            result.messages_fetched = len(listed_ids)

            if not listed_ids:
                await self.store.update_sync_state(account.id, last_sync_at=datetime.now(timezone.utc))
                result.duration_ms = elapsed_ms()
                await self._finish(run.id, SyncStatus.COMPLETED, result)
                log.info("sync_account_completed", messages_fetched=0, duration_ms=result.duration_ms)
                return result

            stage = "diff"
            existing = await self.store.get_existing_gmail_ids(account.id, listed_ids)
            new_ids = [message_id for message_id in listed_ids if message_id not in existing]
            result.messages_skipped = len(listed_ids) - len(new_ids)
            log.info(
                "sync_diff_computed",
                listed=len(listed_ids),
                already_stored=result.messages_skipped,
                new=len(new_ids),
            )

            stage = "fetch"
            fetches = await client.get_messages(new_ids)

            stage = "store"
            history_ids: list[str | None] = []
            for fetch in fetches:
                if not fetch.ok or fetch.message is None:
                    self._record_failure(result, fetch.message_id, str(fetch.error), log)
                    continue

                history_ids.append(fetch.message.get("historyId"))
                try:
                    parsed = self.parser.parse(fetch.message)
                    record = self.parser.to_insert_record(parsed, account.user_id, account.id)
                    await self.store.insert_message(record)
                except DuplicateMessageError:
                    # Stored by a concurrent sync between the diff and the insert.
                    result.messages_skipped += 1
                    log.debug("sync_message_duplicate", gmail_id=fetch.message_id)
                except Exception as exc:  # noqa: BLE001
                    self._record_failure(result, fetch.message_id, str(exc), log)
                else:
                    result.messages_created += 1

            stage = "cursor"
            new_cursor = max_history_id(history_ids)
            advanced = cursor_advances(new_cursor, account.last_history_id)
            result.history_id = new_cursor if advanced else account.last_history_id
            await self.store.update_sync_state(
                account.id,
                last_sync_at=datetime.now(timezone.utc),
                last_history_id=new_cursor if advanced else None,
            )

            result.duration_ms = elapsed_ms()
            await self._finish(run.id, SyncStatus.COMPLETED, result)

        except Exception as exc:  # noqa: BLE001
            result.success = False
            result.duration_ms = elapsed_ms()
            log.error(
                "sync_account_failed",
                failed_at=stage,
                error=str(exc),
                error_type=type(exc).__name__,
                messages_fetched=result.messages_fetched,
            )
            await self._finish(run.id, SyncStatus.FAILED, result, error_message=str(exc))
            raise SyncError(
                f"Sync failed for account {account.id}: {exc}",
                account_id=account.id,
                messages_fetched=result.messages_fetched,
                messages_created=result.messages_created,
                messages_skipped=result.messages_skipped,
                messages_failed=result.messages_failed,
                failed_at=stage,
            ) from exc

        log.info(
            "sync_account_completed",
            messages_fetched=result.messages_fetched,
            messages_created=result.messages_created,
            messages_skipped=result.messages_skipped,
            messages_failed=result.messages_failed,
            history_id=result.history_id,
            duration_ms=result.duration_ms,
        )
        return result

    async def sync_user(
        self,
        user_id: str,
        config: SyncConfig | None = None,
        account_id: str | None = None,
    ) -> SyncReport:
        """Sync every enabled account of a user (or just ``account_id``).

        One account failing does not stop the others. If anything new was
        stored and analysis is enabled, the analysis service runs afterwards;
        its failure is reported, not raised.
        """

        config = config or SyncConfig(
            max_results=self.settings.sync_max_results,
            analysis_max_emails=self.settings.analysis_max_emails,
        )
        started = time.perf_counter()
        accounts = await self.store.list_accounts(user_id, account_id)

        self.log.info("sync_user_started", user_id=user_id, account_count=len(accounts))

        totals = SyncTotals()
        results: list[AccountSyncResult] = []

        for account in accounts:
            try:
                result = await self.sync_account(account, config)
            except SyncError as exc:
                result = SyncResult(
                    success=False,
                    messages_fetched=exc.messages_fetched,
                    messages_created=exc.messages_created,
                    messages_skipped=exc.messages_skipped,
                    messages_failed=exc.messages_failed,
                    errors=[MessageFailure(message_id=f"account:{account.id}", error=str(exc))],
                )
                totals.success = False

            results.append(AccountSyncResult(account_id=account.id, email=account.email, result=result))
            if result.success:
                totals.accounts_synced += 1
            totals.total_fetched += result.messages_fetched
            totals.total_created += result.messages_created
            totals.total_skipped += result.messages_skipped
            totals.total_failed += result.messages_failed

        analysis: AnalysisRunSummary | None = None
        if config.run_analysis and totals.total_created > 0 and self.analysis_service is not None:
            analysis = await self._run_analysis(user_id, config.analysis_max_emails)

        duration_ms = round((time.perf_counter() - started) * 1000)
        self.log.info(
            "sync_user_completed",
            user_id=user_id,
            success=totals.success,
            accounts_synced=totals.accounts_synced,
            total_fetched=totals.total_fetched,
            total_created=totals.total_created,
            total_skipped=totals.total_skipped,
            total_failed=totals.total_failed,
            duration_ms=duration_ms,
        )
        return SyncReport(totals=totals, results=results, analysis=analysis, duration_ms=duration_ms)

    async def _run_analysis(self, user_id: str, max_emails: int) -> AnalysisRunSummary:
        assert self.analysis_service is not None
        try:
            return await self.analysis_service.run(user_id, max_emails)
        except Exception as exc:  # noqa: BLE001
            self.log.error(
                "post_sync_analysis_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return AnalysisRunSummary(error=str(exc))

    async def _finish(
        self,
        run_id: int,
        status: SyncStatus,
        result: SyncResult,
        error_message: str | None = None,
    ) -> None:
        try:
            await self.store.finish_sync_run(
                run_id,
                status=status,
                messages_fetched=result.messages_fetched,
                messages_created=result.messages_created,
                messages_skipped=result.messages_skipped,
                messages_failed=result.messages_failed,
                duration_ms=result.duration_ms,
                error_message=error_message,
            )
        except Exception as exc:  # noqa: BLE001
            # An audit write failure must not mask the sync outcome.
            self.log.warning("sync_run_finalize_failed", sync_run_id=run_id, error=str(exc))

    @staticmethod
    def _record_failure(result: SyncResult, message_id: str, error: str, log: Any) -> None:
        result.messages_failed += 1
        result.errors.append(MessageFailure(message_id=message_id, error=error))
        log.warning("sync_message_failed", gmail_id=message_id, error=error)
