"""Unit tests for the OAuth token manager."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import no_sleep

from ideabox.exceptions import GmailAPIError, GmailAuthError
from ideabox.gmail.tokens import TokenGrant, TokenManager
from ideabox.models import GmailAccount
from ideabox.utils import RetryPolicy

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class RecordingStore:
    """Captures update_account_token calls."""

    def __init__(self, fail: bool = False) -> None:
        self.updates: list[dict] = []
        self.fail = fail

    async def update_account_token(self, account_id: str, **kwargs) -> None:
        if self.fail:
            raise RuntimeError("database unavailable")
        self.updates.append({"account_id": account_id, **kwargs})


def _account(expiry: datetime | None, refresh_token: str | None = "1//refresh") -> GmailAccount:
    return GmailAccount(
        id="acct-1",
        user_id="user-1",
        email="me@example.com",
        access_token="old-token",
        refresh_token=refresh_token,
        token_expiry=expiry,
    )


def _manager(store, settings, refresher) -> TokenManager:
    return TokenManager(
        store,
        settings,
        refresher=refresher,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=1),
        clock=lambda: NOW,
        sleep=no_sleep,
    )


def _grant_refresher(calls: list, outcomes: list | None = None):
    async def refresher(account: GmailAccount) -> TokenGrant:
        calls.append(account.id)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        return TokenGrant(access_token="new-token", expires_at=NOW + timedelta(hours=1))

    return refresher


class TestTokenManager:
    """Test suite for TokenManager class."""

    def test_expiry_buffer(self, mock_settings) -> None:
        """Test that tokens within five minutes of expiry count as expired."""
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher([]))

        assert manager.is_token_expired(NOW + timedelta(minutes=10)) is False
        assert manager.is_token_expired(NOW + timedelta(minutes=5)) is True
        assert manager.is_token_expired(NOW - timedelta(minutes=1)) is True
        assert manager.is_token_expired(None) is True

    @pytest.mark.asyncio
    async def test_valid_token_is_returned_without_refresh(self, mock_settings) -> None:
        """Test that a fresh token is used as-is."""
        calls: list = []
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher(calls))

        token = await manager.get_valid_token(_account(NOW + timedelta(hours=1)))

        assert token == "old-token"
        assert calls == []

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_and_persisted(self, mock_settings) -> None:
        """Test refresh and write-back of a nearly expired token."""
        calls: list = []
        store = RecordingStore()
        manager = _manager(store, mock_settings, _grant_refresher(calls))

        token = await manager.get_valid_token(_account(NOW + timedelta(minutes=2)))

        assert token == "new-token"
        assert calls == ["acct-1"]
        assert store.updates[0]["account_id"] == "acct-1"
        assert store.updates[0]["access_token"] == "new-token"
        assert store.updates[0]["token_expiry"] == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_transient_refresh_failures_are_retried(self, mock_settings) -> None:
        """Test that transport errors are retried."""
        calls: list = []
        outcomes = [GmailAPIError("transport", 503), GmailAPIError("transport", 503)]
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher(calls, outcomes))

        token = await manager.get_valid_token(_account(NOW))

        assert token == "new-token"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_refresh_becomes_auth_error(self, mock_settings) -> None:
        """Test that retries exhausted on transport errors fail authentication."""
        outcomes = [GmailAPIError("transport", 503) for _ in range(3)]
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher([], outcomes))

        with pytest.raises(GmailAuthError) as exc_info:
            await manager.get_valid_token(_account(NOW))

        assert exc_info.value.is_refreshable is False

    @pytest.mark.asyncio
    async def test_rejected_grant_is_not_retried(self, mock_settings) -> None:
        """Test that invalid_grant stops immediately."""
        calls: list = []
        outcomes = [GmailAuthError("invalid_grant", is_refreshable=False)]
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher(calls, outcomes))

        with pytest.raises(GmailAuthError):
            await manager.get_valid_token(_account(NOW))

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, mock_settings) -> None:
        """Test that an account without a refresh token must reconnect."""
        calls: list = []
        manager = _manager(RecordingStore(), mock_settings, _grant_refresher(calls))

        with pytest.raises(GmailAuthError):
            await manager.get_valid_token(_account(None, refresh_token=None))

        assert calls == []

    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_token(self, mock_settings) -> None:
        """Test that a failed write-back does not lose the new token."""
        manager = _manager(RecordingStore(fail=True), mock_settings, _grant_refresher([]))

        assert await manager.get_valid_token(_account(NOW)) == "new-token"
