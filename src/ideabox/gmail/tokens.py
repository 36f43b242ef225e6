"""OAuth access-token management for connected Gmail accounts.

Access tokens are refreshed through ``google-auth`` when they are expired or
about to expire, and the new token is written back to the message store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

import structlog

from ideabox.config import Settings
from ideabox.exceptions import ConfigurationError, GmailAPIError, GmailAuthError
from ideabox.models import GmailAccount
from ideabox.utils.retry import RetryPolicy, Sleep, with_retry

if TYPE_CHECKING:
    from ideabox.storage.base import MessageStore

logger = structlog.get_logger()

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass(frozen=True)
class TokenGrant:
    """A freshly issued access token."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


Refresher = Callable[[GmailAccount], Awaitable[TokenGrant]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenManager:
    """Hands out valid access tokens for stored Gmail accounts."""

    def __init__(
        self,
        store: MessageStore,
        settings: Settings | None = None,
        *,
        refresher: Refresher | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = _utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._refresher = refresher or self._refresh_with_google
        self._clock = clock
        self._sleep = sleep

    def is_token_expired(self, token_expiry: datetime | None) -> bool:
        """True when the token expires within the configured buffer (or has no expiry)."""

        if token_expiry is None:
            return True
        buffer = timedelta(seconds=self.settings.token_expiry_buffer_seconds)
        return self._clock() + buffer >= _as_utc(token_expiry)

    async def get_valid_token(self, account: GmailAccount) -> str:
        """Return a usable access token, refreshing it first if needed.

        Raises:
            GmailAuthError: If the token cannot be refreshed.
        """

        if account.access_token and not self.is_token_expired(account.token_expiry):
            logger.debug("token_still_valid", account_id=account.id)
            return account.access_token

        logger.info(
            "token_expired_refreshing",
            account_id=account.id,
            expired_at=account.token_expiry.isoformat() if account.token_expiry else None,
        )
        grant = await self.refresh_token(account)
        return grant.access_token

    async def refresh_token(self, account: GmailAccount) -> TokenGrant:
        """Force a refresh and persist the new token.

        Transport failures are retried; a rejected grant is not.
        """

        if not account.refresh_token:
            raise GmailAuthError(
                "Account has no refresh token; reconnect the account",
                {"account_id": account.id},
                is_refreshable=False,
            )

        try:
            grant = await with_retry(
                lambda: self._refresher(account),
                self.retry_policy,
                sleep=self._sleep,
                operation_name="token_refresh",
            )
        except GmailAuthError:
            logger.error("token_refresh_rejected", account_id=account.id)
            raise
        except GmailAPIError as exc:
            logger.error("token_refresh_failed", account_id=account.id, error=str(exc))
            raise GmailAuthError(
                f"Token refresh failed: {exc}",
                {"account_id": account.id},
                is_refreshable=False,
            ) from exc

        try:
            await self.store.update_account_token(
                account.id,
                access_token=grant.access_token,
                token_expiry=grant.expires_at,
                refresh_token=grant.refresh_token,
            )
        except Exception as exc:  # noqa: BLE001
            # The new token is still usable for this run.
            logger.warning("token_persist_failed", account_id=account.id, error=str(exc))

        logger.info(
            "token_refreshed",
            account_id=account.id,
            expires_at=grant.expires_at.isoformat(),
        )
        return grant

    async def _refresh_with_google(self, account: GmailAccount) -> TokenGrant:
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            raise ConfigurationError(
                "IDEABOX_GOOGLE_CLIENT_ID and IDEABOX_GOOGLE_CLIENT_SECRET are required to refresh tokens"
            )
        return await asyncio.to_thread(self._refresh_sync, account)

    def _refresh_sync(self, account: GmailAccount) -> TokenGrant:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.exceptions import RefreshError, TransportError
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials

        creds = Credentials(
            token=None,
            refresh_token=account.refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=[self.settings.gmail_scope],
        )
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            # invalid_grant and friends: the user has to reconnect.
            raise GmailAuthError(
                f"Token refresh rejected: {exc}",
                {"account_id": account.id},
                is_refreshable=False,
            ) from exc
        except TransportError as exc:
            raise GmailAPIError(
                f"Token refresh transport error: {exc}", 503, {"account_id": account.id}
            ) from exc

        if not creds.token:
            raise GmailAuthError(
                "No access token in refresh response",
                {"account_id": account.id},
                is_refreshable=False,
            )

        expires_at = _as_utc(creds.expiry) if creds.expiry else self._clock() + DEFAULT_TOKEN_LIFETIME
        new_refresh = creds.refresh_token if creds.refresh_token != account.refresh_token else None
        return TokenGrant(access_token=creds.token, expires_at=expires_at, refresh_token=new_refresh)
