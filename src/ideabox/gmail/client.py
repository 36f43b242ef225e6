"""Gmail API client implementation.

This module provides a client for interacting with the Gmail API.

Notes:
    The Google API client is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    Every HTTP failure is converted into a typed Gmail error at this boundary;
    transient ones (429, 5xx) are retried with ``ideabox.utils.retry``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from ideabox.config import Settings
from ideabox.exceptions import GmailAPIError, GmailAuthError, GmailError, GmailRateLimitError
from ideabox.utils.retry import RetryPolicy, Sleep, with_retry

logger = structlog.get_logger()

T = TypeVar("T")

# Spam, trash and drafts are never synced; everything else in All Mail is.
DEFAULT_EXCLUSION_QUERY = "-in:spam -in:trash -in:draft"

MAX_PAGE_SIZE = 500
BATCH_PAUSE_SECONDS = 0.1


def build_list_query(query: str | None = None) -> str:
    """Combine the default exclusions with an optional caller filter."""

    if query and query.strip():
        return f"{DEFAULT_EXCLUSION_QUERY} {query.strip()}"
    return DEFAULT_EXCLUSION_QUERY


def _retry_after_ms(headers: Any, default_ms: int) -> int:
    value = None
    if headers is not None:
        try:
            value = headers.get("retry-after")
        except AttributeError:
            value = None
    if value:
        try:
            return int(value) * 1000
        except (TypeError, ValueError):
            pass
    return default_ms


def map_gmail_error(
    error: BaseException,
    context: dict[str, Any] | None = None,
    *,
    rate_limit_delay_ms: int = 10000,
) -> GmailError:
    """Convert an exception raised by googleapiclient into a typed Gmail error.

    401/403 become ``GmailAuthError`` (only 401 is refreshable), 429 becomes
    ``GmailRateLimitError`` and anything else ``GmailAPIError``. Errors without
    an HTTP status are treated as 500.
    """

    if isinstance(error, GmailError):
        return error

    context = dict(context or {})
    resp = getattr(error, "resp", None)
    status = getattr(resp, "status", None)
    try:
        status_code = int(status) if status is not None else None
    except (TypeError, ValueError):
        status_code = None

    if status_code in (401, 403):
        return GmailAuthError(
            "Gmail authentication failed",
            {**context, "status_code": status_code},
            is_refreshable=status_code == 401,
        )

    if status_code == 429:
        return GmailRateLimitError(
            "Gmail rate limit exceeded",
            _retry_after_ms(resp, rate_limit_delay_ms),
            context,
        )

    return GmailAPIError(str(error) or type(error).__name__, status_code or 500, context)


@dataclass(frozen=True)
class MessageFetch:
    """Outcome of fetching one message: either the raw payload or the error."""

    message_id: str
    message: dict[str, Any] | None = None
    error: GmailError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GmailClient:
    """Gmail API client scoped to one connected account.

    The client wraps a ``googleapiclient`` Gmail service. Use
    ``from_access_token`` to build one from a stored OAuth access token, or
    pass a prebuilt (or fake) service directly.
    """

    def __init__(
        self,
        service: Any,
        *,
        account_id: str | None = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize Gmail client.

        Args:
            service: Gmail v1 service resource.
            account_id: Account the client acts for, used in logs and errors.
            settings: Application settings. If None, uses default settings.
            retry_policy: Backoff policy for transient failures.
            sleep: Awaitable sleep used between retries and batches.
        """
        from ideabox.config import get_settings

        self.settings = settings or get_settings()
        self.account_id = account_id
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._service = service
        self._sleep = sleep

    @classmethod
    async def from_access_token(
        cls,
        access_token: str,
        *,
        account_id: str | None = None,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> GmailClient:
        """Build a client from a valid OAuth access token."""

        service = await asyncio.to_thread(_build_service, access_token)
        logger.info("gmail_client_initialized", account_id=account_id)
        return cls(service, account_id=account_id, settings=settings, **kwargs)

    async def list_messages(
        self,
        max_results: int = 100,
        query: str | None = None,
    ) -> list[dict[str, Any]]:
        """List message references from All Mail.

        Args:
            max_results: Maximum number of messages to return.
            query: Extra Gmail search filter, appended to the default exclusions.

        Returns:
            List of ``{"id", "threadId"}`` dictionaries, newest first.

        Raises:
            GmailError: If the API request fails.
        """

        full_query = build_list_query(query)
        logger.info(
            "listing_messages",
            account_id=self.account_id,
            max_results=max_results,
            query=full_query,
        )

        messages = await self._call(
            "list_messages",
            lambda: asyncio.to_thread(self._list_messages_sync, max_results, full_query),
        )

        logger.info("messages_listed", account_id=self.account_id, count=len(messages))
        return messages

    async def get_message(self, message_id: str) -> dict[str, Any]:
        """Get a full message (format=full) by ID.

        Raises:
            GmailError: If the API request fails.
        """

        logger.debug("getting_message", account_id=self.account_id, message_id=message_id)
        return await self._call(
            "get_message",
            lambda: asyncio.to_thread(self._get_message_sync, message_id),
            message_id=message_id,
        )

    async def get_messages(self, message_ids: list[str]) -> list[MessageFetch]:
        """Fetch several full messages, isolating per-message failures.

        Messages are fetched one at a time in batches of
        ``gmail_fetch_batch_size`` with a short pause between batches. Auth
        failures abort the whole fetch since every following call would fail
        the same way.
        """

        if not message_ids:
            return []

        batch_size = self.settings.gmail_fetch_batch_size
        results: list[MessageFetch] = []

        logger.info("fetching_messages", account_id=self.account_id, count=len(message_ids))

        for start in range(0, len(message_ids), batch_size):
            batch = message_ids[start : start + batch_size]
            logger.debug(
                "processing_message_batch",
                account_id=self.account_id,
                batch_number=start // batch_size + 1,
                batch_size=len(batch),
            )

            for message_id in batch:
                try:
                    message = await self.get_message(message_id)
                except GmailAuthError:
                    raise
                except GmailError as exc:
                    results.append(MessageFetch(message_id=message_id, error=exc))
                else:
                    results.append(MessageFetch(message_id=message_id, message=message))

            if start + batch_size < len(message_ids):
                await self._sleep(BATCH_PAUSE_SECONDS)

        failures = [r for r in results if not r.ok]
        if failures:
            logger.warning(
                "message_fetch_partial_failure",
                account_id=self.account_id,
                success_count=len(results) - len(failures),
                failure_count=len(failures),
                errors=[{"message_id": f.message_id, "error": str(f.error)} for f in failures[:5]],
            )

        logger.info(
            "messages_fetched",
            account_id=self.account_id,
            requested=len(message_ids),
            fetched=len(results) - len(failures),
        )
        return results

    async def get_profile(self) -> dict[str, Any]:
        """Return the mailbox profile (``emailAddress``, ``historyId``, ...)."""

        return await self._call("get_profile", lambda: asyncio.to_thread(self._get_profile_sync))

    async def _call(
        self,
        operation_name: str,
        operation: Callable[[], Awaitable[T]],
        **context: Any,
    ) -> T:
        context = {"account_id": self.account_id, **context}

        async def attempt() -> T:
            try:
                return await operation()
            except GmailError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise map_gmail_error(
                    exc,
                    context,
                    rate_limit_delay_ms=self.settings.gmail_rate_limit_delay_ms,
                ) from exc

        try:
            return await with_retry(
                attempt,
                self.retry_policy,
                sleep=self._sleep,
                operation_name=f"gmail_{operation_name}",
            )
        except GmailError as exc:
            logger.error(
                f"gmail_{operation_name}_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                **context,
            )
            raise

    def _list_messages_sync(self, max_results: int, query: str) -> list[dict[str, Any]]:
        user_id = "me"
        messages: list[dict[str, Any]] = []

        page_token: str | None = None
        while len(messages) < max_results:
            per_page = min(MAX_PAGE_SIZE, max_results - len(messages))

            # No labelIds: list All Mail, not just INBOX.
            request = (
                self._service.users()
                .messages()
                .list(userId=user_id, maxResults=per_page, q=query, pageToken=page_token)
            )
            response = request.execute()
            messages.extend(response.get("messages", []) or [])
            page_token = response.get("nextPageToken")
            if page_token is None:
                break

        return messages[:max_results]

    def _get_message_sync(self, message_id: str) -> dict[str, Any]:
        request = self._service.users().messages().get(userId="me", id=message_id, format="full")
        return request.execute()

    def _get_profile_sync(self) -> dict[str, Any]:
        return self._service.users().getProfile(userId="me").execute()


def _build_service(access_token: str) -> Any:
    # Imported lazily to keep import-time cost low and tests fast.
    from google.oauth2.credentials import Credentials
    from googleapiclient.discovery import build

    creds = Credentials(token=access_token)
    # cache_discovery=False prevents writing discovery docs to disk.
    return build("gmail", "v1", credentials=creds, cache_discovery=False)
