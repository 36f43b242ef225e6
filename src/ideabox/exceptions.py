"""Custom exceptions for IdeaBox."""

from __future__ import annotations

from enum import Enum
from typing import Any


class IdeaBoxError(Exception):
    """Base exception for all IdeaBox errors."""


class ConfigurationError(IdeaBoxError):
    """Exception raised for configuration related errors."""


class ParseError(IdeaBoxError):
    """Raised when a mandatory field of a Gmail message cannot be determined."""

    def __init__(self, message: str, field: str, message_id: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.message_id = message_id


class DuplicateMessageError(IdeaBoxError):
    """Raised by a message store when (account, gmail_id) already exists."""

    def __init__(self, account_id: str, gmail_id: str) -> None:
        super().__init__(f"Message {gmail_id} already stored for account {account_id}")
        self.account_id = account_id
        self.gmail_id = gmail_id


# Gmail


class GmailError(IdeaBoxError):
    """Base exception for Gmail related errors, with structured context."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})


class GmailAuthError(GmailError):
    """Gmail rejected our credentials or a token refresh failed."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        is_refreshable: bool = True,
    ) -> None:
        super().__init__(message, context)
        self.is_refreshable = is_refreshable


class GmailAPIError(GmailError):
    """Exception raised for Gmail API related errors."""

    def __init__(
        self,
        message: str,
        status_code: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, {**(context or {}), "status_code": status_code})
        self.status_code = status_code
        self.retryable = status_code >= 500 or status_code == 429


class GmailRateLimitError(GmailAPIError):
    """Gmail returned 429; ``retry_after_ms`` is how long to wait."""

    def __init__(
        self,
        message: str,
        retry_after_ms: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, 429, context)
        self.retry_after_ms = retry_after_ms


class SyncError(GmailError):
    """An account-level sync failure (token acquisition, listing, ...)."""

    def __init__(
        self,
        message: str,
        *,
        account_id: str,
        messages_fetched: int = 0,
        messages_created: int = 0,
        messages_skipped: int = 0,
        messages_failed: int = 0,
        failed_at: str = "fetch",
    ) -> None:
        super().__init__(message, {"account_id": account_id})
        self.account_id = account_id
        self.messages_fetched = messages_fetched
        self.messages_created = messages_created
        self.messages_skipped = messages_skipped
        self.messages_failed = messages_failed
        self.failed_at = failed_at


# OpenAI


class ErrorKind(str, Enum):
    """Failure kinds produced at the OpenAI SDK boundary."""

    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    MALFORMED_OUTPUT = "malformed_output"
    INVALID_RESPONSE = "invalid_response"
    OTHER = "other"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.MALFORMED_OUTPUT,
    }
)


class AuthenticationError(IdeaBoxError):
    """The OpenAI API key is missing, malformed or rejected."""


class LLMCallError(IdeaBoxError):
    """An OpenAI call failed; ``kind`` decides whether it may be retried."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.OTHER) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TokenLimitError(IdeaBoxError):
    """The structured output was cut off by the ``max_tokens`` budget."""

    def __init__(self, message: str, max_tokens: int) -> None:
        super().__init__(message)
        self.max_tokens = max_tokens
