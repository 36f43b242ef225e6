"""Exponential backoff with jitter for transient API failures.

Retryability is read from typed errors raised at the SDK/HTTP boundaries
(``LLMCallError.kind``, ``GmailAPIError.status_code``); nothing here inspects
error messages.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import structlog

from ideabox.exceptions import GmailAPIError, GmailRateLimitError, LLMCallError

if TYPE_CHECKING:
    from ideabox.config import Settings

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]
RandomSource = Callable[[], float]


def is_retryable(error: BaseException) -> bool:
    """Return True for transient errors worth another attempt."""

    if isinstance(error, LLMCallError):
        return error.retryable
    if isinstance(error, GmailAPIError):
        return error.retryable
    return False


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    ``max_attempts`` counts the first call. The delay before attempt ``n + 1``
    is ``min(base_delay_ms * 2 ** (n - 1), max_delay_ms)`` plus up to
    ``jitter_ratio`` of that value again.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        from ideabox.config import get_settings

        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

    def backoff_ms(self, attempt: int, rng: RandomSource = random.random) -> int:
        delay = min(self.base_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)
        return round(delay + rng() * self.jitter_ratio * delay)

    def decide(
        self,
        attempt: int,
        error: BaseException,
        rng: RandomSource = random.random,
    ) -> RetryDecision:
        """Decide whether the failure of ``attempt`` (1-based) is retried."""

        if attempt >= self.max_attempts or not is_retryable(error):
            return RetryDecision(retry=False)
        if isinstance(error, GmailRateLimitError):
            return RetryDecision(retry=True, delay_ms=error.retry_after_ms)
        return RetryDecision(retry=True, delay_ms=self.backoff_ms(attempt, rng))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    rng: RandomSource = random.random,
    operation_name: str = "operation",
    log: Any | None = None,
) -> T:
    """Await ``operation`` until it succeeds or the policy gives up.

    On exhaustion, or for a non-retryable error, the last error is re-raised
    unchanged.
    """

    policy = policy or RetryPolicy()
    log = log or logger
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            decision = policy.decide(attempt, exc, rng)
            if not decision.retry:
                if is_retryable(exc):
                    log.error(
                        "retry_exhausted",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(exc),
                    )
                raise

            log.warning(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_ms=decision.delay_ms,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await sleep(decision.delay_ms / 1000)
