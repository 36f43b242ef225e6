"""Unit tests for the retry policy and wrapper."""

import pytest

from ideabox.exceptions import (
    AuthenticationError,
    ErrorKind,
    GmailAPIError,
    GmailAuthError,
    GmailRateLimitError,
    LLMCallError,
    TokenLimitError,
)
from ideabox.utils import RetryPolicy, is_retryable, with_retry


class TestIsRetryable:
    """Test suite for error classification."""

    @pytest.mark.parametrize(
        "kind",
        [ErrorKind.RATE_LIMIT, ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT, ErrorKind.MALFORMED_OUTPUT],
    )
    def test_transient_llm_kinds(self, kind: ErrorKind) -> None:
        """Test the retryable OpenAI error kinds."""
        assert is_retryable(LLMCallError("x", kind)) is True

    @pytest.mark.parametrize("kind", [ErrorKind.INVALID_RESPONSE, ErrorKind.OTHER])
    def test_terminal_llm_kinds(self, kind: ErrorKind) -> None:
        """Test the non-retryable OpenAI error kinds."""
        assert is_retryable(LLMCallError("x", kind)) is False

    def test_token_limit_is_terminal(self) -> None:
        """Test that a truncated response is never retried."""
        assert is_retryable(TokenLimitError("cut off", max_tokens=500)) is False

    def test_gmail_errors(self) -> None:
        """Test Gmail status-based retryability."""
        assert is_retryable(GmailAPIError("x", 503)) is True
        assert is_retryable(GmailAPIError("x", 404)) is False
        assert is_retryable(GmailRateLimitError("x", 1000)) is True
        assert is_retryable(GmailAuthError("x")) is False

    def test_other_errors(self) -> None:
        """Test that unknown errors are not retried."""
        assert is_retryable(ValueError("x")) is False
        assert is_retryable(AuthenticationError("x")) is False


class TestRetryPolicy:
    """Test suite for RetryPolicy.decide."""

    def test_backoff_doubles_and_is_capped(self) -> None:
        """Test exponential growth up to max_delay_ms without jitter."""
        policy = RetryPolicy(max_attempts=10, base_delay_ms=1000, max_delay_ms=10000)
        no_jitter = lambda: 0.0  # noqa: E731

        assert [policy.backoff_ms(n, no_jitter) for n in range(1, 6)] == [1000, 2000, 4000, 8000, 10000]

    def test_jitter_adds_up_to_thirty_percent(self) -> None:
        """Test the jitter bound."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=10000)

        assert policy.backoff_ms(1, lambda: 1.0) == 1300
        assert policy.backoff_ms(2, lambda: 0.5) == 2300

    def test_decide_stops_at_max_attempts(self) -> None:
        """Test that the last attempt is never retried."""
        policy = RetryPolicy(max_attempts=3)
        error = LLMCallError("busy", ErrorKind.RATE_LIMIT)

        assert policy.decide(1, error, lambda: 0.0).retry is True
        assert policy.decide(2, error, lambda: 0.0).retry is True
        assert policy.decide(3, error, lambda: 0.0).retry is False

    def test_rate_limit_retry_after_replaces_backoff(self) -> None:
        """Test that Gmail's Retry-After wins over the computed delay."""
        decision = RetryPolicy().decide(1, GmailRateLimitError("slow down", 7000))

        assert decision.retry is True
        assert decision.delay_ms == 7000

    def test_from_settings(self, mock_settings) -> None:
        """Test building a policy from settings."""
        policy = RetryPolicy.from_settings(mock_settings)

        assert policy.max_attempts == mock_settings.retry_max_attempts
        assert policy.base_delay_ms == mock_settings.retry_base_delay_ms
        assert policy.max_delay_ms == mock_settings.retry_max_delay_ms


class TestWithRetry:
    """Test suite for the async retry wrapper."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        """Test that transient failures are retried until success."""
        calls: list[int] = []
        sleeps: list[float] = []

        async def operation() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise LLMCallError("timeout", ErrorKind.TIMEOUT)
            return "ok"

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        result = await with_retry(
            operation, RetryPolicy(max_attempts=3), sleep=sleep, rng=lambda: 0.0
        )

        assert result == "ok"
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_attempts_are_bounded_and_last_error_propagates(self) -> None:
        """Test that a persistent transient failure gives up after max_attempts."""
        calls: list[int] = []
        last_error = LLMCallError("still down", ErrorKind.SERVER_ERROR)

        async def operation() -> None:
            calls.append(1)
            if len(calls) == 4:
                raise last_error
            raise LLMCallError("down", ErrorKind.SERVER_ERROR)

        sleeps: list[float] = []

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        with pytest.raises(LLMCallError) as exc_info:
            await with_retry(operation, RetryPolicy(max_attempts=4), sleep=sleep)

        assert len(calls) == 4
        assert exc_info.value is last_error
        # 1s + 2s + 4s of backoff, plus at most 30% jitter on each wait.
        assert len(sleeps) == 3
        assert 7.0 <= sum(sleeps) <= 9.1 + 1e-9

    @pytest.mark.asyncio
    async def test_token_limit_is_not_retried(self) -> None:
        """Test that TokenLimitError propagates on the first attempt."""
        calls: list[int] = []

        async def operation() -> None:
            calls.append(1)
            raise TokenLimitError("cut off", max_tokens=500)

        async def sleep(_seconds: float) -> None:
            raise AssertionError("should not sleep")

        with pytest.raises(TokenLimitError):
            await with_retry(operation, RetryPolicy(max_attempts=5), sleep=sleep)

        assert len(calls) == 1
