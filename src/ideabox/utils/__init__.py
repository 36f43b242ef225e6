"""Utility functions for IdeaBox."""

from ideabox.utils.retry import RetryDecision, RetryPolicy, is_retryable, with_retry

__all__ = ["RetryDecision", "RetryPolicy", "is_retryable", "with_retry"]
