"""
Retry utilities - Async retry decorator with exponential backoff.

Used for one-shot calls outside the HTTP transport loop, such as OAuth token
endpoint exchanges.
"""

from typing import Callable, TypeVar

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from provkit.errors import NetworkError, ServerError
from provkit.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

RETRYABLE_EXCEPTIONS = (httpx.TransportError, NetworkError, ServerError)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry_scheduled",
        function=getattr(retry_state.fn, "__qualname__", None),
        attempt=retry_state.attempt_number,
        delay=retry_state.upcoming_sleep,
        error=str(exc) if exc else None,
    )


def retry_async(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    exceptions: tuple[type[Exception], ...] = RETRYABLE_EXCEPTIONS,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for async functions to add retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Exception types that trigger a retry
    """
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=_log_retry,
    )


__all__ = ["retry_async", "RETRYABLE_EXCEPTIONS"]
