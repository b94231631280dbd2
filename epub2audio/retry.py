"""Retrying of flaky async operations with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import NonRetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures whose message contains one of these will not improve on retry.
NON_RETRYABLE_PHRASES = (
    "Invalid response format",
    "Maximum chunk size exceeded",
    "Unauthorized",
    "Rate limit exceeded",
    "Missing audioContent",
    "Duplicate chunk detected",
)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, NonRetryableError):
        return False
    message = str(error)
    return not any(phrase in message for phrase in NON_RETRYABLE_PHRASES)


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 1.0,
    name: str = "Operation",
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
) -> T:
    """Await ``operation()`` up to ``max_retries + 1`` times.

    The delay before retry ``n`` is ``base_delay * 2 ** (n - 1)`` seconds.
    ``should_retry(error, attempt)`` may veto a retry; the default refuses
    to retry :class:`NonRetryableError` and errors carrying one of the
    ``NON_RETRYABLE_PHRASES``. The last error is re-raised.
    """
    check = should_retry or (lambda error, attempt: is_retryable(error))
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            logger.warning("%s attempt %d/%d failed: %s", name, attempt, max_retries + 1, exc)
            if attempt > max_retries or not check(exc, attempt):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug("%s waiting %.1fs before next attempt", name, delay)
            await asyncio.sleep(delay)
