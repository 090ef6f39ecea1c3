"""Exponential backoff for async upstream calls."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from devops_insights.connectors.exceptions import (
    AzureDevOpsAPIError,
    AzureDevOpsRateLimitError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_sleep = asyncio.sleep


def backoff_delay(
    attempt: int,
    initial_delay: float,
    backoff_factor: float,
    max_delay: float,
) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return min(initial_delay * backoff_factor ** (attempt + 1), max_delay)


def retry_with_backoff(
    max_retries: int = 2,
    initial_delay: float = 0.3,
    backoff_factor: float = 1.5,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry a coroutine on rate limiting and 5xx responses.

    A ``Retry-After`` carried by :class:`AzureDevOpsRateLimitError` replaces
    the computed delay. Other errors, including 4xx, are raised at once.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except AzureDevOpsAPIError as exc:
                    if not exc.is_retryable or attempt >= max_retries:
                        raise
                    delay = backoff_delay(
                        attempt, initial_delay, backoff_factor, max_delay
                    )
                    if (
                        isinstance(exc, AzureDevOpsRateLimitError)
                        and exc.retry_after_seconds is not None
                    ):
                        delay = min(exc.retry_after_seconds, max_delay)
                    logger.warning(
                        "%s failed with status %s, retrying in %.2fs (%d/%d)",
                        func.__name__,
                        exc.status_code,
                        delay,
                        attempt + 1,
                        max_retries,
                    )
                    await _sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
