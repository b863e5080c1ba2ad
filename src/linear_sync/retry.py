"""
Exponential backoff for rate-limited Linear calls.

Only rate-limit failures are retried; everything else propagates on the first
occurrence. The executor knows nothing about caching.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .linear_client import LinearApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = float(os.getenv("LINEAR_SYNC_RETRY_BASE_DELAY_SECONDS", "1.0"))


class RetryExhaustedError(LinearApiError):
    """Raised when every attempt was rate limited."""

    def __init__(self, attempts: int, last_error: BaseException, description: str | None = None):
        target = f" for {description}" if description else ""
        super().__init__(
            "retries_exhausted",
            f"rate limited on all {attempts} attempts{target}: {last_error}",
        )
        self.attempts = attempts
        self.last_error = last_error


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, LinearApiError) and exc.is_rate_limited


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    description: str | None = None,
) -> T:
    """Run `operation`, backing off `base_delay * 2**attempt` seconds after each rate limit."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    delay_unit = DEFAULT_BASE_DELAY_SECONDS if base_delay is None else base_delay
    attempt = 0

    while True:
        try:
            return await operation()
        except LinearApiError as exc:
            if not exc.is_rate_limited:
                raise
            if attempt == max_attempts - 1:
                raise RetryExhaustedError(max_attempts, exc, description) from exc
            delay = delay_unit * 2**attempt
            logger.warning(
                "Rate limited%s (attempt %d/%d), retrying in %.2fs",
                f" on {description}" if description else "",
                attempt + 1,
                max_attempts,
                delay,
            )
            await sleep(delay)
            attempt += 1
