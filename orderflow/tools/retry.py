"""Exponential backoff with jitter for idempotent API calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504) and connection
errors/timeouts. Respects Retry-After headers. Logs each retry attempt.

Only wrap calls that are safe to repeat (status queries, note updates).
Shipment booking and message sends are never retried.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator: retry a coroutine function with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.
    """

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt == max_retries:
                        raise
                    delay = _compute_delay(
                        attempt, base_delay, max_delay, jitter, e.response
                    )
                    logger.warning(
                        "Retry %d/%d for %s (HTTP %d), waiting %.1fs",
                        attempt + 1,
                        max_retries,
                        fn.__name__,
                        status,
                        delay,
                    )
                    await asyncio.sleep(delay)
                except (httpx.TransportError, ConnectionError) as e:
                    if attempt == max_retries:
                        raise
                    delay = _compute_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "Retry %d/%d for %s (connection error: %s), waiting %.1fs",
                        attempt + 1,
                        max_retries,
                        fn.__name__,
                        type(e).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


def _compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass

    # Exponential backoff: base * 2^attempt
    delay = base_delay * (2**attempt)
    delay = min(delay, max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.1, delay)
