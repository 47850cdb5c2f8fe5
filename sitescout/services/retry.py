"""Exponential-backoff retry for fetches that fail with retryable errors."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from sitescout.core.exceptions import RetryableHTTPError
from sitescout.core.metrics import retry_attempts_total
from sitescout.schemas.scrape import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Configured HTTP statuses and network errors retry; timeouts do not."""
    if isinstance(exc, RetryableHTTPError):
        return True
    if isinstance(exc, httpx.TimeoutException):
        return False
    if isinstance(exc, httpx.TransportError):
        return True
    # Playwright surfaces network failures as net::ERR_* messages
    msg = str(exc)
    return "net::ERR_" in msg and "TIMED_OUT" not in msg


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    describe: str = "request",
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> T:
    """Run fn, retrying retryable failures up to config.max_retries times.

    Delays grow as retry_delay * backoff_multiplier ** (attempt - 1).
    Non-retryable errors and the final failure propagate unchanged.
    """
    attempts = config.max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if not is_retryable(e) or attempt == attempts:
                if attempt > 1:
                    logger.warning(f"{describe} failed after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            retry_attempts_total.inc()
            logger.warning(
                f"{describe} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
    raise RuntimeError("unreachable")
