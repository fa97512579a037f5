from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import httpx

from bookhub.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2  # Up to 2 retries (3 total attempts)
DEFAULT_BACKOFF_MS = 200  # Quadruples each retry: 200ms, 800ms
DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_RETRIES_HARD_CAP = 3


def is_retryable(exc: BaseException) -> bool:
    """Transport failures, timeouts and 5xx answers are transient; 4xx answers are not."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


async def call_with_retry(
    label: str,
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    backoff_ms: int = DEFAULT_BACKOFF_MS,
) -> T:
    """Await ``func()`` with a per-attempt timeout and bounded exponential backoff.

    Non-retryable errors propagate immediately. When every attempt fails the
    last error is re-raised after a ``<label>_retries_exhausted`` event.
    """

    max_retries = max(0, min(max_retries, MAX_RETRIES_HARD_CAP))
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=timeout_seconds)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            attempt += 1
            if attempt > max_retries:
                logger.error(
                    f"{label}_retries_exhausted",
                    attempts=attempt,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc) or type(exc).__name__),
                )
                raise
            logger.warning(
                f"{label}_retry",
                attempt=attempt,
                max_retries=max_retries,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc) or type(exc).__name__),
            )
            # Exponential backoff: backoff_ms * (4 ^ (attempt - 1))
            current_backoff_ms = backoff_ms * (4 ** (attempt - 1))
            if current_backoff_ms > 0:
                logger.info(f"{label}_backoff", attempt=attempt, backoff_ms=current_backoff_ms)
                await asyncio.sleep(current_backoff_ms / 1000.0)
