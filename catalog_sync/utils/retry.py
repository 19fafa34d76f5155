"""Retry helpers for upstream calls and database chunks."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS: tuple[type[BaseException], ...] = (OSError, asyncio.TimeoutError, httpx.TransportError)

TRANSIENT_PATTERNS = (
    "sorry, too many clients already",
    "connection terminated",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "timeout",
    "timed out",
    "pool exhausted",
    "too many connections",
    "connection limit exceeded",
    "database is locked",
)


def is_transient_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(pattern in message for pattern in TRANSIENT_PATTERNS)


def retry_async(
    func: Callable[..., Awaitable],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = RETRY_EXCEPTIONS,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable] | None = None,
):
    """Wrap ``func`` so failures matching ``retry_on`` are retried.

    The wait before retry ``n`` is ``base_delay * 2**n`` plus optional jitter.
    ``should_retry`` narrows the retried errors further; anything it rejects
    is raised immediately.
    """
    pause = sleep or asyncio.sleep

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except retry_on as exc:
                if should_retry is not None and not should_retry(exc):
                    raise
                if attempt == attempts:
                    raise
                delay = base_delay * 2**attempt
                if jitter:
                    delay += random.random() * base_delay
                logger.warning(
                    "Attempt %s/%s of %s failed (%s); retrying in %.2fs",
                    attempt,
                    attempts,
                    getattr(func, "__name__", "call"),
                    exc,
                    delay,
                )
                await pause(delay)
    return wrapper
