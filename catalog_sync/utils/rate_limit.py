"""Adaptive rate limiting for the quota-metered catalog API."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_QUOTA = 450
DEFAULT_WINDOW_MS = 30000
DEFAULT_MIN_DELAY_MS = 67
DEFAULT_429_RESET_MS = 30000

REQUESTS_LEFT_HEADER = "x-rate-limit-requests-left"
RESET_MS_HEADER = "x-rate-limit-time-reset-ms"
QUOTA_HEADER = "x-rate-limit-requests-quota"
WINDOW_MS_HEADER = "x-rate-limit-time-window-ms"


@dataclass(slots=True)
class RateLimitState:
    requests_left: int
    quota: int
    window_ms: int
    reset_ms: int
    last_request_at: float
    min_delay_ms: int


class RateLimiter:
    """Shared quota bookkeeping for every upstream call.

    ``before_request`` runs under a lock so concurrent callers are spaced at
    least ``min_delay_ms`` apart. Header updates never await, which keeps them
    atomic on the event loop.
    """

    def __init__(
        self,
        *,
        quota: int = DEFAULT_QUOTA,
        window_ms: int = DEFAULT_WINDOW_MS,
        critical_threshold: int = 10,
        low_threshold: int = 50,
        reset_margin_ms: int = 500,
        critical_margin_ms: int = 100,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.critical_threshold = critical_threshold
        self.low_threshold = low_threshold
        self.reset_margin_ms = reset_margin_ms
        self.critical_margin_ms = critical_margin_ms
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._state = RateLimitState(
            requests_left=quota,
            quota=quota,
            window_ms=window_ms,
            reset_ms=0,
            last_request_at=float("-inf"),
            min_delay_ms=_base_delay(window_ms, quota),
        )

    @property
    def state(self) -> RateLimitState:
        return self._state

    async def before_request(self) -> None:
        async with self._lock:
            state = self._state
            if state.requests_left <= self.critical_threshold:
                wait_ms = state.reset_ms + self.critical_margin_ms
                logger.warning(
                    "Rate limit critical (%s/%s left); waiting %sms for reset",
                    state.requests_left,
                    state.quota,
                    wait_ms,
                )
                await self._sleep(wait_ms / 1000)
                state.requests_left = state.quota
                state.reset_ms = 0

            spacing_ms = state.min_delay_ms
            if state.requests_left <= self.low_threshold:
                spacing_ms = state.min_delay_ms * 2
            elapsed_ms = (self._clock() - state.last_request_at) * 1000
            if elapsed_ms < spacing_ms:
                await self._sleep((spacing_ms - elapsed_ms) / 1000)
            state.last_request_at = self._clock()

    def record_response(self, headers: Mapping[str, str]) -> None:
        state = self._state
        lowered = _lower_keys(headers)
        state.requests_left = _parse_int(lowered.get(REQUESTS_LEFT_HEADER), state.requests_left)
        state.reset_ms = _parse_int(lowered.get(RESET_MS_HEADER), state.reset_ms)
        state.quota = _parse_int(lowered.get(QUOTA_HEADER), state.quota)
        state.window_ms = _parse_int(lowered.get(WINDOW_MS_HEADER), state.window_ms)

        base = _base_delay(state.window_ms, state.quota)
        if state.requests_left < 50:
            state.min_delay_ms = base * 2
        elif state.requests_left < 200:
            state.min_delay_ms = math.ceil(base * 1.5)
        else:
            state.min_delay_ms = base

        if state.requests_left < self.low_threshold:
            logger.warning("Rate limit low: %s/%s requests left", state.requests_left, state.quota)
        elif state.requests_left % 50 == 0:
            logger.info("Rate limit status: %s/%s requests left", state.requests_left, state.quota)

    async def backoff(self, headers: Mapping[str, str]) -> None:
        """Wait out a quota-exceeded response, then assume a fresh window."""
        reset_ms = _parse_int(_lower_keys(headers).get(RESET_MS_HEADER), DEFAULT_429_RESET_MS)
        await self._sleep((reset_ms + self.reset_margin_ms) / 1000)
        self._state.requests_left = self._state.quota
        self._state.reset_ms = 0

    def status(self) -> dict[str, Any]:
        data = asdict(self._state)
        data.pop("last_request_at")
        return data


def _base_delay(window_ms: int, quota: int) -> int:
    if quota <= 0:
        return DEFAULT_MIN_DELAY_MS
    return math.ceil(window_ms / quota)


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): value for key, value in headers.items()}


def _parse_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
        if value is None:
            return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default
