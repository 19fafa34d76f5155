"""Run-scoped lookup cache."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)

_MISSING = object()


class RunCache:
    """Bounded LRU cache with a TTL, created per sync run and dropped after it."""

    def __init__(
        self,
        *,
        max_entries: int = 10000,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            self.misses += 1
            return default
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._data[key]
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def clear(self) -> None:
        if self._data:
            logger.debug("Dropping %s cached entries (%s hits, %s misses)", len(self._data), self.hits, self.misses)
        self._data.clear()
