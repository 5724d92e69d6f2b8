"""
Chat Fanout - TTL Cache.

Small LRU cache with per-entry expiry, injected where lookups are worth
reusing across invocations (contact resolution).
"""
from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """LRU cache with TTL support.

    Uses OrderedDict for O(1) LRU eviction. A ttl of zero disables caching.
    """

    def __init__(self, ttl_seconds: float = 300, max_size: int = 5000,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._cache: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        """Get cached value with LRU update."""
        entry = self._cache.get(key)
        if entry is not None:
            value, stored_at = entry
            if self._clock() - stored_at < self._ttl:
                self._cache.move_to_end(key)
                self.hits += 1
                return value
            del self._cache[key]
        self.misses += 1
        return None

    def set(self, key: str, value: V) -> None:
        if self._ttl <= 0:
            return
        if key in self._cache:
            del self._cache[key]
        elif len(self._cache) >= self._max_size:
            self._cache.popitem(last=False)
        self._cache[key] = (value, self._clock())

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
