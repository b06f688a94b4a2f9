"""Analytics cache.

`AnalyticsCache` is the interface the analytics engine talks to; the in-memory
TTL implementation below is the default and can be swapped for a shared cache.
"""

import time
from typing import Any, Callable, NamedTuple

from cachetools import TLRUCache


class AnalyticsCache:
    """get / set / invalidate-by-prefix / clear, with per-entry expiry."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float | None = None):
        raise NotImplementedError

    def invalidate(self, prefix: str) -> int:
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class InMemoryTTLCache(AnalyticsCache):
    """Bounded LRU with per-entry TTL; expired entries are evicted on every write."""

    def __init__(
        self,
        default_ttl: float = 300.0,
        maxsize: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._cache: TLRUCache[str, _Entry] = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=clock)

    def get(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: float | None = None):
        self._cache[key] = _Entry(value, self.default_ttl if ttl is None else ttl)

    def invalidate(self, prefix: str) -> int:
        self._cache.expire()
        removed = 0
        for key in list(self._cache.keys()):
            if key.startswith(prefix) and self._cache.pop(key, None) is not None:
                removed += 1
        return removed

    def clear(self):
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
