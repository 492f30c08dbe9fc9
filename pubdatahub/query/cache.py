"""In-memory cache for query results with per-entry expiry."""

from __future__ import annotations

import threading
import time
import weakref
from datetime import timedelta

from .types import CacheStats, QueryResult

_CLEANUP_INTERVAL = 5 * 60.0
_APPROX_ENTRY_SIZE = 1024


def _seconds(ttl: float | timedelta) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


def _cleanup_loop(cache_ref: "weakref.ref[InMemoryQueryCache]", interval: float) -> None:
    while True:
        time.sleep(interval)
        cache = cache_ref()
        if cache is None:
            return
        cache.purge_expired()
        del cache


class InMemoryQueryCache:
    """A bounded, thread-safe cache of query results.

    Expired entries count as misses and are removed by a periodic background
    sweep or an explicit call to :meth:`purge_expired`.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self._lock = threading.Lock()
        self._items: dict[str, tuple[QueryResult, float]] = {}
        self._hits = 0
        self._misses = 0
        threading.Thread(
            target=_cleanup_loop,
            args=(weakref.ref(self), _CLEANUP_INTERVAL),
            name="query-cache-cleanup",
            daemon=True,
        ).start()

    def get(self, key: str) -> QueryResult | None:
        """Return the cached result for ``key``, or None on a miss."""
        with self._lock:
            item = self._items.get(key)
            if item is None or time.monotonic() > item[1]:
                self._misses += 1
                return None
            self._hits += 1
            return item[0]

    def set(self, key: str, result: QueryResult, ttl: float | timedelta) -> None:
        """Store ``result`` under ``key`` for ``ttl`` (seconds or timedelta)."""
        with self._lock:
            if len(self._items) >= self.max_size:
                self._evict_one()
            self._items[key] = (result, time.monotonic() + _seconds(ttl))

    def delete(self, key: str) -> None:
        """Remove ``key`` from the cache if present."""
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        """Remove every entry and reset the hit and miss counters."""
        with self._lock:
            self._items.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        """Return hit/miss counts, size and an approximate memory figure."""
        with self._lock:
            total = self._hits + self._misses
            hit_rate = self._hits / total if total else 0.0
            size = len(self._items)
            return CacheStats(
                hit_count=self._hits,
                miss_count=self._misses,
                hit_rate=hit_rate,
                size=size,
                max_size=self.max_size,
                memory_usage=size * _APPROX_ENTRY_SIZE,
            )

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            now = time.monotonic()
            expired = [key for key, (_, expiry) in self._items.items() if now > expiry]
            for key in expired:
                del self._items[key]
            return len(expired)

    def _evict_one(self) -> None:
        if self._items:
            del self._items[next(iter(self._items))]