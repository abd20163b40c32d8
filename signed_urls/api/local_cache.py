# In-process cache tier for signed-URL entries.
# TLRUCache gives each entry its own TTL; when full it drops expired entries first, then the LRU one.

import threading
import time
from typing import Any, Callable, NamedTuple, Optional

from cachetools import TLRUCache


class _Slot(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(_key, slot: _Slot, now: float) -> float:
    return now + slot.ttl


class LocalCache:
    """Bounded key/value store with per-entry TTL and monotonic hit/miss counters."""

    def __init__(self, maxsize: int = 4096, timer: Callable[[], float] = time.monotonic):
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def maxsize(self) -> int:
        return int(self._cache.maxsize)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            slot = self._cache.get(key)
            if slot is None:
                self._misses += 1
                return None
            self._hits += 1
            return slot.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            if ttl_seconds <= 0:
                self._cache.pop(key, None)
                return
            self._cache[key] = _Slot(value, float(ttl_seconds))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def list_keys(self) -> list[str]:
        with self._lock:
            self._cache.expire()
            return list(self._cache.keys())

    def flush_all(self) -> None:
        with self._lock:
            self._cache.clear()

    def expire(self) -> int:
        """Active sweep. Returns how many expired entries were dropped."""
        with self._lock:
            before = len(self._cache)
            self._cache.expire()
            return before - len(self._cache)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._cache.expire()
            lookups = self._hits + self._misses
            return {
                "entries": len(self._cache),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }
