"""Small in-memory TTL cache shared by the resource managers."""

import json
import threading
import time
from typing import Any, Callable, Optional

import cachetools


def make_key(*parts: Any, **params: Any) -> str:
    """Build a stable cache key. None-valued params are ignored."""
    cleaned = {k: v for k, v in params.items() if v is not None}
    return json.dumps([list(parts), cleaned], sort_keys=True, default=str)


class TTLCache:
    """cachetools.TTLCache behind a lock.

    Entries expire ttl_seconds after they were last set; once max_entries is
    reached the least recently used entry is evicted. Safe to share between
    the threads of a batch call.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 100, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._cache = cachetools.TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: Any):
        with self._lock:
            self._cache[key] = value

    def evict_oldest(self, count: int):
        with self._lock:
            for _ in range(min(count, len(self._cache))):
                self._cache.popitem()

    def clear(self):
        with self._lock:
            self._cache.clear()
