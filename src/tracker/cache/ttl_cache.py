from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

from tracker.utils.time import age_ms, utc_now_ms

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    payload: V
    stored_at_ms: int


class TTLCache(Generic[K, V]):
    """
    In-memory key -> value map whose entries expire ttl_ms after their last set().

    - An entry is treated as absent once now - stored_at_ms > ttl_ms, whether or
      not it has been physically removed yet.
    - get() removes an expired entry it runs into (lazy cleanup); cleanup()
      removes all of them (eager, driven by the sweeper).
    - size() and snapshot() clean up first, so they never count stale entries.

    All operations take one coarse lock; values are replaced wholesale, never
    mutated in place, so a snapshot only needs a shallow copy.
    """
    def __init__(self, ttl_ms: int, clock: Optional[Callable[[], int]] = None):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        self.ttl_ms = ttl_ms
        self._clock = clock or utc_now_ms
        self._store: dict[K, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def _now(self) -> int:
        return self._clock()

    def _expired(self, entry: CacheEntry[V], now: int) -> bool:
        return age_ms(entry.stored_at_ms, now) > self.ttl_ms

    def set(self, key: K, value: V) -> None:
        with self._lock:
            now = self._now()
            prev = self._store.get(key)
            if prev is not None and not self._expired(prev, now):
                # never move a live entry's timestamp backwards
                now = max(now, prev.stored_at_ms)
            self._store[key] = CacheEntry(payload=value, stored_at_ms=now)

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._now()):
                del self._store[key]
                return None
            return entry.payload

    def delete(self, key: K) -> None:
        with self._lock:
            self._store.pop(key, None)

    def cleanup(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            return self._cleanup_locked()

    def _cleanup_locked(self) -> int:
        now = self._now()
        stale = [k for k, e in self._store.items() if self._expired(e, now)]
        for k in stale:
            del self._store[k]
        return len(stale)

    def size(self) -> int:
        with self._lock:
            self._cleanup_locked()
            return len(self._store)

    def snapshot(self) -> dict[K, V]:
        """Point-in-time copy of all live (key, value) pairs."""
        with self._lock:
            self._cleanup_locked()
            return {k: e.payload for k, e in self._store.items()}

    def __len__(self) -> int:
        return self.size()
