"""Bounded in-memory map with TTL expiry and oldest-first eviction."""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

_MISSING = object()


class BoundedTTLCache:
    """Insertion-ordered cache shared by the dedup, score and engine registries.

    Entries expire ``ttl_seconds`` after they were stored (or last touched).
    Expiry is applied on every read, ``sweep()`` only reclaims memory early.
    When the size cap is exceeded, ``evict_fraction`` of the oldest entries are
    dropped in one pass. All compound operations run under one lock.
    """

    def __init__(
        self,
        ttl_seconds: float | None,
        max_entries: int,
        evict_fraction: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self.name = name
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def _is_expired(self, stored_at: float, now: float) -> bool:
        return self.ttl_seconds is not None and now - stored_at >= self.ttl_seconds

    def _lookup(self, key: Hashable, now: float) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        value, stored_at = entry
        if self._is_expired(stored_at, now):
            del self._entries[key]
            self.expirations += 1
            return _MISSING
        return value

    def _store(self, key: Hashable, value: Any, now: float) -> None:
        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        if len(self._entries) > self.max_entries:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        count = min(len(self._entries), max(1, int(len(self._entries) * self.evict_fraction)))
        for _ in range(count):
            self._entries.popitem(last=False)
        self.evictions += count

    def get(self, key: Hashable, default: Any = None, touch: bool = False) -> Any:
        with self._lock:
            now = self._clock()
            value = self._lookup(key, now)
            if value is _MISSING:
                return default
            if touch:
                self._entries[key] = (value, now)
                self._entries.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._store(key, value, self._clock())

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            value = self._lookup(key, self._clock())
            if value is _MISSING:
                return default
            del self._entries[key]
            return value

    def discard_if(self, key: Hashable, expected: Any) -> bool:
        """Remove ``key`` only while it still maps to ``expected``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] is not expected:
                return False
            del self._entries[key]
            return True

    def add_if_absent(self, key: Hashable, value: Any = True) -> bool:
        """Insert ``key`` unless a live entry exists. Returns True when inserted."""
        with self._lock:
            now = self._clock()
            if self._lookup(key, now) is not _MISSING:
                return False
            self._store(key, value, now)
            return True

    def get_or_insert(self, key: Hashable, factory: Callable[[], Any]) -> tuple[Any, bool]:
        """Return ``(value, created)``; ``factory`` runs under the lock and must not block."""
        with self._lock:
            now = self._clock()
            existing = self._lookup(key, now)
            if existing is not _MISSING:
                return existing, False
            value = factory()
            self._store(key, value, now)
            return value, True

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        if self.ttl_seconds is None:
            return 0
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, stored_at) in self._entries.items() if self._is_expired(stored_at, now)]
            for key in expired:
                del self._entries[key]
            self.expirations += len(expired)
            return len(expired)

    def keys(self) -> list:
        with self._lock:
            now = self._clock()
            return [key for key, (_, stored_at) in self._entries.items() if not self._is_expired(stored_at, now)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
