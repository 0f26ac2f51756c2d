"""Process-local LRU cache with per-entry TTL.

Eviction order on insert at capacity:
1. Entries whose TTL has elapsed
2. The least-recently accessed entry

Recency is refreshed on every successful ``get``. Expired entries are
treated as absent and deleted lazily on access, or eagerly by ``sweep()``
(which the MemoryManager runs on a timer).

The cache is not thread-safe; it is meant to be used from a single event
loop, where every operation completes without suspending.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from typing import Any


class CacheEntry:
    """Single entry stored by LRUCache."""

    __slots__ = ("key", "value", "inserted_at", "last_access", "expires_at")

    def __init__(self, key: str, value: Any, now: float, ttl: float | None) -> None:
        self.key = key
        self.value = value
        self.inserted_at = now
        self.last_access = now
        self.expires_at: float | None = now + ttl if ttl is not None else None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class LRUCache:
    """Bounded mapping with least-recently-used eviction and TTL expiry.

    Example:
        cache = LRUCache(max_size=2, default_ttl=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")        # "a" is now most recent
        cache.set("c", 3)     # evicts "b"
    """

    def __init__(
        self,
        max_size: int = 10_000,
        default_ttl: float | None = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    # ------------------------------------------------------------------ #
    # Mapping operations
    # ------------------------------------------------------------------ #

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return default

        entry.last_access = now
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` for ``ttl`` seconds (the cache default when None)."""
        effective_ttl = self._default_ttl if ttl is None else ttl
        now = self._clock()

        if key in self._entries:
            self._entries[key] = CacheEntry(key, value, now, effective_ttl)
            self._entries.move_to_end(key)
            return

        if len(self._entries) >= self._max_size:
            self._make_room(now)

        self._entries[key] = CacheEntry(key, value, now, effective_ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def has(self, key: str) -> bool:
        """True when ``key`` is present and unexpired. Does not touch recency."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._expirations += 1
            return False
        return True

    def peek(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return len(expired)

    def _make_room(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)

        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
            self._evictions += 1

    @property
    def max_size(self) -> int:
        return self._max_size

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self._max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "evictions": self._evictions,
            "expirations": self._expirations,
        }
