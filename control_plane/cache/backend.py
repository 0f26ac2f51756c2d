"""Query result cache backends.

The QueryOptimizer stores one entry per (normalized SQL, params) pair under
keys of the form ``qo:result:<md5>``. Invalidation happens either by key glob
(operator route, ``invalidate_by_pattern``) or by an explicit key list
(``invalidate_table``, from the optimizer's table index).

Backends:
- MemoryCacheBackend: process-local, over the MemoryManager's LRUCache.
  Every read returns a deep copy, so callers may mutate cached rows.
- RedisCacheBackend: shared across instances. Values are JSON; datetime,
  Decimal and UUID columns come back as strings.

get_cache_backend() picks one from ``settings.query_cache_backend``; the
memory backend is the default so a single instance needs no Redis.

A cache outage never fails a query: the Redis backend logs a warning and
behaves as a miss (reads) or a no-op (writes and deletes).
"""

from __future__ import annotations

import copy
import fnmatch
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from control_plane.performance.lru import LRUCache

log = structlog.get_logger(__name__)

UNLINK_BATCH = 500


class CacheBackend(ABC):
    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Cached value, or None on miss or expiry."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    @abstractmethod
    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete ``keys``; returns how many existed."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob; returns how many were removed."""

    @abstractmethod
    async def info(self) -> dict[str, Any]: ...

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def close(self) -> None:
        pass


class MemoryCacheBackend(CacheBackend):
    """Adapter over an LRUCache; reads hand out copies of the stored value."""

    def __init__(self, cache: LRUCache) -> None:
        self._cache = cache

    async def get(self, key: str) -> Any | None:
        value = self._cache.get(key)
        return None if value is None else copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._cache.set(key, value, ttl)

    async def delete_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self._cache.delete(key))

    async def delete_pattern(self, pattern: str) -> int:
        return await self.delete_many([k for k in self._cache.keys() if fnmatch.fnmatchcase(k, pattern)])

    async def info(self) -> dict[str, Any]:
        self._cache.sweep()
        return {"backend": "memory", "connected": True, **self._cache.stats()}


class RedisCacheBackend(CacheBackend):
    """Shared result cache in Redis. The client is created on first use."""

    def __init__(self, redis_url: str, *, client: aioredis.Redis | None = None) -> None:
        self._redis_url = redis_url
        self._client = client
        self._errors = 0

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _failed(self, operation: str, exc: Exception, **context: Any) -> None:
        self._errors += 1
        log.warning("cache.redis_unavailable", operation=operation, error=str(exc), **context)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(key)
        except RedisError as exc:
            self._failed("get", exc, key=key)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            log.warning("cache.redis_corrupt_entry", key=key)
            await self.delete_many([key])
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as exc:
            self._failed("set", exc, key=key)

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        removed = 0
        try:
            for start in range(0, len(keys), UNLINK_BATCH):
                removed += await self.client.unlink(*keys[start : start + UNLINK_BATCH])
        except RedisError as exc:
            self._failed("unlink", exc, keys=len(keys))
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern, count=UNLINK_BATCH)]
        except RedisError as exc:
            self._failed("scan", exc, pattern=pattern)
            return 0
        return await self.delete_many(keys)

    async def info(self) -> dict[str, Any]:
        try:
            stats = await self.client.info("stats")
            size = await self.client.dbsize()
        except RedisError as exc:
            return {"backend": "redis", "connected": False, "error": str(exc), "errors": self._errors}
        hits = stats.get("keyspace_hits", 0)
        misses = stats.get("keyspace_misses", 0)
        return {
            "backend": "redis",
            "connected": True,
            "size": size,
            "hit_rate": round(hits / (hits + misses), 4) if hits + misses else 0.0,
            "errors": self._errors,
        }

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def get_cache_backend(settings: Any, cache: LRUCache) -> CacheBackend:
    """Backend selected by ``settings.query_cache_backend``; ``cache`` backs the memory one."""
    backend: CacheBackend
    if settings.query_cache_backend == "redis":
        backend = RedisCacheBackend(settings.redis_url)
    else:
        backend = MemoryCacheBackend(cache)
    log.info("cache.backend_selected", backend=settings.query_cache_backend)
    return backend
