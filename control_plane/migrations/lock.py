"""
Distributed migration lock.

Only one batch per target version may run across every process sharing
the Redis instance. The lock is a single key set with NX + PX; the value is
a random token so a holder whose lease expired cannot delete a lock that
another process has since taken.

Usage:
    lock = RedisMigrationLock(redis_url)
    async with lock.acquire("migration:42") as info:
        ...
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from control_plane.errors import LockAcquisitionError, StoreError

log = structlog.get_logger(__name__)

_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class LockInfo:
    key: str
    token: str
    acquired_at: datetime
    holder_id: str | None = None


class MigrationLock(ABC):
    def __init__(self, *, holder_id: str | None = None) -> None:
        self._holder_id = holder_id

    @abstractmethod
    async def _try_acquire(self, key: str, token: str, ttl_ms: int) -> bool: ...

    @abstractmethod
    async def _release(self, key: str, token: str) -> bool: ...

    @abstractmethod
    async def is_locked(self, key: str) -> bool: ...

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def acquire(self, key: str, *, ttl_seconds: int = 3600) -> AsyncIterator[LockInfo]:
        """Hold ``key`` for the duration of the block.

        Raises:
            LockAcquisitionError: another holder has the key.
        """
        token = uuid.uuid4().hex
        if not await self._try_acquire(key, token, ttl_seconds * 1000):
            log.warning("me.lock.busy", key=key)
            raise LockAcquisitionError(key, f"Migration lock '{key}' is held by another batch")

        info = LockInfo(key=key, token=token, acquired_at=datetime.now(UTC), holder_id=self._holder_id)
        log.info("me.lock.acquired", key=key, holder_id=self._holder_id)
        try:
            yield info
        finally:
            released = await self._release(key, token)
            if released:
                log.info("me.lock.released", key=key)
            else:
                log.warning("me.lock.lease_lost", key=key)


class RedisMigrationLock(MigrationLock):
    def __init__(
        self,
        redis_url: str,
        *,
        client: aioredis.Redis | None = None,
        holder_id: str | None = None,
    ) -> None:
        super().__init__(holder_id=holder_id)
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self._release_sha: str | None = None

    async def _try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        try:
            return bool(await self._redis.set(key, token, nx=True, px=ttl_ms))
        except RedisError as exc:
            raise StoreError(f"Migration lock unavailable: {exc}", transient=True) from exc

    async def _release(self, key: str, token: str) -> bool:
        try:
            if self._release_sha is None:
                self._release_sha = await self._redis.script_load(_RELEASE_SCRIPT)
            return bool(await self._redis.evalsha(self._release_sha, 1, key, token))
        except RedisError as exc:
            # The lease still expires on its own.
            log.error("me.lock.release_failed", key=key, error=str(exc))
            return False

    async def is_locked(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except RedisError as exc:
            raise StoreError(f"Migration lock unavailable: {exc}", transient=True) from exc

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryMigrationLock(MigrationLock):
    """Process-local lock for tests and single-instance deployments."""

    def __init__(self, *, holder_id: str | None = None) -> None:
        super().__init__(holder_id=holder_id)
        self._held: dict[str, str] = {}
        self._guard = asyncio.Lock()

    async def _try_acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        async with self._guard:
            if key in self._held:
                return False
            self._held[key] = token
            return True

    async def _release(self, key: str, token: str) -> bool:
        async with self._guard:
            if self._held.get(key) != token:
                return False
            del self._held[key]
            return True

    async def is_locked(self, key: str) -> bool:
        return key in self._held
