"""
Sliding-window rate-limit stores.

A store evaluates every bucket consulted by one admission attempt in a
single atomic step:

1. For each bucket in order, if its block key is live -> reject.
2. Trim entries older than the window (ZREMRANGEBYSCORE) and count (ZCARD).
   If the count has reached ``points`` -> set the block key (when the rule
   has a block duration) and reject.
3. Only when every bucket passed, record the hit in all of them (ZADD).

A rejection therefore never consumes points from any bucket. Setting the
block key is the only write on the rejection path, and a block key is
never extended by later attempts, so a blocked principal is released
exactly when the block duration elapses.

Two implementations:
- RedisRateLimitStore: Lua script over sorted sets (shared across instances)
- InMemoryRateLimitStore: per-key deques guarded by asyncio.Lock
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field

import redis.asyncio as aioredis
import structlog
from redis.exceptions import NoScriptError, RedisError

from control_plane.errors import StoreError
from control_plane.ratelimit.quotas import BucketSpec

log = structlog.get_logger(__name__)

# In-memory store: how often idle keys are swept.
SWEEP_INTERVAL_MS = 60_000


@dataclass(frozen=True)
class BucketState:
    """Post-decision state of one bucket."""

    key: str
    hits: int
    ms_before_next: int


@dataclass(frozen=True)
class StoreVerdict:
    """Outcome of an atomic multi-bucket consume.

    On rejection ``rejected_index`` is the position of the bucket that
    refused, ``total_hits`` counts the refused attempt, and ``blocked`` is
    True when the bucket was (or has just become) blocked.
    """

    allowed: bool
    rejected_index: int | None = None
    total_hits: int = 0
    ms_before_next: int = 0
    blocked: bool = False
    buckets: list[BucketState] = field(default_factory=list)


class RateLimitStore(ABC):
    """Storage interface for sliding-window buckets."""

    @abstractmethod
    async def consume(self, buckets: Sequence[BucketSpec], now_ms: int) -> StoreVerdict:
        """Atomically check every bucket and record the hit in all of them if admitted.

        Raises StoreError when the backing store is unreachable.
        """

    @abstractmethod
    async def hits(self, key: str, duration_ms: int, now_ms: int) -> int:
        """Hits recorded for ``key`` within the window ending at ``now_ms``."""

    @abstractmethod
    async def delete(self, keys: Sequence[str]) -> int:
        """Remove bucket and block keys. Returns the number removed."""

    async def close(self) -> None:
        """Release store resources."""


# ------------------------------------------------------------------ #
# Redis
# ------------------------------------------------------------------ #

# KEYS: bucket keys, in consult order
# ARGV: now_ms, member, then (points, duration_ms, block_ms) per key
# Returns {0, index, total_hits, ms_before_next, blocked} on rejection,
#         {1, 0, hits_1, ms_1, hits_2, ms_2, ...} on admission.
_LUA_CONSUME_SCRIPT = """
local now = tonumber(ARGV[1])
local member = ARGV[2]

for i = 1, #KEYS do
    local key = KEYS[i]
    local base = 2 + (i - 1) * 3
    local points = tonumber(ARGV[base + 1])
    local duration = tonumber(ARGV[base + 2])
    local block = tonumber(ARGV[base + 3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - duration)
    local current = redis.call('ZCARD', key)

    local block_ttl = redis.call('PTTL', key .. ':blocked')
    if block_ttl > 0 then
        return {0, i, current + 1, block_ttl, 1}
    end

    if current >= points then
        local wait = duration
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        if oldest[2] then
            wait = tonumber(oldest[2]) + duration - now
        end
        if block > 0 then
            redis.call('SET', key .. ':blocked', '1', 'PX', block)
            return {0, i, current + 1, block, 1}
        end
        return {0, i, current + 1, wait, 0}
    end
end

local result = {1, 0}
for i = 1, #KEYS do
    local key = KEYS[i]
    local duration = tonumber(ARGV[2 + (i - 1) * 3 + 2])
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, duration)
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    result[#result + 1] = redis.call('ZCARD', key)
    result[#result + 1] = tonumber(oldest[2]) + duration - now
end
return result
"""


class RedisRateLimitStore(RateLimitStore):
    """
    Redis-backed distributed buckets using sorted sets.

    Example:
        store = RedisRateLimitStore("redis://localhost:6379/0")
        await store.connect()
        verdict = await store.consume(buckets, now_ms)
    """

    def __init__(
        self,
        redis_url: str,
        *,
        client: aioredis.Redis | None = None,
        max_connections: int = 20,
    ) -> None:
        self._redis_url = redis_url
        self._redis = client
        self._max_connections = max_connections
        self._script_sha: str | None = None

    async def connect(self) -> None:
        """Establish the Redis connection and load the Lua script."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._max_connections,
            )
        try:
            self._script_sha = await self._redis.script_load(_LUA_CONSUME_SCRIPT)
            await self._redis.ping()
        except RedisError as exc:
            # Admission still works: every consume() retries the load and
            # the limiter applies the per-scope failure mode meanwhile.
            log.error("ratelimit.store.connect_failed", error=str(exc))
            return
        log.info("ratelimit.store.connected")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            log.info("ratelimit.store.closed")

    async def consume(self, buckets: Sequence[BucketSpec], now_ms: int) -> StoreVerdict:
        if not buckets:
            return StoreVerdict(allowed=True)
        client = self._redis
        if client is None:
            raise StoreError("Rate-limit store is not connected", transient=True)

        keys = [b.key for b in buckets]
        args: list[int | str] = [now_ms, f"{now_ms}-{uuid.uuid4().hex}"]
        for bucket in buckets:
            args.extend([bucket.points, bucket.duration_ms, bucket.block_ms])

        try:
            raw = await self._eval(client, keys, args)
        except RedisError as exc:
            raise StoreError(f"Rate-limit store unavailable: {exc}", transient=True) from exc

        result = [int(x) for x in raw]
        if result[0] == 0:
            return StoreVerdict(
                allowed=False,
                rejected_index=result[1] - 1,
                total_hits=result[2],
                ms_before_next=max(0, result[3]),
                blocked=bool(result[4]),
            )

        states = [
            BucketState(key=key, hits=result[2 + 2 * i], ms_before_next=max(0, result[3 + 2 * i]))
            for i, key in enumerate(keys)
        ]
        return StoreVerdict(allowed=True, buckets=states)

    async def _eval(self, client: aioredis.Redis, keys: list[str], args: list[int | str]) -> list[int]:
        if self._script_sha is None:
            self._script_sha = await client.script_load(_LUA_CONSUME_SCRIPT)
        try:
            return await client.evalsha(self._script_sha, len(keys), *keys, *args)
        except NoScriptError:
            # Script cache flushed (restart / SCRIPT FLUSH): reload once.
            self._script_sha = await client.script_load(_LUA_CONSUME_SCRIPT)
            return await client.evalsha(self._script_sha, len(keys), *keys, *args)

    async def hits(self, key: str, duration_ms: int, now_ms: int) -> int:
        if self._redis is None:
            raise StoreError("Rate-limit store is not connected", transient=True)
        try:
            return int(await self._redis.zcount(key, now_ms - duration_ms, "+inf"))
        except RedisError as exc:
            raise StoreError(f"Rate-limit store unavailable: {exc}", transient=True) from exc

    async def delete(self, keys: Sequence[str]) -> int:
        if self._redis is None or not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except RedisError as exc:
            raise StoreError(f"Rate-limit store unavailable: {exc}", transient=True) from exc


# ------------------------------------------------------------------ #
# In-memory
# ------------------------------------------------------------------ #


class InMemoryRateLimitStore(RateLimitStore):
    """Single-process buckets with the same semantics as the Redis script.

    Suitable for tests and single-instance deployments. Empty windows and
    lapsed blocks are dropped, the way Redis expires idle keys.
    """

    def __init__(self) -> None:
        self._windows: dict[str, deque[int]] = {}
        self._expires_at: dict[str, int] = {}
        self._blocked_until: dict[str, int] = {}
        self._next_sweep_ms = 0
        self._lock = asyncio.Lock()

    def _trim(self, key: str, duration_ms: int, now_ms: int) -> deque[int]:
        window = self._windows.get(key)
        if window is None:
            return deque()
        cutoff = now_ms - duration_ms
        while window and window[0] <= cutoff:
            window.popleft()
        if not window:
            del self._windows[key]
            self._expires_at.pop(key, None)
        return window

    def _sweep(self, now_ms: int) -> None:
        """Drop keys nobody has consulted since their window or block ran out."""
        if now_ms < self._next_sweep_ms:
            return
        self._next_sweep_ms = now_ms + SWEEP_INTERVAL_MS
        for key in [k for k, deadline in self._expires_at.items() if deadline <= now_ms]:
            del self._expires_at[key]
            self._windows.pop(key, None)
        for key in [k for k, until in self._blocked_until.items() if until <= now_ms]:
            del self._blocked_until[key]

    async def consume(self, buckets: Sequence[BucketSpec], now_ms: int) -> StoreVerdict:
        async with self._lock:
            self._sweep(now_ms)
            for index, bucket in enumerate(buckets):
                window = self._trim(bucket.key, bucket.duration_ms, now_ms)
                current = len(window)

                blocked_until = self._blocked_until.get(bucket.block_key, 0)
                if blocked_until > now_ms:
                    return StoreVerdict(
                        allowed=False,
                        rejected_index=index,
                        total_hits=current + 1,
                        ms_before_next=blocked_until - now_ms,
                        blocked=True,
                    )
                self._blocked_until.pop(bucket.block_key, None)

                if current >= bucket.points:
                    if bucket.block_ms > 0:
                        self._blocked_until[bucket.block_key] = now_ms + bucket.block_ms
                        return StoreVerdict(
                            allowed=False,
                            rejected_index=index,
                            total_hits=current + 1,
                            ms_before_next=bucket.block_ms,
                            blocked=True,
                        )
                    return StoreVerdict(
                        allowed=False,
                        rejected_index=index,
                        total_hits=current + 1,
                        ms_before_next=max(0, window[0] + bucket.duration_ms - now_ms),
                    )

            states: list[BucketState] = []
            for bucket in buckets:
                window = self._windows.setdefault(bucket.key, deque())
                window.append(now_ms)
                expires_at = now_ms + bucket.duration_ms
                self._expires_at[bucket.key] = max(self._expires_at.get(bucket.key, 0), expires_at)
                states.append(
                    BucketState(
                        key=bucket.key,
                        hits=len(window),
                        ms_before_next=max(0, window[0] + bucket.duration_ms - now_ms),
                    )
                )
            return StoreVerdict(allowed=True, buckets=states)

    async def hits(self, key: str, duration_ms: int, now_ms: int) -> int:
        async with self._lock:
            return len(self._trim(key, duration_ms, now_ms))

    async def delete(self, keys: Sequence[str]) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                self._expires_at.pop(key, None)
                if self._windows.pop(key, None) is not None:
                    removed += 1
                if self._blocked_until.pop(key, None) is not None:
                    removed += 1
            return removed

    def size(self) -> dict[str, int]:
        """Keys currently held, for diagnostics."""
        return {"windows": len(self._windows), "blocks": len(self._blocked_until)}
