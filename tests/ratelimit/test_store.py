"""Tests for the sliding-window rate-limit stores."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import NoScriptError

from control_plane.errors import StoreError
from control_plane.ratelimit import InMemoryRateLimitStore, QuotaRule, Scope
from control_plane.ratelimit.quotas import BucketSpec
from control_plane.ratelimit.store import SWEEP_INTERVAL_MS, RedisRateLimitStore


def bucket(key: str, *, points: int = 2, duration_ms: int = 1_000, block_ms: int = 0) -> BucketSpec:
    rule = QuotaRule(points=points, duration=duration_ms / 1000, block_duration=block_ms / 1000)
    return BucketSpec(
        scope=Scope.USER,
        key=key,
        points=points,
        duration_ms=duration_ms,
        block_ms=block_ms,
        rule=rule,
    )


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_window_dropped_once_it_empties(self):
        store = InMemoryRateLimitStore()
        await store.consume([bucket("ws_user_rl:p1")], now_ms=0)
        assert store.size() == {"windows": 1, "blocks": 0}

        assert await store.hits("ws_user_rl:p1", 1_000, now_ms=5_000) == 0
        assert store.size() == {"windows": 0, "blocks": 0}

    @pytest.mark.asyncio
    async def test_idle_keys_swept_on_later_consume(self):
        store = InMemoryRateLimitStore()
        for index in range(5):
            await store.consume([bucket(f"ws_user_rl:p{index}")], now_ms=0)
        assert store.size()["windows"] == 5

        await store.consume([bucket("ws_user_rl:other")], now_ms=SWEEP_INTERVAL_MS)

        assert store.size() == {"windows": 1, "blocks": 0}

    @pytest.mark.asyncio
    async def test_lapsed_block_dropped(self):
        store = InMemoryRateLimitStore()
        spec = bucket("ws_user_rl:p1", points=1, block_ms=2_000)
        await store.consume([spec], now_ms=0)
        rejected = await store.consume([spec], now_ms=10)
        assert rejected.blocked is True
        assert store.size()["blocks"] == 1

        admitted = await store.consume([spec], now_ms=3_000)

        assert admitted.allowed is True
        assert store.size() == {"windows": 1, "blocks": 0}

    @pytest.mark.asyncio
    async def test_live_block_survives_sweep(self):
        store = InMemoryRateLimitStore()
        spec = bucket("ws_user_rl:p1", points=1, block_ms=SWEEP_INTERVAL_MS * 2)
        await store.consume([spec], now_ms=0)
        await store.consume([spec], now_ms=10)

        verdict = await store.consume([bucket("ws_user_rl:p2")], now_ms=SWEEP_INTERVAL_MS)

        assert verdict.allowed is True
        assert store.size()["blocks"] == 1
        again = await store.consume([spec], now_ms=SWEEP_INTERVAL_MS + 1)
        assert again.allowed is False
        assert again.blocked is True


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_consume_before_connect_is_transient_error(self):
        store = RedisRateLimitStore("redis://localhost:6379/0")

        with pytest.raises(StoreError) as exc_info:
            await store.consume([bucket("ws_user_rl:p1")], now_ms=0)

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_flushed_script_is_reloaded(self):
        client = MagicMock()
        client.script_load = AsyncMock(side_effect=["sha-1", "sha-2"])
        client.evalsha = AsyncMock(side_effect=[NoScriptError("NOSCRIPT"), [1, 0, 1, 1000]])
        store = RedisRateLimitStore("redis://localhost:6379/0", client=client)

        verdict = await store.consume([bucket("ws_user_rl:p1")], now_ms=0)

        assert verdict.allowed is True
        assert verdict.buckets[0].hits == 1
        assert client.script_load.await_count == 2
        assert client.evalsha.await_args.args[0] == "sha-2"
