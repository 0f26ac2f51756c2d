"""Tests for the Redis query result cache backend."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from control_plane.cache import MemoryCacheBackend, RedisCacheBackend, get_cache_backend
from control_plane.performance.lru import LRUCache


async def scan(*keys):
    for key in keys:
        yield key


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def backend(client) -> RedisCacheBackend:
    return RedisCacheBackend("redis://localhost:6379/0", client=client)


class TestMemoryCacheBackend:
    @pytest.mark.asyncio
    async def test_reads_do_not_share_cached_rows(self):
        backend = MemoryCacheBackend(LRUCache(max_size=10))
        await backend.set("qo:result:a", {"rows": [{"id": 1, "tags": ["eu"]}], "row_count": 1}, 60)

        first = await backend.get("qo:result:a")
        first["rows"][0]["tags"].append("na")
        first["rows"].append({"id": 2})

        assert await backend.get("qo:result:a") == {"rows": [{"id": 1, "tags": ["eu"]}], "row_count": 1}

    @pytest.mark.asyncio
    async def test_miss_is_none(self):
        backend = MemoryCacheBackend(LRUCache(max_size=10))
        assert await backend.get("qo:result:missing") is None


class TestRedisCacheBackend:
    @pytest.mark.asyncio
    async def test_round_trips_json(self, backend, client):
        await backend.set("qo:result:abc", {"rows": [{"id": 1}]}, 300)
        client.set.assert_awaited_once_with("qo:result:abc", '{"rows": [{"id": 1}]}', ex=300)

        client.get.return_value = '{"rows": [{"id": 1}]}'
        assert await backend.get("qo:result:abc") == {"rows": [{"id": 1}]}

    @pytest.mark.asyncio
    async def test_outage_is_a_miss(self, backend, client):
        client.get.side_effect = RedisConnectionError("connection reset")
        client.set.side_effect = RedisConnectionError("connection reset")

        assert await backend.get("qo:result:abc") is None
        await backend.set("qo:result:abc", [], 60)

        client.info.side_effect = RedisConnectionError("connection reset")
        info = await backend.info()
        assert info["connected"] is False
        assert info["errors"] == 2

    @pytest.mark.asyncio
    async def test_corrupt_entry_dropped(self, backend, client):
        client.get.return_value = "{not json"
        client.unlink.return_value = 1

        assert await backend.get("qo:result:abc") is None
        client.unlink.assert_awaited_once_with("qo:result:abc")

    @pytest.mark.asyncio
    async def test_delete_pattern_unlinks_matches(self, backend, client):
        client.scan_iter = MagicMock(return_value=scan("qo:result:1", "qo:result:2"))
        client.unlink.return_value = 2

        assert await backend.delete_pattern("qo:result:*") == 2
        client.unlink.assert_awaited_once_with("qo:result:1", "qo:result:2")

    @pytest.mark.asyncio
    async def test_delete_many_batches(self, backend, client):
        client.unlink.side_effect = [500, 500, 200]
        keys = [f"qo:result:{i}" for i in range(1200)]

        assert await backend.delete_many(keys) == 1200
        assert client.unlink.await_count == 3

    @pytest.mark.asyncio
    async def test_info_hit_rate(self, backend, client):
        client.info.return_value = {"keyspace_hits": 30, "keyspace_misses": 10}
        client.dbsize.return_value = 12

        info = await backend.info()

        assert info == {"backend": "redis", "connected": True, "size": 12, "hit_rate": 0.75, "errors": 0}


class TestBackendSelection:
    def test_memory_is_default(self):
        backend = get_cache_backend(SimpleNamespace(query_cache_backend="memory"), LRUCache())
        assert isinstance(backend, MemoryCacheBackend)

    def test_redis_selected(self):
        settings = SimpleNamespace(query_cache_backend="redis", redis_url="redis://cache:6379/2")
        assert isinstance(get_cache_backend(settings, LRUCache()), RedisCacheBackend)
