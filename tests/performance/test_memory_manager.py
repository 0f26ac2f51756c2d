"""Tests for the LRU cache, object pools and the memory manager."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from control_plane.cache import MemoryCacheBackend
from control_plane.performance import MemoryManager, MemoryManagerConfig
from control_plane.performance.lru import LRUCache
from control_plane.performance.memory import (
    LeakSeverity,
    MemoryEvent,
    MemorySample,
    format_bytes,
    leak_severity,
)
from control_plane.performance.pools import ObjectPool


def sample(heap_used: int, heap_total: int = 1000) -> MemorySample:
    return MemorySample(
        timestamp=datetime.now(UTC),
        rss=heap_used,
        heap_used=heap_used,
        heap_total=heap_total,
        system_used=heap_used,
        system_total=heap_total * 4,
    )


# ------------------------------------------------------------------ #
# LRU cache
# ------------------------------------------------------------------ #


class TestLRUCache:
    def test_evicts_least_recently_used(self, clock):
        cache = LRUCache(max_size=2, default_ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3
        assert cache.stats()["evictions"] == 1

    def test_never_exceeds_capacity(self, clock):
        cache = LRUCache(max_size=3, clock=clock)
        for i in range(10):
            cache.set(f"k{i}", i)
        assert len(cache) == 3
        assert list(cache.keys()) == ["k7", "k8", "k9"]

    def test_expired_entries_absent(self, clock):
        cache = LRUCache(max_size=10, default_ttl=5, clock=clock)
        cache.set("session", "abc")
        clock.advance(5)

        assert cache.get("session") is None
        assert "session" not in cache
        assert cache.stats()["expirations"] == 1

    def test_expired_entries_evicted_before_live_ones(self, clock):
        cache = LRUCache(max_size=2, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(2)
        cache.set("new", 3)

        assert cache.get("long") == 2
        assert cache.get("new") == 3
        assert cache.stats()["evictions"] == 0

    def test_overwrite_refreshes_value_and_recency(self, clock):
        cache = LRUCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_sweep_removes_expired(self, clock):
        cache = LRUCache(max_size=10, default_ttl=1, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3, ttl=100)
        clock.advance(2)

        assert cache.sweep() == 2
        assert len(cache) == 1

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)

    def test_hit_rate(self, clock):
        cache = LRUCache(clock=clock)
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        assert cache.stats()["hit_rate"] == 0.5


class TestMemoryCacheBackend:
    @pytest.mark.asyncio
    async def test_delete_pattern_uses_glob(self, clock):
        backend = MemoryCacheBackend(LRUCache(clock=clock))
        await backend.set("qo:result:1", {"rows": []}, 60)
        await backend.set("qo:result:2", {"rows": []}, 60)
        await backend.set("leaderboard:weekly", [], 60)

        assert await backend.delete_pattern("qo:result:*") == 2
        assert await backend.get("leaderboard:weekly") == []

        info = await backend.info()
        assert info["backend"] == "memory"
        assert info["size"] == 1


# ------------------------------------------------------------------ #
# Object pools
# ------------------------------------------------------------------ #


class TestObjectPool:
    def test_reset_runs_once_on_give(self):
        reset = MagicMock(side_effect=lambda buf: buf.clear())
        pool = ObjectPool("buffers", bytearray, reset)

        buf = pool.take()
        buf.extend(b"payload")

        assert pool.give(buf) is True
        assert pool.give(buf) is False
        reset.assert_called_once_with(buf)
        assert buf == bytearray()

    def test_foreign_object_refused(self):
        reset = MagicMock()
        pool = ObjectPool("buffers", bytearray, reset)
        assert pool.give(bytearray(b"stranger")) is False
        reset.assert_not_called()

    def test_reuse_counted(self):
        pool = ObjectPool("lists", list, lambda items: items.clear(), initial_size=1)
        first = pool.take()
        pool.give(first)
        again = pool.take()

        assert again is first
        stats = pool.stats()
        assert stats.created == 1
        assert stats.reused == 2
        assert stats.in_use == 1

    def test_failed_reset_discards_object(self):
        def explode(obj):
            raise RuntimeError("reset failed")

        pool = ObjectPool("dicts", dict, explode)
        obj = pool.take()

        assert pool.give(obj) is False
        assert pool.stats().available == 0

    def test_trim_halves_available(self):
        pool = ObjectPool("lists", list, initial_size=8)
        assert pool.trim() == 4
        assert pool.stats().available == 4


# ------------------------------------------------------------------ #
# Memory manager
# ------------------------------------------------------------------ #


@pytest.fixture
def manager(clock) -> MemoryManager:
    return MemoryManager(
        MemoryManagerConfig(max_cache_size=100, warning_threshold=0.8, critical_threshold=0.9),
        sampler=lambda: sample(100),
        object_counter=lambda: {},
        collect=lambda: 0,
        clock=clock,
    )


class TestMemoryManagerPools:
    def test_named_pool_round_trip(self, manager: MemoryManager):
        manager.create_pool("frames", dict, lambda frame: frame.clear())
        frame = manager.take("frames")
        frame["type"] = "chat"

        assert manager.give("frames", frame) is True
        assert frame == {}

    def test_create_pool_is_idempotent(self, manager: MemoryManager):
        first = manager.create_pool("frames", dict)
        assert manager.create_pool("frames", list) is first

    def test_unknown_pool(self, manager: MemoryManager):
        with pytest.raises(KeyError):
            manager.take("missing")
        assert manager.give("missing", {}) is False


class TestMemoryPressure:
    def test_healthy_sample(self, manager: MemoryManager):
        manager.check_memory()
        health = manager.memory_health()
        assert health["status"] == "healthy"
        assert health["recommendations"] == []

    def test_warning_emits_event(self, clock):
        seen = []
        manager = MemoryManager(sampler=lambda: sample(820), collect=lambda: 0, clock=clock)
        manager.events.on(MemoryEvent.WARNING, seen.append)

        manager.check_memory()

        assert len(seen) == 1
        assert seen[0].level == "warning"
        assert manager.memory_health()["status"] == "warning"

    def test_critical_clears_cache_and_collects(self, clock):
        collect = MagicMock(return_value=12)
        cleanups = []
        manager = MemoryManager(sampler=lambda: sample(950), collect=collect, clock=clock)
        manager.events.on(MemoryEvent.CLEANUP, cleanups.append)
        manager.set("a", 1)
        manager.set("b", 2)

        manager.check_memory()

        collect.assert_called_once()
        assert len(manager.cache) == 0
        assert cleanups[0].cache_cleared == 2
        health = manager.memory_health()
        assert health["status"] == "critical"
        assert health["recommendations"]

    def test_failed_sample_is_tolerated(self, clock):
        def broken():
            raise OSError("procfs unavailable")

        manager = MemoryManager(sampler=broken, clock=clock)
        assert manager.check_memory() is None
        assert manager.memory_health()["stats"]["telemetry_failures"] == 1


class TestLeakDetection:
    def test_first_call_records_baseline(self, clock):
        counts = iter([{"dict": 100}, {"dict": 5000}])
        manager = MemoryManager(object_counter=lambda: next(counts), clock=clock)

        assert manager.detect_leaks() == []
        clock.advance(60)
        reports = manager.detect_leaks()

        assert len(reports) == 1
        assert reports[0].type_name == "dict"
        assert reports[0].growth_per_minute == 4900.0
        assert manager.memory_health()["leaks"][0]["type"] == "dict"

    def test_growth_under_threshold_ignored(self, clock):
        counts = iter([{"dict": 100}, {"dict": 600}])
        manager = MemoryManager(object_counter=lambda: next(counts), clock=clock)
        manager.detect_leaks()
        clock.advance(60)
        assert manager.detect_leaks() == []


class TestHelpers:
    @pytest.mark.parametrize(
        "num_bytes,expected",
        [(0, LeakSeverity.LOW), (20 * 1024 * 1024, LeakSeverity.MEDIUM)],
    )
    def test_leak_severity(self, num_bytes: int, expected: LeakSeverity):
        assert leak_severity(num_bytes) == expected

    def test_format_bytes(self):
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(0) == "0 B"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager: MemoryManager):
        await manager.start()
        await manager.start()
        assert len(manager._tasks) == 3
        await manager.stop()
        assert manager._tasks == []
