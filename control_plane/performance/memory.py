"""
MemoryManager - process-local cache, memory telemetry and object pools.

Responsibilities:
- Own the LRU+TTL cache used by the query optimizer's memory backend
- Sample process memory on a timer and react to pressure
- Keep a registry of named object pools
- Watch per-type object counts for leak-like growth

Pressure reactions:
    ratio >= warning_threshold   -> emit memory:warning
    ratio >= force_gc_threshold  -> gc.collect()
    ratio >= critical_threshold  -> emit memory:critical, clear the cache,
                                    halve every pool's available list,
                                    gc.collect()

Samples come from psutil: ``heap_used`` is the process RSS and
``heap_total`` is the configured memory budget (total system memory when
unset). The last 20 samples are kept.

Failure semantics:
    Every public operation is infallible. Telemetry and leak checks run in
    background loops; any failure there is logged as a warning and the loop
    continues.
"""

from __future__ import annotations

import asyncio
import gc
import sys
import time
from collections import Counter, deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

import psutil
import structlog

from control_plane.events import EventBus
from control_plane.performance.lru import LRUCache
from control_plane.performance.pools import ObjectPool, PoolStats
from control_plane.telemetry.metrics import record_memory_sample

log = structlog.get_logger(__name__)

T = TypeVar("T")

_MB = 1024 * 1024


class MemoryEvent(StrEnum):
    WARNING = "memory:warning"
    CRITICAL = "memory:critical"
    LEAK = "memory:leak"
    CLEANUP = "memory:cleanup"


class LeakSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MemorySample:
    """One telemetry sample."""

    timestamp: datetime
    rss: int
    heap_used: int
    heap_total: int
    system_used: int
    system_total: int
    gc_counts: tuple[int, int, int] = (0, 0, 0)

    @property
    def pressure(self) -> float:
        return self.heap_used / self.heap_total if self.heap_total else 0.0


@dataclass(frozen=True)
class MemoryPressure:
    level: str
    threshold: float
    sample: MemorySample


@dataclass(frozen=True)
class LeakReport:
    type_name: str
    count: int
    growth_per_minute: float
    estimated_bytes: int
    severity: LeakSeverity
    detected_at: datetime


@dataclass(frozen=True)
class CleanupReport:
    reason: str
    expired_removed: int
    cache_cleared: int
    pool_objects_trimmed: int


@dataclass
class MemoryManagerConfig:
    max_cache_size: int = 10_000
    default_ttl: float = 300.0
    cleanup_interval: float = 60.0
    memory_check_interval: float = 30.0
    warning_threshold: float = 0.8
    critical_threshold: float = 0.9
    force_gc_threshold: float = 0.85
    memory_limit_bytes: int | None = None
    leak_check_interval: float = 300.0
    object_growth_threshold: int = 1000
    default_pool_size: int = 100
    history_size: int = 20
    leak_history_size: int = 10

    @classmethod
    def from_settings(cls, settings: Any) -> MemoryManagerConfig:
        return cls(
            max_cache_size=settings.memory_cache_max_size,
            default_ttl=settings.memory_cache_ttl,
            cleanup_interval=settings.memory_cleanup_interval,
            memory_check_interval=settings.memory_check_interval,
            warning_threshold=settings.memory_warning_threshold,
            critical_threshold=settings.memory_critical_threshold,
            memory_limit_bytes=settings.memory_limit_bytes,
            leak_check_interval=settings.memory_leak_check_interval,
            object_growth_threshold=settings.memory_object_growth_threshold,
        )


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def format_bytes(num_bytes: float) -> str:
    """Human-readable byte count (``1536`` -> ``"1.5 KB"``)."""
    if num_bytes == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(abs(num_bytes))
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    sign = "-" if num_bytes < 0 else ""
    return f"{sign}{value:.2f}".rstrip("0").rstrip(".") + f" {units[index]}"


def estimate_object_size(obj: Any, _seen: set[int] | None = None) -> int:
    """Rough recursive size estimate in bytes.

    Booleans count 4 bytes, numbers 8, strings two bytes per character;
    containers add up their members. Shared references are counted once.
    """
    seen = _seen if _seen is not None else set()
    if obj is None:
        return 0
    if isinstance(obj, bool):
        return 4
    if isinstance(obj, (int, float)):
        return 8
    if isinstance(obj, str):
        return len(obj) * 2
    if isinstance(obj, (bytes, bytearray)):
        return len(obj)

    marker = id(obj)
    if marker in seen:
        return 0
    seen.add(marker)

    if isinstance(obj, dict):
        return sum(
            estimate_object_size(k, seen) + estimate_object_size(v, seen)
            for k, v in obj.items()
        )
    if isinstance(obj, (list, tuple, set, frozenset, deque)):
        return sum(estimate_object_size(item, seen) for item in obj)
    if hasattr(obj, "__dict__"):
        return estimate_object_size(vars(obj), seen)
    return sys.getsizeof(obj)


def leak_severity(total_bytes: float) -> LeakSeverity:
    total_mb = total_bytes / _MB
    if total_mb > 100:
        return LeakSeverity.CRITICAL
    if total_mb > 50:
        return LeakSeverity.HIGH
    if total_mb > 10:
        return LeakSeverity.MEDIUM
    return LeakSeverity.LOW


def psutil_sampler(memory_limit_bytes: int | None = None) -> Callable[[], MemorySample]:
    """Build a sampler reading the current process through psutil."""
    process = psutil.Process()

    def _sample() -> MemorySample:
        rss = process.memory_info().rss
        vm = psutil.virtual_memory()
        counts = gc.get_count()
        return MemorySample(
            timestamp=datetime.now(UTC),
            rss=rss,
            heap_used=rss,
            heap_total=memory_limit_bytes or vm.total,
            system_used=vm.used,
            system_total=vm.total,
            gc_counts=(counts[0], counts[1], counts[2]),
        )

    return _sample


def count_objects_by_type() -> dict[str, int]:
    """Live object counts per type name, as tracked by the garbage collector."""
    return dict(Counter(type(obj).__name__ for obj in gc.get_objects()))


# ------------------------------------------------------------------ #
# MemoryManager
# ------------------------------------------------------------------ #


class MemoryManager:
    """
    Process-local cache, telemetry and pool registry.

    Example:
        manager = MemoryManager(MemoryManagerConfig.from_settings(settings))
        await manager.start()

        manager.set("leaderboard:weekly", rows, ttl=60)
        rows = manager.get("leaderboard:weekly")

        manager.create_pool("buffers", bytearray, reset=lambda b: b.clear())
        buf = manager.take("buffers")
        manager.give("buffers", buf)

        manager.events.on(MemoryEvent.CRITICAL, page_oncall)
        await manager.stop()
    """

    def __init__(
        self,
        config: MemoryManagerConfig | None = None,
        *,
        sampler: Callable[[], MemorySample] | None = None,
        object_counter: Callable[[], dict[str, int]] = count_objects_by_type,
        collect: Callable[[], int] = gc.collect,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or MemoryManagerConfig()
        self.events = EventBus("memory")
        self.cache = LRUCache(
            max_size=self.config.max_cache_size,
            default_ttl=self.config.default_ttl,
            clock=clock,
        )
        self._sampler = sampler or psutil_sampler(self.config.memory_limit_bytes)
        self._object_counter = object_counter
        self._collect = collect
        self._clock = clock

        self._pools: dict[str, ObjectPool[Any]] = {}
        self._history: deque[MemorySample] = deque(maxlen=self.config.history_size)
        self._leak_reports: deque[LeakReport] = deque(maxlen=self.config.leak_history_size)
        self._last_object_counts: dict[str, int] | None = None
        self._last_object_check: float | None = None
        self._profiles: dict[str, dict[str, Any]] = {}
        self._tasks: list[asyncio.Task[None]] = []

        self._stats: dict[str, int] = {
            "warnings": 0,
            "criticals": 0,
            "gc_requests": 0,
            "cleanups": 0,
            "telemetry_failures": 0,
        }

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the sweep, memory check and leak check loops."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop("sweep", self.config.cleanup_interval, self.cleanup)),
            asyncio.create_task(
                self._loop("memory_check", self.config.memory_check_interval, self.check_memory)
            ),
            asyncio.create_task(
                self._loop("leak_check", self.config.leak_check_interval, self.detect_leaks)
            ),
        ]
        log.info(
            "memory.manager_started",
            max_cache_size=self.config.max_cache_size,
            check_interval=self.config.memory_check_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("memory.manager_stopped")

    async def _loop(self, name: str, interval: float, action: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                action()
            except Exception as exc:
                self._stats["telemetry_failures"] += 1
                log.warning("memory.loop_failed", loop=name, error=str(exc))

    # ------------------------------------------------------------------ #
    # Cache contract
    # ------------------------------------------------------------------ #

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self.cache.set(key, value, ttl)

    def get(self, key: str, default: Any = None) -> Any:
        return self.cache.get(key, default)

    def delete(self, key: str) -> bool:
        return self.cache.delete(key)

    def cleanup(self, reason: str = "scheduled") -> CleanupReport:
        """Sweep expired cache entries."""
        removed = self.cache.sweep()
        report = CleanupReport(
            reason=reason,
            expired_removed=removed,
            cache_cleared=0,
            pool_objects_trimmed=0,
        )
        if removed:
            log.debug("memory.cache_swept", removed=removed)
        self._stats["cleanups"] += 1
        return report

    # ------------------------------------------------------------------ #
    # Pools
    # ------------------------------------------------------------------ #

    def create_pool(
        self,
        name: str,
        factory: Callable[[], T],
        reset: Callable[[T], None] | None = None,
        initial_size: int = 0,
        *,
        max_size: int | None = None,
    ) -> ObjectPool[T]:
        """Register a pool under ``name``. Re-creating a name returns the existing pool."""
        existing = self._pools.get(name)
        if existing is not None:
            return existing
        pool: ObjectPool[T] = ObjectPool(
            name,
            factory,
            reset,
            initial_size=initial_size,
            max_size=max_size or self.config.default_pool_size,
        )
        self._pools[name] = pool
        log.info("memory.pool_created", pool=name, initial_size=initial_size)
        return pool

    def take(self, name: str) -> Any:
        pool = self._pools.get(name)
        if pool is None:
            raise KeyError(f"Unknown object pool: {name!r}")
        return pool.take()

    def give(self, name: str, obj: Any) -> bool:
        """Return ``obj`` to pool ``name``. False for unknown pools or foreign objects."""
        pool = self._pools.get(name)
        if pool is None:
            return False
        return pool.give(obj)

    def trim_pools(self) -> int:
        return sum(pool.trim() for pool in self._pools.values())

    def pool_stats(self) -> list[PoolStats]:
        return [pool.stats() for pool in self._pools.values()]

    # ------------------------------------------------------------------ #
    # Telemetry
    # ------------------------------------------------------------------ #

    def check_memory(self) -> MemorySample | None:
        """Take a sample and react to pressure. Returns None if sampling failed."""
        try:
            sample = self._sampler()
        except Exception as exc:
            self._stats["telemetry_failures"] += 1
            log.warning("memory.sample_failed", error=str(exc))
            return None

        self._history.append(sample)
        ratio = sample.pressure
        record_memory_sample(sample.rss, ratio)

        if ratio >= self.config.critical_threshold:
            self._handle_critical(sample)
        elif ratio >= self.config.warning_threshold:
            self._handle_warning(sample)
        return sample

    def _handle_warning(self, sample: MemorySample) -> None:
        self._stats["warnings"] += 1
        log.warning(
            "memory.pressure_warning",
            pressure=round(sample.pressure, 4),
            heap_used=format_bytes(sample.heap_used),
            heap_total=format_bytes(sample.heap_total),
        )
        self.events.emit(
            MemoryEvent.WARNING,
            MemoryPressure(level="warning", threshold=self.config.warning_threshold, sample=sample),
        )
        if sample.pressure >= self.config.force_gc_threshold:
            self.request_collection()

    def _handle_critical(self, sample: MemorySample) -> None:
        self._stats["criticals"] += 1
        log.error(
            "memory.pressure_critical",
            pressure=round(sample.pressure, 4),
            heap_used=format_bytes(sample.heap_used),
        )
        self.events.emit(
            MemoryEvent.CRITICAL,
            MemoryPressure(level="critical", threshold=self.config.critical_threshold, sample=sample),
        )
        cleared = self.cache.clear()
        trimmed = self.trim_pools()
        self.request_collection()
        report = CleanupReport(
            reason="critical",
            expired_removed=0,
            cache_cleared=cleared,
            pool_objects_trimmed=trimmed,
        )
        self._stats["cleanups"] += 1
        self.events.emit(MemoryEvent.CLEANUP, report)

    def request_collection(self) -> int:
        self._stats["gc_requests"] += 1
        collected = self._collect()
        log.debug("memory.gc_collected", objects=collected)
        return collected

    @property
    def history(self) -> list[MemorySample]:
        return list(self._history)

    # ------------------------------------------------------------------ #
    # Leak heuristic
    # ------------------------------------------------------------------ #

    def detect_leaks(self) -> list[LeakReport]:
        """Compare per-type counts with the previous window.

        The first call only records a baseline.
        """
        now = self._clock()
        try:
            counts = self._object_counter()
        except Exception as exc:
            self._stats["telemetry_failures"] += 1
            log.warning("memory.leak_check_failed", error=str(exc))
            return []

        previous, previous_at = self._last_object_counts, self._last_object_check
        self._last_object_counts, self._last_object_check = counts, now
        if previous is None or previous_at is None:
            return []

        minutes = max((now - previous_at) / 60.0, 1 / 60.0)
        reports: list[LeakReport] = []
        for type_name, count in counts.items():
            growth = count - previous.get(type_name, 0)
            per_minute = growth / minutes
            if per_minute <= self.config.object_growth_threshold:
                continue
            estimated = self._estimate_type_bytes(type_name, count)
            report = LeakReport(
                type_name=type_name,
                count=count,
                growth_per_minute=round(per_minute, 2),
                estimated_bytes=estimated,
                severity=leak_severity(estimated),
                detected_at=datetime.now(UTC),
            )
            reports.append(report)
            self._leak_reports.append(report)
            log.warning(
                "memory.leak_suspected",
                type_name=type_name,
                count=count,
                growth_per_minute=report.growth_per_minute,
                severity=report.severity,
            )
            self.events.emit(MemoryEvent.LEAK, report)
        return reports

    @staticmethod
    def _estimate_type_bytes(type_name: str, count: int, sample_size: int = 50) -> int:
        sizes: list[int] = []
        for obj in gc.get_objects():
            if type(obj).__name__ == type_name:
                sizes.append(sys.getsizeof(obj))
                if len(sizes) >= sample_size:
                    break
        average = sum(sizes) / len(sizes) if sizes else 64
        return int(average * count)

    @property
    def leak_reports(self) -> list[LeakReport]:
        return list(self._leak_reports)

    # ------------------------------------------------------------------ #
    # Profiling
    # ------------------------------------------------------------------ #

    @contextmanager
    def profile(self, name: str) -> Iterator[dict[str, Any]]:
        """Measure wall time and RSS delta of the enclosed block.

        The yielded dict is filled in when the block exits.
        """
        result: dict[str, Any] = {"name": name}
        start = time.perf_counter()
        before = self._safe_rss()
        try:
            yield result
        finally:
            after = self._safe_rss()
            result["duration_ms"] = round((time.perf_counter() - start) * 1000, 3)
            result["rss_delta"] = after - before
            self._profiles[name] = result
            log.debug("memory.profile", **result)

    def _safe_rss(self) -> int:
        try:
            return self._sampler().rss
        except Exception as exc:
            log.warning("memory.sample_failed", error=str(exc))
            return 0

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    def memory_health(self) -> dict[str, Any]:
        latest = self._history[-1] if self._history else None
        pressure = latest.pressure if latest else 0.0
        if pressure >= self.config.critical_threshold:
            status = "critical"
        elif pressure >= self.config.warning_threshold:
            status = "warning"
        else:
            status = "healthy"

        cache_stats = self.cache.stats()
        pools = [p.to_dict() for p in self.pool_stats()]
        recommendations: list[str] = []
        if status != "healthy":
            recommendations.append("Memory pressure is high; reduce cache size or raise the budget")
        if cache_stats["hits"] + cache_stats["misses"] > 100 and cache_stats["hit_rate"] < 0.5:
            recommendations.append("Cache hit rate is below 50%; review TTLs and cached keys")
        for pool in pools:
            if pool["created"] + pool["reused"] > 100 and pool["reuse_rate"] < 0.5:
                recommendations.append(f"Pool '{pool['name']}' reuses under 50% of objects")
        if self._leak_reports:
            recommendations.append("Suspected leaks reported; inspect leak_reports")

        return {
            "status": status,
            "pressure": round(pressure, 4),
            "rss": format_bytes(latest.rss) if latest else None,
            "heap_total": format_bytes(latest.heap_total) if latest else None,
            "cache": cache_stats,
            "pools": pools,
            "leaks": [
                {"type": r.type_name, "count": r.count, "severity": r.severity}
                for r in self._leak_reports
            ],
            "stats": dict(self._stats),
            "recommendations": recommendations,
        }
