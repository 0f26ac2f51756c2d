"""
Component health checks for Kubernetes liveness and readiness and operators.

Components:
- database:    SELECT 1 through the engine (critical)
- redis:       PING; rate limiting and the migration lock depend on it
- memory:      heap pressure from the MemoryManager's latest sample
- migrations:  degraded while a batch is running
- worker_pool: degraded when stopped or when notifications were dead-lettered

Every check runs under the same timeout and in parallel. A check that times
out or raises is reported as unhealthy for critical components and as
degraded for the others. A component that was not wired in is ``unknown``
and does not affect the overall status.

Overall status:
- unhealthy: a critical component is unhealthy (readiness answers 503)
- degraded:  any other component is degraded or unhealthy
- healthy:   otherwise
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from control_plane.infra.background_worker import BackgroundWorkerPool
from control_plane.performance.memory import MemoryManager

if TYPE_CHECKING:
    from control_plane.migrations.engine import MigrationEngine

log = structlog.get_logger(__name__)

CRITICAL_COMPONENTS = frozenset({"database"})


class ComponentStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    status: ComponentStatus
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class SystemHealth:
    status: ComponentStatus
    timestamp: str
    components: dict[str, ComponentHealth]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": {name: asdict(component) for name, component in self.components.items()},
        }


def not_configured() -> ComponentHealth:
    return ComponentHealth(status=ComponentStatus.UNKNOWN, details={"message": "not configured"})


class HealthCheck:
    """
    Runs the component checks and folds them into one status.

    Example:
        health = HealthCheck(engine, redis_client=client, memory=memory)
        result = await health.check_all()
        status_code = 503 if result.status == ComponentStatus.UNHEALTHY else 200
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        redis_client: aioredis.Redis | None = None,
        memory: MemoryManager | None = None,
        migrations: MigrationEngine | None = None,
        worker_pool: BackgroundWorkerPool | None = None,
        check_timeout: float = 5.0,
    ) -> None:
        self._engine = engine
        self._redis = redis_client
        self._memory = memory
        self._migrations = migrations
        self._worker_pool = worker_pool
        self._check_timeout = check_timeout

    def _checks(self) -> dict[str, Callable[[], Awaitable[ComponentHealth]]]:
        return {
            "database": self._check_database,
            "redis": self._check_redis,
            "memory": self._check_memory,
            "migrations": self._check_migrations,
            "worker_pool": self._check_worker_pool,
        }

    async def check_all(self) -> SystemHealth:
        start = time.perf_counter()
        checks = self._checks()
        results = await asyncio.gather(*(self._run(name, check) for name, check in checks.items()))
        components = dict(zip(checks, results, strict=True))
        overall = self._aggregate_status(components)

        log.info(
            "health_check.completed",
            status=overall,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            components={name: c.status for name, c in components.items()},
        )
        return SystemHealth(status=overall, timestamp=datetime.now(UTC).isoformat(), components=components)

    async def _run(self, name: str, check: Callable[[], Awaitable[ComponentHealth]]) -> ComponentHealth:
        failed = ComponentStatus.UNHEALTHY if name in CRITICAL_COMPONENTS else ComponentStatus.DEGRADED
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self._check_timeout):
                result = await check()
        except TimeoutError:
            log.warning("health_check.timeout", component=name, timeout_s=self._check_timeout)
            return ComponentHealth(status=failed, error=f"{name} check timed out")
        except (SQLAlchemyError, RedisError, OSError) as exc:
            log.warning("health_check.failed", component=name, error=str(exc))
            return ComponentHealth(status=failed, error=str(exc))
        except Exception as exc:
            log.error("health_check.crashed", component=name, error=str(exc), exc_info=True)
            return ComponentHealth(status=failed, error=str(exc))

        if result.latency_ms is None and result.status != ComponentStatus.UNKNOWN:
            result.latency_ms = round((time.perf_counter() - start) * 1000, 2)
        return result

    async def _check_database(self) -> ComponentHealth:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        pool = self._engine.pool
        details: dict[str, Any] = {"query": "SELECT 1"}
        if hasattr(pool, "checkedout"):
            details.update(checked_out=pool.checkedout(), pool_size=pool.size())
        return ComponentHealth(status=ComponentStatus.HEALTHY, details=details)

    async def _check_redis(self) -> ComponentHealth:
        if self._redis is None:
            return not_configured()
        await self._redis.ping()
        return ComponentHealth(status=ComponentStatus.HEALTHY)

    async def _check_memory(self) -> ComponentHealth:
        if self._memory is None:
            return not_configured()
        report = self._memory.memory_health()
        return ComponentHealth(
            status=ComponentStatus.HEALTHY if report["status"] == "healthy" else ComponentStatus.DEGRADED,
            details={"level": report["status"], "pressure": report["pressure"], "rss": report["rss"]},
        )

    async def _check_migrations(self) -> ComponentHealth:
        if self._migrations is None:
            return not_configured()
        batch = self._migrations.active_batch
        if batch is None:
            return ComponentHealth(status=ComponentStatus.HEALTHY, details={"active": False})
        return ComponentHealth(
            status=ComponentStatus.DEGRADED,
            details={
                "active": True,
                "batchId": batch.id,
                "batchStatus": batch.status,
                "targetVersion": batch.target_version,
                "progress": batch.progress,
            },
        )

    async def _check_worker_pool(self) -> ComponentHealth:
        if self._worker_pool is None:
            return not_configured()
        stats = self._worker_pool.stats()
        if not self._worker_pool.running:
            return ComponentHealth(status=ComponentStatus.DEGRADED, details=stats, error="worker pool not running")
        if stats["dead_letter"]:
            return ComponentHealth(
                status=ComponentStatus.DEGRADED,
                details=stats,
                error=f"{stats['dead_letter']} notification task(s) dead-lettered",
            )
        return ComponentHealth(status=ComponentStatus.HEALTHY, details=stats)

    def _aggregate_status(self, components: dict[str, ComponentHealth]) -> ComponentStatus:
        if any(components[name].status == ComponentStatus.UNHEALTHY for name in CRITICAL_COMPONENTS):
            return ComponentStatus.UNHEALTHY
        if any(c.status in (ComponentStatus.DEGRADED, ComponentStatus.UNHEALTHY) for c in components.values()):
            return ComponentStatus.DEGRADED
        return ComponentStatus.HEALTHY
