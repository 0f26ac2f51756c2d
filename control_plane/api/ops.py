"""Operator endpoints for the runtime components.

GET  /api/v1/ops/memory                    - Memory health report
GET  /api/v1/ops/queries/stats             - Query optimizer statistics and pool health
GET  /api/v1/ops/queries/slow              - Recent slow queries
POST /api/v1/ops/queries/cache/invalidate  - Drop cached results by table or key pattern
GET  /api/v1/ops/ratelimit                 - Admission counters and emergency state
GET  /api/v1/ops/migrations/status         - Versions, pending migrations, active batch
GET  /api/v1/ops/migrations/history        - Applied migrations, newest first
POST /api/v1/ops/migrations/emergency-stop - Halt the running batch

All routes require the admin or operator role.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from control_plane.api.deps import Principal, get_control_plane, require_operator
from control_plane.container import ControlPlane

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/ops", tags=["operations"])


class CacheInvalidation(BaseModel):
    """Exactly one of ``table`` or ``pattern``."""

    table: str | None = Field(default=None, max_length=128)
    pattern: str | None = Field(default=None, max_length=256, description="Glob over cache keys; '*' clears all")

    @model_validator(mode="after")
    def _one_target(self) -> CacheInvalidation:
        if (self.table is None) == (self.pattern is None):
            raise ValueError("Provide exactly one of 'table' or 'pattern'")
        return self


@router.get("/memory")
async def memory_health(
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return control_plane.memory.memory_health()


@router.get("/queries/stats")
async def query_stats(
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return control_plane.qo.performance_stats()


@router.get("/queries/slow")
async def slow_queries(
    limit: int = Query(default=20, ge=1, le=100),
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"slowQueries": [asdict(s) for s in control_plane.qo.slow_queries(limit)]}


@router.post("/queries/cache/invalidate")
async def invalidate_cache(
    body: CacheInvalidation,
    principal: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    if body.table is not None:
        removed = await control_plane.qo.invalidate_table(body.table)
    else:
        removed = await control_plane.qo.invalidate_by_pattern(body.pattern or "*")
    log.info("ops.cache_invalidated", by=principal.subject, table=body.table, pattern=body.pattern, removed=removed)
    return {"removed": removed}


@router.get("/ratelimit")
async def rate_limit_stats(
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return control_plane.limiter.stats()


@router.get("/migrations/status")
async def migration_status(
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return await control_plane.migrations.status()


@router.get("/migrations/history")
async def migration_history(
    limit: int = Query(default=50, ge=1, le=500),
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"history": await control_plane.migrations.history(limit)}


@router.post("/migrations/emergency-stop")
async def emergency_stop(
    principal: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    batch = control_plane.migrations.active_batch
    if not control_plane.migrations.emergency_stop():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No migration batch is running")
    log.critical("ops.migration_emergency_stop", by=principal.subject, batch_id=batch.id if batch else None)
    return {"stopped": True, "batchId": batch.id if batch else None}
