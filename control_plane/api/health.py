"""Health check endpoints.

/health        - Liveness: is the process up?
/health/ready  - Readiness: database, Redis and memory pressure

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from control_plane import __version__
from control_plane.api.deps import get_control_plane
from control_plane.container import ControlPlane
from control_plane.infra.health import ComponentStatus

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def liveness() -> dict[str, Any]:
    """Liveness check - always returns 200 if the process is running."""
    return {"status": "ok", "version": __version__, "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(control_plane: ControlPlane = Depends(get_control_plane)) -> JSONResponse:
    """Readiness check - 503 when the database is unreachable."""
    result = await control_plane.health.check_all()
    status_code = 503 if result.status == ComponentStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())
