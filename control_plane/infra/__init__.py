"""
Infrastructure components for background processing and health checks.

This package contains:
- Background task processing (async worker pool)
- Component health checks for Kubernetes liveness and readiness
"""

from __future__ import annotations

from control_plane.infra.background_worker import BackgroundWorkerPool, Task, TaskStatus, TaskType
from control_plane.infra.health import ComponentHealth, ComponentStatus, HealthCheck, SystemHealth

__all__ = [
    "BackgroundWorkerPool",
    "ComponentHealth",
    "ComponentStatus",
    "HealthCheck",
    "SystemHealth",
    "Task",
    "TaskStatus",
    "TaskType",
]
