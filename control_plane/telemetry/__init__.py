"""Telemetry package for observability.

This package contains:
- Structured logging with trace correlation (logging.py)
- Prometheus metrics and middleware (metrics.py)
"""

from __future__ import annotations

from control_plane.telemetry.logging import (
    bind_batch_context,
    bind_connection_context,
    bind_principal_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_batch_context",
    "bind_connection_context",
    "bind_principal_context",
    "clear_context",
    "configure_logging",
]
