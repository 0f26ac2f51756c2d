"""Structured logging configuration for production observability.

Configures structlog with JSON output in production and a console renderer
in development.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Trace ID and span ID from the active OpenTelemetry span
- Personal data and credentials masked before rendering
- Connection, principal and migration batch IDs bound via contextvars
- ISO8601 timestamps in UTC
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-10-16T10:30:45.123456Z",
        "level": "warning",
        "event": "ratelimit.rejected",
        "logger": "control_plane.ratelimit.limiter",
        "connection_id": "ws_3f2a...",
        "principal": "user-42",
        "scope": "event",
        "ms_before_next": 41250
    }
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor

REDACTED = "[redacted]"

# Keys whose values never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {
        "token",
        "access_token",
        "refresh_token",
        "authorization",
        "password",
        "email",
        "email_address",
        "contact_information",
        "wallet_address",
    }
)


def add_trace_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add OpenTelemetry trace and span IDs to log entries when a span is active."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            event_dict["trace_id"] = format(ctx.trace_id, "032x")
            event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials and direct identifiers, including one level of nested dicts."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if isinstance(k, str) and k.lower() in SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_trace_context,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_connection_context(connection_id: str, *, client_ip: str | None = None) -> None:
    """Bind the gateway connection ID (and peer IP) to the log context."""
    structlog.contextvars.bind_contextvars(connection_id=connection_id)
    if client_ip:
        structlog.contextvars.bind_contextvars(client_ip=client_ip)


def bind_principal_context(principal: str) -> None:
    """Bind the authenticated principal to the log context."""
    structlog.contextvars.bind_contextvars(principal=principal)


def bind_batch_context(batch_id: str, target_version: int | None) -> None:
    """Bind a migration batch to logs for the duration of its execution."""
    structlog.contextvars.bind_contextvars(
        batch_id=batch_id,
        target_version=target_version,
    )


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
