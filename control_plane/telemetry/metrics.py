"""Prometheus metrics endpoint and instrumentation.

Exports control plane metrics in Prometheus exposition format.

Metrics exported:
- http_requests_total / http_request_duration_seconds: HTTP surface
- gateway_connections: Gauge of open WebSocket gateway sessions
- rate_limit_decisions_total: Admission outcomes by scope and reason
- rate_limit_store_failures_total: Rate-limit store outages by scope
- query_duration_seconds / query_cache_total / slow_queries_total: QO
- memory_rss_bytes / memory_pressure_ratio: MM telemetry samples
- migration_items_total: ME item outcomes
- privacy_requests_total / breaches_detected_total: GDPR workflow

Design:
- A dedicated CollectorRegistry so tests and other exporters do not clash
- Record helpers keep label names in one place
"""

from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

REGISTRY = CollectorRegistry(auto_describe=True)


# ------------------------------------------------------------------ #
# HTTP / Gateway Metrics
# ------------------------------------------------------------------ #

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

gateway_connections = Gauge(
    "gateway_connections",
    "Number of open WebSocket gateway sessions",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Rate Limiter Metrics
# ------------------------------------------------------------------ #

rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Admission decisions by scope and outcome",
    ["scope", "outcome"],
    registry=REGISTRY,
)

rate_limit_store_failures_total = Counter(
    "rate_limit_store_failures_total",
    "Rate-limit store outages observed during admission",
    ["scope"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Query Optimizer Metrics
# ------------------------------------------------------------------ #

query_duration_seconds = Histogram(
    "query_duration_seconds",
    "SQL execution time in seconds",
    ["command"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0],
    registry=REGISTRY,
)

query_cache_total = Counter(
    "query_cache_total",
    "Query result cache lookups",
    ["result"],
    registry=REGISTRY,
)

slow_queries_total = Counter(
    "slow_queries_total",
    "Queries slower than the configured threshold",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Memory Manager Metrics
# ------------------------------------------------------------------ #

memory_rss_bytes = Gauge(
    "memory_rss_bytes",
    "Resident set size at the last memory sample",
    registry=REGISTRY,
)

memory_pressure_ratio = Gauge(
    "memory_pressure_ratio",
    "Heap used over heap budget at the last memory sample",
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Migration / Privacy Metrics
# ------------------------------------------------------------------ #

migration_items_total = Counter(
    "migration_items_total",
    "Migration items by final status",
    ["database", "status"],
    registry=REGISTRY,
)

privacy_requests_total = Counter(
    "privacy_requests_total",
    "Privacy requests by kind and terminal status",
    ["kind", "status"],
    registry=REGISTRY,
)

breaches_detected_total = Counter(
    "breaches_detected_total",
    "Breach records opened by detector",
    ["breach_type", "severity"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Instrumentation Functions
# ------------------------------------------------------------------ #


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status_code),
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
    ).observe(duration_seconds)


def record_rate_limit_decision(scope: str, outcome: str) -> None:
    """Record an admission outcome.

    Args:
        scope: Bucket scope that decided (global, user, event, blacklist...)
        outcome: admitted | rate_limited | forbidden | emergency | store_unavailable
    """
    rate_limit_decisions_total.labels(scope=scope, outcome=outcome).inc()


def record_rate_limit_store_failure(scope: str) -> None:
    rate_limit_store_failures_total.labels(scope=scope).inc()


def record_query(command: str, duration_seconds: float, *, cached: bool, slow: bool) -> None:
    """Record one QO execution (cache hits are counted but not timed)."""
    query_cache_total.labels(result="hit" if cached else "miss").inc()
    if cached:
        return
    query_duration_seconds.labels(command=command).observe(duration_seconds)
    if slow:
        slow_queries_total.inc()


def record_memory_sample(rss_bytes: int, pressure: float) -> None:
    memory_rss_bytes.set(rss_bytes)
    memory_pressure_ratio.set(pressure)


def record_migration_item(database: str, status: str) -> None:
    migration_items_total.labels(database=database, status=status).inc()


def record_privacy_request(kind: str, status: str) -> None:
    privacy_requests_total.labels(kind=kind, status=status).inc()


def record_breach(breach_type: str, severity: str) -> None:
    breaches_detected_total.labels(breach_type=breach_type, severity=severity).inc()


# ------------------------------------------------------------------ #
# Middleware
# ------------------------------------------------------------------ #


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=500,
                duration_seconds=time.time() - start_time,
            )
            raise

        record_http_request(
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response


# ------------------------------------------------------------------ #
# Metrics Endpoint
# ------------------------------------------------------------------ #


def get_metrics() -> Response:
    """Generate Prometheus metrics in exposition format."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
        status_code=200,
    )
