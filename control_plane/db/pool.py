"""
Async SQLAlchemy engine factory for the query optimizer.

Pool parameters come from Settings:
  - pool_size           permanent connections per process (default 5)
  - pool_max_overflow   burst headroom; total max = size + overflow (default 15)
  - pool_timeout        seconds to wait for a connection before StoreError (default 10)
  - pool_recycle        recycle age in seconds (default 3600)
  - pool_pre_ping=True  detect dead connections before checkout

Statement cache:
  asyncpg keeps its own per-connection prepared-statement LRU
  (``statement_cache_size``). The optimizer's named handles sit on top of
  it. Set the size to 0 behind PgBouncer in transaction-pooling mode.

Pool events are logged through structlog so checkouts and overflows land
in the same structured stream as query accounting.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from control_plane.config import Settings

log = structlog.get_logger(__name__)


def _attach_pool_listeners(engine: AsyncEngine) -> None:
    """Register pool event listeners for structured logging."""

    # Pool events fire on the sync pool underneath the async engine.
    sync_pool = engine.pool

    @event.listens_for(sync_pool, "checkout")
    def on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        log.debug(
            "db.pool.checkout",
            pool_size=sync_pool.size(),
            checked_out=sync_pool.checkedout(),
        )

    @event.listens_for(sync_pool, "checkin")
    def on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
        log.debug("db.pool.checkin", checked_out=sync_pool.checkedout())

    @event.listens_for(sync_pool, "connect")
    def on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        log.info("db.pool.new_connection", pool_size=sync_pool.size())

    @event.listens_for(sync_pool, "invalidate")
    def on_invalidate(dbapi_connection: Any, connection_record: Any, exception: Any) -> None:
        log.warning("db.pool.invalidated", error=str(exception) if exception else None)


def create_engine_with_pool(settings: Settings, *, for_test: bool = False) -> AsyncEngine:
    """Create an AsyncEngine configured from settings.

    Args:
        settings: Application settings (database URL and pool parameters).
        for_test: Use NullPool so each test gets a clean connection.
    """
    if for_test:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.db_echo_sql,
            poolclass=NullPool,
        )
        log.info("db.engine.created", mode="test", poolclass="NullPool")
        return engine

    connect_args: dict[str, Any] = {
        "statement_cache_size": settings.statement_cache_size,
        "server_settings": {"application_name": settings.application_name},
    }

    engine = create_async_engine(
        settings.database_url,
        echo=settings.db_echo_sql,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=settings.pool_size,
        max_overflow=settings.pool_max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    _attach_pool_listeners(engine)

    log.info(
        "db.engine.created",
        mode="pooled",
        pool_size=settings.pool_size,
        max_overflow=settings.pool_max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
        statement_cache_size=settings.statement_cache_size,
    )
    return engine


def pool_snapshot(engine: AsyncEngine) -> dict[str, Any]:
    """Current pool counters. Empty for pools without sizing (NullPool)."""
    pool = engine.pool
    if not isinstance(pool, AsyncAdaptedQueuePool):
        return {"poolclass": type(pool).__name__}
    size = pool.size()
    checked_out = pool.checkedout()
    overflow = max(0, pool.overflow())
    capacity = size + pool._max_overflow  # noqa: SLF001 - no public accessor
    return {
        "poolclass": type(pool).__name__,
        "size": size,
        "checked_out": checked_out,
        "checked_in": pool.checkedin(),
        "overflow": overflow,
        "capacity": capacity,
        "utilization": round(checked_out / capacity, 3) if capacity else 0.0,
    }
