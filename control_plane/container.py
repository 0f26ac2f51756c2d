"""
Assembly of the control plane components.

One ControlPlane instance lives on ``app.state.control_plane`` for the
lifetime of the process. Startup order:

1. Memory manager (owns the in-process LRU the query cache can use)
2. Database engine, session factory and query optimizer
3. Rate limiter store (Redis)
4. Migration engine sharing the optimizer
5. Compliance stores, GDPR service and breach monitor
6. Background worker pool for breach notifications

Shutdown runs in reverse.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from control_plane.cache import get_cache_backend
from control_plane.compliance import (
    AuditLog,
    BreachMonitor,
    BreachNotifier,
    ConsentLedger,
    GDPRService,
    LogBreachNotifier,
    SqlComplianceStore,
    SqlSubjectDataStore,
    WebhookBreachNotifier,
)
from control_plane.config import Settings
from control_plane.database import create_session_factory
from control_plane.db import QueryOptimizer, QueryOptimizerConfig, create_engine_with_pool
from control_plane.infra import BackgroundWorkerPool, HealthCheck
from control_plane.migrations import (
    MigrationEngine,
    MigrationEngineConfig,
    RedisMigrationLock,
    SqlVersionLedger,
    open_document_database,
)
from control_plane.performance import MemoryManager, MemoryManagerConfig
from control_plane.ratelimit import ConnectionRateLimiter, RateLimitConfig, RedisRateLimitStore
from control_plane.websocket.gateway import GatewaySession

log = structlog.get_logger(__name__)


class ControlPlane:
    """Owns every long-lived component and their startup/shutdown order."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

        self.memory = MemoryManager(MemoryManagerConfig.from_settings(settings))

        self.engine = create_engine_with_pool(settings)
        self.session_factory = create_session_factory(self.engine)
        self.qo = QueryOptimizer(
            self.engine,
            get_cache_backend(settings, self.memory.cache),
            QueryOptimizerConfig.from_settings(settings),
        )

        # Shared by the limiter store and the health checks; closed with the limiter.
        self.redis = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        self.limiter_store = RedisRateLimitStore(settings.redis_url, client=self.redis)
        self.limiter = ConnectionRateLimiter(
            self.limiter_store,
            RateLimitConfig.from_settings(settings),
        )

        doc_db = (
            open_document_database(settings.document_database_url, settings.document_database_name)
            if settings.document_database_url
            else None
        )
        self.migrations = MigrationEngine(
            self.qo,
            SqlVersionLedger(self.qo),
            RedisMigrationLock(settings.redis_url, holder_id=settings.application_name),
            doc_db=doc_db,
            config=MigrationEngineConfig.from_settings(settings),
        )

        self.compliance_store = SqlComplianceStore(self.session_factory)
        self.audit = AuditLog(self.compliance_store)
        self.consent = ConsentLedger(
            self.compliance_store,
            self.audit,
            refresh_days=settings.consent_refresh_days,
        )
        self.gdpr = GDPRService(
            self.compliance_store,
            SqlSubjectDataStore(self.qo),
            anonymization_salt=settings.anonymization_salt.get_secret_value(),
            audit=self.audit,
            consent=self.consent,
            export_ttl_days=settings.privacy_export_ttl_days,
        )

        self.worker_pool = BackgroundWorkerPool(max_workers=settings.background_worker_concurrency)
        self.notifier: BreachNotifier = (
            WebhookBreachNotifier(settings.breach_webhook_url)
            if settings.breach_webhook_url
            else LogBreachNotifier()
        )
        self.breaches = BreachMonitor(
            self.compliance_store,
            self.audit,
            notifier=self.notifier,
            worker=self.worker_pool,
        )

        self.health = HealthCheck(
            self.engine,
            redis_client=self.redis,
            memory=self.memory,
            migrations=self.migrations,
            worker_pool=self.worker_pool,
        )
        self.gateway_handlers: dict[str, Any] = {"privacy:consent": self._record_consent}

    async def start(self) -> None:
        await self.memory.start()
        await self.limiter_store.connect()
        await self.worker_pool.start()
        log.info(
            "control_plane.started",
            cache_backend=self.settings.query_cache_backend,
            document_database=self.settings.document_database_url is not None,
            breach_webhook=self.settings.breach_webhook_url is not None,
        )

    async def close(self) -> None:
        await self.worker_pool.shutdown(drain=True)
        if isinstance(self.notifier, WebhookBreachNotifier):
            await self.notifier.close()
        await self.migrations.close()
        await self.limiter.close()
        await self.qo.close()
        await self.memory.stop()
        log.info("control_plane.closed")

    async def _record_consent(self, session: GatewaySession, data: Any) -> dict[str, Any]:
        """Gateway handler for ``privacy:consent`` sent by an authenticated player."""
        payload = data if isinstance(data, dict) else {}
        record = await self.consent.record(
            session.principal,
            payload.get("purpose", ""),
            bool(payload.get("given", False)),
            {"channel": "websocket", "connectionId": session.connection_id},
            actor=session.principal,
        )
        return record.to_dict()
