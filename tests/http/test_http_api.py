"""Tests for the HTTP surface: auth, privacy routes, operator routes, health."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from starlette.testclient import TestClient
from tenacity import wait_none

from control_plane.compliance import AuditLog, BreachMonitor, ConsentLedger, GDPRService
from control_plane.config import get_settings
from control_plane.db.optimizer import SlowQuery
from control_plane.errors import StoreError
from control_plane.infra.health import ComponentHealth, ComponentStatus, SystemHealth
from control_plane.main import create_app
from control_plane.performance import MemoryManager
from control_plane.performance.memory import MemorySample
from control_plane.ratelimit import ConnectionRateLimiter, InMemoryRateLimitStore

from tests.conftest import make_token


def bearer(sub: str, roles: list[str] | None = None, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, roles, **kwargs)}"}


PLAYER = bearer("player-1")
OTHER_PLAYER = bearer("player-2")
ADMIN = bearer("admin-1", ["admin"])
OPERATOR = bearer("ops-1", ["operator"])


def system_health(status: ComponentStatus) -> SystemHealth:
    return SystemHealth(
        status=status,
        timestamp=datetime.now(UTC).isoformat(),
        components={"database": ComponentHealth(status=status)},
    )


@pytest.fixture
def components(fake_settings, compliance_store, subject_store, mock_qo, clock):
    audit = AuditLog(compliance_store)
    consent = ConsentLedger(compliance_store, audit)
    memory = MemoryManager(
        sampler=lambda: MemorySample(
            timestamp=datetime.now(UTC), rss=100, heap_used=100, heap_total=1000, system_used=100, system_total=4000
        ),
        object_counter=lambda: {},
        collect=lambda: 0,
    )
    memory.check_memory()

    mock_qo.performance_stats = MagicMock(return_value={"queries": {"total": 3}})
    mock_qo.slow_queries = MagicMock(
        return_value=[SlowQuery(sql="SELECT * FROM clans", duration_ms=1500.0, row_count=2, operation="select", recommendations=[])]
    )

    migrations = MagicMock()
    migrations.status = AsyncMock(return_value={"currentVersion": 3, "pending": []})
    migrations.history = AsyncMock(return_value=[])
    migrations.emergency_stop = MagicMock(return_value=False)
    migrations.active_batch = None

    health = MagicMock()
    health.check_all = AsyncMock(return_value=system_health(ComponentStatus.HEALTHY))

    return SimpleNamespace(
        settings=fake_settings,
        subjects=subject_store,
        consent=consent,
        gdpr=GDPRService(
            compliance_store,
            subject_store,
            anonymization_salt="test-salt",
            audit=audit,
            consent=consent,
            retry_wait=wait_none(),
        ),
        breaches=BreachMonitor(compliance_store, audit),
        memory=memory,
        qo=mock_qo,
        limiter=ConnectionRateLimiter(InMemoryRateLimitStore(), clock=clock, sleep=AsyncMock()),
        migrations=migrations,
        health=health,
        gateway_handlers={},
    )


@pytest.fixture
def app(fake_settings, components):
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: fake_settings
    app.state.control_plane = components
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


# ------------------------------------------------------------------ #
# Health
# ------------------------------------------------------------------ #


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_ready_when_healthy(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_not_ready_without_database(self, client, components):
        components.health.check_all.return_value = system_health(ComponentStatus.UNHEALTHY)
        response = await client.get("/health/ready")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_degraded_is_still_ready(self, client, components):
        components.health.check_all.return_value = system_health(ComponentStatus.DEGRADED)
        assert (await client.get("/health/ready")).status_code == 200


# ------------------------------------------------------------------ #
# Authentication
# ------------------------------------------------------------------ #


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/v1/privacy/consents/player-1")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        response = await client.get("/api/v1/privacy/consents/player-1", headers=bearer("player-1", expires_in=-10))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_other_subject_forbidden(self, client):
        response = await client.get("/api/v1/privacy/consents/player-1", headers=OTHER_PLAYER)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_may_act_for_subject(self, client):
        response = await client.get("/api/v1/privacy/consents/player-1", headers=ADMIN)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_operator_routes_need_role(self, client):
        response = await client.get("/api/v1/ops/memory", headers=PLAYER)
        assert response.status_code == 403


# ------------------------------------------------------------------ #
# Privacy
# ------------------------------------------------------------------ #


class TestConsentRoutes:
    @pytest.mark.asyncio
    async def test_record_and_check(self, client):
        created = await client.post(
            "/api/v1/privacy/consents",
            json={"subject_id": "player-1", "purpose": "marketing", "given": True},
            headers=PLAYER,
        )
        status = await client.get("/api/v1/privacy/consents/player-1/marketing", headers=PLAYER)

        assert created.status_code == 201
        assert created.json()["legalBasis"] == "consent"
        assert status.json()["hasValidConsent"] is True

    @pytest.mark.asyncio
    async def test_overview_lists_purposes(self, client):
        response = await client.get("/api/v1/privacy/consents/player-1", headers=PLAYER)
        assert "authentication" in response.json()["purposes"]

    @pytest.mark.asyncio
    async def test_unknown_purpose_is_422(self, client):
        response = await client.post(
            "/api/v1/privacy/consents",
            json={"subject_id": "player-1", "purpose": "telepathy", "given": True},
            headers=PLAYER,
        )
        assert response.status_code == 422


class TestSubjectRequestRoutes:
    @pytest.mark.asyncio
    async def test_access(self, client):
        response = await client.post("/api/v1/privacy/requests/access", json={"subject_id": "player-1"}, headers=PLAYER)

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "completed"
        assert body["result"]["metadata"]["totalRecords"] == 11

    @pytest.mark.asyncio
    async def test_request_lookup(self, client):
        created = await client.post("/api/v1/privacy/requests/access", json={"subject_id": "player-1"}, headers=PLAYER)
        request_id = created.json()["id"]

        own = await client.get(f"/api/v1/privacy/requests/{request_id}", headers=PLAYER)
        foreign = await client.get(f"/api/v1/privacy/requests/{request_id}", headers=OTHER_PLAYER)
        missing = await client.get("/api/v1/privacy/requests/nope", headers=PLAYER)

        assert own.json()["kind"] == "access"
        assert foreign.status_code == 403
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_immutable_rectification_is_422(self, client):
        response = await client.post(
            "/api/v1/privacy/requests/rectification",
            json={"subject_id": "player-1", "changes": {"voting_history": "no"}},
            headers=PLAYER,
        )
        assert response.status_code == 422
        assert "immutable" in response.json()["errors"][0]

    @pytest.mark.asyncio
    async def test_blocked_erasure_is_409(self, client, components):
        components.subjects.data["player-1"]["clan"][0]["clan_role"] = "leader"

        response = await client.post("/api/v1/privacy/requests/erasure", json={"subject_id": "player-1"}, headers=PLAYER)

        assert response.status_code == 409
        assert "Transfer clan leadership and governance responsibilities" in response.json()["alternatives"]

    @pytest.mark.asyncio
    async def test_erasure(self, client):
        response = await client.post("/api/v1/privacy/requests/erasure", json={"subject_id": "player-1"}, headers=PLAYER)
        assert response.status_code == 200
        assert response.json()["result"]["subjectId"] == "ERASED"

    @pytest.mark.asyncio
    async def test_portability(self, client):
        response = await client.post(
            "/api/v1/privacy/requests/portability",
            json={"subject_id": "player-1", "categories": ["identity", "gaming"]},
            headers=PLAYER,
        )
        assert response.json()["result"]["metadata"]["totalRecords"] == 4

    @pytest.mark.asyncio
    async def test_store_outage_is_503_with_failed_request(self, client, components):
        components.subjects.collect = AsyncMock(side_effect=StoreError("pool timeout", transient=True))

        response = await client.post("/api/v1/privacy/requests/access", json={"subject_id": "player-1"}, headers=PLAYER)

        assert response.status_code == 503
        assert response.json()["status"] == "failed"
        assert response.json()["reasonCode"] == "store_unavailable"


class TestOperatorPrivacyRoutes:
    @pytest.mark.asyncio
    async def test_security_event_opens_breach(self, client):
        response = await client.post(
            "/api/v1/privacy/security-events",
            json={"kind": "data_export", "actor": "svc-1", "data": {"records": 25_000}},
            headers=OPERATOR,
        )
        listed = await client.get("/api/v1/privacy/breaches", headers=OPERATOR)

        breach = response.json()["breach"]
        assert breach["severity"] == "critical"
        assert listed.json()["breaches"][0]["id"] == breach["id"]

    @pytest.mark.asyncio
    async def test_benign_event(self, client):
        response = await client.post(
            "/api/v1/privacy/security-events", json={"kind": "login_failed", "data": {"failures": 1}}, headers=OPERATOR
        )
        assert response.json() == {"breach": None}

    @pytest.mark.asyncio
    async def test_players_cannot_submit_events(self, client):
        response = await client.post("/api/v1/privacy/security-events", json={"kind": "data_export"}, headers=PLAYER)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_sweep(self, client):
        response = await client.post("/api/v1/privacy/sweep", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["overdueRequests"] == []


# ------------------------------------------------------------------ #
# Operations
# ------------------------------------------------------------------ #


class TestOpsRoutes:
    @pytest.mark.asyncio
    async def test_memory(self, client):
        response = await client.get("/api/v1/ops/memory", headers=OPERATOR)
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_query_stats_and_slow_queries(self, client):
        stats = await client.get("/api/v1/ops/queries/stats", headers=OPERATOR)
        slow = await client.get("/api/v1/ops/queries/slow", params={"limit": 5}, headers=OPERATOR)

        assert stats.json() == {"queries": {"total": 3}}
        assert slow.json()["slowQueries"][0]["duration_ms"] == 1500.0

    @pytest.mark.asyncio
    async def test_invalidate_by_table(self, client, components):
        components.qo.invalidate_table.return_value = 4
        response = await client.post("/api/v1/ops/queries/cache/invalidate", json={"table": "clans"}, headers=OPERATOR)

        assert response.json() == {"removed": 4}
        components.qo.invalidate_table.assert_awaited_once_with("clans")

    @pytest.mark.asyncio
    async def test_invalidate_needs_exactly_one_target(self, client):
        response = await client.post(
            "/api/v1/ops/queries/cache/invalidate", json={"table": "clans", "pattern": "*"}, headers=OPERATOR
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_rate_limit_stats(self, client):
        response = await client.get("/api/v1/ops/ratelimit", headers=OPERATOR)
        assert response.json()["emergency_active"] is False

    @pytest.mark.asyncio
    async def test_migration_status(self, client):
        response = await client.get("/api/v1/ops/migrations/status", headers=OPERATOR)
        assert response.json()["currentVersion"] == 3

    @pytest.mark.asyncio
    async def test_emergency_stop_without_batch(self, client):
        response = await client.post("/api/v1/ops/migrations/emergency-stop", headers=ADMIN)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_emergency_stop(self, client, components):
        components.migrations.active_batch = SimpleNamespace(id="batch-7")
        components.migrations.emergency_stop.return_value = True

        response = await client.post("/api/v1/ops/migrations/emergency-stop", headers=ADMIN)

        assert response.json() == {"stopped": True, "batchId": "batch-7"}


# ------------------------------------------------------------------ #
# WebSocket gateway
# ------------------------------------------------------------------ #


class TestWebSocketGateway:
    def test_handshake_and_authentication(self, app):
        client = TestClient(app)
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            ws.send_json({"event": "authenticate", "data": {"token": make_token("player-1")}})
            authenticated = ws.receive_json()
            ws.send_text("not json")
            error = ws.receive_json()

        assert hello["event"] == "system:connection"
        assert authenticated["event"] == "authenticated"
        assert authenticated["data"]["userId"] == "player-1"
        assert error["event"] == "error"
