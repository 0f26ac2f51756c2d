"""Tests for the WebSocket gateway session protocol."""

from __future__ import annotations

from unittest.mock import AsyncMock

import jwt
import pytest

from control_plane.ratelimit import ConnectionRateLimiter, InMemoryRateLimitStore, QuotaRule, RateLimitConfig
from control_plane.realtime.transport import Frame
from control_plane.websocket import GatewaySession, verify_token

from tests.conftest import TEST_JWT_AUDIENCE, TEST_JWT_SECRET, make_token


class Outbox:
    def __init__(self) -> None:
        self.frames: list[Frame] = []

    async def __call__(self, frame: Frame) -> None:
        self.frames.append(frame)

    def events(self) -> list[str]:
        return [f.event for f in self.frames]

    def last(self) -> Frame:
        return self.frames[-1]


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def limiter(clock) -> ConnectionRateLimiter:
    config = RateLimitConfig(
        global_rule=QuotaRule(points=100, duration=60),
        user_rule=QuotaRule(points=100, duration=60),
        event_rules={"vote:cast": QuotaRule(points=1, duration=60, fail_open=False)},
        blacklist={"203.0.113.9"},
    )
    return ConnectionRateLimiter(InMemoryRateLimitStore(), config, clock=clock, sleep=AsyncMock())


def make_session(outbox, limiter, *, ip: str = "198.51.100.7", handlers=None) -> GatewaySession:
    return GatewaySession(
        outbox,
        limiter,
        jwt_secret=TEST_JWT_SECRET,
        jwt_audience=TEST_JWT_AUDIENCE,
        ip=ip,
        handlers=handlers,
        connection_id="ws_test",
    )


async def authenticate(session: GatewaySession, sub: str = "player-1", **claims) -> None:
    await session.handle(Frame("authenticate", {"token": make_token(sub, **claims)}))


class TestVerifyToken:
    def test_valid_token(self):
        claims = verify_token(make_token("player-1", ["premium"]), secret=TEST_JWT_SECRET, audience=TEST_JWT_AUDIENCE)
        assert claims["sub"] == "player-1"
        assert claims["roles"] == ["premium"]

    def test_wrong_audience(self):
        with pytest.raises(jwt.InvalidAudienceError):
            verify_token(make_token("player-1", audience="other"), secret=TEST_JWT_SECRET, audience=TEST_JWT_AUDIENCE)

    def test_expired(self):
        with pytest.raises(jwt.ExpiredSignatureError):
            verify_token(make_token("player-1", expires_in=-60), secret=TEST_JWT_SECRET, audience=TEST_JWT_AUDIENCE)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_open_announces_connection(self, outbox, limiter):
        await make_session(outbox, limiter).open()
        assert outbox.last() == Frame("system:connection", {"connectionId": "ws_test"})

    @pytest.mark.asyncio
    async def test_authenticate_success(self, outbox, limiter):
        session = make_session(outbox, limiter)

        await authenticate(session, roles=["vip"], reputation=250)

        frame = outbox.last()
        assert frame.event == "authenticated"
        assert frame.data["userId"] == "player-1"
        assert frame.data["roles"] == ["vip"]
        assert session.authenticated
        assert session.reputation == 250

    @pytest.mark.asyncio
    async def test_bad_signature(self, outbox, limiter):
        session = make_session(outbox, limiter)
        token = make_token("player-1", secret="not-the-gateway-secret-at-all-000000")

        await session.handle(Frame("authenticate", {"token": token}))

        assert outbox.last().event == "authentication_failed"
        assert not session.authenticated

    @pytest.mark.asyncio
    async def test_missing_token(self, outbox, limiter):
        await make_session(outbox, limiter).handle(Frame("authenticate", {}))
        assert outbox.last() == Frame("authentication_failed", {"error": "Missing token"})

    @pytest.mark.asyncio
    async def test_events_before_authentication_refused(self, outbox, limiter):
        session = make_session(outbox, limiter)

        await session.handle(Frame("clan:subscribe", {"clanId": "c1"}, id=4))

        assert outbox.last() == Frame("ack", {"success": False, "error": "not_authenticated"}, id=4)
        assert session.subscriptions == set()

    @pytest.mark.asyncio
    async def test_heartbeat_allowed_anonymously(self, outbox, limiter):
        await make_session(outbox, limiter).handle(Frame("heartbeat"))
        assert outbox.last().event == "heartbeat_ack"

    @pytest.mark.asyncio
    async def test_refresh_same_subject(self, outbox, limiter):
        session = make_session(outbox, limiter)
        await authenticate(session)

        await session.handle(Frame("refresh_token", {"token": make_token("player-1", ["admin"])}, id=9))

        assert outbox.last().data["success"] is True
        assert session.roles == ["admin"]

    @pytest.mark.asyncio
    async def test_refresh_subject_mismatch(self, outbox, limiter):
        session = make_session(outbox, limiter)
        await authenticate(session)

        await session.handle(Frame("refresh_token", {"token": make_token("player-2")}, id=9))

        assert outbox.last() == Frame("ack", {"success": False, "error": "Token subject mismatch"}, id=9)
        assert session.principal == "player-1"


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, outbox, limiter):
        session = make_session(outbox, limiter)
        await authenticate(session)

        await session.handle(Frame("clan:subscribe", {"clanId": "c1"}, id=1))
        await session.handle(Frame("join_room", {"roomId": "lobby"}, id=2))
        await session.handle(Frame("content:subscribe", {"contentIds": ["a", "b"]}, id=3))
        assert session.subscriptions == {"clan:c1", "room:lobby", "content:a,b"}

        await session.handle(Frame("clan:unsubscribe", {"clanId": "c1"}, id=4))
        await session.handle(Frame("leave_room", {"roomId": "lobby"}, id=5))

        assert session.subscriptions == {"content:a,b"}
        assert outbox.last() == Frame("ack", {"success": True}, id=5)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_event_quota_rejection(self, outbox, limiter):
        session = make_session(outbox, limiter)
        await authenticate(session)

        await session.handle(Frame("vote:cast", {"proposalId": "p9"}, id=1))
        await session.handle(Frame("vote:cast", {"proposalId": "p9"}, id=2))

        limited = outbox.frames[-2]
        assert limited.event == "rate_limited"
        assert limited.data["event"] == "vote:cast"
        assert limited.data["reason"] == "rate_limited"
        assert limited.data["scope"] == "event"
        assert limited.data["retryAfter"] >= 1
        assert outbox.last() == Frame("ack", {"success": False, "error": "rate_limited"}, id=2)

    @pytest.mark.asyncio
    async def test_blacklisted_ip(self, outbox, limiter):
        session = make_session(outbox, limiter, ip="203.0.113.9")
        await authenticate(session)

        await session.handle(Frame("chat:message", {"text": "hi"}))

        assert outbox.last().event == "rate_limited"
        assert outbox.last().data["reason"] == "forbidden"

    @pytest.mark.asyncio
    async def test_system_events_never_limited(self, outbox, limiter):
        session = make_session(outbox, limiter, ip="203.0.113.9")
        await session.handle(Frame("heartbeat"))
        assert outbox.events() == ["heartbeat_ack"]


class TestHandlers:
    @pytest.mark.asyncio
    async def test_handler_result_acknowledged(self, outbox, limiter):
        async def echo(session, data):
            return {"from": session.principal, "text": data["text"]}

        session = make_session(outbox, limiter, handlers={"chat:message": echo})
        await authenticate(session)

        await session.handle(Frame("chat:message", {"text": "gg"}, id=7))

        assert outbox.last() == Frame("ack", {"success": True, "data": {"from": "player-1", "text": "gg"}}, id=7)

    @pytest.mark.asyncio
    async def test_handler_failure_hidden(self, outbox, limiter):
        async def broken(session, data):
            raise RuntimeError("db down")

        session = make_session(outbox, limiter, handlers={"chat:message": broken})
        await authenticate(session)

        await session.handle(Frame("chat:message", {"text": "gg"}, id=7))

        assert outbox.last() == Frame("ack", {"success": False, "error": "Internal server error"}, id=7)

    @pytest.mark.asyncio
    async def test_unrouted_event_without_id_is_silent(self, outbox, limiter):
        session = make_session(outbox, limiter)
        await authenticate(session)
        sent = len(outbox.frames)

        await session.handle(Frame("presence:update", {"status": "afk"}))

        assert len(outbox.frames) == sent
