"""WebSocket gateway - ws /ws

Server side of the real-time wire format used by control_plane.realtime:
one JSON object per text frame, ``{"event": ..., "data": ..., "id": n}``,
acknowledged with ``{"event": "ack", "id": n, "data": {...}}``.

Connection lifecycle:
1. Client connects; the gateway sends ``system:connection`` with its id
2. Client sends ``authenticate`` with an HS256 JWT
3. Gateway replies ``authenticated`` (userId, roles, expiresAt) or
   ``authentication_failed``
4. Every inbound event passes rate-limit admission before it is handled;
   rejections are answered with ``rate_limited`` carrying retry metadata
5. On disconnect the session's subscriptions are dropped

Reserved inbound events handled here:
    authenticate, refresh_token, heartbeat, <kind>:subscribe /
    <kind>:unsubscribe, join_room / leave_room
Anything else is a domain event routed to a registered handler.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import jwt
import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from control_plane.errors import TransportError
from control_plane.ratelimit.limiter import ConnectionRateLimiter
from control_plane.realtime.transport import ACK_EVENT, Frame
from control_plane.telemetry.logging import bind_connection_context, bind_principal_context, clear_context
from control_plane.telemetry.metrics import gateway_connections

log = structlog.get_logger(__name__)

ws_router = APIRouter(tags=["websocket"])

SendFrame = Callable[[Frame], Awaitable[None]]
EventHandler = Callable[["GatewaySession", Any], Awaitable[Any]]

SUBSCRIBE_EVENTS = {
    "user:subscribe_updates": "user:unsubscribe_updates",
    "clan:subscribe": "clan:unsubscribe",
    "content:subscribe": "content:unsubscribe",
    "voting:subscribe": "voting:unsubscribe",
    "join_room": "leave_room",
}
UNSUBSCRIBE_EVENTS = {v: k for k, v in SUBSCRIBE_EVENTS.items()}

# Events a session may send before authenticating.
ANONYMOUS_EVENTS = frozenset({"authenticate", "heartbeat"})


def verify_token(token: str, *, secret: str, audience: str) -> dict[str, Any]:
    """Decode an HS256 gateway token. Raises jwt.InvalidTokenError."""
    claims = jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience,
        options={"require": ["sub", "exp"]},
    )
    return claims


def _subscription_key(event: str, data: Any) -> str:
    kind = event.split(":", 1)[0] if ":" in event else "room"
    if not isinstance(data, dict):
        return kind
    ident = data.get("clanId") or data.get("roomId") or data.get("contentIds") or ""
    if isinstance(ident, list):
        ident = ",".join(str(i) for i in ident)
    return f"{kind}:{ident}" if ident else kind


class GatewaySession:
    """Protocol state of one WebSocket connection.

    Transport-agnostic: frames go out through ``send`` so the session can
    be exercised without a socket.
    """

    def __init__(
        self,
        send: SendFrame,
        limiter: ConnectionRateLimiter,
        *,
        jwt_secret: str,
        jwt_audience: str,
        ip: str,
        handlers: dict[str, EventHandler] | None = None,
        connection_id: str | None = None,
    ) -> None:
        self._send = send
        self._limiter = limiter
        self._secret = jwt_secret
        self._audience = jwt_audience
        self.ip = ip
        self._handlers = handlers or {}
        self.connection_id = connection_id or f"ws_{uuid.uuid4().hex[:12]}"
        self.principal: str | None = None
        self.roles: list[str] = []
        self.reputation = 0
        self.subscriptions: set[str] = set()

    @property
    def authenticated(self) -> bool:
        return self.principal is not None

    async def send(self, event: str, data: Any = None, frame_id: int | None = None) -> None:
        await self._send(Frame(event=event, data=data, id=frame_id))

    async def ack(self, frame: Frame, data: dict[str, Any]) -> None:
        if frame.id is not None:
            await self.send(ACK_EVENT, data, frame.id)

    async def open(self) -> None:
        await self.send("system:connection", {"connectionId": self.connection_id})

    async def handle(self, frame: Frame) -> None:
        """Admit and dispatch one inbound frame."""
        admission = await self._limiter.admit(
            frame.event,
            ip=self.ip,
            principal=self.principal,
            roles=self.roles,
            reputation=self.reputation,
        )
        if not admission.allowed:
            await self.send("rate_limited", {"event": frame.event, **admission.to_dict()})
            await self.ack(frame, {"success": False, "error": "rate_limited"})
            return

        match frame.event:
            case "authenticate":
                await self._authenticate(frame)
            case "refresh_token":
                await self._refresh(frame)
            case "heartbeat":
                await self.send("heartbeat_ack", {"connectionId": self.connection_id})
            case event if not self.authenticated:
                log.info("gateway.unauthenticated_event", event_name=event)
                await self.ack(frame, {"success": False, "error": "not_authenticated"})
            case event if event in SUBSCRIBE_EVENTS:
                self.subscriptions.add(_subscription_key(event, frame.data))
                await self.ack(frame, {"success": True})
            case event if event in UNSUBSCRIBE_EVENTS:
                self.subscriptions.discard(_subscription_key(UNSUBSCRIBE_EVENTS[event], frame.data))
                await self.ack(frame, {"success": True})
            case event:
                await self._dispatch(event, frame)

    async def _authenticate(self, frame: Frame) -> None:
        token = frame.data.get("token") if isinstance(frame.data, dict) else None
        if not token:
            await self.send("authentication_failed", {"error": "Missing token"})
            return
        try:
            claims = verify_token(token, secret=self._secret, audience=self._audience)
        except jwt.InvalidTokenError as exc:
            log.warning("gateway.authentication_failed", connection_id=self.connection_id, error=str(exc))
            await self.send("authentication_failed", {"error": str(exc)})
            return

        self.principal = str(claims["sub"])
        self.roles = list(claims.get("roles", []))
        self.reputation = int(claims.get("reputation", 0))
        bind_principal_context(self.principal)
        log.info("gateway.authenticated", connection_id=self.connection_id, roles=self.roles)
        await self.send(
            "authenticated",
            {"userId": self.principal, "roles": self.roles, "expiresAt": claims["exp"]},
        )

    async def _refresh(self, frame: Frame) -> None:
        token = frame.data.get("token") if isinstance(frame.data, dict) else None
        try:
            claims = verify_token(token or "", secret=self._secret, audience=self._audience)
        except jwt.InvalidTokenError as exc:
            await self.ack(frame, {"success": False, "error": str(exc)})
            return
        if self.principal is not None and str(claims["sub"]) != self.principal:
            await self.ack(frame, {"success": False, "error": "Token subject mismatch"})
            return
        self.principal = str(claims["sub"])
        self.roles = list(claims.get("roles", []))
        await self.ack(frame, {"success": True, "expiresAt": claims["exp"]})

    async def _dispatch(self, event: str, frame: Frame) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await self.ack(frame, {"success": True})
            return
        try:
            result = await handler(self, frame.data)
        except Exception as exc:
            log.error("gateway.handler_failed", event_name=event, error=str(exc), exc_info=True)
            await self.ack(frame, {"success": False, "error": "Internal server error"})
            return
        await self.ack(frame, {"success": True, "data": result})


@ws_router.websocket("/ws")
async def ws_gateway(websocket: WebSocket) -> None:
    """Main WebSocket endpoint for real-time clients."""
    control_plane = websocket.app.state.control_plane
    settings = control_plane.settings

    await websocket.accept()

    async def _send(frame: Frame) -> None:
        await websocket.send_text(frame.to_json())

    session = GatewaySession(
        _send,
        control_plane.limiter,
        jwt_secret=settings.jwt_secret.get_secret_value(),
        jwt_audience=settings.jwt_audience,
        ip=websocket.client.host if websocket.client else "unknown",
        handlers=control_plane.gateway_handlers,
    )
    bind_connection_context(session.connection_id, client_ip=session.ip)
    gateway_connections.inc()
    log.info("gateway.session_started", connection_id=session.connection_id)

    try:
        await session.open()
        while True:
            raw = await websocket.receive_text()
            try:
                frame = Frame.parse(raw)
            except TransportError as exc:
                await session.send("error", {"message": str(exc)})
                continue
            await session.handle(frame)
    except WebSocketDisconnect:
        log.info("gateway.client_disconnected", connection_id=session.connection_id)
    finally:
        gateway_connections.dec()
        log.info(
            "gateway.session_ended",
            connection_id=session.connection_id,
            subscriptions=len(session.subscriptions),
        )
        clear_context()
