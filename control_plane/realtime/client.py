"""
RealtimeClient - one authenticated duplex session to the platform gateway.

State machine:
    disconnected -> connecting -> connected -> reconnecting -> connected
                                                            -> failed
                                                            -> disconnected
``failed`` is terminal until the host calls ``connect()`` again.

Session readiness:
    With a token the session is ready once the server answers
    ``authenticated``; without one it is ready as soon as it connects.
    On every ready transition the client
        1. starts heartbeats (and the token-refresh timer when authenticated)
        2. re-sends every recorded subscription
        3. drains the outgoing queue in FIFO order

Offline queue:
    ``send()`` never raises. While the session is down (or the queue is
    still draining) events are queued, capped at ``max_queue_size`` with
    the oldest dropped.

Handlers registered with ``on()`` are called synchronously on the event
loop; a failing handler is logged and does not affect the others.
"""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from control_plane.errors import AuthError, TransportError, TransportTimeoutError
from control_plane.events import EventBus, Handler
from control_plane.realtime.backoff import Backoff
from control_plane.realtime.transport import AiohttpTransport, Frame, Transport

log = structlog.get_logger(__name__)

AckCallback = Callable[[Any], None]


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class SubscriptionKind(StrEnum):
    USER = "user"
    CLAN = "clan"
    CONTENT = "content"
    VOTING = "voting"
    ROOM = "room"


class BandwidthMode(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# Server-side system events re-emitted under friendlier names.
SYSTEM_EVENT_ALIASES: dict[str, str] = {
    "system:connection": "connection_info",
    "system:server_status": "server_status",
    "system:maintenance": "maintenance",
    "system:alert": "alert",
}


@dataclass(frozen=True)
class Subscription:
    kind: SubscriptionKind
    id: str
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.id}"

    def subscribe_frame(self) -> tuple[str, dict[str, Any]]:
        match self.kind:
            case SubscriptionKind.USER:
                return "user:subscribe_updates", dict(self.options)
            case SubscriptionKind.CLAN:
                return "clan:subscribe", {"clanId": self.id, **self.options}
            case SubscriptionKind.CONTENT:
                return "content:subscribe", {"contentIds": [self.id], **self.options}
            case SubscriptionKind.VOTING:
                return "voting:subscribe", {"contentIds": [self.id], **self.options}
            case SubscriptionKind.ROOM:
                return "join_room", {"roomId": self.id, **self.options}
        raise ValueError(f"Unknown subscription kind: {self.kind}")

    def unsubscribe_frame(self) -> tuple[str, dict[str, Any]]:
        match self.kind:
            case SubscriptionKind.USER:
                return "user:unsubscribe_updates", {}
            case SubscriptionKind.CLAN:
                return "clan:unsubscribe", {"clanId": self.id}
            case SubscriptionKind.CONTENT:
                return "content:unsubscribe", {"contentIds": [self.id]}
            case SubscriptionKind.VOTING:
                return "voting:unsubscribe", {"contentIds": [self.id]}
            case SubscriptionKind.ROOM:
                return "leave_room", {"roomId": self.id}
        raise ValueError(f"Unknown subscription kind: {self.kind}")


@dataclass(frozen=True)
class SignedChallenge:
    """Wallet signature over a server-issued message."""

    signature: str
    message: str


@dataclass
class RealtimeConfig:
    url: str = "ws://localhost:8000/ws"
    reconnection: bool = True
    reconnection_attempts: int = 10
    reconnection_delay_ms: int = 1000
    reconnection_delay_max_ms: int = 10_000
    randomization_factor: float = 0.5
    connect_timeout_ms: int = 20_000
    heartbeat_interval_ms: int = 30_000
    heartbeat_timeout_ms: int = 60_000
    token_refresh_threshold_ms: int = 300_000
    auto_authenticate: bool = True
    retry_auth_on_failure: bool = True
    auth_retry_delay_ms: int = 5000
    max_queue_size: int = 1000

    @classmethod
    def from_settings(cls, settings: Any, url: str) -> RealtimeConfig:
        return cls(
            url=url,
            reconnection_attempts=settings.rtc_reconnection_attempts,
            reconnection_delay_ms=settings.rtc_reconnection_delay_ms,
            reconnection_delay_max_ms=settings.rtc_reconnection_delay_max_ms,
            randomization_factor=settings.rtc_randomization_factor,
            connect_timeout_ms=settings.rtc_connect_timeout_ms,
            heartbeat_interval_ms=settings.rtc_heartbeat_interval_ms,
            heartbeat_timeout_ms=settings.rtc_heartbeat_timeout_ms,
            token_refresh_threshold_ms=settings.rtc_token_refresh_threshold_ms,
        )


@dataclass
class ClientMetrics:
    connect_time: float | None = None
    reconnect_count: int = 0
    messages_received: int = 0
    messages_sent: int = 0
    errors: int = 0
    dropped: int = 0
    last_activity: float | None = None


@dataclass
class _Outgoing:
    event: str
    data: Any
    ack: AckCallback | None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RealtimeClient:
    """
    Client side of the platform's real-time gateway.

    Example:
        client = RealtimeClient(RealtimeConfig(url="wss://play.example/ws"))
        client.on("clan:member_joined", render_member)
        client.on("token_refresh_needed", lambda _: schedule_refresh())

        await client.connect(token)
        await client.subscribe("clan", clan_id)
        await client.send("chat:message", {"text": "gg"})
        ...
        await client.disconnect()
    """

    def __init__(
        self,
        config: RealtimeConfig | None = None,
        *,
        transport_factory: Callable[[], Transport] = AiohttpTransport,
        backoff: Backoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RealtimeConfig()
        self._transport_factory = transport_factory
        self._backoff = backoff or Backoff(
            base_ms=self.config.reconnection_delay_ms,
            maximum_ms=self.config.reconnection_delay_max_ms,
            jitter=self.config.randomization_factor,
        )
        self._clock = clock
        self._events = EventBus("realtime")

        self.connection_id = uuid.uuid4().hex
        self.state = ConnectionState.DISCONNECTED
        self.authenticated = False
        self.user_info: dict[str, Any] | None = None
        self.metrics = ClientMetrics()

        self._token: str | None = None
        self._transport: Transport | None = None
        self._ready = False
        self._closing = False
        self._auth_retried = False
        self._reconnect_attempt = 0
        self._last_ack = 0.0

        self._subscriptions: dict[str, Subscription] = {}
        self._queue: deque[_Outgoing] = deque()
        self._pending_acks: dict[int, AckCallback] = {}
        self._frame_ids = itertools.count(1)

        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._auth_retry_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ #
    # Handler registration
    # ------------------------------------------------------------------ #

    def on(self, event: str, handler: Handler) -> None:
        self._events.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self._events.off(event, handler)

    def _emit(self, event: str, payload: Any = None) -> None:
        self._events.emit(event, payload)

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self, token: str | None = None) -> None:
        """Open the session.

        Raises TransportError, AuthError or TransportTimeoutError. On
        failure the client is left ``disconnected``.
        """
        if self.connected:
            log.debug("realtime.already_connected", connection_id=self.connection_id)
            return
        if token is not None:
            self._token = token
        self._closing = False
        self._cancel(self._reconnect_task)
        self.state = ConnectionState.CONNECTING

        try:
            await self._open()
        except AuthError as exc:
            self.state = ConnectionState.DISCONNECTED
            self.metrics.errors += 1
            self._emit("authentication_failed", {"error": str(exc), "reason": exc.reason})
            raise
        except (TransportError, TransportTimeoutError) as exc:
            self.state = ConnectionState.DISCONNECTED
            self.metrics.errors += 1
            log.warning("realtime.connect_failed", url=self.config.url, error=str(exc))
            self._emit("error", {"type": "connection_error", "message": str(exc), "timestamp": _now_iso()})
            raise

        await self._on_open(reconnect=False)

    async def _open(self) -> None:
        transport = self._transport_factory()
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        await transport.open(
            self.config.url,
            headers=headers,
            timeout=self.config.connect_timeout_ms / 1000,
        )
        self._transport = transport

    async def _on_open(self, *, reconnect: bool) -> None:
        self.state = ConnectionState.CONNECTED
        self.metrics.connect_time = self._clock()
        self.metrics.last_activity = self._clock()
        self._last_ack = self._clock()
        self._reconnect_attempt = 0
        self._auth_retried = False
        self._reader_task = asyncio.create_task(self._read_loop())

        log.info(
            "realtime.connected",
            connection_id=self.connection_id,
            url=self.config.url,
            reconnect=reconnect,
        )
        self._emit("connect", {"timestamp": _now_iso(), "reconnect": reconnect})

        if self._token and self.config.auto_authenticate:
            await self.authenticate(self._token)
        else:
            await self._on_ready()

    async def _on_ready(self) -> None:
        """Start heartbeats, resubscribe, then drain the queue."""
        self._ready = True
        self._cancel(self._heartbeat_task)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        for subscription in list(self._subscriptions.values()):
            event, payload = subscription.subscribe_frame()
            await self._dispatch(event, payload)

        drained = 0
        while self._queue and self.connected:
            item = self._queue.popleft()
            if not await self._dispatch(item.event, item.data, item.ack):
                self._queue.appendleft(item)
                break
            drained += 1
        if drained:
            log.info("realtime.queue_drained", count=drained, remaining=len(self._queue))

    async def disconnect(self) -> None:
        """End the session. Never raises."""
        self._closing = True
        self._stop_timers()
        self._cancel(self._reconnect_task)
        self._cancel(self._auth_retry_task)
        self._cancel(self._reader_task)
        was_authenticated = self.authenticated
        await self._close_transport()
        previous = self.state
        self.state = ConnectionState.DISCONNECTED
        self.authenticated = False
        self._ready = False
        if previous != ConnectionState.DISCONNECTED:
            log.info("realtime.disconnected", connection_id=self.connection_id, reason="client")
            self._emit(
                "disconnect",
                {"reason": "client disconnect", "timestamp": _now_iso(), "was_authenticated": was_authenticated},
            )

    async def destroy(self) -> None:
        """Disconnect and forget handlers, subscriptions and queued events."""
        await self.disconnect()
        self._events.clear()
        self._subscriptions.clear()
        self._queue.clear()
        self._pending_acks.clear()

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                log.debug("realtime.transport_close_failed", error=str(exc))

    def _stop_timers(self) -> None:
        self._cancel(self._heartbeat_task)
        self._cancel(self._refresh_task)
        self._heartbeat_task = None
        self._refresh_task = None

    @staticmethod
    def _cancel(task: asyncio.Task[Any] | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------ #
    # Connection loss and reconnection
    # ------------------------------------------------------------------ #

    async def _connection_lost(self, reason: str) -> None:
        if self._closing:
            return
        was_authenticated = self.authenticated
        self._stop_timers()
        await self._close_transport()
        self.authenticated = False
        self._ready = False
        self.state = ConnectionState.DISCONNECTED
        log.warning("realtime.connection_lost", connection_id=self.connection_id, reason=reason)
        self._emit(
            "disconnect",
            {"reason": reason, "timestamp": _now_iso(), "was_authenticated": was_authenticated},
        )

        if self.config.reconnection:
            self.state = ConnectionState.RECONNECTING
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self.config.reconnection_attempts
        for attempt in range(1, max_attempts + 1):
            self._reconnect_attempt = attempt
            self.state = ConnectionState.RECONNECTING
            self._emit("reconnect_attempt", {"attempt_number": attempt, "timestamp": _now_iso()})
            await asyncio.sleep(self._backoff.delay_ms(attempt) / 1000)
            if self._closing:
                return
            try:
                await self._open()
            except AuthError as exc:
                self.metrics.errors += 1
                log.error("realtime.reconnect_auth_rejected", error=str(exc))
                self._emit("authentication_failed", {"error": str(exc), "reason": exc.reason})
                break
            except (TransportError, TransportTimeoutError) as exc:
                self.metrics.errors += 1
                log.warning("realtime.reconnect_error", attempt=attempt, error=str(exc))
                self._emit(
                    "reconnect_error",
                    {"message": str(exc), "attempt_number": attempt, "timestamp": _now_iso()},
                )
                continue

            self.metrics.reconnect_count += 1
            self._emit(
                "reconnect",
                {
                    "attempt_number": attempt,
                    "total_reconnects": self.metrics.reconnect_count,
                    "timestamp": _now_iso(),
                },
            )
            await self._on_open(reconnect=True)
            return

        self.state = ConnectionState.FAILED
        log.error("realtime.reconnect_failed", max_attempts=max_attempts)
        self._emit("reconnect_failed", {"max_attempts": max_attempts, "timestamp": _now_iso()})

    async def network_online(self) -> None:
        """Host signal: connectivity is back. Reconnects a disconnected session."""
        self._emit("network_online")
        if self.state != ConnectionState.DISCONNECTED or self._closing:
            return
        try:
            await self.connect()
        except (TransportError, TransportTimeoutError, AuthError) as exc:
            log.warning("realtime.network_online_connect_failed", error=str(exc))

    def network_offline(self) -> None:
        """Host signal: connectivity may be gone. The session is left alone."""
        self._emit("network_offline")

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    async def _read_loop(self) -> None:
        transport = self._transport
        reason = "transport closed"
        try:
            while transport is not None:
                frame = await transport.receive()
                if frame is None:
                    break
                await self._handle_frame(frame)
        except TransportError as exc:
            self.metrics.errors += 1
            reason = f"transport error: {exc}"
            self._emit("error", {"type": "transport_error", "message": str(exc), "timestamp": _now_iso()})
        if transport is self._transport:
            await self._connection_lost(reason)

    async def _handle_frame(self, frame: Frame) -> None:
        self.metrics.messages_received += 1
        self.metrics.last_activity = self._clock()
        self._last_ack = self._clock()

        match frame.event:
            case "ack":
                callback = self._pending_acks.pop(frame.id, None) if frame.id is not None else None
                if callback is not None:
                    try:
                        callback(frame.data)
                    except Exception as exc:
                        log.error("realtime.ack_callback_failed", frame_id=frame.id, error=str(exc))
            case "heartbeat_ack":
                pass
            case "authenticated":
                await self._on_authenticated(frame.data or {})
            case "authentication_failed":
                self._on_authentication_failed(frame.data or {})
            case "rate_limited":
                log.warning("realtime.rate_limited", details=frame.data)
                self._emit("rate_limited", frame.data)
            case event if event in SYSTEM_EVENT_ALIASES:
                self._emit(SYSTEM_EVENT_ALIASES[event], frame.data)
            case _:
                self._emit(frame.event, frame.data)

    async def _on_authenticated(self, data: dict[str, Any]) -> None:
        self.authenticated = True
        self.user_info = data
        self._auth_retried = False
        log.info("realtime.authenticated", connection_id=self.connection_id, user_id=data.get("userId"))
        self._schedule_token_refresh(data)
        self._emit("authenticated", data)
        await self._on_ready()

    def _on_authentication_failed(self, data: dict[str, Any]) -> None:
        self.authenticated = False
        retrying = bool(self.config.retry_auth_on_failure and self._token and not self._auth_retried)
        log.warning("realtime.authentication_failed", error=data.get("error"), retrying=retrying)
        self._emit("authentication_failed", {**data, "retrying": retrying})
        if retrying:
            self._auth_retried = True
            self._auth_retry_task = asyncio.create_task(self._retry_authentication())
        else:
            self._emit("error", {"type": "authentication_error", "message": data.get("error"), "timestamp": _now_iso()})

    async def _retry_authentication(self) -> None:
        await asyncio.sleep(self.config.auth_retry_delay_ms / 1000)
        if self._token and self.connected:
            await self.authenticate(self._token)

    # ------------------------------------------------------------------ #
    # Timers
    # ------------------------------------------------------------------ #

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        timeout = self.config.heartbeat_timeout_ms / 1000
        while self.connected:
            await asyncio.sleep(interval)
            if not self.connected:
                return
            if self._clock() - self._last_ack > timeout:
                log.warning("realtime.heartbeat_timeout", connection_id=self.connection_id, timeout_s=timeout)
                self._emit("error", {"type": "heartbeat_timeout", "timestamp": _now_iso()})
                # The read loop observes the closed transport and reconnects.
                transport = self._transport
                if transport is not None:
                    await transport.close()
                return
            await self._dispatch("heartbeat", {"timestamp": _now_iso()})

    def _schedule_token_refresh(self, auth_data: dict[str, Any]) -> None:
        self._cancel(self._refresh_task)
        threshold = self.config.token_refresh_threshold_ms / 1000
        expires_at = auth_data.get("expiresAt")
        if isinstance(expires_at, (int, float)):
            delay = max(0.0, expires_at - time.time() - threshold)
        else:
            delay = threshold
        self._refresh_task = asyncio.create_task(self._token_refresh_timer(delay))

    async def _token_refresh_timer(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._emit(
            "token_refresh_needed",
            {"message": "Authentication token will expire soon", "timestamp": _now_iso()},
        )

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    async def authenticate(self, token: str, signed_challenge: SignedChallenge | None = None) -> bool:
        """Send credentials. Returns False when not connected.

        The outcome arrives as ``authenticated`` / ``authentication_failed``.
        """
        self._token = token
        if not self.connected:
            log.warning("realtime.authenticate_not_connected")
            return False
        payload: dict[str, Any] = {"token": token}
        if signed_challenge is not None:
            payload["signature"] = signed_challenge.signature
            payload["message"] = signed_challenge.message
        return await self._dispatch("authenticate", payload)

    async def refresh_token(self, new_token: str) -> bool:
        """Hand the server a fresh token after ``token_refresh_needed``."""
        self._token = new_token
        if not self.connected:
            return False

        def _on_response(response: Any) -> None:
            if isinstance(response, dict) and response.get("success"):
                self._schedule_token_refresh(response)
                self._emit("token_refreshed", response)
            else:
                self._emit("token_refresh_failed", response)

        return await self._dispatch("refresh_token", {"token": new_token}, _on_response)

    async def send(self, event: str, data: Any = None, ack: AckCallback | None = None) -> bool:
        """Dispatch now when connected, otherwise queue. Never raises."""
        if self.connected and self._ready and not self._queue:
            if await self._dispatch(event, data, ack):
                return True
        self._enqueue(_Outgoing(event, data, ack))
        return False

    def _enqueue(self, item: _Outgoing) -> None:
        if len(self._queue) >= self.config.max_queue_size:
            dropped = self._queue.popleft()
            self.metrics.dropped += 1
            log.warning("realtime.queue_overflow", dropped_event=dropped.event, size=len(self._queue))
        self._queue.append(item)

    async def _dispatch(self, event: str, data: Any, ack: AckCallback | None = None) -> bool:
        transport = self._transport
        if transport is None or transport.closed:
            return False
        frame_id = next(self._frame_ids) if ack is not None else None
        if frame_id is not None:
            self._pending_acks[frame_id] = ack  # type: ignore[assignment]
        try:
            await transport.send(Frame(event=event, data=data, id=frame_id))
        except TransportError as exc:
            self.metrics.errors += 1
            if frame_id is not None:
                self._pending_acks.pop(frame_id, None)
            log.warning("realtime.send_failed", event_name=event, error=str(exc))
            return False
        self.metrics.messages_sent += 1
        self.metrics.last_activity = self._clock()
        return True

    async def subscribe(self, kind: str, id: str, options: dict[str, Any] | None = None) -> bool:
        """Record a subscription and request it when connected.

        Returns whether the request was dispatched. The subscription is
        replayed on every reconnect either way.
        """
        subscription = Subscription(SubscriptionKind(kind), str(id), dict(options or {}))
        existing = self._subscriptions.get(subscription.key)
        self._subscriptions[subscription.key] = subscription
        if not (self.connected and self._ready):
            return False
        if existing == subscription:
            return True
        event, payload = subscription.subscribe_frame()
        return await self._dispatch(event, payload)

    async def unsubscribe(self, kind: str, id: str) -> bool:
        subscription = self._subscriptions.pop(f"{SubscriptionKind(kind)}:{id}", None)
        if subscription is None or not self.connected:
            return False
        event, payload = subscription.unsubscribe_frame()
        return await self._dispatch(event, payload)

    async def update_preferences(self, preferences: dict[str, Any]) -> bool:
        def _on_response(response: Any) -> None:
            if isinstance(response, dict) and response.get("success"):
                self._emit("preferences_updated", response.get("preferences"))
            else:
                log.warning("realtime.preferences_update_failed", response=response)

        return await self.send("user:update_preferences", preferences, _on_response)

    async def set_bandwidth_mode(self, mode: str) -> bool:
        """Ask the server to adapt payload sizes. False for an unknown mode."""
        try:
            selected = BandwidthMode(mode)
        except ValueError:
            log.warning("realtime.invalid_bandwidth_mode", mode=mode)
            return False

        def _on_response(response: Any) -> None:
            if isinstance(response, dict) and response.get("success"):
                self._emit("bandwidth_mode_changed", response.get("mode", selected.value))

        await self.send("set_bandwidth_mode", {"mode": selected.value}, _on_response)
        return True

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    @property
    def queued(self) -> int:
        return len(self._queue)

    def connection_info(self) -> dict[str, Any]:
        uptime = self._clock() - self.metrics.connect_time if self.connected and self.metrics.connect_time else 0.0
        return {
            "connection_id": self.connection_id,
            "state": self.state.value,
            "connected": self.connected,
            "authenticated": self.authenticated,
            "reconnect_attempts": self._reconnect_attempt,
            "user_info": self.user_info,
            "subscriptions": list(self._subscriptions),
            "queued": len(self._queue),
            "metrics": {**asdict(self.metrics), "uptime_seconds": round(uptime, 3)},
        }
