"""Duplex transports for the real-time client.

Wire format: one JSON object per text frame.
    {"event": "clan:subscribe", "data": {"clanId": "c1"}, "id": 7}
Acknowledgements echo the id:
    {"event": "ack", "id": 7, "data": {"success": true}}
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import aiohttp
import structlog

from control_plane.errors import AuthError, TransportError, TransportTimeoutError

log = structlog.get_logger(__name__)

ACK_EVENT = "ack"


@dataclass(frozen=True)
class Frame:
    event: str
    data: Any = None
    id: int | None = None

    def to_json(self) -> str:
        payload: dict[str, Any] = {"event": self.event, "data": self.data}
        if self.id is not None:
            payload["id"] = self.id
        return json.dumps(payload, default=str)

    @classmethod
    def parse(cls, raw: str | bytes) -> Frame:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Malformed frame: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
            raise TransportError("Malformed frame: missing 'event'")
        frame_id = payload.get("id")
        return cls(
            event=payload["event"],
            data=payload.get("data"),
            id=frame_id if isinstance(frame_id, int) else None,
        )


class Transport(ABC):
    """One duplex session. Instances are single-use: open once, close once."""

    @abstractmethod
    async def open(self, url: str, *, headers: dict[str, str], timeout: float) -> None:
        """Open the session.

        Raises:
            AuthError: the server refused the handshake credentials.
            TransportTimeoutError: the handshake did not finish within ``timeout``.
            TransportError: any other network failure.
        """

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Send one frame. Raises TransportError when the session is gone."""

    @abstractmethod
    async def receive(self) -> Frame | None:
        """Next inbound frame, or None once the peer closed the session."""

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Never raises."""

    @property
    @abstractmethod
    def closed(self) -> bool: ...


class AiohttpTransport(Transport):
    """WebSocket transport over ``aiohttp.ClientSession.ws_connect``."""

    def __init__(self, *, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def open(self, url: str, *, headers: dict[str, str], timeout: float) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            async with asyncio.timeout(timeout):
                self._ws = await self._session.ws_connect(url, headers=headers, autoping=True)
        except TimeoutError as exc:
            await self._close_session()
            raise TransportTimeoutError(f"Connection to {url} timed out after {timeout:.1f}s") from exc
        except aiohttp.WSServerHandshakeError as exc:
            await self._close_session()
            if exc.status in (401, 403):
                raise AuthError(f"Handshake rejected ({exc.status})", reason=exc.message) from exc
            raise TransportError(f"Handshake failed ({exc.status}): {exc.message}") from exc
        except (aiohttp.ClientError, OSError) as exc:
            await self._close_session()
            raise TransportError(f"Connection to {url} failed: {exc}") from exc

    async def send(self, frame: Frame) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("Session is closed")
        try:
            await self._ws.send_str(frame.to_json())
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def receive(self) -> Frame | None:
        if self._ws is None:
            return None
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return Frame.parse(msg.data)
                except TransportError as exc:
                    log.warning("realtime.transport.bad_frame", error=str(exc))
                    continue
            if msg.type == aiohttp.WSMsgType.BINARY:
                log.debug("realtime.transport.binary_ignored", size=len(msg.data))
                continue
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(f"Session error: {self._ws.exception()}")
            # CLOSE / CLOSING / CLOSED
            return None

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, OSError) as exc:
                log.debug("realtime.transport.close_failed", error=str(exc))
        self._ws = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed
