"""WebSocket gateway speaking the real-time client wire format."""

from __future__ import annotations

from control_plane.websocket.gateway import GatewaySession, verify_token, ws_router

__all__ = ["GatewaySession", "verify_token", "ws_router"]
