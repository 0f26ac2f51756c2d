"""Client side of the real-time gateway.

Public API:
    RealtimeClient    - Session lifecycle, auth, subscriptions, offline queue
    RealtimeConfig    - Reconnection / heartbeat / token-refresh tunables
    ConnectionState   - disconnected | connecting | connected | reconnecting | failed
    Transport         - Duplex session interface
    AiohttpTransport  - WebSocket transport over aiohttp
"""

from control_plane.realtime.backoff import Backoff
from control_plane.realtime.client import (
    SYSTEM_EVENT_ALIASES,
    BandwidthMode,
    ClientMetrics,
    ConnectionState,
    RealtimeClient,
    RealtimeConfig,
    SignedChallenge,
    Subscription,
    SubscriptionKind,
)
from control_plane.realtime.transport import AiohttpTransport, Frame, Transport

__all__ = [
    "AiohttpTransport",
    "Backoff",
    "BandwidthMode",
    "ClientMetrics",
    "ConnectionState",
    "Frame",
    "RealtimeClient",
    "RealtimeConfig",
    "SYSTEM_EVENT_ALIASES",
    "SignedChallenge",
    "Subscription",
    "SubscriptionKind",
    "Transport",
]
