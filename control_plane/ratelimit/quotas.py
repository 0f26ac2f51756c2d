"""Quota rules, role tiers and bucket naming for the connection rate limiter.

Scopes are consulted in a fixed order: global (client IP), user
(authenticated identity, scaled by the role multiplier), then the
per-event bucket when the event has one.

Key namespaces:
    ws_global_rl:<ip>
    ws_user_rl:<principal>
    ws_event_<event>_rl:<principal>
A ``:blocked`` suffix holds the block-duration penalty for a key.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Scope(StrEnum):
    GLOBAL = "global"
    USER = "user"
    EVENT = "event"


class RoleTier(StrEnum):
    BASIC = "basic"
    PREMIUM = "premium"
    VIP = "vip"
    ADMIN = "admin"


DEFAULT_ROLE_MULTIPLIERS: dict[str, float] = {
    RoleTier.BASIC: 1.0,
    RoleTier.PREMIUM: 3.0,
    RoleTier.VIP: 10.0,
    RoleTier.ADMIN: 20.0,
}

# Lifecycle and control events that are never counted or rejected.
SYSTEM_EVENTS: frozenset[str] = frozenset(
    {
        "connect",
        "disconnect",
        "authenticate",
        "authenticated",
        "authentication_failed",
        "refresh_token",
        "token_refresh_required",
        "heartbeat",
        "heartbeat_ack",
        "rate_limited",
    }
)


def resolve_tier(roles: Iterable[str], reputation: int = 0) -> RoleTier:
    """Map roles and reputation to a tier.

    admin|owner -> admin; vip or reputation > 1000 -> vip;
    premium or reputation > 100 -> premium; otherwise basic.
    """
    lowered = {r.lower() for r in roles}
    if lowered & {"admin", "owner"}:
        return RoleTier.ADMIN
    if "vip" in lowered or reputation > 1000:
        return RoleTier.VIP
    if "premium" in lowered or reputation > 100:
        return RoleTier.PREMIUM
    return RoleTier.BASIC


@dataclass(frozen=True)
class QuotaRule:
    """Quota for one scope.

    Attributes:
        points: Max admitted events per window.
        duration: Window length in seconds.
        block_duration: Penalty in seconds once the window is exhausted (0 = none).
        exec_evenly: Delay admitted events to spread them across the window.
        fail_open: Admit when the store is unreachable.
    """

    points: int
    duration: float
    block_duration: float = 0.0
    exec_evenly: bool = False
    fail_open: bool = True

    def __post_init__(self) -> None:
        if self.points < 1:
            raise ValueError("points must be >= 1")
        if self.duration <= 0:
            raise ValueError("duration must be > 0")


@dataclass(frozen=True)
class BucketSpec:
    """A concrete bucket consulted by one admission attempt."""

    scope: Scope
    key: str
    points: int
    duration_ms: int
    block_ms: int
    rule: QuotaRule

    @property
    def block_key(self) -> str:
        return f"{self.key}:blocked"


def global_key(ip: str) -> str:
    return f"ws_global_rl:{ip}"


def user_key(principal: str) -> str:
    return f"ws_user_rl:{principal}"


def event_key(event: str, principal: str) -> str:
    return f"ws_event_{event}_rl:{principal}"


@dataclass
class RateLimitConfig:
    global_rule: QuotaRule = field(
        default_factory=lambda: QuotaRule(points=100, duration=60, block_duration=300)
    )
    user_rule: QuotaRule = field(
        default_factory=lambda: QuotaRule(points=50, duration=60, block_duration=60)
    )
    # Event rules default to fail-closed: per-event buckets guard actions
    # with side effects (votes, burns, clan invites).
    event_rules: dict[str, QuotaRule] = field(default_factory=dict)
    role_multipliers: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_MULTIPLIERS)
    )
    whitelist: set[str] = field(default_factory=set)
    blacklist: set[str] = field(default_factory=set)
    emergency_threshold: int = 10_000
    emergency_duration: float = 600.0

    def multiplier_for(self, roles: Iterable[str], reputation: int = 0) -> float:
        """Highest multiplier among the principal's roles and derived tier."""
        candidates = {r.lower() for r in roles} | {resolve_tier(roles, reputation).value}
        return max(self.role_multipliers.get(c, 1.0) for c in candidates)

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> RateLimitConfig:
        config = cls(
            global_rule=QuotaRule(
                points=settings.rate_limit_global_points,
                duration=settings.rate_limit_global_duration,
                block_duration=settings.rate_limit_global_block,
                fail_open=settings.rate_limit_global_fail_open,
            ),
            user_rule=QuotaRule(
                points=settings.rate_limit_user_points,
                duration=settings.rate_limit_user_duration,
                block_duration=settings.rate_limit_user_block,
                fail_open=settings.rate_limit_user_fail_open,
            ),
            event_rules=default_event_rules(),
            whitelist=set(settings.rate_limit_whitelist),
            blacklist=set(settings.rate_limit_blacklist),
            emergency_threshold=settings.rate_limit_emergency_threshold,
        )
        for name, value in overrides.items():
            setattr(config, name, value)
        return config


def default_event_rules() -> dict[str, QuotaRule]:
    """Per-event quotas for gameplay actions with side effects."""
    return {
        "vote:cast": QuotaRule(points=5, duration=60, block_duration=60, fail_open=False),
        "content:submit": QuotaRule(points=10, duration=3600, fail_open=False),
        "clan:invite": QuotaRule(points=10, duration=3600, fail_open=False),
        "token:burn": QuotaRule(points=3, duration=300, block_duration=300, fail_open=False),
        "chat:message": QuotaRule(points=30, duration=60, exec_evenly=True),
        "search:query": QuotaRule(points=15, duration=60),
    }
