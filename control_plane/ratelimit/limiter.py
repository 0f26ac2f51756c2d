"""
ConnectionRateLimiter - admission control for inbound real-time events.

Admission order for one event:
    1. System events (connect, heartbeats, auth outcomes...) -> always admitted
    2. Whitelisted IP or principal -> admitted without touching the store
    3. Blacklisted IP or principal -> rejected ``forbidden``
    4. Emergency mode active -> rejected ``emergency``
    5. Global (IP) -> user (principal x role multiplier) -> event bucket,
       evaluated and consumed atomically by the store

Store outages:
    Each consulted rule decides its own failure mode. If any consulted rule
    is fail-closed the event is rejected ``store_unavailable``; otherwise it
    is admitted ``degraded``. Every outage increments the in-process
    ``store_failures`` counter and ``rate_limit_store_failures_total``.

Emergency mode:
    Activated manually or when global admissions within one minute exceed
    the configured threshold. Clears itself after its duration.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from control_plane.errors import RateLimitError, StoreError
from control_plane.events import EventBus
from control_plane.ratelimit.quotas import (
    SYSTEM_EVENTS,
    BucketSpec,
    QuotaRule,
    RateLimitConfig,
    Scope,
    event_key,
    global_key,
    user_key,
)
from control_plane.ratelimit.store import RateLimitStore
from control_plane.telemetry.metrics import (
    record_rate_limit_decision,
    record_rate_limit_store_failure,
)

log = structlog.get_logger(__name__)

_EMERGENCY_WINDOW_SECONDS = 60.0


class Reason(StrEnum):
    ADMITTED = "admitted"
    SYSTEM = "system"
    WHITELISTED = "whitelisted"
    DEGRADED = "degraded"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    EMERGENCY = "emergency"
    STORE_UNAVAILABLE = "store_unavailable"


class LimiterEvent(StrEnum):
    REJECTED = "rejected"
    EMERGENCY_ACTIVATED = "emergency_activated"
    EMERGENCY_DEACTIVATED = "emergency_deactivated"
    STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class Admission:
    """Decision for one admission attempt."""

    allowed: bool
    reason: Reason
    scope: Scope | None = None
    remaining_points: int = 0
    total_hits: int = 0
    ms_before_next: int = 0
    delay_ms: int = 0

    def raise_for_rejection(self) -> None:
        """Raise RateLimitError when the attempt was rejected."""
        if self.allowed:
            return
        raise RateLimitError(
            f"Event rejected: {self.reason}",
            reason=self.reason.value,
            ms_before_next=self.ms_before_next,
            remaining_points=self.remaining_points,
            total_hits=self.total_hits,
            scope=self.scope.value if self.scope else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "scope": self.scope.value if self.scope else None,
            "remainingPoints": self.remaining_points,
            "totalHits": self.total_hits,
            "msBeforeNext": self.ms_before_next,
            "retryAfter": max(1, -(-self.ms_before_next // 1000)) if not self.allowed else 0,
        }


@dataclass(frozen=True)
class Rejected:
    """Payload of the ``rejected`` event."""

    event: str
    ip: str
    principal: str | None
    admission: Admission


class ConnectionRateLimiter:
    """
    Per-IP, per-identity and per-event admission over a shared store.

    Example:
        limiter = ConnectionRateLimiter(store, RateLimitConfig.from_settings(settings))
        decision = await limiter.admit("vote:cast", ip="10.0.0.1", principal="user-1")
        decision.raise_for_rejection()
    """

    def __init__(
        self,
        store: RateLimitStore,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self.config = config or RateLimitConfig()
        self.events = EventBus("ratelimit")
        self._clock = clock
        self._sleep = sleep

        self._emergency_until: float | None = None
        self._window_started = clock()
        self._window_admissions = 0

        self._stats: dict[str, int] = {
            "admitted": 0,
            "rejected": 0,
            "degraded": 0,
            "store_failures": 0,
            "emergency_activations": 0,
        }

    # ------------------------------------------------------------------ #
    # Admission
    # ------------------------------------------------------------------ #

    async def admit(
        self,
        event: str,
        *,
        ip: str,
        principal: str | None = None,
        roles: Iterable[str] = (),
        reputation: int = 0,
    ) -> Admission:
        """Decide whether one inbound event is admitted.

        Never raises for store outages; the outcome follows each rule's
        failure mode. Call ``raise_for_rejection()`` on the result to get a
        RateLimitError.
        """
        if event in SYSTEM_EVENTS:
            return Admission(allowed=True, reason=Reason.SYSTEM)

        whitelist = self.config.whitelist
        if ip in whitelist or (principal is not None and principal in whitelist):
            return Admission(allowed=True, reason=Reason.WHITELISTED)

        blacklist = self.config.blacklist
        if ip in blacklist or (principal is not None and principal in blacklist):
            return self._reject(event, ip, principal, Admission(allowed=False, reason=Reason.FORBIDDEN))

        now = self._clock()
        if self.emergency_active(now):
            remaining_ms = int(((self._emergency_until or now) - now) * 1000)
            return self._reject(
                event,
                ip,
                principal,
                Admission(allowed=False, reason=Reason.EMERGENCY, ms_before_next=remaining_ms),
            )

        buckets = self.buckets_for(event, ip=ip, principal=principal, roles=roles, reputation=reputation)
        now_ms = int(now * 1000)

        try:
            verdict = await self._store.consume(buckets, now_ms)
        except StoreError as exc:
            return self._on_store_failure(event, ip, principal, buckets, exc)

        if not verdict.allowed:
            if verdict.rejected_index is None or not 0 <= verdict.rejected_index < len(buckets):
                exc = StoreError(f"Rate-limit store rejected bucket {verdict.rejected_index} of {len(buckets)}")
                return self._on_store_failure(event, ip, principal, buckets, exc)
            bucket = buckets[verdict.rejected_index]
            admission = Admission(
                allowed=False,
                reason=Reason.RATE_LIMITED,
                scope=bucket.scope,
                remaining_points=0,
                total_hits=verdict.total_hits,
                ms_before_next=verdict.ms_before_next,
            )
            return self._reject(event, ip, principal, admission)

        # Tightest bucket defines what the caller sees.
        remaining = bucket_hits = 0
        ms_before_next = 0
        scope: Scope | None = None
        for bucket, state in zip(buckets, verdict.buckets, strict=True):
            left = max(0, bucket.points - state.hits)
            if scope is None or left < remaining:
                remaining, bucket_hits = left, state.hits
                ms_before_next, scope = state.ms_before_next, bucket.scope

        delay_ms = 0
        rule = self.config.event_rules.get(event)
        if rule is not None and rule.exec_evenly:
            event_state = verdict.buckets[-1]
            event_remaining = max(0, buckets[-1].points - event_state.hits)
            delay_ms = int(event_state.ms_before_next / (event_remaining + 2))

        self._stats["admitted"] += 1
        record_rate_limit_decision(scope.value if scope else Scope.GLOBAL.value, "admitted")
        self._count_for_emergency(now)

        if delay_ms > 0:
            await self._sleep(delay_ms / 1000)

        return Admission(
            allowed=True,
            reason=Reason.ADMITTED,
            scope=scope,
            remaining_points=remaining,
            total_hits=bucket_hits,
            ms_before_next=ms_before_next,
            delay_ms=delay_ms,
        )

    def buckets_for(
        self,
        event: str,
        *,
        ip: str,
        principal: str | None = None,
        roles: Iterable[str] = (),
        reputation: int = 0,
    ) -> list[BucketSpec]:
        """Buckets consulted for one event, in evaluation order."""
        roles = tuple(roles)
        buckets = [self._bucket(Scope.GLOBAL, global_key(ip), self.config.global_rule)]

        if principal is not None:
            multiplier = self.config.multiplier_for(roles, reputation)
            buckets.append(
                self._bucket(Scope.USER, user_key(principal), self.config.user_rule, multiplier)
            )

        rule = self.config.event_rules.get(event)
        if rule is not None:
            buckets.append(self._bucket(Scope.EVENT, event_key(event, principal or ip), rule))
        return buckets

    @staticmethod
    def _bucket(scope: Scope, key: str, rule: QuotaRule, multiplier: float = 1.0) -> BucketSpec:
        return BucketSpec(
            scope=scope,
            key=key,
            points=max(1, int(rule.points * multiplier)),
            duration_ms=int(rule.duration * 1000),
            block_ms=int(rule.block_duration * 1000),
            rule=rule,
        )

    def _reject(
        self,
        event: str,
        ip: str,
        principal: str | None,
        admission: Admission,
    ) -> Admission:
        self._stats["rejected"] += 1
        scope = admission.scope.value if admission.scope else admission.reason.value
        record_rate_limit_decision(scope, "rejected")
        log.warning(
            "ratelimit.rejected",
            rl_event=event,
            ip=ip,
            principal=principal,
            reason=admission.reason.value,
            scope=admission.scope.value if admission.scope else None,
            ms_before_next=admission.ms_before_next,
            total_hits=admission.total_hits,
        )
        self.events.emit(LimiterEvent.REJECTED, Rejected(event, ip, principal, admission))
        return admission

    def _on_store_failure(
        self,
        event: str,
        ip: str,
        principal: str | None,
        buckets: list[BucketSpec],
        exc: StoreError,
    ) -> Admission:
        self._stats["store_failures"] += 1
        closed = [b for b in buckets if not b.rule.fail_open]
        for bucket in buckets:
            record_rate_limit_store_failure(bucket.scope.value)
        self.events.emit(LimiterEvent.STORE_FAILURE, exc)

        if closed:
            log.error(
                "ratelimit.store_failed_closed",
                rl_event=event,
                scope=closed[0].scope.value,
                error=str(exc),
            )
            return self._reject(
                event,
                ip,
                principal,
                Admission(
                    allowed=False,
                    reason=Reason.STORE_UNAVAILABLE,
                    scope=closed[0].scope,
                    ms_before_next=1000,
                ),
            )

        self._stats["degraded"] += 1
        log.warning("ratelimit.store_failed_open", rl_event=event, error=str(exc))
        return Admission(allowed=True, reason=Reason.DEGRADED)

    # ------------------------------------------------------------------ #
    # Emergency mode
    # ------------------------------------------------------------------ #

    def _count_for_emergency(self, now: float) -> None:
        if now - self._window_started >= _EMERGENCY_WINDOW_SECONDS:
            self._window_started = now
            self._window_admissions = 0
        self._window_admissions += 1
        if self._window_admissions > self.config.emergency_threshold and not self.emergency_active(now):
            log.critical(
                "ratelimit.emergency_threshold_exceeded",
                admissions=self._window_admissions,
                threshold=self.config.emergency_threshold,
            )
            self.activate_emergency_mode()

    def activate_emergency_mode(self, duration: float | None = None) -> None:
        """Reject every non-system, non-whitelisted event for ``duration`` seconds."""
        seconds = duration if duration is not None else self.config.emergency_duration
        self._emergency_until = self._clock() + seconds
        self._stats["emergency_activations"] += 1
        log.critical("ratelimit.emergency_activated", duration_seconds=seconds)
        self.events.emit(LimiterEvent.EMERGENCY_ACTIVATED, seconds)

    def deactivate_emergency_mode(self) -> None:
        if self._emergency_until is None:
            return
        self._emergency_until = None
        self._window_admissions = 0
        log.warning("ratelimit.emergency_deactivated")
        self.events.emit(LimiterEvent.EMERGENCY_DEACTIVATED, None)

    def emergency_active(self, now: float | None = None) -> bool:
        if self._emergency_until is None:
            return False
        if (now if now is not None else self._clock()) >= self._emergency_until:
            self.deactivate_emergency_mode()
            return False
        return True

    # ------------------------------------------------------------------ #
    # Administration
    # ------------------------------------------------------------------ #

    async def reset(self, principal: str, *, ip: str | None = None) -> int:
        """Clear the principal's buckets and blocks (and the IP's, when given)."""
        keys = [user_key(principal)]
        keys.extend(event_key(name, principal) for name in self.config.event_rules)
        if ip is not None:
            keys.append(global_key(ip))
        keys.extend([f"{k}:blocked" for k in keys])
        removed = await self._store.delete(keys)
        log.info("ratelimit.reset", principal=principal, ip=ip, removed=removed)
        return removed

    async def status(self, principal: str, *, ip: str | None = None) -> dict[str, Any]:
        """Current hits per scope for a principal."""
        now_ms = int(self._clock() * 1000)
        user_rule = self.config.user_rule
        result: dict[str, Any] = {
            "principal": principal,
            "user": await self._store.hits(user_key(principal), int(user_rule.duration * 1000), now_ms),
            "events": {},
            "emergency_mode": self.emergency_active(),
        }
        for name, rule in self.config.event_rules.items():
            result["events"][name] = await self._store.hits(
                event_key(name, principal), int(rule.duration * 1000), now_ms
            )
        if ip is not None:
            global_rule = self.config.global_rule
            result["global"] = await self._store.hits(
                global_key(ip), int(global_rule.duration * 1000), now_ms
            )
        return result

    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "emergency_active": self.emergency_active(),
            "window_admissions": self._window_admissions,
        }

    async def close(self) -> None:
        await self._store.close()
