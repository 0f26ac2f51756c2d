"""Typed errors surfaced at the public boundary of every component.

Each component raises one of these instead of leaking driver exceptions
(aiohttp, redis, asyncpg/SQLAlchemy). The original exception is always
chained via ``raise ... from exc`` so tracebacks keep the root cause.

HTTP mapping (see control_plane.main):
    RateLimitError  -> 429 with Retry-After
    ValidationError -> 422
    IntegrityError  -> 409 with alternatives
    StoreError      -> 503
"""

from __future__ import annotations

from typing import Any


class ControlPlaneError(Exception):
    """Base class for all control plane errors."""


# ------------------------------------------------------------------ #
# Real-time transport
# ------------------------------------------------------------------ #


class TransportError(ControlPlaneError):
    """Network-level failure of the duplex session."""


class AuthError(ControlPlaneError):
    """The server rejected the supplied credentials."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class TransportTimeoutError(ControlPlaneError, TimeoutError):
    """The session could not be opened (or acknowledged) in time."""


# ------------------------------------------------------------------ #
# Rate limiting
# ------------------------------------------------------------------ #


class RateLimitError(ControlPlaneError):
    """Admission rejected. Carries structured retry metadata."""

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        ms_before_next: int,
        remaining_points: int = 0,
        total_hits: int = 0,
        scope: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.ms_before_next = ms_before_next
        self.remaining_points = remaining_points
        self.total_hits = total_hits
        self.scope = scope

    @property
    def retry_after(self) -> int:
        """Whole seconds a client should wait before retrying."""
        return max(1, -(-self.ms_before_next // 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "scope": self.scope,
            "msBeforeNext": self.ms_before_next,
            "remainingPoints": self.remaining_points,
            "totalHits": self.total_hits,
            "retryAfter": self.retry_after,
        }


# ------------------------------------------------------------------ #
# Data lifecycle
# ------------------------------------------------------------------ #


class ValidationError(ControlPlaneError, ValueError):
    """Input failed validation (migration files, rectification edits)."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class IntegrityError(ControlPlaneError):
    """An operation is refused because it would break domain integrity.

    Used for erasure refusals: ``constraints`` names what blocks the
    request and ``alternatives`` lists what the subject can do instead.
    """

    def __init__(
        self,
        message: str,
        *,
        constraints: list[str],
        alternatives: list[str],
    ) -> None:
        super().__init__(message)
        self.constraints = constraints
        self.alternatives = alternatives


class StoreError(ControlPlaneError):
    """A backing store (SQL pool, Redis, document DB) failed.

    ``transient`` marks failures that are worth retrying (connection
    resets, pool timeouts) as opposed to permanent ones (bad SQL).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class MigrationError(ControlPlaneError):
    """Migration validation, execution or rollback failed.

    ``critical`` is set when a rollback itself failed: the estate is in an
    unknown state and requires operator action.
    """

    def __init__(
        self,
        message: str,
        *,
        migration: str | None = None,
        critical: bool = False,
        batch: Any = None,
    ) -> None:
        super().__init__(message)
        self.migration = migration
        self.critical = critical
        self.batch = batch


class LockAcquisitionError(MigrationError):
    """The distributed migration lock is held by another batch."""

    def __init__(self, key: str, message: str | None = None) -> None:
        super().__init__(message or f"Migration lock '{key}' is already held")
        self.key = key


class BreachDetected(ControlPlaneError):
    """A breach detector fired on a security event."""

    def __init__(self, message: str, *, breach_id: str, breach_type: str, severity: str) -> None:
        super().__init__(message)
        self.breach_id = breach_id
        self.breach_type = breach_type
        self.severity = severity
