"""Connection-tier rate limiting.

Public API:
    ConnectionRateLimiter  - Admission control (global -> user -> event)
    Admission              - Decision with retry metadata
    RateLimitConfig        - Quotas, multipliers, white/black lists
    QuotaRule              - Points / duration / block / exec_evenly / fail_open
    RedisRateLimitStore    - Shared sliding windows (Lua over sorted sets)
    InMemoryRateLimitStore - Single-process sliding windows
"""

from control_plane.ratelimit.limiter import (
    Admission,
    ConnectionRateLimiter,
    LimiterEvent,
    Reason,
    Rejected,
)
from control_plane.ratelimit.quotas import (
    DEFAULT_ROLE_MULTIPLIERS,
    SYSTEM_EVENTS,
    BucketSpec,
    QuotaRule,
    RateLimitConfig,
    RoleTier,
    Scope,
    default_event_rules,
    resolve_tier,
)
from control_plane.ratelimit.store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    StoreVerdict,
)

__all__ = [
    "Admission",
    "BucketSpec",
    "ConnectionRateLimiter",
    "DEFAULT_ROLE_MULTIPLIERS",
    "InMemoryRateLimitStore",
    "LimiterEvent",
    "QuotaRule",
    "RateLimitConfig",
    "RateLimitStore",
    "Reason",
    "RedisRateLimitStore",
    "Rejected",
    "RoleTier",
    "SYSTEM_EVENTS",
    "Scope",
    "StoreVerdict",
    "default_event_rules",
    "resolve_tier",
]
