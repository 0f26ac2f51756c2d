"""Process-local memory management.

Public API:
    LRUCache            - Bounded LRU mapping with per-entry TTL
    ObjectPool          - Reusable objects with factory and reset
    MemoryManager       - Cache + telemetry + pool registry + leak heuristic
    MemoryManagerConfig - Tunables (see Settings.memory_*)
    MemoryEvent         - Event names emitted on MemoryManager.events
"""

from control_plane.performance.lru import CacheEntry, LRUCache
from control_plane.performance.memory import (
    CleanupReport,
    LeakReport,
    LeakSeverity,
    MemoryEvent,
    MemoryManager,
    MemoryManagerConfig,
    MemoryPressure,
    MemorySample,
    estimate_object_size,
    format_bytes,
)
from control_plane.performance.pools import ObjectPool, PoolStats

__all__ = [
    "CacheEntry",
    "LRUCache",
    "ObjectPool",
    "PoolStats",
    "MemoryManager",
    "MemoryManagerConfig",
    "MemoryEvent",
    "MemoryPressure",
    "MemorySample",
    "LeakReport",
    "LeakSeverity",
    "CleanupReport",
    "estimate_object_size",
    "format_bytes",
]
