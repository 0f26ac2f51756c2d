"""Query result caching layer.

Public API:
    CacheBackend        - Abstract base for all backends
    RedisCacheBackend   - Redis-backed shared cache
    MemoryCacheBackend  - Process-local cache over the MemoryManager LRU
    get_cache_backend   - Factory: selects backend from settings
"""

from control_plane.cache.backend import (
    CacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)

__all__ = [
    "CacheBackend",
    "RedisCacheBackend",
    "MemoryCacheBackend",
    "get_cache_backend",
]
