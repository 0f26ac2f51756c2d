"""Pooled SQL access for the control plane.

Public API:
    create_engine_with_pool - AsyncEngine factory configured from Settings
    QueryOptimizer          - Cached, accounted query execution
    QueryOptimizerConfig    - Tunables (see Settings.query_* / slow_query_*)
    QueryResult             - Rows + row_count + command + timing + cached flag
"""

from control_plane.db.optimizer import (
    BatchItemResult,
    IndexSuggestion,
    QueryOptimizer,
    QueryOptimizerConfig,
    QueryResult,
    SlowQuery,
    TransactionExecutor,
    bind_params,
    cache_key,
    is_cacheable,
    normalize_sql,
)
from control_plane.db.pool import create_engine_with_pool, pool_snapshot
from control_plane.db.statements import PreparedHandle, PreparedStatementRegistry

__all__ = [
    "BatchItemResult",
    "IndexSuggestion",
    "PreparedHandle",
    "PreparedStatementRegistry",
    "QueryOptimizer",
    "QueryOptimizerConfig",
    "QueryResult",
    "SlowQuery",
    "TransactionExecutor",
    "bind_params",
    "cache_key",
    "create_engine_with_pool",
    "is_cacheable",
    "normalize_sql",
    "pool_snapshot",
]
