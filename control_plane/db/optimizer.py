"""
QueryOptimizer - pooled SQL execution with result caching and accounting.

Pipeline for ``query()``:
    1. Normalize the SQL (collapse whitespace, drop trailing ';')
    2. Cacheable statement? -> look up md5(normalized ":" JSON(params))
    3. Miss -> execute through the pool, using a promoted handle when the
       statement is hot (see statements.py)
    4. Record duration; over the threshold -> slow-query ring buffer and
       a ``slow_query`` event with recommendations
    5. Cache the result when it is non-empty and within the row cap

Only statements starting with SELECT and free of clock/random functions
are cached. Invalidation is by key pattern, by table (an in-process index
of the tables each cached key reads), or by TTL. Keys past their TTL are
swept from the table index every INDEX_SWEEP_SECONDS.

Placeholders:
    Named ``:name`` placeholders take a mapping. Positional ``$1..$n``
    placeholders take a sequence and are rewritten to ``:p1..:pn``.

Errors:
    Driver and pool failures surface as StoreError (``transient`` for
    connection and pool-timeout failures). Inside ``transaction()`` a
    failing statement rolls the transaction back and the original error
    propagates. Nested transactions are refused.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

import asyncpg
import structlog
from asyncpg import exceptions as pg_exc
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from control_plane.cache.backend import CacheBackend
from control_plane.db.pool import pool_snapshot
from control_plane.db.statements import PreparedHandle, PreparedStatementRegistry
from control_plane.errors import StoreError
from control_plane.events import EventBus
from control_plane.telemetry.metrics import record_query

log = structlog.get_logger(__name__)

T = TypeVar("T")

Params = Mapping[str, Any] | Sequence[Any] | None

CACHE_PREFIX = "qo:result:"
SLOW_QUERY_EVENT = "slow_query"
# How often expired keys are dropped from the table index.
INDEX_SWEEP_SECONDS = 30.0

_POSITIONAL = re.compile(r"\$(\d+)")
_TIME_SENSITIVE = re.compile(
    r"\b(now\s*\(\)|current_timestamp|current_date|random\s*\(\)|clock_timestamp\s*\(\))",
    re.IGNORECASE,
)
_LOCKING_READ = re.compile(r"\bfor\s+(update|share)\b", re.IGNORECASE)
_TABLE_REF = re.compile(r"\b(?:from|join)\s+([a-zA-Z_][\w.\"]*)", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[a-zA-Z_][\w]*$")


# ------------------------------------------------------------------ #
# Value types
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class QueryResult:
    rows: list[dict[str, Any]]
    row_count: int
    command: str
    execution_time_ms: float
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SlowQuery:
    """Payload of the ``slow_query`` event."""

    sql: str
    duration_ms: float
    row_count: int
    operation: str
    recommendations: list[str]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class BatchItemResult:
    success: bool
    result: QueryResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class IndexSuggestion:
    table: str
    column: str
    reason: str
    suggested_index: str


@dataclass
class QueryOptimizerConfig:
    cache_enabled: bool = True
    cache_ttl: int = 300
    max_cached_rows: int = 1000
    slow_query_threshold_ms: float = 1000.0
    slow_query_log_size: int = 100
    max_prepared_statements: int = 500
    prepare_threshold: int = 3

    @classmethod
    def from_settings(cls, settings: Any) -> QueryOptimizerConfig:
        return cls(
            cache_ttl=settings.query_cache_ttl,
            max_cached_rows=settings.query_cache_max_rows,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
            max_prepared_statements=settings.max_prepared_statements,
            prepare_threshold=settings.prepare_threshold,
        )


# ------------------------------------------------------------------ #
# SQL helpers
# ------------------------------------------------------------------ #


def normalize_sql(sql: str) -> str:
    return " ".join(sql.split()).rstrip(";").strip()


def bind_params(sql: str, params: Params) -> tuple[str, dict[str, Any]]:
    """Return SQL with named placeholders and the matching parameter dict."""
    if params is None:
        return sql, {}
    if isinstance(params, Mapping):
        return sql, dict(params)
    values = list(params)
    return (
        _POSITIONAL.sub(lambda m: f":p{m.group(1)}", sql),
        {f"p{i}": value for i, value in enumerate(values, start=1)},
    )


def cache_key(normalized_sql: str, params: Params) -> str:
    if params is None:
        fingerprint = "[]"
    elif isinstance(params, Mapping):
        fingerprint = json.dumps(dict(params), sort_keys=True, default=str)
    else:
        fingerprint = json.dumps(list(params), default=str)
    digest = hashlib.md5(f"{normalized_sql}:{fingerprint}".encode(), usedforsecurity=False)
    return CACHE_PREFIX + digest.hexdigest()


def is_cacheable(normalized_sql: str) -> bool:
    if not normalized_sql.lower().startswith("select"):
        return False
    if _TIME_SENSITIVE.search(normalized_sql):
        return False
    return _LOCKING_READ.search(normalized_sql) is None


def referenced_tables(normalized_sql: str) -> set[str]:
    tables = set()
    for match in _TABLE_REF.finditer(normalized_sql):
        name = match.group(1).strip('"').lower()
        tables.add(name.rsplit(".", 1)[-1])
    return tables


def query_recommendations(sql: str, duration_ms: float) -> list[str]:
    lowered = sql.lower()
    recommendations: list[str] = []
    if "select" in lowered and "where" not in lowered:
        recommendations.append("Add a WHERE clause to reduce the scanned rows")
    if "select" in lowered and "limit" not in lowered:
        recommendations.append("Add a LIMIT to bound the result set")
    if "select" in lowered and "in (" in lowered:
        recommendations.append("Consider a JOIN instead of an IN (...) subquery")
    if "where" in lowered and ("lower(" in lowered or "upper(" in lowered):
        recommendations.append("Use a functional index for case-insensitive lookups")
    if duration_ms > 10_000:
        recommendations.append("Execution time is very high; split the query into smaller ones")
    return recommendations


def _command_of(normalized_sql: str) -> str:
    head = normalized_sql.split(" ", 1)[0].upper()
    return head or "UNKNOWN"


def _status_row_count(status: str | None) -> int:
    """Rows affected from a command tag such as ``UPDATE 3`` or ``INSERT 0 1``."""
    tail = (status or "").rsplit(" ", 1)[-1]
    return int(tail) if tail.isdigit() else 0


def _store_error(exc: BaseException) -> StoreError:
    transient = isinstance(
        exc,
        (
            PoolTimeoutError,
            OperationalError,
            InterfaceError,
            OSError,
            pg_exc.InterfaceError,
            pg_exc.PostgresConnectionError,
            pg_exc.InvalidCachedStatementError,
        ),
    ) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    return StoreError(f"Database operation failed: {exc}", transient=transient)


# ------------------------------------------------------------------ #
# Optimizer
# ------------------------------------------------------------------ #


class TransactionExecutor:
    """Executes statements on the connection owned by one transaction."""

    def __init__(self, optimizer: QueryOptimizer, conn: AsyncConnection) -> None:
        self._optimizer = optimizer
        self._conn = conn

    async def query(self, sql: str, params: Params = None) -> QueryResult:
        return await self._optimizer._execute_on(self._conn, sql, params, operation="transaction")


class QueryOptimizer:
    """
    Query execution front-end shared by the API, the GDPR stores and ME.

    Example:
        qo = QueryOptimizer(engine, MemoryCacheBackend(memory.cache))
        result = await qo.query("SELECT * FROM clans WHERE id = $1", [clan_id])

        async def transfer(tx):
            await tx.query("UPDATE wallets SET balance = balance - :a WHERE id = :src", {...})
            await tx.query("UPDATE wallets SET balance = balance + :a WHERE id = :dst", {...})
        await qo.transaction(transfer)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        cache: CacheBackend | None = None,
        config: QueryOptimizerConfig | None = None,
        *,
        timer: Callable[[], float] = time.perf_counter,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self.config = config or QueryOptimizerConfig()
        self.events = EventBus("qo")
        self._timer = timer
        self._clock = clock
        self._statements = PreparedStatementRegistry(
            capacity=self.config.max_prepared_statements,
            threshold=self.config.prepare_threshold,
        )
        self._in_transaction: ContextVar[bool] = ContextVar(f"qo_tx_{id(self)}", default=False)
        self._table_index: dict[str, set[str]] = {}
        self._key_deadlines: dict[str, float] = {}
        self._next_index_sweep = 0.0
        self._slow_log: deque[SlowQuery] = deque(maxlen=self.config.slow_query_log_size)
        self._suggestions: deque[dict[str, Any]] = deque(maxlen=50)
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> dict[str, Any]:
        return {
            "total": 0,
            "cached": 0,
            "slow": 0,
            "failed": 0,
            "transactions": 0,
            "total_time_ms": 0.0,
            "by_operation": {},
        }

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # ------------------------------------------------------------------ #
    # Query
    # ------------------------------------------------------------------ #

    async def query(
        self,
        sql: str,
        params: Params = None,
        *,
        bypass_cache: bool = False,
        cache_ttl: int | None = None,
        operation: str | None = None,
    ) -> QueryResult:
        """Execute one statement, serving cacheable reads from the cache."""
        normalized = normalize_sql(sql)
        cache = self._cache
        if bypass_cache or not self.config.cache_enabled or not is_cacheable(normalized):
            cache = None
        key = cache_key(normalized, params) if cache is not None else None

        if cache is not None and key is not None:
            cached = await cache.get(key)
            if cached is not None:
                self._stats["total"] += 1
                self._stats["cached"] += 1
                record_query(cached["command"], 0.0, cached=True, slow=False)
                return QueryResult(
                    rows=cached["rows"],
                    row_count=cached["row_count"],
                    command=cached["command"],
                    execution_time_ms=0.0,
                    cached=True,
                )

        try:
            async with self._engine.begin() as conn:
                result = await self._execute_on(
                    conn, normalized, params, operation=operation, standalone=True
                )
        except (SQLAlchemyError, OSError) as exc:
            raise _store_error(exc) from exc

        if cache is not None and key is not None and 0 < result.row_count <= self.config.max_cached_rows:
            await self._store(cache, key, normalized, result, cache_ttl or self.config.cache_ttl)
        return result

    async def _execute_on(
        self,
        conn: AsyncConnection,
        sql: str,
        params: Params,
        *,
        operation: str | None,
        standalone: bool = False,
    ) -> QueryResult:
        normalized = normalize_sql(sql)
        command = _command_of(normalized)
        handle = self._statements.handle_for(normalized)

        started = self._timer()
        try:
            prepared = None
            if handle is not None:
                prepared = await self._run_prepared(conn, handle, params, standalone=standalone)
            if prepared is None:
                bound_sql, bound_params = bind_params(normalized, params)
                raw = await conn.execute(text(bound_sql), bound_params)
        except (SQLAlchemyError, OSError, pg_exc.PostgresError, pg_exc.InterfaceError) as exc:
            elapsed = (self._timer() - started) * 1000
            self._stats["failed"] += 1
            log.error(
                "qo.query_failed",
                sql=normalized[:200],
                command=command,
                execution_time_ms=round(elapsed, 2),
                error=str(exc),
            )
            raise _store_error(exc) from exc

        if prepared is not None:
            rows, row_count = prepared
        elif raw.returns_rows:
            rows = [dict(row) for row in raw.mappings().all()]
            row_count = len(rows)
        else:
            rows = []
            row_count = max(raw.rowcount, 0)
        elapsed = (self._timer() - started) * 1000

        result = QueryResult(
            rows=rows,
            row_count=row_count,
            command=command,
            execution_time_ms=round(elapsed, 3),
        )
        self._account(normalized, result, operation or command.lower())
        return result

    async def _run_prepared(
        self,
        conn: AsyncConnection,
        handle: PreparedHandle,
        params: Params,
        *,
        standalone: bool,
    ) -> tuple[list[dict[str, Any]], int] | None:
        """Execute through the handle's server-side statement.

        None when the statement has to go through ``text()`` instead: named
        parameters, a driver other than asyncpg, or a transaction whose
        BEGIN has not reached the server yet.
        """
        if isinstance(params, Mapping):
            return None
        raw_conn = await conn.get_raw_connection()
        driver = raw_conn.driver_connection
        if not isinstance(driver, asyncpg.Connection):
            return None
        if not standalone and not driver.is_in_transaction():
            return None

        statement = await handle.statement_on(driver)
        try:
            records = await statement.fetch(*(params or ()))
        except pg_exc.InvalidCachedStatementError:
            handle.discard(driver)
            raise
        self._statements.executed_prepared()

        if statement.get_attributes():
            rows = [dict(record) for record in records]
            return rows, len(rows)
        return [], _status_row_count(statement.get_statusmsg())

    async def _store(
        self, cache: CacheBackend, key: str, normalized: str, result: QueryResult, ttl: int
    ) -> None:
        payload = {"rows": result.rows, "row_count": result.row_count, "command": result.command}
        await cache.set(key, payload, ttl)
        now = self._clock()
        self._key_deadlines[key] = now + ttl
        for table in referenced_tables(normalized):
            self._table_index.setdefault(table, set()).add(key)
        if now >= self._next_index_sweep:
            self._prune_index(now)

    def _prune_index(self, now: float) -> None:
        """Forget keys whose cache entry has outlived its TTL."""
        expired = [key for key, deadline in self._key_deadlines.items() if deadline <= now]
        self._forget(expired)
        self._next_index_sweep = now + INDEX_SWEEP_SECONDS

    def _forget(self, keys: Iterable[str]) -> None:
        gone = set(keys)
        if not gone:
            return
        for key in gone:
            self._key_deadlines.pop(key, None)
        for table in list(self._table_index):
            remaining = self._table_index[table] - gone
            if remaining:
                self._table_index[table] = remaining
            else:
                del self._table_index[table]

    def _account(self, sql: str, result: QueryResult, operation: str) -> None:
        duration = result.execution_time_ms
        self._stats["total"] += 1
        self._stats["total_time_ms"] += duration
        op = self._stats["by_operation"].setdefault(operation, {"count": 0, "total_time_ms": 0.0})
        op["count"] += 1
        op["total_time_ms"] += duration

        slow = duration > self.config.slow_query_threshold_ms
        record_query(result.command, duration / 1000, cached=False, slow=slow)
        if not slow:
            return

        self._stats["slow"] += 1
        entry = SlowQuery(
            sql=sql[:500],
            duration_ms=duration,
            row_count=result.row_count,
            operation=operation,
            recommendations=query_recommendations(sql, duration),
        )
        self._slow_log.append(entry)
        log.warning(
            "qo.slow_query",
            sql=entry.sql,
            duration_ms=round(duration, 2),
            row_count=entry.row_count,
            recommendations=entry.recommendations,
        )
        self.events.emit(SLOW_QUERY_EVENT, entry)

    # ------------------------------------------------------------------ #
    # Transactions and batches
    # ------------------------------------------------------------------ #

    async def transaction(self, fn: Callable[[TransactionExecutor], Awaitable[T]]) -> T:
        """Run ``fn`` inside one transaction on a dedicated connection.

        Commits when ``fn`` returns, rolls back when it raises. The error
        raised by ``fn`` propagates unchanged.
        """
        if self._in_transaction.get():
            raise StoreError("Nested transactions are not supported")

        token = self._in_transaction.set(True)
        started = self._timer()
        try:
            async with self._engine.connect() as conn:
                async with conn.begin():
                    outcome = await fn(TransactionExecutor(self, conn))
        except (SQLAlchemyError, OSError) as exc:
            log.error("qo.transaction_failed", error=str(exc))
            raise _store_error(exc) from exc
        except Exception as exc:
            log.warning("qo.transaction_rolled_back", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            self._in_transaction.reset(token)

        self._stats["transactions"] += 1
        log.debug("qo.transaction_committed", duration_ms=round((self._timer() - started) * 1000, 2))
        return outcome

    async def batch(
        self,
        queries: Sequence[tuple[str, Params] | str],
        *,
        transactional: bool = False,
        stop_on_error: bool = False,
    ) -> list[BatchItemResult]:
        """Execute statements in order on one connection.

        Transactional batches run each item in a savepoint so a failed item
        does not poison the rest; with ``stop_on_error`` the first failure
        rolls the whole batch back and is raised.
        """
        items = [(q, None) if isinstance(q, str) else q for q in queries]
        results: list[BatchItemResult] = []

        try:
            async with self._engine.connect() as conn:
                if transactional:
                    async with conn.begin():
                        for sql, params in items:
                            try:
                                async with conn.begin_nested():
                                    result = await self._execute_on(conn, sql, params, operation="batch")
                            except StoreError as exc:
                                results.append(BatchItemResult(success=False, error=str(exc)))
                                if stop_on_error:
                                    raise
                                continue
                            results.append(BatchItemResult(success=True, result=result))
                else:
                    for sql, params in items:
                        try:
                            result = await self._execute_on(conn, sql, params, operation="batch")
                            await conn.commit()
                        except StoreError as exc:
                            await conn.rollback()
                            results.append(BatchItemResult(success=False, error=str(exc)))
                            if stop_on_error:
                                raise
                            continue
                        results.append(BatchItemResult(success=True, result=result))
        except (SQLAlchemyError, OSError) as exc:
            raise _store_error(exc) from exc

        log.debug("qo.batch_completed", size=len(items), failed=sum(1 for r in results if not r.success))
        return results

    async def rehearse(self, statements: Sequence[str]) -> None:
        """Execute statements in a transaction that is always rolled back.

        Raises StoreError naming the first failing statement.
        """
        try:
            async with self._engine.connect() as conn:
                async with conn.begin() as tx:
                    for index, statement in enumerate(statements, start=1):
                        try:
                            await conn.execute(text(normalize_sql(statement)))
                        except (SQLAlchemyError, OSError) as exc:
                            raise StoreError(f"Statement {index} failed: {exc}") from exc
                    await tx.rollback()
        except (SQLAlchemyError, OSError) as exc:
            raise _store_error(exc) from exc

    # ------------------------------------------------------------------ #
    # Plans and statistics
    # ------------------------------------------------------------------ #

    async def explain(self, sql: str, params: Params = None, *, analyze: bool = False) -> dict[str, Any]:
        """Return the JSON plan of a statement (root node plus timings)."""
        options = "ANALYZE, BUFFERS, FORMAT JSON" if analyze else "FORMAT JSON"
        result = await self.query(f"EXPLAIN ({options}) {normalize_sql(sql)}", params, bypass_cache=True)
        plan = result.rows[0]["QUERY PLAN"]
        if isinstance(plan, str):
            plan = json.loads(plan)
        return plan[0] if isinstance(plan, list) else plan

    async def suggest_indexes(self, table: str) -> list[IndexSuggestion]:
        """Suggest single-column indexes for high-cardinality, uncorrelated columns."""
        result = await self.query(
            """
            SELECT tablename, attname AS column_name, n_distinct, correlation
            FROM pg_stats
            WHERE tablename = $1
              AND n_distinct > 100
              AND abs(correlation) < 0.1
            ORDER BY n_distinct DESC
            """,
            [table],
            bypass_cache=True,
            operation="suggest_indexes",
        )
        suggestions = []
        for row in result.rows:
            column = row["column_name"]
            if not (_IDENTIFIER.match(row["tablename"]) and _IDENTIFIER.match(column)):
                continue
            suggestions.append(
                IndexSuggestion(
                    table=row["tablename"],
                    column=column,
                    reason=(
                        f"High cardinality ({row['n_distinct']}) "
                        f"with low correlation ({row['correlation']})"
                    ),
                    suggested_index=(
                        f"CREATE INDEX idx_{row['tablename']}_{column} "
                        f"ON {row['tablename']} ({column});"
                    ),
                )
            )
        return suggestions

    async def analyze_query_performance(self, limit: int = 20) -> list[dict[str, Any]]:
        """Read pg_stat_statements and record suggestions for slow statements.

        Returns an empty list when the extension is not installed.
        """
        try:
            result = await self.query(
                """
                SELECT query, calls, total_exec_time, mean_exec_time, rows,
                       100.0 * shared_blks_hit / nullif(shared_blks_hit + shared_blks_read, 0)
                           AS hit_percent
                FROM pg_stat_statements
                WHERE query NOT LIKE '%pg_stat_statements%'
                ORDER BY total_exec_time DESC
                LIMIT :limit
                """,
                {"limit": limit},
                bypass_cache=True,
                operation="analyze",
            )
        except StoreError as exc:
            log.debug("qo.analysis_unavailable", error=str(exc))
            return []

        analysed = []
        for row in result.rows:
            if (row.get("mean_exec_time") or 0) <= self.config.slow_query_threshold_ms:
                continue
            suggestions = []
            if row["mean_exec_time"] > 5000:
                suggestions += ["Add indexes for the filtered columns", "Review WHERE conditions"]
            if row.get("hit_percent") is not None and row["hit_percent"] < 95:
                suggestions.append("Buffer cache hit rate below 95%; review shared_buffers")
            if (row.get("rows") or 0) > 10_000:
                suggestions.append("Large result sets; add LIMIT clauses")
            entry = {
                "query": row["query"][:500],
                "calls": row["calls"],
                "mean_time_ms": row["mean_exec_time"],
                "suggestions": suggestions,
                "analyzed_at": datetime.now(UTC).isoformat(),
            }
            self._suggestions.append(entry)
            analysed.append(entry)
        return analysed

    def pool_health(self) -> dict[str, Any]:
        snapshot = pool_snapshot(self._engine)
        utilization = snapshot.get("utilization", 0.0)
        recommendations = []
        status = "healthy"
        if utilization > 0.8:
            status = "warning"
            recommendations.append("Pool utilization above 80%; consider increasing pool_size")
        if snapshot.get("overflow", 0) > 0:
            status = "warning"
            recommendations.append("Pool is using overflow connections; investigate slow queries")
        if "size" in snapshot and utilization < 0.2 and snapshot["size"] > 5:
            recommendations.append("Pool may be over-sized; consider reducing pool_size")
        return {**snapshot, "status": status, "recommendations": recommendations}

    def slow_queries(self, limit: int | None = None) -> list[SlowQuery]:
        entries = list(self._slow_log)
        return entries[-limit:] if limit else entries

    def performance_stats(self) -> dict[str, Any]:
        stats = self._stats
        total = stats["total"]
        executed = total - stats["cached"]
        return {
            "queries": {
                "total": total,
                "cached": stats["cached"],
                "slow": stats["slow"],
                "failed": stats["failed"],
                "transactions": stats["transactions"],
                "avg_execution_time_ms": round(stats["total_time_ms"] / executed, 3) if executed else 0.0,
                "cache_hit_rate": round(stats["cached"] / total, 4) if total else 0.0,
            },
            "by_operation": {
                name: {
                    "count": op["count"],
                    "avg_time_ms": round(op["total_time_ms"] / op["count"], 3),
                }
                for name, op in stats["by_operation"].items()
            },
            "prepared_statements": self._statements.stats(),
            "cache_index": {"tables": len(self._table_index), "keys": len(self._key_deadlines)},
            "pool": self.pool_health(),
            "recent_slow_queries": [asdict(s) for s in self.slow_queries(10)],
            "optimization_suggestions": list(self._suggestions)[-5:],
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
        self._slow_log.clear()
        self._suggestions.clear()

    # ------------------------------------------------------------------ #
    # Invalidation
    # ------------------------------------------------------------------ #

    async def invalidate_by_pattern(self, pattern: str = "*") -> int:
        """Delete cached results whose key matches a glob (``*`` clears all)."""
        if self._cache is None:
            return 0
        glob = pattern if pattern.startswith(CACHE_PREFIX) else CACHE_PREFIX + pattern
        removed = await self._cache.delete_pattern(glob)
        if glob == CACHE_PREFIX + "*":
            self._table_index.clear()
            self._key_deadlines.clear()
        log.info("qo.cache_invalidated", pattern=glob, removed=removed)
        return removed

    async def invalidate_table(self, table: str) -> int:
        """Delete every cached result that reads ``table``."""
        if self._cache is None:
            return 0
        keys = self._table_index.get(table.lower(), set())
        self._forget(keys)
        removed = await self._cache.delete_many(keys) if keys else 0
        log.info("qo.table_invalidated", table=table, removed=removed)
        return removed

    async def close(self) -> None:
        if self._cache is not None:
            await self._cache.close()
        await self._engine.dispose()
        log.info("qo.closed")
