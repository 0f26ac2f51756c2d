"""
Tests for the query optimizer.

Uses a fake AsyncEngine that records executed SQL, so caching, statement
promotion, transactions and accounting are verified without PostgreSQL.
"""

from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from sqlalchemy.exc import OperationalError

from control_plane.cache import MemoryCacheBackend
from control_plane.db import (
    PreparedStatementRegistry,
    QueryOptimizer,
    QueryOptimizerConfig,
    bind_params,
    cache_key,
    is_cacheable,
    normalize_sql,
)
from control_plane.db.optimizer import SLOW_QUERY_EVENT
from control_plane.errors import StoreError
from control_plane.performance.lru import LRUCache

# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeResult:
    def __init__(self, rows: list[dict[str, Any]] | None = None, rowcount: int = -1) -> None:
        self._rows = rows
        self.returns_rows = rows is not None
        self.rowcount = rowcount

    def mappings(self) -> MagicMock:
        mapping = MagicMock()
        mapping.all.return_value = self._rows
        return mapping


class FakeConnection:
    def __init__(self, engine: FakeEngine) -> None:
        self._engine = engine

    async def get_raw_connection(self) -> SimpleNamespace:
        return SimpleNamespace(driver_connection=self._engine.driver)

    async def execute(self, clause: Any, params: dict[str, Any] | None = None) -> FakeResult:
        sql = str(clause)
        self._engine.executed.append((sql, params or {}))
        outcome = self._engine.responder(sql, params or {})
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @asynccontextmanager
    async def begin(self):
        try:
            yield self
        except BaseException:
            self._engine.rollbacks += 1
            raise
        self._engine.commits += 1


class FakeEngine:
    def __init__(self, responder=None) -> None:
        self.responder = responder or (lambda sql, params: FakeResult([]))
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.commits = 0
        self.rollbacks = 0
        self.pool = object()
        self.driver: Any = object()
        self.dispose = AsyncMock()

    @asynccontextmanager
    async def begin(self):
        conn = FakeConnection(self)
        async with conn.begin():
            yield conn

    @asynccontextmanager
    async def connect(self):
        yield FakeConnection(self)



def prepared_statement(rows: list[dict[str, Any]] | None = None, status: str = "SELECT 1") -> MagicMock:
    """Stand-in for asyncpg's PreparedStatement."""
    statement = MagicMock()
    statement.fetch = AsyncMock(return_value=rows or [])
    statement.get_attributes.return_value = tuple(rows[0]) if rows else ()
    statement.get_statusmsg.return_value = status
    return statement


class FakeDriver(asyncpg.Connection):
    """Real ``asyncpg.Connection`` subtype, so ``isinstance`` checks see it."""

    def __del__(self) -> None:
        pass


def asyncpg_driver(statement: MagicMock) -> FakeDriver:
    driver = FakeDriver.__new__(FakeDriver)
    driver.prepare = AsyncMock(return_value=statement)
    driver.is_in_transaction = MagicMock(return_value=True)
    return driver


CLAN_ROWS = [{"id": 1, "name": "Wolves"}, {"id": 2, "name": "Ravens"}]


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(lambda sql, params: FakeResult(list(CLAN_ROWS)))


@pytest.fixture
def optimizer(engine: FakeEngine) -> QueryOptimizer:
    return QueryOptimizer(engine, MemoryCacheBackend(LRUCache(max_size=100)), QueryOptimizerConfig())


# ------------------------------------------------------------------ #
# SQL helpers
# ------------------------------------------------------------------ #


class TestSqlHelpers:
    def test_normalize_collapses_whitespace_and_semicolon(self):
        assert normalize_sql("  SELECT *\n   FROM clans\t WHERE id = 1; ") == "SELECT * FROM clans WHERE id = 1"

    def test_positional_placeholders_rewritten(self):
        sql, params = bind_params("SELECT * FROM clans WHERE id = $1 AND tag = $2", [7, "WLF"])
        assert sql == "SELECT * FROM clans WHERE id = :p1 AND tag = :p2"
        assert params == {"p1": 7, "p2": "WLF"}

    def test_named_placeholders_pass_through(self):
        sql, params = bind_params("SELECT * FROM clans WHERE id = :id", {"id": 7})
        assert sql == "SELECT * FROM clans WHERE id = :id"
        assert params == {"id": 7}

    def test_cache_key_depends_on_params(self):
        sql = "SELECT * FROM clans WHERE id = $1"
        assert cache_key(sql, [1]) == cache_key(sql, [1])
        assert cache_key(sql, [1]) != cache_key(sql, [2])
        assert cache_key(sql, [1]).startswith("qo:result:")

    @pytest.mark.parametrize(
        "sql,expected",
        [
            ("SELECT * FROM clans", True),
            ("select id from players where id = 1", True),
            ("SELECT * FROM sessions WHERE expires_at > NOW()", False),
            ("SELECT * FROM wallets WHERE id = 1 FOR UPDATE", False),
            ("SELECT random() AS r", False),
            ("UPDATE clans SET name = 'x'", False),
        ],
    )
    def test_cacheable_statements(self, sql: str, expected: bool):
        assert is_cacheable(sql) is expected


# ------------------------------------------------------------------ #
# Cached reads
# ------------------------------------------------------------------ #


class TestCachedReads:
    @pytest.mark.asyncio
    async def test_repeated_read_served_from_cache(self, optimizer: QueryOptimizer, engine: FakeEngine):
        first = await optimizer.query("SELECT * FROM clans WHERE region = $1", ["eu"])
        second = await optimizer.query("SELECT * FROM clans WHERE region = $1", ["eu"])

        assert first.cached is False
        assert first.row_count == 2
        assert second.cached is True
        assert second.execution_time_ms == 0.0
        assert second.rows == first.rows
        assert len(engine.executed) == 1

        stats = optimizer.performance_stats()
        assert stats["queries"]["total"] == 2
        assert stats["queries"]["cached"] == 1
        assert stats["queries"]["cache_hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_different_params_miss_cache(self, optimizer: QueryOptimizer, engine: FakeEngine):
        await optimizer.query("SELECT * FROM clans WHERE region = $1", ["eu"])
        await optimizer.query("SELECT * FROM clans WHERE region = $1", ["na"])
        assert len(engine.executed) == 2

    @pytest.mark.asyncio
    async def test_empty_results_not_cached(self):
        engine = FakeEngine()
        optimizer = QueryOptimizer(engine, MemoryCacheBackend(LRUCache()))

        await optimizer.query("SELECT * FROM clans WHERE id = 99")
        await optimizer.query("SELECT * FROM clans WHERE id = 99")

        assert len(engine.executed) == 2

    @pytest.mark.asyncio
    async def test_bypass_cache_always_executes(self, optimizer: QueryOptimizer, engine: FakeEngine):
        await optimizer.query("SELECT * FROM clans")
        result = await optimizer.query("SELECT * FROM clans", bypass_cache=True)
        assert result.cached is False
        assert len(engine.executed) == 2

    @pytest.mark.asyncio
    async def test_writes_not_cached(self):
        engine = FakeEngine(lambda sql, params: FakeResult(rowcount=3))
        optimizer = QueryOptimizer(engine, MemoryCacheBackend(LRUCache()))

        result = await optimizer.query("UPDATE clans SET active = false WHERE region = $1", ["eu"])

        assert result.command == "UPDATE"
        assert result.row_count == 3
        assert result.rows == []

    @pytest.mark.asyncio
    async def test_invalidate_table_drops_dependent_results(
        self, optimizer: QueryOptimizer, engine: FakeEngine
    ):
        await optimizer.query("SELECT c.* FROM clans c JOIN members m ON m.clan_id = c.id")
        removed = await optimizer.invalidate_table("members")
        await optimizer.query("SELECT c.* FROM clans c JOIN members m ON m.clan_id = c.id")

        assert removed == 1
        assert len(engine.executed) == 2

    @pytest.mark.asyncio
    async def test_invalidate_by_pattern_clears_all(self, optimizer: QueryOptimizer, engine: FakeEngine):
        await optimizer.query("SELECT * FROM clans")
        await optimizer.query("SELECT * FROM members")

        removed = await optimizer.invalidate_by_pattern("*")

        assert removed == 2
        await optimizer.query("SELECT * FROM clans")
        assert len(engine.executed) == 3

    @pytest.mark.asyncio
    async def test_no_cache_backend(self, engine: FakeEngine):
        optimizer = QueryOptimizer(engine)
        await optimizer.query("SELECT * FROM clans")
        await optimizer.query("SELECT * FROM clans")
        assert len(engine.executed) == 2
        assert await optimizer.invalidate_table("clans") == 0

    @pytest.mark.asyncio
    async def test_expired_keys_swept_from_table_index(self, engine: FakeEngine):
        now = [0.0]
        optimizer = QueryOptimizer(
            engine,
            MemoryCacheBackend(LRUCache(max_size=100)),
            QueryOptimizerConfig(cache_ttl=10),
            clock=lambda: now[0],
        )

        await optimizer.query("SELECT * FROM clans")
        assert optimizer.performance_stats()["cache_index"] == {"tables": 1, "keys": 1}

        now[0] = 45.0
        await optimizer.query("SELECT * FROM members")

        assert optimizer.performance_stats()["cache_index"] == {"tables": 1, "keys": 1}
        assert await optimizer.invalidate_table("clans") == 0

    @pytest.mark.asyncio
    async def test_invalidate_table_forgets_key_under_every_table(self, optimizer: QueryOptimizer):
        await optimizer.query("SELECT c.* FROM clans c JOIN members m ON m.clan_id = c.id")
        assert optimizer.performance_stats()["cache_index"] == {"tables": 2, "keys": 1}

        await optimizer.invalidate_table("members")

        assert optimizer.performance_stats()["cache_index"] == {"tables": 0, "keys": 0}

    @pytest.mark.asyncio
    async def test_clear_all_empties_table_index(self, optimizer: QueryOptimizer):
        await optimizer.query("SELECT * FROM clans")
        await optimizer.invalidate_by_pattern("*")
        assert optimizer.performance_stats()["cache_index"] == {"tables": 0, "keys": 0}


# ------------------------------------------------------------------ #
# Failures and slow queries
# ------------------------------------------------------------------ #


class TestFailures:
    @pytest.mark.asyncio
    async def test_driver_error_becomes_transient_store_error(self):
        def refuse(sql, params):
            return OperationalError(sql, params, ConnectionRefusedError("connection refused"))

        optimizer = QueryOptimizer(FakeEngine(refuse))

        with pytest.raises(StoreError) as exc_info:
            await optimizer.query("SELECT * FROM clans")

        assert exc_info.value.transient is True
        assert optimizer.performance_stats()["queries"]["failed"] == 1


class TestSlowQueries:
    @pytest.mark.asyncio
    async def test_slow_query_logged_and_emitted(self, engine: FakeEngine):
        ticks = itertools.count(step=2.5)
        optimizer = QueryOptimizer(
            engine,
            config=QueryOptimizerConfig(slow_query_threshold_ms=1000),
            timer=lambda: next(ticks),
        )
        seen = []
        optimizer.events.on(SLOW_QUERY_EVENT, seen.append)

        await optimizer.query("SELECT * FROM clans")

        slow = optimizer.slow_queries(5)
        assert len(slow) == 1
        assert slow[0].duration_ms == 2500.0
        assert "Add a WHERE clause to reduce the scanned rows" in slow[0].recommendations
        assert "Add a LIMIT to bound the result set" in slow[0].recommendations
        assert seen == slow
        assert optimizer.performance_stats()["queries"]["slow"] == 1

    @pytest.mark.asyncio
    async def test_fast_queries_not_logged(self, optimizer: QueryOptimizer):
        await optimizer.query("SELECT * FROM clans WHERE id = 1 LIMIT 1")
        assert optimizer.slow_queries() == []


# ------------------------------------------------------------------ #
# Transactions
# ------------------------------------------------------------------ #


class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit_on_success(self, engine: FakeEngine):
        optimizer = QueryOptimizer(engine)

        async def transfer(tx):
            await tx.query("UPDATE wallets SET balance = balance - 5 WHERE id = $1", ["a"])
            await tx.query("UPDATE wallets SET balance = balance + 5 WHERE id = $1", ["b"])
            return "done"

        assert await optimizer.transaction(transfer) == "done"
        assert engine.commits == 1
        assert engine.rollbacks == 0
        assert len(engine.executed) == 2
        assert optimizer.performance_stats()["queries"]["transactions"] == 1

    @pytest.mark.asyncio
    async def test_rollback_propagates_original_error(self, engine: FakeEngine):
        optimizer = QueryOptimizer(engine)

        async def failing(tx):
            await tx.query("UPDATE wallets SET balance = 0 WHERE id = $1", ["a"])
            raise ValueError("insufficient funds")

        with pytest.raises(ValueError, match="insufficient funds"):
            await optimizer.transaction(failing)

        assert engine.rollbacks == 1
        assert engine.commits == 0

    @pytest.mark.asyncio
    async def test_nested_transaction_refused(self, engine: FakeEngine):
        optimizer = QueryOptimizer(engine)

        async def outer(tx):
            return await optimizer.transaction(lambda inner: inner.query("SELECT 1"))

        with pytest.raises(StoreError, match="Nested transactions"):
            await optimizer.transaction(outer)


# ------------------------------------------------------------------ #
# Statement promotion, pool health and shutdown
# ------------------------------------------------------------------ #


class TestPreparedStatements:
    def test_promoted_after_threshold(self):
        registry = PreparedStatementRegistry(capacity=10, threshold=2)
        sql = "SELECT * FROM clans WHERE id = $1"

        assert registry.handle_for(sql) is None
        assert registry.handle_for(sql) is None
        promoted = registry.handle_for(sql)

        assert promoted is not None
        assert promoted.name == "stmt_0"
        assert registry.handle_for(sql) is promoted
        assert promoted.use_count == 4

    @pytest.mark.asyncio
    async def test_demotion_drops_connection_statements(self):
        registry = PreparedStatementRegistry(capacity=1, threshold=0)
        driver = asyncpg_driver(MagicMock())
        first = registry.handle_for("SELECT 1")
        await first.statement_on(driver)
        assert first.connections == 1

        registry.handle_for("SELECT 2")

        assert registry.get("SELECT 1") is None
        assert registry.get("SELECT 2") is not None
        assert first.connections == 0
        assert registry.stats()["demotions"] == 1

    @pytest.mark.asyncio
    async def test_hot_statement_executes_on_server_side_plan(self, engine: FakeEngine):
        statement = prepared_statement(rows=[{"id": 1, "name": "Wolves"}])
        engine.driver = asyncpg_driver(statement)
        qo = QueryOptimizer(engine, None, QueryOptimizerConfig(prepare_threshold=2))

        results = [await qo.query("SELECT * FROM clans WHERE id = $1", [1]) for _ in range(4)]

        assert len(engine.executed) == 2
        engine.driver.prepare.assert_awaited_once_with("SELECT * FROM clans WHERE id = $1")
        assert statement.fetch.await_count == 2
        statement.fetch.assert_awaited_with(1)
        assert results[-1].rows == [{"id": 1, "name": "Wolves"}]
        assert qo.performance_stats()["prepared_statements"]["prepared_executions"] == 2

    @pytest.mark.asyncio
    async def test_write_row_count_from_command_tag(self, engine: FakeEngine):
        statement = prepared_statement(status="UPDATE 3")
        engine.driver = asyncpg_driver(statement)
        qo = QueryOptimizer(engine, None, QueryOptimizerConfig(prepare_threshold=0))

        result = await qo.query("UPDATE clans SET tag = $1 WHERE region = $2", ["EU", "west"])

        assert result.row_count == 3
        assert result.rows == []
        statement.fetch.assert_awaited_once_with("EU", "west")
        assert engine.executed == []

    @pytest.mark.asyncio
    async def test_transaction_waits_for_server_side_begin(self, engine: FakeEngine):
        statement = prepared_statement(status="UPDATE 1")
        engine.driver = asyncpg_driver(statement)
        engine.driver.is_in_transaction.side_effect = [False, True]
        qo = QueryOptimizer(engine, None, QueryOptimizerConfig(prepare_threshold=0))

        async def work(tx):
            await tx.query("UPDATE clans SET tag = $1 WHERE id = $2", ["EU", 1])
            await tx.query("UPDATE clans SET tag = $1 WHERE id = $2", ["NA", 2])

        await qo.transaction(work)

        assert len(engine.executed) == 1
        statement.fetch.assert_awaited_once_with("NA", 2)

    @pytest.mark.asyncio
    async def test_named_parameters_stay_on_text_path(self, engine: FakeEngine):
        engine.driver = asyncpg_driver(prepared_statement())
        qo = QueryOptimizer(engine, None, QueryOptimizerConfig(prepare_threshold=0))

        await qo.query("SELECT * FROM clans WHERE id = :id", {"id": 1})

        assert engine.executed == [("SELECT * FROM clans WHERE id = :id", {"id": 1})]
        engine.driver.prepare.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_drivers_use_text_path(self, optimizer: QueryOptimizer, engine: FakeEngine):
        for _ in range(5):
            await optimizer.query("SELECT * FROM clans WHERE id = $1", [1], bypass_cache=True)

        assert len(engine.executed) == 5
        assert optimizer.performance_stats()["prepared_statements"]["promotions"] == 1
        assert optimizer.performance_stats()["prepared_statements"]["prepared_executions"] == 0


class TestPoolAndClose:
    def test_pool_health_for_unsized_pool(self, optimizer: QueryOptimizer):
        health = optimizer.pool_health()
        assert health["status"] == "healthy"
        assert health["recommendations"] == []
        assert health["poolclass"] == "object"

    @pytest.mark.asyncio
    async def test_close_releases_cache_and_engine(self, engine: FakeEngine):
        cache = AsyncMock()
        optimizer = QueryOptimizer(engine, cache)

        await optimizer.close()

        cache.close.assert_awaited_once()
        engine.dispose.assert_awaited_once()
