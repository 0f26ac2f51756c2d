"""Version ledger: the current schema version plus per-migration history.

The engine writes the ledger once, after a batch has fully succeeded, so
a batch that rolled back leaves it exactly as it was.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime

import structlog

from control_plane.db import QueryOptimizer, TransactionExecutor
from control_plane.migrations.models import AppliedMigration, MigrationItem

log = structlog.get_logger(__name__)

HISTORY_COLUMNS = (
    "migration_id, database, migration_order, name, content_hash, version, "
    "batch_id, applied_at, duration_ms, outcome"
)


class VersionLedger(ABC):
    @abstractmethod
    async def ensure_schema(self) -> None: ...

    @abstractmethod
    async def current_version(self) -> int: ...

    @abstractmethod
    async def applied(self) -> dict[str, AppliedMigration]:
        """Applied migrations keyed by migration id."""

    @abstractmethod
    async def record_batch(self, batch_id: str, version: int, items: Sequence[MigrationItem]) -> None: ...

    @abstractmethod
    async def history(self, limit: int = 50) -> list[AppliedMigration]:
        """Most recent first."""


def applied_from_item(batch_id: str, version: int, item: MigrationItem, now: datetime) -> AppliedMigration:
    migration = item.migration
    return AppliedMigration(
        migration_id=migration.id,
        database=str(migration.database),
        order=migration.order,
        name=migration.name,
        content_hash=migration.content_hash,
        version=version,
        batch_id=batch_id,
        applied_at=item.finished_at or now,
        duration_ms=item.duration_ms,
        outcome=str(item.status),
    )


class SqlVersionLedger(VersionLedger):
    """Ledger kept in two tables of the SQL database itself."""

    def __init__(self, optimizer: QueryOptimizer) -> None:
        self._qo = optimizer

    async def ensure_schema(self) -> None:
        async def create(tx: TransactionExecutor) -> None:
            await tx.query(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
                    version INTEGER NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            await tx.query(
                """
                CREATE TABLE IF NOT EXISTS migration_history (
                    migration_id VARCHAR(255) PRIMARY KEY,
                    database VARCHAR(16) NOT NULL,
                    migration_order INTEGER NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    content_hash VARCHAR(64) NOT NULL,
                    version INTEGER NOT NULL,
                    batch_id VARCHAR(64) NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL,
                    duration_ms DOUBLE PRECISION,
                    outcome VARCHAR(32) NOT NULL
                )
                """
            )

        await self._qo.transaction(create)

    async def current_version(self) -> int:
        result = await self._qo.query("SELECT version FROM schema_version WHERE id = 1", bypass_cache=True)
        return int(result.rows[0]["version"]) if result.rows else 0

    async def applied(self) -> dict[str, AppliedMigration]:
        result = await self._qo.query(f"SELECT {HISTORY_COLUMNS} FROM migration_history", bypass_cache=True)
        return {row["migration_id"]: _row_to_applied(row) for row in result.rows}

    async def record_batch(self, batch_id: str, version: int, items: Sequence[MigrationItem]) -> None:
        now = datetime.now(UTC)

        async def write(tx: TransactionExecutor) -> None:
            for item in items:
                record = applied_from_item(batch_id, version, item, now)
                await tx.query(
                    f"INSERT INTO migration_history ({HISTORY_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10) "
                    "ON CONFLICT (migration_id) DO UPDATE SET content_hash = EXCLUDED.content_hash, "
                    "version = EXCLUDED.version, batch_id = EXCLUDED.batch_id, "
                    "applied_at = EXCLUDED.applied_at, duration_ms = EXCLUDED.duration_ms, "
                    "outcome = EXCLUDED.outcome",
                    [
                        record.migration_id,
                        record.database,
                        record.order,
                        record.name,
                        record.content_hash,
                        record.version,
                        record.batch_id,
                        record.applied_at,
                        record.duration_ms,
                        record.outcome,
                    ],
                )
            await tx.query(
                "INSERT INTO schema_version (id, version, updated_at) VALUES (1, $1, $2) "
                "ON CONFLICT (id) DO UPDATE SET version = EXCLUDED.version, updated_at = EXCLUDED.updated_at",
                [version, now],
            )

        await self._qo.transaction(write)
        log.info("me.ledger.recorded", batch_id=batch_id, version=version, migrations=len(items))

    async def history(self, limit: int = 50) -> list[AppliedMigration]:
        result = await self._qo.query(
            f"SELECT {HISTORY_COLUMNS} FROM migration_history "
            "ORDER BY applied_at DESC, migration_id DESC LIMIT $1",
            [limit],
            bypass_cache=True,
        )
        return [_row_to_applied(row) for row in result.rows]


def _row_to_applied(row: dict) -> AppliedMigration:
    return AppliedMigration(
        migration_id=row["migration_id"],
        database=row["database"],
        order=int(row["migration_order"]),
        name=row["name"],
        content_hash=row["content_hash"],
        version=int(row["version"]),
        batch_id=row["batch_id"],
        applied_at=row["applied_at"],
        duration_ms=row.get("duration_ms"),
        outcome=row["outcome"],
    )


class InMemoryVersionLedger(VersionLedger):
    def __init__(self, version: int = 0) -> None:
        self._version = version
        self._applied: dict[str, AppliedMigration] = {}

    async def ensure_schema(self) -> None:
        return None

    async def current_version(self) -> int:
        return self._version

    async def applied(self) -> dict[str, AppliedMigration]:
        return dict(self._applied)

    async def record_batch(self, batch_id: str, version: int, items: Sequence[MigrationItem]) -> None:
        now = datetime.now(UTC)
        for item in items:
            self._applied[item.migration.id] = applied_from_item(batch_id, version, item, now)
        self._version = version

    async def history(self, limit: int = 50) -> list[AppliedMigration]:
        ordered = sorted(self._applied.values(), key=lambda a: (a.applied_at, a.migration_id), reverse=True)
        return ordered[:limit]
