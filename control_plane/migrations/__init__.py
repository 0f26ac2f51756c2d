"""Migration engine for the SQL and document estates.

Public API:
    MigrationEngine   - plan / validate / execute / emergency_stop / status / history
    MigrationOptions  - per-batch switches (dry_run, strategy, target_version, ...)
    VersionLedger     - where applied versions are recorded
    MigrationLock     - one batch per target version across processes
"""

from control_plane.migrations.backup import BackupProvider, NullBackupProvider, PgDumpBackupProvider
from control_plane.migrations.engine import (
    MigrationEngine,
    MigrationEngineConfig,
    StrategyHooks,
    open_document_database,
)
from control_plane.migrations.ledger import InMemoryVersionLedger, SqlVersionLedger, VersionLedger
from control_plane.migrations.lock import InMemoryMigrationLock, LockInfo, MigrationLock, RedisMigrationLock
from control_plane.migrations.models import (
    AppliedMigration,
    BatchStatus,
    ItemStatus,
    Migration,
    MigrationBatch,
    MigrationDatabase,
    MigrationItem,
    MigrationOptions,
    MigrationType,
    Strategy,
    ValidationReport,
)

__all__ = [
    "AppliedMigration",
    "BackupProvider",
    "BatchStatus",
    "InMemoryMigrationLock",
    "InMemoryVersionLedger",
    "ItemStatus",
    "LockInfo",
    "Migration",
    "MigrationBatch",
    "MigrationDatabase",
    "MigrationEngine",
    "MigrationEngineConfig",
    "MigrationItem",
    "MigrationLock",
    "MigrationOptions",
    "MigrationType",
    "NullBackupProvider",
    "PgDumpBackupProvider",
    "RedisMigrationLock",
    "SqlVersionLedger",
    "Strategy",
    "StrategyHooks",
    "ValidationReport",
    "VersionLedger",
    "open_document_database",
]
