"""Migration domain types: files, batches, options and event payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


class MigrationDatabase(StrEnum):
    SQL = "sql"
    DOC = "doc"
    SHARED = "shared"


class MigrationType(StrEnum):
    SCHEMA = "schema"
    DATA = "data"
    INDEX = "index"
    CONSTRAINT = "constraint"
    TRIGGER = "trigger"
    FUNCTION = "function"
    VIEW = "view"
    SEED = "seed"
    CLEANUP = "cleanup"


class ItemStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class BatchStatus(StrEnum):
    PENDING = "pending"
    VALIDATING = "validating"
    BACKING_UP = "backing_up"
    MIGRATING = "migrating"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class Strategy(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ROLLING = "rolling"
    BLUE_GREEN = "blue_green"
    SHADOW = "shadow"
    CANARY = "canary"


@dataclass
class Migration:
    """One forward script discovered on disk."""

    order: int
    name: str
    database: MigrationDatabase
    path: Path
    content_hash: str
    content: str = field(repr=False)
    rollback_path: Path | None = None
    dependencies: list[str] = field(default_factory=list)
    type: MigrationType = MigrationType.DATA
    size: int = 0
    estimated_duration_ms: int = 1000
    breaking: bool = False

    @property
    def stem(self) -> str:
        return f"{self.order:03d}_{self.name}"

    @property
    def id(self) -> str:
        return f"{self.database}:{self.stem}"

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def has_rollback(self) -> bool:
        if self.rollback_path is not None:
            return True
        # Document scripts carry their own down(db).
        return self.database == MigrationDatabase.DOC and "def down" in self.content

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order,
            "name": self.name,
            "database": str(self.database),
            "file": str(self.path),
            "rollbackFile": str(self.rollback_path) if self.rollback_path else None,
            "contentHash": self.content_hash,
            "dependencies": list(self.dependencies),
            "type": str(self.type),
            "size": self.size,
            "estimatedDurationMs": self.estimated_duration_ms,
            "breaking": self.breaking,
        }


@dataclass
class MigrationItem:
    migration: Migration
    status: ItemStatus = ItemStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.migration.id,
            "status": str(self.status),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass
class MigrationBatch:
    target_version: int
    strategy: Strategy
    items: list[MigrationItem]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: BatchStatus = BatchStatus.PENDING
    backup_handle: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    failed_item: str | None = None
    critical: bool = False
    message: str | None = None

    @property
    def completed_items(self) -> list[MigrationItem]:
        return [item for item in self.items if item.status == ItemStatus.COMPLETED]

    @property
    def progress(self) -> float:
        if not self.items:
            return 100.0
        done = sum(1 for item in self.items if item.status in (ItemStatus.COMPLETED, ItemStatus.SKIPPED))
        return round(done / len(self.items) * 100, 1)

    def summary(self) -> dict[str, Any]:
        return {
            "batchId": self.id,
            "targetVersion": self.target_version,
            "strategy": str(self.strategy),
            "status": str(self.status),
            "backupHandle": self.backup_handle,
            "failedItem": self.failed_item,
            "critical": self.critical,
            "message": self.message,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "progress": self.progress,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class MigrationOptions:
    validate_only: bool = False
    skip_backup: bool = False
    skip_tests: bool = False
    dry_run: bool = False
    strategy: Strategy = Strategy.SEQUENTIAL
    target_version: int | None = None


@dataclass
class ValidationReport:
    migration_id: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class AppliedMigration:
    """One row of the version ledger's history."""

    migration_id: str
    database: str
    order: int
    name: str
    content_hash: str
    version: int
    batch_id: str
    applied_at: datetime
    duration_ms: float | None = None
    outcome: str = "completed"


# ------------------------------------------------------------------ #
# Event payloads
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class BatchStatusChanged:
    batch_id: str
    status: BatchStatus
    previous: BatchStatus


@dataclass(frozen=True)
class ProgressUpdate:
    batch_id: str
    progress: float
    completed: int
    total: int
    status: BatchStatus


@dataclass(frozen=True)
class MigrationFailed:
    batch_id: str
    migration_id: str
    error: str


@dataclass(frozen=True)
class HealthCheck:
    batch_id: str
    healthy: bool
    checks: dict[str, bool]


@dataclass(frozen=True)
class MaintenanceWindow:
    batch_id: str
    active: bool
