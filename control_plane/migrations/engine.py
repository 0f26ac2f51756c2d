"""
MigrationEngine - moves the SQL and document estates to a target version.

Batch lifecycle:
    pending -> validating -> backing_up -> migrating -> testing -> completed
    any failure during migrating/testing -> rolling_back -> rolled_back
    a rollback that itself fails           -> failed (critical)
    emergency_stop()                       -> rolling_back -> cancelled

Rollback runs the rollback scripts of the items that already completed,
in reverse order. Items without a rollback script are restored from the
batch backup when one was taken.

The version ledger is only written after verification passed, so a batch
that did not complete leaves the recorded version and history untouched.

Only one batch runs at a time: in-process through ``_active`` and across
processes through the migration lock keyed by target version.
"""

from __future__ import annotations

import asyncio
import importlib.util
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import ModuleType
from typing import Any

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from control_plane.db import QueryOptimizer, TransactionExecutor
from control_plane.errors import LockAcquisitionError, MigrationError, ValidationError
from control_plane.events import EventBus
from control_plane.migrations.backup import BackupProvider, NullBackupProvider
from control_plane.migrations.discovery import content_hash, discover, split_sql_statements
from control_plane.migrations.ledger import VersionLedger
from control_plane.migrations.lock import MigrationLock
from control_plane.migrations.models import (
    BatchStatus,
    BatchStatusChanged,
    HealthCheck,
    ItemStatus,
    MaintenanceWindow,
    Migration,
    MigrationBatch,
    MigrationDatabase,
    MigrationFailed,
    MigrationItem,
    MigrationOptions,
    ProgressUpdate,
    Strategy,
    ValidationReport,
)
from control_plane.migrations.planner import order_migrations, parallel_groups, validate_graph
from control_plane.migrations.validation import MigrationValidator
from control_plane.telemetry.logging import bind_batch_context
from control_plane.telemetry.metrics import record_migration_item

log = structlog.get_logger(__name__)

BatchHook = Callable[[MigrationBatch], Awaitable[None]]


@dataclass
class StrategyHooks:
    """Callbacks run around the migrating phase of a strategy."""

    before: BatchHook | None = None
    after: BatchHook | None = None


@dataclass
class MigrationEngineConfig:
    directories: dict[MigrationDatabase, Path | None] = field(default_factory=dict)
    max_concurrent: int = 3
    item_timeout: float = 1800.0
    validation_timeout: float = 300.0
    rollback_timeout: float = 900.0
    lock_ttl_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: Any) -> MigrationEngineConfig:
        return cls(
            directories={
                MigrationDatabase.SQL: Path(settings.migrations_sql_dir),
                MigrationDatabase.DOC: Path(settings.migrations_doc_dir),
                MigrationDatabase.SHARED: Path(settings.migrations_shared_dir),
            },
            max_concurrent=settings.migrations_max_concurrent,
            item_timeout=settings.migration_timeout_seconds,
            validation_timeout=settings.migration_validation_timeout_seconds,
            rollback_timeout=settings.migration_rollback_timeout_seconds,
            lock_ttl_seconds=settings.migration_lock_ttl_seconds,
        )


def open_document_database(url: str, name: str) -> AsyncIOMotorDatabase:
    """Document database handle used by doc and shared migrations."""
    return AsyncIOMotorClient(url, serverSelectionTimeoutMS=5000)[name]


def _load_script(path: Path, database: MigrationDatabase) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"_migration_{database}_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise MigrationError(f"Cannot load migration script {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class _EmergencyStopped(MigrationError):
    pass


class MigrationEngine:
    """
    Plans, validates, executes, verifies and rolls back migration batches.

    Events (payload):
        migration_started    MigrationItem
        migration_completed  MigrationItem
        migration_failed     MigrationFailed
        batch_status_changed BatchStatusChanged
        batch_completed      dict (MigrationBatch.summary())
        progress_update      ProgressUpdate
        health_check         HealthCheck
        maintenance_window   MaintenanceWindow
        emergency_stop       dict with batchId
    """

    def __init__(
        self,
        optimizer: QueryOptimizer,
        ledger: VersionLedger,
        lock: MigrationLock,
        *,
        doc_db: Any = None,
        backup: BackupProvider | None = None,
        config: MigrationEngineConfig | None = None,
        hooks: Mapping[Strategy, StrategyHooks] | None = None,
        validator: MigrationValidator | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._qo = optimizer
        self._ledger = ledger
        self._lock = lock
        self._doc_db = doc_db
        self._backup = backup or NullBackupProvider()
        self.config = config or MigrationEngineConfig()
        self._hooks = dict(hooks or {})
        self._validator = validator or MigrationValidator(optimizer)
        self._clock = clock
        self.events = EventBus("me")
        self._active: MigrationBatch | None = None
        self._stop_requested = False
        self._last_batch: MigrationBatch | None = None

    # ------------------------------------------------------------------ #
    # Planning
    # ------------------------------------------------------------------ #

    def discover(self) -> list[Migration]:
        return discover(self.config.directories)

    async def plan(self, target_version: int | None = None) -> list[Migration]:
        """Pending migrations up to ``target_version``, in execution order."""
        discovered = self.discover()
        applied = await self._ledger.applied()
        return self._pending(discovered, applied, self._resolve_target(discovered, target_version))

    @staticmethod
    def _resolve_target(discovered: Sequence[Migration], target_version: int | None) -> int:
        if target_version is not None:
            return target_version
        return max((m.order for m in discovered), default=0)

    @staticmethod
    def _pending(discovered: Sequence[Migration], applied: Mapping[str, Any], target: int) -> list[Migration]:
        candidates = [m for m in discovered if m.id not in applied and m.order <= target]
        return order_migrations(candidates)

    async def validate(self, target_version: int | None = None) -> list[ValidationReport]:
        """Validate pending migrations without executing anything."""
        discovered = self.discover()
        applied = await self._ledger.applied()
        pending = self._pending(discovered, applied, self._resolve_target(discovered, target_version))
        return await self._validate(pending, discovered, applied)

    async def _validate(
        self,
        pending: Sequence[Migration],
        discovered: Sequence[Migration],
        applied: Mapping[str, Any],
    ) -> list[ValidationReport]:
        async with asyncio.timeout(self.config.validation_timeout):
            reports = await self._validator.validate(
                pending,
                known=discovered,
                applied_hashes={mid: record.content_hash for mid, record in applied.items()},
            )
        graph_errors = validate_graph(discovered)
        if graph_errors:
            reports.append(ValidationReport(migration_id="<graph>", errors=graph_errors))
        return reports

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute(self, options: MigrationOptions | None = None) -> MigrationBatch:
        """Run one batch to completion.

        Returns the completed batch. Raises ValidationError when pre-flight
        checks fail, LockAcquisitionError when another batch holds the lock
        and MigrationError (with ``batch`` attached) when execution failed.
        """
        options = options or MigrationOptions()
        if self._active is not None:
            raise LockAcquisitionError("migration:active", f"Batch {self._active.id} is already in progress")

        placeholder = MigrationBatch(target_version=-1, strategy=options.strategy, items=[])
        self._active = placeholder
        self._stop_requested = False
        try:
            await self._ledger.ensure_schema()
            discovered = self.discover()
            applied = await self._ledger.applied()
            target = self._resolve_target(discovered, options.target_version)
            pending = self._pending(discovered, applied, target)
            batch = MigrationBatch(
                target_version=target,
                strategy=options.strategy,
                items=[MigrationItem(migration=m) for m in pending],
            )
            self._active = batch
            bind_batch_context(batch.id, target)

            async with self._lock.acquire(f"migration:{target}", ttl_seconds=self.config.lock_ttl_seconds):
                return await self._run(batch, options, discovered, applied)
        finally:
            if self._active is not placeholder:
                self._last_batch = self._active
            self._active = None

    async def _run(
        self,
        batch: MigrationBatch,
        options: MigrationOptions,
        discovered: Sequence[Migration],
        applied: Mapping[str, Any],
    ) -> MigrationBatch:
        log.info(
            "me.batch_started",
            pending=len(batch.items),
            strategy=str(batch.strategy),
            dry_run=options.dry_run,
        )
        if not batch.items:
            batch.message = "Nothing to migrate"
            self._finish(batch, BatchStatus.COMPLETED)
            return batch

        self._set_status(batch, BatchStatus.VALIDATING)
        reports = await self._validate([item.migration for item in batch.items], discovered, applied)
        errors = [f"{r.migration_id}: {e}" for r in reports for e in r.errors]
        for report in reports:
            for warning in report.warnings:
                log.warning("me.validation_warning", migration=report.migration_id, warning=warning)
        if errors:
            batch.message = f"Validation failed with {len(errors)} error(s)"
            self._finish(batch, BatchStatus.FAILED)
            raise ValidationError(batch.message, errors=errors)
        if options.validate_only:
            batch.message = "Validation only"
            self._finish(batch, BatchStatus.COMPLETED)
            return batch

        if not options.skip_backup and not options.dry_run:
            self._set_status(batch, BatchStatus.BACKING_UP)
            try:
                batch.backup_handle = await self._backup.create(batch.id)
            except MigrationError as exc:
                batch.message = f"Backup failed: {exc}"
                self._finish(batch, BatchStatus.FAILED)
                raise MigrationError(batch.message, batch=batch) from exc

        hooks = self._hooks.get(batch.strategy, StrategyHooks())
        try:
            self._set_status(batch, BatchStatus.MIGRATING)
            if hooks.before is not None:
                await hooks.before(batch)
            await self._run_strategy(batch, dry_run=options.dry_run)

            if not options.skip_tests and not options.dry_run:
                self._set_status(batch, BatchStatus.TESTING)
                await self._verify(batch)

            if hooks.after is not None:
                await hooks.after(batch)
            # Last step: anything that raises before this leaves the ledger untouched.
            if not options.dry_run:
                await self._ledger.record_batch(batch.id, batch.target_version, batch.completed_items)
        except Exception as exc:
            await self._handle_failure(batch, exc, dry_run=options.dry_run)
            raise MigrationError(
                batch.message or str(exc),
                migration=batch.failed_item,
                critical=batch.critical,
                batch=batch,
            ) from exc

        batch.message = "Dry run completed" if options.dry_run else f"Migrated to version {batch.target_version}"
        self._finish(batch, BatchStatus.COMPLETED)
        return batch

    async def _run_strategy(self, batch: MigrationBatch, *, dry_run: bool) -> None:
        match batch.strategy:
            case Strategy.PARALLEL:
                by_id = {item.migration.id: item for item in batch.items}
                groups = parallel_groups([item.migration for item in batch.items])
                for group in groups:
                    await self._run_group(batch, [by_id[m.id] for m in group], dry_run=dry_run)
                    await self.health_check(batch)
            case Strategy.ROLLING:
                compatible = [item for item in batch.items if not item.migration.breaking]
                breaking = [item for item in batch.items if item.migration.breaking]
                await self._run_sequential(batch, compatible, dry_run=dry_run)
                if breaking:
                    self.events.emit("maintenance_window", MaintenanceWindow(batch_id=batch.id, active=True))
                    log.warning("me.maintenance_window_opened", breaking=len(breaking))
                    try:
                        await self._run_sequential(batch, breaking, dry_run=dry_run)
                    finally:
                        self.events.emit("maintenance_window", MaintenanceWindow(batch_id=batch.id, active=False))
                        log.info("me.maintenance_window_closed")
            case _:
                await self._run_sequential(batch, batch.items, dry_run=dry_run)

    async def _run_sequential(self, batch: MigrationBatch, items: Sequence[MigrationItem], *, dry_run: bool) -> None:
        for item in items:
            self._check_stop()
            await self._run_item(batch, item, dry_run=dry_run)

    async def _run_group(self, batch: MigrationBatch, items: Sequence[MigrationItem], *, dry_run: bool) -> None:
        self._check_stop()
        semaphore = asyncio.Semaphore(self.config.max_concurrent)
        failed = False

        async def worker(item: MigrationItem) -> None:
            nonlocal failed
            async with semaphore:
                if failed or self._stop_requested:
                    item.status = ItemStatus.SKIPPED
                    return
                try:
                    await self._run_item(batch, item, dry_run=dry_run)
                except MigrationError:
                    failed = True
                    raise

        outcomes = await asyncio.gather(*(worker(item) for item in items), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        self._check_stop()

    async def _run_item(self, batch: MigrationBatch, item: MigrationItem, *, dry_run: bool) -> None:
        migration = item.migration
        item.status = ItemStatus.RUNNING
        item.started_at = datetime.now(UTC)
        self.events.emit("migration_started", item)
        log.info("me.migration_started", migration=migration.id, type=str(migration.type))

        started = self._clock()
        try:
            async with asyncio.timeout(self.config.item_timeout):
                applied = await self._apply(migration, dry_run=dry_run)
        except Exception as exc:
            item.status = ItemStatus.FAILED
            item.finished_at = datetime.now(UTC)
            item.duration_ms = round((self._clock() - started) * 1000, 2)
            item.error = (
                f"timed out after {self.config.item_timeout:.0f}s" if isinstance(exc, TimeoutError) else str(exc)
            )
            batch.failed_item = migration.id
            record_migration_item(str(migration.database), "failed")
            self.events.emit("migration_failed", MigrationFailed(batch.id, migration.id, item.error))
            log.error("me.migration_failed", migration=migration.id, error=item.error)
            raise MigrationError(f"Migration {migration.id} failed: {item.error}", migration=migration.id) from exc

        item.status = ItemStatus.COMPLETED if applied else ItemStatus.SKIPPED
        item.finished_at = datetime.now(UTC)
        item.duration_ms = round((self._clock() - started) * 1000, 2)
        record_migration_item(str(migration.database), str(item.status))
        self.events.emit("migration_completed", item)
        log.info("me.migration_completed", migration=migration.id, duration_ms=item.duration_ms)
        self._progress(batch)

    async def _apply(self, migration: Migration, *, dry_run: bool) -> bool:
        """Run one forward script. Returns False when it was skipped."""
        match migration.database:
            case MigrationDatabase.SQL:
                statements = split_sql_statements(migration.content)
                if dry_run:
                    await self._qo.rehearse(statements)
                else:
                    await self._run_sql(statements)
                return True
            case MigrationDatabase.DOC:
                if dry_run:
                    log.info("me.dry_run_skipped", migration=migration.id)
                    return False
                module = _load_script(migration.path, migration.database)
                await module.up(self._require_doc_db(migration))
                return True
            case MigrationDatabase.SHARED:
                if dry_run:
                    log.info("me.dry_run_skipped", migration=migration.id)
                    return False
                module = _load_script(migration.path, migration.database)
                await module.execute({"sql": self._qo, "doc": self._doc_db})
                return True
        raise MigrationError(f"Unknown database family {migration.database}", migration=migration.id)

    async def _run_sql(self, statements: Sequence[str]) -> None:
        async def run(tx: TransactionExecutor) -> None:
            for statement in statements:
                await tx.query(statement)

        await self._qo.transaction(run)

    def _require_doc_db(self, migration: Migration) -> Any:
        if self._doc_db is None:
            raise MigrationError("Document database is not configured", migration=migration.id)
        return self._doc_db

    # ------------------------------------------------------------------ #
    # Verification and rollback
    # ------------------------------------------------------------------ #

    async def _verify(self, batch: MigrationBatch) -> None:
        families = {item.migration.database for item in batch.completed_items}
        if MigrationDatabase.SHARED in families:
            families.discard(MigrationDatabase.SHARED)
            families.add(MigrationDatabase.SQL)
            if self._doc_db is not None:
                families.add(MigrationDatabase.DOC)

        if MigrationDatabase.SQL in families:
            await self._qo.query(
                "SELECT table_name FROM information_schema.tables LIMIT 1",
                bypass_cache=True,
                operation="migration_verify",
            )
        if MigrationDatabase.DOC in families:
            await self._require_doc_db(batch.completed_items[0].migration).list_collection_names()

        for item in batch.completed_items:
            current = content_hash(item.migration.path.read_text(encoding="utf-8"))
            if current != item.migration.content_hash:
                batch.failed_item = item.migration.id
                raise MigrationError(f"{item.migration.id} changed on disk during the batch", migration=item.migration.id)
        log.info("me.verification_passed", families=sorted(str(f) for f in families))

    async def _handle_failure(self, batch: MigrationBatch, exc: Exception, *, dry_run: bool) -> None:
        stopped = isinstance(exc, _EmergencyStopped)
        batch.message = str(exc)
        for item in batch.items:
            if item.status == ItemStatus.PENDING:
                item.status = ItemStatus.SKIPPED

        if dry_run:
            self._finish(batch, BatchStatus.FAILED)
            return

        self._set_status(batch, BatchStatus.ROLLING_BACK)
        completed = batch.completed_items
        needs_restore = False
        for item in reversed(completed):
            if not item.migration.has_rollback:
                log.warning("me.rollback_missing", migration=item.migration.id)
                needs_restore = True
                continue
            try:
                async with asyncio.timeout(self.config.rollback_timeout):
                    await self._rollback_item(item.migration)
            except Exception as rollback_exc:
                batch.critical = True
                batch.message = f"Rollback of {item.migration.id} failed: {rollback_exc}"
                log.critical(
                    "me.rollback_failed",
                    migration=item.migration.id,
                    failed_item=batch.failed_item,
                    error=str(rollback_exc),
                )
                record_migration_item(str(item.migration.database), "rollback_failed")
                self._finish(batch, BatchStatus.FAILED)
                return
            item.status = ItemStatus.ROLLED_BACK
            record_migration_item(str(item.migration.database), "rolled_back")
            log.info("me.migration_rolled_back", migration=item.migration.id)

        if needs_restore and batch.backup_handle:
            try:
                await self._backup.restore(batch.backup_handle)
            except MigrationError as restore_exc:
                batch.critical = True
                batch.message = f"Backup restore failed: {restore_exc}"
                log.critical("me.restore_failed", handle=batch.backup_handle, error=str(restore_exc))
                self._finish(batch, BatchStatus.FAILED)
                return

        self._finish(batch, BatchStatus.CANCELLED if stopped else BatchStatus.ROLLED_BACK)

    async def _rollback_item(self, migration: Migration) -> None:
        match migration.database:
            case MigrationDatabase.SQL:
                script = self._rollback_path(migration).read_text(encoding="utf-8")
                await self._run_sql(split_sql_statements(script))
            case MigrationDatabase.DOC:
                path = migration.rollback_path or migration.path
                module = _load_script(path, migration.database)
                await module.down(self._require_doc_db(migration))
            case MigrationDatabase.SHARED:
                module = _load_script(self._rollback_path(migration), migration.database)
                await module.execute({"sql": self._qo, "doc": self._doc_db})

    @staticmethod
    def _rollback_path(migration: Migration) -> Path:
        if migration.rollback_path is None:
            raise MigrationError(f"{migration.id} has no rollback script", migration=migration.id)
        return migration.rollback_path

    # ------------------------------------------------------------------ #
    # Control and introspection
    # ------------------------------------------------------------------ #

    def emergency_stop(self) -> bool:
        """Stop the running batch after its in-flight items finish.

        Returns False when no batch is running.
        """
        if self._active is None:
            return False
        self._stop_requested = True
        log.critical("me.emergency_stop", batch_id=self._active.id)
        self.events.emit("emergency_stop", {"batchId": self._active.id})
        return True

    def _check_stop(self) -> None:
        if self._stop_requested:
            raise _EmergencyStopped("Emergency stop requested")

    async def health_check(self, batch: MigrationBatch | None = None) -> HealthCheck:
        checks: dict[str, bool] = {}
        try:
            await self._qo.query("SELECT 1", bypass_cache=True, operation="migration_health")
            checks["sql"] = True
        except Exception as exc:
            log.warning("me.health_check_failed", target="sql", error=str(exc))
            checks["sql"] = False
        if self._doc_db is not None:
            try:
                await self._doc_db.command("ping")
                checks["doc"] = True
            except Exception as exc:
                log.warning("me.health_check_failed", target="doc", error=str(exc))
                checks["doc"] = False
        result = HealthCheck(batch_id=batch.id if batch else "", healthy=all(checks.values()), checks=checks)
        self.events.emit("health_check", result)
        return result

    async def status(self) -> dict[str, Any]:
        discovered = self.discover()
        applied = await self._ledger.applied()
        pending = self._pending(discovered, applied, self._resolve_target(discovered, None))
        active = self._active if self._active is not None and self._active.target_version >= 0 else None
        return {
            "currentVersion": await self._ledger.current_version(),
            "latestVersion": max((m.order for m in discovered), default=0),
            "pending": [m.id for m in pending],
            "applied": len(applied),
            "activeBatch": active.summary() if active else None,
            "lastBatch": self._last_batch.summary() if self._last_batch else None,
        }

    async def history(self, limit: int = 50) -> list[dict[str, Any]]:
        return [
            {
                "migrationId": record.migration_id,
                "database": record.database,
                "order": record.order,
                "name": record.name,
                "contentHash": record.content_hash,
                "version": record.version,
                "batchId": record.batch_id,
                "appliedAt": record.applied_at.isoformat(),
                "durationMs": record.duration_ms,
                "outcome": record.outcome,
            }
            for record in await self._ledger.history(limit)
        ]

    @property
    def active_batch(self) -> MigrationBatch | None:
        return self._active

    @property
    def optimizer(self) -> QueryOptimizer:
        return self._qo

    async def prepare(self) -> None:
        """Create the ledger tables when they do not exist yet."""
        await self._ledger.ensure_schema()

    async def close(self) -> None:
        await self._lock.close()

    # ------------------------------------------------------------------ #
    # Event helpers
    # ------------------------------------------------------------------ #

    def _set_status(self, batch: MigrationBatch, status: BatchStatus) -> None:
        previous = batch.status
        if previous == status:
            return
        batch.status = status
        log.info("me.batch_status_changed", status=str(status), previous=str(previous))
        self.events.emit("batch_status_changed", BatchStatusChanged(batch.id, status, previous))

    def _finish(self, batch: MigrationBatch, status: BatchStatus) -> None:
        self._set_status(batch, status)
        batch.finished_at = datetime.now(UTC)
        log.info(
            "me.batch_completed",
            status=str(status),
            critical=batch.critical,
            failed_item=batch.failed_item,
            backup_handle=batch.backup_handle,
        )
        self.events.emit("batch_completed", batch.summary())

    def _progress(self, batch: MigrationBatch) -> None:
        completed = sum(1 for item in batch.items if item.status in (ItemStatus.COMPLETED, ItemStatus.SKIPPED))
        self.events.emit(
            "progress_update",
            ProgressUpdate(batch.id, batch.progress, completed, len(batch.items), batch.status),
        )
