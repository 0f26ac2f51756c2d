"""
Tests for MigrationEngine batch execution.

SQL goes through the mock QueryOptimizer's transaction executor, so every
statement the engine runs (forward and rollback) is visible in
``mock_qo.tx.query``. The ledger and lock are the in-memory variants.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from control_plane.errors import LockAcquisitionError, MigrationError, StoreError, ValidationError
from control_plane.migrations import (
    BatchStatus,
    InMemoryMigrationLock,
    InMemoryVersionLedger,
    ItemStatus,
    Migration,
    MigrationDatabase,
    MigrationEngine,
    MigrationEngineConfig,
    MigrationItem,
    MigrationOptions,
    SqlVersionLedger,
    Strategy,
    StrategyHooks,
)
from control_plane.migrations.backup import BackupProvider
from tests.conftest import query_result


def write(directory: Path, name: str, content: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def sql_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "sql"
    write(directory, "001_create_clans.sql", "CREATE TABLE clans (id SERIAL PRIMARY KEY, name TEXT NOT NULL);")
    write(directory, "001_create_clans_rollback.sql", "DROP TABLE clans;")
    write(
        directory,
        "002_create_members.sql",
        "CREATE TABLE clan_members (clan_id INT REFERENCES clans(id), player_id TEXT);",
    )
    write(directory, "002_create_members_rollback.sql", "DROP TABLE clan_members;")
    return directory


@pytest.fixture
def ledger() -> InMemoryVersionLedger:
    return InMemoryVersionLedger()


@pytest.fixture
def lock() -> InMemoryMigrationLock:
    return InMemoryMigrationLock(holder_id="test")


def make_engine(mock_qo, ledger, lock, tmp_path: Path, **kwargs) -> MigrationEngine:
    config = MigrationEngineConfig(
        directories={
            MigrationDatabase.SQL: tmp_path / "sql",
            MigrationDatabase.DOC: tmp_path / "doc",
            MigrationDatabase.SHARED: tmp_path / "shared",
        }
    )
    return MigrationEngine(mock_qo, ledger, lock, config=config, **kwargs)


def executed_sql(mock_qo) -> list[str]:
    return [call.args[0] for call in mock_qo.tx.query.await_args_list]


# ------------------------------------------------------------------ #
# Successful batches
# ------------------------------------------------------------------ #


class TestExecute:
    @pytest.mark.asyncio
    async def test_applies_pending_in_order(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        batch = await engine.execute(MigrationOptions(skip_backup=True))

        assert batch.status == BatchStatus.COMPLETED
        assert batch.target_version == 2
        assert [item.status for item in batch.items] == [ItemStatus.COMPLETED, ItemStatus.COMPLETED]
        statements = executed_sql(mock_qo)
        assert statements[0].startswith("CREATE TABLE clans")
        assert statements[1].startswith("CREATE TABLE clan_members")
        assert await ledger.current_version() == 2
        assert set(await ledger.applied()) == {"sql:001_create_clans", "sql:002_create_members"}

    @pytest.mark.asyncio
    async def test_second_run_has_nothing_to_do(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)
        await engine.execute(MigrationOptions(skip_backup=True))

        batch = await engine.execute(MigrationOptions(skip_backup=True))

        assert batch.status == BatchStatus.COMPLETED
        assert batch.items == []
        assert batch.message == "Nothing to migrate"

    @pytest.mark.asyncio
    async def test_target_version_limits_batch(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        batch = await engine.execute(MigrationOptions(skip_backup=True, target_version=1))

        assert [item.migration.id for item in batch.items] == ["sql:001_create_clans"]
        assert await ledger.current_version() == 1
        assert [m.id for m in await engine.plan()] == ["sql:002_create_members"]

    @pytest.mark.asyncio
    async def test_dry_run_rehearses_and_leaves_ledger(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        batch = await engine.execute(MigrationOptions(dry_run=True))

        assert batch.status == BatchStatus.COMPLETED
        assert batch.message == "Dry run completed"
        assert mock_qo.tx.query.await_count == 0
        assert mock_qo.rehearse.await_count >= 2
        assert await ledger.applied() == {}

    @pytest.mark.asyncio
    async def test_validate_only(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        batch = await engine.execute(MigrationOptions(validate_only=True))

        assert batch.message == "Validation only"
        assert mock_qo.tx.query.await_count == 0
        assert await ledger.current_version() == 0

    @pytest.mark.asyncio
    async def test_backup_taken_before_migrating(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        backup = MagicMock(spec=BackupProvider)
        backup.create = AsyncMock(return_value="/backups/b1.dump")
        engine = make_engine(mock_qo, ledger, lock, tmp_path, backup=backup)

        batch = await engine.execute()

        backup.create.assert_awaited_once_with(batch.id)
        assert batch.backup_handle == "/backups/b1.dump"

    @pytest.mark.asyncio
    async def test_batch_events(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)
        statuses, summaries, progress = [], [], []
        engine.events.on("batch_status_changed", lambda change: statuses.append(change.status))
        engine.events.on("batch_completed", summaries.append)
        engine.events.on("progress_update", progress.append)

        await engine.execute(MigrationOptions(skip_backup=True))

        assert statuses == [
            BatchStatus.VALIDATING,
            BatchStatus.MIGRATING,
            BatchStatus.TESTING,
            BatchStatus.COMPLETED,
        ]
        assert summaries[0]["status"] == "completed"
        assert progress[-1].progress == 100.0


# ------------------------------------------------------------------ #
# Failure and rollback
# ------------------------------------------------------------------ #


class TestRollback:
    @pytest.mark.asyncio
    async def test_failed_item_rolls_back_completed_in_reverse(
        self, mock_qo, ledger, lock, tmp_path, sql_dir
    ):
        write(sql_dir, "003_add_motto.sql", "ALTER TABLE clans ADD COLUMN motto TEXT REFERENCES mottos(id);")

        async def run_statement(sql, params=None):
            if "mottos" in sql:
                raise StoreError('relation "mottos" does not exist')
            return MagicMock()

        mock_qo.tx.query.side_effect = run_statement
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        batch = exc_info.value.batch
        assert batch.status == BatchStatus.ROLLED_BACK
        assert batch.failed_item == "sql:003_add_motto"
        assert batch.critical is False
        assert [item.status for item in batch.items] == [
            ItemStatus.ROLLED_BACK,
            ItemStatus.ROLLED_BACK,
            ItemStatus.FAILED,
        ]
        assert "mottos" in batch.items[2].error
        assert executed_sql(mock_qo)[-2:] == ["DROP TABLE clan_members", "DROP TABLE clans"]

        assert await ledger.current_version() == 0
        assert await ledger.applied() == {}
        assert await lock.is_locked("migration:3") is False
        status = await engine.status()
        assert status["lastBatch"]["status"] == "rolled_back"
        assert status["activeBatch"] is None

    @pytest.mark.asyncio
    async def test_failing_after_hook_rolls_back_without_recording(
        self, mock_qo, ledger, lock, tmp_path, sql_dir
    ):
        after = AsyncMock(side_effect=RuntimeError("cache warmup failed"))
        engine = make_engine(
            mock_qo,
            ledger,
            lock,
            tmp_path,
            hooks={Strategy.SEQUENTIAL: StrategyHooks(after=after)},
        )

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        after.assert_awaited_once()
        batch = exc_info.value.batch
        assert batch.status == BatchStatus.ROLLED_BACK
        assert "cache warmup failed" in batch.message
        assert executed_sql(mock_qo)[-2:] == ["DROP TABLE clan_members", "DROP TABLE clans"]
        assert await ledger.current_version() == 0
        assert await ledger.applied() == {}

    @pytest.mark.asyncio
    async def test_failed_rollback_is_critical(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        write(sql_dir, "003_add_motto.sql", "ALTER TABLE clans ADD COLUMN motto TEXT REFERENCES mottos(id);")

        async def run_statement(sql, params=None):
            if "mottos" in sql or sql.startswith("DROP TABLE clan_members"):
                raise StoreError("boom")
            return MagicMock()

        mock_qo.tx.query.side_effect = run_statement
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        assert exc_info.value.critical is True
        assert exc_info.value.batch.status == BatchStatus.FAILED
        assert "Rollback of sql:002_create_members failed" in exc_info.value.batch.message

    @pytest.mark.asyncio
    async def test_backup_restored_when_no_rollback_script(self, mock_qo, ledger, lock, tmp_path):
        sql_dir = tmp_path / "sql"
        write(sql_dir, "001_seed_regions.sql", "INSERT INTO regions (code) VALUES ('eu');")
        write(sql_dir, "002_broken.sql", "INSERT INTO nowhere (x) VALUES (1);")

        async def run_statement(sql, params=None):
            if "nowhere" in sql:
                raise StoreError("relation does not exist")
            return MagicMock()

        mock_qo.tx.query.side_effect = run_statement
        backup = MagicMock(spec=BackupProvider)
        backup.create = AsyncMock(return_value="/backups/b2.dump")
        backup.restore = AsyncMock()
        engine = make_engine(mock_qo, ledger, lock, tmp_path, backup=backup)

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute()

        backup.restore.assert_awaited_once_with("/backups/b2.dump")
        assert exc_info.value.batch.status == BatchStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_sql_rollback_without_script_raises(self, mock_qo, ledger, lock, tmp_path):
        path = write(tmp_path / "sql", "005_drop_legacy.sql", "DROP TABLE legacy_scores;")
        migration = Migration(
            order=5,
            name="drop_legacy",
            database=MigrationDatabase.SQL,
            path=path,
            content_hash="cd" * 32,
            content=path.read_text(encoding="utf-8"),
        )
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        with pytest.raises(MigrationError, match="sql:005_drop_legacy has no rollback script"):
            await engine._rollback_item(migration)

        mock_qo.tx.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validation_failure_runs_nothing(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        write(sql_dir, "003_ranks.sql", "-- @depends 042_missing\nCREATE TABLE ranks (id INT);")
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        with pytest.raises(ValidationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        assert any("unknown dependency '042_missing'" in error for error in exc_info.value.errors)
        assert mock_qo.tx.query.await_count == 0
        assert await ledger.applied() == {}


# ------------------------------------------------------------------ #
# Control
# ------------------------------------------------------------------ #


class TestControl:
    def test_emergency_stop_without_batch(self, mock_qo, ledger, lock, tmp_path):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)
        assert engine.emergency_stop() is False

    @pytest.mark.asyncio
    async def test_emergency_stop_cancels_batch(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)
        stops = []
        engine.events.on("emergency_stop", stops.append)
        engine.events.once("migration_completed", lambda item: engine.emergency_stop())

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        batch = exc_info.value.batch
        assert batch.status == BatchStatus.CANCELLED
        assert [item.status for item in batch.items] == [ItemStatus.ROLLED_BACK, ItemStatus.SKIPPED]
        assert stops == [{"batchId": batch.id}]
        assert await ledger.applied() == {}

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        async with lock.acquire("migration:2"):
            with pytest.raises(LockAcquisitionError):
                await engine.execute(MigrationOptions(skip_backup=True))

        assert mock_qo.tx.query.await_count == 0
        assert engine.active_batch is None

    @pytest.mark.asyncio
    async def test_status_and_history(self, mock_qo, ledger, lock, tmp_path, sql_dir):
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        before = await engine.status()
        assert before["currentVersion"] == 0
        assert before["latestVersion"] == 2
        assert before["pending"] == ["sql:001_create_clans", "sql:002_create_members"]

        batch = await engine.execute(MigrationOptions(skip_backup=True))

        after = await engine.status()
        assert after["currentVersion"] == 2
        assert after["pending"] == []
        history = await engine.history(10)
        assert {entry["migrationId"] for entry in history} == {
            "sql:001_create_clans",
            "sql:002_create_members",
        }
        assert all(entry["batchId"] == batch.id for entry in history)
        by_id = {entry["migrationId"]: entry for entry in history}
        clans = by_id["sql:001_create_clans"]
        assert clans["database"] == "sql"
        assert clans["order"] == 1
        assert clans["name"] == "create_clans"
        assert clans["outcome"] == "completed"
        assert len(clans["contentHash"]) == 64
        assert clans["durationMs"] is not None

    @pytest.mark.asyncio
    async def test_health_check(self, mock_qo, ledger, lock, tmp_path):
        doc_db = MagicMock()
        doc_db.command = AsyncMock(side_effect=ConnectionError("no primary"))
        engine = make_engine(mock_qo, ledger, lock, tmp_path, doc_db=doc_db)

        result = await engine.health_check()

        assert result.checks == {"sql": True, "doc": False}
        assert result.healthy is False


# ------------------------------------------------------------------ #
# Document and shared families
# ------------------------------------------------------------------ #


class TestDocumentMigrations:
    @pytest.mark.asyncio
    async def test_parallel_strategy_runs_both_families(self, mock_qo, ledger, lock, tmp_path):
        write(tmp_path / "sql", "001_create_clans.sql", "CREATE TABLE clans (id INT);")
        write(
            tmp_path / "doc",
            "001_profiles.py",
            "async def up(db):\n"
            "    await db.profiles.create_index('player_id')\n"
            "\n"
            "\n"
            "async def down(db):\n"
            "    await db.profiles.drop_index('player_id_1')\n",
        )
        write(
            tmp_path / "shared",
            "001_backfill.py",
            "async def execute(handles):\n"
            "    await handles['sql'].query('UPDATE clans SET id = id WHERE id > 0')\n",
        )
        doc_db = MagicMock()
        doc_db.profiles.create_index = AsyncMock()
        doc_db.list_collection_names = AsyncMock(return_value=["profiles"])
        doc_db.command = AsyncMock(return_value={"ok": 1})
        engine = make_engine(mock_qo, ledger, lock, tmp_path, doc_db=doc_db)

        batch = await engine.execute(MigrationOptions(skip_backup=True, strategy=Strategy.PARALLEL))

        assert batch.status == BatchStatus.COMPLETED
        assert batch.items[-1].migration.id == "shared:001_backfill"
        doc_db.profiles.create_index.assert_awaited_once_with("player_id")
        mock_qo.query.assert_any_await("UPDATE clans SET id = id WHERE id > 0")
        assert len(await ledger.applied()) == 3

    @pytest.mark.asyncio
    async def test_document_migration_without_database(self, mock_qo, ledger, lock, tmp_path):
        write(tmp_path / "doc", "001_profiles.py", "async def up(db):\n    await db.profiles.drop()\n")
        engine = make_engine(mock_qo, ledger, lock, tmp_path)

        with pytest.raises(MigrationError) as exc_info:
            await engine.execute(MigrationOptions(skip_backup=True))

        assert "Document database is not configured" in exc_info.value.batch.items[0].error


# ------------------------------------------------------------------ #
# SQL ledger
# ------------------------------------------------------------------ #


class TestSqlVersionLedger:
    @pytest.mark.asyncio
    async def test_record_batch_writes_history_columns(self, mock_qo, tmp_path):
        path = write(tmp_path / "sql", "004_add_banner.sql", "ALTER TABLE clans ADD COLUMN banner TEXT;")
        migration = Migration(
            order=4,
            name="add_banner",
            database=MigrationDatabase.SQL,
            path=path,
            content_hash="ab" * 32,
            content=path.read_text(encoding="utf-8"),
        )
        item = MigrationItem(migration=migration, status=ItemStatus.COMPLETED, duration_ms=12.5)

        await SqlVersionLedger(mock_qo).record_batch("batch-1", 4, [item])

        history_insert, version_upsert = mock_qo.tx.query.await_args_list
        params = history_insert.args[1]
        assert "outcome" in history_insert.args[0]
        assert params[:7] == ["sql:004_add_banner", "sql", 4, "add_banner", "ab" * 32, 4, "batch-1"]
        assert params[8:] == [12.5, "completed"]
        assert version_upsert.args[1][0] == 4

    @pytest.mark.asyncio
    async def test_history_rows_map_to_records(self, mock_qo):
        applied_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        mock_qo.query.return_value = query_result(
            [
                {
                    "migration_id": "doc:002_profiles",
                    "database": "doc",
                    "migration_order": 2,
                    "name": "profiles",
                    "content_hash": "cd" * 32,
                    "version": 2,
                    "batch_id": "batch-2",
                    "applied_at": applied_at,
                    "duration_ms": 40.0,
                    "outcome": "completed",
                }
            ]
        )

        [record] = await SqlVersionLedger(mock_qo).history(5)

        assert record.order == 2
        assert record.database == "doc"
        assert record.outcome == "completed"
        assert record.applied_at == applied_at
