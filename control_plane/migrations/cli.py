"""control-plane-migrate - operate the migration engine from a shell.

Commands::

    control-plane-migrate status                 - Current/latest version, pending migrations
    control-plane-migrate plan [--target N]      - Pending migrations in execution order
    control-plane-migrate validate [--target N]  - Run pre-flight checks only
    control-plane-migrate run [--target N] [--strategy S] [--dry-run] ...

Exit codes: 0 success, 1 validation or migration failure, 2 lock held.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import textwrap
from typing import Any

import structlog

from control_plane.config import Settings, get_settings
from control_plane.db import QueryOptimizer, create_engine_with_pool
from control_plane.errors import LockAcquisitionError, MigrationError, StoreError, ValidationError
from control_plane.migrations.backup import BackupProvider, NullBackupProvider, PgDumpBackupProvider
from control_plane.migrations.engine import MigrationEngine, MigrationEngineConfig, open_document_database
from control_plane.migrations.ledger import SqlVersionLedger
from control_plane.migrations.lock import RedisMigrationLock
from control_plane.migrations.models import MigrationOptions, Strategy
from control_plane.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_engine(settings: Settings, *, backup_dir: str | None = None) -> MigrationEngine:
    """Wire a MigrationEngine against the configured databases."""
    optimizer = QueryOptimizer(create_engine_with_pool(settings))
    backup: BackupProvider = (
        PgDumpBackupProvider(settings.database_url, backup_dir) if backup_dir else NullBackupProvider()
    )
    doc_db = (
        open_document_database(settings.document_database_url, settings.document_database_name)
        if settings.document_database_url
        else None
    )
    return MigrationEngine(
        optimizer,
        SqlVersionLedger(optimizer),
        RedisMigrationLock(settings.redis_url, holder_id=settings.application_name),
        doc_db=doc_db,
        backup=backup,
        config=MigrationEngineConfig.from_settings(settings),
    )


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


async def cmd_status(engine: MigrationEngine, args: argparse.Namespace) -> int:
    await engine.prepare()
    _print_json(await engine.status())
    if args.history:
        _print_json(await engine.history(args.history))
    return 0


async def cmd_plan(engine: MigrationEngine, args: argparse.Namespace) -> int:
    await engine.prepare()
    pending = await engine.plan(args.target)
    _print_json([m.to_dict() for m in pending])
    return 0


async def cmd_validate(engine: MigrationEngine, args: argparse.Namespace) -> int:
    await engine.prepare()
    reports = await engine.validate(args.target)
    _print_json(
        [{"migration": r.migration_id, "errors": r.errors, "warnings": r.warnings} for r in reports]
    )
    return 0 if all(r.is_valid for r in reports) else 1


async def cmd_run(engine: MigrationEngine, args: argparse.Namespace) -> int:
    options = MigrationOptions(
        validate_only=args.validate_only,
        skip_backup=args.skip_backup,
        skip_tests=args.skip_tests,
        dry_run=args.dry_run,
        strategy=Strategy(args.strategy),
        target_version=args.target,
    )
    try:
        batch = await engine.execute(options)
    except ValidationError as exc:
        _print_json({"status": "failed", "errors": exc.errors})
        return 1
    except LockAcquisitionError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except MigrationError as exc:
        _print_json(exc.batch.summary() if exc.batch is not None else {"error": str(exc)})
        return 1
    _print_json(batch.summary())
    return 0


_COMMANDS = {
    "status": cmd_status,
    "plan": cmd_plan,
    "validate": cmd_validate,
    "run": cmd_run,
}


# ------------------------------------------------------------------ #
# Parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="control-plane-migrate",
        description="Validate and apply SQL and document migrations.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """\
            examples:
              control-plane-migrate status --history 20
              control-plane-migrate run --target 12 --strategy rolling
              control-plane-migrate run --dry-run
            """
        ),
    )
    parser.add_argument("--backup-dir", default=None, help="Directory for pg_dump archives (default: no backup)")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    status_parser = subparsers.add_parser("status", help="Show ledger and pending migrations")
    status_parser.add_argument("--history", type=int, default=0, help="Also print the last N applied migrations")

    for name, help_text in (("plan", "List pending migrations"), ("validate", "Validate pending migrations")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--target", type=int, default=None, help="Target version (default: latest)")

    run_parser = subparsers.add_parser("run", help="Execute a migration batch")
    run_parser.add_argument("--target", type=int, default=None, help="Target version (default: latest)")
    run_parser.add_argument(
        "--strategy",
        choices=[s.value for s in Strategy],
        default=Strategy.SEQUENTIAL.value,
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Rehearse SQL without committing")
    run_parser.add_argument("--validate-only", action="store_true")
    run_parser.add_argument("--skip-backup", action="store_true")
    run_parser.add_argument("--skip-tests", action="store_true", help="Skip post-batch verification")
    return parser


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    engine = build_engine(settings, backup_dir=args.backup_dir)
    try:
        return await _COMMANDS[args.command](engine, args)
    except StoreError as exc:
        log.error("me.cli.store_unavailable", error=str(exc))
        print(f"Store unavailable: {exc}", file=sys.stderr)
        return 1
    finally:
        await engine.close()
        await engine.optimizer.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(json_logs=settings.is_prod, log_level="DEBUG" if settings.debug else "WARNING")
    return asyncio.run(_dispatch(args, settings))


if __name__ == "__main__":
    sys.exit(main())
