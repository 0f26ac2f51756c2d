"""Pre-flight checks for pending migrations."""

from __future__ import annotations

import ast
import re
from collections.abc import Mapping, Sequence

import structlog

from control_plane.db import QueryOptimizer
from control_plane.errors import StoreError
from control_plane.migrations.discovery import content_hash, split_sql_statements
from control_plane.migrations.models import Migration, MigrationDatabase, ValidationReport
from control_plane.migrations.planner import resolve_dependency

log = structlog.get_logger(__name__)

_DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bdrop\s+table\b", re.I), "DROP TABLE"),
    (re.compile(r"\bdrop\s+database\b", re.I), "DROP DATABASE"),
    (re.compile(r"\btruncate\s+(table\s+)?\w+", re.I), "TRUNCATE"),
    (re.compile(r"\bdelete\s+from\s+[\w.\"]+\s*(;|$)", re.I | re.M), "DELETE without WHERE"),
    (re.compile(r"\bupdate\s+[\w.\"]+\s+set\s+[^;]+?(;|$)", re.I | re.M), "UPDATE"),
    (re.compile(r"\.(delete_many|update_many)\(\s*\{\s*\}", re.I), "unfiltered bulk write"),
    (re.compile(r"\bdrop_collection\b|\.drop\(\)", re.I), "collection drop"),
]

_REQUIRED_FUNCTIONS = {
    MigrationDatabase.DOC: ("up",),
    MigrationDatabase.SHARED: ("execute",),
}


def dangerous_operations(content: str) -> list[str]:
    found: list[str] = []
    for pattern, label in _DANGEROUS_PATTERNS:
        for match in pattern.finditer(content):
            text = match.group(0)
            if label == "UPDATE" and re.search(r"\bwhere\b", text, re.I):
                continue
            if label not in found:
                found.append(label)
    return found


def check_script(migration: Migration) -> list[str]:
    """Compile a Python migration and confirm it exports its entry points."""
    try:
        tree = ast.parse(migration.content, filename=str(migration.path))
        compile(tree, str(migration.path), "exec")
    except SyntaxError as exc:
        return [f"syntax error at line {exc.lineno}: {exc.msg}"]

    defined = {
        node.name
        for node in tree.body
        if isinstance(node, ast.AsyncFunctionDef | ast.FunctionDef)
    }
    errors = []
    for required in _REQUIRED_FUNCTIONS.get(migration.database, ()):
        if required not in defined:
            errors.append(f"missing entry point '{required}'")
    for name in defined & {"up", "down", "execute"}:
        node = next(n for n in tree.body if getattr(n, "name", None) == name)
        if not isinstance(node, ast.AsyncFunctionDef):
            errors.append(f"entry point '{name}' must be declared async")
    return errors


class MigrationValidator:
    """Runs every static and rehearsal check over a set of pending migrations."""

    def __init__(self, optimizer: QueryOptimizer | None = None) -> None:
        self._optimizer = optimizer

    async def validate(
        self,
        pending: Sequence[Migration],
        *,
        known: Sequence[Migration] = (),
        applied_hashes: Mapping[str, str] | None = None,
    ) -> list[ValidationReport]:
        """Validate ``pending``.

        ``known`` is every discovered migration (dependency targets may
        already be applied); ``applied_hashes`` maps applied migration ids
        to the hash recorded when they ran.
        """
        universe = list(known) or list(pending)
        reports = {m.id: ValidationReport(migration_id=m.id) for m in pending}

        for migration in pending:
            report = reports[migration.id]
            for label in dangerous_operations(migration.content):
                report.warnings.append(f"dangerous operation: {label}")
            for ref in migration.dependencies:
                if resolve_dependency(ref, universe, migration.database) is None:
                    report.errors.append(f"unknown dependency '{ref}'")
            if migration.breaking and not migration.has_rollback:
                report.warnings.append("breaking change without a rollback script")
            if migration.database != MigrationDatabase.SQL:
                report.errors.extend(check_script(migration))
            if migration.rollback_path is not None and not migration.rollback_path.exists():
                report.errors.append(f"rollback script {migration.rollback_path.name} disappeared")

        drifted = self.drifted(known, applied_hashes or {})
        for migration_id, message in drifted.items():
            reports.setdefault(migration_id, ValidationReport(migration_id=migration_id)).errors.append(message)

        await self._rehearse_sql([m for m in pending if m.database == MigrationDatabase.SQL], reports)

        results = list(reports.values())
        log.info(
            "me.validation.completed",
            migrations=len(results),
            errors=sum(len(r.errors) for r in results),
            warnings=sum(len(r.warnings) for r in results),
        )
        return results

    @staticmethod
    def drifted(known: Sequence[Migration], applied_hashes: Mapping[str, str]) -> dict[str, str]:
        """Applied migrations whose file no longer matches the recorded hash."""
        drift: dict[str, str] = {}
        for migration in known:
            recorded = applied_hashes.get(migration.id)
            if recorded is None:
                continue
            current = content_hash(migration.path.read_text(encoding="utf-8"))
            if current != recorded:
                drift[migration.id] = (
                    f"applied migration changed on disk (recorded {recorded[:12]}, now {current[:12]})"
                )
        return drift

    async def _rehearse_sql(self, migrations: Sequence[Migration], reports: dict[str, ValidationReport]) -> None:
        """Rehearse pending SQL cumulatively so later scripts see earlier ones."""
        if self._optimizer is None or not migrations:
            return
        prefix: list[str] = []
        for migration in migrations:
            statements = split_sql_statements(migration.content)
            if not statements:
                reports[migration.id].errors.append("script contains no statements")
                continue
            try:
                await self._optimizer.rehearse(prefix + statements)
            except StoreError as exc:
                if exc.transient:
                    raise
                reports[migration.id].errors.append(f"rehearsal failed: {exc}")
                # Later scripts would fail on the same missing prerequisite.
                return
            prefix.extend(statements)
