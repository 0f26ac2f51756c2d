"""Find migration scripts on disk and annotate them.

Layout:
    <sql_dir>/001_create_users.sql
    <sql_dir>/001_create_users_rollback.sql
    <doc_dir>/001_profiles.py          # async def up(db) / async def down(db)
    <shared_dir>/001_backfill.py       # async def execute(handles)

Everything else in those directories is ignored.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

import structlog

from control_plane.migrations.models import Migration, MigrationDatabase, MigrationType

log = structlog.get_logger(__name__)

_FORWARD_RE = re.compile(r"^(\d{3})_(.+)\.(sql|py)$")
_ROLLBACK_SUFFIX = "_rollback"
_DEPENDS_RE = re.compile(r"^\s*(?:--|#)\s*@depends\s+(.+)$", re.MULTILINE)

_EXTENSIONS = {
    MigrationDatabase.SQL: "sql",
    MigrationDatabase.DOC: "py",
    MigrationDatabase.SHARED: "py",
}

# First match wins.
_TYPE_RULES: list[tuple[MigrationType, re.Pattern[str]]] = [
    (MigrationType.SCHEMA, re.compile(r"\b(create|alter)\s+table\b|\bcreate_collection\b", re.I)),
    (MigrationType.INDEX, re.compile(r"\b(create|drop)\s+(unique\s+)?index\b|\bcreate_index(es)?\b", re.I)),
    (MigrationType.DATA, re.compile(r"\binsert\s+into\b|\bupdate\s+\w+\s+set\b|\b(insert|update)_(one|many)\b", re.I)),
    (MigrationType.FUNCTION, re.compile(r"\bcreate\s+(or\s+replace\s+)?(function|procedure)\b", re.I)),
    (MigrationType.VIEW, re.compile(r"\bcreate\s+(or\s+replace\s+)?(materialized\s+)?view\b", re.I)),
    (MigrationType.CONSTRAINT, re.compile(r"\b(add|drop)\s+constraint\b", re.I)),
    (MigrationType.TRIGGER, re.compile(r"\bcreate\s+(or\s+replace\s+)?trigger\b", re.I)),
    (MigrationType.CLEANUP, re.compile(r"\bdelete\s+from\b|\bdelete_many\b|\bdrop_collection\b", re.I)),
]

_BREAKING_PATTERNS = [
    re.compile(r"\bdrop\s+table\b", re.I),
    re.compile(r"\bdrop\s+column\b", re.I),
    re.compile(r"\balter\s+table\s+\w+\s+drop\b", re.I),
    re.compile(r"\brename\s+(to|column)\b", re.I),
    re.compile(r"\bdrop_collection\b|\.drop\(\)|\.rename\(", re.I),
]

_MAX_DURATION_MS = 300_000


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def detect_type(name: str, content: str) -> MigrationType:
    if "seed" in name.lower():
        return MigrationType.SEED
    if "cleanup" in name.lower():
        return MigrationType.CLEANUP
    for migration_type, pattern in _TYPE_RULES:
        if pattern.search(content):
            return migration_type
    return MigrationType.DATA


def extract_dependencies(content: str) -> list[str]:
    deps: list[str] = []
    for match in _DEPENDS_RE.finditer(content):
        for dep in re.split(r"[,\s]+", match.group(1).strip()):
            if dep and dep not in deps:
                deps.append(dep)
    return deps


def is_breaking(content: str) -> bool:
    return any(pattern.search(content) for pattern in _BREAKING_PATTERNS)


def estimate_duration_ms(content: str) -> int:
    """Rough runtime estimate from size and the kinds of statements present."""
    size = len(content)
    lowered = content.lower()
    estimate = 1000.0
    if "create table" in lowered:
        estimate += 2000
    if "create index" in lowered or "create unique index" in lowered:
        estimate += 5000
    if "alter table" in lowered:
        estimate += 3000
    if "insert into" in lowered:
        estimate += size * 0.1
    if re.search(r"\bupdate\s+\w+\s+set\b", lowered):
        estimate += size * 0.2
    if size > 1000:
        estimate += (size - 1000) * 0.01
    return int(min(estimate, _MAX_DURATION_MS))


def split_sql_statements(sql: str) -> list[str]:
    """Split a script on top-level semicolons.

    Quoted strings, quoted identifiers, dollar-quoted bodies and comments
    are kept intact. Empty statements are dropped.
    """
    statements: list[str] = []
    buf: list[str] = []
    i = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        if ch == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            end = length if end == -1 else end
            i = end
            continue
        if ch == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = length if end == -1 else end + 2
            continue
        if ch in ("'", '"'):
            end = i + 1
            while end < length:
                if sql[end] == ch:
                    if end + 1 < length and sql[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            buf.append(sql[i : end + 1])
            i = end + 1
            continue
        if ch == "$":
            tag = re.match(r"\$[A-Za-z_]*\$", sql[i:])
            if tag:
                delimiter = tag.group(0)
                end = sql.find(delimiter, i + len(delimiter))
                end = length if end == -1 else end + len(delimiter)
                buf.append(sql[i:end])
                i = end
                continue
        if ch == ";":
            statement = "".join(buf).strip()
            if statement:
                statements.append(statement)
            buf = []
            i += 1
            continue
        buf.append(ch)
        i += 1

    tail = "".join(buf).strip()
    if tail:
        statements.append(tail)
    return statements


def load_migration(path: Path, database: MigrationDatabase) -> Migration | None:
    """Build a Migration from a forward file, or None when ``path`` is not one."""
    match = _FORWARD_RE.match(path.name)
    if not match or match.group(3) != _EXTENSIONS[database]:
        return None
    order, name = int(match.group(1)), match.group(2)
    if name.endswith(_ROLLBACK_SUFFIX):
        return None

    content = path.read_text(encoding="utf-8")
    rollback = path.with_name(f"{match.group(1)}_{name}{_ROLLBACK_SUFFIX}{path.suffix}")
    return Migration(
        order=order,
        name=name,
        database=database,
        path=path,
        content=content,
        content_hash=content_hash(content),
        rollback_path=rollback if rollback.exists() else None,
        dependencies=extract_dependencies(content),
        type=detect_type(name, content),
        size=len(content.encode("utf-8")),
        estimated_duration_ms=estimate_duration_ms(content),
        breaking=is_breaking(content),
    )


def discover(
    directories: dict[MigrationDatabase, Path | str | None],
) -> list[Migration]:
    """Walk each family's directory and return every forward migration.

    Missing directories are skipped. The result is ordered with
    ``sort_key``: database-specific families by (order, filename), shared
    migrations after them.
    """
    found: list[Migration] = []
    for database, directory in directories.items():
        if directory is None:
            continue
        root = Path(directory)
        if not root.is_dir():
            log.debug("me.discovery.directory_missing", database=str(database), path=str(root))
            continue
        for path in sorted(root.iterdir()):
            if not path.is_file():
                continue
            migration = load_migration(path, database)
            if migration is not None:
                found.append(migration)

    found.sort(key=sort_key)
    log.info(
        "me.discovery.completed",
        total=len(found),
        by_database={str(db): sum(1 for m in found if m.database == db) for db in MigrationDatabase},
    )
    return found


def sort_key(migration: Migration) -> tuple[bool, int, str]:
    return (migration.database == MigrationDatabase.SHARED, migration.order, migration.filename)
