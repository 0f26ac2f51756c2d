"""Dependency resolution and execution grouping."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from control_plane.migrations.discovery import sort_key
from control_plane.migrations.models import Migration, MigrationDatabase


def resolve_dependency(ref: str, migrations: Iterable[Migration], database: MigrationDatabase) -> Migration | None:
    """Find the migration a ``@depends`` reference names.

    Accepted forms: a full id (``sql:002_users``), a stem (``002_users``)
    looked up in the declaring family first, or a bare name (``users``).
    """
    candidates = list(migrations)
    for migration in candidates:
        if migration.id == ref:
            return migration
    stem_matches = [m for m in candidates if m.stem == ref or m.name == ref]
    for migration in stem_matches:
        if migration.database == database:
            return migration
    return stem_matches[0] if stem_matches else None


def dependency_graph(migrations: Sequence[Migration]) -> tuple[dict[str, set[str]], list[str]]:
    """Map each migration id to the ids it depends on.

    Returns the graph and a list of unknown-dependency errors. Shared
    migrations implicitly depend on every database-specific migration in
    the set.
    """
    graph: dict[str, set[str]] = {m.id: set() for m in migrations}
    errors: list[str] = []
    database_specific = [m.id for m in migrations if m.database != MigrationDatabase.SHARED]

    for migration in migrations:
        for ref in migration.dependencies:
            target = resolve_dependency(ref, migrations, migration.database)
            if target is None:
                errors.append(f"{migration.id}: unknown dependency '{ref}'")
            elif target.id != migration.id:
                graph[migration.id].add(target.id)
        if migration.database == MigrationDatabase.SHARED:
            graph[migration.id].update(database_specific)
    return graph, errors


def find_cycle(graph: dict[str, set[str]]) -> list[str] | None:
    """Return one dependency cycle as a list of ids, or None."""
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(graph, white)
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        color[node] = grey
        stack.append(node)
        for dep in sorted(graph.get(node, ())):
            if dep not in color:
                continue
            if color[dep] == grey:
                return stack[stack.index(dep) :] + [dep]
            if color[dep] == white:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = black
        return None

    for node in sorted(graph):
        if color[node] == white:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def validate_graph(migrations: Sequence[Migration]) -> list[str]:
    graph, errors = dependency_graph(migrations)
    cycle = find_cycle(graph)
    if cycle:
        errors.append("dependency cycle: " + " -> ".join(cycle))
    return errors


def order_migrations(migrations: Sequence[Migration]) -> list[Migration]:
    """Order for sequential execution.

    Natural order (see ``sort_key``) unless a declared dependency points
    forward, in which case the dependency is pulled ahead of its dependant.
    """
    by_id = {m.id: m for m in migrations}
    graph, _ = dependency_graph(migrations)
    ordered: list[Migration] = []
    placed: set[str] = set()

    def place(migration_id: str, trail: frozenset[str]) -> None:
        if migration_id in placed or migration_id in trail:
            return
        for dep in sorted(graph[migration_id], key=lambda i: sort_key(by_id[i])):
            if dep in by_id:
                place(dep, trail | {migration_id})
        placed.add(migration_id)
        ordered.append(by_id[migration_id])

    for migration in sorted(migrations, key=sort_key):
        place(migration.id, frozenset())
    return ordered


def parallel_groups(migrations: Sequence[Migration]) -> list[list[Migration]]:
    """Split into levels of mutually independent migrations.

    Each level only depends on earlier levels. Within one database family
    numeric order is a dependency too, so independence comes from declared
    dependencies across families and from the families themselves.
    """
    ordered = sorted(migrations, key=sort_key)
    graph, _ = dependency_graph(ordered)
    previous_in_family: dict[MigrationDatabase, str] = {}
    for migration in ordered:
        if migration.database in previous_in_family:
            graph[migration.id].add(previous_in_family[migration.database])
        previous_in_family[migration.database] = migration.id

    level: dict[str, int] = {}
    remaining = {m.id: set(graph[m.id]) & set(graph) for m in ordered}
    current = 0
    while remaining:
        ready = [mid for mid, deps in remaining.items() if deps <= set(level)]
        if not ready:
            # Cycles are rejected during validation; keep the rest sequential.
            ready = [next(iter(remaining))]
        for mid in ready:
            level[mid] = current
            remaining.pop(mid)
        current += 1

    groups: list[list[Migration]] = [[] for _ in range(current)]
    for migration in ordered:
        groups[level[migration.id]].append(migration)
    return [group for group in groups if group]
