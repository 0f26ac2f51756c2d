"""Alembic environment for the control plane's own tables.

Alembic owns the privacy tables (consent records, privacy requests, the
audit log and breach records). Platform schema changes go through the
migration engine instead, which keeps its ledger in ``schema_version`` and
``migration_history``; autogenerate ignores those two tables and anything
else not declared on ``Base.metadata``.

The database URL comes from the application settings, so the CLI and the
service always agree on the target database.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

import control_plane.models  # noqa: F401 - registers all models with Base.metadata
from control_plane.config import get_settings
from control_plane.database import Base

VERSION_TABLE = "alembic_version_control_plane"
ENGINE_LEDGER_TABLES = frozenset({"schema_version", "migration_history"})

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Skip the migration engine ledger and tables this package does not declare."""
    if type_ == "table":
        if name in ENGINE_LEDGER_TABLES:
            return False
        if reflected and name not in target_metadata.tables:
            return False
    return True


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        version_table=VERSION_TABLE,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Apply migrations over asyncpg."""
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
