"""Pre-migration backups."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

import structlog
from sqlalchemy.engine import make_url

from control_plane.errors import MigrationError

log = structlog.get_logger(__name__)


class BackupProvider(ABC):
    @abstractmethod
    async def create(self, batch_id: str) -> str | None:
        """Take a backup and return its handle (None when nothing was taken)."""

    @abstractmethod
    async def restore(self, handle: str) -> None: ...


class NullBackupProvider(BackupProvider):
    async def create(self, batch_id: str) -> str | None:
        log.info("me.backup.skipped", batch_id=batch_id, reason="no backup provider configured")
        return None

    async def restore(self, handle: str) -> None:
        raise MigrationError(f"Cannot restore '{handle}': no backup provider configured")


class PgDumpBackupProvider(BackupProvider):
    """Custom-format ``pg_dump`` archives, restored with ``pg_restore --clean``."""

    def __init__(self, database_url: str, directory: str | Path, *, timeout: float = 900.0) -> None:
        url = make_url(database_url).set(drivername="postgresql")
        self._dsn = url.render_as_string(hide_password=False)
        self._directory = Path(directory)
        self._timeout = timeout

    async def create(self, batch_id: str) -> str | None:
        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        target = self._directory / f"backup_{stamp}_{batch_id[:8]}.dump"
        await self._run("pg_dump", "--format=custom", f"--file={target}", f"--dbname={self._dsn}")
        log.info("me.backup.created", batch_id=batch_id, handle=str(target), size=target.stat().st_size)
        return str(target)

    async def restore(self, handle: str) -> None:
        if not Path(handle).exists():
            raise MigrationError(f"Backup '{handle}' does not exist", critical=True)
        await self._run("pg_restore", "--clean", "--if-exists", f"--dbname={self._dsn}", handle)
        log.warning("me.backup.restored", handle=handle)

    async def _run(self, *argv: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise MigrationError(f"{argv[0]} could not be started: {exc}") from exc
        try:
            async with asyncio.timeout(self._timeout):
                _, stderr = await proc.communicate()
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise MigrationError(f"{argv[0]} timed out after {self._timeout:.0f}s") from exc
        if proc.returncode != 0:
            raise MigrationError(f"{argv[0]} exited with {proc.returncode}: {stderr.decode(errors='replace')[:500]}")
