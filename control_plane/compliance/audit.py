"""Append-only privacy audit log.

Every entry carries a sha256 hash of its canonical JSON payload so an
exported log can be checked for tampering, and timestamps never go
backwards: when the clock returns a value at or before the previous
entry, the entry is stamped one microsecond after it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from control_plane.compliance.models import AuditEntry
from control_plane.compliance.store import ComplianceStore

log = structlog.get_logger(__name__)

_TICK = timedelta(microseconds=1)


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()


class AuditLog:
    """Writes audit entries through a ComplianceStore."""

    def __init__(self, store: ComplianceStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last: datetime | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    async def append(
        self,
        event: str,
        *,
        actor: str,
        payload: dict[str, Any] | None = None,
        subject_id: str | None = None,
        request_id: str | None = None,
    ) -> AuditEntry:
        body = dict(payload or {})
        async with self._lock:
            if not self._loaded:
                self._last = await self._store.last_audit_timestamp()
                self._loaded = True
            now = self._clock()
            if self._last is not None and now <= self._last:
                now = self._last + _TICK
            entry = await self._store.append_audit(
                AuditEntry(
                    event=event,
                    actor=actor,
                    recorded_at=now,
                    payload=body,
                    payload_hash=payload_hash(body),
                    subject_id=subject_id,
                    request_id=request_id,
                )
            )
            self._last = now

        log.info("privacy.audit_appended", audit_event=event, actor=actor, request_id=request_id)
        return entry

    async def entries(self, subject_id: str | None = None, limit: int | None = None) -> list[AuditEntry]:
        return await self._store.audit_entries(subject_id, limit)

    @staticmethod
    def verify(entry: AuditEntry) -> bool:
        """True when the stored hash still matches the payload."""
        return payload_hash(entry.payload) == entry.payload_hash
