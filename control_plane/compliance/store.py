"""Persistence for the privacy workflow.

Two seams:

ComplianceStore
    The workflow's own records: consent ledger, privacy requests, audit
    log and breach records. ``SqlComplianceStore`` maps them onto the ORM
    tables in control_plane.models; ``InMemoryComplianceStore`` backs
    tests and single-process deployments.

SubjectDataStore
    The platform data a request reads and rewrites. Where each category
    lives is deployment specific, so ``SqlSubjectDataStore`` takes a
    category -> table mapping and runs everything through the query
    optimizer. Writes for one subject always happen in one transaction.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from control_plane.compliance.models import (
    AuditEntry,
    BreachRecord,
    BreachSeverity,
    BreachType,
    ConsentRecord,
    ErasurePlan,
    NotificationState,
    PrivacyRequest,
    RequestStatus,
    SubjectConstraints,
)
from control_plane.compliance.policies import (
    DataCategory,
    ErasureAction,
    LegalBasis,
    Purpose,
    RequestKind,
)
from control_plane.db.optimizer import QueryOptimizer, TransactionExecutor
from control_plane.errors import StoreError
from control_plane.models.privacy import (
    BreachRecordRow,
    ConsentRecordRow,
    PrivacyAuditRow,
    PrivacyRequestRow,
)

log = structlog.get_logger(__name__)

BeforeCommit = Callable[[], Awaitable[None]]


# ------------------------------------------------------------------ #
# Workflow records
# ------------------------------------------------------------------ #


class ComplianceStore(ABC):
    """Records owned by the privacy workflow."""

    @abstractmethod
    async def add_consent(self, record: ConsentRecord) -> None: ...

    @abstractmethod
    async def consents(self, subject_id: str, purpose: Purpose | None = None) -> list[ConsentRecord]:
        """Consent records oldest first; ties keep insertion order."""

    async def latest_consent(self, subject_id: str, purpose: Purpose) -> ConsentRecord | None:
        records = await self.consents(subject_id, purpose)
        return records[-1] if records else None

    @abstractmethod
    async def expiring_consents(self, before: datetime) -> list[ConsentRecord]:
        """Records with an expiry at or before ``before``."""

    @abstractmethod
    async def save_request(self, request: PrivacyRequest) -> None: ...

    @abstractmethod
    async def get_request(self, request_id: str) -> PrivacyRequest | None: ...

    @abstractmethod
    async def list_requests(
        self,
        *,
        subject_id: str | None = None,
        statuses: tuple[RequestStatus, ...] | None = None,
    ) -> list[PrivacyRequest]: ...

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        """Append and return the entry with its sequence number."""

    @abstractmethod
    async def audit_entries(self, subject_id: str | None = None, limit: int | None = None) -> list[AuditEntry]: ...

    @abstractmethod
    async def last_audit_timestamp(self) -> datetime | None: ...

    @abstractmethod
    async def save_breach(self, record: BreachRecord) -> None: ...

    @abstractmethod
    async def get_breach(self, breach_id: str) -> BreachRecord | None: ...

    @abstractmethod
    async def list_breaches(self, limit: int = 100) -> list[BreachRecord]: ...


class InMemoryComplianceStore(ComplianceStore):
    def __init__(self) -> None:
        self._consents: list[ConsentRecord] = []
        self._requests: dict[str, PrivacyRequest] = {}
        self._audit: list[AuditEntry] = []
        self._breaches: dict[str, BreachRecord] = {}

    async def add_consent(self, record: ConsentRecord) -> None:
        self._consents.append(record)

    async def consents(self, subject_id: str, purpose: Purpose | None = None) -> list[ConsentRecord]:
        matching = [
            r for r in self._consents if r.subject_id == subject_id and (purpose is None or r.purpose == purpose)
        ]
        # sorted() is stable, so equal timestamps stay in insertion order.
        return sorted(matching, key=lambda r: r.recorded_at)

    async def expiring_consents(self, before: datetime) -> list[ConsentRecord]:
        return [r for r in self._consents if r.expires_at is not None and r.expires_at <= before]

    async def save_request(self, request: PrivacyRequest) -> None:
        self._requests[request.id] = request

    async def get_request(self, request_id: str) -> PrivacyRequest | None:
        return self._requests.get(request_id)

    async def list_requests(
        self,
        *,
        subject_id: str | None = None,
        statuses: tuple[RequestStatus, ...] | None = None,
    ) -> list[PrivacyRequest]:
        return [
            r
            for r in self._requests.values()
            if (subject_id is None or r.subject_id == subject_id) and (statuses is None or r.status in statuses)
        ]

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        stored = AuditEntry(
            event=entry.event,
            actor=entry.actor,
            recorded_at=entry.recorded_at,
            payload=dict(entry.payload),
            payload_hash=entry.payload_hash,
            subject_id=entry.subject_id,
            request_id=entry.request_id,
            sequence=len(self._audit) + 1,
        )
        self._audit.append(stored)
        return stored

    async def audit_entries(self, subject_id: str | None = None, limit: int | None = None) -> list[AuditEntry]:
        entries = [e for e in self._audit if subject_id is None or e.subject_id == subject_id]
        return entries[-limit:] if limit else entries

    async def last_audit_timestamp(self) -> datetime | None:
        return self._audit[-1].recorded_at if self._audit else None

    async def save_breach(self, record: BreachRecord) -> None:
        self._breaches[record.id] = record

    async def get_breach(self, breach_id: str) -> BreachRecord | None:
        return self._breaches.get(breach_id)

    async def list_breaches(self, limit: int = 100) -> list[BreachRecord]:
        records = sorted(self._breaches.values(), key=lambda b: b.detected_at, reverse=True)
        return records[:limit]


def _consent_from_row(row: ConsentRecordRow) -> ConsentRecord:
    return ConsentRecord(
        id=row.id,
        subject_id=row.subject_id,
        purpose=Purpose(row.purpose),
        legal_basis=LegalBasis(row.legal_basis),
        given=row.given,
        recorded_at=row.recorded_at,
        expires_at=row.expires_at,
        version=row.version,
        metadata=dict(row.metadata_ or {}),
    )


def _request_from_row(row: PrivacyRequestRow) -> PrivacyRequest:
    return PrivacyRequest(
        id=row.id,
        kind=RequestKind(row.kind),
        subject_id=row.subject_id,
        status=RequestStatus(row.status),
        issued_at=row.issued_at,
        deadline_at=row.deadline_at,
        completed_at=row.completed_at,
        reason_code=row.reason_code,
        reason=row.reason,
        result=row.result,
        actor=row.actor,
    )


def _audit_from_row(row: PrivacyAuditRow) -> AuditEntry:
    return AuditEntry(
        event=row.event,
        actor=row.actor,
        recorded_at=row.recorded_at,
        payload=dict(row.payload or {}),
        payload_hash=row.payload_hash,
        subject_id=row.subject_id,
        request_id=row.request_id,
        sequence=row.sequence,
    )


def _breach_from_row(row: BreachRecordRow) -> BreachRecord:
    return BreachRecord(
        id=row.id,
        breach_type=BreachType(row.breach_type),
        severity=BreachSeverity(row.severity),
        description=row.description,
        detected_at=row.detected_at,
        notify_by=row.notify_by,
        affected_subjects=list(row.affected_subjects or []),
        regulator_notification=NotificationState(row.regulator_notification),
        user_notification=NotificationState(row.user_notification),
        event=dict(row.event or {}),
    )


class SqlComplianceStore(ComplianceStore):
    """ORM-backed store. Each call runs in its own session and commits."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _run(self, operation: str, fn: Any) -> Any:
        try:
            async with self._session_factory() as session:
                result = await fn(session)
                await session.commit()
                return result
        except SQLAlchemyError as exc:
            log.error("privacy_store.operation_failed", operation=operation, error=str(exc))
            transient = isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)) or (
                isinstance(exc, DBAPIError) and exc.connection_invalidated
            )
            raise StoreError(f"Privacy store {operation} failed: {exc}", transient=transient) from exc
        except OSError as exc:
            raise StoreError(f"Privacy store {operation} failed: {exc}", transient=True) from exc

    async def add_consent(self, record: ConsentRecord) -> None:
        async def _add(session: AsyncSession) -> None:
            session.add(
                ConsentRecordRow(
                    id=record.id,
                    subject_id=record.subject_id,
                    purpose=str(record.purpose),
                    legal_basis=str(record.legal_basis),
                    given=record.given,
                    recorded_at=record.recorded_at,
                    expires_at=record.expires_at,
                    version=record.version,
                    metadata_=record.metadata,
                )
            )

        await self._run("add_consent", _add)

    async def consents(self, subject_id: str, purpose: Purpose | None = None) -> list[ConsentRecord]:
        async def _select(session: AsyncSession) -> list[ConsentRecord]:
            stmt = select(ConsentRecordRow).where(ConsentRecordRow.subject_id == subject_id)
            if purpose is not None:
                stmt = stmt.where(ConsentRecordRow.purpose == str(purpose))
            stmt = stmt.order_by(ConsentRecordRow.recorded_at, ConsentRecordRow.sequence)
            rows = (await session.execute(stmt)).scalars().all()
            return [_consent_from_row(r) for r in rows]

        return await self._run("consents", _select)

    async def latest_consent(self, subject_id: str, purpose: Purpose) -> ConsentRecord | None:
        async def _select(session: AsyncSession) -> ConsentRecord | None:
            stmt = (
                select(ConsentRecordRow)
                .where(ConsentRecordRow.subject_id == subject_id, ConsentRecordRow.purpose == str(purpose))
                .order_by(ConsentRecordRow.recorded_at.desc(), ConsentRecordRow.sequence.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _consent_from_row(row) if row else None

        return await self._run("latest_consent", _select)

    async def expiring_consents(self, before: datetime) -> list[ConsentRecord]:
        async def _select(session: AsyncSession) -> list[ConsentRecord]:
            stmt = select(ConsentRecordRow).where(
                ConsentRecordRow.expires_at.is_not(None), ConsentRecordRow.expires_at <= before
            )
            return [_consent_from_row(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._run("expiring_consents", _select)

    async def save_request(self, request: PrivacyRequest) -> None:
        async def _upsert(session: AsyncSession) -> None:
            await session.merge(
                PrivacyRequestRow(
                    id=request.id,
                    kind=str(request.kind),
                    subject_id=request.subject_id,
                    status=str(request.status),
                    issued_at=request.issued_at,
                    deadline_at=request.deadline_at,
                    completed_at=request.completed_at,
                    reason_code=request.reason_code,
                    reason=request.reason,
                    result=request.result,
                    actor=request.actor,
                )
            )

        await self._run("save_request", _upsert)

    async def get_request(self, request_id: str) -> PrivacyRequest | None:
        async def _get(session: AsyncSession) -> PrivacyRequest | None:
            row = await session.get(PrivacyRequestRow, request_id)
            return _request_from_row(row) if row else None

        return await self._run("get_request", _get)

    async def list_requests(
        self,
        *,
        subject_id: str | None = None,
        statuses: tuple[RequestStatus, ...] | None = None,
    ) -> list[PrivacyRequest]:
        async def _select(session: AsyncSession) -> list[PrivacyRequest]:
            stmt = select(PrivacyRequestRow).order_by(PrivacyRequestRow.issued_at)
            if subject_id is not None:
                stmt = stmt.where(PrivacyRequestRow.subject_id == subject_id)
            if statuses is not None:
                stmt = stmt.where(PrivacyRequestRow.status.in_([str(s) for s in statuses]))
            return [_request_from_row(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._run("list_requests", _select)

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        async def _insert(session: AsyncSession) -> AuditEntry:
            row = PrivacyAuditRow(
                recorded_at=entry.recorded_at,
                event=entry.event,
                actor=entry.actor,
                subject_id=entry.subject_id,
                request_id=entry.request_id,
                payload=entry.payload,
                payload_hash=entry.payload_hash,
            )
            session.add(row)
            await session.flush()
            return _audit_from_row(row)

        return await self._run("append_audit", _insert)

    async def audit_entries(self, subject_id: str | None = None, limit: int | None = None) -> list[AuditEntry]:
        async def _select(session: AsyncSession) -> list[AuditEntry]:
            stmt = select(PrivacyAuditRow).order_by(PrivacyAuditRow.sequence.desc())
            if subject_id is not None:
                stmt = stmt.where(PrivacyAuditRow.subject_id == subject_id)
            if limit:
                stmt = stmt.limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [_audit_from_row(r) for r in reversed(rows)]

        return await self._run("audit_entries", _select)

    async def last_audit_timestamp(self) -> datetime | None:
        async def _max(session: AsyncSession) -> datetime | None:
            return (await session.execute(select(func.max(PrivacyAuditRow.recorded_at)))).scalar_one_or_none()

        return await self._run("last_audit_timestamp", _max)

    async def save_breach(self, record: BreachRecord) -> None:
        async def _upsert(session: AsyncSession) -> None:
            await session.merge(
                BreachRecordRow(
                    id=record.id,
                    breach_type=str(record.breach_type),
                    severity=str(record.severity),
                    description=record.description,
                    detected_at=record.detected_at,
                    notify_by=record.notify_by,
                    affected_subjects=list(record.affected_subjects),
                    regulator_notification=str(record.regulator_notification),
                    user_notification=str(record.user_notification),
                    event=record.event,
                )
            )

        await self._run("save_breach", _upsert)

    async def get_breach(self, breach_id: str) -> BreachRecord | None:
        async def _get(session: AsyncSession) -> BreachRecord | None:
            row = await session.get(BreachRecordRow, breach_id)
            return _breach_from_row(row) if row else None

        return await self._run("get_breach", _get)

    async def list_breaches(self, limit: int = 100) -> list[BreachRecord]:
        async def _select(session: AsyncSession) -> list[BreachRecord]:
            stmt = select(BreachRecordRow).order_by(BreachRecordRow.detected_at.desc()).limit(limit)
            return [_breach_from_row(r) for r in (await session.execute(stmt)).scalars().all()]

        return await self._run("list_breaches", _select)


# ------------------------------------------------------------------ #
# Subject data
# ------------------------------------------------------------------ #


class SubjectDataStore(ABC):
    """Platform data about a subject, grouped by category."""

    @abstractmethod
    async def collect(
        self, subject_id: str, categories: tuple[DataCategory, ...]
    ) -> dict[DataCategory, list[dict[str, Any]]]: ...

    @abstractmethod
    async def constraints(self, subject_id: str) -> SubjectConstraints: ...

    @abstractmethod
    async def privacy_settings(self, subject_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def apply_rectification(
        self,
        subject_id: str,
        changes: Mapping[DataCategory, Mapping[str, Any]],
        *,
        before_commit: BeforeCommit | None = None,
    ) -> int:
        """Apply all edits atomically. Returns the number of rows touched.

        ``before_commit`` runs after the edits and before they become visible;
        when it raises, nothing is applied.
        """

    @abstractmethod
    async def apply_erasure(self, subject_id: str, plan: ErasurePlan, anonymous_id: str) -> dict[str, int]:
        """Apply an erasure plan atomically. Returns rows touched per category."""


def category_outcome(plan: ErasurePlan, category: DataCategory) -> tuple[list[str], bool, bool]:
    """(fields to null, rows must be re-keyed, rows can be deleted) for one category."""
    decisions = [d for d in plan.decisions if d.category == category]
    erase = [d.field for d in decisions if d.action == ErasureAction.ERASE]
    rekey = any(d.action == ErasureAction.ANONYMIZE for d in decisions)
    delete = bool(decisions) and len(erase) == len(decisions)
    return erase, rekey, delete


class InMemorySubjectDataStore(SubjectDataStore):
    """Dict-backed store: ``data[subject][category]`` is a list of row dicts."""

    def __init__(
        self,
        data: dict[str, dict[DataCategory, list[dict[str, Any]]]] | None = None,
        *,
        settings: dict[str, dict[str, Any]] | None = None,
        active_proposals: dict[str, int] | None = None,
    ) -> None:
        self.data = data or {}
        self.settings = settings or {}
        self.active_proposals = active_proposals or {}

    async def collect(
        self, subject_id: str, categories: tuple[DataCategory, ...]
    ) -> dict[DataCategory, list[dict[str, Any]]]:
        subject = self.data.get(subject_id, {})
        return {c: [dict(row) for row in subject.get(c, [])] for c in categories}

    async def constraints(self, subject_id: str) -> SubjectConstraints:
        subject = self.data.get(subject_id, {})
        return SubjectConstraints(
            clan_leader=any(r.get("clan_role") == "leader" for r in subject.get(DataCategory.CLAN, [])),
            active_proposals=self.active_proposals.get(subject_id, 0),
            tournament_entries=len(subject.get(DataCategory.TOURNAMENT, [])),
        )

    async def privacy_settings(self, subject_id: str) -> dict[str, Any]:
        return dict(self.settings.get(subject_id, {}))

    async def apply_rectification(
        self,
        subject_id: str,
        changes: Mapping[DataCategory, Mapping[str, Any]],
        *,
        before_commit: BeforeCommit | None = None,
    ) -> int:
        subject = self.data.get(subject_id, {})
        touched = 0
        # Stage on copies so a failure leaves the originals untouched.
        staged = {c: [dict(r) for r in subject.get(c, [])] for c in changes}
        for category, edits in changes.items():
            for row in staged[category]:
                row.update(edits)
                touched += 1
        if before_commit is not None:
            await before_commit()
        subject.update(staged)
        return touched

    async def apply_erasure(self, subject_id: str, plan: ErasurePlan, anonymous_id: str) -> dict[str, int]:
        subject = self.data.get(subject_id, {})
        anonymous = self.data.setdefault(anonymous_id, {})
        touched: dict[str, int] = {}
        for category in list(subject):
            rows = subject[category]
            erase, rekey, delete = category_outcome(plan, category)
            if not rows or not (erase or rekey or delete):
                continue
            touched[str(category)] = len(rows)
            if delete:
                del subject[category]
                continue
            for row in rows:
                for name in erase:
                    row[name] = None
            if rekey:
                anonymous.setdefault(category, []).extend(rows)
                del subject[category]
        self.settings.pop(subject_id, None)
        self.active_proposals.pop(subject_id, None)
        if not subject:
            self.data.pop(subject_id, None)
        if not anonymous:
            self.data.pop(anonymous_id, None)
        return touched


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

DEFAULT_TABLES: dict[DataCategory, str] = {
    DataCategory.IDENTITY: "player_identities",
    DataCategory.TOURNAMENT: "tournament_results",
    DataCategory.CLAN: "clan_members",
    DataCategory.VOTING: "governance_votes",
    DataCategory.GAMING: "player_achievements",
    DataCategory.COMMUNICATION: "player_messages",
    DataCategory.BLOCKCHAIN: "wallet_links",
    DataCategory.ANALYTICS: "player_analytics",
}


def _checked(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ValueError(f"Invalid SQL identifier: {identifier!r}")
    return identifier


class SqlSubjectDataStore(SubjectDataStore):
    """Subject data spread over one table per category.

    Every table carries a ``subject_column`` plus the category's policy
    fields as columns. Leadership and proposal checks read ``clan_members``
    (``clan_role = 'leader'``) and ``governance_proposals``
    (``status = 'active'``).
    """

    def __init__(
        self,
        qo: QueryOptimizer,
        tables: Mapping[DataCategory, str] | None = None,
        *,
        subject_column: str = "subject_id",
        settings_table: str = "privacy_settings",
        proposals_table: str = "governance_proposals",
    ) -> None:
        self._qo = qo
        self._tables = {c: _checked(t) for c, t in (tables or DEFAULT_TABLES).items()}
        self._subject = _checked(subject_column)
        self._settings_table = _checked(settings_table)
        self._proposals_table = _checked(proposals_table)

    async def collect(
        self, subject_id: str, categories: tuple[DataCategory, ...]
    ) -> dict[DataCategory, list[dict[str, Any]]]:
        collected: dict[DataCategory, list[dict[str, Any]]] = {}
        for category in categories:
            table = self._tables.get(category)
            if table is None:
                collected[category] = []
                continue
            result = await self._qo.query(
                f"SELECT * FROM {table} WHERE {self._subject} = $1",
                [subject_id],
                bypass_cache=True,
                operation="privacy_collect",
            )
            collected[category] = [{k: v for k, v in row.items() if k != self._subject} for row in result.rows]
        return collected

    async def constraints(self, subject_id: str) -> SubjectConstraints:
        clan = self._tables.get(DataCategory.CLAN)
        tournament = self._tables.get(DataCategory.TOURNAMENT)
        leader = False
        if clan is not None:
            result = await self._qo.query(
                f"SELECT 1 AS leader FROM {clan} WHERE {self._subject} = $1 AND clan_role = 'leader' LIMIT 1",
                [subject_id],
                bypass_cache=True,
            )
            leader = result.row_count > 0
        proposals = await self._qo.query(
            f"SELECT count(*) AS n FROM {self._proposals_table} WHERE {self._subject} = $1 AND status = 'active'",
            [subject_id],
            bypass_cache=True,
        )
        entries = 0
        if tournament is not None:
            result = await self._qo.query(
                f"SELECT count(*) AS n FROM {tournament} WHERE {self._subject} = $1",
                [subject_id],
                bypass_cache=True,
            )
            entries = int(result.rows[0]["n"]) if result.rows else 0
        return SubjectConstraints(
            clan_leader=leader,
            active_proposals=int(proposals.rows[0]["n"]) if proposals.rows else 0,
            tournament_entries=entries,
        )

    async def privacy_settings(self, subject_id: str) -> dict[str, Any]:
        result = await self._qo.query(
            f"SELECT * FROM {self._settings_table} WHERE {self._subject} = $1",
            [subject_id],
            bypass_cache=True,
        )
        if not result.rows:
            return {}
        return {k: v for k, v in result.rows[0].items() if k != self._subject}

    async def apply_rectification(
        self,
        subject_id: str,
        changes: Mapping[DataCategory, Mapping[str, Any]],
        *,
        before_commit: BeforeCommit | None = None,
    ) -> int:
        async def _apply(tx: TransactionExecutor) -> int:
            touched = 0
            for category, edits in changes.items():
                table = self._tables[category]
                columns = [_checked(name) for name in edits]
                assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=1))
                params = [*edits.values(), subject_id]
                result = await tx.query(
                    f"UPDATE {table} SET {assignments} WHERE {self._subject} = ${len(params)}",
                    params,
                )
                touched += result.row_count
            if before_commit is not None:
                await before_commit()
            return touched

        touched = await self._qo.transaction(_apply)
        for category in changes:
            await self._qo.invalidate_table(self._tables[category])
        return touched

    async def apply_erasure(self, subject_id: str, plan: ErasurePlan, anonymous_id: str) -> dict[str, int]:
        async def _apply(tx: TransactionExecutor) -> dict[str, int]:
            touched: dict[str, int] = {}
            for category, table in self._tables.items():
                erase, rekey, delete = category_outcome(plan, category)
                if delete:
                    result = await tx.query(f"DELETE FROM {table} WHERE {self._subject} = $1", [subject_id])
                    touched[str(category)] = result.row_count
                    continue
                assignments = [f"{_checked(name)} = NULL" for name in erase]
                params: list[Any] = []
                if rekey:
                    assignments.append(f"{self._subject} = $1")
                    params.append(anonymous_id)
                if not assignments:
                    continue
                params.append(subject_id)
                result = await tx.query(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE {self._subject} = ${len(params)}",
                    params,
                )
                touched[str(category)] = result.row_count
            await tx.query(f"DELETE FROM {self._settings_table} WHERE {self._subject} = $1", [subject_id])
            return touched

        touched = await self._qo.transaction(_apply)
        for table in self._tables.values():
            await self._qo.invalidate_table(table)
        return touched
