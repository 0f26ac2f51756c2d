"""GDPR data subject rights for the clan platform.

Implements the subject rights of Articles 15-20:
- Right to access (Art. 15): everything held about the subject in one artifact
- Right to rectification (Art. 16): edits to mutable categories only
- Right to erasure (Art. 17): erase / anonymize / retain per field
- Right to data portability (Art. 20): machine-readable export

Every request is:
1. Tracked (pending -> in_progress -> completed | failed | rejected)
2. Audited (each transition appends to the privacy audit log)
3. Deadlined (hours per kind, see policies.PROCESSING_DEADLINE_HOURS)

Gaming-domain rules:
- Tournament results, voting history and on-chain records are frozen for
  competitive and democratic integrity. They are never rectified, and on
  erasure they are re-keyed to a stable anonymous id instead of deleted,
  so leaderboards and vote tallies stay consistent.
- Clan leaders and authors of active governance proposals cannot be
  erased until they hand those responsibilities over.

Failure handling:
- Transient store failures are retried (tenacity, 3 attempts, exponential).
- Anything else moves the request to ``failed`` with a reason code. Subject
  writes are single transactions, so a failed request changes nothing.
"""

from __future__ import annotations

import hashlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from control_plane.compliance.audit import AuditLog
from control_plane.compliance.consent import ConsentLedger
from control_plane.compliance.models import (
    ErasurePlan,
    FieldDecision,
    PrivacyRequest,
    RequestStatus,
    SubjectConstraints,
)
from control_plane.compliance.policies import (
    CATEGORIES,
    PROCESSING_DEADLINE_HOURS,
    DataCategory,
    ErasureAction,
    RequestKind,
    RetentionJustification,
    classify_field,
)
from control_plane.compliance.store import ComplianceStore, SubjectDataStore
from control_plane.errors import IntegrityError, StoreError, ValidationError
from control_plane.events import EventBus
from control_plane.telemetry.metrics import record_privacy_request

log = structlog.get_logger(__name__)

T = TypeVar("T")

REQUEST_STATUS_CHANGED = "request_status_changed"

ERASED_MARKER = "ERASED"

ALTERNATIVE_TRANSFER_LEADERSHIP = "Transfer clan leadership and governance responsibilities"
ALTERNATIVE_TRANSFER_PROPOSALS = "Complete or transfer active governance responsibilities"
NOTE_TOURNAMENT = "Tournament data can be anonymized while preserving competition results"

IMPORT_INSTRUCTIONS = {
    "format": "JSON document, UTF-8",
    "structure": "data.<category> is a list of records; metadata.schema lists the fields of each category",
    "compatibility": "Any system accepting JSON can import this export",
    "steps": [
        "Verify metadata.totalRecords against the number of records in data",
        "Map each category in metadata.schema onto the receiving system's entities",
        "Import records category by category",
    ],
}


@dataclass(frozen=True)
class RequestStatusChanged:
    """Payload of the ``request_status_changed`` event."""

    request_id: str
    kind: RequestKind
    status: RequestStatus
    reason_code: str | None = None


def anonymous_id(subject_id: str, salt: str) -> str:
    """Stable pseudonym for ``subject_id``; the same subject always maps to the same id."""
    return hashlib.sha256(f"anonymous_{subject_id}_{salt}".encode()).hexdigest()[:16]


def build_erasure_plan(subject_id: str) -> ErasurePlan:
    decisions = []
    for category, policy in CATEGORIES.items():
        for name in policy.fields:
            action, justification = classify_field(category, name)
            decisions.append(FieldDecision(category, name, action, justification))
    return ErasurePlan(subject_id=subject_id, decisions=tuple(decisions))


def erasure_blockers(constraints: SubjectConstraints) -> tuple[list[str], list[str]]:
    """(blocking constraints, alternatives) for a subject. Empty when erasure may proceed."""
    blocking: list[str] = []
    alternatives: list[str] = []
    if constraints.clan_leader:
        blocking.append("Subject is the leader of a clan")
        alternatives.append(ALTERNATIVE_TRANSFER_LEADERSHIP)
    if constraints.active_proposals:
        blocking.append(f"Subject has {constraints.active_proposals} active governance proposal(s)")
        alternatives.append(ALTERNATIVE_TRANSFER_PROPOSALS)
    if blocking and constraints.tournament_entries:
        alternatives.append(NOTE_TOURNAMENT)
    return blocking, alternatives


def field_category(name: str) -> DataCategory | None:
    for category, policy in CATEGORIES.items():
        if name in policy.fields:
            return category
    return None


def parse_categories(values: Iterable[str] | None) -> tuple[DataCategory, ...]:
    if values is None:
        return tuple(CATEGORIES)
    parsed: list[DataCategory] = []
    unknown: list[str] = []
    for value in values:
        try:
            category = DataCategory(value)
        except ValueError:
            unknown.append(str(value))
            continue
        if category not in parsed:
            parsed.append(category)
    if unknown:
        raise ValidationError(f"Unknown data categories: {', '.join(unknown)}", errors=unknown)
    return tuple(parsed)


class _RequestRejected(Exception):
    """Internal: carries the typed error that rejected a request."""

    def __init__(self, error: Exception, reason_code: str, result: dict[str, Any] | None = None) -> None:
        super().__init__(str(error))
        self.error = error
        self.reason_code = reason_code
        self.result = result


class GDPRService:
    """Privacy request lifecycle over a ComplianceStore and a SubjectDataStore.

    Usage:
        service = GDPRService(store, subjects, anonymization_salt=salt)
        request = await service.request_access("player-42")
        request.result["metadata"]["categories"]
    """

    def __init__(
        self,
        store: ComplianceStore,
        subjects: SubjectDataStore,
        *,
        anonymization_salt: str,
        audit: AuditLog | None = None,
        consent: ConsentLedger | None = None,
        export_ttl_days: int = 7,
        retry_attempts: int = 3,
        retry_wait: wait_base | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._subjects = subjects
        self._salt = anonymization_salt
        self._clock = clock or (lambda: datetime.now(UTC))
        self.audit = audit or AuditLog(store, clock=self._clock)
        self.consent = consent or ConsentLedger(store, self.audit, clock=self._clock)
        self._export_ttl = timedelta(days=export_ttl_days)
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self.events = EventBus("gdpr")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def create_request(
        self, kind: RequestKind, subject_id: str, *, actor: str | None = None
    ) -> PrivacyRequest:
        """Create a pending request with its processing deadline."""
        issued = self._clock()
        request = PrivacyRequest(
            kind=kind,
            subject_id=subject_id,
            issued_at=issued,
            deadline_at=issued + timedelta(hours=PROCESSING_DEADLINE_HOURS[kind]),
            actor=actor or subject_id,
        )
        await self._store.save_request(request)
        await self.audit.append(
            "privacy.request_created",
            actor=request.actor or subject_id,
            subject_id=subject_id,
            request_id=request.id,
            payload={"kind": str(kind), "deadlineAt": request.deadline_at.isoformat()},
        )
        record_privacy_request(str(kind), str(RequestStatus.PENDING))
        log.info(
            "gdpr.request_created",
            request_id=request.id,
            kind=str(kind),
            subject_id=subject_id,
            deadline=request.deadline_at.isoformat(),
        )
        return request

    async def get_request(self, request_id: str) -> PrivacyRequest | None:
        return await self._store.get_request(request_id)

    async def _transition(
        self,
        request: PrivacyRequest,
        status: RequestStatus,
        *,
        reason_code: str | None = None,
        reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        previous = request.status
        request.status = status
        request.reason_code = reason_code
        request.reason = reason
        if result is not None:
            request.result = result
        if request.is_terminal:
            request.completed_at = self._clock()
        await self._store.save_request(request)

        payload: dict[str, Any] = {"from": str(previous), "to": str(status)}
        if reason_code:
            payload["reasonCode"] = reason_code
        await self.audit.append(
            f"privacy.request_{status}",
            actor=request.actor or request.subject_id,
            subject_id=request.subject_id,
            request_id=request.id,
            payload=payload,
        )
        record_privacy_request(str(request.kind), str(status))
        self.events.emit(
            REQUEST_STATUS_CHANGED,
            RequestStatusChanged(request.id, request.kind, status, reason_code),
        )

    async def _with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception(lambda exc: isinstance(exc, StoreError) and exc.transient),
            stop=stop_after_attempt(self._retry_attempts),
            wait=self._retry_wait,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log.warning("gdpr.store_retry", attempt=attempt.retry_state.attempt_number)
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover

    async def _process(
        self,
        kind: RequestKind,
        subject_id: str,
        work: Callable[[PrivacyRequest], Awaitable[dict[str, Any]]],
        *,
        actor: str | None = None,
    ) -> PrivacyRequest:
        request = await self.create_request(kind, subject_id, actor=actor)
        await self._transition(request, RequestStatus.IN_PROGRESS)
        try:
            result = await self._with_retry(lambda: work(request))
            await self._transition(request, RequestStatus.COMPLETED, result=result)
        except _RequestRejected as rejected:
            await self._transition(
                request,
                RequestStatus.REJECTED,
                reason_code=rejected.reason_code,
                reason=str(rejected.error),
                result=rejected.result,
            )
            log.warning("gdpr.request_rejected", request_id=request.id, reason_code=rejected.reason_code)
            raise rejected.error from None
        except StoreError as exc:
            code = "store_unavailable" if exc.transient else "store_error"
            await self._transition(request, RequestStatus.FAILED, reason_code=code, reason=str(exc))
            log.error("gdpr.request_failed", request_id=request.id, reason_code=code, error=str(exc))
            return request
        except Exception as exc:
            log.error("gdpr.request_crashed", request_id=request.id, error=str(exc), exc_info=True)
            await self._transition(request, RequestStatus.FAILED, reason_code="internal_error", reason=str(exc))
            raise

        log.info("gdpr.request_completed", request_id=request.id, kind=str(kind))
        return request

    # ------------------------------------------------------------------ #
    # Art. 15 access
    # ------------------------------------------------------------------ #

    async def request_access(self, subject_id: str, *, actor: str | None = None) -> PrivacyRequest:
        """Everything held about the subject, in one artifact."""

        async def _collect(request: PrivacyRequest) -> dict[str, Any]:
            categories = tuple(CATEGORIES)
            data = await self._subjects.collect(subject_id, categories)
            consents = await self.consent.history(subject_id)
            activities = await self.audit.entries(subject_id)
            settings = await self._subjects.privacy_settings(subject_id)
            return {
                "metadata": {
                    "subjectId": subject_id,
                    "requestId": request.id,
                    "generatedAt": self._clock().isoformat(),
                    "categories": [str(c) for c in categories],
                    "totalRecords": sum(len(rows) for rows in data.values()),
                },
                "data": {str(c): rows for c, rows in data.items()},
                "consentHistory": [c.to_dict() for c in consents],
                "processingActivities": [
                    {
                        "event": e.event,
                        "actor": e.actor,
                        "recordedAt": e.recorded_at.isoformat(),
                        "payloadHash": e.payload_hash,
                    }
                    for e in activities
                ],
                "privacySettings": settings,
            }

        return await self._process(RequestKind.ACCESS, subject_id, _collect, actor=actor)

    # ------------------------------------------------------------------ #
    # Art. 16 rectification
    # ------------------------------------------------------------------ #

    async def request_rectification(
        self, subject_id: str, changes: dict[str, Any], *, actor: str | None = None
    ) -> PrivacyRequest:
        """Apply field edits. Frozen categories and unknown fields are rejected."""

        async def _apply(request: PrivacyRequest) -> dict[str, Any]:
            grouped, errors = self._group_changes(changes)
            if errors:
                raise _RequestRejected(
                    ValidationError("Rectification rejected", errors=errors),
                    "immutable_field" if any("immutable" in e for e in errors) else "invalid_field",
                )
            async def _audit_fields() -> None:
                for category, edits in grouped.items():
                    await self.audit.append(
                        "privacy.fields_rectified",
                        actor=request.actor or subject_id,
                        subject_id=subject_id,
                        request_id=request.id,
                        payload={"category": str(category), "fields": sorted(edits)},
                    )

            # The audit entries are written inside the data transaction.
            rows = await self._subjects.apply_rectification(subject_id, grouped, before_commit=_audit_fields)
            return {"updatedFields": sorted(changes), "rowsUpdated": rows}

        return await self._process(RequestKind.RECTIFICATION, subject_id, _apply, actor=actor)

    @staticmethod
    def _group_changes(changes: dict[str, Any]) -> tuple[dict[DataCategory, dict[str, Any]], list[str]]:
        grouped: dict[DataCategory, dict[str, Any]] = {}
        errors: list[str] = []
        if not changes:
            errors.append("No fields to rectify")
        for name, value in changes.items():
            category = field_category(name)
            if category is None:
                errors.append(f"Unknown field: {name}")
                continue
            policy = CATEGORIES[category]
            if policy.immutable:
                errors.append(f"Field '{name}' is immutable: {policy.immutable_reason}")
                continue
            grouped.setdefault(category, {})[name] = value
        return grouped, errors

    # ------------------------------------------------------------------ #
    # Art. 17 erasure
    # ------------------------------------------------------------------ #

    def plan_erasure(self, subject_id: str) -> ErasurePlan:
        return build_erasure_plan(subject_id)

    async def request_erasure(self, subject_id: str, *, actor: str | None = None) -> PrivacyRequest:
        """Erase the subject, or refuse with alternatives and change nothing.

        Raises IntegrityError when clan leadership or active proposals block
        the request; the request is stored as ``rejected``.
        """

        async def _erase(request: PrivacyRequest) -> dict[str, Any]:
            constraints = await self._subjects.constraints(subject_id)
            blocking, alternatives = erasure_blockers(constraints)
            if blocking:
                error = IntegrityError(
                    "Erasure blocked by active platform responsibilities",
                    constraints=blocking,
                    alternatives=alternatives,
                )
                raise _RequestRejected(
                    error,
                    "erasure_blocked",
                    result={"constraints": blocking, "alternatives": alternatives},
                )

            plan = self.plan_erasure(subject_id)
            touched = await self._subjects.apply_erasure(subject_id, plan, anonymous_id(subject_id, self._salt))
            notes = [NOTE_TOURNAMENT] if constraints.tournament_entries else []
            return {
                "subjectId": ERASED_MARKER,
                "erasedAt": self._clock().isoformat(),
                "summary": plan.summary(),
                "rowsAffected": touched,
                "retainedRecords": {
                    "audit_logs": str(RetentionJustification.LEGAL_HOLD),
                    "compliance_records": str(RetentionJustification.LEGAL_HOLD),
                },
                "notes": notes,
            }

        return await self._process(RequestKind.ERASURE, subject_id, _erase, actor=actor)

    # ------------------------------------------------------------------ #
    # Art. 20 portability
    # ------------------------------------------------------------------ #

    async def request_portability(
        self,
        subject_id: str,
        categories: Iterable[str] | None = None,
        *,
        actor: str | None = None,
    ) -> PrivacyRequest:
        """Export the erasable and anonymizable fields of the requested categories."""
        try:
            selected = parse_categories(categories)
        except ValidationError as exc:
            request = await self.create_request(RequestKind.PORTABILITY, subject_id, actor=actor)
            await self._transition(request, RequestStatus.REJECTED, reason_code="invalid_category", reason=str(exc))
            raise

        async def _export(request: PrivacyRequest) -> dict[str, Any]:
            portable = {
                category: [
                    name
                    for name in CATEGORIES[category].fields
                    if classify_field(category, name)[0] in (ErasureAction.ERASE, ErasureAction.ANONYMIZE)
                ]
                for category in selected
            }
            collected = await self._subjects.collect(subject_id, selected)
            data = {
                str(category): [{name: row[name] for name in portable[category] if name in row} for row in rows]
                for category, rows in collected.items()
            }
            exported = self._clock()
            return {
                "format": "json",
                "version": "1.0",
                "metadata": {
                    "subjectId": subject_id,
                    "requestId": request.id,
                    "exportedAt": exported.isoformat(),
                    "expiresAt": (exported + self._export_ttl).isoformat(),
                    "categories": [str(c) for c in selected],
                    "totalRecords": sum(len(rows) for rows in data.values()),
                    "schema": {
                        str(c): {
                            "fields": portable[c],
                            "lawfulBasis": str(CATEGORIES[c].lawful_basis),
                            "retentionDays": CATEGORIES[c].retention_days,
                        }
                        for c in selected
                    },
                    "importInstructions": IMPORT_INSTRUCTIONS,
                },
                "data": data,
            }

        return await self._process(RequestKind.PORTABILITY, subject_id, _export, actor=actor)

    # ------------------------------------------------------------------ #
    # Sweep
    # ------------------------------------------------------------------ #

    async def run_sweep(self) -> dict[str, Any]:
        """Report lapsed consents and requests past their deadline."""
        now = self._clock()
        expired = await self.consent.expired()
        open_requests = await self._store.list_requests(statuses=(RequestStatus.PENDING, RequestStatus.IN_PROGRESS))
        overdue = [r for r in open_requests if r.deadline_at < now]

        for request in overdue:
            log.warning(
                "gdpr.request_overdue",
                request_id=request.id,
                kind=str(request.kind),
                deadline=request.deadline_at.isoformat(),
            )
        report = {
            "sweptAt": now.isoformat(),
            "expiredConsents": [c.to_dict() for c in expired],
            "overdueRequests": [r.to_dict() for r in overdue],
        }
        await self.audit.append(
            "privacy.sweep",
            actor="system",
            payload={"expiredConsents": len(expired), "overdueRequests": len(overdue)},
        )
        log.info("gdpr.sweep_completed", expired_consents=len(expired), overdue_requests=len(overdue))
        return report
