"""Value types of the privacy workflow."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from control_plane.compliance.policies import (
    DataCategory,
    ErasureAction,
    LegalBasis,
    Purpose,
    RequestKind,
    RetentionJustification,
)


class RequestStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.REJECTED})


@dataclass(frozen=True)
class ConsentRecord:
    subject_id: str
    purpose: Purpose
    legal_basis: LegalBasis
    given: bool
    recorded_at: datetime
    expires_at: datetime | None = None
    version: str = "1.0"
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "purpose": str(self.purpose),
            "legalBasis": str(self.legal_basis),
            "given": self.given,
            "recordedAt": self.recorded_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "version": self.version,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class ConsentStatus:
    purpose: Purpose
    has_valid_consent: bool
    consent_required: bool
    legal_basis: LegalBasis
    consent_given: bool | None = None
    is_expired: bool = False
    is_withdrawn: bool = False
    recorded_at: datetime | None = None
    expires_at: datetime | None = None
    version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "purpose": str(self.purpose),
            "hasValidConsent": self.has_valid_consent,
            "consentRequired": self.consent_required,
            "legalBasis": str(self.legal_basis),
            "consentGiven": self.consent_given,
            "isExpired": self.is_expired,
            "isWithdrawn": self.is_withdrawn,
            "recordedAt": self.recorded_at.isoformat() if self.recorded_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "version": self.version,
        }


@dataclass
class PrivacyRequest:
    kind: RequestKind
    subject_id: str
    issued_at: datetime
    deadline_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RequestStatus = RequestStatus.PENDING
    completed_at: datetime | None = None
    reason_code: str | None = None
    reason: str | None = None
    result: dict[str, Any] | None = None
    actor: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "subjectId": self.subject_id,
            "status": str(self.status),
            "issuedAt": self.issued_at.isoformat(),
            "deadlineAt": self.deadline_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "reasonCode": self.reason_code,
            "reason": self.reason,
            "result": self.result,
        }


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of the privacy audit log."""

    event: str
    actor: str
    recorded_at: datetime
    payload: dict[str, Any]
    payload_hash: str
    subject_id: str | None = None
    request_id: str | None = None
    sequence: int | None = None


@dataclass(frozen=True)
class FieldDecision:
    category: DataCategory
    field: str
    action: ErasureAction
    justification: RetentionJustification | None = None


@dataclass(frozen=True)
class ErasurePlan:
    subject_id: str
    decisions: tuple[FieldDecision, ...]

    def fields(self, action: ErasureAction) -> list[FieldDecision]:
        return [d for d in self.decisions if d.action == action]

    def summary(self) -> dict[str, Any]:
        return {
            "erased": [f"{d.category}.{d.field}" for d in self.fields(ErasureAction.ERASE)],
            "anonymized": [f"{d.category}.{d.field}" for d in self.fields(ErasureAction.ANONYMIZE)],
            "retained": [
                {"field": f"{d.category}.{d.field}", "justification": str(d.justification)}
                for d in self.fields(ErasureAction.RETAIN)
            ],
        }


@dataclass(frozen=True)
class SubjectConstraints:
    """Facts about a subject that can block erasure."""

    clan_leader: bool = False
    active_proposals: int = 0
    tournament_entries: int = 0


class BreachSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BreachType(StrEnum):
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_EXFILTRATION = "data_exfiltration"
    INTEGRITY_VIOLATION = "integrity_violation"
    CONSENT_VIOLATION = "consent_violation"


class NotificationState(StrEnum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"


@dataclass(frozen=True)
class SecurityEvent:
    """One observation on the security event stream."""

    kind: str
    occurred_at: datetime
    actor: str | None = None
    subject_ids: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Detection:
    breach_type: BreachType
    severity: BreachSeverity
    description: str
    affected_subjects: tuple[str, ...] = ()


@dataclass
class BreachRecord:
    breach_type: BreachType
    severity: BreachSeverity
    description: str
    detected_at: datetime
    notify_by: datetime
    affected_subjects: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    regulator_notification: NotificationState = NotificationState.PENDING
    user_notification: NotificationState = NotificationState.PENDING
    event: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "breachType": str(self.breach_type),
            "severity": str(self.severity),
            "description": self.description,
            "detectedAt": self.detected_at.isoformat(),
            "notifyBy": self.notify_by.isoformat(),
            "affectedSubjects": list(self.affected_subjects),
            "regulatorNotification": str(self.regulator_notification),
            "userNotification": str(self.user_notification),
        }
