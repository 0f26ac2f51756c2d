"""Consent ledger.

Consent is never edited: giving, withdrawing and refreshing consent each
append a record, and the effective state of (subject, purpose) is the
latest record by timestamp. Only purposes processed on the consent basis
expire; contract and legitimate-interest purposes do not.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from control_plane.compliance.audit import AuditLog
from control_plane.compliance.models import ConsentRecord, ConsentStatus
from control_plane.compliance.policies import PURPOSES, LegalBasis, Purpose
from control_plane.compliance.store import ComplianceStore
from control_plane.errors import ValidationError

log = structlog.get_logger(__name__)


def parse_purpose(value: str | Purpose) -> Purpose:
    try:
        return Purpose(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown processing purpose: {value}") from exc


def is_valid(record: ConsentRecord, now: datetime) -> bool:
    return record.given and not (record.expires_at is not None and record.expires_at <= now)


class ConsentLedger:
    """Records and answers consent for (subject, purpose) pairs."""

    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditLog,
        *,
        refresh_days: int = 365,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._refresh = timedelta(days=refresh_days)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def record(
        self,
        subject_id: str,
        purpose: str | Purpose,
        given: bool,
        meta: dict[str, Any] | None = None,
        *,
        version: str = "1.0",
        actor: str | None = None,
    ) -> ConsentRecord:
        """Append a consent decision. ``given=False`` is a withdrawal."""
        purpose = parse_purpose(purpose)
        policy = PURPOSES[purpose]
        now = self._clock()
        expires_at = now + self._refresh if given and policy.legal_basis == LegalBasis.CONSENT else None

        record = ConsentRecord(
            subject_id=subject_id,
            purpose=purpose,
            legal_basis=policy.legal_basis,
            given=given,
            recorded_at=now,
            expires_at=expires_at,
            version=version,
            metadata=dict(meta or {}),
        )
        await self._store.add_consent(record)
        await self._audit.append(
            "consent.given" if given else "consent.withdrawn",
            actor=actor or subject_id,
            subject_id=subject_id,
            payload={"purpose": str(purpose), "consentId": record.id, "version": version},
        )
        log.info("consent.recorded", subject_id=subject_id, purpose=str(purpose), given=given)
        return record

    async def withdraw(self, subject_id: str, purpose: str | Purpose, *, actor: str | None = None) -> ConsentRecord:
        return await self.record(subject_id, purpose, False, {"withdrawn": True}, actor=actor)

    async def check(self, subject_id: str, purpose: str | Purpose) -> ConsentStatus:
        """Effective consent for (subject, purpose) at the current time."""
        purpose = parse_purpose(purpose)
        policy = PURPOSES[purpose]
        latest = await self._store.latest_consent(subject_id, purpose)
        if latest is None:
            return ConsentStatus(
                purpose=purpose,
                has_valid_consent=not policy.required,
                consent_required=policy.required,
                legal_basis=policy.legal_basis,
            )

        now = self._clock()
        expired = latest.expires_at is not None and latest.expires_at <= now
        return ConsentStatus(
            purpose=purpose,
            has_valid_consent=is_valid(latest, now),
            consent_required=policy.required,
            legal_basis=latest.legal_basis,
            consent_given=latest.given,
            is_expired=expired,
            is_withdrawn=not latest.given,
            recorded_at=latest.recorded_at,
            expires_at=latest.expires_at,
            version=latest.version,
        )

    async def check_all(self, subject_id: str) -> dict[str, ConsentStatus]:
        return {str(p): await self.check(subject_id, p) for p in PURPOSES}

    async def history(self, subject_id: str, purpose: str | Purpose | None = None) -> list[ConsentRecord]:
        return await self._store.consents(subject_id, parse_purpose(purpose) if purpose is not None else None)

    async def expired(self) -> list[ConsentRecord]:
        """Consents whose latest record for (subject, purpose) has lapsed."""
        now = self._clock()
        lapsed: list[ConsentRecord] = []
        for record in await self._store.expiring_consents(now):
            latest = await self._store.latest_consent(record.subject_id, record.purpose)
            if latest is not None and latest.id == record.id and latest.given:
                lapsed.append(record)
        return lapsed
