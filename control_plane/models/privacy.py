"""ORM models for the privacy workflow.

consent_records and privacy_audit_log are append-only: the stores never
issue UPDATE or DELETE against them. Withdrawal of consent is a new row.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.database import Base


class ConsentRecordRow(Base):
    __tablename__ = "consent_records"
    __table_args__ = (Index("ix_consent_records_subject_purpose", "subject_id", "purpose", "recorded_at"),)

    # Autoincrement breaks recorded_at ties in insertion order.
    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    purpose: Mapped[str] = mapped_column(String(50), nullable=False)
    legal_basis: Mapped[str] = mapped_column(String(30), nullable=False)
    given: Mapped[bool] = mapped_column(Boolean, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[str] = mapped_column(String(10), nullable=False, default="1.0")
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)


class PrivacyRequestRow(Base):
    """Persistent record of one data subject request."""

    __tablename__ = "privacy_requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="access | rectification | erasure | portability",
    )
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="pending | in_progress | completed | failed | rejected",
    )
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    deadline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    actor: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<PrivacyRequestRow id={self.id} kind={self.kind!r} status={self.status!r}>"


class PrivacyAuditRow(Base):
    __tablename__ = "privacy_audit_log"
    __table_args__ = (Index("ix_privacy_audit_log_subject_time", "subject_id", "recorded_at"),)

    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class BreachRecordRow(Base):
    __tablename__ = "breach_records"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    breach_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    notify_by: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    affected_subjects: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    regulator_notification: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    user_notification: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    event: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
