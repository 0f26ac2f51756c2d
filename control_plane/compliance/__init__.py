"""GDPR workflow: consent ledger, subject requests, audit log and breach handling."""

from __future__ import annotations

from control_plane.compliance.audit import AuditLog
from control_plane.compliance.breach import (
    BreachMonitor,
    BreachNotifier,
    LogBreachNotifier,
    WebhookBreachNotifier,
)
from control_plane.compliance.consent import ConsentLedger
from control_plane.compliance.gdpr import GDPRService, anonymous_id
from control_plane.compliance.models import (
    BreachRecord,
    ConsentRecord,
    ConsentStatus,
    PrivacyRequest,
    RequestStatus,
    SecurityEvent,
)
from control_plane.compliance.policies import DataCategory, Purpose, RequestKind
from control_plane.compliance.store import (
    ComplianceStore,
    InMemoryComplianceStore,
    InMemorySubjectDataStore,
    SqlComplianceStore,
    SqlSubjectDataStore,
    SubjectDataStore,
)

__all__ = [
    "AuditLog",
    "BreachMonitor",
    "BreachNotifier",
    "BreachRecord",
    "ComplianceStore",
    "ConsentLedger",
    "ConsentRecord",
    "ConsentStatus",
    "DataCategory",
    "GDPRService",
    "InMemoryComplianceStore",
    "InMemorySubjectDataStore",
    "LogBreachNotifier",
    "PrivacyRequest",
    "Purpose",
    "RequestKind",
    "RequestStatus",
    "SecurityEvent",
    "SqlComplianceStore",
    "SqlSubjectDataStore",
    "SubjectDataStore",
    "WebhookBreachNotifier",
    "anonymous_id",
]
