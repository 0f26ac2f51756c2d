"""Personal data breach detection and notification (GDPR Art. 33/34).

Detectors are plain callables ``(SecurityEvent) -> Detection | None``
registered per breach type and run in registration order; the first
positive detection opens a breach record. Opening a record:

1. persists it and appends ``privacy.breach_detected`` to the audit log
2. emits ``breach_detected`` on the monitor's EventBus
3. schedules regulator and user notification tasks on the background
   worker pool, due within 72 hours of detection

The regulator is only notified for high and critical severity; players
are notified whenever the breach names affected subjects.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from control_plane.compliance.audit import AuditLog
from control_plane.compliance.models import (
    BreachRecord,
    BreachSeverity,
    BreachType,
    Detection,
    NotificationState,
    SecurityEvent,
)
from control_plane.compliance.policies import BREACH_NOTIFICATION_HOURS, CATEGORIES, DataCategory
from control_plane.compliance.store import ComplianceStore
from control_plane.errors import BreachDetected
from control_plane.events import EventBus
from control_plane.infra.background_worker import BackgroundWorkerPool, Task, TaskType
from control_plane.telemetry.metrics import record_breach

log = structlog.get_logger(__name__)

BREACH_DETECTED = "breach_detected"

Detector = Callable[[SecurityEvent], Detection | None]

# Thresholds for the built-in detectors.
FAILED_LOGIN_THRESHOLD = 10
EXPORT_RECORD_THRESHOLD = 1_000
EXPORT_RECORD_CRITICAL = 10_000
CONSENT_VIOLATION_HIGH = 100


# ------------------------------------------------------------------ #
# Built-in detectors
# ------------------------------------------------------------------ #


def detect_unauthorized_access(event: SecurityEvent) -> Detection | None:
    if event.kind == "data_access" and event.data.get("authorized") is False:
        records = int(event.data.get("records", 0))
        return Detection(
            BreachType.UNAUTHORIZED_ACCESS,
            BreachSeverity.HIGH if records else BreachSeverity.MEDIUM,
            f"Unauthorized access to {event.data.get('resource', 'personal data')} by {event.actor or 'unknown'}",
            event.subject_ids,
        )
    if event.kind == "login_failed" and int(event.data.get("failures", 0)) >= FAILED_LOGIN_THRESHOLD:
        return Detection(
            BreachType.UNAUTHORIZED_ACCESS,
            BreachSeverity.MEDIUM,
            f"{event.data['failures']} failed logins from {event.data.get('ip', 'unknown')}",
            event.subject_ids,
        )
    return None


def detect_data_exfiltration(event: SecurityEvent) -> Detection | None:
    if event.kind != "data_export":
        return None
    records = int(event.data.get("records", 0))
    if records < EXPORT_RECORD_THRESHOLD or event.data.get("approved"):
        return None
    severity = BreachSeverity.CRITICAL if records >= EXPORT_RECORD_CRITICAL else BreachSeverity.HIGH
    return Detection(
        BreachType.DATA_EXFILTRATION,
        severity,
        f"Unapproved bulk export of {records} records by {event.actor or 'unknown'}",
        event.subject_ids,
    )


def detect_integrity_violation(event: SecurityEvent) -> Detection | None:
    if event.kind != "data_modification":
        return None
    if event.data.get("checksum_mismatch"):
        return Detection(
            BreachType.INTEGRITY_VIOLATION,
            BreachSeverity.HIGH,
            f"Checksum mismatch on {event.data.get('resource', 'stored records')}",
            event.subject_ids,
        )
    try:
        category = DataCategory(event.data.get("category", ""))
    except ValueError:
        return None
    if CATEGORIES[category].immutable:
        return Detection(
            BreachType.INTEGRITY_VIOLATION,
            BreachSeverity.HIGH,
            f"Modification of immutable {category} records by {event.actor or 'unknown'}",
            event.subject_ids,
        )
    return None


def detect_consent_violation(event: SecurityEvent) -> Detection | None:
    if event.kind != "data_processing" or event.data.get("consent_valid") is not False:
        return None
    severity = BreachSeverity.HIGH if len(event.subject_ids) >= CONSENT_VIOLATION_HIGH else BreachSeverity.MEDIUM
    return Detection(
        BreachType.CONSENT_VIOLATION,
        severity,
        f"Processing for {event.data.get('purpose', 'unknown purpose')} without valid consent",
        event.subject_ids,
    )


DEFAULT_DETECTORS: dict[BreachType, Detector] = {
    BreachType.UNAUTHORIZED_ACCESS: detect_unauthorized_access,
    BreachType.DATA_EXFILTRATION: detect_data_exfiltration,
    BreachType.INTEGRITY_VIOLATION: detect_integrity_violation,
    BreachType.CONSENT_VIOLATION: detect_consent_violation,
}


# ------------------------------------------------------------------ #
# Notifiers
# ------------------------------------------------------------------ #


class BreachNotifier(ABC):
    @abstractmethod
    async def notify_regulator(self, record: BreachRecord) -> None: ...

    @abstractmethod
    async def notify_users(self, record: BreachRecord) -> None: ...


class LogBreachNotifier(BreachNotifier):
    """Records notifications in the log only. Used when no webhook is configured."""

    async def notify_regulator(self, record: BreachRecord) -> None:
        log.warning("breach.regulator_notification", breach_id=record.id, severity=str(record.severity))

    async def notify_users(self, record: BreachRecord) -> None:
        log.warning("breach.user_notification", breach_id=record.id, affected=len(record.affected_subjects))


class WebhookBreachNotifier(BreachNotifier):
    """POSTs breach notifications as JSON to a webhook."""

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, audience: str, record: BreachRecord) -> None:
        response = await self._client.post(self._url, json={"audience": audience, "breach": record.to_dict()})
        response.raise_for_status()

    async def notify_regulator(self, record: BreachRecord) -> None:
        await self._post("regulator", record)

    async def notify_users(self, record: BreachRecord) -> None:
        await self._post("users", record)

    async def close(self) -> None:
        await self._client.aclose()


# ------------------------------------------------------------------ #
# Monitor
# ------------------------------------------------------------------ #


class BreachMonitor:
    """Runs detectors over security events and drives breach notification."""

    def __init__(
        self,
        store: ComplianceStore,
        audit: AuditLog,
        *,
        notifier: BreachNotifier | None = None,
        worker: BackgroundWorkerPool | None = None,
        detectors: dict[BreachType, Detector] | None = None,
        notification_hours: int = BREACH_NOTIFICATION_HOURS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._notifier = notifier or LogBreachNotifier()
        self._worker = worker
        self._detectors: dict[BreachType, Detector] = dict(DEFAULT_DETECTORS if detectors is None else detectors)
        self._deadline = timedelta(hours=notification_hours)
        self._clock = clock or (lambda: datetime.now(UTC))
        self.events = EventBus("gdpr.breach")

        if worker is not None:
            worker.register_handler(TaskType.BREACH_REGULATOR_NOTIFICATION, self.handle_task)
            worker.register_handler(TaskType.BREACH_USER_NOTIFICATION, self.handle_task)

    def register(self, breach_type: BreachType, detector: Detector) -> None:
        """Add or replace the detector for ``breach_type``."""
        self._detectors[breach_type] = detector

    def detect(self, event: SecurityEvent) -> Detection | None:
        for breach_type, detector in self._detectors.items():
            try:
                detection = detector(event)
            except Exception as exc:
                log.error("breach.detector_failed", breach_type=str(breach_type), error=str(exc), exc_info=True)
                continue
            if detection is not None:
                return detection
        return None

    async def process(self, event: SecurityEvent) -> BreachRecord | None:
        """Open a breach record when a detector fires. Returns None otherwise."""
        detection = self.detect(event)
        if detection is None:
            return None

        detected_at = self._clock()
        severe = detection.severity in (BreachSeverity.HIGH, BreachSeverity.CRITICAL)
        record = BreachRecord(
            breach_type=detection.breach_type,
            severity=detection.severity,
            description=detection.description,
            detected_at=detected_at,
            notify_by=detected_at + self._deadline,
            affected_subjects=list(detection.affected_subjects),
            regulator_notification=NotificationState.SCHEDULED if severe else NotificationState.NOT_REQUIRED,
            user_notification=(
                NotificationState.SCHEDULED if detection.affected_subjects else NotificationState.NOT_REQUIRED
            ),
            event={"kind": event.kind, "actor": event.actor, "occurredAt": event.occurred_at.isoformat()},
        )
        await self._store.save_breach(record)
        await self._audit.append(
            "privacy.breach_detected",
            actor="system",
            payload={
                "breachId": record.id,
                "breachType": str(record.breach_type),
                "severity": str(record.severity),
                "affectedSubjects": len(record.affected_subjects),
                "notifyBy": record.notify_by.isoformat(),
            },
        )
        record_breach(str(record.breach_type), str(record.severity))
        log.error(
            "breach.detected",
            breach_id=record.id,
            breach_type=str(record.breach_type),
            severity=str(record.severity),
            affected=len(record.affected_subjects),
        )
        self.events.emit(BREACH_DETECTED, record)

        if record.regulator_notification == NotificationState.SCHEDULED:
            await self._schedule(TaskType.BREACH_REGULATOR_NOTIFICATION, record)
        if record.user_notification == NotificationState.SCHEDULED:
            await self._schedule(TaskType.BREACH_USER_NOTIFICATION, record)
        return record

    async def check(self, event: SecurityEvent) -> None:
        """Like process(), but raises BreachDetected when a breach is opened."""
        record = await self.process(event)
        if record is not None:
            raise BreachDetected(
                record.description,
                breach_id=record.id,
                breach_type=str(record.breach_type),
                severity=str(record.severity),
            )

    async def _schedule(self, task_type: TaskType, record: BreachRecord) -> None:
        if self._worker is None or not self._worker.running:
            await self.notify(record.id, task_type)
            return
        await self._worker.submit_task(task_type=task_type, payload={"breach_id": record.id})

    async def handle_task(self, task: Task) -> None:
        await self.notify(task.payload["breach_id"], task.type)

    async def notify(self, breach_id: str, task_type: TaskType) -> BreachRecord:
        """Deliver one notification and persist its outcome.

        Failures are persisted as ``failed`` and re-raised so the worker
        pool retries the task.
        """
        record = await self._store.get_breach(breach_id)
        if record is None:
            raise ValueError(f"Unknown breach: {breach_id}")

        regulator = task_type == TaskType.BREACH_REGULATOR_NOTIFICATION
        audience = "regulator" if regulator else "users"
        try:
            if regulator:
                await self._notifier.notify_regulator(record)
            else:
                await self._notifier.notify_users(record)
        except Exception as exc:
            self._set_state(record, regulator, NotificationState.FAILED)
            await self._store.save_breach(record)
            log.error("breach.notification_failed", breach_id=breach_id, audience=audience, error=str(exc))
            raise

        now = self._clock()
        if now > record.notify_by:
            log.error(
                "breach.notification_late",
                breach_id=breach_id,
                audience=audience,
                notify_by=record.notify_by.isoformat(),
            )
        self._set_state(record, regulator, NotificationState.SENT)
        await self._store.save_breach(record)
        await self._audit.append(
            "privacy.breach_notified",
            actor="system",
            payload={"breachId": breach_id, "audience": audience, "onTime": now <= record.notify_by},
        )
        return record

    @staticmethod
    def _set_state(record: BreachRecord, regulator: bool, state: NotificationState) -> None:
        if regulator:
            record.regulator_notification = state
        else:
            record.user_notification = state

    async def list_breaches(self, limit: int = 100) -> list[dict[str, Any]]:
        return [r.to_dict() for r in await self._store.list_breaches(limit)]
