"""Tests for breach detectors, the breach monitor and notifiers."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from control_plane.compliance import AuditLog, BreachMonitor, SecurityEvent, WebhookBreachNotifier
from control_plane.compliance.breach import (
    BREACH_DETECTED,
    detect_consent_violation,
    detect_data_exfiltration,
    detect_integrity_violation,
    detect_unauthorized_access,
)
from control_plane.compliance.models import (
    BreachRecord,
    BreachSeverity,
    BreachType,
    Detection,
    NotificationState,
)
from control_plane.errors import BreachDetected
from control_plane.infra.background_worker import BackgroundWorkerPool, TaskType


def event(kind: str, subjects: tuple[str, ...] = (), actor: str | None = "svc-export", **data) -> SecurityEvent:
    return SecurityEvent(
        kind=kind,
        occurred_at=datetime(2026, 3, 1, tzinfo=UTC),
        actor=actor,
        subject_ids=subjects,
        data=data,
    )


@pytest.fixture
def notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify_regulator = AsyncMock()
    notifier.notify_users = AsyncMock()
    return notifier


@pytest.fixture
def audit(compliance_store, utc_clock) -> AuditLog:
    return AuditLog(compliance_store, clock=utc_clock)


@pytest.fixture
def monitor(compliance_store, audit, notifier, utc_clock) -> BreachMonitor:
    return BreachMonitor(compliance_store, audit, notifier=notifier, clock=utc_clock)


# ------------------------------------------------------------------ #
# Detectors
# ------------------------------------------------------------------ #


class TestDetectors:
    def test_unauthorized_data_access(self):
        detection = detect_unauthorized_access(event("data_access", ("p1",), authorized=False, records=3))
        assert detection.breach_type == BreachType.UNAUTHORIZED_ACCESS
        assert detection.severity == BreachSeverity.HIGH
        assert detection.affected_subjects == ("p1",)

    @pytest.mark.parametrize("failures,fires", [(9, False), (10, True)])
    def test_failed_login_threshold(self, failures, fires):
        detection = detect_unauthorized_access(event("login_failed", failures=failures, ip="10.0.0.5"))
        assert (detection is not None) is fires

    @pytest.mark.parametrize(
        "records,approved,expected",
        [
            (999, False, None),
            (1_000, False, BreachSeverity.HIGH),
            (10_000, False, BreachSeverity.CRITICAL),
            (50_000, True, None),
        ],
    )
    def test_bulk_export(self, records, approved, expected):
        detection = detect_data_exfiltration(event("data_export", records=records, approved=approved))
        assert (detection.severity if detection else None) == expected

    def test_immutable_category_modified(self):
        detection = detect_integrity_violation(event("data_modification", category="tournament"))
        assert detection.severity == BreachSeverity.HIGH
        assert "immutable tournament" in detection.description

    def test_mutable_category_modification_is_fine(self):
        assert detect_integrity_violation(event("data_modification", category="identity")) is None
        assert detect_integrity_violation(event("data_modification", category="nonsense")) is None

    def test_checksum_mismatch(self):
        detection = detect_integrity_violation(event("data_modification", checksum_mismatch=True, resource="votes"))
        assert detection.description == "Checksum mismatch on votes"

    def test_consent_violation_scales_with_subjects(self):
        few = detect_consent_violation(event("data_processing", ("p1",), consent_valid=False, purpose="marketing"))
        many = detect_consent_violation(
            event("data_processing", tuple(f"p{i}" for i in range(100)), consent_valid=False)
        )
        assert few.severity == BreachSeverity.MEDIUM
        assert many.severity == BreachSeverity.HIGH
        assert detect_consent_violation(event("data_processing", consent_valid=True)) is None


# ------------------------------------------------------------------ #
# Monitor
# ------------------------------------------------------------------ #


class TestBreachMonitor:
    @pytest.mark.asyncio
    async def test_benign_event_opens_nothing(self, monitor, compliance_store):
        assert await monitor.process(event("login_failed", failures=2)) is None
        assert await compliance_store.list_breaches() == []

    @pytest.mark.asyncio
    async def test_severe_breach_notifies_both_audiences(self, monitor, notifier, audit, utc_clock):
        opened = []
        monitor.events.on(BREACH_DETECTED, opened.append)

        record = await monitor.process(event("data_export", ("p1", "p2"), records=5_000))

        assert record.notify_by == utc_clock.now + timedelta(hours=72)
        assert record.regulator_notification == NotificationState.SENT
        assert record.user_notification == NotificationState.SENT
        notifier.notify_regulator.assert_awaited_once_with(record)
        notifier.notify_users.assert_awaited_once_with(record)
        assert opened == [record]
        events = [e.event for e in await audit.entries()]
        assert events == ["privacy.breach_detected", "privacy.breach_notified", "privacy.breach_notified"]

    @pytest.mark.asyncio
    async def test_medium_breach_without_subjects(self, monitor, notifier):
        record = await monitor.process(event("login_failed", failures=25, ip="10.0.0.5"))

        assert record.severity == BreachSeverity.MEDIUM
        assert record.regulator_notification == NotificationState.NOT_REQUIRED
        assert record.user_notification == NotificationState.NOT_REQUIRED
        notifier.notify_regulator.assert_not_awaited()
        notifier.notify_users.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_check_raises(self, monitor):
        with pytest.raises(BreachDetected) as exc_info:
            await monitor.check(event("data_access", authorized=False, resource="wallets"))
        assert exc_info.value.breach_type == "unauthorized_access"

    @pytest.mark.asyncio
    async def test_failing_detector_skipped(self, monitor):
        def broken(evt):
            raise KeyError("records")

        monitor.register(BreachType.UNAUTHORIZED_ACCESS, broken)

        detection = monitor.detect(event("data_export", records=2_000))

        assert detection.breach_type == BreachType.DATA_EXFILTRATION

    @pytest.mark.asyncio
    async def test_custom_detector_set(self, compliance_store, audit, notifier, utc_clock):
        def wallet_drain(evt):
            if evt.kind == "wallet_transfer":
                return Detection(BreachType.DATA_EXFILTRATION, BreachSeverity.LOW, "Wallet drained")
            return None

        monitor = BreachMonitor(
            compliance_store,
            audit,
            notifier=notifier,
            detectors={BreachType.DATA_EXFILTRATION: wallet_drain},
            clock=utc_clock,
        )

        assert await monitor.process(event("data_export", records=50_000)) is None
        record = await monitor.process(event("wallet_transfer"))
        assert record.description == "Wallet drained"
        assert (await monitor.list_breaches())[0]["id"] == record.id

    @pytest.mark.asyncio
    async def test_failed_notification_persisted(self, monitor, notifier, compliance_store, utc_clock):
        record = BreachRecord(
            breach_type=BreachType.UNAUTHORIZED_ACCESS,
            severity=BreachSeverity.HIGH,
            description="test",
            detected_at=utc_clock.now,
            notify_by=utc_clock.now + timedelta(hours=72),
            regulator_notification=NotificationState.SCHEDULED,
        )
        await compliance_store.save_breach(record)
        notifier.notify_regulator.side_effect = RuntimeError("regulator portal down")

        with pytest.raises(RuntimeError):
            await monitor.notify(record.id, TaskType.BREACH_REGULATOR_NOTIFICATION)

        stored = await compliance_store.get_breach(record.id)
        assert stored.regulator_notification == NotificationState.FAILED

    @pytest.mark.asyncio
    async def test_late_notification_audited(self, monitor, audit, compliance_store, utc_clock):
        record = BreachRecord(
            breach_type=BreachType.CONSENT_VIOLATION,
            severity=BreachSeverity.MEDIUM,
            description="late",
            detected_at=utc_clock.now,
            notify_by=utc_clock.now + timedelta(hours=72),
            affected_subjects=["p1"],
        )
        await compliance_store.save_breach(record)
        utc_clock.advance(hours=73)

        await monitor.notify(record.id, TaskType.BREACH_USER_NOTIFICATION)

        entry = (await audit.entries())[-1]
        assert entry.payload == {"breachId": record.id, "audience": "users", "onTime": False}

    @pytest.mark.asyncio
    async def test_unknown_breach(self, monitor):
        with pytest.raises(ValueError, match="Unknown breach"):
            await monitor.notify("missing", TaskType.BREACH_USER_NOTIFICATION)


class TestWorkerDelivery:
    @pytest.mark.asyncio
    async def test_notifications_run_on_worker(self, compliance_store, audit, notifier, utc_clock):
        pool = BackgroundWorkerPool(max_workers=1, retry_delay=0)
        monitor = BreachMonitor(compliance_store, audit, notifier=notifier, worker=pool, clock=utc_clock)
        notifier.notify_users.side_effect = [RuntimeError("smtp timeout"), None]
        await pool.start()
        try:
            record = await monitor.process(event("data_export", ("p1",), records=20_000))
            await pool.join()
        finally:
            await pool.shutdown()

        stored = await compliance_store.get_breach(record.id)
        assert stored.regulator_notification == NotificationState.SENT
        assert stored.user_notification == NotificationState.SENT
        assert notifier.notify_users.await_count == 2
        assert pool.get_dead_letter_queue() == []


class TestWebhookNotifier:
    @pytest.mark.asyncio
    async def test_posts_audience_and_record(self, utc_clock):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = WebhookBreachNotifier("https://dpo.example.com/hooks/breach", client=client)
        record = BreachRecord(
            breach_type=BreachType.DATA_EXFILTRATION,
            severity=BreachSeverity.CRITICAL,
            description="bulk export",
            detected_at=utc_clock.now,
            notify_by=utc_clock.now + timedelta(hours=72),
        )

        await notifier.notify_regulator(record)
        await notifier.notify_users(record)
        await notifier.close()

        assert [r["audience"] for r in received] == ["regulator", "users"]
        assert received[0]["breach"]["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_http_error_raised(self, utc_clock):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        notifier = WebhookBreachNotifier("https://dpo.example.com/hooks/breach", client=client)
        record = BreachRecord(
            breach_type=BreachType.DATA_EXFILTRATION,
            severity=BreachSeverity.HIGH,
            description="bulk export",
            detected_at=utc_clock.now,
            notify_by=utc_clock.now,
        )

        with pytest.raises(httpx.HTTPStatusError):
            await notifier.notify_regulator(record)
