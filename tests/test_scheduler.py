"""Notification scheduler: schedule arithmetic, sweeps, retries and the lease.

Sweeps run against a fixed clock passed as ``now``; every sweep commits on
the test session, so seeds are committed up front.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import (
    BALANCE_LOW_TEMPLATE,
    DOCUMENT_EXPIRY_TEMPLATE,
    DeliveryStatus,
    NotificationFrequency,
    NotificationType,
    NotifierStatus,
    ReminderKind,
)
from leaveflow.common.exceptions import ConflictError, NotificationDeliveryError
from leaveflow.common.pagination import PaginationParams
from leaveflow.config import settings
from leaveflow.notifications.dispatch import (
    DispatchResult,
    InAppDispatcher,
    WebhookDispatcher,
    get_dispatcher,
)
from leaveflow.notifications.models import DocumentNotifier, Notification, NotificationLog
from leaveflow.notifications.scheduler import (
    NotificationScheduler,
    as_utc,
    compute_next_due,
    initial_next_due,
    retry_delay,
)
from leaveflow.notifications.schemas import DocumentNotifierCreate
from tests.conftest import seed_balance

NOW = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


# ── Test dispatchers ────────────────────────────────────────────────


class RecordingDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[uuid.UUID, str, dict]] = []

    async def send(self, recipient, template_id, data) -> DispatchResult:
        self.sent.append((recipient.id, template_id, data))
        if self.fail:
            return DispatchResult(ok=False, error="mail relay unavailable")
        return DispatchResult(ok=True)


class RaisingDispatcher:
    async def send(self, recipient, template_id, data) -> DispatchResult:
        raise NotificationDeliveryError(recipient.email, "connection reset")


class SlowDispatcher:
    async def send(self, recipient, template_id, data) -> DispatchResult:
        await asyncio.sleep(1)
        return DispatchResult(ok=True)


# ── Helpers ─────────────────────────────────────────────────────────


async def _notifier(
    db: AsyncSession,
    user,
    *,
    expires_at: date = date(2030, 1, 20),
    frequency: NotificationFrequency = NotificationFrequency.weekly,
    advance_notice_days: int = 30,
    now: datetime = NOW,
):
    out = await NotificationScheduler.create_notifier(
        db,
        user.id,
        DocumentNotifierCreate(
            document_id=uuid.uuid4(),
            document_name="Passport",
            expires_at=expires_at,
            frequency=frequency,
            advance_notice_days=advance_notice_days,
        ),
        now=now,
    )
    await db.commit()
    return out


async def _reload(db: AsyncSession, notifier_id) -> DocumentNotifier:
    return await db.get(DocumentNotifier, notifier_id, populate_existing=True)


async def _logs(db: AsyncSession, notifier_id=None) -> list[NotificationLog]:
    query = select(NotificationLog).order_by(NotificationLog.sent_at)
    if notifier_id is not None:
        query = query.where(NotificationLog.notifier_id == notifier_id)
    return list((await db.execute(query)).scalars().all())


# ═════════════════════════════════════════════════════════════════════
# Schedule arithmetic
# ═════════════════════════════════════════════════════════════════════


class TestScheduleArithmetic:

    def test_weekly_next_due(self):
        due = compute_next_due(NotificationFrequency.weekly, None, NOW, date(2030, 3, 1))
        assert due == NOW + timedelta(days=7)

    def test_monthly_next_due(self):
        due = compute_next_due(NotificationFrequency.monthly, None, NOW, date(2030, 6, 1))
        assert due == NOW + timedelta(days=30)

    def test_custom_next_due(self):
        due = compute_next_due(NotificationFrequency.custom, 3, NOW, date(2030, 6, 1))
        assert due == NOW + timedelta(days=3)

    def test_custom_without_days_rejected(self):
        with pytest.raises(ValueError):
            compute_next_due(NotificationFrequency.custom, None, NOW, date(2030, 6, 1))

    def test_next_due_capped_at_expiry(self):
        due = compute_next_due(NotificationFrequency.weekly, None, NOW, date(2030, 1, 4))
        assert due == datetime(2030, 1, 4, tzinfo=timezone.utc)

    def test_naive_last_sent_is_utc(self):
        due = compute_next_due(
            NotificationFrequency.weekly, None, NOW.replace(tzinfo=None), date(2030, 3, 1),
        )
        assert due == NOW + timedelta(days=7)

    def test_initial_due_opens_advance_window(self):
        due = initial_next_due(date(2030, 3, 1), 30, NOW)
        assert due == datetime(2030, 1, 30, tzinfo=timezone.utc)

    def test_initial_due_inside_window_is_now(self):
        due = initial_next_due(date(2030, 1, 10), 30, NOW)
        assert due == NOW

    def test_retry_delay_doubles(self):
        base = settings.NOTIFICATION_RETRY_BASE_MINUTES
        assert retry_delay(1) == timedelta(minutes=base)
        assert retry_delay(2) == timedelta(minutes=2 * base)
        assert retry_delay(4) == timedelta(minutes=8 * base)


# ═════════════════════════════════════════════════════════════════════
# Notifier management
# ═════════════════════════════════════════════════════════════════════


class TestNotifierManagement:

    async def test_create_sets_first_due(self, db: AsyncSession, employee):
        out = await _notifier(db, employee, expires_at=date(2030, 6, 1))

        assert out.status == NotifierStatus.active
        assert out.delivery_attempts == 0
        assert as_utc(out.next_due) == datetime(2030, 5, 2, tzinfo=timezone.utc)

    async def test_duplicate_document_conflicts(self, db: AsyncSession, employee):
        doc_id = uuid.uuid4()
        data = DocumentNotifierCreate(
            document_id=doc_id, document_name="Visa", expires_at=date(2030, 6, 1),
        )
        await NotificationScheduler.create_notifier(db, employee.id, data, now=NOW)

        with pytest.raises(ConflictError):
            await NotificationScheduler.create_notifier(db, employee.id, data, now=NOW)

    async def test_custom_frequency_requires_days(self):
        with pytest.raises(ValueError):
            DocumentNotifierCreate(
                document_id=uuid.uuid4(),
                document_name="Visa",
                expires_at=date(2030, 6, 1),
                frequency=NotificationFrequency.custom,
            )

    async def test_list_notifiers_only_own(self, db: AsyncSession, employee, manager):
        await _notifier(db, employee)
        await _notifier(db, manager)

        listed = await NotificationScheduler.list_notifiers(db, employee.id)
        assert [n.user_id for n in listed] == [employee.id]


# ═════════════════════════════════════════════════════════════════════
# Document sweep
# ═════════════════════════════════════════════════════════════════════


class TestDocumentSweep:

    async def test_due_notifier_sent_once(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)
        again = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)

        assert (report.processed, report.sent) == (1, 1)
        assert (again.processed, again.sent) == (0, 0)
        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0][1] == DOCUMENT_EXPIRY_TEMPLATE

        notifier = await _reload(db, out.id)
        assert as_utc(notifier.last_sent) == NOW
        assert as_utc(notifier.next_due) == NOW + timedelta(days=7)

        logs = await _logs(db, out.id)
        assert [log.status for log in logs] == [DeliveryStatus.sent]

    async def test_not_yet_due(self, db: AsyncSession, employee):
        await _notifier(db, employee, expires_at=date(2030, 6, 1))
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)

        assert report.processed == 0
        assert dispatcher.sent == []

    async def test_last_reminder_at_expiry_deactivates(self, db: AsyncSession, employee):
        out = await _notifier(db, employee, expires_at=date(2030, 1, 3))
        dispatcher = RecordingDispatcher()

        await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)
        notifier = await _reload(db, out.id)
        expiry = datetime(2030, 1, 3, tzinfo=timezone.utc)
        assert as_utc(notifier.next_due) == expiry

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=expiry)
        notifier = await _reload(db, out.id)

        assert report.deactivated == 1
        assert notifier.status == NotifierStatus.inactive
        assert len(dispatcher.sent) == 2

        later = await NotificationScheduler.run_sweep(
            db, dispatcher, now=expiry + timedelta(days=30),
        )
        assert later.processed == 0

    async def test_inactive_recipient_deactivates(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)
        employee.is_active = False
        await db.commit()
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)

        assert report.deactivated == 1
        assert dispatcher.sent == []
        assert (await _reload(db, out.id)).status == NotifierStatus.inactive

    async def test_in_app_delivery_creates_reminder(self, db: AsyncSession, employee):
        await _notifier(db, employee)

        await NotificationScheduler.run_sweep(db, InAppDispatcher(db), now=NOW)

        notes = (
            await db.execute(
                select(Notification).where(Notification.recipient_id == employee.id)
            )
        ).scalars().all()
        assert len(notes) == 1
        assert notes[0].type == NotificationType.reminder
        assert "Passport" in notes[0].message

    async def test_already_delivered_occurrence_not_resent(self, db: AsyncSession, employee):
        """A sent log for the current occurrence only advances the schedule."""
        out = await _notifier(db, employee)
        db.add(NotificationLog(
            notifier_id=out.id,
            recipient_id=employee.id,
            notification_type=ReminderKind.document_expiry,
            template_id=DOCUMENT_EXPIRY_TEMPLATE,
            dedupe_key=f"document_expiry:{out.id}:{NOW.isoformat()}",
            status=DeliveryStatus.sent,
            attempts=1,
            sent_at=NOW,
        ))
        await db.commit()
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)

        assert dispatcher.sent == []
        assert report.sent == 0
        notifier = await _reload(db, out.id)
        assert as_utc(notifier.next_due) == NOW + timedelta(days=7)


class TestDeliveryFailures:

    async def test_failure_schedules_retry_with_backoff(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)
        dispatcher = RecordingDispatcher(fail=True)
        base = timedelta(minutes=settings.NOTIFICATION_RETRY_BASE_MINUTES)

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)
        notifier = await _reload(db, out.id)

        assert report.retried == 1
        assert notifier.delivery_attempts == 1
        assert as_utc(notifier.next_due) == NOW + base

        early = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW + base / 2)
        assert early.processed == 0

        await NotificationScheduler.run_sweep(db, dispatcher, now=NOW + base)
        notifier = await _reload(db, out.id)
        assert notifier.delivery_attempts == 2
        assert as_utc(notifier.next_due) == NOW + base + 2 * base

        logs = await _logs(db, out.id)
        assert [log.status for log in logs] == [DeliveryStatus.retrying] * 2
        assert logs[0].error_message == "mail relay unavailable"

    async def test_max_attempts_marks_failed(self, db: AsyncSession, employee, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_MAX_ATTEMPTS", 2)
        out = await _notifier(db, employee)
        dispatcher = RecordingDispatcher(fail=True)

        await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)
        report = await NotificationScheduler.run_sweep(
            db, dispatcher, now=NOW + timedelta(hours=1),
        )

        assert report.failed == 1
        notifier = await _reload(db, out.id)
        assert notifier.status == NotifierStatus.failed
        logs = await _logs(db, out.id)
        assert logs[-1].status == DeliveryStatus.failed

        # failed notifiers are not swept again
        later = await NotificationScheduler.run_sweep(
            db, dispatcher, now=NOW + timedelta(days=1),
        )
        assert later.processed == 0

    async def test_success_after_failure_resets_attempts(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)
        failing = RecordingDispatcher(fail=True)
        await NotificationScheduler.run_sweep(db, failing, now=NOW)

        retry_at = NOW + timedelta(hours=1)
        report = await NotificationScheduler.run_sweep(db, RecordingDispatcher(), now=retry_at)

        assert report.sent == 1
        notifier = await _reload(db, out.id)
        assert notifier.delivery_attempts == 0
        assert as_utc(notifier.next_due) == retry_at + timedelta(days=7)

    async def test_raised_delivery_error_is_retried(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)

        report = await NotificationScheduler.run_sweep(db, RaisingDispatcher(), now=NOW)

        assert report.retried == 1
        logs = await _logs(db, out.id)
        assert "connection reset" in logs[0].error_message

    async def test_slow_dispatcher_times_out(self, db: AsyncSession, employee, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_SEND_TIMEOUT_SECONDS", 0.05)
        out = await _notifier(db, employee)

        report = await NotificationScheduler.run_sweep(db, SlowDispatcher(), now=NOW)

        assert report.retried == 1
        logs = await _logs(db, out.id)
        assert logs[0].error_message.startswith("Timed out")

    async def test_reset_reactivates_failed_notifier(
        self, db: AsyncSession, employee, monkeypatch,
    ):
        monkeypatch.setattr(settings, "NOTIFICATION_MAX_ATTEMPTS", 1)
        out = await _notifier(db, employee)
        await NotificationScheduler.run_sweep(db, RecordingDispatcher(fail=True), now=NOW)

        reset_at = NOW + timedelta(days=2)
        reset = await NotificationScheduler.reset_notifier(db, out.id, now=reset_at)
        await db.commit()

        assert reset.status == NotifierStatus.active
        assert reset.delivery_attempts == 0
        assert as_utc(reset.next_due) == reset_at

        report = await NotificationScheduler.run_sweep(db, RecordingDispatcher(), now=reset_at)
        assert report.sent == 1

    async def test_list_logs_filters_by_status(self, db: AsyncSession, employee):
        out = await _notifier(db, employee)
        await NotificationScheduler.run_sweep(db, RecordingDispatcher(fail=True), now=NOW)
        await NotificationScheduler.run_sweep(
            db, RecordingDispatcher(), now=NOW + timedelta(hours=1),
        )

        page = PaginationParams(page=1, page_size=50, sort=None)
        sent = await NotificationScheduler.list_logs(
            db, page, notifier_id=out.id, status=DeliveryStatus.sent,
        )
        everything = await NotificationScheduler.list_logs(db, page, notifier_id=out.id)

        assert sent["meta"].total == 1
        assert everything["meta"].total == 2


# ═════════════════════════════════════════════════════════════════════
# Balance-low reminders
# ═════════════════════════════════════════════════════════════════════


class TestBalanceSweep:

    async def test_low_balance_reminded_once(self, db: AsyncSession, employee, annual_leave):
        await seed_balance(
            db, employee.id, annual_leave.id, year=NOW.year,
            allocated=Decimal("10"), used=Decimal("9"),
        )
        await db.commit()
        dispatcher = RecordingDispatcher()

        first = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)
        second = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW + timedelta(days=1))

        assert first.balance_reminders == 1
        assert second.balance_reminders == 0
        assert len(dispatcher.sent) == 1
        recipient_id, template_id, data = dispatcher.sent[0]
        assert recipient_id == employee.id
        assert template_id == BALANCE_LOW_TEMPLATE
        assert data["leave_type"] == "Annual Leave"

    async def test_healthy_balance_ignored(self, db: AsyncSession, employee, annual_leave):
        await seed_balance(db, employee.id, annual_leave.id, year=NOW.year, allocated=Decimal("10"))
        await db.commit()
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(db, dispatcher, now=NOW)

        assert report.balance_reminders == 0
        assert dispatcher.sent == []

    async def test_zero_entitlement_ignored(self, db: AsyncSession, employee, annual_leave):
        await seed_balance(db, employee.id, annual_leave.id, year=NOW.year, allocated=Decimal("0"))
        await db.commit()

        report = await NotificationScheduler.run_sweep(db, RecordingDispatcher(), now=NOW)
        assert report.balance_reminders == 0

    async def test_failed_reminder_retried_after_backoff(
        self, db: AsyncSession, employee, annual_leave,
    ):
        await seed_balance(
            db, employee.id, annual_leave.id, year=NOW.year,
            allocated=Decimal("2"), used=Decimal("1"),
        )
        await db.commit()

        first = await NotificationScheduler.run_sweep(db, RecordingDispatcher(fail=True), now=NOW)
        report = await NotificationScheduler.run_sweep(
            db, RecordingDispatcher(), now=NOW + retry_delay(1),
        )

        assert first.retried == 1
        assert report.balance_reminders == 1
        logs = await _logs(db)
        assert [log.status for log in logs] == [DeliveryStatus.retrying, DeliveryStatus.sent]
        assert logs[-1].attempts == 2

    async def test_failed_reminder_waits_out_backoff(
        self, db: AsyncSession, employee, annual_leave,
    ):
        await seed_balance(
            db, employee.id, annual_leave.id, year=NOW.year,
            allocated=Decimal("2"), used=Decimal("1"),
        )
        await db.commit()
        await NotificationScheduler.run_sweep(db, RecordingDispatcher(fail=True), now=NOW)
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(
            db, dispatcher, now=NOW + retry_delay(1) - timedelta(minutes=1),
        )

        assert report.balance_reminders == 0
        assert dispatcher.sent == []

    async def test_reminder_gives_up_after_max_attempts(
        self, db: AsyncSession, employee, annual_leave,
    ):
        await seed_balance(
            db, employee.id, annual_leave.id, year=NOW.year,
            allocated=Decimal("2"), used=Decimal("1"),
        )
        await db.commit()
        dispatcher = RecordingDispatcher(fail=True)

        failed = 0
        for sweep in range(12):
            report = await NotificationScheduler.run_sweep(
                db, dispatcher, now=NOW + timedelta(days=sweep),
            )
            failed += report.failed

        max_attempts = settings.NOTIFICATION_MAX_ATTEMPTS
        assert len(dispatcher.sent) == max_attempts
        assert failed == 1
        logs = await _logs(db)
        assert [log.attempts for log in logs] == list(range(1, max_attempts + 1))
        assert all(log.status == DeliveryStatus.retrying for log in logs[:-1])
        assert logs[-1].status == DeliveryStatus.failed


# ═════════════════════════════════════════════════════════════════════
# Lease
# ═════════════════════════════════════════════════════════════════════


class TestSweepLease:

    async def test_held_lease_skips_sweep(self, db: AsyncSession, employee):
        await _notifier(db, employee)
        assert await NotificationScheduler.acquire_lease(db, "other-worker", NOW)
        dispatcher = RecordingDispatcher()

        report = await NotificationScheduler.run_sweep(
            db, dispatcher, now=NOW + timedelta(minutes=1), holder="this-worker",
        )

        assert report.skipped is True
        assert dispatcher.sent == []

    async def test_expired_lease_is_taken_over(self, db: AsyncSession, employee):
        await _notifier(db, employee)
        await NotificationScheduler.acquire_lease(db, "crashed-worker", NOW)
        dispatcher = RecordingDispatcher()

        later = NOW + timedelta(seconds=settings.SWEEP_LEASE_SECONDS + 1)
        report = await NotificationScheduler.run_sweep(
            db, dispatcher, now=later, holder="this-worker",
        )

        assert report.skipped is False
        assert report.sent == 1

    async def test_lease_released_after_sweep(self, db: AsyncSession):
        await NotificationScheduler.run_sweep(
            db, RecordingDispatcher(), now=NOW, holder="first",
        )
        assert await NotificationScheduler.acquire_lease(db, "second", NOW)

    async def test_same_holder_can_renew(self, db: AsyncSession):
        assert await NotificationScheduler.acquire_lease(db, "worker", NOW)
        assert await NotificationScheduler.acquire_lease(db, "worker", NOW + timedelta(minutes=1))
        assert not await NotificationScheduler.acquire_lease(
            db, "intruder", NOW + timedelta(minutes=2),
        )


# ═════════════════════════════════════════════════════════════════════
# Dispatchers
# ═════════════════════════════════════════════════════════════════════


class TestDispatchers:

    async def test_in_app_unknown_template_fails(self, db: AsyncSession, employee):
        result = await InAppDispatcher(db).send(employee, "no-such-template", {})
        assert result.ok is False

    async def test_in_app_missing_field_fails(self, db: AsyncSession, employee):
        result = await InAppDispatcher(db).send(employee, DOCUMENT_EXPIRY_TEMPLATE, {})
        assert result.ok is False
        assert "document_name" in result.error

    async def test_webhook_success(self, employee):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        dispatcher = WebhookDispatcher(
            "https://hooks.example.test/notify", transport=httpx.MockTransport(handler),
        )
        result = await dispatcher.send(employee, BALANCE_LOW_TEMPLATE, {"year": 2030})

        assert result.ok is True
        assert seen[0].method == "POST"

    async def test_webhook_error_status_fails(self, employee):
        dispatcher = WebhookDispatcher(
            "https://hooks.example.test/notify",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        result = await dispatcher.send(employee, BALANCE_LOW_TEMPLATE, {})

        assert result.ok is False
        assert result.error == "HTTP 503"

    async def test_webhook_connection_error_raises(self, employee):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        dispatcher = WebhookDispatcher(
            "https://hooks.example.test/notify", transport=httpx.MockTransport(handler),
        )
        with pytest.raises(NotificationDeliveryError):
            await dispatcher.send(employee, BALANCE_LOW_TEMPLATE, {})

    async def test_get_dispatcher_defaults_to_in_app(self, db: AsyncSession):
        assert isinstance(get_dispatcher(db), InAppDispatcher)

    async def test_get_dispatcher_webhook(self, db: AsyncSession, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_DISPATCHER", "webhook")
        monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.test/n")
        assert isinstance(get_dispatcher(db), WebhookDispatcher)

    async def test_get_dispatcher_webhook_without_url(self, db: AsyncSession, monkeypatch):
        monkeypatch.setattr(settings, "NOTIFICATION_DISPATCHER", "webhook")
        monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "")
        with pytest.raises(RuntimeError):
            get_dispatcher(db)
