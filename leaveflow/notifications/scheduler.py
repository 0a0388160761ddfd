"""Recurring reminder scheduler.

One sweep, run periodically by ``scripts/run_notification_sweep.py`` or on
demand through the API:

1. take the ``notification-sweep`` lease (overlapping sweeps skip);
2. send every active document reminder whose ``next_due`` has passed;
3. send balance-low reminders, at most once per (employee, leave type,
   year, threshold), retrying failures with the same backoff and ceiling
   as document reminders;
4. release the lease.

The due query is stateless and every item is committed on its own, so a
sweep that dies halfway only re-processes items that are still due.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import (
    BALANCE_LOW_TEMPLATE,
    DOCUMENT_EXPIRY_TEMPLATE,
    FREQUENCY_DAYS,
    SWEEP_LEASE_NAME,
    DeliveryStatus,
    NotificationFrequency,
    NotifierStatus,
    ReminderKind,
)
from leaveflow.common.exceptions import (
    ConflictError,
    NotFoundException,
    NotificationDeliveryError,
)
from leaveflow.common.pagination import PaginationParams, paginate
from leaveflow.config import settings
from leaveflow.core_hr.models import Employee
from leaveflow.leave.models import LeaveBalance, LeaveType
from leaveflow.notifications.dispatch import DispatchResult, NotificationDispatcher
from leaveflow.notifications.models import (
    DocumentNotifier,
    NotificationLog,
    SchedulerLease,
)
from leaveflow.notifications.schemas import (
    DocumentNotifierCreate,
    DocumentNotifierOut,
    NotificationLogOut,
    SweepReportOut,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# Schedule arithmetic
# ═════════════════════════════════════════════════════════════════════


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def expiry_moment(expires_at: date) -> datetime:
    return datetime.combine(expires_at, time.min, tzinfo=timezone.utc)


def frequency_days(
    frequency: NotificationFrequency,
    custom_days: Optional[int] = None,
) -> int:
    if frequency == NotificationFrequency.custom:
        if not custom_days or custom_days < 1:
            raise ValueError("A custom frequency needs a positive number of days.")
        return custom_days
    return FREQUENCY_DAYS[frequency]


def compute_next_due(
    frequency: NotificationFrequency,
    custom_days: Optional[int],
    last_sent: datetime,
    expires_at: date,
) -> datetime:
    """Next reminder after *last_sent*, never later than the expiry itself."""
    candidate = as_utc(last_sent) + timedelta(days=frequency_days(frequency, custom_days))
    return min(candidate, expiry_moment(expires_at))


def initial_next_due(
    expires_at: date,
    advance_notice_days: int,
    now: datetime,
) -> datetime:
    """First reminder: ``advance_notice_days`` before expiry, or *now* when
    already inside that window."""
    window_opens = expiry_moment(expires_at) - timedelta(days=advance_notice_days)
    return max(window_opens, as_utc(now))


def retry_delay(attempt: int) -> timedelta:
    """Exponential backoff: base, 2·base, 4·base, … for attempts 1, 2, 3, …"""
    return timedelta(
        minutes=settings.NOTIFICATION_RETRY_BASE_MINUTES * 2 ** (attempt - 1)
    )


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


# ═════════════════════════════════════════════════════════════════════
# NotificationScheduler
# ═════════════════════════════════════════════════════════════════════


class NotificationScheduler:

    # ─────────────────────────────────────────────────────────────────
    # Lease
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def acquire_lease(
        db: AsyncSession,
        holder: str,
        now: datetime,
        *,
        name: str = SWEEP_LEASE_NAME,
    ) -> bool:
        """Take the named lease unless another holder's lease is still live."""
        expires = now + timedelta(seconds=settings.SWEEP_LEASE_SECONDS)
        result = await db.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.name == name,
                or_(SchedulerLease.expires_at <= now, SchedulerLease.holder == holder),
            )
            .values(holder=holder, acquired_at=now, expires_at=expires)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            return True

        existing = await db.execute(
            select(SchedulerLease.name).where(SchedulerLease.name == name)
        )
        if existing.scalar() is not None:
            return False

        try:
            await db.execute(
                insert(SchedulerLease).values(
                    name=name, holder=holder, acquired_at=now, expires_at=expires,
                )
            )
            await db.commit()
        except IntegrityError:
            # Another sweep created the lease first
            await db.rollback()
            return False
        return True

    @staticmethod
    async def release_lease(
        db: AsyncSession,
        holder: str,
        *,
        name: str = SWEEP_LEASE_NAME,
    ) -> None:
        await db.execute(
            delete(SchedulerLease)
            .where(SchedulerLease.name == name, SchedulerLease.holder == holder)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    # ─────────────────────────────────────────────────────────────────
    # Sweep
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def run_sweep(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        *,
        now: Optional[datetime] = None,
        holder: Optional[str] = None,
    ) -> SweepReportOut:
        """Run one sweep. Commits on *db* after every item."""
        now = as_utc(now or datetime.now(timezone.utc))
        holder = holder or _holder_id()
        report = SweepReportOut()

        if not await NotificationScheduler.acquire_lease(db, holder, now):
            logger.info("Notification sweep skipped: lease held elsewhere")
            report.skipped = True
            return report

        try:
            await NotificationScheduler._sweep_documents(db, dispatcher, now, report)
            await NotificationScheduler._sweep_balances(db, dispatcher, now, report)
        except Exception:
            await db.rollback()
            raise
        finally:
            await NotificationScheduler.release_lease(db, holder)

        logger.info(
            "Notification sweep done: processed=%d sent=%d retried=%d failed=%d "
            "deactivated=%d balance_reminders=%d",
            report.processed, report.sent, report.retried, report.failed,
            report.deactivated, report.balance_reminders,
        )
        return report

    @staticmethod
    async def _deliver(
        dispatcher: NotificationDispatcher,
        recipient: Employee,
        template_id: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        timeout = settings.NOTIFICATION_SEND_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(
                dispatcher.send(recipient, template_id, data), timeout=timeout,
            )
        except asyncio.TimeoutError:
            return DispatchResult(ok=False, error=f"Timed out after {timeout}s.")
        except NotificationDeliveryError as exc:
            return DispatchResult(ok=False, error=str(exc))

    @staticmethod
    async def _already_sent(db: AsyncSession, dedupe_key: str) -> bool:
        result = await db.execute(
            select(NotificationLog.id).where(
                NotificationLog.dedupe_key == dedupe_key,
                NotificationLog.status == DeliveryStatus.sent,
            ).limit(1)
        )
        return result.scalar() is not None

    @staticmethod
    async def _last_failure(db: AsyncSession, dedupe_key: str) -> Optional[NotificationLog]:
        """Most recent unsuccessful attempt for a dedupe key, if any."""
        result = await db.execute(
            select(NotificationLog)
            .where(
                NotificationLog.dedupe_key == dedupe_key,
                NotificationLog.status.in_(
                    [DeliveryStatus.retrying, DeliveryStatus.failed]
                ),
            )
            .order_by(NotificationLog.attempts.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── Document-expiry reminders ───────────────────────────────────

    @staticmethod
    async def _sweep_documents(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        now: datetime,
        report: SweepReportOut,
    ) -> None:
        due_ids = (
            await db.execute(
                select(DocumentNotifier.id)
                .where(
                    DocumentNotifier.status == NotifierStatus.active,
                    DocumentNotifier.next_due <= now,
                )
                .order_by(DocumentNotifier.next_due)
            )
        ).scalars().all()

        for notifier_id in due_ids:
            notifier = await db.get(DocumentNotifier, notifier_id, populate_existing=True)
            if notifier is None or notifier.status != NotifierStatus.active:
                continue
            report.processed += 1
            await NotificationScheduler._process_notifier(
                db, dispatcher, notifier, now, report,
            )
            await db.commit()

    @staticmethod
    async def _process_notifier(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        notifier: DocumentNotifier,
        now: datetime,
        report: SweepReportOut,
    ) -> None:
        recipient = await db.get(Employee, notifier.user_id)
        if recipient is None or not recipient.is_active:
            notifier.status = NotifierStatus.inactive
            report.deactivated += 1
            logger.info("Notifier %s deactivated: recipient inactive", notifier.id)
            return

        dedupe_key = (
            f"{ReminderKind.document_expiry.value}:{notifier.id}:"
            f"{as_utc(notifier.next_due).isoformat()}"
        )
        if await NotificationScheduler._already_sent(db, dedupe_key):
            # Delivered earlier but the schedule update never landed
            result = DispatchResult(ok=True)
            duplicate = True
        else:
            result = await NotificationScheduler._deliver(
                dispatcher,
                recipient,
                DOCUMENT_EXPIRY_TEMPLATE,
                {
                    "document_id": str(notifier.document_id),
                    "document_name": notifier.document_name,
                    "expires_at": notifier.expires_at.isoformat(),
                    "entity_type": "document",
                },
            )
            duplicate = False

        attempt = notifier.delivery_attempts + 1
        if result.ok:
            if not duplicate:
                db.add(NotificationLog(
                    notifier_id=notifier.id,
                    recipient_id=recipient.id,
                    notification_type=ReminderKind.document_expiry,
                    template_id=DOCUMENT_EXPIRY_TEMPLATE,
                    dedupe_key=dedupe_key,
                    status=DeliveryStatus.sent,
                    attempts=attempt,
                    sent_at=now,
                ))
                report.sent += 1
            notifier.last_sent = now
            notifier.delivery_attempts = 0
            if now >= expiry_moment(notifier.expires_at):
                notifier.status = NotifierStatus.inactive
                report.deactivated += 1
            else:
                notifier.next_due = compute_next_due(
                    notifier.frequency,
                    notifier.custom_frequency_days,
                    now,
                    notifier.expires_at,
                )
            await db.flush()
            return

        notifier.delivery_attempts = attempt
        if attempt >= settings.NOTIFICATION_MAX_ATTEMPTS:
            status = DeliveryStatus.failed
            notifier.status = NotifierStatus.failed
            report.failed += 1
            logger.warning(
                "Notifier %s failed permanently after %d attempts: %s",
                notifier.id, attempt, result.error,
            )
        else:
            status = DeliveryStatus.retrying
            notifier.next_due = now + retry_delay(attempt)
            report.retried += 1
            logger.info(
                "Notifier %s delivery attempt %d failed, retry at %s: %s",
                notifier.id, attempt, notifier.next_due, result.error,
            )
        db.add(NotificationLog(
            notifier_id=notifier.id,
            recipient_id=recipient.id,
            notification_type=ReminderKind.document_expiry,
            template_id=DOCUMENT_EXPIRY_TEMPLATE,
            dedupe_key=dedupe_key,
            status=status,
            attempts=attempt,
            error_message=result.error,
            sent_at=now,
        ))
        await db.flush()

    # ── Balance-low reminders ───────────────────────────────────────

    @staticmethod
    async def _sweep_balances(
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        now: datetime,
        report: SweepReportOut,
    ) -> None:
        threshold = settings.BALANCE_LOW_THRESHOLD_DAYS
        year = now.year
        rows = (
            await db.execute(
                select(LeaveBalance, LeaveType, Employee)
                .join(LeaveType, LeaveBalance.leave_type_id == LeaveType.id)
                .join(Employee, LeaveBalance.employee_id == Employee.id)
                .where(
                    LeaveBalance.year == year,
                    LeaveBalance.allocated_days + LeaveBalance.carryover_days > 0,
                    LeaveBalance.available <= threshold,
                    Employee.is_active.is_(True),
                    LeaveType.is_active.is_(True),
                )
            )
        ).all()

        for balance, leave_type, employee in rows:
            dedupe_key = (
                f"{ReminderKind.balance_low.value}:{employee.id}:"
                f"{leave_type.id}:{year}:{threshold}"
            )
            if await NotificationScheduler._already_sent(db, dedupe_key):
                continue

            previous = await NotificationScheduler._last_failure(db, dedupe_key)
            if previous is not None:
                if previous.status == DeliveryStatus.failed:
                    continue
                if now < as_utc(previous.sent_at) + retry_delay(previous.attempts):
                    continue
            attempt = previous.attempts + 1 if previous is not None else 1

            result = await NotificationScheduler._deliver(
                dispatcher,
                employee,
                BALANCE_LOW_TEMPLATE,
                {
                    "leave_type": leave_type.name,
                    "available": str(balance.available),
                    "year": year,
                    "entity_type": "leave_balance",
                },
            )
            if result.ok:
                status = DeliveryStatus.sent
                report.balance_reminders += 1
            elif attempt >= settings.NOTIFICATION_MAX_ATTEMPTS:
                status = DeliveryStatus.failed
                report.failed += 1
                logger.warning(
                    "Balance-low reminder for %s (%s) failed permanently after %d attempts: %s",
                    employee.email, leave_type.code, attempt, result.error,
                )
            else:
                status = DeliveryStatus.retrying
                report.retried += 1
                logger.info(
                    "Balance-low reminder for %s (%s) attempt %d failed: %s",
                    employee.email, leave_type.code, attempt, result.error,
                )
            db.add(NotificationLog(
                recipient_id=employee.id,
                notification_type=ReminderKind.balance_low,
                template_id=BALANCE_LOW_TEMPLATE,
                dedupe_key=dedupe_key,
                status=status,
                attempts=attempt,
                error_message=result.error,
                sent_at=now,
            ))
            await db.commit()

    # ─────────────────────────────────────────────────────────────────
    # Notifier management
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_notifier(
        db: AsyncSession,
        user_id: uuid.UUID,
        data: DocumentNotifierCreate,
        *,
        now: Optional[datetime] = None,
    ) -> DocumentNotifierOut:
        existing = await db.execute(
            select(DocumentNotifier.id).where(
                DocumentNotifier.user_id == user_id,
                DocumentNotifier.document_id == data.document_id,
            )
        )
        if existing.scalar() is not None:
            raise ConflictError("document_id", data.document_id)

        now = as_utc(now or datetime.now(timezone.utc))
        notifier = DocumentNotifier(
            user_id=user_id,
            document_id=data.document_id,
            document_name=data.document_name,
            expires_at=data.expires_at,
            frequency=data.frequency,
            custom_frequency_days=data.custom_frequency_days,
            advance_notice_days=data.advance_notice_days,
            next_due=initial_next_due(data.expires_at, data.advance_notice_days, now),
            delivery_attempts=0,
            status=NotifierStatus.active,
            created_at=now,
        )
        db.add(notifier)
        await db.flush()
        logger.info(
            "Document notifier %s created for %s (first due %s)",
            notifier.id, user_id, notifier.next_due,
        )
        return DocumentNotifierOut.model_validate(notifier)

    @staticmethod
    async def list_notifiers(
        db: AsyncSession,
        user_id: uuid.UUID,
    ) -> list[DocumentNotifierOut]:
        result = await db.execute(
            select(DocumentNotifier)
            .where(DocumentNotifier.user_id == user_id)
            .order_by(DocumentNotifier.expires_at)
        )
        return [DocumentNotifierOut.model_validate(n) for n in result.scalars().all()]

    @staticmethod
    async def reset_notifier(
        db: AsyncSession,
        notifier_id: uuid.UUID,
        *,
        now: Optional[datetime] = None,
    ) -> DocumentNotifierOut:
        """Re-activate a notifier (typically after a permanent failure)."""
        notifier = await db.get(DocumentNotifier, notifier_id)
        if notifier is None:
            raise NotFoundException("DocumentNotifier", str(notifier_id))

        now = as_utc(now or datetime.now(timezone.utc))
        notifier.status = NotifierStatus.active
        notifier.delivery_attempts = 0
        notifier.next_due = initial_next_due(
            notifier.expires_at, notifier.advance_notice_days, now,
        )
        await db.flush()
        logger.info("Document notifier %s reset", notifier.id)
        return DocumentNotifierOut.model_validate(notifier)

    @staticmethod
    async def list_logs(
        db: AsyncSession,
        pagination: PaginationParams,
        *,
        notifier_id: Optional[uuid.UUID] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> dict:
        query = select(NotificationLog).order_by(NotificationLog.sent_at.desc())
        if notifier_id:
            query = query.where(NotificationLog.notifier_id == notifier_id)
        if status:
            query = query.where(NotificationLog.status == status)

        rows, meta = await paginate(db, query, pagination, model=NotificationLog)
        return {
            "data": [NotificationLogOut.model_validate(r) for r in rows],
            "meta": meta,
        }
