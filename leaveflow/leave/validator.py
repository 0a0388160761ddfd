"""Pre-flight admissibility checks for a leave request.

The validator is read-only: it never touches the ledger. Every rule is
evaluated and reported together, so a client can fix all problems at once.
Passing validation is not a reservation; ``BalanceLedger.reserve`` re-checks
the balance atomically at submission time.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.calendar.service import HolidayCalendar, WorkingDayCalculator
from leaveflow.common.constants import LeaveStatus
from leaveflow.common.exceptions import NotFoundException
from leaveflow.config import settings
from leaveflow.core_hr.models import Employee
from leaveflow.leave.ledger import BalanceLedger
from leaveflow.leave.models import LeaveRequest, LeaveType
from leaveflow.leave.schemas import ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

# Statuses that hold calendar time and count against overlap
ACTIVE_STATUSES = (LeaveStatus.pending, LeaveStatus.approved)


def local_now(now: Optional[datetime] = None) -> datetime:
    """*now* (default: current time) expressed in the configured timezone."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(settings.TIMEZONE))


class RequestValidator:

    @staticmethod
    async def validate(
        db: AsyncSession,
        requester_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        start_date: date,
        end_date: date,
        *,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """Evaluate every admissibility rule for a prospective request.

        Raises ``NotFoundException`` for an unknown or inactive requester;
        everything else is reported in the returned ``ValidationResult``.
        """
        employee = await db.get(Employee, requester_id)
        if employee is None or not employee.is_active:
            raise NotFoundException("Employee", requester_id)

        leave_type = await db.get(LeaveType, leave_type_id)

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        days_count = 0
        available = Decimal("0")

        if leave_type is None or not leave_type.is_active:
            errors.append(ValidationIssue(
                code="leave_type_unavailable",
                field="leave_type_id",
                message="Leave type does not exist or is no longer offered.",
            ))
            leave_type = None

        range_ok = end_date >= start_date
        if not range_ok:
            errors.append(ValidationIssue(
                code="invalid_date_range",
                field="end_date",
                message="End date must be on or after start date.",
            ))

        # ── Not in the past (same day allowed until the cutoff) ─────
        current = local_now(now)
        today = current.date()
        if start_date < today or (
            start_date == today and current.time() >= settings.SAME_DAY_CUTOFF
        ):
            errors.append(ValidationIssue(
                code="start_in_past",
                field="start_date",
                message=(
                    "Start date cannot be in the past."
                    if start_date < today
                    else "Same-day leave must be requested before "
                    f"{settings.SAME_DAY_CUTOFF.strftime('%H:%M')}."
                ),
            ))
        elif (start_date - today).days < settings.ADVANCE_NOTICE_WARNING_DAYS:
            warnings.append(ValidationIssue(
                code="short_notice",
                field="start_date",
                message=(
                    f"Less than {settings.ADVANCE_NOTICE_WARNING_DAYS} days' "
                    "notice; approval may take longer."
                ),
            ))

        if range_ok:
            # ── Working days ────────────────────────────────────────
            holidays = await HolidayCalendar.holidays_between(
                db,
                employee.country_code or settings.DEFAULT_COUNTRY_CODE,
                start_date,
                end_date,
            )
            days_count = WorkingDayCalculator.count(start_date, end_date, holidays)
            if days_count == 0:
                errors.append(ValidationIssue(
                    code="no_working_days",
                    field="end_date",
                    message="No working days in range.",
                ))

            # ── Per-request maximum ─────────────────────────────────
            if leave_type is not None:
                max_days = leave_type.max_days_per_request or settings.MAX_DAYS_PER_REQUEST
                if days_count > max_days:
                    errors.append(ValidationIssue(
                        code="exceeds_max_days",
                        field="end_date",
                        message=(
                            f"Requests are limited to {max_days} working days "
                            f"(requested {days_count})."
                        ),
                    ))

            # ── Overlap with own active requests ────────────────────
            overlap = await db.execute(
                select(LeaveRequest.id).where(
                    LeaveRequest.requester_id == requester_id,
                    LeaveRequest.status.in_(ACTIVE_STATUSES),
                    LeaveRequest.start_date <= end_date,
                    LeaveRequest.end_date >= start_date,
                ).limit(1)
            )
            if overlap.scalar() is not None:
                errors.append(ValidationIssue(
                    code="overlapping_request",
                    field="start_date",
                    message="Overlaps an existing pending or approved request.",
                ))

            # ── Balance ─────────────────────────────────────────────
            if leave_type is not None:
                available = await BalanceLedger.available(
                    db, requester_id, leave_type.id, start_date.year,
                )
                if days_count > 0 and available < days_count:
                    errors.append(ValidationIssue(
                        code="insufficient_balance",
                        field="balance",
                        message=(
                            f"Insufficient leave balance. Available: {available}, "
                            f"Requested: {days_count}."
                        ),
                    ))

        result = ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            days_count=days_count,
            available_balance=available,
        )
        if errors:
            logger.debug(
                "Leave request for employee=%s rejected by validator: %s",
                requester_id, result.error_codes(),
            )
        return result
