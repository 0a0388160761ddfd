"""Accrual engine — how many days a ledger row is allocated for a year.

Allocation is computed from the leave type's typed accrual rule and the
employee's hire date. The two batch operations seed the ledger:

    initialize_year  one row per active employee × active leave type
    rollover         next-year rows with carryover from the prior year
"""

from __future__ import annotations

import calendar
import logging
import math
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.core_hr.models import Employee
from leaveflow.leave.models import LeaveBalance, LeaveType
from leaveflow.leave.schemas import (
    AnnualAccrual,
    MonthlyAccrual,
    PerPayPeriodAccrual,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _months_inclusive(start: date, end: date) -> int:
    """Calendar months touched by [start, end], both end months counted."""
    if start > end:
        return 0
    return (end.year - start.year) * 12 + end.month - start.month + 1


def _check_rules(leave_types) -> None:
    """Raise ``InvalidAccrualRule`` before any row is written for a bad type."""
    for leave_type in leave_types:
        logger.debug("Accrual rule for %s: %r", leave_type.code, leave_type.accrual_rule)


def _clamp(value: Decimal, cap: Optional[Decimal]) -> Decimal:
    if cap is not None:
        value = min(value, cap)
    return max(value, ZERO)


class AccrualEngine:
    """Allocation and carryover arithmetic plus the ledger seeding jobs."""

    # ─────────────────────────────────────────────────────────────────
    # Pure calculations
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def allocated_days(
        leave_type: LeaveType,
        employee: Employee,
        year: int,
        as_of: Optional[date] = None,
    ) -> Decimal:
        """Days allocated to *employee* for *year* under the type's rule.

        ``as_of`` bounds period-based accrual; it defaults to the end of
        *year*, i.e. the full-year entitlement.
        """
        rule = leave_type.accrual_rule
        hire = employee.hire_date
        if year < hire.year:
            return ZERO

        year_start = date(year, 1, 1)
        year_end = date(year, 12, 31)
        as_of = min(as_of or year_end, year_end)
        default = Decimal(str(leave_type.default_allocation_days or 0))

        if isinstance(rule, AnnualAccrual):
            if year == hire.year and rule.prorate_first_year:
                months_remaining = 12 - hire.month + 1
                return _clamp((default * months_remaining) // 12, None)
            return _clamp(default, None)

        accrual_start = max(hire, year_start)
        if accrual_start > as_of:
            return ZERO

        if isinstance(rule, MonthlyAccrual):
            periods = _months_inclusive(accrual_start, as_of)
            return _clamp(rule.rate * periods, rule.max_accrual_cap)

        if isinstance(rule, PerPayPeriodAccrual):
            days_in_year = 366 if calendar.isleap(year) else 365
            elapsed = (as_of - accrual_start).days + 1
            periods = math.floor(elapsed * rule.pay_periods_per_year / days_in_year)
            return _clamp(rule.rate * periods, rule.max_accrual_cap)

        raise TypeError(f"Unsupported accrual rule: {rule!r}")

    @staticmethod
    def carryover_days(leave_type: LeaveType, prior_available) -> Decimal:
        """Days brought into the next year: never negative, never above the cap."""
        prior = max(Decimal(str(prior_available)), ZERO)
        cap = Decimal(str(leave_type.max_carryover_days or 0))
        return min(prior, cap)

    # ─────────────────────────────────────────────────────────────────
    # Ledger seeding
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def initialize_year(db: AsyncSession, year: int) -> int:
        """Create every missing ledger row for *year*; returns rows created."""
        employees = (
            await db.execute(select(Employee).where(Employee.is_active.is_(True)))
        ).scalars().all()
        leave_types = (
            await db.execute(select(LeaveType).where(LeaveType.is_active.is_(True)))
        ).scalars().all()
        _check_rules(leave_types)

        existing = {
            (row.employee_id, row.leave_type_id)
            for row in (
                await db.execute(
                    select(LeaveBalance.employee_id, LeaveBalance.leave_type_id)
                    .where(LeaveBalance.year == year)
                )
            ).all()
        }

        created = 0
        for employee in employees:
            for leave_type in leave_types:
                if (employee.id, leave_type.id) in existing:
                    continue
                db.add(
                    LeaveBalance(
                        employee_id=employee.id,
                        leave_type_id=leave_type.id,
                        year=year,
                        allocated_days=AccrualEngine.allocated_days(
                            leave_type, employee, year,
                        ),
                    )
                )
                created += 1

        await db.flush()
        logger.info("Initialized %d leave balances for %d", created, year)
        return created

    @staticmethod
    async def rollover(db: AsyncSession, from_year: int) -> tuple[int, int]:
        """Carry unused days from *from_year* into the following year.

        Returns ``(created, updated)``. A target row that already carries
        days is left alone, so repeated runs do not compound.
        """
        to_year = from_year + 1
        rows = (
            await db.execute(
                select(LeaveBalance, LeaveType, Employee)
                .join(LeaveType, LeaveBalance.leave_type_id == LeaveType.id)
                .join(Employee, LeaveBalance.employee_id == Employee.id)
                .where(
                    LeaveBalance.year == from_year,
                    Employee.is_active.is_(True),
                    LeaveType.is_active.is_(True),
                )
            )
        ).all()
        _check_rules({leave_type.id: leave_type for _, leave_type, _ in rows}.values())

        targets = {
            (row.employee_id, row.leave_type_id): row
            for row in (
                await db.execute(
                    select(LeaveBalance).where(LeaveBalance.year == to_year)
                )
            ).scalars().all()
        }

        created = updated = 0
        for prior, leave_type, employee in rows:
            carry = AccrualEngine.carryover_days(leave_type, prior.available)
            target = targets.get((employee.id, leave_type.id))
            if target is None:
                db.add(
                    LeaveBalance(
                        employee_id=employee.id,
                        leave_type_id=leave_type.id,
                        year=to_year,
                        allocated_days=AccrualEngine.allocated_days(
                            leave_type, employee, to_year,
                        ),
                        carryover_days=carry,
                    )
                )
                created += 1
                continue
            if carry <= 0:
                continue
            result = await db.execute(
                update(LeaveBalance)
                .where(
                    LeaveBalance.id == target.id,
                    LeaveBalance.carryover_days == 0,
                )
                .values(carryover_days=carry)
                .execution_options(synchronize_session=False)
            )
            updated += result.rowcount

        await db.flush()
        logger.info(
            "Rolled over %d → %d: %d created, %d updated",
            from_year, to_year, created, updated,
        )
        return created, updated
