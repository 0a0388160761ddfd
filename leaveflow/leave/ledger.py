"""Balance ledger — the only code path that mutates ``leave_balances``.

Every primitive is one conditional ``UPDATE`` against a single ledger row,
executed inside the caller's transaction. The guard lives in the ``WHERE``
clause, so the database row lock serializes concurrent writers of the same
row and re-checks the guard for the one that waited; rows of different
(employee, leave type, year) keys never contend.

    reserve  — request submitted          pending += d   (guard: available >= d)
    commit   — request approved           pending -= d, used += d
    release  — rejected / cancelled       pending -= d
    revert   — cancelled after approval   used    -= d

Only ``reserve`` can fail for a business reason (``InsufficientBalance``).
The decreasing primitives fail only when the row disagrees with the requests
that reference it, which is surfaced as ``LedgerInconsistency``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.exceptions import InsufficientBalance, LedgerInconsistency
from leaveflow.leave.models import LeaveBalance

logger = logging.getLogger(__name__)


def _as_days(days) -> Decimal:
    value = Decimal(str(days))
    if value <= 0:
        raise ValueError(f"Ledger adjustments must be positive, got {value}.")
    return value


def _row_filter(employee_id: uuid.UUID, leave_type_id: uuid.UUID, year: int):
    return (
        LeaveBalance.employee_id == employee_id,
        LeaveBalance.leave_type_id == leave_type_id,
        LeaveBalance.year == year,
    )


class BalanceLedger:
    """Atomic adjustment primitives over one ledger row."""

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_row(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
    ) -> Optional[LeaveBalance]:
        """Load the ledger row, refreshing any stale copy in the session."""
        result = await db.execute(
            select(LeaveBalance)
            .where(*_row_filter(employee_id, leave_type_id, year))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def available(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
    ) -> Decimal:
        """Derived ``allocated + carryover - used - pending``; 0 without a row."""
        result = await db.execute(
            select(LeaveBalance.available).where(
                *_row_filter(employee_id, leave_type_id, year)
            )
        )
        value = result.scalar()
        return Decimal(str(value)) if value is not None else Decimal("0")

    # ─────────────────────────────────────────────────────────────────
    # Primitives
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def reserve(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
        days,
    ) -> LeaveBalance:
        """Move *days* into pending if, and only if, they are available."""
        amount = _as_days(days)
        result = await db.execute(
            update(LeaveBalance)
            .where(
                *_row_filter(employee_id, leave_type_id, year),
                LeaveBalance.available >= amount,
            )
            .values(
                pending_days=LeaveBalance.pending_days + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = await BalanceLedger.available(
                db, employee_id, leave_type_id, year,
            )
            logger.info(
                "Reservation refused for employee=%s type=%s year=%s: "
                "requested=%s available=%s",
                employee_id, leave_type_id, year, amount, available,
            )
            raise InsufficientBalance(available=available, requested=amount)
        return await BalanceLedger._reload(db, employee_id, leave_type_id, year)

    @staticmethod
    async def commit(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
        days,
    ) -> LeaveBalance:
        """Convert reserved days into used days."""
        amount = _as_days(days)
        return await BalanceLedger._decrease(
            db,
            "commit",
            (employee_id, leave_type_id, year),
            guard=LeaveBalance.pending_days >= amount,
            values={
                "pending_days": LeaveBalance.pending_days - amount,
                "used_days": LeaveBalance.used_days + amount,
            },
        )

    @staticmethod
    async def release(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
        days,
    ) -> LeaveBalance:
        """Drop a reservation (rejection or cancellation while pending)."""
        amount = _as_days(days)
        return await BalanceLedger._decrease(
            db,
            "release",
            (employee_id, leave_type_id, year),
            guard=LeaveBalance.pending_days >= amount,
            values={"pending_days": LeaveBalance.pending_days - amount},
        )

    @staticmethod
    async def revert(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
        days,
    ) -> LeaveBalance:
        """Give back used days (cancellation after approval)."""
        amount = _as_days(days)
        return await BalanceLedger._decrease(
            db,
            "revert",
            (employee_id, leave_type_id, year),
            guard=LeaveBalance.used_days >= amount,
            values={"used_days": LeaveBalance.used_days - amount},
        )

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _decrease(
        db: AsyncSession,
        primitive: str,
        key: tuple[uuid.UUID, uuid.UUID, int],
        *,
        guard,
        values: dict,
    ) -> LeaveBalance:
        employee_id, leave_type_id, year = key
        result = await db.execute(
            update(LeaveBalance)
            .where(*_row_filter(employee_id, leave_type_id, year), guard)
            .values(**values, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error(
                "Ledger %s failed for employee=%s type=%s year=%s",
                primitive, employee_id, leave_type_id, year,
            )
            raise LedgerInconsistency(
                f"Ledger row for employee {employee_id}, leave type "
                f"{leave_type_id}, year {year} cannot absorb a {primitive}."
            )
        return await BalanceLedger._reload(db, employee_id, leave_type_id, year)

    @staticmethod
    async def _reload(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        year: int,
    ) -> LeaveBalance:
        row = await BalanceLedger.get_row(db, employee_id, leave_type_id, year)
        if row is None:
            raise LedgerInconsistency(
                f"Ledger row for employee {employee_id}, leave type "
                f"{leave_type_id}, year {year} disappeared after an update."
            )
        return row
