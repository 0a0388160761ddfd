"""Leave service — read models and leave-type configuration.

Status changes live in ``leaveflow.leave.lifecycle``; ledger arithmetic in
``leaveflow.leave.ledger``. This module answers "what can I see" questions.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from leaveflow.auth.dependencies import has_role
from leaveflow.common.constants import LeaveStatus, UserRole
from leaveflow.common.exceptions import ConflictError, ForbiddenException, NotFoundException
from leaveflow.common.pagination import PaginationParams, paginate
from leaveflow.core_hr.models import Employee
from leaveflow.leave.models import LeaveBalance, LeaveRequest, LeaveType
from leaveflow.leave.schemas import (
    LeaveBalanceOut,
    LeaveRequestOut,
    LeaveTypeCreate,
    LeaveTypeOut,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async read-side leave operations."""

    # ─────────────────────────────────────────────────────────────────
    # Visibility
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _ensure_can_view(
        db: AsyncSession,
        viewer: Employee,
        employee_id: uuid.UUID,
    ) -> Employee:
        """Self, the employee's direct manager, or hr/admin."""
        employee = await db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundException("Employee", str(employee_id))
        if (
            viewer.id != employee.id
            and employee.manager_id != viewer.id
            and not has_role(viewer, UserRole.hr)
        ):
            raise ForbiddenException("You cannot view another employee's leave.")
        return employee

    # ─────────────────────────────────────────────────────────────────
    # Leave types
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_types(
        db: AsyncSession,
        *,
        is_active: Optional[bool] = True,
    ) -> list[LeaveTypeOut]:
        query = select(LeaveType).order_by(LeaveType.name)
        if is_active is not None:
            query = query.where(LeaveType.is_active == is_active)
        result = await db.execute(query)
        return [LeaveTypeOut.model_validate(lt) for lt in result.scalars().all()]

    @staticmethod
    async def create_leave_type(db: AsyncSession, data: LeaveTypeCreate) -> LeaveTypeOut:
        existing = await db.execute(
            select(LeaveType.id).where(LeaveType.code == data.code)
        )
        if existing.scalar() is not None:
            raise ConflictError("code", data.code)

        leave_type = LeaveType(
            code=data.code,
            name=data.name,
            description=data.description,
            default_allocation_days=data.default_allocation_days,
            max_carryover_days=data.max_carryover_days,
            accrual_rules=data.accrual_rules.model_dump(mode="json"),
            requires_approval=data.requires_approval,
            max_days_per_request=data.max_days_per_request,
        )
        db.add(leave_type)
        await db.flush()
        logger.info("Created leave type %s", data.code)
        return LeaveTypeOut.model_validate(leave_type)

    # ─────────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        viewer: Employee,
        *,
        employee_id: Optional[uuid.UUID] = None,
        year: Optional[int] = None,
    ) -> list[LeaveBalanceOut]:
        """Ledger rows for one employee and year (defaults: viewer, this year)."""
        target_id = employee_id or viewer.id
        await LeaveService._ensure_can_view(db, viewer, target_id)
        target_year = year or date.today().year

        result = await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.employee_id == target_id,
                LeaveBalance.year == target_year,
            )
            .options(selectinload(LeaveBalance.leave_type))
            .execution_options(populate_existing=True)
        )
        balances = sorted(
            result.scalars().all(), key=lambda b: b.leave_type.name,
        )
        return [LeaveBalanceOut.model_validate(b) for b in balances]

    # ─────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_requests(
        db: AsyncSession,
        viewer: Employee,
        pagination: PaginationParams,
        *,
        scope: str = "my",
        status: Optional[LeaveStatus] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> dict:
        """List leave requests with pagination and filters.

        Scopes:
          - my: own requests only
          - team: direct reports of the viewer
          - all: every request (hr/admin only)
        """
        query = select(LeaveRequest).order_by(LeaveRequest.created_at.desc())

        if scope == "my":
            query = query.where(LeaveRequest.requester_id == viewer.id)
        elif scope == "team":
            reports = select(Employee.id).where(Employee.manager_id == viewer.id)
            query = query.where(LeaveRequest.requester_id.in_(reports))
        elif scope == "all":
            if not has_role(viewer, UserRole.hr):
                raise ForbiddenException("Only HR can list all leave requests.")
        else:
            raise ForbiddenException(f"Unknown scope '{scope}'.")

        if status:
            query = query.where(LeaveRequest.status == status)
        if leave_type_id:
            query = query.where(LeaveRequest.leave_type_id == leave_type_id)
        if from_date:
            query = query.where(LeaveRequest.end_date >= from_date)
        if to_date:
            query = query.where(LeaveRequest.start_date <= to_date)

        rows, meta = await paginate(db, query, pagination, model=LeaveRequest)
        return {
            "data": [LeaveRequestOut.model_validate(r) for r in rows],
            "meta": meta,
        }

    @staticmethod
    async def get_leave_request(
        db: AsyncSession,
        viewer: Employee,
        request_id: uuid.UUID,
    ) -> LeaveRequestOut:
        leave_req = await db.get(LeaveRequest, request_id, populate_existing=True)
        if leave_req is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        await LeaveService._ensure_can_view(db, viewer, leave_req.requester_id)
        return LeaveRequestOut.model_validate(leave_req)

