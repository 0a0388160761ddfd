"""Leave router — requests, transitions, balances, leave types, holidays.

All endpoints require authentication. Configuration and balance jobs are
restricted to hr/admin.
"""


import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.dependencies import get_current_user, require_role
from leaveflow.calendar.schemas import HolidayCreate, HolidayOut
from leaveflow.calendar.service import HolidayCalendar
from leaveflow.common.constants import LeaveStatus, UserRole
from leaveflow.common.pagination import PaginatedResponse, PaginationParams
from leaveflow.core_hr.models import Employee
from leaveflow.database import get_db
from leaveflow.leave.accrual import AccrualEngine
from leaveflow.leave.lifecycle import LeaveLifecycle
from leaveflow.leave.schemas import (
    BalanceJobOut,
    BalanceJobRequest,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveTransitionRequest,
    LeaveTypeCreate,
    LeaveTypeOut,
    ValidationResult,
)
from leaveflow.leave.service import LeaveService
from leaveflow.leave.validator import RequestValidator

router = APIRouter(prefix="", tags=["leave"])


# ── POST /requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=201)
async def create_request(
    body: LeaveRequestCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submit a leave request; reserves the days until it is decided."""
    return await LeaveLifecycle.create(db, employee.id, body)


# ── GET /requests/validate ──────────────────────────────────────────
# NOTE: registered before /requests/{request_id}.

@router.get("/requests/validate", response_model=ValidationResult)
async def validate_request(
    leave_type_id: uuid.UUID = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Dry-run every admissibility rule without reserving anything."""
    return await RequestValidator.validate(
        db, employee.id, leave_type_id, start_date, end_date,
    )


# ── GET /requests ───────────────────────────────────────────────────

@router.get("/requests", response_model=PaginatedResponse[LeaveRequestOut])
async def list_requests(
    scope: str = Query("my", pattern="^(my|team|all)$"),
    status: Optional[LeaveStatus] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_requests(
        db,
        employee,
        pagination,
        scope=scope,
        status=status,
        leave_type_id=leave_type_id,
        from_date=from_date,
        to_date=to_date,
    )


# ── GET /requests/{request_id} ──────────────────────────────────────

@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_request(db, employee, request_id)


# ── POST /requests/{request_id}/transition ──────────────────────────

@router.post("/requests/{request_id}/transition", response_model=LeaveRequestOut)
async def transition_request(
    request_id: uuid.UUID,
    body: LeaveTransitionRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approve, reject or cancel a leave request."""
    return await LeaveLifecycle.transition(
        db, request_id, body.action, employee, body.comments,
    )


# ── GET /balances ───────────────────────────────────────────────────

@router.get("/balances", response_model=list[LeaveBalanceOut])
async def get_balances(
    employee_id: Optional[uuid.UUID] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Leave balances for the viewer (or a visible employee) for a year."""
    return await LeaveService.get_balances(
        db, employee, employee_id=employee_id, year=year,
    )


# ── POST /balances/initialize ───────────────────────────────────────

@router.post("/balances/initialize", response_model=BalanceJobOut)
async def initialize_balances(
    body: BalanceJobRequest,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    """Create missing ledger rows for every active employee × leave type."""
    year = body.year or date.today().year
    created = await AccrualEngine.initialize_year(db, year)
    return BalanceJobOut(year=year, balances_created=created)


# ── POST /balances/rollover ─────────────────────────────────────────

@router.post("/balances/rollover", response_model=BalanceJobOut)
async def rollover_balances(
    body: BalanceJobRequest,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    """Carry unused days from ``year`` (default: last year) into the next."""
    from_year = body.year or date.today().year - 1
    created, updated = await AccrualEngine.rollover(db, from_year)
    return BalanceJobOut(
        year=from_year + 1, balances_created=created, balances_updated=updated,
    )


# ── GET/POST /types ─────────────────────────────────────────────────

@router.get("/types", response_model=list[LeaveTypeOut])
async def list_leave_types(
    is_active: Optional[bool] = Query(True),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_types(db, is_active=is_active)


@router.post("/types", response_model=LeaveTypeOut, status_code=201)
async def create_leave_type(
    body: LeaveTypeCreate,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.create_leave_type(db, body)


# ── GET/POST /holidays ──────────────────────────────────────────────

@router.get("/holidays", response_model=list[HolidayOut])
async def list_holidays(
    country_code: Optional[str] = Query(None, min_length=2, max_length=2),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Holidays for a country (default: the viewer's) and optional year."""
    return await HolidayCalendar.list_holidays(
        db, country_code=country_code or employee.country_code, year=year,
    )


@router.post("/holidays", response_model=HolidayOut, status_code=201)
async def create_holiday(
    body: HolidayCreate,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    return await HolidayCalendar.add_holiday(db, body)
