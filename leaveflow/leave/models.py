"""Leave ORM models: LeaveType, LeaveBalance, LeaveRequest."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from leaveflow.common.constants import LeaveStatus
from leaveflow.common.exceptions import InvalidAccrualRule
from leaveflow.database import Base
from leaveflow.leave.schemas import AccrualRule, parse_accrual_rule

if TYPE_CHECKING:
    from leaveflow.core_hr.models import Employee


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


class LeaveType(Base):
    __tablename__ = "leave_types"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    code: Mapped[str] = mapped_column(sa.String(10), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    default_allocation_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0")
    )
    max_carryover_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0")
    )
    # Raw JSON; validated on assignment, read through ``accrual_rule``
    accrual_rules: Mapped[dict] = mapped_column(JSONB, default=dict)
    requires_approval: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    max_days_per_request: Mapped[Optional[int]] = mapped_column(sa.Integer)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # Relationships
    balances: Mapped[list[LeaveBalance]] = relationship(back_populates="leave_type")
    requests: Mapped[list[LeaveRequest]] = relationship(back_populates="leave_type")

    @validates("accrual_rules")
    def _validate_accrual_rules(self, key: str, value: Optional[dict]) -> dict:
        try:
            parse_accrual_rule(value)
        except ValidationError as exc:
            raise InvalidAccrualRule(self.code, _first_error(exc)) from exc
        return value or {}

    @property
    def accrual_rule(self) -> AccrualRule:
        """Typed rule; rows written around the ORM are re-checked here."""
        try:
            return parse_accrual_rule(self.accrual_rules)
        except ValidationError as exc:
            raise InvalidAccrualRule(self.code, _first_error(exc)) from exc

    def __repr__(self) -> str:
        return f"<LeaveType {self.code}>"


class LeaveBalance(Base):
    """Ledger row for one (employee, leave type, year).

    Seeded by ``AccrualEngine`` and otherwise mutated only through
    ``leaveflow.leave.ledger.BalanceLedger``; the
    ``available`` quantity is derived on read and never stored.
    """

    __tablename__ = "leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "employee_id", "leave_type_id", "year", name="uq_leave_balance"
        ),
        sa.CheckConstraint("allocated_days >= 0", name="ck_balance_allocated"),
        sa.CheckConstraint("used_days >= 0", name="ck_balance_used"),
        sa.CheckConstraint("pending_days >= 0", name="ck_balance_pending"),
        sa.CheckConstraint("carryover_days >= 0", name="ck_balance_carryover"),
        sa.CheckConstraint(
            "allocated_days + carryover_days - used_days - pending_days >= 0",
            name="ck_balance_available",
        ),
        sa.Index("ix_leave_balances_employee_year", "employee_id", "year"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    allocated_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), nullable=False
    )
    used_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), nullable=False
    )
    pending_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), nullable=False
    )
    carryover_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), default=Decimal("0"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # Relationships
    employee: Mapped[Employee] = relationship(
        back_populates="leave_balances"
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="balances")

    @hybrid_property
    def available(self):
        return (
            self.allocated_days
            + self.carryover_days
            - self.used_days
            - self.pending_days
        )

    def __repr__(self) -> str:
        return (
            f"<LeaveBalance {self.employee_id}/{self.leave_type_id}/{self.year} "
            f"avail={self.available}>"
        )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_valid_range"),
        sa.CheckConstraint("days_count > 0", name="ck_leave_positive_days"),
        sa.Index("ix_leave_requests_requester_status", "requester_id", "status"),
        sa.Index("ix_leave_requests_dates", "start_date", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    days_count: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status"),
        default=LeaveStatus.pending,
        nullable=False,
    )
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    approver_comments: Mapped[Optional[str]] = mapped_column(sa.Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    approved_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )

    # Relationships
    requester: Mapped[Employee] = relationship(
        back_populates="leave_requests", foreign_keys=[requester_id]
    )
    approver: Mapped[Optional[Employee]] = relationship(
        foreign_keys=[approver_id]
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="requests")

    @property
    def year(self) -> int:
        return self.start_date.year

    def __repr__(self) -> str:
        return f"<LeaveRequest {self.id} {self.status.value}>"
