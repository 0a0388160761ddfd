"""Core HR ORM model: Employee.

Only the fields the leave engine needs: role for cancellation rights,
manager back-reference for the directory authority, hire date for accrual
proration and country code for the holiday calendar.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leaveflow.common.constants import UserRole
from leaveflow.database import Base

if TYPE_CHECKING:
    from leaveflow.leave.models import LeaveBalance, LeaveRequest
    from leaveflow.notifications.models import Notification


class Employee(Base):
    """Employee record — requester, approver and notification recipient."""

    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(
        sa.String(255), unique=True, nullable=False,
    )
    full_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        sa.Enum(UserRole, name="user_role"),
        default=UserRole.employee,
        nullable=False,
    )
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    hire_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    country_code: Mapped[Optional[str]] = mapped_column(sa.String(2))
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ───────────────────────────────────────────────
    manager: Mapped[Optional[Employee]] = relationship(
        remote_side="Employee.id", foreign_keys=[manager_id],
    )
    leave_balances: Mapped[list[LeaveBalance]] = relationship(
        back_populates="employee",
    )
    leave_requests: Mapped[list[LeaveRequest]] = relationship(
        back_populates="requester", foreign_keys="LeaveRequest.requester_id",
    )
    notifications: Mapped[list[Notification]] = relationship(
        back_populates="recipient",
    )

    __table_args__ = (
        sa.Index("ix_employees_manager_id", "manager_id"),
    )

    def __repr__(self) -> str:
        return f"<Employee {self.email!r} ({self.role.value})>"
