"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Out                → response bodies (read)
  - *Brief              → compact embedded representations

Accrual rules are a discriminated union validated when a leave type is
configured or loaded, so the accrual engine only ever sees typed rules.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from leaveflow.common.constants import LeaveAction, LeaveStatus


# ═════════════════════════════════════════════════════════════════════
# Accrual rules
# ═════════════════════════════════════════════════════════════════════


class AnnualAccrual(BaseModel):
    """Full allocation at the start of the year, optionally prorated in the hire year."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["annual"] = "annual"
    prorate_first_year: bool = False


class MonthlyAccrual(BaseModel):
    """``rate`` days credited per elapsed month since hire."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["monthly"] = "monthly"
    rate: Decimal = Field(..., ge=0)
    max_accrual_cap: Optional[Decimal] = Field(None, ge=0)


class PerPayPeriodAccrual(BaseModel):
    """``rate`` days credited per elapsed pay period since hire."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["per_pay_period"] = "per_pay_period"
    rate: Decimal = Field(..., ge=0)
    pay_periods_per_year: int = Field(24, ge=1, le=52)
    max_accrual_cap: Optional[Decimal] = Field(None, ge=0)


AccrualRule = Annotated[
    Union[AnnualAccrual, MonthlyAccrual, PerPayPeriodAccrual],
    Field(discriminator="type"),
]

_accrual_adapter: TypeAdapter = TypeAdapter(AccrualRule)


def parse_accrual_rule(raw: Optional[dict]) -> Union[AnnualAccrual, MonthlyAccrual, PerPayPeriodAccrual]:
    """Parse the stored JSON blob; an empty blob is a plain annual allocation."""
    if not raw:
        return AnnualAccrual()
    return _accrual_adapter.validate_python(raw)


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class EmployeeBrief(BaseModel):
    """Minimal employee info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    full_name: str
    email: str


class LeaveTypeBrief(BaseModel):
    """Minimal leave type info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str


# ═════════════════════════════════════════════════════════════════════
# Leave Type
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeCreate(BaseModel):
    """Payload for configuring a leave type."""

    code: str = Field(..., min_length=2, max_length=10)
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    default_allocation_days: Decimal = Field(Decimal("0"), ge=0, le=366)
    max_carryover_days: Decimal = Field(Decimal("0"), ge=0, le=366)
    accrual_rules: AccrualRule = Field(default_factory=AnnualAccrual)
    requires_approval: bool = True
    max_days_per_request: Optional[int] = Field(None, ge=1, le=366)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()


class LeaveTypeOut(BaseModel):
    """Full leave type representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    default_allocation_days: Decimal
    max_carryover_days: Decimal
    accrual_rules: AccrualRule
    requires_approval: bool = True
    max_days_per_request: Optional[int] = None
    is_active: bool = True

    @field_validator("accrual_rules", mode="before")
    @classmethod
    def load_accrual_rules(cls, v):
        if isinstance(v, dict) or v is None:
            return parse_accrual_rule(v)
        return v


# ═════════════════════════════════════════════════════════════════════
# Leave Balance
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    """One ledger row with its derived available quantity."""

    model_config = ConfigDict(from_attributes=True)

    leave_type_id: uuid.UUID
    year: int
    allocated: Decimal = Field(validation_alias="allocated_days")
    used: Decimal = Field(validation_alias="used_days")
    pending: Decimal = Field(validation_alias="pending_days")
    carryover: Decimal = Field(validation_alias="carryover_days")
    available: Decimal

    leave_type: Optional[LeaveTypeBrief] = None


class BalanceJobRequest(BaseModel):
    """Target year for balance initialization / rollover."""

    year: Optional[int] = Field(None, ge=2000, le=2100)


class BalanceJobOut(BaseModel):
    year: int
    balances_created: int = 0
    balances_updated: int = 0


# ═════════════════════════════════════════════════════════════════════
# Leave Request — Create / Validate
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(BaseModel):
    """Payload for submitting a leave request.

    Date ordering is not enforced here: the validator reports it together
    with every other rule violation.
    """

    leave_type_id: uuid.UUID
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive)")
    reason: Optional[str] = Field(None, max_length=500)


class ValidationIssue(BaseModel):
    code: str
    field: str
    message: str


class ValidationResult(BaseModel):
    """Outcome of the pre-flight admissibility check."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    days_count: int = 0
    available_balance: Decimal = Decimal("0")

    def error_map(self) -> dict[str, list[str]]:
        """Group error messages per field for the problem-details body."""
        grouped: dict[str, list[str]] = {}
        for issue in self.errors:
            grouped.setdefault(issue.field, []).append(issue.message)
        return grouped

    def error_codes(self) -> list[str]:
        return [issue.code for issue in self.errors]


# ═════════════════════════════════════════════════════════════════════
# Leave Request — Response
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestOut(BaseModel):
    """Full leave request response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    requester_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    days_count: int
    reason: Optional[str] = None
    status: LeaveStatus
    approver_id: Optional[uuid.UUID] = None
    approver_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime

    warnings: list[ValidationIssue] = Field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════


class LeaveTransitionRequest(BaseModel):
    """Payload for approve / reject / cancel."""

    action: LeaveAction
    comments: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def reason_required_for_reject(self) -> "LeaveTransitionRequest":
        if self.action == LeaveAction.reject and not (self.comments or "").strip():
            raise ValueError("A rejection reason is required.")
        return self
