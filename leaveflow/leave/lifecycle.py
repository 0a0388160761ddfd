"""Leave request lifecycle — the only code that changes a request's status.

    pending ──approve──▶ approved ──cancel──▶ cancelled
       │ ╲
       │  ╲──reject───▶ rejected
       └──cancel──▶ cancelled

Each status change is a compare-and-swap ``UPDATE ... WHERE status =
:expected``; the ledger primitive for the transition runs in the same
transaction, so a failure in either rolls back both. The loser of two
concurrent transitions on one request sees ``IllegalTransition``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.authority import ApproverAuthority, default_authority
from leaveflow.common.audit import create_audit_entry
from leaveflow.common.constants import LeaveAction, LeaveStatus, UserRole
from leaveflow.common.exceptions import (
    ForbiddenException,
    IllegalTransition,
    NotFoundException,
    ValidationException,
)
from leaveflow.core_hr.models import Employee
from leaveflow.leave.ledger import BalanceLedger
from leaveflow.leave.models import LeaveRequest, LeaveType
from leaveflow.leave.schemas import LeaveRequestCreate, LeaveRequestOut, ValidationResult
from leaveflow.leave.validator import RequestValidator
from leaveflow.notifications.service import (
    notify_leave_approved,
    notify_leave_cancelled,
    notify_leave_rejected,
    notify_leave_submitted,
)

logger = logging.getLogger(__name__)

TRANSITIONS: dict[LeaveStatus, frozenset[LeaveStatus]] = {
    LeaveStatus.pending: frozenset(
        {LeaveStatus.approved, LeaveStatus.rejected, LeaveStatus.cancelled}
    ),
    LeaveStatus.approved: frozenset({LeaveStatus.cancelled}),
    LeaveStatus.rejected: frozenset(),
    LeaveStatus.cancelled: frozenset(),
}

# Roles that may cancel someone else's request
_CANCEL_ON_BEHALF = {UserRole.hr, UserRole.admin}


def can_transition(current: LeaveStatus, target: LeaveStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class LeaveLifecycle:
    """Create and transition leave requests."""

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load(db: AsyncSession, request_id: uuid.UUID) -> LeaveRequest:
        result = await db.execute(
            select(LeaveRequest)
            .where(LeaveRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        leave_req = result.scalars().first()
        if leave_req is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        return leave_req

    @staticmethod
    def _check_graph(leave_req: LeaveRequest, target: LeaveStatus) -> None:
        if not can_transition(leave_req.status, target):
            raise IllegalTransition(leave_req.status.value, target.value)

    @staticmethod
    async def _swap_status(
        db: AsyncSession,
        leave_req: LeaveRequest,
        target: LeaveStatus,
        **changes,
    ) -> LeaveRequest:
        """Move *leave_req* to *target* only if nobody changed it meanwhile."""
        expected = leave_req.status
        LeaveLifecycle._check_graph(leave_req, target)

        result = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave_req.id, LeaveRequest.status == expected)
            .values(status=target, updated_at=datetime.now(timezone.utc), **changes)
            .execution_options(synchronize_session=False)
        )
        current = await LeaveLifecycle._load(db, leave_req.id)
        if result.rowcount != 1:
            logger.info(
                "Lost transition race on %s: expected %s, found %s",
                leave_req.id, expected.value, current.status.value,
            )
            raise IllegalTransition(current.status.value, target.value)
        return current

    # ─────────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create(
        db: AsyncSession,
        requester_id: uuid.UUID,
        data: LeaveRequestCreate,
        validation: Optional[ValidationResult] = None,
    ) -> LeaveRequestOut:
        """Submit a leave request and reserve its days.

        Raises ``ValidationException`` when the request is inadmissible and
        ``InsufficientBalance`` when the balance was consumed between
        validation and reservation; nothing is written in either case.
        """
        if validation is None:
            validation = await RequestValidator.validate(
                db, requester_id, data.leave_type_id, data.start_date, data.end_date,
            )
        if not validation.valid:
            raise ValidationException(
                validation.error_map(), codes=validation.error_codes(),
            )

        requester = await db.get(Employee, requester_id)
        if requester is None:
            raise NotFoundException("Employee", str(requester_id))
        leave_type = await db.get(LeaveType, data.leave_type_id)
        if leave_type is None:
            raise NotFoundException("LeaveType", str(data.leave_type_id))

        days = validation.days_count
        year = data.start_date.year

        # Reserve first: a refused reservation leaves no request behind
        await BalanceLedger.reserve(db, requester_id, leave_type.id, year, days)

        now = datetime.now(timezone.utc)
        auto_approve = not leave_type.requires_approval
        leave_req = LeaveRequest(
            requester_id=requester_id,
            leave_type_id=leave_type.id,
            start_date=data.start_date,
            end_date=data.end_date,
            days_count=days,
            reason=data.reason,
            status=LeaveStatus.approved if auto_approve else LeaveStatus.pending,
            approver_id=requester_id if auto_approve else None,
            approved_at=now if auto_approve else None,
            created_at=now,
            updated_at=now,
        )
        db.add(leave_req)
        await db.flush()

        if auto_approve:
            await BalanceLedger.commit(db, requester_id, leave_type.id, year, days)

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=requester_id,
            new_values={
                "status": leave_req.status.value,
                "leave_type_id": str(leave_type.id),
                "start_date": data.start_date.isoformat(),
                "end_date": data.end_date.isoformat(),
                "days_count": days,
            },
        )

        if not auto_approve and requester.manager_id is not None:
            await notify_leave_submitted(db, leave_req, requester.manager_id)

        logger.info(
            "Leave request %s created for employee=%s (%d day(s), %s)",
            leave_req.id, requester_id, days, leave_req.status.value,
        )
        out = LeaveRequestOut.model_validate(leave_req)
        out.warnings = list(validation.warnings)
        return out

    # ─────────────────────────────────────────────────────────────────
    # Approve / Reject
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def approve(
        db: AsyncSession,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        comments: Optional[str] = None,
        *,
        is_authorized: bool,
    ) -> LeaveRequestOut:
        """Approve a pending request and convert its reservation to usage."""
        leave_req = await LeaveLifecycle._load(db, request_id)
        LeaveLifecycle._check_graph(leave_req, LeaveStatus.approved)
        if not is_authorized:
            raise ForbiddenException(
                "You are not authorized to approve this leave request."
            )

        now = datetime.now(timezone.utc)
        leave_req = await LeaveLifecycle._swap_status(
            db,
            leave_req,
            LeaveStatus.approved,
            approver_id=approver_id,
            approver_comments=comments,
            approved_at=now,
        )
        await BalanceLedger.commit(
            db,
            leave_req.requester_id,
            leave_req.leave_type_id,
            leave_req.year,
            leave_req.days_count,
        )

        await create_audit_entry(
            db,
            action="approve",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=approver_id,
            old_values={"status": LeaveStatus.pending.value},
            new_values={"status": LeaveStatus.approved.value, "comments": comments},
        )
        await notify_leave_approved(db, leave_req)

        logger.info("Leave request %s approved by %s", leave_req.id, approver_id)
        return LeaveRequestOut.model_validate(leave_req)

    @staticmethod
    async def reject(
        db: AsyncSession,
        request_id: uuid.UUID,
        approver_id: uuid.UUID,
        reason: Optional[str],
        *,
        is_authorized: bool,
    ) -> LeaveRequestOut:
        """Reject a pending request and release its reservation."""
        leave_req = await LeaveLifecycle._load(db, request_id)
        LeaveLifecycle._check_graph(leave_req, LeaveStatus.rejected)
        if not is_authorized:
            raise ForbiddenException(
                "You are not authorized to reject this leave request."
            )
        if not (reason or "").strip():
            raise ValidationException(
                {"comments": ["A rejection reason is required."]},
                codes=["reason_required"],
            )

        now = datetime.now(timezone.utc)
        leave_req = await LeaveLifecycle._swap_status(
            db,
            leave_req,
            LeaveStatus.rejected,
            approver_id=approver_id,
            rejection_reason=reason,
            rejected_at=now,
        )
        await BalanceLedger.release(
            db,
            leave_req.requester_id,
            leave_req.leave_type_id,
            leave_req.year,
            leave_req.days_count,
        )

        await create_audit_entry(
            db,
            action="reject",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=approver_id,
            old_values={"status": LeaveStatus.pending.value},
            new_values={"status": LeaveStatus.rejected.value, "reason": reason},
        )
        await notify_leave_rejected(db, leave_req, reason)

        logger.info("Leave request %s rejected by %s", leave_req.id, approver_id)
        return LeaveRequestOut.model_validate(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # Cancel
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def cancel(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        actor_role: UserRole,
    ) -> LeaveRequestOut:
        """Cancel a pending or approved request.

        Pending requests release their reservation; approved ones give the
        used days back. The requester or hr/admin may cancel.
        """
        leave_req = await LeaveLifecycle._load(db, request_id)
        LeaveLifecycle._check_graph(leave_req, LeaveStatus.cancelled)

        is_requester = leave_req.requester_id == actor_id
        if not is_requester and actor_role not in _CANCEL_ON_BEHALF:
            raise ForbiddenException("You can only cancel your own leave requests.")

        previous = leave_req.status
        previous_approver = leave_req.approver_id
        now = datetime.now(timezone.utc)
        leave_req = await LeaveLifecycle._swap_status(
            db,
            leave_req,
            LeaveStatus.cancelled,
            approver_id=None,
            cancelled_at=now,
            cancelled_by=actor_id,
        )

        key = (
            leave_req.requester_id,
            leave_req.leave_type_id,
            leave_req.year,
            leave_req.days_count,
        )
        if previous == LeaveStatus.pending:
            await BalanceLedger.release(db, *key)
        else:
            await BalanceLedger.revert(db, *key)

        await create_audit_entry(
            db,
            action="cancel",
            entity_type="leave_request",
            entity_id=leave_req.id,
            actor_id=actor_id,
            old_values={
                "status": previous.value,
                "approver_id": str(previous_approver) if previous_approver else None,
            },
            new_values={"status": LeaveStatus.cancelled.value},
        )

        if is_requester:
            requester = await db.get(Employee, leave_req.requester_id)
            recipient = previous_approver or (requester.manager_id if requester else None)
        else:
            recipient = leave_req.requester_id
        if recipient is not None and recipient != actor_id:
            await notify_leave_cancelled(db, leave_req, recipient)

        logger.info(
            "Leave request %s cancelled by %s (was %s)",
            leave_req.id, actor_id, previous.value,
        )
        return LeaveRequestOut.model_validate(leave_req)

    # ─────────────────────────────────────────────────────────────────
    # API dispatcher
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def transition(
        db: AsyncSession,
        request_id: uuid.UUID,
        action: LeaveAction,
        actor: Employee,
        comments: Optional[str] = None,
        *,
        authority: ApproverAuthority = default_authority,
    ) -> LeaveRequestOut:
        """Apply *action* on behalf of *actor*, resolving approver authority."""
        if action == LeaveAction.cancel:
            return await LeaveLifecycle.cancel(
                db, request_id, actor.id, actor_role=actor.role,
            )

        leave_req = await LeaveLifecycle._load(db, request_id)
        requester = await db.get(Employee, leave_req.requester_id)
        if requester is None:
            raise NotFoundException("Employee", str(leave_req.requester_id))
        is_authorized = await authority.is_authorized_approver(db, actor, requester)

        if action == LeaveAction.approve:
            return await LeaveLifecycle.approve(
                db, request_id, actor.id, comments, is_authorized=is_authorized,
            )
        return await LeaveLifecycle.reject(
            db, request_id, actor.id, comments, is_authorized=is_authorized,
        )
