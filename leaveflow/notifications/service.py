"""In-app inbox: reading and acknowledging notifications, plus the leave-event
messages the lifecycle drops into it."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import NotificationType
from leaveflow.common.exceptions import ForbiddenException, NotFoundException
from leaveflow.common.pagination import PaginationParams, paginate
from leaveflow.notifications.models import Notification
from leaveflow.notifications.schemas import (
    NotificationListMeta,
    NotificationListResponse,
    NotificationResponse,
)

if TYPE_CHECKING:
    from leaveflow.leave.models import LeaveRequest


def _unread_for(employee_id: uuid.UUID) -> tuple:
    return (
        Notification.recipient_id == employee_id,
        Notification.is_read.is_(False),
    )


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        action_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.add(notification)
        await db.flush()
        return notification

    @staticmethod
    async def get_notifications(
        db: AsyncSession,
        employee_id: uuid.UUID,
        pagination: PaginationParams,
        *,
        is_read: Optional[bool] = None,
        notification_type: Optional[NotificationType] = None,
    ) -> NotificationListResponse:
        """Inbox page, newest first. ``meta.unread`` ignores the filters."""
        filters = [Notification.recipient_id == employee_id]
        if is_read is not None:
            filters.append(Notification.is_read == is_read)
        if notification_type is not None:
            filters.append(Notification.type == notification_type)

        rows, meta = await paginate(
            db,
            select(Notification).where(*filters).order_by(Notification.created_at.desc()),
            pagination,
            model=Notification,
        )
        return NotificationListResponse(
            data=[NotificationResponse.model_validate(n) for n in rows],
            meta=NotificationListMeta(
                **meta.model_dump(),
                unread=await NotificationService.get_unread_count(db, employee_id),
            ),
        )

    @staticmethod
    async def mark_read(
        db: AsyncSession,
        notification_id: uuid.UUID,
        employee_id: uuid.UUID,
    ) -> Notification:
        """Acknowledge one notification; ``read_at`` keeps the first acknowledgement."""
        notification = await db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundException("Notification", notification_id)
        if notification.recipient_id != employee_id:
            raise ForbiddenException("You can only mark your own notifications as read.")

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            await db.flush()
        return notification

    @staticmethod
    async def mark_all_read(db: AsyncSession, employee_id: uuid.UUID) -> int:
        result = await db.execute(
            update(Notification)
            .where(*_unread_for(employee_id))
            .values(is_read=True, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[return-value]

    @staticmethod
    async def get_unread_count(db: AsyncSession, employee_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count()).select_from(Notification).where(*_unread_for(employee_id))
        )
        return result.scalar_one()


# ── Leave events ────────────────────────────────────────────────────
# Written inside the lifecycle's transaction, so a rolled-back
# transition leaves no message behind.

_LEAVE_EVENTS: dict[str, tuple[NotificationType, str, str]] = {
    "submitted": (
        NotificationType.action_required,
        "New Leave Request",
        "A leave request from {period} requires your approval.",
    ),
    "approved": (
        NotificationType.approval,
        "Leave Request Approved",
        "Your leave request from {period} has been approved.",
    ),
    "rejected": (
        NotificationType.alert,
        "Leave Request Rejected",
        "Your leave request from {period} was rejected. Reason: {reason}",
    ),
    "cancelled": (
        NotificationType.info,
        "Leave Request Cancelled",
        "The leave request from {period} was cancelled.",
    ),
}


async def _leave_event(
    db: AsyncSession,
    event: str,
    leave_request: LeaveRequest,
    recipient_id: uuid.UUID,
    **fields: str,
) -> Notification:
    type_, title, template = _LEAVE_EVENTS[event]
    period = (
        f"{leave_request.start_date} to {leave_request.end_date} "
        f"({leave_request.days_count} day(s))"
    )
    return await NotificationService.create_notification(
        db,
        recipient_id=recipient_id,
        type=type_,
        title=title,
        message=template.format(period=period, **fields),
        action_url=f"/leave/requests/{leave_request.id}",
        entity_type="leave_request",
        entity_id=leave_request.id,
    )


async def notify_leave_submitted(
    db: AsyncSession,
    leave_request: LeaveRequest,
    approver_id: uuid.UUID,
) -> Notification:
    return await _leave_event(db, "submitted", leave_request, approver_id)


async def notify_leave_approved(db: AsyncSession, leave_request: LeaveRequest) -> Notification:
    return await _leave_event(db, "approved", leave_request, leave_request.requester_id)


async def notify_leave_rejected(
    db: AsyncSession,
    leave_request: LeaveRequest,
    reason: str,
) -> Notification:
    return await _leave_event(
        db, "rejected", leave_request, leave_request.requester_id, reason=reason,
    )


async def notify_leave_cancelled(
    db: AsyncSession,
    leave_request: LeaveRequest,
    recipient_id: uuid.UUID,
) -> Notification:
    """Tell the other party (requester or manager) about a cancellation."""
    return await _leave_event(db, "cancelled", leave_request, recipient_id)
