"""Notification endpoints — inbox, document reminders, delivery logs, sweep."""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.dependencies import get_current_user, require_role
from leaveflow.common.constants import DeliveryStatus, NotificationType, UserRole
from leaveflow.common.pagination import PaginatedResponse, PaginationParams
from leaveflow.common.rate_limit import limiter
from leaveflow.core_hr.models import Employee
from leaveflow.database import get_db
from leaveflow.notifications.dispatch import get_dispatcher
from leaveflow.notifications.scheduler import NotificationScheduler
from leaveflow.notifications.schemas import (
    DocumentNotifierCreate,
    DocumentNotifierOut,
    NotificationListResponse,
    NotificationLogOut,
    NotificationResponse,
    SweepReportOut,
)
from leaveflow.notifications.service import NotificationService

router = APIRouter(prefix="", tags=["notifications"])


# ── GET / — list current user's notifications ───────────────────────

@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    is_read: Optional[bool] = Query(default=None, description="Filter by read status"),
    type: Optional[NotificationType] = Query(
        default=None, alias="type", description="Filter by notification type"
    ),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List notifications for the authenticated user (paginated)."""
    return await NotificationService.get_notifications(
        db,
        employee_id=employee.id,
        pagination=pagination,
        is_read=is_read,
        notification_type=type,
    )


# ── GET /unread-count — badge count ─────────────────────────────────
# NOTE: fixed paths are registered before /{notification_id}/read.

@router.get("/unread-count")
async def unread_count(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationService.get_unread_count(db, employee.id)
    return {"data": {"count": count}}


# ── PUT /read-all — bulk mark all as read ───────────────────────────

@router.put("/read-all")
async def mark_all_read(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationService.mark_all_read(db, employee.id)
    return {"message": "All notifications marked as read", "data": {"count": count}}


# ── Document-expiry reminders ───────────────────────────────────────

@router.post(
    "/document-notifiers", response_model=DocumentNotifierOut, status_code=201,
)
async def create_document_notifier(
    body: DocumentNotifierCreate,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Schedule expiry reminders for one of the caller's documents."""
    return await NotificationScheduler.create_notifier(db, employee.id, body)


@router.get("/document-notifiers", response_model=list[DocumentNotifierOut])
async def list_document_notifiers(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationScheduler.list_notifiers(db, employee.id)


@router.post(
    "/document-notifiers/{notifier_id}/reset", response_model=DocumentNotifierOut,
)
async def reset_document_notifier(
    notifier_id: uuid.UUID,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    """Re-activate a notifier that stopped after repeated delivery failures."""
    return await NotificationScheduler.reset_notifier(db, notifier_id)


# ── Delivery logs ───────────────────────────────────────────────────

@router.get("/logs", response_model=PaginatedResponse[NotificationLogOut])
async def list_notification_logs(
    notifier_id: Optional[uuid.UUID] = Query(None),
    status: Optional[DeliveryStatus] = Query(None),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationScheduler.list_logs(
        db, pagination, notifier_id=notifier_id, status=status,
    )


# ── POST /sweep — run the scheduler now ─────────────────────────────

@router.post("/sweep", response_model=SweepReportOut)
@limiter.limit("6/minute")
async def trigger_sweep(
    request: Request,
    employee: Employee = Depends(require_role(UserRole.hr)),
    db: AsyncSession = Depends(get_db),
):
    """Run one notification sweep synchronously (skips if one is running)."""
    return await NotificationScheduler.run_sweep(db, get_dispatcher(db))


# ── PUT /{notification_id}/read — mark single as read ───────────────

@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await NotificationService.mark_read(db, notification_id, employee.id)
    return {
        "message": "Notification marked as read",
        "data": NotificationResponse.model_validate(notification),
    }
