"""Notification Pydantic schemas for request / response validation."""


import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from leaveflow.common.constants import (
    DeliveryStatus,
    NotificationFrequency,
    NotificationType,
    NotifierStatus,
    ReminderKind,
)
from leaveflow.common.pagination import PaginationMeta


# ── In-app inbox ────────────────────────────────────────────────────

class NotificationResponse(BaseModel):
    """Single notification in API responses."""

    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListMeta(PaginationMeta):
    """Extends standard pagination meta with unread count."""

    unread: int


class NotificationListResponse(BaseModel):
    data: list[NotificationResponse]
    meta: NotificationListMeta


# ── Document-expiry reminders ───────────────────────────────────────

class DocumentNotifierCreate(BaseModel):
    """Register reminders for a document; ``expires_at`` comes from the document store."""

    document_id: uuid.UUID
    document_name: str = Field(..., min_length=1, max_length=255)
    expires_at: date
    frequency: NotificationFrequency = NotificationFrequency.weekly
    custom_frequency_days: Optional[int] = Field(None, ge=1, le=365)
    advance_notice_days: int = Field(30, ge=0, le=365)

    @model_validator(mode="after")
    def custom_needs_days(self) -> "DocumentNotifierCreate":
        if (
            self.frequency == NotificationFrequency.custom
            and not self.custom_frequency_days
        ):
            raise ValueError("custom_frequency_days is required for a custom frequency.")
        return self


class DocumentNotifierOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    document_id: uuid.UUID
    document_name: str
    expires_at: date
    frequency: NotificationFrequency
    custom_frequency_days: Optional[int] = None
    advance_notice_days: int
    last_sent: Optional[datetime] = None
    next_due: datetime
    delivery_attempts: int
    status: NotifierStatus

    model_config = {"from_attributes": True}


class NotificationLogOut(BaseModel):
    id: uuid.UUID
    notifier_id: Optional[uuid.UUID] = None
    recipient_id: uuid.UUID
    notification_type: ReminderKind
    template_id: str
    dedupe_key: str
    status: DeliveryStatus
    attempts: int
    error_message: Optional[str] = None
    sent_at: datetime

    model_config = {"from_attributes": True}


class SweepReportOut(BaseModel):
    """Outcome of one scheduler sweep."""

    skipped: bool = False
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deactivated: int = 0
    balance_reminders: int = 0
