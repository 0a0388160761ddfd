"""Notification ORM models.

- ``Notification``      in-app inbox entry
- ``DocumentNotifier``  recurring document-expiry reminder schedule
- ``NotificationLog``   append-only delivery record, one row per attempt
- ``SchedulerLease``    named lease preventing overlapping sweeps
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leaveflow.common.constants import (
    DeliveryStatus,
    NotificationFrequency,
    NotificationType,
    NotifierStatus,
    ReminderKind,
)
from leaveflow.database import Base

if TYPE_CHECKING:
    from leaveflow.core_hr.models import Employee


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[NotificationType] = mapped_column(
        sa.Enum(NotificationType, name="notification_type"),
        default=NotificationType.info,
    )
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    action_url: Mapped[Optional[str]] = mapped_column(sa.String(500))
    entity_type: Mapped[Optional[str]] = mapped_column(sa.String(50))
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    is_read: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )

    # Relationships
    recipient: Mapped[Employee] = relationship(back_populates="notifications")


class DocumentNotifier(Base):
    """Reminder schedule for one user's expiring document.

    ``expires_at`` is a snapshot supplied by the document store when the
    notifier is created. After creation only the scheduler (and an explicit
    reset) writes to this row.
    """

    __tablename__ = "document_notifiers"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "document_id", name="uq_document_notifier"),
        sa.CheckConstraint(
            "advance_notice_days >= 0", name="ck_notifier_advance_notice",
        ),
        sa.CheckConstraint(
            "frequency != 'custom' OR custom_frequency_days > 0",
            name="ck_notifier_custom_days",
        ),
        sa.Index("ix_document_notifiers_due", "status", "next_due"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    document_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    expires_at: Mapped[date] = mapped_column(sa.Date, nullable=False)
    frequency: Mapped[NotificationFrequency] = mapped_column(
        sa.Enum(NotificationFrequency, name="notification_frequency"),
        default=NotificationFrequency.weekly,
        nullable=False,
    )
    custom_frequency_days: Mapped[Optional[int]] = mapped_column(sa.Integer)
    advance_notice_days: Mapped[int] = mapped_column(sa.Integer, default=30)
    last_sent: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    next_due: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False,
    )
    delivery_attempts: Mapped[int] = mapped_column(sa.Integer, default=0)
    status: Mapped[NotifierStatus] = mapped_column(
        sa.Enum(NotifierStatus, name="notifier_status"),
        default=NotifierStatus.active,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )

    # Relationships
    user: Mapped[Employee] = relationship()

    def __repr__(self) -> str:
        return f"<DocumentNotifier {self.document_name!r} {self.status.value}>"


class NotificationLog(Base):
    """Append-only delivery history. Rows are never updated."""

    __tablename__ = "notification_logs"
    __table_args__ = (
        sa.Index("ix_notification_logs_notifier", "notifier_id"),
        sa.Index("ix_notification_logs_dedupe", "dedupe_key", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    notifier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("document_notifiers.id", ondelete="SET NULL"),
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    notification_type: Mapped[ReminderKind] = mapped_column(
        sa.Enum(ReminderKind, name="reminder_kind"), nullable=False,
    )
    template_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        sa.Enum(DeliveryStatus, name="delivery_status"), nullable=False,
    )
    attempts: Mapped[int] = mapped_column(sa.Integer, default=1)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text)
    sent_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow,
    )


class SchedulerLease(Base):
    __tablename__ = "scheduler_leases"

    name: Mapped[str] = mapped_column(sa.String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False,
    )
