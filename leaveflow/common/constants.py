"""Enums and constants for LeaveFlow — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr = "hr"
    admin = "admin"


# ── Leave ───────────────────────────────────────────────────────────

class LeaveStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


class LeaveAction(str, enum.Enum):
    approve = "approve"
    reject = "reject"
    cancel = "cancel"


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    reminder = "reminder"
    alert = "alert"


class NotificationFrequency(str, enum.Enum):
    weekly = "weekly"
    monthly = "monthly"
    custom = "custom"


class NotifierStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    failed = "failed"


class DeliveryStatus(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    pending = "pending"
    retrying = "retrying"


class ReminderKind(str, enum.Enum):
    document_expiry = "document_expiry"
    balance_low = "balance_low"


# ── Misc constants ──────────────────────────────────────────────────

FREQUENCY_DAYS: dict[NotificationFrequency, int] = {
    NotificationFrequency.weekly: 7,
    NotificationFrequency.monthly: 30,
}

DOCUMENT_EXPIRY_TEMPLATE = "document-expiry-reminder"
BALANCE_LOW_TEMPLATE = "leave-balance-low"
SWEEP_LEASE_NAME = "notification-sweep"

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
