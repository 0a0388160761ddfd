"""Common module — shared utilities for LeaveFlow."""

from leaveflow.common.audit import AuditTrail, create_audit_entry
from leaveflow.common.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    DeliveryStatus,
    LeaveAction,
    LeaveStatus,
    NotificationFrequency,
    NotificationType,
    NotifierStatus,
    ReminderKind,
    UserRole,
)
from leaveflow.common.exceptions import (
    AppException,
    ConflictError,
    ForbiddenException,
    IllegalTransition,
    InsufficientBalance,
    LedgerInconsistency,
    NotFoundException,
    NotificationDeliveryError,
    ValidationException,
    register_exception_handlers,
)
from leaveflow.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "create_audit_entry",
    # Constants / Enums
    "DeliveryStatus",
    "LeaveAction",
    "LeaveStatus",
    "NotificationFrequency",
    "NotificationType",
    "NotifierStatus",
    "ReminderKind",
    "UserRole",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "ConflictError",
    "ForbiddenException",
    "IllegalTransition",
    "InsufficientBalance",
    "LedgerInconsistency",
    "NotFoundException",
    "NotificationDeliveryError",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
