"""Custom exceptions and RFC 7807 Problem Detail error handlers."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

BASE_ERROR_URI = "https://leaveflow.dev/errors"


# ── Exception hierarchy ─────────────────────────────────────────────

class AppException(Exception):
    """Base for all application exceptions → RFC 7807 JSON."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        title: str,
        detail: str,
        errors: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.title = title
        self.detail = detail
        self.errors = errors
        self.extra = extra or {}
        super().__init__(detail)


class NotFoundException(AppException):
    """404 — entity not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=404,
            error_type="not-found",
            title=f"{entity_type} Not Found",
            detail=f"{entity_type} with id '{entity_id}' does not exist.",
        )


class ConflictError(AppException):
    """409 — unique-constraint / duplicate."""

    def __init__(self, field: str, value: Any) -> None:
        super().__init__(
            status_code=409,
            error_type="conflict",
            title="Conflict",
            detail=f"An entry with {field}='{value}' already exists.",
            errors={field: [f"'{value}' is already in use."]},
        )


class ForbiddenException(AppException):
    """403 — the actor lacks rights for the operation."""

    def __init__(
        self,
        detail: str = "You do not have permission to perform this action.",
    ) -> None:
        super().__init__(
            status_code=403,
            error_type="forbidden",
            title="Forbidden",
            detail=detail,
        )


class ValidationException(AppException):
    """422 — business-logic validation failures, all collected together."""

    def __init__(
        self,
        errors: dict[str, list[str]],
        codes: Optional[list[str]] = None,
    ) -> None:
        super().__init__(
            status_code=422,
            error_type="validation-error",
            title="Validation Error",
            detail="One or more fields failed validation.",
            errors=errors,
            extra={"codes": codes} if codes else None,
        )
        self.codes = codes or []


class InsufficientBalance(AppException):
    """409 — the ledger refused a reservation.

    Raised by ``BalanceLedger.reserve`` only. May happen after a successful
    pre-check when a concurrent request consumed the balance first.
    """

    def __init__(self, available: Decimal, requested: Decimal) -> None:
        super().__init__(
            status_code=409,
            error_type="insufficient-balance",
            title="Insufficient Balance",
            detail=(
                f"Insufficient leave balance. "
                f"Available: {available}, Requested: {requested}."
            ),
            errors={"balance": ["Not enough leave balance for this request."]},
            extra={"available": str(available), "requested": str(requested)},
        )
        self.available = available
        self.requested = requested


class IllegalTransition(AppException):
    """409 — transition not allowed from the request's current status."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            status_code=409,
            error_type="illegal-transition",
            title="Illegal Transition",
            detail=f"Cannot move a leave request from '{current}' to '{target}'.",
            extra={"current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class LedgerInconsistency(AppException):
    """500 — a ledger row no longer matches the requests that reference it."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            status_code=500,
            error_type="ledger-inconsistency",
            title="Ledger Inconsistency",
            detail=detail,
        )


class InvalidAccrualRule(AppException):
    """500 — a leave type's stored accrual rule does not parse."""

    def __init__(self, leave_type_code: Optional[str], reason: str) -> None:
        self.leave_type_code = leave_type_code
        super().__init__(
            status_code=500,
            error_type="invalid-accrual-rule",
            title="Invalid Accrual Rule",
            detail=f"Leave type '{leave_type_code}' has an invalid accrual rule: {reason}",
        )


class NotificationDeliveryError(Exception):
    """Transient delivery failure; recorded by the sweep, never returned to callers."""

    def __init__(self, recipient: str, reason: str) -> None:
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Delivery to {recipient} failed: {reason}")


# ── RFC 7807 builder ────────────────────────────────────────────────

def _build_problem_detail(exc: AppException, request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": f"{BASE_ERROR_URI}/{exc.error_type}",
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
    }
    if exc.errors:
        body["errors"] = exc.errors
    body.update(exc.extra)
    return body


# ── FastAPI handlers ────────────────────────────────────────────────

async def _handle_app_exception(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error_type, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_problem_detail(exc, request),
        media_type="application/problem+json",
    )


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = err.get("loc", ())
        name = (
            ".".join(str(p) for p in loc[1:])
            if len(loc) > 1
            else str(loc[0]) if loc else "unknown"
        )
        field_errors.setdefault(name, []).append(err.get("msg", "Invalid value"))

    return JSONResponse(
        status_code=422,
        content={
            "type": f"{BASE_ERROR_URI}/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "Request validation failed.",
            "instance": str(request.url.path),
            "errors": field_errors,
        },
        media_type="application/problem+json",
    )


# ── Registration helper (called from main.py) ──────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""
    app.add_exception_handler(AppException, _handle_app_exception)          # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
