"""Notification dispatchers — how a reminder leaves the scheduler.

A dispatcher answers one call, ``send(recipient, template_id, data)``, with a
``DispatchResult``. Delivery problems are reported either as a failed result
or by raising ``NotificationDeliveryError``; the scheduler records both in
the notification log and retries with backoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import (
    BALANCE_LOW_TEMPLATE,
    DOCUMENT_EXPIRY_TEMPLATE,
    NotificationType,
)
from leaveflow.common.exceptions import NotificationDeliveryError
from leaveflow.config import settings
from leaveflow.core_hr.models import Employee
from leaveflow.notifications.service import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    error: Optional[str] = None


class NotificationDispatcher(Protocol):
    async def send(
        self,
        recipient: Employee,
        template_id: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        ...


# Title and message per template, formatted with the reminder data
IN_APP_TEMPLATES: dict[str, tuple[str, str]] = {
    DOCUMENT_EXPIRY_TEMPLATE: (
        "Document Expiring",
        "Your document '{document_name}' expires on {expires_at}.",
    ),
    BALANCE_LOW_TEMPLATE: (
        "Leave Balance Low",
        "Only {available} day(s) of {leave_type} remain for {year}.",
    ),
}


class InAppDispatcher:
    """Writes the reminder into the recipient's in-app inbox."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def send(
        self,
        recipient: Employee,
        template_id: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        template = IN_APP_TEMPLATES.get(template_id)
        if template is None:
            return DispatchResult(ok=False, error=f"Unknown template '{template_id}'.")
        title, body = template
        try:
            message = body.format(**data)
        except KeyError as exc:
            return DispatchResult(ok=False, error=f"Missing template field {exc}.")

        await NotificationService.create_notification(
            self.db,
            recipient_id=recipient.id,
            type=NotificationType.reminder,
            title=title,
            message=message,
            action_url=data.get("action_url"),
            entity_type=data.get("entity_type"),
        )
        return DispatchResult(ok=True)


class WebhookDispatcher:
    """POSTs the reminder as JSON to an external delivery service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(
        self,
        recipient: Employee,
        template_id: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        payload = {
            "recipient_id": str(recipient.id),
            "recipient_email": recipient.email,
            "template_id": template_id,
            "data": data,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport,
            ) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(recipient.email, str(exc)) from exc

        if resp.status_code >= 400:
            logger.warning(
                "Webhook rejected %s for %s: HTTP %d",
                template_id, recipient.email, resp.status_code,
            )
            return DispatchResult(ok=False, error=f"HTTP {resp.status_code}")
        return DispatchResult(ok=True)


def get_dispatcher(db: AsyncSession) -> NotificationDispatcher:
    """Dispatcher selected by ``NOTIFICATION_DISPATCHER``."""
    if settings.NOTIFICATION_DISPATCHER == "webhook":
        if not settings.NOTIFICATION_WEBHOOK_URL:
            raise RuntimeError("NOTIFICATION_WEBHOOK_URL must be set for the webhook dispatcher.")
        return WebhookDispatcher(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout=settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
        )
    return InAppDispatcher(db)
