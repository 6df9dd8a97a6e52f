from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape
from typing import Any

import httpx

from .models import Ticket

logger = logging.getLogger(__name__)


class EmailDeliveryError(RuntimeError):
    """Raised when the email provider rejects or cannot receive a message."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class EmailAlertSender:
    """Send ticket alerts through a Resend-compatible HTTP API.

    Without an ``api_key`` the sender is disabled and every call is a no-op.
    """

    api_key: str | None
    api_url: str = "https://api.resend.com/emails"
    sender: str = "Help Desk <onboarding@resend.dev>"
    support_inbox: str | None = None
    timeout: float = 10.0
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str) -> dict[str, Any] | None:
        if not self.enabled:
            logger.debug("Email alerts disabled; skipping '%s' to %s", subject, to)
            return None
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Email request failed: {exc}") from exc
        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        logger.info("Sent '%s' to %s", subject, to)
        return response.json() if response.content else None

    async def ticket_created(self, ticket: Ticket) -> dict[str, Any] | None:
        if not self.support_inbox:
            return None
        subject = f"[#{ticket.ticket_number}] New ticket: {ticket.title}"
        html = (
            f"<h2>New ticket #{ticket.ticket_number}</h2>"
            f"<p><strong>Requester:</strong> {escape(ticket.requester_name)}</p>"
            f"<p><strong>Priority:</strong> {ticket.priority.value}</p>"
            f"<p><strong>Category:</strong> {escape(ticket.category)}</p>"
            f"<p>{escape(ticket.description)}</p>"
        )
        return await self.send(self.support_inbox, subject, html)

    async def status_changed(self, ticket: Ticket, requester_email: str) -> dict[str, Any] | None:
        subject = f"[#{ticket.ticket_number}] Status updated: {ticket.status.value}"
        html = (
            f"<p>Your ticket <strong>{escape(ticket.title)}</strong> is now "
            f"<strong>{ticket.status.value}</strong>.</p>"
        )
        return await self.send(requester_email, subject, html)
