"""Recipient computation and notification writes for ticket events."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence, Union

from apps.api.metrics import MetricsRegistry, metrics_registry
from apps.api.metrics.definitions import NOTIFICATIONS_WRITTEN
from apps.api.services.changes import Entity
from apps.api.services.store import DuplicateKeyError, StoreAdapter, StoreError

from .errors import PersistenceError
from .models import (
    Comment,
    Notification,
    Role,
    Ticket,
    User,
    notification_to_row,
    row_to_notification,
    row_to_user,
)

logger = logging.getLogger(__name__)

NOTIFICATION_NAMESPACE = uuid.UUID("0b8e4d3c-7a61-4f0e-8c2d-5e9a7f1b6c24")


def _event_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class TicketCreated:
    ticket: Ticket
    actor: User
    event_id: str = field(default_factory=_event_id)

    name = "ticket_created"


@dataclass(frozen=True, slots=True)
class TicketCommented:
    ticket: Ticket
    comment: Comment
    commenter: User
    event_id: str = field(default_factory=_event_id)

    name = "ticket_commented"


@dataclass(frozen=True, slots=True)
class StatusChanged:
    ticket: Ticket
    actor: User
    event_id: str = field(default_factory=_event_id)

    name = "status_changed"


TicketEvent = Union[TicketCreated, TicketCommented, StatusChanged]


class FanOutError(PersistenceError):
    """Some notifications for an event could not be written."""

    mutation_applied = True

    def __init__(self, message: str, *, delivered: Sequence[Notification] = ()) -> None:
        super().__init__(message)
        self.delivered = list(delivered)


def notification_id(event_id: str, recipient_id: str) -> str:
    return str(uuid.uuid5(NOTIFICATION_NAMESPACE, f"{event_id}/{recipient_id}"))


def render(event: TicketEvent) -> tuple[str, str]:
    """Title and message shown to recipients of ``event``."""

    ticket = event.ticket
    if isinstance(event, TicketCreated):
        return "New ticket created", f"{ticket.requester_name} opened a new ticket: {ticket.title}"
    if isinstance(event, TicketCommented):
        return (
            f"New reply on #{ticket.ticket_number}",
            f"{event.commenter.name} replied on ticket: {ticket.title}",
        )
    return (
        f"Ticket #{ticket.ticket_number} updated",
        f"Your ticket '{ticket.title}' is now {ticket.status.value}",
    )


class NotificationFanOut:
    """Compute recipients for ticket events and write one notification each."""

    def __init__(self, store: StoreAdapter, *, registry: MetricsRegistry | None = None) -> None:
        self._store = store
        self._metrics = registry or metrics_registry

    async def active_admin_ids(self, *, exclude: str | None = None) -> list[str]:
        rows = await self._store.list(
            Entity.PROFILES,
            filters={"role": Role.ADMIN.value, "is_active": True},
            order_by="created_at",
            descending=False,
        )
        return [user.id for user in map(row_to_user, rows) if user.id != exclude]

    async def recipients(self, event: TicketEvent) -> list[str]:
        ticket = event.ticket
        if isinstance(event, TicketCreated):
            return await self.active_admin_ids()
        if isinstance(event, TicketCommented):
            commenter = event.commenter
            if commenter.id == ticket.requester_id:
                return await self.active_admin_ids(exclude=commenter.id)
            if commenter.role is Role.ADMIN:
                return [ticket.requester_id]
            return []
        if event.actor.id == ticket.requester_id:
            return []
        return [ticket.requester_id]

    async def fan_out(self, event: TicketEvent) -> list[Notification]:
        """Write notifications for ``event``; zero recipients is a silent no-op.

        Raises :class:`FanOutError` after attempting every recipient when at
        least one write failed. Retrying the same event is safe: notification
        ids derive from the event id and recipient.
        """

        try:
            recipient_ids = await self.recipients(event)
        except StoreError as exc:
            raise FanOutError(f"Could not compute recipients for {event.name}") from exc
        if not recipient_ids:
            logger.debug("No recipients for %s on ticket %s", event.name, event.ticket.id)
            return []

        title, message = render(event)
        now = datetime.now(timezone.utc)
        delivered: list[Notification] = []
        failed: list[str] = []
        for recipient_id in dict.fromkeys(recipient_ids):
            notification = Notification(
                id=notification_id(event.event_id, recipient_id),
                user_id=recipient_id,
                title=title,
                message=message,
                created_at=now,
                ticket_id=event.ticket.id,
            )
            try:
                row = await self._store.insert(Entity.NOTIFICATIONS, notification_to_row(notification))
            except DuplicateKeyError:
                logger.debug("Notification %s already delivered", notification.id)
                continue
            except StoreError as exc:
                logger.warning("Could not notify %s about %s: %s", recipient_id, event.name, exc)
                failed.append(recipient_id)
                continue
            delivered.append(row_to_notification(row))

        if delivered:
            self._metrics.counter(NOTIFICATIONS_WRITTEN).inc(len(delivered))
        if failed:
            raise FanOutError(
                f"{len(failed)} of {len(recipient_ids)} notifications for {event.name} failed",
                delivered=delivered,
            )
        return delivered
