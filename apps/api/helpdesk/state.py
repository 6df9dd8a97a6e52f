from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import InvalidPriority, InvalidStatus
from .models import (
    RESOLVED_STATES,
    AuditAction,
    AuditLogEntry,
    Ticket,
    TicketPriority,
    TicketStatus,
    User,
)

AUDIT_NAMESPACE = uuid.UUID("6f1c2a52-4b7e-4d0e-9a55-2f4c1f3b8d10")


@dataclass(frozen=True, slots=True)
class Transition:
    """Result of a lifecycle step: the new ticket state and the entry that records it."""

    ticket: Ticket
    audit_entry: AuditLogEntry


def audit_entry_id(
    ticket_id: str,
    action: AuditAction,
    request_id: str | None,
    *,
    actor_id: str | None = None,
    payload: str = "",
) -> str:
    """Stable id for one logical audit event, random when no request id is known.

    The actor and the requested change are part of the id, so a request id
    reused by another actor or for a different change names a new event.
    """

    if request_id is None:
        return str(uuid.uuid4())
    name = "/".join((ticket_id, action.value, actor_id or "", payload, request_id))
    return str(uuid.uuid5(AUDIT_NAMESPACE, name))


def change_fingerprint(changes: Mapping[str, Any]) -> str:
    """Canonical text for a set of field changes."""

    normalised = {key: getattr(value, "value", value) for key, value in changes.items() if value is not None}
    return json.dumps(normalised, sort_keys=True, default=str)


def coerce_status(value: Any) -> TicketStatus:
    if isinstance(value, TicketStatus):
        return value
    try:
        return TicketStatus(str(value).upper())
    except ValueError as exc:
        raise InvalidStatus(f"Unknown ticket status: {value!r}") from exc


def coerce_priority(value: Any) -> TicketPriority:
    if isinstance(value, TicketPriority):
        return value
    try:
        return TicketPriority(str(value).upper())
    except ValueError as exc:
        raise InvalidPriority(f"Unknown ticket priority: {value!r}") from exc


class TicketStateMachine:
    """Pure lifecycle rules for tickets.

    Every status is reachable from every other one; callers authorise the
    actor before asking for a transition. Each method returns the new ticket
    state together with exactly one audit entry describing it.
    """

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @staticmethod
    def resolved_at_for(status: TicketStatus, now: datetime) -> datetime | None:
        return now if status in RESOLVED_STATES else None

    @classmethod
    def create(
        cls,
        ticket: Ticket,
        actor: User,
        *,
        now: datetime | None = None,
        request_id: str | None = None,
    ) -> Transition:
        moment = now or datetime.now(timezone.utc)
        status = cls.initial_state()
        created = replace(
            ticket,
            status=status,
            created_at=moment,
            updated_at=moment,
            resolved_at=cls.resolved_at_for(status, moment),
        )
        entry = _entry(
            created,
            actor,
            AuditAction.CREATED,
            f"Ticket created with priority {created.priority.value}",
            moment,
            request_id,
        )
        return Transition(ticket=created, audit_entry=entry)

    @classmethod
    def edit(
        cls,
        ticket: Ticket,
        actor: User,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: TicketPriority | None = None,
        category: str | None = None,
        attachments: list[str] | None = None,
        now: datetime | None = None,
        request_id: str | None = None,
    ) -> Transition:
        moment = now or datetime.now(timezone.utc)
        edited = replace(
            ticket,
            title=title if title is not None else ticket.title,
            description=description if description is not None else ticket.description,
            priority=priority if priority is not None else ticket.priority,
            category=category if category is not None else ticket.category,
            attachments=list(attachments) if attachments is not None else list(ticket.attachments),
            updated_at=moment,
        )
        changes = {
            "title": title,
            "description": description,
            "priority": priority,
            "category": category,
            "attachments": attachments,
        }
        entry = _entry(
            edited,
            actor,
            AuditAction.EDITED,
            "Ticket details edited",
            moment,
            request_id,
            payload=change_fingerprint(changes),
        )
        return Transition(ticket=edited, audit_entry=entry)

    @classmethod
    def transition(
        cls,
        ticket: Ticket,
        requested_status: TicketStatus | str,
        actor: User,
        *,
        now: datetime | None = None,
        request_id: str | None = None,
    ) -> Transition:
        status = coerce_status(requested_status)
        moment = now or datetime.now(timezone.utc)
        moved = replace(
            ticket,
            status=status,
            updated_at=moment,
            resolved_at=cls.resolved_at_for(status, moment),
        )
        entry = _entry(
            moved,
            actor,
            AuditAction.STATUS_CHANGE,
            f"Status changed to {status.value}",
            moment,
            request_id,
            payload=status.value,
        )
        return Transition(ticket=moved, audit_entry=entry)


def _entry(
    ticket: Ticket,
    actor: User | None,
    action: AuditAction,
    detail: str,
    moment: datetime,
    request_id: str | None,
    *,
    payload: str = "",
) -> AuditLogEntry:
    actor_id = actor.id if actor is not None else None
    return AuditLogEntry(
        id=audit_entry_id(ticket.id, action, request_id, actor_id=actor_id, payload=payload),
        ticket_id=ticket.id,
        actor_id=actor_id,
        action=action,
        detail=detail,
        created_at=moment,
    )
