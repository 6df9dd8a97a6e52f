from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class Role(str, Enum):
    """Roles a profile can hold."""

    ADMIN = "ADMIN"
    USER = "USER"


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class TicketPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class CommentSource(str, Enum):
    """Where a comment entered the system."""

    INTERACTIVE = "INTERACTIVE"
    EXTERNAL_CHANNEL = "EXTERNAL_CHANNEL"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    EDITED = "EDITED"
    STATUS_CHANGE = "STATUS_CHANGE"


RESOLVED_STATES = frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED})


@dataclass(slots=True)
class User:
    """Resolved profile of an authenticated person."""

    id: str
    name: str
    email: str
    role: Role = Role.USER
    is_active: bool = True
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    ticket_number: int
    title: str
    description: str
    requester_id: str
    requester_name: str
    priority: TicketPriority
    status: TicketStatus
    category: str
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    attachments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Comment:
    id: str
    ticket_id: str
    author_id: str
    body: str
    created_at: datetime
    source: CommentSource = CommentSource.INTERACTIVE


@dataclass(slots=True)
class AuditLogEntry:
    """History entry describing a single mutation of a ticket."""

    id: str
    ticket_id: str
    actor_id: str | None
    action: AuditAction
    detail: str
    created_at: datetime


@dataclass(slots=True)
class Notification:
    id: str
    user_id: str
    title: str
    message: str
    created_at: datetime
    is_read: bool = False
    ticket_id: str | None = None


def user_to_row(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "is_active": user.is_active,
        "created_at": user.created_at or datetime.now(timezone.utc),
    }


def row_to_user(row: Mapping[str, Any]) -> User:
    created_at = row.get("created_at")
    return User(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        email=str(row.get("email") or ""),
        role=Role(str(row.get("role") or Role.USER.value)),
        is_active=bool(row.get("is_active", True)),
        created_at=_ensure_datetime(created_at) if created_at is not None else None,
    )


def ticket_to_row(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "description": ticket.description,
        "requester_id": ticket.requester_id,
        "requester_name": ticket.requester_name,
        "priority": ticket.priority.value,
        "status": ticket.status.value,
        "category": ticket.category,
        "attachments": list(ticket.attachments),
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
        "resolved_at": ticket.resolved_at,
    }


def row_to_ticket(row: Mapping[str, Any]) -> Ticket:
    resolved_at = row.get("resolved_at")
    return Ticket(
        id=str(row["id"]),
        ticket_number=int(row.get("ticket_number") or 0),
        title=str(row["title"]),
        description=str(row["description"]),
        requester_id=str(row["requester_id"]),
        requester_name=str(row.get("requester_name") or ""),
        priority=TicketPriority(str(row["priority"])),
        status=TicketStatus(str(row["status"])),
        category=str(row.get("category") or ""),
        created_at=_ensure_datetime(row["created_at"]),
        updated_at=_ensure_datetime(row.get("updated_at") or row["created_at"]),
        resolved_at=_ensure_datetime(resolved_at) if resolved_at is not None else None,
        attachments=list(row.get("attachments") or []),
    )


def comment_to_row(comment: Comment) -> dict[str, Any]:
    return {
        "id": comment.id,
        "ticket_id": comment.ticket_id,
        "author_id": comment.author_id,
        "body": comment.body,
        "source": comment.source.value,
        "created_at": comment.created_at,
    }


def row_to_comment(row: Mapping[str, Any]) -> Comment:
    return Comment(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        author_id=str(row["author_id"]),
        body=str(row["body"]),
        created_at=_ensure_datetime(row["created_at"]),
        source=CommentSource(str(row.get("source") or CommentSource.INTERACTIVE.value)),
    )


def audit_to_row(entry: AuditLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "ticket_id": entry.ticket_id,
        "actor_id": entry.actor_id,
        "action": entry.action.value,
        "detail": entry.detail,
        "created_at": entry.created_at,
    }


def row_to_audit(row: Mapping[str, Any]) -> AuditLogEntry:
    actor_id = row.get("actor_id")
    return AuditLogEntry(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        actor_id=str(actor_id) if actor_id else None,
        action=AuditAction(str(row["action"])),
        detail=str(row.get("detail") or ""),
        created_at=_ensure_datetime(row["created_at"]),
    )


def notification_to_row(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "ticket_id": notification.ticket_id,
        "created_at": notification.created_at,
    }


def row_to_notification(row: Mapping[str, Any]) -> Notification:
    ticket_id = row.get("ticket_id")
    return Notification(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        title=str(row["title"]),
        message=str(row["message"]),
        created_at=_ensure_datetime(row["created_at"]),
        is_read=bool(row.get("is_read", False)),
        ticket_id=str(ticket_id) if ticket_id else None,
    )


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
