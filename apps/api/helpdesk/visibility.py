"""Who may see and act on which tickets.

Every role check in the engine goes through this module.
"""

from __future__ import annotations

from typing import Any, Iterable

from .errors import AuthorizationError
from .models import Ticket, TicketStatus, User


def owns(ticket: Ticket, user: User) -> bool:
    return ticket.requester_id == user.id


def visible(tickets: Iterable[Ticket], user: User) -> list[Ticket]:
    """ADMIN sees every ticket; anyone else only the tickets they requested."""

    if user.is_admin:
        return list(tickets)
    return [ticket for ticket in tickets if owns(ticket, user)]


def ticket_scope(user: User) -> dict[str, Any]:
    """Store filters equivalent to :func:`visible` for ``user``."""

    return {} if user.is_admin else {"requester_id": user.id}


def can_view(ticket: Ticket, user: User) -> bool:
    return user.is_admin or owns(ticket, user)


def can_edit(ticket: Ticket, user: User) -> bool:
    # Owner rights end once the ticket is CLOSED.
    if user.is_admin:
        return True
    return owns(ticket, user) and ticket.status is not TicketStatus.CLOSED


can_delete = can_edit


def can_transition(ticket: Ticket, user: User, target: TicketStatus) -> bool:
    """Staff move tickets freely; a requester may only cancel their own open ticket."""

    if user.is_admin:
        return True
    return target is TicketStatus.CLOSED and can_edit(ticket, user)


def can_comment(ticket: Ticket, user: User) -> bool:
    return can_view(ticket, user)


def ensure_view(ticket: Ticket, user: User) -> None:
    if not can_view(ticket, user):
        raise AuthorizationError(f"User {user.id} may not view ticket {ticket.id}")


def ensure_edit(ticket: Ticket, user: User) -> None:
    if not can_edit(ticket, user):
        raise AuthorizationError(f"User {user.id} may not edit ticket {ticket.id}")


def ensure_delete(ticket: Ticket, user: User) -> None:
    if not can_delete(ticket, user):
        raise AuthorizationError(f"User {user.id} may not delete ticket {ticket.id}")


def ensure_transition(ticket: Ticket, user: User, target: TicketStatus) -> None:
    if not can_transition(ticket, user, target):
        raise AuthorizationError(
            f"User {user.id} may not move ticket {ticket.id} to {target.value}"
        )


def ensure_comment(ticket: Ticket, user: User) -> None:
    if not can_comment(ticket, user):
        raise AuthorizationError(f"User {user.id} may not comment on ticket {ticket.id}")


def ensure_admin(user: User) -> None:
    if not user.is_admin:
        raise AuthorizationError(f"User {user.id} is not an administrator")

