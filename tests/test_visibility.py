from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apps.api.helpdesk import AuthorizationError, Role, Ticket, TicketPriority, TicketStatus, User
from apps.api.helpdesk import visibility

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)

ANA = User(id="U1", name="Ana", email="ana@example.com")
DAN = User(id="U2", name="Dan", email="dan@example.com")
BO = User(id="A1", name="Bo", email="bo@example.com", role=Role.ADMIN)


def _ticket(ticket_id: str, requester: User, status: TicketStatus = TicketStatus.OPEN) -> Ticket:
    return Ticket(
        id=ticket_id,
        ticket_number=int(ticket_id[1:]),
        title=f"Ticket {ticket_id}",
        description="...",
        requester_id=requester.id,
        requester_name=requester.name,
        priority=TicketPriority.LOW,
        status=status,
        category="General",
        created_at=NOW,
        updated_at=NOW,
    )


TICKETS = [_ticket("t1", ANA), _ticket("t2", DAN), _ticket("t3", ANA, TicketStatus.CLOSED)]


def test_admin_sees_every_ticket():
    assert visibility.visible(TICKETS, BO) == TICKETS
    assert visibility.ticket_scope(BO) == {}


def test_user_sees_only_own_tickets():
    visible = visibility.visible(TICKETS, ANA)

    assert [ticket.id for ticket in visible] == ["t1", "t3"]
    assert all(ticket.requester_id == ANA.id for ticket in visible)
    assert visibility.ticket_scope(ANA) == {"requester_id": "U1"}


@pytest.mark.parametrize(
    ("status", "allowed"),
    [
        (TicketStatus.OPEN, True),
        (TicketStatus.IN_PROGRESS, True),
        (TicketStatus.RESOLVED, True),
        (TicketStatus.CLOSED, False),
    ],
)
def test_owner_rights_end_at_closed(status, allowed):
    ticket = _ticket("t9", ANA, status)

    assert visibility.can_edit(ticket, ANA) is allowed
    assert visibility.can_delete(ticket, ANA) is allowed
    assert visibility.can_edit(ticket, BO) is True


def test_other_users_cannot_touch_a_ticket():
    ticket = _ticket("t1", ANA)

    assert not visibility.can_view(ticket, DAN)
    with pytest.raises(AuthorizationError):
        visibility.ensure_edit(ticket, DAN)
    with pytest.raises(AuthorizationError):
        visibility.ensure_comment(ticket, DAN)


def test_requester_may_only_cancel():
    ticket = _ticket("t1", ANA)

    assert visibility.can_transition(ticket, ANA, TicketStatus.CLOSED)
    assert not visibility.can_transition(ticket, ANA, TicketStatus.RESOLVED)
    assert not visibility.can_transition(_ticket("t3", ANA, TicketStatus.CLOSED), ANA, TicketStatus.CLOSED)
    assert visibility.can_transition(ticket, BO, TicketStatus.RESOLVED)
    with pytest.raises(AuthorizationError):
        visibility.ensure_transition(ticket, ANA, TicketStatus.IN_PROGRESS)


def test_ensure_admin():
    visibility.ensure_admin(BO)
    with pytest.raises(AuthorizationError):
        visibility.ensure_admin(ANA)
