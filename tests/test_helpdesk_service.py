from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from apps.api.helpdesk import (
    AccountDeactivated,
    AuditAction,
    AuditWriteError,
    AuthorizationError,
    CommentSource,
    HelpdeskService,
    MutationFailedError,
    NotificationNotFoundError,
    Role,
    TicketNotFoundError,
    TicketPriority,
    TicketStatus,
    ValidationError,
)
from apps.api.metrics.definitions import FAN_OUT_FAILURES, STATUS_TRANSITIONS, TICKETS_CREATED
from apps.api.services.changes import Entity
from apps.api.services.store import MemoryStore, StoreError


class FailingStore(MemoryStore):
    """Memory store whose inserts into the given collections fail."""

    def __init__(self, *failing: Entity) -> None:
        super().__init__()
        self.failing = set(failing)

    async def insert(self, entity, values):
        if entity in self.failing:
            raise StoreError(f"{entity.value} unavailable")
        return await super().insert(entity, values)


async def _vpn_ticket(service, actor, **kwargs):
    return await service.create_ticket(
        actor, title="VPN down", description="Cannot reach the office network", priority="HIGH", **kwargs
    )


@pytest.mark.asyncio
async def test_create_ticket_records_history_and_notifies_admins(service, store, registry, ana, bo, cy):
    outcome = await _vpn_ticket(service, ana)

    ticket = outcome.ticket
    assert ticket.status is TicketStatus.OPEN
    assert ticket.priority is TicketPriority.HIGH
    assert ticket.resolved_at is None
    assert ticket.ticket_number == 1
    assert ticket.requester_name == "Ana"
    assert ticket.category == "General"

    history = await service.ticket_history(ana, ticket.id)
    assert [entry.action for entry in history] == [AuditAction.CREATED]
    assert history[0].actor_id == "U1"

    assert sorted(n.user_id for n in outcome.notifications) == ["A1", "A2"]
    assert all("VPN down" in n.message for n in outcome.notifications)
    assert outcome.fan_out_complete is True
    assert await store.count(Entity.NOTIFICATIONS, filters={"user_id": "U1"}) == 0
    assert registry.counter(TICKETS_CREATED).value() == 1


@pytest.mark.asyncio
async def test_admin_resolving_notifies_only_the_requester(service, store, registry, ana, bo, cy):
    created = await _vpn_ticket(service, ana)

    outcome = await service.transition_status(bo, created.ticket.id, "RESOLVED")

    assert outcome.ticket.status is TicketStatus.RESOLVED
    assert outcome.ticket.resolved_at is not None
    assert outcome.audit_entry.action is AuditAction.STATUS_CHANGE
    assert outcome.audit_entry.actor_id == "A1"
    assert "RESOLVED" in outcome.audit_entry.detail
    assert [n.user_id for n in outcome.notifications] == ["U1"]
    assert await service.unread_count(ana) == 1
    assert await service.unread_count(bo) == 1
    assert registry.counter(STATUS_TRANSITIONS).value(labels={"status": "RESOLVED"}) == 1


@pytest.mark.asyncio
async def test_reopening_clears_resolution_time(service, ana, bo):
    created = await _vpn_ticket(service, ana)
    await service.transition_status(bo, created.ticket.id, TicketStatus.CLOSED)

    reopened = await service.transition_status(bo, created.ticket.id, TicketStatus.IN_PROGRESS)

    assert reopened.ticket.resolved_at is None
    history = await service.ticket_history(bo, created.ticket.id)
    assert [entry.action for entry in history] == [
        AuditAction.CREATED,
        AuditAction.STATUS_CHANGE,
        AuditAction.STATUS_CHANGE,
    ]


@pytest.mark.asyncio
async def test_requester_may_cancel_but_not_resolve(service, ana, bo):
    created = await _vpn_ticket(service, ana)

    with pytest.raises(AuthorizationError):
        await service.transition_status(ana, created.ticket.id, TicketStatus.RESOLVED)
    cancelled = await service.transition_status(ana, created.ticket.id, TicketStatus.CLOSED)

    assert cancelled.ticket.status is TicketStatus.CLOSED
    assert cancelled.notifications == []


@pytest.mark.asyncio
async def test_unknown_status_is_rejected_before_any_write(service, store, ana, bo):
    created = await _vpn_ticket(service, ana)

    with pytest.raises(ValidationError):
        await service.transition_status(bo, created.ticket.id, "ARCHIVED")

    assert await store.count(Entity.AUDIT_LOGS) == 1


@pytest.mark.asyncio
async def test_missing_ticket(service, bo):
    with pytest.raises(TicketNotFoundError):
        await service.transition_status(bo, "nope", TicketStatus.CLOSED)


@pytest.mark.asyncio
async def test_fan_out_failure_does_not_fail_the_mutation(store, registry, ana, bo):
    broken = AsyncMock()
    broken.fan_out.side_effect = RuntimeError("notifications offline")
    service = HelpdeskService(store, registry=registry, fan_out=broken)

    outcome = await _vpn_ticket(service, ana)

    assert outcome.fan_out_complete is False
    assert outcome.notifications == []
    assert await store.count(Entity.TICKETS) == 1
    assert await store.count(Entity.AUDIT_LOGS) == 1
    assert registry.counter(FAN_OUT_FAILURES).value(labels={"event": "ticket_created"}) == 1


@pytest.mark.asyncio
async def test_audit_failure_is_fatal_after_the_mutation(registry):
    store = FailingStore(Entity.AUDIT_LOGS)
    service = HelpdeskService(store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")

    with pytest.raises(AuditWriteError) as excinfo:
        await _vpn_ticket(service, ana)

    assert excinfo.value.mutation_applied is True
    assert await store.count(Entity.TICKETS) == 1
    assert await store.count(Entity.NOTIFICATIONS) == 0


@pytest.mark.asyncio
async def test_failed_mutation_writes_no_audit_entry(registry):
    store = FailingStore(Entity.TICKETS)
    service = HelpdeskService(store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")

    with pytest.raises(MutationFailedError) as excinfo:
        await _vpn_ticket(service, ana)

    assert excinfo.value.mutation_applied is False
    assert await store.count(Entity.AUDIT_LOGS) == 0
    assert await store.count(Entity.NOTIFICATIONS) == 0


@pytest.mark.asyncio
async def test_retried_create_is_applied_once(service, store, registry, ana, bo):
    first = await _vpn_ticket(service, ana, request_id="req-1")
    second = await _vpn_ticket(service, ana, request_id="req-1")

    assert first.ticket.id == second.ticket.id
    assert first.audit_entry.id == second.audit_entry.id
    assert second.notifications == []
    assert await store.count(Entity.TICKETS) == 1
    assert await store.count(Entity.AUDIT_LOGS) == 1
    assert await store.count(Entity.NOTIFICATIONS) == 1
    assert registry.counter(TICKETS_CREATED).value() == 1


@pytest.mark.asyncio
async def test_ticket_numbers_increase(service, ana):
    first = await _vpn_ticket(service, ana)
    second = await service.create_ticket(ana, title="Printer jam", description="Tray 2")

    assert (first.ticket.ticket_number, second.ticket.ticket_number) == (1, 2)
    assert second.ticket.priority is TicketPriority.MEDIUM


@pytest.mark.asyncio
async def test_blank_title_is_rejected(service, store, ana):
    with pytest.raises(ValidationError):
        await service.create_ticket(ana, title="  ", description="x")

    assert await store.count(Entity.TICKETS) == 0


@pytest.mark.asyncio
async def test_edit_records_history_without_notifying(service, store, ana, bo):
    created = await _vpn_ticket(service, ana)

    outcome = await service.edit_ticket(ana, created.ticket.id, title="VPN down for everyone", priority="critical")

    assert outcome.ticket.title == "VPN down for everyone"
    assert outcome.ticket.priority is TicketPriority.CRITICAL
    assert outcome.audit_entry.action is AuditAction.EDITED
    assert outcome.notifications == []
    assert await store.count(Entity.NOTIFICATIONS) == 1


@pytest.mark.asyncio
async def test_requester_cannot_edit_closed_ticket(service, ana, bo):
    created = await _vpn_ticket(service, ana)
    await service.transition_status(bo, created.ticket.id, TicketStatus.CLOSED)

    with pytest.raises(AuthorizationError):
        await service.edit_ticket(ana, created.ticket.id, title="Again")
    edited = await service.edit_ticket(bo, created.ticket.id, category="Network")

    assert edited.ticket.category == "Network"


@pytest.mark.asyncio
async def test_edit_without_changes_is_rejected(service, ana):
    created = await _vpn_ticket(service, ana)

    with pytest.raises(ValidationError):
        await service.edit_ticket(ana, created.ticket.id)


@pytest.mark.asyncio
async def test_delete_removes_dependent_rows(service, store, ana, bo):
    created = await _vpn_ticket(service, ana)
    await service.add_comment(bo, created.ticket.id, "Looking into it")

    await service.delete_ticket(ana, created.ticket.id)

    for entity in (Entity.TICKETS, Entity.COMMENTS, Entity.AUDIT_LOGS, Entity.NOTIFICATIONS):
        assert await store.count(entity) == 0
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(bo, created.ticket.id)


@pytest.mark.asyncio
async def test_other_users_cannot_see_or_delete(service, ana, make_profile):
    dee = await make_profile("U2", "Dee")
    created = await _vpn_ticket(service, ana)

    with pytest.raises(AuthorizationError):
        await service.get_ticket(dee, created.ticket.id)
    with pytest.raises(AuthorizationError):
        await service.delete_ticket(dee, created.ticket.id)
    assert await service.list_visible_tickets(dee) == []


@pytest.mark.asyncio
async def test_visible_tickets_are_scoped_to_requester(service, ana, bo, make_profile):
    dee = await make_profile("U2", "Dee")
    mine = await _vpn_ticket(service, ana)
    await service.create_ticket(dee, title="Laptop", description="Broken hinge")

    assert [t.id for t in await service.list_visible_tickets(ana)] == [mine.ticket.id]
    assert len(await service.list_visible_tickets(bo)) == 2
    assert await service.list_visible_tickets(bo, status="resolved") == []


@pytest.mark.asyncio
async def test_comment_notification_rules(service, ana, bo, cy):
    created = await _vpn_ticket(service, ana)

    by_requester = await service.add_comment(ana, created.ticket.id, "Still broken")
    by_staff = await service.add_comment(bo, created.ticket.id, "Restarted the gateway")

    assert sorted(n.user_id for n in by_requester.notifications) == ["A1", "A2"]
    assert [n.user_id for n in by_staff.notifications] == ["U1"]
    assert by_staff.notifications[0].title == f"New reply on #{created.ticket.ticket_number}"
    comments = await service.list_comments(ana, created.ticket.id)
    assert [c.body for c in comments] == ["Still broken", "Restarted the gateway"]


@pytest.mark.asyncio
async def test_external_reply_is_attributed_to_requester(service, ana, bo):
    created = await _vpn_ticket(service, ana)

    outcome = await service.add_external_reply(bo, created.ticket.id, "Replying from my phone")

    assert outcome.comment.author_id == "U1"
    assert outcome.comment.source is CommentSource.EXTERNAL_CHANNEL
    assert [n.user_id for n in outcome.notifications] == ["A1"]

    with pytest.raises(AuthorizationError):
        await service.add_external_reply(ana, created.ticket.id, "Forged reply")


@pytest.mark.asyncio
async def test_blank_comment_is_rejected(service, ana):
    created = await _vpn_ticket(service, ana)

    with pytest.raises(ValidationError):
        await service.add_comment(ana, created.ticket.id, "   ")


@pytest.mark.asyncio
async def test_inbox_operations(service, ana, bo, cy):
    await _vpn_ticket(service, ana)
    await service.create_ticket(ana, title="Printer jam", description="Tray 2")
    inbox = await service.list_notifications(bo)
    assert len(inbox) == 2

    with pytest.raises(NotificationNotFoundError):
        await service.mark_notification_read(cy, inbox[0].id)
    read = await service.mark_notification_read(bo, inbox[0].id)

    assert read.is_read is True
    assert await service.unread_count(bo) == 1
    assert await service.mark_all_read(bo) == 1
    assert await service.unread_count(bo) == 0
    assert await service.unread_count(cy) == 2

    await service.delete_notification(bo, inbox[1].id)
    assert [n.id for n in await service.list_notifications(bo)] == [inbox[0].id]
    with pytest.raises(NotificationNotFoundError):
        await service.delete_notification(bo, inbox[1].id)


@pytest.mark.asyncio
async def test_stats_and_recent_activity(service, ana, bo):
    first = await _vpn_ticket(service, ana)
    await service.create_ticket(ana, title="Server room", description="Too hot", priority=TicketPriority.CRITICAL)
    await service.transition_status(bo, first.ticket.id, TicketStatus.RESOLVED)

    stats = await service.ticket_stats(ana)
    activity = await service.recent_activity(bo, limit=2)

    assert (stats.total, stats.open, stats.in_progress, stats.resolved, stats.critical) == (2, 1, 0, 1, 1)
    assert len(activity) == 2
    with pytest.raises(AuthorizationError):
        await service.recent_activity(ana)


@pytest.mark.asyncio
async def test_user_administration(service, ana, bo):
    with pytest.raises(AuthorizationError):
        await service.list_users(ana)
    with pytest.raises(AuthorizationError):
        await service.set_role(bo, "A1", Role.USER)
    with pytest.raises(AuthorizationError):
        await service.set_active(bo, "A1", False)
    with pytest.raises(ValidationError):
        await service.set_role(bo, "U1", "owner")

    promoted = await service.set_role(bo, "U1", "admin")
    assert promoted.role is Role.ADMIN
    assert sorted(user.id for user in await service.list_users(bo)) == ["A1", "U1"]


@pytest.mark.asyncio
async def test_deactivated_user_is_signed_out(service, ana, bo):
    await service.set_active(bo, "U1", False)

    with pytest.raises(AccountDeactivated):
        await service.resolve_identity("U1", "ana@example.com")

    restored = await service.set_active(bo, "U1", True)
    assert restored.is_active is True
    assert (await service.resolve_identity("U1", "ana@example.com")).id == "U1"


class UndeletableTicketStore(MemoryStore):
    """Memory store whose ticket rows cannot be deleted."""

    async def delete(self, entity, key):
        if entity is Entity.TICKETS:
            raise StoreError("tickets table locked")
        return await super().delete(entity, key)


@pytest.mark.asyncio
async def test_reused_key_from_another_admin_is_recorded(service, ana, bo, cy):
    created = await _vpn_ticket(service, ana)

    await service.transition_status(bo, created.ticket.id, "IN_PROGRESS", request_id="k1")
    moved = await service.transition_status(cy, created.ticket.id, "RESOLVED", request_id="k1")

    assert moved.ticket.status is TicketStatus.RESOLVED
    history = await service.ticket_history(bo, created.ticket.id)
    assert [(entry.detail, entry.actor_id) for entry in history[1:]] == [
        ("Status changed to IN_PROGRESS", "A1"),
        ("Status changed to RESOLVED", "A2"),
    ]


@pytest.mark.asyncio
async def test_retried_transition_is_not_applied_again(service, store, registry, ana, bo):
    created = await _vpn_ticket(service, ana)
    first = await service.transition_status(bo, created.ticket.id, "RESOLVED", request_id="k1")
    await service.transition_status(bo, created.ticket.id, "IN_PROGRESS")

    retry = await service.transition_status(bo, created.ticket.id, "RESOLVED", request_id="k1")

    assert retry.audit_entry.id == first.audit_entry.id
    assert retry.ticket.status is TicketStatus.IN_PROGRESS
    assert retry.notifications == []
    assert await store.count(Entity.AUDIT_LOGS) == 3
    assert await service.unread_count(ana) == 2
    assert registry.counter(STATUS_TRANSITIONS).value(labels={"status": "RESOLVED"}) == 1

    closed = await service.transition_status(bo, created.ticket.id, "CLOSED", request_id="k1")

    assert closed.ticket.status is TicketStatus.CLOSED
    assert closed.audit_entry.id != first.audit_entry.id
    assert await store.count(Entity.AUDIT_LOGS) == 4


@pytest.mark.asyncio
async def test_retried_edit_is_not_applied_again(service, store, ana, bo):
    created = await _vpn_ticket(service, ana)
    await service.edit_ticket(ana, created.ticket.id, title="VPN still down", request_id="e1")
    await service.edit_ticket(bo, created.ticket.id, title="VPN flapping")

    retry = await service.edit_ticket(ana, created.ticket.id, title="VPN still down", request_id="e1")

    assert retry.ticket.title == "VPN flapping"
    assert await store.count(Entity.AUDIT_LOGS) == 3


@pytest.mark.asyncio
async def test_retry_after_audit_failure_records_the_change(policy, registry):
    store = FailingStore()
    service = HelpdeskService(store, policy=policy, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")
    bo = await service.resolve_identity("A1", "dev@anycorp.com", "Bo")
    created = await _vpn_ticket(service, ana)

    store.failing.add(Entity.AUDIT_LOGS)
    with pytest.raises(AuditWriteError):
        await service.transition_status(bo, created.ticket.id, "RESOLVED", request_id="k1")
    store.failing.clear()
    retry = await service.transition_status(bo, created.ticket.id, "RESOLVED", request_id="k1")

    history = await service.ticket_history(bo, created.ticket.id)
    assert [entry.action for entry in history] == [AuditAction.CREATED, AuditAction.STATUS_CHANGE]
    assert history[-1].id == retry.audit_entry.id


@pytest.mark.asyncio
async def test_comment_keys_are_scoped_to_author_and_body(service, ana, bo):
    created = await _vpn_ticket(service, ana)

    mine = await service.add_comment(ana, created.ticket.id, "Still down", request_id="c1")
    theirs = await service.add_comment(bo, created.ticket.id, "Looking into it", request_id="c1")
    again = await service.add_comment(ana, created.ticket.id, "Still down", request_id="c1")

    assert theirs.comment.id != mine.comment.id
    assert theirs.comment.author_id == "A1"
    assert again.comment.id == mine.comment.id
    assert [c.body for c in await service.list_comments(ana, created.ticket.id)] == [
        "Still down",
        "Looking into it",
    ]


@pytest.mark.asyncio
async def test_failed_delete_keeps_ticket_and_history(registry):
    store = UndeletableTicketStore()
    service = HelpdeskService(store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")
    created = await _vpn_ticket(service, ana)
    await service.add_comment(ana, created.ticket.id, "Any news?")

    with pytest.raises(MutationFailedError) as excinfo:
        await service.delete_ticket(ana, created.ticket.id)

    assert excinfo.value.mutation_applied is False
    assert (await service.get_ticket(ana, created.ticket.id)).id == created.ticket.id
    assert [entry.action for entry in await service.ticket_history(ana, created.ticket.id)] == [AuditAction.CREATED]
    assert len(await service.list_comments(ana, created.ticket.id)) == 1
