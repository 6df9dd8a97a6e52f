from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from apps.api.core.logging import traced
from apps.api.metrics import MetricsRegistry, metrics_registry
from apps.api.metrics.definitions import FAN_OUT_DURATION, FAN_OUT_FAILURES, STATUS_TRANSITIONS, TICKETS_CREATED
from apps.api.services.changes import Entity
from apps.api.services.store import DuplicateKeyError, StoreAdapter, StoreError

from . import visibility
from .audit import AuditRecorder
from .email import EmailAlertSender
from .errors import (
    AuthorizationError,
    MutationFailedError,
    NotificationNotFoundError,
    PersistenceError,
    TicketNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from .identity import BootstrapPolicy, IdentityResolver
from .insights import InsightsError, TicketInsights, TicketInsightsClient, TriageSuggestion
from .models import (
    RESOLVED_STATES,
    AuditLogEntry,
    Comment,
    CommentSource,
    Notification,
    Role,
    Ticket,
    TicketPriority,
    TicketStatus,
    User,
    comment_to_row,
    row_to_audit,
    row_to_comment,
    row_to_notification,
    row_to_ticket,
    row_to_user,
    ticket_to_row,
)
from .notifications import NotificationFanOut, StatusChanged, TicketCommented, TicketCreated, TicketEvent
from .state import TicketStateMachine, coerce_priority, coerce_status

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "General"
RECORD_NAMESPACE = uuid.UUID("9d3a7c1e-2f45-4b8a-a6d0-3c5e8f7b1a92")

# Rows removed together with their ticket, keyed by the column that references it.
TICKET_DEPENDENTS = {
    Entity.NOTIFICATIONS: "ticket_id",
    Entity.COMMENTS: "ticket_id",
    Entity.AUDIT_LOGS: "ticket_id",
}


@dataclass(slots=True)
class TicketOutcome:
    """Result of a ticket mutation.

    ``fan_out_complete`` is ``False`` when the ticket and its audit entry were
    stored but some notifications could not be delivered.
    """

    ticket: Ticket
    audit_entry: AuditLogEntry
    notifications: list[Notification] = field(default_factory=list)
    fan_out_complete: bool = True


@dataclass(slots=True)
class CommentOutcome:
    comment: Comment
    notifications: list[Notification] = field(default_factory=list)
    fan_out_complete: bool = True


@dataclass(slots=True)
class TicketStats:
    total: int
    open: int
    in_progress: int
    resolved: int
    critical: int


def _record_id(*parts: str) -> str:
    return str(uuid.uuid5(RECORD_NAMESPACE, "/".join(parts)))


def _required(value: str | None, field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    return text


class HelpdeskService:
    """Orchestrate ticket lifecycle operations for one store.

    Mutations run strictly in order: persist the change, persist its audit
    entry, then attempt notification fan-out. A failed change raises
    :class:`MutationFailedError`; a failed audit write raises
    :class:`AuditWriteError`; a failed fan-out is logged and reported through
    ``fan_out_complete`` on the outcome.
    """

    def __init__(
        self,
        store: StoreAdapter,
        *,
        policy: BootstrapPolicy | None = None,
        email: EmailAlertSender | None = None,
        insights: TicketInsightsClient | None = None,
        registry: MetricsRegistry | None = None,
        identity: IdentityResolver | None = None,
        audit: AuditRecorder | None = None,
        fan_out: NotificationFanOut | None = None,
    ) -> None:
        self._store = store
        self._metrics = registry or metrics_registry
        self.identity = identity or IdentityResolver(store, policy, registry=self._metrics)
        self.audit = audit or AuditRecorder(store, registry=self._metrics)
        self.fan_out = fan_out or NotificationFanOut(store, registry=self._metrics)
        self._email = email
        self._insights = insights

    # Identity

    @traced("helpdesk.resolve_identity")
    async def resolve_identity(
        self, session_user_id: str, session_email: str, display_name: str | None = None
    ) -> User:
        return await self.identity.resolve(session_user_id, session_email, display_name)

    async def get_user(self, user_id: str) -> User:
        """Current profile of ``user_id``, active or not."""

        return await self._load_user(user_id)

    # Ticket mutations

    @traced("helpdesk.create_ticket")
    async def create_ticket(
        self,
        actor: User,
        *,
        title: str,
        description: str,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        category: str | None = None,
        attachments: Sequence[str] | None = None,
        request_id: str | None = None,
    ) -> TicketOutcome:
        draft = Ticket(
            id=_record_id("ticket", actor.id, request_id) if request_id else str(uuid.uuid4()),
            ticket_number=0,
            title=_required(title, "title"),
            description=_required(description, "description"),
            requester_id=actor.id,
            requester_name=actor.name,
            priority=coerce_priority(priority),
            status=TicketStateMachine.initial_state(),
            category=(category or "").strip() or DEFAULT_CATEGORY,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
            attachments=list(attachments or []),
        )
        transition = TicketStateMachine.create(draft, actor, request_id=request_id)
        values = ticket_to_row(transition.ticket)
        values.pop("ticket_number")
        created = True
        try:
            row = await self._store.insert(Entity.TICKETS, values)
        except DuplicateKeyError:
            created = False
            row = await self._store.get(Entity.TICKETS, draft.id)
            if row is None:  # pragma: no cover - removed right after the collision
                raise MutationFailedError(f"Ticket {draft.id} collided but could not be read back")
            logger.info("Ticket %s already created for request %s", draft.id, request_id)
        except StoreError as exc:
            logger.error("Failed to create ticket for %s: %s", actor.id, exc)
            raise MutationFailedError("Ticket could not be created") from exc
        ticket = row_to_ticket(row)
        entry = await self.audit.append(transition.audit_entry)
        if created:
            self._metrics.counter(TICKETS_CREATED).inc()
            logger.info(
                "Ticket #%s created by %s with priority %s", ticket.ticket_number, actor.id, ticket.priority.value
            )

        notifications, complete = await self._fan_out(TicketCreated(ticket=ticket, actor=actor, event_id=entry.id))
        if created and self._email is not None:
            await self._send_email("ticket_created", self._email.ticket_created(ticket))
        return TicketOutcome(ticket=ticket, audit_entry=entry, notifications=notifications, fan_out_complete=complete)

    @traced("helpdesk.edit_ticket")
    async def edit_ticket(
        self,
        actor: User,
        ticket_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: TicketPriority | str | None = None,
        category: str | None = None,
        attachments: Sequence[str] | None = None,
        request_id: str | None = None,
    ) -> TicketOutcome:
        changes: dict[str, Any] = {}
        if title is not None:
            changes["title"] = _required(title, "title")
        if description is not None:
            changes["description"] = _required(description, "description")
        if priority is not None:
            changes["priority"] = coerce_priority(priority)
        if category is not None:
            changes["category"] = category.strip() or DEFAULT_CATEGORY
        if attachments is not None:
            changes["attachments"] = list(attachments)
        if not changes:
            raise ValidationError("No ticket fields to update")

        current = await self._load_ticket(ticket_id)
        visibility.ensure_view(current, actor)
        transition = TicketStateMachine.edit(current, actor, request_id=request_id, **changes)
        recorded = await self._recorded(transition.audit_entry, request_id)
        if recorded is not None:
            return TicketOutcome(ticket=current, audit_entry=recorded)
        visibility.ensure_edit(current, actor)
        edited = transition.ticket
        values = {
            "title": edited.title,
            "description": edited.description,
            "priority": edited.priority.value,
            "category": edited.category,
            "attachments": list(edited.attachments),
            "updated_at": edited.updated_at,
        }
        ticket = await self._apply_update(ticket_id, values)
        entry = await self.audit.append(transition.audit_entry)
        logger.info("Ticket #%s edited by %s", ticket.ticket_number, actor.id)
        return TicketOutcome(ticket=ticket, audit_entry=entry)

    @traced("helpdesk.transition_status")
    async def transition_status(
        self,
        actor: User,
        ticket_id: str,
        status: TicketStatus | str,
        *,
        request_id: str | None = None,
    ) -> TicketOutcome:
        target = coerce_status(status)
        current = await self._load_ticket(ticket_id)
        visibility.ensure_view(current, actor)
        transition = TicketStateMachine.transition(current, target, actor, request_id=request_id)
        recorded = await self._recorded(transition.audit_entry, request_id)
        if recorded is not None:
            # Already applied; only notifications missing from an earlier attempt are written.
            notifications, complete = await self._fan_out(
                StatusChanged(ticket=current, actor=actor, event_id=recorded.id)
            )
            return TicketOutcome(
                ticket=current, audit_entry=recorded, notifications=notifications, fan_out_complete=complete
            )
        visibility.ensure_transition(current, actor, target)
        moved = transition.ticket
        ticket = await self._apply_update(
            ticket_id,
            {"status": moved.status.value, "resolved_at": moved.resolved_at, "updated_at": moved.updated_at},
        )
        entry = await self.audit.append(transition.audit_entry)
        self._metrics.counter(STATUS_TRANSITIONS).inc(labels={"status": target.value})
        logger.info(
            "Ticket #%s moved %s -> %s by %s",
            ticket.ticket_number,
            current.status.value,
            target.value,
            actor.id,
        )

        notifications, complete = await self._fan_out(StatusChanged(ticket=ticket, actor=actor, event_id=entry.id))
        if self._email is not None and actor.id != ticket.requester_id:
            await self._send_email("status_changed", self._status_email(ticket))
        return TicketOutcome(ticket=ticket, audit_entry=entry, notifications=notifications, fan_out_complete=complete)

    @traced("helpdesk.delete_ticket")
    async def delete_ticket(self, actor: User, ticket_id: str) -> None:
        """Remove a ticket together with its comments, history and notifications."""

        ticket = await self._load_ticket(ticket_id)
        visibility.ensure_delete(ticket, actor)
        try:
            deleted = await self._store.delete_cascade(Entity.TICKETS, ticket_id, TICKET_DEPENDENTS)
        except StoreError as exc:
            logger.error("Failed to delete ticket %s: %s", ticket_id, exc)
            raise MutationFailedError(f"Ticket {ticket_id} could not be deleted") from exc
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket #%s deleted by %s", ticket.ticket_number, actor.id)

    # Comments

    @traced("helpdesk.add_comment")
    async def add_comment(
        self,
        actor: User,
        ticket_id: str,
        body: str,
        *,
        request_id: str | None = None,
    ) -> CommentOutcome:
        text = _required(body, "body")
        ticket = await self._load_ticket(ticket_id)
        visibility.ensure_comment(ticket, actor)
        return await self._comment(ticket, actor, text, CommentSource.INTERACTIVE, request_id)

    @traced("helpdesk.add_external_reply")
    async def add_external_reply(
        self,
        actor: User,
        ticket_id: str,
        body: str,
        *,
        request_id: str | None = None,
    ) -> CommentOutcome:
        """Record a reply that arrived outside the app on behalf of the requester.

        Only administrators relay such replies; the comment is authored by the
        ticket's requester.
        """

        visibility.ensure_admin(actor)
        text = _required(body, "body")
        ticket = await self._load_ticket(ticket_id)
        requester = await self._load_user(ticket.requester_id)
        return await self._comment(ticket, requester, text, CommentSource.EXTERNAL_CHANNEL, request_id)

    async def _comment(
        self,
        ticket: Ticket,
        author: User,
        body: str,
        source: CommentSource,
        request_id: str | None,
    ) -> CommentOutcome:
        comment = Comment(
            id=(
                _record_id("comment", ticket.id, author.id, source.value, body, request_id)
                if request_id
                else str(uuid.uuid4())
            ),
            ticket_id=ticket.id,
            author_id=author.id,
            body=body,
            created_at=datetime.now(timezone.utc),
            source=source,
        )
        try:
            row = await self._store.insert(Entity.COMMENTS, comment_to_row(comment))
        except DuplicateKeyError:
            row = await self._store.get(Entity.COMMENTS, comment.id) or comment_to_row(comment)
            logger.info("Comment %s already recorded", comment.id)
        except StoreError as exc:
            logger.error("Failed to add comment on ticket %s: %s", ticket.id, exc)
            raise MutationFailedError(f"Comment on ticket {ticket.id} could not be saved") from exc
        stored = row_to_comment(row)
        event = TicketCommented(ticket=ticket, comment=stored, commenter=author, event_id=stored.id)
        notifications, complete = await self._fan_out(event)
        return CommentOutcome(comment=stored, notifications=notifications, fan_out_complete=complete)

    # Reads

    async def get_ticket(self, user: User, ticket_id: str) -> Ticket:
        ticket = await self._load_ticket(ticket_id)
        visibility.ensure_view(ticket, user)
        return ticket

    async def list_visible_tickets(self, user: User, *, status: TicketStatus | str | None = None) -> list[Ticket]:
        filters = visibility.ticket_scope(user)
        if status is not None:
            filters["status"] = coerce_status(status).value
        rows = await self._read(self._store.list(Entity.TICKETS, filters=filters), "tickets")
        return visibility.visible(map(row_to_ticket, rows), user)

    async def list_comments(self, user: User, ticket_id: str) -> list[Comment]:
        await self.get_ticket(user, ticket_id)
        rows = await self._read(
            self._store.list(Entity.COMMENTS, filters={"ticket_id": ticket_id}, descending=False),
            f"comments of {ticket_id}",
        )
        return [row_to_comment(row) for row in rows]

    async def ticket_history(self, user: User, ticket_id: str) -> list[AuditLogEntry]:
        await self.get_ticket(user, ticket_id)
        return await self.audit.history(ticket_id)

    async def recent_activity(self, user: User, limit: int = 8) -> list[AuditLogEntry]:
        visibility.ensure_admin(user)
        return await self.audit.recent(limit)

    async def ticket_stats(self, user: User) -> TicketStats:
        tickets = await self.list_visible_tickets(user)
        return TicketStats(
            total=len(tickets),
            open=sum(1 for t in tickets if t.status is TicketStatus.OPEN),
            in_progress=sum(1 for t in tickets if t.status is TicketStatus.IN_PROGRESS),
            resolved=sum(1 for t in tickets if t.status in RESOLVED_STATES),
            critical=sum(1 for t in tickets if t.priority is TicketPriority.CRITICAL),
        )

    # Ticket insights

    async def suggest_triage(self, actor: User, *, title: str, description: str) -> TriageSuggestion | None:
        """Suggested priority, category and summary for a ticket being written.

        Returns ``None`` when insights are disabled or the model call fails.
        """

        title = _required(title, "title")
        description = _required(description, "description")
        if self._insights is None:
            return None
        try:
            return await self._insights.suggest_triage(title, description)
        except (InsightsError, ValueError):
            logger.warning("Triage suggestion for %s failed", actor.id, exc_info=True)
            return None

    async def ticket_insights(self, user: User, ticket_id: str) -> TicketInsights | None:
        visibility.ensure_admin(user)
        ticket = await self._load_ticket(ticket_id)
        if self._insights is None:
            return None
        try:
            return await self._insights.analyse(ticket.title, ticket.description)
        except (InsightsError, ValueError):
            logger.warning("Insights for ticket %s failed", ticket_id, exc_info=True)
            return None

    # Notification inbox

    async def list_notifications(self, user: User, *, limit: int | None = None) -> list[Notification]:
        rows = await self._read(
            self._store.list(Entity.NOTIFICATIONS, filters={"user_id": user.id}, limit=limit), "notifications"
        )
        return [row_to_notification(row) for row in rows]

    async def unread_count(self, user: User) -> int:
        return await self._read(
            self._store.count(Entity.NOTIFICATIONS, filters={"user_id": user.id, "is_read": False}),
            "unread notifications",
        )

    async def mark_notification_read(self, user: User, notification_id: str) -> Notification:
        await self._load_notification(user, notification_id)
        try:
            row = await self._store.update(Entity.NOTIFICATIONS, notification_id, {"is_read": True})
        except StoreError as exc:
            raise MutationFailedError(f"Notification {notification_id} could not be updated") from exc
        if row is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return row_to_notification(row)

    async def mark_all_read(self, user: User) -> int:
        try:
            updated = await self._store.update_where(
                Entity.NOTIFICATIONS, {"user_id": user.id, "is_read": False}, {"is_read": True}
            )
        except StoreError as exc:
            raise MutationFailedError("Notifications could not be marked as read") from exc
        logger.debug("Marked %d notifications read for %s", updated, user.id)
        return updated

    async def delete_notification(self, user: User, notification_id: str) -> None:
        await self._load_notification(user, notification_id)
        try:
            await self._store.delete(Entity.NOTIFICATIONS, notification_id)
        except StoreError as exc:
            raise MutationFailedError(f"Notification {notification_id} could not be deleted") from exc

    # User administration

    async def list_users(self, actor: User) -> list[User]:
        visibility.ensure_admin(actor)
        rows = await self._read(self._store.list(Entity.PROFILES, descending=False), "profiles")
        return [row_to_user(row) for row in rows]

    async def set_role(self, actor: User, user_id: str, role: Role | str) -> User:
        visibility.ensure_admin(actor)
        try:
            target_role = Role(str(getattr(role, "value", role)).upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown role: {role!r}") from exc
        if user_id == actor.id and target_role is not Role.ADMIN:
            raise AuthorizationError("Administrators may not demote themselves")
        await self._load_user(user_id)
        user = await self._update_profile(user_id, {"role": target_role.value})
        logger.info("%s set role of %s to %s", actor.id, user_id, target_role.value)
        return user

    async def set_active(self, actor: User, user_id: str, active: bool) -> User:
        visibility.ensure_admin(actor)
        if user_id == actor.id and not active:
            raise AuthorizationError("Administrators may not deactivate themselves")
        await self._load_user(user_id)
        user = await self._update_profile(user_id, {"is_active": bool(active)})
        logger.info("%s %s account %s", actor.id, "reactivated" if active else "deactivated", user_id)
        return user

    # Helpers

    async def _read(self, call, what: str) -> Any:
        try:
            return await call
        except StoreError as exc:
            raise PersistenceError(f"Could not load {what}") from exc

    async def _load_ticket(self, ticket_id: str) -> Ticket:
        row = await self._read(self._store.get(Entity.TICKETS, ticket_id), f"ticket {ticket_id}")
        if row is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return row_to_ticket(row)

    async def _load_user(self, user_id: str) -> User:
        row = await self._read(self._store.get(Entity.PROFILES, user_id), f"profile {user_id}")
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return row_to_user(row)

    async def _recorded(self, entry: AuditLogEntry, request_id: str | None) -> AuditLogEntry | None:
        """The stored entry when this exact request was already applied."""

        if request_id is None:
            return None
        row = await self._read(self._store.get(Entity.AUDIT_LOGS, entry.id), f"audit entry {entry.id}")
        if row is None:
            return None
        logger.info("Request %s on ticket %s already applied as %s", request_id, entry.ticket_id, entry.id)
        return row_to_audit(row)

    async def _load_notification(self, user: User, notification_id: str) -> Notification:
        row = await self._read(
            self._store.get(Entity.NOTIFICATIONS, notification_id), f"notification {notification_id}"
        )
        # Someone else's notification is reported as missing.
        if row is None or row.get("user_id") != user.id:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return row_to_notification(row)

    async def _apply_update(self, ticket_id: str, values: dict[str, Any]) -> Ticket:
        try:
            row = await self._store.update(Entity.TICKETS, ticket_id, values)
        except StoreError as exc:
            logger.error("Failed to update ticket %s: %s", ticket_id, exc)
            raise MutationFailedError(f"Ticket {ticket_id} could not be updated") from exc
        if row is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return row_to_ticket(row)

    async def _update_profile(self, user_id: str, values: dict[str, Any]) -> User:
        try:
            row = await self._store.update(Entity.PROFILES, user_id, values)
        except StoreError as exc:
            raise MutationFailedError(f"Profile {user_id} could not be updated") from exc
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return row_to_user(row)

    async def _fan_out(self, event: TicketEvent) -> tuple[list[Notification], bool]:
        try:
            with self._metrics.timed(FAN_OUT_DURATION):
                notifications = await self.fan_out.fan_out(event)
        except Exception as exc:
            self._metrics.counter(FAN_OUT_FAILURES).inc(labels={"event": event.name})
            logger.warning("Notification fan-out for %s on ticket %s failed", event.name, event.ticket.id, exc_info=True)
            return list(getattr(exc, "delivered", [])), False
        return notifications, True

    async def _status_email(self, ticket: Ticket) -> Any:
        row = await self._store.get(Entity.PROFILES, ticket.requester_id)
        if row is None or not row.get("email") or self._email is None:
            return None
        return await self._email.status_changed(ticket, str(row["email"]))

    async def _send_email(self, kind: str, pending: Any) -> None:
        if pending is None:
            return
        try:
            await pending
        except Exception:
            logger.warning("E-mail alert '%s' failed", kind, exc_info=True)
