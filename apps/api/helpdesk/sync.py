"""Keep connected clients consistent with the store through change events.

Each client watches the collections it shows. A matching change marks the
collection stale and schedules one full refetch; further changes that arrive
before the refetch runs are folded into it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Hashable

from apps.api.metrics import MetricsRegistry, metrics_registry
from apps.api.metrics.definitions import SYNC_EVENTS_COALESCED, SYNC_REFETCHES
from apps.api.services.changes import ChangeEvent, ChangeFeed, Entity, FieldEquals, Predicate, Subscription, match_all

from .errors import HelpdeskError, UserNotFoundError
from .models import AuditLogEntry, Comment, Notification, Ticket, User

if TYPE_CHECKING:  # pragma: no cover
    from .service import HelpdeskService

logger = logging.getLogger(__name__)

Refetch = Callable[[], Awaitable[None]]
RefreshCallback = Callable[[str, Any], Awaitable[None]]
SignOutCallback = Callable[[], Awaitable[None]]


class SyncAction(str, Enum):
    REFETCH = "refetch"
    IGNORE = "ignore"


Decider = Callable[[ChangeEvent], SyncAction]


def always_refetch(event: ChangeEvent) -> SyncAction:
    return SyncAction.REFETCH


class DebouncedRefetch:
    """Run ``refetch`` once per burst of triggers.

    The first trigger schedules a refetch ``delay`` seconds later. Triggers
    that arrive while one is pending are coalesced; a trigger that lands while
    the refetch is running schedules exactly one more pass.
    """

    def __init__(
        self,
        refetch: Refetch,
        *,
        delay: float,
        collection: str,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self._refetch = refetch
        self._delay = max(0.0, delay)
        self._collection = collection
        self._metrics = registry or metrics_registry
        self._dirty = False
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> bool:
        """Mark the collection stale. Returns ``True`` when a new refetch was scheduled."""

        self._dirty = True
        if self.pending:
            self._metrics.counter(SYNC_EVENTS_COALESCED).inc()
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    async def _run(self) -> None:
        while self._dirty:
            await asyncio.sleep(self._delay)
            self._dirty = False
            self._metrics.counter(SYNC_REFETCHES).inc(labels={"collection": self._collection})
            try:
                await self._refetch()
            except Exception:
                logger.exception("Refetch of %s failed; waiting for the next change", self._collection)

    async def flush(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def cancel(self) -> None:
        task, self._task = self._task, None
        self._dirty = False
        # A refetch that cancels its own debouncer just finishes its pass.
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class QueryCache:
    """Read-through cache of query results with explicit invalidation."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, Any] = {}

    async def get(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        if key not in self._entries:
            self._entries[key] = await loader()
        return self._entries[key]

    def peek(self, key: Hashable, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries


@dataclass(slots=True, eq=False)
class Watch:
    subscription: Subscription
    debouncer: DebouncedRefetch
    collection: str


@dataclass(slots=True)
class SyncBridge:
    """Subscribe to the change feed on behalf of one client."""

    feed: ChangeFeed
    debounce_seconds: float = 0.25
    registry: MetricsRegistry | None = None
    _watches: list[Watch] = field(default_factory=list)

    def watch(
        self,
        entity: Entity,
        predicate: Predicate,
        refetch: Refetch,
        *,
        collection: str | None = None,
        decide: Decider = always_refetch,
    ) -> Watch:
        name = collection or entity.value
        debouncer = DebouncedRefetch(
            refetch, delay=self.debounce_seconds, collection=name, registry=self.registry
        )

        async def on_change(event: ChangeEvent) -> None:
            if decide(event) is SyncAction.IGNORE:
                return
            if debouncer.trigger():
                logger.debug("Scheduled refetch of %s after %s", name, event.kind.value)

        subscription = self.feed.subscribe(entity, predicate, on_change)
        watch = Watch(subscription=subscription, debouncer=debouncer, collection=name)
        self._watches.append(watch)
        return watch

    def unwatch(self, watch: Watch) -> None:
        self.feed.unsubscribe(watch.subscription)
        watch.debouncer.cancel()
        if watch in self._watches:
            self._watches.remove(watch)

    @property
    def watches(self) -> tuple[Watch, ...]:
        return tuple(self._watches)

    async def drain(self) -> None:
        """Wait for every scheduled refetch to finish."""

        for watch in list(self._watches):
            await watch.debouncer.flush()

    def close(self) -> None:
        for watch in list(self._watches):
            self.unwatch(watch)


class ClientSession:
    """Local view state of one signed-in client.

    Holds the visible tickets, the notification inbox and, while a ticket is
    open, its comments and history. Each collection is refetched in full when
    a matching change arrives. ``on_refresh`` is awaited with the collection
    name and the fresh data after every refetch.

    The session also follows its own profile row. A role change rebuilds the
    ticket view for the new role; a deactivated or removed account is signed
    out and ``on_sign_out`` is awaited.
    """

    def __init__(
        self,
        user: User,
        service: "HelpdeskService",
        feed: ChangeFeed,
        *,
        debounce_seconds: float = 0.25,
        on_refresh: RefreshCallback | None = None,
        on_sign_out: SignOutCallback | None = None,
        registry: MetricsRegistry | None = None,
    ) -> None:
        self.user = user
        self._service = service
        self._bridge = SyncBridge(feed, debounce_seconds=debounce_seconds, registry=registry)
        self._cache = QueryCache()
        self._on_refresh = on_refresh
        self._on_sign_out = on_sign_out
        self._open_ticket_id: str | None = None
        self._ticket_watches: list[Watch] = []
        self._tickets_watch: Watch | None = None
        self._started = False

    @property
    def tickets(self) -> list[Ticket]:
        return list(self._cache.peek("tickets", []))

    @property
    def notifications(self) -> list[Notification]:
        return list(self._cache.peek("notifications", []))

    @property
    def unread_count(self) -> int:
        return sum(1 for notification in self.notifications if not notification.is_read)

    @property
    def open_ticket_id(self) -> str | None:
        return self._open_ticket_id

    @property
    def comments(self) -> list[Comment]:
        if self._open_ticket_id is None:
            return []
        return list(self._cache.peek(("comments", self._open_ticket_id), []))

    @property
    def history(self) -> list[AuditLogEntry]:
        if self._open_ticket_id is None:
            return []
        return list(self._cache.peek(("history", self._open_ticket_id), []))

    @property
    def active(self) -> bool:
        return self._started

    @property
    def bridge(self) -> SyncBridge:
        return self._bridge

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self._load("tickets", self._load_tickets)
        await self._load("notifications", lambda: self._service.list_notifications(self.user))
        self._watch_tickets()
        self._bridge.watch(
            Entity.NOTIFICATIONS,
            FieldEquals("user_id", self.user.id),
            lambda: self._refresh("notifications", lambda: self._service.list_notifications(self.user)),
            collection="notifications",
        )
        self._bridge.watch(
            Entity.PROFILES,
            FieldEquals("id", self.user.id),
            self._reload_profile,
            collection="profile",
        )

    async def open_ticket(self, ticket_id: str) -> None:
        """Load a ticket's comments and history and follow their changes."""

        if self._open_ticket_id == ticket_id:
            return
        self.close_ticket()
        comments_key = ("comments", ticket_id)
        history_key = ("history", ticket_id)
        load_comments = lambda: self._service.list_comments(self.user, ticket_id)  # noqa: E731
        load_history = lambda: self._service.ticket_history(self.user, ticket_id)  # noqa: E731
        await self._load(comments_key, load_comments)
        await self._load(history_key, load_history)
        self._open_ticket_id = ticket_id
        predicate = FieldEquals("ticket_id", ticket_id)
        self._ticket_watches = [
            self._bridge.watch(
                Entity.COMMENTS,
                predicate,
                lambda: self._refresh(comments_key, load_comments),
                collection="comments",
            ),
            self._bridge.watch(
                Entity.AUDIT_LOGS,
                predicate,
                lambda: self._refresh(history_key, load_history),
                collection="audit_logs",
            ),
        ]

    def close_ticket(self) -> None:
        for watch in self._ticket_watches:
            self._bridge.unwatch(watch)
        self._ticket_watches = []
        if self._open_ticket_id is not None:
            self._cache.invalidate(("comments", self._open_ticket_id))
            self._cache.invalidate(("history", self._open_ticket_id))
        self._open_ticket_id = None

    async def drain(self) -> None:
        await self._bridge.drain()

    def sign_out(self) -> None:
        """Drop all local state and release every subscription."""

        self._bridge.close()
        self._ticket_watches = []
        self._tickets_watch = None
        self._open_ticket_id = None
        self._cache.clear()
        self._started = False
        logger.info("Signed out %s; released all subscriptions", self.user.id)

    def _watch_tickets(self) -> None:
        if self._tickets_watch is not None:
            self._bridge.unwatch(self._tickets_watch)
        predicate: Predicate = match_all if self.user.is_admin else FieldEquals("requester_id", self.user.id)
        self._tickets_watch = self._bridge.watch(
            Entity.TICKETS,
            predicate,
            lambda: self._refresh("tickets", self._load_tickets),
            collection="tickets",
        )

    async def _load_tickets(self) -> list[Ticket]:
        return await self._service.list_visible_tickets(self.user)

    async def _reload_profile(self) -> None:
        try:
            current = await self._service.get_user(self.user.id)
        except UserNotFoundError:
            current = None
        if current is None or not current.is_active:
            logger.info("Account %s is no longer active; signing the client out", self.user.id)
            self.sign_out()
            if self._on_sign_out is not None:
                await self._on_sign_out()
            return

        previous, self.user = self.user, current
        if previous.role is current.role:
            return
        logger.info("Role of %s changed to %s; rebuilding the ticket view", current.id, current.role.value)
        self._watch_tickets()
        if self._open_ticket_id is not None:
            try:
                await self._service.get_ticket(current, self._open_ticket_id)
            except HelpdeskError:
                self.close_ticket()
                await self._emit("comments", [])
                await self._emit("history", [])
        await self._refresh("tickets", self._load_tickets)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        return await self._cache.get(key, loader)

    async def _refresh(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> None:
        self._cache.invalidate(key)
        data = await self._cache.get(key, loader)
        await self._emit(key[0] if isinstance(key, tuple) else str(key), data)

    async def _emit(self, collection: str, data: Any) -> None:
        if self._on_refresh is not None:
            await self._on_refresh(collection, data)
