"""In-process change feed used to deliver store writes to subscribers."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)


class Entity(str, Enum):
    """Collections exposed by the store adapter."""

    PROFILES = "profiles"
    TICKETS = "tickets"
    COMMENTS = "comments"
    AUDIT_LOGS = "audit_logs"
    NOTIFICATIONS = "notifications"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single committed write. ``row`` is the new row, or the removed row for deletes."""

    entity: Entity
    kind: ChangeKind
    row: Mapping[str, Any]

    def to_payload(self) -> str:
        return json.dumps(
            {"entity": self.entity.value, "kind": self.kind.value, "row": dict(self.row)},
            default=_json_default,
        )

    @classmethod
    def from_payload(cls, payload: str) -> "ChangeEvent":
        data = json.loads(payload)
        return cls(
            entity=Entity(data["entity"]),
            kind=ChangeKind(data["kind"]),
            row=dict(data.get("row") or {}),
        )


Predicate = Callable[[Mapping[str, Any]], bool]
ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class FieldEquals:
    """Row predicate equivalent to ``column = value``."""

    column: str
    value: Any

    def __call__(self, row: Mapping[str, Any]) -> bool:
        return row.get(self.column) == self.value


def match_all(row: Mapping[str, Any]) -> bool:
    return True


@dataclass(slots=True, eq=False)
class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`; pass it back to unsubscribe."""

    entity: Entity
    predicate: Predicate
    handler: ChangeHandler
    kinds: frozenset[ChangeKind]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, event: ChangeEvent) -> bool:
        if event.entity is not self.entity or event.kind not in self.kinds:
            return False
        return bool(self.predicate(event.row))


class ChangeFeed:
    """Fan committed changes out to matching subscribers.

    Delivery is at-least-once from the subscriber's point of view: writers may
    publish the same logical change more than once (for example a local publish
    followed by a database notification), so handlers must be idempotent.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        entity: Entity,
        predicate: Predicate,
        on_change: ChangeHandler,
        *,
        kinds: Iterable[ChangeKind] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            entity=entity,
            predicate=predicate,
            handler=on_change,
            kinds=frozenset(kinds or ChangeKind),
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug("Subscribed %s to %s", subscription.id, entity.value)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        removed = self._subscriptions.pop(subscription.id, None)
        if removed is not None:
            logger.debug("Unsubscribed %s from %s", subscription.id, subscription.entity.value)
        return removed is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscriber and return how many received it."""

        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.id not in self._subscriptions:
                continue
            try:
                if not subscription.matches(event):
                    continue
                await subscription.handler(event)
            except Exception:
                logger.exception(
                    "Change handler %s failed for %s %s", subscription.id, event.kind.value, event.entity.value
                )
                continue
            delivered += 1
        return delivered


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
