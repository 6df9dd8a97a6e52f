"""Store adapter contract and the dict-backed implementation."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from .changes import ChangeEvent, ChangeFeed, ChangeKind, Entity


class StoreError(RuntimeError):
    """Raised when a store call fails."""


class DuplicateKeyError(StoreError):
    """Raised when an insert collides with an existing primary key."""


Row = dict[str, Any]


class StoreAdapter(Protocol):
    """CRUD and query façade over the persisted collections.

    Filters are equality matches on column names. Rows are plain mappings.
    """

    async def get(self, entity: Entity, key: str) -> Row | None:
        ...

    async def list(
        self,
        entity: Entity,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = "created_at",
        descending: bool = True,
        limit: int | None = None,
    ) -> list[Row]:
        ...

    async def count(self, entity: Entity, *, filters: Mapping[str, Any] | None = None) -> int:
        ...

    async def insert(self, entity: Entity, values: Mapping[str, Any]) -> Row:
        ...

    async def update(self, entity: Entity, key: str, values: Mapping[str, Any]) -> Row | None:
        ...

    async def update_where(self, entity: Entity, filters: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        ...

    async def delete(self, entity: Entity, key: str) -> bool:
        ...

    async def delete_where(self, entity: Entity, filters: Mapping[str, Any]) -> int:
        ...

    async def delete_cascade(self, entity: Entity, key: str, dependents: Mapping[Entity, str]) -> bool:
        """Delete one row and every dependent row referencing it, all or nothing.

        ``dependents`` maps each dependent collection to its referencing column.
        """
        ...


class MemoryStore:
    """Dict-backed store used by tests and local demos.

    Publishes a :class:`ChangeEvent` to ``feed`` after every write, the same as
    the SQL adapter does.
    """

    def __init__(self, *, feed: ChangeFeed | None = None) -> None:
        self._feed = feed
        self._tables: dict[Entity, dict[str, Row]] = {entity: {} for entity in Entity}

    async def get(self, entity: Entity, key: str) -> Row | None:
        row = self._tables[entity].get(key)
        return copy.deepcopy(row) if row is not None else None

    async def list(
        self,
        entity: Entity,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = "created_at",
        descending: bool = True,
        limit: int | None = None,
    ) -> list[Row]:
        rows = [row for row in self._tables[entity].values() if _matches(row, filters)]
        if order_by is not None:
            rows.sort(key=lambda row: _sort_key(row.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(row) for row in rows]

    async def count(self, entity: Entity, *, filters: Mapping[str, Any] | None = None) -> int:
        return sum(1 for row in self._tables[entity].values() if _matches(row, filters))

    async def insert(self, entity: Entity, values: Mapping[str, Any]) -> Row:
        table = self._tables[entity]
        row = copy.deepcopy(dict(values))
        key = str(row["id"])
        if key in table:
            raise DuplicateKeyError(f"{entity.value} row {key} already exists")
        if entity is Entity.TICKETS and not row.get("ticket_number"):
            row["ticket_number"] = max((r["ticket_number"] for r in table.values()), default=0) + 1
        table[key] = row
        await self._publish(entity, ChangeKind.INSERT, row)
        return copy.deepcopy(row)

    async def update(self, entity: Entity, key: str, values: Mapping[str, Any]) -> Row | None:
        row = self._tables[entity].get(key)
        if row is None:
            return None
        row.update(copy.deepcopy(dict(values)))
        await self._publish(entity, ChangeKind.UPDATE, row)
        return copy.deepcopy(row)

    async def update_where(self, entity: Entity, filters: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        matched = [row for row in self._tables[entity].values() if _matches(row, filters)]
        for row in matched:
            row.update(copy.deepcopy(dict(values)))
            await self._publish(entity, ChangeKind.UPDATE, row)
        return len(matched)

    async def delete(self, entity: Entity, key: str) -> bool:
        row = self._tables[entity].pop(key, None)
        if row is None:
            return False
        await self._publish(entity, ChangeKind.DELETE, row)
        return True

    async def delete_where(self, entity: Entity, filters: Mapping[str, Any]) -> int:
        keys = [key for key, row in self._tables[entity].items() if _matches(row, filters)]
        for key in keys:
            await self.delete(entity, key)
        return len(keys)

    async def delete_cascade(self, entity: Entity, key: str, dependents: Mapping[Entity, str]) -> bool:
        # Dependents go only once the parent row is gone.
        if not await self.delete(entity, key):
            return False
        for dependent, column in dependents.items():
            await self.delete_where(dependent, {column: key})
        return True

    async def _publish(self, entity: Entity, kind: ChangeKind, row: Row) -> None:
        if self._feed is not None:
            await self._feed.publish(ChangeEvent(entity=entity, kind=kind, row=copy.deepcopy(row)))


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, _EPOCH)
    if isinstance(value, datetime) and value.tzinfo is None:
        return (1, value.replace(tzinfo=timezone.utc))
    return (1, value)

