from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import AuditLogTable, CommentTable, NotificationTable, ProfileTable, TicketTable

from .changes import ChangeEvent, ChangeFeed, ChangeKind, Entity
from .store import DuplicateKeyError, Row, StoreError

logger = logging.getLogger(__name__)

_TABLES: dict[Entity, type[SQLModel]] = {
    Entity.PROFILES: ProfileTable,
    Entity.TICKETS: TicketTable,
    Entity.COMMENTS: CommentTable,
    Entity.AUDIT_LOGS: AuditLogTable,
    Entity.NOTIFICATIONS: NotificationTable,
}

# pg_notify payloads are capped at 8000 bytes; subscribers only need the keys.
_NOTIFY_OMITTED_COLUMNS = frozenset({"description", "body", "message", "detail", "attachments"})

_TICKET_NUMBER_ATTEMPTS = 5


class SQLStore:
    """Store adapter over SQLAlchemy async sessions and the SQLModel tables.

    With ``notify_channel`` set on a PostgreSQL engine, change events are sent
    through ``pg_notify`` inside the writing transaction instead of being
    published locally; a LISTEN bridge feeds them back into the change feed of
    every API process.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
        feed: ChangeFeed | None = None,
        notify_channel: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine
        self._feed = feed
        self._notify_channel = notify_channel

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def get(self, entity: Entity, key: str) -> Row | None:
        table = _TABLES[entity]
        async with self._guard(f"get {entity.value}"):
            async with self._session_factory() as session:
                instance = await session.get(table, key)
                return _to_row(instance) if instance is not None else None

    async def list(
        self,
        entity: Entity,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = "created_at",
        descending: bool = True,
        limit: int | None = None,
    ) -> list[Row]:
        table = _TABLES[entity]
        statement = _apply_filters(select(table), table, filters)
        if order_by is not None:
            column = getattr(table, order_by)
            statement = statement.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            statement = statement.limit(limit)
        async with self._guard(f"list {entity.value}"):
            async with self._session_factory() as session:
                result = await session.execute(statement)
                return [_to_row(instance) for instance in result.scalars().all()]

    async def count(self, entity: Entity, *, filters: Mapping[str, Any] | None = None) -> int:
        table = _TABLES[entity]
        statement = _apply_filters(select(func.count()).select_from(table), table, filters)
        async with self._guard(f"count {entity.value}"):
            async with self._session_factory() as session:
                result = await session.execute(statement)
                return int(result.scalar_one())

    async def insert(self, entity: Entity, values: Mapping[str, Any]) -> Row:
        table = _TABLES[entity]
        assign_number = entity is Entity.TICKETS and not values.get("ticket_number")
        for attempt in range(1, _TICKET_NUMBER_ATTEMPTS + 1):
            data = dict(values)
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        if assign_number:
                            data["ticket_number"] = await self._next_ticket_number(session)
                        instance = table(**data)
                        session.add(instance)
                        await session.flush()
                        row = _to_row(instance)
                        event = ChangeEvent(entity=entity, kind=ChangeKind.INSERT, row=row)
                        await self._notify(session, [event])
            except IntegrityError as exc:
                if await self.get(entity, str(data["id"])) is not None:
                    raise DuplicateKeyError(f"{entity.value} row {data['id']} already exists") from exc
                if assign_number and attempt < _TICKET_NUMBER_ATTEMPTS:
                    logger.debug("Ticket number %s taken, retrying (attempt %d)", data.get("ticket_number"), attempt)
                    continue
                raise StoreError(f"insert {entity.value} failed: {exc}") from exc
            except SQLAlchemyError as exc:
                raise StoreError(f"insert {entity.value} failed: {exc}") from exc
            await self._publish_local([event])
            return row
        raise StoreError(f"insert {entity.value} failed: no free ticket number")  # pragma: no cover

    async def update(self, entity: Entity, key: str, values: Mapping[str, Any]) -> Row | None:
        table = _TABLES[entity]
        async with self._guard(f"update {entity.value}"):
            async with self._session_factory() as session:
                async with session.begin():
                    instance = await session.get(table, key)
                    if instance is None:
                        return None
                    for column, value in values.items():
                        setattr(instance, column, value)
                    await session.flush()
                    row = _to_row(instance)
                    event = ChangeEvent(entity=entity, kind=ChangeKind.UPDATE, row=row)
                    await self._notify(session, [event])
        await self._publish_local([event])
        return row

    async def update_where(self, entity: Entity, filters: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        table = _TABLES[entity]
        statement = _apply_filters(select(table), table, filters)
        async with self._guard(f"update {entity.value}"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    instances = result.scalars().all()
                    for instance in instances:
                        for column, value in values.items():
                            setattr(instance, column, value)
                    await session.flush()
                    events = [
                        ChangeEvent(entity=entity, kind=ChangeKind.UPDATE, row=_to_row(instance))
                        for instance in instances
                    ]
                    await self._notify(session, events)
        await self._publish_local(events)
        return len(events)

    async def delete(self, entity: Entity, key: str) -> bool:
        table = _TABLES[entity]
        async with self._guard(f"delete {entity.value}"):
            async with self._session_factory() as session:
                async with session.begin():
                    instance = await session.get(table, key)
                    if instance is None:
                        return False
                    event = ChangeEvent(entity=entity, kind=ChangeKind.DELETE, row=_to_row(instance))
                    await session.delete(instance)
                    await self._notify(session, [event])
        await self._publish_local([event])
        return True

    async def delete_where(self, entity: Entity, filters: Mapping[str, Any]) -> int:
        table = _TABLES[entity]
        statement = _apply_filters(select(table), table, filters)
        async with self._guard(f"delete {entity.value}"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    instances = result.scalars().all()
                    events = [
                        ChangeEvent(entity=entity, kind=ChangeKind.DELETE, row=_to_row(instance))
                        for instance in instances
                    ]
                    for instance in instances:
                        await session.delete(instance)
                    await self._notify(session, events)
        await self._publish_local(events)
        return len(events)

    async def delete_cascade(self, entity: Entity, key: str, dependents: Mapping[Entity, str]) -> bool:
        table = _TABLES[entity]
        async with self._guard(f"delete {entity.value}"):
            async with self._session_factory() as session:
                async with session.begin():
                    instance = await session.get(table, key)
                    if instance is None:
                        return False
                    events: list[ChangeEvent] = []
                    for dependent, column in dependents.items():
                        dependent_table = _TABLES[dependent]
                        statement = _apply_filters(select(dependent_table), dependent_table, {column: key})
                        result = await session.execute(statement)
                        for child in result.scalars().all():
                            events.append(ChangeEvent(entity=dependent, kind=ChangeKind.DELETE, row=_to_row(child)))
                            await session.delete(child)
                    events.append(ChangeEvent(entity=entity, kind=ChangeKind.DELETE, row=_to_row(instance)))
                    await session.delete(instance)
                    await session.flush()
                    await self._notify(session, events)
        await self._publish_local(events)
        return True

    async def _next_ticket_number(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.max(TicketTable.ticket_number)))
        current = result.scalar_one_or_none()
        return int(current or 0) + 1

    @property
    def _broadcasts(self) -> bool:
        return (
            self._notify_channel is not None
            and self._engine is not None
            and self._engine.dialect.name == "postgresql"
        )

    async def _notify(self, session: AsyncSession, events: list[ChangeEvent]) -> None:
        if not self._broadcasts:
            return
        for event in events:
            slim = ChangeEvent(
                entity=event.entity,
                kind=event.kind,
                row={k: v for k, v in event.row.items() if k not in _NOTIFY_OMITTED_COLUMNS},
            )
            await session.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": self._notify_channel, "payload": slim.to_payload()},
            )

    async def _publish_local(self, events: list[ChangeEvent]) -> None:
        if self._feed is None or self._broadcasts:
            return
        for event in events:
            await self._feed.publish(event)

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Store operation '%s' failed: %s", operation, exc)
            raise StoreError(f"{operation} failed: {exc}") from exc


def _apply_filters(statement: Any, table: type[SQLModel], filters: Mapping[str, Any] | None) -> Any:
    for column, value in (filters or {}).items():
        statement = statement.where(getattr(table, column) == value)
    return statement


def _to_row(instance: SQLModel) -> Row:
    return {column.name: getattr(instance, column.name) for column in instance.__table__.columns}
