from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from apps.api.helpdesk import AuditAction, HelpdeskService, MutationFailedError, Role, TicketStatus
from apps.api.services.changes import ChangeFeed, ChangeKind, Entity, match_all
from apps.api.services.sql_store import SQLStore
from apps.api.services.store import DuplicateKeyError


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(engine: AsyncEngine, feed: ChangeFeed) -> SQLStore:
    store = SQLStore(async_sessionmaker(engine, expire_on_commit=False), engine=engine, feed=feed)
    await store.ensure_schema()
    return store


def _profile(user_id: str, name: str, role: Role = Role.USER) -> dict:
    return {
        "id": user_id,
        "name": name,
        "email": f"{name.lower()}@example.com",
        "role": role.value,
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
    }


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables(engine: AsyncEngine, sql_store: SQLStore):
    async with engine.begin() as conn:
        tables = await conn.run_sync(lambda sync_conn: set(sa_inspect(sync_conn).get_table_names()))

    assert {"profiles", "tickets", "comments", "audit_logs", "notifications"} <= tables


@pytest.mark.asyncio
async def test_duplicate_primary_key(sql_store: SQLStore):
    await sql_store.insert(Entity.PROFILES, _profile("U1", "Ana"))

    with pytest.raises(DuplicateKeyError):
        await sql_store.insert(Entity.PROFILES, _profile("U1", "Ana"))
    assert await sql_store.count(Entity.PROFILES) == 1


@pytest.mark.asyncio
async def test_bulk_updates_publish_one_event_per_row(sql_store: SQLStore, feed: ChangeFeed):
    for user_id, name in (("U1", "Ana"), ("U2", "Dee"), ("A1", "Bo")):
        await sql_store.insert(Entity.PROFILES, _profile(user_id, name))
    kinds: list[ChangeKind] = []

    async def handler(event):
        kinds.append(event.kind)

    feed.subscribe(Entity.PROFILES, match_all, handler)
    updated = await sql_store.update_where(Entity.PROFILES, {"role": "USER"}, {"is_active": False})
    deleted = await sql_store.delete_where(Entity.PROFILES, {"is_active": False})

    assert (updated, deleted) == (3, 3)
    assert kinds == [ChangeKind.UPDATE] * 3 + [ChangeKind.DELETE] * 3
    assert await sql_store.update(Entity.PROFILES, "U1", {"name": "x"}) is None
    assert await sql_store.delete(Entity.PROFILES, "U1") is False


@pytest.mark.asyncio
async def test_ticket_lifecycle_against_sqlite(sql_store: SQLStore, registry):
    await sql_store.insert(Entity.PROFILES, _profile("A1", "Bo", Role.ADMIN))
    service = HelpdeskService(sql_store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")
    bo = await service.resolve_identity("A1", "bo@example.com")

    first = await service.create_ticket(ana, title="VPN down", description="No tunnel", priority="HIGH")
    second = await service.create_ticket(ana, title="Printer jam", description="Tray 2")
    moved = await service.transition_status(bo, first.ticket.id, "resolved")
    await service.add_comment(bo, first.ticket.id, "Gateway restarted")

    assert (first.ticket.ticket_number, second.ticket.ticket_number) == (1, 2)
    assert moved.ticket.status is TicketStatus.RESOLVED
    assert moved.ticket.resolved_at is not None
    assert [entry.action for entry in await service.ticket_history(ana, first.ticket.id)] == [
        AuditAction.CREATED,
        AuditAction.STATUS_CHANGE,
    ]
    assert await service.unread_count(ana) == 2
    assert await service.unread_count(bo) == 2

    await service.delete_ticket(bo, first.ticket.id)

    assert [t.id for t in await service.list_visible_tickets(ana)] == [second.ticket.id]
    assert await sql_store.count(Entity.COMMENTS) == 0
    assert await sql_store.count(Entity.AUDIT_LOGS, filters={"ticket_id": first.ticket.id}) == 0
    assert await service.unread_count(ana) == 0


@pytest.mark.asyncio
async def test_cascade_delete_is_all_or_nothing(sql_store: SQLStore, registry, monkeypatch):
    service = HelpdeskService(sql_store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")
    created = await service.create_ticket(ana, title="VPN down", description="No tunnel")
    await service.add_comment(ana, created.ticket.id, "Any news?")

    async def lost_connection(session, events):
        raise SQLAlchemyError("connection lost before commit")

    monkeypatch.setattr(sql_store, "_notify", lost_connection)
    with pytest.raises(MutationFailedError):
        await service.delete_ticket(ana, created.ticket.id)

    assert await sql_store.get(Entity.TICKETS, created.ticket.id) is not None
    assert await sql_store.count(Entity.AUDIT_LOGS, filters={"ticket_id": created.ticket.id}) == 1
    assert await sql_store.count(Entity.COMMENTS) == 1


@pytest.mark.asyncio
async def test_cascade_delete_publishes_dependents_then_parent(sql_store: SQLStore, feed: ChangeFeed, registry):
    service = HelpdeskService(sql_store, registry=registry)
    ana = await service.resolve_identity("U1", "ana@example.com", "Ana")
    created = await service.create_ticket(ana, title="VPN down", description="No tunnel")
    deleted: list[Entity] = []

    async def handler(event):
        if event.kind is ChangeKind.DELETE:
            deleted.append(event.entity)

    for entity in (Entity.TICKETS, Entity.AUDIT_LOGS):
        feed.subscribe(entity, match_all, handler)
    removed = await sql_store.delete_cascade(
        Entity.TICKETS, created.ticket.id, {Entity.AUDIT_LOGS: "ticket_id"}
    )

    assert removed is True
    assert deleted == [Entity.AUDIT_LOGS, Entity.TICKETS]
    assert await sql_store.delete_cascade(Entity.TICKETS, created.ticket.id, {}) is False
