from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from apps.api.helpdesk import AuditAction, AuditLogEntry, AuditRecorder, AuditWriteError
from apps.api.metrics.definitions import AUDIT_ENTRIES, AUDIT_FAILURES
from apps.api.services.changes import Entity
from apps.api.services.store import StoreError

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _entry(entry_id: str, minutes: int, ticket_id: str = "t-1") -> AuditLogEntry:
    return AuditLogEntry(
        id=entry_id,
        ticket_id=ticket_id,
        actor_id="A1",
        action=AuditAction.STATUS_CHANGE,
        detail="Status changed to RESOLVED",
        created_at=T0 + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_record_appends_one_entry(store, registry):
    recorder = AuditRecorder(store, registry=registry)

    entry = await recorder.record("t-1", "U1", AuditAction.CREATED, "Ticket created with priority LOW")

    assert entry.action is AuditAction.CREATED
    assert await store.count(Entity.AUDIT_LOGS) == 1
    assert registry.counter(AUDIT_ENTRIES).value() == 1


@pytest.mark.asyncio
async def test_system_entries_have_no_actor(store, registry):
    recorder = AuditRecorder(store, registry=registry)

    entry = await recorder.record("t-1", None, AuditAction.EDITED, "Imported")

    assert entry.actor_id is None


@pytest.mark.asyncio
async def test_retry_with_same_id_does_not_double_log(store, registry):
    recorder = AuditRecorder(store, registry=registry)
    entry = _entry("e-1", 0)

    first = await recorder.append(entry)
    second = await recorder.append(entry)

    assert first.id == second.id
    assert await store.count(Entity.AUDIT_LOGS) == 1
    assert registry.counter(AUDIT_ENTRIES).value() == 1


@pytest.mark.asyncio
async def test_history_is_ordered_by_creation_time(store, registry):
    recorder = AuditRecorder(store, registry=registry)
    for entry in (_entry("e-3", 30), _entry("e-1", 10), _entry("e-2", 20), _entry("x-1", 5, ticket_id="t-2")):
        await recorder.append(entry)

    history = await recorder.history("t-1")
    recent = await recorder.recent(limit=2)

    assert [entry.id for entry in history] == ["e-1", "e-2", "e-3"]
    assert [entry.id for entry in recent] == ["e-3", "e-2"]


@pytest.mark.asyncio
async def test_store_failure_is_fatal(registry, caplog):
    failing = AsyncMock()
    failing.insert.side_effect = StoreError("connection reset")
    recorder = AuditRecorder(failing, registry=registry)

    with pytest.raises(AuditWriteError) as excinfo:
        await recorder.append(_entry("e-1", 0))

    assert excinfo.value.mutation_applied is True
    assert registry.counter(AUDIT_FAILURES).value() == 1
    assert "Failed to record STATUS_CHANGE audit entry" in caplog.text
    failing.insert.assert_awaited_once()
