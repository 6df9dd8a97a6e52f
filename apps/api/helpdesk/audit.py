from __future__ import annotations

import logging
from datetime import datetime, timezone

from apps.api.metrics import MetricsRegistry, metrics_registry
from apps.api.metrics.definitions import AUDIT_ENTRIES, AUDIT_FAILURES
from apps.api.services.changes import Entity
from apps.api.services.store import DuplicateKeyError, StoreAdapter, StoreError

from .errors import AuditWriteError, PersistenceError
from .models import AuditAction, AuditLogEntry, audit_to_row, row_to_audit
from .state import audit_entry_id

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Append-only writer and reader for ticket history.

    No update or delete is exposed. A write that collides with an
    existing entry id is the same logical event retried and returns the stored
    entry instead of logging it twice.
    """

    def __init__(self, store: StoreAdapter, *, registry: MetricsRegistry | None = None) -> None:
        self._store = store
        self._metrics = registry or metrics_registry

    async def record(
        self,
        ticket_id: str,
        actor_id: str | None,
        action: AuditAction,
        detail: str,
        *,
        entry_id: str | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=entry_id or audit_entry_id(ticket_id, action, None),
            ticket_id=ticket_id,
            actor_id=actor_id,
            action=action,
            detail=detail,
            created_at=datetime.now(timezone.utc),
        )
        return await self.append(entry)

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        try:
            row = await self._store.insert(Entity.AUDIT_LOGS, audit_to_row(entry))
        except DuplicateKeyError:
            existing = await self._store.get(Entity.AUDIT_LOGS, entry.id)
            if existing is None:  # pragma: no cover - the colliding row vanished
                raise AuditWriteError(f"Audit entry {entry.id} collided but could not be read back")
            logger.info("Audit entry %s already recorded; skipping duplicate", entry.id)
            return row_to_audit(existing)
        except StoreError as exc:
            self._metrics.counter(AUDIT_FAILURES).inc()
            logger.error(
                "Failed to record %s audit entry for ticket %s: %s", entry.action.value, entry.ticket_id, exc
            )
            raise AuditWriteError(f"Audit entry for ticket {entry.ticket_id} could not be persisted") from exc
        self._metrics.counter(AUDIT_ENTRIES).inc()
        return row_to_audit(row)

    async def history(self, ticket_id: str) -> list[AuditLogEntry]:
        """Entries for ``ticket_id`` in creation order, oldest first."""

        rows = await self._read(
            filters={"ticket_id": ticket_id}, descending=False, limit=None, what=f"history of {ticket_id}"
        )
        return [row_to_audit(row) for row in rows]

    async def recent(self, limit: int = 8) -> list[AuditLogEntry]:
        """Newest entries across all tickets."""

        rows = await self._read(filters=None, descending=True, limit=limit, what="recent activity")
        return [row_to_audit(row) for row in rows]

    async def _read(self, *, filters, descending: bool, limit: int | None, what: str):
        try:
            return await self._store.list(
                Entity.AUDIT_LOGS, filters=filters, order_by="created_at", descending=descending, limit=limit
            )
        except StoreError as exc:
            raise PersistenceError(f"Could not load {what}") from exc
