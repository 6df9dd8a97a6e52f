from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import asyncpg

from .changes import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class PostgresChangeListener:
    """Bridge PostgreSQL ``NOTIFY`` messages into the local change feed.

    Each API process runs one listener so subscribers attached to its feed see
    writes made by every other process sharing the database.
    """

    dsn: str
    channel: str
    feed: ChangeFeed
    _connection: Any = None
    _pending: set[asyncio.Task[Any]] = field(default_factory=set)

    async def start(self) -> None:
        if self._connection is not None:
            return
        self._connection = await asyncpg.connect(dsn=self.dsn)
        await self._connection.add_listener(self.channel, self._on_notify)
        logger.info("Listening for change events on channel '%s'", self.channel)

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            event = ChangeEvent.from_payload(payload)
        except (ValueError, KeyError) as exc:
            logger.warning("Dropping malformed change payload on '%s': %s", channel, exc)
            return
        task = asyncio.get_running_loop().create_task(self.feed.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.remove_listener(self.channel, self._on_notify)
        finally:
            await self._connection.close()
            self._connection = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


def to_asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so asyncpg accepts the URL."""

    if database_url.startswith("postgresql+asyncpg://"):
        return "postgresql://" + database_url[len("postgresql+asyncpg://") :]
    return database_url
