"""Store adapters and change delivery."""

from .changes import ChangeEvent, ChangeFeed, ChangeKind, Entity, FieldEquals, Subscription
from .postgres import PostgresChangeListener
from .sql_store import SQLStore
from .store import DuplicateKeyError, MemoryStore, StoreAdapter, StoreError

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "ChangeKind",
    "DuplicateKeyError",
    "Entity",
    "FieldEquals",
    "MemoryStore",
    "PostgresChangeListener",
    "SQLStore",
    "StoreAdapter",
    "StoreError",
    "Subscription",
]
