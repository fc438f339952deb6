"""Local persistence for entities, queued mutations, and sync metadata."""

from almanac.store.base import (
    DuplicateEntityError,
    EntityNotFoundError,
    EntityStore,
    LocalStore,
    StoreError,
    SyncStateStore,
)
from almanac.store.memory import InMemoryEntityStore, InMemorySyncStateStore, in_memory_local_store
from almanac.store.postgres import PostgresEntityStore, PostgresSyncStateStore, postgres_local_store

__all__ = [
    "DuplicateEntityError",
    "EntityNotFoundError",
    "EntityStore",
    "InMemoryEntityStore",
    "InMemorySyncStateStore",
    "LocalStore",
    "PostgresEntityStore",
    "PostgresSyncStateStore",
    "StoreError",
    "SyncStateStore",
    "in_memory_local_store",
    "postgres_local_store",
]
