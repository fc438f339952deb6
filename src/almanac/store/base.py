"""Entity and sync-state store contracts.

The sync engine only ever talks to these protocols. Records are plain JSON
dicts keyed by their ``id`` field; typed models are rebuilt by callers with
``Model.model_validate``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from almanac.models import EntityType, SyncScopeState


class StoreError(RuntimeError):
    """Base error for entity store failures."""


class EntityNotFoundError(StoreError):
    """Raised when an entity required by an operation does not exist."""

    def __init__(self, collection: str, entity_id: str) -> None:
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"{collection} entity {entity_id!r} not found")


class DuplicateEntityError(StoreError):
    """Raised by bulk_add when any of the given ids already exists."""

    def __init__(self, collection: str, entity_ids: list[str]) -> None:
        self.collection = collection
        self.entity_ids = entity_ids
        super().__init__(f"{collection} already contains id(s): {', '.join(entity_ids)}")


class EntityStore(Protocol):
    """Persistent key/document store for one collection.

    Each individual write is assumed crash-consistent; there are no
    multi-write transactions.
    """

    @property
    def collection(self) -> str: ...

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        """Return the record with ``entity_id`` or ``None``."""
        ...

    async def put(self, record: Mapping[str, Any]) -> None:
        """Insert or replace ``record`` (keyed by its ``id``)."""
        ...

    async def delete(self, entity_id: str) -> None:
        """Delete one record; missing ids are ignored."""
        ...

    async def bulk_add(self, records: Iterable[Mapping[str, Any]]) -> None:
        """Insert new records; all-or-nothing on duplicate ids."""
        ...

    async def bulk_delete(self, entity_ids: Iterable[str]) -> int:
        """Delete records by id, returning how many existed."""
        ...

    async def query_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        """Return records whose top-level ``field`` equals ``value``."""
        ...

    async def all(self) -> list[dict[str, Any]]:
        """Return every record in the collection."""
        ...


class SyncStateStore(Protocol):
    """Versioned persistence for :class:`SyncScopeState` records."""

    async def load(self, scope_id: str) -> tuple[SyncScopeState | None, int]:
        """Return ``(state, version)``; ``(None, 0)`` when never written."""
        ...

    async def compare_and_set(
        self,
        scope_id: str,
        expected_version: int,
        state: SyncScopeState,
    ) -> int:
        """Write ``state`` only if the stored version still equals ``expected_version``.

        Raises:
            CASConflictError: another writer got there first.
        """
        ...

    async def save(self, scope_id: str, state: SyncScopeState) -> int:
        """Unconditionally write ``state`` and return the new version."""
        ...


def require_id(record: Mapping[str, Any]) -> str:
    entity_id = record.get("id")
    if not isinstance(entity_id, str) or not entity_id:
        raise StoreError("Store records must carry a non-empty string 'id'")
    return entity_id


@dataclass
class LocalStore:
    """The set of collections the sync engine works against."""

    events: EntityStore
    todos: EntityStore
    goals: EntityStore
    notes: EntityStore
    mutations: EntityStore
    conflicts: EntityStore
    calendars: EntityStore
    sync_state: SyncStateStore

    def for_entity(self, entity_type: EntityType) -> EntityStore:
        match entity_type:
            case EntityType.event:
                return self.events
            case EntityType.todo:
                return self.todos
            case EntityType.goal:
                return self.goals
            case EntityType.note:
                return self.notes
        raise ValueError(f"Unknown entity type: {entity_type!r}")
