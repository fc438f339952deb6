"""In-process store backends used by tests and offline runs."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

from almanac.core.state import CASConflictError
from almanac.models import SyncScopeState
from almanac.store.base import DuplicateEntityError, LocalStore, require_id


class InMemoryEntityStore:
    """Dict-backed :class:`~almanac.store.base.EntityStore`.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state by accident. Iteration order is insertion order.
    """

    def __init__(self, collection: str) -> None:
        self._collection = collection
        self._records: dict[str, dict[str, Any]] = {}

    @property
    def collection(self) -> str:
        return self._collection

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        record = self._records.get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, record: Mapping[str, Any]) -> None:
        entity_id = require_id(record)
        self._records[entity_id] = copy.deepcopy(dict(record))

    async def delete(self, entity_id: str) -> None:
        self._records.pop(entity_id, None)

    async def bulk_add(self, records: Iterable[Mapping[str, Any]]) -> None:
        staged = [copy.deepcopy(dict(record)) for record in records]
        ids = [require_id(record) for record in staged]
        seen: set[str] = set()
        duplicates: set[str] = set()
        for entity_id in ids:
            if entity_id in self._records or entity_id in seen:
                duplicates.add(entity_id)
            seen.add(entity_id)
        if duplicates:
            raise DuplicateEntityError(self._collection, sorted(duplicates))
        for entity_id, record in zip(ids, staged, strict=True):
            self._records[entity_id] = record

    async def bulk_delete(self, entity_ids: Iterable[str]) -> int:
        deleted = 0
        for entity_id in entity_ids:
            if self._records.pop(entity_id, None) is not None:
                deleted += 1
        return deleted

    async def query_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(record) for record in self._records.values() if record.get(field) == value
        ]

    async def all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)


class InMemorySyncStateStore:
    """Versioned in-memory :class:`~almanac.store.base.SyncStateStore`."""

    def __init__(self) -> None:
        self._rows: dict[str, tuple[dict[str, Any], int]] = {}

    async def load(self, scope_id: str) -> tuple[SyncScopeState | None, int]:
        row = self._rows.get(scope_id)
        if row is None:
            return None, 0
        value, version = row
        return SyncScopeState.model_validate(value), version

    async def compare_and_set(
        self,
        scope_id: str,
        expected_version: int,
        state: SyncScopeState,
    ) -> int:
        row = self._rows.get(scope_id)
        actual = row[1] if row is not None else None
        if (actual or 0) != expected_version:
            raise CASConflictError(
                key=scope_id,
                expected_version=expected_version,
                actual_version=actual,
            )
        new_version = expected_version + 1
        self._rows[scope_id] = (state.model_dump(mode="json"), new_version)
        return new_version

    async def save(self, scope_id: str, state: SyncScopeState) -> int:
        row = self._rows.get(scope_id)
        new_version = (row[1] if row is not None else 0) + 1
        self._rows[scope_id] = (state.model_dump(mode="json"), new_version)
        return new_version


def in_memory_local_store() -> LocalStore:
    """Build a :class:`LocalStore` whose collections all live in memory."""
    return LocalStore(
        events=InMemoryEntityStore("events"),
        todos=InMemoryEntityStore("todos"),
        goals=InMemoryEntityStore("goals"),
        notes=InMemoryEntityStore("notes"),
        mutations=InMemoryEntityStore("mutations"),
        conflicts=InMemoryEntityStore("conflicts"),
        calendars=InMemoryEntityStore("calendars"),
        sync_state=InMemorySyncStateStore(),
    )
