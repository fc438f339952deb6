"""Tests for the in-memory entity and sync-state stores."""

from __future__ import annotations

import pytest

from almanac.core.state import CASConflictError
from almanac.models import EntityType, SyncScopeState
from almanac.store import (
    DuplicateEntityError,
    InMemoryEntityStore,
    InMemorySyncStateStore,
    StoreError,
    in_memory_local_store,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def events() -> InMemoryEntityStore:
    return InMemoryEntityStore("events")


class TestEntityStore:
    async def test_put_get_and_replace(self, events):
        await events.put({"id": "e1", "title": "Standup"})
        await events.put({"id": "e1", "title": "Standup (moved)"})

        assert await events.get("e1") == {"id": "e1", "title": "Standup (moved)"}
        assert len(events) == 1

    async def test_returned_records_are_copies(self, events):
        record = {"id": "e1", "tags": ["a"]}
        await events.put(record)
        record["tags"].append("b")

        fetched = await events.get("e1")
        fetched["tags"].append("c")

        assert (await events.get("e1"))["tags"] == ["a"]

    async def test_records_need_an_id(self, events):
        with pytest.raises(StoreError):
            await events.put({"title": "No id"})
        with pytest.raises(StoreError):
            await events.put({"id": ""})

    async def test_delete_ignores_missing(self, events):
        await events.put({"id": "e1"})
        await events.delete("e1")
        await events.delete("e1")
        assert await events.get("e1") is None

    async def test_bulk_add_is_all_or_nothing(self, events):
        await events.put({"id": "e1"})

        with pytest.raises(DuplicateEntityError) as excinfo:
            await events.bulk_add([{"id": "e2"}, {"id": "e1"}, {"id": "e3"}])

        assert excinfo.value.entity_ids == ["e1"]
        assert excinfo.value.collection == "events"
        assert await events.get("e2") is None
        assert len(events) == 1

    async def test_bulk_add_rejects_ids_repeated_in_batch(self, events):
        with pytest.raises(DuplicateEntityError) as excinfo:
            await events.bulk_add([{"id": "e1"}, {"id": "e1"}])
        assert excinfo.value.entity_ids == ["e1"]
        assert len(events) == 0

    async def test_bulk_delete_counts_existing(self, events):
        await events.bulk_add([{"id": "e1"}, {"id": "e2"}])
        assert await events.bulk_delete(["e1", "e2", "missing"]) == 2
        assert await events.all() == []

    async def test_query_by_field_and_all_keep_insertion_order(self, events):
        await events.bulk_add(
            [
                {"id": "e1", "source_calendar_id": "work"},
                {"id": "e2", "source_calendar_id": "home"},
                {"id": "e3", "source_calendar_id": "work"},
            ]
        )

        work = await events.query_by_field("source_calendar_id", "work")

        assert [record["id"] for record in work] == ["e1", "e3"]
        assert [record["id"] for record in await events.all()] == ["e1", "e2", "e3"]


class TestSyncStateStore:
    async def test_load_missing_scope(self):
        assert await InMemorySyncStateStore().load("scope") == (None, 0)

    async def test_compare_and_set_advances_version(self):
        states = InMemorySyncStateStore()

        version = await states.compare_and_set("scope", 0, SyncScopeState(scope_id="scope"))
        version = await states.compare_and_set(
            "scope", version, SyncScopeState(scope_id="scope", consecutive_errors=1)
        )

        state, loaded_version = await states.load("scope")
        assert loaded_version == version == 2
        assert state.consecutive_errors == 1

    async def test_stale_version_is_rejected(self):
        states = InMemorySyncStateStore()
        await states.save("scope", SyncScopeState(scope_id="scope"))

        with pytest.raises(CASConflictError) as excinfo:
            await states.compare_and_set("scope", 0, SyncScopeState(scope_id="scope"))

        assert excinfo.value.actual_version == 1

    async def test_save_is_unconditional(self):
        states = InMemorySyncStateStore()
        assert await states.save("scope", SyncScopeState(scope_id="scope")) == 1
        assert await states.save("scope", SyncScopeState(scope_id="scope")) == 2


def test_local_store_routes_entity_types():
    store = in_memory_local_store()
    assert store.for_entity(EntityType.event) is store.events
    assert store.for_entity(EntityType.todo) is store.todos
    assert store.for_entity(EntityType.goal) is store.goals
    assert store.for_entity(EntityType.note) is store.notes
