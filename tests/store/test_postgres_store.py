"""Unit tests for the asyncpg-backed stores, driven by an in-memory pool double."""

from __future__ import annotations

import json
from typing import Any

import asyncpg
import pytest

from almanac.models import ScopeStatus, SyncScopeState
from almanac.store import (
    DuplicateEntityError,
    PostgresEntityStore,
    PostgresSyncStateStore,
    postgres_local_store,
)

pytestmark = pytest.mark.unit


class _FakePool:
    """Records every call and answers from a small ``(collection, id) -> body`` table.

    Bodies come back as JSON text, the way asyncpg hands back JSONB without a
    registered codec.
    """

    def __init__(self) -> None:
        self.bodies: dict[tuple[str, str], str] = {}
        self.state: dict[str, dict[str, Any]] = {}
        self.execute_calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fetch_calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_next_execute: Exception | None = None

    async def execute(self, query: str, *args: Any) -> str:
        self.execute_calls.append((query, args))
        if self.fail_next_execute is not None:
            exc, self.fail_next_execute = self.fail_next_execute, None
            raise exc
        sql = " ".join(query.split())
        if sql.startswith("INSERT INTO entities (collection, id, body, updated_at)"):
            collection, entity_id, body = args
            self.bodies[(collection, entity_id)] = body
        elif sql.startswith("INSERT INTO entities (collection, id, body)"):
            collection, ids, bodies = args
            for entity_id, body in zip(ids, bodies, strict=True):
                self.bodies[(collection, entity_id)] = body
        elif sql.startswith("DELETE FROM entities"):
            self.bodies.pop((args[0], args[1]), None)
        return "OK"

    async def fetchval(self, query: str, *args: Any) -> Any:
        if "FROM entities" in query:
            return self.bodies.get((args[0], args[1]))
        row = self.state.get(args[0])
        if query.lstrip().startswith("SELECT"):
            return row["version"] if row else None
        version = row["version"] + 1 if row else 1
        self.state[args[0]] = {"value": args[1], "version": version}
        return version

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        row = self.state.get(args[0])
        if query.lstrip().startswith("SELECT"):
            return dict(row) if row else None
        if query.lstrip().startswith("INSERT"):
            if row is not None:
                return None
            self.state[args[0]] = {"value": args[1], "version": 1}
            return {"version": 1}
        if row is None or row["version"] != args[1]:
            return None
        row.update(value=args[2], version=row["version"] + 1)
        return {"version": row["version"]}

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        self.fetch_calls.append((query, args))
        sql = " ".join(query.split())
        collection = args[0]
        if sql.startswith("DELETE"):
            removed = [i for i in args[1] if self.bodies.pop((collection, i), None) is not None]
            return [{"id": i} for i in removed]
        if sql.startswith("SELECT id"):
            return [{"id": i} for i in args[1] if (collection, i) in self.bodies]
        rows = [body for (c, _), body in self.bodies.items() if c == collection]
        if "@>" in sql:
            wanted = json.loads(args[1])
            rows = [
                body
                for body in rows
                if all(json.loads(body).get(k) == v for k, v in wanted.items())
            ]
        return [{"body": body} for body in rows]


@pytest.fixture
def pool() -> _FakePool:
    return _FakePool()


@pytest.fixture
def events(pool) -> PostgresEntityStore:
    return PostgresEntityStore(pool, "events")


class TestEntityStore:
    async def test_get_decodes_json_text(self, events, pool):
        pool.bodies[("events", "e1")] = json.dumps({"id": "e1", "title": "Standup"})
        assert await events.get("e1") == {"id": "e1", "title": "Standup"}
        assert await events.get("missing") is None

    async def test_put_upserts_json_body(self, events, pool):
        await events.put({"id": "e1", "title": "Standup"})

        query, args = pool.execute_calls[-1]
        assert "ON CONFLICT (collection, id) DO UPDATE" in query
        assert args[:2] == ("events", "e1")
        assert json.loads(args[2]) == {"id": "e1", "title": "Standup"}

    async def test_collections_do_not_leak(self, pool):
        await PostgresEntityStore(pool, "events").put({"id": "x", "kind": "event"})
        await PostgresEntityStore(pool, "todos").put({"id": "x", "kind": "todo"})

        assert (await PostgresEntityStore(pool, "todos").get("x"))["kind"] == "todo"
        assert len(await PostgresEntityStore(pool, "events").all()) == 1

    async def test_bulk_add_is_one_statement(self, events, pool):
        await events.bulk_add([{"id": "e1"}, {"id": "e2"}])

        assert len(pool.execute_calls) == 1
        query, args = pool.execute_calls[0]
        assert "unnest" in query
        assert args[1] == ["e1", "e2"]

    async def test_bulk_add_empty_is_a_noop(self, events, pool):
        await events.bulk_add([])
        assert pool.execute_calls == []

    async def test_bulk_add_rejects_repeated_ids_before_writing(self, events, pool):
        with pytest.raises(DuplicateEntityError) as excinfo:
            await events.bulk_add([{"id": "e1"}, {"id": "e1"}])
        assert excinfo.value.entity_ids == ["e1"]
        assert pool.execute_calls == []

    async def test_unique_violation_names_existing_ids(self, events, pool):
        await events.put({"id": "e2"})
        pool.fail_next_execute = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(DuplicateEntityError) as excinfo:
            await events.bulk_add([{"id": "e1"}, {"id": "e2"}])

        assert excinfo.value.entity_ids == ["e2"]
        assert isinstance(excinfo.value.__cause__, asyncpg.UniqueViolationError)

    async def test_bulk_delete_returns_deleted_count(self, events, pool):
        await events.put({"id": "e1"})
        assert await events.bulk_delete(["e1", "missing"]) == 1
        assert await events.bulk_delete([]) == 0

    async def test_query_by_field_uses_containment(self, events, pool):
        await events.put({"id": "e1", "source_calendar_id": "work"})
        await events.put({"id": "e2", "source_calendar_id": "home"})

        rows = await events.query_by_field("source_calendar_id", "work")

        assert [row["id"] for row in rows] == ["e1"]
        query, args = pool.fetch_calls[-1]
        assert "body @> $2::jsonb" in query
        assert json.loads(args[1]) == {"source_calendar_id": "work"}


class TestSyncStateStore:
    async def test_state_is_namespaced_per_scope(self, pool):
        states = PostgresSyncStateStore(pool)

        await states.save("home", SyncScopeState(scope_id="home", status=ScopeStatus.error))

        assert "sync_scope::home" in pool.state
        state, version = await states.load("home")
        assert (state.status, version) == (ScopeStatus.error, 1)
        assert await states.load("work") == (None, 0)

    async def test_compare_and_set_round_trip(self, pool):
        states = PostgresSyncStateStore(pool)

        version = await states.compare_and_set("home", 0, SyncScopeState(scope_id="home"))
        updated = SyncScopeState(scope_id="home", sync_tokens={"primary": "T2"})
        assert await states.compare_and_set("home", version, updated) == 2

        state, _ = await states.load("home")
        assert state.sync_tokens == {"primary": "T2"}


def test_postgres_local_store_wires_every_collection(pool):
    store = postgres_local_store(pool)
    assert store.events.collection == "events"
    assert store.mutations.collection == "mutations"
    assert store.calendars.collection == "calendars"
    assert isinstance(store.sync_state, PostgresSyncStateStore)
