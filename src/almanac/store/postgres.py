"""asyncpg-backed store backends.

All collections share one ``entities`` table keyed by ``(collection, id)``
with the record held as JSONB. Sync scope metadata goes through the
versioned ``state`` table in :mod:`almanac.core.state`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import asyncpg

from almanac.core.state import (
    decode_jsonb,
    state_compare_and_set,
    state_get_versioned,
    state_set,
)
from almanac.models import SyncScopeState
from almanac.store.base import DuplicateEntityError, LocalStore, require_id

logger = logging.getLogger(__name__)

ENTITIES_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS entities (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    body JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
)
"""

ENTITIES_BODY_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_entities_body ON entities USING gin (body jsonb_path_ops)
"""

_SCOPE_KEY_PREFIX = "sync_scope"


class PostgresEntityStore:
    """One collection of the shared ``entities`` table."""

    def __init__(self, pool: asyncpg.Pool, collection: str) -> None:
        self._pool = pool
        self._collection = collection

    @property
    def collection(self) -> str:
        return self._collection

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        body = await self._pool.fetchval(
            "SELECT body FROM entities WHERE collection = $1 AND id = $2",
            self._collection,
            entity_id,
        )
        if body is None:
            return None
        return decode_jsonb(body)

    async def put(self, record: Mapping[str, Any]) -> None:
        entity_id = require_id(record)
        await self._pool.execute(
            """
            INSERT INTO entities (collection, id, body, updated_at)
            VALUES ($1, $2, $3::jsonb, now())
            ON CONFLICT (collection, id) DO UPDATE
                SET body = EXCLUDED.body,
                    updated_at = now()
            """,
            self._collection,
            entity_id,
            json.dumps(dict(record)),
        )

    async def delete(self, entity_id: str) -> None:
        await self._pool.execute(
            "DELETE FROM entities WHERE collection = $1 AND id = $2",
            self._collection,
            entity_id,
        )

    async def bulk_add(self, records: Iterable[Mapping[str, Any]]) -> None:
        staged = [dict(record) for record in records]
        if not staged:
            return
        ids = [require_id(record) for record in staged]
        if len(set(ids)) != len(ids):
            repeated = sorted({entity_id for entity_id in ids if ids.count(entity_id) > 1})
            raise DuplicateEntityError(self._collection, repeated)
        # A single statement keeps the insert all-or-nothing.
        try:
            await self._pool.execute(
                """
                INSERT INTO entities (collection, id, body)
                SELECT $1, r.id, r.body::jsonb
                FROM unnest($2::text[], $3::text[]) AS r(id, body)
                """,
                self._collection,
                ids,
                [json.dumps(record) for record in staged],
            )
        except asyncpg.UniqueViolationError as exc:
            rows = await self._pool.fetch(
                "SELECT id FROM entities WHERE collection = $1 AND id = ANY($2::text[])",
                self._collection,
                ids,
            )
            raise DuplicateEntityError(self._collection, sorted(row["id"] for row in rows)) from exc

    async def bulk_delete(self, entity_ids: Iterable[str]) -> int:
        ids = list(entity_ids)
        if not ids:
            return 0
        rows = await self._pool.fetch(
            "DELETE FROM entities WHERE collection = $1 AND id = ANY($2::text[]) RETURNING id",
            self._collection,
            ids,
        )
        return len(rows)

    async def query_by_field(self, field: str, value: Any) -> list[dict[str, Any]]:
        rows = await self._pool.fetch(
            """
            SELECT body FROM entities
            WHERE collection = $1 AND body @> $2::jsonb
            ORDER BY updated_at, id
            """,
            self._collection,
            json.dumps({field: value}),
        )
        return [decode_jsonb(row["body"]) for row in rows]

    async def all(self) -> list[dict[str, Any]]:
        rows = await self._pool.fetch(
            "SELECT body FROM entities WHERE collection = $1 ORDER BY updated_at, id",
            self._collection,
        )
        return [decode_jsonb(row["body"]) for row in rows]


class PostgresSyncStateStore:
    """Sync scope state kept in the versioned ``state`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @staticmethod
    def _key(scope_id: str) -> str:
        return f"{_SCOPE_KEY_PREFIX}::{scope_id}"

    async def load(self, scope_id: str) -> tuple[SyncScopeState | None, int]:
        value, version = await state_get_versioned(self._pool, self._key(scope_id))
        if value is None:
            return None, version
        return SyncScopeState.model_validate(value), version

    async def compare_and_set(
        self,
        scope_id: str,
        expected_version: int,
        state: SyncScopeState,
    ) -> int:
        return await state_compare_and_set(
            self._pool,
            self._key(scope_id),
            expected_version,
            state.model_dump(mode="json"),
        )

    async def save(self, scope_id: str, state: SyncScopeState) -> int:
        return await state_set(self._pool, self._key(scope_id), state.model_dump(mode="json"))


def postgres_local_store(pool: asyncpg.Pool) -> LocalStore:
    """Build a :class:`LocalStore` over an open asyncpg pool."""
    return LocalStore(
        events=PostgresEntityStore(pool, "events"),
        todos=PostgresEntityStore(pool, "todos"),
        goals=PostgresEntityStore(pool, "goals"),
        notes=PostgresEntityStore(pool, "notes"),
        mutations=PostgresEntityStore(pool, "mutations"),
        conflicts=PostgresEntityStore(pool, "conflicts"),
        calendars=PostgresEntityStore(pool, "calendars"),
        sync_state=PostgresSyncStateStore(pool),
    )
