"""Versioned key-value state backed by PostgreSQL JSONB.

Sync scope metadata lives here: one row per scope key, with a ``version``
counter that lets the sync lock use compare-and-set instead of a bare
timestamp check.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""

_SELECT_VERSIONED = "SELECT value, version FROM state WHERE key = $1"
_SELECT_VERSION = "SELECT version FROM state WHERE key = $1"

_UPSERT = """
INSERT INTO state (key, value, updated_at, version)
VALUES ($1, $2::jsonb, now(), 1)
ON CONFLICT (key) DO UPDATE
    SET value = EXCLUDED.value, updated_at = now(), version = state.version + 1
RETURNING version
"""

_INSERT_IF_ABSENT = """
INSERT INTO state (key, value, updated_at, version)
VALUES ($1, $2::jsonb, now(), 1)
ON CONFLICT (key) DO NOTHING
RETURNING version
"""

_UPDATE_IF_VERSION = """
UPDATE state
SET value = $3::jsonb, updated_at = now(), version = version + 1
WHERE key = $1 AND version = $2
RETURNING version
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value.

    Without a registered codec asyncpg hands JSONB back as text. A value that
    was stored double-encoded (JSON text inside a JSON string) gets a second
    pass; a plain JSON string that is not itself JSON is returned as is.
    """
    if not isinstance(val, str):
        return val
    decoded = json.loads(val)
    if not isinstance(decoded, str):
        return decoded
    try:
        inner = json.loads(decoded)
    except ValueError:
        return decoded
    logger.warning("Double-encoded JSONB detected; applying second decode pass")
    return inner


class CASConflictError(Exception):
    """A compare-and-set write lost: the stored version was not the expected one.

    ``actual_version`` is ``None`` when the key does not exist.
    """

    def __init__(
        self,
        key: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS conflict on key {key!r}: expected version {expected_version}, "
            f"got {actual_version!r}"
        )


async def state_get_versioned(pool: asyncpg.Pool, key: str) -> tuple[Any | None, int]:
    """Return ``(value, version)`` for *key*; ``(None, 0)`` when absent."""
    row = await pool.fetchrow(_SELECT_VERSIONED, key)
    if row is None:
        return None, 0
    return decode_jsonb(row["value"]), int(row["version"])


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Unconditionally upsert *key* and return its new version."""
    return await pool.fetchval(_UPSERT, key, json.dumps(value))


async def state_compare_and_set(
    pool: asyncpg.Pool,
    key: str,
    expected_version: int,
    new_value: Any,
) -> int:
    """Write *key* only if its stored version is still *expected_version*.

    Of two writers that read the same version exactly one wins; the other
    gets :exc:`CASConflictError`. The sync lock is built on this.

    Args:
        pool: asyncpg connection pool.
        key: The state key to write.
        expected_version: The version the caller read, as returned by
            :func:`state_get_versioned`. ``0`` means the key must not exist yet.
        new_value: The new JSON-serialisable value.

    Returns:
        The key's new version.

    Raises:
        CASConflictError: The stored version differs from *expected_version*,
            the key is missing for a non-zero version, or it already exists
            for version ``0``.
    """
    payload = json.dumps(new_value)
    if expected_version == 0:
        row = await pool.fetchrow(_INSERT_IF_ABSENT, key, payload)
    else:
        row = await pool.fetchrow(_UPDATE_IF_VERSION, key, expected_version, payload)
    if row is not None:
        return row["version"]
    raise CASConflictError(
        key=key,
        expected_version=expected_version,
        actual_version=await pool.fetchval(_SELECT_VERSION, key),
    )
