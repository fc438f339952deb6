"""Tests for almanac.engine wiring."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from almanac.config import AlmanacConfig, parse_config
from almanac.engine import SyncEngine, start_engine
from almanac.models import Event, Todo
from almanac.sync.remote import GoogleCalendarClient

pytestmark = pytest.mark.unit


async def test_build_applies_config(store, remote, clock):
    config = parse_config({"almanac": {"scope_id": "home", "queue": {"max_attempts": 2}}})

    engine = SyncEngine.build(config, store, remote, clock=clock)

    assert engine.scheduler.scope_id == "home"
    assert engine.coordinator.settings is config.sync
    await engine.local.create(Todo(id="t1", title="Pack"))
    assert (await engine.queue.drain()).synced == 1
    assert remote.pushes == []


async def test_local_edit_reaches_remote_through_engine(store, remote, clock):
    engine = SyncEngine.build(AlmanacConfig(), store, remote, clock=clock)
    remote.add_calendar("primary", primary=True)

    await engine.local.create(
        Event(
            id="draft",
            source_calendar_id="primary",
            title="Dentist",
            start=clock(),
            end=clock() + timedelta(hours=1),
        )
    )
    result = await engine.queue.drain()

    assert result.synced == 1
    assert remote.pushes[0]["op"] == "create"


async def test_shutdown_closes_remote_and_database(store, remote):
    database = MagicMock()
    database.close = AsyncMock()
    engine = SyncEngine.build(AlmanacConfig(), store, remote, database=database)

    await engine.shutdown()

    assert remote.closed
    database.close.assert_awaited_once()


async def test_start_engine_provisions_and_connects(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = parse_config({"almanac": {"db": {"name": "cal", "schema": "family"}}})
    pool = MagicMock()

    with (
        patch("almanac.engine.Database.provision", new_callable=AsyncMock) as provision,
        patch("almanac.engine.Database.connect", new_callable=AsyncMock) as connect,
        patch("almanac.engine.Database.ensure_schema", new_callable=AsyncMock) as ensure,
    ):
        connect.return_value = pool
        engine = await start_engine(config)

    provision.assert_awaited_once()
    ensure.assert_awaited_once()
    assert engine.database.db_name == "cal"
    assert engine.database.schema == "family"
    assert isinstance(engine.remote, GoogleCalendarClient)
    await engine.remote.aclose()
