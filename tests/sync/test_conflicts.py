"""Tests for conflict detection and the three resolution strategies."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from almanac.models import (
    ConflictStrategy,
    EntityType,
    Event,
    MutationOperation,
    MutationResolution,
    OutboundMutation,
    SyncStatus,
)
from almanac.sync.conflicts import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    local_is_newer,
    merge_by_recency,
)
from almanac.sync.local import LocalMutations
from almanac.sync.outbound import CalendarEventPusher, OutboundMutationQueue

pytestmark = pytest.mark.unit

STORED = Event(
    id="primary:ra",
    remote_id="ra",
    source_calendar_id="primary",
    title="Planning",
    location="Room 1",
    start=datetime(2025, 6, 3, 15, tzinfo=UTC),
    end=datetime(2025, 6, 3, 16, tzinfo=UTC),
    etag='"e1"',
    updated_at=datetime(2025, 4, 1, tzinfo=UTC),
)


@pytest.fixture
def queue(store, remote, clock) -> OutboundMutationQueue:
    pusher = CalendarEventPusher(remote, store, clock=clock)
    return OutboundMutationQueue(store, {EntityType.event: pusher}, clock=clock)


@pytest.fixture
async def local_edit(store, queue, clock) -> OutboundMutation:
    await store.events.put(STORED.model_dump(mode="json"))
    local = LocalMutations(store, queue, clock=clock)
    _, mutation = await local.update(STORED.model_copy(update={"title": "Planning (local)"}))
    return mutation


async def _conflict_from_drain(queue, remote, snapshot):
    remote.mismatches["ra"] = snapshot
    result = await queue.drain()
    assert result.conflicts == 1
    remote.mismatches.clear()
    (conflict,) = await queue.conflicts.unresolved()
    return conflict


def _remote_copy(make_raw_event, *, updated_at: datetime):
    return make_raw_event(
        "ra",
        title="Planning (remote)",
        start=STORED.start,
        end=STORED.end,
        etag='"e2"',
        description="Agenda attached",
        updated_at=updated_at,
    )


class TestRecency:
    def test_strictly_later_local_wins(self):
        local = {"updated_at": "2025-05-02T00:00:00Z"}
        remote = {"updated_at": "2025-05-01T00:00:00Z"}
        assert local_is_newer(local, remote)

    def test_tie_goes_to_remote(self):
        stamp = "2025-05-01T00:00:00+00:00"
        assert not local_is_newer({"updated_at": stamp}, {"updated_at": stamp})

    def test_falls_back_to_created_at(self):
        local = {"created_at": "2025-05-03T00:00:00Z"}
        remote = {"updated_at": None, "created_at": "2025-05-01T00:00:00Z"}
        assert local_is_newer(local, remote)

    def test_undated_local_never_wins(self):
        assert not local_is_newer({}, {})
        assert local_is_newer({"updated_at": "2025-05-01T00:00:00Z"}, {})

    def test_merge_layers_older_under_newer(self):
        local = {"title": "L", "location": "Here", "updated_at": "2025-05-02T00:00:00Z"}
        remote = {"title": "R", "description": "Notes", "updated_at": "2025-05-01T00:00:00Z"}
        merged = merge_by_recency(local, remote)
        assert merged["title"] == "L"
        assert merged["description"] == "Notes"
        assert merged["location"] == "Here"


class TestDetect:
    async def test_detect_records_both_versions(
        self, queue, remote, local_edit, make_raw_event, clock
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        assert conflict.entity_type == EntityType.event
        assert conflict.entity_id == "primary:ra"
        assert conflict.mutation_id == local_edit.id
        assert conflict.detected_at == clock()
        assert conflict.local_version["title"] == "Planning (local)"
        assert conflict.remote_version["id"] == "primary:ra"
        assert conflict.remote_version["etag"] == '"e2"'
        assert await queue.conflicts.has_unresolved(EntityType.event, "primary:ra")
        assert not await queue.conflicts.has_unresolved(EntityType.todo, "primary:ra")


class TestResolve:
    async def test_local_wins_requeues_over_remote_etag(
        self, queue, store, remote, local_edit, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        resolved = await queue.conflicts.resolve(conflict.id, ConflictStrategy.local_wins)

        assert resolved.resolution == ConflictStrategy.local_wins
        assert resolved.is_resolved
        old = OutboundMutation.model_validate(await store.mutations.get(local_edit.id))
        assert old.resolution == MutationResolution.local_wins
        (requeued,) = await queue.pending()
        assert requeued.operation == MutationOperation.update
        assert requeued.payload.entity.etag == '"e2"'
        assert requeued.payload.entity.title == "Planning (local)"

        result = await queue.drain()
        assert result.synced == 1
        assert remote.pushes[-1]["etag"] == '"e2"'
        assert remote.pushes[-1]["body"]["summary"] == "Planning (local)"

    async def test_remote_wins_overwrites_local_copy(
        self, queue, store, remote, local_edit, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.remote_wins)

        stored = Event.model_validate(await store.events.get("primary:ra"))
        assert stored.title == "Planning (remote)"
        assert stored.etag == '"e2"'
        assert stored.sync_status == SyncStatus.synced
        assert await queue.pending() == []
        old = OutboundMutation.model_validate(await store.mutations.get(local_edit.id))
        assert old.resolution == MutationResolution.remote_wins

    async def test_merge_prefers_newer_local_and_keeps_remote_only_fields(
        self, queue, store, remote, local_edit, make_raw_event, clock
    ):
        # The local edit is stamped at clock(); the remote copy is older.
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.merge_by_recency)

        stored = Event.model_validate(await store.events.get("primary:ra"))
        assert stored.title == "Planning (local)"
        assert stored.location == "Room 1"
        assert stored.etag == '"e2"'
        assert stored.sync_status == SyncStatus.pending
        old = OutboundMutation.model_validate(await store.mutations.get(local_edit.id))
        assert old.resolution == MutationResolution.local_wins
        (requeued,) = await queue.pending()
        assert requeued.payload.entity.title == "Planning (local)"

    async def test_merge_prefers_newer_remote(
        self, queue, store, remote, local_edit, make_raw_event, clock
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 5, 1, 13, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.merge_by_recency)

        stored = Event.model_validate(await store.events.get("primary:ra"))
        assert stored.title == "Planning (remote)"
        assert stored.description == "Agenda attached"
        old = OutboundMutation.model_validate(await store.mutations.get(local_edit.id))
        assert old.resolution == MutationResolution.remote_wins
        assert await queue.pending_count() == 1

    async def test_local_wins_after_remote_delete_recreates(self, queue, store, remote, local_edit):
        conflict = await _conflict_from_drain(queue, remote, None)
        assert conflict.remote_version == {}

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.local_wins)

        (requeued,) = await queue.pending()
        assert requeued.operation == MutationOperation.create
        assert requeued.payload.entity.remote_id is None
        result = await queue.drain()
        assert result.synced == 1
        assert remote.pushes[-1]["op"] == "create"

    async def test_remote_wins_after_remote_delete_drops_local(
        self, queue, store, remote, local_edit
    ):
        conflict = await _conflict_from_drain(queue, remote, None)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.remote_wins)

        assert await store.events.get("primary:ra") is None
        assert await queue.pending() == []

    async def test_resolving_twice_is_rejected(self, queue, remote, local_edit, make_raw_event):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)
        await queue.conflicts.resolve(conflict.id, ConflictStrategy.remote_wins)

        with pytest.raises(ConflictAlreadyResolvedError):
            await queue.conflicts.resolve(conflict.id, ConflictStrategy.local_wins)

    async def test_unknown_conflict(self, queue):
        with pytest.raises(ConflictNotFoundError):
            await queue.conflicts.resolve("missing", ConflictStrategy.local_wins)


@pytest.fixture
async def local_delete(store, queue, clock) -> OutboundMutation:
    await store.events.put(STORED.model_dump(mode="json"))
    return await LocalMutations(store, queue, clock=clock).delete(EntityType.event, STORED.id)


class TestResolveLocalDelete:
    async def test_detect_records_delete_origin(
        self, queue, remote, local_delete, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        assert conflict.operation == MutationOperation.delete
        assert conflict.local_version["title"] == "Planning"

    async def test_local_wins_keeps_the_delete(
        self, queue, store, remote, local_delete, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.local_wins)

        assert await store.events.get("primary:ra") is None
        old = OutboundMutation.model_validate(await store.mutations.get(local_delete.id))
        assert old.resolution == MutationResolution.local_wins
        (requeued,) = await queue.pending()
        assert requeued.operation == MutationOperation.delete
        assert requeued.payload.entity.etag == '"e2"'

        result = await queue.drain()
        assert result.synced == 1
        assert remote.pushes[-1] == {
            "op": "delete",
            "calendar_id": "primary",
            "event_id": "ra",
            "etag": '"e2"',
        }
        assert await store.events.get("primary:ra") is None

    async def test_remote_wins_restores_remote_copy(
        self, queue, store, remote, local_delete, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.remote_wins)

        stored = Event.model_validate(await store.events.get("primary:ra"))
        assert stored.title == "Planning (remote)"
        assert stored.sync_status == SyncStatus.synced
        assert await queue.pending() == []

    async def test_merge_keeps_delete_newer_than_remote_edit(
        self, queue, store, remote, local_delete, make_raw_event
    ):
        # The delete is stamped at clock(); the remote edit is older.
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 4, 20, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.merge_by_recency)

        assert await store.events.get("primary:ra") is None
        (requeued,) = await queue.pending()
        assert requeued.operation == MutationOperation.delete

    async def test_merge_restores_remote_edit_newer_than_delete(
        self, queue, store, remote, local_delete, make_raw_event
    ):
        snapshot = _remote_copy(make_raw_event, updated_at=datetime(2025, 5, 1, 13, tzinfo=UTC))
        conflict = await _conflict_from_drain(queue, remote, snapshot)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.merge_by_recency)

        stored = Event.model_validate(await store.events.get("primary:ra"))
        assert stored.title == "Planning (remote)"
        assert await queue.pending() == []

    async def test_local_wins_when_deleted_on_both_sides_queues_nothing(
        self, queue, store, remote, local_delete
    ):
        conflict = await _conflict_from_drain(queue, remote, None)

        await queue.conflicts.resolve(conflict.id, ConflictStrategy.local_wins)

        assert await store.events.get("primary:ra") is None
        assert await queue.pending() == []
