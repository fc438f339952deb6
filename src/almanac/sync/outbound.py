"""Queue of local changes waiting to be pushed to the remote service."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Protocol

from almanac.core.logging import sanitize_error
from almanac.models import (
    DrainResult,
    EntityType,
    Event,
    EventPayload,
    LocalEntity,
    MutationOperation,
    MutationResolution,
    OutboundMutation,
    SyncStatus,
    entity_type_of,
    payload_for,
    utc_now,
)
from almanac.store import LocalStore
from almanac.sync.conflicts import ConflictResolver
from almanac.sync.remote import (
    RemoteCalendarClient,
    RemoteCalendarError,
    VersionMismatchError,
    event_body,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class MutationPusher(Protocol):
    """Pushes one queued mutation for a single entity type.

    Returns the entity as it should now be stored locally (carrying any
    identity the remote side assigned), or ``None`` when nothing needs to be
    written back.

    Raises:
        VersionMismatchError: the remote copy changed since it was last read.
    """

    async def push(self, mutation: OutboundMutation) -> LocalEntity | None: ...


class CalendarEventPusher:
    """Maps event mutations onto remote create/update/delete calls."""

    def __init__(
        self,
        remote: RemoteCalendarClient,
        store: LocalStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._remote = remote
        self._store = store
        self._clock = clock

    async def _remote_identity(self, event: Event) -> tuple[str | None, str | None]:
        """Remote id and version tag to push against.

        The stored copy is written back after every successful push, so it
        carries the latest known remote version; the queued snapshot may
        predate an earlier push of the same entity. Deleted entities are no
        longer stored and fall back to their snapshot.
        """
        record = await self._store.events.get(event.id)
        if record is not None and record.get("remote_id"):
            return record["remote_id"], record.get("etag")
        return event.remote_id, event.etag

    async def push(self, mutation: OutboundMutation) -> Event | None:
        payload = mutation.payload
        if not isinstance(payload, EventPayload):
            raise TypeError(f"CalendarEventPusher cannot push {payload.entity_type} payloads")
        event = payload.entity
        remote_id, etag = await self._remote_identity(event)
        calendar_id = event.source_calendar_id

        match mutation.operation:
            case MutationOperation.delete:
                if remote_id is None:
                    return None
                await self._remote.delete_event(calendar_id, remote_id, etag=etag)
                return None
            case MutationOperation.create if remote_id is None:
                raw = await self._remote.create_event(calendar_id, event_body(event))
            case MutationOperation.create | MutationOperation.update:
                if remote_id is None:
                    raise RemoteCalendarError(
                        f"Event {event.id} has not been created remotely yet"
                    )
                raw = await self._remote.update_event(
                    calendar_id, remote_id, event_body(event), etag=etag
                )

        return event.model_copy(
            update={
                "remote_id": raw.remote_id,
                "etag": raw.etag,
                "sync_status": SyncStatus.synced,
                "last_synced_at": self._clock(),
            }
        )


class OutboundMutationQueue:
    """Ordered, persisted queue of outbound mutations.

    Entries are drained in enqueue order. An entity with an unresolved
    conflict is held back until the conflict is resolved; other entities
    keep draining. After ``max_attempts`` failed pushes an entry is
    dead-lettered and its entity is flagged ``sync_status=error``.
    """

    def __init__(
        self,
        store: LocalStore,
        pushers: Mapping[EntityType, MutationPusher] | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._pushers = dict(pushers or {})
        self._max_attempts = max_attempts
        self._clock = clock
        self._id_factory = id_factory
        self.conflicts = ConflictResolver(store, self, clock=clock, id_factory=id_factory)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def _load_all(self) -> list[OutboundMutation]:
        records = await self._store.mutations.all()
        mutations = [OutboundMutation.model_validate(record) for record in records]
        mutations.sort(key=lambda m: (m.sequence, m.enqueued_at))
        return mutations

    async def _save(self, mutation: OutboundMutation) -> None:
        await self._store.mutations.put(mutation.model_dump(mode="json"))

    async def pending(self) -> list[OutboundMutation]:
        """Entries not yet settled, in drain order (dead letters included)."""
        return [m for m in await self._load_all() if m.resolution == MutationResolution.pending]

    def is_dead_letter(self, mutation: OutboundMutation) -> bool:
        return (
            mutation.resolution == MutationResolution.pending
            and mutation.retry_count >= self._max_attempts
        )

    async def dead_letters(self) -> list[OutboundMutation]:
        return [m for m in await self._load_all() if self.is_dead_letter(m)]

    async def enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: MutationOperation,
        payload: LocalEntity,
    ) -> OutboundMutation:
        """Persist a snapshot of ``payload`` for a later push."""
        if entity_type_of(payload) != entity_type:
            raise ValueError(
                f"Payload is a {entity_type_of(payload)}, not a {entity_type} snapshot"
            )
        if payload.id != entity_id:
            raise ValueError(f"Payload id {payload.id!r} does not match entity id {entity_id!r}")

        existing = await self._load_all()
        mutation = OutboundMutation(
            id=self._id_factory(),
            sequence=max((m.sequence for m in existing), default=0) + 1,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=payload_for(payload),
            enqueued_at=self._clock(),
        )
        await self._save(mutation)
        logger.debug(
            "Queued %s %s for %s %s", operation, mutation.id, entity_type, entity_id
        )
        return mutation

    async def pending_entity_ids(self, entity_type: EntityType) -> set[str]:
        return {m.entity_id for m in await self.pending() if m.entity_type == entity_type}

    async def pending_deletes(self, entity_type: EntityType) -> list[OutboundMutation]:
        """Queued deletes not yet pushed, including ones stalled on errors or conflicts."""
        return [
            m
            for m in await self.pending()
            if m.entity_type == entity_type and m.operation == MutationOperation.delete
        ]

    async def pending_count(self) -> int:
        return len(await self.pending())

    async def has_pending(self, entity_type: EntityType, entity_id: str) -> bool:
        return entity_id in await self.pending_entity_ids(entity_type)

    async def settle(
        self,
        entity_type: EntityType,
        entity_id: str,
        resolution: MutationResolution,
    ) -> int:
        """Close every pending entry for one entity with ``resolution``."""
        closed = 0
        for mutation in await self.pending():
            if mutation.entity_type == entity_type and mutation.entity_id == entity_id:
                mutation.resolution = resolution
                await self._save(mutation)
                closed += 1
        return closed

    async def clear(self) -> int:
        """Drop every queue entry, settled or not."""
        ids = [record["id"] for record in await self._store.mutations.all()]
        return await self._store.mutations.bulk_delete(ids)

    async def drain(self) -> DrainResult:
        """Push every pending entry once, in enqueue order.

        An entity stops draining for the rest of the call as soon as one of
        its entries fails, conflicts, or is dead-lettered; its later entries
        are counted as ``blocked``. Entries of other entities carry on.

        A rejected version tag (HTTP 412) records a :class:`Conflict` and
        leaves the entry pending until the conflict is resolved. Any other
        push error increments ``retry_count``; at ``max_attempts`` the entry
        is dead-lettered and never retried.

        Returns:
            Counts of synced, conflicting, failed, blocked and newly
            dead-lettered entries.
        """
        result = DrainResult()
        stalled: set[tuple[EntityType, str]] = set()

        for mutation in await self.pending():
            key = (mutation.entity_type, mutation.entity_id)
            if self.is_dead_letter(mutation):
                stalled.add(key)
                continue
            if key in stalled or await self.conflicts.has_unresolved(*key):
                result.blocked += 1
                stalled.add(key)
                continue

            pusher = self._pushers.get(mutation.entity_type)
            if pusher is None:
                # Local-only entity type: nothing to push.
                await self._mark_synced(mutation, None)
                result.synced += 1
                continue

            try:
                pushed = await pusher.push(mutation)
            except VersionMismatchError as exc:
                await self.conflicts.detect(mutation, exc.remote_snapshot)
                result.conflicts += 1
                stalled.add(key)
                continue
            except Exception as exc:
                stalled.add(key)
                if await self._record_failure(mutation, exc):
                    result.dead_lettered += 1
                result.errors += 1
                continue

            await self._mark_synced(mutation, pushed)
            result.synced += 1

        if result.synced or result.conflicts or result.errors:
            logger.info(
                "Outbound drain: synced=%d conflicts=%d errors=%d blocked=%d dead_lettered=%d",
                result.synced,
                result.conflicts,
                result.errors,
                result.blocked,
                result.dead_lettered,
            )
        return result

    async def _mark_synced(self, mutation: OutboundMutation, pushed: LocalEntity | None) -> None:
        mutation.resolution = MutationResolution.synced
        mutation.last_error = None
        await self._save(mutation)
        if mutation.operation == MutationOperation.delete:
            return

        store = self._store.for_entity(mutation.entity_type)
        record = await store.get(mutation.entity_id)
        if record is None:
            return
        if pushed is not None and isinstance(pushed, Event):
            record["remote_id"] = pushed.remote_id
            record["etag"] = pushed.etag
            if pushed.last_synced_at is not None:
                record["last_synced_at"] = pushed.last_synced_at.isoformat()
        still_pending = await self.has_pending(mutation.entity_type, mutation.entity_id)
        record["sync_status"] = SyncStatus.pending if still_pending else SyncStatus.synced
        await store.put(record)

    async def _record_failure(self, mutation: OutboundMutation, exc: Exception) -> bool:
        """Count a failed push; returns True when the entry is now dead-lettered."""
        mutation.retry_count += 1
        mutation.last_error = sanitize_error(exc)
        await self._save(mutation)
        if mutation.retry_count < self._max_attempts:
            logger.warning(
                "Push of %s %s failed (attempt %d/%d): %s",
                mutation.entity_type,
                mutation.entity_id,
                mutation.retry_count,
                self._max_attempts,
                mutation.last_error,
            )
            return False

        logger.error(
            "Giving up on %s %s after %d attempts: %s",
            mutation.entity_type,
            mutation.entity_id,
            mutation.retry_count,
            mutation.last_error,
        )
        store = self._store.for_entity(mutation.entity_type)
        record = await store.get(mutation.entity_id)
        if record is not None:
            record["sync_status"] = SyncStatus.error
            await store.put(record)
        return True

