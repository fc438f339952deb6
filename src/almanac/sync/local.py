"""Optimistic local writes that feed the outbound queue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from almanac.models import (
    ENTITY_MODELS,
    EntityType,
    LocalEntity,
    MutationOperation,
    OutboundMutation,
    SyncStatus,
    entity_type_of,
    utc_now,
)
from almanac.store import EntityNotFoundError, LocalStore
from almanac.sync.outbound import OutboundMutationQueue

logger = logging.getLogger(__name__)

_T = TypeVar("_T", bound=LocalEntity)


class LocalMutations:
    """Apply a change to the local store first, then queue it for push.

    If the store write fails the error propagates and nothing is queued.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: OutboundMutationQueue,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._queue = queue
        self._clock = clock

    async def create(self, entity: _T) -> tuple[_T, OutboundMutation]:
        now = self._clock()
        entity_type = entity_type_of(entity)
        staged = entity.model_copy(
            update={
                "sync_status": SyncStatus.pending,
                "created_at": entity.created_at or now,
                "updated_at": now,
            }
        )
        await self._store.for_entity(entity_type).bulk_add([staged.model_dump(mode="json")])
        mutation = await self._queue.enqueue(
            entity_type, staged.id, MutationOperation.create, staged
        )
        return staged, mutation

    async def update(self, entity: _T) -> tuple[_T, OutboundMutation]:
        entity_type = entity_type_of(entity)
        store = self._store.for_entity(entity_type)
        current = await store.get(entity.id)
        if current is None:
            raise EntityNotFoundError(store.collection, entity.id)
        changes = {"sync_status": SyncStatus.pending, "updated_at": self._clock()}
        if entity_type == EntityType.event:
            # Remote identity belongs to sync; a caller's copy may be stale.
            changes.update(remote_id=current.get("remote_id"), etag=current.get("etag"))
        staged = entity.model_copy(update=changes)
        await store.put(staged.model_dump(mode="json"))
        mutation = await self._queue.enqueue(
            entity_type, staged.id, MutationOperation.update, staged
        )
        return staged, mutation

    async def delete(self, entity_type: EntityType, entity_id: str) -> OutboundMutation:
        store = self._store.for_entity(entity_type)
        current = await store.get(entity_id)
        if current is None:
            raise EntityNotFoundError(store.collection, entity_id)
        # The snapshot's updated_at is the deletion time.
        snapshot = ENTITY_MODELS[entity_type].model_validate(
            {**current, "updated_at": self._clock()}
        )
        await store.delete(entity_id)
        return await self._queue.enqueue(entity_type, entity_id, MutationOperation.delete, snapshot)
