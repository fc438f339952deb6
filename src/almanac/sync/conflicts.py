"""Detection and resolution of local/remote version conflicts."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from almanac.models import (
    ENTITY_MODELS,
    Conflict,
    ConflictStrategy,
    EntityType,
    MutationOperation,
    MutationResolution,
    OutboundMutation,
    RawEvent,
    SyncStatus,
    utc_now,
)
from almanac.store import LocalStore

if TYPE_CHECKING:
    from almanac.sync.outbound import OutboundMutationQueue

logger = logging.getLogger(__name__)


class ConflictNotFoundError(LookupError):
    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id!r} not found")


class ConflictAlreadyResolvedError(RuntimeError):
    def __init__(self, conflict: Conflict) -> None:
        self.conflict = conflict
        super().__init__(
            f"Conflict {conflict.id!r} was already resolved as {conflict.resolution}"
        )


def _timestamp(version: dict[str, Any]) -> datetime | None:
    for field in ("updated_at", "created_at"):
        value = version.get(field)
        if isinstance(value, datetime):
            return value
        if isinstance(value, str) and value:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                continue
    return None


def local_is_newer(local: dict[str, Any], remote: dict[str, Any]) -> bool:
    """True only when the local side is strictly later; ties go to the remote."""
    local_ts = _timestamp(local)
    remote_ts = _timestamp(remote)
    if local_ts is None:
        return False
    if remote_ts is None:
        return True
    return local_ts > remote_ts


def merge_by_recency(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """Layer the older version under the newer one."""
    if local_is_newer(local, remote):
        return {**remote, **local}
    return {**local, **remote}


class ConflictResolver:
    """Owns :class:`Conflict` records and settles them on request.

    Resolution always writes through the entity store and the outbound queue
    so that the superseded queue entries stop being retried.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: OutboundMutationQueue,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._store = store
        self._queue = queue
        self._clock = clock
        self._id_factory = id_factory

    async def _load(self, conflict_id: str) -> Conflict:
        record = await self._store.conflicts.get(conflict_id)
        if record is None:
            raise ConflictNotFoundError(conflict_id)
        return Conflict.model_validate(record)

    async def get(self, conflict_id: str) -> Conflict:
        return await self._load(conflict_id)

    async def unresolved(self) -> list[Conflict]:
        records = await self._store.conflicts.all()
        conflicts = [Conflict.model_validate(record) for record in records]
        return sorted(
            (conflict for conflict in conflicts if not conflict.is_resolved),
            key=lambda conflict: conflict.detected_at,
        )

    async def has_unresolved(self, entity_type: EntityType, entity_id: str) -> bool:
        records = await self._store.conflicts.query_by_field("entity_id", entity_id)
        return any(
            record.get("entity_type") == entity_type and record.get("resolved_at") is None
            for record in records
        )

    async def detect(
        self,
        mutation: OutboundMutation,
        remote_snapshot: RawEvent | dict[str, Any] | None,
    ) -> Conflict:
        """Record a conflict between the local copy and ``remote_snapshot``.

        The local side is the stored entity, or the queued payload when the
        entity is no longer stored (a queued delete). A ``None`` snapshot
        means the remote copy is gone.

        Args:
            mutation: The queued mutation whose push was rejected.
            remote_snapshot: The remote copy as of the rejection.

        Returns:
            The persisted, unresolved :class:`Conflict`.
        """
        local_version = await self._store.for_entity(mutation.entity_type).get(mutation.entity_id)
        if local_version is None:
            local_version = mutation.payload.entity.model_dump(mode="json")

        if isinstance(remote_snapshot, RawEvent):
            remote_event = remote_snapshot.to_event(now=self._clock()).model_copy(
                update={"id": mutation.entity_id}
            )
            remote_version = remote_event.model_dump(mode="json")
        else:
            remote_version = dict(remote_snapshot or {})

        conflict = Conflict(
            id=self._id_factory(),
            entity_type=mutation.entity_type,
            entity_id=mutation.entity_id,
            mutation_id=mutation.id,
            operation=mutation.operation,
            local_version=local_version,
            remote_version=remote_version,
            detected_at=self._clock(),
        )
        await self._store.conflicts.put(conflict.model_dump(mode="json"))
        logger.warning(
            "Conflict %s detected for %s %s (local %s)",
            conflict.id,
            conflict.entity_type,
            conflict.entity_id,
            conflict.operation,
        )
        return conflict

    async def resolve(self, conflict_id: str, strategy: ConflictStrategy) -> Conflict:
        """Settle a conflict and queue whatever push the winning side needs.

        Every pending queue entry for the entity is closed with the winning
        side's resolution first, so superseded edits are never pushed.

        - ``local-wins``: the local version is stored and re-queued over the
          remote version tag. For a conflict raised by a local delete, the
          delete is re-queued instead and nothing is written locally.
        - ``remote-wins``: the remote copy replaces the local one (or the
          local one is dropped when the remote copy is gone).
        - ``merge-by-recency``: the older side is layered under the newer
          one (``updated_at``, else ``created_at``; ties go to the remote).
          A local delete that is newer than the remote edit stays a delete.

        Args:
            conflict_id: Id of an unresolved conflict.
            strategy: How to settle it.

        Returns:
            The conflict, now marked resolved.

        Raises:
            ConflictNotFoundError: No conflict has that id.
            ConflictAlreadyResolvedError: The conflict was settled before.
        """
        conflict = await self._load(conflict_id)
        if conflict.is_resolved:
            raise ConflictAlreadyResolvedError(conflict)

        strategy = ConflictStrategy(strategy)
        deleted_locally = conflict.operation == MutationOperation.delete
        match strategy:
            case ConflictStrategy.remote_wins:
                await self._accept_remote(conflict)
            case ConflictStrategy.local_wins if deleted_locally:
                await self._push_delete(conflict)
            case ConflictStrategy.local_wins:
                await self._push_version(
                    conflict, conflict.local_version, MutationResolution.local_wins
                )
            case ConflictStrategy.merge_by_recency if not conflict.remote_version:
                # Nothing remote to merge with; the local side stands.
                if deleted_locally:
                    await self._push_delete(conflict)
                else:
                    await self._push_version(
                        conflict, conflict.local_version, MutationResolution.local_wins
                    )
            case ConflictStrategy.merge_by_recency:
                newer_local = local_is_newer(conflict.local_version, conflict.remote_version)
                if deleted_locally:
                    if newer_local:
                        await self._push_delete(conflict)
                    else:
                        await self._accept_remote(conflict)
                else:
                    await self._push_version(
                        conflict,
                        merge_by_recency(conflict.local_version, conflict.remote_version),
                        (
                            MutationResolution.local_wins
                            if newer_local
                            else MutationResolution.remote_wins
                        ),
                    )

        conflict.resolved_at = self._clock()
        conflict.resolution = strategy
        await self._store.conflicts.put(conflict.model_dump(mode="json"))
        logger.info(
            "Conflict %s for %s %s resolved as %s",
            conflict.id,
            conflict.entity_type,
            conflict.entity_id,
            strategy,
        )
        return conflict

    def _remote_identity(self, conflict: Conflict, version: dict[str, Any]) -> dict[str, Any]:
        """Event identity fields that target the remote copy recorded in ``conflict``."""
        if conflict.entity_type != EntityType.event:
            return {}
        return {
            "etag": conflict.remote_version.get("etag"),
            "remote_id": conflict.remote_version.get("remote_id") or version.get("remote_id"),
        }

    async def _push_version(
        self,
        conflict: Conflict,
        version: dict[str, Any],
        settled_as: MutationResolution,
    ) -> None:
        """Store ``version`` locally and queue it for push over the remote copy."""
        model = ENTITY_MODELS[conflict.entity_type]
        update: dict[str, Any] = {"id": conflict.entity_id, "sync_status": SyncStatus.pending}
        operation = MutationOperation.update
        if conflict.remote_version:
            update.update(self._remote_identity(conflict, version))
        elif conflict.entity_type == EntityType.event:
            # The remote copy is gone; push the local one as a new event.
            update.update(etag=None, remote_id=None)
            operation = MutationOperation.create
        entity = model.model_validate({**version, **update})

        await self._queue.settle(conflict.entity_type, conflict.entity_id, settled_as)
        await self._store.for_entity(conflict.entity_type).put(entity.model_dump(mode="json"))
        await self._queue.enqueue(conflict.entity_type, conflict.entity_id, operation, entity)

    async def _push_delete(self, conflict: Conflict) -> None:
        """Keep a local delete: re-queue it over the remote version tag."""
        await self._queue.settle(
            conflict.entity_type, conflict.entity_id, MutationResolution.local_wins
        )
        if not conflict.remote_version:
            # Deleted on both sides.
            return
        model = ENTITY_MODELS[conflict.entity_type]
        tombstone = model.model_validate(
            {
                **conflict.local_version,
                **self._remote_identity(conflict, conflict.local_version),
                "id": conflict.entity_id,
            }
        )
        await self._queue.enqueue(
            conflict.entity_type, conflict.entity_id, MutationOperation.delete, tombstone
        )

    async def _accept_remote(self, conflict: Conflict) -> None:
        await self._queue.settle(
            conflict.entity_type, conflict.entity_id, MutationResolution.remote_wins
        )
        store = self._store.for_entity(conflict.entity_type)
        if not conflict.remote_version:
            await store.delete(conflict.entity_id)
            return
        model = ENTITY_MODELS[conflict.entity_type]
        entity = model.model_validate(
            {**conflict.remote_version, "id": conflict.entity_id, "sync_status": SyncStatus.synced}
        )
        await store.put(entity.model_dump(mode="json"))
