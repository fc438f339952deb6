"""Sync pass orchestration for one scope.

A pass takes the scope's advisory lock, walks the enabled calendars one at a
time (fetch, expand, dedup, reconcile), and always hands the lock back. The
lock is a compare-and-set write on the scope's state record; a lock older
than the configured timeout is reclaimed with a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel

from almanac.config import SyncSettings
from almanac.core.logging import sanitize_error, set_scope_context
from almanac.core.state import CASConflictError
from almanac.core.telemetry import sync_span
from almanac.models import (
    EntityType,
    EventPayload,
    RemoteCalendarDescriptor,
    ScopeStatus,
    SyncResult,
    SyncScopeState,
    utc_now,
)
from almanac.store import LocalStore
from almanac.sync.calendars import CalendarDirectory
from almanac.sync.dedup import Deduplicator, dedup_key
from almanac.sync.outbound import OutboundMutationQueue
from almanac.sync.recurrence import RecurrenceExpander
from almanac.sync.reconcile import Reconciler
from almanac.sync.remote import RemoteCalendarClient

logger = logging.getLogger(__name__)


class SyncStatusReport(BaseModel):
    """Persisted scope state plus outbound queue counts."""

    state: SyncScopeState
    pending_mutations: int = 0
    dead_lettered_mutations: int = 0
    unresolved_conflicts: int = 0

    @property
    def breaker_open(self) -> bool:
        return self.state.status == ScopeStatus.error


class SyncCoordinator:
    def __init__(
        self,
        store: LocalStore,
        remote: RemoteCalendarClient,
        directory: CalendarDirectory,
        queue: OutboundMutationQueue,
        *,
        settings: SyncSettings | None = None,
        expander: RecurrenceExpander | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._remote = remote
        self._directory = directory
        self._queue = queue
        self._settings = settings or SyncSettings()
        self._expander = expander or RecurrenceExpander()
        self._reconciler = Reconciler(store.events, clock=clock)
        self._clock = clock

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    async def load_state(self, scope_id: str) -> SyncScopeState:
        state, _ = await self._store.sync_state.load(scope_id)
        return state or SyncScopeState(scope_id=scope_id)

    # -- lock --------------------------------------------------------------

    async def _acquire(self, scope_id: str) -> tuple[SyncScopeState, int] | None:
        state, version = await self._store.sync_state.load(scope_id)
        if state is None:
            state = SyncScopeState(scope_id=scope_id)

        now = self._clock()
        if state.status == ScopeStatus.syncing and state.lock_acquired_at is not None:
            held_for = now - state.lock_acquired_at
            if held_for < timedelta(minutes=self._settings.lock_timeout_minutes):
                logger.info(
                    "Sync already running for scope %s (lock held %ds); skipping",
                    scope_id,
                    int(held_for.total_seconds()),
                )
                return None
            logger.warning(
                "Reclaiming stale sync lock for scope %s acquired at %s",
                scope_id,
                state.lock_acquired_at.isoformat(),
            )

        locked = state.model_copy(
            update={
                "status": ScopeStatus.syncing,
                "lock_acquired_at": now,
                "last_error": None,
            }
        )
        try:
            new_version = await self._store.sync_state.compare_and_set(scope_id, version, locked)
        except CASConflictError:
            logger.info("Lost the sync lock race for scope %s; skipping", scope_id)
            return None
        return locked, new_version

    async def _release(
        self,
        scope_id: str,
        locked: SyncScopeState,
        version: int,
        result: SyncResult,
        sync_tokens: dict[str, str],
        full_sync_completed: bool,
    ) -> None:
        now = self._clock()
        failed = bool(result.errors)
        consecutive_errors = locked.consecutive_errors + 1 if failed else 0
        tripped = consecutive_errors >= self._settings.max_consecutive_errors
        if tripped and locked.consecutive_errors < self._settings.max_consecutive_errors:
            logger.error(
                "Scope %s failed %d passes in a row; automatic sync suspended until a "
                "manual sync succeeds",
                scope_id,
                consecutive_errors,
            )

        released = locked.model_copy(
            update={
                "status": ScopeStatus.error if tripped else ScopeStatus.idle,
                "lock_acquired_at": None,
                "last_sync_time": now,
                "last_error": sanitize_error("; ".join(result.errors)) if failed else None,
                "sync_tokens": sync_tokens,
                "consecutive_errors": consecutive_errors,
                "last_result": result,
                "full_sync_completed_at": (
                    now if full_sync_completed else locked.full_sync_completed_at
                ),
            }
        )
        try:
            await self._store.sync_state.compare_and_set(scope_id, version, released)
        except CASConflictError:
            logger.warning(
                "Sync lock for scope %s was reclaimed by another pass; discarding this "
                "pass's bookkeeping",
                scope_id,
            )

    # -- pass --------------------------------------------------------------

    async def _enabled_calendars(self) -> list[RemoteCalendarDescriptor]:
        if not await self._directory.calendars():
            await self._directory.refresh()
        return await self._directory.enabled_calendars()

    async def run_sync(self, scope_id: str, force_full_sync: bool = False) -> SyncResult:
        """Run one pass for ``scope_id``.

        The scope lock is taken with a compare-and-set write and always
        released, whatever the pass does. Enabled calendars are synced one at
        a time, primary first; a calendar's failure lands in ``errors`` and
        never aborts the pass. Only calendars whose changes were applied
        without error advance their sync token. Once the pass finishes, at
        most one stored event per dedup key remains across all enabled
        calendars.

        Args:
            scope_id: Sync scope whose state record holds the lock and tokens.
            force_full_sync: Ignore stored tokens and refetch every calendar.

        Returns:
            The pass's counts and errors, or ``SyncResult(skipped=True)`` when
            another pass holds a lock younger than ``lock_timeout_minutes``.
        """
        set_scope_context(scope_id)
        with sync_span("run_sync", scope_id=scope_id, force_full_sync=force_full_sync):
            acquired = await self._acquire(scope_id)
            if acquired is None:
                return SyncResult(skipped=True)
            locked, version = acquired

            result = SyncResult()
            sync_tokens = dict(locked.sync_tokens)
            full_sync_completed = False
            try:
                full_sync_completed = await self._sync_calendars(
                    locked, sync_tokens, result, force_full_sync=force_full_sync
                )
            except Exception as exc:
                logger.error("Sync pass for scope %s aborted", scope_id, exc_info=True)
                result.errors.append(f"pass aborted: {sanitize_error(exc)}")
            finally:
                await self._release(
                    scope_id, locked, version, result, sync_tokens, full_sync_completed
                )

        logger.info(
            "Sync pass for scope %s: added=%d updated=%d removed=%d errors=%d calendars=%d",
            scope_id,
            result.added,
            result.updated,
            result.removed,
            len(result.errors),
            len(result.calendars_synced),
        )
        return result

    async def _sync_calendars(
        self,
        state: SyncScopeState,
        sync_tokens: dict[str, str],
        result: SyncResult,
        *,
        force_full_sync: bool,
    ) -> bool:
        """Walk enabled calendars in order; returns True if every one synced in full."""
        calendars = await self._enabled_calendars()
        protected = await self._queue.pending_entity_ids(EntityType.event)
        deleted_locally = await self._deleted_remote_ids()
        now = self._clock()
        window_start = now - timedelta(days=self._settings.full_sync_past_days)
        window_end = now + timedelta(days=self._settings.expansion_future_days)

        deduplicator = Deduplicator()
        all_full = bool(calendars)
        for calendar in calendars:
            token = None if force_full_sync else state.sync_tokens.get(calendar.id)
            try:
                fetch = await self._remote.fetch_changes(calendar.id, token)
                expanded, replaced_series = self._expander.expand_all(
                    fetch.events, window_start, window_end
                )
                candidates = deduplicator.deduplicate(expanded)
                plan = await self._reconciler.plan(
                    calendar.id,
                    candidates,
                    cancelled_ids=fetch.cancelled_ids,
                    full_snapshot=fetch.full_sync,
                    replaced_series=replaced_series,
                    protected_ids=protected,
                    deleted_remote_ids=deleted_locally.get(calendar.id, ()),
                )
                outcome = await self._reconciler.apply(plan)
            except Exception as exc:
                logger.error("Sync failed for calendar %s", calendar.id, exc_info=True)
                result.errors.append(f"{calendar.id}: {sanitize_error(exc)}")
                all_full = False
                await self._claim_keys(deduplicator, calendar.id)
                continue

            result.added += outcome.added
            result.updated += outcome.updated
            result.removed += outcome.removed
            result.errors.extend(outcome.errors)
            await self._claim_keys(deduplicator, calendar.id)

            if outcome.errors:
                # Leave the token where it was so the next pass retries.
                all_full = False
                continue
            sync_tokens[calendar.id] = fetch.next_sync_token
            result.calendars_synced.append(calendar.id)
            await self._directory.mark_synced(calendar.id, now)
            if not fetch.full_sync:
                all_full = False

        result.duplicates_dropped = deduplicator.dropped
        await self._evict_shadowed(calendars, protected, result)
        return all_full

    async def _claim_keys(self, deduplicator: Deduplicator, calendar_id: str) -> None:
        """Reserve the dedup keys of everything now stored for ``calendar_id``.

        Later calendars in the pass must not re-add events that an earlier
        calendar already holds, including ones not re-fetched incrementally.
        """
        try:
            deduplicator.seed(await self._reconciler.stored_events(calendar_id))
        except Exception:
            logger.warning(
                "Could not read stored events for calendar %s; dedup may be incomplete",
                calendar_id,
                exc_info=True,
            )

    async def _deleted_remote_ids(self) -> dict[str, set[str]]:
        """Remote ids with a local delete still queued, by source calendar."""
        deleted: dict[str, set[str]] = {}
        for mutation in await self._queue.pending_deletes(EntityType.event):
            if not isinstance(mutation.payload, EventPayload):
                continue
            event = mutation.payload.entity
            if event.remote_id:
                deleted.setdefault(event.source_calendar_id, set()).add(event.remote_id)
        return deleted

    async def _evict_shadowed(
        self,
        calendars: list[RemoteCalendarDescriptor],
        protected: set[str],
        result: SyncResult,
    ) -> None:
        """Drop stored events whose dedup key an earlier calendar already holds.

        Catches copies stored by a later calendar before an earlier one began
        carrying the same event, such as after enabling a calendar or a token
        reset; the pass-wide deduplicator only sees what was fetched now.
        """
        claimed: set[str] = set()
        shadowed: list[str] = []
        try:
            for calendar in calendars:
                for event in await self._reconciler.stored_events(calendar.id):
                    key = dedup_key(event)
                    if key not in claimed:
                        claimed.add(key)
                    elif event.id not in protected:
                        shadowed.append(event.id)
            if shadowed:
                removed = await self._store.events.bulk_delete(shadowed)
                result.removed += removed
                result.duplicates_dropped += removed
                logger.info(
                    "Removed %d stored events duplicated by earlier calendars", removed
                )
        except Exception as exc:
            logger.error("Duplicate sweep failed", exc_info=True)
            result.errors.append(f"duplicate sweep: {sanitize_error(exc)}")

    # -- inspection --------------------------------------------------------

    async def status(self, scope_id: str) -> SyncStatusReport:
        state = await self.load_state(scope_id)
        return SyncStatusReport(
            state=state,
            pending_mutations=await self._queue.pending_count(),
            dead_lettered_mutations=len(await self._queue.dead_letters()),
            unresolved_conflicts=len(await self._queue.conflicts.unresolved()),
        )

    async def reset(self, scope_id: str) -> SyncScopeState:
        """Forget tokens, lock, and error history; the next pass is a full sync."""
        state = await self.load_state(scope_id)
        cleared = state.model_copy(
            update={
                "sync_tokens": {},
                "status": ScopeStatus.idle,
                "lock_acquired_at": None,
                "last_error": None,
                "consecutive_errors": 0,
            }
        )
        await self._store.sync_state.save(scope_id, cleared)
        logger.info("Reset sync state for scope %s", scope_id)
        return cleared
