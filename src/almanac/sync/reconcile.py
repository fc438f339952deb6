"""Diff one calendar's candidate events against what is stored, then apply."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from almanac.core.logging import sanitize_error
from almanac.models import Event, RawEvent, utc_now
from almanac.store import DuplicateEntityError, EntityStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcilePlan:
    calendar_id: str
    to_add: list[Event] = field(default_factory=list)
    to_update: list[Event] = field(default_factory=list)
    to_remove: list[Event] = field(default_factory=list)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)


@dataclass
class ApplyOutcome:
    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)


class Reconciler:
    """Turns a calendar's candidate set into store writes.

    Matching is by remote id. A differing version tag is an update that
    keeps the stored id; an equal tag is a no-op. Stored events named in
    ``protected_ids`` (those with local changes still queued for push) are
    never updated or removed here.
    """

    def __init__(self, events: EntityStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._events = events
        self._clock = clock

    async def stored_events(self, calendar_id: str) -> list[Event]:
        records = await self._events.query_by_field("source_calendar_id", calendar_id)
        return [Event.model_validate(record) for record in records]

    async def plan(
        self,
        calendar_id: str,
        candidates: Sequence[RawEvent],
        *,
        cancelled_ids: Iterable[str] = (),
        full_snapshot: bool = True,
        replaced_series: Iterable[str] = (),
        protected_ids: Iterable[str] = (),
        deleted_remote_ids: Iterable[str] = (),
    ) -> ReconcilePlan:
        """Compute adds, updates, and removals for ``calendar_id``.

        Nothing is written; pass the plan to :meth:`apply`.

        Args:
            calendar_id: Calendar whose stored events are diffed.
            candidates: Expanded, deduplicated remote events of that calendar.
            cancelled_ids: Remote ids reported cancelled. They are never added
                and remove the stored event plus any instances of that series.
            full_snapshot: The candidates are the calendar's complete contents,
                so anything stored but absent is removed. Incremental batches
                only remove by ``cancelled_ids`` and ``replaced_series``.
            replaced_series: Recurring masters re-expanded in this batch; their
                stored instances not among the candidates are stale.
            protected_ids: Local ids with pushes still queued. These are
                neither updated nor removed.
            deleted_remote_ids: Remote ids whose local delete is still queued.
                These are not re-added.

        Returns:
            The :class:`ReconcilePlan` for this calendar.
        """
        now = self._clock()
        cancelled = set(cancelled_ids)
        replaced = set(replaced_series)
        protected = set(protected_ids)
        deleted_locally = set(deleted_remote_ids)
        stored = await self.stored_events(calendar_id)
        stored_by_remote = {event.remote_id: event for event in stored if event.remote_id}

        plan = ReconcilePlan(calendar_id=calendar_id)
        candidate_ids: set[str] = set()
        for candidate in candidates:
            if candidate.remote_id in cancelled:
                continue
            candidate_ids.add(candidate.remote_id)
            existing = stored_by_remote.get(candidate.remote_id)
            if existing is None and candidate.remote_id in deleted_locally:
                logger.debug("Not re-adding %s: local delete pending", candidate.remote_id)
                plan.skipped += 1
            elif existing is None:
                plan.to_add.append(candidate.to_event(now=now))
            elif existing.id in protected:
                logger.debug("Leaving %s untouched: local changes are pending push", existing.id)
                plan.skipped += 1
            elif existing.etag != candidate.etag:
                incoming = candidate.to_event(now=now)
                plan.to_update.append(
                    incoming.model_copy(
                        update={
                            "id": existing.id,
                            "created_at": incoming.created_at or existing.created_at,
                        }
                    )
                )
            else:
                plan.skipped += 1

        for event in stored:
            if event.remote_id is None or event.id in protected:
                continue
            if event.remote_id in cancelled or event.recurring_master_id in cancelled:
                plan.to_remove.append(event)
            elif event.remote_id in candidate_ids:
                continue
            elif full_snapshot or event.recurring_master_id in replaced:
                plan.to_remove.append(event)
        return plan

    async def apply(self, plan: ReconcilePlan) -> ApplyOutcome:
        """Write a plan as a best-effort batch; failures are recorded, never raised."""
        outcome = ApplyOutcome()
        calendar_id = plan.calendar_id

        if plan.to_add:
            records = [event.model_dump(mode="json") for event in plan.to_add]
            try:
                await self._events.bulk_add(records)
                outcome.added += len(records)
            except DuplicateEntityError:
                # A retried add overwrites the record left by an earlier attempt.
                for record in records:
                    try:
                        await self._events.put(record)
                        outcome.added += 1
                    except Exception as exc:
                        self._record_failure(outcome, calendar_id, "add", record["id"], exc)
            except Exception as exc:
                self._record_failure(outcome, calendar_id, "add", f"{len(records)} events", exc)

        for event in plan.to_update:
            try:
                await self._events.put(event.model_dump(mode="json"))
                outcome.updated += 1
            except Exception as exc:
                self._record_failure(outcome, calendar_id, "update", event.id, exc)

        if plan.to_remove:
            ids = [event.id for event in plan.to_remove]
            try:
                await self._events.bulk_delete(ids)
                outcome.removed += len(ids)
            except Exception as exc:
                self._record_failure(outcome, calendar_id, "remove", f"{len(ids)} events", exc)

        return outcome

    async def reconcile(
        self,
        calendar_id: str,
        candidates: Sequence[RawEvent],
        **kwargs,
    ) -> ApplyOutcome:
        plan = await self.plan(calendar_id, candidates, **kwargs)
        return await self.apply(plan)

    @staticmethod
    def _record_failure(
        outcome: ApplyOutcome,
        calendar_id: str,
        step: str,
        target: str,
        exc: Exception,
    ) -> None:
        logger.error(
            "Reconcile %s failed for %s on calendar %s", step, target, calendar_id, exc_info=exc
        )
        outcome.errors.append(f"{calendar_id}: {step} {target} failed: {sanitize_error(exc)}")
