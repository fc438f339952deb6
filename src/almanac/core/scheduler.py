"""Periodic and on-demand sync triggering with a consecutive-failure breaker.

``tick()`` is the unit of work: drain the outbound queue, then run one sync
pass. ``run()`` repeats ticks every ``interval_minutes`` until stopped, and
``trigger_now()`` wakes it early. Once a scope has failed
``max_consecutive_errors`` passes in a row, periodic ticks are suppressed
until a manual tick succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from almanac.core.telemetry import sync_span
from almanac.models import DrainResult, SyncResult
from almanac.sync.coordinator import SyncCoordinator
from almanac.sync.outbound import OutboundMutationQueue

logger = logging.getLogger(__name__)


@dataclass
class TickOutcome:
    sync: SyncResult | None = None
    drain: DrainResult | None = None
    suppressed: bool = False


class SyncScheduler:
    def __init__(
        self,
        coordinator: SyncCoordinator,
        queue: OutboundMutationQueue,
        scope_id: str,
        *,
        interval_seconds: float | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._queue = queue
        self._scope_id = scope_id
        settings = coordinator.settings
        self._interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.interval_minutes * 60
        )
        self._max_consecutive_errors = settings.max_consecutive_errors
        self._wakeup = asyncio.Event()
        self._manual_requested = False

    @property
    def scope_id(self) -> str:
        return self._scope_id

    async def breaker_open(self) -> bool:
        state = await self._coordinator.load_state(self._scope_id)
        return state.consecutive_errors >= self._max_consecutive_errors

    async def tick(self, manual: bool = False) -> TickOutcome:
        """Run one drain + sync cycle.

        Periodic ticks do nothing while the breaker is open; a manual tick
        always runs and, on success, closes the breaker again.
        """
        if not manual and await self.breaker_open():
            logger.info(
                "Automatic sync for scope %s is suspended after repeated failures", self._scope_id
            )
            return TickOutcome(suppressed=True)

        with sync_span("tick", scope_id=self._scope_id, manual=manual):
            drain = await self._queue.drain()
            sync = await self._coordinator.run_sync(self._scope_id)
        return TickOutcome(sync=sync, drain=drain)

    def trigger_now(self, *, manual: bool = True) -> None:
        """Wake the run loop for an immediate tick."""
        if manual:
            self._manual_requested = True
        self._wakeup.set()

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "Sync scheduler started for scope %s (interval=%ds)",
            self._scope_id,
            int(self._interval_seconds),
        )
        while not stop_event.is_set():
            manual, self._manual_requested = self._manual_requested, False
            try:
                await self.tick(manual=manual)
            except Exception as exc:
                logger.error("Sync scheduler tick failed: %s", exc, exc_info=True)

            wakeup = asyncio.create_task(self._wakeup.wait())
            stopped = asyncio.create_task(stop_event.wait())
            try:
                await asyncio.wait(
                    {wakeup, stopped},
                    timeout=self._interval_seconds,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                wakeup.cancel()
                stopped.cancel()
            if self._wakeup.is_set():
                self._wakeup.clear()
                logger.debug("Sync scheduler woken for an immediate tick")
        logger.info("Sync scheduler stopped for scope %s", self._scope_id)
