"""Wiring of the sync components for one configured scope."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from almanac.config import AlmanacConfig
from almanac.core.scheduler import SyncScheduler
from almanac.db import Database
from almanac.models import EntityType, utc_now
from almanac.store import LocalStore, postgres_local_store
from almanac.sync.calendars import CalendarDirectory
from almanac.sync.coordinator import SyncCoordinator
from almanac.sync.local import LocalMutations
from almanac.sync.outbound import CalendarEventPusher, OutboundMutationQueue
from almanac.sync.remote import EnvTokenProvider, GoogleCalendarClient, RemoteCalendarClient

logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    config: AlmanacConfig
    store: LocalStore
    remote: RemoteCalendarClient
    directory: CalendarDirectory
    queue: OutboundMutationQueue
    coordinator: SyncCoordinator
    local: LocalMutations
    scheduler: SyncScheduler
    database: Database | None = None

    @classmethod
    def build(
        cls,
        config: AlmanacConfig,
        store: LocalStore,
        remote: RemoteCalendarClient,
        *,
        clock: Callable[[], datetime] = utc_now,
        database: Database | None = None,
    ) -> SyncEngine:
        """Assemble the components around an already-open store and client.

        Only events have a remote counterpart; todos, goals, and notes are
        local-only and settle as soon as the queue drains.
        """
        queue = OutboundMutationQueue(
            store,
            {EntityType.event: CalendarEventPusher(remote, store, clock=clock)},
            max_attempts=config.queue.max_attempts,
            clock=clock,
        )
        directory = CalendarDirectory(store.calendars, remote)
        coordinator = SyncCoordinator(
            store, remote, directory, queue, settings=config.sync, clock=clock
        )
        return cls(
            config=config,
            store=store,
            remote=remote,
            directory=directory,
            queue=queue,
            coordinator=coordinator,
            local=LocalMutations(store, queue, clock=clock),
            scheduler=SyncScheduler(coordinator, queue, config.scope_id),
            database=database,
        )

    async def shutdown(self) -> None:
        await self.remote.aclose()
        if self.database is not None:
            await self.database.close()


async def start_engine(config: AlmanacConfig) -> SyncEngine:
    """Connect to PostgreSQL and the remote calendar service from ``config``."""
    database = Database.from_env(config.db.name, schema=config.db.schema_name)
    await database.provision()
    pool = await database.connect()
    await database.ensure_schema()

    remote = GoogleCalendarClient(
        EnvTokenProvider(config.remote.access_token_env),
        base_url=config.remote.base_url,
        timeout_seconds=config.remote.timeout_seconds,
        full_sync_past_days=config.sync.full_sync_past_days,
        full_sync_future_days=config.sync.full_sync_future_days,
    )
    logger.info("Sync engine ready for scope %s", config.scope_id)
    return SyncEngine.build(config, postgres_local_store(pool), remote, database=database)
