"""Locally remembered remote calendars and which of them are synced."""

from __future__ import annotations

import logging
from datetime import datetime

from almanac.models import RemoteCalendarDescriptor
from almanac.store import EntityNotFoundError, EntityStore
from almanac.sync.remote import RemoteCalendarClient

logger = logging.getLogger(__name__)


def enumeration_order(calendar: RemoteCalendarDescriptor) -> tuple[bool, str, str]:
    """Primary first, then name (case-insensitive), then id."""
    return (not calendar.primary, calendar.name.casefold(), calendar.id)


class CalendarDirectory:
    def __init__(self, store: EntityStore, remote: RemoteCalendarClient) -> None:
        self._store = store
        self._remote = remote

    async def calendars(self) -> list[RemoteCalendarDescriptor]:
        records = await self._store.all()
        return sorted(
            (RemoteCalendarDescriptor.model_validate(record) for record in records),
            key=enumeration_order,
        )

    async def enabled_calendars(self) -> list[RemoteCalendarDescriptor]:
        return [calendar for calendar in await self.calendars() if calendar.enabled]

    async def refresh(self) -> list[RemoteCalendarDescriptor]:
        """Pull the remote calendar list into the store.

        Known calendars keep the locally chosen ``enabled`` flag and their
        ``last_synced_at``; new calendars take the remote default; calendars
        that disappeared remotely are dropped.
        """
        remote_calendars = await self._remote.list_calendars()
        known = {calendar.id: calendar for calendar in await self.calendars()}

        seen: set[str] = set()
        for calendar in remote_calendars:
            seen.add(calendar.id)
            previous = known.get(calendar.id)
            if previous is not None:
                calendar = calendar.model_copy(
                    update={
                        "enabled": previous.enabled,
                        "last_synced_at": previous.last_synced_at,
                    }
                )
            else:
                logger.info("Discovered remote calendar %s (%s)", calendar.id, calendar.name)
            await self._store.put(calendar.model_dump(mode="json"))

        vanished = [calendar_id for calendar_id in known if calendar_id not in seen]
        if vanished:
            logger.info("Forgetting %d calendar(s) no longer listed remotely", len(vanished))
            await self._store.bulk_delete(vanished)
        return await self.calendars()

    async def set_enabled(self, calendar_id: str, enabled: bool) -> RemoteCalendarDescriptor:
        record = await self._store.get(calendar_id)
        if record is None:
            raise EntityNotFoundError(self._store.collection, calendar_id)
        calendar = RemoteCalendarDescriptor.model_validate(record).model_copy(
            update={"enabled": enabled}
        )
        await self._store.put(calendar.model_dump(mode="json"))
        return calendar

    async def mark_synced(self, calendar_id: str, synced_at: datetime) -> None:
        record = await self._store.get(calendar_id)
        if record is None:
            return
        record["last_synced_at"] = synced_at.isoformat()
        await self._store.put(record)
