"""Cross-calendar duplicate collapsing.

Keys, in priority order:

1. recurring instance: ``recurring_master_id|start``
2. all-day event: ``title|start-date``
3. timed event: the remote event id

The first event seen for a key wins; later ones are dropped, not merged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TypeVar

from almanac.models import Event, RawEvent, start_token

logger = logging.getLogger(__name__)

_E = TypeVar("_E", RawEvent, Event)


def dedup_key(event: RawEvent | Event) -> str:
    if event.recurring_master_id:
        return f"{event.recurring_master_id}|{start_token(event.start, all_day=event.all_day)}"
    if event.all_day:
        return f"{event.title}|{event.start.date().isoformat()}"
    if isinstance(event, RawEvent):
        return event.remote_id
    return event.remote_id or event.id


class Deduplicator:
    """Pass-wide seen-set; feed calendars in enumeration order."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.dropped = 0

    def seed(self, events: Iterable[RawEvent | Event]) -> None:
        """Register keys of events that already claim their slot."""
        for event in events:
            self._seen.add(dedup_key(event))

    def deduplicate(self, events: Iterable[_E]) -> list[_E]:
        survivors: list[_E] = []
        for event in events:
            key = dedup_key(event)
            if key in self._seen:
                self.dropped += 1
                logger.debug("Dropping duplicate event for key %r", key)
                continue
            self._seen.add(key)
            survivors.append(event)
        return survivors

    def __contains__(self, key: object) -> bool:
        return key in self._seen
