"""Expansion of recurring masters into dated instances.

Only yearly all-day series (birthdays, anniversaries) are expanded. Other
frequencies are passed through as the single un-expanded master.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime

from almanac.models import RawEvent

logger = logging.getLogger(__name__)

_FREQ_PATTERN = re.compile(r"(?:^|[;:])FREQ=([A-Z]+)", re.IGNORECASE)


def recurrence_frequency(rules: Iterable[str]) -> str | None:
    """Return the lower-cased ``FREQ`` of the first RRULE line, if any."""
    for rule in rules:
        if not rule.upper().startswith("RRULE:"):
            continue
        match = _FREQ_PATTERN.search(rule)
        return match.group(1).lower() if match else None
    return None


def instance_id(master_id: str, year: int) -> str:
    return f"{master_id}_{year}"


class RecurrenceExpander:
    """Turns recurring masters into first-class instance events."""

    def expand(
        self,
        master: RawEvent,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        """Expand ``master`` over every calendar year touched by the window.

        Non-recurring input is returned unchanged as a one-element list.
        Instances keep the master's duration and version tag, take the id
        ``{master_id}_{year}``, and point back through ``recurring_master_id``.
        Dates that do not exist in a given year (Feb 29) are skipped.
        """
        if not master.recurrence:
            return [master]

        frequency = recurrence_frequency(master.recurrence)
        if frequency != "yearly" or not master.all_day:
            logger.debug(
                "Leaving recurring event %s unexpanded (frequency=%s, all_day=%s)",
                master.remote_id,
                frequency,
                master.all_day,
            )
            return [master]

        month, day = master.start.month, master.start.day
        duration = master.end - master.start
        first_year = max(window_start.year, master.start.year)
        instances: list[RawEvent] = []
        for year in range(first_year, window_end.year + 1):
            try:
                date(year, month, day)
            except ValueError:
                logger.debug(
                    "Skipping nonexistent date %04d-%02d-%02d for series %s",
                    year,
                    month,
                    day,
                    master.remote_id,
                )
                continue
            start = master.start.replace(year=year)
            instances.append(
                master.model_copy(
                    update={
                        "remote_id": instance_id(master.remote_id, year),
                        "start": start,
                        "end": start + duration,
                        "recurrence": [],
                        "recurring_master_id": master.remote_id,
                    }
                )
            )
        return instances

    def expand_all(
        self,
        events: Iterable[RawEvent],
        window_start: datetime,
        window_end: datetime,
    ) -> tuple[list[RawEvent], set[str]]:
        """Expand a fetched batch in order.

        Returns the flattened events plus the remote ids of masters that were
        actually expanded (their previously stored instances may be stale).
        """
        expanded: list[RawEvent] = []
        replaced_series: set[str] = set()
        for event in events:
            produced = self.expand(event, window_start, window_end)
            if produced != [event]:
                replaced_series.add(event.remote_id)
            expanded.extend(produced)
        return expanded, replaced_series
