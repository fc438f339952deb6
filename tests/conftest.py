"""Shared fixtures for the almanac test suite.

``FakeRemote`` is the in-process stand-in for the remote calendar service;
``store`` is a fully in-memory :class:`~almanac.store.LocalStore`.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from almanac.models import FetchResult, RawEvent, RemoteCalendarDescriptor
from almanac.store import LocalStore, in_memory_local_store
from almanac.sync.remote import (
    EventPage,
    RemoteCalendarClient,
    VersionMismatchError,
    parse_remote_event,
)

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock handed to components as ``clock=``."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRemote(RemoteCalendarClient):
    """Scriptable remote calendar.

    ``events[calendar_id]`` is what a full fetch returns. Incremental results
    are queued per calendar in ``changes``; an empty queue yields an empty
    change set. ``fetch_errors`` makes a calendar's fetch raise and
    ``mismatches`` makes pushes to an event id fail with HTTP 412 semantics.
    Event ids seeded into ``etags`` behave like a real server: a push whose
    ``If-Match`` differs from the current tag is rejected, and a successful
    update issues a new tag.
    """

    def __init__(self) -> None:
        self.calendars: list[RemoteCalendarDescriptor] = []
        self.events: dict[str, list[RawEvent]] = {}
        self.changes: dict[str, list[FetchResult]] = {}
        self.fetch_errors: dict[str, Exception] = {}
        self.mismatches: dict[str, RawEvent | None] = {}
        self.etags: dict[str, str] = {}
        self.push_errors: dict[str, Exception] = {}
        self.fetch_calls: list[tuple[str, str | None]] = []
        self.pushes: list[dict[str, Any]] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    def add_calendar(
        self,
        calendar_id: str,
        *,
        name: str | None = None,
        primary: bool = False,
        enabled: bool = True,
    ) -> RemoteCalendarDescriptor:
        calendar = RemoteCalendarDescriptor(
            id=calendar_id, name=name or calendar_id, primary=primary, enabled=enabled
        )
        self.calendars.append(calendar)
        self.events.setdefault(calendar_id, [])
        return calendar

    async def list_calendars(self) -> list[RemoteCalendarDescriptor]:
        return [calendar.model_copy() for calendar in self.calendars]

    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None = None,
    ) -> EventPage:
        items = [
            event
            for event in self.events.get(calendar_id, [])
            if event.end >= time_min and event.start <= time_max
        ]
        return EventPage(items=items)

    async def fetch_changes(self, calendar_id: str, sync_token: str | None) -> FetchResult:
        self.fetch_calls.append((calendar_id, sync_token))
        if calendar_id in self.fetch_errors:
            raise self.fetch_errors[calendar_id]
        if sync_token is None:
            return FetchResult(
                events=list(self.events.get(calendar_id, [])),
                next_sync_token=f"{calendar_id}-T{next(self._tokens)}",
                full_sync=True,
            )
        queued = self.changes.get(calendar_id)
        if queued:
            return queued.pop(0)
        return FetchResult(next_sync_token=sync_token)

    async def get_event(self, calendar_id: str, event_id: str) -> RawEvent | None:
        for event in self.events.get(calendar_id, []):
            if event.remote_id == event_id:
                return event
        return None

    def _find(self, event_id: str) -> RawEvent | None:
        for events in self.events.values():
            for event in events:
                if event.remote_id == event_id:
                    return event
        return None

    def _check_push(self, event_id: str, etag: str | None) -> None:
        if event_id in self.push_errors:
            raise self.push_errors[event_id]
        if event_id in self.mismatches:
            raise VersionMismatchError(
                event_id=event_id, remote_snapshot=self.mismatches[event_id]
            )
        current = self.etags.get(event_id)
        if current is not None and etag != current:
            raise VersionMismatchError(event_id=event_id, remote_snapshot=self._find(event_id))

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> RawEvent:
        if "create" in self.push_errors:
            raise self.push_errors["create"]
        remote_id = f"r{next(self._ids)}"
        self.pushes.append({"op": "create", "calendar_id": calendar_id, "body": body})
        return parse_remote_event(
            {**body, "id": remote_id, "etag": f'"{remote_id}-1"'}, calendar_id=calendar_id
        )

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        *,
        etag: str | None = None,
    ) -> RawEvent:
        self._check_push(event_id, etag)
        self.pushes.append(
            {
                "op": "update",
                "calendar_id": calendar_id,
                "event_id": event_id,
                "body": body,
                "etag": etag,
            }
        )
        new_etag = f'"{event_id}-{len(self.pushes) + 1}"'
        if event_id in self.etags:
            self.etags[event_id] = new_etag
        return parse_remote_event(
            {**body, "id": event_id, "etag": new_etag}, calendar_id=calendar_id
        )

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        etag: str | None = None,
    ) -> None:
        self._check_push(event_id, etag)
        self.pushes.append(
            {"op": "delete", "calendar_id": calendar_id, "event_id": event_id, "etag": etag}
        )
        self.etags.pop(event_id, None)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> LocalStore:
    return in_memory_local_store()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def make_raw_event() -> Callable[..., RawEvent]:
    """Factory for remote events; timed one-hour events unless ``all_day``."""

    def _make(
        remote_id: str,
        *,
        calendar_id: str = "primary",
        title: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        all_day: bool = False,
        etag: str | None = '"v1"',
        **fields: Any,
    ) -> RawEvent:
        if start is None:
            start = (
                datetime(2025, 6, 1, tzinfo=UTC)
                if all_day
                else datetime(2025, 6, 1, 9, 0, tzinfo=UTC)
            )
        if end is None:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
        return RawEvent(
            remote_id=remote_id,
            calendar_id=calendar_id,
            title=title or f"Event {remote_id}",
            start=start,
            end=end,
            all_day=all_day,
            etag=etag,
            **fields,
        )

    return _make

