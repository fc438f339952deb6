"""Remote calendar client: listing, change fetching, and event pushes.

Only the Google Calendar v3 wire format is implemented. Bearer tokens are
supplied by a :class:`TokenProvider` and are never refreshed here.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from almanac.core.logging import redact_secrets
from almanac.models import (
    Event,
    EventPage,
    FetchResult,
    RawEvent,
    RemoteCalendarDescriptor,
    utc_now,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_FULL_SYNC_PAST_DAYS = 90
DEFAULT_FULL_SYNC_FUTURE_DAYS = 365
DEFAULT_PAGE_SIZE = 250

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

_ERROR_MESSAGE_LIMIT = 200


class RemoteCalendarError(RuntimeError):
    """Base error raised by remote calendar requests."""


class RemoteRequestError(RemoteCalendarError):
    """Raised when the remote service answers with a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.error_message = message
        super().__init__(f"Remote calendar request failed ({status_code}): {message}")


class SyncTokenInvalidatedError(RemoteCalendarError):
    """Raised when a sync token is expired or invalid (HTTP 410)."""


class VersionMismatchError(RemoteCalendarError):
    """Raised when an ``If-Match`` push is rejected (HTTP 412).

    ``remote_snapshot`` holds the event as the remote service currently has
    it, or ``None`` when it could not be read back.
    """

    def __init__(self, *, event_id: str, remote_snapshot: RawEvent | None) -> None:
        self.event_id = event_id
        self.remote_snapshot = remote_snapshot
        super().__init__(f"Remote version of event {event_id!r} changed since it was last read")


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TokenProvider(abc.ABC):
    """Source of the bearer token attached to every request."""

    @abc.abstractmethod
    async def get_access_token(self) -> str: ...


class StaticTokenProvider(TokenProvider):
    def __init__(self, token: str) -> None:
        if not token.strip():
            raise ValueError("token must be a non-empty string")
        self._token = token.strip()

    async def get_access_token(self) -> str:
        return self._token


class EnvTokenProvider(TokenProvider):
    """Reads the token from an environment variable on every request."""

    def __init__(self, env_var: str) -> None:
        self._env_var = env_var

    async def get_access_token(self) -> str:
        token = os.environ.get(self._env_var, "").strip()
        if not token:
            raise RemoteCalendarError(
                f"Access token environment variable {self._env_var} is not set"
            )
        return token


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free message from an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            candidate = error_payload.get("message")
            if isinstance(candidate, str) and candidate.strip():
                message = candidate
        elif isinstance(error_payload, str) and error_payload.strip():
            message = error_payload
    if message is None:
        message = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_secrets(message).split())[:_ERROR_MESSAGE_LIMIT]


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Remote calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_optional_rfc3339(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def _parse_boundary(payload: Any) -> tuple[datetime, bool]:
    """Return ``(instant, all_day)`` for a ``start``/``end`` payload."""
    if not isinstance(payload, dict):
        raise ValueError("Event is missing start/end payloads")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(f"Remote calendar returned an invalid date: {date_value}") from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), True
    raise ValueError("Event is missing start/end dateTime or date values")


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_remote_event(payload: dict[str, Any], *, calendar_id: str) -> RawEvent:
    """Parse one Google event resource.

    Raises:
        ValueError: the payload is missing its id or has unusable dates.
    """
    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Event payload is missing a non-empty id")

    start, all_day = _parse_boundary(payload.get("start"))
    end, _ = _parse_boundary(payload.get("end"))
    if end < start:
        raise ValueError(f"Event {event_id!r} ends before it starts")

    recurrence_raw = payload.get("recurrence")
    recurrence = (
        [rule for rule in recurrence_raw if isinstance(rule, str)]
        if isinstance(recurrence_raw, list)
        else []
    )
    return RawEvent(
        remote_id=event_id,
        calendar_id=calendar_id,
        title=_optional_text(payload.get("summary")) or "(untitled)",
        description=_optional_text(payload.get("description")),
        location=_optional_text(payload.get("location")),
        start=start,
        end=end,
        all_day=all_day,
        etag=_optional_text(payload.get("etag")),
        status=(_optional_text(payload.get("status")) or "confirmed").lower(),
        recurrence=recurrence,
        recurring_master_id=_optional_text(payload.get("recurringEventId")),
        created_at=_parse_optional_rfc3339(payload.get("created")),
        updated_at=_parse_optional_rfc3339(payload.get("updated")),
    )


def event_body(event: Event) -> dict[str, Any]:
    """Build the request body pushed for a local event."""
    body: dict[str, Any] = {"summary": event.title}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.all_day:
        end_date = event.end.date()
        if end_date <= event.start.date():
            end_date = event.start.date() + timedelta(days=1)
        body["start"] = {"date": event.start.date().isoformat()}
        body["end"] = {"date": end_date.isoformat()}
    else:
        body["start"] = {"dateTime": rfc3339(event.start)}
        body["end"] = {"dateTime": rfc3339(event.end)}
    return body


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class RemoteCalendarClient(abc.ABC):
    """The remote calendar operations the sync engine relies on."""

    @abc.abstractmethod
    async def list_calendars(self) -> list[RemoteCalendarDescriptor]: ...

    @abc.abstractmethod
    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None = None,
    ) -> EventPage: ...

    @abc.abstractmethod
    async def fetch_changes(self, calendar_id: str, sync_token: str | None) -> FetchResult:
        """Fetch changes since ``sync_token``, or everything in the window when ``None``.

        An invalidated token is never surfaced: the call falls back to a
        full fetch and reports ``full_sync=True``.
        """

    @abc.abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> RawEvent | None: ...

    @abc.abstractmethod
    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> RawEvent: ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        *,
        etag: str | None = None,
    ) -> RawEvent: ...

    @abc.abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        etag: str | None = None,
    ) -> None: ...

    async def aclose(self) -> None:
        """Release any transport resources held by the client."""


class GoogleCalendarClient(RemoteCalendarClient):
    """Google Calendar v3 client over :class:`httpx.AsyncClient`."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        timeout_seconds: float = 30.0,
        full_sync_past_days: int = DEFAULT_FULL_SYNC_PAST_DAYS,
        full_sync_future_days: int = DEFAULT_FULL_SYNC_FUTURE_DAYS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tokens = token_provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._full_sync_past = timedelta(days=full_sync_past_days)
        self._full_sync_future = timedelta(days=full_sync_future_days)
        self._clock = clock
        self._sleep = sleep

    # -- transport ---------------------------------------------------------

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        access_token = await self._tokens.get_access_token()
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteCalendarError(
                f"Remote calendar request failed: {redact_secrets(str(exc))}"
            ) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path if path.startswith('/') else '/' + path}"
        response = await self._request_once(
            method, url, params=params, json_body=json_body, extra_headers=extra_headers
        )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Remote calendar rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await self._sleep(backoff)
            response = await self._request_once(
                method, url, params=params, json_body=json_body, extra_headers=extra_headers
            )
            retry += 1

        return response

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteCalendarError(
                "Remote calendar returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteCalendarError("Remote calendar returned an unexpected JSON payload shape")
        return payload

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path = f"{path}/{quote(event_id.strip(), safe='')}"
        return path

    # -- reads -------------------------------------------------------------

    async def list_calendars(self) -> list[RemoteCalendarDescriptor]:
        calendars: list[RemoteCalendarDescriptor] = []
        params: dict[str, Any] = {"maxResults": DEFAULT_PAGE_SIZE}
        while True:
            payload = self._json_payload(
                await self._request("GET", "/users/me/calendarList", params=params)
            )
            items = payload.get("items")
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict):
                    continue
                calendar_id = _optional_text(item.get("id"))
                if calendar_id is None:
                    logger.warning("Skipping calendar list entry without an id")
                    continue
                primary = item.get("primary") is True
                calendars.append(
                    RemoteCalendarDescriptor(
                        id=calendar_id,
                        name=_optional_text(item.get("summaryOverride"))
                        or _optional_text(item.get("summary"))
                        or calendar_id,
                        primary=primary,
                        enabled=primary or item.get("selected") is True,
                    )
                )
            next_page_token = _optional_text(payload.get("nextPageToken"))
            if next_page_token is None:
                return calendars
            params["pageToken"] = next_page_token

    def _parse_items(
        self,
        payload: dict[str, Any],
        calendar_id: str,
    ) -> tuple[list[RawEvent], list[str]]:
        events: list[RawEvent] = []
        cancelled: list[str] = []
        items = payload.get("items")
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                logger.warning("Skipping non-object event item from calendar %s", calendar_id)
                continue
            status = item.get("status")
            if isinstance(status, str) and status.lower() == "cancelled":
                event_id = _optional_text(item.get("id"))
                if event_id is not None:
                    cancelled.append(event_id)
                continue
            try:
                events.append(parse_remote_event(item, calendar_id=calendar_id))
            except ValueError as exc:
                logger.warning(
                    "Skipping malformed event %r from calendar %s: %s",
                    item.get("id"),
                    calendar_id,
                    exc,
                )
        return events, cancelled

    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "timeMin": rfc3339(time_min),
            "timeMax": rfc3339(time_max),
            "singleEvents": False,
            "showDeleted": False,
            "maxResults": DEFAULT_PAGE_SIZE,
        }
        if page_token is not None:
            params["pageToken"] = page_token
        payload = self._json_payload(
            await self._request("GET", self._events_path(calendar_id), params=params)
        )
        events, _ = self._parse_items(payload, calendar_id)
        return EventPage(items=events, next_page_token=_optional_text(payload.get("nextPageToken")))

    async def fetch_changes(self, calendar_id: str, sync_token: str | None) -> FetchResult:
        if sync_token is None:
            return await self._fetch_changes_once(calendar_id, None)
        try:
            return await self._fetch_changes_once(calendar_id, sync_token)
        except SyncTokenInvalidatedError:
            logger.warning(
                "Sync token invalidated for calendar %s; falling back to a full fetch",
                calendar_id,
            )
            return await self._fetch_changes_once(calendar_id, None)

    async def _fetch_changes_once(self, calendar_id: str, sync_token: str | None) -> FetchResult:
        params: dict[str, Any] = {"singleEvents": False, "maxResults": DEFAULT_PAGE_SIZE}
        if sync_token is not None:
            params["syncToken"] = sync_token
            params["showDeleted"] = True
        else:
            now = self._clock()
            params["timeMin"] = rfc3339(now - self._full_sync_past)
            params["timeMax"] = rfc3339(now + self._full_sync_future)
            params["showDeleted"] = False

        events: list[RawEvent] = []
        cancelled_ids: list[str] = []
        next_sync_token: str | None = None
        while True:
            response = await self._request("GET", self._events_path(calendar_id), params=params)
            if response.status_code == 410 and sync_token is not None:
                raise SyncTokenInvalidatedError(
                    f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
                )
            payload = self._json_payload(response)

            page_events, page_cancelled = self._parse_items(payload, calendar_id)
            events.extend(page_events)
            cancelled_ids.extend(page_cancelled)

            candidate_sync_token = _optional_text(payload.get("nextSyncToken"))
            if candidate_sync_token is not None:
                next_sync_token = candidate_sync_token
            next_page_token = _optional_text(payload.get("nextPageToken"))
            if next_page_token is None:
                break
            params["pageToken"] = next_page_token

        if next_sync_token is None:
            raise RemoteCalendarError(
                f"Remote calendar sync response for '{calendar_id}' did not return nextSyncToken"
            )
        return FetchResult(
            events=events,
            cancelled_ids=cancelled_ids,
            next_sync_token=next_sync_token,
            full_sync=sync_token is None,
        )

    async def get_event(self, calendar_id: str, event_id: str) -> RawEvent | None:
        response = await self._request("GET", self._events_path(calendar_id, event_id))
        if response.status_code in (404, 410):
            return None
        payload = self._json_payload(response)
        return parse_remote_event(payload, calendar_id=calendar_id)

    # -- writes ------------------------------------------------------------

    async def _version_mismatch(self, calendar_id: str, event_id: str) -> VersionMismatchError:
        try:
            snapshot = await self.get_event(calendar_id, event_id)
        except (RemoteCalendarError, ValueError) as exc:
            logger.warning(
                "Could not read back remote event %s after version mismatch: %s", event_id, exc
            )
            snapshot = None
        return VersionMismatchError(event_id=event_id, remote_snapshot=snapshot)

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> RawEvent:
        payload = self._json_payload(
            await self._request("POST", self._events_path(calendar_id), json_body=body)
        )
        return parse_remote_event(payload, calendar_id=calendar_id)

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        *,
        etag: str | None = None,
    ) -> RawEvent:
        response = await self._request(
            "PATCH",
            self._events_path(calendar_id, event_id),
            json_body=body,
            extra_headers={"If-Match": etag} if etag else None,
        )
        if response.status_code == 412:
            raise await self._version_mismatch(calendar_id, event_id)
        payload = self._json_payload(response)
        return parse_remote_event(payload, calendar_id=calendar_id)

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        etag: str | None = None,
    ) -> None:
        response = await self._request(
            "DELETE",
            self._events_path(calendar_id, event_id),
            extra_headers={"If-Match": etag} if etag else None,
        )
        if response.status_code in (404, 410):
            # Already gone remotely.
            return
        if response.status_code == 412:
            raise await self._version_mismatch(calendar_id, event_id)
        self._json_payload(response)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
