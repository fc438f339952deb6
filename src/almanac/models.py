"""Canonical record shapes shared by the sync engine, queue, and stores.

Every persisted record carries a string ``id`` and is written to an
:class:`~almanac.store.EntityStore` as ``model_dump(mode="json")``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class EntityType(StrEnum):
    """Kinds of locally-owned entities that can be mutated and pushed."""

    event = "event"
    todo = "todo"
    goal = "goal"
    note = "note"


class SyncStatus(StrEnum):
    """Per-entity sync state."""

    pending = "pending"
    synced = "synced"
    error = "error"


class ScopeStatus(StrEnum):
    """Sync scope state machine."""

    idle = "idle"
    syncing = "syncing"
    error = "error"


class MutationOperation(StrEnum):
    create = "create"
    update = "update"
    delete = "delete"


class MutationResolution(StrEnum):
    """Lifecycle of a queued outbound mutation."""

    pending = "pending"
    synced = "synced"
    local_wins = "local-wins"
    remote_wins = "remote-wins"


class ConflictStrategy(StrEnum):
    """How a detected local/remote divergence is settled."""

    local_wins = "local-wins"
    remote_wins = "remote-wins"
    merge_by_recency = "merge-by-recency"


# ---------------------------------------------------------------------------
# Local entities
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """A calendar event held in the local store.

    At most one Event exists per ``(source_calendar_id, remote_id)``; events
    imported by sync use :func:`synced_event_id` as their store id so that a
    retried import overwrites instead of duplicating.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    remote_id: str | None = None
    source_calendar_id: str = Field(min_length=1)
    title: str
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    etag: str | None = None
    recurring_master_id: str | None = None
    sync_status: SyncStatus = SyncStatus.synced
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_synced_at: datetime | None = None


class Todo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str
    completed: bool = False
    due_date: date | None = None
    priority: Literal["low", "medium", "high"] | None = None
    sync_status: SyncStatus = SyncStatus.pending
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Goal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str
    deadline: date | None = None
    progress: int = Field(default=0, ge=0, le=100)
    sync_status: SyncStatus = SyncStatus.pending
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Note(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.pending
    created_at: datetime | None = None
    updated_at: datetime | None = None


LocalEntity = Event | Todo | Goal | Note

ENTITY_MODELS: dict[EntityType, type[BaseModel]] = {
    EntityType.event: Event,
    EntityType.todo: Todo,
    EntityType.goal: Goal,
    EntityType.note: Note,
}


def synced_event_id(calendar_id: str, remote_id: str) -> str:
    """Deterministic store id for an event imported from ``calendar_id``."""
    return f"{calendar_id}:{remote_id}"


def start_token(start: datetime, *, all_day: bool) -> str:
    """Render an event start the way the remote service does.

    All-day events use the bare ``YYYY-MM-DD`` date; timed events use an
    RFC 3339 UTC instant.
    """
    if all_day:
        return start.date().isoformat()
    normalized = start if start.tzinfo is not None else start.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Outbound payloads (closed tagged union)
# ---------------------------------------------------------------------------


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: Literal["event"] = "event"
    entity: Event


class TodoPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: Literal["todo"] = "todo"
    entity: Todo


class GoalPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: Literal["goal"] = "goal"
    entity: Goal


class NotePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: Literal["note"] = "note"
    entity: Note


EntityPayload = Annotated[
    EventPayload | TodoPayload | GoalPayload | NotePayload,
    Field(discriminator="entity_type"),
]


def payload_for(entity: LocalEntity) -> EventPayload | TodoPayload | GoalPayload | NotePayload:
    """Wrap a local entity in its tagged payload variant."""
    match entity:
        case Event():
            return EventPayload(entity=entity)
        case Todo():
            return TodoPayload(entity=entity)
        case Goal():
            return GoalPayload(entity=entity)
        case Note():
            return NotePayload(entity=entity)
    raise TypeError(f"Unsupported entity type: {type(entity).__name__}")


def entity_type_of(entity: LocalEntity) -> EntityType:
    return EntityType(payload_for(entity).entity_type)


# ---------------------------------------------------------------------------
# Remote-side shapes
# ---------------------------------------------------------------------------


class RawEvent(BaseModel):
    """An event as parsed from the remote calendar service."""

    model_config = ConfigDict(extra="forbid")

    remote_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    title: str = "(untitled)"
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    etag: str | None = None
    status: str = "confirmed"
    recurrence: list[str] = Field(default_factory=list)
    recurring_master_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("remote_id")
    @classmethod
    def _normalize_remote_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("remote_id must be a non-empty string")
        return normalized

    def to_event(self, *, now: datetime | None = None) -> Event:
        """Build the stored representation of this remote event."""
        return Event(
            id=synced_event_id(self.calendar_id, self.remote_id),
            remote_id=self.remote_id,
            source_calendar_id=self.calendar_id,
            title=self.title,
            description=self.description,
            location=self.location,
            start=self.start,
            end=self.end,
            all_day=self.all_day,
            etag=self.etag,
            recurring_master_id=self.recurring_master_id,
            sync_status=SyncStatus.synced,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_synced_at=now or utc_now(),
        )


class EventPage(BaseModel):
    """One page of a windowed event listing."""

    items: list[RawEvent] = Field(default_factory=list)
    next_page_token: str | None = None


class FetchResult(BaseModel):
    """Outcome of one full or incremental change fetch for a calendar."""

    events: list[RawEvent] = Field(default_factory=list)
    cancelled_ids: list[str] = Field(default_factory=list)
    next_sync_token: str
    full_sync: bool = False


class RemoteCalendarDescriptor(BaseModel):
    """A remote calendar; enabled calendars form the fetch scope of a pass."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str = ""
    primary: bool = False
    enabled: bool = True
    last_synced_at: datetime | None = None


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    """Counts from one sync pass."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = Field(default_factory=list)
    skipped: bool = False
    calendars_synced: list[str] = Field(default_factory=list)
    duplicates_dropped: int = 0


class SyncScopeState(BaseModel):
    """Per-scope sync metadata; created on first attempt, never deleted.

    ``sync_tokens`` maps remote calendar id to its last issued sync token. A
    calendar without an entry is fetched in full.
    """

    model_config = ConfigDict(extra="ignore")

    scope_id: str
    sync_tokens: dict[str, str] = Field(default_factory=dict)
    status: ScopeStatus = ScopeStatus.idle
    last_sync_time: datetime | None = None
    last_error: str | None = None
    full_sync_completed_at: datetime | None = None
    lock_acquired_at: datetime | None = None
    consecutive_errors: int = 0
    last_result: SyncResult | None = None


class OutboundMutation(BaseModel):
    """A local change waiting to be pushed to the remote service."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    sequence: int = 0
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    operation: MutationOperation
    payload: EntityPayload
    enqueued_at: datetime
    retry_count: int = 0
    resolution: MutationResolution = MutationResolution.pending
    last_error: str | None = None


class Conflict(BaseModel):
    """A local/remote divergence detected while pushing a mutation.

    ``operation`` is the local change that hit the divergence; a conflict
    raised by a local delete keeps the deleted entity's last snapshot as
    ``local_version``.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    mutation_id: str | None = None
    operation: MutationOperation = MutationOperation.update
    local_version: dict[str, Any]
    remote_version: dict[str, Any]
    detected_at: datetime
    resolved_at: datetime | None = None
    resolution: ConflictStrategy | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class DrainResult(BaseModel):
    """Counts from one outbound queue drain."""

    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    blocked: int = 0
    dead_lettered: int = 0
