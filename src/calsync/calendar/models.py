"""Data model for calendar synchronization.

Defines the pydantic records shared by the parser, transport, reconciliation
engine and orchestrator:

- ``CalendarSource`` / ``SourceView``: a user's external calendar and its
  redacted presentation
- ``SyncWindow``: the half-open ``[start, end)`` range a run is scoped to
- ``RemoteCalendarObject`` / ``CalendarComponent``: ephemeral transport and
  parser output
- ``Occurrence`` / ``OccurrenceKey``: the unit stored in the local cache
- ``SyncLogEntry`` / ``ReconcileResult`` / ``SyncAllResult``: run reporting
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

DEFAULT_SOURCE_COLOR = "#3b82f6"
DEFAULT_EVENT_TITLE = "Untitled Event"
# Latest representable instant; windows ending past year 9999 are capped here.
MAX_WINDOW_END = datetime.max.replace(tzinfo=UTC)

ComponentKind = Literal["VEVENT", "VTODO"]
SyncStatus = Literal["ok", "error"]
LogLevel = Literal["info", "warning", "error"]


class SyncStage(StrEnum):
    """Stage a sync log entry was emitted from."""

    FETCHING = "fetching"
    PARSING = "parsing"
    DIFFING = "diffing"
    APPLYING = "applying"


class RunState(StrEnum):
    """Lifecycle of one reconciliation run."""

    FETCHING = "fetching"
    PARSING = "parsing"
    DIFFING = "diffing"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


def utc_midnight(value: date) -> datetime:
    """Place a calendar date at UTC midnight for ordering/window comparisons only."""
    return datetime.combine(value, time.min, tzinfo=UTC)


def as_utc_instant(value: date | datetime) -> datetime:
    """Return an aware UTC datetime for *value* (dates map to UTC midnight)."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return utc_midnight(value)


def recurrence_key_for(value: date | datetime) -> str:
    """Stable textual key for an instance start (or RECURRENCE-ID)."""
    if isinstance(value, datetime):
        return as_utc_instant(value).isoformat()
    return value.isoformat()


# ---------------------------------------------------------------------------
# Sources and credentials
# ---------------------------------------------------------------------------


class CalendarSource(BaseModel):
    """A user's external CalDAV calendar.

    ``username`` and ``password`` hold ciphertext produced by the credential
    cipher; they are decrypted only for the duration of one sync run.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    username: str | None = None
    password: str | None = None
    color: str = DEFAULT_SOURCE_COLOR
    auth_scheme: Literal["basic", "digest"] = "basic"
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("user_id", "name", "url")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"CalendarSource(id={self.id!r}, user_id={self.user_id!r}, "
            f"name={self.name!r}, has_credentials={self.username is not None})"
        )


class SourceView(BaseModel):
    """Caller-facing view of a source: password never returned, username decrypted."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    name: str
    url: str
    username: str | None = None
    password: None = None
    color: str
    last_synced_at: datetime | None = None
    created_at: datetime


class SyncCredentials(BaseModel):
    """Decrypted credentials with a lifetime of a single sync run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str
    password: str
    scheme: Literal["basic", "digest"] = "basic"

    def __repr__(self) -> str:
        return (
            f"SyncCredentials(username={self.username!r}, password='***', "
            f"scheme={self.scheme!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------------


class SyncWindow(BaseModel):
    """Half-open ``[start, end)`` time range, always in UTC."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc_instant(value)

    @model_validator(mode="after")
    def _validate_order(self) -> SyncWindow:
        if self.start >= self.end:
            raise ValueError("window start must be before window end")
        return self

    @classmethod
    def for_date(cls, value: date | datetime) -> SyncWindow:
        """Normalize *value* to its UTC calendar day ``[startOfDay, startOfDay + 1 day)``."""
        if isinstance(value, datetime):
            value = as_utc_instant(value).date()
        start = utc_midnight(value)
        try:
            end = start + timedelta(days=1)
        except OverflowError:
            end = MAX_WINDOW_END
        return cls(start=start, end=end)

    @classmethod
    def around(
        cls,
        now: datetime,
        *,
        past_days: int,
        future_days: int,
    ) -> SyncWindow:
        """Window spanning *past_days* before and *future_days* after *now*."""
        now = as_utc_instant(now)
        return cls(start=now - timedelta(days=past_days), end=now + timedelta(days=future_days))

    def contains(self, value: date | datetime) -> bool:
        instant = as_utc_instant(value)
        return self.start <= instant < self.end

    def overlaps(self, start: date | datetime, end: date | datetime | None) -> bool:
        start_at = as_utc_instant(start)
        end_at = as_utc_instant(end) if end is not None else start_at
        if end_at <= start_at:
            return self.contains(start_at)
        return start_at < self.end and end_at > self.start


# ---------------------------------------------------------------------------
# Transport and parser output
# ---------------------------------------------------------------------------


class RemoteCalendarObject(BaseModel):
    """One CalDAV resource as fetched from the server."""

    model_config = ConfigDict(extra="forbid")

    href: str
    ics: str
    etag: str | None = None
    calendar_url: str | None = None


class CalendarComponent(BaseModel):
    """A single VEVENT/VTODO as read from iCalendar text."""

    model_config = ConfigDict(extra="forbid")

    kind: ComponentKind = "VEVENT"
    uid: str = Field(min_length=1)
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: datetime | date
    end: datetime | date | None = None
    all_day: bool = False
    rrule: str | None = None
    exdates: list[datetime | date] = Field(default_factory=list)
    rdates: list[datetime | date] = Field(default_factory=list)
    recurrence_id: datetime | date | None = None
    sequence: int = 0
    status: str | None = None

    @property
    def is_override(self) -> bool:
        return self.recurrence_id is not None

    @property
    def is_recurring(self) -> bool:
        return self.rrule is not None or bool(self.rdates)


# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class OccurrenceKey:
    """Composite identity of a stored occurrence."""

    source_id: str
    uid: str
    recurrence_key: str


class Occurrence(BaseModel):
    """One concrete event instance stored in the local cache."""

    model_config = ConfigDict(extra="forbid")

    source_id: str
    uid: str
    recurrence_key: str
    title: str = DEFAULT_EVENT_TITLE
    description: str | None = None
    location: str | None = None
    start: datetime | date
    end: datetime | date
    all_day: bool = False
    sequence: int = 0
    calendar_url: str | None = None
    last_synced_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_all_day_shape(self) -> Occurrence:
        start_is_date = not isinstance(self.start, datetime)
        end_is_date = not isinstance(self.end, datetime)
        if self.all_day and not (start_is_date and end_is_date):
            raise ValueError("all-day occurrences must use date boundaries")
        if not self.all_day and (start_is_date or end_is_date):
            raise ValueError("timed occurrences must use datetime boundaries")
        return self

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.source_id, self.uid, self.recurrence_key)

    @property
    def start_instant(self) -> datetime:
        return as_utc_instant(self.start)

    def sort_key(self) -> tuple[datetime, str, str]:
        return (self.start_instant, self.uid, self.recurrence_key)

    def payload(self) -> dict[str, Any]:
        """Fields compared when deciding whether a stored occurrence changed."""
        return {
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start,
            "end": self.end,
            "all_day": self.all_day,
            "sequence": self.sequence,
            "calendar_url": self.calendar_url,
        }

    def differs_from(self, other: Occurrence) -> bool:
        return self.payload() != other.payload()


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class SyncLogEntry(BaseModel):
    """One structured diagnostic line emitted during a sync run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: datetime
    stage: SyncStage
    level: LogLevel = "info"
    message: str
    detail: dict[str, Any] | None = None


class ReconcileResult(BaseModel):
    """Outcome of reconciling one source over one window."""

    model_config = ConfigDict(extra="forbid")

    status: SyncStatus = "ok"
    source_id: str | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: str | None = None
    debug: list[SyncLogEntry] | None = None

    @property
    def partial(self) -> bool:
        """True when data was imported but some entries had to be skipped."""
        return self.status == "ok" and self.skipped > 0

    @property
    def changed(self) -> int:
        return self.created + self.updated + self.deleted


class SyncAllResult(BaseModel):
    """Aggregate outcome of syncing every source owned by a user."""

    model_config = ConfigDict(extra="forbid")

    succeeded: int = 0
    failed: int = 0
    total: int = 0
    failures: dict[str, str] = Field(default_factory=dict)
    retryable: list[str] = Field(default_factory=list)
    results: dict[str, ReconcileResult] = Field(default_factory=dict)
