"""Calendar sync core: data model, iCalendar parsing and the event store contract."""

from calsync.calendar.errors import (
    AuthError,
    CalendarSyncError,
    ComponentParseError,
    Forbidden,
    NetworkError,
    ParseError,
    ProtocolError,
    SourceNotFound,
    TransportError,
)
from calsync.calendar.ics import parse
from calsync.calendar.models import (
    CalendarSource,
    Occurrence,
    OccurrenceKey,
    ReconcileResult,
    SourceView,
    SyncAllResult,
    SyncCredentials,
    SyncWindow,
)
from calsync.calendar.store import EventStore, InMemoryEventStore

__all__ = [
    "AuthError",
    "CalendarSource",
    "CalendarSyncError",
    "ComponentParseError",
    "EventStore",
    "Forbidden",
    "InMemoryEventStore",
    "NetworkError",
    "Occurrence",
    "OccurrenceKey",
    "ParseError",
    "ProtocolError",
    "ReconcileResult",
    "SourceNotFound",
    "SourceView",
    "SyncAllResult",
    "SyncCredentials",
    "SyncWindow",
    "TransportError",
    "parse",
]
