"""Error hierarchy for calendar synchronization.

Every error raised by the sync core derives from :class:`CalendarSyncError`
and carries an ``http_status`` for the route layer plus a ``user_message``
that distinguishes bad credentials/URL from temporary network trouble.
"""

from __future__ import annotations

from typing import Any


class CalendarSyncError(RuntimeError):
    """Base calendar sync error."""

    http_status: int = 500
    retryable: bool = False
    default_user_message: str = "Calendar sync failed."
    # Debug entries collected before the failure, attached by the orchestrator.
    debug_log: list[Any] | None = None

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        self.message = message
        self.user_message = user_message or self.default_user_message
        super().__init__(message)


class SourceNotFound(CalendarSyncError):
    """Raised when a calendar source id does not resolve to a record."""

    http_status = 404
    default_user_message = "Calendar source not found."

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Calendar source {source_id!r} not found")


class Forbidden(CalendarSyncError):
    """Raised when the caller does not own the calendar source."""

    http_status = 403
    default_user_message = "You do not have access to this calendar source."

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"Calendar source {source_id!r} is owned by another user")


class TransportError(CalendarSyncError):
    """Base error raised by the CalDAV transport."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        user_message: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message, user_message=user_message)


class AuthError(TransportError):
    """Remote server rejected the credentials (HTTP 401/403).

    Not retryable until the user supplies new credentials.
    """

    default_user_message = (
        "The calendar server rejected the login. Check your calendar credentials."
    )


class NetworkError(TransportError):
    """Transient failure: HTTP 5xx, timeouts or connection errors."""

    http_status = 503
    retryable = True
    default_user_message = (
        "The calendar server could not be reached. The sync will be retried automatically."
    )


class ProtocolError(TransportError):
    """The server answered with something that is not valid CalDAV."""

    default_user_message = (
        "The calendar server returned an unexpected response. Check the calendar URL."
    )


class ParseError(CalendarSyncError):
    """Raised when iCalendar data is structurally invalid."""

    http_status = 422
    default_user_message = "The calendar data could not be read."

    def __init__(self, message: str, *, uid: str | None = None, href: str | None = None) -> None:
        self.uid = uid
        self.href = href
        super().__init__(message)


class ComponentParseError(ParseError):
    """A single calendar component could not be parsed; siblings are unaffected."""
