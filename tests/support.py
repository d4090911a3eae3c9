"""Builders and test doubles shared across the calsync tests."""

from __future__ import annotations

import base64
import shutil
from collections.abc import Sequence
from datetime import UTC, datetime

from calsync.calendar.models import (
    CalendarSource,
    RemoteCalendarObject,
    SyncCredentials,
    SyncWindow,
)

docker_available = shutil.which("docker") is not None

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
CALDAV_URL = "https://dav.example.com/calendars/user-1/work/"


class ReversibleCipher:
    """Test cipher: base64 with a marker prefix, rejects foreign ciphertext."""

    prefix = "enc:"

    def encrypt(self, plaintext: str) -> str:
        return self.prefix + base64.b64encode(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext.startswith(self.prefix):
            raise ValueError("ciphertext was not produced by this cipher")
        return base64.b64decode(ciphertext[len(self.prefix) :]).decode()


def vcalendar(*components: str) -> str:
    """Wrap VEVENT/VTODO blocks in a VCALENDAR with CRLF line endings.

    Folded continuation lines keep their leading whitespace.
    """
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calsync tests//EN"]
    for component in components:
        lines.extend(component.strip().splitlines())
    lines.append("END:VCALENDAR")
    return "\r\n".join(line.rstrip() for line in lines) + "\r\n"


def vevent(uid: str, *props: str, summary: str | None = None) -> str:
    lines = ["BEGIN:VEVENT", f"UID:{uid}", "DTSTAMP:20250101T000000Z"]
    if summary is not None:
        lines.append(f"SUMMARY:{summary}")
    lines.extend(props)
    lines.append("END:VEVENT")
    return "\n".join(lines)


STANDUP = vevent(
    "standup@example.com",
    "DTSTART:20250106T090000Z",
    "DTEND:20250106T091500Z",
    summary="Standup",
)
RETRO = vevent(
    "retro@example.com",
    "DTSTART:20250103T160000Z",
    "DTEND:20250103T170000Z",
    "RRULE:FREQ=WEEKLY;BYDAY=FR",
    summary="Retro",
)
STANDUP_RETRO_ICS = vcalendar(STANDUP, RETRO)

JANUARY_WINDOW = SyncWindow(
    start=datetime(2025, 1, 1, tzinfo=UTC),
    end=datetime(2025, 1, 15, tzinfo=UTC),
)


class FakeTransport:
    """Transport double returning canned objects and recording every call."""

    def __init__(self, objects: Sequence[RemoteCalendarObject] | None = None) -> None:
        self.objects: list[RemoteCalendarObject] = list(objects or [])
        self.calls: list[tuple[str, SyncWindow, SyncCredentials | None]] = []
        self.error: Exception | None = None
        self.errors_by_source: dict[str, Exception] = {}

    def set_ics(self, *payloads: str) -> None:
        self.objects = [
            RemoteCalendarObject(
                href=f"/calendars/user-1/work/{i}.ics",
                ics=payload,
                calendar_url=CALDAV_URL,
            )
            for i, payload in enumerate(payloads)
        ]

    async def fetch_objects(
        self,
        source: CalendarSource,
        window: SyncWindow,
        credentials: SyncCredentials | None,
    ) -> list[RemoteCalendarObject]:
        self.calls.append((source.id, window, credentials))
        if source.id in self.errors_by_source:
            raise self.errors_by_source[source.id]
        if self.error is not None:
            raise self.error
        return list(self.objects)


def make_source(
    source_id: str = "src-1",
    *,
    user_id: str = USER_ID,
    url: str = CALDAV_URL,
    cipher: ReversibleCipher | None = None,
    username: str | None = None,
    password: str | None = None,
    created_at: datetime | None = None,
) -> CalendarSource:
    cipher = cipher or ReversibleCipher()
    return CalendarSource(
        id=source_id,
        user_id=user_id,
        name=f"Calendar {source_id}",
        url=url,
        username=cipher.encrypt(username) if username else None,
        password=cipher.encrypt(password) if password else None,
        created_at=created_at or datetime(2024, 12, 1, tzinfo=UTC),
    )
