"""Tests for calsync.calendar.ics: iCalendar parsing and occurrence expansion."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from support import JANUARY_WINDOW, RETRO, STANDUP, STANDUP_RETRO_ICS, vcalendar, vevent

from calsync.calendar.errors import ComponentParseError, ParseError
from calsync.calendar.ics import (
    _override_key,
    build_occurrences,
    overlaps_window,
    parse,
    parse_components,
    resolve_timezone,
)
from calsync.calendar.models import DEFAULT_EVENT_TITLE, CalendarComponent, SyncWindow
from calsync.calendar.recurrence import MAX_OCCURRENCES_PER_COMPONENT

pytestmark = pytest.mark.unit

MARCH_WINDOW = SyncWindow(
    start=datetime(2025, 3, 1, tzinfo=UTC),
    end=datetime(2025, 4, 1, tzinfo=UTC),
)


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Component parsing
# ---------------------------------------------------------------------------


class TestParseComponents:
    def test_reads_core_fields(self):
        ics = vcalendar(
            vevent(
                "evt-1",
                "DTSTART:20250106T090000Z",
                "DTEND:20250106T100000Z",
                "DESCRIPTION:Weekly sync",
                "LOCATION:Room 4",
                "SEQUENCE:3",
                "STATUS:confirmed",
                summary="Planning",
            )
        )

        [component] = parse_components(ics)

        assert component.uid == "evt-1"
        assert component.summary == "Planning"
        assert component.description == "Weekly sync"
        assert component.location == "Room 4"
        assert component.sequence == 3
        assert component.status == "CONFIRMED"
        assert component.all_day is False
        assert component.start == _utc(2025, 1, 6, 9)
        assert component.end == _utc(2025, 1, 6, 10)

    def test_folded_lines_alarms_and_unknown_properties(self):
        event = vevent(
            "evt-folded",
            "DTSTART:20250106T090000Z",
            "DTEND:20250106T100000Z",
            "SUMMARY:Quarterly planning review with the",
            "  product and design teams",
            "X-MS-OLK-CONFTYPE:0",
            "X-CUSTOM-COLOR;X-PARAM=1:teal",
            "BEGIN:VALARM",
            "ACTION:DISPLAY",
            "DESCRIPTION:Reminder",
            "TRIGGER:-PT15M",
            "END:VALARM",
        )
        skipped: list[ComponentParseError] = []

        [component] = parse_components(vcalendar(event), on_skip=skipped.append)

        assert skipped == []
        assert component.summary == "Quarterly planning review with the product and design teams"
        assert component.description is None
        assert component.start == _utc(2025, 1, 6, 9)
        assert component.end == _utc(2025, 1, 6, 10)

    def test_duration_derives_end(self):
        ics = vcalendar(vevent("evt-1", "DTSTART:20250106T090000Z", "DURATION:PT30M"))

        [component] = parse_components(ics)

        assert component.end - component.start == timedelta(minutes=30)

    def test_all_day_without_end_spans_one_day(self):
        ics = vcalendar(vevent("day-1", "DTSTART;VALUE=DATE:20250301"))

        [component] = parse_components(ics)

        assert component.all_day is True
        assert component.start == date(2025, 3, 1)
        assert component.end == date(2025, 3, 2)

    def test_missing_uid_skips_only_that_component(self):
        no_uid = "\n".join(
            [
                "BEGIN:VEVENT",
                "DTSTAMP:20250101T000000Z",
                "DTSTART:20250107T090000Z",
                "SUMMARY:Orphan",
                "END:VEVENT",
            ]
        )
        skipped: list[ComponentParseError] = []

        components = parse_components(vcalendar(no_uid, STANDUP), on_skip=skipped.append)

        assert [c.uid for c in components] == ["standup@example.com"]
        assert len(skipped) == 1

    def test_missing_dtstart_is_skipped(self):
        broken = vevent("no-start", summary="No start")
        skipped: list[ComponentParseError] = []

        components = parse_components(vcalendar(broken, STANDUP), on_skip=skipped.append)

        assert [c.uid for c in components] == ["standup@example.com"]
        assert skipped[0].uid == "no-start"

    def test_vtodo_uses_due_when_dtstart_missing(self):
        todo = "\n".join(
            [
                "BEGIN:VTODO",
                "UID:todo-1",
                "DTSTAMP:20250101T000000Z",
                "DUE:20250110T120000Z",
                "SUMMARY:File taxes",
                "END:VTODO",
            ]
        )

        [component] = parse_components(vcalendar(todo))

        assert component.kind == "VTODO"
        assert component.start == _utc(2025, 1, 10, 12)

    def test_non_numeric_sequence_defaults_to_zero(self):
        ics = vcalendar(vevent("evt-1", "DTSTART:20250106T090000Z", "SEQUENCE:abc"))

        [component] = parse_components(ics)

        assert component.sequence == 0

    def test_end_before_start_collapses_to_zero_length(self):
        ics = vcalendar(
            vevent("evt-1", "DTSTART:20250106T090000Z", "DTEND:20250106T080000Z")
        )

        [component] = parse_components(ics)

        assert component.end == component.start

    def test_empty_payload_raises(self):
        with pytest.raises(ParseError):
            parse_components("   ")

    def test_garbage_payload_raises(self):
        with pytest.raises(ParseError):
            parse_components("this is not a calendar")

    def test_payload_without_vcalendar_raises(self):
        with pytest.raises(ParseError, match="VCALENDAR"):
            parse_components(STANDUP.replace("\n", "\r\n") + "\r\n")


class TestResolveTimezone:
    def test_iana_name(self):
        assert resolve_timezone("Europe/Berlin") == ZoneInfo("Europe/Berlin")

    def test_unknown_name_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus_Mons") is UTC

    def test_missing_name_is_utc(self):
        assert resolve_timezone(None) is UTC

    def test_embedded_definition_used_when_not_in_database(self):
        custom = ZoneInfo("America/New_York")

        assert resolve_timezone("Custom Eastern", {"Custom Eastern": custom}) is custom


# ---------------------------------------------------------------------------
# Occurrence expansion
# ---------------------------------------------------------------------------


class TestParse:
    def test_standup_and_weekly_retro(self):
        occurrences = parse(STANDUP_RETRO_ICS, JANUARY_WINDOW, source_id="src-1")

        assert [(o.title, o.start) for o in occurrences] == [
            ("Retro", _utc(2025, 1, 3, 16)),
            ("Standup", _utc(2025, 1, 6, 9)),
            ("Retro", _utc(2025, 1, 10, 16)),
        ]
        assert {o.uid for o in occurrences} == {"standup@example.com", "retro@example.com"}
        assert all(o.source_id == "src-1" for o in occurrences)

    def test_monthly_and_yearly_series(self):
        year = SyncWindow(start=_utc(2025, 1, 1), end=_utc(2026, 1, 1))
        payroll = vevent(
            "payroll@example.com",
            "DTSTART;VALUE=DATE:20250115",
            "RRULE:FREQ=MONTHLY;BYMONTHDAY=15,31;INTERVAL=2;COUNT=4",
            summary="Payroll",
        )
        anniversary = vevent(
            "anniversary@example.com",
            "DTSTART:20190610T170000Z",
            "RRULE:FREQ=YEARLY",
            summary="Anniversary",
        )

        occurrences = parse(vcalendar(payroll, anniversary), year, source_id="src-1")

        assert [(o.title, o.recurrence_key) for o in occurrences] == [
            ("Payroll", "2025-01-15"),
            ("Payroll", "2025-01-31"),
            ("Payroll", "2025-03-15"),
            ("Payroll", "2025-03-31"),
            ("Anniversary", "2025-06-10T17:00:00+00:00"),
        ]

    def test_recurrence_keys_are_instance_starts(self):
        occurrences = parse(vcalendar(RETRO), JANUARY_WINDOW, source_id="src-1")

        assert [o.recurrence_key for o in occurrences] == [
            "2025-01-03T16:00:00+00:00",
            "2025-01-10T16:00:00+00:00",
        ]

    def test_all_day_event_has_no_time_component(self):
        ics = vcalendar(vevent("day-1", "DTSTART;VALUE=DATE:20250301", summary="Holiday"))

        [occurrence] = parse(ics, MARCH_WINDOW, source_id="src-1")

        assert occurrence.all_day is True
        assert type(occurrence.start) is date
        assert occurrence.start == date(2025, 3, 1)
        assert occurrence.end == date(2025, 3, 2)
        assert occurrence.recurrence_key == "2025-03-01"

    def test_tzid_times_are_stored_in_utc(self):
        ics = vcalendar(
            vevent(
                "berlin-1",
                "DTSTART;TZID=Europe/Berlin:20250106T090000",
                "DTEND;TZID=Europe/Berlin:20250106T100000",
            )
        )

        [occurrence] = parse(ics, JANUARY_WINDOW, source_id="src-1")

        assert occurrence.start == _utc(2025, 1, 6, 8)
        assert occurrence.end == _utc(2025, 1, 6, 9)

    def test_floating_time_is_treated_as_utc(self):
        ics = vcalendar(vevent("floating-1", "DTSTART:20250106T090000"))

        [occurrence] = parse(ics, JANUARY_WINDOW, source_id="src-1")

        assert occurrence.start == _utc(2025, 1, 6, 9)

    def test_missing_summary_uses_default_title(self):
        ics = vcalendar(vevent("evt-1", "DTSTART:20250106T090000Z"))

        [occurrence] = parse(ics, JANUARY_WINDOW, source_id="src-1")

        assert occurrence.title == DEFAULT_EVENT_TITLE

    def test_events_outside_window_are_excluded(self):
        ics = vcalendar(vevent("late", "DTSTART:20250201T090000Z"))

        assert parse(ics, JANUARY_WINDOW, source_id="src-1") == []

    def test_event_starting_at_window_end_is_excluded(self):
        ics = vcalendar(vevent("edge", "DTSTART:20250115T000000Z"))

        assert parse(ics, JANUARY_WINDOW, source_id="src-1") == []

    def test_unbounded_rule_stays_inside_window(self):
        ics = vcalendar(
            vevent("daily", "DTSTART:20240101T100000Z", "RRULE:FREQ=DAILY", summary="Daily")
        )

        occurrences = parse(ics, JANUARY_WINDOW, source_id="src-1")

        assert len(occurrences) == 14
        assert all(JANUARY_WINDOW.contains(o.start) for o in occurrences)

    def test_unbounded_rule_is_capped(self):
        ics = vcalendar(vevent("daily", "DTSTART:20250101T100000Z", "RRULE:FREQ=DAILY"))
        three_years = SyncWindow(start=_utc(2025, 1, 1), end=_utc(2028, 1, 1))

        occurrences = parse(ics, three_years, source_id="src-1")

        assert len(occurrences) == MAX_OCCURRENCES_PER_COMPONENT

    def test_exdate_removes_instance(self):
        retro = vevent(
            "retro@example.com",
            "DTSTART:20250103T160000Z",
            "RRULE:FREQ=WEEKLY;BYDAY=FR",
            "EXDATE:20250110T160000Z",
            summary="Retro",
        )

        occurrences = parse(vcalendar(retro), JANUARY_WINDOW, source_id="src-1")

        assert [o.start for o in occurrences] == [_utc(2025, 1, 3, 16)]

    def test_rdate_adds_instance(self):
        standup = vevent(
            "standup@example.com",
            "DTSTART:20250106T090000Z",
            "RDATE:20250108T120000Z",
            summary="Standup",
        )

        occurrences = parse(vcalendar(standup), JANUARY_WINDOW, source_id="src-1")

        assert [o.start for o in occurrences] == [_utc(2025, 1, 6, 9), _utc(2025, 1, 8, 12)]

    def test_override_replaces_generated_instance(self):
        moved = vevent(
            "retro@example.com",
            "RECURRENCE-ID:20250110T160000Z",
            "DTSTART:20250110T180000Z",
            "DTEND:20250110T190000Z",
            "SEQUENCE:1",
            summary="Retro (moved)",
        )

        occurrences = parse(vcalendar(RETRO, moved), JANUARY_WINDOW, source_id="src-1")

        assert [(o.title, o.start) for o in occurrences] == [
            ("Retro", _utc(2025, 1, 3, 16)),
            ("Retro (moved)", _utc(2025, 1, 10, 18)),
        ]
        assert occurrences[1].recurrence_key == "2025-01-10T16:00:00+00:00"
        assert occurrences[1].sequence == 1

    def test_cancelled_override_removes_instance(self):
        cancelled = vevent(
            "retro@example.com",
            "RECURRENCE-ID:20250110T160000Z",
            "DTSTART:20250110T160000Z",
            "STATUS:CANCELLED",
        )

        occurrences = parse(vcalendar(RETRO, cancelled), JANUARY_WINDOW, source_id="src-1")

        assert [o.start for o in occurrences] == [_utc(2025, 1, 3, 16)]

    def test_override_moved_out_of_window_is_dropped(self):
        moved = vevent(
            "retro@example.com",
            "RECURRENCE-ID:20250110T160000Z",
            "DTSTART:20250120T160000Z",
        )

        occurrences = parse(vcalendar(RETRO, moved), JANUARY_WINDOW, source_id="src-1")

        assert [o.start for o in occurrences] == [_utc(2025, 1, 3, 16)]

    def test_cancelled_master_yields_nothing(self):
        cancelled = vevent(
            "standup@example.com",
            "DTSTART:20250106T090000Z",
            "STATUS:CANCELLED",
        )

        assert parse(vcalendar(cancelled), JANUARY_WINDOW, source_id="src-1") == []

    def test_bad_rrule_skips_series_but_keeps_siblings(self):
        broken = vevent(
            "broken@example.com",
            "DTSTART:20250106T090000Z",
            "RRULE:FREQ=DAILY;COUNT=0",
        )
        skipped: list[ComponentParseError] = []

        occurrences = parse(
            vcalendar(broken, STANDUP),
            JANUARY_WINDOW,
            source_id="src-1",
            on_skip=skipped.append,
        )

        assert [o.uid for o in occurrences] == ["standup@example.com"]
        assert [exc.uid for exc in skipped] == ["broken@example.com"]

    def test_calendar_url_is_carried(self):
        occurrences = parse(
            vcalendar(STANDUP),
            JANUARY_WINDOW,
            source_id="src-1",
            calendar_url="https://dav.example.com/cal/",
        )

        assert occurrences[0].calendar_url == "https://dav.example.com/cal/"


class TestBuildOccurrences:
    def test_override_key_requires_recurrence_id(self):
        component = CalendarComponent(uid="standup@example.com", start=_utc(2025, 1, 6, 9))

        with pytest.raises(ComponentParseError, match="RECURRENCE-ID") as excinfo:
            _override_key(component, None)

        assert excinfo.value.uid == "standup@example.com"

    def test_override_key_on_all_day_master_uses_date(self):
        master = CalendarComponent(uid="day", start=date(2025, 1, 6), all_day=True)
        override = CalendarComponent(
            uid="day", start=date(2025, 1, 7), all_day=True, recurrence_id=_utc(2025, 1, 6)
        )

        assert _override_key(override, master) == "2025-01-06"

    def test_highest_sequence_master_wins(self):
        old = vevent("dup", "DTSTART:20250106T090000Z", "SEQUENCE:1", summary="Old")
        new = vevent("dup", "DTSTART:20250106T090000Z", "SEQUENCE:2", summary="New")
        components = parse_components(vcalendar(new)) + parse_components(vcalendar(old))

        [occurrence] = build_occurrences(components, JANUARY_WINDOW, source_id="src-1")

        assert occurrence.title == "New"
        assert occurrence.sequence == 2

    def test_todos_are_not_expanded(self):
        todo = "\n".join(
            [
                "BEGIN:VTODO",
                "UID:todo-1",
                "DTSTAMP:20250101T000000Z",
                "DTSTART:20250106T090000Z",
                "END:VTODO",
            ]
        )
        components = parse_components(vcalendar(todo, STANDUP))

        occurrences = build_occurrences(components, JANUARY_WINDOW, source_id="src-1")

        assert [o.uid for o in occurrences] == ["standup@example.com"]

    def test_per_uid_calendar_urls(self):
        components = parse_components(STANDUP_RETRO_ICS)

        occurrences = build_occurrences(
            components,
            JANUARY_WINDOW,
            source_id="src-1",
            calendar_urls={"retro@example.com": "https://dav.example.com/team/"},
        )

        urls = {o.uid: o.calendar_url for o in occurrences}
        assert urls == {
            "retro@example.com": "https://dav.example.com/team/",
            "standup@example.com": None,
        }


class TestOverlapsWindow:
    def test_matching_payload(self):
        assert overlaps_window(vcalendar(STANDUP), JANUARY_WINDOW) is True

    def test_non_matching_payload(self):
        ics = vcalendar(vevent("late", "DTSTART:20250301T090000Z"))

        assert overlaps_window(ics, JANUARY_WINDOW) is False

    def test_unparsable_payload_is_kept(self):
        assert overlaps_window("garbage", JANUARY_WINDOW) is True
