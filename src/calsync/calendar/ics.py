"""iCalendar parsing into window-bounded occurrences.

Content-line handling (unfolding, parameter parsing, DATE vs DATE-TIME
values, VALARM and other sub-components) is delegated to :mod:`icalendar`.
This module turns the resulting components into provider-neutral
``CalendarComponent`` records and expands them into ``Occurrence`` records
for one sync window.

Timezones: a TZID is resolved against the IANA database first, then
against VTIMEZONE definitions embedded in the payload. Anything else,
including floating times, is treated as UTC. That fallback is a known
approximation and can be off by the zone offset around DST transitions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar
from icalendar.cal import Component

from calsync.calendar.errors import ComponentParseError, ParseError
from calsync.calendar.models import (
    DEFAULT_EVENT_TITLE,
    CalendarComponent,
    Occurrence,
    SyncWindow,
    as_utc_instant,
    recurrence_key_for,
)
from calsync.calendar.recurrence import MAX_OCCURRENCES_PER_COMPONENT, expand_starts

logger = logging.getLogger(__name__)

SUPPORTED_KINDS = ("VEVENT", "VTODO")
CANCELLED_STATUS = "CANCELLED"

SkipHandler = Callable[[ComponentParseError], None]


def _log_skip(error: ComponentParseError) -> None:
    logger.warning("Skipping unparsable calendar component (uid=%s): %s", error.uid, error)


# ---------------------------------------------------------------------------
# Timezone resolution
# ---------------------------------------------------------------------------


def _embedded_timezones(calendars: Iterable[Component]) -> dict[str, tzinfo]:
    """Map TZID -> tzinfo for VTIMEZONE components carried in the payload."""
    resolved: dict[str, tzinfo] = {}
    for cal in calendars:
        for vtimezone in cal.walk("VTIMEZONE"):
            tzid = vtimezone.get("TZID")
            if tzid is None:
                continue
            try:
                resolved[str(tzid)] = vtimezone.to_tz()
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.debug("Ignoring unusable VTIMEZONE %s: %s", tzid, exc)
    return resolved


def resolve_timezone(tzid: str | None, embedded: dict[str, tzinfo] | None = None) -> tzinfo:
    """Resolve *tzid* to a tzinfo, falling back to UTC."""
    if not tzid:
        return UTC
    normalized = tzid.strip().strip('"')
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError):
        pass
    if embedded and normalized in embedded:
        return embedded[normalized]
    logger.warning("Unknown TZID %r; treating times as UTC", tzid)
    return UTC


def _localize(value: Any, tzid: str | None, embedded: dict[str, tzinfo]) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=resolve_timezone(tzid, embedded))
    return value


def _param(prop: Any, name: str) -> str | None:
    params = getattr(prop, "params", None)
    if not params:
        return None
    value = params.get(name)
    return str(value) if value is not None else None


def _first(prop: Any) -> Any:
    if isinstance(prop, list):
        return prop[0] if prop else None
    return prop


def _decode_time(
    component: Component,
    name: str,
    embedded: dict[str, tzinfo],
) -> date | datetime | timedelta | None:
    prop = _first(component.get(name))
    if prop is None:
        return None
    value = getattr(prop, "dt", None)
    if value is None:
        raise ComponentParseError(f"{name} has no usable value", uid=_uid_or_none(component))
    if isinstance(value, tuple):
        # PERIOD values: keep the period start.
        value = value[0]
    return _localize(value, _param(prop, "TZID"), embedded)


def _decode_time_list(
    component: Component,
    name: str,
    embedded: dict[str, tzinfo],
) -> list[date | datetime]:
    raw = component.get(name)
    if raw is None:
        return []
    props = raw if isinstance(raw, list) else [raw]
    values: list[date | datetime] = []
    for prop in props:
        tzid = _param(prop, "TZID")
        for item in getattr(prop, "dts", []):
            value = getattr(item, "dt", None)
            if isinstance(value, tuple):
                value = value[0]
            if isinstance(value, date):
                values.append(_localize(value, tzid, embedded))
    return values


def _text(component: Component, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _uid_or_none(component: Component) -> str | None:
    return _text(component, "UID")


# ---------------------------------------------------------------------------
# Component parsing
# ---------------------------------------------------------------------------


def parse_calendars(raw_text: str) -> list[Component]:
    """Parse raw text into VCALENDAR components.

    Raises:
        ParseError: When the text is not iCalendar at all.
    """
    if not raw_text or not raw_text.strip():
        raise ParseError("Empty iCalendar payload")
    try:
        parsed = Calendar.from_ical(raw_text, multiple=True)
    except (ValueError, KeyError, IndexError) as exc:
        raise ParseError(f"Invalid iCalendar payload: {exc}") from exc

    calendars = [item for item in parsed if item.name == "VCALENDAR"]
    if not calendars:
        raise ParseError("iCalendar payload does not contain a VCALENDAR")
    return calendars


def _component_from_ical(
    component: Component,
    embedded: dict[str, tzinfo],
) -> CalendarComponent | None:
    uid = _uid_or_none(component)
    if uid is None:
        raise ComponentParseError(f"{component.name} is missing UID")

    for prop_name, message in getattr(component, "errors", []) or []:
        if prop_name in {"DTSTART", "RRULE", "RECURRENCE-ID"}:
            raise ComponentParseError(f"Invalid {prop_name}: {message}", uid=uid)

    kind = component.name
    start = _decode_time(component, "DTSTART", embedded)
    if start is None and kind == "VTODO":
        start = _decode_time(component, "DUE", embedded)
        if start is None:
            logger.debug("Ignoring VTODO %s without DTSTART/DUE", uid)
            return None
    if start is None:
        raise ComponentParseError("VEVENT is missing DTSTART", uid=uid)
    if isinstance(start, timedelta):
        raise ComponentParseError("DTSTART must be a DATE or DATE-TIME", uid=uid)

    all_day = not isinstance(start, datetime)
    end = _decode_time(component, "DTEND" if kind == "VEVENT" else "DUE", embedded)
    if end is None:
        duration = _decode_time(component, "DURATION", embedded)
        if isinstance(duration, timedelta):
            end = start + duration
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start
    if isinstance(end, timedelta):
        raise ComponentParseError("DTEND must be a DATE or DATE-TIME", uid=uid)

    if all_day and isinstance(end, datetime):
        end = end.date()
    elif not all_day and not isinstance(end, datetime):
        end = datetime.combine(end, time.min, tzinfo=start.tzinfo)
    if as_utc_instant(end) < as_utc_instant(start):
        logger.warning("Component %s ends before it starts; using a zero-length span", uid)
        end = start

    rrule_prop = _first(component.get("RRULE"))
    rrule_text = rrule_prop.to_ical().decode("utf-8") if rrule_prop is not None else None

    recurrence_id = _decode_time(component, "RECURRENCE-ID", embedded)
    if isinstance(recurrence_id, timedelta):
        raise ComponentParseError("RECURRENCE-ID must be a DATE or DATE-TIME", uid=uid)

    sequence_raw = component.get("SEQUENCE", 0)
    try:
        sequence = int(sequence_raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric SEQUENCE %r on %s", sequence_raw, uid)
        sequence = 0

    status = _text(component, "STATUS")
    return CalendarComponent(
        kind=kind,
        uid=uid,
        summary=_text(component, "SUMMARY"),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start=start,
        end=end,
        all_day=all_day,
        rrule=rrule_text,
        exdates=_decode_time_list(component, "EXDATE", embedded),
        rdates=_decode_time_list(component, "RDATE", embedded),
        recurrence_id=recurrence_id,
        sequence=max(sequence, 0),
        status=status.upper() if status else None,
    )


def parse_components(
    raw_text: str,
    *,
    on_skip: SkipHandler | None = None,
) -> list[CalendarComponent]:
    """Parse every VEVENT/VTODO in *raw_text*.

    A component that cannot be interpreted is reported to *on_skip* and
    left out; its siblings are still returned.
    """
    skip = on_skip or _log_skip
    calendars = parse_calendars(raw_text)
    embedded = _embedded_timezones(calendars)

    components: list[CalendarComponent] = []
    for cal in calendars:
        for sub in cal.subcomponents:
            if sub.name not in SUPPORTED_KINDS:
                continue
            try:
                parsed = _component_from_ical(sub, embedded)
            except ComponentParseError as exc:
                skip(exc)
                continue
            except (ValueError, TypeError, AttributeError) as exc:
                skip(ComponentParseError(str(exc), uid=_uid_or_none(sub)))
                continue
            if parsed is not None:
                components.append(parsed)
    return components


# ---------------------------------------------------------------------------
# Occurrence expansion
# ---------------------------------------------------------------------------


def _is_cancelled(component: CalendarComponent) -> bool:
    return component.status == CANCELLED_STATUS


def _override_key(component: CalendarComponent, master: CalendarComponent | None) -> str:
    recurrence_id = component.recurrence_id
    if recurrence_id is None:
        raise ComponentParseError("Override is missing RECURRENCE-ID", uid=component.uid)
    if master is not None and master.all_day and isinstance(recurrence_id, datetime):
        return recurrence_key_for(recurrence_id.date())
    return recurrence_key_for(recurrence_id)


def _to_occurrence(
    component: CalendarComponent,
    *,
    start: date | datetime,
    end: date | datetime,
    recurrence_key: str,
    source_id: str,
    calendar_url: str | None,
) -> Occurrence:
    if component.all_day:
        start_value: date | datetime = start.date() if isinstance(start, datetime) else start
        end_value: date | datetime = end.date() if isinstance(end, datetime) else end
    else:
        start_value = as_utc_instant(start)
        end_value = as_utc_instant(end)
    return Occurrence(
        source_id=source_id,
        uid=component.uid,
        recurrence_key=recurrence_key,
        title=component.summary or DEFAULT_EVENT_TITLE,
        description=component.description,
        location=component.location,
        start=start_value,
        end=end_value,
        all_day=component.all_day,
        sequence=component.sequence,
        calendar_url=calendar_url,
    )


def _expand_group(
    uid: str,
    master: CalendarComponent | None,
    overrides: list[CalendarComponent],
    window: SyncWindow,
    *,
    source_id: str,
    calendar_url: str | None,
    limit: int,
) -> list[Occurrence]:
    if master is not None and _is_cancelled(master):
        return []

    by_key: dict[str, Occurrence] = {}
    override_map = {_override_key(item, master): item for item in overrides}

    if master is not None:
        duration = master.end - master.start if master.end is not None else timedelta(0)
        starts = expand_starts(
            master.start,
            master.rrule,
            window,
            exdates=master.exdates,
            rdates=master.rdates,
            uid=uid,
            limit=limit,
        )
        for start in starts:
            key = recurrence_key_for(start)
            if key in override_map:
                continue
            by_key[key] = _to_occurrence(
                master,
                start=start,
                end=start + duration,
                recurrence_key=key,
                source_id=source_id,
                calendar_url=calendar_url,
            )

    for key, override in sorted(override_map.items()):
        if _is_cancelled(override) or not window.contains(override.start):
            continue
        if len(by_key) >= limit:
            break
        by_key[key] = _to_occurrence(
            override,
            start=override.start,
            end=override.end if override.end is not None else override.start,
            recurrence_key=key,
            source_id=source_id,
            calendar_url=calendar_url,
        )

    return list(by_key.values())


def build_occurrences(
    components: Iterable[CalendarComponent],
    window: SyncWindow,
    *,
    source_id: str,
    calendar_url: str | None = None,
    calendar_urls: dict[str, str | None] | None = None,
    on_skip: SkipHandler | None = None,
    limit: int = MAX_OCCURRENCES_PER_COMPONENT,
) -> list[Occurrence]:
    """Expand parsed components into occurrences whose start lies in *window*.

    Components sharing a UID form one series: the component without
    RECURRENCE-ID is the master, the others override single instances.
    When the same master appears more than once (e.g. in two collections)
    the one with the highest SEQUENCE wins. Output is ordered by start,
    then UID.
    """
    skip = on_skip or _log_skip
    masters: dict[str, CalendarComponent] = {}
    overrides: dict[str, list[CalendarComponent]] = {}
    order: list[str] = []

    for component in components:
        if component.kind != "VEVENT":
            continue
        if component.uid not in masters and component.uid not in overrides:
            order.append(component.uid)
        if component.is_override:
            overrides.setdefault(component.uid, []).append(component)
            continue
        existing = masters.get(component.uid)
        if existing is None or component.sequence > existing.sequence:
            masters[component.uid] = component

    occurrences: list[Occurrence] = []
    for uid in order:
        url = calendar_urls.get(uid, calendar_url) if calendar_urls else calendar_url
        try:
            occurrences.extend(
                _expand_group(
                    uid,
                    masters.get(uid),
                    overrides.get(uid, []),
                    window,
                    source_id=source_id,
                    calendar_url=url,
                    limit=limit,
                )
            )
        except ComponentParseError as exc:
            if exc.uid is None:
                exc.uid = uid
            skip(exc)

    occurrences.sort(key=lambda occ: occ.sort_key())
    return occurrences


def parse(
    raw_text: str,
    window: SyncWindow,
    *,
    source_id: str,
    calendar_url: str | None = None,
    on_skip: SkipHandler | None = None,
) -> list[Occurrence]:
    """Parse *raw_text* and return the occurrences that start inside *window*.

    Raises:
        ParseError: When the payload is not iCalendar. Individual broken
            components are skipped and reported to *on_skip* instead.
    """
    components = parse_components(raw_text, on_skip=on_skip)
    return build_occurrences(
        components,
        window,
        source_id=source_id,
        calendar_url=calendar_url,
        on_skip=on_skip,
    )


def overlaps_window(raw_text: str, window: SyncWindow) -> bool:
    """Client-side window filter used when the server cannot run a time-range query.

    Payloads that cannot be parsed are kept so the reconciliation run can
    report them.
    """
    try:
        components = parse_components(raw_text, on_skip=lambda _exc: None)
    except ParseError:
        return True
    occurrences = build_occurrences(
        components,
        window,
        source_id="window-filter",
        on_skip=lambda _exc: None,
    )
    return bool(occurrences)
