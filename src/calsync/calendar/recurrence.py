"""RRULE expansion bounded to a sync window.

Expansion uses :mod:`dateutil.rrule`. ``UNTIL`` and ``INTERVAL`` are read out
of the rule text before it reaches dateutil so that DATE/DATE-TIME mixes and
ill-formed intervals cannot raise or loop; the remaining parts are handed to
:func:`dateutil.rrule.rrulestr` unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, tzinfo

from dateutil.rrule import rrule, rrulestr

from calsync.calendar.errors import ComponentParseError
from calsync.calendar.models import SyncWindow, as_utc_instant, recurrence_key_for

logger = logging.getLogger(__name__)

# Hard cap on occurrences produced for a single component.
MAX_OCCURRENCES_PER_COMPONENT = 500


def split_rrule(rule_text: str) -> dict[str, str]:
    """Split ``FREQ=WEEKLY;BYDAY=FR`` into an upper-cased part dict."""
    text = rule_text.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]
    parts: dict[str, str] = {}
    for chunk in text.split(";"):
        if not chunk.strip():
            continue
        name, sep, value = chunk.partition("=")
        if not sep:
            raise ComponentParseError(f"Malformed RRULE part {chunk!r}")
        parts[name.strip().upper()] = value.strip()
    if "FREQ" not in parts:
        raise ComponentParseError("RRULE is missing FREQ")
    return parts


def _join_rrule(parts: dict[str, str]) -> str:
    return ";".join(f"{name}={value}" for name, value in parts.items())


def _parse_until(value: str, *, all_day: bool, tz: tzinfo | None) -> datetime:
    """Convert an UNTIL value into the same naive/aware space as the rule's DTSTART."""
    raw = value.strip()
    try:
        if "T" not in raw.upper():
            until_date = datetime.strptime(raw, "%Y%m%d").date()
            if all_day:
                return datetime.combine(until_date, time.max)
            return datetime.combine(until_date, time.max, tzinfo=tz or UTC)
        if raw.upper().endswith("Z"):
            parsed = datetime.strptime(raw[:-1], "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
        else:
            parsed = datetime.strptime(raw, "%Y%m%dT%H%M%S").replace(tzinfo=tz or UTC)
    except ValueError as exc:
        raise ComponentParseError(f"Malformed RRULE UNTIL value {value!r}") from exc

    if all_day:
        return datetime.combine(parsed.astimezone(UTC).date(), time.max)
    return parsed.astimezone(tz or UTC)


def build_rule(
    rule_text: str,
    dtstart: date | datetime,
    *,
    uid: str | None = None,
) -> rrule:
    """Build a dateutil ``rrule`` anchored at *dtstart*.

    All-day rules iterate over naive midnight datetimes; timed rules iterate
    in the wall-clock of *dtstart*'s timezone.
    """
    parts = split_rrule(rule_text)
    all_day = not isinstance(dtstart, datetime)
    anchor = datetime.combine(dtstart, time.min) if all_day else dtstart
    tz = None if all_day else anchor.tzinfo

    interval_raw = parts.get("INTERVAL")
    if interval_raw is not None:
        try:
            interval = int(interval_raw)
        except ValueError as exc:
            raise ComponentParseError(
                f"Malformed RRULE INTERVAL {interval_raw!r}", uid=uid
            ) from exc
        if interval < 1:
            logger.warning("RRULE for uid=%s has INTERVAL=%d; treating as 1", uid, interval)
            parts["INTERVAL"] = "1"

    if "COUNT" in parts:
        try:
            if int(parts["COUNT"]) < 1:
                raise ComponentParseError(
                    f"RRULE COUNT must be positive, got {parts['COUNT']!r}", uid=uid
                )
        except ValueError as exc:
            raise ComponentParseError(f"Malformed RRULE COUNT {parts['COUNT']!r}", uid=uid) from exc

    until_raw = parts.pop("UNTIL", None)
    try:
        rule = rrulestr(_join_rrule(parts), dtstart=anchor)
    except (ValueError, TypeError, KeyError) as exc:
        raise ComponentParseError(f"Unsupported RRULE {rule_text!r}: {exc}", uid=uid) from exc
    if not isinstance(rule, rrule):
        raise ComponentParseError(f"Unsupported RRULE {rule_text!r}", uid=uid)

    if until_raw is not None:
        until = _parse_until(until_raw, all_day=all_day, tz=tz)
        try:
            rule = rule.replace(until=until)
        except ValueError as exc:
            raise ComponentParseError(f"Invalid RRULE UNTIL {until_raw!r}: {exc}", uid=uid) from exc
    return rule


def _instant(value: date | datetime) -> datetime:
    if isinstance(value, datetime) and value.tzinfo is None:
        # Naive rule output only occurs for all-day series.
        return as_utc_instant(value.date())
    return as_utc_instant(value)


def _seek_point(window: SyncWindow, *, all_day: bool) -> datetime:
    """First value worth asking the rule for, in the naive/aware space it iterates in."""
    if all_day:
        return datetime.combine(window.start.astimezone(UTC).date(), time.min)
    return window.start


def _normalize_start(value: datetime, *, all_day: bool) -> date | datetime:
    if all_day:
        return value.date()
    return value


def _matches_any(
    start: date | datetime,
    excluded_keys: set[str],
    excluded_dates: set[date],
) -> bool:
    if recurrence_key_for(start) in excluded_keys:
        return True
    if isinstance(start, datetime):
        return start.date() in excluded_dates
    return start in excluded_dates


def expand_starts(
    dtstart: date | datetime,
    rule_text: str | None,
    window: SyncWindow,
    *,
    exdates: Iterable[date | datetime] = (),
    rdates: Iterable[date | datetime] = (),
    uid: str | None = None,
    limit: int = MAX_OCCURRENCES_PER_COMPONENT,
) -> list[date | datetime]:
    """Return instance starts of a series whose start lies in *window*.

    Non-recurring components yield their DTSTART when it falls inside the
    window. EXDATEs remove matching instants (DATE-valued EXDATEs remove
    every instance on that day), RDATEs add instants. At most *limit* starts
    are produced. Rule iteration starts at the window, so instances before it
    never count against *limit*.
    """
    all_day = not isinstance(dtstart, datetime)

    excluded_keys: set[str] = set()
    excluded_dates: set[date] = set()
    for ex in exdates:
        if all_day:
            excluded_keys.add(recurrence_key_for(ex.date() if isinstance(ex, datetime) else ex))
        elif isinstance(ex, datetime):
            excluded_keys.add(recurrence_key_for(ex))
        else:
            excluded_dates.add(ex)

    starts: dict[str, date | datetime] = {}
    truncated = False

    if rule_text:
        rule = build_rule(rule_text, dtstart, uid=uid)
        for value in rule.xafter(_seek_point(window, all_day=all_day), inc=True):
            instant = _instant(value)
            if instant >= window.end:
                break
            if instant < window.start:
                continue
            start = _normalize_start(value, all_day=all_day)
            if _matches_any(start, excluded_keys, excluded_dates):
                continue
            starts[recurrence_key_for(start)] = start
            if len(starts) >= limit:
                truncated = True
                break
    elif window.contains(dtstart) and not _matches_any(dtstart, excluded_keys, excluded_dates):
        starts[recurrence_key_for(dtstart)] = dtstart

    for extra in rdates:
        if len(starts) >= limit:
            truncated = True
            break
        if all_day and isinstance(extra, datetime):
            extra = extra.date()
        if not window.contains(extra):
            continue
        if _matches_any(extra, excluded_keys, excluded_dates):
            continue
        starts.setdefault(recurrence_key_for(extra), extra)

    if truncated:
        logger.warning(
            "Recurrence expansion for uid=%s truncated at %d occurrences",
            uid,
            limit,
        )

    return sorted(starts.values(), key=_instant)
