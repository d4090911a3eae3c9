"""calsync: pull external CalDAV calendars into a per-user local event cache."""

__version__ = "0.1.0"
