"""PostgreSQL implementation of :class:`~calsync.calendar.store.EventStore`.

Tables:

- ``calendar_sources``: one row per external calendar, credentials stored as
  ciphertext.
- ``external_events``: cached occurrences keyed by
  ``(source_id, uid, recurrence_key)``. ``starts_at``/``ends_at`` hold UTC
  instants; all-day occurrences are stored at UTC midnight with
  ``all_day = true`` and read back as dates.

Writes issued inside :meth:`PostgresEventStore.transaction` share one
connection and one database transaction, which also holds a
transaction-scoped advisory lock on the source id so that concurrent
processes serialize their applies per source.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from calsync.calendar.models import (
    CalendarSource,
    Occurrence,
    OccurrenceKey,
    SyncWindow,
    as_utc_instant,
)
from calsync.calendar.store import EventStore

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_SOURCES_TABLE = "calendar_sources"
_EVENTS_TABLE = "external_events"
# Separator used to pack (uid, recurrence_key) into a single text value.
_KEY_SEPARATOR = "\x1f"

_SOURCES_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_SOURCES_TABLE} (
    id             TEXT PRIMARY KEY,
    user_id        TEXT NOT NULL,
    name           TEXT NOT NULL,
    url            TEXT NOT NULL,
    username       TEXT,
    password       TEXT,
    color          TEXT NOT NULL DEFAULT '#3b82f6',
    auth_scheme    TEXT NOT NULL DEFAULT 'basic',
    last_synced_at TIMESTAMPTZ,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_SOURCES_USER_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_calendar_sources_user_id
ON {_SOURCES_TABLE} (user_id)
"""

_EVENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_EVENTS_TABLE} (
    source_id      TEXT NOT NULL REFERENCES {_SOURCES_TABLE} (id) ON DELETE CASCADE,
    uid            TEXT NOT NULL,
    recurrence_key TEXT NOT NULL,
    title          TEXT NOT NULL,
    description    TEXT,
    location       TEXT,
    starts_at      TIMESTAMPTZ NOT NULL,
    ends_at        TIMESTAMPTZ NOT NULL,
    all_day        BOOLEAN NOT NULL DEFAULT false,
    sequence       INTEGER NOT NULL DEFAULT 0,
    calendar_url   TEXT,
    last_synced_at TIMESTAMPTZ,
    PRIMARY KEY (source_id, uid, recurrence_key)
)
"""

_EVENTS_WINDOW_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_external_events_source_starts_at
ON {_EVENTS_TABLE} (source_id, starts_at)
"""

_SOURCE_COLUMNS = (
    "id, user_id, name, url, username, password, color, auth_scheme, last_synced_at, created_at"
)
_EVENT_COLUMNS = (
    "source_id, uid, recurrence_key, title, description, location, starts_at, ends_at, "
    "all_day, sequence, calendar_url, last_synced_at"
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the calendar tables if they do not exist."""
    async with pool.acquire() as conn:
        await conn.execute(_SOURCES_TABLE_DDL)
        await conn.execute(_SOURCES_USER_INDEX_DDL)
        await conn.execute(_EVENTS_TABLE_DDL)
        await conn.execute(_EVENTS_WINDOW_INDEX_DDL)


def _row_to_source(row: Any) -> CalendarSource:
    return CalendarSource(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        url=row["url"],
        username=row["username"],
        password=row["password"],
        color=row["color"],
        auth_scheme=row["auth_scheme"],
        last_synced_at=row["last_synced_at"],
        created_at=row["created_at"],
    )


def _row_to_occurrence(row: Any) -> Occurrence:
    starts_at: datetime = row["starts_at"].astimezone(UTC)
    ends_at: datetime = row["ends_at"].astimezone(UTC)
    all_day = bool(row["all_day"])
    return Occurrence(
        source_id=row["source_id"],
        uid=row["uid"],
        recurrence_key=row["recurrence_key"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=starts_at.date() if all_day else starts_at,
        end=ends_at.date() if all_day else ends_at,
        all_day=all_day,
        sequence=row["sequence"],
        calendar_url=row["calendar_url"],
        last_synced_at=row["last_synced_at"],
    )


def _pack_key(uid: str, recurrence_key: str) -> str:
    return f"{uid}{_KEY_SEPARATOR}{recurrence_key}"


class PostgresEventStore(EventStore):
    """asyncpg-backed event store.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each call outside a transaction acquires
        a connection for its own duration.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool
        self._tx_conn: ContextVar[Any | None] = ContextVar(
            f"calsync_pg_tx_{id(self)}", default=None
        )

    def __repr__(self) -> str:
        return "PostgresEventStore()"

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as acquired:
            yield acquired

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def find_source(self, source_id: str) -> CalendarSource | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SOURCE_COLUMNS} FROM {_SOURCES_TABLE} WHERE id = $1",
                source_id,
            )
        return _row_to_source(row) if row is not None else None

    async def list_sources_for_user(self, user_id: str) -> list[CalendarSource]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SOURCE_COLUMNS}
                FROM {_SOURCES_TABLE}
                WHERE user_id = $1
                ORDER BY created_at, id
                """,
                user_id,
            )
        return [_row_to_source(row) for row in rows]

    async def create_source(self, source: CalendarSource) -> CalendarSource:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_SOURCES_TABLE}
                    (id, user_id, name, url, username, password, color,
                     auth_scheme, last_synced_at, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING {_SOURCE_COLUMNS}
                """,
                source.id,
                source.user_id,
                source.name,
                source.url,
                source.username,
                source.password,
                source.color,
                source.auth_scheme,
                source.last_synced_at,
                source.created_at,
            )
        # Log at info level; NEVER include credentials.
        logger.info("Calendar source stored: id=%r user_id=%r", source.id, source.user_id)
        return _row_to_source(row)

    async def delete_source(self, source_id: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(f"DELETE FROM {_SOURCES_TABLE} WHERE id = $1", source_id)
        return _affected(result) > 0

    async def mark_source_synced(self, source_id: str, synced_at: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"UPDATE {_SOURCES_TABLE} SET last_synced_at = $2 WHERE id = $1",
                source_id,
                synced_at,
            )

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    async def list_occurrences(self, source_id: str, window: SyncWindow) -> list[Occurrence]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM {_EVENTS_TABLE}
                WHERE source_id = $1 AND starts_at >= $2 AND starts_at < $3
                ORDER BY starts_at, uid, recurrence_key
                """,
                source_id,
                window.start,
                window.end,
            )
        return [_row_to_occurrence(row) for row in rows]

    async def upsert_occurrence(self, occurrence: Occurrence) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_EVENTS_TABLE} ({_EVENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (source_id, uid, recurrence_key) DO UPDATE SET
                    title          = EXCLUDED.title,
                    description    = EXCLUDED.description,
                    location       = EXCLUDED.location,
                    starts_at      = EXCLUDED.starts_at,
                    ends_at        = EXCLUDED.ends_at,
                    all_day        = EXCLUDED.all_day,
                    sequence       = EXCLUDED.sequence,
                    calendar_url   = EXCLUDED.calendar_url,
                    last_synced_at = EXCLUDED.last_synced_at
                """,
                occurrence.source_id,
                occurrence.uid,
                occurrence.recurrence_key,
                occurrence.title,
                occurrence.description,
                occurrence.location,
                as_utc_instant(occurrence.start),
                as_utc_instant(occurrence.end),
                occurrence.all_day,
                occurrence.sequence,
                occurrence.calendar_url,
                occurrence.last_synced_at,
            )

    async def delete_occurrences_not_in(
        self,
        source_id: str,
        window: SyncWindow,
        keep_keys: Iterable[OccurrenceKey],
    ) -> int:
        packed = [
            _pack_key(key.uid, key.recurrence_key)
            for key in keep_keys
            if key.source_id == source_id
        ]
        async with self._connection() as conn:
            result = await conn.execute(
                f"""
                DELETE FROM {_EVENTS_TABLE}
                WHERE source_id = $1
                  AND starts_at >= $2
                  AND starts_at < $3
                  AND NOT (uid || chr(31) || recurrence_key = ANY($4::text[]))
                """,
                source_id,
                window.start,
                window.end,
                packed,
            )
        return _affected(result)

    async def delete_all_for_source(self, source_id: str) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                f"DELETE FROM {_EVENTS_TABLE} WHERE source_id = $1",
                source_id,
            )
        return _affected(result)

    @asynccontextmanager
    async def transaction(self, source_id: str) -> AsyncIterator[None]:
        if self._tx_conn.get() is not None:
            raise RuntimeError("Nested calendar store transactions are not supported")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", source_id)
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command status such as ``DELETE 3``."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0
