"""Persistence contract for calendar sources and the local event cache."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime

from calsync.calendar.models import CalendarSource, Occurrence, OccurrenceKey, SyncWindow

logger = logging.getLogger(__name__)


class EventStore(abc.ABC):
    """Read/write contract used by the reconciliation engine and orchestrator.

    Occurrence writes for one source happen inside :meth:`transaction`; an
    exception raised inside the block must leave the cache exactly as it was
    before the block started.
    """

    @abc.abstractmethod
    async def find_source(self, source_id: str) -> CalendarSource | None:
        """Return the source with *source_id*, or ``None``."""

    @abc.abstractmethod
    async def list_sources_for_user(self, user_id: str) -> list[CalendarSource]:
        """Return every source owned by *user_id*, oldest first."""

    @abc.abstractmethod
    async def create_source(self, source: CalendarSource) -> CalendarSource:
        """Persist a new source and return the stored record."""

    @abc.abstractmethod
    async def delete_source(self, source_id: str) -> bool:
        """Delete a source record. Returns ``False`` when it did not exist."""

    @abc.abstractmethod
    async def mark_source_synced(self, source_id: str, synced_at: datetime) -> None:
        """Record a successful sync time on the source."""

    @abc.abstractmethod
    async def list_occurrences(self, source_id: str, window: SyncWindow) -> list[Occurrence]:
        """Return stored occurrences for *source_id* whose start lies in *window*."""

    @abc.abstractmethod
    async def upsert_occurrence(self, occurrence: Occurrence) -> None:
        """Insert or replace the occurrence identified by ``occurrence.key``."""

    @abc.abstractmethod
    async def delete_occurrences_not_in(
        self,
        source_id: str,
        window: SyncWindow,
        keep_keys: Iterable[OccurrenceKey],
    ) -> int:
        """Delete in-window occurrences of *source_id* whose key is not kept."""

    @abc.abstractmethod
    async def delete_all_for_source(self, source_id: str) -> int:
        """Delete every occurrence of *source_id*. Returns the number removed."""

    @abc.abstractmethod
    def transaction(self, source_id: str) -> AbstractAsyncContextManager[None]:
        """Async context manager scoping an all-or-nothing apply for one source."""


class InMemoryEventStore(EventStore):
    """Dictionary-backed store for tests and embedding."""

    def __init__(self) -> None:
        self.sources: dict[str, CalendarSource] = {}
        self.occurrences: dict[OccurrenceKey, Occurrence] = {}
        self._tx_locks: dict[str, asyncio.Lock] = {}

    async def find_source(self, source_id: str) -> CalendarSource | None:
        source = self.sources.get(source_id)
        return source.model_copy() if source is not None else None

    async def list_sources_for_user(self, user_id: str) -> list[CalendarSource]:
        owned = [s for s in self.sources.values() if s.user_id == user_id]
        owned.sort(key=lambda s: (s.created_at, s.id))
        return [s.model_copy() for s in owned]

    async def create_source(self, source: CalendarSource) -> CalendarSource:
        if source.id in self.sources:
            raise ValueError(f"Calendar source {source.id!r} already exists")
        self.sources[source.id] = source.model_copy()
        return source.model_copy()

    async def delete_source(self, source_id: str) -> bool:
        return self.sources.pop(source_id, None) is not None

    async def mark_source_synced(self, source_id: str, synced_at: datetime) -> None:
        source = self.sources.get(source_id)
        if source is not None:
            self.sources[source_id] = source.model_copy(update={"last_synced_at": synced_at})

    async def list_occurrences(self, source_id: str, window: SyncWindow) -> list[Occurrence]:
        found = [
            occ.model_copy()
            for key, occ in self.occurrences.items()
            if key.source_id == source_id and window.contains(occ.start)
        ]
        found.sort(key=lambda occ: occ.sort_key())
        return found

    async def upsert_occurrence(self, occurrence: Occurrence) -> None:
        self.occurrences[occurrence.key] = occurrence.model_copy()

    async def delete_occurrences_not_in(
        self,
        source_id: str,
        window: SyncWindow,
        keep_keys: Iterable[OccurrenceKey],
    ) -> int:
        keep = set(keep_keys)
        doomed = [
            key
            for key, occ in self.occurrences.items()
            if key.source_id == source_id and key not in keep and window.contains(occ.start)
        ]
        for key in doomed:
            del self.occurrences[key]
        return len(doomed)

    async def delete_all_for_source(self, source_id: str) -> int:
        doomed = [key for key in self.occurrences if key.source_id == source_id]
        for key in doomed:
            del self.occurrences[key]
        return len(doomed)

    @asynccontextmanager
    async def transaction(self, source_id: str) -> AsyncIterator[None]:
        lock = self._tx_locks.setdefault(source_id, asyncio.Lock())
        async with lock:
            snapshot = {k: v for k, v in self.occurrences.items() if k.source_id == source_id}
            source_snapshot = self.sources.get(source_id)
            try:
                yield
            except BaseException:
                logger.debug("Rolling back in-memory transaction for source %s", source_id)
                for key in [k for k in self.occurrences if k.source_id == source_id]:
                    del self.occurrences[key]
                self.occurrences.update(snapshot)
                if source_snapshot is not None:
                    self.sources[source_id] = source_snapshot
                raise

    def events_for_source(self, source_id: str) -> list[Occurrence]:
        """All stored occurrences of *source_id* in display order."""
        found = [occ for key, occ in self.occurrences.items() if key.source_id == source_id]
        found.sort(key=lambda occ: occ.sort_key())
        return found
