"""Reconciliation of one calendar source over one sync window.

A run moves through ``fetching -> parsing -> diffing -> applying`` and ends
``done`` or ``failed``. Nothing is written to the event cache until the full
desired set for the window is known, and the write itself happens inside a
single :meth:`EventStore.transaction`, so a failed or cancelled run leaves
the cache as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from calsync.calendar.errors import (
    CalendarSyncError,
    ComponentParseError,
    Forbidden,
    ParseError,
    SourceNotFound,
)
from calsync.calendar.ics import build_occurrences, parse_components
from calsync.calendar.models import (
    CalendarComponent,
    CalendarSource,
    Occurrence,
    OccurrenceKey,
    ReconcileResult,
    RemoteCalendarObject,
    RunState,
    SyncCredentials,
    SyncStage,
    SyncWindow,
)
from calsync.calendar.store import EventStore
from calsync.calendar.synclog import NullSyncLogger, SyncLogger, emit
from calsync.core.telemetry import record_counts, record_stage, sync_span

logger = logging.getLogger(__name__)


class CalendarTransport(Protocol):
    """Fetch contract satisfied by :class:`~calsync.calendar.caldav.CalDavTransport`."""

    async def fetch_objects(
        self,
        source: CalendarSource,
        window: SyncWindow,
        credentials: SyncCredentials | None,
    ) -> list[RemoteCalendarObject]:
        """Return the remote objects of *source* relevant to *window*."""
        ...


@dataclass
class DiffPlan:
    """Writes needed to bring the cache in line with the desired occurrences."""

    create: list[Occurrence] = field(default_factory=list)
    update: list[Occurrence] = field(default_factory=list)
    unchanged: int = 0
    stale: int = 0
    keep: set[OccurrenceKey] = field(default_factory=set)
    delete: list[OccurrenceKey] = field(default_factory=list)


def diff_occurrences(
    existing: Sequence[Occurrence],
    desired: Sequence[Occurrence],
    window: SyncWindow,
    *,
    protected_uids: Collection[str] = (),
) -> DiffPlan:
    """Compare stored and incoming occurrences for one source and window.

    An incoming occurrence replaces the stored one only when its SEQUENCE is
    not lower and some field differs. Stored occurrences that start inside
    *window* and are absent from *desired* are scheduled for deletion.
    Stored occurrences whose UID is in *protected_uids* are kept whether or
    not they appear in *desired*.
    """
    plan = DiffPlan()
    stored = {occ.key: occ for occ in existing}
    plan.keep.update(key for key, occ in stored.items() if occ.uid in protected_uids)

    for incoming in desired:
        plan.keep.add(incoming.key)
        current = stored.get(incoming.key)
        if current is None:
            plan.create.append(incoming)
        elif incoming.sequence < current.sequence:
            plan.stale += 1
        elif incoming.differs_from(current):
            plan.update.append(incoming)
        else:
            plan.unchanged += 1

    plan.delete = sorted(
        key for key, occ in stored.items() if key not in plan.keep and window.contains(occ.start)
    )
    return plan


@dataclass
class _ParseOutcome:
    components: list[CalendarComponent] = field(default_factory=list)
    calendar_urls: dict[str, str | None] = field(default_factory=dict)
    skipped: int = 0
    failed_objects: int = 0
    skipped_uids: set[str] = field(default_factory=set)


class ReconciliationEngine:
    """Runs fetch -> parse -> diff -> apply for one source and window."""

    def __init__(
        self,
        *,
        store: EventStore,
        transport: CalendarTransport,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(UTC))

    async def reconcile(
        self,
        source_id: str,
        window: SyncWindow,
        credentials: SyncCredentials | None,
        *,
        expected_user_id: str,
        sync_log: SyncLogger | None = None,
    ) -> ReconcileResult:
        """Bring the cached occurrences of *source_id* inside *window* in line with the server.

        Raises:
            SourceNotFound: No source with that id.
            Forbidden: The source is owned by someone other than *expected_user_id*.
            TransportError: Fetching failed (``AuthError``, ``NetworkError`` or
                ``ProtocolError``).
            ParseError: Every fetched object was unreadable.
        """
        sink = sync_log or NullSyncLogger()

        with sync_span("reconcile", source_id=source_id):
            source = await self._store.find_source(source_id)
            if source is None:
                raise SourceNotFound(source_id)
            if source.user_id != expected_user_id:
                raise Forbidden(source_id)

            state = RunState.FETCHING
            try:
                self._enter(
                    sink, source, SyncStage.FETCHING, "Fetching remote calendar objects", window
                )
                objects = await self._transport.fetch_objects(source, window, credentials)
                emit(
                    sink,
                    SyncStage.FETCHING,
                    f"Fetched {len(objects)} calendar objects",
                    source_name=source.name,
                    detail={"objects": len(objects)},
                )

                state = RunState.PARSING
                self._enter(sink, source, SyncStage.PARSING, "Parsing calendar data", window)
                parsed = self._parse_objects(objects, sink, source)
                if objects and parsed.failed_objects == len(objects):
                    raise ParseError(
                        f"None of the {len(objects)} calendar objects could be parsed"
                    )

                def _on_expand_skip(exc: ComponentParseError) -> None:
                    parsed.skipped += 1
                    if exc.uid:
                        parsed.skipped_uids.add(exc.uid)
                    emit(
                        sink,
                        SyncStage.PARSING,
                        f"Skipped unexpandable recurrence: {exc.message}",
                        source_name=source.name,
                        level="warning",
                        detail={"uid": exc.uid},
                    )

                desired = build_occurrences(
                    parsed.components,
                    window,
                    source_id=source.id,
                    calendar_urls=parsed.calendar_urls,
                    on_skip=_on_expand_skip,
                )
                emit(
                    sink,
                    SyncStage.PARSING,
                    f"Expanded {len(desired)} occurrences",
                    source_name=source.name,
                    detail={"occurrences": len(desired), "skipped": parsed.skipped},
                )

                state = RunState.DIFFING
                self._enter(sink, source, SyncStage.DIFFING, "Comparing with local cache", window)
                existing = await self._store.list_occurrences(source.id, window)
                plan = diff_occurrences(
                    existing, desired, window, protected_uids=parsed.skipped_uids
                )
                if parsed.failed_objects and plan.delete:
                    emit(
                        sink,
                        SyncStage.DIFFING,
                        f"Keeping {len(plan.delete)} occurrences missing from the server"
                        " because some calendar objects were unreadable",
                        source_name=source.name,
                        level="warning",
                        detail={"failed_objects": parsed.failed_objects},
                    )
                    plan.delete = []
                emit(
                    sink,
                    SyncStage.DIFFING,
                    "Computed changes",
                    source_name=source.name,
                    detail={
                        "create": len(plan.create),
                        "update": len(plan.update),
                        "delete": len(plan.delete),
                        "unchanged": plan.unchanged,
                        "stale": plan.stale,
                    },
                )

                state = RunState.APPLYING
                self._enter(sink, source, SyncStage.APPLYING, "Applying changes", window)
                deleted = await self._apply(source, window, plan)
            except CalendarSyncError as exc:
                emit(
                    sink,
                    _stage_for(state),
                    f"Sync failed: {exc.message}",
                    source_name=source.name,
                    level="error",
                    detail={"error": type(exc).__name__},
                )
                record_stage(RunState.FAILED.value)
                raise

            record_stage(RunState.DONE.value)
            result = ReconcileResult(
                status="ok",
                source_id=source.id,
                created=len(plan.create),
                updated=len(plan.update),
                deleted=deleted,
                unchanged=plan.unchanged + plan.stale,
                skipped=parsed.skipped,
            )
            record_counts(
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
                skipped=result.skipped,
            )
            emit(
                sink,
                SyncStage.APPLYING,
                "Sync complete",
                source_name=source.name,
                detail=result.model_dump(include={"created", "updated", "deleted", "skipped"}),
            )
            return result

    def _enter(
        self,
        sink: SyncLogger,
        source: CalendarSource,
        stage: SyncStage,
        message: str,
        window: SyncWindow,
    ) -> None:
        record_stage(stage.value)
        emit(
            sink,
            stage,
            message,
            source_name=source.name,
            detail={"window_start": window.start.isoformat(), "window_end": window.end.isoformat()}
            if stage is SyncStage.FETCHING
            else None,
        )

    def _parse_objects(
        self,
        objects: list[RemoteCalendarObject],
        sink: SyncLogger,
        source: CalendarSource,
    ) -> _ParseOutcome:
        outcome = _ParseOutcome()

        for obj in objects:

            def _on_skip(exc: ComponentParseError, href: str = obj.href) -> None:
                outcome.skipped += 1
                if exc.uid:
                    outcome.skipped_uids.add(exc.uid)
                emit(
                    sink,
                    SyncStage.PARSING,
                    f"Skipped unparsable component: {exc.message}",
                    source_name=source.name,
                    level="warning",
                    detail={"uid": exc.uid, "href": href},
                )

            try:
                components = parse_components(obj.ics, on_skip=_on_skip)
            except ParseError as exc:
                outcome.failed_objects += 1
                outcome.skipped += 1
                emit(
                    sink,
                    SyncStage.PARSING,
                    f"Skipped unreadable calendar object: {exc.message}",
                    source_name=source.name,
                    level="warning",
                    detail={"href": obj.href},
                )
                continue

            for component in components:
                outcome.calendar_urls.setdefault(component.uid, obj.calendar_url)
            outcome.components.extend(components)

        return outcome

    async def _apply(self, source: CalendarSource, window: SyncWindow, plan: DiffPlan) -> int:
        synced_at = self._clock()
        async with self._store.transaction(source.id):
            for occurrence in [*plan.create, *plan.update]:
                await self._store.upsert_occurrence(
                    occurrence.model_copy(update={"last_synced_at": synced_at})
                )
            deleted = 0
            if plan.delete:
                deleted = await self._store.delete_occurrences_not_in(source.id, window, plan.keep)
            await self._store.mark_source_synced(source.id, synced_at)
        return deleted


def _stage_for(state: RunState) -> SyncStage:
    try:
        return SyncStage(state.value)
    except ValueError:
        return SyncStage.APPLYING
