"""Per-user sync orchestration.

:class:`SyncOrchestrator` is the entry point used by the route layer and the
CLI. It owns credential decryption, per-source single-flight locking,
timeouts and the settle-all fan-out across a user's sources.
:class:`SyncPoller` re-runs ``sync_all`` in the background.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from calsync.calendar.errors import CalendarSyncError, Forbidden, NetworkError, SourceNotFound
from calsync.calendar.models import (
    DEFAULT_SOURCE_COLOR,
    CalendarSource,
    ReconcileResult,
    SourceView,
    SyncAllResult,
    SyncWindow,
)
from calsync.calendar.reconcile import CalendarTransport, ReconciliationEngine
from calsync.calendar.store import EventStore
from calsync.calendar.synclog import CollectingSyncLogger, NullSyncLogger, SyncLogger
from calsync.config import PollerConfig, SyncConfig
from calsync.core.logging import source_context
from calsync.core.telemetry import sync_span
from calsync.credentials import (
    CredentialCipher,
    decrypt_source_credentials,
    encrypt_credentials,
    to_view,
)

logger = logging.getLogger(__name__)


@dataclass
class _SourceLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SyncOrchestrator:
    """Runs reconciliation for one source or for every source of a user."""

    def __init__(
        self,
        *,
        store: EventStore,
        transport: CalendarTransport,
        cipher: CredentialCipher,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._config = config or SyncConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._engine = ReconciliationEngine(store=store, transport=transport, clock=self._clock)
        self._locks: dict[str, _SourceLock] = {}

    # ------------------------------------------------------------------
    # Windows and locks
    # ------------------------------------------------------------------

    def resolve_window(
        self,
        window: SyncWindow | None = None,
        *,
        target_date: date | datetime | None = None,
    ) -> SyncWindow:
        """Pick the window for a run: explicit window, then target date, then the default span."""
        if window is not None:
            return window
        if target_date is not None:
            return SyncWindow.for_date(target_date)
        return SyncWindow.around(
            self._clock(),
            past_days=self._config.default_window_past_days,
            future_days=self._config.default_window_future_days,
        )

    @asynccontextmanager
    async def _source_lock(self, source_id: str) -> AsyncIterator[None]:
        """Hold the per-source lock. The entry is dropped once no caller holds or awaits it."""
        entry = self._locks.get(source_id)
        if entry is None:
            entry = self._locks[source_id] = _SourceLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(source_id) is entry:
                del self._locks[source_id]

    async def _load_owned_source(self, source_id: str, expected_user_id: str) -> CalendarSource:
        source = await self._store.find_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        if source.user_id != expected_user_id:
            raise Forbidden(source_id)
        return source

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def sync_one(
        self,
        source_id: str,
        expected_user_id: str,
        window: SyncWindow | None = None,
        *,
        target_date: date | datetime | None = None,
        debug: bool = False,
        timeout: float | None = None,
    ) -> ReconcileResult:
        """Reconcile one source owned by *expected_user_id*.

        Concurrent calls for the same source run one after another. When
        *debug* is set, the structured log of the run is returned in
        ``result.debug`` (or attached to the raised error as ``debug_log``).

        Raises:
            SourceNotFound, Forbidden, AuthError, NetworkError, ProtocolError,
            ParseError, CredentialError.
        """
        source = await self._load_owned_source(source_id, expected_user_id)
        credentials = decrypt_source_credentials(source, self._cipher)
        effective_window = self.resolve_window(window, target_date=target_date)
        effective_timeout = timeout if timeout is not None else self._config.run_timeout_seconds
        sink: SyncLogger = CollectingSyncLogger() if debug else NullSyncLogger()

        with source_context(source_id):
            try:
                async with self._source_lock(source_id):
                    async with asyncio.timeout(effective_timeout):
                        result = await self._engine.reconcile(
                            source_id,
                            effective_window,
                            credentials,
                            expected_user_id=expected_user_id,
                            sync_log=sink,
                        )
            except TimeoutError as exc:
                error = NetworkError(
                    f"Calendar sync timed out after {effective_timeout}s",
                )
                if isinstance(sink, CollectingSyncLogger):
                    error.debug_log = list(sink.entries)
                raise error from exc
            except CalendarSyncError as exc:
                if isinstance(sink, CollectingSyncLogger):
                    exc.debug_log = list(sink.entries)
                raise

        logger.info(
            "Calendar source %s synced (created=%d, updated=%d, deleted=%d, skipped=%d)",
            source_id,
            result.created,
            result.updated,
            result.deleted,
            result.skipped,
        )
        if isinstance(sink, CollectingSyncLogger):
            result.debug = list(sink.entries)
        return result

    async def sync_all(
        self,
        user_id: str,
        window: SyncWindow | None = None,
        *,
        target_date: date | datetime | None = None,
        timeout: float | None = None,
    ) -> SyncAllResult:
        """Sync every source of *user_id*; per-source failures never escape."""
        effective_window = self.resolve_window(window, target_date=target_date)
        sources = await self._store.list_sources_for_user(user_id)
        if not sources:
            return SyncAllResult()

        with sync_span("sync_all"):
            outcomes = await asyncio.gather(
                *(
                    self.sync_one(source.id, user_id, effective_window, timeout=timeout)
                    for source in sources
                ),
                return_exceptions=True,
            )

        summary = SyncAllResult(total=len(sources))
        for source, outcome in zip(sources, outcomes, strict=True):
            if isinstance(outcome, ReconcileResult):
                summary.succeeded += 1
                summary.results[source.id] = outcome
                continue

            message = _failure_message(outcome)
            summary.failed += 1
            summary.failures[source.id] = message
            summary.results[source.id] = ReconcileResult(
                status="error",
                source_id=source.id,
                failed=message,
            )
            if isinstance(outcome, CalendarSyncError):
                if outcome.retryable:
                    summary.retryable.append(source.id)
                logger.warning("Sync of calendar source %s failed: %s", source.id, message)
            else:
                logger.error(
                    "Unexpected error syncing calendar source %s",
                    source.id,
                    exc_info=outcome,
                )

        return summary

    # ------------------------------------------------------------------
    # Source management
    # ------------------------------------------------------------------

    async def create_source(
        self,
        user_id: str,
        *,
        name: str,
        url: str,
        username: str | None = None,
        password: str | None = None,
        color: str | None = None,
        auth_scheme: str = "basic",
        initial_sync: bool = True,
    ) -> tuple[SourceView, ReconcileResult | None]:
        """Persist a new source and run a best-effort first sync.

        A failing first sync is logged and reported as ``None``; the source is
        still created.
        """
        username_ct, password_ct = encrypt_credentials(self._cipher, username, password)
        source = CalendarSource(
            user_id=user_id,
            name=name,
            url=url,
            username=username_ct,
            password=password_ct,
            color=color or DEFAULT_SOURCE_COLOR,
            auth_scheme=auth_scheme,
            created_at=self._clock(),
        )
        stored = await self._store.create_source(source)
        logger.info("Created calendar source %s for user %s", stored.id, user_id)

        result: ReconcileResult | None = None
        if initial_sync:
            try:
                result = await self.sync_one(
                    stored.id,
                    user_id,
                    timeout=self._config.initial_sync_timeout_seconds,
                )
            except Exception as exc:
                logger.warning(
                    "Initial sync of calendar source %s failed: %s",
                    stored.id,
                    _failure_message(exc),
                )
            refreshed = await self._store.find_source(stored.id)
            if refreshed is not None:
                stored = refreshed

        return to_view(stored, self._cipher), result

    async def list_sources(self, user_id: str) -> list[SourceView]:
        """Sources of *user_id* with the password withheld and the username decrypted."""
        sources = await self._store.list_sources_for_user(user_id)
        return [to_view(source, self._cipher) for source in sources]

    async def delete_source(self, source_id: str, expected_user_id: str) -> int:
        """Delete a source and every cached occurrence it produced.

        Returns the number of occurrences removed.
        """
        await self._load_owned_source(source_id, expected_user_id)
        async with self._source_lock(source_id):
            async with self._store.transaction(source_id):
                removed = await self._store.delete_all_for_source(source_id)
                await self._store.delete_source(source_id)
        logger.info("Deleted calendar source %s (%d occurrences removed)", source_id, removed)
        return removed


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, CalendarSyncError):
        return exc.message
    if isinstance(exc, asyncio.CancelledError):
        return "Sync was cancelled"
    return str(exc) or type(exc).__name__


class SyncPoller:
    """Background task that periodically runs ``sync_all`` for a set of users.

    A pass whose failures were all retryable (network trouble, timeouts)
    schedules the next pass for that user after an exponential backoff
    instead of the normal interval. :meth:`trigger` requests an immediate
    pass for every user.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config: PollerConfig,
        *,
        users: Iterable[str] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._config = config
        self._users = list(users if users is not None else config.users)
        self._clock = clock or time.monotonic
        self._force_sync_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._next_due: dict[str, float] = {}
        self._failures: dict[str, int] = {}

    @property
    def interval_seconds(self) -> float:
        return float(self._config.interval_minutes * 60)

    def backoff_seconds(self, consecutive_failures: int) -> float:
        """Delay before the next attempt after *consecutive_failures* retryable passes."""
        if consecutive_failures <= 0:
            return self.interval_seconds
        delay = self._config.retry_base_seconds * (2 ** (consecutive_failures - 1))
        return min(delay, self._config.max_backoff_seconds)

    def trigger(self) -> None:
        """Request an immediate pass for every user."""
        for user_id in self._users:
            self._next_due[user_id] = 0.0
        self._force_sync_event.set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="calendar-sync-poller")
            logger.info(
                "Calendar sync poller started (interval=%dm, users=%d)",
                self._config.interval_minutes,
                len(self._users),
            )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run_once(self) -> dict[str, SyncAllResult]:
        """Run ``sync_all`` for every user that is due and reschedule each one."""
        now = self._clock()
        results: dict[str, SyncAllResult] = {}
        for user_id in self._users:
            if self._next_due.get(user_id, 0.0) > now:
                continue
            try:
                summary = await self._orchestrator.sync_all(user_id)
            except Exception as exc:
                logger.error(
                    "Calendar sync poller error for user %s: %s", user_id, exc, exc_info=True
                )
                self._failures[user_id] = 0
                self._next_due[user_id] = now + self.interval_seconds
                continue
            results[user_id] = summary
            self._reschedule(user_id, summary, now)
        return results

    def _reschedule(self, user_id: str, summary: SyncAllResult, now: float) -> None:
        only_retryable = summary.failed > 0 and len(summary.retryable) == summary.failed
        if only_retryable:
            self._failures[user_id] = self._failures.get(user_id, 0) + 1
            delay = self.backoff_seconds(self._failures[user_id])
            logger.info(
                "Calendar sync for user %s hit transient errors; retrying in %.0fs",
                user_id,
                delay,
            )
        else:
            self._failures[user_id] = 0
            delay = self.interval_seconds
        self._next_due[user_id] = now + delay

    def _seconds_until_next_due(self) -> float:
        if not self._next_due:
            return self.interval_seconds
        return max(0.0, min(self._next_due.values()) - self._clock())

    async def _run(self) -> None:
        logger.debug("Calendar sync poller loop started (interval=%ds)", self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self._seconds_until_next_due(),
                )
                self._force_sync_event.clear()
                logger.debug("Calendar sync poller: immediate sync triggered")
            except TimeoutError:
                pass
