"""Structured per-run sync logging.

A :class:`SyncLogger` is injected into a reconciliation run. Production code
uses :class:`NullSyncLogger`; debug requests and tests use
:class:`CollectingSyncLogger`, whose entries are returned to the caller.
Every entry is also forwarded to the module logger.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from calsync.calendar.models import LogLevel, SyncLogEntry, SyncStage

logger = logging.getLogger(__name__)

_LEVELS: dict[str, int] = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class SyncLogger(Protocol):
    """Sink for structured sync log entries."""

    def log(
        self,
        stage: SyncStage,
        message: str,
        *,
        level: LogLevel = "info",
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Record one entry."""
        ...


class NullSyncLogger:
    """Discards entries (the module logger still sees them via :func:`emit`)."""

    def log(
        self,
        stage: SyncStage,
        message: str,
        *,
        level: LogLevel = "info",
        detail: dict[str, Any] | None = None,
    ) -> None:
        return None


class CollectingSyncLogger:
    """Keeps entries in order for debug responses."""

    def __init__(self) -> None:
        self.entries: list[SyncLogEntry] = []

    def log(
        self,
        stage: SyncStage,
        message: str,
        *,
        level: LogLevel = "info",
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            SyncLogEntry(
                timestamp=datetime.now(UTC),
                stage=stage,
                level=level,
                message=message,
                detail=dict(detail) if detail else None,
            )
        )

    def stages(self) -> list[SyncStage]:
        return [entry.stage for entry in self.entries]


def emit(
    sink: SyncLogger,
    stage: SyncStage,
    message: str,
    *,
    source_name: str | None = None,
    level: LogLevel = "info",
    detail: dict[str, Any] | None = None,
) -> None:
    """Send one entry to *sink* and mirror it to the module logger."""
    prefix = f"[{source_name}] " if source_name else ""
    if detail:
        logger.log(_LEVELS[level], "%s%s (%s) %s", prefix, message, stage.value, detail)
    else:
        logger.log(_LEVELS[level], "%s%s (%s)", prefix, message, stage.value)
    sink.log(stage, message, level=level, detail=detail)
