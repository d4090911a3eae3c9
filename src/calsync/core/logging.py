"""Structured logging for calsync.

Every module logs through ``logging.getLogger(__name__)``; this module routes
those records through structlog so they come out either as colored console
lines (``text``) or as JSON lines (``json``).

Each record is enriched with:

- ``source_id``: the calendar source whose sync is running, taken from a
  ContextVar set by the orchestrator;
- ``trace_id`` / ``span_id``: the active OpenTelemetry span, zeros outside one.

Credentials must never reach a log line. :func:`redact_secrets` masks
credential-bearing keys and strips userinfo from URLs as a last line.

With ``log_root`` set, two JSON files are written next to the console output::

    {log_root}/calsync.log   everything at DEBUG and above
    {log_root}/http.log      httpx/httpcore transport records only
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

_source_context: ContextVar[str | None] = ContextVar("calendar_source_id", default=None)

_NOISE_LOGGERS = ("httpx", "httpcore", "asyncio")

_APP_LOG_NAME = "calsync.log"
_HTTP_LOG_NAME = "http.log"

_SECRET_KEYS = frozenset({"password", "secret", "authorization", "credentials", "token"})
_URL_USERINFO = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_source_context(source_id: str | None) -> None:
    _source_context.set(source_id)


def get_source_context() -> str | None:
    return _source_context.get()


@contextmanager
def source_context(source_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with *source_id*."""
    token = _source_context.set(source_id)
    try:
        yield
    finally:
        _source_context.reset(token)


def add_source_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    event_dict["source_id"] = _source_context.get()
    return event_dict


def add_otel_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    span_context = trace.get_current_span().get_span_context()
    if span_context is not None and span_context.trace_id:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def redact_secrets(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask credential-bearing keys and strip ``user:pass@`` from URL strings."""
    for key, value in event_dict.items():
        if key.lower() in _SECRET_KEYS and value is not None:
            event_dict[key] = "***"
        elif isinstance(value, str) and "@" in value:
            event_dict[key] = _URL_USERINFO.sub(r"\g<scheme>", value)
    return event_dict


def _pre_chain(timestamp_format: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_format),
        add_source_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install calsync's handlers on the root logger.

    Calling this again replaces the previous handlers instead of stacking
    new ones.

    Parameters
    ----------
    level:
        Root level name, e.g. ``"DEBUG"``. Unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines on stderr, anything else for the console
        renderer.
    log_root:
        Directory receiving ``calsync.log`` and ``http.log``. Created when
        missing.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    noisy = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noisy_logger in noisy:
        noisy_logger.setLevel(logging.WARNING)

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_file_handler(directory / _APP_LOG_NAME))
        transport_handler = _json_file_handler(directory / _HTTP_LOG_NAME)
        for noisy_logger in noisy:
            noisy_logger.addHandler(transport_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
