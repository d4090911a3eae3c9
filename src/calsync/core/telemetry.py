"""OpenTelemetry tracing for calendar sync runs.

Spans are named ``calsync.<operation>`` (``calsync.reconcile``,
``calsync.sync_all``). A reconcile span carries the source id, the last
stage it reached and, on success, the change counts of the run.

Nothing is exported unless ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set; without
it the global no-op provider stays in place and spans cost next to nothing.
"""

from __future__ import annotations

import functools
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from calsync import __version__

logger = logging.getLogger(__name__)

OTLP_ENDPOINT_ENV_VAR = "OTEL_EXPORTER_OTLP_ENDPOINT"
SPAN_PREFIX = "calsync"

_TRACER_NAME = "calsync"
_T = TypeVar("_T")

# Set once this module has installed the global TracerProvider.
_tracer_provider_installed: bool = False


def _install_otlp_provider(endpoint: str, service_name: str) -> None:
    global _tracer_provider_installed

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": service_name, "service.version": __version__}
        )
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Exporting traces to %s as %s", endpoint, service_name)


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """Install an OTLP exporter when configured and return a tracer.

    Args:
        service_name: ``service.name`` resource attribute on exported spans.

    Returns:
        A tracer from the installed provider, or from the no-op provider when
        ``OTEL_EXPORTER_OTLP_ENDPOINT`` is unset. Repeated calls never
        install a second provider.
    """
    endpoint = os.environ.get(OTLP_ENDPOINT_ENV_VAR)
    if not endpoint:
        logger.debug("%s is unset; tracing is disabled", OTLP_ENDPOINT_ENV_VAR)
    elif not _tracer_provider_installed:
        _install_otlp_provider(endpoint, service_name)
    return trace.get_tracer(service_name)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


class sync_span:
    """Span around one sync operation, usable with ``with`` or as an async decorator.

    ::

        with sync_span("reconcile", source_id=source.id):
            ...

        @sync_span("sync_all")
        async def run(): ...

    An exception leaving the block marks the span as ERROR, is recorded on
    it and propagates unchanged.
    """

    def __init__(self, operation: str, *, source_id: str | None = None) -> None:
        self.operation = operation
        self.source_id = source_id
        self._span: trace.Span | None = None
        self._context_token: object | None = None

    @property
    def name(self) -> str:
        return f"{SPAN_PREFIX}.{self.operation}"

    def __enter__(self) -> trace.Span:
        attributes = {f"{SPAN_PREFIX}.source_id": self.source_id} if self.source_id else None
        self._span = get_tracer().start_span(self.name, attributes=attributes)
        self._context_token = otel_context.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        span, token = self._span, self._context_token
        self._span = self._context_token = None
        if span is None:
            return
        if exc is not None:
            span.record_exception(exc)
            span.set_status(trace.StatusCode.ERROR, str(exc))
        span.end()
        if token is not None:
            otel_context.detach(token)

    def __call__(
        self, func: Callable[..., Awaitable[_T]]
    ) -> Callable[..., Awaitable[_T]]:
        operation, source_id = self.operation, self.source_id

        @functools.wraps(func)
        async def _traced(*args: Any, **kwargs: Any) -> _T:
            with sync_span(operation, source_id=source_id):
                return await func(*args, **kwargs)

        return _traced


def record_stage(stage: str) -> None:
    """Note on the current span that the run entered *stage*."""
    span = trace.get_current_span()
    span.set_attribute(f"{SPAN_PREFIX}.stage", stage)
    span.add_event(f"{SPAN_PREFIX}.stage", {"stage": stage})


def record_counts(**counts: int) -> None:
    """Attach ``calsync.<name>`` integer attributes (created, deleted, ...) to the current span."""
    span = trace.get_current_span()
    for name, value in counts.items():
        span.set_attribute(f"{SPAN_PREFIX}.{name}", value)
