"""Tests for calsync.core.telemetry."""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import calsync.core.telemetry as _telemetry_mod
from calsync.core.telemetry import init_telemetry, record_counts, record_stage, sync_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


@pytest.fixture(autouse=True)
def _clean_tracer_provider():
    _reset_otel_global_state()
    yield
    _reset_otel_global_state()


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return exporter


class TestInitTelemetry:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)

        tracer = init_telemetry("calsync-test")

        with tracer.start_as_current_span("noop") as span:
            assert span is not None
        assert _telemetry_mod._tracer_provider_installed is False


class TestSyncSpan:
    def test_span_name_and_source_attribute(self, exporter):
        with sync_span("reconcile", source_id="src-1"):
            record_stage("fetching")

        [span] = exporter.get_finished_spans()
        assert span.name == "calsync.reconcile"
        assert span.attributes["calsync.source_id"] == "src-1"
        assert span.attributes["calsync.stage"] == "fetching"
        assert [event.name for event in span.events] == ["calsync.stage"]

    def test_errors_are_recorded(self, exporter):
        with pytest.raises(RuntimeError):
            with sync_span("reconcile"):
                raise RuntimeError("boom")

        [span] = exporter.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR

    async def test_decorator(self, exporter):
        @sync_span("sync_all")
        async def run() -> str:
            return "done"

        assert await run() == "done"
        assert [s.name for s in exporter.get_finished_spans()] == ["calsync.sync_all"]

    def test_counts_are_attached(self, exporter):
        with sync_span("reconcile", source_id="src-1"):
            record_counts(created=2, deleted=1)

        [span] = exporter.get_finished_spans()
        assert span.attributes["calsync.created"] == 2
        assert span.attributes["calsync.deleted"] == 1

    def test_no_source_attribute_without_source(self, exporter):
        with sync_span("sync_all"):
            pass

        [span] = exporter.get_finished_spans()
        assert "calsync.source_id" not in span.attributes
