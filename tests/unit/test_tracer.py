"""
Unit tests for the tracer implementations.
"""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from clientrecords.exceptions import (
    DualWriteDesyncError,
    PreconditionRequiredError,
    RecordsConflictError,
)
from clientrecords.observability import (
    ATTR_ERROR_CODE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
    error_code,
    is_expected_error,
)


@pytest.fixture
def sdk_tracer(monkeypatch):
    """OpenTelemetryTracer wired to an SDK provider with an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(
        "clientrecords.observability.tracer.trace.get_tracer",
        lambda name, *args, **kwargs: provider.get_tracer(name),
    )
    return OpenTelemetryTracer("clientrecords.repository"), exporter


class TestCreateTracer:
    """Tests for create_tracer."""

    def test_enabled(self):
        tracer = create_tracer(__name__, enable_tracing=True)
        assert isinstance(tracer, OpenTelemetryTracer)
        assert tracer.enabled

    def test_disabled(self):
        tracer = create_tracer(__name__, enable_tracing=False)
        assert isinstance(tracer, NullTracer)
        assert not tracer.enabled

    @pytest.mark.parametrize("tracer", [NullTracer(), MockTracer(), OpenTelemetryTracer(__name__)])
    def test_implementations_satisfy_protocol(self, tracer):
        assert isinstance(tracer, Tracer)


class TestNullTracer:
    """Tests for NullTracer."""

    def test_span_yields_none(self):
        with NullTracer().span("clientrecords.repository.get", {"a": 1}) as span:
            assert span is None


class TestMockTracer:
    """Tests for MockTracer."""

    def test_records_spans(self):
        tracer = MockTracer()
        with tracer.span("first", {"k": "v"}):
            pass
        with tracer.span("second"):
            pass

        assert tracer.spans == [("first", {"k": "v"}), ("second", None)]
        assert tracer.span_names == ["first", "second"]

        tracer.clear()
        assert tracer.spans == []


class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer against an SDK provider."""

    def test_exports_span_with_attributes(self, sdk_tracer):
        tracer, exporter = sdk_tracer

        with tracer.span("clientrecords.repository.save", {"records.count": 3}):
            pass

        spans = exporter.get_finished_spans()
        assert [span.name for span in spans] == ["clientrecords.repository.save"]
        assert spans[0].attributes["records.count"] == 3

    def test_conflict_tags_code_without_error_status(self, sdk_tracer):
        tracer, exporter = sdk_tracer

        with pytest.raises(RecordsConflictError):
            with tracer.span("clientrecords.repository.save"):
                raise RecordsConflictError("2024-05-01T10:00:00.123Z")

        (span,) = exporter.get_finished_spans()
        assert span.attributes[ATTR_ERROR_CODE] == "records_conflict"
        assert span.status.status_code is StatusCode.UNSET
        assert list(span.events) == []

    def test_fault_marks_span_failed(self, sdk_tracer):
        tracer, exporter = sdk_tracer

        with pytest.raises(RuntimeError):
            with tracer.span("clientrecords.repository.save"):
                raise RuntimeError("connection reset")

        (span,) = exporter.get_finished_spans()
        assert span.attributes[ATTR_ERROR_CODE] == "RuntimeError"
        assert span.status.status_code is StatusCode.ERROR
        assert [event.name for event in span.events] == ["exception"]


class TestErrorClassification:
    """Tests for is_expected_error and error_code."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (RecordsConflictError(None), True),
            (PreconditionRequiredError(), True),
            (DualWriteDesyncError(), False),
            (ValueError("x"), False),
        ],
    )
    def test_is_expected_error(self, error, expected):
        assert is_expected_error(error) is expected

    def test_error_code(self):
        assert error_code(DualWriteDesyncError()) == "records_dual_write_desync"
        assert error_code(KeyError("x")) == "KeyError"

    def test_mock_tracer_records_errors(self):
        tracer = MockTracer()

        with pytest.raises(PreconditionRequiredError):
            with tracer.span("clientrecords.repository.save"):
                raise PreconditionRequiredError()

        assert tracer.errors == [("clientrecords.repository.save", "records_precondition_required")]
