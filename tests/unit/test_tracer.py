"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

import pytest

from outboxrelay.observability import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    @pytest.mark.parametrize("tracer", [NullTracer(), MockTracer(), OpenTelemetryTracer(__name__)])
    def test_implementations_match_protocol(self, tracer):
        """All tracers implement the Tracer protocol."""
        assert isinstance(tracer, Tracer)


class TestNullTracer:
    """Tests for NullTracer."""

    def test_span_yields_none(self):
        with NullTracer().span("op", {"key": "value"}) as span:
            assert span is None

    def test_enabled_is_false(self):
        assert NullTracer().enabled is False

    def test_span_does_nothing_on_exception(self):
        """Exceptions propagate through the no-op span."""
        with pytest.raises(ValueError), NullTracer().span("op"):
            raise ValueError("boom")


class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer."""

    def test_span_is_usable_without_sdk(self):
        """Without an SDK provider spans are non-recording but usable."""
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("op", {"key": "value"}) as span:
            assert span is not None
            span.set_attribute("other", 1)

    def test_span_with_kind(self):
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span_with_kind("publish", SpanKindEnum.PRODUCER) as span:
            assert span is not None

    def test_enabled_is_true(self):
        assert OpenTelemetryTracer(__name__).enabled is True


class TestMockTracer:
    """Tests for MockTracer."""

    def test_records_spans(self):
        """MockTracer records span names and attributes."""
        tracer = MockTracer()

        with tracer.span("outer", {"a": 1}), tracer.span("inner"):
            pass

        assert tracer.spans == [("outer", {"a": 1}), ("inner", None)]
        assert tracer.span_kinds == [SpanKindEnum.INTERNAL, SpanKindEnum.INTERNAL]
        assert tracer.span_names == ["outer", "inner"]

    def test_span_with_kind_recorded(self):
        tracer = MockTracer()

        with tracer.span_with_kind("publish", SpanKindEnum.PRODUCER, {"b": 2}):
            pass

        assert tracer.spans == [("publish", {"b": 2})]
        assert tracer.span_kinds == [SpanKindEnum.PRODUCER]

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("op"):
            pass

        tracer.clear()

        assert tracer.spans == []

    def test_enabled_is_true(self):
        """Attribute computation runs in tests."""
        assert MockTracer().enabled is True


class TestCreateTracer:
    """Tests for the create_tracer factory."""

    def test_returns_null_when_disabled(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)

    def test_returns_otel_when_enabled(self):
        assert isinstance(create_tracer(__name__, enable_tracing=True), OpenTelemetryTracer)

    def test_default_enable_tracing_is_true(self):
        assert isinstance(create_tracer(__name__), OpenTelemetryTracer)
