"""
Unit tests for the tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer, OpenTelemetryTracer and MockTracer
- create_tracer() factory function
- Attribute naming
"""

from __future__ import annotations

import contextlib
from typing import Any

import rolloutguard.observability as observability
from rolloutguard.observability import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)


class TestTracerProtocol:
    def test_implementations_match_protocol(self):
        """All bundled tracers satisfy the Tracer protocol."""
        for tracer in (NullTracer(), OpenTelemetryTracer(__name__), MockTracer()):
            assert isinstance(tracer, Tracer)

    def test_custom_implementation_matches_protocol(self):
        """Any object with span() and enabled is a Tracer."""

        class CustomTracer:
            def span(self, name: str, attributes: dict[str, Any] | None = None):
                return contextlib.nullcontext()

            @property
            def enabled(self) -> bool:
                return False

        assert isinstance(CustomTracer(), Tracer)

    def test_object_without_span_is_not_a_tracer(self):
        assert not isinstance(object(), Tracer)


class TestNullTracer:
    def test_span_yields_none(self):
        tracer = NullTracer()

        with tracer.span("rolloutguard.test", {"key": "value"}) as span:
            assert span is None

        assert tracer.enabled is False


class TestOpenTelemetryTracer:
    def test_span_yields_span(self):
        """Without an SDK provider the API still hands back a span object."""
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("rolloutguard.test", {"kept": 1, "dropped": None}) as span:
            assert span is not None

        assert tracer.enabled is True

    def test_exceptions_propagate(self):
        tracer = OpenTelemetryTracer(__name__)

        with contextlib.suppress(ValueError), tracer.span("rolloutguard.test"):
            raise ValueError("boom")


class TestMockTracer:
    def test_records_spans(self):
        tracer = MockTracer()

        with tracer.span("a", {"x": 1}):
            with tracer.span("b"):
                pass

        assert tracer.spans == [("a", {"x": 1}), ("b", None)]
        assert tracer.span_names == ["a", "b"]
        assert tracer.enabled is True

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("a"):
            pass

        tracer.clear()

        assert tracer.spans == []


class TestCreateTracer:
    def test_enabled_returns_otel_tracer(self):
        assert isinstance(create_tracer(__name__), OpenTelemetryTracer)

    def test_disabled_returns_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)


class TestAttributes:
    def test_rolloutguard_attributes_are_namespaced(self):
        names = [n for n in observability.__all__ if n.startswith("ATTR_")]
        values = {n: getattr(observability, n) for n in names}

        own = {n: v for n, v in values.items() if not n.startswith(("ATTR_DB_", "ATTR_ERROR"))}
        assert all(v.startswith("rolloutguard.") for v in own.values())
        assert len(set(values.values())) == len(values)

    def test_standard_attributes_follow_semantic_conventions(self):
        assert observability.ATTR_DB_SYSTEM == "db.system"
        assert observability.ATTR_ERROR_TYPE == "error.type"
