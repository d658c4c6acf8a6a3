"""
ObservaStock - Trace Context Propagation Tests
"""

import pytest
from opentelemetry.trace import SpanKind

from observastock.telemetry.propagation import (
    ContextPropagator,
    TraceContext,
    current_trace_context,
)

VALID_TRACEPARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


class TestTraceContext:
    """Tests for traceparent parsing and formatting."""

    def test_parse_valid_header(self):
        ctx = TraceContext.parse(VALID_TRACEPARENT)

        assert ctx.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert ctx.span_id == "b7ad6b7169203331"
        assert ctx.sampled is True
        assert ctx.to_traceparent() == VALID_TRACEPARENT

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "garbage",
            "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331",
            "00-0af7651916cd43dd8448eb211c8031-b7ad6b7169203331-01",
            "00-00000000000000000000000000000000-b7ad6b7169203331-01",
            "00-0af7651916cd43dd8448eb211c80319c-0000000000000000-01",
            "ff-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
            "01-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
            "cc-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
            "00-zzf7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
        ],
    )
    def test_parse_malformed_header(self, header):
        assert TraceContext.parse(header) is None

    def test_unsampled_flags(self):
        ctx = TraceContext.parse("00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-00")
        assert ctx.sampled is False

    def test_from_span_round_trip_through_header(self, pipeline):
        with pipeline.tracer.start_as_current_span("op") as span:
            ctx = TraceContext.from_span(span)

        parsed = TraceContext.parse(ctx.to_traceparent())
        assert parsed.trace_id == ctx.trace_id
        assert parsed.span_id == ctx.span_id


class TestContextPropagator:
    """Tests for inject/extract."""

    @pytest.fixture
    def propagator(self):
        return ContextPropagator()

    def test_inject_active_span(self, pipeline, propagator):
        headers = {}
        with pipeline.tracer.start_as_current_span("caller") as span:
            propagator.inject(headers)
            expected = TraceContext.from_span(span)

        assert headers["traceparent"] == expected.to_traceparent()

    def test_inject_without_active_span(self, propagator):
        headers = propagator.inject({})
        assert "traceparent" not in headers

    def test_extract_parent(self, propagator):
        parent = propagator.parent_of({"traceparent": VALID_TRACEPARENT})

        assert parent.trace_id == "0af7651916cd43dd8448eb211c80319c"
        assert parent.span_id == "b7ad6b7169203331"

    def test_extract_is_case_insensitive(self, propagator):
        parent = propagator.parent_of({"TraceParent": VALID_TRACEPARENT})
        assert parent is not None

    @pytest.mark.parametrize("headers", [{}, {"traceparent": "not-a-traceparent"}])
    def test_extract_absent_or_malformed(self, propagator, headers):
        assert propagator.parent_of(headers) is None

    def test_child_span_links_to_propagated_parent(self, pipeline, propagator, finished_spans):
        headers = {}
        with pipeline.tracer.start_as_current_span("caller", kind=SpanKind.CLIENT):
            propagator.inject(headers)

        with pipeline.tracer.start_as_current_span(
            "callee",
            kind=SpanKind.SERVER,
            context=propagator.extract(headers),
        ):
            pass

        spans = {s.name: s for s in finished_spans()}
        caller, callee = spans["caller"], spans["callee"]
        assert callee.context.trace_id == caller.context.trace_id
        assert callee.parent.span_id == caller.context.span_id

    def test_malformed_header_starts_new_root(self, pipeline, propagator, finished_spans):
        # An active local span must not leak into the extracted context
        with pipeline.tracer.start_as_current_span("unrelated"):
            context = propagator.extract({"traceparent": "00-bad"})
            with pipeline.tracer.start_as_current_span("inbound", context=context):
                pass

        spans = {s.name: s for s in finished_spans()}
        assert spans["inbound"].parent is None
        assert spans["inbound"].context.trace_id != spans["unrelated"].context.trace_id

    def test_current_trace_context(self, pipeline):
        assert current_trace_context() is None

        with pipeline.tracer.start_as_current_span("op") as span:
            ctx = current_trace_context()
            assert ctx.span_id == format(span.get_span_context().span_id, "016x")
