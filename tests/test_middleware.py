"""
ObservaStock - Inbound Middleware Tests

Tests for the inbound request pipeline:
- PayloadSizeSampler (declared content length histogram)
- ServerSpanMiddleware (server span boundary)
"""

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from opentelemetry.trace import SpanKind, StatusCode

from observastock.telemetry.enrichment import EnrichmentOptions, SpanEnricher
from observastock.telemetry.middleware import (
    PAYLOAD_SIZE_METRIC,
    SERVER_DURATION_METRIC,
    PayloadSizeSampler,
    ServerSpanMiddleware,
    get_request_context,
)

VALID_TRACEPARENT = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


def _payload_points(metric_points, method, route):
    return [
        p for p in metric_points(PAYLOAD_SIZE_METRIC)
        if p.attributes.get("http.method") == method and p.attributes.get("http.route") == route
    ]


# ============================================================
# PayloadSizeSampler
# ============================================================

class TestPayloadSizeSampler:
    """Tests for payload size sampling."""

    @pytest.fixture
    def app(self, pipeline):
        app = FastAPI()
        app.add_middleware(PayloadSizeSampler, registry=pipeline.registry, meter_name="ObservaStock.Test")

        @app.post("/api/trades")
        async def create_trade(request: Request):
            body = await request.body()
            return {"received": len(body)}

        @app.get("/api/trades/health")
        async def health():
            return {"status": "Healthy"}

        return app

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    def test_sample_count_equals_request_count(self, client, metric_points):
        payloads = [b'{"a": 1}', b'{"symbol": "MSFT"}', b"x" * 100]
        for payload in payloads:
            response = client.post(
                "/api/trades", content=payload, headers={"content-type": "application/json"}
            )
            assert response.json() == {"received": len(payload)}

        points = _payload_points(metric_points, "POST", "/api/trades")
        assert len(points) == 1
        assert points[0].count == len(payloads)
        assert points[0].sum == sum(len(p) for p in payloads)

    def test_bodyless_requests_not_sampled(self, client, metric_points):
        for _ in range(3):
            assert client.get("/api/trades/health").status_code == 200

        assert _payload_points(metric_points, "GET", "/api/trades/health") == []

    def test_histogram_unit(self, pipeline, app, client):
        client.post("/api/trades", content=b"abc")
        handle = pipeline.registry.histogram("ObservaStock.Test", PAYLOAD_SIZE_METRIC)
        assert handle.unit == "bytes"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [
            [],
            [(b"content-length", b"0")],
            [(b"content-length", b"not-a-number")],
            [(b"content-length", b"-5")],
        ],
    )
    async def test_nothing_recorded_without_positive_length(self, pipeline, metric_points, headers):
        called = []

        async def downstream(scope, receive, send):
            called.append(scope["path"])

        sampler = PayloadSizeSampler(downstream, registry=pipeline.registry, meter_name="m")
        scope = {"type": "http", "method": "POST", "path": "/api/trades", "headers": headers}
        await sampler(scope, _never_receive, _never_send)

        assert called == ["/api/trades"]
        assert metric_points(PAYLOAD_SIZE_METRIC) == []

    @pytest.mark.asyncio
    async def test_body_never_read(self, pipeline, metric_points):
        called = []

        async def downstream(scope, receive, send):
            called.append(True)

        sampler = PayloadSizeSampler(downstream, registry=pipeline.registry, meter_name="m")
        scope = {
            "type": "http",
            "method": "PUT",
            "path": "/api/trades/42",
            "headers": [(b"content-length", b"2048")],
        }
        # _never_receive fails the test if the sampler touches the body stream
        await sampler(scope, _never_receive, _never_send)

        assert called == [True]
        points = _payload_points(metric_points, "PUT", "/api/trades/42")
        assert points[0].sum == 2048

    @pytest.mark.asyncio
    async def test_record_failure_still_calls_next(self, pipeline, caplog):
        called = []

        async def downstream(scope, receive, send):
            called.append(True)

        sampler = PayloadSizeSampler(downstream, registry=pipeline.registry, meter_name="m")

        def broken_record(value, tags=None):
            raise RuntimeError("registry unavailable")

        sampler.histogram.record = broken_record
        scope = {"type": "http", "method": "POST", "path": "/x", "headers": [(b"content-length", b"10")]}
        await sampler(scope, _never_receive, _never_send)

        assert called == [True]
        assert any("Failed to record payload size" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_non_http_scopes_pass_through(self, pipeline, metric_points):
        called = []

        async def downstream(scope, receive, send):
            called.append(scope["type"])

        sampler = PayloadSizeSampler(downstream, registry=pipeline.registry, meter_name="m")
        await sampler({"type": "lifespan"}, _never_receive, _never_send)

        assert called == ["lifespan"]


async def _never_receive():
    raise AssertionError("request body must not be read")


async def _never_send(message):
    raise AssertionError("response must not be altered")


# ============================================================
# ServerSpanMiddleware
# ============================================================

class ExplodingEnricher(SpanEnricher):
    def enrich(self, exchange):
        raise ValueError("bad attribute")


class TestServerSpanMiddleware:
    """Tests for the server span boundary."""

    @pytest.fixture
    def app(self, pipeline):
        app = FastAPI()
        app.add_middleware(ServerSpanMiddleware, tracer=pipeline.tracer)

        @app.get("/api/prices/{symbol}")
        async def price(symbol: str, request: Request):
            return {"symbol": symbol, "context": get_request_context(request)}

        @app.get("/missing")
        async def missing():
            raise HTTPException(status_code=404, detail="not here")

        @app.get("/broken")
        async def broken():
            raise RuntimeError("handler crashed")

        @app.get("/metrics")
        async def metrics():
            return {"ok": True}

        return app

    @pytest.fixture
    def client(self, app):
        return TestClient(app, raise_server_exceptions=False)

    def test_server_span_attributes(self, client, finished_spans):
        response = client.get("/api/prices/MSFT")
        assert response.status_code == 200

        spans = finished_spans()
        assert len(spans) == 1
        span = spans[0]
        assert span.kind is SpanKind.SERVER
        assert span.name == "GET /api/prices/MSFT"
        assert span.attributes["http.request.method"] == "GET"
        assert span.attributes["http.request.path"] == "/api/prices/MSFT"
        assert span.attributes["http.response.status_code"] == 200
        assert span.status.status_code is StatusCode.OK
        assert span.end_time >= span.start_time

    def test_correlation_headers(self, client, finished_spans):
        response = client.get("/api/prices/MSFT", headers={"X-Request-Id": "req_custom"})

        span = finished_spans()[0]
        assert response.headers["X-Request-Id"] == "req_custom"
        assert response.headers["X-Trace-Id"] == format(span.context.trace_id, "032x")
        assert response.headers["X-Span-Id"] == format(span.context.span_id, "016x")
        assert response.json()["context"]["request_id"] == "req_custom"

    def test_propagated_parent(self, client, finished_spans):
        client.get("/api/prices/MSFT", headers={"traceparent": VALID_TRACEPARENT})

        span = finished_spans()[0]
        assert format(span.context.trace_id, "032x") == "0af7651916cd43dd8448eb211c80319c"
        assert format(span.parent.span_id, "016x") == "b7ad6b7169203331"

    @pytest.mark.parametrize("header", ["garbage", "00-123-456-01"])
    def test_malformed_traceparent_starts_root(self, client, finished_spans, header):
        response = client.get("/api/prices/MSFT", headers={"traceparent": header})

        assert response.status_code == 200
        assert finished_spans()[0].parent is None

    def test_client_error_is_not_span_error(self, client, finished_spans):
        assert client.get("/missing").status_code == 404

        span = finished_spans()[0]
        assert span.status.status_code is not StatusCode.ERROR
        assert span.attributes["http.error"] is True

    def test_exception_recorded(self, client, finished_spans):
        assert client.get("/broken").status_code == 500

        span = finished_spans()[0]
        assert span.status.status_code is StatusCode.ERROR
        assert any(event.name == "exception" for event in span.events)

    def test_excluded_paths_not_traced(self, client, finished_spans):
        assert client.get("/metrics").status_code == 200
        assert finished_spans() == []

    def test_failing_enricher_does_not_affect_response(self, pipeline, finished_spans):
        app = FastAPI()
        app.add_middleware(
            ServerSpanMiddleware,
            tracer=pipeline.tracer,
            options=EnrichmentOptions(server_request=[ExplodingEnricher()]),
        )

        @app.get("/ping")
        async def ping():
            return {"pong": True}

        response = TestClient(app).get("/ping")

        assert response.status_code == 200
        assert response.json() == {"pong": True}
        span = finished_spans()[0]
        assert "http.request.method" not in span.attributes
        assert span.attributes["http.response.status_code"] == 200

    def test_request_duration_recorded(self, pipeline, metric_points):
        app = FastAPI()
        app.add_middleware(
            ServerSpanMiddleware,
            tracer=pipeline.tracer,
            registry=pipeline.registry,
            meter_name="ObservaStock.Test",
        )

        @app.get("/api/prices/{symbol}")
        async def price(symbol: str):
            return {"symbol": symbol}

        @app.get("/broken")
        async def broken():
            raise RuntimeError("handler crashed")

        client = TestClient(app, raise_server_exceptions=False)
        for _ in range(3):
            assert client.get("/api/prices/MSFT").status_code == 200
        assert client.get("/broken").status_code == 500
        assert client.get("/metrics").status_code == 404

        points = {
            (p.attributes["http.route"], p.attributes["http.response.status_code"]): p
            for p in metric_points(SERVER_DURATION_METRIC)
        }
        assert set(points) == {("/api/prices/MSFT", 200), ("/broken", 500)}

        ok = points[("/api/prices/MSFT", 200)]
        assert ok.count == 3
        assert ok.sum >= 0
        assert ok.attributes["http.request.method"] == "GET"
        assert points[("/broken", 500)].attributes["error.type"] == "RuntimeError"

    def test_no_duration_without_registry(self, client, metric_points):
        client.get("/api/prices/MSFT")
        assert metric_points(SERVER_DURATION_METRIC) == []
