"""
ObservaStock - Inbound Telemetry Middleware

Two stages for the inbound request pipeline:

- PayloadSizeSampler: pure ASGI, first stage. Records the declared
  content-length of each request on a histogram, then hands off untouched.
- ServerSpanMiddleware: the server span boundary. Extracts the propagated
  parent context, opens the SERVER span, runs the enrichers, sets status and
  correlation headers, records the request duration and logs the request.

Usage:
    app = FastAPI()
    app.add_middleware(ServerSpanMiddleware, tracer=pipeline.tracer,
                       registry=pipeline.registry, meter_name="ObservaStock.TradingApi")
    app.add_middleware(PayloadSizeSampler, registry=pipeline.registry,
                       meter_name="ObservaStock.TradingApi")  # added last = runs first
"""

import logging
import time
import uuid
from typing import Optional, Set

from fastapi import Request, Response
from opentelemetry.trace import SpanKind, Status, StatusCode, Tracer
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp, Receive, Scope, Send

from .enrichment import EnrichmentOptions, apply_enrichers
from .logging import LogContext, get_logger
from .propagation import ContextPropagator, TraceContext
from .registry import InstrumentRegistry, record_safely

PAYLOAD_SIZE_METRIC = "http_request_payload_size_bytes"
SERVER_DURATION_METRIC = "http.server.request.duration"
HTTP_METER = "observastock.http"

_sampler_logger = logging.getLogger("observastock.telemetry.payload")


class PayloadSizeSampler:
    """
    Request payload size histogram.

    Only the content-length header is read: the body stream is passed to the
    next stage as is, and the response is never touched. Requests without a
    declared length (or with length 0) are not sampled.
    """

    def __init__(
        self,
        app: ASGIApp,
        registry: InstrumentRegistry,
        meter_name: str,
        metric_name: str = PAYLOAD_SIZE_METRIC,
    ):
        self.app = app
        self.histogram = registry.histogram(
            meter_name,
            metric_name,
            unit="bytes",
            description="Size of HTTP request payloads in bytes",
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            self._sample(scope)
        await self.app(scope, receive, send)

    def _sample(self, scope: Scope) -> None:
        raw_length = Headers(scope=scope).get("content-length")
        if raw_length is None:
            return

        try:
            size = int(raw_length)
        except ValueError:
            _sampler_logger.debug("Ignoring malformed content-length %r", raw_length)
            return
        if size <= 0:
            return

        method = scope.get("method", "")
        route = scope.get("path") or "/"
        try:
            self.histogram.record(size, {"http.method": method, "http.route": route})
        except Exception as e:
            _sampler_logger.warning("Failed to record payload size for %s %s: %s", method, route, e)
            return

        _sampler_logger.debug("Request size recorded: %d bytes for %s %s", size, method, route)


class ServerSpanMiddleware(BaseHTTPMiddleware):
    """
    Server span boundary for inbound requests.

    The span's parent comes only from the propagated headers; a request
    without a valid traceparent starts a new trace.
    """

    # Paths to exclude from tracing
    EXCLUDE_PATHS = {"/metrics", "/openapi.json", "/docs", "/redoc"}

    def __init__(
        self,
        app: ASGIApp,
        tracer: Tracer,
        propagator: Optional[ContextPropagator] = None,
        options: Optional[EnrichmentOptions] = None,
        exclude_paths: Optional[Set[str]] = None,
        registry: Optional[InstrumentRegistry] = None,
        meter_name: str = HTTP_METER,
    ):
        super().__init__(app)
        self.tracer = tracer
        self.propagator = propagator or ContextPropagator()
        self.options = options or EnrichmentOptions()
        self.exclude_paths = self.EXCLUDE_PATHS if exclude_paths is None else exclude_paths
        self.logger = get_logger("observastock.telemetry.middleware")
        self.duration = None
        if registry is not None:
            self.duration = registry.histogram(
                meter_name,
                SERVER_DURATION_METRIC,
                unit="s",
                description="Duration of inbound HTTP requests",
            )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:24]}"
        parent_context = self.propagator.extract(request.headers)
        span_name = f"{request.method} {request.url.path}"
        start_time = time.perf_counter()

        with self.tracer.start_as_current_span(
            span_name,
            kind=SpanKind.SERVER,
            context=parent_context,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            apply_enrichers(span, self.options.server_request, request)

            trace_ctx = TraceContext.from_span(span)
            request.state.request_id = request_id
            request.state.trace_context = trace_ctx

            with LogContext.bind(request_id=request_id, route=request.url.path):
                try:
                    response = await call_next(request)
                except Exception as e:
                    duration_ms = (time.perf_counter() - start_time) * 1000
                    if self.options.record_exception:
                        span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    self.logger.exception(
                        "Request failed with exception",
                        method=request.method,
                        path=request.url.path,
                        error_type=type(e).__name__,
                        duration_ms=round(duration_ms, 2),
                    )
                    self._record_duration(request, 500, duration_ms, type(e).__name__)
                    raise

                apply_enrichers(span, self.options.server_response, response)

                if response.status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                elif response.status_code >= 400:
                    # Client errors are not span errors, but we note them
                    span.set_attribute("http.error", True)
                else:
                    span.set_status(Status(StatusCode.OK))

                response.headers["X-Request-Id"] = request_id
                response.headers["X-Trace-Id"] = trace_ctx.trace_id
                response.headers["X-Span-Id"] = trace_ctx.span_id

                duration_ms = (time.perf_counter() - start_time) * 1000
                self._record_duration(request, response.status_code, duration_ms)
                self._log_request(request, response, duration_ms)
            return response

    def _record_duration(
        self,
        request: Request,
        status_code: int,
        duration_ms: float,
        error_type: Optional[str] = None,
    ):
        if self.duration is None:
            return
        tags = {
            "http.request.method": request.method,
            "http.route": request.url.path,
            "http.response.status_code": status_code,
        }
        if error_type:
            tags["error.type"] = error_type
        record_safely(self.duration, duration_ms / 1000, tags)

    def _log_request(self, request: Request, response: Response, duration_ms: float):
        """Log request completion."""
        status_code = response.status_code

        log_data = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": request.client.host if request.client else None,
        }

        if status_code >= 500:
            self.logger.error("Request completed with server error", **log_data)
        elif status_code >= 400:
            self.logger.warning("Request completed with client error", **log_data)
        else:
            self.logger.info("Request completed", **log_data)


def get_request_context(request: Request) -> dict:
    """
    Get observability context from request.

    Returns dict with request_id, trace_id, span_id.
    """
    trace_ctx = getattr(request.state, "trace_context", None)
    return {
        "request_id": getattr(request.state, "request_id", ""),
        "trace_id": trace_ctx.trace_id if trace_ctx else "",
        "span_id": trace_ctx.span_id if trace_ctx else "",
    }
