"""
ObservaStock - Traced HTTP Client

httpx transport that is the client span boundary for outbound calls: it
opens a CLIENT span, injects the traceparent header before the request leaves
the process, and tags the span from the response status. With a registry it
also records http.client.request.duration.

Usage:
    client = create_traced_client(pipeline.tracer, base_url="http://localhost:5001",
                                  registry=pipeline.registry)
    response = await client.get("/api/prices/MSFT")
"""

import time
from typing import Optional

import httpx
from opentelemetry.trace import SpanKind, Status, StatusCode, Tracer

from .enrichment import EnrichmentOptions, apply_enrichers
from .propagation import ContextPropagator
from .registry import InstrumentRegistry, record_safely

CLIENT_DURATION_METRIC = "http.client.request.duration"
HTTP_CLIENT_METER = "observastock.http.client"


class PropagatingTransport(httpx.AsyncBaseTransport):
    """Wraps another async transport with a client span and context injection."""

    def __init__(
        self,
        tracer: Tracer,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        propagator: Optional[ContextPropagator] = None,
        options: Optional[EnrichmentOptions] = None,
        registry: Optional[InstrumentRegistry] = None,
        meter_name: str = HTTP_CLIENT_METER,
    ):
        self.tracer = tracer
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.propagator = propagator or ContextPropagator()
        self.options = options or EnrichmentOptions()
        self.duration = None
        if registry is not None:
            self.duration = registry.histogram(
                meter_name,
                CLIENT_DURATION_METRIC,
                unit="s",
                description="Duration of outbound HTTP requests",
            )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        span_name = f"{request.method} {request.url.path}"
        start_time = time.perf_counter()

        with self.tracer.start_as_current_span(
            span_name,
            kind=SpanKind.CLIENT,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            apply_enrichers(span, self.options.client_request, request)
            # The client span is now current, so the callee sees it as parent
            self.propagator.inject(request.headers)

            try:
                response = await self._transport.handle_async_request(request)
            except Exception as e:
                if self.options.record_exception:
                    span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, f"{type(e).__name__}: {e}"))
                self._record_duration(request, start_time, error_type=type(e).__name__)
                raise

            apply_enrichers(span, self.options.client_response, response)
            if response.status_code >= 400:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
            self._record_duration(request, start_time, status_code=response.status_code)
            return response

    def _record_duration(
        self,
        request: httpx.Request,
        start_time: float,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
    ):
        if self.duration is None:
            return
        tags = {
            "http.request.method": request.method,
            "server.address": request.url.host,
        }
        if status_code is not None:
            tags["http.response.status_code"] = status_code
        if error_type:
            tags["error.type"] = error_type
        record_safely(self.duration, time.perf_counter() - start_time, tags)

    async def aclose(self) -> None:
        await self._transport.aclose()


def create_traced_client(
    tracer: Tracer,
    base_url: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = 10.0,
    options: Optional[EnrichmentOptions] = None,
    registry: Optional[InstrumentRegistry] = None,
    meter_name: str = HTTP_CLIENT_METER,
    **kwargs,
) -> httpx.AsyncClient:
    """
    Create an httpx.AsyncClient whose requests carry trace context.

    Args:
        tracer: Tracer that owns the client spans
        base_url: Base URL for relative requests
        transport: Inner transport (defaults to a real network transport)
        timeout: Request timeout in seconds
        options: Enrichers for client request/response
        registry: Registry for the request duration histogram (optional)
        meter_name: Meter that owns the histogram

    Returns:
        httpx.AsyncClient
    """
    return httpx.AsyncClient(
        base_url=base_url,
        transport=PropagatingTransport(
            tracer,
            transport=transport,
            options=options,
            registry=registry,
            meter_name=meter_name,
        ),
        timeout=timeout,
        headers={"Accept": "application/json"},
        **kwargs,
    )
