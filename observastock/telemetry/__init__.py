"""
ObservaStock - Telemetry

Traces, metrics and logs for the ObservaStock services:
- Resource attribution (service name/version/environment/instance)
- OpenTelemetry providers with batching OTLP export
- W3C trace context propagation
- Instrument registry (counters, histograms, gauges, observable instruments)
- Process runtime metrics
- Span enrichment and request payload sampling

Usage:
    from observastock.telemetry import setup_telemetry, ServerSpanMiddleware

    pipeline = setup_telemetry(TelemetrySettings.from_env("ObservaStock.PriceService"))
    app.add_middleware(ServerSpanMiddleware, tracer=pipeline.tracer)
"""

from .resource import ResourceDescriptor
from .registry import (
    InstrumentHandle,
    InstrumentKind,
    InstrumentRegistry,
    record_safely,
)
from .runtime import register_runtime_metrics
from .export import (
    BatchConfig,
    ExporterSink,
    RetryConfig,
)
from .pipeline import (
    TelemetryPipeline,
    get_pipeline,
    setup_telemetry,
)
from .propagation import (
    ContextPropagator,
    TraceContext,
    current_trace_context,
)
from .enrichment import (
    DbCommand,
    EnrichmentOptions,
    SpanEnricher,
    apply_enrichers,
)
from .middleware import (
    PayloadSizeSampler,
    ServerSpanMiddleware,
    get_request_context,
)
from .http_client import PropagatingTransport, create_traced_client
from .db import traced_db_operation
from .logging import get_logger, setup_logging, LogContext

__all__ = [
    # Resource & pipeline
    "ResourceDescriptor",
    "TelemetryPipeline",
    "ExporterSink",
    "BatchConfig",
    "RetryConfig",
    "setup_telemetry",
    "get_pipeline",
    # Metrics
    "InstrumentRegistry",
    "InstrumentHandle",
    "InstrumentKind",
    "record_safely",
    "register_runtime_metrics",
    # Propagation
    "ContextPropagator",
    "TraceContext",
    "current_trace_context",
    # Enrichment & boundaries
    "SpanEnricher",
    "EnrichmentOptions",
    "DbCommand",
    "apply_enrichers",
    "ServerSpanMiddleware",
    "PayloadSizeSampler",
    "get_request_context",
    "PropagatingTransport",
    "create_traced_client",
    "traced_db_operation",
    # Logging
    "get_logger",
    "setup_logging",
    "LogContext",
]
