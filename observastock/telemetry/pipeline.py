"""
ObservaStock - Telemetry Pipeline

Composes the three OpenTelemetry signal pipelines (traces, metrics, logs)
around one ResourceDescriptor and one ExporterSink.

Features:
- Every record stamped with the service resource
- Always-on sampling by default, any SDK Sampler can be swapped in
- Batching: flush on full batch or timer, bounded queue dropping oldest
- Bounded retry on export, failures never reach request handling
- Shutdown with a grace deadline, unflushed records discarded

Usage:
    from observastock.telemetry.pipeline import setup_telemetry

    pipeline = setup_telemetry(TelemetrySettings.from_env("ObservaStock.TradingApi"))
    tracer = pipeline.tracer
    registry = pipeline.registry

    # On shutdown
    pipeline.shutdown()
"""

import logging
import threading
import time
from typing import List, Optional, Sequence

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, LogExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    MetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON, Sampler

from ..config import TelemetrySettings
from .export import (
    SIGNALS,
    ExporterSink,
    ResilientLogExporter,
    ResilientMetricExporter,
    ResilientSpanExporter,
    build_exporters,
)
from .registry import InstrumentRegistry
from .resource import ResourceDescriptor
from .runtime import register_runtime_metrics

logger = logging.getLogger("observastock.telemetry.pipeline")


class _ExcludeTelemetryInternals(logging.Filter):
    """Keep exporter and SDK diagnostics out of the exported log stream."""

    PREFIXES = ("opentelemetry", "observastock.telemetry.export")

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.PREFIXES)


class TelemetryPipeline:
    """
    Trace, metric and log providers for one service process.

    Exporters given explicitly replace the ones built from the sink; all of
    them are wrapped with bounded retry.
    """

    def __init__(
        self,
        descriptor: ResourceDescriptor,
        sink: Optional[ExporterSink] = None,
        sampler: Optional[Sampler] = None,
        span_exporter: Optional[SpanExporter] = None,
        metric_exporter: Optional[MetricExporter] = None,
        log_exporter: Optional[LogExporter] = None,
        metric_readers: Optional[Sequence[MetricReader]] = None,
        prometheus_enabled: bool = False,
    ):
        """
        Build the providers.

        Args:
            descriptor: Service identity stamped on every record
            sink: Exporter destination and batching limits
            sampler: Trace sampler (defaults to always-on)
            span_exporter: Override for the sink's span exporter
            metric_exporter: Override for the sink's metric exporter
            log_exporter: Override for the sink's log exporter
            metric_readers: Extra readers (e.g. InMemoryMetricReader in tests)
            prometheus_enabled: Expose metrics for Prometheus scraping
        """
        self.descriptor = descriptor
        self.sink = sink or ExporterSink()
        self.sampler = sampler or ALWAYS_ON
        self.resource = descriptor.to_resource()

        # Only build what the caller did not supply
        missing = [
            signal
            for signal, given in zip(SIGNALS, (span_exporter, metric_exporter, log_exporter))
            if given is None
        ]
        if missing:
            built_spans, built_metrics, built_logs = build_exporters(self.sink, signals=missing)
            span_exporter = span_exporter or built_spans
            metric_exporter = metric_exporter or built_metrics
            log_exporter = log_exporter or built_logs

        batch = self.sink.batch
        self._resilient: List = []
        self._logging_handler: Optional[LoggingHandler] = None
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False

        # Traces
        self.tracer_provider = TracerProvider(resource=self.resource, sampler=self.sampler)
        if span_exporter is not None:
            exporter = ResilientSpanExporter(span_exporter, retry=self.sink.retry)
            self._resilient.append(exporter)
            self.tracer_provider.add_span_processor(
                BatchSpanProcessor(
                    exporter,
                    max_queue_size=batch.max_queue_size,
                    schedule_delay_millis=batch.flush_interval_millis,
                    max_export_batch_size=batch.max_batch_size,
                    export_timeout_millis=batch.export_timeout_millis,
                )
            )

        # Metrics
        readers: List[MetricReader] = list(metric_readers or [])
        if metric_exporter is not None:
            exporter = ResilientMetricExporter(metric_exporter, retry=self.sink.retry)
            self._resilient.append(exporter)
            readers.append(
                PeriodicExportingMetricReader(
                    exporter,
                    export_interval_millis=batch.flush_interval_millis,
                    export_timeout_millis=batch.export_timeout_millis,
                )
            )
        if prometheus_enabled:
            readers.append(PrometheusMetricReader())
        self.meter_provider = MeterProvider(resource=self.resource, metric_readers=readers)

        # Logs
        self.logger_provider = LoggerProvider(resource=self.resource)
        if log_exporter is not None:
            exporter = ResilientLogExporter(log_exporter, retry=self.sink.retry)
            self._resilient.append(exporter)
            self.logger_provider.add_log_record_processor(
                BatchLogRecordProcessor(
                    exporter,
                    schedule_delay_millis=batch.flush_interval_millis,
                    max_export_batch_size=batch.max_batch_size,
                    max_queue_size=batch.max_queue_size,
                    export_timeout_millis=batch.export_timeout_millis,
                )
            )

        self.tracer = self.tracer_provider.get_tracer(
            descriptor.service_name, descriptor.service_version
        )
        self.registry = InstrumentRegistry(self.meter_provider)

    @classmethod
    def from_settings(cls, settings: TelemetrySettings, **kwargs) -> "TelemetryPipeline":
        descriptor = ResourceDescriptor.create(
            service_name=settings.service_name,
            service_version=settings.service_version,
            environment=settings.environment,
            instance_id=settings.instance_id,
        )
        pipeline = cls(
            descriptor,
            sink=ExporterSink.from_settings(settings),
            prometheus_enabled=settings.prometheus_enabled,
            **kwargs,
        )
        pipeline.registry.register_meters([descriptor.service_name, *settings.extra_meters])
        if settings.runtime_metrics:
            register_runtime_metrics(pipeline.registry)
        return pipeline

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def attach_logging_handler(self, target: Optional[logging.Logger] = None) -> LoggingHandler:
        """Bridge stdlib log records into the log pipeline."""
        if self._logging_handler is None:
            handler = LoggingHandler(level=logging.NOTSET, logger_provider=self.logger_provider)
            handler.addFilter(_ExcludeTelemetryInternals())
            (target or logging.getLogger()).addHandler(handler)
            self._logging_handler = handler
        return self._logging_handler

    def detach_logging_handler(self, target: Optional[logging.Logger] = None):
        if self._logging_handler is not None:
            (target or logging.getLogger()).removeHandler(self._logging_handler)
            self._logging_handler = None

    def force_flush(self, timeout_seconds: float = 5.0) -> bool:
        """Flush all three pipelines within one shared deadline."""
        deadline = time.monotonic() + timeout_seconds

        def remaining_millis() -> int:
            return max(0, int((deadline - time.monotonic()) * 1000))

        spans_ok = self.tracer_provider.force_flush(remaining_millis())
        metrics_ok = self.meter_provider.force_flush(timeout_millis=remaining_millis())
        logs_ok = self.logger_provider.force_flush(remaining_millis())
        return bool(spans_ok and metrics_ok and logs_ok)

    def shutdown(self, grace_seconds: float = 5.0) -> bool:
        """
        Final flush and teardown, bounded by grace_seconds.

        Flush and provider shutdown run on a daemon thread; when the deadline
        passes first, retries are cancelled and whatever is still buffered
        is discarded.

        Returns:
            True if everything was flushed and shut down within the deadline
        """
        with self._shutdown_lock:
            if self._is_shutdown:
                return True
            self._is_shutdown = True

        self.detach_logging_handler()
        outcome = {"flushed": False}

        def teardown():
            try:
                outcome["flushed"] = self.force_flush(grace_seconds)
            except Exception as e:
                logger.warning("Telemetry flush failed during shutdown: %s", e)
            for exporter in self._resilient:
                exporter.stop_retrying()
            self._shutdown_providers()

        worker = threading.Thread(target=teardown, name="telemetry-shutdown", daemon=True)
        worker.start()
        worker.join(grace_seconds)

        if worker.is_alive():
            for exporter in self._resilient:
                exporter.stop_retrying()
            logger.warning(
                "Telemetry shutdown exceeded %.1fs grace period, discarding unflushed records",
                grace_seconds,
            )
            return False
        return outcome["flushed"]

    def _shutdown_providers(self):
        for name, provider in (
            ("tracer", self.tracer_provider),
            ("meter", self.meter_provider),
            ("logger", self.logger_provider),
        ):
            try:
                provider.shutdown()
            except Exception as e:
                logger.warning("Error shutting down %s provider: %s", name, e)


# Module-level state for the process-wide pipeline
_pipeline: Optional[TelemetryPipeline] = None
_pipeline_lock = threading.Lock()
_globals_installed = False


def install_global(pipeline: TelemetryPipeline) -> bool:
    """
    Register the pipeline's providers as OpenTelemetry globals.

    Only the first call has an effect; the SDK does not allow replacing
    global providers.

    Returns:
        True if this call installed the providers
    """
    global _globals_installed

    if _globals_installed:
        return False
    trace.set_tracer_provider(pipeline.tracer_provider)
    metrics.set_meter_provider(pipeline.meter_provider)
    set_logger_provider(pipeline.logger_provider)
    _globals_installed = True
    return True


def setup_telemetry(settings: TelemetrySettings, **kwargs) -> TelemetryPipeline:
    """
    Initialize process-wide telemetry.

    Call once at application startup. Later calls are no-ops that return the
    pipeline built by the first call.

    Args:
        settings: Resolved telemetry settings
        **kwargs: Passed to TelemetryPipeline (exporter overrides, sampler)

    Returns:
        TelemetryPipeline instance
    """
    global _pipeline

    with _pipeline_lock:
        if _pipeline is not None and not _pipeline.is_shutdown:
            logger.warning(
                "Telemetry already initialized for %s, ignoring re-initialization",
                _pipeline.descriptor.service_name,
            )
            return _pipeline

        pipeline = TelemetryPipeline.from_settings(settings, **kwargs)
        install_global(pipeline)
        pipeline.attach_logging_handler()
        _pipeline = pipeline

    logger.info(
        "Telemetry initialized for %s %s (%s) -> %s [%s]",
        pipeline.descriptor.service_name,
        pipeline.descriptor.service_version,
        pipeline.descriptor.environment,
        pipeline.sink.endpoint,
        pipeline.sink.protocol.value,
    )
    return pipeline


def get_pipeline() -> Optional[TelemetryPipeline]:
    """Get the process-wide pipeline, if initialized."""
    return _pipeline


def reset_telemetry():
    """Shut down and forget the process-wide pipeline (for testing)."""
    global _pipeline

    with _pipeline_lock:
        pipeline = _pipeline
        _pipeline = None
    if pipeline is not None:
        pipeline.shutdown(grace_seconds=1.0)
