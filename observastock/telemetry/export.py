"""
ObservaStock - Exporter Sink

Builds the exporters shared by the trace, metric and log pipelines and wraps
them with bounded retry.

Features:
- OTLP over gRPC or HTTP/protobuf, console output, or no export at all
- Exponential backoff with jitter, bounded by max_retries
- Persistent failures drop the batch and are logged at reduced frequency
- Never raises into the SDK's background export threads

Batching itself (bounded queue, flush on size or timer) is done by the SDK
processors configured from BatchConfig in pipeline.py.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter as GrpcLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter as GrpcMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcSpanExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter as HttpLogExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter as HttpMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpSpanExporter
from opentelemetry.sdk._logs.export import ConsoleLogExporter, LogExporter, LogExportResult
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    MetricExportResult,
    MetricsData,
)
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SpanExporter, SpanExportResult

from ..config import DEFAULT_OTLP_ENDPOINT, ExportProtocol, TelemetrySettings
from ..errors import ExporterError

logger = logging.getLogger("observastock.telemetry.export")


@dataclass
class BatchConfig:
    """Batching limits applied by the SDK processors."""
    max_batch_size: int = 512
    max_queue_size: int = 2048  # Records beyond this are dropped, oldest first
    flush_interval_seconds: float = 5.0
    export_timeout_seconds: float = 10.0

    def __post_init__(self):
        if self.max_batch_size <= 0 or self.max_queue_size <= 0:
            raise ValueError("Batch and queue sizes must be positive")
        if self.max_batch_size > self.max_queue_size:
            raise ValueError("max_batch_size cannot exceed max_queue_size")

    @property
    def flush_interval_millis(self) -> int:
        return int(self.flush_interval_seconds * 1000)

    @property
    def export_timeout_millis(self) -> int:
        return int(self.export_timeout_seconds * 1000)


@dataclass
class RetryConfig:
    """Configuration for export retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 4.0  # seconds
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # 25% jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        jitter = delay * self.jitter_factor * random.uniform(-1, 1)
        return max(0.0, delay + jitter)


@dataclass
class ExporterSink:
    """Destination shared by the three signal pipelines."""
    endpoint: str = DEFAULT_OTLP_ENDPOINT
    protocol: ExportProtocol = ExportProtocol.GRPC
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_settings(cls, settings: TelemetrySettings) -> "ExporterSink":
        return cls(
            endpoint=settings.otlp_endpoint,
            protocol=settings.otlp_protocol,
            batch=BatchConfig(
                max_batch_size=settings.max_batch_size,
                max_queue_size=settings.max_queue_size,
                flush_interval_seconds=settings.flush_interval_seconds,
            ),
        )

    @property
    def insecure(self) -> bool:
        return self.endpoint.startswith("http://")

    def signal_url(self, signal: str) -> str:
        """HTTP/protobuf URL for a signal ("traces", "metrics", "logs")."""
        base = self.endpoint.rstrip("/")
        suffix = f"/v1/{signal}"
        if base.endswith(suffix):
            return base
        return base + suffix


class RateLimitedLog:
    """
    Emit a warning at most once per interval.

    Suppressed messages are counted and reported with the next one that
    gets through.
    """

    def __init__(self, target: logging.Logger, interval_seconds: float = 60.0):
        self._logger = target
        self._interval = interval_seconds
        self._last_emit: Optional[float] = None
        self._suppressed = 0
        self._lock = threading.Lock()

    @property
    def suppressed(self) -> int:
        return self._suppressed

    def warning(self, msg: str, *args) -> bool:
        """Log if the interval has elapsed. Returns True if emitted."""
        now = time.monotonic()
        with self._lock:
            if self._last_emit is not None and now - self._last_emit < self._interval:
                self._suppressed += 1
                return False
            suppressed = self._suppressed
            self._suppressed = 0
            self._last_emit = now

        if suppressed:
            self._logger.warning(msg + " (%d similar messages suppressed)", *args, suppressed)
        else:
            self._logger.warning(msg, *args)
        return True


class _RetryingExport:
    """Shared retry loop for the signal-specific exporter wrappers."""

    signal = "telemetry"

    def _init_retry(self, retry: Optional[RetryConfig], failure_log_interval: float):
        self._retry = retry or RetryConfig()
        self._stopped = threading.Event()
        self._failure_log = RateLimitedLog(logger, failure_log_interval)
        self.dropped_batches = 0

    def _export_with_retry(self, attempt_export: Callable[[], bool], size: int) -> bool:
        last_error = "exporter reported failure"
        attempts = 0

        for attempt in range(self._retry.max_retries + 1):
            attempts += 1
            try:
                if attempt_export():
                    return True
            except Exception as e:
                last_error = str(e) or type(e).__name__

            if attempt >= self._retry.max_retries or self._stopped.is_set():
                break
            # Interruptible sleep so shutdown is not held up by backoff
            if self._stopped.wait(self._retry.delay_for(attempt)):
                break

        self.dropped_batches += 1
        error = ExporterError(self.signal, last_error, attempts=attempts)
        self._failure_log.warning("Dropping %d %s record(s): %s", size, self.signal, error)
        return False

    def stop_retrying(self):
        self._stopped.set()


class ResilientSpanExporter(_RetryingExport, SpanExporter):
    """SpanExporter wrapper adding bounded retry."""

    signal = "span"

    def __init__(
        self,
        exporter: SpanExporter,
        retry: Optional[RetryConfig] = None,
        failure_log_interval: float = 60.0,
    ):
        self._exporter = exporter
        self._init_retry(retry, failure_log_interval)

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        ok = self._export_with_retry(
            lambda: self._exporter.export(spans) == SpanExportResult.SUCCESS,
            len(spans),
        )
        return SpanExportResult.SUCCESS if ok else SpanExportResult.FAILURE

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self._exporter.force_flush(timeout_millis)

    def shutdown(self) -> None:
        self.stop_retrying()
        self._exporter.shutdown()


class ResilientLogExporter(_RetryingExport, LogExporter):
    """LogExporter wrapper adding bounded retry."""

    signal = "log"

    def __init__(
        self,
        exporter: LogExporter,
        retry: Optional[RetryConfig] = None,
        failure_log_interval: float = 60.0,
    ):
        self._exporter = exporter
        self._init_retry(retry, failure_log_interval)

    def export(self, batch: Sequence[Any]) -> LogExportResult:
        ok = self._export_with_retry(
            lambda: self._exporter.export(batch) == LogExportResult.SUCCESS,
            len(batch),
        )
        return LogExportResult.SUCCESS if ok else LogExportResult.FAILURE

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        flush = getattr(self._exporter, "force_flush", None)
        return flush(timeout_millis) if flush else True

    def shutdown(self):
        self.stop_retrying()
        self._exporter.shutdown()


class ResilientMetricExporter(_RetryingExport, MetricExporter):
    """MetricExporter wrapper adding bounded retry."""

    signal = "metric"

    def __init__(
        self,
        exporter: MetricExporter,
        retry: Optional[RetryConfig] = None,
        failure_log_interval: float = 60.0,
    ):
        super().__init__(
            preferred_temporality=exporter._preferred_temporality,
            preferred_aggregation=exporter._preferred_aggregation,
        )
        self._exporter = exporter
        self._init_retry(retry, failure_log_interval)

    def export(
        self,
        metrics_data: MetricsData,
        timeout_millis: float = 10_000,
        **kwargs,
    ) -> MetricExportResult:
        size = sum(
            len(scope.metrics)
            for resource in metrics_data.resource_metrics
            for scope in resource.scope_metrics
        )
        ok = self._export_with_retry(
            lambda: self._exporter.export(metrics_data, timeout_millis=timeout_millis)
            == MetricExportResult.SUCCESS,
            size,
        )
        return MetricExportResult.SUCCESS if ok else MetricExportResult.FAILURE

    def force_flush(self, timeout_millis: float = 10_000) -> bool:
        return self._exporter.force_flush(timeout_millis=timeout_millis)

    def shutdown(self, timeout_millis: float = 30_000, **kwargs) -> None:
        self.stop_retrying()
        self._exporter.shutdown(timeout_millis=timeout_millis)


SIGNALS = ("traces", "metrics", "logs")


def build_exporters(
    sink: ExporterSink,
    signals: Iterable[str] = SIGNALS,
) -> Tuple[Optional[SpanExporter], Optional[MetricExporter], Optional[LogExporter]]:
    """
    Create the raw exporters for a sink.

    Args:
        sink: Destination and protocol
        signals: Which of "traces", "metrics", "logs" to build

    Returns:
        (span_exporter, metric_exporter, log_exporter); None for signals not
        requested, and all None for ExportProtocol.NONE
    """
    wanted = set(signals)
    timeout = sink.batch.export_timeout_seconds

    if sink.protocol is ExportProtocol.NONE:
        return None, None, None

    if sink.protocol is ExportProtocol.CONSOLE:
        factories = (ConsoleSpanExporter, ConsoleMetricExporter, ConsoleLogExporter)
    elif sink.protocol is ExportProtocol.HTTP_PROTOBUF:
        factories = (
            lambda: HttpSpanExporter(endpoint=sink.signal_url("traces"), timeout=timeout),
            lambda: HttpMetricExporter(endpoint=sink.signal_url("metrics"), timeout=timeout),
            lambda: HttpLogExporter(endpoint=sink.signal_url("logs"), timeout=timeout),
        )
    else:
        factories = (
            lambda: GrpcSpanExporter(endpoint=sink.endpoint, insecure=sink.insecure, timeout=timeout),
            lambda: GrpcMetricExporter(endpoint=sink.endpoint, insecure=sink.insecure, timeout=timeout),
            lambda: GrpcLogExporter(endpoint=sink.endpoint, insecure=sink.insecure, timeout=timeout),
        )

    spans, metrics, logs = (
        factory() if signal in wanted else None
        for signal, factory in zip(SIGNALS, factories)
    )
    return spans, metrics, logs
