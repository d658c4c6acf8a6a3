"""
ObservaStock - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- In-memory telemetry pipeline (spans, metrics, logs captured in process)
- Helpers to read exported metric data points
"""

import os
import threading
from typing import Callable, List, Optional

import pytest
from opentelemetry.sdk._logs.export import InMemoryLogExporter
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from observastock.config import ExportProtocol, TelemetrySettings
from observastock.telemetry.export import BatchConfig, ExporterSink, RetryConfig
from observastock.telemetry.pipeline import TelemetryPipeline
from observastock.telemetry.resource import ResourceDescriptor


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Telemetry fixtures
# ============================================================

@pytest.fixture
def descriptor():
    """Service identity used by test pipelines."""
    return ResourceDescriptor.create(
        service_name="ObservaStock.Test",
        service_version="9.9.9",
        environment="test",
        instance_id="test-instance-1",
    )


@pytest.fixture
def quiet_sink():
    """Sink that builds no network exporters and never retries."""
    return ExporterSink(
        protocol=ExportProtocol.NONE,
        batch=BatchConfig(max_batch_size=64, max_queue_size=256, flush_interval_seconds=0.05),
        retry=RetryConfig(max_retries=0),
    )


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def log_exporter():
    return InMemoryLogExporter()


@pytest.fixture
def pipeline(descriptor, quiet_sink, span_exporter, metric_reader, log_exporter):
    """
    Telemetry pipeline capturing everything in memory.

    Not installed as the OpenTelemetry global, so every test gets its own.
    """
    pipeline = TelemetryPipeline(
        descriptor,
        sink=quiet_sink,
        span_exporter=span_exporter,
        log_exporter=log_exporter,
        metric_readers=[metric_reader],
    )
    yield pipeline
    pipeline.shutdown(grace_seconds=1.0)


@pytest.fixture
def finished_spans(pipeline, span_exporter) -> Callable[[], list]:
    """Flush the pipeline and return exported spans."""
    def _finished():
        pipeline.force_flush(timeout_seconds=2.0)
        return list(span_exporter.get_finished_spans())
    return _finished


def collect_points(reader: InMemoryMetricReader, name: str) -> List:
    """Data points of every metric called `name` in one collection."""
    data = reader.get_metrics_data()
    points: List = []
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    points.extend(metric.data.data_points)
    return points


@pytest.fixture
def metric_points(metric_reader) -> Callable[[str], List]:
    """Read the data points of a metric by name."""
    return lambda name: collect_points(metric_reader, name)


@pytest.fixture
def service_settings():
    """Service settings that keep the health bridge out of the way."""
    return TelemetrySettings(
        service_name="ObservaStock.Test",
        environment="test",
        otlp_protocol=ExportProtocol.NONE,
        health_check_period_seconds=60.0,
        health_check_delay_seconds=60.0,
        json_logs=False,
    )


class BlockingSpanExporter(SpanExporter):
    """Blocks every export until released, like a hung collector."""

    def __init__(self):
        self.release = threading.Event()
        self.exported = []

    def export(self, spans):
        self.release.wait(10)
        self.exported.extend(spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        self.release.set()


@pytest.fixture
def blocking_exporter():
    """Span exporter stuck until `release` is set (always released on teardown)."""
    exporter = BlockingSpanExporter()
    yield exporter
    exporter.release.set()
