"""
ObservaStock - Telemetry Configuration

Plain key/value configuration read from the environment. Nothing in the
telemetry core depends on how these values are loaded; components take the
resolved values as constructor arguments.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ExportProtocol(str, Enum):
    """Transport used by the exporter sink."""

    GRPC = "grpc"
    HTTP_PROTOBUF = "http/protobuf"
    CONSOLE = "console"  # Debug output on stdout
    NONE = "none"        # Telemetry recorded but never shipped

    @classmethod
    def parse(cls, value: str) -> "ExportProtocol":
        normalized = value.lower().strip()
        if normalized in {"http", "http/protobuf"}:
            return cls.HTTP_PROTOBUF
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(
            "Invalid OTEL_EXPORTER_OTLP_PROTOCOL. Use one of: grpc, http/protobuf, console, none"
        )


DEFAULT_OTLP_ENDPOINT = "http://localhost:4317"


def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _split_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_environment_name() -> str:
    """
    Resolve the deployment environment name.

    DEPLOYMENT_ENVIRONMENT wins, then MODE, then "development".
    """
    return (
        os.getenv("DEPLOYMENT_ENVIRONMENT")
        or os.getenv("MODE")
        or "development"
    )


@dataclass
class TelemetrySettings:
    """Resolved telemetry configuration for one service process."""

    service_name: str
    service_version: str = "1.0.0"
    environment: Optional[str] = None
    instance_id: Optional[str] = None

    # Exporter sink
    otlp_endpoint: str = DEFAULT_OTLP_ENDPOINT
    otlp_protocol: ExportProtocol = ExportProtocol.GRPC
    max_batch_size: int = 512
    max_queue_size: int = 2048
    flush_interval_seconds: float = 5.0
    shutdown_grace_seconds: float = 5.0

    # Health bridge
    health_check_period_seconds: float = 30.0
    health_check_delay_seconds: float = 5.0

    # Metrics
    extra_meters: List[str] = field(default_factory=list)
    runtime_metrics: bool = True
    prometheus_enabled: bool = False

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    @classmethod
    def from_env(
        cls,
        service_name: str,
        service_version: str = "1.0.0",
    ) -> "TelemetrySettings":
        """
        Build settings from environment variables.

        Args:
            service_name: Default service name (OTEL_SERVICE_NAME overrides it)
            service_version: Default version (SERVICE_VERSION overrides it)

        Returns:
            TelemetrySettings instance
        """
        return cls(
            service_name=os.getenv("OTEL_SERVICE_NAME", service_name),
            service_version=os.getenv("SERVICE_VERSION", service_version),
            environment=get_environment_name(),
            instance_id=os.getenv("SERVICE_INSTANCE_ID") or None,
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_OTLP_ENDPOINT),
            otlp_protocol=ExportProtocol.parse(os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "grpc")),
            max_batch_size=_get_int("OTEL_BSP_MAX_EXPORT_BATCH_SIZE", 512),
            max_queue_size=_get_int("OTEL_BSP_MAX_QUEUE_SIZE", 2048),
            flush_interval_seconds=_get_float("TELEMETRY_FLUSH_INTERVAL", 5.0),
            shutdown_grace_seconds=_get_float("TELEMETRY_SHUTDOWN_GRACE", 5.0),
            health_check_period_seconds=_get_float("HEALTH_CHECK_PERIOD", 30.0),
            health_check_delay_seconds=_get_float("HEALTH_CHECK_DELAY", 5.0),
            extra_meters=_split_list(os.getenv("TELEMETRY_METERS")),
            runtime_metrics=_is_truthy(os.getenv("TELEMETRY_RUNTIME_METRICS", "true")),
            prometheus_enabled=_is_truthy(os.getenv("PROMETHEUS_ENABLED")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            json_logs=os.getenv("LOG_FORMAT", "json").lower() == "json",
        )


def get_price_service_url() -> str:
    """Base URL the trading API uses to reach the price service."""
    return os.getenv("PRICE_SERVICE_BASE_URL", "http://localhost:5001")
