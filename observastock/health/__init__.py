"""
ObservaStock - Health

Health probes, report aggregation and the bridge that publishes reports as
metrics.
"""

from .probes import (
    FunctionProbe,
    HealthCheckService,
    HealthEntry,
    HealthProbe,
    HealthReport,
    HealthStatus,
    ProbeResult,
    aggregate_status,
)
from .bridge import (
    HEALTH_STATUS_METRIC,
    STATUS_GAUGE_VALUES,
    BridgeState,
    HealthMetricsBridge,
)

__all__ = [
    "HealthStatus",
    "HealthEntry",
    "HealthReport",
    "HealthProbe",
    "FunctionProbe",
    "ProbeResult",
    "HealthCheckService",
    "aggregate_status",
    "HealthMetricsBridge",
    "BridgeState",
    "STATUS_GAUGE_VALUES",
    "HEALTH_STATUS_METRIC",
]
