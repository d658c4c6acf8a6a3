"""
ObservaStock - Telemetry Core

Observability instrumentation shared by the ObservaStock services:
resource attribution, trace context propagation, instrument registry,
payload-size sampling and the health-to-metrics bridge.
"""

__version__ = "1.0.0"
__author__ = "ObservaStock"
