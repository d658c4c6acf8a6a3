"""
ObservaStock - Health-to-Metrics Bridge

Periodically evaluates the HealthCheckService and publishes the report on
the `health_status` gauge:
- one sample for the overall status, tagged {status}
- one sample per entry, tagged {check_name, status}

Gauge encoding: Healthy=1, Degraded=-1, Unhealthy=0.

Usage:
    bridge = HealthMetricsBridge(service, pipeline.registry, meter_name="ObservaStock.TradingApi")
    await bridge.start()
    ...
    await bridge.stop()
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional

from ..errors import InvalidArgumentError
from ..telemetry.logging import StructuredLogger, TimedOperation
from ..telemetry.registry import InstrumentHandle, InstrumentRegistry
from .probes import HealthCheckService, HealthReport, HealthStatus

logger = logging.getLogger("observastock.health.bridge")

HEALTH_STATUS_METRIC = "health_status"

STATUS_GAUGE_VALUES: Dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 1,
    HealthStatus.DEGRADED: -1,
    HealthStatus.UNHEALTHY: 0,
}


class BridgeState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    PUBLISHING = "publishing"


class HealthMetricsBridge:
    """Publishes health reports as gauge samples on a fixed period."""

    def __init__(
        self,
        service: HealthCheckService,
        registry: InstrumentRegistry,
        meter_name: str,
        period_seconds: float = 30.0,
        initial_delay_seconds: float = 5.0,
        metric_name: str = HEALTH_STATUS_METRIC,
    ):
        if period_seconds <= 0:
            raise InvalidArgumentError(
                "period_seconds must be positive", param="period_seconds", value=period_seconds
            )
        if initial_delay_seconds < 0:
            raise InvalidArgumentError(
                "initial_delay_seconds must not be negative",
                param="initial_delay_seconds",
                value=initial_delay_seconds,
            )

        self.service = service
        self.period_seconds = period_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.gauge: InstrumentHandle = registry.gauge(
            meter_name,
            metric_name,
            unit="status",
            description="Health status of the service and its checks",
        )

        self._state = BridgeState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_report: Optional[HealthReport] = None
        self.cycles_completed = 0

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def publish(self, report: HealthReport) -> int:
        """
        Write one report to the gauge.

        Returns:
            Number of samples recorded
        """
        self.gauge.record(
            STATUS_GAUGE_VALUES[report.status],
            {"status": report.status.value},
        )
        published = 1

        for entry in report.entries:
            self.gauge.record(
                STATUS_GAUGE_VALUES[entry.status],
                {"check_name": entry.name, "status": entry.status.value},
            )
            published += 1

        return published

    async def run_cycle(self) -> HealthReport:
        """Evaluate once and publish the result."""
        self._state = BridgeState.EVALUATING
        try:
            checks = len(self.service.probes())
            with TimedOperation("health_evaluation", StructuredLogger(logger), checks=checks):
                report = await self.service.evaluate()

            self._state = BridgeState.PUBLISHING
            try:
                self.publish(report)
            except Exception as e:
                logger.warning("Failed to publish health report: %s", e)

            self.last_report = report
            self.cycles_completed += 1
        finally:
            self._state = BridgeState.IDLE

        if report.status is not HealthStatus.HEALTHY:
            unhealthy = [e.name for e in report.entries if e.status is not HealthStatus.HEALTHY]
            logger.info("Health status %s (checks: %s)", report.status.value, ", ".join(unhealthy))
        return report

    async def start(self):
        """Start the periodic loop. No-op when already running."""
        if self.is_running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="health-metrics-bridge")
        logger.debug(
            "Health bridge started (delay=%ss, period=%ss)",
            self.initial_delay_seconds,
            self.period_seconds,
        )

    async def stop(self, timeout_seconds: float = 5.0):
        """Stop the loop, letting an in-flight cycle finish within the timeout."""
        if self._task is None:
            return

        task = self._task
        self._task = None
        if self._stop_event is not None:
            self._stop_event.set()

        try:
            await asyncio.wait_for(task, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Health bridge did not stop within %ss, cancelled", timeout_seconds)
        except asyncio.CancelledError:
            pass

    async def _loop(self, stop_event: asyncio.Event):
        loop = asyncio.get_running_loop()

        if await self._wait(stop_event, self.initial_delay_seconds):
            return

        while True:
            started = loop.time()
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Health evaluation cycle failed")

            # Fixed period between cycle starts
            delay = max(0.0, self.period_seconds - (loop.time() - started))
            if await self._wait(stop_event, delay):
                return

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
        """Sleep up to timeout; True if a stop was requested."""
        if stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
