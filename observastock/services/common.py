"""
ObservaStock - Service Wiring

Shared startup for the reference services: telemetry initialization,
middleware order, the health bridge and graceful shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from ..config import TelemetrySettings
from ..health import HealthCheckService, HealthMetricsBridge
from ..telemetry import (
    EnrichmentOptions,
    PayloadSizeSampler,
    ServerSpanMiddleware,
    TelemetryPipeline,
    get_logger,
    setup_logging,
    setup_telemetry,
)
from ..telemetry.metrics import metrics_endpoint


class ServiceRuntime:
    """
    Telemetry and health state owned by one service app.

    A pipeline passed in by the caller is left running on shutdown; a
    pipeline built here is flushed and shut down with the grace deadline.
    """

    def __init__(
        self,
        settings: TelemetrySettings,
        pipeline: Optional[TelemetryPipeline] = None,
        health: Optional[HealthCheckService] = None,
    ):
        self.settings = settings
        self.owns_pipeline = pipeline is None
        if pipeline is None:
            pipeline = setup_telemetry(settings)
            setup_logging(
                level=settings.log_level,
                json_output=settings.json_logs,
                descriptor=pipeline.descriptor,
            )
        self.pipeline = pipeline
        self.health = health or HealthCheckService()
        self.bridge = HealthMetricsBridge(
            self.health,
            pipeline.registry,
            meter_name=pipeline.descriptor.service_name,
            period_seconds=settings.health_check_period_seconds,
            initial_delay_seconds=settings.health_check_delay_seconds,
        )
        self.logger = get_logger(f"observastock.services.{pipeline.descriptor.service_name}")
        self._on_shutdown: List[Callable] = []

    @property
    def tracer(self):
        return self.pipeline.tracer

    @property
    def registry(self):
        return self.pipeline.registry

    def on_shutdown(self, callback: Callable):
        """Register an async callback run before telemetry shutdown."""
        self._on_shutdown.append(callback)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        """Start the health bridge; on exit stop it and flush telemetry."""
        await self.bridge.start()
        self.logger.info(
            f"{self.pipeline.descriptor.service_name} started",
            environment=self.pipeline.descriptor.environment,
        )
        try:
            yield
        finally:
            await self.bridge.stop()
            self.health.close()
            for callback in self._on_shutdown:
                await callback()
            self.logger.info(f"{self.pipeline.descriptor.service_name} shutting down")
            if self.owns_pipeline:
                self.pipeline.shutdown(self.settings.shutdown_grace_seconds)

    def instrument(self, app: FastAPI, options: Optional[EnrichmentOptions] = None):
        """
        Install the inbound pipeline and the shared endpoints.

        Starlette runs the last-added middleware first, so the payload
        sampler is added after the server span middleware.
        """
        app.add_middleware(
            ServerSpanMiddleware,
            tracer=self.tracer,
            options=options,
            registry=self.registry,
            meter_name=self.pipeline.descriptor.service_name,
        )
        app.add_middleware(
            PayloadSizeSampler,
            registry=self.registry,
            meter_name=self.pipeline.descriptor.service_name,
        )

        @app.get("/health/live")
        async def health_live():
            """Latest report published by the health bridge."""
            report = self.bridge.last_report
            if report is None:
                report = await self.health.evaluate()
            return JSONResponse(content=report.to_dict())

        if self.settings.prometheus_enabled:
            @app.get("/metrics")
            async def metrics():
                """Prometheus scrape endpoint."""
                return metrics_endpoint()
