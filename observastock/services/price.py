"""
ObservaStock - Price Service

Mock stock price API. Each lookup waits a random 50-500 ms so latency
shows up in traces.

Endpoints:
- GET /api/prices/{symbol}
- GET /health
- GET /health/live

Run:
    uvicorn observastock.services.price:create_price_app --factory --port 5001
"""

import asyncio
import random
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import FastAPI
from pydantic import BaseModel

from ..config import TelemetrySettings
from ..health import HealthCheckService
from ..telemetry import TelemetryPipeline
from .common import ServiceRuntime

SERVICE_NAME = "ObservaStock.PriceService"
SERVICE_VERSION = "1.0.0"


class PriceQuote(BaseModel):
    """A mock price for one symbol."""
    symbol: str
    price: float
    currency: str = "USD"
    timestamp: datetime


def create_price_app(
    pipeline: Optional[TelemetryPipeline] = None,
    settings: Optional[TelemetrySettings] = None,
    health: Optional[HealthCheckService] = None,
    latency_range: Tuple[float, float] = (0.05, 0.5),
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """
    Build the price service app.

    Args:
        pipeline: Telemetry pipeline to use (built from settings if omitted)
        settings: Telemetry settings (read from the environment if omitted)
        health: Health probes evaluated by the bridge
        latency_range: Min and max injected latency in seconds
        rng: Random source for latency and prices

    Returns:
        FastAPI application
    """
    settings = settings or TelemetrySettings.from_env(SERVICE_NAME, SERVICE_VERSION)
    runtime = ServiceRuntime(settings, pipeline=pipeline, health=health)
    rng = rng or random.Random()
    min_delay, max_delay = latency_range

    app = FastAPI(
        title="ObservaStock Price Service",
        version=SERVICE_VERSION,
        lifespan=runtime.lifespan,
    )
    app.state.runtime = runtime

    @app.get("/api/prices/{symbol}", response_model=PriceQuote)
    async def get_stock_price(symbol: str) -> PriceQuote:
        delay = rng.uniform(min_delay, max_delay) if max_delay > 0 else 0.0
        runtime.logger.info(
            f"Getting price for {symbol} with {int(delay * 1000)}ms delay",
            symbol=symbol,
        )
        await asyncio.sleep(delay)

        quote = PriceQuote(
            symbol=symbol.upper(),
            price=round(rng.randint(50, 499) + rng.random(), 2),
            timestamp=datetime.now(timezone.utc),
        )
        runtime.logger.info(f"Returning price {quote.price} for {quote.symbol}")
        return quote

    @app.get("/health")
    async def health_check():
        return {"status": "Healthy", "service": "PriceService"}

    runtime.instrument(app)
    return app


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "observastock.services.price:create_price_app",
        factory=True,
        host="0.0.0.0",
        port=5001,
    )
