"""
ObservaStock - Trading API

Places mock trades priced by the price service.

Endpoints:
- POST /api/trades
- GET  /api/trades/health
- GET  /health/live
- GET  /metrics (when PROMETHEUS_ENABLED)

Run:
    uvicorn observastock.services.trading:create_trading_app --factory --port 5000
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import TelemetrySettings, get_price_service_url
from ..health import HealthCheckService, ProbeResult
from ..telemetry import TelemetryPipeline, create_traced_client
from ..telemetry.metrics import TradingMetrics
from .common import ServiceRuntime

SERVICE_NAME = "ObservaStock.TradingApi"
SERVICE_VERSION = "1.0.0"


# ============================================================
# Models
# ============================================================

class TradeRequest(BaseModel):
    """Buy or sell order."""
    symbol: str = Field(..., min_length=1, max_length=16)
    action: str = Field(..., pattern="^(Buy|Sell)$")
    quantity: int = Field(..., ge=1)


class TradeResponse(BaseModel):
    trade_id: str
    symbol: str
    action: str
    quantity: int
    price: float
    total_value: float
    timestamp: datetime
    status: str = "Completed"


@dataclass
class PriceLookup:
    """Result of asking the price service for a quote."""
    symbol: str
    price: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.price is not None


# ============================================================
# Price client
# ============================================================

class PriceClient:
    """Calls the price service with trace context propagation."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def lookup(self, symbol: str) -> PriceLookup:
        try:
            response = await self._client.get(f"/api/prices/{quote(symbol, safe='')}")
        except httpx.HTTPError as e:
            return PriceLookup(symbol, error=f"{type(e).__name__}: {e}")

        if response.status_code != 200:
            return PriceLookup(symbol, error=f"price service returned HTTP {response.status_code}")

        try:
            price = float(response.json()["price"])
        except (ValueError, KeyError, TypeError) as e:
            return PriceLookup(symbol, error=f"invalid price response: {e}")
        return PriceLookup(symbol, price=price)

    async def ping(self) -> ProbeResult:
        """Health probe for the price service dependency."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            return ProbeResult.unhealthy(f"price service unreachable: {type(e).__name__}")
        if response.status_code != 200:
            return ProbeResult.degraded(f"price service returned HTTP {response.status_code}")
        return ProbeResult.healthy("price service reachable")

    async def aclose(self):
        await self._client.aclose()


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


# ============================================================
# App factory
# ============================================================

def create_trading_app(
    pipeline: Optional[TelemetryPipeline] = None,
    settings: Optional[TelemetrySettings] = None,
    health: Optional[HealthCheckService] = None,
    price_service_url: Optional[str] = None,
    price_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the trading API app.

    Args:
        pipeline: Telemetry pipeline to use (built from settings if omitted)
        settings: Telemetry settings (read from the environment if omitted)
        health: Health probes (defaults to a price service reachability probe)
        price_service_url: Price service base URL (PRICE_SERVICE_BASE_URL)
        price_transport: Inner httpx transport for price calls

    Returns:
        FastAPI application
    """
    settings = settings or TelemetrySettings.from_env(SERVICE_NAME, SERVICE_VERSION)
    runtime = ServiceRuntime(settings, pipeline=pipeline, health=health)
    trading_metrics = TradingMetrics(runtime.registry)

    price_client = PriceClient(
        create_traced_client(
            runtime.tracer,
            base_url=price_service_url or get_price_service_url(),
            transport=price_transport,
            registry=runtime.registry,
            meter_name=SERVICE_NAME,
        )
    )
    runtime.on_shutdown(price_client.aclose)
    if health is None:
        runtime.health.add_check("price_service", price_client.ping, tags=["dependency"])

    app = FastAPI(
        title="ObservaStock Trading API",
        version=SERVICE_VERSION,
        lifespan=runtime.lifespan,
    )
    app.state.runtime = runtime
    app.state.trading_metrics = trading_metrics

    @app.post("/api/trades", response_model=TradeResponse)
    async def place_trade(trade: TradeRequest):
        logger = runtime.logger
        logger.info(
            f"Received trade request: {trade.action} {trade.quantity} shares of {trade.symbol}",
            symbol=trade.symbol,
        )

        lookup = await price_client.lookup(trade.symbol)
        if not lookup.ok:
            logger.error(f"Failed to get price for {trade.symbol}", error=lookup.error)
            return _error_response(502, "price_unavailable", "Failed to get stock price")

        trade_value = lookup.price * trade.quantity
        trading_metrics.record_trade(trade.symbol, trade.action, trade_value)

        response = TradeResponse(
            trade_id=str(uuid.uuid4()),
            symbol=trade.symbol,
            action=trade.action,
            quantity=trade.quantity,
            price=lookup.price,
            total_value=round(trade_value, 2),
            timestamp=datetime.now(timezone.utc),
        )
        logger.info(
            f"Trade completed: {response.trade_id}, Value: {response.total_value} USD",
            trade_id=response.trade_id,
        )
        return response

    @app.get("/api/trades/health")
    async def health_check():
        return {"status": "Healthy", "service": "TradingApi"}

    runtime.instrument(app)
    return app


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "observastock.services.trading:create_trading_app",
        factory=True,
        host="0.0.0.0",
        port=5000,
    )
