"""
ObservaStock - Business Metrics

Trading instruments created through the InstrumentRegistry, plus the
Prometheus scrape endpoint.

Metrics:
- total_trades_placed: Counter of placed trades by symbol and action
- trade_value_usd: Histogram of trade values by symbol and action

Usage:
    metrics = TradingMetrics(pipeline.registry)
    metrics.record_trade(symbol="MSFT", action="Buy", value_usd=4210.5)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest

from .registry import InstrumentRegistry, record_safely

TRADING_METER = "TradingMetrics"


class TradingMetrics:
    """Trading counters and histograms."""

    def __init__(self, registry: InstrumentRegistry, meter_name: str = TRADING_METER):
        self.trades_placed = registry.counter(
            meter_name,
            "total_trades_placed",
            unit="trades",
            description="Total number of trades placed",
        )
        self.trade_value = registry.histogram(
            meter_name,
            "trade_value_usd",
            unit="USD",
            description="Value of trades in USD",
        )

    def record_trade(self, symbol: str, action: str, value_usd: float) -> bool:
        """
        Record one completed trade.

        Never raises: a rejected sample is logged and the trade still counts
        as completed.
        """
        tags = {"symbol": symbol, "action": action}
        counted = record_safely(self.trades_placed, 1, tags)
        valued = record_safely(self.trade_value, value_usd, tags)
        return counted and valued


def metrics_endpoint(registry: CollectorRegistry = REGISTRY) -> Response:
    """
    Generate Prometheus metrics endpoint response.

    Requires the pipeline to be built with prometheus_enabled=True.
    """
    content = generate_latest(registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
