"""
ObservaStock - Reference Services

The price service and trading API, instrumented end to end.
"""

from .common import ServiceRuntime
from .price import PriceQuote, create_price_app
from .trading import PriceClient, PriceLookup, TradeRequest, TradeResponse, create_trading_app

__all__ = [
    "ServiceRuntime",
    "create_price_app",
    "create_trading_app",
    "PriceQuote",
    "PriceClient",
    "PriceLookup",
    "TradeRequest",
    "TradeResponse",
]
