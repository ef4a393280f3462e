"""Polymarket API clients."""

from .exchange import PolymarketExchange
from .polymarket import AuthenticationError, ExchangeError, PolymarketClient
from .types import Market, MarketToken, OrderRequest, OrderResponse, OrderSide

__all__ = [
    "AuthenticationError",
    "ExchangeError",
    "Market",
    "MarketToken",
    "OrderRequest",
    "OrderResponse",
    "OrderSide",
    "PolymarketClient",
    "PolymarketExchange",
]
