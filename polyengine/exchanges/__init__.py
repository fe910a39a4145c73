"""
Exchange adapters for the trading engine.

This module provides the adapter contract and its implementations:
- BaseExchange: Abstract base class with capability tags
- PaperExchange: In-memory dry-run adapter

The live adapter is imported from its own module so that the API clients it
wraps can depend on the base types here.

Usage:
    from polyengine.exchanges import OrderParams, OrderSide
    from polyengine.exchanges.polymarket import PolymarketExchange

    exchange = PolymarketExchange(private_key=key, funder=proxy_wallet)
    await exchange.connect()

    result = await exchange.create_order(
        OrderParams(market_id=cid, token_id=tid, side=OrderSide.BUY, size_usd=5.0)
    )
"""

from .base import (
    AllowanceError,
    AuthenticationError,
    BaseExchange,
    BookLevel,
    ConnectionError,
    ExchangeCapability,
    ExchangeError,
    InsufficientBalanceError,
    MarketInfo,
    MarketState,
    OrderBook,
    OrderError,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    Position,
    RateLimitError,
    RetryPolicy,
    TimeInForce,
    TradeSignal,
    UnsupportedOperationError,
)
from .paper import PaperExchange

__all__ = [
    # Base classes and types
    "BaseExchange",
    "ExchangeCapability",
    "OrderParams",
    "OrderResult",
    "OrderSide",
    "OrderErrorCode",
    "TimeInForce",
    "OrderBook",
    "BookLevel",
    "MarketInfo",
    "MarketState",
    "Position",
    "TradeSignal",
    "RetryPolicy",
    # Exceptions
    "ExchangeError",
    "ConnectionError",
    "AuthenticationError",
    "AllowanceError",
    "OrderError",
    "InsufficientBalanceError",
    "RateLimitError",
    "UnsupportedOperationError",
    # Implementations
    "PaperExchange",
]
