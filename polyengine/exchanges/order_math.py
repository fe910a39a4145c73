"""
Price and size normalization shared by the exchange adapters.

Turns an ``OrderParams`` intent plus live book and market data into a
concrete (price, shares) pair, or a typed rejection.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Decimal
from typing import Optional, Union

from .base import (
    MarketInfo,
    OrderBook,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    TimeInForce,
)

MIN_PRICE = 0.01
MAX_PRICE = 0.99
DEFAULT_TICK_SIZE = 0.01
DEFAULT_MIN_ORDER_SIZE = 5.0


@dataclass(frozen=True)
class PreparedOrder:
    """An order ready for signing: price on tick, whole-share size."""

    market_id: str
    token_id: str
    side: OrderSide
    price: float
    shares: float
    tick_size: float
    min_order_size: float
    time_in_force: TimeInForce

    @property
    def notional(self) -> float:
        return self.price * self.shares


def clamp_price(price: float) -> float:
    return max(MIN_PRICE, min(MAX_PRICE, price))


def floor_to_tick(price: float, tick_size: float) -> float:
    """Round a price down onto the tick grid: floor(price / tick) * tick."""
    inverse = Decimal(1) / Decimal(str(tick_size))
    steps = (Decimal(str(round(price, 9))) * inverse).to_integral_value(rounding=ROUND_FLOOR)
    return float(steps / inverse)


def ceil_to_tick(price: float, tick_size: float) -> float:
    inverse = Decimal(1) / Decimal(str(tick_size))
    steps = (Decimal(str(round(price, 9))) * inverse).to_integral_value(rounding=ROUND_CEILING)
    return float(steps / inverse)


def truncate_shares(shares: float) -> float:
    """Share counts carry at most two decimals."""
    return float(Decimal(str(shares)).quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def prepare_order(
    params: OrderParams,
    book: OrderBook,
    market: MarketInfo,
) -> Union[PreparedOrder, OrderResult]:
    """
    Resolve the price and share count of an order.

    Tick size and minimum size come from the book first, then the market.
    Without an explicit price limit the best opposing quote is used.

    Args:
        params: Order intent.
        book: Live order book of the token.
        market: Market metadata.

    Returns:
        PreparedOrder, or an OrderResult carrying the typed rejection.
    """
    tick_size = book.tick_size or market.tick_size or DEFAULT_TICK_SIZE
    min_size = book.min_order_size or market.min_order_size or DEFAULT_MIN_ORDER_SIZE

    price: Optional[float] = params.price_limit
    if price is None:
        price = book.best_ask if params.side == OrderSide.BUY else book.best_bid
    if price is None:
        return OrderResult.rejected(
            OrderErrorCode.SKIPPED_NO_LIQUIDITY,
            f"No {'asks' if params.side == OrderSide.BUY else 'bids'} for {params.token_id}",
        )

    price = floor_to_tick(clamp_price(price), tick_size)
    if price < MIN_PRICE:
        price = MIN_PRICE

    if params.size_shares is not None:
        shares = truncate_shares(params.size_shares)
    else:
        shares = float(math.floor(params.size_usd / price))

    if shares < min_size:
        return OrderResult.rejected(
            OrderErrorCode.SKIPPED_MIN_SIZE,
            f"{shares:g} shares below market minimum {min_size:g}",
        )

    return PreparedOrder(
        market_id=params.market_id,
        token_id=params.token_id,
        side=params.side,
        price=price,
        shares=shares,
        tick_size=tick_size,
        min_order_size=min_size,
        time_in_force=params.time_in_force,
    )
