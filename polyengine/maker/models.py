"""
Data models for the liquidity provision strategy.

Contains the market opportunity snapshot maintained by the scanner and the
quote records whose lifecycle the quote manager tracks.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..exchanges.base import OrderSide


class QuoteStatus(Enum):
    """Quote lifecycle: posted -> filled | stale_cancelled | superseded."""

    PENDING = "pending"
    POSTED = "posted"
    FILLED = "filled"
    STALE_CANCELLED = "stale_cancelled"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"

    def __str__(self) -> str:
        return self.value

    @property
    def is_resting(self) -> bool:
        return self is QuoteStatus.POSTED


@dataclass
class MarketOpportunity:
    """
    Best bid/ask snapshot of a tracked market's primary outcome.

    Attributes:
        market_id: Condition identifier.
        token_id: Primary (YES) outcome token.
        question: Market title.
        best_bid: Best bid price.
        best_ask: Best ask price.
        tick_size: Price increment.
        min_order_size: Minimum order size in shares.
        rewards_max_spread: Reward-eligible spread from the midpoint (price units).
        rewards_min_size: Reward-eligible minimum quote size (shares).
        accepting_orders: Market accepts new orders.
        volume: Lifetime volume (USD).
        liquidity: Current liquidity (USD).
        timestamp: Last book update (epoch seconds).
    """

    market_id: str
    token_id: str
    question: str = ""
    best_bid: float = 0.0
    best_ask: float = 1.0
    tick_size: float = 0.01
    min_order_size: float = 5.0
    rewards_max_spread: Optional[float] = None
    rewards_min_size: Optional[float] = None
    accepting_orders: bool = True
    volume: float = 0.0
    liquidity: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def midpoint(self) -> float:
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    @property
    def spread_cents(self) -> float:
        return self.spread * 100

    @property
    def reward_eligible(self) -> bool:
        """Spread sits inside the exchange's reward band."""
        if not self.rewards_max_spread:
            return False
        return self.spread <= self.rewards_max_spread + 1e-9

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "token_id": self.token_id,
            "question": self.question,
            "best_bid": self.best_bid,
            "best_ask": self.best_ask,
            "midpoint": self.midpoint,
            "spread_cents": round(self.spread_cents, 2),
            "reward_eligible": self.reward_eligible,
            "rewards_max_spread": self.rewards_max_spread,
            "rewards_min_size": self.rewards_min_size,
            "volume": self.volume,
            "liquidity": self.liquidity,
            "timestamp": self.timestamp,
        }


@dataclass
class Quote:
    """
    A resting bid or ask posted by the engine.

    Attributes:
        market_id: Condition identifier.
        token_id: Outcome token quoted.
        side: BUY for bids, SELL for asks.
        price: Quote price.
        size: Quote size in shares.
        skew: Inventory skew that produced the price.
        order_id: Exchange order id once posted.
        status: Lifecycle status.
        posted_at: Post time (epoch seconds).
        reference_mid: Midpoint the quote was priced from.
    """

    market_id: str
    token_id: str
    side: OrderSide
    price: float
    size: float
    skew: float = 0.0
    order_id: Optional[str] = None
    status: QuoteStatus = QuoteStatus.PENDING
    posted_at: float = field(default_factory=time.time)
    reference_mid: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "token_id": self.token_id,
            "side": str(self.side),
            "price": self.price,
            "size": self.size,
            "skew": self.skew,
            "order_id": self.order_id,
            "status": str(self.status),
            "posted_at": self.posted_at,
        }
