"""
Abstract base exchange interface for the trading engine.

This module defines the domain types exchanged between the engine and an
exchange adapter (order intents, order results, books, markets, positions,
trade signals), the exception hierarchy, the retry policy used for order
placement, and the abstract exchange interface that concrete adapters
inherit from.

Optional operations are declared through ``ExchangeCapability`` tags. Callers
check ``exchange.supports(...)`` before using them; the default
implementations raise ``UnsupportedOperationError``.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class OrderSide(Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "OrderSide":
        """Parse a side from any casing ("buy", "BUY")."""
        return cls(str(value).upper())


class TimeInForce(Enum):
    """Order time in force."""

    FOK = "FOK"  # Fill or kill (entire order or cancel)
    GTC = "GTC"  # Good til cancelled (resting quotes)

    def __str__(self) -> str:
        return self.value


class OrderErrorCode(Enum):
    """
    Typed order outcomes the policy layer branches on.

    These are returned on ``OrderResult.error``; they are never raised.
    """

    INSUFFICIENT_FUNDS = "insufficient_funds"
    SKIPPED_MIN_SIZE = "skipped_min_size_limit"
    SKIPPED_NO_LIQUIDITY = "skipped_no_liquidity"
    FAILED = "failed"
    # Write timed out; the order may or may not exist on the exchange.
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class MarketState(Enum):
    """Lifecycle state of a market. Everything except ACTIVE is terminal."""

    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"
    RESOLVED = "resolved"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self is not MarketState.ACTIVE


class ExchangeCapability(Enum):
    """Optional adapter operations."""

    CASHOUT = "cashout"
    MIDPOINT = "midpoint"
    PUBLIC_TRADES = "public_trades"
    PORTFOLIO_VALUE = "portfolio_value"
    RESTING_ORDERS = "resting_orders"

    def __str__(self) -> str:
        return self.value


@dataclass
class OrderParams:
    """
    Order intent for one execution attempt.

    Exactly one of ``size_usd`` and ``size_shares`` is set. A share count
    bypasses the USD-to-shares conversion so exits are exact.

    Attributes:
        market_id: Market (condition) identifier.
        token_id: Outcome token identifier.
        side: Buy or sell.
        size_usd: Requested size in quote currency.
        size_shares: Requested size as an explicit share count.
        price_limit: Optional limit price (0-1).
        time_in_force: FOK for taker orders, GTC for resting quotes.
    """

    market_id: str
    token_id: str
    side: OrderSide
    size_usd: Optional[float] = None
    size_shares: Optional[float] = None
    price_limit: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.FOK

    def __post_init__(self) -> None:
        if (self.size_usd is None) == (self.size_shares is None):
            raise ValueError("Exactly one of size_usd or size_shares must be set")
        size = self.size_usd if self.size_usd is not None else self.size_shares
        if size <= 0:
            raise ValueError(f"Order size must be positive, got {size}")

    @property
    def lock_key(self) -> tuple[str, str, str]:
        """Key of the at-most-one-in-flight rule."""
        return (self.market_id, self.token_id, self.side.value)


@dataclass
class OrderResult:
    """Result of order placement."""

    success: bool
    order_id: Optional[str] = None
    tx_hash: Optional[str] = None
    shares_filled: float = 0.0
    price_filled: float = 0.0
    error: Optional[OrderErrorCode] = None
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rejected(cls, error: OrderErrorCode, message: str = "") -> "OrderResult":
        return cls(success=False, error=error, message=message)

    @property
    def usd_filled(self) -> float:
        return self.shares_filled * self.price_filled

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "tx_hash": self.tx_hash,
            "shares_filled": self.shares_filled,
            "price_filled": self.price_filled,
            "error": str(self.error) if self.error else None,
            "message": self.message,
        }


@dataclass
class BookLevel:
    """One price level of an order book."""

    price: float
    size: float


@dataclass
class OrderBook:
    """
    Order book snapshot for one outcome token.

    Attributes:
        token_id: Outcome token identifier.
        bids: Bid levels sorted best (highest) first.
        asks: Ask levels sorted best (lowest) first.
        tick_size: Minimum price increment reported by the book.
        min_order_size: Minimum order size in shares reported by the book.
        timestamp: Local receive time (epoch seconds).
    """

    token_id: str
    bids: list[BookLevel] = field(default_factory=list)
    asks: list[BookLevel] = field(default_factory=list)
    tick_size: Optional[float] = None
    min_order_size: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def midpoint(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return self.best_ask - self.best_bid


@dataclass
class MarketInfo:
    """
    Market metadata and lifecycle flags.

    Attributes:
        market_id: Condition identifier.
        question: Market title.
        slug: URL slug.
        image: Image URL.
        active: Market is live.
        closed: Market closed by the exchange.
        archived: Market archived.
        accepting_orders: Order book accepts new orders.
        tick_size: Minimum price increment.
        min_order_size: Minimum order size in shares.
        tokens: Outcome tokens as dicts with ``token_id``, ``outcome``, ``price``.
        rewards_max_spread: Reward-eligible max spread (price units), if any.
        rewards_min_size: Reward-eligible min quote size (shares), if any.
        volume: Lifetime volume (USD).
        liquidity: Current liquidity (USD).
    """

    market_id: str
    question: str = ""
    slug: str = ""
    image: str = ""
    active: bool = True
    closed: bool = False
    archived: bool = False
    accepting_orders: bool = True
    tick_size: Optional[float] = None
    min_order_size: Optional[float] = None
    tokens: list[dict[str, Any]] = field(default_factory=list)
    rewards_max_spread: Optional[float] = None
    rewards_min_size: Optional[float] = None
    volume: float = 0.0
    liquidity: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)

    def outcome_for(self, token_id: str) -> str:
        for token in self.tokens:
            if token.get("token_id") == token_id:
                return token.get("outcome", "")
        return ""


@dataclass
class Position:
    """
    A follower's exposure to one (market, outcome) pair.

    Attributes:
        token_id: Outcome token identifier.
        market_id: Market (condition) identifier.
        shares: Share count, never negative.
        entry_price: Average entry price.
        current_price: Last-known price.
        invested_value: USD spent to build the position.
        outcome: Outcome label (e.g. "Yes").
        title: Market title.
        slug: Market slug.
        image: Market image URL.
        market_state: Lifecycle state of the market.
        managed_by_mm: Position belongs to an active liquidity quote.
        missed_syncs: Consecutive syncs the exchange did not report it.
        updated_at: Last update timestamp.
    """

    token_id: str
    market_id: str
    shares: float
    entry_price: float
    current_price: float = 0.0
    invested_value: float = 0.0
    outcome: str = ""
    title: str = ""
    slug: str = ""
    image: str = ""
    market_state: MarketState = MarketState.ACTIVE
    managed_by_mm: bool = False
    missed_syncs: int = 0
    updated_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if self.shares < 0:
            raise ValueError(f"Position shares cannot be negative: {self.shares}")
        if not self.invested_value:
            self.invested_value = self.shares * self.entry_price

    @property
    def current_value(self) -> float:
        return self.shares * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        return self.current_value - self.invested_value

    @property
    def unrealized_pnl_pct(self) -> float:
        if self.invested_value <= 0:
            return 0.0
        return self.unrealized_pnl / self.invested_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "market_id": self.market_id,
            "shares": self.shares,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "invested_value": self.invested_value,
            "current_value": self.current_value,
            "unrealized_pnl": self.unrealized_pnl,
            "outcome": self.outcome,
            "title": self.title,
            "slug": self.slug,
            "image": self.image,
            "market_state": str(self.market_state),
            "managed_by_mm": self.managed_by_mm,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class TradeSignal:
    """
    A trade observed on a tracked wallet.

    Attributes:
        trader: Tracked wallet address (lowercase).
        market_id: Market (condition) identifier.
        token_id: Outcome token identifier.
        side: Buy or sell.
        size_usd: Trade size in quote currency.
        price: Execution price of the source trade.
        timestamp: Trade time in epoch seconds.
        outcome: Outcome label, if known.
        title: Market title, if known.
        tx_hash: Source transaction hash, if known.
    """

    trader: str
    market_id: str
    token_id: str
    side: OrderSide
    size_usd: float
    price: float
    timestamp: float
    outcome: str = ""
    title: str = ""
    tx_hash: str = ""

    @property
    def dedupe_key(self) -> str:
        """Identity of a trade, bucketed to 5s so API re-reports collapse."""
        if self.tx_hash:
            return f"{self.tx_hash}-{self.token_id}-{self.side.value}"
        bucket = int(self.timestamp // 5)
        return f"{self.trader}-{self.token_id}-{self.side.value}-{bucket}"


class ExchangeError(Exception):
    """Base exception for exchange-related errors."""

    pass


class ConnectionError(ExchangeError):
    """Raised when connection to exchange fails or times out."""

    pass


class AuthenticationError(ExchangeError):
    """Raised when signing credentials are rejected."""

    pass


class AllowanceError(ExchangeError):
    """Raised when the on-chain spending allowance is too low."""

    pass


class InsufficientBalanceError(ExchangeError):
    """Raised when balance is insufficient for operation."""

    pass


class OrderError(ExchangeError):
    """Raised when order operation fails."""

    pass


class RateLimitError(ExchangeError):
    """Raised when rate limit is exceeded."""

    pass


class UnsupportedOperationError(ExchangeError):
    """Raised when an optional capability is not provided by the adapter."""

    pass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy for order placement.

    Each exception class in ``retry_on`` gets one recovery before the call is
    retried; a repeat of the same class is a hard failure. ``max_attempts``
    caps the total number of attempts.

    Attributes:
        max_attempts: Total attempts including the first one.
        retry_on: Exception classes that may be recovered from.
    """

    max_attempts: int = 3
    retry_on: tuple[type[Exception], ...] = (AuthenticationError, AllowanceError)

    def should_retry(
        self,
        error: Exception,
        attempt: int,
        recovered: set[type[Exception]],
    ) -> bool:
        """
        Decide whether a failed attempt gets another try.

        Args:
            error: Exception raised by the attempt.
            attempt: 1-based number of the attempt that failed.
            recovered: Exception classes already recovered from during this call.

        Returns:
            True if the caller should recover and retry.
        """
        if attempt >= self.max_attempts:
            return False
        for kind in self.retry_on:
            if isinstance(error, kind):
                return kind not in recovered
        return False

    def kind_of(self, error: Exception) -> Optional[type[Exception]]:
        for kind in self.retry_on:
            if isinstance(error, kind):
                return kind
        return None


class BaseExchange(ABC):
    """
    Abstract base class for exchange adapters.

    All adapters implement the required query and order operations. Optional
    operations are advertised in ``capabilities``.

    Attributes:
        name: Exchange name identifier.
        is_connected: Connection status flag.
        capabilities: Optional operations this adapter provides.
    """

    capabilities: frozenset[ExchangeCapability] = frozenset()

    def __init__(self) -> None:
        self.is_connected = False
        self._name = "base"

    @property
    def name(self) -> str:
        """Exchange name identifier."""
        return self._name

    def supports(self, capability: ExchangeCapability) -> bool:
        """Check whether an optional operation is available."""
        return capability in self.capabilities

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the session with the exchange.

        Raises:
            ConnectionError: If connection fails.
            AuthenticationError: If credentials cannot be derived.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release sessions and sockets."""
        pass

    @abstractmethod
    async def fetch_balance(self, address: Optional[str] = None) -> float:
        """
        Fetch the quote-currency (USDC) balance.

        Args:
            address: Wallet to query, or None for the adapter's own wallet.

        Returns:
            Balance in USD.
        """
        pass

    @abstractmethod
    async def get_positions(self, address: Optional[str] = None) -> list[Position]:
        """
        Fetch open positions, dust-filtered and enriched.

        Args:
            address: Wallet to query, or None for the adapter's own wallet.

        Returns:
            List of Position objects.
        """
        pass

    @abstractmethod
    async def get_order_book(self, token_id: str) -> Optional[OrderBook]:
        """
        Fetch the live order book for a token.

        Returns:
            OrderBook, or None if the book is unavailable.
        """
        pass

    @abstractmethod
    async def get_market(self, market_id: str) -> Optional[MarketInfo]:
        """
        Fetch market metadata.

        Returns:
            MarketInfo, or None if the exchange reports the market not found.

        Raises:
            ConnectionError: On transient failures (never conflated with not-found).
        """
        pass

    @abstractmethod
    async def create_order(self, params: OrderParams) -> OrderResult:
        """
        Place an order.

        Policy rejections are returned on ``OrderResult.error`` and never raised.

        Args:
            params: Order intent.

        Returns:
            OrderResult with fill details or a typed error.
        """
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel a resting order.

        Returns:
            True if the exchange confirmed the cancellation, False if it no
            longer holds the order.

        Raises:
            ExchangeError: The outcome is unknown.
        """
        pass

    async def get_midpoint(self, token_id: str) -> Optional[float]:
        """Fetch the live midpoint price of a token."""
        raise UnsupportedOperationError(f"{self.name} does not provide midpoints")

    async def fetch_public_trades(
        self,
        address: str,
        limit: int = 20,
    ) -> list[TradeSignal]:
        """Fetch recent trades of any wallet, newest first."""
        raise UnsupportedOperationError(f"{self.name} does not provide public trades")

    async def get_portfolio_value(self, address: str) -> float:
        """Fetch the USD value of another wallet's open positions."""
        raise UnsupportedOperationError(f"{self.name} does not provide portfolio values")

    async def cashout(self, amount: float, destination: str) -> str:
        """
        Transfer quote currency out of the trading wallet.

        Returns:
            Transaction hash.
        """
        raise UnsupportedOperationError(f"{self.name} does not support cashout")

    async def close_position(
        self,
        position: Position,
        shares: Optional[float] = None,
        price_limit: Optional[float] = None,
    ) -> OrderResult:
        """
        Sell an exact share count of a position (the whole position by default).

        Args:
            position: Position to reduce.
            shares: Shares to sell (None for full position).
            price_limit: Optional minimum sell price.

        Returns:
            OrderResult of the sell.
        """
        close_shares = shares if shares is not None else position.shares
        return await self.create_order(
            OrderParams(
                market_id=position.market_id,
                token_id=position.token_id,
                side=OrderSide.SELL,
                size_shares=close_shares,
                price_limit=price_limit,
            )
        )

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"<{self.__class__.__name__} status={status}>"
