"""
Execution Service

Turns trade signals, exits and market-making quotes into exchange orders.
Supports:
- Proportional copy-trading (BUY and SELL) with a slippage guard
- Exact-share exits (manual, take-profit, emergency)
- Posting resting GTC quotes for the liquidity strategy

Safety Features:
- At most one in-flight order per (market, token, side), TTL-bounded
- Pending-spend accounting so concurrent buys never overdraw cash
- Exits above the held share count rejected before submission
- Kill switch file check (.kill_switch) before any new order
- Policy rejections returned as typed results, never raised
"""

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..config import KILL_SWITCH_FILE, SLIPPAGE_PCT
from ..exchanges.base import (
    BaseExchange,
    ExchangeCapability,
    ExchangeError,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    Position,
    TimeInForce,
    TradeSignal,
)
from ..maker.models import Quote, QuoteStatus
from .sizing import DEFAULT_MIN_ORDER_SHARES, compute_proportional_sizing, plan_exit_shares

# Set up logging
logger = logging.getLogger(__name__)

# In-flight lock TTL in seconds
IN_FLIGHT_TTL = 30.0

# Trader balance cache
TRADER_BALANCE_TTL = 300.0
TRADER_BALANCE_FLOOR = 1000.0
TRADER_BALANCE_FALLBACK = 10000.0


class ExecutionStatus(Enum):
    """Outcome of one execution attempt."""

    FILLED = "filled"
    POSTED = "posted"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class KillSwitchError(Exception):
    """Raised when kill switch is activated."""

    pass


def check_kill_switch(path: Path = KILL_SWITCH_FILE) -> bool:
    """
    Check if kill switch file exists.

    Returns:
        True if kill switch is active (trading should stop)
    """
    return path.exists()


def _truncate_price(price: float) -> float:
    return float(Decimal(str(price)).quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionContext:
    """
    Read-only view of the engine's state for one execution.

    Attributes:
        cash: Cash from the latest balance snapshot.
        positions: Position copies keyed by token id.
    """

    cash: float = 0.0
    positions: dict[str, Position] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    """
    Result of an execution attempt, used for accounting and notification.

    Attributes:
        status: Execution outcome.
        side: Order side.
        market_id: Market identifier.
        token_id: Outcome token identifier.
        service: Originating module ("copy", "manual", "auto_tp", "momentum", ...).
        reason: Sizing or rejection reason.
        requested_usd: Requested size in USD, if sized in USD.
        requested_shares: Requested share count, if sized in shares.
        order: Exchange result, if an order was submitted.
        realized_pnl: Realized PnL of a sell against the entry price.
        fee_due: Fee on realized profit.
        trader: Source trader for copy trades.
        title: Market title.
        outcome: Outcome label.
        trade_id: Stable identifier for idempotent persistence.
        timestamp: Completion time.
    """

    status: ExecutionStatus
    side: OrderSide
    market_id: str
    token_id: str
    service: str = "copy"
    reason: str = ""
    requested_usd: Optional[float] = None
    requested_shares: Optional[float] = None
    order: Optional[OrderResult] = None
    realized_pnl: float = 0.0
    fee_due: float = 0.0
    trader: str = ""
    title: str = ""
    outcome: str = ""
    trade_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def filled(self) -> bool:
        return self.status == ExecutionStatus.FILLED

    @property
    def shares_filled(self) -> float:
        return self.order.shares_filled if self.order else 0.0

    @property
    def price_filled(self) -> float:
        return self.order.price_filled if self.order else 0.0

    @property
    def usd_filled(self) -> float:
        return self.order.usd_filled if self.order else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "status": str(self.status),
            "side": str(self.side),
            "market_id": self.market_id,
            "token_id": self.token_id,
            "service": self.service,
            "reason": self.reason,
            "requested_usd": self.requested_usd,
            "requested_shares": self.requested_shares,
            "shares_filled": self.shares_filled,
            "price_filled": self.price_filled,
            "usd_filled": self.usd_filled,
            "order_id": self.order.order_id if self.order else None,
            "tx_hash": self.order.tx_hash if self.order else None,
            "realized_pnl": self.realized_pnl,
            "fee_due": self.fee_due,
            "trader": self.trader,
            "title": self.title,
            "outcome": self.outcome,
            "timestamp": self.timestamp.isoformat(),
        }


class InFlightRegistry:
    """
    In-memory lock keyed by (market_id, token_id, side) with a TTL.

    ``acquire`` hands out an ownership token and ``release`` only clears the
    entry held under that token, so a call that outlived the TTL cannot free
    a key that a later call has since taken.
    """

    def __init__(self, ttl: float = IN_FLIGHT_TTL) -> None:
        self.ttl = ttl
        self._entries: dict[tuple[str, str, str], tuple[int, float]] = {}
        self._tokens = itertools.count(1)

    def acquire(self, key: tuple[str, str, str]) -> Optional[int]:
        """
        Take the key.

        Returns:
            Ownership token, or None if another call holds the key.
        """
        if self.is_locked(key):
            return None
        token = next(self._tokens)
        self._entries[key] = (token, time.monotonic())
        return token

    def release(self, key: tuple[str, str, str], token: int) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry[0] == token:
            del self._entries[key]

    def is_locked(self, key: tuple[str, str, str]) -> bool:
        entry = self._entries.get(key)
        return entry is not None and time.monotonic() - entry[1] < self.ttl


class ExecutionService:
    """
    Strategy-level order execution on top of an exchange adapter.

    Example:
        executor = ExecutionService(exchange, multiplier=1.0, max_trade_amount=50)
        result = await executor.copy_trade(signal, ExecutionContext(cash=200.0))
        if result.filled:
            print(f"Copied: {result.shares_filled} @ {result.price_filled}")
    """

    def __init__(
        self,
        exchange: BaseExchange,
        multiplier: float = 1.0,
        max_trade_amount: Optional[float] = None,
        slippage_pct: float = SLIPPAGE_PCT,
        fee_rate: float = 0.0,
        lock_ttl: float = IN_FLIGHT_TTL,
        trader_balance_ttl: float = TRADER_BALANCE_TTL,
        kill_switch_file: Path = KILL_SWITCH_FILE,
    ) -> None:
        """
        Initialize the execution service.

        Args:
            exchange: Exchange adapter.
            multiplier: Copy multiplier.
            max_trade_amount: Per-trade USD ceiling, or None.
            slippage_pct: Allowed price deviation from the source trade.
            fee_rate: Share of realized profit recorded as fee due.
            lock_ttl: In-flight lock TTL in seconds.
            trader_balance_ttl: Trader portfolio value cache TTL in seconds.
            kill_switch_file: Path whose existence halts new orders.
        """
        self.exchange = exchange
        self.multiplier = multiplier
        self.max_trade_amount = max_trade_amount
        self.slippage_pct = slippage_pct
        self.fee_rate = fee_rate
        self.kill_switch_file = kill_switch_file
        self.trader_balance_ttl = trader_balance_ttl

        self.in_flight = InFlightRegistry(ttl=lock_ttl)
        self._pending_spend = 0.0
        # address -> (balance, timestamp)
        self._trader_balances: dict[str, tuple[float, float]] = {}

    def update_limits(
        self,
        multiplier: Optional[float] = None,
        max_trade_amount: Optional[float] = None,
        fee_rate: Optional[float] = None,
    ) -> None:
        """Apply new risk settings to subsequent executions."""
        if multiplier is not None:
            self.multiplier = multiplier
        self.max_trade_amount = max_trade_amount
        if fee_rate is not None:
            self.fee_rate = fee_rate

    @property
    def pending_spend(self) -> float:
        return self._pending_spend

    def _check_kill_switch(self) -> bool:
        if check_kill_switch(self.kill_switch_file):
            logger.warning("Kill switch activated - trading halted")
            return True
        return False

    async def get_trader_balance(self, address: str) -> float:
        """
        Portfolio value of a tracked trader, cached for 5 minutes.

        Small portfolios are floored at $1000 so one trade does not look like
        the trader's whole bankroll. Lookup failures fall back to $10000.
        """
        cached = self._trader_balances.get(address)
        if cached and time.time() - cached[1] < self.trader_balance_ttl:
            return cached[0]

        if not self.exchange.supports(ExchangeCapability.PORTFOLIO_VALUE):
            return TRADER_BALANCE_FALLBACK

        try:
            value = await self.exchange.get_portfolio_value(address)
        except ExchangeError as e:
            logger.warning(f"Trader balance lookup failed for {address[:10]}: {e}")
            return TRADER_BALANCE_FALLBACK

        balance = max(TRADER_BALANCE_FLOOR, value)
        self._trader_balances[address] = (balance, time.time())
        return balance

    # =========================================================================
    # Copy trading
    # =========================================================================

    async def copy_trade(self, signal: TradeSignal, context: ExecutionContext) -> ExecutionResult:
        """
        Mirror a tracked trader's trade proportionally.

        Args:
            signal: Observed trade.
            context: Cash and position copies from the engine.

        Returns:
            ExecutionResult; never raises for policy outcomes.
        """
        base = {
            "side": signal.side,
            "market_id": signal.market_id,
            "token_id": signal.token_id,
            "service": "copy",
            "trader": signal.trader,
            "title": signal.title,
            "outcome": signal.outcome,
        }
        key = (signal.market_id, signal.token_id, signal.side.value)

        token = self.in_flight.acquire(key)
        if token is None:
            logger.info(f"Coalesced duplicate {signal.side} signal for {signal.token_id[:12]}")
            return ExecutionResult(status=ExecutionStatus.DUPLICATE, reason="duplicate_in_flight", **base)

        try:
            if self._check_kill_switch():
                return ExecutionResult(status=ExecutionStatus.SKIPPED, reason="kill_switch_active", **base)

            trader_balance = await self.get_trader_balance(signal.trader)

            if signal.side == OrderSide.BUY:
                return await self._copy_buy(signal, context, trader_balance, base)
            return await self._copy_sell(signal, context, trader_balance, base)
        finally:
            self.in_flight.release(key, token)

    async def _copy_buy(
        self,
        signal: TradeSignal,
        context: ExecutionContext,
        trader_balance: float,
        base: dict[str, Any],
    ) -> ExecutionResult:
        available = max(0.0, context.cash - self._pending_spend)
        sizing = compute_proportional_sizing(
            follower_balance=available,
            source_balance=trader_balance,
            source_trade_size=signal.size_usd,
            multiplier=self.multiplier,
            current_price=signal.price,
            max_trade_amount=self.max_trade_amount,
        )

        if not sizing.should_trade:
            logger.info(
                f"Skipping BUY copy of {signal.trader[:10]} on {signal.title or signal.token_id[:12]}: "
                f"{sizing.reason} (available=${available:.2f})"
            )
            return ExecutionResult(status=ExecutionStatus.SKIPPED, reason=sizing.reason, **base)

        price_limit = min(0.99, _truncate_price(signal.price * (1 + self.slippage_pct)))
        params = OrderParams(
            market_id=signal.market_id,
            token_id=signal.token_id,
            side=OrderSide.BUY,
            size_usd=sizing.target_size,
            price_limit=price_limit,
        )

        logger.info(
            f"Copying BUY: ${sizing.target_size:.2f} ({sizing.reason}, ratio={sizing.ratio:.4f}) "
            f"limit={price_limit} on {signal.title or signal.token_id[:12]}"
        )

        self._pending_spend += sizing.target_size
        try:
            order = await self._submit(params)
        finally:
            self._pending_spend = max(0.0, self._pending_spend - sizing.target_size)

        return self._build_result(order, base, sizing.reason, requested_usd=sizing.target_size)

    async def _copy_sell(
        self,
        signal: TradeSignal,
        context: ExecutionContext,
        trader_balance: float,
        base: dict[str, Any],
    ) -> ExecutionResult:
        position = context.positions.get(signal.token_id)
        if position is None or position.shares <= 0:
            return ExecutionResult(status=ExecutionStatus.SKIPPED, reason="no_position_to_sell", **base)

        price = position.current_price or signal.price
        sizing = compute_proportional_sizing(
            follower_balance=position.shares * price,
            source_balance=trader_balance,
            source_trade_size=signal.size_usd,
            multiplier=self.multiplier,
            current_price=price,
        )
        plan = plan_exit_shares(position.shares, sizing.target_size, price, DEFAULT_MIN_ORDER_SHARES)
        if not plan.should_trade:
            logger.info(f"Skipping SELL copy on {signal.token_id[:12]}: {plan.reason}")
            return ExecutionResult(status=ExecutionStatus.SKIPPED, reason=plan.reason, **base)

        price_limit = max(0.01, _truncate_price(signal.price * (1 - self.slippage_pct)))
        params = OrderParams(
            market_id=signal.market_id,
            token_id=signal.token_id,
            side=OrderSide.SELL,
            size_shares=plan.shares,
            price_limit=price_limit,
        )

        logger.info(f"Copying SELL: {plan.shares:g} shares ({plan.reason}) limit={price_limit}")
        order = await self._submit(params)
        return self._build_result(
            order, base, plan.reason, requested_shares=plan.shares, entry_price=position.entry_price
        )

    # =========================================================================
    # Exits
    # =========================================================================

    async def execute_exit(
        self,
        position: Position,
        shares: Optional[float] = None,
        price_limit: Optional[float] = None,
        service: str = "manual",
    ) -> ExecutionResult:
        """
        Sell an exact share count of a position.

        Args:
            position: Position copy to reduce.
            shares: Shares to sell (None for the full position).
            price_limit: Optional minimum price.
            service: Originating module label.

        Returns:
            ExecutionResult. Share counts above the holding are rejected
            without contacting the exchange.
        """
        base = {
            "side": OrderSide.SELL,
            "market_id": position.market_id,
            "token_id": position.token_id,
            "service": service,
            "title": position.title,
            "outcome": position.outcome,
        }
        exit_shares = position.shares if shares is None else shares

        if exit_shares <= 0 or exit_shares > position.shares + 1e-9:
            logger.warning(
                f"Rejected exit of {exit_shares:g} shares on {position.token_id[:12]} "
                f"(held {position.shares:g})"
            )
            return ExecutionResult(
                status=ExecutionStatus.SKIPPED,
                reason="exceeds_position",
                requested_shares=exit_shares,
                **base,
            )

        key = (position.market_id, position.token_id, OrderSide.SELL.value)
        token = self.in_flight.acquire(key)
        if token is None:
            return ExecutionResult(status=ExecutionStatus.DUPLICATE, reason="duplicate_in_flight", **base)

        try:
            if self._check_kill_switch() and service not in ("manual", "emergency"):
                return ExecutionResult(status=ExecutionStatus.SKIPPED, reason="kill_switch_active", **base)

            params = OrderParams(
                market_id=position.market_id,
                token_id=position.token_id,
                side=OrderSide.SELL,
                size_shares=exit_shares,
                price_limit=price_limit,
            )
            logger.info(f"Exit ({service}): selling {exit_shares:g} shares of {position.title or position.token_id[:12]}")
            order = await self._submit(params)
        finally:
            self.in_flight.release(key, token)

        return self._build_result(
            order, base, service, requested_shares=exit_shares, entry_price=position.entry_price
        )

    async def buy(
        self,
        market_id: str,
        token_id: str,
        size_usd: float,
        price_limit: Optional[float] = None,
        service: str = "manual",
        cash: Optional[float] = None,
    ) -> ExecutionResult:
        """Fixed-size BUY used by strategies that size themselves."""
        base = {"side": OrderSide.BUY, "market_id": market_id, "token_id": token_id, "service": service}

        if cash is not None and size_usd > cash - self._pending_spend:
            return ExecutionResult(status=ExecutionStatus.SKIPPED, reason="capped_at_balance", **base)

        key = (market_id, token_id, OrderSide.BUY.value)
        token = self.in_flight.acquire(key)
        if token is None:
            return ExecutionResult(status=ExecutionStatus.DUPLICATE, reason="duplicate_in_flight", **base)

        self._pending_spend += size_usd
        try:
            if self._check_kill_switch():
                return ExecutionResult(status=ExecutionStatus.SKIPPED, reason="kill_switch_active", **base)
            order = await self._submit(
                OrderParams(
                    market_id=market_id,
                    token_id=token_id,
                    side=OrderSide.BUY,
                    size_usd=size_usd,
                    price_limit=price_limit,
                )
            )
        finally:
            self._pending_spend = max(0.0, self._pending_spend - size_usd)
            self.in_flight.release(key, token)

        return self._build_result(order, base, service, requested_usd=size_usd)

    # =========================================================================
    # Market making
    # =========================================================================

    async def execute_market_making_quotes(self, quotes: list[Quote]) -> list[Quote]:
        """
        Post resting GTC quotes.

        Args:
            quotes: Pending quotes priced by the scanner.

        Returns:
            The same quotes with order ids and POSTED/REJECTED status.
        """
        if self._check_kill_switch():
            for quote in quotes:
                quote.status = QuoteStatus.REJECTED
            return quotes

        async def _post(quote: Quote) -> Quote:
            key = (quote.market_id, quote.token_id, quote.side.value)
            token = self.in_flight.acquire(key)
            if token is None:
                quote.status = QuoteStatus.REJECTED
                return quote
            try:
                order = await self._submit(
                    OrderParams(
                        market_id=quote.market_id,
                        token_id=quote.token_id,
                        side=quote.side,
                        size_shares=quote.size,
                        price_limit=quote.price,
                        time_in_force=TimeInForce.GTC,
                    )
                )
            finally:
                self.in_flight.release(key, token)

            if order.success and order.order_id:
                quote.order_id = order.order_id
                quote.status = QuoteStatus.POSTED
                quote.posted_at = time.time()
            else:
                quote.status = QuoteStatus.REJECTED
                logger.info(f"Quote {quote.side} {quote.size:g}@{quote.price} rejected: {order.error}")
            return quote

        return list(await asyncio.gather(*(_post(q) for q in quotes)))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _submit(self, params: OrderParams) -> OrderResult:
        try:
            return await self.exchange.create_order(params)
        except ExchangeError as e:
            logger.error(f"Order failed for {params.token_id[:12]} ({params.side}): {e}")
            return OrderResult.rejected(OrderErrorCode.FAILED, str(e))

    def _build_result(
        self,
        order: OrderResult,
        base: dict[str, Any],
        reason: str,
        requested_usd: Optional[float] = None,
        requested_shares: Optional[float] = None,
        entry_price: Optional[float] = None,
    ) -> ExecutionResult:
        if order.success and order.shares_filled > 0:
            status = ExecutionStatus.FILLED
        elif order.success:
            status = ExecutionStatus.POSTED
        elif order.error == OrderErrorCode.UNKNOWN:
            status = ExecutionStatus.UNKNOWN
        elif order.error == OrderErrorCode.FAILED:
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.SKIPPED

        result = ExecutionResult(
            status=status,
            reason=reason if order.success else str(order.error),
            requested_usd=requested_usd,
            requested_shares=requested_shares,
            order=order,
            trade_id=order.order_id or uuid.uuid4().hex,
            **base,
        )

        if status == ExecutionStatus.FILLED and base["side"] == OrderSide.SELL and entry_price is not None:
            result.realized_pnl = (order.price_filled - entry_price) * order.shares_filled
            result.fee_due = max(0.0, result.realized_pnl) * self.fee_rate

        if status == ExecutionStatus.FILLED:
            logger.info(
                f"Filled {base['side']} {order.shares_filled:g} @ {order.price_filled:.4f} "
                f"({base['service']}, pnl={result.realized_pnl:+.2f})"
            )
        elif status in (ExecutionStatus.FAILED, ExecutionStatus.UNKNOWN):
            logger.warning(f"Execution {status} for {base['token_id'][:12]}: {order.message}")
        else:
            logger.info(f"Execution {status} for {base['token_id'][:12]}: {result.reason}")

        return result
