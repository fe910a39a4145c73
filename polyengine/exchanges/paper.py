"""
Paper Trading Exchange.

Implements BaseExchange but executes orders virtually. Market data comes
either from in-memory fixtures (tests) or from a wrapped read-only source
adapter (dry runs against the live Polymarket books).

Features:
- FOK orders fill instantly at the prepared price when the book allows it
- GTC quotes rest until cancelled or filled with fill_resting()
- Cash and per-token position tracking with weighted average entry price
- Realized P&L on sells
- Trade history logging to JSONL file
"""

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .base import (
    BaseExchange,
    ExchangeCapability,
    MarketInfo,
    OrderBook,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    Position,
    TimeInForce,
    TradeSignal,
)
from .order_math import PreparedOrder, prepare_order

logger = logging.getLogger(__name__)


class PaperExchange(BaseExchange):
    """
    Paper trading exchange.

    Attributes:
        initial_balance: Starting cash.
        cash: Current cash.
        realized_pnl: Total realized profit/loss.
        positions: Open positions by token id.
        resting_orders: Open GTC orders by order id.
        trade_history: All executed trades.
        log_trades: Whether to log trades to file.
        log_path: Path to trade log file.
    """

    capabilities = frozenset(
        {
            ExchangeCapability.MIDPOINT,
            ExchangeCapability.PUBLIC_TRADES,
            ExchangeCapability.PORTFOLIO_VALUE,
            ExchangeCapability.RESTING_ORDERS,
            ExchangeCapability.CASHOUT,
        }
    )

    def __init__(
        self,
        initial_balance: float = 1000.0,
        source: Optional[BaseExchange] = None,
        log_trades: bool = False,
        log_path: str = "data/paper_trades.jsonl",
    ) -> None:
        """
        Initialize paper trading exchange.

        Args:
            initial_balance: Starting cash in USD.
            source: Optional adapter used for books, markets and public trades.
            log_trades: Whether to log trades to JSONL file.
            log_path: Path to trade log file.
        """
        super().__init__()
        self._name = "paper"
        self.source = source

        self.initial_balance = float(initial_balance)
        self.cash = self.initial_balance
        self.realized_pnl = 0.0

        self.positions: dict[str, Position] = {}
        self.resting_orders: dict[str, tuple[PreparedOrder, OrderParams]] = {}
        self.trade_history: list[dict[str, Any]] = []

        # Fixtures used when no source adapter is wrapped
        self.books: dict[str, OrderBook] = {}
        self.markets: dict[str, MarketInfo] = {}
        self.public_trades: dict[str, list[TradeSignal]] = {}
        self.portfolio_values: dict[str, float] = {}

        self.log_trades = log_trades
        self.log_path = Path(log_path)

    # =========================================================================
    # Fixtures
    # =========================================================================

    def set_book(self, book: OrderBook) -> None:
        self.books[book.token_id] = book
        position = self.positions.get(book.token_id)
        if position and book.midpoint is not None:
            position.current_price = book.midpoint

    def add_market(self, market: MarketInfo) -> None:
        self.markets[market.market_id] = market

    def add_public_trade(self, trade: TradeSignal) -> None:
        self.public_trades.setdefault(trade.trader, []).insert(0, trade)

    # =========================================================================
    # BaseExchange Implementation
    # =========================================================================

    async def connect(self) -> None:
        if self.source is not None and not self.source.is_connected:
            await self.source.connect()
        self.is_connected = True
        logger.info(f"Paper exchange connected with balance: ${self.cash:.2f}")

    async def disconnect(self) -> None:
        self.is_connected = False
        logger.info(f"Paper exchange disconnected. Realized P&L: ${self.realized_pnl:.2f}")

    async def fetch_balance(self, address: Optional[str] = None) -> float:
        return self.cash

    async def get_positions(self, address: Optional[str] = None) -> list[Position]:
        for position in self.positions.values():
            midpoint = await self.get_midpoint(position.token_id)
            if midpoint is not None:
                position.current_price = midpoint
        # Copies, so callers never hold references into exchange state
        return [
            replace(position)
            for position in self.positions.values()
            if position.shares > 0.001
        ]

    async def get_order_book(self, token_id: str) -> Optional[OrderBook]:
        if self.source is not None:
            return await self.source.get_order_book(token_id)
        return self.books.get(token_id)

    async def get_market(self, market_id: str) -> Optional[MarketInfo]:
        if self.source is not None:
            return await self.source.get_market(market_id)
        return self.markets.get(market_id)

    async def get_midpoint(self, token_id: str) -> Optional[float]:
        book = await self.get_order_book(token_id)
        return book.midpoint if book else None

    async def fetch_public_trades(self, address: str, limit: int = 20) -> list[TradeSignal]:
        if self.source is not None and self.source.supports(ExchangeCapability.PUBLIC_TRADES):
            return await self.source.fetch_public_trades(address, limit)
        return list(self.public_trades.get(address.lower(), []))[:limit]

    async def get_portfolio_value(self, address: str) -> float:
        if self.source is not None and self.source.supports(ExchangeCapability.PORTFOLIO_VALUE):
            return await self.source.get_portfolio_value(address)
        return self.portfolio_values.get(address.lower(), 0.0)

    async def create_order(self, params: OrderParams) -> OrderResult:
        book = await self.get_order_book(params.token_id)
        market = await self.get_market(params.market_id)
        if book is None or market is None:
            return OrderResult.rejected(
                OrderErrorCode.SKIPPED_NO_LIQUIDITY,
                f"Book or market unavailable for {params.token_id}",
            )

        prepared = prepare_order(params, book, market)
        if isinstance(prepared, OrderResult):
            return prepared

        if prepared.side == OrderSide.BUY and prepared.notional > self.cash + 1e-9:
            return OrderResult.rejected(
                OrderErrorCode.INSUFFICIENT_FUNDS,
                f"Insufficient balance: {self.cash:.2f} < {prepared.notional:.2f}",
            )
        if prepared.side == OrderSide.SELL:
            held = self.positions.get(prepared.token_id)
            if held is None or held.shares + 1e-9 < prepared.shares:
                return OrderResult.rejected(OrderErrorCode.FAILED, "Not enough shares to sell")

        order_id = str(uuid.uuid4())[:8]

        if prepared.time_in_force == TimeInForce.GTC:
            self.resting_orders[order_id] = (prepared, params)
            logger.info(
                f"Paper quote resting: {prepared.side} {prepared.shares:g} "
                f"{prepared.token_id[:12]} @ {prepared.price}"
            )
            return OrderResult(success=True, order_id=order_id, price_filled=prepared.price)

        crosses = (
            book.best_ask is not None and book.best_ask <= prepared.price
            if prepared.side == OrderSide.BUY
            else book.best_bid is not None and book.best_bid >= prepared.price
        )
        if not crosses:
            return OrderResult.rejected(
                OrderErrorCode.SKIPPED_NO_LIQUIDITY,
                f"FOK not fillable at {prepared.price}",
            )

        self._apply_fill(prepared, market)
        return OrderResult(
            success=True,
            order_id=order_id,
            shares_filled=prepared.shares,
            price_filled=prepared.price,
        )

    async def cancel_order(self, order_id: str) -> bool:
        return self.resting_orders.pop(order_id, None) is not None

    async def cashout(self, amount: float, destination: str) -> str:
        if amount <= 0 or amount > self.cash:
            raise ValueError(f"Cannot cash out {amount:.2f} from {self.cash:.2f}")
        self.cash -= amount
        tx_hash = f"0xpaper{uuid.uuid4().hex[:24]}"
        self._log({"event": "CASHOUT", "amount": amount, "destination": destination, "tx_hash": tx_hash})
        return tx_hash

    # =========================================================================
    # Paper Trading Specific Methods
    # =========================================================================

    def fill_resting(self, order_id: str) -> OrderResult:
        """Fill a resting quote completely, as if a taker hit it."""
        prepared, params = self.resting_orders.pop(order_id)
        market = self.markets.get(params.market_id) or MarketInfo(market_id=params.market_id)
        self._apply_fill(prepared, market)
        return OrderResult(
            success=True,
            order_id=order_id,
            shares_filled=prepared.shares,
            price_filled=prepared.price,
        )

    def _apply_fill(self, order: PreparedOrder, market: MarketInfo) -> None:
        position = self.positions.get(order.token_id)

        if order.side == OrderSide.BUY:
            self.cash -= order.notional
            if position is None:
                self.positions[order.token_id] = Position(
                    token_id=order.token_id,
                    market_id=order.market_id,
                    shares=order.shares,
                    entry_price=order.price,
                    current_price=order.price,
                    outcome=market.outcome_for(order.token_id),
                    title=market.question,
                    slug=market.slug,
                )
            else:
                # Weighted average entry price
                total_cost = position.invested_value + order.notional
                position.shares += order.shares
                position.invested_value = total_cost
                position.entry_price = total_cost / position.shares
        else:
            self.cash += order.notional
            pnl = (order.price - position.entry_price) * order.shares
            self.realized_pnl += pnl
            position.shares = max(0.0, position.shares - order.shares)
            position.invested_value = position.shares * position.entry_price
            if position.shares <= 0.001:
                del self.positions[order.token_id]

        trade = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "token_id": order.token_id,
            "market_id": order.market_id,
            "side": order.side.value,
            "shares": order.shares,
            "price": order.price,
            "cash_after": self.cash,
            "realized_pnl": self.realized_pnl,
        }
        self.trade_history.append(trade)
        self._log(trade)

        logger.info(
            f"Paper order filled: {order.side} {order.shares:g} {order.token_id[:12]} @ {order.price}"
        )

    def _log(self, data: dict[str, Any]) -> None:
        """Write data to the JSONL trade log."""
        if not self.log_trades:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(data) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write to trade log: {e}")
