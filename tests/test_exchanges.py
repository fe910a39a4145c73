"""
Tests for exchange infrastructure.

Tests cover:
- Base dataclasses, enums and the retry policy
- Price and size normalization
- Paper exchange fills, quotes, cashout and position copies
"""

from unittest.mock import patch

import pytest

from polyengine.exchanges.base import (
    AllowanceError,
    AuthenticationError,
    BaseExchange,
    BookLevel,
    ExchangeCapability,
    MarketInfo,
    MarketState,
    OrderBook,
    OrderErrorCode,
    OrderParams,
    OrderResult,
    OrderSide,
    Position,
    RetryPolicy,
    TimeInForce,
    TradeSignal,
    UnsupportedOperationError,
)
from polyengine.exchanges.order_math import (
    PreparedOrder,
    ceil_to_tick,
    floor_to_tick,
    prepare_order,
    truncate_shares,
)
from polyengine.exchanges.paper import PaperExchange


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def market():
    return MarketInfo(
        market_id="m1",
        question="Will it rain tomorrow?",
        slug="rain-tomorrow",
        tokens=[
            {"token_id": "t1", "outcome": "Yes", "price": 0.5},
            {"token_id": "t2", "outcome": "No", "price": 0.5},
        ],
        tick_size=0.01,
        min_order_size=5.0,
    )


@pytest.fixture
def book():
    return OrderBook(
        token_id="t1",
        bids=[BookLevel(0.48, 100), BookLevel(0.47, 200)],
        asks=[BookLevel(0.50, 100), BookLevel(0.51, 200)],
    )


@pytest.fixture
def paper(market, book):
    exchange = PaperExchange(initial_balance=1000.0)
    exchange.add_market(market)
    exchange.set_book(book)
    return exchange


class StubExchange(BaseExchange):
    """Adapter implementing only the required operations."""

    async def connect(self):
        self.is_connected = True

    async def disconnect(self):
        self.is_connected = False

    async def fetch_balance(self, address=None):
        return 0.0

    async def get_positions(self, address=None):
        return []

    async def get_order_book(self, token_id):
        return None

    async def get_market(self, market_id):
        return None

    async def create_order(self, params):
        return OrderResult(success=True, order_id="x", shares_filled=params.size_shares or 0, price_filled=0.5)

    async def cancel_order(self, order_id):
        return False


# =============================================================================
# Base Types
# =============================================================================


class TestEnums:
    """Tests for enum string forms and parsing."""

    def test_order_side(self):
        assert str(OrderSide.BUY) == "BUY"
        assert OrderSide.parse("sell") == OrderSide.SELL

    def test_time_in_force(self):
        assert str(TimeInForce.GTC) == "GTC"

    def test_market_state_terminal(self):
        assert not MarketState.ACTIVE.is_terminal
        assert MarketState.CLOSED.is_terminal
        assert MarketState.RESOLVED.is_terminal

    def test_error_code_values(self):
        assert str(OrderErrorCode.SKIPPED_MIN_SIZE) == "skipped_min_size_limit"
        assert str(OrderErrorCode.UNKNOWN) == "unknown"


class TestOrderParams:
    """Tests for OrderParams validation."""

    def test_requires_exactly_one_size(self):
        with pytest.raises(ValueError):
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY)
        with pytest.raises(ValueError):
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=5, size_shares=10)

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.SELL, size_shares=0)

    def test_lock_key(self):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.SELL, size_shares=10)
        assert params.lock_key == ("m1", "t1", "SELL")
        assert params.time_in_force == TimeInForce.FOK


class TestOrderBook:
    """Tests for OrderBook properties."""

    def test_top_of_book(self, book):
        assert book.best_bid == 0.48
        assert book.best_ask == 0.50
        assert book.midpoint == pytest.approx(0.49)
        assert book.spread == pytest.approx(0.02)

    def test_empty_side(self):
        empty = OrderBook(token_id="t1", bids=[BookLevel(0.4, 10)])
        assert empty.best_ask is None
        assert empty.midpoint is None
        assert empty.spread is None


class TestPosition:
    """Tests for Position."""

    def test_negative_shares_rejected(self):
        with pytest.raises(ValueError):
            Position(token_id="t1", market_id="m1", shares=-1, entry_price=0.5)

    def test_invested_value_defaults_to_cost(self):
        position = Position(token_id="t1", market_id="m1", shares=20, entry_price=0.4, current_price=0.5)
        assert position.invested_value == pytest.approx(8.0)
        assert position.current_value == pytest.approx(10.0)
        assert position.unrealized_pnl == pytest.approx(2.0)
        assert position.unrealized_pnl_pct == pytest.approx(0.25)

    def test_to_dict(self):
        position = Position(token_id="t1", market_id="m1", shares=1, entry_price=0.5)
        data = position.to_dict()
        assert data["market_state"] == "active"
        assert data["managed_by_mm"] is False


class TestTradeSignal:
    """Tests for TradeSignal identity."""

    def test_dedupe_key_prefers_tx_hash(self):
        signal = TradeSignal("0xa", "m1", "t1", OrderSide.BUY, 10, 0.5, 1000.0, tx_hash="0xhash")
        assert signal.dedupe_key == "0xhash-t1-BUY"

    def test_dedupe_key_buckets_timestamp(self):
        first = TradeSignal("0xa", "m1", "t1", OrderSide.BUY, 10, 0.5, 1000.0)
        repeat = TradeSignal("0xa", "m1", "t1", OrderSide.BUY, 10, 0.5, 1003.0)
        later = TradeSignal("0xa", "m1", "t1", OrderSide.BUY, 10, 0.5, 1006.0)
        assert first.dedupe_key == repeat.dedupe_key
        assert first.dedupe_key != later.dedupe_key


class TestRetryPolicy:
    """Tests for the bounded order retry policy."""

    def test_one_recovery_per_error_class(self):
        policy = RetryPolicy(max_attempts=3)
        recovered = set()

        assert policy.should_retry(AuthenticationError("x"), 1, recovered)
        recovered.add(policy.kind_of(AuthenticationError("x")))
        assert not policy.should_retry(AuthenticationError("x"), 2, recovered)
        assert policy.should_retry(AllowanceError("x"), 2, recovered)

    def test_max_attempts(self):
        policy = RetryPolicy(max_attempts=1)
        assert not policy.should_retry(AuthenticationError("x"), 1, set())

    def test_other_errors_not_retried(self):
        policy = RetryPolicy()
        assert not policy.should_retry(ValueError("x"), 1, set())
        assert policy.kind_of(ValueError("x")) is None


class TestBaseExchange:
    """Tests for optional operations and helpers of BaseExchange."""

    @pytest.mark.asyncio
    async def test_optional_operations_unsupported(self):
        exchange = StubExchange()
        assert not exchange.supports(ExchangeCapability.CASHOUT)
        with pytest.raises(UnsupportedOperationError):
            await exchange.cashout(10, "0xdest")
        with pytest.raises(UnsupportedOperationError):
            await exchange.fetch_public_trades("0xa")

    @pytest.mark.asyncio
    async def test_close_position_sells_exact_shares(self):
        exchange = StubExchange()
        position = Position(token_id="t1", market_id="m1", shares=12.5, entry_price=0.4)

        result = await exchange.close_position(position)
        assert result.shares_filled == 12.5

        partial = await exchange.close_position(position, shares=5)
        assert partial.shares_filled == 5

    def test_repr(self):
        assert "disconnected" in repr(StubExchange())


# =============================================================================
# Order Math
# =============================================================================


class TestTickRounding:
    """Tests for tick grid helpers."""

    def test_floor_to_tick(self):
        assert floor_to_tick(0.567, 0.01) == 0.56
        assert floor_to_tick(0.5678, 0.001) == 0.567

    def test_exact_ticks_survive_float_noise(self):
        assert floor_to_tick(0.57, 0.01) == 0.57
        assert floor_to_tick(0.1 + 0.2, 0.01) == 0.3
        assert ceil_to_tick(0.56, 0.01) == 0.56

    def test_ceil_to_tick(self):
        assert ceil_to_tick(0.561, 0.01) == 0.57

    def test_truncate_shares(self):
        assert truncate_shares(10.129) == 10.12
        assert truncate_shares(7) == 7.0


class TestPrepareOrder:
    """Tests for prepare_order."""

    def test_buy_uses_best_ask(self, book, market):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)
        prepared = prepare_order(params, book, market)

        assert isinstance(prepared, PreparedOrder)
        assert prepared.price == 0.50
        assert prepared.shares == 20
        assert prepared.notional == pytest.approx(10.0)

    def test_sell_uses_best_bid(self, book, market):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.SELL, size_shares=10.555)
        prepared = prepare_order(params, book, market)
        assert prepared.price == 0.48
        assert prepared.shares == 10.55

    def test_price_limit_clamped_and_on_tick(self, book, market):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10, price_limit=0.999)
        prepared = prepare_order(params, book, market)
        assert prepared.price == 0.99

    def test_below_minimum_size(self, book, market):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=2)
        result = prepare_order(params, book, market)
        assert isinstance(result, OrderResult)
        assert result.error == OrderErrorCode.SKIPPED_MIN_SIZE

    def test_no_liquidity(self, market):
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)
        result = prepare_order(params, OrderBook(token_id="t1"), market)
        assert result.error == OrderErrorCode.SKIPPED_NO_LIQUIDITY

    def test_book_tick_size_wins(self, market):
        book = OrderBook(token_id="t1", asks=[BookLevel(0.505, 10)], tick_size=0.001, min_order_size=1)
        params = OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)
        prepared = prepare_order(params, book, market)
        assert prepared.price == 0.505
        assert prepared.tick_size == 0.001
        assert prepared.min_order_size == 1


# =============================================================================
# Paper Exchange
# =============================================================================


class TestPaperExchange:
    """Tests for PaperExchange."""

    @pytest.mark.asyncio
    async def test_buy_fill_updates_cash_and_position(self, paper):
        result = await paper.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)
        )

        assert result.success
        assert result.shares_filled == 20
        assert result.price_filled == 0.50
        assert paper.cash == pytest.approx(990.0)

        positions = await paper.get_positions()
        assert len(positions) == 1
        assert positions[0].outcome == "Yes"
        assert positions[0].title == "Will it rain tomorrow?"
        # Marked at the book midpoint
        assert positions[0].current_price == pytest.approx(0.49)

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, market, book):
        poor = PaperExchange(initial_balance=5.0)
        poor.add_market(market)
        poor.set_book(book)

        result = await poor.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)
        )
        assert not result.success
        assert result.error == OrderErrorCode.INSUFFICIENT_FUNDS
        assert poor.cash == 5.0

    @pytest.mark.asyncio
    async def test_fok_not_fillable_below_ask(self, paper):
        result = await paper.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10, price_limit=0.45)
        )
        assert result.error == OrderErrorCode.SKIPPED_NO_LIQUIDITY
        assert paper.positions == {}

    @pytest.mark.asyncio
    async def test_sell_realizes_pnl(self, paper):
        await paper.create_order(OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10))
        paper.set_book(OrderBook(token_id="t1", bids=[BookLevel(0.60, 100)], asks=[BookLevel(0.62, 100)]))

        result = await paper.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.SELL, size_shares=20)
        )

        assert result.success
        assert result.price_filled == 0.60
        assert paper.realized_pnl == pytest.approx(2.0)
        assert paper.cash == pytest.approx(1002.0)
        assert "t1" not in paper.positions

    @pytest.mark.asyncio
    async def test_sell_more_than_held_rejected(self, paper):
        result = await paper.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.SELL, size_shares=10)
        )
        assert result.error == OrderErrorCode.FAILED

    @pytest.mark.asyncio
    async def test_missing_market_rejected(self, paper):
        result = await paper.create_order(
            OrderParams(market_id="unknown", token_id="t1", side=OrderSide.BUY, size_usd=10)
        )
        assert result.error == OrderErrorCode.SKIPPED_NO_LIQUIDITY

    @pytest.mark.asyncio
    async def test_gtc_quote_rests_and_fills(self, paper):
        result = await paper.create_order(
            OrderParams(
                market_id="m1",
                token_id="t1",
                side=OrderSide.BUY,
                size_shares=10,
                price_limit=0.45,
                time_in_force=TimeInForce.GTC,
            )
        )

        assert result.success
        assert result.shares_filled == 0
        assert result.order_id in paper.resting_orders
        assert paper.cash == 1000.0

        fill = paper.fill_resting(result.order_id)
        assert fill.shares_filled == 10
        assert paper.cash == pytest.approx(995.5)
        assert paper.positions["t1"].shares == 10

    @pytest.mark.asyncio
    async def test_cancel_resting(self, paper):
        result = await paper.create_order(
            OrderParams(
                market_id="m1",
                token_id="t1",
                side=OrderSide.BUY,
                size_shares=10,
                price_limit=0.45,
                time_in_force=TimeInForce.GTC,
            )
        )
        assert await paper.cancel_order(result.order_id)
        assert not await paper.cancel_order(result.order_id)

    @pytest.mark.asyncio
    async def test_positions_are_copies(self, paper):
        await paper.create_order(OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10))

        positions = await paper.get_positions()
        positions[0].shares = 0

        assert paper.positions["t1"].shares == 20

    @pytest.mark.asyncio
    async def test_cashout(self, paper):
        assert paper.supports(ExchangeCapability.CASHOUT)
        tx_hash = await paper.cashout(100.0, "0xcold")
        assert tx_hash.startswith("0xpaper")
        assert paper.cash == 900.0

        with pytest.raises(ValueError):
            await paper.cashout(5000.0, "0xcold")

    @pytest.mark.asyncio
    async def test_trade_log_written(self, market, book, tmp_path):
        log_path = tmp_path / "trades.jsonl"
        exchange = PaperExchange(log_trades=True, log_path=str(log_path))
        exchange.add_market(market)
        exchange.set_book(book)

        await exchange.create_order(OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10))

        assert log_path.exists()
        assert len(log_path.read_text().strip().splitlines()) == 1

    @pytest.mark.asyncio
    async def test_wraps_source_for_market_data(self, book):
        source = StubExchange()
        exchange = PaperExchange(source=source)

        with patch.object(source, "get_order_book", return_value=book) as get_book:
            result = await exchange.get_order_book("t1")

        get_book.assert_called_once_with("t1")
        assert result is book
