"""
Tests for the Polymarket CLOB adapter.

IMPORTANT: The CLOB client, Data API and chain reader are mocks. NO real
requests or orders are made.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from polyengine.exchanges.base import (
    AllowanceError,
    AuthenticationError,
    ConnectionError,
    ExchangeCapability,
    ExchangeError,
    MarketInfo,
    OrderError,
    OrderErrorCode,
    OrderParams,
    OrderSide,
    RateLimitError,
)
from polyengine.exchanges.polymarket import (
    PolymarketExchange,
    classify_rejection,
    classify_sdk_error,
)


# =============================================================================
# Fixtures
# =============================================================================


RAW_MARKET = {
    "condition_id": "m1",
    "question": "Will it rain tomorrow?",
    "market_slug": "rain-tomorrow",
    "active": True,
    "closed": False,
    "archived": False,
    "accepting_orders": True,
    "minimum_tick_size": 0.01,
    "minimum_order_size": 5,
    "neg_risk": False,
    "tokens": [
        {"token_id": "t1", "outcome": "Yes", "price": 0.5, "winner": False},
        {"token_id": "t2", "outcome": "No", "price": 0.5, "winner": False},
    ],
    "rewards": {"max_spread": 3.5, "min_size": 50},
}

RAW_BOOK = {
    "bids": [{"price": "0.47", "size": "100"}, {"price": "0.48", "size": "50"}],
    "asks": [{"price": "0.51", "size": "100"}, {"price": "0.50", "size": "50"}],
    "tick_size": "0.01",
    "min_order_size": "5",
}

MATCHED = {
    "success": True,
    "status": "matched",
    "orderID": "order-1",
    "makingAmount": "10",
    "takingAmount": "20",
    "transactionsHashes": ["0xtx"],
}


@pytest.fixture
def clob():
    client = MagicMock()
    client.get_market.return_value = RAW_MARKET
    client.get_order_book.return_value = RAW_BOOK
    client.get_midpoint.return_value = {"mid": "0.49"}
    return client


@pytest.fixture
def data_api():
    return MagicMock()


@pytest.fixture
def exchange(clob, data_api):
    checker = MagicMock()
    checker.can_sign = False
    checker.get_balance.return_value = 250.0
    return PolymarketExchange(
        private_key="abc123",
        funder="0xfunder",
        clob_client=clob,
        data_api=data_api,
        balance_checker=checker,
    )


@pytest.fixture
def buy_params():
    return OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=10)


@pytest.fixture(autouse=True)
def no_retry_wait():
    """Make read retries immediate."""
    with patch("polyengine.exchanges.polymarket.RETRY_MIN_WAIT", 0), \
         patch("polyengine.exchanges.polymarket.RETRY_MAX_WAIT", 0):
        yield


# =============================================================================
# Error Mapping
# =============================================================================


class TestErrorClassification:
    """Tests for SDK error mapping."""

    def _with_status(self, status, message="error"):
        exc = Exception(message)
        exc.status_code = status
        return exc

    def test_auth_status(self):
        assert isinstance(classify_sdk_error(self._with_status(401)), AuthenticationError)

    def test_auth_message(self):
        assert isinstance(classify_sdk_error(Exception("Invalid signature")), AuthenticationError)

    def test_allowance(self):
        assert isinstance(classify_sdk_error(Exception("insufficient allowance")), AllowanceError)

    def test_rate_limit(self):
        assert isinstance(classify_sdk_error(self._with_status(429)), RateLimitError)

    def test_transport_errors(self):
        assert isinstance(classify_sdk_error(requests.ConnectionError("down")), ConnectionError)
        assert isinstance(classify_sdk_error(requests.Timeout("slow")), ConnectionError)
        assert isinstance(classify_sdk_error(self._with_status(502)), ConnectionError)

    def test_other_client_errors(self):
        assert isinstance(classify_sdk_error(self._with_status(400, "bad order")), OrderError)

    def test_rejection_codes(self):
        assert classify_rejection("not enough balance") == OrderErrorCode.INSUFFICIENT_FUNDS
        assert classify_rejection("Size lower than the minimum") == OrderErrorCode.SKIPPED_MIN_SIZE
        assert classify_rejection("order couldn't be fully filled") == OrderErrorCode.SKIPPED_NO_LIQUIDITY
        assert classify_rejection("something else") == OrderErrorCode.FAILED


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    """Tests for market data reads."""

    @pytest.mark.asyncio
    async def test_get_market_parses_rewards_in_price_units(self, exchange):
        market = await exchange.get_market("m1")

        assert market.market_id == "m1"
        assert market.rewards_max_spread == pytest.approx(0.035)
        assert market.rewards_min_size == 50
        assert market.outcome_for("t2") == "No"
        assert market.tokens[0]["winner"] is False

    @pytest.mark.asyncio
    async def test_get_market_not_found_is_none(self, exchange, clob):
        clob.get_market.side_effect = Exception("market not found")
        assert await exchange.get_market("missing") is None

    @pytest.mark.asyncio
    async def test_transient_read_failures_retried_then_raised(self, exchange, clob):
        clob.get_market.side_effect = requests.ConnectionError("down")

        with pytest.raises(ConnectionError):
            await exchange.get_market("m1")
        assert clob.get_market.call_count == 3

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, exchange, clob):
        clob.get_market.side_effect = [requests.Timeout("slow"), RAW_MARKET]
        market = await exchange.get_market("m1")
        assert market.question == "Will it rain tomorrow?"

    @pytest.mark.asyncio
    async def test_order_book_sorted_best_first(self, exchange):
        book = await exchange.get_order_book("t1")

        assert book.best_bid == 0.48
        assert book.best_ask == 0.50
        assert book.tick_size == 0.01

    @pytest.mark.asyncio
    async def test_midpoint(self, exchange):
        assert await exchange.get_midpoint("t1") == pytest.approx(0.49)

    @pytest.mark.asyncio
    async def test_fetch_balance_defaults_to_funder(self, exchange):
        assert await exchange.fetch_balance() == 250.0
        exchange._balance_checker.get_balance.assert_called_once_with("0xfunder")

    def test_cashout_requires_signer(self, exchange):
        assert not exchange.supports(ExchangeCapability.CASHOUT)
        assert exchange.supports(ExchangeCapability.PUBLIC_TRADES)

    @pytest.mark.asyncio
    async def test_cashout_failure_is_typed(self, exchange):
        exchange._balance_checker.can_sign = True
        exchange._balance_checker.transfer.side_effect = ValueError("nonce too low")

        with pytest.raises(ExchangeError, match="nonce too low"):
            await exchange.cashout(50.0, "0xcold")

    @pytest.mark.asyncio
    async def test_connect_requires_credentials(self, clob):
        exchange = PolymarketExchange(private_key="", funder="0xfunder", clob_client=clob, data_api=MagicMock())
        with pytest.raises(AuthenticationError):
            await exchange.connect()


class TestPositionEnrichment:
    """Tests for get_positions enrichment and fallback."""

    @pytest.mark.asyncio
    async def test_dust_filtered(self, exchange, data_api):
        data_api.get_positions.return_value = [
            {"asset": "t1", "conditionId": "m1", "size": "20", "avgPrice": "0.4", "curPrice": "0.5"},
            {"asset": "t2", "conditionId": "m1", "size": "0.0005", "avgPrice": "0.4"},
        ]

        positions = await exchange.get_positions()

        assert [p.token_id for p in positions] == ["t1"]
        assert positions[0].title == "Will it rain tomorrow?"
        assert positions[0].current_price == pytest.approx(0.49)

    @pytest.mark.asyncio
    async def test_metadata_cached_between_syncs(self, exchange, clob, data_api):
        data_api.get_positions.return_value = [
            {"asset": "t1", "conditionId": "m1", "size": "20", "avgPrice": "0.4"},
        ]

        await exchange.get_positions()
        positions = await exchange.get_positions()

        assert positions[0].title == "Will it rain tomorrow?"
        assert clob.get_market.call_count == 1
        assert clob.get_midpoint.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_enrichment_keeps_last_known(self, exchange, data_api):
        data_api.get_positions.return_value = [
            {"asset": "t1", "conditionId": "m1", "size": "20", "avgPrice": "0.4"},
        ]
        exchange.get_market = AsyncMock(return_value=MarketInfo(market_id="m1", question="Full title"))
        exchange.get_midpoint = AsyncMock(return_value=0.55)
        first = await exchange.get_positions()
        assert first[0].title == "Full title"

        exchange.get_market = AsyncMock(side_effect=ConnectionError("down"))
        exchange.get_midpoint = AsyncMock(side_effect=ConnectionError("down"))
        second = await exchange.get_positions()

        assert len(second) == 1
        assert second[0].title == "Full title"
        assert second[0].current_price == pytest.approx(0.55)


# =============================================================================
# Orders
# =============================================================================


class TestCreateOrder:
    """Tests for order placement and its retry policy."""

    @pytest.mark.asyncio
    async def test_matched_fill(self, exchange, buy_params):
        exchange._post_order = AsyncMock(return_value=MATCHED)

        result = await exchange.create_order(buy_params)

        assert result.success
        assert result.order_id == "order-1"
        assert result.tx_hash == "0xtx"
        assert result.shares_filled == 20
        assert result.price_filled == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_auth_failure_recovered_once(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=[AuthenticationError("invalid signature"), MATCHED])
        exchange.refresh_credentials = AsyncMock()

        result = await exchange.create_order(buy_params)

        assert result.success
        assert exchange._post_order.call_count == 2
        exchange.refresh_credentials.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeated_auth_failure_raises(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=AuthenticationError("invalid signature"))
        exchange.refresh_credentials = AsyncMock()

        with pytest.raises(AuthenticationError):
            await exchange.create_order(buy_params)
        assert exchange._post_order.call_count == 2
        exchange.refresh_credentials.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_allowance_failure_recovered_once(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=[AllowanceError("allowance too low"), MATCHED])
        exchange._recover = AsyncMock()

        result = await exchange.create_order(buy_params)

        assert result.success
        exchange._recover.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeated_allowance_failure_is_insufficient_funds(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=AllowanceError("allowance too low"))
        exchange._recover = AsyncMock()

        result = await exchange.create_order(buy_params)

        assert not result.success
        assert result.error == OrderErrorCode.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_failed_allowance_refresh_is_insufficient_funds(self, exchange, clob, buy_params):
        exchange._post_order = AsyncMock(side_effect=AllowanceError("allowance too low"))
        exchange._balance_checker.can_sign = True
        exchange._balance_checker.ensure_allowance.side_effect = RuntimeError("web3 rpc unreachable")

        result = await exchange.create_order(buy_params)

        assert not result.success
        assert result.error == OrderErrorCode.INSUFFICIENT_FUNDS
        assert "web3 rpc unreachable" in result.message
        assert exchange._post_order.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_reports_unknown_without_resubmitting(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=ConnectionError("post_order timed out after 12s"))

        result = await exchange.create_order(buy_params)

        assert result.error == OrderErrorCode.UNKNOWN
        assert exchange._post_order.call_count == 1

    @pytest.mark.asyncio
    async def test_rejection_is_typed(self, exchange, buy_params):
        exchange._post_order = AsyncMock(side_effect=OrderError("order couldn't be fully filled"))

        result = await exchange.create_order(buy_params)

        assert result.error == OrderErrorCode.SKIPPED_NO_LIQUIDITY

    @pytest.mark.asyncio
    async def test_below_minimum_never_posted(self, exchange):
        exchange._post_order = AsyncMock(return_value=MATCHED)

        result = await exchange.create_order(
            OrderParams(market_id="m1", token_id="t1", side=OrderSide.BUY, size_usd=1)
        )

        assert result.error == OrderErrorCode.SKIPPED_MIN_SIZE
        exchange._post_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_market_data(self, exchange, clob, buy_params):
        clob.get_order_book.side_effect = Exception("no orderbook exists")
        exchange._post_order = AsyncMock(return_value=MATCHED)

        result = await exchange.create_order(buy_params)

        assert result.error == OrderErrorCode.SKIPPED_NO_LIQUIDITY
        exchange._post_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_order(self, exchange, clob):
        clob.cancel.return_value = {"canceled": ["order-1"], "not_canceled": {}}
        assert await exchange.cancel_order("order-1")

        clob.cancel.return_value = {"canceled": [], "not_canceled": {"order-2": "not found"}}
        assert not await exchange.cancel_order("order-2")

    @pytest.mark.asyncio
    async def test_cancel_with_unknown_outcome_raises(self, exchange, clob):
        clob.cancel.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(ConnectionError):
            await exchange.cancel_order("order-1")
