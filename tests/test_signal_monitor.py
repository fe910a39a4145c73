"""
Tests for the tracked-wallet signal monitor.

IMPORTANT: Trades come from the paper exchange or mocks. NO network calls.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from polyengine.exchanges.base import ConnectionError, OrderSide, TradeSignal
from polyengine.exchanges.paper import PaperExchange
from polyengine.signals.signal_monitor import SignalMonitor


# =============================================================================
# Fixtures
# =============================================================================


def make_trade(timestamp, trader="0xtrader", token_id="t1", tx_hash=""):
    return TradeSignal(
        trader=trader,
        market_id="m1",
        token_id=token_id,
        side=OrderSide.BUY,
        size_usd=25.0,
        price=0.5,
        timestamp=timestamp,
        tx_hash=tx_hash,
    )


@pytest.fixture
def paper():
    return PaperExchange()


@pytest.fixture
def on_signal():
    return AsyncMock()


@pytest.fixture
def monitor(paper, on_signal):
    """Monitor marked running with a fixed start time, without its poll loop."""
    mon = SignalMonitor(paper, ["0xTRADER"], on_signal, poll_interval=60)
    mon.running = True
    mon.started_at = 1000.0
    return mon


# =============================================================================
# Tests
# =============================================================================


class TestSignalFiltering:
    """Tests for which trades become signals."""

    @pytest.mark.asyncio
    async def test_trades_before_start_ignored(self, monitor, paper, on_signal):
        paper.add_public_trade(make_trade(999.0, tx_hash="0xold"))
        paper.add_public_trade(make_trade(1001.0, tx_hash="0xnew"))

        emitted = await monitor.poll_once()

        assert emitted == 1
        on_signal.assert_awaited_once()
        assert on_signal.call_args.args[0].tx_hash == "0xnew"

    @pytest.mark.asyncio
    async def test_repeated_trade_emitted_once(self, monitor, paper, on_signal):
        paper.add_public_trade(make_trade(1001.0, tx_hash="0xabc"))

        assert await monitor.poll_once() == 1
        assert await monitor.poll_once() == 0
        assert on_signal.await_count == 1

    @pytest.mark.asyncio
    async def test_non_target_ignored(self, monitor, on_signal):
        assert not await monitor.handle_signal(make_trade(1001.0, trader="0xsomeoneelse"))
        on_signal.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emitted_oldest_first(self, monitor, paper, on_signal):
        paper.add_public_trade(make_trade(1005.0, tx_hash="0x1"))
        paper.add_public_trade(make_trade(1010.0, tx_hash="0x2"))

        await monitor.poll_once()

        timestamps = [call.args[0].timestamp for call in on_signal.call_args_list]
        assert timestamps == [1005.0, 1010.0]

    def test_targets_are_case_insensitive(self, monitor):
        monitor.update_targets(["0xABC", "", "0xDef"])
        assert monitor.targets == {"0xabc", "0xdef"}


class TestPolling:
    """Tests for poll failures and shutdown."""

    @pytest.mark.asyncio
    async def test_failing_target_isolated(self, on_signal):
        exchange = MagicMock()

        async def _fetch(address, limit):
            if address == "0xbad":
                raise ConnectionError("down")
            return [make_trade(1001.0, trader=address, tx_hash="0xok")]

        exchange.fetch_public_trades = AsyncMock(side_effect=_fetch)
        monitor = SignalMonitor(exchange, ["0xbad", "0xgood"], on_signal)
        monitor.running = True
        monitor.started_at = 1000.0

        assert await monitor.poll_once() == 1
        assert on_signal.call_args.args[0].trader == "0xgood"

    @pytest.mark.asyncio
    async def test_unexpected_target_error_counted(self, on_signal):
        exchange = MagicMock()

        async def _fetch(address, limit):
            if address == "0xbad":
                raise RuntimeError("decode error")
            return [make_trade(1001.0, trader=address, tx_hash="0xok")]

        exchange.fetch_public_trades = AsyncMock(side_effect=_fetch)
        monitor = SignalMonitor(exchange, ["0xbad", "0xgood"], on_signal)
        monitor.running = True
        monitor.started_at = 1000.0

        assert await monitor.poll_once() == 1
        assert monitor.error_count == 1

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_later_signals(self, monitor, paper):
        paper.add_public_trade(make_trade(1001.0, tx_hash="0xa"))
        paper.add_public_trade(make_trade(1002.0, tx_hash="0xb"))
        monitor.on_signal = AsyncMock(side_effect=[RuntimeError("web3 rpc unreachable"), None])

        assert await monitor.poll_once() == 2
        assert monitor.on_signal.await_count == 2
        assert monitor.error_count == 1

    @pytest.mark.asyncio
    async def test_results_discarded_after_stop(self, on_signal):
        exchange = MagicMock()
        monitor = SignalMonitor(exchange, ["0xtrader"], on_signal)

        async def _fetch(address, limit):
            monitor.running = False
            return [make_trade(1001.0, tx_hash="0xlate")]

        exchange.fetch_public_trades = AsyncMock(side_effect=_fetch)
        monitor.running = True
        monitor.started_at = 1000.0

        assert await monitor.poll_once() == 0
        on_signal.assert_not_awaited()


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_requires_public_trades(self, on_signal):
        exchange = MagicMock()
        exchange.supports.return_value = False
        monitor = SignalMonitor(exchange, ["0xtrader"], on_signal)

        await monitor.start()

        assert not monitor.is_active()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, paper, on_signal):
        monitor = SignalMonitor(paper, ["0xtrader"], on_signal, poll_interval=60)

        await monitor.start()
        assert monitor.is_active()
        assert monitor.started_at > 0
        await asyncio.sleep(0)

        await monitor.stop()
        assert not monitor.is_active()
        assert monitor._task is None
        assert monitor._processed == {}

    @pytest.mark.asyncio
    async def test_poll_loop_survives_unexpected_error(self, on_signal):
        exchange = MagicMock()
        monitor = SignalMonitor(exchange, ["0xtrader"], on_signal, poll_interval=0.01)
        calls = {"n": 0}

        async def _poll():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return 0

        monitor.poll_once = _poll
        await monitor.start()
        await asyncio.sleep(0.1)

        assert calls["n"] >= 2
        assert not monitor._task.done()
        assert monitor.error_count == 1
        await monitor.stop()
