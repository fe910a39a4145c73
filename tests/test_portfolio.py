"""
Tests for position sync, fills and engine statistics.
"""

import pytest

from polyengine.engine.market_state import MarketStateTracker
from polyengine.engine.portfolio import EngineStats, PortfolioTracker
from polyengine.exchanges.base import OrderResult, OrderSide, Position
from polyengine.trading.executor import ExecutionResult, ExecutionStatus


# =============================================================================
# Fixtures
# =============================================================================


def make_position(token_id, market_id="m1", shares=10.0, entry_price=0.5, current_price=0.5):
    return Position(
        token_id=token_id,
        market_id=market_id,
        shares=shares,
        entry_price=entry_price,
        current_price=current_price,
    )


def make_result(side, shares, price, token_id="t1", realized_pnl=0.0, fee_due=0.0, status=ExecutionStatus.FILLED):
    return ExecutionResult(
        status=status,
        side=side,
        market_id="m1",
        token_id=token_id,
        order=OrderResult(success=True, shares_filled=shares, price_filled=price),
        realized_pnl=realized_pnl,
        fee_due=fee_due,
    )


@pytest.fixture
def tracker():
    return PortfolioTracker(sync_interval=300, balance_epsilon=0.01)


@pytest.fixture
def states():
    return MarketStateTracker()


# =============================================================================
# Sync throttling
# =============================================================================


class TestShouldSync:
    """Tests for the sync decision."""

    def test_first_sync_always(self, tracker):
        assert tracker.should_sync(100.0, now=0)

    def test_throttled(self, tracker, states):
        tracker.apply_sync([], 100.0, states, now=0)

        assert not tracker.should_sync(100.0, now=10)
        assert not tracker.should_sync(100.005, now=10)

    def test_balance_change(self, tracker, states):
        tracker.apply_sync([], 100.0, states, now=0)
        assert tracker.should_sync(95.0, now=10)

    def test_interval_elapsed(self, tracker, states):
        tracker.apply_sync([], 100.0, states, now=0)
        assert tracker.should_sync(100.0, now=300)

    def test_forced(self, tracker, states):
        tracker.apply_sync([], 100.0, states, now=0)
        assert tracker.should_sync(100.0, now=1, forced=True)


# =============================================================================
# Sync application
# =============================================================================


class TestApplySync:
    """Tests for replacing the position map."""

    def test_snapshot(self, tracker, states):
        report = tracker.apply_sync([make_position("t1", current_price=0.6)], 50.0, states, now=5)

        assert report.added == ["t1"]
        assert tracker.cash == 50.0
        assert tracker.snapshot.positions_value == pytest.approx(6.0)
        assert tracker.snapshot.total == pytest.approx(56.0)
        assert tracker.last_sync_at == 5

    def test_missing_twice_removed(self, tracker, states):
        tracker.apply_sync([make_position("t1"), make_position("t2")], 50.0, states)

        first = tracker.apply_sync([make_position("t1")], 50.0, states)
        assert "t2" in tracker.positions
        assert tracker.positions["t2"].missed_syncs == 1
        assert not first.removed

        second = tracker.apply_sync([make_position("t1")], 50.0, states)
        assert second.removed == ["t2"]
        assert "t2" not in tracker.positions

    def test_reappearing_position_resets_misses(self, tracker, states):
        tracker.apply_sync([make_position("t1")], 50.0, states)
        tracker.apply_sync([], 50.0, states)
        tracker.apply_sync([make_position("t1")], 50.0, states)
        tracker.apply_sync([], 50.0, states)

        assert "t1" in tracker.positions

    def test_resolved_without_value_removed(self, tracker, states):
        tracker.apply_sync([make_position("t1", market_id="m2")], 50.0, states)
        states.update("m2", None)

        report = tracker.apply_sync([make_position("t1", market_id="m2", current_price=0.0)], 50.0, states)

        assert report.removed == ["t1"]
        assert tracker.positions == {}

    def test_resolved_winner_kept(self, tracker, states):
        states.update("m2", None)
        tracker.apply_sync([make_position("t1", market_id="m2", current_price=1.0)], 50.0, states)

        assert str(tracker.positions["t1"].market_state) == "resolved"

    def test_mm_flag_survives_sync(self, tracker, states):
        tracker.apply_sync([make_position("t1")], 50.0, states)
        tracker.mark_managed("t1")

        report = tracker.apply_sync([make_position("t1", current_price=0.55)], 50.0, states)

        assert tracker.positions["t1"].managed_by_mm
        assert report.updated == ["t1"]

    def test_copies_are_independent(self, tracker, states):
        tracker.apply_sync([make_position("t1")], 50.0, states)
        copies = tracker.copies()
        copies["t1"].shares = 0

        assert tracker.positions["t1"].shares == 10.0


# =============================================================================
# Fills
# =============================================================================


class TestApplyFill:
    """Tests for updating positions from fills."""

    def test_buy_creates_then_averages(self, tracker):
        tracker.apply_fill(make_result(OrderSide.BUY, 10, 0.40))
        position = tracker.apply_fill(make_result(OrderSide.BUY, 10, 0.60))

        assert position.shares == 20
        assert position.entry_price == pytest.approx(0.50)
        assert position.invested_value == pytest.approx(10.0)

    def test_partial_sell(self, tracker):
        tracker.apply_fill(make_result(OrderSide.BUY, 10, 0.40))
        position = tracker.apply_fill(make_result(OrderSide.SELL, 4, 0.50))

        assert position.shares == 6
        assert position.entry_price == 0.40

    def test_full_sell_removes(self, tracker):
        tracker.apply_fill(make_result(OrderSide.BUY, 10, 0.40))
        assert tracker.apply_fill(make_result(OrderSide.SELL, 10, 0.50)) is None
        assert tracker.positions == {}

    def test_unfilled_ignored(self, tracker):
        assert tracker.apply_fill(make_result(OrderSide.BUY, 10, 0.40, status=ExecutionStatus.UNKNOWN)) is None
        assert tracker.positions == {}


class TestEngineStats:
    """Tests for running statistics."""

    def test_record_trades(self):
        stats = EngineStats()
        stats.record_trade(make_result(OrderSide.BUY, 10, 0.40))
        stats.record_trade(make_result(OrderSide.SELL, 10, 0.50, realized_pnl=1.0, fee_due=0.1))
        stats.record_trade(make_result(OrderSide.SELL, 5, 0.30, realized_pnl=-0.5))
        stats.record_trade(make_result(OrderSide.BUY, 5, 0.30, status=ExecutionStatus.SKIPPED))

        assert stats.trades_count == 3
        assert stats.total_volume == pytest.approx(10.5)
        assert stats.total_pnl == pytest.approx(0.5)
        assert stats.total_fees_due == pytest.approx(0.1)
        assert stats.win_rate == 0.5

    def test_dict_round_trip_ignores_unknown(self):
        stats = EngineStats.from_dict({"total_pnl": 3.0, "win_rate": 0.9, "extra": 1})
        assert stats.total_pnl == 3.0
        assert stats.to_dict()["win_rate"] == 0.0
