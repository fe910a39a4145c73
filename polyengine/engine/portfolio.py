"""
Position and balance bookkeeping for the trading engine.

Holds the engine's view of its positions, the balance snapshot from the last
successful sync and the running trade statistics.

Sync Rules:
- A sync runs when forced, when cash moved by more than epsilon, or when the
  sync interval elapsed since the last one
- A sync replaces the whole position map in one assignment
- A local position missing from two consecutive syncs is removed
- A position whose market resolved with no value is removed
"""

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from ..config import BALANCE_EPSILON, SYNC_INTERVAL
from ..exchanges.base import MarketState, OrderSide, Position
from ..trading.executor import ExecutionResult
from .market_state import MarketStateTracker

logger = logging.getLogger(__name__)

# Consecutive syncs a position may be missing before it is dropped
MAX_MISSED_SYNCS = 2


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Cash and position value captured by a successful sync."""

    cash: float
    positions_value: float
    taken_at: float

    @property
    def total(self) -> float:
        return self.cash + self.positions_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "cash": self.cash,
            "positions_value": self.positions_value,
            "total": self.total,
            "taken_at": self.taken_at,
        }


@dataclass
class SyncReport:
    """What a sync changed."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)


@dataclass
class EngineStats:
    """
    Running statistics of one engine.

    Attributes:
        total_pnl: Realized PnL of closed trades.
        total_volume: USD volume filled.
        total_fees_due: Fees recorded on realized profit.
        trades_count: Filled trades.
        win_count: Sells closed at a profit.
        loss_count: Sells closed at a loss.
        error_count: Per-item failures isolated by the engine.
        portfolio_value: Cash plus position value from the last sync.
        cash_balance: Cash from the last sync.
    """

    total_pnl: float = 0.0
    total_volume: float = 0.0
    total_fees_due: float = 0.0
    trades_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    error_count: int = 0
    portfolio_value: float = 0.0
    cash_balance: float = 0.0

    @property
    def win_rate(self) -> float:
        closed = self.win_count + self.loss_count
        return self.win_count / closed if closed else 0.0

    def record_trade(self, result: ExecutionResult) -> None:
        if not result.filled:
            return
        self.trades_count += 1
        self.total_volume += result.usd_filled
        if result.side == OrderSide.SELL:
            self.total_pnl += result.realized_pnl
            self.total_fees_due += result.fee_due
            if result.realized_pnl > 0:
                self.win_count += 1
            elif result.realized_pnl < 0:
                self.loss_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_pnl": round(self.total_pnl, 4),
            "total_volume": round(self.total_volume, 4),
            "total_fees_due": round(self.total_fees_due, 4),
            "trades_count": self.trades_count,
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": round(self.win_rate, 4),
            "error_count": self.error_count,
            "portfolio_value": round(self.portfolio_value, 4),
            "cash_balance": round(self.cash_balance, 4),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineStats":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class PortfolioTracker:
    """
    The engine's position map and balance snapshot.

    Attributes:
        positions: Open positions keyed by token id.
        snapshot: Balance from the last successful sync, or None.
        sync_interval: Seconds after which a sync is due.
        balance_epsilon: Cash movement that makes a sync due.
    """

    def __init__(
        self,
        sync_interval: float = SYNC_INTERVAL,
        balance_epsilon: float = BALANCE_EPSILON,
    ):
        self.sync_interval = sync_interval
        self.balance_epsilon = balance_epsilon
        self.positions: dict[str, Position] = {}
        self.snapshot: Optional[BalanceSnapshot] = None
        self.last_sync_at: Optional[float] = None
        self.sync_count = 0

    @property
    def cash(self) -> float:
        return self.snapshot.cash if self.snapshot else 0.0

    def copies(self) -> dict[str, Position]:
        """Independent copies of the positions for other modules."""
        return {token_id: replace(p) for token_id, p in self.positions.items()}

    def should_sync(self, balance: float, now: Optional[float] = None, forced: bool = False) -> bool:
        """
        Decide whether the expensive position fetch should run this tick.

        Args:
            balance: Cash read this tick.
            now: Current time (epoch seconds).
            forced: Caller requires a sync (after a fill, on start).
        """
        now = now if now is not None else time.time()
        if forced or self.snapshot is None or self.last_sync_at is None:
            return True
        if abs(balance - self.snapshot.cash) > self.balance_epsilon:
            return True
        return now - self.last_sync_at >= self.sync_interval

    def apply_sync(
        self,
        fresh: list[Position],
        cash: float,
        states: MarketStateTracker,
        now: Optional[float] = None,
    ) -> SyncReport:
        """
        Replace the position map with exchange data.

        Args:
            fresh: Positions reported by the exchange.
            cash: Cash reported by the exchange.
            states: Market states derived during this sync.
            now: Current time (epoch seconds).

        Returns:
            SyncReport describing the changes.
        """
        now = now if now is not None else time.time()
        report = SyncReport()
        merged: dict[str, Position] = {}

        for position in fresh:
            local = self.positions.get(position.token_id)
            position.market_state = states.get(position.market_id)
            position.missed_syncs = 0
            position.updated_at = _utc_now()

            if position.market_state == MarketState.RESOLVED and position.current_price <= 0:
                logger.warning(
                    f"Removing {position.title or position.token_id[:12]}: market resolved with no value"
                )
                if local:
                    report.removed.append(position.token_id)
                continue

            if local:
                position.managed_by_mm = local.managed_by_mm
                if (
                    local.shares != position.shares
                    or local.current_price != position.current_price
                    or local.market_state != position.market_state
                ):
                    report.updated.append(position.token_id)
            else:
                report.added.append(position.token_id)
            merged[position.token_id] = position

        for token_id, local in self.positions.items():
            if token_id in merged or token_id in report.removed:
                continue
            missed = local.missed_syncs + 1
            if missed >= MAX_MISSED_SYNCS:
                logger.warning(
                    f"Removing {local.title or token_id[:12]}: absent from exchange for {missed} syncs"
                )
                report.removed.append(token_id)
                continue
            merged[token_id] = replace(local, missed_syncs=missed)

        positions_value = sum(p.current_value for p in merged.values())
        # Swap in one step so readers never see a half-applied sync
        self.positions = merged
        self.snapshot = BalanceSnapshot(cash=cash, positions_value=positions_value, taken_at=now)
        self.last_sync_at = now
        self.sync_count += 1
        return report

    def apply_fill(self, result: ExecutionResult) -> Optional[Position]:
        """
        Update a position from a fill ahead of the next sync.

        Returns:
            The updated position, or None if it was closed or never existed.
        """
        if not result.filled:
            return None

        shares = result.shares_filled
        price = result.price_filled
        current = self.positions.get(result.token_id)

        if result.side == OrderSide.BUY:
            if current is None:
                position = Position(
                    token_id=result.token_id,
                    market_id=result.market_id,
                    shares=shares,
                    entry_price=price,
                    current_price=price,
                    outcome=result.outcome,
                    title=result.title,
                )
            else:
                total = current.shares + shares
                position = replace(
                    current,
                    shares=total,
                    entry_price=(current.shares * current.entry_price + shares * price) / total,
                    invested_value=current.invested_value + shares * price,
                    current_price=price,
                    updated_at=_utc_now(),
                )
            self.positions = {**self.positions, result.token_id: position}
            return position

        if current is None:
            return None
        remaining = round(current.shares - shares, 6)
        if remaining <= 0:
            self.positions = {k: v for k, v in self.positions.items() if k != result.token_id}
            return None
        position = replace(
            current,
            shares=remaining,
            invested_value=remaining * current.entry_price,
            current_price=price,
            updated_at=_utc_now(),
        )
        self.positions = {**self.positions, result.token_id: position}
        return position

    def mark_managed(self, token_id: str, managed: bool = True) -> None:
        position = self.positions.get(token_id)
        if position is not None:
            position.managed_by_mm = managed

    def to_list(self) -> list[dict[str, Any]]:
        return [p.to_dict() for p in self.positions.values()]
