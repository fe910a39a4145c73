"""
Momentum sniper.

Watches midpoint updates from the liquidity scanner and buys an outcome whose
price rises faster than the velocity threshold inside a short window. Open
snipes are closed on take-profit or stop-loss.

Velocity = (p_now - p_oldest) / p_oldest over the window.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import (
    MOMENTUM_MAX_CONCURRENT,
    MOMENTUM_STOP_LOSS_PCT,
    MOMENTUM_TAKE_PROFIT_PCT,
    MOMENTUM_TRADE_SIZE,
    MOMENTUM_VELOCITY_THRESHOLD,
    MOMENTUM_WINDOW_SECONDS,
)
from ..exchanges.base import Position

logger = logging.getLogger(__name__)

# Price points kept per token
MAX_HISTORY = 100

# Tokens are not re-entered within this many seconds of a snipe
COOLDOWN_SECONDS = 300.0

# Closed snipes kept for reporting
MAX_CLOSED_SNIPES = 200


@dataclass
class MomentumMove:
    """A detected fast move on one token."""

    token_id: str
    market_id: str
    old_price: float
    new_price: float
    velocity: float
    timestamp: float


@dataclass
class Snipe:
    """An open or closed momentum trade."""

    token_id: str
    market_id: str
    entry_price: float
    shares: float
    opened_at: float = field(default_factory=time.time)
    exit_price: Optional[float] = None
    exit_reason: str = ""
    closed_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def pnl_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "market_id": self.market_id,
            "entry_price": self.entry_price,
            "shares": self.shares,
            "opened_at": self.opened_at,
            "exit_price": self.exit_price,
            "exit_reason": self.exit_reason,
            "closed_at": self.closed_at,
        }


class MomentumSniper:
    """
    Detects fast upward moves and trades them through the ExecutionService.

    ``observe`` is called synchronously for every book update; ``run_cycle``
    is awaited once per engine heartbeat and does the trading.
    """

    def __init__(
        self,
        executor,
        velocity_threshold: float = MOMENTUM_VELOCITY_THRESHOLD,
        window_seconds: float = MOMENTUM_WINDOW_SECONDS,
        trade_size: float = MOMENTUM_TRADE_SIZE,
        take_profit_pct: float = MOMENTUM_TAKE_PROFIT_PCT,
        stop_loss_pct: float = MOMENTUM_STOP_LOSS_PCT,
        max_concurrent_trades: int = MOMENTUM_MAX_CONCURRENT,
    ):
        self.executor = executor
        self.velocity_threshold = velocity_threshold
        self.window_seconds = window_seconds
        self.trade_size = trade_size
        self.take_profit_pct = take_profit_pct
        self.stop_loss_pct = stop_loss_pct
        self.max_concurrent_trades = max_concurrent_trades

        self.enabled = False
        self.history: dict[str, deque] = {}
        self.latest_price: dict[str, float] = {}
        self.pending: dict[str, MomentumMove] = {}
        self.snipes: list[Snipe] = []
        self._last_entry: dict[str, float] = {}

    @property
    def open_snipes(self) -> list[Snipe]:
        return [s for s in self.snipes if s.is_open]

    def observe(
        self,
        token_id: str,
        market_id: str,
        price: float,
        timestamp: Optional[float] = None,
    ) -> Optional[MomentumMove]:
        """
        Record a midpoint and check for a move.

        Returns:
            The detected move, or None.
        """
        if price is None or price <= 0:
            return None
        now = timestamp if timestamp is not None else time.time()
        self.latest_price[token_id] = price

        points = self.history.setdefault(token_id, deque(maxlen=MAX_HISTORY))
        points.append((now, price))
        while points and now - points[0][0] > self.window_seconds:
            points.popleft()

        if not self.enabled or len(points) < 2:
            return None

        oldest_price = points[0][1]
        velocity = (price - oldest_price) / oldest_price
        if velocity < self.velocity_threshold:
            return None

        move = MomentumMove(
            token_id=token_id,
            market_id=market_id,
            old_price=oldest_price,
            new_price=price,
            velocity=velocity,
            timestamp=now,
        )
        self.pending[token_id] = move
        logger.info(
            f"Momentum detected on {token_id[:12]}: {oldest_price:.3f} -> {price:.3f} "
            f"({velocity:+.1%} in {now - points[0][0]:.0f}s)"
        )
        return move

    async def run_cycle(self, cash: float, now: Optional[float] = None) -> list[dict[str, Any]]:
        """
        Enter pending moves and close snipes that hit their exits.

        Args:
            cash: Available cash from the latest balance snapshot.
            now: Current time (epoch seconds), for tests.

        Returns:
            Snipe events (entries and exits) for publication.
        """
        now = now if now is not None else time.time()
        events: list[dict[str, Any]] = []

        for snipe in self.open_snipes:
            price = self.latest_price.get(snipe.token_id)
            if price is None:
                continue
            change = snipe.pnl_pct(price)
            if change >= self.take_profit_pct:
                reason = "take_profit"
            elif change <= -self.stop_loss_pct:
                reason = "stop_loss"
            else:
                continue

            position = Position(
                token_id=snipe.token_id,
                market_id=snipe.market_id,
                shares=snipe.shares,
                entry_price=snipe.entry_price,
                current_price=price,
            )
            result = await self.executor.execute_exit(position, service="momentum")
            if result.filled:
                snipe.exit_price = result.price_filled
                snipe.exit_reason = reason
                snipe.closed_at = now
                logger.info(f"Momentum exit ({reason}) on {snipe.token_id[:12]} @ {result.price_filled:.3f}")
                events.append({"type": "exit", **snipe.to_dict(), "result": result})

        self._prune(now)
        pending, self.pending = self.pending, {}
        if not self.enabled:
            return events

        for token_id, move in pending.items():
            if len(self.open_snipes) >= self.max_concurrent_trades:
                logger.info("Momentum: max concurrent trades reached")
                break
            if any(s.token_id == token_id for s in self.open_snipes):
                continue
            last = self._last_entry.get(token_id)
            if last is not None and now - last < COOLDOWN_SECONDS:
                continue

            price_limit = min(0.99, round(move.new_price * 1.02, 2))
            result = await self.executor.buy(
                move.market_id,
                token_id,
                self.trade_size,
                price_limit=price_limit,
                service="momentum",
                cash=cash,
            )
            self._last_entry[token_id] = now
            if not result.filled:
                logger.info(f"Momentum entry on {token_id[:12]} not filled: {result.reason}")
                continue

            snipe = Snipe(
                token_id=token_id,
                market_id=move.market_id,
                entry_price=result.price_filled,
                shares=result.shares_filled,
                opened_at=now,
            )
            self.snipes.append(snipe)
            cash -= result.usd_filled
            events.append({"type": "entry", "velocity": move.velocity, **snipe.to_dict(), "result": result})

        return events

    def _prune(self, now: float) -> None:
        """Drop expired cooldowns and all but the latest closed snipes."""
        for token_id, entered in list(self._last_entry.items()):
            if now - entered >= COOLDOWN_SECONDS:
                del self._last_entry[token_id]
        closed = [s for s in self.snipes if not s.is_open]
        if len(closed) > MAX_CLOSED_SNIPES:
            dropped = {id(s) for s in closed[:-MAX_CLOSED_SNIPES]}
            self.snipes = [s for s in self.snipes if id(s) not in dropped]

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "tracked_tokens": len(self.history),
            "open_snipes": [s.to_dict() for s in self.open_snipes],
            "closed_snipes": sum(1 for s in self.snipes if not s.is_open),
        }
