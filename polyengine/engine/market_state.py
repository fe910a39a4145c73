"""
Market lifecycle tracking and metadata caching.

The lifecycle is ACTIVE -> {CLOSED, ARCHIVED, RESOLVED}. States are derived
from fresh market data on every sync and depend on nothing else: a market
that flaps between closed and open data settles to whatever the latest data
says. A market the exchange no longer knows is treated as RESOLVED.
Transient lookup failures never change a state.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..config import METADATA_TTL
from ..exchanges.base import MarketInfo, MarketState

logger = logging.getLogger(__name__)

MAX_TRANSITIONS = 500


def derive_market_state(market: Optional[MarketInfo]) -> MarketState:
    """
    Map market data onto the lifecycle.

    Archived wins over closed. A market that is neither but has stopped
    accepting orders, gone inactive or named a winning outcome is RESOLVED.

    Args:
        market: Fresh market data, or None when the exchange reports not found.

    Returns:
        The derived MarketState.
    """
    if market is None:
        return MarketState.RESOLVED
    if market.archived:
        return MarketState.ARCHIVED
    if market.closed:
        return MarketState.CLOSED
    if not market.accepting_orders or not market.active:
        return MarketState.RESOLVED
    if any(token.get("winner") for token in market.tokens):
        return MarketState.RESOLVED
    return MarketState.ACTIVE


@dataclass
class StateTransition:
    """A change of lifecycle state for one market."""

    market_id: str
    old_state: MarketState
    new_state: MarketState
    timestamp: float


class MarketStateTracker:
    """
    Holds the last derived state per market and reports transitions.

    Applying the same data twice is idempotent: the second call reports no
    transition. Only the most recent MAX_TRANSITIONS are kept.
    """

    def __init__(self, max_transitions: int = MAX_TRANSITIONS):
        self.states: dict[str, MarketState] = {}
        self.transitions: deque[StateTransition] = deque(maxlen=max_transitions)

    def get(self, market_id: str) -> MarketState:
        return self.states.get(market_id, MarketState.ACTIVE)

    def update(self, market_id: str, market: Optional[MarketInfo]) -> Optional[StateTransition]:
        """
        Recompute a market's state from fresh data.

        Returns:
            The transition, or None if the state did not change.
        """
        old = self.get(market_id)
        new = derive_market_state(market)
        self.states[market_id] = new
        if new == old:
            return None

        transition = StateTransition(market_id, old, new, time.time())
        self.transitions.append(transition)
        logger.info(f"Market {market_id[:16]} {old} -> {new}")
        return transition

    def forget(self, market_id: str) -> None:
        self.states.pop(market_id, None)

    def retain(self, market_ids) -> None:
        """Drop states for markets no longer held."""
        for market_id in list(self.states):
            if market_id not in market_ids:
                del self.states[market_id]


class MarketMetadataCache:
    """
    TTL cache of market metadata keyed by market id.

    Example:
        cache = MarketMetadataCache(loader=exchange.get_market)
        market = await cache.get(condition_id)
    """

    def __init__(
        self,
        loader: Callable[[str], Awaitable[Optional[MarketInfo]]],
        ttl: float = METADATA_TTL,
    ):
        self.loader = loader
        self.ttl = ttl
        self._entries: dict[str, tuple[MarketInfo, float]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, market_id: str, now: Optional[float] = None) -> Optional[MarketInfo]:
        """Cached entry if still fresh, without loading."""
        entry = self._entries.get(market_id)
        if entry is None:
            return None
        now = now if now is not None else time.time()
        if now - entry[1] >= self.ttl:
            return None
        return entry[0]

    def put(self, market: MarketInfo, now: Optional[float] = None) -> None:
        self._entries[market.market_id] = (market, now if now is not None else time.time())

    async def get(self, market_id: str, now: Optional[float] = None) -> Optional[MarketInfo]:
        """
        Cached metadata, loading on miss or expiry.

        Not-found results are not cached. Loader exceptions propagate.
        """
        cached = self.peek(market_id, now)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        market = await self.loader(market_id)
        if market is not None:
            self.put(market, now)
        return market

    def invalidate(self, market_id: str) -> None:
        self._entries.pop(market_id, None)
