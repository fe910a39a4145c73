"""
Market Making Scanner.

Discovers liquid markets, keeps their top of book current and exposes the
ones whose spread is worth quoting. Quote placement is delegated to the
QuoteManager, which posts through the ExecutionService.

Book updates come from two sources:
- The CLOB market WebSocket (``best_bid_ask`` and ``book`` events)
- A polling refresh through the exchange adapter, used when the socket is
  disabled or as a fallback
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from ..api.clob_ws import BookTop, MarketChannelFeed
from ..api.gamma import GammaClient
from ..config import (
    MM_MAX_MARKETS,
    MM_MAX_OPPORTUNITY_AGE,
    MM_MAX_SPREAD_CENTS,
    MM_MIN_LIQUIDITY,
    MM_MIN_SPREAD_CENTS,
    MM_MIN_VOLUME,
)
from ..exchanges.base import BaseExchange, ExchangeError, MarketInfo, Position
from .inventory import InventoryTracker
from .models import MarketOpportunity, Quote
from .quote_manager import QuoteManager

logger = logging.getLogger(__name__)

# Seconds between polling book refreshes
BOOK_POLL_INTERVAL = 15.0


@dataclass
class ScannerConfig:
    """Market selection thresholds."""

    min_spread_cents: float = MM_MIN_SPREAD_CENTS
    max_spread_cents: float = MM_MAX_SPREAD_CENTS
    min_volume: float = MM_MIN_VOLUME
    min_liquidity: float = MM_MIN_LIQUIDITY
    max_markets: int = MM_MAX_MARKETS
    poll_interval: float = BOOK_POLL_INTERVAL


class MarketMakingScanner:
    """
    Tracks candidate markets and their spreads.

    Example:
        scanner = MarketMakingScanner(exchange, quote_manager, gamma=GammaClient())
        await scanner.start()
        best = scanner.get_opportunities(max_age=60)
        if best:
            await scanner.execute_market_making_quotes(best[0])
    """

    def __init__(
        self,
        exchange: BaseExchange,
        quote_manager: QuoteManager,
        gamma: Optional[GammaClient] = None,
        config: Optional[ScannerConfig] = None,
        use_websocket: bool = True,
        feed_factory: Callable[..., MarketChannelFeed] = MarketChannelFeed,
    ):
        self.exchange = exchange
        self.quote_manager = quote_manager
        self.gamma = gamma or GammaClient()
        self.config = config or ScannerConfig()
        self.use_websocket = use_websocket
        self.feed_factory = feed_factory

        self.running = False
        self.markets: dict[str, MarketInfo] = {}  # token_id -> market
        self.opportunities: dict[str, MarketOpportunity] = {}
        self.feed: Optional[MarketChannelFeed] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[str, str, float, float], None]] = []

    @property
    def inventory(self) -> InventoryTracker:
        return self.quote_manager.inventory

    def add_listener(self, callback: Callable[[str, str, float, float], None]) -> None:
        """Register ``callback(token_id, market_id, midpoint, timestamp)`` for book updates."""
        self._listeners.append(callback)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Discover markets, then start the WebSocket feed and polling loop."""
        if self.running:
            logger.info("Market making scanner already running")
            return

        self.running = True
        logger.info("Starting market making scanner...")

        await self.discover_markets()

        if self.use_websocket and self.markets:
            loop = asyncio.get_running_loop()
            self.feed = self.feed_factory(
                on_update=lambda top: loop.call_soon_threadsafe(self.apply_update, top)
            )
            self.feed.subscribe(list(self.markets))
            self.feed.connect()

        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Scanner tracking {len(self.markets)} tokens")

    async def stop(self) -> None:
        """Stop updates and pull all resting quotes."""
        if not self.running:
            return
        self.running = False

        if self.feed:
            self.feed.disconnect()
            self.feed = None

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        cancelled = await self.quote_manager.cancel_all()
        logger.info(f"Scanner stopped ({cancelled} quotes cancelled)")

    # =========================================================================
    # Discovery and updates
    # =========================================================================

    async def discover_markets(self) -> int:
        """
        Load candidate markets from Gamma with volume and liquidity floors.

        Returns:
            Number of tokens tracked.
        """
        try:
            markets = await asyncio.to_thread(
                self.gamma.get_active_markets,
                self.config.max_markets * 3,
                self.config.min_volume,
                self.config.min_liquidity,
            )
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to discover markets: {e}")
            return 0

        for market in markets[: self.config.max_markets]:
            self.track_market(market)
        logger.info(f"Discovered {len(self.markets)} candidate markets")
        return len(self.markets)

    def track_market(self, market: MarketInfo) -> Optional[str]:
        """Track the primary (first) outcome token of a market."""
        if not market.tokens:
            return None
        token_id = market.tokens[0]["token_id"]
        self.markets[token_id] = market
        return token_id

    def apply_update(self, top: BookTop) -> Optional[MarketOpportunity]:
        """
        Apply a top-of-book update and re-evaluate the token.

        Returns:
            The opportunity when the spread is inside the band, else None.
        """
        if not self.running:
            return None

        market = self.markets.get(top.token_id)
        for callback in self._listeners:
            callback(top.token_id, market.market_id if market else top.market_id, top.mid, top.timestamp)

        if market is None:
            return None
        return self._evaluate(market, top.token_id, top.best_bid, top.best_ask, top.timestamp)

    def _evaluate(
        self,
        market: MarketInfo,
        token_id: str,
        best_bid: float,
        best_ask: float,
        timestamp: float,
        tick_size: Optional[float] = None,
        min_order_size: Optional[float] = None,
    ) -> Optional[MarketOpportunity]:
        spread_cents = round((best_ask - best_bid) * 100, 6)
        in_band = self.config.min_spread_cents <= spread_cents <= self.config.max_spread_cents
        valid = best_bid > 0 and best_ask < 1

        if not (in_band and valid):
            self.opportunities.pop(token_id, None)
            return None

        opp = MarketOpportunity(
            market_id=market.market_id,
            token_id=token_id,
            question=market.question,
            best_bid=best_bid,
            best_ask=best_ask,
            tick_size=tick_size or market.tick_size or 0.01,
            min_order_size=min_order_size or market.min_order_size or 5.0,
            rewards_max_spread=market.rewards_max_spread,
            rewards_min_size=market.rewards_min_size,
            accepting_orders=market.accepting_orders,
            volume=market.volume,
            liquidity=market.liquidity,
            timestamp=timestamp,
        )

        if token_id not in self.opportunities:
            tag = " [REWARDS]" if opp.reward_eligible else ""
            logger.info(
                f"MM opportunity: {market.question[:50]} | "
                f"spread {spread_cents:.1f}c | mid {opp.midpoint * 100:.1f}c{tag}"
            )
        self.opportunities[token_id] = opp
        return opp

    async def refresh_books(self) -> int:
        """
        Poll the order books of tracked tokens through the adapter.

        Returns:
            Number of books refreshed.
        """
        token_ids = list(self.markets)
        results = await asyncio.gather(
            *(self.exchange.get_order_book(t) for t in token_ids),
            return_exceptions=True,
        )
        if not self.running:
            return 0

        refreshed = 0
        for token_id, book in zip(token_ids, results):
            if isinstance(book, ExchangeError):
                logger.debug(f"Book refresh failed for {token_id[:12]}: {book}")
                continue
            if isinstance(book, BaseException):
                raise book
            if book is None or book.best_bid is None or book.best_ask is None:
                self.opportunities.pop(token_id, None)
                continue
            for callback in self._listeners:
                callback(token_id, self.markets[token_id].market_id, book.midpoint, book.timestamp)
            self._evaluate(
                self.markets[token_id],
                token_id,
                book.best_bid,
                book.best_ask,
                book.timestamp,
                tick_size=book.tick_size,
                min_order_size=book.min_order_size,
            )
            refreshed += 1
        return refreshed

    async def _poll_loop(self) -> None:
        while self.running:
            try:
                await self.refresh_books()
            except ExchangeError as e:
                logger.warning(f"Book polling error: {e}")
            await asyncio.sleep(self.config.poll_interval)

    # =========================================================================
    # Queries and actions
    # =========================================================================

    def get_opportunities(self, max_age: float = MM_MAX_OPPORTUNITY_AGE) -> list[MarketOpportunity]:
        """
        Fresh opportunities, widest spread first.

        Args:
            max_age: Maximum snapshot age in seconds.
        """
        now = time.time()
        fresh = [o for o in self.opportunities.values() if o.age(now) < max_age]
        return sorted(fresh, key=lambda o: o.spread, reverse=True)

    def get_reward_eligible_opportunities(self, max_age: float = MM_MAX_OPPORTUNITY_AGE) -> list[MarketOpportunity]:
        return [o for o in self.get_opportunities(max_age) if o.reward_eligible]

    def has_active_quotes(self, token_id: str) -> bool:
        return self.quote_manager.has_active_quotes(token_id)

    async def execute_market_making_quotes(self, opportunity: MarketOpportunity) -> list[Quote]:
        """Quote an opportunity (reposting only when needed)."""
        if not self.running:
            return []
        return await self.quote_manager.refresh(opportunity)

    def update_inventory(self, positions: list[Position]) -> None:
        """Align quoter inventory with synced exchange positions."""
        held = {p.token_id: p for p in positions}
        for token_id in list(self.inventory.inventory):
            if token_id not in held:
                self.inventory.sync(token_id, 0.0, 0.0)
        for token_id, position in held.items():
            if token_id in self.markets or position.managed_by_mm:
                self.inventory.sync(token_id, position.shares, position.entry_price, position.market_id)

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "tracked_tokens": len(self.markets),
            "opportunities": len(self.opportunities),
            "websocket_connected": bool(self.feed and self.feed.connected),
            "inventory": self.inventory.get_report(),
        }
