"""
Quote Manager for the liquidity provision strategy.

Prices a two-sided quote around the midpoint of a market, leans it by the
current inventory skew and keeps at most one live bid and ask per token.

Key Features:
- Bid and ask placed inside the spread, on tick, never crossing the book
- Inventory skew shifts both prices away from the side that is too heavy
- Asks only posted for shares actually held
- Reposting when the midpoint moves more than the threshold or quotes age out
- Stale quotes cancelled before new ones are posted

Example:
    >>> manager = QuoteManager(executor, exchange, InventoryTracker())
    >>> quotes = await manager.refresh(opportunity)
    >>> for q in quotes:
    ...     print(q.side, q.size, q.price, q.status)
"""

import logging
import time
from collections import deque
from typing import Optional

from ..config import MM_PRICE_MOVE_THRESHOLD_PCT, MM_QUOTE_SIZE, MM_REFRESH_INTERVAL
from ..exchanges.base import BaseExchange, ExchangeError, OrderSide
from ..exchanges.order_math import MAX_PRICE, MIN_PRICE, ceil_to_tick, floor_to_tick, truncate_shares
from .inventory import InventoryError, InventoryTracker
from .models import MarketOpportunity, Quote, QuoteStatus

logger = logging.getLogger(__name__)

# Posted quotes kept for reporting
MAX_QUOTE_HISTORY = 1000


class QuoteManager:
    """
    Builds, posts and retires resting quotes.

    Attributes:
        executor: ExecutionService used to post GTC orders.
        exchange: Adapter used to cancel resting orders.
        inventory: InventoryTracker providing skew and held shares.
        quote_size: Target quote size in shares.
        refresh_interval: Quotes older than this are reposted (seconds).
        price_move_threshold_pct: Midpoint move that forces a repost (percent).
    """

    def __init__(
        self,
        executor,
        exchange: BaseExchange,
        inventory: InventoryTracker,
        quote_size: float = MM_QUOTE_SIZE,
        refresh_interval: float = MM_REFRESH_INTERVAL,
        price_move_threshold_pct: float = MM_PRICE_MOVE_THRESHOLD_PCT,
    ):
        self.executor = executor
        self.exchange = exchange
        self.inventory = inventory
        self.quote_size = quote_size
        self.refresh_interval = refresh_interval
        self.price_move_threshold_pct = price_move_threshold_pct

        # token_id -> live quotes
        self._quotes: dict[str, list[Quote]] = {}
        self.history: deque[Quote] = deque(maxlen=MAX_QUOTE_HISTORY)

    # =========================================================================
    # Pricing
    # =========================================================================

    def build_quotes(self, opp: MarketOpportunity) -> list[Quote]:
        """
        Price a bid and (when inventory allows) an ask for an opportunity.

        The half-width sits one tick inside the current spread, limited to
        the reward band when the market publishes one. A positive skew moves
        both prices down so the ask is more likely to fill.

        Args:
            opp: Fresh market snapshot.

        Returns:
            Pending quotes (possibly empty).
        """
        tick = opp.tick_size or 0.01
        mid = opp.midpoint
        skew = self.inventory.get_skew(opp.token_id)
        held = self.inventory.get_shares(opp.token_id)

        half_width = max(tick, opp.spread / 2 - tick)
        if opp.rewards_max_spread:
            half_width = min(half_width, max(tick, opp.rewards_max_spread))
        center = mid - skew * half_width

        size = max(self.quote_size, opp.min_order_size, opp.rewards_min_size or 0.0)
        quotes = []

        bid_price = floor_to_tick(max(MIN_PRICE, center - half_width), tick)
        bid_size = truncate_shares(min(size, self.inventory.remaining_capacity(opp.token_id)))
        if bid_price < opp.best_ask and bid_size >= opp.min_order_size:
            quotes.append(
                Quote(
                    market_id=opp.market_id,
                    token_id=opp.token_id,
                    side=OrderSide.BUY,
                    price=bid_price,
                    size=bid_size,
                    skew=skew,
                    reference_mid=mid,
                )
            )

        ask_price = ceil_to_tick(min(MAX_PRICE, center + half_width), tick)
        ask_size = truncate_shares(min(size, held))
        if ask_price > opp.best_bid and ask_size >= opp.min_order_size:
            quotes.append(
                Quote(
                    market_id=opp.market_id,
                    token_id=opp.token_id,
                    side=OrderSide.SELL,
                    price=ask_price,
                    size=ask_size,
                    skew=skew,
                    reference_mid=mid,
                )
            )

        if len(quotes) == 2 and quotes[0].price >= quotes[1].price:
            # Skew pushed the prices onto each other; keep the side that reduces inventory
            quotes = [quotes[1]] if skew > 0 else [quotes[0]]

        return quotes

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def active_quotes(self, token_id: str) -> list[Quote]:
        return [q for q in self._quotes.get(token_id, []) if q.status.is_resting]

    def has_active_quotes(self, token_id: str) -> bool:
        return bool(self.active_quotes(token_id))

    def needs_refresh(self, opp: MarketOpportunity, now: Optional[float] = None) -> bool:
        """
        Check whether the quotes of a token should be replaced.

        Returns:
            True when there are no live quotes, any quote is older than the
            refresh interval, or the midpoint moved beyond the threshold.
        """
        now = now if now is not None else time.time()
        live = self.active_quotes(opp.token_id)
        if not live:
            return True

        for quote in live:
            if now - quote.posted_at >= self.refresh_interval:
                return True
            if quote.reference_mid > 0:
                move_pct = abs(opp.midpoint - quote.reference_mid) / quote.reference_mid * 100
                if move_pct > self.price_move_threshold_pct:
                    return True
        return False

    async def refresh(self, opp: MarketOpportunity, now: Optional[float] = None) -> list[Quote]:
        """
        Make sure the token carries up-to-date quotes.

        Args:
            opp: Fresh market snapshot.
            now: Current time (epoch seconds), for tests.

        Returns:
            Live quotes after the refresh.
        """
        if not self.needs_refresh(opp, now):
            return self.active_quotes(opp.token_id)

        now = now if now is not None else time.time()
        stale = any(now - q.posted_at >= self.refresh_interval for q in self.active_quotes(opp.token_id))
        await self.cancel_quotes(
            opp.token_id,
            QuoteStatus.STALE_CANCELLED if stale else QuoteStatus.SUPERSEDED,
        )
        unresolved = self.active_quotes(opp.token_id)
        if unresolved:
            # An old quote may still rest on the book; posting now could double the exposure
            logger.warning(f"Skipping repost of {opp.token_id[:12]}: {len(unresolved)} cancel(s) unconfirmed")
            return unresolved

        pending = self.build_quotes(opp)
        if not pending:
            logger.debug(f"No quotable side for {opp.token_id[:12]}")
            return []

        posted = await self.executor.execute_market_making_quotes(pending)
        live = [q for q in posted if q.status.is_resting]
        self._quotes[opp.token_id] = live
        self.history.extend(posted)

        if live:
            summary = ", ".join(f"{q.side} {q.size:g}@{q.price}" for q in live)
            logger.info(f"Quoting {opp.question[:40] or opp.token_id[:12]}: {summary}")
        return live

    async def cancel_quotes(self, token_id: str, status: QuoteStatus = QuoteStatus.SUPERSEDED) -> int:
        """
        Cancel the live quotes of a token.

        A quote whose cancel fails stays live so the next refresh retries it.
        A quote the exchange no longer holds was matched while resting and is
        recorded as filled.

        Returns:
            Number of quotes cancelled.
        """
        cancelled = 0
        for quote in self.active_quotes(token_id):
            try:
                ok = await self.exchange.cancel_order(quote.order_id)
            except ExchangeError as e:
                logger.warning(f"Cancel failed for quote {quote.order_id}: {e}")
                continue
            if ok:
                quote.status = status
                cancelled += 1
            else:
                self.on_fill(quote.order_id, quote.size, quote.price)
        self._quotes[token_id] = [q for q in self._quotes.get(token_id, []) if q.status.is_resting]
        return cancelled

    async def cancel_all(self) -> int:
        total = 0
        for token_id in list(self._quotes):
            total += await self.cancel_quotes(token_id, QuoteStatus.STALE_CANCELLED)
        return total

    def on_fill(self, order_id: str, shares: float, price: float) -> Optional[Quote]:
        """
        Record a fill reported for one of our quotes.

        Returns:
            The filled quote, or None if the order id is not ours.
        """
        for token_id, quotes in self._quotes.items():
            for quote in quotes:
                if quote.order_id == order_id and quote.status.is_resting:
                    quote.status = QuoteStatus.FILLED
                    logger.info(f"Quote filled: {quote.side} {shares:g} on {token_id[:12]}")
                    try:
                        self.inventory.record_fill(token_id, quote.side, shares, price, quote.market_id)
                    except InventoryError as e:
                        # Next position sync overwrites the inventory anyway
                        logger.warning(f"Inventory not updated for fill of {order_id}: {e}")
                    return quote
        return None
