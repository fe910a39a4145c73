"""
Trading Engine - per-user orchestrator.

Wires the exchange adapter, execution service, signal monitor, liquidity
scanner and momentum sniper together and drives them from one heartbeat.

Heartbeat (every ``heartbeat_interval`` seconds):
1. Quote the best liquidity opportunity when it is fresh, reward-eligible
   and the market accepts orders
2. Read cash and run a position sync when it is due (forced, cash moved by
   more than epsilon, or the sync interval elapsed)
3. Run the momentum sniper, take-profit watchdog and auto cashout
4. Publish stats and flush the event bus

Copy-trading runs outside the heartbeat: the signal monitor calls
``handle_signal`` as soon as a tracked wallet trades.

Example:
    >>> engine = TradingEngine(EngineConfig(user_id="alice"), PaperExchange())
    >>> await engine.start()
    >>> await asyncio.sleep(60)
    >>> await engine.stop()
"""

import asyncio
import logging
import math
import time
from dataclasses import replace
from typing import Any, Optional

from ..config import CASHOUT_INTERVAL, CASHOUT_MIN_SWEEP, MM_MAX_OPPORTUNITY_AGE, EngineConfig
from ..exchanges.base import (
    BaseExchange,
    ExchangeCapability,
    ExchangeError,
    MarketInfo,
    TradeSignal,
)
from ..maker.inventory import InventoryTracker
from ..maker.quote_manager import QuoteManager
from ..maker.scanner import MarketMakingScanner
from ..signals.momentum import MomentumSniper
from ..signals.signal_monitor import SignalMonitor
from ..trading.executor import ExecutionContext, ExecutionResult, ExecutionService, ExecutionStatus
from .events import EventBus, EventLogHandler
from .market_state import MarketMetadataCache, MarketStateTracker
from .portfolio import EngineStats, PortfolioTracker
from .store import EngineStore

logger = logging.getLogger(__name__)

# Service name -> EngineConfig flag
SERVICES = {
    "copy_trading": "enable_copy_trading",
    "market_making": "enable_market_making",
    "momentum": "enable_momentum",
    "auto_cashout": "enable_auto_cashout",
}

# Seconds between take-profit checks
AUTO_TP_INTERVAL = 10.0


class TradingEngine:
    """
    Autonomous trading engine for one user.

    Attributes:
        config: Current EngineConfig.
        exchange: Exchange adapter.
        executor: ExecutionService.
        bus: EventBus receiving ``log``, ``positions``, ``stats``,
            ``trade_complete``, ``arb_update`` and ``fomo_snipes``.
        portfolio: PortfolioTracker with positions and balance snapshot.
        stats: EngineStats.
    """

    def __init__(
        self,
        config: EngineConfig,
        exchange: BaseExchange,
        executor: Optional[ExecutionService] = None,
        store: Optional[EngineStore] = None,
        bus: Optional[EventBus] = None,
        scanner: Optional[MarketMakingScanner] = None,
        monitor: Optional[SignalMonitor] = None,
        sniper: Optional[MomentumSniper] = None,
        live: bool = False,
    ):
        """
        Initialize the engine.

        Args:
            config: Per-user settings.
            exchange: Connected or connectable adapter.
            executor: Execution service (built from config when omitted).
            store: Persistence collaborator, optional.
            bus: Event bus (a private one is created when omitted).
            scanner: Liquidity scanner (built when omitted).
            monitor: Signal monitor (built when omitted).
            sniper: Momentum sniper (built when omitted).
            live: Validate live-trading settings on start.
        """
        self.config = config
        self.exchange = exchange
        self.store = store
        self.live = live
        self.bus = bus or EventBus()

        self.executor = executor or ExecutionService(
            exchange,
            multiplier=config.multiplier,
            max_trade_amount=config.max_trade_amount,
            fee_rate=config.fee_rate,
        )
        self.portfolio = PortfolioTracker(config.sync_interval, config.balance_epsilon)
        self.states = MarketStateTracker()
        self.metadata = MarketMetadataCache(loader=exchange.get_market)
        self.stats = EngineStats()

        self.monitor = monitor or SignalMonitor(exchange, config.target_addresses, self.handle_signal)
        self.scanner = scanner or MarketMakingScanner(
            exchange,
            QuoteManager(self.executor, exchange, InventoryTracker()),
        )
        self.sniper = sniper or MomentumSniper(self.executor)
        self.scanner.add_listener(self.sniper.observe)

        self.running = False
        self.tick_count = 0
        self.started_at: Optional[float] = None
        self._force_sync = True
        self._last_auto_tp = 0.0
        self._last_cashout_check = 0.0
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._log_handler = EventLogHandler(self.bus)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Connect, run the first sync and start the enabled services.

        Raises:
            ConfigurationError: If live settings are incomplete.
            ExchangeError: If the exchange cannot be reached or authenticated.
        """
        if self.running:
            logger.info("Engine already running")
            return

        if self.live:
            self.config.validate_live()

        await self.exchange.connect()

        if self.store:
            saved = self.store.load_stats(self.config.user_id)
            if saved:
                self.stats = EngineStats.from_dict(saved)

        self.running = True
        self.started_at = time.time()
        self._shutdown.clear()
        logging.getLogger("polyengine").addHandler(self._log_handler)

        mode = "LIVE" if self.live else "PAPER"
        logger.info(f"Engine starting for {self.config.user_id} in {mode} mode on {self.exchange.name}")

        await self.sync(forced=True)
        await self._apply_services()

        self._task = asyncio.create_task(self.run())
        logger.info("Engine active")

    async def stop(self) -> None:
        """Stop services and the heartbeat; results still in flight are discarded."""
        if not self.running:
            return
        logger.info("Stopping engine...")
        self.running = False
        self._shutdown.set()

        await self.monitor.stop()
        await self.scanner.stop()
        self.sniper.enabled = False

        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        self._save_stats()
        logging.getLogger("polyengine").removeHandler(self._log_handler)
        self.bus.flush()
        await self.exchange.disconnect()
        logger.info("Engine stopped")

    async def run(self) -> None:
        """Heartbeat loop until stopped."""
        try:
            while not self._shutdown.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Unexpected error in heartbeat: {e}", exc_info=True)
                    self.stats.error_count += 1

                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.config.heartbeat_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Engine heartbeat cancelled")

    async def tick(self, now: Optional[float] = None) -> None:
        """Run one heartbeat."""
        if not self.running:
            return
        now = now if now is not None else time.time()
        self.tick_count += 1

        if self.config.enable_market_making:
            await self._quote_best_opportunity()

        await self._sync_if_due(now)

        if self.config.enable_momentum:
            await self._run_momentum(now)

        await self.check_auto_tp(now)

        if self.config.enable_auto_cashout:
            await self.check_auto_cashout(now)

        self._publish_stats()
        self.bus.flush()

    # =========================================================================
    # Heartbeat steps
    # =========================================================================

    async def _quote_best_opportunity(self) -> None:
        opportunities = self.scanner.get_opportunities(max_age=MM_MAX_OPPORTUNITY_AGE)
        self.bus.publish("arb_update", [o.to_dict() for o in opportunities[:20]])
        if not opportunities:
            return

        best = opportunities[0]
        if not (best.reward_eligible and best.accepting_orders):
            return
        try:
            quotes = await self.scanner.execute_market_making_quotes(best)
        except ExchangeError as e:
            logger.error(f"Quoting failed for {best.question[:40] or best.token_id[:12]}: {e}")
            self.stats.error_count += 1
            return
        if quotes:
            self.portfolio.mark_managed(best.token_id)

    async def _sync_if_due(self, now: float) -> None:
        try:
            balance = await self.exchange.fetch_balance(self.config.wallet_address or None)
        except ExchangeError as e:
            logger.warning(f"Balance read failed: {e}")
            self.stats.error_count += 1
            return

        if self.portfolio.should_sync(balance, now, forced=self._force_sync):
            await self.sync(balance=balance, now=now)

    async def sync(
        self,
        balance: Optional[float] = None,
        forced: bool = False,
        now: Optional[float] = None,
    ) -> bool:
        """
        Reconcile positions, market states and the balance snapshot.

        Args:
            balance: Cash already read this tick, or None to read it.
            forced: Logged only; ``sync`` always runs when called.
            now: Current time (epoch seconds).

        Returns:
            True if the sync completed and was applied.
        """
        now = now if now is not None else time.time()
        address = self.config.wallet_address or None
        try:
            if balance is None:
                balance = await self.exchange.fetch_balance(address)
            positions = await self.exchange.get_positions(address)
        except ExchangeError as e:
            logger.warning(f"Position sync failed: {e}")
            self.stats.error_count += 1
            return False

        market_ids = sorted({p.market_id for p in positions if p.market_id})
        markets = await asyncio.gather(
            *(self.exchange.get_market(m) for m in market_ids),
            return_exceptions=True,
        )

        if not self.running:
            logger.debug("Discarding sync result: engine stopped")
            return False

        for market_id, market in zip(market_ids, markets):
            if isinstance(market, ExchangeError):
                # Transient failure: keep the previous state
                logger.warning(f"Market lookup failed for {market_id[:16]}: {market}")
                self.stats.error_count += 1
                continue
            if isinstance(market, Exception):
                logger.error(f"Market lookup error for {market_id[:16]}: {market!r}")
                self.stats.error_count += 1
                continue
            if isinstance(market, BaseException):
                raise market
            self.states.update(market_id, market)
            if isinstance(market, MarketInfo):
                self.metadata.put(market, now)
        self.states.retain(set(market_ids))

        first = self.portfolio.snapshot is None
        report = self.portfolio.apply_sync(positions, balance, self.states, now)
        self.scanner.update_inventory(list(self.portfolio.positions.values()))
        self._force_sync = False

        self.stats.cash_balance = self.portfolio.snapshot.cash
        self.stats.portfolio_value = self.portfolio.snapshot.total

        if first or report.changed:
            logger.info(
                f"Synced {len(self.portfolio.positions)} positions "
                f"(+{len(report.added)} -{len(report.removed)} ~{len(report.updated)}), "
                f"cash=${balance:.2f}{' [forced]' if forced else ''}"
            )
            self._publish_positions()
        return True

    async def _run_momentum(self, now: float) -> None:
        try:
            events = await self.sniper.run_cycle(self.portfolio.cash, now)
        except ExchangeError as e:
            logger.error(f"Momentum cycle failed: {e}")
            self.stats.error_count += 1
            return
        if not self.running:
            return
        for event in events:
            result = event.pop("result")
            self._record(result)
            self.bus.publish("fomo_snipes", {**event, "result": result.to_dict()})

    async def check_auto_tp(self, now: Optional[float] = None) -> list[ExecutionResult]:
        """
        Exit positions whose best bid is up ``auto_tp_pct`` over entry.

        Returns:
            Results of the exits attempted.
        """
        if not self.config.auto_tp_pct:
            return []
        now = now if now is not None else time.time()
        if now - self._last_auto_tp < AUTO_TP_INTERVAL:
            return []
        self._last_auto_tp = now

        results = []
        for position in self.portfolio.copies().values():
            if position.managed_by_mm or position.entry_price <= 0:
                continue
            try:
                book = await self.exchange.get_order_book(position.token_id)
                if book is None or book.best_bid is None:
                    continue
                gain = (book.best_bid - position.entry_price) / position.entry_price
                if gain < self.config.auto_tp_pct:
                    continue

                logger.info(f"Auto TP hit: {position.title or position.token_id[:12]} up {gain:+.1%}")
                result = await self.executor.execute_exit(
                    position, price_limit=book.best_bid, service="auto_tp"
                )
            except ExchangeError as e:
                logger.error(f"Auto TP check failed for {position.token_id[:12]}: {e}")
                self.stats.error_count += 1
                continue
            if not self.running:
                break
            self._record(result)
            results.append(result)
        return results

    async def check_auto_cashout(self, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        """
        Sweep cash above ``max_retention_amount`` to the cold wallet.

        Runs at most once per cashout interval and ignores sweeps below the
        minimum.

        Returns:
            Cashout record, or None.
        """
        now = now if now is not None else time.time()
        destination = self.config.cold_wallet_address
        if not destination or self.config.max_retention_amount <= 0:
            return None
        if not self.exchange.supports(ExchangeCapability.CASHOUT):
            return None
        if now - self._last_cashout_check < CASHOUT_INTERVAL:
            return None
        self._last_cashout_check = now

        excess = self.portfolio.cash - self.config.max_retention_amount
        if excess < CASHOUT_MIN_SWEEP:
            return None

        amount = math.floor(excess * 100) / 100
        logger.info(f"Sweeping excess funds: ${amount:.2f} -> {destination}")
        try:
            tx_hash = await self.exchange.cashout(amount, destination)
        except ExchangeError as e:
            logger.error(f"Auto cashout failed: {e}")
            self.stats.error_count += 1
            return None

        self._force_sync = True
        record = {"amount": amount, "tx_hash": tx_hash, "destination": destination, "timestamp": now}
        logger.info(f"Cashout confirmed: {tx_hash}")
        return record

    # =========================================================================
    # Signals and manual actions
    # =========================================================================

    async def handle_signal(self, signal: TradeSignal) -> Optional[ExecutionResult]:
        """Copy a tracked wallet's trade."""
        if not self.running or not self.config.enable_copy_trading:
            return None

        if not signal.title and signal.market_id:
            try:
                market = await self.metadata.get(signal.market_id)
            except ExchangeError as e:
                logger.debug(f"Metadata lookup failed for {signal.market_id[:16]}: {e}")
                market = None
            if market is not None:
                signal = replace(
                    signal,
                    title=market.question,
                    outcome=signal.outcome or market.outcome_for(signal.token_id),
                )

        context = ExecutionContext(cash=self.portfolio.cash, positions=self.portfolio.copies())
        try:
            result = await self.executor.copy_trade(signal, context)
        except ExchangeError as e:
            logger.error(f"Copy trade failed for {signal.token_id[:12]}: {e}")
            self.stats.error_count += 1
            return None

        if not self.running:
            logger.debug("Discarding copy result: engine stopped")
            return None
        self._record(result)
        return result

    async def emergency_sell(self, token_id: str) -> Optional[ExecutionResult]:
        """
        Exit a full position immediately at the best available price.

        Returns:
            ExecutionResult, or None if no such position is held.
        """
        position = self.portfolio.copies().get(token_id)
        if position is None:
            logger.warning(f"Emergency sell: no position for {token_id[:12]}")
            return None

        logger.warning(f"Emergency sell of {position.shares:g} shares of {position.title or token_id[:12]}")
        result = await self.executor.execute_exit(position, service="emergency")
        self._record(result)
        return result

    def _record(self, result: ExecutionResult) -> None:
        if result.status == ExecutionStatus.DUPLICATE:
            return

        if result.filled:
            self.portfolio.apply_fill(result)
            self.stats.record_trade(result)
            self._force_sync = True
            self._publish_positions()
        elif result.status == ExecutionStatus.UNKNOWN:
            # Outcome of the write is unknown; reconcile from the exchange
            self._force_sync = True

        self.bus.publish("trade_complete", result.to_dict())
        if self.store and result.status != ExecutionStatus.SKIPPED:
            self.store.upsert_trade(self.config.user_id, result.to_dict())

    # =========================================================================
    # Configuration and services
    # =========================================================================

    async def update_config(self, **changes: Any) -> bool:
        """
        Apply configuration changes incrementally.

        Only the components affected by a changed field are touched; applying
        the same changes twice is a no-op.

        Returns:
            True if anything changed.

        Raises:
            ConfigurationError: On unknown keys.
        """
        new = self.config.merged(**changes)
        if new == self.config:
            return False

        old, self.config = self.config, new
        changed = {k for k in changes if getattr(old, k) != getattr(new, k)}
        logger.info(f"Config updated: {sorted(changed)}")

        if "target_addresses" in changed:
            self.monitor.update_targets(new.target_addresses)
        if changed & {"multiplier", "max_trade_amount", "fee_rate"}:
            self.executor.update_limits(new.multiplier, new.max_trade_amount, new.fee_rate)
        if "sync_interval" in changed:
            self.portfolio.sync_interval = new.sync_interval
        if "balance_epsilon" in changed:
            self.portfolio.balance_epsilon = new.balance_epsilon
        if changed & set(SERVICES.values()):
            await self._apply_services()

        if self.store:
            self.store.save_config(new.user_id, new.to_dict())
        return True

    async def toggle_service(self, name: str, enabled: bool) -> bool:
        """
        Enable or disable one service.

        Raises:
            ValueError: If the service name is unknown.
        """
        if name not in SERVICES:
            raise ValueError(f"Unknown service: {name} (expected one of {sorted(SERVICES)})")
        return await self.update_config(**{SERVICES[name]: enabled})

    def get_services_status(self) -> dict[str, dict[str, bool]]:
        running = {
            "copy_trading": self.monitor.is_active(),
            "market_making": self.scanner.running,
            "momentum": self.sniper.enabled,
            "auto_cashout": self.running and self.config.enable_auto_cashout,
        }
        return {
            name: {"enabled": getattr(self.config, flag), "running": running[name]}
            for name, flag in SERVICES.items()
        }

    async def _apply_services(self) -> None:
        if not self.running:
            return

        if self.config.enable_copy_trading and self.config.target_addresses:
            await self.monitor.start()
        elif self.monitor.is_active():
            await self.monitor.stop()

        if self.config.enable_market_making and not self.scanner.running:
            await self.scanner.start()
        elif not self.config.enable_market_making and self.scanner.running:
            await self.scanner.stop()

        self.sniper.enabled = self.config.enable_momentum

    # =========================================================================
    # Publication
    # =========================================================================

    def _publish_positions(self) -> None:
        positions = self.portfolio.to_list()
        self.bus.publish("positions", positions)
        if self.store:
            self.store.save_positions(self.config.user_id, positions)

    def _publish_stats(self) -> None:
        self.bus.publish("stats", self.stats.to_dict())

    def _save_stats(self) -> None:
        if self.store:
            self.store.save_stats(self.config.user_id, self.stats.to_dict())

    def get_status(self) -> dict[str, Any]:
        snapshot = self.portfolio.snapshot
        return {
            "user_id": self.config.user_id,
            "running": self.running,
            "live": self.live,
            "exchange": self.exchange.name,
            "tick_count": self.tick_count,
            "uptime_seconds": int(time.time() - self.started_at) if self.started_at else 0,
            "balance": snapshot.to_dict() if snapshot else None,
            "positions": self.portfolio.to_list(),
            "stats": self.stats.to_dict(),
            "services": self.get_services_status(),
            "scanner": self.scanner.get_status(),
            "momentum": self.sniper.get_status(),
            "config": self.config.to_dict(),
        }
