"""
Signal Monitor

Watches the public trade history of tracked wallets and turns their new
trades into TradeSignals for the copy-trading executor.

Detection runs as a polling loop over the adapter's public trade feed.
Trades older than the monitor's start time are never emitted, and a short
dedupe cache absorbs the repeats that overlapping polls return.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..config import MONITOR_POLL_INTERVAL
from ..exchanges.base import BaseExchange, ExchangeCapability, ExchangeError, TradeSignal

logger = logging.getLogger(__name__)

# Dedupe cache is pruned once it grows past this many entries
DEDUPE_PRUNE_SIZE = 2000

# Entries older than this are dropped when pruning (seconds)
DEDUPE_TTL = 600.0

# Trades fetched per target per poll
TRADES_PER_POLL = 20

SignalHandler = Callable[[TradeSignal], Awaitable[None]]


class SignalMonitor:
    """
    Polls tracked wallets and emits each new trade once.

    Example:
        monitor = SignalMonitor(exchange, ["0xabc..."], on_signal=engine.handle_signal)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        exchange: BaseExchange,
        targets: list[str],
        on_signal: SignalHandler,
        poll_interval: float = MONITOR_POLL_INTERVAL,
        trades_per_poll: int = TRADES_PER_POLL,
    ):
        self.exchange = exchange
        self.on_signal = on_signal
        self.poll_interval = poll_interval
        self.trades_per_poll = trades_per_poll
        self.targets: set[str] = set()
        self.update_targets(targets)

        self.running = False
        self.started_at = 0.0
        self.signals_emitted = 0
        self.error_count = 0
        self._processed: dict[str, float] = {}
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def is_active(self) -> bool:
        return self.running

    def update_targets(self, targets: list[str]) -> None:
        """Replace the tracked wallet set (addresses are case-insensitive)."""
        self.targets = {t.lower() for t in targets if t}
        logger.info(f"Monitor targets synced: following {len(self.targets)} wallets")

    async def start(self) -> None:
        """Start polling. Only trades made after this call are emitted."""
        if self.running:
            return
        if not self.exchange.supports(ExchangeCapability.PUBLIC_TRADES):
            logger.warning(f"{self.exchange.name} has no public trade feed; signal monitor idle")
            return

        self.running = True
        self.started_at = time.time()
        self._shutdown.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Signal monitor online, tracking {len(self.targets)} targets")

    async def stop(self) -> None:
        """Stop polling; results of an in-flight poll are discarded."""
        if not self.running:
            return
        self.running = False
        self._shutdown.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._processed.clear()
        logger.info("Signal monitor stopped")

    async def _run(self) -> None:
        while self.running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Trade poll failed: {e}", exc_info=True)
                self.error_count += 1
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> int:
        """
        Fetch recent trades of every target and emit the new ones.

        Returns:
            Number of signals emitted.
        """
        targets = sorted(self.targets)
        results = await asyncio.gather(
            *(self.exchange.fetch_public_trades(t, self.trades_per_poll) for t in targets),
            return_exceptions=True,
        )

        if not self.running:
            return 0

        fresh: list[TradeSignal] = []
        for target, trades in zip(targets, results):
            if isinstance(trades, ExchangeError):
                logger.warning(f"Trade poll failed for {target[:10]}: {trades}")
                continue
            if isinstance(trades, Exception):
                logger.error(f"Trade poll failed for {target[:10]}: {trades!r}")
                self.error_count += 1
                continue
            if isinstance(trades, BaseException):
                raise trades
            fresh.extend(trades)

        emitted = 0
        # Oldest first so position-building trades are copied in order
        for signal in sorted(fresh, key=lambda s: s.timestamp):
            if await self.handle_signal(signal):
                emitted += 1
        return emitted

    async def handle_signal(self, signal: TradeSignal) -> bool:
        """
        Emit a trade if it is new, from a target and not older than start.

        Returns:
            True if the signal was passed to the handler.
        """
        if not self.running:
            return False
        if signal.trader.lower() not in self.targets:
            return False
        if signal.timestamp < self.started_at:
            return False

        key = signal.dedupe_key
        if key in self._processed:
            return False
        self._processed[key] = time.time()
        self._prune()

        logger.info(
            f"[TARGET MATCH] {signal.trader[:10]}... {signal.side} ${signal.size_usd:.2f} "
            f"@ {signal.price} on {signal.title or signal.token_id[:12]}"
        )
        self.signals_emitted += 1
        try:
            await self.on_signal(signal)
        except Exception as e:
            # Deduped already; a failed copy is not retried on the next poll
            logger.error(f"Signal handler failed for {signal.token_id[:12]}: {e}", exc_info=True)
            self.error_count += 1
        return True

    def _prune(self, now: Optional[float] = None) -> None:
        if len(self._processed) <= DEDUPE_PRUNE_SIZE:
            return
        now = now if now is not None else time.time()
        for key, seen_at in list(self._processed.items()):
            if now - seen_at > DEDUPE_TTL:
                del self._processed[key]
