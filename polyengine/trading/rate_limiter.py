"""
Windowed rate limiter for exchange API calls.

Tasks are queued and released in batches of at most ``requests_per_window``
per window. A batch runs concurrently; the next batch starts only after the
current batch has finished and a full window has elapsed since it began.
The queue is unbounded, so callers stall under load instead of exceeding
the exchange quota.

Example:
    >>> limiter = RateLimiter(requests_per_window=40, window_seconds=10)
    >>> book = await limiter.submit(lambda: exchange.get_order_book(token_id))
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import (
    RATE_LIMIT_MARKET,
    RATE_LIMIT_ORDER,
    RATE_LIMIT_TRADES,
    RATE_LIMIT_WINDOW,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    Batch-per-window limiter.

    Attributes:
        name: Label used in log messages.
        requests_per_window: Maximum tasks started per window.
        window_seconds: Window length in seconds.
    """

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float,
        name: str = "default",
    ) -> None:
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.name = name
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

        self._queue: deque[tuple[Callable[[], Awaitable], asyncio.Future]] = deque()
        self._worker: Optional[asyncio.Task] = None
        self.started_count = 0

    @property
    def pending(self) -> int:
        """Number of queued tasks not yet started."""
        return len(self._queue)

    async def submit(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Queue a task and wait for its result.

        Args:
            task: Zero-argument callable returning an awaitable.

        Returns:
            The task's result.

        Raises:
            Exception: Whatever the task raised.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append((task, future))

        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())

        return await future

    async def _run(self, task: Callable[[], Awaitable], future: asyncio.Future) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue:
            window_start = loop.time()
            batch = []
            while self._queue and len(batch) < self.requests_per_window:
                task, future = self._queue.popleft()
                # Caller gave up while queued; do not spend quota on it
                if future.cancelled():
                    continue
                batch.append((task, future))

            if not batch:
                continue

            self.started_count += len(batch)
            await asyncio.gather(*(self._run(task, future) for task, future in batch))

            if self._queue:
                remaining = self.window_seconds - (loop.time() - window_start)
                if remaining > 0:
                    logger.debug(
                        f"[{self.name}] window full, {len(self._queue)} queued, "
                        f"waiting {remaining:.2f}s"
                    )
                    await asyncio.sleep(remaining)


@dataclass
class RateLimiterSet:
    """One limiter per endpoint class, owned by a single adapter instance."""

    market: RateLimiter
    trades: RateLimiter
    orders: RateLimiter

    @classmethod
    def polymarket_defaults(cls) -> "RateLimiterSet":
        """Limiters sized to the published Polymarket quotas."""
        return cls(
            market=RateLimiter(RATE_LIMIT_MARKET, RATE_LIMIT_WINDOW, name="market"),
            trades=RateLimiter(RATE_LIMIT_TRADES, RATE_LIMIT_WINDOW, name="trades"),
            orders=RateLimiter(RATE_LIMIT_ORDER, RATE_LIMIT_WINDOW, name="orders"),
        )
