"""
Event bus for engine notifications.

Engine components publish into named categories; subscribers receive each
category at most once per heartbeat when the engine flushes the bus.

Snapshot categories (``positions``, ``stats``, ``arb_update``) keep only the
latest payload staged in a tick. Stream categories (``log``,
``trade_complete``, ``fomo_snipes``) collect every item into a bounded
channel that drops the oldest entries when full.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

SNAPSHOT_CATEGORIES = ("positions", "stats", "arb_update")
STREAM_CATEGORIES = ("log", "trade_complete", "fomo_snipes")
CATEGORIES = SNAPSHOT_CATEGORIES + STREAM_CATEGORIES

# Items kept per stream channel between flushes and in history
DEFAULT_CHANNEL_SIZE = 500

Subscriber = Callable[[str, Any], None]


class EventBus:
    """
    Typed, bounded publish/subscribe channel set.

    Example:
        bus = EventBus()
        bus.subscribe("stats", lambda category, payload: print(payload))
        bus.publish("stats", {"total_pnl": 12.5})
        bus.flush()
    """

    def __init__(self, channel_size: int = DEFAULT_CHANNEL_SIZE):
        self.channel_size = channel_size
        self._subscribers: dict[str, list[Subscriber]] = {c: [] for c in CATEGORIES}
        self._staged_snapshots: dict[str, Any] = {}
        self._staged_streams: dict[str, deque] = {c: deque(maxlen=channel_size) for c in STREAM_CATEGORIES}
        self._history: dict[str, deque] = {c: deque(maxlen=channel_size) for c in CATEGORIES}
        self.dropped: dict[str, int] = {c: 0 for c in STREAM_CATEGORIES}
        self.flush_count = 0

    @staticmethod
    def _check(category: str) -> None:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown event category: {category}")

    def subscribe(self, category: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription.
        """
        self._check(category)
        self._subscribers[category].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers[category]:
                self._subscribers[category].remove(callback)

        return _unsubscribe

    def publish(self, category: str, payload: Any) -> None:
        """Stage a payload for the next flush."""
        self._check(category)
        if category in SNAPSHOT_CATEGORIES:
            self._staged_snapshots[category] = payload
            return
        channel = self._staged_streams[category]
        if len(channel) == channel.maxlen:
            self.dropped[category] += 1
        channel.append(payload)

    def flush(self) -> dict[str, Any]:
        """
        Deliver staged payloads, one delivery per category.

        Stream categories are delivered as a list of the items staged since
        the previous flush. A failing subscriber is logged and skipped.

        Returns:
            The payloads delivered, keyed by category.
        """
        delivered: dict[str, Any] = dict(self._staged_snapshots)
        self._staged_snapshots = {}
        for category, channel in self._staged_streams.items():
            if channel:
                delivered[category] = list(channel)
                channel.clear()

        for category, payload in delivered.items():
            self._history[category].append(payload)
            for callback in list(self._subscribers[category]):
                try:
                    callback(category, payload)
                except Exception as e:
                    # Subscribers are external code; one bad consumer must not stop the tick
                    logger.error(f"Event subscriber failed on {category}: {e}")

        self.flush_count += 1
        return delivered

    def recent(self, category: str, limit: int = 50) -> list[Any]:
        """Most recent deliveries of a category, oldest first."""
        self._check(category)
        history = list(self._history[category])
        return history[-limit:]


class EventLogHandler(logging.Handler):
    """
    Logging handler that forwards records to the ``log`` category.

    Records emitted by this module are skipped so a failing subscriber
    cannot feed back into the bus.
    """

    def __init__(self, bus: EventBus, level: int = logging.INFO):
        super().__init__(level)
        self.bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == __name__:
            return
        try:
            self.bus.publish(
                "log",
                {
                    "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                },
            )
        except Exception:
            self.handleError(record)
