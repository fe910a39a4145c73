"""CLOB WebSocket client for market channel updates."""
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websocket

from ..config import WS_URL

logger = logging.getLogger(__name__)

# Seconds between keepalive pings
PING_INTERVAL = 10

MAX_RECONNECT_ATTEMPTS = 10
MAX_RECONNECT_DELAY = 30.0


@dataclass
class BookTop:
    """Top of book for one token as reported by the market channel."""

    token_id: str
    market_id: str
    best_bid: float
    best_ask: float
    timestamp: float

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid

    @property
    def mid(self) -> float:
        return (self.best_bid + self.best_ask) / 2


def parse_best_bid_ask(message: dict[str, Any]) -> Optional[BookTop]:
    """Parse a ``best_bid_ask`` event."""
    if message.get("event_type") != "best_bid_ask":
        return None
    token_id = message.get("asset_id")
    if not token_id:
        return None
    return BookTop(
        token_id=str(token_id),
        market_id=message.get("market", ""),
        best_bid=float(message.get("best_bid") or 0),
        best_ask=float(message.get("best_ask") or 1),
        timestamp=time.time(),
    )


def parse_book(message: dict[str, Any]) -> Optional[BookTop]:
    """
    Parse a ``book`` snapshot event.

    Levels are not guaranteed to be sorted, so the best prices are taken as
    the max bid and min ask. One-sided books are ignored.
    """
    if message.get("event_type") != "book":
        return None
    bids = message.get("bids") or []
    asks = message.get("asks") or []
    token_id = message.get("asset_id")
    if not bids or not asks or not token_id:
        return None
    return BookTop(
        token_id=str(token_id),
        market_id=message.get("market", ""),
        best_bid=max(float(level["price"]) for level in bids),
        best_ask=min(float(level["price"]) for level in asks),
        timestamp=time.time(),
    )


class MarketChannelFeed:
    """
    WebSocket client for the Polymarket CLOB market channel.

    Runs ``websocket-client`` in a daemon thread and calls ``on_update`` with
    a BookTop for every ``best_bid_ask`` or ``book`` event. The callback runs
    on the socket thread; asyncio consumers should hop back to their loop
    with ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        on_update: Callable[[BookTop], None],
        url: str = WS_URL,
        ping_interval: float = PING_INTERVAL,
    ):
        self.url = url
        self.on_update = on_update
        self.ping_interval = ping_interval
        self.subscriptions: list[str] = []
        self.ws: Optional[websocket.WebSocketApp] = None
        self.running = False
        self.connected = False
        self.reconnect_attempts = 0
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, token_ids: list[str]) -> None:
        """Add token ids; sends a subscribe frame when already connected."""
        new_ids = [t for t in token_ids if t not in self.subscriptions]
        self.subscriptions.extend(new_ids)
        if new_ids and self.connected and self.ws:
            self.ws.send(json.dumps({"assets_ids": new_ids, "operation": "subscribe"}))

    def handle_message(self, raw: str) -> int:
        """
        Dispatch one raw frame.

        Returns:
            Number of updates delivered.
        """
        if raw == "PONG":
            return 0
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return 0

        delivered = 0
        for message in data if isinstance(data, list) else [data]:
            if not isinstance(message, dict):
                continue
            try:
                top = parse_best_bid_ask(message) or parse_book(message)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed market event: {e}")
                continue
            if top is not None:
                self.on_update(top)
                delivered += 1
        return delivered

    def _on_message(self, ws, message):
        self.handle_message(message)

    def _on_error(self, ws, error):
        logger.error(f"WebSocket error: {error}")

    def _on_close(self, ws, close_status_code, close_msg):
        self.connected = False
        logger.warning(f"WebSocket closed: {close_status_code} - {close_msg}")

    def _on_open(self, ws):
        self.connected = True
        self.reconnect_attempts = 0
        ws.send(json.dumps({
            "type": "market",
            "assets_ids": self.subscriptions,
            "custom_feature_enabled": True,
        }))
        logger.info(f"CLOB WebSocket connected, subscribed to {len(self.subscriptions)} assets")

    def _run(self) -> None:
        while self.running:
            self.ws = websocket.WebSocketApp(
                self.url,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
                on_open=self._on_open,
            )
            self.ws.run_forever(ping_interval=self.ping_interval, ping_payload="PING")

            if not self.running:
                break
            self.reconnect_attempts += 1
            if self.reconnect_attempts > MAX_RECONNECT_ATTEMPTS:
                logger.error("Max reconnection attempts reached")
                self.running = False
                break
            delay = min(2 ** self.reconnect_attempts, MAX_RECONNECT_DELAY)
            logger.info(f"Reconnecting in {delay:.0f}s ({self.reconnect_attempts}/{MAX_RECONNECT_ATTEMPTS})")
            time.sleep(delay)

    def connect(self) -> None:
        """Start the feed in a background thread."""
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(target=self._run, name="clob-market-ws", daemon=True)
        self._thread.start()

    def disconnect(self) -> None:
        """Stop the feed."""
        self.running = False
        self.connected = False
        if self.ws:
            self.ws.close()
