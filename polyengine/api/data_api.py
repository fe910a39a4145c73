"""Data API client for wallet positions, trades and portfolio value."""
import logging
from typing import Any, Optional

import requests

from ..config import API_TIMEOUT, DATA_API_URL
from ..exchanges.base import OrderSide, TradeSignal

logger = logging.getLogger(__name__)


class DataApiClient:
    """
    Client for the Polymarket Data API.

    All endpoints are public and keyed by proxy wallet address.

    Example:
        client = DataApiClient()
        for trade in client.get_trades("0xabc...", limit=10):
            print(trade.side, trade.size_usd, trade.title)
    """

    def __init__(
        self,
        base_url: str = DATA_API_URL,
        timeout: float = API_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _get(self, endpoint: str, params: dict) -> Any:
        response = self.session.get(
            f"{self.base_url}{endpoint}",
            params=params,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def get_positions(self, user: str) -> list[dict[str, Any]]:
        """
        Fetch raw positions of a wallet.

        Returns:
            Position dicts with ``asset``, ``conditionId``, ``size``,
            ``avgPrice``, ``initialValue``, ``currentValue``, ``curPrice``,
            ``title``, ``slug``, ``icon`` and ``outcome``.
        """
        result = self._get("/positions", {"user": user, "sizeThreshold": 0})
        return result if isinstance(result, list) else []

    def get_trades(self, user: str, limit: int = 20) -> list[TradeSignal]:
        """
        Fetch recent trades of a wallet, newest first.

        Args:
            user: Proxy wallet address
            limit: Max results

        Returns:
            List of TradeSignal
        """
        result = self._get("/trades", {"user": user, "limit": limit, "takerOnly": "false"})
        trades = []
        for raw in result if isinstance(result, list) else []:
            try:
                trades.append(self.parse_trade(raw, user))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed trade for {user}: {e}")
        return trades

    def get_value(self, user: str) -> float:
        """Fetch the USD value of a wallet's open positions."""
        result = self._get("/value", {"user": user})
        if isinstance(result, list):
            result = result[0] if result else {}
        return float(result.get("value", 0) or 0)

    @staticmethod
    def parse_trade(raw: dict[str, Any], user: str) -> TradeSignal:
        """Normalize a Data API trade into a TradeSignal."""
        shares = float(raw["size"])
        price = float(raw["price"])
        timestamp = float(raw["timestamp"])
        # Some responses carry milliseconds
        if timestamp > 1e12:
            timestamp /= 1000
        return TradeSignal(
            trader=(raw.get("proxyWallet") or user).lower(),
            market_id=raw["conditionId"],
            token_id=str(raw["asset"]),
            side=OrderSide.parse(raw["side"]),
            size_usd=shares * price,
            price=price,
            timestamp=timestamp,
            outcome=raw.get("outcome", ""),
            title=raw.get("title", ""),
            tx_hash=raw.get("transactionHash", ""),
        )
