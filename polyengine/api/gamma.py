"""Gamma API client for market discovery and metadata."""
import json
import logging
from typing import Any, Optional

import requests

from ..config import API_TIMEOUT, GAMMA_API_URL
from ..exchanges.base import MarketInfo

logger = logging.getLogger(__name__)


def _json_list(value: Any) -> list:
    """Gamma encodes some list fields as JSON strings."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class GammaClient:
    """
    Client for Polymarket Gamma API.

    Used for:
    - Market discovery for the liquidity scanner
    - Market metadata (title, slug, image, token IDs, reward parameters)
    """

    def __init__(
        self,
        base_url: str = GAMMA_API_URL,
        timeout: float = API_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "polyengine/1.0",
        })

    def _get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        """Make GET request."""
        response = self.session.get(
            f"{self.base_url}{endpoint}",
            params=params,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def get_active_markets(
        self,
        limit: int = 100,
        min_volume: float = 0.0,
        min_liquidity: float = 0.0,
    ) -> list[MarketInfo]:
        """
        Fetch open markets that accept orders, highest 24h volume first.

        Args:
            limit: Max results
            min_volume: Minimum lifetime volume (USD)
            min_liquidity: Minimum current liquidity (USD)

        Returns:
            List of MarketInfo
        """
        params = {
            "active": "true",
            "closed": "false",
            "archived": "false",
            "order": "volume24hr",
            "ascending": "false",
            "limit": limit,
        }
        if min_volume:
            params["volume_num_min"] = min_volume
        if min_liquidity:
            params["liquidity_num_min"] = min_liquidity

        result = self._get("/markets", params)
        markets = result if isinstance(result, list) else result.get("markets", [])

        parsed = [self.parse_market(m) for m in markets]
        return [m for m in parsed if m.accepting_orders and len(m.tokens) == 2]

    def get_market(self, condition_id: str) -> Optional[MarketInfo]:
        """Get market by condition ID, or None when Gamma does not know it."""
        result = self._get("/markets", {"condition_ids": condition_id})
        markets = result if isinstance(result, list) else result.get("markets", [])
        if not markets:
            return None
        return self.parse_market(markets[0])

    def get_market_by_slug(self, slug: str) -> Optional[MarketInfo]:
        """Get market by slug."""
        try:
            return self.parse_market(self._get(f"/markets/slug/{slug}"))
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise

    def parse_market(self, market: dict) -> MarketInfo:
        """
        Normalize a Gamma market object.

        Reward spreads are published in cents and stored in price units.
        """
        token_ids = _json_list(market.get("clobTokenIds"))
        outcomes = _json_list(market.get("outcomes"))
        prices = _json_list(market.get("outcomePrices"))

        tokens = []
        for i, token_id in enumerate(token_ids):
            tokens.append({
                "token_id": str(token_id),
                "outcome": outcomes[i] if i < len(outcomes) else "",
                "price": _float_or_none(prices[i]) if i < len(prices) else None,
            })

        max_spread_cents = _float_or_none(market.get("rewardsMaxSpread"))

        return MarketInfo(
            market_id=market.get("conditionId") or market.get("condition_id") or "",
            question=market.get("question", ""),
            slug=market.get("slug", ""),
            image=market.get("image") or market.get("icon") or "",
            active=bool(market.get("active", False)),
            closed=bool(market.get("closed", False)),
            archived=bool(market.get("archived", False)),
            accepting_orders=bool(market.get("acceptingOrders", market.get("active", False))),
            tick_size=_float_or_none(market.get("orderPriceMinTickSize")),
            min_order_size=_float_or_none(market.get("orderMinSize")),
            tokens=tokens,
            rewards_max_spread=max_spread_cents / 100 if max_spread_cents else None,
            rewards_min_size=_float_or_none(market.get("rewardsMinSize")),
            volume=_float_or_none(market.get("volumeNum") or market.get("volume")) or 0.0,
            liquidity=_float_or_none(market.get("liquidityNum") or market.get("liquidity")) or 0.0,
            raw=market,
        )
