"""
Inventory tracking for the liquidity provision strategy.

Keeps a per-token share count of what the quoter has accumulated and turns it
into a skew in [-1, 1] that the quote manager uses to lean its prices.

Example:
    >>> tracker = InventoryTracker(max_inventory=500)
    >>> tracker.record_fill("token-1", OrderSide.BUY, shares=250, price=0.40)
    >>> tracker.get_skew("token-1")
    0.5

Note:
    Skew = shares held / max_inventory, clamped to [-1, 1].
    A positive skew means the book is long the token and quotes should lean
    towards selling it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from ..config import MM_MAX_INVENTORY_PER_TOKEN
from ..exchanges.base import OrderSide

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class InventoryError(Exception):
    """Raised when an inventory update is invalid."""

    pass


@dataclass
class TokenInventory:
    """
    Shares of one outcome token accumulated by the quoter.

    Attributes:
        token_id: Outcome token identifier.
        market_id: Market the token belongs to.
        shares: Shares currently held.
        cost_basis: Total USD paid for the shares held.
        realized_pnl: Profit booked by asks filled above cost.
        last_updated: Time of the last fill or sync.
    """

    token_id: str
    market_id: str = ""
    shares: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    last_updated: datetime = field(default_factory=_utc_now)

    @property
    def average_price(self) -> Decimal:
        if self.shares <= 0:
            return Decimal("0")
        return self.cost_basis / self.shares

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "market_id": self.market_id,
            "shares": float(self.shares),
            "average_price": float(self.average_price),
            "cost_basis": float(self.cost_basis),
            "realized_pnl": float(self.realized_pnl),
            "last_updated": self.last_updated.isoformat(),
        }


class InventoryTracker:
    """
    Tracks quoter inventory per token and exposes the resulting skew.

    Attributes:
        max_inventory: Shares at which skew saturates at 1.
        inventory: Tracked tokens keyed by token id.
    """

    def __init__(self, max_inventory: float = MM_MAX_INVENTORY_PER_TOKEN):
        """
        Initialize the inventory tracker.

        Args:
            max_inventory: Maximum shares per token (default 500).
        """
        if max_inventory <= 0:
            raise InventoryError(f"max_inventory must be positive, got {max_inventory}")
        self.max_inventory = Decimal(str(max_inventory))
        self.inventory: dict[str, TokenInventory] = {}

    def record_fill(
        self,
        token_id: str,
        side: OrderSide,
        shares: float,
        price: float,
        market_id: str = "",
    ) -> TokenInventory:
        """
        Apply a filled quote to the inventory.

        Args:
            token_id: Outcome token filled.
            side: BUY (bid filled) or SELL (ask filled).
            shares: Shares filled.
            price: Fill price.
            market_id: Market identifier.

        Returns:
            The updated TokenInventory.

        Raises:
            InventoryError: If shares or price are invalid, or an ask fill
                exceeds the shares held.
        """
        shares_dec = Decimal(str(shares))
        price_dec = Decimal(str(price))

        if shares_dec <= 0:
            raise InventoryError(f"Fill size must be positive, got {shares}")
        if not (Decimal("0") < price_dec < Decimal("1")):
            raise InventoryError(f"Fill price must be between 0 and 1, got {price}")

        entry = self.inventory.get(token_id)
        if entry is None:
            entry = TokenInventory(token_id=token_id, market_id=market_id)
            self.inventory[token_id] = entry

        if side == OrderSide.BUY:
            entry.shares += shares_dec
            entry.cost_basis += shares_dec * price_dec
        else:
            if shares_dec > entry.shares:
                raise InventoryError(
                    f"Ask fill of {shares} exceeds inventory {entry.shares} for {token_id}"
                )
            avg = entry.average_price
            entry.realized_pnl += (price_dec - avg) * shares_dec
            entry.cost_basis -= avg * shares_dec
            entry.shares -= shares_dec

        entry.last_updated = _utc_now()

        if entry.shares >= self.max_inventory:
            logger.warning(
                f"Inventory for {token_id[:12]} at limit: {entry.shares} >= {self.max_inventory}"
            )

        logger.info(
            f"Inventory {token_id[:12]}: {side} {shares}@{price} -> "
            f"{entry.shares} shares, skew={self.get_skew(token_id):+.2f}"
        )
        return entry

    def sync(self, token_id: str, shares: float, average_price: float, market_id: str = "") -> None:
        """Overwrite a token's inventory from exchange positions."""
        shares_dec = Decimal(str(max(0.0, shares)))
        if shares_dec == 0:
            self.inventory.pop(token_id, None)
            return
        entry = self.inventory.get(token_id) or TokenInventory(token_id=token_id, market_id=market_id)
        entry.shares = shares_dec
        entry.cost_basis = shares_dec * Decimal(str(average_price))
        entry.last_updated = _utc_now()
        self.inventory[token_id] = entry

    def get_shares(self, token_id: str) -> float:
        entry = self.inventory.get(token_id)
        return float(entry.shares) if entry else 0.0

    def get_skew(self, token_id: str) -> float:
        """
        Inventory skew of a token.

        Returns:
            Shares held / max_inventory clamped to [-1, 1].
        """
        entry = self.inventory.get(token_id)
        if entry is None:
            return 0.0
        skew = entry.shares / self.max_inventory
        return float(max(Decimal("-1"), min(Decimal("1"), skew)))

    def at_limit(self, token_id: str) -> bool:
        """True when no more shares of this token should be bought."""
        return self.get_shares(token_id) >= float(self.max_inventory)

    def remaining_capacity(self, token_id: str) -> float:
        return max(0.0, float(self.max_inventory) - self.get_shares(token_id))

    def get_entry(self, token_id: str) -> Optional[TokenInventory]:
        return self.inventory.get(token_id)

    def get_report(self) -> dict[str, Any]:
        return {
            "max_inventory": float(self.max_inventory),
            "tokens": {tid: entry.to_dict() for tid, entry in self.inventory.items()},
            "total_realized_pnl": float(sum((e.realized_pnl for e in self.inventory.values()), Decimal("0"))),
        }
