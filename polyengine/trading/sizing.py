"""
Proportional order sizing.

Pure functions that turn a tracked trader's trade into a follower trade size.
No I/O and no state: the same inputs always produce the same result.

Sizing (quote currency):
    ratio = follower_balance / max(1, source_balance + max(0, source_trade_size))
    raw   = source_trade_size * ratio * multiplier

then, in order: dust floor, configured ceiling, wallet ceiling, truncation to
cents with a dust re-check.

Example:
    >>> result = compute_proportional_sizing(50, 1000, 100, 1.0, 0.5)
    >>> result.target_size, result.reason
    (4.54, 'proportional')
"""

import math
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

# Smallest order value the exchange accepts (USD)
MIN_ORDER_VALUE = Decimal("1.00")

# Minimum currency increment
CURRENCY_INCREMENT = Decimal("0.01")

# Default market minimum order size (shares)
DEFAULT_MIN_ORDER_SHARES = 5.0

REASON_PROPORTIONAL = "proportional"
REASON_FLOOR_BOOST = "floor_boost_min_1"
REASON_INSUFFICIENT = "insufficient_for_min_order"
REASON_CAPPED_MAX = "capped_at_max"
REASON_CAPPED_BALANCE = "capped_at_balance"


@dataclass(frozen=True)
class SizingResult:
    """
    Outcome of a sizing decision.

    Attributes:
        target_size: USD to trade (0 means do not trade).
        ratio: Follower balance relative to the trader's balance after the trade.
        reason: Which rule produced the size.
    """

    target_size: float
    ratio: float
    reason: str

    @property
    def should_trade(self) -> bool:
        return self.target_size > 0


@dataclass(frozen=True)
class ExitPlan:
    """Share count for a proportional sell, with the rule that produced it."""

    shares: float
    reason: str

    @property
    def should_trade(self) -> bool:
        return self.shares > 0


def _non_negative(value: Optional[float]) -> Decimal:
    if value is None or value != value or value <= 0:
        return Decimal("0")
    return Decimal(str(value))


def _truncate(value: Decimal) -> Decimal:
    return value.quantize(CURRENCY_INCREMENT, rounding=ROUND_DOWN)


def compute_proportional_sizing(
    follower_balance: float,
    source_balance: float,
    source_trade_size: float,
    multiplier: float = 1.0,
    current_price: float = 0.5,
    max_trade_amount: Optional[float] = None,
) -> SizingResult:
    """
    Compute a safe follower trade size in USD.

    Args:
        follower_balance: Follower's available cash.
        source_balance: Tracked trader's portfolio value.
        source_trade_size: Tracked trade size in USD.
        multiplier: Copy multiplier.
        current_price: Outcome price. Accepted for call-site symmetry with
            share planning; USD sizing does not depend on it.
        max_trade_amount: Optional per-trade ceiling (None or 0 for no ceiling).

    Returns:
        SizingResult with a size in [0, min(follower_balance, max_trade_amount)]
        that is a whole number of cents.
    """
    follower = _non_negative(follower_balance)
    source = _non_negative(source_balance)
    trade = _non_negative(source_trade_size)
    mult = _non_negative(multiplier)
    ceiling = _non_negative(max_trade_amount) if max_trade_amount else None

    denominator = max(Decimal("1"), source + trade)
    ratio = follower / denominator
    target = trade * ratio * mult
    reason = REASON_PROPORTIONAL

    def _dust_floor(size: Decimal, current_reason: str) -> tuple[Decimal, str]:
        if size >= MIN_ORDER_VALUE:
            return size, current_reason
        affordable = follower >= MIN_ORDER_VALUE and (ceiling is None or ceiling >= MIN_ORDER_VALUE)
        if affordable:
            return MIN_ORDER_VALUE, REASON_FLOOR_BOOST
        return Decimal("0"), REASON_INSUFFICIENT

    # 1. Dust floor
    target, reason = _dust_floor(target, reason)

    # 2. Configured ceiling
    if ceiling is not None and target > ceiling:
        target = ceiling
        reason = REASON_CAPPED_MAX

    # 3. Wallet ceiling
    if target > follower:
        target = follower
        reason = REASON_CAPPED_BALANCE

    # 4. Precision, then the dust rule again on the truncated value
    target = _truncate(target)
    if target > 0:
        target, reason = _dust_floor(target, reason)

    return SizingResult(target_size=float(target), ratio=float(ratio), reason=reason)


def plan_exit_shares(
    held_shares: float,
    target_usd: float,
    price: float,
    min_order_shares: float = DEFAULT_MIN_ORDER_SHARES,
) -> ExitPlan:
    """
    Convert a proportional USD sell into a share count.

    Holdings below the market minimum cannot be sold ("dust trap"). Sells
    smaller than the minimum are boosted to it, and a sell that would leave
    an unsellable remainder liquidates the whole position.

    Args:
        held_shares: Shares currently held.
        target_usd: Proportional sell size in USD.
        price: Current outcome price.
        min_order_shares: Market minimum order size in shares.

    Returns:
        ExitPlan whose share count never exceeds ``held_shares``.
    """
    held = max(0.0, held_shares)
    if held <= 0:
        return ExitPlan(0.0, "no_position")
    if held < min_order_shares:
        return ExitPlan(0.0, f"dust_trap_detected: held_{held:.2f}_below_min_{min_order_shares:g}")

    price = max(0.01, min(0.99, price))
    shares = float(math.floor(max(0.0, target_usd) / price))
    reason = "proportional"

    if shares < min_order_shares:
        shares = min_order_shares
        reason = "sell_boost_to_min_shares"

    remaining = held - shares
    if 0 < remaining < min_order_shares:
        shares = held
        reason = "full_liquidation_to_prevent_dust"

    if shares >= held:
        shares = held
        if reason == "proportional":
            reason = "capped_at_position"

    return ExitPlan(shares=shares, reason=reason)
