"""Order sizing, rate limiting and on-chain balance modules."""
from .balance_checker import BalanceChecker
from .rate_limiter import RateLimiter, RateLimiterSet
from .sizing import ExitPlan, SizingResult, compute_proportional_sizing, plan_exit_shares

__all__ = [
    "BalanceChecker",
    "RateLimiter",
    "RateLimiterSet",
    "SizingResult",
    "ExitPlan",
    "compute_proportional_sizing",
    "plan_exit_shares",
]
