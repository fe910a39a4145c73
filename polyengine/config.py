"""Configuration management for the Polymarket trading engine."""
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Polymarket credentials
POLYMARKET_PRIVATE_KEY = os.getenv("POLYMARKET_PRIVATE_KEY", "")
POLYMARKET_FUNDER = os.getenv("POLYMARKET_FUNDER", "")

# Trading mode: "paper" or "live"
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# =============================================================================
# API ENDPOINTS
# =============================================================================

CLOB_BASE_URL = os.getenv("CLOB_BASE_URL", "https://clob.polymarket.com")
GAMMA_API_URL = os.getenv("GAMMA_API_URL", "https://gamma-api.polymarket.com")
DATA_API_URL = os.getenv("DATA_API_URL", "https://data-api.polymarket.com")
WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
POLYGON_RPC_URL = os.getenv("POLYGON_RPC_URL", "https://polygon-rpc.com")

# Chain configuration (Polygon)
CHAIN_ID = 137

# Timeout applied to every outbound call (seconds)
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "12"))

# =============================================================================
# RATE LIMITS (requests per window, window seconds)
# =============================================================================

RATE_LIMIT_WINDOW = float(os.getenv("POLYMARKET_RATE_WINDOW", "10"))
RATE_LIMIT_MARKET = int(os.getenv("POLYMARKET_RATE_MARKET", "40"))
RATE_LIMIT_TRADES = int(os.getenv("POLYMARKET_RATE_TRADES", "180"))
RATE_LIMIT_ORDER = int(os.getenv("POLYMARKET_RATE_ORDER", "3000"))

# =============================================================================
# ENGINE TIMINGS
# =============================================================================

# Heartbeat tick (seconds)
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "2"))

# Maximum time between full position syncs (seconds)
SYNC_INTERVAL = float(os.getenv("SYNC_INTERVAL", "300"))

# Balance movement that forces a sync (USD)
BALANCE_EPSILON = float(os.getenv("BALANCE_EPSILON", "0.01"))

# Market metadata cache TTL (seconds)
METADATA_TTL = float(os.getenv("METADATA_TTL", str(24 * 3600)))

# Signal monitor poll interval (seconds)
MONITOR_POLL_INTERVAL = float(os.getenv("MONITOR_POLL_INTERVAL", "2"))

# =============================================================================
# RISK DEFAULTS
# =============================================================================

COPY_MULTIPLIER = float(os.getenv("COPY_MULTIPLIER", "1.0"))
MAX_TRADE_AMOUNT = float(os.getenv("MAX_TRADE_AMOUNT", "0")) or None
SLIPPAGE_PCT = float(os.getenv("SLIPPAGE_PCT", "0.05"))

# Kill switch file (create this file to halt all new orders)
KILL_SWITCH_FILE = PROJECT_ROOT / ".kill_switch"

# =============================================================================
# MARKET MAKING
# =============================================================================

MM_MIN_SPREAD_CENTS = float(os.getenv("MM_MIN_SPREAD_CENTS", "1"))
MM_MAX_SPREAD_CENTS = float(os.getenv("MM_MAX_SPREAD_CENTS", "15"))
MM_MIN_VOLUME = float(os.getenv("MM_MIN_VOLUME", "5000"))
MM_MIN_LIQUIDITY = float(os.getenv("MM_MIN_LIQUIDITY", "1000"))
MM_MAX_MARKETS = int(os.getenv("MM_MAX_MARKETS", "20"))
MM_QUOTE_SIZE = float(os.getenv("MM_QUOTE_SIZE", "10"))

# Quotes older than this are reposted (seconds)
MM_REFRESH_INTERVAL = float(os.getenv("MM_REFRESH_INTERVAL", "300"))

# Midpoint move that forces a repost (percent)
MM_PRICE_MOVE_THRESHOLD_PCT = float(os.getenv("MM_PRICE_MOVE_THRESHOLD_PCT", "5"))

# Shares of one token the quoter may accumulate
MM_MAX_INVENTORY_PER_TOKEN = float(os.getenv("MM_MAX_INVENTORY_PER_TOKEN", "500"))

# Opportunities older than this are not quoted (seconds)
MM_MAX_OPPORTUNITY_AGE = float(os.getenv("MM_MAX_OPPORTUNITY_AGE", "60"))

# =============================================================================
# MOMENTUM
# =============================================================================

MOMENTUM_VELOCITY_THRESHOLD = float(os.getenv("MOMENTUM_VELOCITY_THRESHOLD", "0.03"))
MOMENTUM_WINDOW_SECONDS = float(os.getenv("MOMENTUM_WINDOW_SECONDS", "60"))
MOMENTUM_TRADE_SIZE = float(os.getenv("MOMENTUM_TRADE_SIZE", "50"))
MOMENTUM_STOP_LOSS_PCT = float(os.getenv("MOMENTUM_STOP_LOSS_PCT", "0.10"))
MOMENTUM_TAKE_PROFIT_PCT = float(os.getenv("MOMENTUM_TAKE_PROFIT_PCT", "0.20"))
MOMENTUM_MAX_CONCURRENT = int(os.getenv("MOMENTUM_MAX_CONCURRENT", "3"))

# =============================================================================
# AUTO CASHOUT
# =============================================================================

CASHOUT_MIN_SWEEP = float(os.getenv("CASHOUT_MIN_SWEEP", "10"))
CASHOUT_INTERVAL = float(os.getenv("CASHOUT_INTERVAL", "3600"))


class ConfigurationError(Exception):
    """Raised when the engine cannot start with the given configuration."""

    pass


def _split_addresses(raw: str) -> list[str]:
    return [a.strip().lower() for a in raw.split(",") if a.strip()]


@dataclass
class EngineConfig:
    """
    Per-user runtime settings for a TradingEngine.

    Module flags map to services that can be toggled while the engine runs.
    Everything else is read by the engine on each tick, so updates take effect
    on the next heartbeat.

    Attributes:
        user_id: Identity key used by the store.
        wallet_address: Proxy wallet (funder) holding the user's funds.
        target_addresses: Tracked wallets for copy-trading.
        multiplier: Copy multiplier applied to proportional sizing.
        max_trade_amount: Optional per-trade USD ceiling.
        enable_copy_trading: Run the signal monitor.
        enable_market_making: Run the liquidity scanner and auto-quote.
        enable_momentum: Run the momentum sniper.
        enable_auto_cashout: Sweep excess cash to the cold wallet.
        auto_tp_pct: Take-profit threshold as a fraction (0.2 = +20%), or None.
        max_retention_amount: Cash kept in the trading wallet when sweeping.
        cold_wallet_address: Destination of auto cashout sweeps.
        fee_rate: Share of realized profit recorded as fee due on exits.
    """

    user_id: str = "default"
    wallet_address: str = ""
    target_addresses: list[str] = field(default_factory=list)
    multiplier: float = COPY_MULTIPLIER
    max_trade_amount: Optional[float] = MAX_TRADE_AMOUNT
    enable_copy_trading: bool = True
    enable_market_making: bool = False
    enable_momentum: bool = False
    enable_auto_cashout: bool = False
    auto_tp_pct: Optional[float] = None
    max_retention_amount: float = 0.0
    cold_wallet_address: str = ""
    fee_rate: float = 0.0
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    sync_interval: float = SYNC_INTERVAL
    balance_epsilon: float = BALANCE_EPSILON

    @classmethod
    def from_env(cls, user_id: str = "default") -> "EngineConfig":
        """Build a config from environment variables."""
        auto_tp = os.getenv("AUTO_TP_PCT", "")
        return cls(
            user_id=user_id,
            wallet_address=POLYMARKET_FUNDER,
            target_addresses=_split_addresses(os.getenv("TARGET_ADDRESSES", "")),
            enable_copy_trading=os.getenv("ENABLE_COPY_TRADING", "true").lower() == "true",
            enable_market_making=os.getenv("ENABLE_MARKET_MAKING", "false").lower() == "true",
            enable_momentum=os.getenv("ENABLE_MOMENTUM", "false").lower() == "true",
            enable_auto_cashout=os.getenv("ENABLE_AUTO_CASHOUT", "false").lower() == "true",
            auto_tp_pct=float(auto_tp) if auto_tp else None,
            max_retention_amount=float(os.getenv("MAX_RETENTION_AMOUNT", "0")),
            cold_wallet_address=os.getenv("COLD_WALLET_ADDRESS", ""),
            fee_rate=float(os.getenv("FEE_RATE", "0")),
        )

    def merged(self, **changes: Any) -> "EngineConfig":
        """
        Return a copy with the given fields replaced.

        Raises:
            ConfigurationError: If a key is not a config field.
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {sorted(unknown)}")
        if "target_addresses" in changes:
            changes["target_addresses"] = [a.lower() for a in changes["target_addresses"]]
        return replace(self, **changes)

    def validate_live(self) -> None:
        """
        Check the settings a live engine cannot run without.

        Raises:
            ConfigurationError: If the wallet address is missing.
        """
        if not self.wallet_address:
            raise ConfigurationError("wallet_address (POLYMARKET_FUNDER) is required for live trading")
        if self.enable_auto_cashout and not self.cold_wallet_address:
            raise ConfigurationError("enable_auto_cashout requires cold_wallet_address")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
