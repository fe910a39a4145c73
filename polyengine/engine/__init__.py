"""Per-user trading engine and its bookkeeping."""
from .bot import SERVICES, TradingEngine
from .events import CATEGORIES, EventBus, EventLogHandler
from .market_state import MarketMetadataCache, MarketStateTracker, derive_market_state
from .portfolio import BalanceSnapshot, EngineStats, PortfolioTracker
from .store import EngineStore, JsonEngineStore

__all__ = [
    "TradingEngine",
    "SERVICES",
    "EventBus",
    "EventLogHandler",
    "CATEGORIES",
    "MarketStateTracker",
    "MarketMetadataCache",
    "derive_market_state",
    "PortfolioTracker",
    "BalanceSnapshot",
    "EngineStats",
    "EngineStore",
    "JsonEngineStore",
]
