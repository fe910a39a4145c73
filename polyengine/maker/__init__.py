"""
Liquidity provision module for Polymarket.

This module provides tools for:
- Market discovery and spread tracking (MarketMakingScanner)
- Skewed two-sided quoting (QuoteManager)
- Per-token inventory and skew (InventoryTracker)
"""

from .inventory import InventoryTracker, TokenInventory
from .models import MarketOpportunity, Quote, QuoteStatus
from .quote_manager import QuoteManager
from .scanner import MarketMakingScanner, ScannerConfig

__all__ = [
    # Scanner
    "MarketMakingScanner",
    "ScannerConfig",
    "MarketOpportunity",
    # Quoting
    "QuoteManager",
    "Quote",
    "QuoteStatus",
    # Inventory
    "InventoryTracker",
    "TokenInventory",
]
