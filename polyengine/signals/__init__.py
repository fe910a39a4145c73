"""Trade signal sources: tracked-wallet monitor and momentum sniper."""
from .momentum import MomentumMove, MomentumSniper, Snipe
from .signal_monitor import SignalMonitor

__all__ = ["SignalMonitor", "MomentumSniper", "MomentumMove", "Snipe"]
