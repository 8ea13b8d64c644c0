"""
Settlement: trade records, published packets, the approval state machine
and its polling loops.
"""

from .store import TradeStore, PacketStore, PacketUnavailable
from .workflow import SettlementWorkflow, ApprovalResult, new_trade_id
from .watcher import TradeWatcher, MarketWatcher, WatcherConfig

__all__ = [
    "TradeStore",
    "PacketStore",
    "PacketUnavailable",
    "SettlementWorkflow",
    "ApprovalResult",
    "new_trade_id",
    "TradeWatcher",
    "MarketWatcher",
    "WatcherConfig",
]
