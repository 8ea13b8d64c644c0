"""
Background polling loops.

TradeWatcher  - new WAITING_RECIPIENT trades for one recipient (every few
                seconds)
MarketWatcher - oracle rates behind ORACLE_RELATIVE strategies (every
                second); a moved rate is emitted as an "oracle" change so
                cached order books are dropped

Both run in a daemon thread, stop via an Event and are joined on stop().
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Set, Callable, Optional

from ..core import PricingMode, TradeRequest, pair_key
from ..liquidity.oracle import OracleFeed
from ..liquidity.registry import LiquidityRegistry
from .store import TradeStore

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    trade_poll_interval: float = 5.0     # seconds
    oracle_poll_interval: float = 1.0    # seconds
    join_timeout: float = 5.0


class _PollingThread:
    """start/stop/join scaffolding shared by both watchers."""

    name = "watcher"

    def __init__(self, interval: float, join_timeout: float):
        self.interval = interval
        self.join_timeout = join_timeout
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start watcher in background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        log.info(f"{self.name} started")

    def stop(self):
        """Stop watcher and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.join_timeout)
            self._thread = None
        log.info(f"{self.name} stopped")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                log.error(f"{self.name} error: {e}")
            self._stop_event.wait(self.interval)

    def poll_once(self):
        raise NotImplementedError


class TradeWatcher(_PollingThread):
    """Calls on_new_trade once for each pending trade addressed to recipient."""

    name = "trade-watcher"

    def __init__(self, trades: TradeStore, recipient: str,
                 on_new_trade: Callable[[TradeRequest], None],
                 config: WatcherConfig = None):
        config = config or WatcherConfig()
        super().__init__(config.trade_poll_interval, config.join_timeout)
        self.trades = trades
        self.recipient = recipient
        self.on_new_trade = on_new_trade
        self._seen: Set[str] = set()

    def poll_once(self):
        pending = self.trades.pending_for(self.recipient)
        current = {trade.id for trade in pending}
        for trade in pending:
            if trade.id in self._seen:
                continue
            self._seen.add(trade.id)
            log.info(f"New pending trade {trade.id[:10]}... for {self.recipient[:10]}...")
            self.on_new_trade(trade)
        # forget trades that left WAITING_RECIPIENT
        self._seen &= current


class MarketWatcher(_PollingThread):
    """Re-reads oracle rates for every pair an ORACLE_RELATIVE strategy uses."""

    name = "market-watcher"

    def __init__(self, registry: LiquidityRegistry, oracle: OracleFeed,
                 config: WatcherConfig = None):
        config = config or WatcherConfig()
        super().__init__(config.oracle_poll_interval, config.join_timeout)
        self.registry = registry
        self.oracle = oracle
        self.rates: Dict[str, float] = {}

    def tracked_pairs(self) -> Set[str]:
        return {
            pair_key(s.to_asset, s.from_asset)
            for s in self.registry.list_strategies()
            if s.active and s.pricing_mode == PricingMode.ORACLE_RELATIVE
        }

    def poll_once(self):
        for pair in sorted(self.tracked_pairs()):
            rate = self.oracle.rate(pair)
            if self.rates.get(pair) == rate:
                continue
            self.rates[pair] = rate
            self.registry.feed.emit("oracle", pair, rate)
