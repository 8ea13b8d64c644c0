"""
Change-notification channel.

Repositories and the market watcher emit here; read models (order book,
cached quotes) subscribe and drop their caches.

Events:
- strategy: (strategy)         upsert / activate / delete
- quantity: (owner, to_asset)  custody balance applied
- oracle:   (pair, rate)       reference rate moved
- trade:    (trade)            TradeRequest created or transitioned
"""

import logging
import threading
from typing import Callable, Dict, List

log = logging.getLogger(__name__)

EVENTS = ("strategy", "quantity", "oracle", "trade")


class ChangeFeed:
    """Handler registry with a monotonically increasing version counter."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {name: [] for name in EVENTS}
        self._lock = threading.Lock()
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def on(self, event: str, handler: Callable):
        """Register event handler."""
        if event not in self._handlers:
            raise ValueError(f"Unknown event: {event}")
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        with self._lock:
            if event in self._handlers and handler in self._handlers[event]:
                self._handlers[event].remove(handler)

    def emit(self, event: str, *args):
        """Bump the version and call handlers; a failing handler is logged."""
        with self._lock:
            self._version += 1
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")
