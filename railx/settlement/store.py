"""
Settlement persistence.

TradeStore   - TradeRequest table keyed by id; status moves only forward
PacketStore  - published encrypted packets, addressable by a public locator
"""

import os
import re
import json
import time
import logging
import threading
from typing import Optional, Dict, List, Any

import httpx

from ..core import TradeRequest, TradeStatus, TERMINAL_STATUSES, normalize_address
from ..errors import TradeStateError, TradeNotFound, DecryptionFailed, ValidationError
from ..events import ChangeFeed
from ..storage import JsonStore
from ..compliance.channel import EncryptedPacket

log = logging.getLogger(__name__)

# Seconds an approval claim holds a trade
CLAIM_TTL = 300

# Allowed forward moves
TRANSITIONS = {
    TradeStatus.QUOTED: (TradeStatus.WAITING_RECIPIENT, TradeStatus.EXECUTED, TradeStatus.FAILED),
    TradeStatus.WAITING_RECIPIENT: (TradeStatus.EXECUTED, TradeStatus.FAILED),
    TradeStatus.EXECUTED: (),
    TradeStatus.FAILED: (),
}


class TradeStore:
    """TradeRequest repository with compare-and-set transitions."""

    def __init__(self, store: JsonStore = None, feed: ChangeFeed = None):
        self._store = store or JsonStore()
        self.feed = feed
        self._lock = self._store.lock
        self._in_flight: Dict[str, float] = {}

    def _emit(self, trade: TradeRequest):
        if self.feed:
            self.feed.emit("trade", trade)

    def create(self, trade: TradeRequest) -> TradeRequest:
        """
        Insert a new record. Ids are never reused.

        Raises:
            TradeStateError: a record with this id already exists
        """
        if trade.status == TradeStatus.QUOTED:
            raise ValidationError("QUOTED trades are not persisted")
        with self._lock:
            existing = self._store.get(trade.id)
            if existing is not None:
                raise TradeStateError(trade.id, existing["status"], f"Trade {trade.id} already exists")
            trade.updated_at = int(time.time())
            self._store.put(trade.id, trade.to_dict())
        log.info(f"Trade {trade.id[:10]}... created: {trade.status.value}")
        self._emit(trade)
        return trade

    def get(self, trade_id: str) -> Optional[TradeRequest]:
        record = self._store.get(trade_id)
        return TradeRequest.from_dict(record) if record else None

    def load(self, trade_id: str) -> TradeRequest:
        trade = self.get(trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade not found: {trade_id}")
        return trade

    def exists(self, trade_id: str) -> bool:
        return trade_id in self._store

    def transition(self, trade_id: str, expected: TradeStatus, new: TradeStatus,
                   **fields) -> TradeRequest:
        """
        Move a record from expected to new, updating extra fields.

        Raises:
            TradeNotFound: unknown id
            TradeStateError: record is terminal, not in expected, or the
                move is not forward
        """
        with self._lock:
            record = self._store.get(trade_id)
            if record is None:
                raise TradeNotFound(f"Trade not found: {trade_id}")
            current = TradeStatus(record["status"])
            if current in TERMINAL_STATUSES:
                raise TradeStateError(trade_id, current.value)
            if current != expected:
                raise TradeStateError(
                    trade_id, current.value, f"Trade {trade_id} is {current.value}, expected {expected.value}"
                )
            if new not in TRANSITIONS[current]:
                raise TradeStateError(
                    trade_id, current.value, f"Cannot move {current.value} -> {new.value}"
                )

            trade = TradeRequest.from_dict(record)
            trade.status = new
            for name, value in fields.items():
                if not hasattr(trade, name) or name in ("id", "status"):
                    raise ValidationError(f"Unknown trade field: {name}")
                setattr(trade, name, value)
            trade.updated_at = int(time.time())
            self._store.put(trade_id, trade.to_dict())

        log.info(f"Trade {trade_id[:10]}... {current.value} -> {new.value}")
        self._emit(trade)
        return trade

    def annotate(self, trade_id: str, **fields) -> TradeRequest:
        """Update bookkeeping fields of a pending record without moving it."""
        with self._lock:
            trade = self.load(trade_id)
            if trade.is_terminal:
                raise TradeStateError(trade_id, trade.status.value)
            for name, value in fields.items():
                if name not in ("record_tx_hash", "last_error"):
                    raise ValidationError(f"Field not annotatable: {name}")
                setattr(trade, name, value)
            trade.updated_at = int(time.time())
            self._store.put(trade_id, trade.to_dict())
        return trade

    def claim(self, trade_id: str, ttl: float = CLAIM_TTL) -> bool:
        """
        Mark a trade as being settled; False if another caller holds it.

        A claim lapses after ttl seconds so a dead session cannot block the
        trade for good.
        """
        now = time.time()
        with self._lock:
            expires = self._in_flight.get(trade_id)
            if expires is not None and expires > now:
                return False
            self._in_flight[trade_id] = now + ttl
            return True

    def release(self, trade_id: str):
        with self._lock:
            self._in_flight.pop(trade_id, None)

    def list_trades(self, sender: Optional[str] = None, recipient: Optional[str] = None,
                    status: Optional[TradeStatus] = None) -> List[TradeRequest]:
        sender = normalize_address(sender) if sender else None
        recipient = normalize_address(recipient) if recipient else None
        trades = []
        for record in self._store.values():
            if sender and record["sender_id"] != sender:
                continue
            if recipient and record["recipient_id"] != recipient:
                continue
            if status and record["status"] != status.value:
                continue
            trades.append(TradeRequest.from_dict(record))
        trades.sort(key=lambda t: (t.created_at, t.id))
        return trades

    def pending_for(self, recipient: str) -> List[TradeRequest]:
        """WAITING_RECIPIENT trades addressed to recipient."""
        return self.list_trades(recipient=recipient, status=TradeStatus.WAITING_RECIPIENT)


# =============================================================================
# Packets
# =============================================================================

_PACKET_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*\.json$")


class PacketUnavailable(DecryptionFailed):
    """Packet locator could not be read."""


class PacketStore:
    """
    Public, opaque packet storage.

    Packets are written as <unix-ms>_<sender>.json under a directory served
    at base_url. Foreign locators are fetched over HTTP.
    """

    def __init__(self, directory: str, base_url: str, client: httpx.Client = None):
        self.directory = os.path.expanduser(directory)
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._lock = threading.Lock()
        os.makedirs(self.directory, exist_ok=True)

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=10.0)
        return self._client

    @staticmethod
    def check_name(name: str) -> str:
        if not _PACKET_NAME.match(name or "") or ".." in name:
            raise ValidationError(f"Invalid packet name: {name}")
        return name

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, self.check_name(name))

    def locator(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    def publish(self, packet: EncryptedPacket, sender: str) -> str:
        """Write the packet and return its public locator."""
        sender = normalize_address(sender)
        with self._lock:
            stamp = int(time.time() * 1000)
            name = f"{stamp}_{sender}.json"
            while os.path.exists(self._path(name)):
                stamp += 1
                name = f"{stamp}_{sender}.json"
            with open(self._path(name), "w") as f:
                json.dump(packet.to_dict(), f)
        log.info(f"Packet published: {name}")
        return self.locator(name)

    def read(self, name: str) -> Dict[str, Any]:
        path = self._path(name)
        if not os.path.exists(path):
            raise PacketUnavailable(f"Packet not found: {name}")
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PacketUnavailable(f"Packet unreadable: {name}: {e}") from e

    def fetch(self, locator: str) -> Dict[str, Any]:
        """Packet dict behind a locator (local file or HTTP GET)."""
        prefix = self.base_url + "/"
        if locator.startswith(prefix):
            return self.read(locator[len(prefix):])
        try:
            response = self.client.get(locator)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PacketUnavailable(f"Packet fetch failed: {e}") from e
