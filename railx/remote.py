"""
HTTP repositories for sessions that share one RailX server.

Each class mirrors the in-process repository the workflow and desk already
use, so a sender, a recipient and an LP in separate processes see the same
strategies, identities, packets and trade records:

    RemoteQuotes       - QuoteEngine.quote          (GET  /api/quote)
    RemoteRegistry     - LiquidityRegistry writes   (POST /api/lp/...)
    RemoteKeyStore     - KeyStore                   (/api/identity)
    RemotePacketStore  - PacketStore                (/api/packets)
    RemoteTradeStore   - TradeStore                 (/api/trades)

Writes are signed with the session's wallet key (see action_message()).
"""

import time
import logging
from typing import Optional, Dict, List, Any, Callable

import httpx
from eth_account import Account
from cryptography.hazmat.primitives.asymmetric import rsa

from .core import (
    LiquidityStrategy,
    PricingMode,
    QuoteResult,
    TradeRequest,
    TradeStatus,
    normalize_address,
)
from .errors import (
    RailXError,
    ValidationError,
    Unauthorized,
    TradeNotFound,
    TradeStateError,
    UnknownIdentity,
)
from .compliance.channel import EncryptedPacket, import_public_key
from .compliance.identity import UserIdentity, sign_action
from .settlement.store import PacketUnavailable

log = logging.getLogger(__name__)

ErrorMap = Dict[int, Callable[[str], Exception]]

DEFAULT_ERRORS: ErrorMap = {
    400: ValidationError,
    403: Unauthorized,
}


class RailXClient:
    """
    Connection to a RailX server for one wallet session.

    The wallet key signs writes locally and is never sent.
    """

    def __init__(self, base_url: str, private_key: Optional[str] = None,
                 client: httpx.Client = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._private_key = None
        self._address = None
        if private_key:
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            self._private_key = private_key
            self._address = Account.from_key(private_key).address.lower()

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    @property
    def address(self) -> Optional[str]:
        return self._address

    def close(self):
        if self._client is not None:
            self._client.close()

    def signed(self, action: str, body: Dict[str, Any], **bound) -> Dict[str, Any]:
        """body plus issued_at and a signature over body + bound fields."""
        if self._private_key is None:
            raise ValidationError(f"{action} needs a wallet key")
        body = dict(body, issued_at=int(time.time()))
        body["signature"] = sign_action(self._private_key, action, dict(body, **bound))
        return body

    def request(self, method: str, path: str, errors: ErrorMap = None, **kwargs) -> Any:
        """
        JSON call against the server.

        Raises:
            the mapped RailXError for known status codes, RailXError otherwise
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RailXError(f"{method} {url} failed: {e}") from e

        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise RailXError(f"{method} {url}: invalid JSON") from e

        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError):
            detail = response.text
        mapping = dict(DEFAULT_ERRORS)
        mapping.update(errors or {})
        factory = mapping.get(response.status_code)
        if factory is not None:
            raise factory(str(detail))
        raise RailXError(f"{method} {url}: HTTP {response.status_code}: {detail}")


# =============================================================================
# Liquidity
# =============================================================================

class RemoteQuotes:
    """Quotes priced by the server's engine."""

    def __init__(self, api: RailXClient):
        self.api = api

    def quote(self, from_asset: str, to_asset: str, send_amount: Any) -> QuoteResult:
        data = self.api.request("GET", "/api/quote", params={
            "from": from_asset, "to": to_asset, "amount": str(send_amount),
        })
        return QuoteResult.from_dict(data)


class RemoteRegistry:
    """LP-side registry writes; only the session's own strategies."""

    def __init__(self, api: RailXClient):
        self.api = api

    def _own(self, owner: str) -> str:
        owner = normalize_address(owner)
        if owner != self.api.address:
            raise ValidationError("Strategies can only be written by their owner")
        return owner

    def upsert_strategy(self, owner: str, from_asset: str, to_asset: str, min_rate: Any,
                        max_rate: Any, mode: PricingMode = PricingMode.FIXED_BAND,
                        spread_bps: int = 0, active: bool = None) -> LiquidityStrategy:
        body = {
            "owner": self._own(owner),
            "from_asset": from_asset,
            "to_asset": to_asset,
            "min_rate": str(min_rate),
            "max_rate": str(max_rate),
            "pricing_mode": PricingMode(mode).value,
            "oracle_spread_bps": int(spread_bps),
        }
        if active is not None:
            body["active"] = bool(active)
        data = self.api.request("POST", "/api/lp/strategy",
                                json=self.api.signed("lp.strategy", body))
        return LiquidityStrategy.from_dict(data)

    def set_active(self, owner: str, from_asset: str, to_asset: str, active: bool) -> LiquidityStrategy:
        body = {"owner": self._own(owner), "from_asset": from_asset,
                "to_asset": to_asset, "active": bool(active)}
        data = self.api.request("POST", "/api/lp/strategy/active",
                                json=self.api.signed("lp.strategy.active", body),
                                errors={404: ValidationError})
        return LiquidityStrategy.from_dict(data)

    def delete_strategy(self, owner: str, from_asset: str, to_asset: str) -> bool:
        params = {"owner": self._own(owner), "from": from_asset, "to": to_asset}
        try:
            self.api.request("DELETE", "/api/lp/strategy",
                             params=self.api.signed("lp.strategy.delete", params),
                             errors={404: LookupError})
        except LookupError:
            return False
        return True

    def set_available_quantity(self, owner: str, to_asset: str, quantity: Any) -> int:
        body = {"owner": self._own(owner), "asset": to_asset, "quantity": str(quantity)}
        data = self.api.request("POST", "/api/lp/quantity",
                                json=self.api.signed("lp.quantity", body))
        return int(data["strategies_updated"])

    def get(self, owner: str, from_asset: str, to_asset: str) -> Optional[LiquidityStrategy]:
        owner = normalize_address(owner)
        data = self.api.request("GET", "/api/lp/strategies", params={"owner": owner})
        for record in data["strategies"]:
            if record["from_asset"] == from_asset and record["to_asset"] == to_asset:
                return LiquidityStrategy.from_dict(record)
        return None

    def list_strategies(self, owner: Optional[str] = None) -> List[LiquidityStrategy]:
        params = {"owner": normalize_address(owner)} if owner else None
        data = self.api.request("GET", "/api/lp/strategies", params=params)
        return [LiquidityStrategy.from_dict(s) for s in data["strategies"]]


# =============================================================================
# Identity and packets
# =============================================================================

class RemoteKeyStore:
    """Identity directory on the server."""

    def __init__(self, api: RailXClient):
        self.api = api

    def store(self, identity: UserIdentity, signature: str = ""):
        body = identity.to_dict()
        body.pop("created_at")
        body["signature"] = signature
        self.api.request("POST", "/api/identity", json=body)

    def load(self, principal_id: str) -> UserIdentity:
        principal_id = normalize_address(principal_id)
        data = self.api.request("GET", f"/api/identity/{principal_id}",
                                errors={404: UnknownIdentity})
        return UserIdentity.from_dict(data)

    def get(self, principal_id: str) -> Optional[UserIdentity]:
        try:
            return self.load(principal_id)
        except UnknownIdentity:
            return None

    def public_key(self, principal_id: str) -> rsa.RSAPublicKey:
        return import_public_key(self.load(principal_id).public_key_pem)


class RemotePacketStore:
    """Packets published through the server, fetched by locator."""

    def __init__(self, api: RailXClient):
        self.api = api

    def publish(self, packet: EncryptedPacket, sender: str) -> str:
        data = self.api.request("POST", "/api/packets", json={
            "sender": normalize_address(sender), "packet": packet.to_dict(),
        })
        return data["locator"]

    def fetch(self, locator: str) -> Dict[str, Any]:
        try:
            return self.api.request("GET", locator)
        except RailXError as e:
            raise PacketUnavailable(f"Packet fetch failed: {e}") from e


# =============================================================================
# Trades
# =============================================================================

class RemoteTradeStore:
    """TradeRequest table on the server, with the server-side approval lease."""

    def __init__(self, api: RailXClient):
        self.api = api

    def _errors(self, trade_id: str) -> ErrorMap:
        return {
            404: TradeNotFound,
            409: lambda detail: TradeStateError(trade_id, "", detail),
        }

    def create(self, trade: TradeRequest) -> TradeRequest:
        body = trade.to_dict()
        for name in ("created_at", "updated_at"):
            body.pop(name, None)
        data = self.api.request("POST", "/api/trades",
                                json=self.api.signed("trade.create", body),
                                errors=self._errors(trade.id))
        return TradeRequest.from_dict(data)

    def load(self, trade_id: str) -> TradeRequest:
        data = self.api.request("GET", f"/api/trades/{trade_id}", errors=self._errors(trade_id))
        return TradeRequest.from_dict(data)

    def get(self, trade_id: str) -> Optional[TradeRequest]:
        try:
            return self.load(trade_id)
        except TradeNotFound:
            return None

    def transition(self, trade_id: str, expected: TradeStatus, new: TradeStatus,
                   **fields) -> TradeRequest:
        body = {"expected": expected.value, "status": new.value}
        body.update(fields)
        data = self.api.request("POST", f"/api/trades/{trade_id}/status",
                                json=self.api.signed("trade.status", body, trade_id=trade_id),
                                errors=self._errors(trade_id))
        return TradeRequest.from_dict(data)

    def annotate(self, trade_id: str, **fields) -> TradeRequest:
        data = self.api.request("POST", f"/api/trades/{trade_id}/annotate",
                                json=self.api.signed("trade.annotate", fields, trade_id=trade_id),
                                errors=self._errors(trade_id))
        return TradeRequest.from_dict(data)

    def claim(self, trade_id: str) -> bool:
        try:
            self.api.request("POST", f"/api/trades/{trade_id}/claim",
                             json=self.api.signed("trade.claim", {}, trade_id=trade_id),
                             errors=self._errors(trade_id))
        except TradeStateError:
            return False
        return True

    def release(self, trade_id: str):
        self.api.request("POST", f"/api/trades/{trade_id}/release",
                         json=self.api.signed("trade.release", {}, trade_id=trade_id),
                         errors=self._errors(trade_id))

    def list_trades(self, sender: Optional[str] = None, recipient: Optional[str] = None,
                    status: Optional[TradeStatus] = None) -> List[TradeRequest]:
        params = {}
        if sender:
            params["sender"] = normalize_address(sender)
        if recipient:
            params["recipient"] = normalize_address(recipient)
        if status:
            params["status"] = status.value
        data = self.api.request("GET", "/api/trades", params=params)
        return [TradeRequest.from_dict(t) for t in data["trades"]]

    def pending_for(self, recipient: str) -> List[TradeRequest]:
        return self.list_trades(recipient=recipient, status=TradeStatus.WAITING_RECIPIENT)
