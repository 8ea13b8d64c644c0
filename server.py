#!/usr/bin/env python3
"""
RailX Server
Liquidity quoting and compliance-gated settlement coordination.

Holds the shared read models (LP strategies, quotes, identity directory,
published packets, trade records). Wallet keys never reach the server:
transfers, swaps and approvals run in the client session that owns the
signer, using the railx SDK (railx.remote) against these endpoints.

Every write to a strategy, a quantity or a trade record carries a wallet
signature over railx.compliance.identity.action_message() plus issued_at.

Endpoints:
  GET    /api/status                 - Health check
  GET    /api/assets                 - Supported assets and pairs
  GET    /api/quote                  - Best single-LP quote
  GET    /api/orderbook              - Ask ladder for a pair
  GET    /api/rates                  - Reference oracle rates

  POST   /api/lp/strategy            - Upsert LP strategy        (owner signs)
  DELETE /api/lp/strategy            - Delete LP strategy        (owner signs)
  POST   /api/lp/strategy/active     - Toggle strategy           (owner signs)
  POST   /api/lp/quantity            - Apply custody balance     (owner signs)
  GET    /api/lp/strategies          - List strategies

  POST   /api/identity               - Register public key + sealed key
  GET    /api/identity/{principal}   - Public key / sealed key lookup

  POST   /api/packets                - Publish encrypted packet
  GET    /api/packets/{name}         - Fetch encrypted packet

  POST   /api/trades                 - Register trade record     (sender signs)
  POST   /api/trades/{id}/status     - Compare-and-set transition
  POST   /api/trades/{id}/annotate   - Bookkeeping fields        (sender signs)
  POST   /api/trades/{id}/claim      - Take the approval lease   (recipient signs)
  POST   /api/trades/{id}/release    - Drop the approval lease   (recipient signs)
  GET    /api/trades                 - List trades
  GET    /api/trades/{id}            - Trade detail
"""

import os
import time
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from railx.core import (
    ASSETS,
    DIRECT_LP,
    TERMINAL_STATUSES,
    PricingMode,
    TradeRequest,
    TradeStatus,
    UserType,
    normalize_address,
)
from railx.errors import (
    RailXError,
    ValidationError,
    UnknownIdentity,
    TradeNotFound,
    LiquidityError,
    TradeStateError,
    CryptoError,
    Unauthorized,
)
from railx.events import ChangeFeed
from railx.storage import JsonStore
from railx.chains.evm import EVMClient, EVMConfig
from railx.liquidity.registry import LiquidityRegistry
from railx.liquidity.oracle import MockOracle, HttpOracle, OracleConfig
from railx.liquidity.quote import QuoteEngine
from railx.compliance.identity import KeyStore, IdentityService, UserIdentity, check_action
from railx.compliance.channel import EncryptedPacket
from railx.settlement.store import TradeStore, PacketStore, PacketUnavailable
from railx.settlement.watcher import MarketWatcher, WatcherConfig
from routes import oracle as oracle_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

DATA_DIR = os.path.expanduser(os.environ.get("RAILX_DATA_DIR", "~/.railx"))
PACKET_BASE_URL = os.environ.get("RAILX_PACKET_BASE_URL", "http://localhost:8080/api/packets")
ORACLE_URL = os.environ.get("RAILX_ORACLE_URL", "")
ORACLE_JSON_PATH = os.environ.get("RAILX_ORACLE_JSON_PATH", "rate")
VERIFY_SIGNATURES = os.environ.get("RAILX_VERIFY_SIGNATURES", "1") != "0"
# Read-only chain access: vault balances and swap receipts
RPC_URL = os.environ.get("RAILX_RPC_URL", "")


@dataclass
class Engine:
    """Repositories and read models, constructed once per process."""
    feed: ChangeFeed
    registry: LiquidityRegistry
    oracle: Any
    quotes: QuoteEngine
    trades: TradeStore
    packets: PacketStore
    keystore: KeyStore
    identities: IdentityService
    market_watcher: MarketWatcher
    chain: Optional[Any] = None


def build_engine(data_dir: str = DATA_DIR, packet_base_url: str = PACKET_BASE_URL,
                 oracle_url: str = ORACLE_URL, verify_signatures: bool = VERIFY_SIGNATURES,
                 chain: Any = None) -> Engine:
    feed = ChangeFeed()
    registry = LiquidityRegistry(
        store=JsonStore(os.path.join(data_dir, "strategies.json")),
        balance_store=JsonStore(os.path.join(data_dir, "balances.json")),
        feed=feed,
    )
    if oracle_url:
        oracle = HttpOracle(OracleConfig(url_template=oracle_url, json_path=ORACLE_JSON_PATH))
    else:
        oracle = MockOracle()
    if chain is None and RPC_URL:
        # no private key: the server only reads
        chain = EVMClient(EVMConfig.from_env())
    keystore = KeyStore(JsonStore(os.path.join(data_dir, "identities.json")))
    return Engine(
        feed=feed,
        registry=registry,
        oracle=oracle,
        quotes=QuoteEngine(registry, oracle),
        trades=TradeStore(JsonStore(os.path.join(data_dir, "trades.json")), feed=feed),
        packets=PacketStore(os.path.join(data_dir, "packets"), packet_base_url),
        keystore=keystore,
        identities=IdentityService(keystore, verify_signatures=verify_signatures),
        market_watcher=MarketWatcher(registry, oracle, WatcherConfig()),
        chain=chain,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
        oracle_routes.configure(lambda: _engine.oracle)
    return _engine


def reset_engine(**kwargs) -> Engine:
    """Rebuild the engine (tests point it at a temp directory)."""
    global _engine
    if _engine is not None:
        _engine.market_watcher.stop()
    _engine = build_engine(**kwargs)
    oracle_routes.configure(lambda: _engine.oracle)
    return _engine


def _http_error(e: RailXError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(e, Unauthorized):
        return HTTPException(403, str(e))
    if isinstance(e, (TradeNotFound, UnknownIdentity, PacketUnavailable)):
        return HTTPException(404, str(e))
    if isinstance(e, (LiquidityError, TradeStateError)):
        return HTTPException(409, str(e))
    if isinstance(e, (ValidationError, CryptoError)):
        return HTTPException(400, str(e))
    return HTTPException(500, str(e))


def _authorize(signers, action: str, req: "SignedRequest", **bound) -> str:
    """Check req.signature over the fields the caller actually sent."""
    fields = req.model_dump(mode="json", exclude={"signature"}, exclude_unset=True)
    fields.update(bound)
    return check_action(signers, action, fields, req.signature)


def _require_receipt(engine: Engine, tx_hash: Optional[str]):
    """EXECUTED needs a tx hash, mined successfully when a chain is attached."""
    if not tx_hash:
        raise ValidationError("tx_hash required for EXECUTED")
    if engine.chain is not None and not engine.chain.tx_succeeded(tx_hash):
        raise ValidationError(f"Transaction {tx_hash} is not a successful receipt")

# =============================================================================
# MODELS
# =============================================================================

class QuoteResponse(BaseModel):
    from_asset: str
    to_asset: str
    send_amount: str
    receive_amount: Optional[str] = None
    effective_rate: Optional[str] = None     # fromAsset per 1 toAsset
    utilization: Optional[str] = None
    lp_owner: Optional[str] = None
    matched_lp_id: Optional[str] = None
    rejection: Optional[str] = None          # NO_LIQUIDITY | CAPACITY_EXCEEDED
    candidates: List[Dict[str, Any]] = []
    quoted_at: int

class SignedRequest(BaseModel):
    issued_at: int = 0                       # unix seconds, signed
    signature: str = ""

class StrategyRequest(SignedRequest):
    owner: str = Field(..., example="0x...")
    from_asset: str = Field(..., example="KRWK")
    to_asset: str = Field(..., example="USDC")
    min_rate: str = Field(..., example="1340")
    max_rate: str = Field(..., example="1360")
    pricing_mode: PricingMode = PricingMode.FIXED_BAND
    oracle_spread_bps: int = Field(0, ge=0)
    active: Optional[bool] = None

class StrategyActiveRequest(SignedRequest):
    owner: str
    from_asset: str
    to_asset: str
    active: bool

class QuantityRequest(SignedRequest):
    owner: str
    asset: str
    quantity: Optional[str] = Field(None, example="50000")   # ignored when a chain is attached

class IdentityRequest(BaseModel):
    principal_id: str
    public_key_pem: str
    sealed_private_key: str
    signature: str = ""                      # unlock-challenge signature
    user_type: UserType = UserType.INDIVIDUAL
    kyc_data: Dict[str, Any] = {}
    settings: Dict[str, Any] = {}

class PacketPublishRequest(BaseModel):
    sender: str
    packet: Dict[str, Any]

class TradeCreateRequest(SignedRequest):
    id: str
    sender_id: str
    recipient_id: str
    matched_lp_id: str
    from_asset: str
    to_asset: str
    send_amount: str
    receive_amount: str
    applied_rate: str
    status: TradeStatus = TradeStatus.WAITING_RECIPIENT
    encrypted_packet_ref: str
    tx_hash: Optional[str] = None
    record_tx_hash: Optional[str] = None
    last_error: Optional[str] = None

class TradeTransitionRequest(SignedRequest):
    expected: TradeStatus = TradeStatus.WAITING_RECIPIENT
    status: TradeStatus
    tx_hash: Optional[str] = None
    record_tx_hash: Optional[str] = None
    last_error: Optional[str] = None

class TradeAnnotateRequest(SignedRequest):
    record_tx_hash: Optional[str] = None
    last_error: Optional[str] = None

class TradeLeaseRequest(SignedRequest):
    pass

# =============================================================================
# APP SETUP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine, run the market watcher, close clients on exit."""
    engine = get_engine()
    engine.market_watcher.start()
    log.info(f"RailX engine ready (data: {DATA_DIR})")
    yield
    engine = get_engine()
    engine.market_watcher.stop()
    if isinstance(engine.oracle, HttpOracle):
        engine.oracle.close()
    log.info("RailX engine stopped")


app = FastAPI(
    title="RailX",
    description="Liquidity quoting and compliance-gated settlement API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(oracle_routes.router)

# =============================================================================
# ENDPOINTS
# =============================================================================
# Handlers that touch the engine are plain `def`: the oracle and the JSON
# stores block, so FastAPI runs them in its threadpool.

@app.get("/api/status")
def get_status():
    """Health check."""
    engine = get_engine()
    trades = engine.trades.list_trades()
    return {
        "status": "ok",
        "version": "0.1.0",
        "timestamp": int(time.time()),
        "strategies_total": len(engine.registry.list_strategies()),
        "trades_pending": len([t for t in trades if t.status == TradeStatus.WAITING_RECIPIENT]),
        "trades_total": len(trades),
        "identities_total": len(engine.keystore.list_principals()),
        "market_watcher": engine.market_watcher.running,
        "chain_attached": engine.chain is not None,
    }

@app.get("/api/assets")
async def get_assets():
    """List supported assets and pairs."""
    pairs = []
    symbols = list(ASSETS.keys())
    for i, a in enumerate(symbols):
        for b in symbols[i+1:]:
            pairs.append({"from": a, "to": b})
            pairs.append({"from": b, "to": a})

    return {
        "assets": ASSETS,
        "pairs": pairs,
    }

@app.get("/api/quote", response_model=QuoteResponse)
def get_quote(
    from_asset: str = Query(..., alias="from"),
    to_asset: str = Query(..., alias="to"),
    amount: str = Query(...),
):
    """
    Best single-LP quote for sending `amount` of `from`.

    Same-asset requests return a 1:1 direct quote. An unfillable request
    returns 200 with `rejection` set, since it is a result, not an error.
    """
    try:
        result = get_engine().quotes.quote(from_asset, to_asset, amount)
    except RailXError as e:
        raise _http_error(e)
    return result.to_dict()

@app.get("/api/orderbook")
def get_orderbook(
    from_asset: str = Query(..., alias="from"),
    to_asset: str = Query(..., alias="to"),
):
    """Ask ladder (highest price first) for an ordered pair."""
    if from_asset not in ASSETS:
        raise HTTPException(400, f"Unknown asset: {from_asset}")
    if to_asset not in ASSETS:
        raise HTTPException(400, f"Unknown asset: {to_asset}")
    return {
        "from": from_asset,
        "to": to_asset,
        "asks": get_engine().quotes.order_book(from_asset, to_asset),
        "timestamp": int(time.time()),
    }

# -----------------------------------------------------------------------------
# LP strategies
# -----------------------------------------------------------------------------

@app.post("/api/lp/strategy")
def upsert_strategy(req: StrategyRequest):
    """Create or replace an LP's strategy for an ordered pair."""
    try:
        _authorize(req.owner, "lp.strategy", req)
        strategy = get_engine().registry.upsert_strategy(
            req.owner, req.from_asset, req.to_asset, req.min_rate, req.max_rate,
            mode=req.pricing_mode, spread_bps=req.oracle_spread_bps, active=req.active,
        )
    except RailXError as e:
        raise _http_error(e)
    return strategy.to_dict()

@app.delete("/api/lp/strategy")
def delete_strategy(
    owner: str,
    from_asset: str = Query(..., alias="from"),
    to_asset: str = Query(..., alias="to"),
    issued_at: int = 0,
    signature: str = "",
):
    fields = {"owner": owner, "from": from_asset, "to": to_asset, "issued_at": issued_at}
    try:
        check_action(owner, "lp.strategy.delete", fields, signature)
        deleted = get_engine().registry.delete_strategy(owner, from_asset, to_asset)
    except RailXError as e:
        raise _http_error(e)
    if not deleted:
        raise HTTPException(404, "Strategy not found")
    return {"deleted": True}

@app.post("/api/lp/strategy/active")
def set_strategy_active(req: StrategyActiveRequest):
    try:
        _authorize(req.owner, "lp.strategy.active", req)
        strategy = get_engine().registry.set_active(req.owner, req.from_asset, req.to_asset, req.active)
    except RailXError as e:
        raise _http_error(e)
    return strategy.to_dict()

@app.post("/api/lp/quantity")
def set_quantity(req: QuantityRequest):
    """
    Apply an LP's custody balance (after deposit/withdraw).

    With a chain attached the vault's lpBalances is read here and the
    quantity in the body is ignored.
    """
    engine = get_engine()
    try:
        _authorize(req.owner, "lp.quantity", req)
        if engine.chain is not None:
            quantity = engine.chain.lp_balance(normalize_address(req.owner), req.asset)
        elif req.quantity is None:
            raise ValidationError("quantity required")
        else:
            quantity = req.quantity
        updated = engine.registry.set_available_quantity(req.owner, req.asset, quantity)
    except RailXError as e:
        raise _http_error(e)
    return {"owner": normalize_address(req.owner), "asset": req.asset,
            "quantity": str(quantity), "strategies_updated": updated}

@app.get("/api/lp/strategies")
def list_strategies(owner: Optional[str] = None):
    strategies = get_engine().registry.list_strategies(owner)
    return {"strategies": [s.to_dict() for s in strategies]}

# -----------------------------------------------------------------------------
# Identity directory
# -----------------------------------------------------------------------------

@app.post("/api/identity")
def register_identity(req: IdentityRequest):
    """
    Register a client-generated keypair.

    The private key arrives sealed under the wallet-derived storage key; the
    signature proves control of the principal's wallet.
    """
    try:
        identity = UserIdentity(
            principal_id=normalize_address(req.principal_id),
            public_key_pem=req.public_key_pem,
            sealed_private_key=req.sealed_private_key,
            user_type=req.user_type,
            kyc_data=req.kyc_data,
            settings=req.settings,
            created_at=int(time.time()),
        )
        get_engine().identities.register_public(identity, req.signature)
    except RailXError as e:
        raise _http_error(e)
    return identity.public_dict()

@app.get("/api/identity/{principal}")
def get_identity(principal: str):
    try:
        identity = get_engine().keystore.load(principal)
    except RailXError as e:
        raise _http_error(e)
    return identity.public_dict()

# -----------------------------------------------------------------------------
# Packets
# -----------------------------------------------------------------------------

@app.post("/api/packets")
def publish_packet(req: PacketPublishRequest):
    try:
        packet = EncryptedPacket.from_dict(req.packet)
        locator = get_engine().packets.publish(packet, req.sender)
    except RailXError as e:
        raise _http_error(e)
    return {"locator": locator}

@app.get("/api/packets/{name}")
def get_packet(name: str):
    try:
        return get_engine().packets.read(name)
    except RailXError as e:
        raise _http_error(e)

# -----------------------------------------------------------------------------
# Trades
# -----------------------------------------------------------------------------

@app.post("/api/trades")
def create_trade(req: TradeCreateRequest):
    """
    Register a trade record written by the sender's session.

    Swaps start WAITING_RECIPIENT. Direct transfers are recorded terminal,
    and EXECUTED ones must name their transfer transaction.
    """
    engine = get_engine()
    try:
        _authorize(req.sender_id, "trade.create", req)
        if req.matched_lp_id == DIRECT_LP:
            if req.status not in TERMINAL_STATUSES:
                raise ValidationError("Direct transfers are recorded terminal")
            if req.status == TradeStatus.EXECUTED:
                _require_receipt(engine, req.tx_hash)
        elif req.status != TradeStatus.WAITING_RECIPIENT:
            raise ValidationError("Swaps are recorded WAITING_RECIPIENT")

        trade = TradeRequest(
            id=req.id,
            sender_id=normalize_address(req.sender_id),
            recipient_id=normalize_address(req.recipient_id),
            matched_lp_id=req.matched_lp_id if req.matched_lp_id == DIRECT_LP
            else normalize_address(req.matched_lp_id),
            from_asset=req.from_asset,
            to_asset=req.to_asset,
            send_amount=Decimal(req.send_amount),
            receive_amount=Decimal(req.receive_amount),
            applied_rate=Decimal(req.applied_rate),
            status=req.status,
            encrypted_packet_ref=req.encrypted_packet_ref,
            tx_hash=req.tx_hash,
            record_tx_hash=req.record_tx_hash,
            last_error=req.last_error,
        )
        engine.trades.create(trade)
    except ArithmeticError as e:
        raise HTTPException(400, f"Invalid amount: {e}")
    except RailXError as e:
        raise _http_error(e)
    return trade.to_dict()

@app.post("/api/trades/{trade_id}/status")
def transition_trade(trade_id: str, req: TradeTransitionRequest):
    """
    Compare-and-set transition; terminal records are immutable.

    Only the recipient moves a swap to EXECUTED, naming the swap
    transaction. Sender or recipient may mark it FAILED.
    """
    engine = get_engine()
    fields = {}
    for name in ("tx_hash", "record_tx_hash", "last_error"):
        value = getattr(req, name)
        if value is not None:
            fields[name] = value
    try:
        trade = engine.trades.load(trade_id)
        if req.status == TradeStatus.EXECUTED:
            _authorize(trade.recipient_id, "trade.status", req, trade_id=trade_id)
            _require_receipt(engine, req.tx_hash)
        else:
            _authorize((trade.sender_id, trade.recipient_id), "trade.status", req, trade_id=trade_id)
        trade = engine.trades.transition(trade_id, req.expected, req.status, **fields)
    except RailXError as e:
        raise _http_error(e)
    return trade.to_dict()

@app.post("/api/trades/{trade_id}/annotate")
def annotate_trade(trade_id: str, req: TradeAnnotateRequest):
    engine = get_engine()
    fields = req.model_dump(include={"record_tx_hash", "last_error"}, exclude_unset=True)
    try:
        trade = engine.trades.load(trade_id)
        _authorize(trade.sender_id, "trade.annotate", req, trade_id=trade_id)
        trade = engine.trades.annotate(trade_id, **fields)
    except RailXError as e:
        raise _http_error(e)
    return trade.to_dict()

@app.post("/api/trades/{trade_id}/claim")
def claim_trade(trade_id: str, req: TradeLeaseRequest):
    """Approval lease; 409 while another session holds it or once settled."""
    engine = get_engine()
    try:
        trade = engine.trades.load(trade_id)
        _authorize(trade.recipient_id, "trade.claim", req, trade_id=trade_id)
        if trade.is_terminal:
            raise TradeStateError(trade_id, trade.status.value)
        if not engine.trades.claim(trade_id):
            raise TradeStateError(trade_id, trade.status.value, "Approval already in progress")
    except RailXError as e:
        raise _http_error(e)
    return {"claimed": True}

@app.post("/api/trades/{trade_id}/release")
def release_trade(trade_id: str, req: TradeLeaseRequest):
    engine = get_engine()
    try:
        trade = engine.trades.load(trade_id)
        _authorize(trade.recipient_id, "trade.release", req, trade_id=trade_id)
    except RailXError as e:
        raise _http_error(e)
    engine.trades.release(trade_id)
    return {"released": True}

@app.get("/api/trades")
def list_trades(
    sender: Optional[str] = None,
    recipient: Optional[str] = None,
    status: Optional[TradeStatus] = None,
):
    trades = get_engine().trades.list_trades(sender=sender, recipient=recipient, status=status)
    return {"trades": [t.to_dict() for t in trades]}

@app.get("/api/trades/{trade_id}")
def get_trade(trade_id: str):
    try:
        return get_engine().trades.load(trade_id).to_dict()
    except RailXError as e:
        raise _http_error(e)


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting RailX on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
