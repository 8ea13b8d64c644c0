"""
RailX - liquidity quoting and compliance-gated settlement.

Payers send one stablecoin and payees receive another. Price comes from the
best single LP strategy; settlement waits for the payee's own compliance check
and approval, then runs as one atomic vault call.

Usage:
    from railx import LiquidityRegistry, QuoteEngine, MockOracle

    registry = LiquidityRegistry()
    registry.upsert_strategy(lp, "KRWK", "USDC", 1340, 1360)
    registry.set_available_quantity(lp, "USDC", 50000)

    engine = QuoteEngine(registry, MockOracle())
    quote = engine.quote("KRWK", "USDC", 1_000_000)
"""

from .core import (
    ASSETS,
    DIRECT_LP,
    PricingMode,
    TradeStatus,
    QuoteRejection,
    ComplianceStage,
    UserType,
    Relationship,
    PurposeCategory,
    LiquidityStrategy,
    QuoteResult,
    TradeRequest,
    AuditLogEntry,
    TransactionMetadata,
    RegulatoryCodes,
    to_base_units,
    from_base_units,
)
from .errors import (
    RailXError,
    ValidationError,
    InvalidRange,
    NegativeQuantity,
    UnknownIdentity,
    LiquidityError,
    ComplianceError,
    CryptoError,
    UnlockFailed,
    DecryptionFailed,
    SettlementError,
    TradeStateError,
)
from .events import ChangeFeed
from .storage import JsonStore

from .liquidity.registry import LiquidityRegistry
from .liquidity.oracle import StaticOracle, MockOracle, HttpOracle, OracleConfig
from .liquidity.quote import QuoteEngine, require_fill
from .liquidity.desk import LiquidityDesk

from .compliance.gate import ComplianceGate, RiskRegistry, ScreeningClient
from .compliance.identity import KeyStore, IdentityService, UserIdentity

from .chains.evm import EVMClient, EVMConfig, TxResult

from .settlement.store import TradeStore, PacketStore
from .settlement.workflow import SettlementWorkflow, ApprovalResult
from .settlement.watcher import TradeWatcher, MarketWatcher, WatcherConfig

__version__ = "0.1.0"
__all__ = [
    # Core types
    "ASSETS",
    "DIRECT_LP",
    "PricingMode",
    "TradeStatus",
    "QuoteRejection",
    "ComplianceStage",
    "UserType",
    "Relationship",
    "PurposeCategory",
    "LiquidityStrategy",
    "QuoteResult",
    "TradeRequest",
    "AuditLogEntry",
    "TransactionMetadata",
    "RegulatoryCodes",
    "to_base_units",
    "from_base_units",
    # Errors
    "RailXError",
    "ValidationError",
    "InvalidRange",
    "NegativeQuantity",
    "UnknownIdentity",
    "LiquidityError",
    "ComplianceError",
    "CryptoError",
    "UnlockFailed",
    "DecryptionFailed",
    "SettlementError",
    "TradeStateError",
    # Infrastructure
    "ChangeFeed",
    "JsonStore",
    # Liquidity
    "LiquidityRegistry",
    "StaticOracle",
    "MockOracle",
    "HttpOracle",
    "OracleConfig",
    "QuoteEngine",
    "require_fill",
    "LiquidityDesk",
    # Compliance
    "ComplianceGate",
    "RiskRegistry",
    "ScreeningClient",
    "KeyStore",
    "IdentityService",
    "UserIdentity",
    # Chain
    "EVMClient",
    "EVMConfig",
    "TxResult",
    # Settlement
    "TradeStore",
    "PacketStore",
    "SettlementWorkflow",
    "ApprovalResult",
    "TradeWatcher",
    "MarketWatcher",
    "WatcherConfig",
]
