"""
Core types and interfaces for the RailX engine.

Amounts are carried as Decimal in display units (18 on-chain decimals for
every supported stablecoin). Rates are quoted as fromAsset per 1 toAsset.
"""

import time
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, Context, ROUND_DOWN, InvalidOperation, localcontext
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .errors import ValidationError


class PricingMode(Enum):
    """How an LP strategy derives its base rate."""
    FIXED_BAND = "FIXED_BAND"             # base = minRate
    ORACLE_RELATIVE = "ORACLE_RELATIVE"   # base = oracle * (1 + bps/10000)


class TradeStatus(Enum):
    """TradeRequest lifecycle. QUOTED is never persisted."""
    QUOTED = "QUOTED"
    WAITING_RECIPIENT = "WAITING_RECIPIENT"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class QuoteRejection(Enum):
    """Why a quote (or a single candidate) could not be filled."""
    NO_LIQUIDITY = "NO_LIQUIDITY"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    ORACLE_UNAVAILABLE = "ORACLE_UNAVAILABLE"


class ComplianceStage(Enum):
    """Compliance gate stages, run in this order."""
    KYC = "KYC"
    KYT = "KYT"
    SOURCE_OF_FUNDS = "SOURCE_OF_FUNDS"


class UserType(Enum):
    INDIVIDUAL = "INDIVIDUAL"
    CORPORATE = "CORPORATE"


class Relationship(Enum):
    UNRELATED = "UNRELATED"
    SUBSIDIARY = "SUBSIDIARY"
    PARENT = "PARENT"
    PARTNER = "PARTNER"
    FAMILY = "FAMILY"


class PurposeCategory(Enum):
    GOODS_EXPORT_IMPORT = "GOODS_EXPORT_IMPORT"
    SERVICE_TRADE = "SERVICE_TRADE"
    CAPITAL_TRANSFER = "CAPITAL_TRANSFER"
    INDIVIDUAL_REMITTANCE = "INDIVIDUAL_REMITTANCE"


TERMINAL_STATUSES = (TradeStatus.EXECUTED, TradeStatus.FAILED)


# =============================================================================
# Constants
# =============================================================================

ASSETS: Dict[str, Dict[str, Any]] = {
    "KRWK": {"symbol": "KRWK", "name": "Korean Won Stablecoin", "decimals": 18},
    "USDC": {"symbol": "USDC", "name": "USD Coin", "decimals": 18},
    "USDT": {"symbol": "USDT", "name": "Tether USD", "decimals": 18},
    "RLUSD": {"symbol": "RLUSD", "name": "Ripple USD", "decimals": 18},
    "JPYC": {"symbol": "JPYC", "name": "JPY Coin", "decimals": 18},
    "XSGD": {"symbol": "XSGD", "name": "StraitsX SGD", "decimals": 18},
    "DAI": {"symbol": "DAI", "name": "Dai", "decimals": 18},
}

# matchedLpId for same-asset transfers
DIRECT_LP = "DIRECT"

SIGNING_MESSAGE = "Welcome to RailX! Sign this message to unlock your secure keys.\nWallet: "

PBKDF2_ITERATIONS = 100_000
RSA_KEY_SIZE = 2048
AES_KEY_BYTES = 32
GCM_IV_BYTES = 12

# KR balance-of-payments codes accepted per purpose category
KR_BOP_CODES = {
    PurposeCategory.INDIVIDUAL_REMITTANCE: (
        "101", "102", "103", "301", "302", "501", "502", "503", "601",
    ),
    PurposeCategory.GOODS_EXPORT_IMPORT: ("401", "40201"),
    PurposeCategory.SERVICE_TRADE: ("402", "403", "404", "405", "999"),
    PurposeCategory.CAPITAL_TRANSFER: ("201", "202", "203", "204", "205"),
}


# =============================================================================
# Amount helpers
# =============================================================================

# 18 fractional digits plus the integer part of any uint256 balance
AMOUNT_CONTEXT = Context(prec=78)


def amount_context():
    """Decimal context for amount and rate arithmetic."""
    return localcontext(AMOUNT_CONTEXT)


def to_decimal(value: Any, name: str = "amount") -> Decimal:
    """Coerce int/str/float/Decimal into Decimal (floats go through str)."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid {name}: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid {name}: {value!r}")
    return result


def asset_decimals(asset: str) -> int:
    if asset not in ASSETS:
        raise ValidationError(f"Unknown asset: {asset}")
    return ASSETS[asset]["decimals"]


def quantize_down(amount: Decimal, asset: str) -> Decimal:
    """Round an amount down to the asset's precision."""
    exp = Decimal(1).scaleb(-asset_decimals(asset))
    return amount.quantize(exp, rounding=ROUND_DOWN, context=AMOUNT_CONTEXT)


def to_base_units(amount: Any, asset: str) -> int:
    """Convert a display amount to on-chain integer units (round down)."""
    value = to_decimal(amount)
    scaled = value.scaleb(asset_decimals(asset), context=AMOUNT_CONTEXT)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN, context=AMOUNT_CONTEXT))


def from_base_units(units: int, asset: str) -> Decimal:
    """Convert on-chain integer units to a display amount."""
    return Decimal(int(units)).scaleb(-asset_decimals(asset), context=AMOUNT_CONTEXT)


def _opt_decimal(value: Any) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def normalize_address(address: str) -> str:
    """Principal ids are wallet addresses compared case-insensitively."""
    if not address or not isinstance(address, str):
        raise ValidationError("Address required")
    return address.strip().lower()


def pair_key(from_asset: str, to_asset: str) -> str:
    return f"{from_asset}/{to_asset}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Liquidity
# =============================================================================

@dataclass
class LiquidityStrategy:
    """One LP's standing offer for an ordered asset pair."""
    owner: str
    from_asset: str
    to_asset: str
    min_rate: Decimal
    max_rate: Decimal
    pricing_mode: PricingMode = PricingMode.FIXED_BAND
    oracle_spread_bps: int = 0
    available_quantity: Decimal = Decimal(0)   # in to_asset units
    active: bool = True
    updated_at: int = 0

    @property
    def key(self) -> str:
        return f"{self.owner}:{self.from_asset}:{self.to_asset}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "min_rate": str(self.min_rate),
            "max_rate": str(self.max_rate),
            "pricing_mode": self.pricing_mode.value,
            "oracle_spread_bps": self.oracle_spread_bps,
            "available_quantity": str(self.available_quantity),
            "active": self.active,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiquidityStrategy":
        return cls(
            owner=data["owner"],
            from_asset=data["from_asset"],
            to_asset=data["to_asset"],
            min_rate=Decimal(data["min_rate"]),
            max_rate=Decimal(data["max_rate"]),
            pricing_mode=PricingMode(data.get("pricing_mode", "FIXED_BAND")),
            oracle_spread_bps=int(data.get("oracle_spread_bps", 0)),
            available_quantity=Decimal(data.get("available_quantity", "0")),
            active=bool(data.get("active", True)),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class QuoteCandidate:
    """Audit entry for one strategy evaluated by the quote engine."""
    owner: str
    base_rate: Optional[Decimal]
    available_quantity: Decimal
    accepted: bool = False
    rejection: Optional[QuoteRejection] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "base_rate": str(self.base_rate) if self.base_rate is not None else None,
            "available_quantity": str(self.available_quantity),
            "accepted": self.accepted,
            "rejection": self.rejection.value if self.rejection else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuoteCandidate":
        return cls(
            owner=data["owner"],
            base_rate=_opt_decimal(data.get("base_rate")),
            available_quantity=Decimal(data.get("available_quantity", "0")),
            accepted=bool(data.get("accepted", False)),
            rejection=QuoteRejection(data["rejection"]) if data.get("rejection") else None,
        )


@dataclass
class QuoteResult:
    """Outcome of a quote: a fill against one LP, or a rejection."""
    from_asset: str
    to_asset: str
    send_amount: Decimal
    lp_owner: Optional[str] = None
    effective_rate: Optional[Decimal] = None
    receive_amount: Optional[Decimal] = None
    utilization: Optional[Decimal] = None
    rejection: Optional[QuoteRejection] = None
    candidates: List[QuoteCandidate] = field(default_factory=list)
    quoted_at: int = 0

    @property
    def filled(self) -> bool:
        return self.rejection is None and self.receive_amount is not None

    @property
    def is_direct(self) -> bool:
        return self.from_asset == self.to_asset

    @property
    def matched_lp_id(self) -> Optional[str]:
        if self.is_direct:
            return DIRECT_LP
        return self.lp_owner

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "send_amount": str(self.send_amount),
            "lp_owner": self.lp_owner,
            "matched_lp_id": self.matched_lp_id if self.filled else None,
            "effective_rate": str(self.effective_rate) if self.effective_rate is not None else None,
            "receive_amount": str(self.receive_amount) if self.receive_amount is not None else None,
            "utilization": str(self.utilization) if self.utilization is not None else None,
            "rejection": self.rejection.value if self.rejection else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "quoted_at": self.quoted_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuoteResult":
        return cls(
            from_asset=data["from_asset"],
            to_asset=data["to_asset"],
            send_amount=Decimal(data["send_amount"]),
            lp_owner=data.get("lp_owner"),
            effective_rate=_opt_decimal(data.get("effective_rate")),
            receive_amount=_opt_decimal(data.get("receive_amount")),
            utilization=_opt_decimal(data.get("utilization")),
            rejection=QuoteRejection(data["rejection"]) if data.get("rejection") else None,
            candidates=[QuoteCandidate.from_dict(c) for c in data.get("candidates", [])],
            quoted_at=int(data.get("quoted_at", 0)),
        )


# =============================================================================
# Compliance
# =============================================================================

@dataclass
class AuditLogEntry:
    """One passed compliance stage."""
    step: str
    status: str
    timestamp: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status,
            "timestamp": self.timestamp,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            step=data["step"],
            status=data["status"],
            timestamp=data.get("timestamp", ""),
            details=data.get("details", ""),
        )


@dataclass
class RegulatoryCodes:
    kr_bop_code: Optional[str] = None
    us_income_code: Optional[str] = None
    invoice_number: Optional[str] = None
    contract_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kr_bop_code": self.kr_bop_code,
            "us_income_code": self.us_income_code,
            "invoice_number": self.invoice_number,
            "contract_date": self.contract_date,
        }


@dataclass
class TransactionMetadata:
    """
    Payer-supplied description of a payment, sealed inside the packet.

    Trade terms and the compliance audit are attached by the workflow.
    """
    recipient_address: str
    recipient_name: Optional[str] = None
    recipient_type: UserType = UserType.INDIVIDUAL
    recipient_country: Optional[str] = None
    relationship: Relationship = Relationship.UNRELATED
    purpose_category: PurposeCategory = PurposeCategory.INDIVIDUAL_REMITTANCE
    purpose_detail: str = ""
    regulatory_codes: RegulatoryCodes = field(default_factory=RegulatoryCodes)

    def validate(self):
        """Check the KR BOP code (if any) belongs to the purpose category."""
        code = self.regulatory_codes.kr_bop_code
        if code and code not in KR_BOP_CODES[self.purpose_category]:
            raise ValidationError(
                f"BOP code {code} not valid for {self.purpose_category.value}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipientAddress": self.recipient_address,
            "recipientName": self.recipient_name,
            "recipientType": self.recipient_type.value,
            "recipientCountry": self.recipient_country,
            "relationship": self.relationship.value,
            "purposeCategory": self.purpose_category.value,
            "purposeDetail": self.purpose_detail,
            "regulatoryCodes": self.regulatory_codes.to_dict(),
        }


# =============================================================================
# Settlement
# =============================================================================

@dataclass
class TradeRequest:
    """Durable multi-party settlement record."""
    id: str
    sender_id: str
    recipient_id: str
    matched_lp_id: str
    from_asset: str
    to_asset: str
    send_amount: Decimal
    receive_amount: Decimal
    applied_rate: Decimal
    status: TradeStatus
    encrypted_packet_ref: str
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = 0
    tx_hash: Optional[str] = None
    record_tx_hash: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_direct(self) -> bool:
        return self.matched_lp_id == DIRECT_LP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "matched_lp_id": self.matched_lp_id,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "send_amount": str(self.send_amount),
            "receive_amount": str(self.receive_amount),
            "applied_rate": str(self.applied_rate),
            "status": self.status.value,
            "encrypted_packet_ref": self.encrypted_packet_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tx_hash": self.tx_hash,
            "record_tx_hash": self.record_tx_hash,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRequest":
        return cls(
            id=data["id"],
            sender_id=data["sender_id"],
            recipient_id=data["recipient_id"],
            matched_lp_id=data["matched_lp_id"],
            from_asset=data["from_asset"],
            to_asset=data["to_asset"],
            send_amount=Decimal(data["send_amount"]),
            receive_amount=Decimal(data["receive_amount"]),
            applied_rate=Decimal(data["applied_rate"]),
            status=TradeStatus(data["status"]),
            encrypted_packet_ref=data["encrypted_packet_ref"],
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            tx_hash=data.get("tx_hash"),
            record_tx_hash=data.get("record_tx_hash"),
            last_error=data.get("last_error"),
        )
