"""
Error taxonomy.

Validation and liquidity errors stop at the quote boundary. Compliance and
crypto errors abort a workflow before any durable write. Settlement errors
are the only ones raised after a TradeRequest exists, and they leave it FAILED.
"""

from typing import Optional


class RailXError(Exception):
    """Base class for engine errors."""


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

class ValidationError(RailXError, ValueError):
    """Bad input, rejected synchronously and never partially applied."""


class InvalidRange(ValidationError):
    """minRate > maxRate."""


class NegativeQuantity(ValidationError):
    """availableQuantity < 0."""


class UnknownIdentity(ValidationError):
    """Principal has no registered public key."""


class TradeNotFound(ValidationError):
    pass


# -----------------------------------------------------------------------------
# Liquidity
# -----------------------------------------------------------------------------

class LiquidityError(RailXError):
    """No single LP can fill the request."""

    def __init__(self, reason, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


# -----------------------------------------------------------------------------
# Compliance
# -----------------------------------------------------------------------------

class ComplianceError(RailXError):
    """
    A compliance stage rejected the subject.

    Only the stage and an operator-facing reason code are carried; the
    matching list entry never leaves the gate.
    """

    def __init__(self, stage: str, reason: str, category: Optional[str] = None):
        self.stage = stage
        self.reason = reason
        self.category = category
        super().__init__(f"{stage} rejected: {reason}")


# -----------------------------------------------------------------------------
# Crypto
# -----------------------------------------------------------------------------

class CryptoError(RailXError):
    """Authentication failure on sealed or encrypted material."""


class UnlockFailed(CryptoError):
    """Derived storage key did not open the sealed private key."""


class DecryptionFailed(CryptoError):
    """Packet could not be unwrapped or authenticated."""


# -----------------------------------------------------------------------------
# Settlement
# -----------------------------------------------------------------------------

class SettlementError(RailXError):
    """On-chain revert or submission failure; the trade is now FAILED."""

    def __init__(self, message: str, trade_id: Optional[str] = None,
                 tx_hash: Optional[str] = None):
        self.trade_id = trade_id
        self.tx_hash = tx_hash
        super().__init__(message)


class TradeStateError(RailXError):
    """Operation not allowed in the trade's current status."""

    def __init__(self, trade_id: str, status: str, message: str = ""):
        self.trade_id = trade_id
        self.status = status
        super().__init__(message or f"Trade {trade_id} is {status}")


# -----------------------------------------------------------------------------
# Authorisation
# -----------------------------------------------------------------------------

class Unauthorized(RailXError):
    """Write not signed by a wallet allowed to make it."""
