"""
LP custody desk.

Deposits and withdrawals move tokens in and out of the vault, then re-read
the vault balance and apply it to the registry before returning, so the next
quote already sees the new availableQuantity.
"""

import logging
from decimal import Decimal
from typing import Any

from ..core import LiquidityStrategy, PricingMode, to_decimal
from ..errors import ValidationError, SettlementError
from ..chains.evm import EVMClient, TxResult
from .registry import LiquidityRegistry

log = logging.getLogger(__name__)


class LiquidityDesk:
    """LP-side actions for one signer session."""

    def __init__(self, registry: LiquidityRegistry, chain: EVMClient):
        self.registry = registry
        self.chain = chain

    @property
    def owner(self) -> str:
        if not self.chain.address:
            raise ValidationError("LP desk requires a signer")
        return self.chain.address.lower()

    def _check(self, result: TxResult, action: str) -> TxResult:
        if not result.success:
            raise SettlementError(f"{action} failed: {result.error}", tx_hash=result.tx_hash)
        return result

    def sync(self, asset: str) -> Decimal:
        """Copy the vault balance for asset into the registry."""
        balance = self.chain.lp_balance(self.owner, asset)
        self.registry.set_available_quantity(self.owner, asset, balance)
        return balance

    def deposit(self, asset: str, amount: Any) -> Decimal:
        """
        approve + depositLiquidity, then sync.

        Returns:
            New vault balance of asset
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Deposit amount must be > 0")

        log.info(f"LP {self.owner[:10]}... depositing {amount} {asset}")
        self._check(self.chain.approve(asset, self.chain.config.vault_address, amount), "approve")
        self._check(self.chain.deposit_liquidity(asset, amount), "deposit")
        return self.sync(asset)

    def withdraw(self, asset: str, amount: Any) -> Decimal:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Withdraw amount must be > 0")

        log.info(f"LP {self.owner[:10]}... withdrawing {amount} {asset}")
        self._check(self.chain.withdraw_liquidity(asset, amount), "withdraw")
        return self.sync(asset)

    def save_strategy(
        self,
        from_asset: str,
        to_asset: str,
        min_rate: Any,
        max_rate: Any,
        mode: PricingMode = PricingMode.FIXED_BAND,
        spread_bps: int = 0,
        active: bool = None,
    ) -> LiquidityStrategy:
        """Upsert the strategy, then refresh its quantity from the vault."""
        self.registry.upsert_strategy(
            self.owner, from_asset, to_asset, min_rate, max_rate,
            mode=mode, spread_bps=spread_bps, active=active,
        )
        self.sync(to_asset)
        return self.registry.get(self.owner, from_asset, to_asset)
