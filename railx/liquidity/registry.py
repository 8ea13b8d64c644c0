"""
Liquidity Registry.

Stores each LP's per-pair standing strategy and the LP's custody balance per
asset. availableQuantity on every strategy selling an asset mirrors the LP's
custody balance of that asset; balance updates are applied under the same
lock that list_active reads with, so a quote never sees a half-applied change.
"""

import time
import logging
from decimal import Decimal
from typing import Optional, List, Any

from ..core import (
    LiquidityStrategy,
    PricingMode,
    ASSETS,
    normalize_address,
    to_decimal,
)
from ..errors import ValidationError, InvalidRange, NegativeQuantity
from ..events import ChangeFeed
from ..storage import JsonStore

log = logging.getLogger(__name__)


def _strategy_key(owner: str, from_asset: str, to_asset: str) -> str:
    return f"{owner}:{from_asset}:{to_asset}"


def _balance_key(owner: str, asset: str) -> str:
    return f"{owner}:{asset}"


class LiquidityRegistry:
    """
    Strategy table keyed by (owner, fromAsset, toAsset) plus custody balances.

    At most one strategy per LP per ordered pair. Strategies are only ever
    written by their owner; settlement never creates one.
    """

    def __init__(
        self,
        store: JsonStore = None,
        balance_store: JsonStore = None,
        feed: ChangeFeed = None,
    ):
        self._strategies = store or JsonStore()
        self._balances = balance_store or JsonStore()
        self.feed = feed or ChangeFeed()
        # one lock for both tables
        self._lock = self._strategies.lock

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def upsert_strategy(
        self,
        owner: str,
        from_asset: str,
        to_asset: str,
        min_rate: Any,
        max_rate: Any,
        mode: PricingMode = PricingMode.FIXED_BAND,
        spread_bps: int = 0,
        active: Optional[bool] = None,
    ) -> LiquidityStrategy:
        """
        Create or replace the strategy for (owner, from_asset, to_asset).

        Args:
            owner: LP principal id (wallet address)
            from_asset: Asset the LP receives
            to_asset: Asset the LP sells
            min_rate: Best rate offered (from_asset per 1 to_asset)
            max_rate: Worst rate at full utilization
            mode: FIXED_BAND or ORACLE_RELATIVE
            spread_bps: Spread over the oracle rate (ORACLE_RELATIVE only)
            active: New active flag; None keeps the existing one

        Returns:
            The stored strategy

        Raises:
            InvalidRange: min_rate > max_rate
            ValidationError: unknown asset, same-asset pair, non-positive rate
        """
        owner = normalize_address(owner)
        for asset in (from_asset, to_asset):
            if asset not in ASSETS:
                raise ValidationError(f"Unknown asset: {asset}")
        if from_asset == to_asset:
            raise ValidationError("Strategy pair must use two different assets")

        min_rate = to_decimal(min_rate, "min_rate")
        max_rate = to_decimal(max_rate, "max_rate")
        if min_rate <= 0 or max_rate <= 0:
            raise ValidationError("Rates must be positive")
        if min_rate > max_rate:
            raise InvalidRange(f"min_rate {min_rate} > max_rate {max_rate}")

        mode = PricingMode(mode)
        spread_bps = int(spread_bps or 0)
        if spread_bps < 0:
            raise ValidationError("spread_bps must be >= 0")

        key = _strategy_key(owner, from_asset, to_asset)
        with self._lock:
            existing = self._strategies.get(key)
            if existing is not None:
                keep_active = bool(existing.get("active", True))
            else:
                keep_active = True
            strategy = LiquidityStrategy(
                owner=owner,
                from_asset=from_asset,
                to_asset=to_asset,
                min_rate=min_rate,
                max_rate=max_rate,
                pricing_mode=mode,
                oracle_spread_bps=spread_bps,
                available_quantity=self._balance_locked(owner, to_asset),
                active=keep_active if active is None else bool(active),
                updated_at=int(time.time()),
            )
            self._strategies.put(key, strategy.to_dict())

        log.info(
            f"Strategy saved: {owner[:10]}... {from_asset}->{to_asset} "
            f"[{min_rate}, {max_rate}] {mode.value} active={strategy.active}"
        )
        self.feed.emit("strategy", strategy)
        return strategy

    def set_active(self, owner: str, from_asset: str, to_asset: str,
                   active: bool) -> LiquidityStrategy:
        owner = normalize_address(owner)
        key = _strategy_key(owner, from_asset, to_asset)
        with self._lock:
            record = self._strategies.get(key)
            if record is None:
                raise ValidationError(f"No strategy for {owner} {from_asset}->{to_asset}")
            record["active"] = bool(active)
            record["updated_at"] = int(time.time())
            self._strategies.put(key, record)
            strategy = LiquidityStrategy.from_dict(record)

        self.feed.emit("strategy", strategy)
        return strategy

    def delete_strategy(self, owner: str, from_asset: str, to_asset: str) -> bool:
        """Explicit removal by the owner. Returns False if nothing was stored."""
        owner = normalize_address(owner)
        key = _strategy_key(owner, from_asset, to_asset)
        with self._lock:
            record = self._strategies.get(key)
            if record is None:
                return False
            self._strategies.delete(key)

        log.info(f"Strategy deleted: {owner[:10]}... {from_asset}->{to_asset}")
        self.feed.emit("strategy", LiquidityStrategy.from_dict(record))
        return True

    def get(self, owner: str, from_asset: str, to_asset: str) -> Optional[LiquidityStrategy]:
        record = self._strategies.get(_strategy_key(normalize_address(owner), from_asset, to_asset))
        return LiquidityStrategy.from_dict(record) if record else None

    def list_active(self, from_asset: str, to_asset: str) -> List[LiquidityStrategy]:
        """Active strategies for the ordered pair, in no particular order."""
        with self._lock:
            return [
                LiquidityStrategy.from_dict(r)
                for r in self._strategies.values()
                if r["from_asset"] == from_asset
                and r["to_asset"] == to_asset
                and r.get("active", True)
            ]

    def list_strategies(self, owner: Optional[str] = None) -> List[LiquidityStrategy]:
        owner = normalize_address(owner) if owner else None
        with self._lock:
            return [
                LiquidityStrategy.from_dict(r)
                for r in self._strategies.values()
                if owner is None or r["owner"] == owner
            ]

    # -------------------------------------------------------------------------
    # Custody balances
    # -------------------------------------------------------------------------

    def set_available_quantity(self, owner: str, to_asset: str, quantity: Any) -> int:
        """
        Apply a custody balance change for owner's holdings of to_asset.

        Every strategy of this owner selling to_asset takes the new quantity.

        Returns:
            Number of strategies updated

        Raises:
            NegativeQuantity: quantity < 0
        """
        owner = normalize_address(owner)
        if to_asset not in ASSETS:
            raise ValidationError(f"Unknown asset: {to_asset}")
        quantity = to_decimal(quantity, "quantity")
        if quantity < 0:
            raise NegativeQuantity(f"Quantity {quantity} < 0")

        updated = 0
        with self._lock:
            self._balances.put(_balance_key(owner, to_asset), {
                "owner": owner,
                "asset": to_asset,
                "quantity": str(quantity),
                "updated_at": int(time.time()),
            })
            for record in self._strategies.values():
                if record["owner"] != owner or record["to_asset"] != to_asset:
                    continue
                record["available_quantity"] = str(quantity)
                self._strategies.put(_strategy_key(owner, record["from_asset"], to_asset), record)
                updated += 1

        log.info(f"Custody {owner[:10]}... {to_asset} = {quantity} ({updated} strategies)")
        self.feed.emit("quantity", owner, to_asset)
        return updated

    def vault_balance(self, owner: str, asset: str) -> Decimal:
        with self._lock:
            return self._balance_locked(normalize_address(owner), asset)

    def _balance_locked(self, owner: str, asset: str) -> Decimal:
        record = self._balances.get(_balance_key(owner, asset))
        return Decimal(record["quantity"]) if record else Decimal(0)
