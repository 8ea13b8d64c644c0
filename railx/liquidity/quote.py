"""
Quote Engine.

Flow:
1. Same asset -> 1:1 direct quote, no LP
2. Active strategies for the pair; none -> NO_LIQUIDITY
3. Base rate per strategy (minRate, or oracle * (1 + bps/10000))
4. Cheapest base rate first; the first LP that can fill the whole
   request wins, undersized LPs are skipped with CAPACITY_EXCEEDED
5. Effective rate = min + (max - min) * utilization
6. receive = send / effective, rounded down to asset precision

The capacity check here is advisory. The vault re-checks the LP's real
balance when the swap executes.
"""

import time
import logging
import threading
from decimal import Decimal
from typing import Optional, Dict, List, Any

from ..core import (
    ASSETS,
    amount_context,
    LiquidityStrategy,
    PricingMode,
    QuoteCandidate,
    QuoteResult,
    QuoteRejection,
    pair_key,
    quantize_down,
    to_decimal,
)
from ..errors import ValidationError, LiquidityError
from .oracle import OracleFeed
from .registry import LiquidityRegistry

log = logging.getLogger(__name__)

BPS = Decimal(10000)


class QuoteEngine:
    """Pull-based pricing over the registry, plus a cached order book."""

    def __init__(self, registry: LiquidityRegistry, oracle: Optional[OracleFeed] = None):
        self.registry = registry
        self.oracle = oracle
        self._book_cache: Dict[str, List[Dict[str, Any]]] = {}
        self._cache_lock = threading.Lock()

        for event in ("strategy", "quantity", "oracle"):
            registry.feed.on(event, self._invalidate)

    # -------------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------------

    def base_rate(self, strategy: LiquidityStrategy) -> Optional[Decimal]:
        """
        Base rate in from_asset per 1 to_asset.

        Returns None when an ORACLE_RELATIVE strategy has no usable reference.
        """
        if strategy.pricing_mode == PricingMode.FIXED_BAND:
            return strategy.min_rate

        if self.oracle is None:
            return None
        reference = self.oracle.rate(pair_key(strategy.to_asset, strategy.from_asset))
        if not reference or reference <= 0:
            return None
        return Decimal(str(reference)) * (1 + Decimal(strategy.oracle_spread_bps) / BPS)

    @staticmethod
    def interpolate(strategy: LiquidityStrategy, utilization: Decimal) -> Decimal:
        """Linear slippage from min_rate (idle) to max_rate (fully used)."""
        return strategy.min_rate + (strategy.max_rate - strategy.min_rate) * utilization

    def quote(self, from_asset: str, to_asset: str, send_amount: Any) -> QuoteResult:
        """
        Price a trade intent against the best single LP.

        Args:
            from_asset: Asset the payer sends
            to_asset: Asset the payee receives
            send_amount: Amount in from_asset units (> 0)

        Returns:
            QuoteResult, filled or carrying a rejection

        Raises:
            ValidationError: unknown asset or non-positive amount
        """
        for asset in (from_asset, to_asset):
            if asset not in ASSETS:
                raise ValidationError(f"Unknown asset: {asset}")
        # price exactly what can be sent on-chain
        send = quantize_down(to_decimal(send_amount, "send_amount"), from_asset)
        if send <= 0:
            raise ValidationError("send_amount must be > 0")

        with amount_context():
            return self._price(from_asset, to_asset, send)

    def _price(self, from_asset: str, to_asset: str, send: Decimal) -> QuoteResult:
        result = QuoteResult(
            from_asset=from_asset,
            to_asset=to_asset,
            send_amount=send,
            quoted_at=int(time.time()),
        )

        if from_asset == to_asset:
            result.effective_rate = Decimal(1)
            result.receive_amount = quantize_down(send, to_asset)
            result.utilization = Decimal(0)
            return result

        strategies = self.registry.list_active(from_asset, to_asset)
        if not strategies:
            log.info(f"Quote {from_asset}->{to_asset} {send}: no active strategies")
            result.rejection = QuoteRejection.NO_LIQUIDITY
            return result

        priced = []
        for strategy in strategies:
            base = self.base_rate(strategy)
            if base is None or base <= 0:
                log.warning(f"Oracle unavailable, skipping LP {strategy.owner[:10]}...")
                result.candidates.append(QuoteCandidate(
                    owner=strategy.owner,
                    base_rate=None,
                    available_quantity=strategy.available_quantity,
                    rejection=QuoteRejection.ORACLE_UNAVAILABLE,
                ))
                continue
            priced.append((base, strategy))

        # owner breaks ties so equal prices always pick the same LP
        priced.sort(key=lambda item: (item[0], item[1].owner))

        for base, strategy in priced:
            candidate = QuoteCandidate(
                owner=strategy.owner,
                base_rate=base,
                available_quantity=strategy.available_quantity,
            )
            result.candidates.append(candidate)

            available = strategy.available_quantity
            tentative = send / base
            if available <= 0 or tentative > available:
                candidate.rejection = QuoteRejection.CAPACITY_EXCEEDED
                continue

            utilization = tentative / available
            effective = self.interpolate(strategy, utilization)
            receive = quantize_down(send / effective, to_asset)
            if receive > available:
                candidate.rejection = QuoteRejection.CAPACITY_EXCEEDED
                continue

            candidate.accepted = True
            result.lp_owner = strategy.owner
            result.effective_rate = effective
            result.receive_amount = receive
            result.utilization = utilization
            log.info(
                f"Quote {from_asset}->{to_asset} {send}: LP {strategy.owner[:10]}... "
                f"rate={effective} util={utilization:.4f} receive={receive}"
            )
            return result

        log.info(f"Quote {from_asset}->{to_asset} {send}: no LP can fill")
        result.rejection = QuoteRejection.NO_LIQUIDITY
        return result

    # -------------------------------------------------------------------------
    # Order book read model
    # -------------------------------------------------------------------------

    def order_book(self, from_asset: str, to_asset: str) -> List[Dict[str, Any]]:
        """
        Ask ladder for a pair, highest price first.

        Cached until a strategy, custody or oracle change is signalled.
        """
        key = pair_key(from_asset, to_asset)
        with self._cache_lock:
            cached = self._book_cache.get(key)
        if cached is not None:
            return [dict(level) for level in cached]

        levels = []
        for strategy in self.registry.list_active(from_asset, to_asset):
            price = self.base_rate(strategy)
            if price is None:
                continue
            levels.append({
                "owner": strategy.owner,
                "pricing_mode": strategy.pricing_mode.value,
                "price": str(price),
                "min_rate": str(strategy.min_rate),
                "max_rate": str(strategy.max_rate),
                "available_quantity": str(strategy.available_quantity),
                "_sort": price,
            })
        levels.sort(key=lambda level: (level["_sort"], level["owner"]), reverse=True)
        for level in levels:
            del level["_sort"]

        with self._cache_lock:
            self._book_cache[key] = levels
        return [dict(level) for level in levels]

    def _invalidate(self, *args):
        with self._cache_lock:
            self._book_cache.clear()


def require_fill(result: QuoteResult) -> QuoteResult:
    """Raise LiquidityError unless the quote is filled."""
    if not result.filled:
        raise LiquidityError(
            result.rejection or QuoteRejection.NO_LIQUIDITY,
            f"No liquidity for {result.from_asset}->{result.to_asset} {result.send_amount}",
        )
    return result
