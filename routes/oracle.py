"""
Reference rate endpoints.

Extracted from server.py for modularity.
"""

import time
import logging
from typing import Callable, Optional

from fastapi import APIRouter, HTTPException

from railx.core import ASSETS, pair_key
from railx.liquidity.oracle import BASE_RATES, split_pair

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Callbacks set by server.py at init
# ---------------------------------------------------------------------------

# server.py sets this so we can read the engine's feed without importing it
_oracle_provider: Optional[Callable] = None


def configure(oracle_provider: Callable):
    """Configure rate module. Called by server.py when the engine is built."""
    global _oracle_provider
    _oracle_provider = oracle_provider


def _oracle():
    if _oracle_provider is None:
        raise HTTPException(503, "Oracle not configured")
    return _oracle_provider()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/api/rates")
def get_rates():
    """Current reference rates for every listed pair and its inverse."""
    oracle = _oracle()
    rates = {}
    for pair in BASE_RATES:
        base, quote = split_pair(pair)
        for key in (pair, pair_key(quote, base)):
            rate = oracle.rate(key)
            rates[key] = rate if rate > 0 else None
    return {
        "rates": rates,
        "timestamp": int(time.time()),
    }


@router.get("/api/rates/{base}/{quote}")
def get_rate(base: str, quote: str):
    """Reference rate for one pair (quote per 1 base)."""
    for asset in (base, quote):
        if asset not in ASSETS:
            raise HTTPException(400, f"Unknown asset: {asset}")
    rate = _oracle().rate(pair_key(base, quote))
    if rate <= 0:
        raise HTTPException(404, f"No reference rate for {base}/{quote}")
    return {"pair": pair_key(base, quote), "rate": rate, "timestamp": int(time.time())}
