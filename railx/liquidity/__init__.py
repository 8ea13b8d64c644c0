"""
Liquidity side: LP strategies, reference rates and quoting.

- registry: per-pair standing strategies and custody balances
- oracle:   reference rate feeds
- quote:    best-LP selection and utilization pricing
- desk:     LP deposit / withdraw keeping quantities in sync
"""

from .registry import LiquidityRegistry
from .oracle import OracleFeed, StaticOracle, MockOracle, HttpOracle, OracleConfig
from .quote import QuoteEngine, require_fill
from .desk import LiquidityDesk

__all__ = [
    "LiquidityRegistry",
    "OracleFeed",
    "StaticOracle",
    "MockOracle",
    "HttpOracle",
    "OracleConfig",
    "QuoteEngine",
    "require_fill",
    "LiquidityDesk",
]
