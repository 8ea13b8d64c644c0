"""
Chain clients for RailX.

EVMClient talks to the stablecoin tokens, the custody vault and the
compliance-record ledger through one signer.
"""

from .evm import EVMClient, EVMConfig, TxResult, ComplianceRecord

__all__ = ["EVMClient", "EVMConfig", "TxResult", "ComplianceRecord"]
