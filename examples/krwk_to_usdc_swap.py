#!/usr/bin/env python3
"""
Example: KRWK -> USDC compliance-gated swap

Walks all three parties through one settlement. Each party is its own
session against a running RailX server (python server.py) and a local EVM
node; only the server's directory is shared between them:

1. LP deposits USDC into the vault and publishes a KRWK->USDC band
2. Recipient onboards (RSA keypair sealed under a wallet signature)
3. Sender quotes 1,000,000 KRWK, passes the gate on the recipient and
   publishes the encrypted packet; the trade waits for the recipient
4. Recipient discovers the trade, unlocks keys, screens the sender,
   decrypts and executes the atomic swap

Environment:
    RAILX_API (default http://localhost:8080)
    RAILX_RPC_URL, RAILX_CHAIN_ID, RAILX_VAULT, RAILX_RECORDS,
    RAILX_TOKEN_KRWK, RAILX_TOKEN_USDC,
    LP_KEY, SENDER_KEY, RECIPIENT_KEY

Usage:
    python krwk_to_usdc_swap.py
"""

import os
import sys
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from railx.core import TransactionMetadata, PurposeCategory, RegulatoryCodes, UserType
from railx.chains.evm import EVMClient, EVMConfig
from railx.compliance.gate import ComplianceGate, RiskRegistry
from railx.compliance.identity import IdentityService, sign_challenge
from railx.liquidity.desk import LiquidityDesk
from railx.remote import (
    RailXClient,
    RemoteQuotes,
    RemoteRegistry,
    RemoteKeyStore,
    RemotePacketStore,
    RemoteTradeStore,
)
from railx.settlement.workflow import SettlementWorkflow

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

API_URL = os.environ.get("RAILX_API", "http://localhost:8080")


def session_workflow(private_key: str, evm_config: EVMConfig) -> SettlementWorkflow:
    """Workflow for one wallet, wired to the shared server."""
    api = RailXClient(API_URL, private_key)
    return SettlementWorkflow(
        RemoteQuotes(api),
        RemoteTradeStore(api),
        RemotePacketStore(api),
        RemoteKeyStore(api),
        ComplianceGate(RiskRegistry()),
        EVMClient(evm_config, private_key),
    )


def main():
    evm_config = EVMConfig.from_env()

    # =================================================================
    # 1. LP: deposit and publish strategy
    # =================================================================
    lp_key = os.environ["LP_KEY"]
    desk = LiquidityDesk(RemoteRegistry(RailXClient(API_URL, lp_key)), EVMClient(evm_config, lp_key))
    desk.deposit("USDC", 50_000)
    strategy = desk.save_strategy("KRWK", "USDC", 1340, 1360)
    log.info(f"LP strategy: {strategy.to_dict()}")

    # =================================================================
    # 2. Recipient: onboard
    # =================================================================
    recipient_key = os.environ["RECIPIENT_KEY"]
    recipient_flow = session_workflow(recipient_key, evm_config)
    recipient = recipient_flow.chain.address
    signature = sign_challenge(recipient_key)
    identities = IdentityService(recipient_flow.keystore)
    identities.onboard(
        recipient, signature,
        user_type=UserType.CORPORATE,
        kyc_data={"name": "Acme Trading Pte Ltd", "country": "SG"},
    )

    # =================================================================
    # 3. Sender: quote and initiate
    # =================================================================
    sender_flow = session_workflow(os.environ["SENDER_KEY"], evm_config)
    quote = sender_flow.quotes.quote("KRWK", "USDC", 1_000_000)
    log.info(f"Quote: {quote.to_dict()}")

    metadata = TransactionMetadata(
        recipient_address=recipient,
        recipient_name="Acme Trading Pte Ltd",
        recipient_type=UserType.CORPORATE,
        recipient_country="SG",
        purpose_category=PurposeCategory.GOODS_EXPORT_IMPORT,
        purpose_detail="Invoice 2026-0042",
        regulatory_codes=RegulatoryCodes(kr_bop_code="401", invoice_number="2026-0042"),
    )
    trade = sender_flow.initiate(
        sender_flow.chain.address, recipient, "KRWK", "USDC", 1_000_000, metadata=metadata,
    )
    log.info(f"Trade {trade.id} is {trade.status.value}")

    # =================================================================
    # 4. Recipient: discover, unlock, approve
    # =================================================================
    pending = recipient_flow.discover(recipient)
    log.info(f"Recipient sees {len(pending)} pending trade(s)")

    private_key = identities.unlock(recipient, signature)
    mine = next(t for t in pending if t.id == trade.id)
    result = recipient_flow.approve(mine.id, recipient, private_key)
    log.info(f"Trade {result.trade.id} is {result.trade.status.value} (tx {result.trade.tx_hash})")
    log.info(f"Audit: {result.payload['complianceAudit']}")


if __name__ == "__main__":
    main()
