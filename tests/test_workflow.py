#!/usr/bin/env python3
"""
Settlement Workflow Tests

Three parties against an in-memory registry and a mocked chain client:

1. Swap path: initiate -> WAITING_RECIPIENT -> approve -> EXECUTED
2. Direct path (same asset): one transfer, no LP, no approval step
3. Recipient-side compliance failure leaves the trade pending
4. On-chain failures end in FAILED, terminal records stay terminal

Usage:
    python -m pytest tests/test_workflow.py
"""

import sys
import os
import shutil
import tempfile
import unittest
from decimal import Decimal
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from railx.core import (
    TradeStatus,
    TransactionMetadata,
    PurposeCategory,
    RegulatoryCodes,
    DIRECT_LP,
)
from railx.errors import (
    ValidationError,
    LiquidityError,
    ComplianceError,
    DecryptionFailed,
    SettlementError,
    TradeStateError,
    UnknownIdentity,
)
from railx.chains.evm import TxResult
from railx.compliance.channel import (
    generate_identity_keypair,
    export_public_key,
    derive_storage_key,
    seal_private_key,
)
from railx.compliance.gate import ComplianceGate, RiskRegistry
from railx.compliance.identity import KeyStore, UserIdentity
from railx.liquidity.oracle import StaticOracle
from railx.liquidity.quote import QuoteEngine
from railx.liquidity.registry import LiquidityRegistry
from railx.settlement.store import TradeStore, PacketStore
from railx.settlement.workflow import SettlementWorkflow, new_trade_id

SENDER = "0x" + "5" * 40
RECIPIENT = "0x" + "6" * 40
LP_A = "0x" + "a" * 40
LP_B = "0x" + "b" * 40


class WorkflowTestBase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.public_key, cls.private_key = generate_identity_keypair()
        cls.other_public, cls.other_private = generate_identity_keypair()

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="railx_workflow_")

        self.registry = LiquidityRegistry()
        for owner, lo, hi in ((LP_A, 1340, 1360), (LP_B, 1345, 1370)):
            self.registry.upsert_strategy(owner, "KRWK", "USDC", lo, hi)
            self.registry.set_available_quantity(owner, "USDC", 100000)
        self.quotes = QuoteEngine(self.registry, StaticOracle())

        self.trades = TradeStore()
        self.packets = PacketStore(os.path.join(self.tmpdir, "packets"), "https://railx.test/packets")

        self.keystore = KeyStore()
        sealed = seal_private_key(self.private_key, derive_storage_key("0xsig", RECIPIENT, 1000))
        self.keystore.store(UserIdentity(
            principal_id=RECIPIENT,
            public_key_pem=export_public_key(self.public_key),
            sealed_private_key=sealed,
        ))

        self.risk = RiskRegistry()
        self.gate = ComplianceGate(self.risk)

        self.chain = MagicMock()
        self.chain.transfer.return_value = TxResult(success=True, tx_hash="0x" + "e1" * 32)
        self.chain.mint_compliance_record.return_value = TxResult(success=True, tx_hash="0x" + "e2" * 32)
        self.chain.execute_atomic_swap.return_value = TxResult(success=True, tx_hash="0x" + "e3" * 32)

        self.flow = SettlementWorkflow(
            self.quotes, self.trades, self.packets, self.keystore, self.gate, self.chain
        )

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def packet_files(self):
        return os.listdir(self.packets.directory)


class TestSwapPath(WorkflowTestBase):

    def test_initiate_waits_for_recipient(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        self.assertEqual(trade.status, TradeStatus.WAITING_RECIPIENT)
        self.assertEqual(trade.matched_lp_id, LP_A)
        self.assertTrue(trade.id.startswith("0x"))
        self.assertEqual(len(trade.id), 66)
        self.assertEqual(trade.record_tx_hash, "0x" + "e2" * 32)
        self.chain.mint_compliance_record.assert_called_once_with(
            RECIPIENT, trade.encrypted_packet_ref, trade.id
        )
        self.chain.execute_atomic_swap.assert_not_called()
        self.chain.transfer.assert_not_called()
        self.assertEqual(len(self.packet_files()), 1)

    def test_recipient_discovers_and_approves(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        pending = self.flow.discover(RECIPIENT)
        self.assertEqual([t.id for t in pending], [trade.id])

        result = self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.assertEqual(result.trade.status, TradeStatus.EXECUTED)
        self.assertEqual(result.trade.tx_hash, "0x" + "e3" * 32)
        self.chain.execute_atomic_swap.assert_called_once_with(
            trade.id, SENDER, RECIPIENT, LP_A, "KRWK", "USDC",
            trade.send_amount, trade.receive_amount,
        )
        audit = result.payload["complianceAudit"]
        self.assertEqual(len(audit["logs"]), 6)
        self.assertTrue(audit["recipientChecked"])
        self.assertEqual(result.payload["terms"]["tradeId"], trade.id)
        self.assertEqual(self.flow.discover(RECIPIENT), [])

    def test_executed_amounts_match_quote(self):
        quote = self.quotes.quote("KRWK", "USDC", 1_000_000)
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        self.assertEqual(trade.receive_amount, quote.receive_amount)
        self.assertEqual(trade.applied_rate, quote.effective_rate)

    def test_second_approval_rejected(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)
        self.flow.approve(trade.id, RECIPIENT, self.private_key)

        with self.assertRaises(TradeStateError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.assertEqual(self.chain.execute_atomic_swap.call_count, 1)
        self.assertEqual(self.trades.load(trade.id).status, TradeStatus.EXECUTED)

    def test_only_recipient_may_approve(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        with self.assertRaises(ValidationError):
            self.flow.approve(trade.id, SENDER, self.private_key)
        self.chain.execute_atomic_swap.assert_not_called()

    def test_trade_ids_unique(self):
        ids = {self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000).id for _ in range(5)}
        self.assertEqual(len(ids), 5)
        self.assertEqual(len({new_trade_id() for _ in range(100)}), 100)

    def test_reused_trade_id_refused(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000)

        with self.assertRaises(TradeStateError):
            self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000, trade_id=trade.id)
        self.assertEqual(len(self.trades.list_trades()), 1)

    def test_metadata_sealed_in_packet(self):
        metadata = TransactionMetadata(
            recipient_address=RECIPIENT,
            recipient_name="Acme Trading",
            purpose_category=PurposeCategory.GOODS_EXPORT_IMPORT,
            regulatory_codes=RegulatoryCodes(kr_bop_code="401", invoice_number="INV-7"),
        )
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000, metadata=metadata)

        payload = self.flow.open_packet(trade, self.private_key)

        self.assertEqual(payload["recipientName"], "Acme Trading")
        self.assertEqual(payload["regulatoryCodes"]["kr_bop_code"], "401")
        self.assertEqual(payload["senderAddress"], SENDER)
        self.assertEqual(payload["terms"]["matchedLpId"], LP_A)

    def test_bop_code_must_fit_purpose(self):
        metadata = TransactionMetadata(
            recipient_address=RECIPIENT,
            purpose_category=PurposeCategory.CAPITAL_TRANSFER,
            regulatory_codes=RegulatoryCodes(kr_bop_code="401"),
        )
        with self.assertRaises(ValidationError):
            self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000, metadata=metadata)
        self.assertEqual(self.packet_files(), [])

    def test_inbox_reads_ledger_for_recipient(self):
        self.chain.compliance_records.return_value = ["record"]

        self.assertEqual(self.flow.inbox(RECIPIENT.upper().replace("0X", "0x")), ["record"])
        self.chain.compliance_records.assert_called_once_with(RECIPIENT)


class TestDirectPath(WorkflowTestBase):

    def test_same_asset_is_direct_transfer(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "USDC", "USDC", "250")

        self.assertEqual(trade.status, TradeStatus.EXECUTED)
        self.assertEqual(trade.matched_lp_id, DIRECT_LP)
        self.assertEqual(trade.applied_rate, Decimal(1))
        self.assertEqual(trade.receive_amount, Decimal(250))
        self.chain.transfer.assert_called_once_with("USDC", RECIPIENT, Decimal("250"))
        self.chain.execute_atomic_swap.assert_not_called()
        self.chain.mint_compliance_record.assert_called_once_with(
            RECIPIENT, trade.encrypted_packet_ref, "0x" + "e1" * 32
        )
        self.assertEqual(self.flow.discover(RECIPIENT), [])

    def test_direct_needs_no_liquidity(self):
        for owner in (LP_A, LP_B):
            self.registry.delete_strategy(owner, "KRWK", "USDC")

        trade = self.flow.initiate(SENDER, RECIPIENT, "USDC", "USDC", 10)
        self.assertEqual(trade.status, TradeStatus.EXECUTED)

    def test_transfer_failure_recorded(self):
        self.chain.transfer.return_value = TxResult(success=False, tx_hash="0xbad", error="reverted")

        with self.assertRaises(SettlementError) as ctx:
            self.flow.initiate(SENDER, RECIPIENT, "USDC", "USDC", 10)

        trade = self.trades.load(ctx.exception.trade_id)
        self.assertEqual(trade.status, TradeStatus.FAILED)
        self.assertEqual(trade.last_error, "reverted")
        self.chain.mint_compliance_record.assert_not_called()

    def test_mint_failure_after_transfer_keeps_executed(self):
        self.chain.mint_compliance_record.return_value = TxResult(success=False, error="out of gas")

        trade = self.flow.initiate(SENDER, RECIPIENT, "USDC", "USDC", 10)

        self.assertEqual(trade.status, TradeStatus.EXECUTED)
        self.assertIn("out of gas", trade.last_error)

    def test_direct_cannot_be_approved(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "USDC", "USDC", 10)
        with self.assertRaises(TradeStateError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)


class TestFailureModes(WorkflowTestBase):

    def test_no_liquidity_writes_nothing(self):
        with self.assertRaises(LiquidityError):
            self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 10 ** 12)

        self.assertEqual(self.trades.list_trades(), [])
        self.assertEqual(self.packet_files(), [])
        self.chain.mint_compliance_record.assert_not_called()

    def test_flagged_recipient_blocked_before_publish(self):
        self.risk.add_address(RECIPIENT, "SANCTIONS")

        with self.assertRaises(ComplianceError) as ctx:
            self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000)

        self.assertEqual(ctx.exception.stage, "KYT")
        self.assertEqual(self.trades.list_trades(), [])
        self.assertEqual(self.packet_files(), [])

    def test_unknown_recipient_writes_nothing(self):
        stranger = "0x" + "9" * 40
        with self.assertRaises(UnknownIdentity):
            self.flow.initiate(SENDER, stranger, "KRWK", "USDC", 1000)
        self.assertEqual(self.trades.list_trades(), [])

    def test_flagged_sender_leaves_trade_pending(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)
        self.risk.add_address(SENDER, "FRAUD")

        with self.assertRaises(ComplianceError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.chain.execute_atomic_swap.assert_not_called()
        self.assertEqual(self.trades.load(trade.id).status, TradeStatus.WAITING_RECIPIENT)
        # guard released: a later approval can still run once cleared
        self.assertTrue(self.trades.claim(trade.id))

    def test_wrong_key_leaves_trade_pending(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        with self.assertRaises(DecryptionFailed):
            self.flow.approve(trade.id, RECIPIENT, self.other_private)

        self.chain.execute_atomic_swap.assert_not_called()
        self.assertEqual(self.trades.load(trade.id).status, TradeStatus.WAITING_RECIPIENT)

    def test_swap_revert_marks_failed(self):
        self.chain.execute_atomic_swap.return_value = TxResult(
            success=False, tx_hash="0xdead", error="swap reverted"
        )
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        with self.assertRaises(SettlementError) as ctx:
            self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.assertEqual(ctx.exception.tx_hash, "0xdead")
        failed = self.trades.load(trade.id)
        self.assertEqual(failed.status, TradeStatus.FAILED)
        self.assertEqual(failed.last_error, "swap reverted")

        with self.assertRaises(TradeStateError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)
        self.assertEqual(self.chain.execute_atomic_swap.call_count, 1)

    def test_swap_submission_error_marks_failed(self):
        self.chain.execute_atomic_swap.side_effect = ConnectionError("rpc down")
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1_000_000)

        with self.assertRaises(SettlementError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.assertEqual(self.trades.load(trade.id).status, TradeStatus.FAILED)
        self.assertIn("rpc down", self.trades.load(trade.id).last_error)

    def test_record_mint_failure_marks_failed(self):
        self.chain.mint_compliance_record.return_value = TxResult(success=False, error="mint reverted")

        with self.assertRaises(SettlementError) as ctx:
            self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000)

        self.assertEqual(self.trades.load(ctx.exception.trade_id).status, TradeStatus.FAILED)
        self.assertEqual(self.flow.discover(RECIPIENT), [])

    def test_approval_in_progress_rejected(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000)
        self.trades.claim(trade.id)

        with self.assertRaises(TradeStateError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)
        self.chain.execute_atomic_swap.assert_not_called()

    def test_approval_settled_before_claim_is_not_resubmitted(self):
        trade = self.flow.initiate(SENDER, RECIPIENT, "KRWK", "USDC", 1000)
        real_claim = self.trades.claim

        def claim_after_other_session(trade_id, *args, **kwargs):
            # a second session finishes its approval between our load and claim
            self.trades.claim = real_claim
            self.flow.approve(trade_id, RECIPIENT, self.private_key)
            return real_claim(trade_id, *args, **kwargs)

        self.trades.claim = claim_after_other_session

        with self.assertRaises(TradeStateError):
            self.flow.approve(trade.id, RECIPIENT, self.private_key)

        self.assertEqual(self.chain.execute_atomic_swap.call_count, 1)
        self.assertEqual(self.trades.load(trade.id).status, TradeStatus.EXECUTED)
        self.assertTrue(self.trades.claim(trade.id))


if __name__ == "__main__":
    unittest.main()
