"""
Settlement Workflow.

States: QUOTED (ephemeral) -> WAITING_RECIPIENT -> EXECUTED | FAILED
Direct transfers (same asset) go straight to EXECUTED | FAILED.

Initiate (sender):
    quote -> sender gate on recipient -> recipient key -> encrypt + publish
    direct: transfer -> mint record(ref = transfer tx hash) -> terminal record
    swap:   WAITING_RECIPIENT record -> mint record(ref = trade id)

Approve (recipient):
    recipient gate on sender -> fetch + decrypt packet -> atomic swap with
    the quoted amounts -> EXECUTED, or FAILED on revert

Nothing is written before the gate, key resolution and publish succeed. Once
a record exists, technical failures end it in FAILED, never in limbo.
"""

import secrets
import logging
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from cryptography.hazmat.primitives.asymmetric import rsa

from ..core import (
    DIRECT_LP,
    TradeRequest,
    TradeStatus,
    TransactionMetadata,
    QuoteResult,
    normalize_address,
    utc_now_iso,
)
from ..errors import ValidationError, SettlementError, TradeStateError
from ..chains.evm import TxResult
from ..compliance.channel import encrypt_packet, decrypt_packet
from ..compliance.gate import ComplianceGate
from ..compliance.identity import KeyStore
from ..liquidity.quote import QuoteEngine, require_fill
from .store import TradeStore, PacketStore

log = logging.getLogger(__name__)


def new_trade_id() -> str:
    """Random 256-bit request id, 0x-prefixed hex."""
    return "0x" + secrets.token_bytes(32).hex()


def trade_terms(trade_id: str, quote: QuoteResult) -> Dict[str, Any]:
    return {
        "tradeId": trade_id,
        "fromAsset": quote.from_asset,
        "toAsset": quote.to_asset,
        "sendAmount": str(quote.send_amount),
        "receiveAmount": str(quote.receive_amount),
        "appliedRate": str(quote.effective_rate),
        "matchedLpId": quote.matched_lp_id,
    }


@dataclass
class ApprovalResult:
    """Executed trade plus the decrypted packet with both audits merged."""
    trade: TradeRequest
    payload: Dict[str, Any] = field(default_factory=dict)


class SettlementWorkflow:
    """
    Sender and recipient steps for one wallet session.

    The chain client carries that session's signer. The repositories are
    either the in-process stores or their railx.remote counterparts when
    sender and recipient run in separate sessions.
    """

    def __init__(
        self,
        quotes: QuoteEngine,
        trades: TradeStore,
        packets: PacketStore,
        keystore: KeyStore,
        gate: ComplianceGate,
        chain,
    ):
        self.quotes = quotes
        self.trades = trades
        self.packets = packets
        self.keystore = keystore
        self.gate = gate
        self.chain = chain

    # -------------------------------------------------------------------------
    # Sender side
    # -------------------------------------------------------------------------

    def initiate(
        self,
        sender: str,
        recipient: str,
        from_asset: str,
        to_asset: str,
        send_amount: Any,
        metadata: Optional[TransactionMetadata] = None,
        recipient_name: Optional[str] = None,
        trade_id: Optional[str] = None,
    ) -> TradeRequest:
        """
        Quote, screen, encrypt, publish and start settlement.

        Args:
            sender: Payer principal id
            recipient: Payee principal id
            from_asset: Asset the payer sends
            to_asset: Asset the payee receives
            send_amount: Amount in from_asset units
            metadata: Payment description sealed into the packet
            recipient_name: Name screened by KYC (defaults to metadata's)
            trade_id: Caller-chosen id; refused if already used

        Returns:
            WAITING_RECIPIENT record (swap) or terminal record (direct)

        Raises:
            ValidationError / LiquidityError: before anything is published
            ComplianceError: recipient failed the sender's gate
            UnknownIdentity: recipient has no registered key
            TradeStateError: trade_id already used
            SettlementError: on-chain step failed (record is FAILED)
        """
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        if trade_id is not None:
            existing = self.trades.get(trade_id)
            if existing is not None:
                raise TradeStateError(trade_id, existing.status.value,
                                      f"Trade {trade_id} already exists")

        quote = require_fill(self.quotes.quote(from_asset, to_asset, send_amount))

        if metadata is not None:
            metadata.validate()
            if normalize_address(metadata.recipient_address) != recipient:
                raise ValidationError("Metadata recipient does not match trade recipient")
        name = recipient_name or (metadata.recipient_name if metadata else None)

        audit = self.gate.run_compliance_scan(recipient, name)
        public_key = self.keystore.public_key(recipient)

        trade_id = trade_id or new_trade_id()
        payload = self._build_payload(trade_id, sender, recipient, quote, metadata, audit)
        locator = self.packets.publish(encrypt_packet(payload, public_key), sender)

        if quote.is_direct:
            return self._direct_transfer(trade_id, sender, recipient, quote, locator)
        return self._register_swap(trade_id, sender, recipient, quote, locator)

    def _build_payload(self, trade_id, sender, recipient, quote, metadata, audit) -> Dict[str, Any]:
        payload = metadata.to_dict() if metadata else {}
        payload.update({
            "token": quote.from_asset,
            "amount": str(quote.send_amount),
            "senderAddress": sender,
            "recipientAddress": recipient,
            "timestamp": utc_now_iso(),
            "terms": trade_terms(trade_id, quote),
            "complianceAudit": {
                "logs": [entry.to_dict() for entry in audit],
                "senderCheckTime": utc_now_iso(),
            },
        })
        return payload

    def _new_record(self, trade_id, sender, recipient, quote, locator, status) -> TradeRequest:
        return TradeRequest(
            id=trade_id,
            sender_id=sender,
            recipient_id=recipient,
            matched_lp_id=quote.matched_lp_id,
            from_asset=quote.from_asset,
            to_asset=quote.to_asset,
            send_amount=quote.send_amount,
            receive_amount=quote.receive_amount,
            applied_rate=quote.effective_rate,
            status=status,
            encrypted_packet_ref=locator,
        )

    def _submit(self, label: str, fn, *args) -> TxResult:
        """Chain call whose exceptions count as a failed submission."""
        try:
            return fn(*args)
        except Exception as e:
            log.error(f"{label} submission failed: {e}")
            return TxResult(success=False, error=str(e))

    def _direct_transfer(self, trade_id, sender, recipient, quote, locator) -> TradeRequest:
        transfer = self._submit("transfer", self.chain.transfer,
                                quote.from_asset, recipient, quote.send_amount)
        if not transfer.success:
            trade = self._new_record(trade_id, sender, recipient, quote, locator, TradeStatus.FAILED)
            trade.tx_hash = transfer.tx_hash
            trade.last_error = transfer.error
            self.trades.create(trade)
            raise SettlementError(f"Transfer failed: {transfer.error}",
                                  trade_id=trade_id, tx_hash=transfer.tx_hash)

        trade = self._new_record(trade_id, sender, recipient, quote, locator, TradeStatus.EXECUTED)
        trade.tx_hash = transfer.tx_hash
        mint = self._submit("mint", self.chain.mint_compliance_record,
                            recipient, locator, transfer.tx_hash)
        if mint.success:
            trade.record_tx_hash = mint.tx_hash
        else:
            # funds moved; the record mint is bookkeeping only
            log.warning(f"Compliance record mint failed for {trade_id[:10]}...: {mint.error}")
            trade.last_error = f"record mint failed: {mint.error}"
        self.trades.create(trade)
        log.info(f"Direct transfer {quote.send_amount} {quote.from_asset} -> {recipient[:10]}... executed")
        return trade

    def _register_swap(self, trade_id, sender, recipient, quote, locator) -> TradeRequest:
        trade = self._new_record(trade_id, sender, recipient, quote, locator,
                                 TradeStatus.WAITING_RECIPIENT)
        self.trades.create(trade)

        mint = self._submit("mint", self.chain.mint_compliance_record, recipient, locator, trade_id)
        if not mint.success:
            self.trades.transition(trade_id, TradeStatus.WAITING_RECIPIENT, TradeStatus.FAILED,
                                   last_error=f"record mint failed: {mint.error}",
                                   record_tx_hash=mint.tx_hash)
            raise SettlementError(f"Compliance record mint failed: {mint.error}",
                                  trade_id=trade_id, tx_hash=mint.tx_hash)

        return self.trades.annotate(trade_id, record_tx_hash=mint.tx_hash)

    # -------------------------------------------------------------------------
    # Recipient side
    # -------------------------------------------------------------------------

    def discover(self, recipient: str) -> List[TradeRequest]:
        """Pending trades addressed to recipient."""
        return self.trades.pending_for(recipient)

    def inbox(self, recipient: str):
        """Compliance records minted to recipient on the ledger."""
        return self.chain.compliance_records(normalize_address(recipient))

    def open_packet(self, trade: TradeRequest, private_key: rsa.RSAPrivateKey) -> Dict[str, Any]:
        """Fetch and decrypt a trade's packet (fails closed)."""
        return decrypt_packet(self.packets.fetch(trade.encrypted_packet_ref), private_key)

    @staticmethod
    def _check_terms(trade: TradeRequest, payload: Dict[str, Any]):
        terms = payload.get("terms") if isinstance(payload, dict) else None
        if not isinstance(terms, dict):
            raise ValidationError("Packet carries no trade terms")
        expected = {
            "tradeId": trade.id,
            "fromAsset": trade.from_asset,
            "toAsset": trade.to_asset,
            "matchedLpId": trade.matched_lp_id,
        }
        for key, value in expected.items():
            if terms.get(key) != value:
                raise ValidationError(f"Packet {key} does not match trade record")
        for key, value in (("sendAmount", trade.send_amount), ("receiveAmount", trade.receive_amount)):
            if Decimal(str(terms.get(key, "NaN"))) != value:
                raise ValidationError(f"Packet {key} does not match trade record")

    def approve(
        self,
        trade_id: str,
        recipient: str,
        private_key: rsa.RSAPrivateKey,
        sender_name: Optional[str] = None,
    ) -> ApprovalResult:
        """
        Recipient approval: screen sender, decrypt, execute the swap.

        Compliance and decryption failures leave the trade WAITING_RECIPIENT.

        Raises:
            TradeStateError: trade terminal or already being settled
            ValidationError: caller is not the recipient, terms mismatch
            ComplianceError: sender failed the recipient's gate
            CryptoError: packet could not be decrypted
            SettlementError: swap reverted or was not submitted (trade FAILED)
        """
        trade = self.trades.load(trade_id)
        if trade.is_terminal:
            raise TradeStateError(trade_id, trade.status.value)
        if normalize_address(recipient) != trade.recipient_id:
            raise ValidationError("Only the recipient can approve this trade")
        if trade.matched_lp_id == DIRECT_LP:
            raise TradeStateError(trade_id, trade.status.value, "Direct transfers need no approval")

        if not self.trades.claim(trade_id):
            raise TradeStateError(trade_id, trade.status.value, "Approval already in progress")
        try:
            # another approval may have settled it before the claim
            trade = self.trades.load(trade_id)
            if trade.status != TradeStatus.WAITING_RECIPIENT:
                raise TradeStateError(trade_id, trade.status.value)

            recipient_logs = self.gate.run_compliance_scan(trade.sender_id, sender_name)
            payload = self.open_packet(trade, private_key)
            self._check_terms(trade, payload)

            log.info(f"Executing swap {trade_id[:10]}...: {trade.send_amount} {trade.from_asset} "
                     f"-> {trade.receive_amount} {trade.to_asset} via {trade.matched_lp_id[:10]}...")
            result = self._submit(
                "swap", self.chain.execute_atomic_swap,
                trade.id, trade.sender_id, trade.recipient_id, trade.matched_lp_id,
                trade.from_asset, trade.to_asset, trade.send_amount, trade.receive_amount,
            )
            if not result.success:
                self.trades.transition(trade_id, TradeStatus.WAITING_RECIPIENT, TradeStatus.FAILED,
                                       tx_hash=result.tx_hash, last_error=result.error)
                raise SettlementError(f"Swap failed: {result.error}",
                                      trade_id=trade_id, tx_hash=result.tx_hash)

            executed = self.trades.transition(trade_id, TradeStatus.WAITING_RECIPIENT,
                                              TradeStatus.EXECUTED, tx_hash=result.tx_hash)
        finally:
            self.trades.release(trade_id)

        audit = payload.setdefault("complianceAudit", {})
        audit["logs"] = list(audit.get("logs", [])) + [entry.to_dict() for entry in recipient_logs]
        audit["recipientChecked"] = True
        audit["recipientCheckTime"] = utc_now_iso()
        return ApprovalResult(trade=executed, payload=payload)
