"""
EVM client for the RailX custody vault, stablecoin tokens and the
compliance-record ledger.

All writes follow the same path: build_transaction -> sign locally ->
send_raw_transaction -> wait for receipt -> status check. Failures come back
as TxResult(success=False); callers decide what a failure means.
"""

import os
import logging
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any

from web3 import Web3
from web3.exceptions import TransactionNotFound
from eth_account import Account

from ..core import ASSETS, to_base_units, from_base_units, normalize_address

log = logging.getLogger(__name__)

# Compliance-record discovery window
RECORD_LOOKBACK_BLOCKS = 5000

ERC20_ABI = [
    {
        "name": "transfer",
        "type": "function",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

VAULT_ABI = [
    {
        "name": "depositLiquidity",
        "type": "function",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "withdrawLiquidity",
        "type": "function",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "executeMarketSwap",
        "type": "function",
        "inputs": [
            {"name": "tradeId", "type": "bytes32"},
            {"name": "sender", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "lp", "type": "address"},
            {"name": "tokenIn", "type": "address"},
            {"name": "tokenOut", "type": "address"},
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOut", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "lpBalances",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "", "type": "address"},
            {"name": "", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

COMPLIANCE_RECORD_ABI = [
    {
        "name": "mintComplianceRecord",
        "type": "function",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "uri", "type": "string"},
            {"name": "relatedTxHash", "type": "string"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "ComplianceRecordMinted",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "tokenId", "type": "uint256", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "relatedTxHash", "type": "string", "indexed": False},
            {"name": "metadataUri", "type": "string", "indexed": False}
        ]
    }
]


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337
    vault_address: str = ""
    record_address: str = ""
    tokens: Dict[str, str] = field(default_factory=dict)   # symbol -> token address
    gas_transfer: int = 100000
    gas_swap: int = 400000
    gas_mint: int = 300000
    gas_price_multiplier: float = 1.1
    receipt_timeout: int = 120

    @classmethod
    def from_env(cls, environ=None) -> "EVMConfig":
        """
        Read RAILX_RPC_URL, RAILX_CHAIN_ID, RAILX_VAULT, RAILX_RECORDS and
        one RAILX_TOKEN_<SYMBOL> per supported asset.
        """
        env = os.environ if environ is None else environ
        tokens = {}
        for symbol in ASSETS:
            address = env.get(f"RAILX_TOKEN_{symbol}")
            if address:
                tokens[symbol] = address
        return cls(
            rpc_url=env.get("RAILX_RPC_URL", cls.rpc_url),
            chain_id=int(env.get("RAILX_CHAIN_ID", cls.chain_id)),
            vault_address=env.get("RAILX_VAULT", ""),
            record_address=env.get("RAILX_RECORDS", ""),
            tokens=tokens,
        )


@dataclass
class TxResult:
    """Result from an on-chain write."""
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Dict] = None


@dataclass
class ComplianceRecord:
    """One ComplianceRecordMinted event."""
    token_id: int
    sender: str
    receiver: str
    related_reference: str
    metadata_uri: str
    block_number: int = 0
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "related_reference": self.related_reference,
            "metadata_uri": self.metadata_uri,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }


def _hex(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


def trade_id_bytes(trade_id: str) -> bytes:
    """bytes32 argument from a 0x-prefixed 64-hex trade id."""
    raw = bytes.fromhex(trade_id[2:] if trade_id.startswith("0x") else trade_id)
    if len(raw) != 32:
        raise ValueError(f"trade id must be 32 bytes, got {len(raw)}")
    return raw


class EVMClient:
    """
    Signer-bound client for one wallet session.

    The private key lives only in this object; the server never constructs
    one with a user's key.
    """

    def __init__(self, config: EVMConfig, private_key: Optional[str] = None, web3: Web3 = None):
        self.config = config
        self._web3 = web3
        self._account = None
        if private_key:
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            self._account = Account.from_key(private_key)

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def token_address(self, asset: str) -> str:
        if asset not in self.config.tokens:
            raise ValueError(f"No token contract configured for {asset}")
        return Web3.to_checksum_address(self.config.tokens[asset])

    def _vault(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.vault_address), abi=VAULT_ABI
        )

    def _records(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.record_address), abi=COMPLIANCE_RECORD_ABI
        )

    def _token(self, asset: str):
        return self.web3.eth.contract(address=self.token_address(asset), abi=ERC20_ABI)

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def _send(self, fn, gas: int, label: str) -> TxResult:
        """Build, sign, submit and confirm one contract call."""
        if self._account is None:
            return TxResult(success=False, error="No signer configured")

        try:
            w3 = self.web3
            sender = self._account.address
            nonce = w3.eth.get_transaction_count(sender, 'pending')
            gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)

            tx = fn.build_transaction({
                'from': sender,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id
            })

            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            log.info(f"{label} TX: {_hex(tx_hash)}")

            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.receipt_timeout)
            if receipt['status'] != 1:
                return TxResult(success=False, tx_hash=_hex(tx_hash), error=f"{label} reverted")

            return TxResult(success=True, tx_hash=_hex(tx_hash), data={"receipt": receipt})

        except Exception as e:
            log.error(f"{label} failed: {e}")
            return TxResult(success=False, error=str(e))

    def transfer(self, asset: str, to: str, amount: Decimal) -> TxResult:
        """ERC-20 transfer of a display amount."""
        fn = self._token(asset).functions.transfer(
            Web3.to_checksum_address(to), to_base_units(amount, asset)
        )
        return self._send(fn, self.config.gas_transfer, f"transfer {amount} {asset}")

    def approve(self, asset: str, spender: str, amount: Decimal) -> TxResult:
        fn = self._token(asset).functions.approve(
            Web3.to_checksum_address(spender), to_base_units(amount, asset)
        )
        return self._send(fn, self.config.gas_transfer, f"approve {asset}")

    def deposit_liquidity(self, asset: str, amount: Decimal) -> TxResult:
        fn = self._vault().functions.depositLiquidity(
            self.token_address(asset), to_base_units(amount, asset)
        )
        return self._send(fn, self.config.gas_swap, f"deposit {amount} {asset}")

    def withdraw_liquidity(self, asset: str, amount: Decimal) -> TxResult:
        fn = self._vault().functions.withdrawLiquidity(
            self.token_address(asset), to_base_units(amount, asset)
        )
        return self._send(fn, self.config.gas_swap, f"withdraw {amount} {asset}")

    def execute_atomic_swap(
        self,
        trade_id: str,
        sender: str,
        recipient: str,
        lp: str,
        asset_in: str,
        asset_out: str,
        amount_in: Decimal,
        amount_out: Decimal,
    ) -> TxResult:
        """
        Settle both legs in one vault call.

        The vault debits payer and LP and credits the recipient, or reverts
        as a whole (including when the LP's real balance is short).
        """
        fn = self._vault().functions.executeMarketSwap(
            trade_id_bytes(trade_id),
            Web3.to_checksum_address(sender),
            Web3.to_checksum_address(recipient),
            Web3.to_checksum_address(lp),
            self.token_address(asset_in),
            self.token_address(asset_out),
            to_base_units(amount_in, asset_in),
            to_base_units(amount_out, asset_out),
        )
        return self._send(fn, self.config.gas_swap, f"swap {trade_id[:10]}...")

    def mint_compliance_record(self, recipient: str, metadata_uri: str,
                               related_reference: str) -> TxResult:
        fn = self._records().functions.mintComplianceRecord(
            Web3.to_checksum_address(recipient), metadata_uri, related_reference
        )
        return self._send(fn, self.config.gas_mint, "mint record")

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def lp_balance(self, lp: str, asset: str) -> Decimal:
        """Vault custody balance of lp for asset (display units)."""
        units = self._vault().functions.lpBalances(
            Web3.to_checksum_address(lp), self.token_address(asset)
        ).call()
        return from_base_units(units, asset)

    def tx_succeeded(self, tx_hash: str) -> bool:
        """True when tx_hash is mined with status 1."""
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return False
        return receipt['status'] == 1

    def token_balance(self, owner: str, asset: str) -> Decimal:
        units = self._token(asset).functions.balanceOf(Web3.to_checksum_address(owner)).call()
        return from_base_units(units, asset)

    def compliance_records(self, receiver: str,
                           lookback_blocks: int = RECORD_LOOKBACK_BLOCKS) -> List[ComplianceRecord]:
        """ComplianceRecordMinted events addressed to receiver, oldest first."""
        latest = self.web3.eth.block_number
        from_block = max(0, latest - lookback_blocks)
        events = self._records().events.ComplianceRecordMinted.get_logs(
            from_block=from_block,
            to_block=latest,
            argument_filters={"receiver": Web3.to_checksum_address(receiver)},
        )
        records = []
        for event in events:
            args = event["args"]
            records.append(ComplianceRecord(
                token_id=int(args["tokenId"]),
                sender=normalize_address(args["sender"]),
                receiver=normalize_address(args["receiver"]),
                related_reference=args["relatedTxHash"],
                metadata_uri=args["metadataUri"],
                block_number=event.get("blockNumber", 0),
                tx_hash=_hex(event["transactionHash"]) if event.get("transactionHash") else None,
            ))
        return records
