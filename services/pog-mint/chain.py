"""
Chain collaborators: a read-only view of the Base node and the settlement ledger
that transfers POG rewards and relays EIP-3009 authorizations.

`POG_SETTLEMENT_MODE=mock` (default) uses deterministic fake transaction ids so
the gateway can run without an operator key; `onchain` signs and broadcasts
with web3.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any

from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3
from web3.exceptions import LogTopicError, MismatchedABI, TransactionNotFound

from proofs import AuthorizationProof
from settings import GatewaySettings

logger = logging.getLogger(__name__)

RPC_REQUEST_TIMEOUT_SECONDS = 20
RECEIPT_TIMEOUT_SECONDS = 180
DEFAULT_TRANSFER_GAS_LIMIT = 120_000
DEFAULT_RELAY_GAS_LIMIT = 220_000

ERC20_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "from", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

USDC_TRANSFER_WITH_AUTHORIZATION_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "from", "type": "address"},
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "value", "type": "uint256"},
            {"internalType": "uint256", "name": "validAfter", "type": "uint256"},
            {"internalType": "uint256", "name": "validBefore", "type": "uint256"},
            {"internalType": "bytes32", "name": "nonce", "type": "bytes32"},
            {"internalType": "uint8", "name": "v", "type": "uint8"},
            {"internalType": "bytes32", "name": "r", "type": "bytes32"},
            {"internalType": "bytes32", "name": "s", "type": "bytes32"},
        ],
        "name": "transferWithAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


@dataclass(frozen=True)
class TransferReceipt:
    txid: str
    success: bool


def _hex_tx_hash(tx_hash: Any) -> str:
    raw = tx_hash.hex() if isinstance(tx_hash, (bytes, bytearray)) else str(tx_hash)
    raw = raw.lower()
    return raw if raw.startswith("0x") else f"0x{raw}"


def split_signature(signature: str) -> tuple[int, bytes, bytes]:
    raw = bytes.fromhex(signature[2:])
    if len(raw) != 65:
        raise ValueError("signature must be exactly 65 bytes")
    v = raw[64]
    if v < 27:
        v += 27
    return v, raw[:32], raw[32:64]


def connect_web3(rpc_url: str) -> Web3:
    web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": RPC_REQUEST_TIMEOUT_SECONDS}))
    if not web3.is_connected():
        raise RuntimeError("Unable to connect to Base RPC endpoint")
    return web3


class Web3ChainReader:
    def __init__(self, web3: Web3) -> None:
        self.web3 = web3
        # Transfer(address,address,uint256) has one signature for every ERC-20;
        # the emitting contract is checked by the caller.
        self._token = web3.eth.contract(abi=ERC20_ABI)

    def get_transaction(self, tx_hash: str) -> Any | None:
        try:
            return self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None

    def get_receipt(self, tx_hash: str) -> Any | None:
        try:
            return self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def decode_log(self, log: Any) -> dict[str, Any] | None:
        try:
            event = self._token.events.Transfer().process_log(log)
        except (MismatchedABI, LogTopicError, DecodingError, ValueError):
            return None
        return {
            "event": event["event"],
            "address": str(event["address"]),
            "args": dict(event["args"]),
        }


class Web3SettlementLedger:
    def __init__(
        self,
        web3: Web3,
        operator_private_key: str,
        reward_token_address: str,
        payment_asset: str,
        chain_id: int,
        transfer_gas_limit: int = DEFAULT_TRANSFER_GAS_LIMIT,
        relay_gas_limit: int = DEFAULT_RELAY_GAS_LIMIT,
    ) -> None:
        self.web3 = web3
        self.chain_id = chain_id
        self._private_key = operator_private_key
        self.operator = Account.from_key(operator_private_key)
        self.transfer_gas_limit = transfer_gas_limit
        self.relay_gas_limit = relay_gas_limit
        self._reward_token = web3.eth.contract(address=Web3.to_checksum_address(reward_token_address), abi=ERC20_ABI)
        self._payment_token = web3.eth.contract(
            address=Web3.to_checksum_address(payment_asset),
            abi=USDC_TRANSFER_WITH_AUTHORIZATION_ABI,
        )
        # One operator account signs both relays and mints; nonces must not interleave.
        self._send_lock = threading.Lock()

    def _send(self, call: Any, gas_limit: int) -> TransferReceipt:
        with self._send_lock:
            tx = call.build_transaction(
                {
                    "from": self.operator.address,
                    "chainId": self.chain_id,
                    "nonce": self.web3.eth.get_transaction_count(self.operator.address, "pending"),
                    "gas": gas_limit,
                    "gasPrice": self.web3.eth.gas_price,
                }
            )
            signed_tx = self.web3.eth.account.sign_transaction(tx, private_key=self._private_key)
            tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
        txid = _hex_tx_hash(tx_hash)
        logger.info("Broadcast transaction %s", txid)
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS)
        return TransferReceipt(txid=txid, success=receipt.get("status") == 1)

    def transfer(self, to: str, amount: int) -> TransferReceipt:
        call = self._reward_token.functions.transfer(Web3.to_checksum_address(to), int(amount))
        return self._send(call, self.transfer_gas_limit)

    def relay_authorization(self, authorization: AuthorizationProof, signature: str) -> TransferReceipt:
        v, r, s = split_signature(signature)
        call = self._payment_token.functions.transferWithAuthorization(
            Web3.to_checksum_address(authorization.from_address),
            Web3.to_checksum_address(authorization.to_address),
            int(authorization.value),
            int(authorization.valid_after),
            int(authorization.valid_before),
            bytes.fromhex(authorization.nonce[2:]),
            v,
            r,
            s,
        )
        return self._send(call, self.relay_gas_limit)

    def remaining_supply(self) -> int | None:
        return int(self._reward_token.functions.balanceOf(self.operator.address).call())


class MockSettlementLedger:
    """Deterministic ledger for mock mode and tests; nothing is broadcast."""

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()
        self.transfers: list[tuple[str, int, str]] = []
        self.relays: list[tuple[AuthorizationProof, str]] = []

    @staticmethod
    def _tx_id(seed: str) -> str:
        return f"0x{hashlib.sha256(seed.encode('utf-8')).hexdigest()}"

    def transfer(self, to: str, amount: int) -> TransferReceipt:
        with self._lock:
            txid = self._tx_id(f"transfer:{to.lower()}:{amount}:{next(self._sequence)}")
            self.transfers.append((to, amount, txid))
        return TransferReceipt(txid=txid, success=True)

    def relay_authorization(self, authorization: AuthorizationProof, signature: str) -> TransferReceipt:
        with self._lock:
            self.relays.append((authorization, signature))
        return TransferReceipt(txid=self._tx_id(f"relay:{signature.lower()}:{authorization.nonce}"), success=True)

    def remaining_supply(self) -> int | None:
        return None


def build_collaborators(settings: GatewaySettings) -> tuple[Web3ChainReader | None, Any]:
    web3 = connect_web3(settings.rpc_url) if settings.rpc_url else None
    chain_reader = Web3ChainReader(web3) if web3 is not None else None

    if not settings.onchain:
        return chain_reader, MockSettlementLedger()

    if web3 is None or not settings.operator_private_key or not settings.reward_token_address:
        raise RuntimeError("on-chain settlement requires POG_BASE_RPC_URL, POG_OPERATOR_PRIVATE_KEY and POG_REWARD_TOKEN_ADDRESS")
    ledger = Web3SettlementLedger(
        web3=web3,
        operator_private_key=settings.operator_private_key,
        reward_token_address=settings.reward_token_address,
        payment_asset=settings.payment_asset,
        chain_id=settings.chain_id,
    )
    return chain_reader, ledger
