"""
Environment configuration for the POG mint gateway.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

DEFAULT_PAYMENT_ASSET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DEFAULT_PAYMENT_NETWORK = "base"
DEFAULT_PAYMENT_TOKEN_NAME = "USD Coin"
DEFAULT_PAYMENT_TOKEN_VERSION = "2"
DEFAULT_REQUIRED_AMOUNT = 1_000_000
DEFAULT_REWARD_AMOUNT = 10_000 * 10**18
DEFAULT_REWARD_TOKEN_SYMBOL = "POG"
DEFAULT_REWARD_TOKEN_DECIMALS = 18
DEFAULT_RESOURCE_URL = "https://pog-token-api.vercel.app/mint"
DEFAULT_RESOURCE_DESCRIPTION = "Mint 10,000 $POG tokens - Pay 1 USDC on Base, get POG tokens instantly!"
DEFAULT_MAX_TIMEOUT_SECONDS = 300
DEFAULT_VERIFICATION_TIMEOUT_SECONDS = 240
DEFAULT_SETTLEMENT_TIMEOUT_SECONDS = 240
DEFAULT_RESERVATION_LEASE_SECONDS = 15 * 60
DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

# x402 v1 network name, chain id, block explorer
NETWORKS = {
    "base": ("base", 8453, "https://basescan.org"),
    "base-mainnet": ("base", 8453, "https://basescan.org"),
    "eip155:8453": ("base", 8453, "https://basescan.org"),
    "8453": ("base", 8453, "https://basescan.org"),
    "base-sepolia": ("base-sepolia", 84532, "https://sepolia.basescan.org"),
    "eip155:84532": ("base-sepolia", 84532, "https://sepolia.basescan.org"),
    "84532": ("base-sepolia", 84532, "https://sepolia.basescan.org"),
}

SETTLEMENT_MODES = ("mock", "onchain")


def normalize_address(value: str, field_name: str) -> str:
    candidate = str(value or "").strip()
    if not ADDRESS_PATTERN.fullmatch(candidate):
        raise ValueError(f"{field_name} must be a 0x-prefixed 20-byte hex address")
    return f"0x{candidate[2:].lower()}"


def optional_normalized_address(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not ADDRESS_PATTERN.fullmatch(candidate):
        return None
    return f"0x{candidate[2:].lower()}"


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} environment variable is required")
    return value


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return parsed


def _read_address_env(name: str, default: str | None = None) -> str | None:
    raw = os.environ.get(name, "").strip() or default
    if not raw:
        return None
    try:
        return normalize_address(raw, name)
    except ValueError as exc:
        raise RuntimeError(str(exc)) from exc


def _operator_address(private_key: str) -> str:
    from eth_account import Account

    return normalize_address(Account.from_key(private_key).address, "operator address")


@dataclass(frozen=True)
class GatewaySettings:
    recipient_wallet: str
    payment_asset: str
    network: str
    chain_id: int
    explorer_url: str
    required_amount: int
    reward_amount: int
    payment_token_name: str = DEFAULT_PAYMENT_TOKEN_NAME
    payment_token_version: str = DEFAULT_PAYMENT_TOKEN_VERSION
    reward_token_address: str | None = None
    reward_token_symbol: str = DEFAULT_REWARD_TOKEN_SYMBOL
    reward_token_decimals: int = DEFAULT_REWARD_TOKEN_DECIMALS
    resource_url: str = DEFAULT_RESOURCE_URL
    resource_description: str = DEFAULT_RESOURCE_DESCRIPTION
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    verification_timeout_seconds: int = DEFAULT_VERIFICATION_TIMEOUT_SECONDS
    settlement_timeout_seconds: int = DEFAULT_SETTLEMENT_TIMEOUT_SECONDS
    reservation_lease_seconds: int = DEFAULT_RESERVATION_LEASE_SECONDS
    settlement_mode: str = "mock"
    rpc_url: str | None = None
    operator_private_key: str | None = None
    idempotency_table_name: str | None = None
    facilitator_url: str = DEFAULT_FACILITATOR_URL

    @property
    def onchain(self) -> bool:
        return self.settlement_mode == "onchain"

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        settlement_mode = os.environ.get("POG_SETTLEMENT_MODE", "mock").strip().lower() or "mock"
        if settlement_mode not in SETTLEMENT_MODES:
            raise RuntimeError("POG_SETTLEMENT_MODE must be either mock or onchain")

        operator_private_key = os.environ.get("POG_OPERATOR_PRIVATE_KEY", "").strip() or None
        rpc_url = os.environ.get("POG_BASE_RPC_URL", "").strip() or None
        reward_token_address = _read_address_env("POG_REWARD_TOKEN_ADDRESS")
        if settlement_mode == "onchain":
            rpc_url = _require_env("POG_BASE_RPC_URL")
            operator_private_key = _require_env("POG_OPERATOR_PRIVATE_KEY")
            if reward_token_address is None:
                raise RuntimeError("POG_REWARD_TOKEN_ADDRESS environment variable is required")

        recipient_wallet = _read_address_env("POG_RECIPIENT_WALLET")
        if recipient_wallet is None:
            if not operator_private_key:
                raise RuntimeError("POG_RECIPIENT_WALLET or POG_OPERATOR_PRIVATE_KEY must be set")
            recipient_wallet = _operator_address(operator_private_key)

        network_raw = os.environ.get("POG_PAYMENT_NETWORK", DEFAULT_PAYMENT_NETWORK).strip().lower()
        if network_raw not in NETWORKS:
            raise RuntimeError("POG_PAYMENT_NETWORK must be Base mainnet or Base Sepolia")
        network, chain_id, explorer_url = NETWORKS[network_raw]

        return cls(
            recipient_wallet=recipient_wallet,
            payment_asset=_read_address_env("POG_PAYMENT_ASSET", DEFAULT_PAYMENT_ASSET),
            network=network,
            chain_id=chain_id,
            explorer_url=explorer_url,
            required_amount=_read_int_env("POG_REQUIRED_AMOUNT", DEFAULT_REQUIRED_AMOUNT),
            reward_amount=_read_int_env("POG_REWARD_AMOUNT", DEFAULT_REWARD_AMOUNT),
            payment_token_name=os.environ.get("POG_PAYMENT_TOKEN_NAME", DEFAULT_PAYMENT_TOKEN_NAME),
            payment_token_version=os.environ.get("POG_PAYMENT_TOKEN_VERSION", DEFAULT_PAYMENT_TOKEN_VERSION),
            reward_token_address=reward_token_address,
            reward_token_symbol=os.environ.get("POG_REWARD_TOKEN_SYMBOL", DEFAULT_REWARD_TOKEN_SYMBOL),
            reward_token_decimals=_read_int_env(
                "POG_REWARD_TOKEN_DECIMALS", DEFAULT_REWARD_TOKEN_DECIMALS, minimum=0
            ),
            resource_url=os.environ.get("POG_RESOURCE_URL", "").strip() or DEFAULT_RESOURCE_URL,
            resource_description=(
                os.environ.get("POG_RESOURCE_DESCRIPTION", "").strip() or DEFAULT_RESOURCE_DESCRIPTION
            ),
            max_timeout_seconds=_read_int_env("POG_MAX_TIMEOUT_SECONDS", DEFAULT_MAX_TIMEOUT_SECONDS),
            verification_timeout_seconds=_read_int_env(
                "POG_VERIFICATION_TIMEOUT_SECONDS", DEFAULT_VERIFICATION_TIMEOUT_SECONDS
            ),
            settlement_timeout_seconds=_read_int_env(
                "POG_SETTLEMENT_TIMEOUT_SECONDS", DEFAULT_SETTLEMENT_TIMEOUT_SECONDS
            ),
            reservation_lease_seconds=_read_int_env(
                "POG_RESERVATION_LEASE_SECONDS", DEFAULT_RESERVATION_LEASE_SECONDS
            ),
            settlement_mode=settlement_mode,
            rpc_url=rpc_url,
            operator_private_key=operator_private_key,
            idempotency_table_name=os.environ.get("POG_IDEMPOTENCY_TABLE_NAME", "").strip() or None,
            facilitator_url=os.environ.get("POG_FACILITATOR_URL", "").strip() or DEFAULT_FACILITATOR_URL,
        )
