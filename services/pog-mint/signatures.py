"""
EIP-712 signer recovery.
"""

from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from errors import ErrorCode, PaymentVerificationError, SignatureMismatchError
from proofs import AuthorizationProof
from settings import normalize_address

logger = logging.getLogger(__name__)

TRANSFER_WITH_AUTHORIZATION = "TransferWithAuthorization"

TRANSFER_WITH_AUTH_TYPES = {
    TRANSFER_WITH_AUTHORIZATION: [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

EIP712_DOMAIN_FIELDS = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)


def _is_integer_type(type_name: str) -> bool:
    return type_name.startswith("uint") or type_name.startswith("int")


def _coerce_integer(value: Any) -> Any:
    if isinstance(value, str):
        candidate = value.strip()
        if candidate.lower().startswith("0x"):
            return int(candidate, 16)
        if candidate.lstrip("-").isdigit():
            return int(candidate)
    return value


def _coerce_struct(fields: list[dict[str, Any]], values: dict[str, Any]) -> dict[str, Any]:
    # Wallets commonly serialize uint256 as decimal strings.
    coerced = dict(values)
    for field in fields:
        name = field["name"]
        if name in coerced and _is_integer_type(str(field["type"])):
            coerced[name] = _coerce_integer(coerced[name])
    return coerced


def _domain_type(domain: dict[str, Any]) -> list[dict[str, str]]:
    return [{"name": name, "type": type_name} for name, type_name in EIP712_DOMAIN_FIELDS if name in domain]


class SignatureVerifier:
    """Deterministic, network-free EIP-712 verification."""

    def recover_signer(
        self,
        domain: dict[str, Any],
        types: dict[str, Any],
        message: dict[str, Any],
        signature: str,
        expected_signer: str | None = None,
        primary_type: str | None = None,
    ) -> str:
        all_types = dict(types)
        if "EIP712Domain" not in all_types:
            all_types["EIP712Domain"] = _domain_type(domain)
        if primary_type is None:
            struct_names = [name for name in types if name != "EIP712Domain"]
            if len(struct_names) != 1:
                raise SignatureMismatchError("typed data primary type is ambiguous")
            primary_type = struct_names[0]

        try:
            full_message = {
                "types": all_types,
                "primaryType": primary_type,
                "domain": _coerce_struct(all_types["EIP712Domain"], domain),
                "message": _coerce_struct(all_types[primary_type], message),
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise PaymentVerificationError(
                ErrorCode.MALFORMED_PROOF, f"typed data has an invalid integer or type field: {exc}"
            ) from exc

        try:
            signable = encode_typed_data(full_message=full_message)
            recovered = normalize_address(Account.recover_message(signable, signature=signature), "recovered signer")
        except Exception as exc:
            logger.debug("EIP-712 recovery failed: %s", exc)
            raise SignatureMismatchError("signature could not be recovered from the typed data") from exc

        if expected_signer is not None and recovered != normalize_address(expected_signer, "expected signer"):
            raise SignatureMismatchError("signature does not recover to the asserted payer")
        return recovered

    def recover_transfer_authorization(
        self,
        authorization: AuthorizationProof,
        chain_id: int,
        verifying_contract: str,
        domain_name: str,
        domain_version: str,
    ) -> str:
        return self.recover_signer(
            domain={
                "name": domain_name,
                "version": domain_version,
                "chainId": chain_id,
                "verifyingContract": verifying_contract,
            },
            types=TRANSFER_WITH_AUTH_TYPES,
            message={
                "from": authorization.from_address,
                "to": authorization.to_address,
                "value": int(authorization.value),
                "validAfter": int(authorization.valid_after),
                "validBefore": int(authorization.valid_before),
                "nonce": authorization.nonce,
            },
            signature=authorization.signature,
            expected_signer=authorization.from_address,
            primary_type=TRANSFER_WITH_AUTHORIZATION,
        )
