"""
Proof-of-payment classification.

A request may carry exactly one of three proof shapes:
- `X-PAYMENT` (or `PAYMENT-SIGNATURE`): base64 x402 payload with an EIP-3009
  `payload.authorization` block.
- `X-PAYMENT-TYPED-DATA`: an EIP-712 typed-data document plus signature.
- `X-PAYMENT-TX` (or either header above): a Base transaction hash.

Parsing is pure: no network calls and no signature recovery.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Union

from errors import ErrorCode, ProofParseError
from settings import ADDRESS_PATTERN, normalize_address

PRIMARY_PROOF_HEADER_NAMES = (
    "x-payment",
    "payment-signature",
    "x-payment-tx",
)
TYPED_DATA_HEADER_NAME = "x-payment-typed-data"

TX_HASH_PATTERN = re.compile(r"^0x([a-fA-F0-9]{64})([a-fA-F0-9]*)$")
NONCE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
SIGNATURE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{130}$")

TRANSACTION_FIELDS = ("transaction", "transactionHash", "txHash")


@dataclass(frozen=True)
class TxHashProof:
    tx_hash: str


@dataclass(frozen=True)
class AuthorizationProof:
    from_address: str
    to_address: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str
    signature: str
    network: str | None = None
    asset: str | None = None
    domain_name: str | None = None
    domain_version: str | None = None


@dataclass(frozen=True)
class TypedSignatureProof:
    domain: dict[str, Any]
    types: dict[str, Any]
    primary_type: str
    message: dict[str, Any]
    signature: str

    @property
    def claimed_from(self) -> str:
        return normalize_address(self.message.get("from"), "message.from")


Proof = Union[TxHashProof, AuthorizationProof, TypedSignatureProof]


def _malformed(message: str) -> ProofParseError:
    return ProofParseError(ErrorCode.MALFORMED_PROOF, message)


def normalize_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    normalized: dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(key, str) and value is not None:
            normalized[key.lower()] = str(value).strip()
    return normalized


def _header_value(headers: dict[str, str], name: str) -> str | None:
    value = headers.get(name.lower())
    if value is None:
        return None
    return value.strip() or None


def primary_proof_header(headers: dict[str, str]) -> str | None:
    for header_name in PRIMARY_PROOF_HEADER_NAMES:
        value = _header_value(headers, header_name)
        if value:
            return value
    return None


def has_proof(headers: Any) -> bool:
    normalized = normalize_headers(headers)
    return primary_proof_header(normalized) is not None or _header_value(normalized, TYPED_DATA_HEADER_NAME) is not None


def normalize_signature(value: Any) -> str:
    signature = value.strip() if isinstance(value, str) else ""
    if not signature:
        raise _malformed("signature is required")
    if not signature.startswith("0x"):
        signature = f"0x{signature}"
    if not SIGNATURE_PATTERN.fullmatch(signature):
        raise _malformed("signature must be a 65-byte hex string")
    raw = bytearray(bytes.fromhex(signature[2:]))
    if raw[64] < 27:
        raw[64] += 27
    return f"0x{raw.hex()}"


def _normalize_nonce(nonce: Any) -> str:
    if not isinstance(nonce, str):
        raise _malformed("authorization nonce must be a hex string")
    normalized = nonce.strip()
    if not NONCE_PATTERN.fullmatch(normalized):
        raise _malformed("authorization nonce must be 32 bytes hex (0x-prefixed)")
    return f"0x{normalized[2:].lower()}"


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise _malformed(f"{field_name} must be an integer")
    try:
        if isinstance(value, str) and value.strip().lower().startswith("0x"):
            return int(value.strip(), 16)
        return int(value)
    except (TypeError, ValueError) as exc:
        raise _malformed(f"{field_name} must be an integer") from exc


def _address(value: Any, field_name: str) -> str:
    try:
        return normalize_address(value, field_name)
    except ValueError as exc:
        raise _malformed(str(exc)) from exc


def _decode_json_object(raw: str) -> dict[str, Any] | None:
    """Decode base64 JSON, falling back to plain JSON. Returns None when neither is an object."""
    candidates: list[str] = [raw]
    try:
        decoded = base64.b64decode(raw, validate=True).decode("utf-8")
        candidates.insert(0, decoded)
    except (binascii.Error, ValueError):
        pass

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _parse_authorization_payload(payment_payload: dict[str, Any]) -> AuthorizationProof:
    scheme = payment_payload.get("scheme")
    if scheme not in (None, "", "exact"):
        raise ProofParseError(ErrorCode.UNSUPPORTED_PROOF_VARIANT, f"payment scheme {scheme!r} is not supported")

    payload_obj = payment_payload["payload"]
    authorization = payload_obj["authorization"]
    if not isinstance(authorization, dict):
        raise _malformed("payload.authorization must be an object")
    if any(payload_obj.get(field) or payment_payload.get(field) for field in TRANSACTION_FIELDS):
        raise _malformed("payment payload carries both an authorization and a transaction hash")

    signature = normalize_signature(payload_obj.get("signature") or payment_payload.get("signature"))

    asset_raw = authorization.get("asset") or payment_payload.get("asset")
    network_raw = authorization.get("network") or payment_payload.get("network")
    extra = payment_payload.get("extra") if isinstance(payment_payload.get("extra"), dict) else {}
    domain_name = authorization.get("name") or extra.get("name")
    domain_version = authorization.get("version") or extra.get("version")

    return AuthorizationProof(
        from_address=_address(authorization.get("from"), "authorization.from"),
        to_address=_address(authorization.get("to"), "authorization.to"),
        value=_coerce_int(authorization.get("value"), "authorization.value"),
        valid_after=_coerce_int(authorization.get("validAfter"), "authorization.validAfter"),
        valid_before=_coerce_int(authorization.get("validBefore"), "authorization.validBefore"),
        nonce=_normalize_nonce(authorization.get("nonce")),
        signature=signature,
        network=str(network_raw).strip().lower() if network_raw else None,
        asset=_address(asset_raw, "payment asset") if asset_raw else None,
        domain_name=str(domain_name) if domain_name else None,
        domain_version=str(domain_version) if domain_version else None,
    )


def _infer_primary_type(types: dict[str, Any]) -> str:
    struct_names = [name for name in types if name != "EIP712Domain"]
    referenced: set[str] = set()
    for name in struct_names:
        for field in types[name]:
            referenced.add(str(field.get("type", "")).rstrip("[]"))
    roots = [name for name in struct_names if name not in referenced]
    if len(roots) != 1:
        raise _malformed("typed data primaryType is required when types has no single root")
    return roots[0]


def _parse_typed_data(raw: str) -> TypedSignatureProof:
    document = _decode_json_object(raw)
    if document is None:
        raise _malformed(f"{TYPED_DATA_HEADER_NAME} must be a JSON object")

    typed_data = document.get("typedData") if isinstance(document.get("typedData"), dict) else document
    domain = typed_data.get("domain")
    types = typed_data.get("types")
    message = typed_data.get("message")
    if not isinstance(domain, dict) or not isinstance(types, dict) or not isinstance(message, dict):
        raise _malformed("typed data requires domain, types and message objects")
    for name, fields in types.items():
        if not isinstance(fields, list) or not all(isinstance(field, dict) and "name" in field and "type" in field for field in fields):
            raise _malformed(f"typed data type {name!r} must be a list of name/type fields")

    from_raw = message.get("from")
    if not isinstance(from_raw, str) or not ADDRESS_PATTERN.fullmatch(from_raw.strip()):
        raise _malformed("typed data message.from must be a 0x-prefixed 20-byte hex address")

    primary_type = typed_data.get("primaryType")
    if primary_type is None:
        primary_type = _infer_primary_type(types)
    elif not isinstance(primary_type, str) or primary_type not in types:
        raise _malformed("typed data primaryType must name one of its types")

    return TypedSignatureProof(
        domain=dict(domain),
        types=dict(types),
        primary_type=primary_type,
        message=dict(message),
        signature=normalize_signature(document.get("signature") or typed_data.get("signature")),
    )


def parse(raw_header_value: str | None, auxiliary_headers: Any = None) -> Proof:
    """Classify a raw proof header (plus companion headers) into exactly one proof variant."""
    headers = normalize_headers(auxiliary_headers)
    raw = (raw_header_value or "").strip()

    if raw:
        payment_payload = _decode_json_object(raw)
        if payment_payload is not None:
            payload_obj = payment_payload.get("payload")
            if isinstance(payload_obj, dict) and "authorization" in payload_obj:
                return _parse_authorization_payload(payment_payload)
            if isinstance(payload_obj, dict):
                raise ProofParseError(
                    ErrorCode.UNSUPPORTED_PROOF_VARIANT,
                    "x402 payload does not carry an EIP-3009 authorization",
                )

    typed_header = _header_value(headers, TYPED_DATA_HEADER_NAME)
    if typed_header:
        return _parse_typed_data(typed_header)

    match = TX_HASH_PATTERN.fullmatch(raw)
    if match:
        return TxHashProof(tx_hash=f"0x{match.group(1).lower()}")

    raise ProofParseError(ErrorCode.UNRECOGNIZED_FORMAT, "payment proof is not a recognized format")


def parse_headers(headers: Any) -> Proof:
    normalized = normalize_headers(headers)
    # The same value may be repeated under several names for client compatibility.
    distinct = {
        value for value in (_header_value(normalized, name) for name in PRIMARY_PROOF_HEADER_NAMES) if value
    }
    if len(distinct) > 1:
        raise _malformed("request carries conflicting payment proof headers; send exactly one proof")
    return parse(primary_proof_header(normalized), normalized)


def _message_nonce(message: dict[str, Any]) -> str:
    nonce = message.get("nonce")
    if nonce is None:
        return ""
    if isinstance(nonce, str):
        candidate = nonce.strip()
        return candidate.lower() if candidate.startswith("0x") else candidate
    return str(nonce)


def proof_identity(proof: Proof) -> str:
    """Idempotency key: the tx hash for chain proofs, a digest of signature and nonce otherwise."""
    if isinstance(proof, TxHashProof):
        return f"tx:{proof.tx_hash}"
    if isinstance(proof, AuthorizationProof):
        nonce = proof.nonce
    else:
        nonce = _message_nonce(proof.message)
    digest = hashlib.sha256(f"{proof.signature.lower()}:{nonce}".encode("utf-8")).hexdigest()
    return f"sig:{digest}"


def tx_identity(tx_hash: str) -> str:
    return f"tx:0x{tx_hash.lower().removeprefix('0x')}"
