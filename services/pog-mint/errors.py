"""
Error taxonomy for the POG mint gateway.

Every rejection carries a stable `code` (surfaced as the `error` field of the
HTTP body), a human-actionable `message`, and whether the same proof may be
retried later.
"""

from __future__ import annotations


class ErrorCode:
    MALFORMED_PROOF = "malformed_proof"
    UNRECOGNIZED_FORMAT = "unrecognized_format"
    UNSUPPORTED_PROOF_VARIANT = "unsupported_proof_variant"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    TRANSACTION_FAILED = "transaction_failed"
    NO_QUALIFYING_TRANSFER = "no_qualifying_transfer"
    SIGNATURE_MISMATCH = "signature_mismatch"
    AUTHORIZATION_NOT_YET_VALID = "authorization_not_yet_valid"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    PAYEE_MISMATCH = "payee_mismatch"
    ASSET_MISMATCH = "asset_mismatch"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    RELAY_FAILED = "relay_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    PAYMENT_IN_PROGRESS = "payment_in_progress"


RETRYABLE_CODES = frozenset(
    {
        ErrorCode.CHAIN_UNAVAILABLE,
        ErrorCode.TRANSACTION_NOT_FOUND,
        ErrorCode.TRANSACTION_FAILED,
        ErrorCode.AUTHORIZATION_NOT_YET_VALID,
        ErrorCode.RELAY_FAILED,
        ErrorCode.SETTLEMENT_FAILED,
        ErrorCode.PAYMENT_IN_PROGRESS,
    }
)


class GatewayError(ValueError):
    """Base class for rejections that map onto a client-facing response."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


class ProofParseError(GatewayError):
    """Raised when request headers cannot be classified into a proof."""


class PaymentVerificationError(GatewayError):
    """Raised when a classified proof fails verification."""


class SignatureMismatchError(PaymentVerificationError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.SIGNATURE_MISMATCH, message)


class IdempotencyConflictError(RuntimeError):
    """Raised when a store write loses its reservation (lease taken over or already committed)."""
