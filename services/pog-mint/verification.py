"""
Payment verification.

Per-proof state machine:

    RECEIVED -> PARSED -> CHAIN_CHECKED | SIGNATURE_CHECKED -> RELAYED? -> VERIFIED | REJECTED

- Transaction hashes are checked against the receipt's ERC-20 Transfer logs.
  The payer is the log's `from`, never an address claimed by the caller.
- EIP-3009 authorizations are pre-checked (payee, amount, asset, validity
  window, signer) before anything is relayed, then relayed through the ledger.
- Typed-data signatures must recover to `message.from`; TransferWithAuthorization
  documents follow the same pre-check-then-relay path.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from errors import ErrorCode, GatewayError, PaymentVerificationError, SignatureMismatchError
from proofs import AuthorizationProof, Proof, TxHashProof, TypedSignatureProof
from settings import NETWORKS, GatewaySettings, normalize_address, optional_normalized_address
from signatures import TRANSFER_WITH_AUTHORIZATION, SignatureVerifier

logger = logging.getLogger(__name__)


class VerificationState:
    RECEIVED = "received"
    PARSED = "parsed"
    CHAIN_CHECKED = "chain_checked"
    SIGNATURE_CHECKED = "signature_checked"
    RELAYED = "relayed"
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    payer: str | None = None
    amount: int | None = None
    settlement_source_tx: str | None = None
    reason: str | None = None
    error_code: str | None = None
    retryable: bool = False

    @classmethod
    def rejected(cls, error: GatewayError) -> "VerificationResult":
        return cls(
            verified=False,
            reason=error.message,
            error_code=error.code,
            retryable=error.retryable,
        )


def _reject(code: str, message: str) -> PaymentVerificationError:
    return PaymentVerificationError(code, message)


class PaymentVerifier:
    def __init__(
        self,
        settings: GatewaySettings,
        chain_reader: Any | None,
        ledger: Any,
        signature_verifier: SignatureVerifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.chain_reader = chain_reader
        self.ledger = ledger
        self.signature_verifier = signature_verifier or SignatureVerifier()
        self.clock = clock

    def verify(self, proof: Proof) -> VerificationResult:
        self._transition(proof, VerificationState.PARSED)
        try:
            if isinstance(proof, TxHashProof):
                result = self._verify_tx_hash(proof)
            elif isinstance(proof, AuthorizationProof):
                result = self._verify_authorization(proof)
            elif isinstance(proof, TypedSignatureProof):
                result = self._verify_typed_signature(proof)
            else:
                raise _reject(ErrorCode.UNSUPPORTED_PROOF_VARIANT, f"unsupported proof type {type(proof).__name__}")
        except PaymentVerificationError as exc:
            self._transition(proof, VerificationState.REJECTED, exc.code)
            return VerificationResult.rejected(exc)

        self._transition(proof, VerificationState.VERIFIED)
        return result

    def _transition(self, proof: Proof, state: str, detail: str | None = None) -> None:
        logger.debug("%s -> %s%s", type(proof).__name__, state, f" ({detail})" if detail else "")

    # transaction hash proofs

    def _read_chain(self, operation: str, *args: Any) -> Any:
        if self.chain_reader is None:
            raise _reject(ErrorCode.CHAIN_UNAVAILABLE, "Chain reader is not configured; set POG_BASE_RPC_URL")
        try:
            return getattr(self.chain_reader, operation)(*args)
        except Exception as exc:
            logger.warning("Chain read %s failed: %s", operation, exc)
            raise _reject(
                ErrorCode.CHAIN_UNAVAILABLE,
                "The blockchain node is unavailable; retry with the same proof shortly",
            ) from exc

    def _verify_tx_hash(self, proof: TxHashProof) -> VerificationResult:
        tx = self._read_chain("get_transaction", proof.tx_hash)
        if not tx:
            raise _reject(
                ErrorCode.TRANSACTION_NOT_FOUND,
                "Transaction not found; wait for it to be confirmed on the blockchain",
            )
        receipt = self._read_chain("get_receipt", proof.tx_hash)
        if not receipt:
            raise _reject(
                ErrorCode.TRANSACTION_NOT_FOUND,
                "Transaction is not confirmed yet; retry once it is mined",
            )
        if receipt.get("status") != 1:
            raise _reject(ErrorCode.TRANSACTION_FAILED, "The payment transaction failed or was reverted")
        self._transition(proof, VerificationState.CHAIN_CHECKED)

        for log in receipt.get("logs") or []:
            decoded = self._read_chain("decode_log", log)
            if not decoded or decoded.get("event") != "Transfer":
                continue
            if optional_normalized_address(decoded.get("address")) != self.settings.payment_asset:
                continue
            args = decoded.get("args") or {}
            if optional_normalized_address(args.get("to")) != self.settings.recipient_wallet:
                continue
            value = int(args.get("value") or 0)
            if value < self.settings.required_amount:
                continue
            payer = optional_normalized_address(args.get("from"))
            if payer is None:
                continue
            return VerificationResult(
                verified=True,
                payer=payer,
                amount=value,
                settlement_source_tx=proof.tx_hash,
            )

        raise _reject(
            ErrorCode.NO_QUALIFYING_TRANSFER,
            f"Must send at least {self.settings.required_amount} base units of {self.settings.payment_asset} "
            f"to {self.settings.recipient_wallet} on {self.settings.network}",
        )

    # authorization proofs

    def _precheck_transfer(self, to_address: str, value: int, asset: str | None, chain_id: int | None) -> None:
        if to_address != self.settings.recipient_wallet:
            raise _reject(
                ErrorCode.PAYEE_MISMATCH,
                f"Payment recipient must be {self.settings.recipient_wallet}",
            )
        if value < self.settings.required_amount:
            raise _reject(
                ErrorCode.INSUFFICIENT_AMOUNT,
                f"Payment amount {value} is lower than the required {self.settings.required_amount}",
            )
        if asset is not None and asset != self.settings.payment_asset:
            raise _reject(ErrorCode.ASSET_MISMATCH, f"Payment asset must be {self.settings.payment_asset}")
        if chain_id is not None and chain_id != self.settings.chain_id:
            raise _reject(ErrorCode.ASSET_MISMATCH, f"Payment must be made on {self.settings.network}")

    def _check_validity_window(self, authorization: AuthorizationProof) -> None:
        now = int(self.clock())
        if authorization.valid_after > now:
            raise _reject(ErrorCode.AUTHORIZATION_NOT_YET_VALID, "Payment authorization is not yet valid")
        if authorization.valid_before <= now:
            raise _reject(ErrorCode.AUTHORIZATION_EXPIRED, "Payment authorization has expired; sign a new one")

    def _relay(self, authorization: AuthorizationProof) -> str:
        try:
            receipt = self.ledger.relay_authorization(authorization, authorization.signature)
        except Exception as exc:
            logger.warning("Relaying authorization from %s failed: %s", authorization.from_address, exc)
            raise _reject(ErrorCode.RELAY_FAILED, f"Relaying the payment authorization failed: {exc}") from exc
        if not receipt.success:
            raise _reject(ErrorCode.RELAY_FAILED, f"Relayed payment transaction {receipt.txid} reverted")
        return receipt.txid

    def _verify_authorization(self, proof: AuthorizationProof) -> VerificationResult:
        chain_id = None
        if proof.network is not None:
            network = NETWORKS.get(proof.network)
            if network is None:
                raise _reject(ErrorCode.ASSET_MISMATCH, f"Payment must be made on {self.settings.network}")
            chain_id = network[1]
        self._precheck_transfer(proof.to_address, proof.value, proof.asset, chain_id)
        self._check_validity_window(proof)

        self.signature_verifier.recover_transfer_authorization(
            proof,
            chain_id=self.settings.chain_id,
            verifying_contract=self.settings.payment_asset,
            domain_name=proof.domain_name or self.settings.payment_token_name,
            domain_version=proof.domain_version or self.settings.payment_token_version,
        )
        self._transition(proof, VerificationState.SIGNATURE_CHECKED)

        relay_tx = self._relay(proof)
        self._transition(proof, VerificationState.RELAYED, relay_tx)
        return VerificationResult(
            verified=True,
            payer=proof.from_address,
            amount=proof.value,
            settlement_source_tx=relay_tx,
        )

    # typed-data proofs

    def _verify_typed_signature(self, proof: TypedSignatureProof) -> VerificationResult:
        claimed = proof.claimed_from
        signer = self.signature_verifier.recover_signer(
            proof.domain,
            proof.types,
            proof.message,
            proof.signature,
            primary_type=proof.primary_type,
        )
        if signer != claimed:
            raise SignatureMismatchError("Typed-data signature does not recover to message.from")
        self._transition(proof, VerificationState.SIGNATURE_CHECKED)

        if proof.primary_type != TRANSFER_WITH_AUTHORIZATION:
            raise _reject(
                ErrorCode.UNSUPPORTED_PROOF_VARIANT,
                f"Typed data of type {proof.primary_type} does not authorize a transfer",
            )

        authorization = self._authorization_from_typed(proof, signer)
        verifying_contract = optional_normalized_address(proof.domain.get("verifyingContract"))
        try:
            chain_id = int(proof.domain.get("chainId"))
        except (TypeError, ValueError):
            chain_id = -1
        if verifying_contract is None:
            raise _reject(ErrorCode.ASSET_MISMATCH, f"Payment asset must be {self.settings.payment_asset}")
        self._precheck_transfer(authorization.to_address, authorization.value, verifying_contract, chain_id)
        self._check_validity_window(authorization)

        relay_tx = self._relay(authorization)
        self._transition(proof, VerificationState.RELAYED, relay_tx)
        return VerificationResult(
            verified=True,
            payer=signer,
            amount=authorization.value,
            settlement_source_tx=relay_tx,
        )

    def _authorization_from_typed(self, proof: TypedSignatureProof, signer: str) -> AuthorizationProof:
        message = proof.message
        try:
            return AuthorizationProof(
                from_address=signer,
                to_address=normalize_address(message.get("to"), "message.to"),
                value=int(str(message.get("value")), 0),
                valid_after=int(str(message.get("validAfter")), 0),
                valid_before=int(str(message.get("validBefore")), 0),
                nonce=str(message.get("nonce")).lower(),
                signature=proof.signature,
                network=self.settings.network,
                asset=self.settings.payment_asset,
            )
        except (TypeError, ValueError) as exc:
            raise _reject(ErrorCode.MALFORMED_PROOF, f"TransferWithAuthorization message is invalid: {exc}") from exc
