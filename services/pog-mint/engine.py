"""
Payment-gated settlement engine.

`GatewayEngine.handle` turns request headers into exactly one outcome:

- `Challenge`: no proof was supplied; carries the x402 payment requirements.
- `Rejected`: the proof was malformed or failed verification/settlement.
- `InFlight`: another request is settling the same proof right now.
- `Settled`: the reward was minted, now or by an earlier request.

Verification and settlement are blocking network calls; they run in worker
threads under `asyncio.wait_for` so a hung node becomes a retryable rejection.
The reservation taken before verification is always committed or released on
the way out, including on timeout and cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Union

from errors import ErrorCode, IdempotencyConflictError, ProofParseError
from idempotency import Reservation, SettlementRecord
from proofs import TxHashProof, has_proof, parse_headers, proof_identity, tx_identity
from settings import GatewaySettings
from verification import PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_REQUIRED_ERROR = "Payment required to mint POG tokens"
COMMIT_ATTEMPTS = 4
COMMIT_BACKOFF_SECONDS = 0.2


def build_payment_requirements(settings: GatewaySettings) -> dict[str, Any]:
    return {
        "scheme": "exact",
        "network": settings.network,
        "maxAmountRequired": str(settings.required_amount),
        "resource": settings.resource_url,
        "description": settings.resource_description,
        "mimeType": "application/json",
        "payTo": settings.recipient_wallet,
        "maxTimeoutSeconds": settings.max_timeout_seconds,
        "asset": settings.payment_asset,
        "outputSchema": {
            "input": {
                "type": "http",
                "method": "GET",
                "discoverable": True,
                "properties": {},
            },
            "output": {
                "type": "object",
                "properties": {
                    "success": {"type": "boolean", "description": "Whether the minting was successful"},
                    "message": {"type": "string", "description": "Success or error message"},
                    "txHash": {"type": "string", "description": "Transaction hash of the POG token transfer"},
                    "amount": {"type": "string", "description": "Amount of POG tokens minted"},
                    "recipient": {"type": "string", "description": "Address that received the POG tokens"},
                },
            },
        },
        "extra": {
            "name": settings.payment_token_name,
            "version": settings.payment_token_version,
        },
    }


@dataclass(frozen=True)
class Challenge:
    requirements: dict[str, Any]
    error: str = PAYMENT_REQUIRED_ERROR

    def body(self) -> dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "error": self.error,
            "accepts": [self.requirements],
        }


@dataclass(frozen=True)
class Rejected:
    code: str
    reason: str
    retryable: bool
    challenge: Challenge


@dataclass(frozen=True)
class InFlight:
    identity: str


@dataclass(frozen=True)
class Settled:
    record: SettlementRecord
    replayed: bool = False


Outcome = Union[Challenge, Rejected, InFlight, Settled]


@dataclass
class _ReservationScope:
    """Holds the reservations taken for one request and releases whatever was not committed."""

    store: Any
    held: list[tuple[str, str]] = field(default_factory=list)
    committed: bool = False
    sleep: Callable[[float], None] = time.sleep

    def reserve(self, identity: str) -> Reservation:
        reservation = self.store.check_and_reserve(identity)
        if reservation.reserved:
            self.held.append((identity, reservation.token))
        return reservation

    def commit(self, record: SettlementRecord) -> None:
        """Persist the record under every held identity. Never raises: the reward has already been sent."""
        # Releasing after a mint would reopen the proof, so the scope counts as committed even on failure.
        self.committed = True
        for identity, token in self.held:
            self._commit_one(identity, token, record)

    def _commit_one(self, identity: str, token: str, record: SettlementRecord) -> None:
        backoff = COMMIT_BACKOFF_SECONDS
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                self.store.commit(identity, record, token)
                return
            except IdempotencyConflictError:
                logger.error(
                    "Reservation for %s was lost before commit; unrecorded settlement %s",
                    identity,
                    record.to_item(),
                )
                return
            except Exception:
                if attempt == COMMIT_ATTEMPTS:
                    logger.exception(
                        "Could not record settlement for %s after %d attempts; reconcile manually "
                        "before its reservation lease expires: %s",
                        identity,
                        attempt,
                        record.to_item(),
                    )
                    return
                logger.warning("Commit for %s failed (attempt %d); retrying", identity, attempt)
                self.sleep(backoff)
                backoff *= 2

    async def __aenter__(self) -> "_ReservationScope":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.committed:
            return
        # Synchronous on purpose: this must finish even while the task is being cancelled.
        for identity, token in reversed(self.held):
            self.store.release(identity, token)
        self.held.clear()


class GatewayEngine:
    def __init__(
        self,
        settings: GatewaySettings,
        verifier: PaymentVerifier,
        store: Any,
        ledger: Any,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.verifier = verifier
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.sleep = sleep
        self.challenge = Challenge(build_payment_requirements(settings))

    def _rejected(self, code: str, reason: str, retryable: bool) -> Rejected:
        return Rejected(code=code, reason=reason, retryable=retryable, challenge=self.challenge)

    async def handle(self, headers: Any) -> Outcome:
        if not has_proof(headers):
            return self.challenge

        try:
            proof = parse_headers(headers)
        except ProofParseError as exc:
            logger.info("Rejected malformed proof: %s", exc.message)
            code = ErrorCode.MALFORMED_PROOF if exc.code == ErrorCode.UNRECOGNIZED_FORMAT else exc.code
            return self._rejected(code, f"malformed proof: {exc.message}", retryable=False)

        identity = proof_identity(proof)
        async with _ReservationScope(self.store, sleep=self.sleep) as scope:
            reservation = scope.reserve(identity)
            if reservation.already_settled:
                logger.info("Proof %s already settled by %s", identity, reservation.record.mint_tx)
                return Settled(reservation.record, replayed=True)
            if reservation.in_flight:
                return InFlight(identity)

            result = await self._verify(proof)
            if not result.verified:
                logger.info("Proof %s rejected: %s (%s)", identity, result.error_code, result.reason)
                return self._rejected(result.error_code, result.reason, result.retryable)

            if not isinstance(proof, TxHashProof) and result.settlement_source_tx:
                # The relayed payment must not be claimable again by its tx hash.
                alias = scope.reserve(tx_identity(result.settlement_source_tx))
                if alias.already_settled:
                    scope.commit(alias.record)
                    return Settled(alias.record, replayed=True)
                if alias.in_flight:
                    return InFlight(identity)

            mint_tx = await self._mint(result.payer)
            if mint_tx is None:
                retry_hint = "retry with the same proof"
                if not isinstance(proof, TxHashProof) and result.settlement_source_tx:
                    # The authorization nonce is spent; only the relayed tx hash can be replayed.
                    retry_hint = f"retry with payment transaction {result.settlement_source_tx} in X-PAYMENT-TX"
                return self._rejected(
                    ErrorCode.SETTLEMENT_FAILED,
                    f"settlement failed: the payment was verified but the reward transfer did not complete; {retry_hint}",
                    retryable=True,
                )

            record = SettlementRecord(
                identity=identity,
                payer=result.payer,
                settlement_tx=result.settlement_source_tx,
                mint_tx=mint_tx,
                amount=self.settings.reward_amount,
                payment_amount=result.amount,
                network=self.settings.network,
                timestamp=self.clock().isoformat(),
            )
            scope.commit(record)
            logger.info("Settled %s: minted %s to %s in %s", identity, record.amount, record.payer, mint_tx)
            return Settled(record)

    async def _verify(self, proof: Any) -> VerificationResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.verifier.verify, proof),
                timeout=self.settings.verification_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Verification timed out after %ss", self.settings.verification_timeout_seconds)
            return VerificationResult(
                verified=False,
                reason="Payment verification timed out; retry with the same proof",
                error_code=ErrorCode.CHAIN_UNAVAILABLE,
                retryable=True,
            )
        except Exception:
            logger.exception("Verification failed unexpectedly")
            return VerificationResult(
                verified=False,
                reason="Payment verification could not be completed; retry with the same proof shortly",
                error_code=ErrorCode.CHAIN_UNAVAILABLE,
                retryable=True,
            )

    async def _mint(self, payer: str) -> str | None:
        try:
            receipt = await asyncio.wait_for(
                asyncio.to_thread(self.ledger.transfer, payer, self.settings.reward_amount),
                timeout=self.settings.settlement_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Reward transfer to %s timed out; payment verified but not settled", payer)
            return None
        except Exception:
            logger.exception("Reward transfer to %s failed; payment verified but not settled", payer)
            return None
        if not receipt.success:
            logger.error("Reward transfer %s to %s reverted", receipt.txid, payer)
            return None
        return receipt.txid
