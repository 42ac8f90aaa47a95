"""
Lambda handler for the POG x402 mint API.

Routes:
- GET /       API information.
- GET /mint   x402-gated mint: 402 challenge without proof, 10,000 POG per verified 1 USDC payment.
- GET /stats  Minting statistics.

Flow for /mint:
1. Classify the proof header (x402 authorization, typed-data signature, or tx hash).
2. Reserve the proof identity in the idempotency store.
3. Verify the payment (receipt logs, or signature + relay of the authorization).
4. Transfer the POG reward to the verified payer.
5. Commit the settlement record; replays return the stored receipt.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from decimal import Decimal
from typing import Any

from chain import build_collaborators
from engine import Challenge, GatewayEngine, InFlight, Rejected, Settled, X402_VERSION
from errors import ErrorCode
from idempotency import SettlementRecord, build_idempotency_store
from proofs import normalize_headers
from settings import GatewaySettings
from verification import PaymentVerifier

logger = logging.getLogger()
logger.setLevel(os.environ.get("POG_LOG_LEVEL", "INFO").upper())

API_NAME = "POG Token x402 API"
API_VERSION = "2.0.0"

PAYMENT_REQUIRED_RESPONSE_HEADERS = ("PAYMENT-REQUIRED", "x-payment-required")
PAYMENT_RESPONSE_HEADERS = ("PAYMENT-RESPONSE", "x-payment-response")
REPLAY_HEADER = "X-Idempotent-Replay"

BAD_REQUEST_CODES = {ErrorCode.MALFORMED_PROOF, ErrorCode.UNSUPPORTED_PROOF_VARIANT}

_GATEWAY_CACHE: tuple[GatewaySettings, GatewayEngine] | None = None


def _response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    merged_headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Origin": "*",
    }
    if headers:
        merged_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": merged_headers,
        "body": json.dumps(body, default=str),
    }


def _error_response(
    status_code: int,
    error: str,
    message: str,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    body.update(extra)
    return _response(status_code, body, headers=headers)


def _encode_json_base64(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(encoded).decode("ascii")


def _format_units(amount: int, decimals: int) -> str:
    return format(Decimal(amount).scaleb(-decimals).normalize(), "f")


def _www_authenticate(settings: GatewaySettings, requirements: dict[str, Any]) -> str:
    return (
        f'x402 scheme="exact", network="{requirements["network"]}", payTo="{requirements["payTo"]}", '
        f'maxAmountRequired="{requirements["maxAmountRequired"]}", asset="{requirements["asset"]}", '
        f'resource="{requirements["resource"]}", description="{requirements["description"]}", '
        f'facilitator="{settings.facilitator_url}"'
    )


def _payment_required_headers(settings: GatewaySettings, challenge: Challenge) -> dict[str, str]:
    encoded = _encode_json_base64(challenge.requirements)
    headers = {header_name: encoded for header_name in PAYMENT_REQUIRED_RESPONSE_HEADERS}
    headers["WWW-Authenticate"] = _www_authenticate(settings, challenge.requirements)
    return headers


def get_gateway() -> tuple[GatewaySettings, GatewayEngine]:
    """Build the engine once per warm container so the in-memory store survives between invocations."""
    global _GATEWAY_CACHE
    if _GATEWAY_CACHE is None:
        settings = GatewaySettings.from_env()
        chain_reader, ledger = build_collaborators(settings)
        verifier = PaymentVerifier(settings, chain_reader=chain_reader, ledger=ledger)
        engine = GatewayEngine(settings, verifier=verifier, store=build_idempotency_store(settings), ledger=ledger)
        _GATEWAY_CACHE = (settings, engine)
    return _GATEWAY_CACHE


def _success_body(settings: GatewaySettings, record: SettlementRecord) -> dict[str, Any]:
    minted = f"{_format_units(record.amount, settings.reward_token_decimals)} {settings.reward_token_symbol}"
    return {
        "success": True,
        "message": f"Successfully minted {minted} tokens!",
        "txHash": record.mint_tx,
        "transactionHash": record.mint_tx,
        "mintTransaction": record.mint_tx,
        "paymentTransaction": record.settlement_tx,
        "recipient": record.payer,
        "amount": minted,
        "network": record.network,
        "timestamp": record.timestamp,
        "viewOnBaseScan": settings.explorer_tx_url(record.mint_tx),
    }


def _outcome_response(settings: GatewaySettings, outcome: Any) -> dict[str, Any]:
    if isinstance(outcome, Challenge):
        return _response(402, outcome.body(), headers=_payment_required_headers(settings, outcome))

    if isinstance(outcome, Rejected):
        if outcome.code in BAD_REQUEST_CODES:
            status_code = 400
        elif outcome.code == ErrorCode.SETTLEMENT_FAILED:
            status_code = 502
        else:
            status_code = 402
        headers = _payment_required_headers(settings, outcome.challenge) if status_code == 402 else None
        return _error_response(
            status_code,
            outcome.code,
            outcome.reason,
            headers=headers,
            retryable=outcome.retryable,
            x402Version=X402_VERSION,
            accepts=[outcome.challenge.requirements],
        )

    if isinstance(outcome, InFlight):
        return _error_response(
            409,
            ErrorCode.PAYMENT_IN_PROGRESS,
            "This payment is already being processed; retry shortly to receive the receipt",
            retryable=True,
        )

    if isinstance(outcome, Settled):
        record = outcome.record
        payment_response = _encode_json_base64(
            {
                "success": True,
                "transaction": record.settlement_tx,
                "network": record.network,
                "payer": record.payer,
            }
        )
        headers = {header_name: payment_response for header_name in PAYMENT_RESPONSE_HEADERS}
        if outcome.replayed:
            headers[REPLAY_HEADER] = "true"
        return _response(200, _success_body(settings, record), headers=headers)

    raise TypeError(f"unexpected gateway outcome {type(outcome).__name__}")


def _resolve_method_and_path(event: dict[str, Any]) -> tuple[str, str]:
    request_context = event.get("requestContext")
    if not isinstance(request_context, dict):
        request_context = {}
    http_context = request_context.get("http") if isinstance(request_context.get("http"), dict) else {}

    method = str(event.get("httpMethod") or http_context.get("method") or "GET").upper()
    path = str(event.get("rawPath") or event.get("path") or http_context.get("path") or "/")
    path = path.split("?", 1)[0] or "/"

    stage = str(request_context.get("stage") or "").strip()
    if stage and stage != "$default":
        prefix = f"/{stage}"
        if path == prefix:
            path = "/"
        elif path.startswith(f"{prefix}/"):
            path = path[len(prefix) :]

    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return method, path


def _info_response(settings: GatewaySettings) -> dict[str, Any]:
    price = f"{_format_units(settings.required_amount, 6)} USDC"
    reward = f"{_format_units(settings.reward_amount, settings.reward_token_decimals)} {settings.reward_token_symbol}"
    return _response(
        200,
        {
            "name": API_NAME,
            "description": "Mint POG tokens using x402 Protocol - No frontend needed!",
            "version": API_VERSION,
            "endpoints": {
                "/": "API information",
                "/mint": f"Mint {reward} tokens for {price} (x402)",
                "/stats": "Minting statistics",
            },
            "x402": {
                "version": X402_VERSION,
                "resource": "/mint",
                "price": price,
                "reward": f"{reward} tokens",
            },
            "contract": {
                "address": settings.reward_token_address,
                "network": settings.network,
                "chainId": settings.chain_id,
                "symbol": settings.reward_token_symbol,
            },
            "usage": {
                "1": "Visit x402scan.com",
                "2": "Search for this API or paste the URL",
                "3": f"Pay {price}",
                "4": f"Receive {reward} tokens automatically",
            },
        },
    )


def _stats_response(settings: GatewaySettings, engine: GatewayEngine) -> dict[str, Any]:
    remaining = engine.ledger.remaining_supply()
    remaining_supply = (
        f"{_format_units(remaining, settings.reward_token_decimals)} {settings.reward_token_symbol}"
        if remaining is not None
        else "unknown"
    )
    return _response(
        200,
        {
            "totalMints": engine.store.count_settled(),
            "remainingSupply": remaining_supply,
            "pricePerMint": f"{_format_units(settings.required_amount, 6)} USDC",
            "tokensPerMint": f"{_format_units(settings.reward_amount, settings.reward_token_decimals)} {settings.reward_token_symbol}",
            "network": settings.network,
            "paymentAddress": settings.recipient_wallet,
        },
    )


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    event = event or {}
    try:
        method, path = _resolve_method_and_path(event)
        if method not in {"GET", "POST"}:
            return _error_response(405, "method_not_allowed", f"{method} is not supported")

        settings, engine = get_gateway()
        if path == "/":
            return _info_response(settings)
        if path == "/stats":
            try:
                return _stats_response(settings, engine)
            except Exception:
                logger.exception("Failed to read minting statistics")
                return _error_response(500, "Failed to get stats", "Minting statistics are temporarily unavailable")
        if path == "/mint":
            outcome = asyncio.run(engine.handle(normalize_headers(event.get("headers"))))
            return _outcome_response(settings, outcome)
        return _error_response(404, "not_found", f"{path} does not exist")
    except Exception:
        logger.exception("Failed to process request")
        return _error_response(500, "Internal error", "Failed to process payment")
