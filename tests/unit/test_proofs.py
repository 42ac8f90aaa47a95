import base64
import importlib
import json
import sys
from pathlib import Path
import unittest

SERVICE_DIR = Path(__file__).resolve().parents[2] / "services" / "pog-mint"


def load_service_module(module_name):
    if str(SERVICE_DIR) not in sys.path:
        sys.path.insert(0, str(SERVICE_DIR))
    return importlib.import_module(module_name)


proofs = load_service_module("proofs")
errors = load_service_module("errors")

PAYER = "0x1111111111111111111111111111111111111111"
PAYEE = "0x47d241ae97fe37186ac59894290ca1c54c060a6c"
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
NONCE = "0x" + ("ab" * 32)
SIGNATURE = "0x" + ("11" * 64) + "1b"
TX_HASH = "0x" + ("aa" * 32)


def _authorization(**updates):
    authorization = {
        "from": PAYER,
        "to": PAYEE,
        "value": "1000000",
        "validAfter": 0,
        "validBefore": 4102444800,
        "nonce": NONCE,
    }
    authorization.update(updates)
    return authorization


def _x402_header(authorization=None, signature=SIGNATURE, **payload_updates):
    payment_payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": "base",
        "payload": {
            "signature": signature,
            "authorization": authorization or _authorization(),
        },
    }
    payment_payload.update(payload_updates)
    return base64.b64encode(json.dumps(payment_payload).encode("utf-8")).decode("ascii")


def _typed_document(signature=SIGNATURE, **message_updates):
    message = {
        "from": PAYER,
        "to": PAYEE,
        "value": "1000000",
        "validAfter": "0",
        "validBefore": "4102444800",
        "nonce": NONCE,
    }
    message.update(message_updates)
    return {
        "domain": {"name": "USD Coin", "version": "2", "chainId": 8453, "verifyingContract": USDC},
        "types": {
            "TransferWithAuthorization": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "validAfter", "type": "uint256"},
                {"name": "validBefore", "type": "uint256"},
                {"name": "nonce", "type": "bytes32"},
            ]
        },
        "message": message,
        "signature": signature,
    }


class TxHashParsingTests(unittest.TestCase):
    def test_plain_hash_is_lowercased(self):
        proof = proofs.parse_headers({"X-PAYMENT-TX": "0x" + ("AA" * 32)})

        self.assertIsInstance(proof, proofs.TxHashProof)
        self.assertEqual(proof.tx_hash, TX_HASH)

    def test_embedded_data_suffix_is_truncated_to_canonical_hash(self):
        proof = proofs.parse_headers({"x-payment-tx": TX_HASH + "deadbeef"})

        self.assertEqual(proof.tx_hash, TX_HASH)
        self.assertEqual(proofs.proof_identity(proof), f"tx:{TX_HASH}")

    def test_short_hash_is_unrecognized(self):
        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT-TX": "0x" + ("aa" * 31)})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.UNRECOGNIZED_FORMAT)

    def test_garbage_is_unrecognized(self):
        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse("not-a-proof", {})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.UNRECOGNIZED_FORMAT)


class AuthorizationParsingTests(unittest.TestCase):
    def test_x402_payload_is_authorization_proof(self):
        proof = proofs.parse_headers({"X-PAYMENT": _x402_header(asset=USDC)})

        self.assertIsInstance(proof, proofs.AuthorizationProof)
        self.assertEqual(proof.from_address, PAYER)
        self.assertEqual(proof.to_address, PAYEE)
        self.assertEqual(proof.value, 1_000_000)
        self.assertEqual(proof.nonce, NONCE)
        self.assertEqual(proof.network, "base")
        self.assertEqual(proof.asset, USDC)

    def test_payment_signature_header_is_accepted(self):
        proof = proofs.parse_headers({"PAYMENT-SIGNATURE": _x402_header()})

        self.assertIsInstance(proof, proofs.AuthorizationProof)

    def test_invalid_nonce_is_malformed(self):
        header = _x402_header(authorization=_authorization(nonce="0x1234"))

        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": header})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)

    def test_short_signature_is_malformed(self):
        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": _x402_header(signature="0x1234")})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)

    def test_authorization_with_transaction_hash_is_ambiguous(self):
        header = _x402_header(transaction=TX_HASH)

        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": header})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)
        self.assertIn("both", ctx.exception.message)

    def test_non_exact_scheme_is_unsupported(self):
        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": _x402_header(scheme="upto")})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.UNSUPPORTED_PROOF_VARIANT)

    def test_x402_payload_without_authorization_is_unsupported(self):
        payload = {"x402Version": 1, "scheme": "exact", "payload": {"permit2Authorization": {}}}
        header = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")

        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": header})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.UNSUPPORTED_PROOF_VARIANT)

    def test_conflicting_primary_headers_are_malformed(self):
        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT": _x402_header(), "X-PAYMENT-TX": TX_HASH})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)
        self.assertIn("conflicting", ctx.exception.message)

    def test_same_proof_repeated_under_two_header_names_is_accepted(self):
        header = _x402_header()

        proof = proofs.parse_headers({"X-PAYMENT": header, "PAYMENT-SIGNATURE": header})

        self.assertIsInstance(proof, proofs.AuthorizationProof)

    def test_authorization_header_takes_priority_over_typed_data(self):
        headers = {
            "X-PAYMENT": _x402_header(),
            "X-PAYMENT-TYPED-DATA": json.dumps(_typed_document()),
        }

        proof = proofs.parse_headers(headers)

        self.assertIsInstance(proof, proofs.AuthorizationProof)


class TypedDataParsingTests(unittest.TestCase):
    def test_raw_json_companion_header(self):
        proof = proofs.parse_headers({"X-PAYMENT-TYPED-DATA": json.dumps(_typed_document())})

        self.assertIsInstance(proof, proofs.TypedSignatureProof)
        self.assertEqual(proof.primary_type, "TransferWithAuthorization")
        self.assertEqual(proof.claimed_from, PAYER)

    def test_base64_companion_header_with_tx_hash_primary(self):
        encoded = base64.b64encode(json.dumps(_typed_document()).encode("utf-8")).decode("ascii")

        proof = proofs.parse_headers({"X-PAYMENT-TX": TX_HASH, "X-PAYMENT-TYPED-DATA": encoded})

        self.assertIsInstance(proof, proofs.TypedSignatureProof)

    def test_missing_message_from_is_malformed(self):
        document = _typed_document()
        del document["message"]["from"]

        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT-TYPED-DATA": json.dumps(document)})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)

    def test_ambiguous_primary_type_is_malformed(self):
        document = _typed_document()
        document["types"]["Other"] = [{"name": "note", "type": "string"}]

        with self.assertRaises(errors.ProofParseError) as ctx:
            proofs.parse_headers({"X-PAYMENT-TYPED-DATA": json.dumps(document)})

        self.assertEqual(ctx.exception.code, errors.ErrorCode.MALFORMED_PROOF)


class ProofIdentityTests(unittest.TestCase):
    def test_same_authorization_in_different_envelopes_collides(self):
        authorization_proof = proofs.parse_headers({"X-PAYMENT": _x402_header()})
        typed_proof = proofs.parse_headers({"X-PAYMENT-TYPED-DATA": json.dumps(_typed_document())})

        self.assertEqual(proofs.proof_identity(authorization_proof), proofs.proof_identity(typed_proof))

    def test_recovery_byte_encoding_does_not_change_identity(self):
        legacy_v = proofs.parse_headers({"X-PAYMENT": _x402_header(signature=SIGNATURE)})
        compact_v = proofs.parse_headers({"X-PAYMENT": _x402_header(signature="0x" + ("11" * 64) + "00")})

        self.assertEqual(proofs.proof_identity(legacy_v), proofs.proof_identity(compact_v))

    def test_different_nonces_do_not_collide(self):
        first = proofs.parse_headers({"X-PAYMENT": _x402_header()})
        second = proofs.parse_headers({"X-PAYMENT": _x402_header(authorization=_authorization(nonce="0x" + ("cd" * 32)))})

        self.assertNotEqual(proofs.proof_identity(first), proofs.proof_identity(second))

    def test_tx_and_signature_identities_are_namespaced(self):
        tx_proof = proofs.TxHashProof(tx_hash=TX_HASH)
        auth_proof = proofs.parse_headers({"X-PAYMENT": _x402_header()})

        self.assertTrue(proofs.proof_identity(tx_proof).startswith("tx:"))
        self.assertTrue(proofs.proof_identity(auth_proof).startswith("sig:"))
        self.assertEqual(proofs.tx_identity(TX_HASH[2:].upper()), proofs.proof_identity(tx_proof))

    def test_has_proof(self):
        self.assertFalse(proofs.has_proof({}))
        self.assertFalse(proofs.has_proof({"X-PAYMENT": "  "}))
        self.assertTrue(proofs.has_proof({"x-payment-tx": TX_HASH}))
        self.assertTrue(proofs.has_proof({"X-PAYMENT-TYPED-DATA": "{}"}))
