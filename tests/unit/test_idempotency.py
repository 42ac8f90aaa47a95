import copy
import importlib
import sys
import threading
from pathlib import Path
import unittest

from botocore.exceptions import ClientError

SERVICE_DIR = Path(__file__).resolve().parents[2] / "services" / "pog-mint"


def load_service_module(module_name):
    if str(SERVICE_DIR) not in sys.path:
        sys.path.insert(0, str(SERVICE_DIR))
    return importlib.import_module(module_name)


errors = load_service_module("errors")
idempotency = load_service_module("idempotency")

IDENTITY = "tx:0x" + ("aa" * 32)
ALIAS = "sig:" + ("bb" * 32)


def _record(identity=IDENTITY, mint_tx="0x" + ("cc" * 32)):
    return idempotency.SettlementRecord(
        identity=identity,
        payer="0x1111111111111111111111111111111111111111",
        settlement_tx="0x" + ("aa" * 32),
        mint_tx=mint_tx,
        amount=10_000 * 10**18,
        payment_amount=1_000_000,
        network="base",
        timestamp="2026-01-01T00:00:00+00:00",
    )


def _conditional_check_failed(operation_name):
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation_name,
    )


class FakeDynamoTable:
    """Evaluates the reserve and owner condition expressions used by the store."""

    def __init__(self):
        self.items = {}
        self.put_item_calls = []
        self.delete_item_calls = []
        self.scan_page_size = 100

    def _condition_holds(self, existing, condition, values):
        if condition == idempotency.RESERVE_CONDITION:
            if existing is None:
                return True
            return existing.get("status") == values[":in_flight"] and existing["lease_expires_at"] <= values[":now"]
        if condition == idempotency.OWNER_CONDITION:
            return (
                existing is not None
                and existing.get("status") == values[":in_flight"]
                and existing.get("reservation_token") == values[":token"]
            )
        raise AssertionError(f"unexpected condition {condition}")

    def put_item(self, Item, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues):
        self.put_item_calls.append(copy.deepcopy(Item))
        existing = self.items.get(Item["proof_identity"])
        if not self._condition_holds(existing, ConditionExpression, ExpressionAttributeValues):
            raise _conditional_check_failed("PutItem")
        self.items[Item["proof_identity"]] = copy.deepcopy(Item)
        return {}

    def get_item(self, Key, ConsistentRead=False):
        item = self.items.get(Key["proof_identity"])
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def delete_item(self, Key, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues):
        self.delete_item_calls.append(copy.deepcopy(Key))
        existing = self.items.get(Key["proof_identity"])
        if not self._condition_holds(existing, ConditionExpression, ExpressionAttributeValues):
            raise _conditional_check_failed("DeleteItem")
        del self.items[Key["proof_identity"]]
        return {}

    def scan(self, Select, FilterExpression, ExpressionAttributeNames, ExpressionAttributeValues, ExclusiveStartKey=None):
        keys = sorted(self.items)
        start_index = keys.index(ExclusiveStartKey["proof_identity"]) + 1 if ExclusiveStartKey else 0
        page = keys[start_index : start_index + self.scan_page_size]
        count = sum(
            1
            for key in page
            if self.items[key].get("status") == ExpressionAttributeValues[":settled"]
            and self.items[key].get("record_identity") == key
        )
        response = {"Count": count}
        if start_index + self.scan_page_size < len(keys):
            response["LastEvaluatedKey"] = {"proof_identity": page[-1]}
        return response


class InMemoryStoreTests(unittest.TestCase):
    def setUp(self):
        with self.assertLogs(idempotency.logger, level="WARNING"):
            self.store = idempotency.InMemoryIdempotencyStore()

    def test_reserve_then_commit_returns_record_on_next_reserve(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.assertTrue(reservation.reserved)

        self.store.commit(IDENTITY, _record(), reservation.token)
        replay = self.store.check_and_reserve(IDENTITY)

        self.assertTrue(replay.already_settled)
        self.assertEqual(replay.record, _record())

    def test_second_reserve_while_in_flight(self):
        self.store.check_and_reserve(IDENTITY)

        self.assertTrue(self.store.check_and_reserve(IDENTITY).in_flight)

    def test_release_allows_reservation_again(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.store.release(IDENTITY, reservation.token)

        self.assertTrue(self.store.check_and_reserve(IDENTITY).reserved)

    def test_release_with_foreign_token_is_ignored(self):
        self.store.check_and_reserve(IDENTITY)
        self.store.release(IDENTITY, "not-the-owner")

        self.assertTrue(self.store.check_and_reserve(IDENTITY).in_flight)

    def test_commit_without_reservation_conflicts(self):
        with self.assertRaises(errors.IdempotencyConflictError):
            self.store.commit(IDENTITY, _record(), "missing")

    def test_commit_twice_conflicts(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.store.commit(IDENTITY, _record(), reservation.token)

        with self.assertRaises(errors.IdempotencyConflictError):
            self.store.commit(IDENTITY, _record(mint_tx="0x" + ("dd" * 32)), reservation.token)
        self.assertEqual(self.store.check_and_reserve(IDENTITY).record, _record())

    def test_concurrent_reservations_have_one_winner(self):
        barrier = threading.Barrier(16)
        outcomes = []
        outcomes_lock = threading.Lock()

        def reserve():
            barrier.wait()
            reservation = self.store.check_and_reserve(IDENTITY)
            with outcomes_lock:
                outcomes.append(reservation.status)

        threads = [threading.Thread(target=reserve) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count(idempotency.Reservation.RESERVED), 1)
        self.assertEqual(outcomes.count(idempotency.Reservation.IN_FLIGHT), 15)

    def test_count_settled_counts_aliases_once(self):
        record = _record()
        primary = self.store.check_and_reserve(IDENTITY)
        alias = self.store.check_and_reserve(ALIAS)
        self.store.commit(IDENTITY, record, primary.token)
        self.store.commit(ALIAS, record, alias.token)

        self.assertEqual(self.store.count_settled(), 1)


class DynamoStoreTests(unittest.TestCase):
    def setUp(self):
        self.now = 1_700_000_000
        self.table = FakeDynamoTable()
        self.store = idempotency.DynamoIdempotencyStore(self.table, lease_seconds=900, clock=lambda: self.now)

    def test_reserve_writes_in_flight_item_with_lease(self):
        reservation = self.store.check_and_reserve(IDENTITY)

        self.assertTrue(reservation.reserved)
        item = self.table.items[IDENTITY]
        self.assertEqual(item["status"], idempotency.STATUS_IN_FLIGHT)
        self.assertEqual(item["reservation_token"], reservation.token)
        self.assertEqual(item["lease_expires_at"], self.now + 900)

    def test_in_flight_reservation_blocks_second_caller(self):
        self.store.check_and_reserve(IDENTITY)

        self.assertTrue(self.store.check_and_reserve(IDENTITY).in_flight)

    def test_expired_lease_is_taken_over(self):
        stale = self.store.check_and_reserve(IDENTITY)
        self.now += 901

        takeover = self.store.check_and_reserve(IDENTITY)

        self.assertTrue(takeover.reserved)
        self.assertNotEqual(stale.token, takeover.token)
        with self.assertRaises(errors.IdempotencyConflictError):
            self.store.commit(IDENTITY, _record(), stale.token)

    def test_commit_stores_settled_record(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.store.commit(IDENTITY, _record(), reservation.token)

        item = self.table.items[IDENTITY]
        self.assertEqual(item["status"], idempotency.STATUS_SETTLED)
        self.assertEqual(item["record_identity"], IDENTITY)
        self.assertEqual(item["amount"], str(10_000 * 10**18))

        replay = self.store.check_and_reserve(IDENTITY)
        self.assertTrue(replay.already_settled)
        self.assertEqual(replay.record, _record())

    def test_settled_record_never_expires(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.store.commit(IDENTITY, _record(), reservation.token)
        self.now += 10 * 365 * 24 * 3600

        self.assertTrue(self.store.check_and_reserve(IDENTITY).already_settled)

    def test_release_deletes_only_own_reservation(self):
        reservation = self.store.check_and_reserve(IDENTITY)

        self.store.release(IDENTITY, "someone-else")
        self.assertIn(IDENTITY, self.table.items)

        self.store.release(IDENTITY, reservation.token)
        self.assertNotIn(IDENTITY, self.table.items)

    def test_release_after_commit_keeps_record(self):
        reservation = self.store.check_and_reserve(IDENTITY)
        self.store.commit(IDENTITY, _record(), reservation.token)

        self.store.release(IDENTITY, reservation.token)

        self.assertEqual(self.table.items[IDENTITY]["status"], idempotency.STATUS_SETTLED)

    def test_unexpected_client_error_propagates_from_reserve(self):
        def throttled(**kwargs):
            raise ClientError(
                {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
                "PutItem",
            )

        self.table.put_item = throttled

        with self.assertRaises(ClientError):
            self.store.check_and_reserve(IDENTITY)

    def test_count_settled_paginates_and_skips_aliases(self):
        self.table.scan_page_size = 2
        record = _record()
        for identity in (IDENTITY, ALIAS):
            reservation = self.store.check_and_reserve(identity)
            self.store.commit(identity, record, reservation.token)
        for index in range(3):
            identity = f"tx:0x{index:064x}"
            reservation = self.store.check_and_reserve(identity)
            self.store.commit(identity, _record(identity=identity), reservation.token)
        self.store.check_and_reserve("tx:0x" + ("ff" * 32))

        self.assertEqual(self.store.count_settled(), 4)


class BuildStoreTests(unittest.TestCase):
    def test_without_table_name_uses_memory_store(self):
        settings = type("Settings", (), {"idempotency_table_name": None, "reservation_lease_seconds": 900})()

        with self.assertLogs(idempotency.logger, level="WARNING"):
            store = idempotency.build_idempotency_store(settings)

        self.assertIsInstance(store, idempotency.InMemoryIdempotencyStore)


if __name__ == "__main__":
    unittest.main()
