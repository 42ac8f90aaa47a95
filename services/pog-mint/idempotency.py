"""
Replay prevention for settled proofs.

A proof identity moves through at most two states:

    (absent) --check_and_reserve--> in_flight --commit--> settled
                                        |
                                        +--release--> (absent)

Settled records are immutable and never deleted. In-flight reservations carry
an owner token so only the flow that reserved an identity can commit or release
it.

`InMemoryIdempotencyStore` forgets everything on restart (a cold Lambda start
re-opens every previously settled proof). Production deployments set
`POG_IDEMPOTENCY_TABLE_NAME` to use `DynamoIdempotencyStore`.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError

from errors import IdempotencyConflictError

logger = logging.getLogger(__name__)

STATUS_IN_FLIGHT = "in_flight"
STATUS_SETTLED = "settled"

RESERVE_CONDITION = "attribute_not_exists(proof_identity) OR (#status = :in_flight AND lease_expires_at <= :now)"
OWNER_CONDITION = "#status = :in_flight AND reservation_token = :token"


@dataclass(frozen=True)
class SettlementRecord:
    identity: str
    payer: str
    settlement_tx: str | None
    mint_tx: str
    amount: int
    payment_amount: int
    network: str
    timestamp: str

    def to_item(self) -> dict[str, Any]:
        item = asdict(self)
        # Reward amounts exceed what a float-backed JSON client can hold.
        item["amount"] = str(self.amount)
        item["payment_amount"] = str(self.payment_amount)
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "SettlementRecord":
        return cls(
            identity=str(item.get("record_identity") or item["identity"]),
            payer=str(item["payer"]),
            settlement_tx=str(item["settlement_tx"]) if item.get("settlement_tx") else None,
            mint_tx=str(item["mint_tx"]),
            amount=int(item["amount"]),
            payment_amount=int(item["payment_amount"]),
            network=str(item["network"]),
            timestamp=str(item["timestamp"]),
        )


@dataclass(frozen=True)
class Reservation:
    status: str
    token: str | None = None
    record: SettlementRecord | None = None

    RESERVED = "reserved"
    IN_FLIGHT = "in_flight"
    ALREADY_SETTLED = "already_settled"

    @property
    def reserved(self) -> bool:
        return self.status == self.RESERVED

    @property
    def in_flight(self) -> bool:
        return self.status == self.IN_FLIGHT

    @property
    def already_settled(self) -> bool:
        return self.status == self.ALREADY_SETTLED


class InMemoryIdempotencyStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: dict[str, str] = {}
        self._settled: dict[str, SettlementRecord] = {}
        logger.warning(
            "Using in-memory idempotency store: settled proofs are forgotten on restart "
            "and may be settled again. Set POG_IDEMPOTENCY_TABLE_NAME for durable replay protection."
        )

    def check_and_reserve(self, identity: str) -> Reservation:
        with self._lock:
            record = self._settled.get(identity)
            if record is not None:
                return Reservation(Reservation.ALREADY_SETTLED, record=record)
            if identity in self._in_flight:
                return Reservation(Reservation.IN_FLIGHT)
            token = uuid.uuid4().hex
            self._in_flight[identity] = token
            return Reservation(Reservation.RESERVED, token=token)

    def commit(self, identity: str, record: SettlementRecord, token: str) -> None:
        with self._lock:
            if identity in self._settled or self._in_flight.get(identity) != token:
                raise IdempotencyConflictError(f"reservation for {identity} is not held by this flow")
            del self._in_flight[identity]
            self._settled[identity] = record

    def release(self, identity: str, token: str) -> None:
        with self._lock:
            if self._in_flight.get(identity) == token:
                del self._in_flight[identity]

    def count_settled(self) -> int:
        with self._lock:
            return len({record.identity for record in self._settled.values()})


class DynamoIdempotencyStore:
    def __init__(
        self,
        table: Any,
        lease_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.table = table
        self.lease_seconds = lease_seconds
        self.clock = clock

    def _get_item(self, identity: str) -> dict[str, Any] | None:
        response = self.table.get_item(Key={"proof_identity": identity}, ConsistentRead=True)
        return response.get("Item")

    def check_and_reserve(self, identity: str) -> Reservation:
        for _ in range(2):
            now = int(self.clock())
            token = uuid.uuid4().hex
            try:
                self.table.put_item(
                    Item={
                        "proof_identity": identity,
                        "status": STATUS_IN_FLIGHT,
                        "reservation_token": token,
                        "reserved_at": now,
                        "lease_expires_at": now + self.lease_seconds,
                    },
                    ConditionExpression=RESERVE_CONDITION,
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={":in_flight": STATUS_IN_FLIGHT, ":now": now},
                )
                return Reservation(Reservation.RESERVED, token=token)
            except ClientError as exc:
                error_code = exc.response.get("Error", {}).get("Code")
                if error_code != "ConditionalCheckFailedException":
                    raise

            item = self._get_item(identity)
            if not item:
                # Released between our write and read; try again.
                continue
            if item.get("status") == STATUS_SETTLED:
                return Reservation(Reservation.ALREADY_SETTLED, record=SettlementRecord.from_item(item))
            return Reservation(Reservation.IN_FLIGHT)
        return Reservation(Reservation.IN_FLIGHT)

    def commit(self, identity: str, record: SettlementRecord, token: str) -> None:
        item = record.to_item()
        item["record_identity"] = item.pop("identity")
        item.update(
            {
                "proof_identity": identity,
                "status": STATUS_SETTLED,
                "reservation_token": token,
                "settled_at": int(self.clock()),
            }
        )
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression=OWNER_CONDITION,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":in_flight": STATUS_IN_FLIGHT, ":token": token},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
            raise IdempotencyConflictError(f"reservation for {identity} is not held by this flow") from exc

    def release(self, identity: str, token: str) -> None:
        try:
            self.table.delete_item(
                Key={"proof_identity": identity},
                ConditionExpression=OWNER_CONDITION,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":in_flight": STATUS_IN_FLIGHT, ":token": token},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return
            # Best-effort; the lease expires and the identity can be reserved again.
            logger.exception("Failed to release reservation for %s", identity)

    def count_settled(self) -> int:
        total = 0
        scan_kwargs: dict[str, Any] = {
            "Select": "COUNT",
            "FilterExpression": "#status = :settled AND record_identity = proof_identity",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":settled": STATUS_SETTLED},
        }
        while True:
            response = self.table.scan(**scan_kwargs)
            total += int(response.get("Count", 0))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return total
            scan_kwargs["ExclusiveStartKey"] = last_key


def build_idempotency_store(settings: Any) -> InMemoryIdempotencyStore | DynamoIdempotencyStore:
    if not settings.idempotency_table_name:
        return InMemoryIdempotencyStore()

    table = boto3.resource("dynamodb").Table(settings.idempotency_table_name)
    return DynamoIdempotencyStore(table, lease_seconds=settings.reservation_lease_seconds)
