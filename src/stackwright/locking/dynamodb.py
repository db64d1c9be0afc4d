"""
DynamoDB lock backend.

Table layout (partition key ``LockID``, string):

    LockID        state key
    Holder        holder identity
    LockRecordId  unique id of this acquisition
    AcquiredAt    epoch seconds
    RenewedAt     epoch seconds
    LeaseSeconds  lease length
    ExpiresAt     RenewedAt + LeaseSeconds
    Info          free-form operation info

All writes are conditional PutItem/UpdateItem/DeleteItem calls, so the
table itself enforces a single holder.
"""

from __future__ import annotations

from typing import Any

import aioboto3
import structlog
from botocore.exceptions import ClientError

from stackwright.locking.models import LockRecord

logger = structlog.get_logger()

_CONDITION_FAILED = "ConditionalCheckFailedException"


class DynamoDBLockBackend:
    def __init__(self, table: str, region: str = "us-east-1") -> None:
        self._table = table
        self._region = region

    def _session(self) -> aioboto3.Session:
        return aioboto3.Session(region_name=self._region)

    async def get(self, key: str) -> LockRecord | None:
        async with self._session().client("dynamodb") as client:
            response = await client.get_item(
                TableName=self._table,
                Key={"LockID": {"S": key}},
                ConsistentRead=True,
            )
        item = response.get("Item")
        return _from_item(item) if item else None

    async def put_if_available(self, record: LockRecord, now: float) -> bool:
        async with self._session().client("dynamodb") as client:
            try:
                await client.put_item(
                    TableName=self._table,
                    Item=_to_item(record),
                    ConditionExpression="attribute_not_exists(LockID) OR ExpiresAt <= :now",
                    ExpressionAttributeValues={":now": {"N": _num(now)}},
                )
            except ClientError as e:
                if _error_code(e) == _CONDITION_FAILED:
                    return False
                raise
        return True

    async def renew(
        self, key: str, holder: str, lock_id: str, now: float, lease_seconds: float
    ) -> LockRecord | None:
        async with self._session().client("dynamodb") as client:
            try:
                response = await client.update_item(
                    TableName=self._table,
                    Key={"LockID": {"S": key}},
                    UpdateExpression="SET RenewedAt = :now, LeaseSeconds = :lease, ExpiresAt = :expires",
                    ConditionExpression="Holder = :holder AND LockRecordId = :id AND ExpiresAt > :now",
                    ExpressionAttributeValues={
                        ":now": {"N": _num(now)},
                        ":lease": {"N": _num(lease_seconds)},
                        ":expires": {"N": _num(now + lease_seconds)},
                        ":holder": {"S": holder},
                        ":id": {"S": lock_id},
                    },
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                if _error_code(e) == _CONDITION_FAILED:
                    return None
                raise
        return _from_item(response["Attributes"])

    async def delete(self, key: str, holder: str | None = None, lock_id: str | None = None) -> bool:
        request: dict[str, Any] = {
            "TableName": self._table,
            "Key": {"LockID": {"S": key}},
            "ConditionExpression": "attribute_exists(LockID)",
        }
        values: dict[str, Any] = {}
        if holder is not None:
            request["ConditionExpression"] += " AND Holder = :holder"
            values[":holder"] = {"S": holder}
        if lock_id is not None:
            request["ConditionExpression"] += " AND LockRecordId = :lock_id"
            values[":lock_id"] = {"S": lock_id}
        if values:
            request["ExpressionAttributeValues"] = values
        async with self._session().client("dynamodb") as client:
            try:
                await client.delete_item(**request)
            except ClientError as e:
                if _error_code(e) == _CONDITION_FAILED:
                    return False
                raise
        return True


def _num(value: float) -> str:
    return repr(float(value))


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _to_item(record: LockRecord) -> dict[str, dict[str, str]]:
    return {
        "LockID": {"S": record.key},
        "Holder": {"S": record.holder},
        "LockRecordId": {"S": record.lock_id},
        "AcquiredAt": {"N": _num(record.acquired_at)},
        "RenewedAt": {"N": _num(record.renewed_at)},
        "LeaseSeconds": {"N": _num(record.lease_seconds)},
        "ExpiresAt": {"N": _num(record.expires_at)},
        "Info": {"S": record.info},
    }


def _from_item(item: dict[str, dict[str, str]]) -> LockRecord:
    return LockRecord(
        key=item["LockID"]["S"],
        holder=item["Holder"]["S"],
        lock_id=item["LockRecordId"]["S"],
        acquired_at=float(item["AcquiredAt"]["N"]),
        renewed_at=float(item["RenewedAt"]["N"]),
        lease_seconds=float(item["LeaseSeconds"]["N"]),
        info=item.get("Info", {}).get("S", ""),
    )
