"""AWS DynamoDB backend for the Transfer Record Store.

Table layout: partition key ``owner_id`` (S), sort key ``transfer_id`` (S).
Records are stored flat; datetimes as ISO 8601 strings, absent values are
omitted rather than stored as NULL.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from transfer_api.errors import AlreadyExists, NotFound, StaleState, TransientIOError
from transfer_api.schemas import (
    WRITE_ONCE_FIELDS,
    TransferRecord,
    TransferStatus,
    check_transition,
    utcnow,
)
from .record_store import BaseRecordStore, encode_value, filter_stale, record_to_item

logger = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


def _item_to_record(item: Dict[str, Any]) -> TransferRecord:
    data = {
        key: int(value) if isinstance(value, Decimal) else value
        for key, value in item.items()
    }
    return TransferRecord(**data)


class DynamoDBRecordStore(BaseRecordStore):
    """DynamoDB-backed record store using conditional writes."""

    def __init__(self, table_name: str, dynamodb_resource=None):
        if dynamodb_resource is None:
            from transfer_api.aws_clients import get_dynamodb_resource
            dynamodb_resource = get_dynamodb_resource()
        self.table_name = table_name
        self.table = dynamodb_resource.Table(table_name)
        logger.info("Using DynamoDB table: %s", table_name)

    def _key(self, owner_id: str, transfer_id: str) -> Dict[str, str]:
        return {"owner_id": owner_id, "transfer_id": transfer_id}

    def _get_item(self, owner_id: str, transfer_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key=self._key(owner_id, transfer_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"get_item failed: {e}") from e
        return response.get("Item")

    def create(self, record: TransferRecord) -> TransferRecord:
        try:
            self.table.put_item(
                Item=record_to_item(record),
                ConditionExpression="attribute_not_exists(owner_id) AND attribute_not_exists(transfer_id)",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise AlreadyExists(f"Transfer {record.owner_id}/{record.transfer_id} already exists") from e
            raise TransientIOError(f"put_item failed: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"put_item failed: {e}") from e
        logger.info("Created transfer record %s/%s", record.owner_id, record.transfer_id)
        return record

    def get(self, owner_id: str, transfer_id: str) -> TransferRecord:
        item = self._get_item(owner_id, transfer_id)
        if item is None:
            raise NotFound(f"Transfer {owner_id}/{transfer_id} not found")
        return _item_to_record(item)

    def _raise_for_failed_condition(self, owner_id: str, transfer_id: str, expected: TransferStatus) -> None:
        item = self._get_item(owner_id, transfer_id)
        if item is None:
            raise NotFound(f"Transfer {owner_id}/{transfer_id} not found")
        current = TransferStatus(item["status"])
        raise StaleState(
            f"Transfer {owner_id}/{transfer_id} is {current.value}, expected {expected.value}",
            current_status=current,
        )

    def transition(
        self,
        owner_id: str,
        transfer_id: str,
        expected_status: TransferStatus,
        next_status: TransferStatus,
        **fields: Any,
    ) -> TransferRecord:
        check_transition(expected_status, next_status, fields)
        expected_status = TransferStatus(expected_status)
        next_status = TransferStatus(next_status)

        names = {"#status": "status"}
        values: Dict[str, Any] = {":next": next_status.value, ":expected": expected_status.value}
        set_clauses = ["#status = :next"]
        remove_clauses = []
        for index, (column, value) in enumerate(fields.items()):
            name, placeholder = f"#f{index}", f":v{index}"
            if value is None:
                # write-once fields are never cleared
                if column not in WRITE_ONCE_FIELDS:
                    names[name] = column
                    remove_clauses.append(name)
                continue
            names[name] = column
            values[placeholder] = encode_value(value)
            if column in WRITE_ONCE_FIELDS:
                set_clauses.append(f"{name} = if_not_exists({name}, {placeholder})")
            else:
                set_clauses.append(f"{name} = {placeholder}")

        update_expression = "SET " + ", ".join(set_clauses)
        if remove_clauses:
            update_expression += " REMOVE " + ", ".join(remove_clauses)

        try:
            response = self.table.update_item(
                Key=self._key(owner_id, transfer_id),
                UpdateExpression=update_expression,
                ConditionExpression="attribute_exists(owner_id) AND #status = :expected",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                self._raise_for_failed_condition(owner_id, transfer_id, expected_status)
            raise TransientIOError(f"update_item failed: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"update_item failed: {e}") from e

        logger.info(
            "Transfer %s/%s: %s -> %s", owner_id, transfer_id, expected_status.value, next_status.value
        )
        return _item_to_record(response["Attributes"])

    def record_attempt(self, owner_id: str, transfer_id: str) -> TransferRecord:
        try:
            response = self.table.update_item(
                Key=self._key(owner_id, transfer_id),
                UpdateExpression="SET attempt_count = if_not_exists(attempt_count, :zero) + :one, last_attempt_at = :now",
                ConditionExpression="attribute_exists(owner_id)",
                ExpressionAttributeValues={":zero": 0, ":one": 1, ":now": utcnow().isoformat()},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFound(f"Transfer {owner_id}/{transfer_id} not found") from e
            raise TransientIOError(f"update_item failed: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"update_item failed: {e}") from e
        return _item_to_record(response["Attributes"])

    def set_retry_state(
        self,
        owner_id: str,
        transfer_id: str,
        next_attempt_at: Optional[datetime],
        error: Optional[str],
    ) -> None:
        set_clauses, remove_clauses, values = [], [], {}
        for column, value in (("next_attempt_at", next_attempt_at), ("last_error", error)):
            if value is None:
                remove_clauses.append(column)
            else:
                set_clauses.append(f"{column} = :{column}")
                values[f":{column}"] = encode_value(value)

        update_expression = ""
        if set_clauses:
            update_expression += "SET " + ", ".join(set_clauses)
        if remove_clauses:
            update_expression += " REMOVE " + ", ".join(remove_clauses)

        kwargs: Dict[str, Any] = {
            "Key": self._key(owner_id, transfer_id),
            "UpdateExpression": update_expression.strip(),
            "ConditionExpression": "attribute_exists(owner_id)",
        }
        if values:
            kwargs["ExpressionAttributeValues"] = values
        try:
            self.table.update_item(**kwargs)
        except ClientError as e:
            if _is_condition_failure(e):
                raise NotFound(f"Transfer {owner_id}/{transfer_id} not found") from e
            raise TransientIOError(f"update_item failed: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"update_item failed: {e}") from e

    def list_by_status(self, status: TransferStatus, older_than: Optional[datetime] = None) -> List[TransferRecord]:
        # Full scan: reconciliation runs rarely and the table is small relative to scan cost.
        # TODO: switch to a status GSI query once the table carries one.
        records: List[TransferRecord] = []
        kwargs: Dict[str, Any] = {"FilterExpression": Attr("status").eq(TransferStatus(status).value)}
        try:
            while True:
                response = self.table.scan(**kwargs)
                records.extend(_item_to_record(item) for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"scan failed: {e}") from e
        return filter_stale(records, older_than)
