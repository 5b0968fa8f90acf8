from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Mapping

from ...backend import Page
from ...errors import InvalidArgumentError
from ...settings import StoreSettings
from .client import table_resource
from .pagination import decode_next_token, encode_next_token
from .retry import RetryPolicy, ddb_call


def to_dynamo(value: Any, *, operation: str) -> Any:
    """Convert python floats (anywhere in a value) to Decimal for boto3.

    boto3's serializer refuses floats; `Decimal(str(f))` keeps the value the
    caller sees when printing it rather than its binary expansion.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidArgumentError(
                message=f"DynamoDB cannot store non-finite number {value!r}",
                operation=operation,
            )
        return Decimal(str(value))
    if isinstance(value, Mapping):
        return {k: to_dynamo(v, operation=operation) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v, operation=operation) for v in value]
    if isinstance(value, (set, frozenset)):
        return {to_dynamo(v, operation=operation) for v in value}
    return value


class DynamoTable:
    """Blocking boto3 table wrapper; every call goes through `ddb_call`."""

    def __init__(self, *, table_name: str, settings: StoreSettings):
        self.table_name = str(table_name)
        self._table = table_resource(self.table_name, settings)
        self._retry = RetryPolicy(max_attempts=settings.ddb_max_attempts)

    # --- basic operations ---

    def get_item(self, *, key: Mapping[str, Any]) -> dict[str, Any] | None:
        k = to_dynamo(key, operation="GetItem")

        def _op():
            resp = self._table.get_item(Key=k)
            return resp.get("Item")

        return ddb_call("GetItem", _op, table_name=self.table_name, key=k, retry_policy=self._retry)

    def put_item(
        self,
        *,
        item: Mapping[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"Item": to_dynamo(item, operation="PutItem")}
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            kwargs["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if expression_attribute_values:
            kwargs["ExpressionAttributeValues"] = to_dynamo(expression_attribute_values, operation="PutItem")

        return ddb_call("PutItem", lambda: self._table.put_item(**kwargs), table_name=self.table_name, retry_policy=self._retry)

    def delete_item(self, *, key: Mapping[str, Any]) -> dict[str, Any]:
        k = to_dynamo(key, operation="DeleteItem")
        return ddb_call(
            "DeleteItem",
            lambda: self._table.delete_item(Key=k),
            table_name=self.table_name,
            key=k,
            retry_policy=self._retry,
        )

    def update_item(
        self,
        *,
        key: Mapping[str, Any],
        update_expression: str,
        expression_attribute_names: Mapping[str, str] | None,
        expression_attribute_values: Mapping[str, Any],
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
        idempotent: bool = True,
    ) -> dict[str, Any] | None:
        k = to_dynamo(key, operation="UpdateItem")
        kwargs: dict[str, Any] = {
            "Key": k,
            "UpdateExpression": update_expression,
            "ExpressionAttributeValues": to_dynamo(expression_attribute_values, operation="UpdateItem"),
            "ReturnValues": return_values,
        }
        if expression_attribute_names:
            kwargs["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression

        def _op():
            resp = self._table.update_item(**kwargs)
            return resp.get("Attributes")

        return ddb_call(
            "UpdateItem",
            _op,
            table_name=self.table_name,
            key=k,
            retry_policy=self._retry,
            idempotent=idempotent,
        )

    # --- query/pagination ---

    def query_page(
        self,
        *,
        key_condition_expression: str,
        expression_attribute_values: Mapping[str, Any],
        index_name: str | None = None,
        filter_expression: str | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        next_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition_expression,
            "ExpressionAttributeValues": to_dynamo(expression_attribute_values, operation="Query"),
        }
        if index_name:
            kwargs["IndexName"] = index_name
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if expression_attribute_names:
            kwargs["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if limit:
            kwargs["Limit"] = int(limit)
        lek = decode_next_token(next_token, operation="Query") if next_token else None
        if lek:
            kwargs["ExclusiveStartKey"] = lek

        resp = ddb_call("Query", lambda: self._table.query(**kwargs), table_name=self.table_name, retry_policy=self._retry)
        return Page(items=list(resp.get("Items") or []), next_token=encode_next_token(resp.get("LastEvaluatedKey")))

    def scan_page(
        self,
        *,
        projection_expression: str | None = None,
        filter_expression: str | None = None,
        expression_attribute_values: Mapping[str, Any] | None = None,
        expression_attribute_names: Mapping[str, str] | None = None,
        next_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        kwargs: dict[str, Any] = {}
        if projection_expression:
            kwargs["ProjectionExpression"] = projection_expression
        if filter_expression:
            kwargs["FilterExpression"] = filter_expression
        if expression_attribute_values:
            kwargs["ExpressionAttributeValues"] = to_dynamo(expression_attribute_values, operation="Scan")
        if expression_attribute_names:
            kwargs["ExpressionAttributeNames"] = dict(expression_attribute_names)
        if limit:
            kwargs["Limit"] = int(limit)
        # Only pass ExclusiveStartKey when present.
        lek = decode_next_token(next_token, operation="Scan") if next_token else None
        if lek:
            kwargs["ExclusiveStartKey"] = lek

        resp = ddb_call("Scan", lambda: self._table.scan(**kwargs), table_name=self.table_name, retry_policy=self._retry)
        return Page(items=list(resp.get("Items") or []), next_token=encode_next_token(resp.get("LastEvaluatedKey")))
