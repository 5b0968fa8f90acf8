from __future__ import annotations

import copy
from typing import Any, Mapping

import anyio

from ...backend import Page, StorageBackend
from ...errors import ConditionFailedError, InvalidArgumentError
from ...models import DEFAULT_KEY_FIELDS
from .expressions import (
    MISSING,
    Scope,
    apply_update,
    evaluate_condition,
    parse_condition,
    parse_projection,
    parse_update,
    project,
    resolve,
)


class InMemoryBackend(StorageBackend):
    """Process-local StorageBackend for development and tests.

    Each operation yields to the event loop once, then runs to completion
    without further suspension, so concurrent tasks interleave between
    operations but never inside one (the same atomicity a single DynamoDB
    request has).
    """

    def __init__(
        self,
        *,
        key_fields: tuple[str, ...] = DEFAULT_KEY_FIELDS,
        indexes: Mapping[str, tuple[str, ...]] | None = None,
        page_size: int = 100,
    ):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.key_fields = tuple(key_fields)
        self.indexes = {name: tuple(attrs) for name, attrs in (indexes or {}).items()}
        self.page_size = int(page_size)
        # Per-operation request log, handy for asserting round trips in tests.
        self.requests: list[str] = []
        self._tables: dict[str, dict[tuple, dict[str, Any]]] = {}

    def _rows(self, table: str) -> dict[tuple, dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _key_tuple(self, key: Mapping[str, Any]) -> tuple:
        if set(key) != set(self.key_fields):
            raise InvalidArgumentError(
                message="The provided key element does not match the schema",
                operation="Key",
                key=dict(key),
            )
        return tuple(key[f] for f in self.key_fields)

    async def _enter(self, operation: str) -> None:
        await anyio.sleep(0)
        self.requests.append(operation)

    async def get_item(self, table: str, key: Mapping[str, Any]) -> dict[str, Any] | None:
        await self._enter("GetItem")
        item = self._rows(table).get(self._key_tuple(key))
        return copy.deepcopy(item) if item is not None else None

    async def put_item(
        self,
        table: str,
        item: Mapping[str, Any],
        *,
        condition_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
        attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        await self._enter("PutItem")
        k = self._key_tuple({f: item.get(f) for f in self.key_fields if f in item})
        scope = Scope(attribute_names, attribute_values)
        condition = parse_condition(condition_expression, scope) if condition_expression else None
        scope.check_all_used()

        rows = self._rows(table)
        existing = rows.get(k) or {}
        if condition is not None and not evaluate_condition(condition, existing):
            raise ConditionFailedError(message="The conditional request failed", operation="PutItem", table_name=table)
        rows[k] = copy.deepcopy(dict(item))

    async def update_item(
        self,
        table: str,
        key: Mapping[str, Any],
        *,
        update_expression: str,
        attribute_names: Mapping[str, str] | None,
        attribute_values: Mapping[str, Any],
        condition_expression: str | None = None,
        return_new_image: bool = True,
        idempotent: bool = True,
    ) -> dict[str, Any] | None:
        await self._enter("UpdateItem")
        k = self._key_tuple(key)
        scope = Scope(attribute_names, attribute_values)
        actions = parse_update(update_expression, scope)
        condition = parse_condition(condition_expression, scope) if condition_expression else None
        scope.check_all_used()

        for action in actions:
            if action[1][0] in self.key_fields:
                raise InvalidArgumentError(
                    message=f"Cannot update attribute {action[1][0]}. This attribute is part of the key",
                    operation="UpdateItem",
                    table_name=table,
                    key=dict(key),
                )

        rows = self._rows(table)
        existing = rows.get(k)
        if condition is not None and not evaluate_condition(condition, existing or {}):
            raise ConditionFailedError(
                message="The conditional request failed",
                operation="UpdateItem",
                table_name=table,
                key=dict(key),
            )

        new_item = apply_update(actions, existing if existing is not None else dict(key))
        rows[k] = new_item
        return copy.deepcopy(new_item) if return_new_image else None

    async def delete_item(self, table: str, key: Mapping[str, Any]) -> None:
        await self._enter("DeleteItem")
        self._rows(table).pop(self._key_tuple(key), None)

    def _offset(self, token: str | None, *, operation: str, table: str) -> int:
        try:
            offset = int(token) if token else 0
        except ValueError as e:
            raise InvalidArgumentError(message="Invalid nextToken", operation=operation, table_name=table) from e
        if offset < 0:
            raise InvalidArgumentError(message="Invalid nextToken", operation=operation, table_name=table)
        return offset

    def _window(self, rows: list, offset: int, limit: int | None) -> tuple[list, str | None]:
        # Like DynamoDB, the limit bounds items examined, not items returned.
        end = offset + int(limit or self.page_size)
        return rows[offset:end], (str(end) if end < len(rows) else None)

    async def query(
        self,
        table: str,
        *,
        key_condition_expression: str,
        attribute_values: Mapping[str, Any],
        index_name: str | None = None,
        filter_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
        continuation_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        await self._enter("Query")
        if index_name is not None and index_name not in self.indexes:
            raise InvalidArgumentError(
                message=f"The table does not have the specified index: {index_name}",
                operation="Query",
                table_name=table,
            )
        offset = self._offset(continuation_token, operation="Query", table=table)
        scope = Scope(attribute_names, attribute_values)
        key_condition = parse_condition(key_condition_expression, scope)
        filter_node = parse_condition(filter_expression, scope) if filter_expression else None
        scope.check_all_used()

        key_attrs = self.indexes[index_name] if index_name is not None else self.key_fields
        rows = [
            r for r in self._rows(table).values() if all(resolve(r, (a,)) is not MISSING for a in key_attrs)
        ]
        matched = [r for r in rows if evaluate_condition(key_condition, r)]
        if len(key_attrs) > 1:
            matched.sort(key=lambda r: r[key_attrs[1]])
        window, next_token = self._window(matched, offset, limit)
        if filter_node is not None:
            window = [r for r in window if evaluate_condition(filter_node, r)]
        return Page(items=copy.deepcopy(window), next_token=next_token)

    async def scan_page(
        self,
        table: str,
        *,
        projection_expression: str | None = None,
        filter_expression: str | None = None,
        attribute_values: Mapping[str, Any] | None = None,
        attribute_names: Mapping[str, str] | None = None,
        continuation_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        await self._enter("Scan")
        offset = self._offset(continuation_token, operation="Scan", table=table)

        scope = Scope(attribute_names, attribute_values)
        filter_node = parse_condition(filter_expression, scope) if filter_expression else None
        projection = parse_projection(projection_expression, scope) if projection_expression else None
        scope.check_all_used()

        window, next_token = self._window(list(self._rows(table).values()), offset, limit)
        if filter_node is not None:
            window = [r for r in window if evaluate_condition(filter_node, r)]
        if projection is not None:
            window = [project(projection, r) for r in window]
        return Page(items=copy.deepcopy(window), next_token=next_token)
