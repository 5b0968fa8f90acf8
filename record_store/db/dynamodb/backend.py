from __future__ import annotations

from functools import partial
from typing import Any, Mapping

import anyio.to_thread

from ...backend import Page, StorageBackend
from ...settings import StoreSettings
from .table import DynamoTable


class DynamoBackend(StorageBackend):
    """StorageBackend over boto3.

    boto3 is blocking, so each call runs in a worker thread; the calling task
    suspends until DynamoDB answers.
    """

    def __init__(self, *, settings: StoreSettings):
        self.settings = settings
        self._tables: dict[str, DynamoTable] = {}

    def table(self, table: str) -> DynamoTable:
        t = self._tables.get(table)
        if t is None:
            t = DynamoTable(table_name=table, settings=self.settings)
            self._tables[table] = t
        return t

    async def get_item(self, table: str, key: Mapping[str, Any]) -> dict[str, Any] | None:
        return await anyio.to_thread.run_sync(partial(self.table(table).get_item, key=key))

    async def put_item(
        self,
        table: str,
        item: Mapping[str, Any],
        *,
        condition_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
        attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        await anyio.to_thread.run_sync(
            partial(
                self.table(table).put_item,
                item=item,
                condition_expression=condition_expression,
                expression_attribute_names=attribute_names,
                expression_attribute_values=attribute_values,
            )
        )

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
        return await anyio.to_thread.run_sync(
            partial(
                self.table(table).update_item,
                key=key,
                update_expression=update_expression,
                expression_attribute_names=attribute_names,
                expression_attribute_values=attribute_values,
                condition_expression=condition_expression,
                return_values="ALL_NEW" if return_new_image else "NONE",
                idempotent=idempotent,
            )
        )

    async def delete_item(self, table: str, key: Mapping[str, Any]) -> None:
        await anyio.to_thread.run_sync(partial(self.table(table).delete_item, key=key))

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
        return await anyio.to_thread.run_sync(
            partial(
                self.table(table).query_page,
                key_condition_expression=key_condition_expression,
                expression_attribute_values=attribute_values,
                index_name=index_name,
                filter_expression=filter_expression,
                expression_attribute_names=attribute_names,
                next_token=continuation_token,
                limit=limit,
            )
        )

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
        return await anyio.to_thread.run_sync(
            partial(
                self.table(table).scan_page,
                projection_expression=projection_expression,
                filter_expression=filter_expression,
                expression_attribute_values=attribute_values,
                expression_attribute_names=attribute_names,
                next_token=continuation_token,
                limit=limit,
            )
        )
