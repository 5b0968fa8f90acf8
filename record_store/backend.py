"""Storage backend interface: the document-store calls RecordStore is built on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    next_token: str | None


class StorageBackend(ABC):
    """Async document-store operations the record store is built on.

    Conditional writes that fail raise ConditionFailedError; transport failures
    raise BackendUnavailableError.
    """

    @abstractmethod
    async def get_item(self, table: str, key: Mapping[str, Any]) -> dict[str, Any] | None:
        """Get a single item by primary key."""

    @abstractmethod
    async def put_item(
        self,
        table: str,
        item: Mapping[str, Any],
        *,
        condition_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
        attribute_values: Mapping[str, Any] | None = None,
    ) -> None:
        """Write a full item, optionally guarded by a condition."""

    @abstractmethod
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
        """Apply an update expression; returns the new image when requested.

        `idempotent=False` tells the backend the expression must not be replayed
        after an ambiguous failure (e.g. it increments a counter).
        """

    @abstractmethod
    async def delete_item(self, table: str, key: Mapping[str, Any]) -> None:
        """Delete an item; deleting a missing item is not an error."""

    @abstractmethod
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
        """Run a single query request; `next_token` is set when results were truncated."""

    @abstractmethod
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
        """Fetch one scan page; `next_token` is None on the last page."""
