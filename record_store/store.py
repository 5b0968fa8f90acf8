"""Record store: CRUD with audit metadata and optimistic concurrency.

Two update protocols are offered:

- `update` (default): a single conditional update that applies the caller's
  sparse payload, stamps `meta.modifiedAt/modifiedBy` and atomically increments
  `meta.version`. No read-before-write, so concurrent updates all land and the
  version counts them exactly; overlapping fields are last-write-wins.

- `save` (legacy compare-and-swap): the caller sends back a full record read
  earlier; the store rejects it with VersionConflictError if the stored version
  moved on. Kept for callers that replace whole records. It costs two round
  trips and rewrites the full item; prefer `update`.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from .backend import Page, StorageBackend
from .errors import (
    AlreadyExistsError,
    ConditionFailedError,
    InvalidArgumentError,
    NotFoundError,
    VersionConflictError,
)
from .expressions import AuditStamp, compile_update, escape_names, escape_values
from .models import (
    DEFAULT_KEY_FIELDS,
    META_FIELD,
    Meta,
    Record,
    key_of,
    normalize_meta,
    read_meta,
    strip_unset,
    validate_key,
)
from .observability.logging import get_logger
from .settings import StoreSettings

log = get_logger("record_store")


def _snapshot(item: Mapping[str, Any]) -> Record:
    return normalize_meta(copy.deepcopy(dict(item)))


def _snapshots(items: Iterable[Mapping[str, Any]]) -> list[Record]:
    return [_snapshot(i) for i in items]


class RecordStore:
    def __init__(
        self,
        *,
        backend: StorageBackend,
        settings: StoreSettings,
        key_fields: tuple[str, ...] = DEFAULT_KEY_FIELDS,
    ):
        if not key_fields:
            raise ValueError("key_fields must not be empty")
        if META_FIELD in key_fields:
            raise ValueError(f"{META_FIELD!r} cannot be a key field")
        self.backend = backend
        self.settings = settings
        self.table_name = settings.require_table_name()
        self.key_fields = tuple(key_fields)

    @property
    def _partition_key(self) -> str:
        return self.key_fields[0]

    @property
    def _protected(self) -> tuple[str, ...]:
        return (*self.key_fields, META_FIELD)

    def _existence_condition(self, *, exists: bool) -> tuple[str, dict[str, str]]:
        fn = "attribute_exists" if exists else "attribute_not_exists"
        return f"{fn}(#pk)", {"#pk": self._partition_key}

    # --- reads ---

    async def get(self, key: Mapping[str, Any]) -> Record | None:
        k = validate_key(key, self.key_fields, operation="Get")
        item = await self.backend.get_item(self.table_name, k)
        return _snapshot(item) if item else None

    async def get_required(self, key: Mapping[str, Any]) -> Record:
        item = await self.get(key)
        if not item:
            raise NotFoundError(
                message="Record not found",
                operation="Get",
                table_name=self.table_name,
                key=dict(key),
            )
        return item

    # --- writes ---

    async def create(self, data: Mapping[str, Any], actor_id: str | None) -> Record:
        if not isinstance(data, Mapping):
            raise InvalidArgumentError(message="data must be a mapping", operation="Create")
        key = key_of(data, self.key_fields, operation="Create")

        record: Record = copy.deepcopy(strip_unset(data))
        record[META_FIELD] = Meta.initial(actor_id=actor_id).to_item()

        condition, names = self._existence_condition(exists=False)
        try:
            await self.backend.put_item(
                self.table_name,
                record,
                condition_expression=condition,
                attribute_names=names,
            )
        except ConditionFailedError as e:
            log.info("record_create_conflict", table=self.table_name, key=key)
            raise AlreadyExistsError(
                message="Record already exists",
                operation="Create",
                table_name=self.table_name,
                key=key,
                cause=e,
            ) from e

        log.info("record_created", table=self.table_name, key=key, actor_id=actor_id)
        return copy.deepcopy(record)

    async def update(self, key: Mapping[str, Any], data: Mapping[str, Any], actor_id: str | None) -> Record:
        """Apply a sparse update and bump meta.version atomically.

        Raises NotFoundError if the record does not exist; nothing is written then.
        """
        k = validate_key(key, self.key_fields, operation="Update")
        compiled = compile_update(
            data,
            stamp=AuditStamp.now(actor_id),
            must_exist=self._partition_key,
            protected=self._protected,
        )
        try:
            item = await self.backend.update_item(
                self.table_name,
                k,
                update_expression=compiled.expression,
                attribute_names=dict(compiled.names),
                attribute_values=dict(compiled.values),
                condition_expression=compiled.condition,
                return_new_image=True,
                idempotent=False,
            )
        except ConditionFailedError as e:
            raise NotFoundError(
                message="Record not found",
                operation="Update",
                table_name=self.table_name,
                key=k,
                cause=e,
            ) from e

        out = _snapshot(item or {})
        meta = out.get(META_FIELD) or {}
        log.info(
            "record_updated",
            table=self.table_name,
            key=k,
            actor_id=actor_id,
            version=meta.get("version"),
        )
        return out

    async def patch(self, key: Mapping[str, Any], data: Mapping[str, Any]) -> Record:
        """Raw partial update: no version bump, no audit stamp.

        For administrative corrections only; it bypasses optimistic concurrency.
        """
        k = validate_key(key, self.key_fields, operation="Patch")
        compiled = compile_update(data, must_exist=self._partition_key, protected=self._protected)
        try:
            item = await self.backend.update_item(
                self.table_name,
                k,
                update_expression=compiled.expression,
                attribute_names=dict(compiled.names),
                attribute_values=dict(compiled.values),
                condition_expression=compiled.condition,
                return_new_image=True,
                idempotent=not any("list_append" in c for c in compiled.clauses),
            )
        except ConditionFailedError as e:
            raise NotFoundError(
                message="Record not found",
                operation="Patch",
                table_name=self.table_name,
                key=k,
                cause=e,
            ) from e

        log.info("record_patched", table=self.table_name, key=k, fields=len(compiled.clauses))
        return _snapshot(item or {})

    async def save(self, record: Mapping[str, Any], actor_id: str | None) -> Record:
        """Legacy compare-and-swap write of a full record.

        The caller's `meta.version` must equal the stored version. The write is
        conditioned on the stored version as well, so a writer slipping in
        between our read and our write is reported as a conflict instead of
        being overwritten.
        """
        if not isinstance(record, Mapping):
            raise InvalidArgumentError(message="record must be a mapping", operation="Save")
        k = key_of(record, self.key_fields, operation="Save")
        expected = read_meta(record, operation="Save")

        current = await self.backend.get_item(self.table_name, k)
        if not current:
            raise NotFoundError(message="Record not found", operation="Save", table_name=self.table_name, key=k)
        stored = read_meta(current, operation="Save")
        if stored.version != expected.version:
            log.warning(
                "record_conflict",
                table=self.table_name,
                key=k,
                expected_version=expected.version,
                actual_version=stored.version,
            )
            raise VersionConflictError(
                message=f"expected version {stored.version}, got {expected.version}",
                operation="Save",
                table_name=self.table_name,
                key=k,
                expected_version=expected.version,
                actual_version=stored.version,
            )

        item: Record = copy.deepcopy(strip_unset(record))
        item[META_FIELD] = stored.next(actor_id=actor_id).to_item()

        try:
            await self.backend.put_item(
                self.table_name,
                item,
                condition_expression="attribute_exists(#pk) AND #meta.#version = :expected",
                attribute_names={"#pk": self._partition_key, "#meta": META_FIELD, "#version": "version"},
                attribute_values={":expected": stored.version},
            )
        except ConditionFailedError as e:
            latest = await self.backend.get_item(self.table_name, k)
            if not latest:
                raise NotFoundError(
                    message="Record not found",
                    operation="Save",
                    table_name=self.table_name,
                    key=k,
                    cause=e,
                ) from e
            actual = (latest.get(META_FIELD) or {}).get("version")
            log.warning(
                "record_conflict",
                table=self.table_name,
                key=k,
                expected_version=stored.version,
                actual_version=actual,
            )
            raise VersionConflictError(
                message=f"record changed concurrently (version {actual})",
                operation="Save",
                table_name=self.table_name,
                key=k,
                expected_version=expected.version,
                actual_version=int(actual) if actual is not None else None,
                cause=e,
            ) from e

        log.info("record_saved", table=self.table_name, key=k, actor_id=actor_id, version=item[META_FIELD]["version"])
        return copy.deepcopy(item)

    async def delete(self, key: Mapping[str, Any]) -> None:
        k = validate_key(key, self.key_fields, operation="Delete")
        await self.backend.delete_item(self.table_name, k)
        log.info("record_deleted", table=self.table_name, key=k)

    # --- query/scan ---

    async def query_page(
        self,
        key_condition: str,
        values: Mapping[str, Any],
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
        next_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        """One query request. `values` uses logical names: {"id": 1} binds `:id`.

        `next_token` on the result is set when the backend truncated the
        response; pass it back to continue.
        """
        if not key_condition or not str(key_condition).strip():
            raise InvalidArgumentError(message="key_condition is required", operation="Query")
        if limit is not None and int(limit) < 1:
            raise InvalidArgumentError(message="limit must be >= 1", operation="Query")
        page = await self.backend.query(
            self.table_name,
            key_condition_expression=key_condition,
            attribute_values=escape_values(values),
            index_name=index_name,
            filter_expression=filter_expression,
            attribute_names=escape_names(attribute_names) or None,
            continuation_token=next_token,
            limit=limit,
        )
        return Page(items=_snapshots(page.items), next_token=page.next_token)

    async def query(
        self,
        key_condition: str,
        values: Mapping[str, Any],
        *,
        index_name: str | None = None,
        filter_expression: str | None = None,
        attribute_names: Mapping[str, str] | None = None,
    ) -> list[Record]:
        """Single query request, without implicit pagination.

        A truncated response is logged as `query_truncated`; use `query_page`
        to follow the continuation token.
        """
        page = await self.query_page(
            key_condition,
            values,
            index_name=index_name,
            filter_expression=filter_expression,
            attribute_names=attribute_names,
        )
        if page.next_token:
            log.warning("query_truncated", table=self.table_name, index=index_name, items=len(page.items))
        return page.items

    async def scan_page(
        self,
        *,
        projection: str | None = None,
        filter_expression: str | None = None,
        values: Mapping[str, Any] | None = None,
        attribute_names: Mapping[str, str] | None = None,
        next_token: str | None = None,
        limit: int | None = None,
    ) -> Page:
        if limit is not None and int(limit) < 1:
            raise InvalidArgumentError(message="limit must be >= 1", operation="Scan")
        page = await self.backend.scan_page(
            self.table_name,
            projection_expression=projection,
            filter_expression=filter_expression,
            attribute_values=escape_values(values) or None,
            attribute_names=escape_names(attribute_names) or None,
            continuation_token=next_token,
            limit=limit,
        )
        return Page(items=_snapshots(page.items), next_token=page.next_token)

    async def scan(
        self,
        *,
        projection: str | None = None,
        filter_expression: str | None = None,
        values: Mapping[str, Any] | None = None,
        attribute_names: Mapping[str, str] | None = None,
    ) -> list[Record]:
        """Scan the whole table, following continuation tokens to the end."""
        out: list[Record] = []
        token: str | None = None
        pages = 0
        while True:
            page = await self.scan_page(
                projection=projection,
                filter_expression=filter_expression,
                values=values,
                attribute_names=attribute_names,
                next_token=token,
            )
            pages += 1
            out.extend(page.items)
            token = page.next_token
            if not token:
                break
        log.info("table_scanned", table=self.table_name, pages=pages, items=len(out))
        return out


def create_dynamo_store(
    settings: StoreSettings,
    *,
    key_fields: tuple[str, ...] = DEFAULT_KEY_FIELDS,
) -> RecordStore:
    from .db.dynamodb.backend import DynamoBackend

    return RecordStore(backend=DynamoBackend(settings=settings), settings=settings, key_fields=key_fields)
