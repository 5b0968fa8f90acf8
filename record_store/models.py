from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidArgumentError

Record = dict[str, Any]
Key = dict[str, Any]

META_FIELD = "meta"
DEFAULT_KEY_FIELDS: tuple[str, ...] = ("id",)


class _Unset:
    """Marker for "leave this field alone" in update payloads.

    `None` is a real value (stored as null); only UNSET means skip.
    """

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Unset:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unset:
        return self


UNSET: Any = _Unset()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Meta(BaseModel):
    """Audit block stored under `meta` on every record."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = Field(ge=1)
    created_at: str = Field(alias="createdAt")
    created_by: str | None = Field(default=None, alias="createdBy")
    modified_at: str | None = Field(default=None, alias="modifiedAt")
    modified_by: str | None = Field(default=None, alias="modifiedBy")

    @classmethod
    def initial(cls, *, actor_id: str | None, at: str | None = None) -> Meta:
        return cls(version=1, created_at=at or now_iso(), created_by=actor_id)

    def next(self, *, actor_id: str | None, at: str | None = None) -> Meta:
        return self.model_copy(
            update={
                "version": self.version + 1,
                "modified_at": at or now_iso(),
                "modified_by": actor_id,
            }
        )

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def read_meta(record: Mapping[str, Any], *, operation: str) -> Meta:
    raw = record.get(META_FIELD)
    if not isinstance(raw, Mapping):
        raise InvalidArgumentError(message="record has no meta block", operation=operation)
    try:
        return Meta.model_validate(dict(raw))
    except ValueError as e:
        raise InvalidArgumentError(message=f"invalid meta block: {e}", operation=operation, cause=e) from e


def strip_unset(data: Mapping[str, Any]) -> Record:
    """Drop UNSET entries at any depth (map values and list elements)."""
    return {k: strip_unset_value(v) for k, v in data.items() if v is not UNSET}


def strip_unset_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return strip_unset(value)
    if isinstance(value, (list, tuple)):
        return type(value)(strip_unset_value(v) for v in value if v is not UNSET)
    return value


def normalize_meta(record: Record) -> Record:
    """Turn integral Decimal numbers in `meta` (as DynamoDB returns them) into ints, in place."""
    meta = record.get(META_FIELD)
    if isinstance(meta, dict):
        for k, v in meta.items():
            if isinstance(v, Decimal) and v == v.to_integral_value():
                meta[k] = int(v)
    return record


def payload_from_model(model: BaseModel, *, by_alias: bool = True) -> dict[str, Any]:
    """Build an update payload from the fields explicitly set on a pydantic model."""
    return model.model_dump(exclude_unset=True, by_alias=by_alias)


def key_of(record: Mapping[str, Any], key_fields: tuple[str, ...], *, operation: str) -> Key:
    """Project a record (or candidate key) onto its key fields."""
    if not isinstance(record, Mapping):
        raise InvalidArgumentError(message="expected a mapping", operation=operation)
    out: Key = {}
    for f in key_fields:
        v = record.get(f)
        if v is None or v is UNSET:
            raise InvalidArgumentError(message=f"{f} is required", operation=operation)
        out[f] = v
    return out


def validate_key(key: Any, key_fields: tuple[str, ...], *, operation: str) -> Key:
    if not isinstance(key, Mapping):
        raise InvalidArgumentError(message="key must be a mapping", operation=operation)
    extra = sorted(set(key) - set(key_fields))
    if extra:
        raise InvalidArgumentError(
            message=f"key has non-key attributes: {', '.join(extra)}",
            operation=operation,
            key=dict(key),
        )
    return key_of(key, key_fields, operation=operation)
