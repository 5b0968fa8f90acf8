from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class RecordStoreError(Exception):
    """Base error for record store operations.

    Backend adapters raise these (never raw botocore errors) so callers can
    handle one taxonomy regardless of the storage engine underneath.
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class InvalidArgumentError(RecordStoreError):
    pass


@dataclass(slots=True)
class AlreadyExistsError(RecordStoreError):
    pass


@dataclass(slots=True)
class NotFoundError(RecordStoreError):
    pass


@dataclass(slots=True)
class VersionConflictError(RecordStoreError):
    expected_version: int | None = None
    actual_version: int | None = None


@dataclass(slots=True)
class ConditionFailedError(RecordStoreError):
    """A backend conditional write was rejected.

    The store translates this into AlreadyExistsError, NotFoundError or
    VersionConflictError depending on the operation; it should not reach
    callers of RecordStore.
    """


@dataclass(slots=True)
class BackendUnavailableError(RecordStoreError):
    pass
