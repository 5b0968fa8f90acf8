"""Record store over DynamoDB-style document storage.

CRUD with audit metadata (`meta`), optimistic concurrency via a version
counter, conditional writes, full-table scans and partial-update expression
compilation.
"""

from .backend import Page, StorageBackend
from .errors import (
    AlreadyExistsError,
    BackendUnavailableError,
    ConditionFailedError,
    InvalidArgumentError,
    NotFoundError,
    RecordStoreError,
    VersionConflictError,
)
from .expressions import AuditStamp, CompiledUpdate, compile_update, escape_values
from .models import UNSET, Key, Meta, Record, payload_from_model
from .observability import configure_logging, log_context
from .settings import StoreSettings, get_settings
from .store import RecordStore, create_dynamo_store

__all__ = [
    "AlreadyExistsError",
    "AuditStamp",
    "BackendUnavailableError",
    "CompiledUpdate",
    "ConditionFailedError",
    "InvalidArgumentError",
    "Key",
    "Meta",
    "NotFoundError",
    "Page",
    "Record",
    "RecordStore",
    "RecordStoreError",
    "StorageBackend",
    "StoreSettings",
    "UNSET",
    "VersionConflictError",
    "compile_update",
    "configure_logging",
    "create_dynamo_store",
    "escape_values",
    "get_settings",
    "log_context",
    "payload_from_model",
]
