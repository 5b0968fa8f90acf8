from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from ...errors import (
    BackendUnavailableError,
    ConditionFailedError,
    InvalidArgumentError,
    RecordStoreError,
)
from ...observability.logging import get_logger

T = TypeVar("T")

log = get_logger("ddb")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay_s: float = 0.05
    max_delay_s: float = 1.5

    def delay_for(self, attempt: int) -> float:
        # Full jitter: uniform in [0, min(cap, base * 2^(attempt-1))].
        ceiling = min(self.max_delay_s, self.base_delay_s * (2 ** max(0, attempt - 1)))
        return random.random() * ceiling


# Rejected before being applied; any request may be replayed.
_THROTTLE_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
    }
)

# The write may or may not have landed.
_AMBIGUOUS_CODES = frozenset({"InternalServerError", "ServiceUnavailable"})

# code -> (error kind, message template, retryable)
_CLIENT_ERRORS: dict[str, tuple[type[RecordStoreError], str, bool]] = {
    "ConditionalCheckFailedException": (ConditionFailedError, "conditional check failed", False),
    "ValidationException": (InvalidArgumentError, "request rejected: {detail}", False),
    "ResourceNotFoundException": (BackendUnavailableError, "table {table} not found", False),
    "AccessDeniedException": (BackendUnavailableError, "access denied", False),
    "UnrecognizedClientException": (BackendUnavailableError, "access denied", False),
    **{c: (BackendUnavailableError, "throttled ({code})", True) for c in _THROTTLE_CODES},
    **{c: (BackendUnavailableError, "service unavailable ({code})", True) for c in _AMBIGUOUS_CODES},
}


def _sleep_backoff(policy: RetryPolicy, attempt: int) -> None:
    time.sleep(policy.delay_for(attempt))


def _error_field(e: ClientError, section: str, field: str) -> str | None:
    return (e.response or {}).get(section, {}).get(field)


def map_dynamodb_error(
    exc: Exception,
    *,
    operation: str,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
) -> RecordStoreError:
    """Translate a botocore failure into the record store taxonomy."""
    context = {"operation": operation, "table_name": table_name, "key": key, "cause": exc}

    if isinstance(exc, ClientError):
        code = _error_field(exc, "Error", "Code") or "ClientError"
        kind, template, retryable = _CLIENT_ERRORS.get(
            code, (BackendUnavailableError, "request failed ({code})", False)
        )
        message = template.format(
            code=code,
            table=table_name,
            detail=_error_field(exc, "Error", "Message") or "validation failed",
        )
        return kind(
            message=f"DynamoDB {message}",
            aws_request_id=_error_field(exc, "ResponseMetadata", "RequestId"),
            retryable=retryable,
            **context,
        )

    if isinstance(exc, ParamValidationError):
        return InvalidArgumentError(message=f"DynamoDB request rejected: {exc}", **context)

    if isinstance(exc, TypeError):
        # boto3's serializer rejects values it cannot encode (datetime, objects).
        return InvalidArgumentError(message=f"DynamoDB cannot serialize value: {exc}", **context)

    if isinstance(exc, BotoCoreError):
        # Connection resets, read timeouts, endpoint errors: the request may
        # have reached the service.
        return BackendUnavailableError(message=f"DynamoDB client error: {exc}", retryable=True, **context)

    return BackendUnavailableError(message=f"unexpected DynamoDB error: {exc!r}", **context)


def _replay_allowed(exc: Exception, *, idempotent: bool) -> bool:
    if idempotent:
        return True
    return isinstance(exc, ClientError) and _error_field(exc, "Error", "Code") in _THROTTLE_CODES


def ddb_call(
    operation: str,
    fn: Callable[[], T],
    *,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
    retry_policy: RetryPolicy | None = None,
    idempotent: bool = True,
) -> T:
    """Run one boto3 call, mapping failures and retrying transient ones.

    Non-idempotent calls are only replayed when DynamoDB guarantees the request
    was not applied (throttling); timeouts and 5xx are raised to the caller.
    """
    policy = retry_policy or RetryPolicy()
    attempts = max(1, int(policy.max_attempts))

    attempt = 1
    while True:
        try:
            return fn()
        except RecordStoreError:
            raise
        except Exception as e:  # noqa: BLE001
            err = map_dynamodb_error(e, operation=operation, table_name=table_name, key=key)
            if not err.retryable or not _replay_allowed(e, idempotent=idempotent) or attempt >= attempts:
                raise err from e

            log.warning(
                "ddb_retry",
                operation=operation,
                table=table_name,
                attempt=attempt,
                error=err.message,
            )
            _sleep_backoff(policy, attempt)
            attempt += 1
