from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

import structlog

if TYPE_CHECKING:
    from ..settings import StoreSettings

_CONFIGURED = False

# Loggers that drown the store's own events at INFO/DEBUG.
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3")


def _drop_none_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in event_dict.items() if v is not None}


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _drop_none_fields,
    ]


def configure_logging(*, level: str | int | None = None, settings: StoreSettings | None = None) -> None:
    """
    Route stdlib logging and structlog through one JSON-lines handler on stdout.

    The level comes from `level`, else `settings.log_level`, else INFO. Library
    code only calls `get_logger`; applications call this once at startup.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved = level or (settings.log_level if settings is not None else None) or "INFO"
    if isinstance(resolved, str):
        resolved = resolved.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(resolved)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields (e.g. a request or job id) to every event logged inside."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
