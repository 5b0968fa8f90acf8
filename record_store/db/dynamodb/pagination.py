from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from ...errors import InvalidArgumentError

_TOKEN_VERSION = 1

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def encode_next_token(last_evaluated_key: dict[str, Any] | None) -> str | None:
    if not last_evaluated_key:
        return None

    # Keys come back from the resource API as python values (Decimal, str, ...);
    # store them in AttributeValue shape so the round trip is type-exact.
    lek = {k: _serializer.serialize(v) for k, v in last_evaluated_key.items()}
    payload = {"v": _TOKEN_VERSION, "lek": lek}
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_next_token(next_token: str | None, *, operation: str = "Scan") -> dict[str, Any] | None:
    if not next_token:
        return None

    try:
        raw = base64.urlsafe_b64decode(str(next_token).encode("ascii")).decode("utf-8")
        payload = json.loads(raw)
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidArgumentError(message="Invalid nextToken", operation=operation) from e

    if not isinstance(payload, dict):
        raise InvalidArgumentError(message="Invalid nextToken", operation=operation)

    if payload.get("v") != _TOKEN_VERSION:
        raise InvalidArgumentError(message="Invalid nextToken", operation=operation)

    lek = payload.get("lek")
    if lek is None:
        return None
    if not isinstance(lek, dict):
        raise InvalidArgumentError(message="Invalid nextToken", operation=operation)

    try:
        return {k: _deserializer.deserialize(v) for k, v in lek.items()}
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidArgumentError(message="Invalid nextToken", operation=operation) from e
