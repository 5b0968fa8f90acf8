"""Update-expression compiler.

Turns a sparse update payload into a DynamoDB-style `SET` expression plus the
attribute-name and attribute-value placeholder maps it references. Everything
here is pure: no I/O, no clock reads (timestamps come in via AuditStamp).

    >>> c = compile_update({"profile.name": "Ann", "tags": ["x"]})
    >>> c.expression
    'SET #n0.#n1 = :v0, #n2 = list_append(if_not_exists(#n2, :empty_list), :v1)'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import InvalidArgumentError
from .models import META_FIELD, UNSET, now_iso, strip_unset_value

_PLACEHOLDER_RE = re.compile(r"^[A-Za-z0-9_]+$")
_EMPTY_LIST = ":empty_list"


@dataclass(frozen=True, slots=True)
class AuditStamp:
    actor_id: str | None
    at: str

    @classmethod
    def now(cls, actor_id: str | None) -> AuditStamp:
        return cls(actor_id=actor_id, at=now_iso())


@dataclass(frozen=True, slots=True)
class CompiledUpdate:
    clauses: tuple[str, ...]
    names: Mapping[str, str]
    values: Mapping[str, Any]
    condition: str | None = None

    @property
    def expression(self) -> str:
        return "SET " + ", ".join(self.clauses)


class _Placeholders:
    def __init__(self) -> None:
        self.names: dict[str, str] = {}
        self.values: dict[str, Any] = {}
        self._by_name: dict[str, str] = {}
        self._n_values = 0

    def name(self, segment: str) -> str:
        ph = self._by_name.get(segment)
        if ph is None:
            ph = f"#n{len(self._by_name)}"
            self._by_name[segment] = ph
            self.names[ph] = segment
        return ph

    def path(self, segments: Iterable[str]) -> str:
        return ".".join(self.name(s) for s in segments)

    def value(self, v: Any) -> str:
        ph = f":v{self._n_values}"
        self._n_values += 1
        self.values[ph] = v
        return ph

    def empty_list(self) -> str:
        self.values.setdefault(_EMPTY_LIST, [])
        return _EMPTY_LIST


def split_path(path: Any) -> tuple[str, ...]:
    if not isinstance(path, str) or not path:
        raise InvalidArgumentError(message=f"invalid attribute path: {path!r}", operation="CompileUpdate")
    segments = tuple(path.split("."))
    if any(not s for s in segments):
        raise InvalidArgumentError(message=f"invalid attribute path: {path!r}", operation="CompileUpdate")
    return segments


def _check_overlap(seen: list[tuple[str, ...]], segments: tuple[str, ...]) -> None:
    for other in seen:
        n = min(len(other), len(segments))
        if other[:n] == segments[:n]:
            raise InvalidArgumentError(
                message=f"overlapping update paths: {'.'.join(other)!r} and {'.'.join(segments)!r}",
                operation="CompileUpdate",
            )


def compile_update(
    payload: Mapping[str, Any],
    *,
    stamp: AuditStamp | None = None,
    must_exist: str | None = None,
    protected: Iterable[str] = (),
) -> CompiledUpdate:
    """Compile `payload` into a SET expression.

    - UNSET values are skipped; None is assigned as null.
    - Dotted paths address nested map attributes; each segment is escaped.
    - list/tuple values are appended to the stored list (missing = empty).
    - `stamp` adds meta.modifiedAt/modifiedBy and an atomic meta.version + 1.
    - `must_exist` names the attribute for an attribute_exists() condition.
    - paths starting with a `protected` attribute are rejected.
    """
    if not isinstance(payload, Mapping):
        raise InvalidArgumentError(message="update payload must be a mapping", operation="CompileUpdate")

    blocked = set(protected)
    ph = _Placeholders()
    clauses: list[str] = []
    seen: list[tuple[str, ...]] = []

    for raw_path, value in payload.items():
        if value is UNSET:
            continue
        segments = split_path(raw_path)
        if segments[0] in blocked:
            raise InvalidArgumentError(
                message=f"attribute {segments[0]!r} cannot be updated",
                operation="CompileUpdate",
            )
        _check_overlap(seen, segments)
        seen.append(segments)

        target = ph.path(segments)
        if isinstance(value, (list, tuple)):
            clauses.append(
                f"{target} = list_append(if_not_exists({target}, {ph.empty_list()}), {ph.value(strip_unset_value(list(value)))})"
            )
        else:
            clauses.append(f"{target} = {ph.value(strip_unset_value(value))}")

    if not clauses:
        raise InvalidArgumentError(message="update payload is empty", operation="CompileUpdate")

    if stamp is not None:
        clauses.append(f"{ph.path((META_FIELD, 'modifiedAt'))} = {ph.value(stamp.at)}")
        clauses.append(f"{ph.path((META_FIELD, 'modifiedBy'))} = {ph.value(stamp.actor_id)}")
        version = ph.path((META_FIELD, "version"))
        clauses.append(f"{version} = {version} + {ph.value(1)}")

    condition = f"attribute_exists({ph.name(must_exist)})" if must_exist else None

    return CompiledUpdate(
        clauses=tuple(clauses),
        names=MappingProxyType(dict(ph.names)),
        values=MappingProxyType(dict(ph.values)),
        condition=condition,
    )


def escape_values(values: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map logical value names to `:name` placeholders."""
    out: dict[str, Any] = {}
    for k, v in (values or {}).items():
        name = str(k)[1:] if str(k).startswith(":") else str(k)
        if not _PLACEHOLDER_RE.match(name):
            raise InvalidArgumentError(message=f"invalid value placeholder name: {k!r}", operation="Expression")
        out[f":{name}"] = v
    return out


def escape_names(names: Mapping[str, str] | None) -> dict[str, str]:
    """Normalize an attribute-name map so every key is a `#name` placeholder."""
    out: dict[str, str] = {}
    for k, v in (names or {}).items():
        name = str(k)[1:] if str(k).startswith("#") else str(k)
        if not _PLACEHOLDER_RE.match(name):
            raise InvalidArgumentError(message=f"invalid name placeholder: {k!r}", operation="Expression")
        out[f"#{name}"] = str(v)
    return out
