"""Parser/evaluator for the DynamoDB expression subset used by InMemoryBackend.

Supported:
- update: SET (with `+`/`-`, list_append, if_not_exists) and REMOVE
- conditions/filters/key conditions: = <> < <= > >=, BETWEEN, IN, AND/OR/NOT,
  parentheses, attribute_exists, attribute_not_exists, begins_with, contains,
  size
- projections: comma-separated document paths

Like DynamoDB, every placeholder passed in must be used, and a single update
may not touch overlapping document paths.
"""

from __future__ import annotations

import copy
import re
from decimal import Decimal
from typing import Any, Mapping

from ...errors import InvalidArgumentError

MISSING: Any = object()

_TOKEN_RE = re.compile(
    r"(?P<name>#[A-Za-z0-9_]+)"
    r"|(?P<value>:[A-Za-z0-9_]+)"
    r"|(?P<number>\d+)"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op><>|<=|>=|[=<>(),.\[\]+\-])"
)

_KEYWORDS = {"AND", "OR", "NOT", "BETWEEN", "IN", "SET", "REMOVE"}
_COMPARATORS = {"=", "<>", "<", "<=", ">", ">="}
_CONDITION_FUNCTIONS = {"attribute_exists": 1, "attribute_not_exists": 1, "begins_with": 2, "contains": 2}
_OPERAND_FUNCTIONS = {"if_not_exists": 2, "list_append": 2, "size": 1}


def _invalid(message: str) -> InvalidArgumentError:
    return InvalidArgumentError(message=message, operation="Expression")


class Scope:
    """Placeholder maps for one request; tracks which ones were referenced."""

    def __init__(self, names: Mapping[str, str] | None = None, values: Mapping[str, Any] | None = None):
        self.names = dict(names or {})
        self.values = dict(values or {})
        self._used_names: set[str] = set()
        self._used_values: set[str] = set()

    def name(self, placeholder: str) -> str:
        if placeholder not in self.names:
            raise _invalid(f"undefined attribute name placeholder: {placeholder}")
        self._used_names.add(placeholder)
        return self.names[placeholder]

    def value(self, placeholder: str) -> Any:
        if placeholder not in self.values:
            raise _invalid(f"undefined attribute value placeholder: {placeholder}")
        self._used_values.add(placeholder)
        return self.values[placeholder]

    def check_all_used(self) -> None:
        unused_names = sorted(set(self.names) - self._used_names)
        if unused_names:
            raise _invalid(f"unused attribute name placeholders: {', '.join(unused_names)}")
        unused_values = sorted(set(self.values) - self._used_values)
        if unused_values:
            raise _invalid(f"unused attribute value placeholders: {', '.join(unused_values)}")


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise _invalid(f"syntax error at position {pos} in {text!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str, scope: Scope):
        self.text = str(text or "")
        self.tokens = _tokenize(self.text)
        self.i = 0
        self.scope = scope

    # --- token helpers ---

    def error(self, msg: str) -> InvalidArgumentError:
        return _invalid(f"invalid expression {self.text!r}: {msg}")

    def peek(self, offset: int = 0) -> tuple[str | None, str | None]:
        j = self.i + offset
        return self.tokens[j] if j < len(self.tokens) else (None, None)

    def advance(self) -> tuple[str, str]:
        kind, t = self.peek()
        if kind is None or t is None:
            raise self.error("unexpected end of expression")
        self.i += 1
        return kind, t

    def accept(self, text: str) -> bool:
        kind, t = self.peek()
        if (kind == "op" and t == text) or (kind == "ident" and t is not None and t.upper() == text):
            self.i += 1
            return True
        return False

    def expect(self, text: str) -> None:
        if not self.accept(text):
            raise self.error(f"expected {text!r}")

    def done(self) -> bool:
        return self.i >= len(self.tokens)

    def finish(self) -> None:
        if not self.done():
            raise self.error(f"unexpected token {self.peek()[1]!r}")

    # --- grammar ---

    def path(self) -> tuple[str | int, ...]:
        segs: list[str | int] = [self._path_element()]
        while True:
            if self.accept("."):
                segs.append(self._path_element())
            elif self.accept("["):
                kind, t = self.advance()
                if kind != "number":
                    raise self.error("expected list index")
                segs.append(int(t))
                self.expect("]")
            else:
                return tuple(segs)

    def _path_element(self) -> str:
        kind, t = self.advance()
        if kind == "name":
            return self.scope.name(t)
        if kind == "ident" and t.upper() not in _KEYWORDS:
            return t
        raise self.error(f"expected attribute name, got {t!r}")

    def _call_args(self, fn: str, arity: int) -> list[tuple]:
        self.expect("(")
        args = [self.operand()]
        while self.accept(","):
            args.append(self.operand())
        self.expect(")")
        if len(args) != arity:
            raise self.error(f"{fn}() takes {arity} argument(s)")
        if fn in ("attribute_exists", "attribute_not_exists", "if_not_exists", "size") and args[0][0] != "path":
            raise self.error(f"first argument of {fn}() must be a document path")
        return args

    def operand(self) -> tuple:
        kind, t = self.peek()
        if kind == "value" and t is not None:
            self.i += 1
            return ("value", self.scope.value(t))
        if kind == "ident" and t is not None and self.peek(1)[1] == "(":
            fn = t.lower()
            if fn not in _OPERAND_FUNCTIONS:
                raise self.error(f"unknown function {t}")
            self.i += 1
            return ("call", fn, self._call_args(fn, _OPERAND_FUNCTIONS[fn]))
        return ("path", self.path())

    def update_value(self) -> tuple:
        left = self.operand()
        if self.accept("+"):
            return ("arith", "+", left, self.operand())
        if self.accept("-"):
            return ("arith", "-", left, self.operand())
        return left

    def condition(self) -> tuple:
        left = self._conjunction()
        while self.accept("OR"):
            left = ("or", left, self._conjunction())
        return left

    def _conjunction(self) -> tuple:
        left = self._negation()
        while self.accept("AND"):
            left = ("and", left, self._negation())
        return left

    def _negation(self) -> tuple:
        if self.accept("NOT"):
            return ("not", self._negation())
        return self._predicate()

    def _predicate(self) -> tuple:
        if self.accept("("):
            inner = self.condition()
            self.expect(")")
            return inner

        kind, t = self.peek()
        if kind == "ident" and t is not None and t.lower() in _CONDITION_FUNCTIONS and self.peek(1)[1] == "(":
            fn = t.lower()
            self.i += 1
            return ("fn", fn, self._call_args(fn, _CONDITION_FUNCTIONS[fn]))

        left = self.operand()
        if self.accept("BETWEEN"):
            lo = self.operand()
            self.expect("AND")
            return ("between", left, lo, self.operand())
        if self.accept("IN"):
            self.expect("(")
            options = [self.operand()]
            while self.accept(","):
                options.append(self.operand())
            self.expect(")")
            return ("in", left, options)
        kind, t = self.peek()
        if kind == "op" and t in _COMPARATORS:
            self.i += 1
            return ("cmp", t, left, self.operand())
        raise self.error("expected a comparison")

    def update(self) -> list[tuple]:
        if self.done():
            raise self.error("empty update expression")
        actions: list[tuple] = []
        while not self.done():
            if self.accept("SET"):
                while True:
                    target = self.path()
                    self.expect("=")
                    actions.append(("set", target, self.update_value()))
                    if not self.accept(","):
                        break
            elif self.accept("REMOVE"):
                while True:
                    actions.append(("remove", self.path()))
                    if not self.accept(","):
                        break
            else:
                raise self.error("expected SET or REMOVE")
        return actions


# --- public parse entry points ---


def parse_condition(text: str, scope: Scope) -> tuple:
    p = _Parser(text, scope)
    node = p.condition()
    p.finish()
    return node


def parse_update(text: str, scope: Scope) -> list[tuple]:
    p = _Parser(text, scope)
    actions = p.update()
    p.finish()
    targets = [a[1] for a in actions]
    for i, a in enumerate(targets):
        for b in targets[i + 1 :]:
            n = min(len(a), len(b))
            if a[:n] == b[:n]:
                raise _invalid("two document paths overlap in the update expression")
    return actions


def parse_projection(text: str, scope: Scope) -> list[tuple[str | int, ...]]:
    p = _Parser(text, scope)
    paths = [p.path()]
    while p.accept(","):
        paths.append(p.path())
    p.finish()
    return paths


# --- evaluation ---


def _kind(v: Any) -> str:
    if v is None:
        return "NULL"
    if isinstance(v, bool):
        return "BOOL"
    if isinstance(v, (int, float, Decimal)):
        return "N"
    if isinstance(v, str):
        return "S"
    if isinstance(v, (bytes, bytearray)):
        return "B"
    if isinstance(v, list):
        return "L"
    if isinstance(v, Mapping):
        return "M"
    if isinstance(v, (set, frozenset)):
        return "SET"
    return type(v).__name__


def resolve(item: Any, segs: tuple[str | int, ...]) -> Any:
    cur = item
    for s in segs:
        if isinstance(s, int):
            if not isinstance(cur, list) or s >= len(cur):
                return MISSING
            cur = cur[s]
        else:
            if not isinstance(cur, Mapping) or s not in cur:
                return MISSING
            cur = cur[s]
    return cur


def _operand_value(node: tuple, item: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "path":
        return resolve(item, node[1])
    if kind == "value":
        return node[1]
    if kind == "call":
        fn, args = node[1], node[2]
        if fn == "if_not_exists":
            cur = _operand_value(args[0], item)
            return _operand_value(args[1], item) if cur is MISSING else cur
        if fn == "list_append":
            a = _operand_value(args[0], item)
            b = _operand_value(args[1], item)
            if not isinstance(a, list) or not isinstance(b, list):
                raise _invalid("list_append operands must be lists")
            return [*a, *b]
        if fn == "size":
            v = _operand_value(args[0], item)
            if _kind(v) in ("S", "B", "L", "M", "SET"):
                return len(v)
            return MISSING
    if kind == "arith":
        a = _operand_value(node[2], item)
        b = _operand_value(node[3], item)
        if _kind(a) != "N" or _kind(b) != "N":
            raise _invalid("an operand in the update expression has an incorrect data type")
        return a + b if node[1] == "+" else a - b
    raise _invalid(f"unsupported operand {node[0]!r}")


def _compare(op: str, a: Any, b: Any) -> bool:
    if a is MISSING or b is MISSING:
        return False
    same = _kind(a) == _kind(b)
    if op == "=":
        return same and a == b
    if op == "<>":
        return not (same and a == b)
    if not same or _kind(a) not in ("N", "S", "B"):
        return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def evaluate_condition(node: tuple, item: Mapping[str, Any]) -> bool:
    kind = node[0]
    if kind == "and":
        return evaluate_condition(node[1], item) and evaluate_condition(node[2], item)
    if kind == "or":
        return evaluate_condition(node[1], item) or evaluate_condition(node[2], item)
    if kind == "not":
        return not evaluate_condition(node[1], item)
    if kind == "cmp":
        return _compare(node[1], _operand_value(node[2], item), _operand_value(node[3], item))
    if kind == "between":
        v = _operand_value(node[1], item)
        return _compare(">=", v, _operand_value(node[2], item)) and _compare("<=", v, _operand_value(node[3], item))
    if kind == "in":
        v = _operand_value(node[1], item)
        return any(_compare("=", v, _operand_value(o, item)) for o in node[2])
    if kind == "fn":
        fn, args = node[1], node[2]
        first = _operand_value(args[0], item)
        if fn == "attribute_exists":
            return first is not MISSING
        if fn == "attribute_not_exists":
            return first is MISSING
        second = _operand_value(args[1], item)
        if fn == "begins_with":
            return isinstance(first, str) and isinstance(second, str) and first.startswith(second)
        if fn == "contains":
            if isinstance(first, str):
                return isinstance(second, str) and second in first
            if isinstance(first, (list, set, frozenset)):
                return second in first
            return False
    raise _invalid(f"unsupported condition {kind!r}")


def _assign(item: dict[str, Any], segs: tuple[str | int, ...], value: Any) -> None:
    parent = resolve(item, segs[:-1]) if len(segs) > 1 else item
    last = segs[-1]
    if isinstance(last, int):
        if not isinstance(parent, list):
            raise _invalid("the document path provided in the update expression is invalid for update")
        if last < len(parent):
            parent[last] = value
        else:
            parent.append(value)
        return
    if not isinstance(parent, dict):
        raise _invalid("the document path provided in the update expression is invalid for update")
    parent[last] = value


def _remove(item: dict[str, Any], segs: tuple[str | int, ...]) -> None:
    parent = resolve(item, segs[:-1]) if len(segs) > 1 else item
    last = segs[-1]
    if isinstance(last, int):
        if isinstance(parent, list) and last < len(parent):
            del parent[last]
    elif isinstance(parent, dict):
        parent.pop(last, None)


def apply_update(actions: list[tuple], item: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new item with `actions` applied.

    Right-hand sides are evaluated against the item as it was before the update.
    """
    resolved = []
    for action in actions:
        if action[0] == "set":
            v = _operand_value(action[2], item)
            if v is MISSING:
                raise _invalid("the provided expression refers to an attribute that does not exist in the item")
            resolved.append(("set", action[1], v))
        else:
            resolved.append(action)

    out = copy.deepcopy(dict(item))
    for action in resolved:
        if action[0] == "set":
            _assign(out, action[1], copy.deepcopy(action[2]))
        else:
            _remove(out, action[1])
    return out


def project(paths: list[tuple[str | int, ...]], item: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for segs in paths:
        v = resolve(item, segs)
        if v is MISSING:
            continue
        cur: Any = out
        for i, s in enumerate(segs):
            last = i == len(segs) - 1
            nxt: Any = copy.deepcopy(v) if last else ([] if isinstance(segs[i + 1], int) else {})
            if isinstance(s, int):
                cur.append(nxt)
                cur = nxt
            elif last:
                cur[s] = nxt
            else:
                cur = cur.setdefault(s, nxt)
    return out
