"""Hybrid static/dynamic values and operator coercion."""

from __future__ import annotations

from dataclasses import dataclass
import math
import operator as _op
import struct
from typing import Any

from ..constants import (
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    DYN,
    F32_MAX,
    FLOAT_TYPES,
    INDEX_OP,
    INTEGER_RANGES,
    LOGICAL_OPS,
    STATIC_TYPES,
    UNARY_OPS,
    WIDENINGS,
)
from ..errors import ArithmeticFault, TypeMismatch


@dataclass(frozen=True)
class Value:
    """A runtime value tagged ``static`` (fixed type) or ``dynamic``."""

    kind: str
    tag: str
    payload: Any

    @property
    def is_dynamic(self) -> bool:
        return self.kind == "dynamic"

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        label = "Dynamic" if self.is_dynamic else "Static"
        return f"{label}({self.tag}, {self.payload!r})"


def _family(tag: str) -> str:
    if tag in INTEGER_RANGES:
        return "int"
    if tag in FLOAT_TYPES:
        return "float"
    return tag


def _describe(literal) -> str:
    if isinstance(literal, Value):
        return f"{literal.tag} value {literal.payload!r}"
    return f"{type(literal).__name__} literal {literal!r}"


def _to_f32(value: float) -> float:
    if math.isfinite(value) and abs(value) > F32_MAX:
        raise TypeMismatch(f"{value!r} is out of range for f32")
    return struct.unpack("f", struct.pack("f", value))[0]


def _wrap_f32(value: float) -> float:
    # IEEE overflow during arithmetic saturates to infinity instead of failing.
    if math.isfinite(value) and abs(value) > F32_MAX:
        return math.copysign(math.inf, value)
    return struct.unpack("f", struct.pack("f", value))[0]


def infer_tag(literal) -> str:
    """Return the runtime tag a ``dyn`` binding gives to ``literal``."""

    if isinstance(literal, Value):
        return literal.tag
    if isinstance(literal, bool):
        return "bool"
    if isinstance(literal, int):
        for tag in ("i32", "i64"):
            low, high = INTEGER_RANGES[tag]
            if low <= literal <= high:
                return tag
        raise TypeMismatch(f"integer literal {literal} does not fit in i64")
    if isinstance(literal, float):
        return "f64"
    if isinstance(literal, str):
        return "str"
    if literal is None:
        return "unit"
    if isinstance(literal, (list, tuple)):
        return "vec"
    if isinstance(literal, dict):
        return "map"
    raise TypeMismatch(f"{type(literal).__name__} has no Animikii runtime type")


def _element(item, kind: str) -> Value:
    if isinstance(item, Value):
        return item
    tag = infer_tag(item)
    return Value(kind, tag, _represent(tag, item, kind))


def _represent(tag: str, literal, kind: str = "static"):
    """Normalise ``literal`` into a payload of ``tag`` or raise TypeMismatch."""

    family = _family(tag)
    if family == "int":
        if isinstance(literal, bool) or not isinstance(literal, int):
            raise TypeMismatch(f"{_describe(literal)} cannot represent {tag}")
        low, high = INTEGER_RANGES[tag]
        if not low <= literal <= high:
            raise TypeMismatch(f"{literal} is out of range for {tag}")
        return literal
    if family == "float":
        if isinstance(literal, bool) or not isinstance(literal, (int, float)):
            raise TypeMismatch(f"{_describe(literal)} cannot represent {tag}")
        value = float(literal)
        return _to_f32(value) if tag == "f32" else value
    if tag == "bool":
        if not isinstance(literal, bool):
            raise TypeMismatch(f"{_describe(literal)} cannot represent bool")
        return literal
    if tag == "str":
        if not isinstance(literal, str):
            raise TypeMismatch(f"{_describe(literal)} cannot represent str")
        return literal
    if tag == "unit":
        if literal is not None:
            raise TypeMismatch(f"{_describe(literal)} cannot represent unit")
        return None
    if tag == "vec":
        if not isinstance(literal, (list, tuple)):
            raise TypeMismatch(f"{_describe(literal)} cannot represent vec")
        return tuple(_element(item, kind) for item in literal)
    if tag == "map":
        if not isinstance(literal, dict):
            raise TypeMismatch(f"{_describe(literal)} cannot represent map")
        for key in literal:
            if not isinstance(key, str):
                raise TypeMismatch(f"map keys must be str, got {type(key).__name__}")
        return {key: _element(item, kind) for key, item in literal.items()}
    raise TypeMismatch(f"unknown type {tag!r}")


def widens(source: str, target: str) -> bool:
    """True when ``source`` converts implicitly to ``target``."""

    return source == target or target in WIDENINGS.get(source, ())


def join(left: str, right: str) -> str | None:
    """Return the wider of two tags, or None when neither widens to the other."""

    if widens(left, right):
        return right
    if widens(right, left):
        return left
    return None


def _adapt(value: Value, target: str) -> Value:
    if value.tag == target:
        return Value("static", target, value.payload)
    if not value.is_dynamic and not widens(value.tag, target):
        raise TypeMismatch(f"cannot implicitly convert {value.tag} to {target}")
    # Dynamic operands are checked against the static type by their payload.
    return Value("static", target, _represent(target, value.payload))


def create(declared_type: str, literal) -> Value:
    """Build a value for a binding declared with ``declared_type`` (or ``dyn``)."""

    if declared_type == DYN:
        if isinstance(literal, Value):
            return Value("dynamic", literal.tag, literal.payload)
        tag = infer_tag(literal)
        return Value("dynamic", tag, _represent(tag, literal, "dynamic"))
    if declared_type not in STATIC_TYPES:
        raise TypeMismatch(f"unknown type {declared_type!r}")
    if isinstance(literal, Value):
        return _adapt(literal, declared_type)
    return Value("static", declared_type, _represent(declared_type, literal))


def infer(literal) -> Value:
    """Static value for an unannotated binding, typed from its literal."""

    if isinstance(literal, Value):
        return literal
    return create(infer_tag(literal), literal)


def _as_value(operand) -> Value:
    if isinstance(operand, Value):
        return operand
    return create(DYN, operand)


def type_of(value) -> str:
    if not isinstance(value, Value):
        raise TypeMismatch(f"{type(value).__name__} is not a runtime value")
    return value.tag


def is_dynamic(value) -> bool:
    return isinstance(value, Value) and value.is_dynamic


def to_python(value):
    """Strip tags recursively, returning plain Python data."""

    if not isinstance(value, Value):
        return value
    if value.tag == "vec":
        return [to_python(item) for item in value.payload]
    if value.tag == "map":
        return {key: to_python(item) for key, item in value.payload.items()}
    return value.payload


def _int_div(x: int, y: int) -> int:
    if y == 0:
        raise ArithmeticFault("Division by zero")
    quotient = abs(x) // abs(y)
    return quotient if (x >= 0) == (y >= 0) else -quotient


def _int_rem(x: int, y: int) -> int:
    if y == 0:
        raise ArithmeticFault("Modulus by zero")
    return x - y * _int_div(x, y)


def _float_div(x: float, y: float) -> float:
    if y == 0.0:
        if x == 0.0 or math.isnan(x):
            return math.nan
        return math.copysign(math.inf, x) * math.copysign(1.0, y)
    return x / y


def _float_rem(x: float, y: float) -> float:
    if y == 0.0 or math.isinf(x):
        return math.nan
    return math.fmod(x, y)


def _plain_eq(x, y) -> bool:
    return _plain(x) == _plain(y)


def _plain_ne(x, y) -> bool:
    return _plain(x) != _plain(y)


def _plain(payload):
    if isinstance(payload, tuple):
        return [to_python(item) for item in payload]
    if isinstance(payload, dict):
        return {key: to_python(item) for key, item in payload.items()}
    return payload


def _vec_item(items, key: Value) -> Value:
    if _family(key.tag) != "int":
        raise TypeMismatch(f"vec index must be an integer, got {key.tag}")
    if not 0 <= key.payload < len(items):
        raise TypeMismatch(f"Index out of bounds: {key.payload} for vec of length {len(items)}")
    return items[key.payload]


def _map_item(entries, key: Value) -> Value:
    if key.tag != "str":
        raise TypeMismatch(f"map key must be str, got {key.tag}")
    try:
        return entries[key.payload]
    except KeyError:
        raise TypeMismatch(f"Key not found: {key.payload}") from None


_ARITHMETIC = {"+": _op.add, "-": _op.sub, "*": _op.mul}
_COMPARISONS = {
    "==": _op.eq,
    "!=": _op.ne,
    "<": _op.lt,
    ">": _op.gt,
    "<=": _op.le,
    ">=": _op.ge,
}

BINARY_OPS = frozenset(ARITHMETIC_OPS + COMPARISON_OPS + LOGICAL_OPS)

# (operator, family) -> (implementation, result tag or "operand"/"element")
OPERATOR_TABLE = {}
for _family_name in ("int", "float"):
    for _symbol, _fn in _ARITHMETIC.items():
        OPERATOR_TABLE[(_symbol, _family_name)] = (_fn, "operand")
    for _symbol, _fn in _COMPARISONS.items():
        OPERATOR_TABLE[(_symbol, _family_name)] = (_fn, "bool")
OPERATOR_TABLE[("/", "int")] = (_int_div, "operand")
OPERATOR_TABLE[("%", "int")] = (_int_rem, "operand")
OPERATOR_TABLE[("/", "float")] = (_float_div, "operand")
OPERATOR_TABLE[("%", "float")] = (_float_rem, "operand")
for _symbol, _fn in _COMPARISONS.items():
    OPERATOR_TABLE[(_symbol, "str")] = (_fn, "bool")
OPERATOR_TABLE[("+", "str")] = (_op.add, "operand")
for _family_name in ("bool", "unit", "vec", "map"):
    OPERATOR_TABLE[("==", _family_name)] = (_plain_eq, "bool")
    OPERATOR_TABLE[("!=", _family_name)] = (_plain_ne, "bool")
OPERATOR_TABLE[("+", "vec")] = (_op.add, "operand")
OPERATOR_TABLE[("&&", "bool")] = (lambda x, y: x and y, "bool")
OPERATOR_TABLE[("||", "bool")] = (lambda x, y: x or y, "bool")
OPERATOR_TABLE[(INDEX_OP, "vec")] = (_vec_item, "element")
OPERATOR_TABLE[(INDEX_OP, "map")] = (_map_item, "element")


def _checked(tag: str, payload):
    family = _family(tag)
    if family == "int":
        low, high = INTEGER_RANGES[tag]
        if not low <= payload <= high:
            raise ArithmeticFault(f"{tag} overflow: {payload}")
    elif tag == "f32":
        return _wrap_f32(payload)
    return payload


def _apply(operator: str, tag: str, left, right, kind: str) -> Value:
    entry = OPERATOR_TABLE.get((operator, _family(tag)))
    if entry is None:
        raise TypeMismatch(f"operator {operator} is not defined for {tag}")
    fn, result = entry
    result_tag = tag if result == "operand" else result
    return Value(kind, result_tag, _checked(result_tag, fn(left, right)))


def coerce(a, b, operator: str) -> Value:
    """Resolve the operand types of ``a operator b`` and evaluate it."""

    if operator not in BINARY_OPS:
        raise TypeMismatch(f"unknown binary operator {operator!r}")
    a, b = _as_value(a), _as_value(b)
    if not a.is_dynamic and not b.is_dynamic:
        tag = join(a.tag, b.tag)
        if tag is None:
            raise TypeMismatch(
                f"{a.tag} {operator} {b.tag}: no implicit conversion between operand types"
            )
        left, right, kind = _adapt(a, tag), _adapt(b, tag), "static"
    elif not a.is_dynamic:
        tag = a.tag
        left, right, kind = a, _adapt(b, tag), "static"
    elif not b.is_dynamic:
        tag = b.tag
        left, right, kind = _adapt(a, tag), b, "static"
    else:
        tag = join(a.tag, b.tag)
        if tag is None:
            raise TypeMismatch(
                f"runtime types {a.tag} and {b.tag} are incompatible for {operator}"
            )
        left = Value("dynamic", tag, _represent(tag, a.payload, "dynamic"))
        right = Value("dynamic", tag, _represent(tag, b.payload, "dynamic"))
        kind = "dynamic"
    return _apply(operator, tag, left.payload, right.payload, kind)


def unary(operator: str, value) -> Value:
    if operator not in UNARY_OPS:
        raise TypeMismatch(f"unknown unary operator {operator!r}")
    value = _as_value(value)
    if operator == "-" and _family(value.tag) in ("int", "float"):
        return Value(value.kind, value.tag, _checked(value.tag, -value.payload))
    if operator == "!" and value.tag == "bool":
        return Value(value.kind, "bool", not value.payload)
    raise TypeMismatch(f"unary {operator} is not defined for {value.tag}")


def index(target, key) -> Value:
    """``target[key]``: a vec takes an integer position, a map a str key."""

    target, key = _as_value(target), _as_value(key)
    entry = OPERATOR_TABLE.get((INDEX_OP, _family(target.tag)))
    if entry is None:
        raise TypeMismatch(f"Invalid index access on {target.tag}")
    fn, _ = entry
    return fn(target.payload, key)


def reassign(current: Value, new) -> Value:
    """Value for ``binding = new`` given the binding's ``current`` value."""

    if current.is_dynamic:
        return create(DYN, new)
    return create(current.tag, new)


__all__ = [
    "OPERATOR_TABLE",
    "Value",
    "coerce",
    "create",
    "index",
    "infer",
    "infer_tag",
    "is_dynamic",
    "join",
    "reassign",
    "to_python",
    "type_of",
    "unary",
    "widens",
]
