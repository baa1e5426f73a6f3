"""Core type-conversion primitives exposed to Animikii programs."""

from __future__ import annotations

import math
import re

from ..constants import INTEGER_RANGES
from ..errors import TypeMismatch
from .values import Value, _family, create

_INT_PATTERN = re.compile(r"^[+-]?[0-9]+$")
_FLOAT_PATTERN = re.compile(
    r"^[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)$",
    re.IGNORECASE,
)


def _operand(value) -> Value:
    if isinstance(value, Value):
        return value
    return create("dyn", value)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def to_string(value) -> Value:
    value = _operand(value)
    family = _family(value.tag)
    if family == "int" or value.tag == "str":
        text = str(value.payload)
    elif family == "float":
        text = _format_float(value.payload)
    elif value.tag == "bool":
        text = "true" if value.payload else "false"
    else:
        raise TypeMismatch(f"Cannot convert {value.tag} value to string")
    return create("str", text)


def to_int(value) -> Value:
    """Convert to ``i32``; floats truncate and saturate, strings must parse."""

    value = _operand(value)
    low, high = INTEGER_RANGES["i32"]
    family = _family(value.tag)
    if value.tag == "str":
        text = value.payload
        if not _INT_PATTERN.match(text) or not low <= int(text) <= high:
            raise TypeMismatch(f"Failed to parse {text!r} as integer")
        return create("i32", int(text))
    if family == "float":
        if math.isnan(value.payload):
            return create("i32", 0)
        if math.isinf(value.payload):
            return create("i32", high if value.payload > 0 else low)
        return create("i32", max(low, min(high, int(value.payload))))
    if family == "int":
        if not low <= value.payload <= high:
            raise TypeMismatch(f"{value.payload} does not fit in i32")
        return create("i32", value.payload)
    raise TypeMismatch(f"Cannot convert {value.tag} value to integer")


def to_float(value) -> Value:
    value = _operand(value)
    family = _family(value.tag)
    if value.tag == "str":
        if not _FLOAT_PATTERN.match(value.payload):
            raise TypeMismatch(f"Failed to parse {value.payload!r} as float")
        return create("f64", float(value.payload))
    if family in ("int", "float"):
        return create("f64", float(value.payload))
    raise TypeMismatch(f"Cannot convert {value.tag} value to float")


def to_bool(value) -> Value:
    value = _operand(value)
    if value.tag == "str":
        if value.payload not in ("true", "false"):
            raise TypeMismatch(f"Failed to parse {value.payload!r} as boolean")
        return create("bool", value.payload == "true")
    if _family(value.tag) == "int":
        return create("bool", value.payload != 0)
    if value.tag == "bool":
        return create("bool", value.payload)
    raise TypeMismatch(f"Cannot convert {value.tag} value to boolean")


CONVERSIONS = {
    "to_string": to_string,
    "to_int": to_int,
    "to_float": to_float,
    "to_bool": to_bool,
}


def convert(name: str, value) -> Value:
    """Dispatch a conversion primitive by its program-level name."""

    try:
        fn = CONVERSIONS[name]
    except KeyError:
        raise TypeMismatch(f"unknown conversion {name!r}") from None
    return fn(value)


__all__ = [
    "CONVERSIONS",
    "convert",
    "to_bool",
    "to_float",
    "to_int",
    "to_string",
]
