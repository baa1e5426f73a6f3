import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from animikii.errors import TypeMismatch
from animikii.runtime import convert, create, to_bool, to_float, to_int, to_string


def test_to_string_formats_each_family():
    assert to_string(create("i64", -5)).payload == "-5"
    assert to_string(create("f64", 3.0)).payload == "3"
    assert to_string(create("f64", 2.5)).payload == "2.5"
    assert to_string(create("f64", float("nan"))).payload == "NaN"
    assert to_string(create("bool", True)).payload == "true"
    assert to_string(create("str", "x")).payload == "x"
    with pytest.raises(TypeMismatch):
        to_string(create("vec", [1]))


def test_to_int_parses_truncates_and_saturates():
    result = to_int(create("str", "42"))
    assert result.tag == "i32" and result.payload == 42
    assert to_int(create("f64", 3.9)).payload == 3
    assert to_int(create("f64", -3.9)).payload == -3
    assert to_int(create("f64", 1e20)).payload == 2**31 - 1
    assert to_int(create("f64", float("nan"))).payload == 0

    with pytest.raises(TypeMismatch):
        to_int(create("str", "4x"))
    with pytest.raises(TypeMismatch):
        to_int(create("str", "99999999999"))
    with pytest.raises(TypeMismatch):
        to_int(create("i64", 2**40))
    with pytest.raises(TypeMismatch):
        to_int(create("bool", True))


def test_to_float_and_to_bool():
    assert to_float(create("str", "2.5")).payload == 2.5
    assert to_float(create("i32", 2)) == create("f64", 2.0)
    with pytest.raises(TypeMismatch):
        to_float(create("str", "abc"))

    assert to_bool(create("str", "true")).payload is True
    assert to_bool(create("i32", 0)).payload is False
    assert to_bool(create("u8", 3)).payload is True
    with pytest.raises(TypeMismatch):
        to_bool(create("str", "yes"))
    with pytest.raises(TypeMismatch):
        to_bool(create("f64", 1.0))


def test_convert_dispatches_by_name_and_accepts_plain_literals():
    assert convert("to_int", "7").payload == 7
    assert convert("to_string", 1.5).payload == "1.5"
    with pytest.raises(TypeMismatch):
        convert("to_json", 1)
