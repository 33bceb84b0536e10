import pytest

from quasi.quasi_serialize import serialize, deserialize, detect_format, to_data, from_data
from quasi.quasi_quasiquote import unquote
from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Environment, Quosure, MissingArg, TypeMismatchError,
    sym, call2, pairlist2,
)


EXPRESSIONS = [
    Constant(1),
    Constant(2.5),
    Constant("text"),
    Constant(True),
    Constant(None),
    Constant(1 + 2j),
    sym("x"),
    call2("f", 1, sym("y"), key="v"),
    Call(Symbol("f"), [MissingArg]),
    call2("function", pairlist2("a", b=2), call2("+", sym("a"), sym("b"))),
    Call(call2("g"), [call2("h", flag=False)]),
    call2("f", unquote(sym("x"))),
]


@pytest.mark.parametrize("fmt", ["json", "yaml"])
@pytest.mark.parametrize("expr", EXPRESSIONS)
def test_round_trip(expr, fmt):
    text = serialize(expr, fmt=fmt)
    assert deserialize(text, fmt=fmt) == expr


def test_call_shape():
    assert to_data(call2("f", sym("x"), n=1)) == {
        "call": {"symbol": "f"},
        "args": [
            {"name": None, "value": {"symbol": "x"}},
            {"name": "n", "value": {"constant": 1}},
        ],
    }
    assert to_data(MissingArg) == {"missing": True}


def test_quosures_and_raw_values_are_rejected():
    with pytest.raises(TypeMismatchError):
        to_data(Quosure(sym("x"), Environment()))
    with pytest.raises(TypeMismatchError):
        to_data(call2("f", [1, 2]))


def test_from_data_rejects_unknown_shapes():
    with pytest.raises(TypeMismatchError):
        from_data({"unknown": 1})
    with pytest.raises(TypeMismatchError):
        from_data([1, 2])


def test_detect_format_and_sniffing():
    assert detect_format('{"symbol": "x"}') == 'json'
    assert detect_format('symbol: x\n') == 'yaml'
    assert detect_format(None) is None
    assert deserialize('{"symbol": "x"}') == sym("x")
    assert deserialize(b'symbol: y\n') == sym("y")


def test_compact_json():
    assert serialize(sym("x"), fmt="json", pretty=False) == '{"symbol": "x"}'


def test_unknown_format():
    with pytest.raises(ValueError):
        serialize(sym("x"), fmt="xml")
