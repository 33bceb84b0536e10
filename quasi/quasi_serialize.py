from __future__ import annotations

import json
from typing import Any, Optional

import yaml

from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Pairlist, NamedList, Quosure, MissingArg, TypeMismatchError,
)

FORMATS = ("json", "yaml")


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    return data


def _arg_to_data(name: Optional[str], value: Any) -> dict:
    return {"name": name, "value": to_data(value)}


def to_data(expr: Any) -> Any:
    """
    Convert an expression into plain JSON/YAML-compatible structures.
    Constants, symbols, calls, pairlists and the empty argument are supported;
    quosures and inlined runtime values have no textual form.
    """
    if expr is MissingArg:
        return {"missing": True}
    match expr:
        case Constant():
            v = expr.value
            if isinstance(v, complex):
                return {"constant": {"complex": [v.real, v.imag]}}
            return {"constant": v}
        case Symbol():
            return {"symbol": expr.name}
        case Pairlist():
            return {"pairlist": [_arg_to_data(n, v) for n, v in expr.items()]}
        case Call():
            return {
                "call": to_data(expr.head),
                "args": [_arg_to_data(n, v) for n, v in expr.args.items()],
            }
        case Quosure():
            raise TypeMismatchError("Can't serialize a quosure: its environment has no textual form")
        case _:
            raise TypeMismatchError(f"Can't serialize an inlined {type(expr).__name__} value")


def from_data(data: Any) -> Any:
    """Rebuild an expression from the structures produced by `to_data`."""
    if not isinstance(data, dict) or len(data) not in (1, 2):
        raise TypeMismatchError(f"Not a serialized expression: {data!r}")
    if data.get("missing"):
        return MissingArg
    if "constant" in data:
        v = data["constant"]
        if isinstance(v, dict) and "complex" in v:
            re_, im = v["complex"]
            return Constant(complex(re_, im))
        return Constant(v)
    if "symbol" in data:
        return Symbol(data["symbol"])
    if "pairlist" in data:
        entries = data["pairlist"]
        return Pairlist([from_data(e["value"]) for e in entries], [e["name"] for e in entries])
    if "call" in data:
        args = NamedList.from_items((e.get("name"), from_data(e["value"])) for e in data.get("args", []))
        return Call(from_data(data["call"]), args)
    raise TypeMismatchError(f"Not a serialized expression: {data!r}")


def detect_format(data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' based on simple data sniffing.
    """
    if data_hint is None:
        return None
    s = data_hint.lstrip()
    if s.startswith('{') or s.startswith('['):
        return 'json'
    return 'yaml'


# --------------------------
# Public API
# --------------------------

def serialize(expr: Any, *, fmt: str = 'json', pretty: bool = True) -> str:
    """
    Convert an expression into text.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = to_data(expr)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def deserialize(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Any:
    """
    Convert text produced by `serialize` back into an expression.
    If fmt is None, the format is sniffed from the text.
    """
    text = _norm_text(data)
    f = (fmt or detect_format(text) or '').lower()
    if f == 'json':
        return from_data(json.loads(text))
    if f == 'yaml':
        return from_data(yaml.safe_load(text))
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "to_data",
    "from_data",
    "deserialize",
    "serialize",
    "detect_format",
]
