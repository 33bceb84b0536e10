"""
A deparser for quasi expressions and runtime values.
"""
import collections.abc
import re

from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Pairlist, NamedList, Quosure, Closure, Environment,
    Promise, ReturnValue, MissingArg
)

_SYNTACTIC_NAME = re.compile(r"^(?:[A-Za-z]|\.(?![0-9]))[A-Za-z0-9._]*$|^\.$|^\.\.\.$")

# Binary operators, lowest binding first. Operators on the same row share a
# precedence level.
_PRECEDENCE = [
    ("<-", "<<-", "=", ":="),
    ("~",),
    ("||", "|"),
    ("&&", "&"),
    ("!",),
    ("==", "!=", "<", ">", "<=", ">="),
    ("+", "-"),
    ("*", "/"),
    ("%%", "%/%", "%in%"),
    (":",),
    ("^",),
    ("$",),
]
_BINARY_LEVEL = {op: level for level, ops in enumerate(_PRECEDENCE) for op in ops}
_RIGHT_ASSOC = {"^", "<-", "<<-", "=", ":="}
_TIGHT_OPS = {"^", "$", ":"}
_UNARY_LEVEL = {"-": _BINARY_LEVEL["*"] + 0.5, "+": _BINARY_LEVEL["*"] + 0.5, "!": _BINARY_LEVEL["!"]}
_ATOM_LEVEL = len(_PRECEDENCE) + 1


class Printer:
    """Formats quasi objects into readable source strings."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        if obj is MissingArg:
            return lambda o, l: ""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, NamedList):
            return self._pformat_named_list
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_mapping
        if isinstance(obj, (list, tuple)):
            return self._pformat_sequence
        return self._pformat_opaque

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            complex: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Constant: self._pformat_constant,
            Symbol: self._pformat_symbol,
            Call: self._pformat_call,
            Pairlist: self._pformat_pairlist,
            Quosure: self._pformat_quosure,
            Closure: self._pformat_closure,
            Environment: lambda o, l: "<environment>",
            Promise: lambda o, l: "<promise>",
            ReturnValue: lambda o, l: self.pformat(o.value, l),
        }

    # --- Atoms ---

    def _pformat_primitive(self, obj, level):
        return repr(obj) if isinstance(obj, float) else str(obj)

    def _pformat_str(self, obj, level):
        escaped = obj.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
        return f'"{escaped}"'

    def _pformat_bool(self, obj, level):
        return 'TRUE' if obj else 'FALSE'

    def _pformat_none(self, obj, level):
        return 'NULL'

    def _pformat_constant(self, obj, level):
        return self.pformat(obj.value, level)

    def _pformat_symbol(self, obj, level):
        return self._format_name(obj.name)

    def _format_name(self, name: str) -> str:
        if _SYNTACTIC_NAME.match(name):
            return name
        return f"`{name}`"

    def _pformat_opaque(self, obj, level):
        return f"<{type(obj).__name__}>"

    # --- Containers ---

    def _pformat_sequence(self, obj, level):
        return f"<list[{len(obj)}]>"

    def _pformat_named_list(self, obj, level):
        parts = [self._format_arg(name, value, level) for name, value in obj.items()]
        return f"list({', '.join(parts)})"

    def _pformat_mapping(self, obj, level):
        parts = [f"{self._format_name(str(k))} = {self.pformat(v, level)}" for k, v in obj.items()]
        return f"list({', '.join(parts)})"

    def _pformat_quosure(self, obj, level):
        return f"^{self.pformat(obj.expr, level)}"

    def _pformat_pairlist(self, obj, level):
        return f"pairlist({self._format_formals(obj, level)})"

    def _pformat_closure(self, obj, level):
        return f"function({self._format_formals(obj.formals, level)}) {self.pformat(obj.body, level)}"

    def _format_formals(self, formals, level):
        parts = []
        for name, default in formals.items():
            if default is MissingArg:
                parts.append(self._format_name(name))
            else:
                parts.append(f"{self._format_name(name)} = {self.pformat(default, level)}")
        return ", ".join(parts)

    def _format_arg(self, name, value, level):
        rendered = self.pformat(value, level)
        if name is None:
            return rendered
        if value is MissingArg:
            return f"{self._format_name(name)} = "
        return f"{self._format_name(name)} = {rendered}"

    # --- Calls ---

    def _precedence(self, obj) -> float:
        if isinstance(obj, Call) and isinstance(obj.head, Symbol):
            op = obj.head.name
            unnamed = all(n is None for n in obj.arg_names())
            if unnamed and len(obj.args) == 2 and op in _BINARY_LEVEL:
                return _BINARY_LEVEL[op]
            if unnamed and len(obj.args) == 1 and op in _UNARY_LEVEL:
                return _UNARY_LEVEL[op]
        return _ATOM_LEVEL

    def _operand(self, obj, min_level, level):
        text = self.pformat(obj, level)
        if self._precedence(obj) < min_level:
            return f"({text})"
        return text

    def _pformat_call(self, obj, level):
        head = obj.head
        args = obj.args
        unnamed = all(n is None for n in args.names())
        if isinstance(head, Symbol) and unnamed:
            op = head.name
            if op in ("!!", "!!!") and len(args) == 1:
                return f"{op}{self._operand(args[0], _ATOM_LEVEL, level)}"
            if op == "{" and len(args) == 1 and isinstance(args[0], Call) and args[0].name == "{" and len(args[0].args) == 1:
                return f"{{{{ {self.pformat(args[0].args[0], level)} }}}}"
            if op == "{":
                return self._pformat_block(obj, level)
            if op == "(" and len(args) == 1:
                return f"({self.pformat(args[0], level)})"
            if op in _BINARY_LEVEL and len(args) == 2:
                return self._pformat_binary(op, args[0], args[1], level)
            if op in _UNARY_LEVEL and len(args) == 1:
                return f"{op}{self._operand(args[0], _UNARY_LEVEL[op], level)}"
            if op == "[[" and len(args) >= 1:
                rest = ", ".join(self.pformat(a, level) for a in args.values()[1:])
                return f"{self._operand(args[0], _ATOM_LEVEL, level)}[[{rest}]]"
            if op == "if" and len(args) in (2, 3):
                text = f"if ({self.pformat(args[0], level)}) {self.pformat(args[1], level)}"
                if len(args) == 3:
                    text += f" else {self.pformat(args[2], level)}"
                return text
            if op == "function" and len(args) == 2 and isinstance(args[0], Pairlist):
                return f"function({self._format_formals(args[0], level)}) {self.pformat(args[1], level)}"
        head_text = self.pformat(head, level)
        if isinstance(head, Call) and self._precedence(head) < _ATOM_LEVEL:
            head_text = f"({head_text})"
        parts = [self._format_arg(name, value, level) for name, value in args.items()]
        return f"{head_text}({', '.join(parts)})"

    def _pformat_binary(self, op, lhs, rhs, level):
        prec = _BINARY_LEVEL[op]
        if op in _RIGHT_ASSOC:
            left = self._operand(lhs, prec + 1, level)
            right = self._operand(rhs, prec, level)
        else:
            left = self._operand(lhs, prec, level)
            right = self._operand(rhs, prec + 1, level)
        if op in _TIGHT_OPS:
            return f"{left}{op}{right}"
        return f"{left} {op} {right}"

    def _pformat_block(self, obj, level):
        if not obj.args:
            return "{}"
        indent = self._indent_char * (level + 1)
        lines = [f"{indent}{self.pformat(stmt, level + 1)}" for stmt in obj.args.values()]
        closing = self._indent_char * level
        return "{\n" + "\n".join(lines) + f"\n{closing}}}"


def as_label(x) -> str:
    """A short single-line label for an expression, used for auto-naming."""
    if isinstance(x, Quosure):
        return as_label(x.expr)
    if isinstance(x, Symbol):
        return x.name
    if isinstance(x, Constant) and isinstance(x.value, str):
        return x.value
    if x is MissingArg:
        return "<empty>"
    text = Printer().pformat(x)
    return " ".join(line.strip() for line in text.splitlines())
