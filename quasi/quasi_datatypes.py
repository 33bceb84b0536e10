"""
Defines the core data types for the quasi metaprogramming runtime.

This module provides the expression model (constants, symbols, calls and
pairlists), the environment graph used for lexical lookup, and the promise,
closure and quosure types that the evaluator works with.
"""

import collections.abc
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


# =================================================================
# Errors
# =================================================================

class QuasiError(Exception):
    """Base class for every error raised by the quasi engine."""
    pass


class UnboundSymbolError(QuasiError):
    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(message or f"object '{name}' not found")
        self.name = name


class MissingArgumentError(QuasiError):
    def __init__(self, param: str, message: Optional[str] = None):
        if message is None:
            if param:
                message = f'argument "{param}" is missing, with no default'
            else:
                message = "argument is missing, with no default"
        super().__init__(message)
        self.param = param


class NotASymbolError(QuasiError):
    def __init__(self, got: Any):
        super().__init__(f"Can't convert {type(got).__name__} to a symbol: {got!r}")
        self.got = got


class InvalidSpliceContextError(QuasiError):
    def __init__(self, message: str = "`!!!` can only be used within a call's argument list"):
        super().__init__(message)


class MissingColumnError(QuasiError):
    def __init__(self, name: str):
        super().__init__(f"Column `{name}` not found in `.data`")
        self.name = name


class InvalidEvaluationTargetError(QuasiError):
    pass


class TypeMismatchError(QuasiError, TypeError):
    pass


class MaskAssignmentError(QuasiError):
    def __init__(self, name: str):
        super().__init__(f"Can't modify the data mask: `{name}` is a masked column")
        self.name = name


class DuplicateNameError(QuasiError):
    def __init__(self, name: str):
        super().__init__(f"Arguments can't have the same name: `{name}`")
        self.name = name


class RecursivePromiseError(QuasiError):
    pass


class EvaluationError(QuasiError):
    """Raised by `stop()` from evaluated code."""
    pass


# =================================================================
# Singletons
# =================================================================

class _Singleton:
    """Internal helper class for creating stateless marker objects."""
    def __init__(self, name):
        self._name = name

    def __repr__(self):
        return f"{self._name}<>"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


# The empty argument: a formal without default, or an argument slot left blank.
MissingArg = _Singleton("MissingArg")

# Removes an argument when passed to Call.modify().
Zap = _Singleton("Zap")


# =================================================================
# Expression Model
# =================================================================

ATOMIC_TYPES = (type(None), bool, int, float, complex, str)


class Constant:
    """An atomic literal leaf. Evaluates to its value."""
    def __init__(self, value: Any):
        if not isinstance(value, ATOMIC_TYPES):
            raise TypeMismatchError(f"Constant requires an atomic value, not {type(value).__name__}")
        self.value = value

    def __repr__(self) -> str:
        return f"Constant({self.value!r})"

    def __eq__(self, other):
        if not isinstance(other, Constant):
            return NotImplemented
        # Constant(1) and Constant(True) are different literals.
        return type(self.value) is type(other.value) and self.value == other.value

    def __hash__(self):
        return hash((type(self.value), self.value))


class Symbol:
    """A reference to a bound identifier."""
    def __init__(self, name: str):
        if not isinstance(name, str):
            raise NotASymbolError(name)
        self.name = name

    def __repr__(self) -> str:
        return f"Symbol<{self.name!r}>"

    def __eq__(self, other):
        return isinstance(other, Symbol) and self.name == other.name

    def __hash__(self):
        return hash(("symbol", self.name))


class NamedList(collections.abc.MutableSequence):
    """An ordered sequence of (name-or-None, value) entries.

    Positional indexing returns values; a string key selects the first entry
    with that name. Duplicate names are preserved.
    """
    def __init__(self, values: Iterable[Any] = (), names: Optional[Iterable[Optional[str]]] = None):
        values = list(values)
        if names is None:
            names = [None] * len(values)
        else:
            names = list(names)
            if len(names) != len(values):
                raise ValueError(f"{len(names)} names supplied for {len(values)} values")
        self.entries: List[Tuple[Optional[str], Any]] = list(zip(names, values))

    @classmethod
    def from_items(cls, items: Iterable[Tuple[Optional[str], Any]]) -> 'NamedList':
        out = cls()
        for name, value in items:
            out.append_named(name, value)
        return out

    def _index(self, key) -> int:
        if isinstance(key, str):
            for i, (name, _) in enumerate(self.entries):
                if name == key:
                    return i
            raise KeyError(key)
        return key

    def __getitem__(self, key):
        if isinstance(key, slice):
            return self.from_items(self.entries[key])
        return self.entries[self._index(key)][1]

    def __setitem__(self, key, value):
        if isinstance(key, str):
            try:
                i = self._index(key)
            except KeyError:
                self.entries.append((key, value))
                return
            self.entries[i] = (key, value)
            return
        name = self.entries[key][0]
        self.entries[key] = (name, value)

    def __delitem__(self, key):
        if isinstance(key, slice):
            del self.entries[key]
            return
        del self.entries[self._index(key)]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Any]:
        for _, value in self.entries:
            yield value

    def insert(self, index, value):
        self.entries.insert(index, (None, value))

    def insert_named(self, index: int, name: Optional[str], value: Any):
        self.entries.insert(index, (name, value))

    def append_named(self, name: Optional[str], value: Any):
        self.entries.append((name, value))

    def names(self) -> List[Optional[str]]:
        return [name for name, _ in self.entries]

    def values(self) -> List[Any]:
        return [value for _, value in self.entries]

    def items(self) -> List[Tuple[Optional[str], Any]]:
        return list(self.entries)

    def has_name(self, name: str) -> bool:
        return any(n == name for n, _ in self.entries)

    def copy(self) -> 'NamedList':
        return self.from_items(self.entries)

    def __eq__(self, other):
        if not isinstance(other, NamedList):
            return NotImplemented
        return type(self) is type(other) and self.entries == other.entries

    __hash__ = None

    def __repr__(self) -> str:
        parts = [f"{n}={v!r}" if n is not None else repr(v) for n, v in self.entries]
        return f"{type(self).__name__}([{', '.join(parts)}])"


class Pairlist(NamedList):
    """A formal-parameter list: every entry is named, values are default
    expressions or MissingArg."""
    def __init__(self, values: Iterable[Any] = (), names: Optional[Iterable[str]] = None):
        values = [as_expression(v) for v in values]
        super().__init__(values, names)
        for name in self.names():
            if not isinstance(name, str):
                raise TypeMismatchError(f"Pairlist entries must be named, got {name!r}")

    def append_named(self, name, value):
        if not isinstance(name, str):
            raise TypeMismatchError(f"Pairlist entries must be named, got {name!r}")
        super().append_named(name, as_expression(value))


class Call:
    """Represents "apply head to args" where args is a NamedList of expressions.

    A Call is treated as immutable once shared. The argument editing methods
    are for the caller that exclusively owns the tree; `modify()` returns an
    edited copy instead.
    """
    def __init__(self, head: Any, args: Iterable[Any] = (), names: Optional[Iterable[Optional[str]]] = None):
        self.head = as_expression(head)
        if isinstance(args, NamedList):
            if names is not None:
                raise ValueError("names must not be given together with a NamedList")
            self.args = NamedList.from_items((n, as_expression(v)) for n, v in args.items())
        else:
            self.args = NamedList([as_expression(v) for v in args], names)

    @property
    def name(self) -> Optional[str]:
        """The function name when the head is a plain symbol."""
        return self.head.name if isinstance(self.head, Symbol) else None

    def arg_names(self) -> List[Optional[str]]:
        return self.args.names()

    def arg_values(self) -> List[Any]:
        return self.args.values()

    def get_arg(self, key):
        return self.args[key]

    def set_arg(self, key, value):
        self.args[key] = as_expression(value)

    def insert_arg(self, index: int, value: Any, name: Optional[str] = None):
        self.args.insert_named(index, name, as_expression(value))

    def remove_arg(self, key):
        del self.args[key]

    def copy(self) -> 'Call':
        return Call(self.head, self.args)

    def modify(self, *args, **kwargs) -> 'Call':
        """Returns a copy with arguments appended, replaced or removed.

        Positional values are appended. A keyword replaces the first argument
        of that name or is appended; passing `Zap` removes every argument of
        that name.
        """
        out = self.copy()
        for value in args:
            out.args.append_named(None, as_expression(value))
        for key, value in kwargs.items():
            if value is Zap:
                out.args.entries = [(n, v) for n, v in out.args.entries if n != key]
            else:
                out.args[key] = as_expression(value)
        return out

    def __eq__(self, other):
        if not isinstance(other, Call):
            return NotImplemented
        return self.head == other.head and self.args == other.args

    __hash__ = None

    def __repr__(self) -> str:
        from quasi.quasi_printer import Printer
        return f"<Call {Printer().pformat(self)}>"


# =================================================================
# Core Runtime Types
# =================================================================

class Environment:
    """A frame of bindings with an optional parent frame.

    Lookup walks from this frame to the root. `bind` always writes locally;
    `rebind_in_scope` overwrites the nearest existing binding and never
    creates one.
    """
    def __init__(self, parent: Optional['Environment'] = None,
                 bindings: Optional[collections.abc.Mapping] = None,
                 name: Optional[str] = None):
        self.bindings: Dict[str, Any] = {}
        self.parent = parent
        self.name = name
        if bindings:
            for key, value in bindings.items():
                self.bind(key, value)

    def _normalize_key(self, key: Any) -> str:
        """Allow a Symbol to be used wherever a name is expected."""
        if isinstance(key, Symbol):
            return key.name
        if not isinstance(key, str):
            raise TypeError(f"Environment key must be a str or Symbol, not {type(key)}")
        return key

    def bind(self, name: Any, value: Any):
        self.bindings[self._normalize_key(name)] = value

    def find_owner(self, name: Any) -> Optional['Environment']:
        """Finds the frame in the parent chain that owns name."""
        name = self._normalize_key(name)
        frame = self
        while frame is not None:
            if name in frame.bindings:
                return frame
            frame = frame.parent
        return None

    def lookup(self, name: Any) -> Any:
        name = self._normalize_key(name)
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundSymbolError(name)
        return owner.bindings[name]

    def exists(self, name: Any, inherit: bool = True) -> bool:
        name = self._normalize_key(name)
        if not inherit:
            return name in self.bindings
        return self.find_owner(name) is not None

    def rebind_in_scope(self, name: Any, value: Any):
        name = self._normalize_key(name)
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundSymbolError(name)
        owner.bindings[name] = value

    def get(self, name: Any, default: Any = None) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            return default
        return owner.bindings[self._normalize_key(name)]

    def unbind(self, name: Any):
        name = self._normalize_key(name)
        if name not in self.bindings:
            raise UnboundSymbolError(name)
        del self.bindings[name]

    def names(self) -> List[str]:
        """Names bound in this frame only."""
        return list(self.bindings.keys())

    def child(self, **bindings) -> 'Environment':
        return Environment(parent=self, bindings=bindings)

    def parents(self) -> Iterator['Environment']:
        frame = self.parent
        while frame is not None:
            yield frame
            frame = frame.parent

    def __getitem__(self, key):
        return self.lookup(key)

    def __setitem__(self, key, value):
        self.bind(key, value)

    def __delitem__(self, key):
        self.unbind(key)

    def __contains__(self, key) -> bool:
        if not isinstance(key, (str, Symbol)):
            return False
        return self.exists(key)

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        label = f" {self.name}" if self.name else ""
        parent_id = f", parent=#{id(self.parent)}" if self.parent is not None else ""
        return f"<Environment{label} bindings=[{keys}]{parent_id}>"


class Quosure:
    """An expression bundled with the environment it must be evaluated in."""
    def __init__(self, expr: Any, env: Environment):
        if not isinstance(env, Environment):
            raise TypeMismatchError(f"A quosure needs an Environment, not {type(env).__name__}")
        self._expr = as_expression(expr)
        self._env = env

    @property
    def expr(self) -> Any:
        return self._expr

    @property
    def env(self) -> Environment:
        return self._env

    def __eq__(self, other):
        if not isinstance(other, Quosure):
            return NotImplemented
        return self._env is other._env and self._expr == other._expr

    __hash__ = None

    def __repr__(self) -> str:
        from quasi.quasi_printer import Printer
        return f"<Quosure {Printer().pformat(self)} env=#{id(self._env)}>"


class Promise:
    """A deferred argument: forced at most once, in the caller's environment."""
    def __init__(self, expr: Any, env: Optional[Environment], mask: Any = None):
        self.expr = expr
        self.env = env
        self.mask = mask
        self.value: Any = None
        self.forced = False
        self.forcing = False

    @classmethod
    def resolved(cls, value: Any) -> 'Promise':
        """A promise that already holds its value (host-supplied argument)."""
        p = cls(as_expression(value), None)
        p.value = value
        p.forced = True
        return p

    def __repr__(self) -> str:
        state = f"value={self.value!r}" if self.forced else "unforced"
        return f"<Promise expr={self.expr!r} {state}>"


class Closure:
    """A function defined in evaluated code: formals, body and defining env."""
    def __init__(self, formals: Pairlist, body: Any, env: Environment):
        if not isinstance(formals, Pairlist):
            raise TypeMismatchError(f"function formals must be a Pairlist, not {type(formals).__name__}")
        self.formals = formals
        self.body = as_expression(body)
        self.env = env
        self.meta: Dict[str, Any] = {}

    def __repr__(self) -> str:
        from quasi.quasi_printer import Printer
        return Printer().pformat(self)

    def __eq__(self, other):
        if not isinstance(other, Closure):
            return NotImplemented
        # NOTE: environment comparison is intentionally omitted.
        return self.formals == other.formals and self.body == other.body

    __hash__ = object.__hash__


class ReturnValue:
    """Carries a `return()` value out of nested blocks to the enclosing closure."""
    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"<ReturnValue {self.value!r}>"


def special_form(func):
    """Marks a host callable as receiving its arguments unevaluated.

    The evaluator calls it as `func(args, env=..., mask=...)` where args is
    the Call's NamedList of argument expressions.
    """
    func._quasi_special = True
    return func


def is_special(func) -> bool:
    return bool(getattr(func, "_quasi_special", False))


def is_function(value) -> bool:
    return isinstance(value, Closure) or (callable(value) and not isinstance(value, type))


# =================================================================
# Constructors and Predicates
# =================================================================

EXPRESSION_TYPES = (Constant, Symbol, Call, Pairlist, Quosure)


def as_expression(value: Any) -> Any:
    """Coerce a host value to an expression leaf.

    Expressions and MissingArg pass through, atomic values become Constant
    and any other object is kept as an inlined raw value.
    """
    if value is MissingArg or isinstance(value, EXPRESSION_TYPES):
        return value
    if isinstance(value, ATOMIC_TYPES):
        return Constant(value)
    return value


def sym(name: Any) -> Symbol:
    if isinstance(name, Symbol):
        return name
    if isinstance(name, Constant) and isinstance(name.value, str):
        return Symbol(name.value)
    if isinstance(name, str):
        return Symbol(name)
    raise NotASymbolError(name)


def syms(names: Iterable[Any]) -> List[Symbol]:
    return [sym(n) for n in names]


def call2(head: Any, *args, **kwargs) -> Call:
    """Builds a call; a string head names a function."""
    if isinstance(head, str):
        head = Symbol(head)
    values = list(args) + list(kwargs.values())
    names = [None] * len(args) + list(kwargs.keys())
    return Call(head, values, names)


def pairlist2(*required: str, **defaults) -> Pairlist:
    """Builds formals: positional names have no default, keywords do."""
    names = list(required) + list(defaults.keys())
    values = [MissingArg] * len(required) + list(defaults.values())
    return Pairlist(values, names)


def expr_kind(x: Any) -> str:
    if x is MissingArg:
        return "missing"
    match x:
        case Constant():
            return "constant"
        case Symbol():
            return "symbol"
        case Call():
            return "call"
        case Pairlist():
            return "pairlist"
        case Quosure():
            return "quosure"
        case _:
            return "value"


def is_symbol(x: Any, name: Optional[str] = None) -> bool:
    return isinstance(x, Symbol) and (name is None or x.name == name)


def is_call(x: Any, name: Optional[str] = None, n: Optional[int] = None) -> bool:
    if not isinstance(x, Call):
        return False
    if name is not None and x.name != name:
        return False
    if n is not None and len(x.args) != n:
        return False
    return True


def is_quosure(x: Any) -> bool:
    return isinstance(x, Quosure)


def is_missing(x: Any) -> bool:
    return x is MissingArg


def call_name(x: Call) -> Optional[str]:
    if not isinstance(x, Call):
        raise TypeMismatchError(f"Expected a call, got {type(x).__name__}")
    return x.name


def call_args(x: Call) -> NamedList:
    if not isinstance(x, Call):
        raise TypeMismatchError(f"Expected a call, got {type(x).__name__}")
    return x.args.copy()
