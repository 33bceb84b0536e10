"""
The core quasi interpreter, containing the Evaluator and the data mask used
by tidy evaluation.
"""
import collections.abc
import inspect
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Pairlist, NamedList, Quosure, Environment, Promise, Closure,
    ReturnValue, MissingArg,
    UnboundSymbolError, MissingArgumentError, MissingColumnError, InvalidSpliceContextError,
    InvalidEvaluationTargetError, TypeMismatchError, MaskAssignmentError, RecursivePromiseError,
    is_special, is_function,
)


def is_return(x) -> bool:
    return isinstance(x, ReturnValue)


def unwrap_return(x):
    return x.value if is_return(x) else x


def as_condition(value: Any, what: str = "condition") -> bool:
    """Interprets value as a single logical, or raises TypeMismatchError."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value != value:
            raise TypeMismatchError(f"missing value where TRUE/FALSE needed in {what}")
        return value != 0
    if isinstance(value, (list, tuple)) and len(value) == 1:
        return as_condition(value[0], what)
    raise TypeMismatchError(f"argument is not interpretable as logical in {what}: {value!r}")


# =================================================================
# Data Mask
# =================================================================

class DataPronoun:
    """`.data`: resolves names against the mask's columns only."""
    def __init__(self, mask: 'DataMask'):
        self.mask = mask

    def __getitem__(self, name: str):
        return self.mask.column(name)

    def __contains__(self, name) -> bool:
        return self.mask.has_column(name)

    def __repr__(self) -> str:
        return "<pronoun .data>"


class EnvPronoun:
    """`.env`: resolves names against the lexical environment only."""
    def __init__(self, env: Environment):
        self.env = env

    def __repr__(self) -> str:
        return "<pronoun .env>"


class DataMask:
    """A read-only layer of named columns consulted before the lexical env.

    Built per evaluation from a Mapping, a NamedList, a sequence of
    (name, value) pairs or any object exposing `items()`. Assignments made
    while the mask is active land in a scratch frame that is discarded with
    the mask; assigning to a column raises MaskAssignmentError.
    """
    def __init__(self, data: Any = None):
        self.columns: NamedList = self._as_columns(data)
        self.owns_assignments = data is not None
        self.locals: Dict[str, Any] = {}
        self.pronoun = DataPronoun(self)
        self._positions: Dict[str, int] = {}
        for i, name in enumerate(self.columns.names()):
            if name is not None and name not in self._positions:
                self._positions[name] = i

    @staticmethod
    def _as_columns(data: Any) -> NamedList:
        if data is None:
            return NamedList()
        if isinstance(data, DataMask):
            return data.columns.copy()
        if isinstance(data, NamedList):
            return data.copy()
        if isinstance(data, Environment):
            return NamedList.from_items(data.bindings.items())
        if isinstance(data, collections.abc.Mapping) or hasattr(data, "items"):
            return NamedList.from_items((str(k), v) for k, v in data.items())
        if isinstance(data, (list, tuple)):
            items = []
            for entry in data:
                if not (isinstance(entry, tuple) and len(entry) == 2):
                    raise TypeMismatchError("Mask data must be named: expected (name, value) pairs")
                items.append((str(entry[0]), entry[1]))
            return NamedList.from_items(items)
        raise TypeMismatchError(f"Can't use a {type(data).__name__} as a data mask")

    def names(self) -> List[str]:
        return list(self._positions.keys())

    def has_column(self, name: str) -> bool:
        return name in self._positions

    def position(self, name: str) -> int:
        if name not in self._positions:
            raise MissingColumnError(name)
        return self._positions[name]

    def column(self, name: Any) -> Any:
        if isinstance(name, Symbol):
            name = name.name
        if not isinstance(name, str):
            raise TypeMismatchError(f"`.data` must be subset with a string, not {type(name).__name__}")
        if name not in self._positions:
            raise MissingColumnError(name)
        return self.columns.entries[self._positions[name]][1]

    def lookup(self, name: str, env: Environment) -> Tuple[bool, Any]:
        """Masked lookup for a bare name; pronouns resolve first."""
        if name == ".data":
            return True, self.pronoun
        if name == ".env":
            return True, EnvPronoun(env)
        if name in self.locals:
            return True, self.locals[name]
        if name in self._positions:
            return True, self.columns.entries[self._positions[name]][1]
        return False, None

    def assign(self, name: str, value: Any, env: Environment):
        if self.has_column(name) or name in (".data", ".env"):
            raise MaskAssignmentError(name)
        if self.owns_assignments:
            self.locals[name] = value
        else:
            env.bind(name, value)

    def __repr__(self) -> str:
        return f"<DataMask columns=[{', '.join(self.names())}]>"


# =================================================================
# Evaluator
# =================================================================

_MARKER_ERRORS = {
    "!!": lambda: InvalidEvaluationTargetError("`!!` can only be used within a quasiquoted argument"),
    "!!!": lambda: InvalidSpliceContextError("`!!!` can only be used within a quasiquoted argument list"),
    ":=": lambda: InvalidEvaluationTargetError("`:=` can only be used within a quasiquoted argument"),
}


class Evaluator:
    """The quasi execution engine."""
    def __init__(self):
        self.side_effects: List[Any] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_node = None

    def _push_frame(self, name, func, args, call_site_node):
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': call_site_node,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("QUASI_DEBUG"):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    # --- Public entry points ---

    async def eval(self, node: Any, env: Environment) -> Any:
        """Plain evaluation of node against env."""
        self.current_node = node
        return unwrap_return(await self._eval(node, env, None))

    async def eval_all(self, nodes, env: Environment) -> Any:
        """Evaluates each top-level expression in turn; returns the last value."""
        result = None
        for node in nodes:
            result = await self.eval(node, env)
        return result

    async def eval_tidy(self, quo: Any, data: Any = None, env: Optional[Environment] = None) -> Any:
        """Evaluates a quosure (or an expression in env) under a data mask.

        Without data, lookups behave as plain evaluation in the quosure's env,
        with the `.data` and `.env` pronouns available.
        """
        if not isinstance(quo, Quosure):
            quo = Quosure(quo, env if env is not None else Environment())
        mask = DataMask(data)
        self.current_node = quo.expr
        self._dbg("eval_tidy", quo, mask)
        return unwrap_return(await self._eval(quo.expr, quo.env, mask))

    async def eval_operand(self, operand: Any, env: Environment, mask=None) -> Any:
        """Evaluates the operand of an unquote marker."""
        if isinstance(operand, Call) and isinstance(operand.head, Symbol) and operand.head.name == "quote" \
                and len(operand.args) == 1:
            return operand.args[0]
        return unwrap_return(await self._eval(operand, env, mask))

    async def force(self, promise: Promise) -> Any:
        """Forces a promise once; later calls return the cached value."""
        if promise.forced:
            return promise.value
        if promise.forcing:
            raise RecursivePromiseError("promise already under evaluation: recursive default argument reference?")
        promise.forcing = True
        try:
            value = unwrap_return(await self._eval(promise.expr, promise.env, promise.mask))
        finally:
            promise.forcing = False
        promise.value = value
        promise.forced = True
        return value

    async def call(self, func: Any, args=(), kwargs=None, env: Optional[Environment] = None) -> Any:
        """Calls func with already-evaluated host values."""
        supplied = NamedList([Promise.resolved(a) for a in args])
        for name, value in (kwargs or {}).items():
            supplied.append_named(name, Promise.resolved(value))
        env = env if env is not None else Environment()
        return await self._invoke(func, supplied, env, None, name=getattr(func, "__name__", None))

    # --- Dispatch ---

    async def _eval(self, node: Any, env: Environment, mask: Optional[DataMask]) -> Any:
        """Recursive dispatcher for evaluating any AST node."""
        if node is MissingArg:
            raise MissingArgumentError("")
        match node:
            case Constant():
                return node.value
            case Symbol():
                return await self._lookup_symbol(node.name, env, mask)
            case Call():
                self.current_node = node
                return await self._eval_call(node, env, mask)
            case Quosure():
                # A nested quosure resolves in its own environment.
                return await self._eval(node.expr, node.env, mask)
            case Pairlist():
                raise InvalidEvaluationTargetError("A pairlist can only be evaluated as the formals of `function`")
            case Promise():
                return await self.force(node)
            case _:
                # Inlined runtime values evaluate to themselves.
                return node

    async def _resolve_binding(self, value: Any, name: str) -> Any:
        if isinstance(value, Promise):
            return await self.force(value)
        if value is MissingArg:
            raise MissingArgumentError(name)
        return value

    async def _lookup_symbol(self, name: str, env: Environment, mask: Optional[DataMask]) -> Any:
        if mask is not None:
            found, value = mask.lookup(name, env)
            if found:
                return await self._resolve_binding(value, name)
        return await self._resolve_binding(env.lookup(name), name)

    async def _lookup_function(self, name: str, env: Environment, mask: Optional[DataMask]) -> Any:
        """Finds the nearest binding of name that holds a function."""
        if mask is not None:
            found, value = mask.lookup(name, env)
            if found:
                value = await self._resolve_binding(value, name)
                if is_function(value):
                    return value
        frame = env
        while frame is not None:
            if name in frame.bindings:
                value = await self._resolve_binding(frame.bindings[name], name)
                if is_function(value):
                    return value
            frame = frame.parent
        if name in _MARKER_ERRORS:
            raise _MARKER_ERRORS[name]()
        raise UnboundSymbolError(name, f"could not find function \"{name}\"")

    async def _eval_call(self, node: Call, env: Environment, mask: Optional[DataMask]) -> Any:
        head = node.head
        if isinstance(head, Symbol):
            name = head.name
            func = await self._lookup_function(name, env, mask)
        else:
            name = None
            func = unwrap_return(await self._eval(head, env, mask))
        if is_special(func):
            self._push_frame(name, func, node.args.values(), node)
            result = await func(node.args, env=env, mask=mask)
            self._pop_frame()
            return result
        supplied = self._promise_args(node.args, env, mask)
        return await self._invoke(func, supplied, env, mask, name=name, call_node=node)

    def _promise_args(self, args: NamedList, env: Environment, mask: Optional[DataMask]) -> NamedList:
        """Wraps argument expressions in promises; `...` forwards existing ones."""
        out = NamedList()
        for name, arg in args.items():
            if isinstance(arg, Symbol) and arg.name == "...":
                from quasi.quasi_capture import dots_promises
                for dots_name, promise in dots_promises(env).items():
                    out.append_named(dots_name, promise)
                continue
            if arg is MissingArg:
                out.append_named(name, MissingArg)
                continue
            out.append_named(name, Promise(arg, env, mask))
        return out

    async def _invoke(self, func: Any, supplied: NamedList, env: Environment, mask: Optional[DataMask],
                      name: Optional[str] = None, call_node: Any = None) -> Any:
        self._dbg("Evaluator.call", name or type(func).__name__, "argc", len(supplied))
        match func:
            case Closure():
                return await self.call_closure(func, supplied, name=name, call_node=call_node)
            case _ if is_special(func):
                # Host code calling a special form with values: quote them back.
                from quasi.quasi_quasiquote import inject
                args = NamedList.from_items((n, inject(await self.force(p)) if isinstance(p, Promise) else p)
                                            for n, p in supplied.items())
                return await func(args, env=env, mask=mask)
            case _ if callable(func):
                return await self._call_native(func, supplied, env, name=name, call_node=call_node)
            case _:
                raise TypeMismatchError(f"attempt to apply non-function: {func!r}")

    # --- Closures ---

    def _match_args(self, formals: Pairlist, supplied: NamedList) -> Tuple[Dict[str, Any], NamedList]:
        """Matches supplied arguments to formals: exact names, then position.

        Formals after `...` can only be matched by name.
        """
        formal_names = formals.names()
        has_dots = "..." in formal_names
        positional_formals = formal_names[:formal_names.index("...")] if has_dots else list(formal_names)
        matched: Dict[str, Any] = {}
        unmatched: List[Tuple[Optional[str], Any]] = []
        for arg_name, value in supplied.items():
            if arg_name is not None and arg_name != "..." and arg_name in formal_names:
                if arg_name in matched:
                    raise TypeMismatchError(f"formal argument \"{arg_name}\" matched by multiple actual arguments")
                matched[arg_name] = value
            else:
                unmatched.append((arg_name, value))
        open_formals = [n for n in positional_formals if n not in matched]
        dots = NamedList()
        for arg_name, value in unmatched:
            if arg_name is None and open_formals:
                matched[open_formals.pop(0)] = value
            elif has_dots:
                dots.append_named(arg_name, value)
            else:
                label = f"{arg_name} = ..." if arg_name is not None else "positional argument"
                raise TypeMismatchError(f"unused argument ({label})")
        return matched, dots

    async def call_closure(self, func: Closure, supplied: NamedList, name: Optional[str] = None,
                           call_node: Any = None) -> Any:
        """Binds promises to formals in a fresh frame and evaluates the body."""
        frame = Environment(parent=func.env)
        matched, dots = self._match_args(func.formals, supplied)
        for param, default in func.formals.items():
            if param == "...":
                frame.bind("...", dots)
            elif param in matched:
                frame.bind(param, matched[param])
            elif default is MissingArg:
                frame.bind(param, MissingArg)
            else:
                # Defaults are evaluated lazily in the callee frame.
                frame.bind(param, Promise(default, frame))
        self._push_frame(name or "<closure>", func, supplied.values(), call_node)
        result = await self._eval(func.body, frame, None)
        self._pop_frame()
        return unwrap_return(result)

    # --- Host callables ---

    def _accepts_caller_env(self, func) -> bool:
        target = getattr(func, "__func__", func)
        needs = getattr(target, "_quasi_accepts_env", None)
        if needs is None:
            try:
                needs = "caller_env" in inspect.signature(func).parameters
            except (TypeError, ValueError):
                needs = False
            try:
                setattr(target, "_quasi_accepts_env", needs)
            except (AttributeError, TypeError):
                pass
        return needs

    async def _call_native(self, func, supplied: NamedList, env: Environment, name: Optional[str] = None,
                           call_node: Any = None) -> Any:
        """Forces every argument left to right, then calls the host function."""
        positional: List[Any] = []
        kwargs: Dict[str, Any] = {}
        for i, (arg_name, value) in enumerate(supplied.items()):
            if value is MissingArg:
                raise MissingArgumentError(arg_name or "", f"argument {i + 1} is empty")
            value = await self.force(value) if isinstance(value, Promise) else value
            if arg_name is None:
                positional.append(value)
            elif arg_name in kwargs:
                raise TypeMismatchError(f"formal argument \"{arg_name}\" matched by multiple actual arguments")
            else:
                kwargs[arg_name] = value
        if self._accepts_caller_env(func):
            kwargs["caller_env"] = env
        self._push_frame(name, func, positional + list(kwargs.values()), call_node)
        result = func(*positional, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        self._pop_frame()
        return result

    # --- Member access ---

    async def get_member(self, obj: Any, key: str) -> Any:
        """`obj$key`."""
        match obj:
            case DataPronoun():
                return obj.mask.column(key)
            case EnvPronoun():
                return await self._resolve_binding(obj.env.lookup(key), key)
            case Environment():
                return await self._resolve_binding(obj.lookup(key), key)
            case NamedList():
                return obj[key] if obj.has_name(key) else None
            case collections.abc.Mapping():
                return obj.get(key)
            case _:
                try:
                    return getattr(obj, key)
                except AttributeError:
                    raise TypeMismatchError(f"$ operator is invalid for {type(obj).__name__} values")

    async def get_element(self, obj: Any, key: Any) -> Any:
        """`obj[[key]]`."""
        match obj:
            case DataPronoun() | EnvPronoun():
                if isinstance(key, Symbol):
                    key = key.name
                if not isinstance(key, str):
                    raise TypeMismatchError(f"Pronouns must be subset with a string, not {type(key).__name__}")
                return await self.get_member(obj, key)
            case Environment():
                return await self.get_member(obj, key)
            case _:
                return obj[key]
