# quasi runtime: standard library and script execution

import collections.abc
import inspect
import math
import operator
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Pairlist, NamedList, Quosure, Environment, Promise, Closure, ReturnValue,
    MissingArg, QuasiError, UnboundSymbolError, EvaluationError, TypeMismatchError, MaskAssignmentError,
    special_form, sym, is_call, is_symbol, call_name, call_args,
)
from quasi.quasi_interpreter import (
    Evaluator, DataPronoun, EnvPronoun, is_return, unwrap_return, as_condition,
)
from quasi.quasi_quasiquote import (
    Quasiquoter, quo_squash, splice_items, apply_homonyms, is_unquote_splice, is_unquote_name,
)
from quasi.quasi_capture import (
    capture_expr, capture_quosure, capture_symbol, capture_dots, collect_dots, dots_promises, promise_entries,
    as_symbol,
)
from quasi.quasi_printer import Printer, as_label

# Operator spellings bound next to the named built-ins.
OPERATOR_ALIASES = {
    "+": "add", "-": "sub", "*": "mul", "/": "div", "^": "pow", "%%": "mod", "%/%": "int_div",
    "==": "eq", "!=": "neq", "<": "lt", "<=": "lte", ">": "gt", ">=": "gte",
    "!": "not", "&&": "and", "||": "or",
    "{": "block", "(": "paren", "<-": "assign", "=": "assign", "<<-": "super_assign",
    "$": "dollar", "[[": "subset2",
}

# Options accepted by the dots-capturing functions.
DOTS_OPTIONS = {".named": "named", ".homonyms": "homonyms", ".ignore_empty": "ignore_empty"}


def recycle(op, a, b):
    """Applies a binary op elementwise when either side is a list."""
    a_vec = isinstance(a, (list, tuple))
    b_vec = isinstance(b, (list, tuple))
    if not a_vec and not b_vec:
        return op(a, b)
    xs = list(a) if a_vec else [a]
    ys = list(b) if b_vec else [b]
    if not xs or not ys:
        return []
    n = max(len(xs), len(ys))
    return [op(xs[i % len(xs)], ys[i % len(ys)]) for i in range(n)]


def as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return Printer().pformat(value)


class StdLib:
    """Contains Python implementations for all built-ins and special forms.

    Every method named `_name` is bound as `name`; operators are bound through
    OPERATOR_ALIASES.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def bind_into(self, env: Environment) -> Environment:
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                env[name[1:]] = member
        for op, target in OPERATOR_ALIASES.items():
            env[op] = getattr(self, f"_{target}")
        return env

    def environment(self, name: str = "base") -> Environment:
        """A fresh root environment holding the standard library."""
        return self.bind_into(Environment(name=name))

    # --- Helpers (not bound) ---

    async def value_of(self, expr, env, mask):
        return unwrap_return(await self.evaluator._eval(expr, env, mask))

    async def eval_args(self, args: NamedList, env, mask) -> NamedList:
        """Evaluates arguments left to right, expanding a forwarded `...`."""
        out = NamedList()
        for name, expr in args.items():
            if is_symbol(expr, "..."):
                for dots_name, promise in dots_promises(env).items():
                    value = await self.evaluator.force(promise) if isinstance(promise, Promise) else promise
                    out.append_named(dots_name, value)
                continue
            out.append_named(name, await self.value_of(expr, env, mask))
        return out

    async def dots_options(self, args: NamedList, env, mask) -> Tuple[NamedList, Dict[str, Any]]:
        rest = NamedList()
        options: Dict[str, Any] = {}
        for name, expr in args.items():
            if name in DOTS_OPTIONS:
                options[DOTS_OPTIONS[name]] = await self.value_of(expr, env, mask)
            else:
                rest.append_named(name, expr)
        return rest, options

    async def dynamic_dots(self, args: NamedList, env, mask, homonyms: str = "keep",
                           ignore_empty: str = "trailing") -> NamedList:
        """Evaluates arguments with `!!!` splicing values and `:=` naming them."""
        quoter = Quasiquoter(self.evaluator, env, mask)
        items: List[Tuple[Optional[str], Any]] = []
        for name, expr in args.items():
            if is_unquote_splice(expr):
                items.extend(splice_items(await self.evaluator.eval_operand(expr.args[0], env, mask)))
                continue
            if is_unquote_name(expr):
                name = await quoter.expand_name(expr.args[0])
                expr = expr.args[1]
            if expr is MissingArg:
                items.append((name, MissingArg))
                continue
            if is_symbol(expr, "..."):
                items.extend((await self.eval_args(NamedList([expr]), env, mask)).items())
                continue
            items.append((name, await self.value_of(await quoter.expand(expr), env, mask)))
        if ignore_empty == "all":
            items = [(n, v) for n, v in items if v is not MissingArg]
        elif ignore_empty == "trailing" and items and items[-1][1] is MissingArg:
            items = items[:-1]
        return apply_homonyms(NamedList.from_items(items), homonyms)

    def target_name(self, target) -> str:
        if isinstance(target, Symbol):
            return target.name
        if isinstance(target, Constant) and isinstance(target.value, str):
            return target.value
        raise TypeMismatchError("invalid assignment target")

    def member_name(self, expr) -> str:
        if isinstance(expr, Symbol):
            return expr.name
        if isinstance(expr, Constant) and isinstance(expr.value, str):
            return expr.value
        raise TypeMismatchError("invalid subscript type for `$`")

    # --- Math and Logic ---
    def _add(self, a, b=None):
        return a if b is None else recycle(operator.add, a, b)

    def _sub(self, a, b=None):
        if b is None:
            return [-x for x in a] if isinstance(a, (list, tuple)) else -a
        return recycle(operator.sub, a, b)

    def _mul(self, a, b): return recycle(operator.mul, a, b)
    def _div(self, a, b): return recycle(operator.truediv, a, b)
    def _pow(self, b, e): return recycle(operator.pow, b, e)
    def _mod(self, a, b): return recycle(operator.mod, a, b)
    def _int_div(self, a, b): return recycle(operator.floordiv, a, b)
    def _eq(self, a, b): return recycle(operator.eq, a, b)
    def _neq(self, a, b): return recycle(operator.ne, a, b)
    def _lt(self, a, b): return recycle(operator.lt, a, b)
    def _lte(self, a, b): return recycle(operator.le, a, b)
    def _gt(self, a, b): return recycle(operator.gt, a, b)
    def _gte(self, a, b): return recycle(operator.ge, a, b)

    def _not(self, x):
        if isinstance(x, (list, tuple)):
            return [not as_condition(v, "!") for v in x]
        return not as_condition(x, "!")

    def _sqrt(self, x): return math.sqrt(x)
    def _abs(self, x): return abs(x)

    @special_form
    async def _and(self, args, *, env, mask):
        if not as_condition(await self.value_of(args[0], env, mask), "&&"):
            return False
        return as_condition(await self.value_of(args[1], env, mask), "&&")

    @special_form
    async def _or(self, args, *, env, mask):
        if as_condition(await self.value_of(args[0], env, mask), "||"):
            return True
        return as_condition(await self.value_of(args[1], env, mask), "||")

    # --- Control flow ---
    @special_form
    async def _block(self, args, *, env, mask):
        result = None
        for expr in args.values():
            result = await self.evaluator._eval(expr, env, mask)
            # Only 'return' propagates out of a block early.
            if is_return(result):
                return result
        return result

    @special_form
    async def _paren(self, args, *, env, mask):
        return await self.value_of(args[0], env, mask)

    @special_form
    async def _if(self, args, *, env, mask):
        if len(args) < 2:
            raise TypeMismatchError("if expects a condition and a branch")
        cond = await self.value_of(args[0], env, mask)
        if as_condition(cond, "if"):
            return await self.evaluator._eval(args[1], env, mask)
        if len(args) > 2:
            return await self.evaluator._eval(args[2], env, mask)
        return None

    def _return(self, value=None):
        return ReturnValue(value)

    def _stop(self, *message):
        raise EvaluationError("".join(as_text(m) for m in message))

    @special_form
    async def _function(self, args, *, env, mask):
        formals = args[0] if len(args) else Pairlist()
        if not isinstance(formals, Pairlist):
            raise TypeMismatchError("function formals must be a pairlist")
        body = args[1] if len(args) > 1 else Constant(None)
        return Closure(formals, body, env)

    @special_form
    async def _local(self, args, *, env, mask):
        parent = env
        if len(args) > 1:
            parent = await self.value_of(args[1], env, mask)
        return await self.value_of(args[0], Environment(parent=parent), mask)

    # --- Bindings ---
    @special_form
    async def _assign(self, args, *, env, mask):
        value = await self.value_of(args[1], env, mask)
        await self.assign_to(args[0], value, env, mask)
        return value

    async def assign_to(self, target, value, env, mask):
        if self.is_member_target(target):
            await self.assign_member(target, value, env, mask)
            return
        name = self.target_name(target)
        if mask is not None:
            mask.assign(name, value, env)
        else:
            env.bind(name, value)

    def is_member_target(self, target) -> bool:
        return isinstance(target, Call) and target.name in ("$", "[[") and len(target.args) == 2

    def member_root(self, target):
        while self.is_member_target(target):
            target = target.args[0]
        return target

    async def assign_member(self, target: Call, value, env, mask):
        """`x$k <- v` / `x[[k]] <- v`: copies the container, then rebinds `x`."""
        container_expr, key_expr = target.args[0], target.args[1]
        root = self.member_root(target)
        if mask is not None and isinstance(root, Symbol):
            if root.name in (".data", ".env") or mask.has_column(root.name):
                raise MaskAssignmentError(root.name)
        container = await self.value_of(container_expr, env, mask)
        if isinstance(container, (DataPronoun, EnvPronoun)):
            raise MaskAssignmentError(str(key_expr))
        if target.name == "$":
            key = self.member_name(key_expr)
        else:
            key = await self.value_of(key_expr, env, mask)
        if isinstance(container, Environment):
            # Environments are shared by reference.
            container.bind(key, value)
            return
        if isinstance(container, NamedList):
            updated = container.copy()
        elif isinstance(container, collections.abc.Mapping):
            updated = dict(container)
        elif isinstance(container, (list, tuple)):
            updated = list(container)
        else:
            setattr(container, key, value)
            return
        updated[key] = value
        await self.assign_to(container_expr, updated, env, mask)

    @special_form
    async def _super_assign(self, args, *, env, mask):
        name = self.target_name(args[0])
        value = await self.value_of(args[1], env, mask)
        if mask is not None and mask.has_column(name):
            raise MaskAssignmentError(name)
        if mask is not None:
            # The mask is the innermost frame; its enclosure is the quosure env.
            start = env
        else:
            start = env.parent if env.parent is not None else env
        start.rebind_in_scope(name, value)
        return value

    @special_form
    async def _missing(self, args, *, env, mask):
        target = args[0]
        if not isinstance(target, Symbol):
            raise TypeMismatchError("missing() expects an argument name")
        owner = env.find_owner(target.name)
        if owner is None:
            raise UnboundSymbolError(target.name)
        value = owner.bindings[target.name]
        if isinstance(value, NamedList) and target.name == "...":
            return len(value) == 0
        return value is MissingArg

    def _missing_arg(self): return MissingArg
    def _force(self, x): return x
    def _identity(self, x): return x

    # --- Member access ---
    @special_form
    async def _dollar(self, args, *, env, mask):
        obj = await self.value_of(args[0], env, mask)
        return await self.evaluator.get_member(obj, self.member_name(args[1]))

    @special_form
    async def _subset2(self, args, *, env, mask):
        obj = await self.value_of(args[0], env, mask)
        key = await self.value_of(args[1], env, mask)
        return await self.evaluator.get_element(obj, key)

    # --- Collections ---
    def _c(self, *values):
        out = []
        for v in values:
            if isinstance(v, (list, tuple, NamedList)):
                out.extend(v)
            elif v is not None:
                out.append(v)
        return out

    @special_form
    async def _list(self, args, *, env, mask):
        return await self.eval_args(args, env, mask)

    @special_form
    async def _list2(self, args, *, env, mask):
        rest, options = await self.dots_options(args, env, mask)
        options.pop("named", None)
        return await self.dynamic_dots(rest, env, mask, **options)

    def _length(self, x):
        if x is None:
            return 0
        if isinstance(x, (str, bytes)) or not isinstance(x, collections.abc.Sized):
            return 1
        return len(x)

    def _names(self, x):
        if isinstance(x, NamedList):
            return x.names()
        if isinstance(x, Call):
            return x.arg_names()
        if isinstance(x, collections.abc.Mapping):
            return list(x.keys())
        if isinstance(x, Environment):
            return x.names()
        return None

    def _paste(self, *parts, sep=" "):
        return sep.join(as_text(p) for p in parts)

    # --- Output ---
    def _print(self, value):
        self.evaluator.side_effects.append({'topics': ['stdout'], 'message': as_text(value)})
        return value

    def _emit(self, topic_or_topics, *message_parts):
        topics = [topic_or_topics] if isinstance(topic_or_topics, str) else list(topic_or_topics)
        message = " ".join(as_text(p) for p in message_parts)
        self.evaluator.side_effects.append({'topics': topics, 'message': message})
        return None

    # --- Quotation ---
    @special_form
    async def _quote(self, args, *, env, mask):
        if len(args) != 1:
            raise TypeMismatchError("quote expects 1 argument")
        return args[0]

    @special_form
    async def _expr(self, args, *, env, mask):
        if len(args) != 1:
            raise TypeMismatchError("expr expects 1 argument")
        return await Quasiquoter(self.evaluator, env, mask).expand(args[0])

    @special_form
    async def _quo(self, args, *, env, mask):
        if len(args) != 1:
            raise TypeMismatchError("quo expects 1 argument")
        expanded = await Quasiquoter(self.evaluator, env, mask).expand(args[0])
        if isinstance(expanded, Quosure):
            return expanded
        return Quosure(expanded, env)

    def quoted_entries(self, args: NamedList, env, mask):
        """Entries for collect_dots; a forwarded `...` yields its own promises."""
        for name, expr in args.items():
            if is_symbol(expr, "..."):
                yield from promise_entries(dots_promises(env))
            else:
                yield name, expr, env, mask

    @special_form
    async def _exprs(self, args, *, env, mask):
        rest, options = await self.dots_options(args, env, mask)
        return await collect_dots(self.evaluator, self.quoted_entries(rest, env, mask), quosures=False, **options)

    @special_form
    async def _quos(self, args, *, env, mask):
        rest, options = await self.dots_options(args, env, mask)
        return await collect_dots(self.evaluator, self.quoted_entries(rest, env, mask), quosures=True, **options)

    def arg_symbol(self, args, what: str) -> str:
        if len(args) != 1 or not isinstance(args[0], Symbol):
            raise TypeMismatchError(f"{what} expects the name of a function argument")
        return args[0].name

    @special_form
    async def _enexpr(self, args, *, env, mask):
        return await capture_expr(self.evaluator, self.arg_symbol(args, "enexpr"), env)

    @special_form
    async def _enquo(self, args, *, env, mask):
        return await capture_quosure(self.evaluator, self.arg_symbol(args, "enquo"), env)

    @special_form
    async def _ensym(self, args, *, env, mask):
        return await capture_symbol(self.evaluator, self.arg_symbol(args, "ensym"), env)

    async def captured_dots(self, args, env, mask, quosures: bool) -> NamedList:
        rest, options = await self.dots_options(args, env, mask)
        if len(rest) != 1 or not is_symbol(rest[0], "..."):
            raise TypeMismatchError("dots capture expects `...`")
        return await capture_dots(self.evaluator, env, quosures=quosures, **options)

    @special_form
    async def _enexprs(self, args, *, env, mask):
        return await self.captured_dots(args, env, mask, quosures=False)

    @special_form
    async def _enquos(self, args, *, env, mask):
        return await self.captured_dots(args, env, mask, quosures=True)

    @special_form
    async def _ensyms(self, args, *, env, mask):
        captured = await self.captured_dots(args, env, mask, quosures=False)
        return NamedList.from_items((n, as_symbol(e)) for n, e in captured.items())

    # --- Expression building ---
    def _sym(self, x): return sym(x)
    def _syms(self, xs): return [sym(x) for x in xs]
    def _as_label(self, x): return as_label(x)
    def _is_call(self, x, name=None, n=None): return is_call(x, name, n)
    def _is_symbol(self, x, name=None): return is_symbol(x, name)
    def _is_quosure(self, x): return isinstance(x, Quosure)
    def _call_name(self, x): return call_name(x)
    def _call_args(self, x): return call_args(x)

    @special_form
    async def _call2(self, args, *, env, mask):
        values = await self.dynamic_dots(args, env, mask)
        if not len(values):
            raise TypeMismatchError("call2 expects a function or function name")
        head = values[0]
        if isinstance(head, str):
            head = Symbol(head)
        rest = values[1:]
        return Call(head, rest)

    @special_form
    async def _exec(self, args, *, env, mask):
        values = await self.dynamic_dots(args, env, mask)
        if not len(values):
            raise TypeMismatchError("exec expects a function or function name")
        func = values[0]
        name = None
        if isinstance(func, (str, Symbol)):
            name = func if isinstance(func, str) else func.name
            func = await self.evaluator._lookup_function(name, env, mask)
        supplied = NamedList.from_items((n, Promise.resolved(v)) for n, v in values[1:].items())
        return await self.evaluator._invoke(func, supplied, env, mask, name=name)

    def _new_function(self, args, body, env=None, *, caller_env):
        if isinstance(args, Pairlist):
            formals = args
        elif isinstance(args, NamedList):
            formals = Pairlist(args.values(), args.names())
        elif isinstance(args, collections.abc.Mapping):
            formals = Pairlist(list(args.values()), list(args.keys()))
        else:
            raise TypeMismatchError("new_function args must be a pairlist or a named list")
        return Closure(formals, body, env if env is not None else caller_env)

    # --- Environments ---
    def _env(self, *parents, caller_env, **bindings):
        parent = parents[0] if parents else caller_env
        return Environment(parent=parent, bindings=bindings)

    def _current_env(self, *, caller_env):
        return caller_env

    def _env_parent(self, env):
        return env.parent

    def _env_has(self, env, name, inherit=False):
        return env.exists(name, inherit=inherit)

    # --- Evaluation ---
    async def _eval(self, expr, envir=None, *, caller_env):
        if envir is None or isinstance(envir, Environment):
            return await self.evaluator.eval(expr, envir if envir is not None else caller_env)
        # A list or mapping acts as a data mask over the caller's env.
        return await self.evaluator.eval_tidy(Quosure(expr, caller_env), data=envir)

    async def _eval_bare(self, expr, env=None, *, caller_env):
        return await self.evaluator.eval(expr, env if env is not None else caller_env)

    async def _eval_tidy(self, expr, data=None, env=None, *, caller_env):
        if not isinstance(expr, Quosure):
            expr = Quosure(expr, env if env is not None else caller_env)
        return await self.evaluator.eval_tidy(expr, data)

    def _new_quosure(self, expr, env=None, *, caller_env):
        return Quosure(expr, env if env is not None else caller_env)

    def _quo_get_expr(self, quo): return quo.expr
    def _quo_get_env(self, quo): return quo.env
    def _quo_squash(self, quo): return quo_squash(quo)


# ===================================================================
# Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error: Optional[BaseException] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")


class ScriptRunner:
    """Evaluates expressions in a persistent global environment.

    Source text needs a parser collaborator: any object with `parse_many(text)`
    (or `parse(text)`) returning expressions.
    """
    def __init__(self, parser: Optional[Any] = None, host_bindings: Optional[collections.abc.Mapping] = None):
        self.parser = parser
        self.evaluator = Evaluator()
        self.stdlib = StdLib(self.evaluator)
        self.base_env = self.stdlib.environment()
        self.global_env = Environment(parent=self.base_env, name="global")
        for name, value in (host_bindings or {}).items():
            self.global_env[name] = value

    def _parse(self, source) -> List[Any]:
        if isinstance(source, str):
            if self.parser is None:
                raise SyntaxError("no parser configured; pass expressions instead of source text")
            parse_many = getattr(self.parser, "parse_many", None)
            if parse_many is not None:
                return list(parse_many(source))
            return [self.parser.parse(source)]
        if isinstance(source, (list, tuple)):
            return list(source)
        return [source]

    def _format_runtime_error(self, e, node) -> str:
        match e:
            case SyntaxError():
                msg = f"ParseError: {e}"
            case QuasiError():
                msg = f"{type(e).__name__}: {e}"
            case TypeError() | AttributeError():
                call_name = None
                if self.evaluator.call_stack:
                    call_name = self.evaluator.call_stack[-1].get('name')
                msg = f"TypeError: {e}" + (f" in ({call_name})" if isinstance(call_name, str) else "")
            case _:
                msg = f"InternalError: {e}"

        if node is not None and not isinstance(e, SyntaxError):
            try:
                msg = f"{msg}\nIn: {Printer().pformat(node)}"
            except Exception:
                pass

        st = self._format_stacktrace()
        if st:
            msg += "\n" + st
        return msg

    def _format_stacktrace(self) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""
        pf = Printer().pformat

        def fmt(arg):
            if isinstance(arg, Promise):
                return pf(arg.expr) if not arg.forced else pf(arg.value)
            if isinstance(arg, Closure):
                return "<function>"
            if callable(arg):
                return getattr(arg, "__name__", "<callable>").lstrip('_')
            return pf(arg)

        frames = []
        for frame in stack:
            name = frame.get('name') or '<call>'
            args_s = " ".join(fmt(a) for a in frame.get('args') or [])
            frames.append(f"({name} {args_s})" if args_s else f"({name})")
        return "stacktrace: " + " ".join(frames)

    async def handle_script(self, source) -> ExecutionResult:
        """The main entry point: parse if needed, evaluate, report."""
        self.evaluator.side_effects.clear()
        self.evaluator.call_stack.clear()
        self.evaluator.current_node = None
        try:
            exprs = self._parse(source)
            value = await self.evaluator.eval_all(exprs, self.global_env)
            return ExecutionResult(status='success', value=value, side_effects=list(self.evaluator.side_effects))
        except Exception as e:
            err_msg = self._format_runtime_error(e, self.evaluator.current_node)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error=e,
                side_effects=list(self.evaluator.side_effects),
            )
