"""
Argument capture: turns the promises bound to a closure's formals back into
expressions and quosures.
"""
from typing import Any, List, Optional, Tuple

from quasi.quasi_datatypes import (
    Constant, Symbol, NamedList, Quosure, Promise, Environment, MissingArg,
    UnboundSymbolError, NotASymbolError, TypeMismatchError, as_expression,
)
from quasi.quasi_quasiquote import (
    Quasiquoter, apply_homonyms, splice_items, as_leaf, is_unquote_splice, is_unquote_name,
)

IGNORE_EMPTY_POLICIES = ("trailing", "none", "all")


def capture_promise(name: str, env: Environment) -> Tuple[Any, Environment, Any]:
    """Returns (expr, env, mask) for the argument bound to formal `name`.

    A promise gives its unevaluated expression and the caller's environment.
    Any other binding is returned as a literal with an empty environment.
    """
    owner = env.find_owner(name)
    if owner is None:
        raise UnboundSymbolError(name)
    value = owner.bindings[name]
    if isinstance(value, Promise):
        if value.env is None:
            # Host-supplied value: already evaluated.
            return as_expression(value.value), Environment(), None
        return value.expr, value.env, value.mask
    if value is MissingArg:
        return MissingArg, Environment(), None
    return as_expression(value), Environment(), None


async def capture_expr(evaluator, name: str, env: Environment) -> Any:
    """`enexpr`: the argument's expression with its own markers expanded."""
    expr, arg_env, mask = capture_promise(name, env)
    if expr is MissingArg:
        return MissingArg
    return await Quasiquoter(evaluator, arg_env, mask).expand(expr)


async def capture_quosure(evaluator, name: str, env: Environment) -> Quosure:
    """`enquo`: the argument's expression bundled with its call-site env."""
    expr, arg_env, mask = capture_promise(name, env)
    if expr is not MissingArg:
        expr = await Quasiquoter(evaluator, arg_env, mask).expand(expr)
    if isinstance(expr, Quosure):
        # Forwarded `!!quo` collapses to the quosure itself.
        return expr
    return Quosure(expr, arg_env)


def as_symbol(expr: Any) -> Symbol:
    if isinstance(expr, Quosure):
        expr = expr.expr
    if isinstance(expr, Symbol):
        return expr
    if isinstance(expr, Constant) and isinstance(expr.value, str):
        return Symbol(expr.value)
    raise NotASymbolError(expr)


async def capture_symbol(evaluator, name: str, env: Environment) -> Symbol:
    """`ensym`: the argument must be a bare name or a string."""
    return as_symbol(await capture_expr(evaluator, name, env))


def dots_promises(env: Environment) -> NamedList:
    """The promises bound to `...` in the current function frame."""
    if not env.exists("...", inherit=False):
        owner = env.find_owner("...")
        if owner is None:
            raise UnboundSymbolError("...", "'...' used in an incorrect context")
        env = owner
    dots = env.bindings["..."]
    if not isinstance(dots, NamedList):
        raise TypeMismatchError("'...' is not bound to an argument list")
    return dots


def _drop_empty(items: List[Tuple[Optional[str], Any]], policy: str):
    if policy not in IGNORE_EMPTY_POLICIES:
        raise ValueError(f"ignore_empty must be one of {IGNORE_EMPTY_POLICIES}, not {policy!r}")

    def empty(value):
        target = value.expr if isinstance(value, Quosure) else value
        return target is MissingArg

    if policy == "all":
        return [(n, v) for n, v in items if not empty(v)]
    if policy == "trailing" and items and empty(items[-1][1]):
        return items[:-1]
    return items


async def collect_dots(evaluator, entries, *, quosures: bool, homonyms: str = "keep",
                       ignore_empty: str = "trailing", named: bool = False) -> NamedList:
    """Captures dots entries as expressions or quosures.

    `entries` yields (name, expr, env, mask). `!!!` splices at the top level
    and `:=` names are expanded in each entry's own environment.
    """
    out: List[Tuple[Optional[str], Any]] = []
    for name, expr, env, mask in entries:
        quoter = Quasiquoter(evaluator, env, mask)
        if is_unquote_splice(expr):
            value = await evaluator.eval_operand(expr.args[0], env, mask)
            for item_name, item in splice_items(value):
                leaf = as_leaf(item)
                if quosures and not isinstance(leaf, Quosure):
                    leaf = Quosure(leaf, env)
                out.append((item_name, leaf))
            continue
        if is_unquote_name(expr):
            name = await quoter.expand_name(expr.args[0])
            expr = expr.args[1]
        if expr is not MissingArg:
            expr = await quoter.expand(expr)
        if quosures and not isinstance(expr, Quosure):
            expr = Quosure(expr, env)
        out.append((name, expr))

    out = _drop_empty(out, ignore_empty)
    if named:
        from quasi.quasi_printer import as_label
        out = [(n if n is not None else as_label(v), v) for n, v in out]
    return apply_homonyms(NamedList.from_items(out), homonyms)


def promise_entries(promises: NamedList):
    """Adapts captured `...` promises to collect_dots entries."""
    for name, value in promises.items():
        if isinstance(value, Promise):
            if value.env is None:
                yield name, as_expression(value.value), Environment(), None
            else:
                yield name, value.expr, value.env, value.mask
        elif value is MissingArg:
            yield name, MissingArg, Environment(), None
        else:
            yield name, as_expression(value), Environment(), None


async def capture_dots(evaluator, env: Environment, *, quosures: bool, **options) -> NamedList:
    """`enexprs(...)` / `enquos(...)`: each element keeps its own call-site env."""
    return await collect_dots(evaluator, promise_entries(dots_promises(env)), quosures=quosures, **options)
