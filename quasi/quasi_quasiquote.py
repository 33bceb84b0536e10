"""
The quasiquotation engine: expands `!!`, `!!!`, `:=` and `{{ }}` markers in
a template expression.

Markers are ordinary calls, so any parser that produces Call nodes for them
can feed templates to this module:

    !!x         Call(Symbol("!!"), [x])
    !!!xs       Call(Symbol("!!!"), [xs])
    lhs := rhs  Call(Symbol(":="), [lhs, rhs])
    {{ x }}     Call(Symbol("{"), [Call(Symbol("{"), [x])])
"""
import collections.abc
from typing import Any, Iterable, List, Optional, Tuple

from quasi.quasi_datatypes import (
    Constant, Symbol, Call, Pairlist, NamedList, Quosure, Environment, MissingArg,
    ATOMIC_TYPES, EXPRESSION_TYPES,
    InvalidSpliceContextError, TypeMismatchError, DuplicateNameError,
)

UNQUOTE = "!!"
UNQUOTE_SPLICE = "!!!"
UNQUOTE_NAME = ":="

# Calls to these functions open a new quoting level.
QUOTING_FUNCTIONS = frozenset({"quote", "bquote", "expr", "exprs", "quo", "quos"})

HOMONYM_POLICIES = ("keep", "first", "last", "error")


# =================================================================
# Marker constructors and predicates
# =================================================================

def unquote(operand: Any) -> Call:
    """`!!operand`: the operand is evaluated when the template is expanded."""
    return Call(Symbol(UNQUOTE), [operand])


def unquote_splice(operand: Any) -> Call:
    """`!!!operand`: the operand must evaluate to a sequence of arguments."""
    return Call(Symbol(UNQUOTE_SPLICE), [operand])


def unquote_name(lhs: Any, rhs: Any) -> Call:
    """`lhs := rhs`: lhs computes the argument name."""
    return Call(Symbol(UNQUOTE_NAME), [lhs, rhs])


def curly(operand: Any) -> Call:
    """`{{ operand }}`: shorthand for `!!enquo(operand)`."""
    return Call(Symbol("{"), [Call(Symbol("{"), [operand])])


def inject(value: Any) -> Call:
    """`!!` around a host value: the value is embedded as-is."""
    return unquote(Call(Symbol("quote"), [value]))


def _is_marker(node: Any, name: str, arity: int) -> bool:
    return (
        isinstance(node, Call)
        and isinstance(node.head, Symbol)
        and node.head.name == name
        and len(node.args) == arity
        and all(n is None for n in node.args.names())
    )


def is_unquote(node: Any) -> bool:
    return _is_marker(node, UNQUOTE, 1)


def is_unquote_splice(node: Any) -> bool:
    return _is_marker(node, UNQUOTE_SPLICE, 1)


def is_unquote_name(node: Any) -> bool:
    return _is_marker(node, UNQUOTE_NAME, 2)


def is_curly(node: Any) -> bool:
    return _is_marker(node, "{", 1) and _is_marker(node.args[0], "{", 1)


def _opens_quote(node: Call) -> bool:
    return isinstance(node.head, Symbol) and node.head.name in QUOTING_FUNCTIONS


# =================================================================
# Leaf conversion, splicing and name policies
# =================================================================

def as_leaf(value: Any) -> Any:
    """Converts an unquoted value into the node that replaces the marker."""
    if value is MissingArg or isinstance(value, EXPRESSION_TYPES):
        return value
    if isinstance(value, ATOMIC_TYPES):
        return Constant(value)
    return value


def splice_items(value: Any) -> List[Tuple[Optional[str], Any]]:
    """Flattens a spliced value into (name, value) pairs."""
    if value is None:
        return []
    if isinstance(value, Pairlist) or isinstance(value, Call):
        raise TypeMismatchError(f"Can't splice a {type(value).__name__}; splice a list of expressions instead")
    if isinstance(value, NamedList):
        return value.items()
    if isinstance(value, collections.abc.Mapping):
        return [(str(k), v) for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        return [(None, v) for v in value]
    raise TypeMismatchError(f"`!!!` expects a list, got {type(value).__name__}")


def apply_homonyms(args: NamedList, policy: str = "keep") -> NamedList:
    """Resolves duplicate argument names according to policy."""
    if policy not in HOMONYM_POLICIES:
        raise ValueError(f"homonyms must be one of {HOMONYM_POLICIES}, not {policy!r}")
    if policy == "keep":
        return args
    seen = {}
    for i, name in enumerate(args.names()):
        if name is None:
            continue
        if name in seen:
            if policy == "error":
                raise DuplicateNameError(name)
            if policy == "last":
                seen[name] = i
        else:
            seen[name] = i
    keep = set(seen.values())
    return NamedList.from_items(
        (n, v) for i, (n, v) in enumerate(args.items()) if n is None or i in keep
    )


def quo_squash(x: Any) -> Any:
    """Replaces every nested quosure by its bare expression."""
    match x:
        case Quosure():
            return quo_squash(x.expr)
        case Call():
            return Call(quo_squash(x.head), NamedList.from_items((n, quo_squash(v)) for n, v in x.args.items()))
        case Pairlist():
            return Pairlist([quo_squash(v) for v in x.values()], x.names())
        case _:
            return x


# =================================================================
# Engine
# =================================================================

class Quasiquoter:
    """Walks a template and replaces unquote markers found at depth zero.

    Operands are evaluated by `evaluator` in `env` (and `mask`, when the
    template is expanded during a data-masked evaluation).
    """
    def __init__(self, evaluator, env: Environment, mask=None, homonyms: str = "keep"):
        self.evaluator = evaluator
        self.env = env
        self.mask = mask
        self.homonyms = homonyms

    async def _force(self, operand: Any) -> Any:
        return await self.evaluator.eval_operand(operand, self.env, self.mask)

    async def expand(self, node: Any, depth: int = 0) -> Any:
        match node:
            case Call():
                return await self._expand_call(node, depth)
            case Pairlist():
                values = [await self.expand(v, depth) for v in node.values()]
                return Pairlist(values, node.names())
            case _:
                # Constants, symbols, quosures, MissingArg and inlined values
                return node

    async def _expand_call(self, node: Call, depth: int) -> Any:
        if is_unquote(node):
            if depth == 0:
                return as_leaf(await self._force(node.args[0]))
            return Call(node.head, [await self.expand(node.args[0], depth - 1)])
        if is_unquote_splice(node):
            if depth == 0:
                raise InvalidSpliceContextError()
            return Call(node.head, [await self.expand(node.args[0], depth - 1)])
        if depth == 0 and is_curly(node):
            return await self._capture_curly(node)

        head = await self._expand_head(node.head, depth)
        inner_depth = depth + 1 if _opens_quote(node) else depth
        args = await self.expand_args(node.args, inner_depth)
        return Call(head, args)

    async def _expand_head(self, head: Any, depth: int) -> Any:
        if depth == 0 and is_unquote_splice(head):
            raise InvalidSpliceContextError("`!!!` can't be used in function position")
        new_head = await self.expand(head, depth)
        if depth == 0 and is_unquote(head) and isinstance(new_head, Constant) and isinstance(new_head.value, str):
            # `(!!"f")(x)` names the function
            return Symbol(new_head.value)
        return new_head

    async def expand_args(self, args: NamedList, depth: int = 0) -> NamedList:
        out = NamedList()
        for name, arg in args.items():
            if depth == 0 and is_unquote_splice(arg):
                if name is not None:
                    raise InvalidSpliceContextError(f"Can't supply a name (`{name}`) to `!!!`")
                value = await self._force(arg.args[0])
                for item_name, item in splice_items(value):
                    out.append_named(item_name, as_leaf(item))
                continue
            if depth == 0 and is_unquote_name(arg):
                if name is not None:
                    raise TypeMismatchError(f"Can't supply both a name (`{name}`) and `:=`")
                new_name = await self.expand_name(arg.args[0])
                out.append_named(new_name, await self.expand(arg.args[1], depth))
                continue
            out.append_named(name, await self.expand(arg, depth))
        return apply_homonyms(out, self.homonyms)

    async def expand_name(self, lhs: Any) -> str:
        """Computes the argument name on the left of `:=`."""
        if isinstance(lhs, Symbol):
            return lhs.name
        if isinstance(lhs, Constant) and isinstance(lhs.value, str):
            return lhs.value
        if is_unquote(lhs):
            value = await self._force(lhs.args[0])
            if isinstance(value, str):
                return value
            if isinstance(value, Symbol):
                return value.name
            if isinstance(value, Constant) and isinstance(value.value, str):
                return value.value
            raise TypeMismatchError(f"The name on the left of `:=` must be a string or symbol, not {type(value).__name__}")
        if is_curly(lhs):
            from quasi.quasi_printer import as_label
            quo = await self._capture_curly(lhs)
            return as_label(quo)
        raise TypeMismatchError("The left-hand side of `:=` must be a symbol, a string or an unquoted name")

    async def _capture_curly(self, node: Call) -> Quosure:
        # Local import: capture builds on this module.
        from quasi.quasi_capture import capture_quosure
        target = node.args[0].args[0]
        if not isinstance(target, Symbol):
            raise TypeMismatchError("`{{` must surround a single argument name")
        return await capture_quosure(self.evaluator, target.name, self.env)


async def quasiquote(template: Any, env: Environment, evaluator=None, mask=None, homonyms: str = "keep") -> Any:
    """Expands the unquote markers of template, evaluating operands in env."""
    if evaluator is None:
        from quasi.quasi_interpreter import Evaluator
        evaluator = Evaluator()
    return await Quasiquoter(evaluator, env, mask, homonyms).expand(template)


async def quasiquote_args(args: Iterable[Tuple[Optional[str], Any]], env: Environment, evaluator,
                          mask=None, homonyms: str = "keep") -> NamedList:
    """Expands an argument list, honouring `!!!` and `:=` at the top level."""
    if not isinstance(args, NamedList):
        args = NamedList.from_items(args)
    return await Quasiquoter(evaluator, env, mask, homonyms).expand_args(args)
