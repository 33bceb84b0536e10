import pytest

from quasi.quasi_runtime import StdLib
from quasi.quasi_interpreter import Evaluator
from quasi.quasi_quasiquote import (
    quasiquote, quasiquote_args, unquote, unquote_splice, unquote_name, curly, inject, quo_squash,
    splice_items, apply_homonyms,
)
from quasi.quasi_datatypes import (
    Constant, Symbol, Call, NamedList, Pairlist, Environment, Quosure, MissingArg,
    InvalidSpliceContextError, TypeMismatchError, DuplicateNameError,
    sym, call2, pairlist2,
)


@pytest.fixture
def evaluator():
    """Returns a new Evaluator for each test."""
    return Evaluator()


@pytest.fixture
def env(evaluator):
    """A global frame whose parent holds the standard library."""
    base = StdLib(evaluator).environment()
    return Environment(parent=base, name="global")


async def qq(template, env, evaluator, **kwargs):
    return await quasiquote(template, env, evaluator, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("template", [
    Constant(1),
    sym("x"),
    call2("f", sym("x"), call2("g", 1, key="v")),
    Call(Symbol("f"), [MissingArg]),
    call2("function", pairlist2("a", b=2), call2("+", sym("a"), sym("b"))),
])
async def test_marker_free_template_round_trips(template, env, evaluator):
    assert await qq(template, env, evaluator) == template


@pytest.mark.asyncio
async def test_unquote_substitutes_values_and_expressions(env, evaluator):
    env["x"] = 5
    env["e"] = call2("+", 1, 2)
    result = await qq(call2("f", unquote(sym("x")), unquote(sym("e")), sym("y")), env, evaluator)
    assert result == call2("f", Constant(5), call2("+", 1, 2), sym("y"))


@pytest.mark.asyncio
async def test_unquote_evaluates_operand_expressions(env, evaluator):
    env["x"] = 5
    result = await qq(call2("g", unquote(call2("*", sym("x"), 2))), env, evaluator)
    assert result == call2("g", 10)


@pytest.mark.asyncio
async def test_splice_scenario(env, evaluator):
    template = call2("f", unquote_splice([Constant(1), Constant(2)]), sym("y"))
    result = await qq(template, env, evaluator)
    assert result == Call(Symbol("f"), [Constant(1), Constant(2), Symbol("y")])


@pytest.mark.asyncio
async def test_splice_arity_preserves_order(env, evaluator):
    env["args"] = [Constant(1), sym("b"), call2("g")]
    result = await qq(call2("f", sym("a"), unquote_splice(sym("args"))), env, evaluator)
    assert len(result.args) == 4
    assert result.arg_values() == [sym("a"), Constant(1), sym("b"), call2("g")]


@pytest.mark.asyncio
@pytest.mark.parametrize("empty", [[], None, NamedList()])
async def test_empty_splice_keeps_fixed_arguments(empty, env, evaluator):
    env["nothing"] = empty
    template = call2("f", sym("a"), unquote_splice(sym("nothing")), sym("b"))
    assert await qq(template, env, evaluator) == call2("f", sym("a"), sym("b"))


@pytest.mark.asyncio
async def test_splicing_named_values_keeps_names(env, evaluator):
    env["opts"] = NamedList([1, 2], ["p", "q"])
    result = await qq(call2("f", sym("a"), unquote_splice(sym("opts"))), env, evaluator)
    assert result.arg_names() == [None, "p", "q"]
    assert result.arg_values() == [sym("a"), Constant(1), Constant(2)]


@pytest.mark.asyncio
async def test_splicing_a_mapping(env, evaluator):
    env["opts"] = {"x": 1}
    result = await qq(call2("f", unquote_splice(sym("opts"))), env, evaluator)
    assert result == call2("f", x=1)


@pytest.mark.asyncio
async def test_splice_outside_an_argument_list_raises(env, evaluator):
    env["args"] = [Constant(1)]
    with pytest.raises(InvalidSpliceContextError):
        await qq(unquote_splice(sym("args")), env, evaluator)
    with pytest.raises(InvalidSpliceContextError):
        await qq(Call(unquote_splice(sym("args")), [1]), env, evaluator)


@pytest.mark.asyncio
async def test_splice_with_a_name_raises(env, evaluator):
    env["args"] = [Constant(1)]
    template = Call(Symbol("f"), [unquote_splice(sym("args"))], ["nm"])
    with pytest.raises(InvalidSpliceContextError):
        await qq(template, env, evaluator)


@pytest.mark.asyncio
async def test_splicing_a_call_is_a_type_error(env, evaluator):
    env["c"] = call2("g", 1)
    with pytest.raises(TypeMismatchError):
        await qq(call2("f", unquote_splice(sym("c"))), env, evaluator)


@pytest.mark.asyncio
async def test_unquoted_string_in_function_position_names_the_function(env, evaluator):
    env["fname"] = "mean"
    result = await qq(Call(unquote(sym("fname")), [sym("x")]), env, evaluator)
    assert result == call2("mean", sym("x"))


@pytest.mark.asyncio
async def test_name_unquote(env, evaluator):
    env["nm"] = "alpha"
    template = call2("f", unquote_name(unquote(sym("nm")), 1), unquote_name(Constant("beta"), 2),
                     unquote_name(sym("gamma"), 3))
    result = await qq(template, env, evaluator)
    assert result.arg_names() == ["alpha", "beta", "gamma"]
    assert result.arg_values() == [Constant(1), Constant(2), Constant(3)]


@pytest.mark.asyncio
async def test_name_unquote_accepts_symbols(env, evaluator):
    env["nm"] = sym("delta")
    result = await qq(call2("f", unquote_name(unquote(sym("nm")), 1)), env, evaluator)
    assert result == call2("f", delta=1)


@pytest.mark.asyncio
async def test_name_unquote_rejects_non_names(env, evaluator):
    env["nm"] = 3
    with pytest.raises(TypeMismatchError):
        await qq(call2("f", unquote_name(unquote(sym("nm")), 1)), env, evaluator)


@pytest.mark.asyncio
async def test_homonym_policies(env, evaluator):
    env["args"] = NamedList([1, 2], ["a", "a"])
    template = call2("f", unquote_splice(sym("args")), 3)

    kept = await qq(template, env, evaluator)
    assert kept.arg_names() == ["a", "a", None]

    first = await qq(template, env, evaluator, homonyms="first")
    assert first.args.items() == [("a", Constant(1)), (None, Constant(3))]

    last = await qq(template, env, evaluator, homonyms="last")
    assert last.args.items() == [("a", Constant(2)), (None, Constant(3))]

    with pytest.raises(DuplicateNameError):
        await qq(template, env, evaluator, homonyms="error")


def test_apply_homonyms_rejects_unknown_policy():
    with pytest.raises(ValueError):
        apply_homonyms(NamedList(), "sometimes")


@pytest.mark.asyncio
async def test_nested_quotation_leaves_inner_markers(env, evaluator):
    env["x"] = 5
    template = call2("quote", call2("f", unquote(sym("x"))))
    assert await qq(template, env, evaluator) == template


@pytest.mark.asyncio
async def test_bquote_opens_a_quoting_level(env, evaluator):
    env["x"] = 5
    template = call2("bquote", call2("f", unquote(sym("x"))))
    assert await qq(template, env, evaluator) == template


@pytest.mark.asyncio
async def test_double_unquote_reaches_outer_level(env, evaluator):
    env["x"] = 5
    template = call2("quote", call2("g", unquote(unquote(sym("x")))))
    result = await qq(template, env, evaluator)
    assert result == call2("quote", call2("g", unquote(Constant(5))))


@pytest.mark.asyncio
async def test_nested_splice_is_kept(env, evaluator):
    template = call2("expr", call2("f", unquote_splice(sym("args"))))
    assert await qq(template, env, evaluator) == template


@pytest.mark.asyncio
async def test_inject_embeds_host_values(env, evaluator):
    payload = [1, 2]
    result = await qq(call2("f", inject(payload)), env, evaluator)
    assert result.args[0] is payload


@pytest.mark.asyncio
async def test_curly_equals_unquoted_enquo(env, evaluator):
    with_curly = call2("function", pairlist2("x"), call2("expr", call2("g", curly(sym("x")))))
    with_enquo = call2("function", pairlist2("x"),
                       call2("expr", call2("g", unquote(call2("enquo", sym("x"))))))
    await evaluator.eval(call2("<-", sym("f1"), with_curly), env)
    await evaluator.eval(call2("<-", sym("f2"), with_enquo), env)

    arg = call2("+", sym("a"), sym("b"))
    r1 = await evaluator.eval(call2("f1", arg), env)
    r2 = await evaluator.eval(call2("f2", arg), env)
    assert r1 == r2
    quo = r1.args[0]
    assert isinstance(quo, Quosure)
    assert quo.expr == arg
    assert quo.env is env


@pytest.mark.asyncio
async def test_unquote_of_missing_argument_keeps_it_empty(env, evaluator):
    template = call2("f", unquote(call2("quote", MissingArg)))
    result = await qq(template, env, evaluator)
    assert result.args[0] is MissingArg


@pytest.mark.asyncio
async def test_quasiquote_args_expands_argument_lists(env, evaluator):
    env["more"] = [Constant(2), Constant(3)]
    args = NamedList([Constant(1), unquote_splice(sym("more"))])
    result = await quasiquote_args(args, env, evaluator)
    assert result.values() == [Constant(1), Constant(2), Constant(3)]


@pytest.mark.asyncio
async def test_quasiquote_creates_an_evaluator_when_none_given():
    env = Environment(bindings={"x": 7})
    assert await quasiquote(call2("f", unquote(sym("x"))), env) == call2("f", 7)


def test_splice_items():
    assert splice_items(None) == []
    assert splice_items((1, 2)) == [(None, 1), (None, 2)]
    with pytest.raises(TypeMismatchError):
        splice_items(pairlist2("a"))
    with pytest.raises(TypeMismatchError):
        splice_items(5)


def test_quo_squash_removes_nested_quosures():
    env = Environment()
    inner = Quosure(call2("+", sym("a"), 1), env)
    outer = Quosure(call2("f", inner, Quosure(sym("b"), env)), env)
    assert quo_squash(outer) == call2("f", call2("+", sym("a"), 1), sym("b"))
    assert quo_squash(sym("x")) == sym("x")
