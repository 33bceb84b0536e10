import pytest

from quasi.quasi_runtime import StdLib
from quasi.quasi_interpreter import Evaluator
from quasi.quasi_quasiquote import unquote, unquote_splice
from quasi.quasi_capture import capture_promise, as_symbol
from quasi.quasi_datatypes import (
    Constant, Symbol, Call, NamedList, Environment, Quosure, Promise, MissingArg,
    NotASymbolError, TypeMismatchError, MissingArgumentError, UnboundSymbolError,
    sym, call2, pairlist2,
)


@pytest.fixture
def evaluator():
    return Evaluator()


@pytest.fixture
def env(evaluator):
    base = StdLib(evaluator).environment()
    return Environment(parent=base, name="global")


def fn(formals, *body):
    if len(body) == 1:
        return call2("function", formals, body[0])
    return call2("function", formals, Call(Symbol("{"), list(body)))


async def define(evaluator, env, name, formals, *body):
    await evaluator.eval(call2("<-", sym(name), fn(formals, *body)), env)


@pytest.mark.asyncio
async def test_enexpr_returns_the_argument_expression(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), call2("enexpr", sym("x")))
    result = await evaluator.eval(call2("f", call2("+", sym("a"), sym("b"))), env)
    assert result == call2("+", sym("a"), sym("b"))


@pytest.mark.asyncio
async def test_enexpr_expands_markers_in_the_caller_env(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), call2("enexpr", sym("x")))
    env["y"] = 3
    result = await evaluator.eval(call2("f", call2("+", unquote(sym("y")), 1)), env)
    assert result == call2("+", 3, 1)


@pytest.mark.asyncio
async def test_enquo_bundles_the_call_site_env(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), call2("enquo", sym("x")))
    q = await evaluator.eval(call2("f", sym("a")), env)
    assert isinstance(q, Quosure)
    assert q.expr == sym("a")
    assert q.env is env


@pytest.mark.asyncio
async def test_enquo_through_two_functions_keeps_the_original_env(env, evaluator):
    await define(evaluator, env, "inner", pairlist2("y"), call2("enquo", sym("y")))
    await define(evaluator, env, "outer", pairlist2("x"), call2("inner", unquote(call2("enquo", sym("x")))))
    q = await evaluator.eval(call2("outer", call2("*", sym("z"), 2)), env)
    # `!!enquo(x)` forwarded into inner collapses back to the original quosure
    assert q.expr == call2("*", sym("z"), 2)
    assert q.env is env


@pytest.mark.asyncio
async def test_ensym_accepts_names_and_strings(env, evaluator):
    await define(evaluator, env, "g", pairlist2("x"), call2("ensym", sym("x")))
    assert await evaluator.eval(call2("g", sym("foo")), env) == Symbol("foo")
    assert await evaluator.eval(call2("g", "bar"), env) == Symbol("bar")
    with pytest.raises(NotASymbolError):
        await evaluator.eval(call2("g", call2("+", sym("a"), 1)), env)


@pytest.mark.asyncio
async def test_enexpr_of_missing_argument(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), call2("enexpr", sym("x")))
    assert await evaluator.eval(call2("f"), env) is MissingArg


@pytest.mark.asyncio
async def test_enexpr_requires_an_argument_name(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), call2("enexpr", call2("+", sym("x"), 1)))
    with pytest.raises(TypeMismatchError):
        await evaluator.eval(call2("f", 1), env)


@pytest.mark.asyncio
async def test_enexprs_collects_dots(env, evaluator):
    await define(evaluator, env, "f", pairlist2("..."), call2("enexprs", sym("...")))
    result = await evaluator.eval(call2("f", sym("a"), b=call2("+", sym("c"), 1)), env)
    assert isinstance(result, NamedList)
    assert result.names() == [None, "b"]
    assert result.values() == [sym("a"), call2("+", sym("c"), 1)]


@pytest.mark.asyncio
async def test_enexprs_auto_names(env, evaluator):
    capture = Call(Symbol("enexprs"), [sym("..."), Constant(True)], [None, ".named"])
    await define(evaluator, env, "f", pairlist2("..."), capture)
    result = await evaluator.eval(call2("f", sym("a"), call2("+", sym("c"), 1), b=2), env)
    assert result.names() == ["a", "c + 1", "b"]


@pytest.mark.asyncio
async def test_enexprs_drops_trailing_empty_argument(env, evaluator):
    await define(evaluator, env, "f", pairlist2("..."), call2("enexprs", sym("...")))
    result = await evaluator.eval(Call(Symbol("f"), [sym("a"), MissingArg]), env)
    assert result.values() == [sym("a")]

    keep_all = Call(Symbol("enexprs"), [sym("..."), Constant("none")], [None, ".ignore_empty"])
    await define(evaluator, env, "g", pairlist2("..."), keep_all)
    result = await evaluator.eval(Call(Symbol("g"), [sym("a"), MissingArg]), env)
    assert result.values() == [sym("a"), MissingArg]


@pytest.mark.asyncio
async def test_enexprs_splices_and_names(env, evaluator):
    await define(evaluator, env, "f", pairlist2("..."), call2("enexprs", sym("...")))
    env["more"] = [sym("p"), sym("q")]
    env["nm"] = "label"
    from quasi.quasi_quasiquote import unquote_name
    call = call2("f", sym("a"), unquote_splice(sym("more")), unquote_name(unquote(sym("nm")), sym("v")))
    result = await evaluator.eval(call, env)
    assert result.items() == [(None, sym("a")), (None, sym("p")), (None, sym("q")), ("label", sym("v"))]


@pytest.mark.asyncio
async def test_enquos_forwarded_through_a_function_keep_their_envs(env, evaluator):
    await define(evaluator, env, "inner", pairlist2("..."), call2("enquos", sym("...")))
    await define(
        evaluator, env, "outer", pairlist2("..."),
        call2("<-", sym("z"), 10),
        call2("inner", sym("z"), sym("...")),
    )
    quos = await evaluator.eval(call2("outer", call2("+", sym("x"), 1)), env)
    assert len(quos) == 2
    local_quo, forwarded_quo = quos.values()
    assert local_quo.expr == sym("z")
    assert local_quo.env is not env
    assert local_quo.env.lookup("z") == 10
    assert forwarded_quo.expr == call2("+", sym("x"), 1)
    assert forwarded_quo.env is env


@pytest.mark.asyncio
async def test_ensyms(env, evaluator):
    await define(evaluator, env, "f", pairlist2("..."), call2("ensyms", sym("...")))
    result = await evaluator.eval(call2("f", sym("a"), "b"), env)
    assert result.values() == [sym("a"), sym("b")]
    with pytest.raises(NotASymbolError):
        await evaluator.eval(call2("f", 1), env)


@pytest.mark.asyncio
async def test_dots_used_outside_a_function(env, evaluator):
    with pytest.raises(UnboundSymbolError):
        await evaluator.eval(call2("enexprs", sym("...")), env)


def test_capture_promise_returns_expression_and_env():
    caller = Environment()
    frame = Environment(bindings={
        "x": Promise(sym("a"), caller),
        "y": 5,
        "z": MissingArg,
        "w": Promise.resolved("s"),
    })
    assert capture_promise("x", frame)[:2] == (sym("a"), caller)
    expr, literal_env, _ = capture_promise("y", frame)
    assert expr == Constant(5)
    assert literal_env.names() == []
    assert capture_promise("z", frame)[0] is MissingArg
    assert capture_promise("w", frame)[0] == Constant("s")
    with pytest.raises(UnboundSymbolError):
        capture_promise("nope", frame)


def test_as_symbol():
    env = Environment()
    assert as_symbol(sym("a")) == sym("a")
    assert as_symbol(Constant("b")) == sym("b")
    assert as_symbol(Quosure(sym("c"), env)) == sym("c")
    with pytest.raises(NotASymbolError):
        as_symbol(Constant(1))


@pytest.mark.asyncio
async def test_evaluating_a_missing_argument_raises(env, evaluator):
    await define(evaluator, env, "f", pairlist2("x"), sym("x"))
    with pytest.raises(MissingArgumentError):
        await evaluator.eval(call2("f"), env)


@pytest.mark.asyncio
async def test_capturing_the_same_argument_twice_gives_independent_copies(env, evaluator):
    await define(
        evaluator, env, "f", pairlist2("x"),
        call2("<-", sym("q1"), call2("enquo", sym("x"))),
        call2("<-", sym("q2"), call2("enquo", sym("x"))),
        call2("list", sym("q1"), sym("q2")),
    )
    q1, q2 = (await evaluator.eval(call2("f", call2("+", sym("a"), sym("b"))), env)).values()
    assert q1.expr == q2.expr == call2("+", sym("a"), sym("b"))
    assert q1.expr is not q2.expr
    assert q1.env is q2.env is env
    q1.expr.set_arg(0, sym("changed"))
    assert q2.expr == call2("+", sym("a"), sym("b"))
