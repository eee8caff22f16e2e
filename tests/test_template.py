import pytest

from querydb.core.exceptions import ErrorKind, ScriptCompileError
from querydb.core.registry import Registry
from querydb.core.schemas import ParsedQuery, ScriptResult
from querydb.core.template import (
    DisabledScriptEvaluator,
    PythonScriptEvaluator,
    TemplateProcessor,
    resolve_toggles,
    substitute_tokens,
)


QUERY = """select * from people
where 1=1
-- col_a -- and column_a = :col_a
-- col_b -- and column_b {col_b_op|=} :col_b
-- col_c -- and column_c in (:col_c)
order by
-- sort:col_b asc -- column_b asc,
-- sort:col_b desc -- column_b desc,
id desc"""


def resolve(text, args):
    return resolve_toggles(substitute_tokens(text, args), args)


def test_toggles_activate_matching_lines():
    result = resolve(QUERY, {"col_a": "x", "sort": "col_b desc", "col_c": ["one", "two"]})

    assert result == (
        "select * from people\n"
        "where 1=1\n"
        "and column_a = :col_a\n"
        "and column_c in (:col_c)\n"
        "order by\n"
        "column_b desc,\n"
        "id desc"
    )


def test_inactive_toggles_are_removed():
    assert resolve(QUERY, {}) == "select * from people\nwhere 1=1\norder by\nid desc"


def test_token_inside_toggled_line_uses_default():
    result = resolve(QUERY, {"col_b": 3})
    assert "and column_b = :col_b" in result


def test_token_inside_toggled_line_uses_argument():
    result = resolve(QUERY, {"col_b": 3, "col_b_op": ">="})
    assert "and column_b >= :col_b" in result


def test_empty_list_does_not_activate_toggle():
    result = resolve_toggles("where 1=1\n-- ids -- and id in (:ids)", {"ids": []})
    assert result == "where 1=1"


def test_null_toggle():
    text = "where 1=1\n-- age is null -- and age is null\n-- age -- and age = :age"
    assert resolve_toggles(text, {"age": None}) == "where 1=1\nand age is null"
    assert resolve_toggles(text, {"age": 3}) == "where 1=1\nand age = :age"


def test_toggle_followed_by_tab():
    assert resolve_toggles("a\n-- b --\tand b = 1", {"b": 1}) == "a\nand b = 1"


def test_toggle_value_is_sanitized():
    text = "order by\n-- sort:age desc -- age desc,\nid"
    assert resolve_toggles(text, {"sort": "age desc"}) == "order by\nage desc,\nid"
    assert resolve_toggles(text, {"sort": "age desc;--"}) == "order by\nage desc,\nid"
    assert resolve_toggles(text, {"sort": "age asc"}) == "order by\nid"


def test_boolean_toggle_value():
    text = "-- active:true -- where active = 1\nlimit 1"
    assert resolve_toggles(text, {"active": True}) == "where active = 1\nlimit 1"


def test_resolving_twice_changes_nothing():
    args = {"col_a": "x", "sort": "col_b asc"}
    once = resolve(QUERY, args)
    assert resolve(once, args) == once
    assert resolve_toggles("select 1 -- trailing note", {}) == "select 1 -- trailing note"


def test_default_clause_applies_when_argument_missing():
    assert substitute_tokens("select {col|id} from t", {}) == "select id from t"


def test_default_clause_is_dropped_when_argument_given():
    assert substitute_tokens("select {col|id} from t", {"col": "name"}) == "select name from t"


def test_token_used_several_times():
    text = "select {col} from t order by {col}"
    assert substitute_tokens(text, {"col": "age"}) == "select age from t order by age"


def test_default_then_plain_uses_of_same_token():
    assert substitute_tokens("{t|people} {t}", {}) == "people people"


def test_text_without_tokens_is_unchanged():
    assert substitute_tokens("select '{' from t", {"x": 1}) == "select '{' from t"


@pytest.mark.asyncio
async def test_scripted_query_returns_text():
    processor = TemplateProcessor(Registry())
    result = await processor.resolve(
        "/* eval */\nreturn 'select ' + str(args['n'])", {"n": 3}
    )
    assert result == "select 3"


@pytest.mark.asyncio
async def test_scripted_query_with_code_on_marker_line():
    processor = TemplateProcessor(Registry())
    result = await processor.resolve(
        "/* eval */ n = args['n'] + 1\nreturn 'select ' + str(n)", {"n": 3}
    )
    assert result == "select 4"


@pytest.mark.asyncio
async def test_scripted_query_is_compiled_once_per_path():
    calls = []

    class CountingEvaluator(PythonScriptEvaluator):
        def compile(self, source, name):
            calls.append(name)
            return super().compile(source, name)

    processor = TemplateProcessor(Registry(), CountingEvaluator())
    source = "return 'select ' + args['col']"

    first = await processor.resolve(source, {"col": "a"}, path="q.py", scripting=True)
    second = await processor.resolve(source, {"col": "b"}, path="q.py", scripting=True)

    assert (first, second) == ("select a", "select b")
    assert calls == ["q.py"]


@pytest.mark.asyncio
async def test_scripted_query_can_return_bound_query():
    processor = TemplateProcessor(Registry())
    result = await processor.resolve(
        "return {'querytext': 'select ?', 'parameters': [args['v']]}",
        {"v": 7},
        scripting=True,
    )
    assert result == ParsedQuery(text="select ?", parameters=[7])


@pytest.mark.asyncio
async def test_scripted_query_value_is_delivered_directly():
    processor = TemplateProcessor(Registry())
    result = await processor.resolve("return context['answer']", {}, {"answer": 42}, scripting=True)
    assert isinstance(result, ScriptResult)
    assert result.value == 42


@pytest.mark.asyncio
async def test_scripted_query_may_await():
    processor = TemplateProcessor(Registry())
    source = "import asyncio\nawait asyncio.sleep(0)\nreturn 'select 1'"
    assert await processor.resolve(source, scripting=True) == "select 1"


@pytest.mark.asyncio
async def test_script_compile_error():
    processor = TemplateProcessor(Registry())
    with pytest.raises(ScriptCompileError) as error:
        await processor.resolve("return (", path="broken.py", scripting=True)
    assert error.value.kind == ErrorKind.COMPILE
    assert error.value.path == "broken.py"


@pytest.mark.asyncio
async def test_disabled_evaluator_refuses_scripts():
    processor = TemplateProcessor(Registry(), DisabledScriptEvaluator())
    with pytest.raises(ScriptCompileError):
        await processor.resolve("/* eval */ return 'select 1'")
    assert await processor.resolve("select 1") == "select 1"
