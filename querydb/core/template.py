import inspect
import logging
import re
import textwrap
from typing import Dict, Any, Callable, List, Optional, Protocol, Union

from querydb.core.binder import TOKEN_CHAR, clean_args
from querydb.core.exceptions import ScriptCompileError
from querydb.core.registry import Registry
from querydb.core.schemas import SCRIPT_MARKER, ParsedQuery, ScriptResult


# -----------------------------------------------------------------------------
# TEMPLATE MODULE
# Purpose: produce the final SQL text of a query from its raw text, by
# substituting `{tokens}` and resolving `-- toggle --` lines, or by running
# a scripted query.
# -----------------------------------------------------------------------------


logger = logging.getLogger(__name__)

INVALID_TOGGLE_CHARS = re.compile(r"[^0-9a-zA-Z_% ]")

ScriptFunction = Callable[[Dict[str, Any], Any], Any]
Resolved = Union[str, ParsedQuery, ScriptResult]


def render_value(value: Any) -> str:
    """Text form of a template argument, as used by tokens and toggles."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(render_value(v) for v in value)
    return str(value)


def toggles_for(args: Dict[str, Any]) -> List[str]:
    """All toggle markers made eligible by `args`."""
    toggles = []
    for key, value in clean_args(args).items():
        key = INVALID_TOGGLE_CHARS.sub("", str(key))
        if value is None:
            markers = [f"-- {key} is null --"]
        else:
            value = INVALID_TOGGLE_CHARS.sub("", render_value(value))
            markers = [f"-- {key} --", f"-- {key}:{value} --"]
        for marker in markers:
            toggles.append(marker + " ")
            toggles.append(marker + "\t")
    return toggles


def resolve_toggles(text: str, args: Optional[Dict[str, Any]]) -> str:
    """
    Uncomment the lines whose toggle matches an argument, drop the rest.

    A toggle opens a line: `-- key -- and col = :key`. When `key` is given
    (and is not an empty list) the marker is deleted, leaving the line
    active; `-- key:value --` only matches that value and `-- key is null --`
    only matches None. Any line still starting with `--` afterwards is
    removed.

    Example:
        resolve_toggles("where 1=1\\n-- a -- and a = :a", {"a": 1})
        # "where 1=1\\nand a = :a"
    """
    if "--" not in text:
        return text

    result = text
    for toggle in toggles_for(args or {}):
        result = result.replace(toggle, "")

    lines = [line for line in result.split("\n") if not line.strip().startswith("--")]
    return "\n".join(lines)


def substitute_tokens(text: str, args: Optional[Dict[str, Any]]) -> str:
    """
    Replace `{name}` tokens with template argument values.

    `{name|default}` supplies a value used when `name` is missing or None;
    the default clause is always stripped from the text.

    Example:
        substitute_tokens("select {col|id} from t", {})
        # "select id from t"
    """
    token_args = dict(args or {})
    result = text

    index = result.find("{")
    while index >= 0:
        end = index + 1
        while end < len(result) and TOKEN_CHAR.match(result[end]):
            end += 1
        name = result[index + 1:end]
        if end < len(result) and result[end] == "|":
            brace = result.find("}", end)
            if brace >= 0:
                default = result[end + 1:brace]
                result = result[:end] + result[brace:]
                if token_args.get(name) is None:
                    token_args[name] = default
        index = result.find("{", index + 1)

    for key, value in token_args.items():
        result = result.replace("{" + str(key) + "}", render_value(value))
    return result


class ScriptEvaluator(Protocol):
    """Turns the body of a scripted query into a callable `(args, context)`."""

    def compile(self, source: str, name: str) -> ScriptFunction: ...


class PythonScriptEvaluator:
    """
    Compiles a scripted query as the body of `async def query(args, context)`.

    Query files are application resources; only use this evaluator with
    trusted query roots.
    """

    def compile(self, source: str, name: str) -> ScriptFunction:
        if source.startswith(SCRIPT_MARKER):
            source = source[len(SCRIPT_MARKER):].lstrip(" \t")
        body = textwrap.indent(textwrap.dedent(source).strip("\n") or "pass", "    ")
        code = compile(f"async def query(args, context):\n{body}\n", name, "exec")
        namespace: Dict[str, Any] = {"__name__": f"querydb.scripts.{name}"}
        exec(code, namespace)
        return namespace["query"]


class DisabledScriptEvaluator:
    def compile(self, source: str, name: str) -> ScriptFunction:
        raise PermissionError("Scripted queries are disabled")


class TemplateProcessor:
    """Resolves raw query text against template arguments."""

    def __init__(self, registry: Registry, evaluator: Optional[ScriptEvaluator] = None):
        self.registry = registry
        self.evaluator = evaluator or PythonScriptEvaluator()

    def _script(self, raw_text: str, path: Optional[str]) -> ScriptFunction:
        if path and path in self.registry.scripts:
            return self.registry.scripts[path]
        try:
            fn = self.evaluator.compile(raw_text, path or "<inline>")
        except Exception as error:
            logger.error(f"Error while parsing a query script: {path}")
            logger.exception(error)
            raise ScriptCompileError(path, error) from error
        if path:
            fn = self.registry.scripts.setdefault(path, fn)
        return fn

    async def resolve(
        self,
        raw_text: str,
        template_args: Optional[Dict[str, Any]] = None,
        context: Any = None,
        path: Optional[str] = None,
        scripting: bool = False,
    ) -> Resolved:
        """
        Produce the text to run, a pre-bound query, or a direct result.

        Args:
            raw_text: Query text as loaded.
            template_args: Arguments for tokens, toggles and scripts.
            context: Execution context handed to scripted queries.
            path: Query identity, used to cache compiled scripts.
            scripting: Treat the text as a script regardless of its marker.

        Returns:
            A SQL string, a ParsedQuery, or a ScriptResult.
        """
        template_args = template_args or {}
        cached = path is not None and path in self.registry.scripts
        if cached or scripting or raw_text.startswith(SCRIPT_MARKER):
            fn = self._script(raw_text, path)
            result = fn(template_args, context)
            while inspect.isawaitable(result):
                result = await result
            return self._shape(result)

        text = substitute_tokens(raw_text, template_args)
        return resolve_toggles(text, template_args)

    @staticmethod
    def _shape(result: Any) -> Resolved:
        if isinstance(result, (str, ParsedQuery, ScriptResult)):
            return result
        if isinstance(result, dict) and "querytext" in result and "parameters" in result:
            return ParsedQuery(text=result["querytext"], parameters=list(result["parameters"]))
        return ScriptResult(result)
