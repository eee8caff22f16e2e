import re
from typing import Dict, Any, List, Optional, Tuple

from querydb.core.schemas import ParsedQuery


# -----------------------------------------------------------------------------
# BINDER MODULE
# Purpose: turn named `:name` placeholders into positional `?` markers plus
# an ordered parameter list, expanding list values into one slot per element.
# -----------------------------------------------------------------------------


TOKEN_CHAR = re.compile(r"[a-zA-Z0-9_%]")


def _placeholder_pattern(item: str) -> re.Pattern:
    return re.compile(re.escape(item) + f"(?!{TOKEN_CHAR.pattern})", re.IGNORECASE)


def clean_args(args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop arguments whose value is an empty list; they count as absent."""
    if not args:
        return {}
    return {
        key: value
        for key, value in args.items()
        if not (isinstance(value, (list, tuple)) and len(value) == 0)
    }


def index_of_any_param(
    text: str, items: List[str], start: int = 0
) -> Tuple[int, Optional[str], int]:
    """
    Find the first placeholder in `items` occurring in `text` from `start`.

    Matching ignores case. A candidate only counts when the character right
    after it is not a placeholder character, so `:age` never matches inside
    `:age_min`.
    Ties at the same position go to the lowest item index.

    Returns:
        (index, item, item_index), or (-1, None, -1) when nothing matches.
    """
    best = (-1, None, -1)
    for i, item in enumerate(items):
        match = _placeholder_pattern(item).search(text, start)
        if match and (best[0] < 0 or match.start() < best[0]):
            best = (match.start(), item, i)
    return best


def expand_array_parameters(
    text: str, args: Dict[str, Any]
) -> Tuple[str, Dict[str, Any]]:
    """
    Replace every `:key` bound to a list with `:KEY_0, :KEY_1, ...`.

    Args:
        text: Query text with named placeholders.
        args: Query arguments; list values get one synthetic argument each.

    Returns:
        The rewritten text and the argument map with list values replaced
        by their synthetic entries.

    Example:
        expand_array_parameters("where x in (:ids)", {"ids": [1, 2]})
        # ("where x in (:IDS_0, :IDS_1)", {"IDS_0": 1, "IDS_1": 2})
    """
    old_params: List[str] = []
    replacements: Dict[str, str] = {}
    new_args: Dict[str, Any] = {}

    for key, value in args.items():
        placeholder = ":" + key
        if isinstance(value, (list, tuple)):
            old_params.append(placeholder)
            synthetic = []
            for i, element in enumerate(value):
                param = f"{key.upper()}_{i}"
                new_args[param] = element
                synthetic.append(":" + param)
            replacements[placeholder] = ", ".join(synthetic)
        else:
            new_args[key] = value

    index = 0
    while True:
        index, item, _ = index_of_any_param(text, old_params, index)
        if index < 0:
            break
        replacement = replacements[item]
        text = text[:index] + replacement + text[index + len(item):]

    return text, new_args


def bind(text: str, args: Optional[Dict[str, Any]] = None) -> ParsedQuery:
    """
    Map named placeholders to positional `?` markers, left to right.

    A name used several times yields one parameter slot per use.

    Example:
        bind(":age_min = :age", {"age": 5, "age_min": 10})
        # ParsedQuery(text="? = ?", parameters=[10, 5])
    """
    text, expanded = expand_array_parameters(text, clean_args(args))
    names = [":" + key for key in expanded]
    values = list(expanded.values())
    parameters: List[Any] = []

    index = 0
    while True:
        index, item, item_index = index_of_any_param(text, names, index)
        if index < 0:
            break
        parameters.append(values[item_index])
        text = text[:index] + "?" + text[index + len(item):]

    return ParsedQuery(text=text, parameters=parameters)
