from __future__ import annotations

import ast
from dataclasses import dataclass
import io
import json
import re
import tokenize
from typing import Any

from .errors import LocatorExpressionError

ROOT_METHODS = frozenset(
    {
        "locator",
        "get_by_role",
        "get_by_text",
        "get_by_label",
        "get_by_placeholder",
        "get_by_alt_text",
        "get_by_title",
        "get_by_test_id",
        "frame_locator",
    }
)
CHAIN_METHODS = ROOT_METHODS | frozenset({"filter", "nth", "and_", "or_"})
CHAIN_PROPERTIES = frozenset({"first", "last", "content_frame", "owner"})

_METHOD_ALIASES = {
    "getByRole": "get_by_role",
    "getByText": "get_by_text",
    "getByLabel": "get_by_label",
    "getByPlaceholder": "get_by_placeholder",
    "getByAltText": "get_by_alt_text",
    "getByTitle": "get_by_title",
    "getByTestId": "get_by_test_id",
    "frameLocator": "frame_locator",
    "contentFrame": "content_frame",
    "and": "and_",
    "or": "or_",
}
_LITERAL_NAMES = {"true": True, "false": False, "null": None, "undefined": None}
_REGEX_FLAGS = {"I": re.IGNORECASE, "IGNORECASE": re.IGNORECASE}

_LOOKS_LIKE_PATTERN = re.compile(
    r"^\s*(?:get_by_(?:role|text|label|placeholder|alt_text|title|test_id)"
    r"|getBy(?:Role|Text|Label|Placeholder|AltText|Title|TestId)"
    r"|locator|frame_locator|frameLocator)\s*\("
)
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True, slots=True)
class LocatorCall:
    method: str
    args: tuple[Any, ...] = ()
    kwargs: tuple[tuple[str, Any], ...] = ()
    is_property: bool = False


@dataclass(frozen=True, slots=True)
class LocatorPlan:
    expression: str
    calls: tuple[LocatorCall, ...]

    @property
    def root_method(self) -> str:
        return self.calls[0].method


def looks_like_locator_expression(value: str) -> bool:
    return bool(_LOOKS_LIKE_PATTERN.match(str(value or "")))


def parse_locator_expression(expression: str) -> LocatorPlan:
    """Validate an expression against the allowed chain grammar without touching any page.

    Raises LocatorExpressionError naming the offending construct.
    """
    text = str(expression or "").strip()
    if not text:
        raise LocatorExpressionError("Locator expression is empty.", text, "empty")

    source = _rewrite_keyword_methods(text)
    try:
        tree = ast.parse(source, mode="eval")
    except (SyntaxError, ValueError, RecursionError, MemoryError) as exc:
        offset = getattr(exc, "offset", None)
        where = f" near column {offset}" if offset else ""
        raise LocatorExpressionError(
            f"Locator expression could not be parsed completely{where}: {text}",
            text,
            "unparsed text",
        ) from exc

    try:
        calls = _parse_chain(tree.body, text)
    except RecursionError as exc:
        raise LocatorExpressionError(f"Locator chain is nested too deeply: {text[:80]}", text, "chain depth") from exc
    return LocatorPlan(expression=text, calls=calls)


def evaluate_locator_expression(root: Any, expression: str | LocatorPlan) -> Any:
    plan = expression if isinstance(expression, LocatorPlan) else parse_locator_expression(expression)
    return _replay(root, plan)


def format_value(value: Any) -> str:
    if isinstance(value, re.Pattern):
        flags = ", re.IGNORECASE" if value.flags & re.IGNORECASE else ""
        return f"re.compile({json.dumps(value.pattern, ensure_ascii=False)}{flags})"
    if isinstance(value, bool) or value is None:
        return repr(value)
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, LocatorPlan):
        return value.expression
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{json.dumps(str(key))}: {format_value(item)}" for key, item in value.items())
        return "{" + items + "}"
    raise LocatorExpressionError(f"Cannot format value of type {type(value).__name__}.", "", type(value).__name__)


def format_call(method: str, *args: Any, **kwargs: Any) -> str:
    parts = [format_value(arg) for arg in args]
    parts.extend(f"{key}={format_value(value)}" for key, value in kwargs.items() if value is not None)
    return f"{method}({', '.join(parts)})"


def format_plan(plan: LocatorPlan) -> str:
    pieces: list[str] = []
    for call in plan.calls:
        if call.is_property:
            pieces.append(call.method)
            continue
        pieces.append(format_call(call.method, *call.args, **dict(call.kwargs)))
    return ".".join(pieces)


def _rewrite_keyword_methods(text: str) -> str:
    # `.and(` / `.or(` cannot be parsed as attributes; rename them before parsing.
    try:
        tokens = list(tokenize.generate_tokens(io.StringIO(text).readline))
    except (tokenize.TokenError, IndentationError, SyntaxError):
        return text
    line_starts = [0]
    for line in text.splitlines(keepends=True):
        line_starts.append(line_starts[-1] + len(line))

    insert_at: list[int] = []
    previous: tokenize.TokenInfo | None = None
    for token in tokens:
        if (
            token.type == tokenize.NAME
            and token.string in {"and", "or"}
            and previous is not None
            and previous.type == tokenize.OP
            and previous.string == "."
        ):
            row, col = token.end
            insert_at.append(line_starts[row - 1] + col)
        if token.type not in {tokenize.NL, tokenize.COMMENT}:
            previous = token

    for offset in reversed(insert_at):
        text = f"{text[:offset]}_{text[offset:]}"
    return text


def _canonical_method(name: str) -> str:
    return _METHOD_ALIASES.get(name, name)


def _parse_chain(node: ast.expr, expression: str) -> tuple[LocatorCall, ...]:
    if isinstance(node, ast.Call):
        func = node.func
        if isinstance(func, ast.Name):
            method = _canonical_method(func.id)
            if method not in ROOT_METHODS:
                raise _reject(expression, f"root method '{func.id}'", "is not an allowed locator root")
            return (_build_call(method, node, expression),)
        if isinstance(func, ast.Attribute):
            method = _canonical_method(func.attr)
            prefix = _parse_chain(func.value, expression)
            if method in CHAIN_PROPERTIES:
                if node.args or node.keywords:
                    raise _reject(expression, f"'{func.attr}'", "does not accept arguments")
                return prefix + (LocatorCall(method=method, is_property=True),)
            if method not in CHAIN_METHODS:
                raise _reject(expression, f"chained method '{func.attr}'", "is not allowed")
            return prefix + (_build_call(method, node, expression),)
        if isinstance(func, ast.Subscript):
            raise _reject(expression, "computed member access", "is not allowed")
        raise _reject(expression, type(func).__name__, "is not a callable locator method")

    if isinstance(node, ast.Attribute):
        method = _canonical_method(node.attr)
        if method not in CHAIN_PROPERTIES:
            raise _reject(expression, f"attribute access '{node.attr}'", "is not allowed")
        if isinstance(node.value, ast.Name):
            raise _reject(expression, f"bare name '{node.value.id}'", "cannot start a locator chain")
        return _parse_chain(node.value, expression) + (LocatorCall(method=method, is_property=True),)

    if isinstance(node, ast.Subscript):
        raise _reject(expression, "computed member access", "is not allowed")
    if isinstance(node, ast.Name):
        raise _reject(expression, f"bare name '{node.id}'", "is not a locator call")
    raise _reject(expression, type(node).__name__, "is not a locator call chain")


def _build_call(method: str, node: ast.Call, expression: str) -> LocatorCall:
    positional = list(node.args)
    kwargs: dict[str, Any] = {}

    for arg in positional:
        if isinstance(arg, ast.Starred):
            raise _reject(expression, "spread argument", f"is not allowed in '{method}'")

    # A trailing object literal carries the options, as in getByRole('button', {name: 'Save'}).
    if positional and isinstance(positional[-1], ast.Dict) and method != "nth":
        options = _literal(positional.pop(), expression)
        for key, value in options.items():
            kwargs[_snake_case(key)] = value

    args = tuple(_literal(arg, expression) for arg in positional)
    for keyword in node.keywords:
        if keyword.arg is None:
            raise _reject(expression, "keyword spread", f"is not allowed in '{method}'")
        kwargs[_snake_case(keyword.arg)] = _literal(keyword.value, expression)
    return LocatorCall(method=method, args=args, kwargs=tuple(kwargs.items()))


def _literal(node: ast.expr, expression: str) -> Any:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (str, int, float, bool)) or node.value is None:
            return node.value
        raise _reject(expression, f"literal {type(node.value).__name__}", "is not allowed")

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        operand = node.operand
        if isinstance(operand, ast.Constant) and isinstance(operand.value, (int, float)) and not isinstance(
            operand.value, bool
        ):
            return -operand.value if isinstance(node.op, ast.USub) else operand.value
        raise _reject(expression, "unary expression", "is only allowed on numbers")

    if isinstance(node, ast.Name):
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        raise _reject(expression, f"identifier '{node.id}'", "is not a literal argument")

    if isinstance(node, (ast.List, ast.Tuple)):
        values = []
        for element in node.elts:
            if isinstance(element, ast.Starred):
                raise _reject(expression, "spread element", "is not allowed")
            values.append(_literal(element, expression))
        return tuple(values)

    if isinstance(node, ast.Dict):
        result: dict[str, Any] = {}
        for key_node, value_node in zip(node.keys, node.values):
            if key_node is None:
                raise _reject(expression, "object spread", "is not allowed")
            if isinstance(key_node, ast.Constant) and isinstance(key_node.value, str):
                key = key_node.value
            elif isinstance(key_node, ast.Name):
                key = key_node.id
            else:
                raise _reject(expression, "computed object key", "is not allowed")
            result[key] = _literal(value_node, expression)
        return result

    if isinstance(node, ast.Call):
        if _is_regex_call(node.func):
            return _regex_literal(node, expression)
        calls = _parse_chain(node, expression)
        return LocatorPlan(expression=ast.unparse(node), calls=calls)

    if isinstance(node, ast.Subscript):
        raise _reject(expression, "computed member access", "is not allowed")
    if isinstance(node, ast.Starred):
        raise _reject(expression, "spread argument", "is not allowed")
    raise _reject(expression, type(node).__name__, "is not an allowed argument")


def _is_regex_call(func: ast.expr) -> bool:
    return (
        isinstance(func, ast.Attribute)
        and func.attr == "compile"
        and isinstance(func.value, ast.Name)
        and func.value.id == "re"
    )


def _regex_literal(node: ast.Call, expression: str) -> re.Pattern[str]:
    if not node.args or len(node.args) > 2:
        raise _reject(expression, "re.compile", "expects a pattern and optional flags")
    pattern_node = node.args[0]
    if not isinstance(pattern_node, ast.Constant) or not isinstance(pattern_node.value, str):
        raise _reject(expression, "re.compile pattern", "must be a string literal")

    flag_nodes = list(node.args[1:])
    for keyword in node.keywords:
        if keyword.arg != "flags":
            raise _reject(expression, f"re.compile keyword '{keyword.arg}'", "is not allowed")
        flag_nodes.append(keyword.value)

    flags = 0
    for flag_node in flag_nodes:
        flags |= _regex_flags(flag_node, expression)
    try:
        return re.compile(pattern_node.value, flags)
    except re.error as exc:
        raise LocatorExpressionError(
            f"Invalid regular expression in locator expression: {exc}", expression, "re.compile"
        ) from exc


def _regex_flags(node: ast.expr, expression: str) -> int:
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _regex_flags(node.left, expression) | _regex_flags(node.right, expression)
    if (
        isinstance(node, ast.Attribute)
        and isinstance(node.value, ast.Name)
        and node.value.id == "re"
        and node.attr in _REGEX_FLAGS
    ):
        return _REGEX_FLAGS[node.attr]
    raise _reject(expression, "regex flag", "must be re.I or re.IGNORECASE")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _reject(expression: str, construct: str, problem: str) -> LocatorExpressionError:
    return LocatorExpressionError(
        f"Unsupported locator expression: {construct} {problem}: {expression}",
        expression,
        construct,
    )


def _replay(root: Any, plan: LocatorPlan) -> Any:
    current = root
    for call in plan.calls:
        member = getattr(current, call.method)
        if call.is_property:
            current = member
            continue
        args = [_resolve_argument(root, arg) for arg in call.args]
        kwargs = {key: _resolve_argument(root, value) for key, value in call.kwargs}
        current = member(*args, **kwargs)
    return current


def _resolve_argument(root: Any, value: Any) -> Any:
    if isinstance(value, LocatorPlan):
        return _replay(root, value)
    if isinstance(value, tuple):
        return [_resolve_argument(root, item) for item in value]
    if isinstance(value, dict):
        return {key: _resolve_argument(root, item) for key, item in value.items()}
    return value
