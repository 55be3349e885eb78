from __future__ import annotations

import json
import re

from .locator_expression import format_call, looks_like_locator_expression

_TEST_ID_CSS_PATTERN = re.compile(r"""^\[\s*data-test-?id\s*=\s*(["']?)([^"'\]]+)\1\s*\]$""")
_ATTRIBUTE_PATTERN = re.compile(
    r"""\[\s*([A-Za-z][\w-]*)\s*=\s*("(?:[^"\\]|\\.)*"|/(?:[^/\\]|\\.)*/[a-z]*|[^\]\s"]+)\s*([is])?\s*\]"""
)
_NTH_PATTERN = re.compile(r"^nth=(-?\d+)$")
_ROLE_BOOLEAN_ATTRIBUTES = {
    "checked": "checked",
    "disabled": "disabled",
    "expanded": "expanded",
    "pressed": "pressed",
    "selected": "selected",
    "include-hidden": "include_hidden",
}
_ATTR_ENGINE_METHODS = {
    "placeholder": "get_by_placeholder",
    "alt": "get_by_alt_text",
    "title": "get_by_title",
}


def css_to_expression(css: str) -> str:
    value = str(css or "").strip()
    test_id = css_test_id(value)
    if test_id:
        return format_call("get_by_test_id", test_id)
    return format_call("locator", value)


def css_test_id(css: str) -> str | None:
    match = _TEST_ID_CSS_PATTERN.match(str(css or "").strip())
    if not match:
        return None
    return match.group(2).strip() or None


def xpath_to_expression(xpath: str) -> str:
    value = str(xpath or "").strip()
    if value.startswith("xpath="):
        return format_call("locator", value)
    return format_call("locator", f"xpath={value}")


def selector_to_expression(selector: str) -> str | None:
    """Convert a Playwright engine selector (public or internal:*) into a locator expression."""
    text = str(selector or "").strip()
    if not text:
        return None
    if looks_like_locator_expression(text):
        return text

    parts = split_selector_chain(text)
    if not parts:
        return None

    pieces: list[str] = []
    for index, part in enumerate(parts):
        converted = _convert_part(part, is_root=index == 0)
        if converted is None:
            return None
        pieces.append(converted)
    return ".".join(pieces)


def split_selector_chain(selector: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    index = 0
    while index < len(selector):
        char = selector[index]
        if quote:
            current.append(char)
            if char == "\\" and index + 1 < len(selector):
                current.append(selector[index + 1])
                index += 2
                continue
            if char == quote:
                quote = None
            index += 1
            continue
        if char in {'"', "'"}:
            quote = char
            current.append(char)
            index += 1
            continue
        if selector.startswith(">>", index):
            parts.append("".join(current).strip())
            current = []
            index += 2
            continue
        current.append(char)
        index += 1
    parts.append("".join(current).strip())
    return [part for part in parts if part]


def _convert_part(part: str, *, is_root: bool) -> str | None:
    nth = _NTH_PATTERN.match(part)
    if nth:
        if is_root:
            return None
        position = int(nth.group(1))
        if position == 0:
            return "first"
        if position == -1:
            return "last"
        return format_call("nth", position)

    if part == "internal:control=enter-frame":
        return None if is_root else "content_frame"

    engine, _, body = part.partition("=")
    engine = engine.strip()
    body = body.strip()

    if engine == "internal:role" or engine == "role":
        return _role_call(body)
    if engine in {"internal:text", "text"}:
        return _text_call("get_by_text", body, default_exact=engine == "text" and _is_quoted(body))
    if engine == "internal:label":
        return _text_call("get_by_label", body)
    if engine == "internal:attr":
        return _attr_call(body)
    if engine == "internal:testid":
        return _test_id_call(body)
    if engine in {"data-testid", "data-test-id"}:
        value = _unquote(body)
        return format_call("get_by_test_id", value) if value else None
    if engine == "internal:has-text":
        if is_root:
            return None
        parsed = _parse_text_value(body)
        if parsed is None:
            return None
        return format_call("filter", has_text=parsed[0])
    if engine == "css":
        return format_call("locator", body) if body else None
    if engine == "xpath":
        return format_call("locator", part) if body else None
    if engine.startswith("internal:"):
        return None
    if part.startswith("//") or part.startswith(".."):
        return format_call("locator", f"xpath={part}")
    if is_root:
        return css_to_expression(part)
    return format_call("locator", part)


def _role_call(body: str) -> str | None:
    match = re.match(r"^([A-Za-z][\w-]*)", body)
    if not match:
        return None
    role = match.group(1)
    kwargs: dict[str, object] = {}
    for attr in _ATTRIBUTE_PATTERN.finditer(body[match.end():]):
        name, raw_value, flag = attr.group(1), attr.group(2), attr.group(3)
        if name == "name":
            parsed = _parse_text_value(f"{raw_value}{flag or ''}")
            if parsed is None:
                return None
            kwargs["name"] = parsed[0]
            if parsed[1]:
                kwargs["exact"] = True
        elif name == "level" and raw_value.isdigit():
            kwargs["level"] = int(raw_value)
        elif name in _ROLE_BOOLEAN_ATTRIBUTES:
            kwargs[_ROLE_BOOLEAN_ATTRIBUTES[name]] = _unquote(raw_value).lower() == "true"
        else:
            return None
    return format_call("get_by_role", role, **kwargs)


def _text_call(method: str, body: str, *, default_exact: bool = False) -> str | None:
    parsed = _parse_text_value(body)
    if parsed is None:
        return None
    value, exact = parsed
    if default_exact:
        exact = True
    return format_call(method, value, exact=True if exact else None)


def _attr_call(body: str) -> str | None:
    match = _ATTRIBUTE_PATTERN.fullmatch(body)
    if not match:
        return None
    name, raw_value, flag = match.group(1), match.group(2), match.group(3)
    method = _ATTR_ENGINE_METHODS.get(name)
    if method is None:
        return None
    parsed = _parse_text_value(f"{raw_value}{flag or ''}")
    if parsed is None:
        return None
    return format_call(method, parsed[0], exact=True if parsed[1] else None)


def _test_id_call(body: str) -> str | None:
    match = _ATTRIBUTE_PATTERN.fullmatch(body)
    if not match:
        return None
    parsed = _parse_text_value(f"{match.group(2)}{match.group(3) or ''}")
    if parsed is None or not isinstance(parsed[0], str):
        return None
    return format_call("get_by_test_id", parsed[0])


def _parse_text_value(raw: str) -> tuple[str | re.Pattern[str], bool] | None:
    text = raw.strip()
    if not text:
        return None
    if text.startswith("/"):
        closing = text.rfind("/")
        if closing <= 0:
            return None
        flags = re.IGNORECASE if "i" in text[closing + 1:] else 0
        try:
            return re.compile(text[1:closing], flags), False
        except re.error:
            return None
    if text.startswith('"'):
        closing = text.rfind('"')
        if closing <= 0:
            return None
        try:
            value = json.loads(text[: closing + 1])
        except ValueError:
            return None
        suffix = text[closing + 1:].strip()
        return str(value), suffix == "s"
    return text, False


def _is_quoted(value: str) -> bool:
    stripped = value.strip()
    return len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in {'"', "'"}


def _unquote(value: str) -> str:
    stripped = value.strip()
    if _is_quoted(stripped):
        return stripped[1:-1]
    return stripped
