from __future__ import annotations

import re
from typing import Iterable

from .models import Step, Target
from .policy import SignalConfig

NAVIGATE_CONTEXT = "navigate_context"
LONG_TEXT = "long_text"
EXACT_TRUE = "exact_true"
NUMERIC_FRAGMENT = "contains_numeric_fragment"
DATE_OR_TIME_FRAGMENT = "contains_date_or_time_fragment"
WEATHER_OR_NEWS_FRAGMENT = "contains_weather_or_news_fragment"
HEADLINE_LIKE_TEXT = "contains_headline_like_text"
PIPE_SEPARATOR = "contains_pipe_separator"
UNSUPPORTED_EXPRESSION_SHAPE = "unsupported_expression_shape"

_DEFAULT_CONFIG = SignalConfig()

_NUMERIC_PATTERN = re.compile(r"\b\d{2,}\b")
_DATE_OR_TIME_PATTERNS = (
    re.compile(r"\b\d{1,2}[:.]\d{2}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?\b"),
)
_EXACT_TRUE_PATTERN = re.compile(r"exact\s*[:=]\s*(?:true|True)\b")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")

_EXPRESSION_FRAGMENT_PATTERNS = (
    re.compile(r"""name\s*[:=]\s*(["'])((?:(?!\1).)+)\1"""),
    re.compile(
        r"""(?:get_by_(?:text|label|placeholder|title)|getBy(?:Text|Label|Placeholder|Title))\(\s*(["'])((?:(?!\1).)+)\1"""
    ),
    re.compile(r"""has_?[tT]ext\s*[:=]\s*(["'])((?:(?!\1).)+)\1"""),
    re.compile(r"""text\s*=\s*(["'])((?:(?!\1).)+)\1"""),
)
_RUNTIME_NAME_PATTERN = re.compile(r"""name=(?:"([^"]+)"|'([^']+)'|([^\s\]]+))""")
_RUNTIME_TEXT_QUOTED_PATTERN = re.compile(r"""text\s*=\s*["']([^"']+)["']""")
_RUNTIME_TEXT_BARE_PATTERN = re.compile(r"""text\s*=\s*([^'"\]\n][^\n]*?)(?=\s*>>|\s*\]|$)""")
_RUNTIME_QUOTED_TEMPLATE = r"""["']([^"']{%d,})["']"""

_ROLE_LINK_PATTERN = re.compile(r"""(?:get_by_role|getByRole)\(\s*["']link["']""")
_CONTENT_CARD_PATTERN = re.compile(
    r"headline|teaser|article|story|content[-_ ]?card|breaking[-_ ]?push|hero[-_ ]?card",
    re.IGNORECASE,
)
_NAVIGATION_LIKE_ACTIONS = frozenset({"click", "press", "hover"})


def detect_text_signals(text: str | None, config: SignalConfig = _DEFAULT_CONFIG) -> frozenset[str]:
    original = str(text or "").strip()
    if not original:
        return frozenset()
    normalized = original.lower()
    signals: set[str] = set()

    if _NUMERIC_PATTERN.search(normalized):
        signals.add(NUMERIC_FRAGMENT)
    if any(pattern.search(normalized) for pattern in _DATE_OR_TIME_PATTERNS):
        signals.add(DATE_OR_TIME_FRAGMENT)
    if _contains_keyword(normalized, config.keywords):
        signals.add(WEATHER_OR_NEWS_FRAGMENT)
    if is_headline_like(original, config):
        signals.add(HEADLINE_LIKE_TEXT)
    if "|" in normalized:
        signals.add(PIPE_SEPARATOR)
    return frozenset(signals)


def is_headline_like(text: str, config: SignalConfig = _DEFAULT_CONFIG) -> bool:
    value = text.strip()
    if len(value) < config.headline_min_chars:
        return False
    words = [word for word in value.split() if word]
    return len(words) >= config.headline_min_words and any(ch.isupper() for ch in value) and any(
        ch.islower() for ch in value
    )


def detect_target_signals(target: Target, config: SignalConfig = _DEFAULT_CONFIG) -> frozenset[str]:
    signals: set[str] = set()
    if _EXACT_TRUE_PATTERN.search(target.value):
        signals.add(EXACT_TRUE)
    for fragment in extract_text_fragments(target, config):
        normalized = fragment.strip()
        if not normalized:
            continue
        if len(normalized) >= config.long_fragment_chars:
            signals.add(LONG_TEXT)
        signals.update(detect_text_signals(normalized, config))
    return frozenset(signals)


def is_dynamic_target(target: Target, config: SignalConfig = _DEFAULT_CONFIG) -> bool:
    return bool(target.dynamic_signals or detect_target_signals(target, config))


def extract_text_fragments(target: Target, config: SignalConfig = _DEFAULT_CONFIG) -> list[str]:
    if target.kind == "locator_expression":
        return extract_expression_fragments(target.value)
    if target.kind in {"engine_selector", "engine_internal"}:
        return extract_runtime_selector_fragments(target.value, config)
    return []


def extract_expression_fragments(value: str) -> list[str]:
    fragments: list[str] = []
    for pattern in _EXPRESSION_FRAGMENT_PATTERNS:
        fragments.extend(match.group(2) for match in pattern.finditer(value))
    return _unique(fragments)


def extract_runtime_selector_fragments(value: str, config: SignalConfig = _DEFAULT_CONFIG) -> list[str]:
    fragments: list[str] = []
    engine, separator, body = value.partition("=")
    if separator:
        engine = engine.strip().lower()
        body = body.strip()
        if engine == "text":
            first_segment = body.split(">>")[0].strip()
            unquoted = first_segment[1:-1] if _is_quoted(first_segment) else first_segment
            if unquoted:
                fragments.append(unquoted)
        if engine == "internal:role":
            name_match = _RUNTIME_NAME_PATTERN.search(body)
            if name_match:
                fragments.append(next(group for group in name_match.groups() if group))

    for match in _RUNTIME_NAME_PATTERN.finditer(value):
        raw = match.group(1) or match.group(2)
        if raw:
            fragments.append(raw)
    fragments.extend(match.group(1) for match in _RUNTIME_TEXT_QUOTED_PATTERN.finditer(value))
    for match in _RUNTIME_TEXT_BARE_PATTERN.finditer(value):
        raw = match.group(1).strip()
        if raw:
            fragments.append(raw)
    quoted_pattern = re.compile(_RUNTIME_QUOTED_TEMPLATE % config.runtime_fragment_min_chars)
    fragments.extend(match.group(1) for match in quoted_pattern.finditer(value))
    return _unique(fragments)


def classify_navigation_like(step: Step, config: SignalConfig = _DEFAULT_CONFIG) -> str | None:
    """Return a reason when the acted element is expected to leave the page after the step."""
    if step.action not in _NAVIGATION_LIKE_ACTIONS or step.target is None:
        return None
    target = step.target
    fragments = extract_text_fragments(target, config)
    if any(_CONTENT_CARD_PATTERN.search(fragment) for fragment in fragments):
        return "navigation-like content card target"

    if not _ROLE_LINK_PATTERN.search(target.value):
        return None
    signals = detect_target_signals(target, config) | target.dynamic_signals
    headline_like = any(len(fragment) >= config.long_fragment_chars for fragment in fragments) or bool(
        signals & {HEADLINE_LIKE_TEXT, WEATHER_OR_NEWS_FRAGMENT, PIPE_SEPARATOR, DATE_OR_TIME_FRAGMENT}
    )
    if headline_like:
        return "navigation-like dynamic link target"
    return None


def _contains_keyword(normalized: str, keywords: Iterable[str]) -> bool:
    words = {word for word in _WORD_SPLIT.split(normalized) if word}
    return any(keyword.lower() in words for keyword in keywords)


def _is_quoted(value: str) -> bool:
    return len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
