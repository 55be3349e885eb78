from __future__ import annotations

from dataclasses import dataclass
import re

from .diagnostics import DiagnosticsCollector
from .dynamic_signals import EXACT_TRUE, LONG_TEXT, UNSUPPORTED_EXPRESSION_SHAPE, detect_text_signals
from .errors import LocatorExpressionError
from .locator_expression import LocatorPlan, format_call, parse_locator_expression
from .models import Target, TargetCandidate
from .policy import SignalConfig

REPAIR_REMOVE_EXACT = "locator_repair_remove_exact"
REPAIR_REGEX = "locator_repair_regex"
REPAIR_FILTER_HAS_TEXT = "locator_repair_filter_has_text"

_SUPPORTED_ROOTS = frozenset({"get_by_role", "get_by_text", "get_by_label", "get_by_placeholder", "get_by_title"})
_STABLE_STOPWORDS = frozenset(
    {"the", "and", "with", "voor", "van", "het", "een", "de", "in", "op", "naar", "about", "this", "that", "from"}
)
_EXACT_OPTION_PATTERN = re.compile(r"exact\s*[:=]\s*(?:true|True)\b")
_QUOTED_PATTERN = re.compile(r""""((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'""")


@dataclass(frozen=True, slots=True)
class RepairableExpression:
    method: str
    query_text: str
    exact: bool
    suffix: str
    role: str | None = None


@dataclass(frozen=True, slots=True)
class LocatorRepairAnalysis:
    candidates: tuple[TargetCandidate, ...] = ()
    dynamic_target: bool = False
    dynamic_signals: frozenset[str] = frozenset()


def analyze_locator_repair(
    target: Target,
    step_number: int,
    diagnostics: DiagnosticsCollector,
    config: SignalConfig,
) -> LocatorRepairAnalysis:
    if target.kind != "locator_expression":
        return LocatorRepairAnalysis()

    expression = target.value.strip()
    parsed = parse_repairable_expression(expression)
    if parsed is None:
        if _looks_brittle(expression, config):
            diagnostics.info(
                "selector_target_flagged_dynamic",
                f"Step {step_number}: selector looked dynamic but could not be rewritten because "
                "expression shape is unsupported.",
            )
            return LocatorRepairAnalysis(dynamic_target=True, dynamic_signals=frozenset({UNSUPPORTED_EXPRESSION_SHAPE}))
        return LocatorRepairAnalysis()

    signals = set(detect_text_signals(parsed.query_text, config))
    if parsed.exact:
        signals.add(EXACT_TRUE)
    if len(parsed.query_text) >= config.long_fragment_chars:
        signals.add(LONG_TEXT)
    if not signals:
        return LocatorRepairAnalysis()

    diagnostics.info(
        "selector_target_flagged_dynamic",
        f"Step {step_number}: selector flagged as dynamic ({', '.join(sorted(signals))}). Trying repair variants.",
    )

    candidate_signals = frozenset(signals - {EXACT_TRUE})
    candidates: list[TargetCandidate] = []
    seen: set[tuple[str, str, tuple[str, ...]]] = set()

    def push(value: str, reason_code: str) -> None:
        repaired = Target(
            value=value,
            kind="locator_expression",
            source="derived",
            frame_path=target.frame_path,
            dynamic_signals=candidate_signals,
        )
        if repaired.key() in seen:
            return
        seen.add(repaired.key())
        candidates.append(
            TargetCandidate(
                id=f"repair-{len(candidates) + 1}",
                target=repaired,
                origin="derived",
                reason_codes=(reason_code,),
            )
        )

    if parsed.exact:
        push(build_repaired_expression(parsed, "string"), REPAIR_REMOVE_EXACT)

    pattern = stable_regex_pattern(parsed.query_text, config)
    if pattern:
        push(build_repaired_expression(parsed, "regex", pattern), REPAIR_REGEX)
        push(build_repaired_expression(parsed, "regex_filter", pattern), REPAIR_FILTER_HAS_TEXT)

    return LocatorRepairAnalysis(
        candidates=tuple(candidates),
        dynamic_target=True,
        dynamic_signals=frozenset(signals),
    )


def parse_repairable_expression(expression: str) -> RepairableExpression | None:
    try:
        plan = parse_locator_expression(expression)
    except LocatorExpressionError:
        return None
    return _repairable_from_plan(plan)


def _repairable_from_plan(plan: LocatorPlan) -> RepairableExpression | None:
    calls = list(plan.calls)
    suffix = ""
    if len(calls) == 2:
        tail = calls.pop()
        if tail.is_property and tail.method in {"first", "last"}:
            suffix = f".{tail.method}"
        elif tail.method == "nth" and len(tail.args) == 1 and not tail.kwargs and _is_int(tail.args[0]):
            suffix = f".nth({tail.args[0]})"
        else:
            return None
    if len(calls) != 1:
        return None

    root = calls[0]
    if root.method not in _SUPPORTED_ROOTS or root.is_property or len(root.args) != 1:
        return None
    kwargs = dict(root.kwargs)
    exact = kwargs.pop("exact", False)
    if not isinstance(exact, bool):
        return None
    first_arg = root.args[0]
    if not isinstance(first_arg, str):
        return None

    if root.method == "get_by_role":
        name = kwargs.pop("name", None)
        if kwargs or not isinstance(name, str) or not name:
            return None
        return RepairableExpression(method=root.method, role=first_arg, query_text=name, exact=exact, suffix=suffix)

    if kwargs:
        return None
    return RepairableExpression(method=root.method, query_text=first_arg, exact=exact, suffix=suffix)


def build_repaired_expression(parsed: RepairableExpression, mode: str, pattern: str | None = None) -> str:
    if mode == "string":
        if parsed.method == "get_by_role":
            root = format_call("get_by_role", parsed.role or "button", name=parsed.query_text)
        else:
            root = format_call(parsed.method, parsed.query_text)
        return f"{root}{parsed.suffix}"

    regex = re.compile(pattern or re.escape(parsed.query_text), re.IGNORECASE)
    if parsed.method == "get_by_role":
        root = format_call("get_by_role", parsed.role or "button", name=regex)
    else:
        root = format_call(parsed.method, regex)
    if mode == "regex":
        return f"{root}{parsed.suffix}"
    return f"{root}.{format_call('filter', has_text=regex)}{parsed.suffix}"


def stable_regex_pattern(value: str, config: SignalConfig) -> str | None:
    keywords = {keyword.lower() for keyword in config.keywords}
    tokens = [
        token
        for token in re.split(r"[^a-z0-9]+", value.lower())
        if len(token) >= 3 and token not in _STABLE_STOPWORDS and token not in keywords and not token.isdigit()
    ][:4]
    if not tokens:
        return None
    return ".*".join(re.escape(token) for token in tokens)


def _looks_brittle(expression: str, config: SignalConfig) -> bool:
    if _EXACT_OPTION_PATTERN.search(expression):
        return True
    for match in _QUOTED_PATTERN.finditer(expression):
        quoted = match.group(1) or match.group(2) or ""
        if len(quoted) < 4:
            continue
        if len(quoted) >= config.long_fragment_chars or detect_text_signals(quoted, config):
            return True
    return False


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
