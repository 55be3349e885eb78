from __future__ import annotations

from dataclasses import dataclass, field, replace

from .diagnostics import DiagnosticsCollector
from .dynamic_signals import detect_target_signals
from .locator_expression import format_call
from .locator_repair import analyze_locator_repair
from .models import CandidateOrigin, Step, Target, TargetCandidate
from .page_handle import PageHandle
from .policy import ImproveOptions
from .runtime_repair import generate_runtime_repair_candidates
from .selector_conversion import css_test_id, selector_to_expression, xpath_to_expression
from .snapshot import parse_snapshot

_USELESS_ROLES = frozenset({"generic", "none", "presentation"})
_FORM_CONTROL_ROLES = frozenset({"textbox", "combobox", "spinbutton", "listbox", "searchbox"})
_TEXT_ROLES = frozenset({"heading", "status", "alert", "link"})

_ENGINE_METHODS = {
    "data-testid": ("get_by_test_id", "engine_data_testid_to_expression"),
    "text": ("get_by_text", "engine_text_to_expression"),
    "css": ("locator", "engine_css_to_expression"),
}


@dataclass(slots=True)
class CandidateCollection:
    candidates: list[TargetCandidate] = field(default_factory=list)
    dynamic_signals: frozenset[str] = frozenset()
    repairs_added: int = 0
    runtime_generated: int = 0
    private_fallback_generated: int = 0
    runtime_keys: set[tuple[str, str, tuple[str, ...]]] = field(default_factory=set)
    private_fallback_keys: set[tuple[str, str, tuple[str, ...]]] = field(default_factory=set)

    def add(self, candidate: TargetCandidate) -> bool:
        key = candidate.target.key()
        if any(existing.target.key() == key for existing in self.candidates):
            return False
        self.candidates.append(candidate)
        return True


def generate_target_candidates(target: Target) -> list[TargetCandidate]:
    """Browser-free candidates: the current target first, then syntactic normalizations."""
    candidates: list[TargetCandidate] = []
    seen: set[tuple[str, str, tuple[str, ...]]] = set()

    def push(candidate_target: Target, origin: CandidateOrigin, reason_code: str) -> None:
        key = candidate_target.key()
        if key in seen:
            return
        seen.add(key)
        candidates.append(
            TargetCandidate(
                id=f"{origin}-{len(candidates) + 1}",
                target=candidate_target,
                origin=origin,
                reason_codes=(reason_code,),
            )
        )

    push(target, "current", "existing_target")
    for value, reason_code in _derive_expressions(target):
        derived = Target(value=value, kind="locator_expression", source="derived", frame_path=target.frame_path)
        push(derived, "derived", reason_code)
    return candidates


def _derive_expressions(target: Target) -> list[tuple[str, str]]:
    value = target.value.strip()
    if not value:
        return []
    out: list[tuple[str, str]] = []

    if target.kind == "engine_selector":
        engine, separator, body = value.partition("=")
        engine, body = engine.strip(), body.strip()
        if separator and engine in _ENGINE_METHODS and body:
            method, reason_code = _ENGINE_METHODS[engine]
            # A quoted text= body is a whole-string, case-sensitive match.
            exact = True if method == "get_by_text" and _strip_quotes(body) != body else None
            out.append((format_call(method, _strip_quotes(body), exact=exact), reason_code))
        else:
            converted = selector_to_expression(value)
            if converted and converted != value:
                out.append((converted, "engine_selector_to_expression"))
    elif target.kind == "css":
        out.append((format_call("locator", value), "css_to_locator_expression"))
        test_id = css_test_id(value)
        if test_id:
            out.append((format_call("get_by_test_id", test_id), "css_testid_to_expression"))
    elif target.kind == "xpath":
        out.append((xpath_to_expression(value), "xpath_to_locator_expression"))
    return out


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


async def generate_aria_candidates(
    page: PageHandle,
    target: Target,
    existing_values: set[str],
    diagnostics: DiagnosticsCollector,
    timeout_ms: int,
) -> list[TargetCandidate]:
    try:
        snapshot_text = await page.aria_snapshot(target, timeout_ms)
    except Exception as exc:
        diagnostics.info("aria_snapshot_failed", f"Aria snapshot unavailable for target: {exc}")
        return []

    nodes = parse_snapshot(snapshot_text)
    if not nodes or nodes[0].role in _USELESS_ROLES:
        return []
    node = nodes[0]
    candidates: list[TargetCandidate] = []

    def push(value: str, reason_code: str) -> None:
        if value in existing_values:
            return
        existing_values.add(value)
        candidates.append(
            TargetCandidate(
                id=f"aria-{len(candidates) + 1}",
                target=Target(value=value, kind="locator_expression", source="derived", frame_path=target.frame_path),
                origin="derived",
                reason_codes=(reason_code,),
            )
        )

    if node.name:
        push(format_call("get_by_role", node.role, name=node.name), "aria_role_name")
    if node.name and node.role in _FORM_CONTROL_ROLES:
        push(format_call("get_by_label", node.name), "aria_label")
    if node.role in _FORM_CONTROL_ROLES:
        try:
            placeholder = await page.get_attribute(target, "placeholder", timeout_ms)
        except Exception:
            placeholder = None
        if placeholder and placeholder.strip():
            push(format_call("get_by_placeholder", placeholder.strip()), "aria_placeholder")
    if node.name and node.role in _TEXT_ROLES:
        push(format_call("get_by_text", node.name), "aria_text")
    return candidates


async def collect_candidates(
    step: Step,
    page: PageHandle | None,
    step_number: int,
    diagnostics: DiagnosticsCollector,
    options: ImproveOptions,
) -> CandidateCollection:
    if step.target is None:
        return CandidateCollection()
    target = step.target
    policy = options.policy
    collection = CandidateCollection()

    dynamic_signals = frozenset(target.dynamic_signals | detect_target_signals(target, policy.signals))
    repair = analyze_locator_repair(target, step_number, diagnostics, policy.signals)
    dynamic_signals = dynamic_signals | repair.dynamic_signals

    for candidate in generate_target_candidates(target):
        if candidate.origin == "current" and dynamic_signals:
            candidate = replace(candidate, target=replace(candidate.target, dynamic_signals=dynamic_signals))
        collection.add(candidate)
    collection.dynamic_signals = dynamic_signals

    for candidate in repair.candidates:
        if collection.add(candidate):
            collection.repairs_added += 1

    if page is not None and dynamic_signals:
        if options.disable_runtime_regen:
            diagnostics.info(
                "selector_repair_playwright_runtime_disabled",
                f"Step {step_number}: skipped Playwright runtime selector regeneration because "
                "IMPROVESCRIPT_DISABLE_RUNTIME_REGEN is set.",
            )
        else:
            runtime = await generate_runtime_repair_candidates(
                page,
                target,
                step_number,
                diagnostics,
                dynamic_signals=dynamic_signals,
                disable_internal_fallback=options.disable_internal_fallback,
                timeout_ms=policy.probe_timeout_ms,
            )
            for candidate in runtime.candidates:
                if not collection.add(candidate):
                    continue
                key = candidate.target.key()
                collection.runtime_keys.add(key)
                collection.repairs_added += 1
                collection.runtime_generated += 1
                if runtime.private_fallback_used:
                    collection.private_fallback_keys.add(key)
                    collection.private_fallback_generated += 1

    if page is not None:
        existing_values = {candidate.target.value for candidate in collection.candidates}
        for candidate in await generate_aria_candidates(
            page, target, existing_values, diagnostics, policy.probe_timeout_ms
        ):
            collection.add(candidate)

    return collection
