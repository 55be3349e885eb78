from __future__ import annotations

from dataclasses import dataclass

from .diagnostics import DiagnosticsCollector
from .models import Target, TargetCandidate
from .page_handle import PageHandle

RUNTIME_REPAIR_REASON = "locator_repair_playwright_runtime"

_FRAME_DESCENT_MARKERS = ("frame_locator(", "frameLocator(", "content_frame", "contentFrame")


@dataclass(frozen=True, slots=True)
class RuntimeRepairResult:
    candidates: tuple[TargetCandidate, ...] = ()
    runtime_unique: bool = False
    private_fallback_used: bool = False


def should_retain_frame_path(expression: str, frame_path: tuple[str, ...]) -> bool:
    if not frame_path:
        return False
    return not any(marker in expression for marker in _FRAME_DESCENT_MARKERS)


async def generate_runtime_repair_candidates(
    page: PageHandle,
    target: Target,
    step_number: int,
    diagnostics: DiagnosticsCollector,
    *,
    dynamic_signals: frozenset[str] = frozenset(),
    disable_internal_fallback: bool = False,
    timeout_ms: int = 1500,
) -> RuntimeRepairResult:
    """Regenerate a locator expression for a dynamic target that uniquely matches on the live page.

    The public resolver is tried first. The internal resolver is only consulted when the
    public tier produced nothing; each tier that is skipped or fails leaves a diagnostic.
    """
    try:
        page.resolve(target)
    except Exception:
        diagnostics.warn(
            "selector_repair_playwright_runtime_unavailable",
            f"Step {step_number}: Playwright runtime selector resolution was unavailable for this target.",
        )
        return RuntimeRepairResult()

    try:
        match_count = await page.count(target, timeout_ms)
    except Exception:
        diagnostics.warn(
            "selector_repair_playwright_runtime_unavailable",
            f"Step {step_number}: Playwright runtime selector matching failed before regeneration.",
        )
        return RuntimeRepairResult()

    if match_count != 1:
        diagnostics.info(
            "selector_repair_playwright_runtime_non_unique",
            f"Step {step_number}: skipped Playwright runtime selector regeneration because match count "
            f"was {match_count}.",
        )
        return RuntimeRepairResult()

    candidates: list[TargetCandidate] = []

    def push(expression: str, via_internal: bool) -> None:
        repaired = Target(
            value=expression,
            kind="locator_expression",
            source="derived",
            frame_path=target.frame_path if should_retain_frame_path(expression, target.frame_path) else (),
            dynamic_signals=dynamic_signals,
        )
        if any(existing.target.key() == repaired.key() for existing in candidates):
            return
        candidates.append(
            TargetCandidate(
                id=f"repair-playwright-runtime-{len(candidates) + 1}",
                target=repaired,
                origin="derived",
                reason_codes=(RUNTIME_REPAIR_REASON,),
            )
        )
        if via_internal:
            message = f"Step {step_number}: generated a runtime selector repair candidate via Playwright internal resolver."
        else:
            message = f"Step {step_number}: converted {target.kind} selector to locator expression via Playwright runtime."
        diagnostics.info("selector_repair_generated_via_playwright_runtime", message)

    public = page.public_resolver()
    if public is not None:
        try:
            expression = await public.regenerate(target)
        except Exception:
            expression = None
        if expression:
            push(expression, via_internal=False)
    if candidates:
        return RuntimeRepairResult(candidates=tuple(candidates), runtime_unique=True)

    if disable_internal_fallback:
        diagnostics.info(
            "selector_repair_playwright_runtime_private_fallback_disabled",
            f"Step {step_number}: skipped Playwright private selector fallback because "
            "IMPROVESCRIPT_DISABLE_INTERNAL_FALLBACK is set.",
        )
        return RuntimeRepairResult(runtime_unique=True)

    internal = page.internal_resolver()
    if internal is None:
        diagnostics.warn(
            "selector_repair_playwright_runtime_unavailable",
            f"Step {step_number}: Playwright private selector resolver (_resolve_selector) was unavailable.",
        )
        return RuntimeRepairResult(runtime_unique=True)

    try:
        expression = await internal.regenerate(target)
    except Exception:
        diagnostics.warn(
            "selector_repair_playwright_runtime_unavailable",
            f"Step {step_number}: Playwright private selector resolution failed during regeneration.",
        )
        return RuntimeRepairResult(runtime_unique=True)

    if not expression:
        diagnostics.warn(
            "selector_repair_playwright_runtime_conversion_failed",
            f"Step {step_number}: could not convert resolved selector to a locator expression.",
        )
        return RuntimeRepairResult(runtime_unique=True)

    push(expression, via_internal=True)
    diagnostics.info(
        "selector_repair_playwright_runtime_private_fallback_used",
        f"Step {step_number}: selector repair used Playwright private resolver fallback.",
    )
    return RuntimeRepairResult(candidates=tuple(candidates), runtime_unique=True, private_fallback_used=True)
