from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .candidate_generator import collect_candidates
from .candidate_scorer import score_candidates
from .diagnostics import Diagnostic, DiagnosticsCollector
from .models import PassCounters, Step, StepFinding, StepSnapshot
from .page_handle import PageHandle
from .policy import ImproveOptions
from .selection import apply_selection, select_best_candidate
from .steps import validate_steps


@dataclass(slots=True)
class SelectorPassResult:
    output_steps: list[Step]
    diagnostics: tuple[Diagnostic, ...]
    counters: PassCounters
    findings: list[StepFinding] = field(default_factory=list)
    snapshots: list[StepSnapshot] = field(default_factory=list)
    failed_step_indexes: list[int] = field(default_factory=list)


async def run_selector_pass(
    steps: Sequence[Step],
    page: PageHandle | None,
    options: ImproveOptions,
    *,
    diagnostics: DiagnosticsCollector | None = None,
    capture_snapshots: bool = False,
) -> SelectorPassResult:
    """Score locator candidates for every targeted step and optionally write the winners back.

    With a page, each step is also replayed in analysis mode so later steps are probed against
    the page state they were recorded on; `capture_snapshots` keeps the ARIA snapshots taken
    around every step for the assertion pass.
    """
    validated = validate_steps(steps)
    if page is not None:
        page.ensure_usable()
    sink = diagnostics if diagnostics is not None else DiagnosticsCollector()
    policy = options.policy
    counters = PassCounters(steps_total=len(validated))
    extra = {
        "selector_repairs_adopted_on_tie": 0,
        "selector_repairs_generated_via_runtime": 0,
        "selector_repairs_generated_via_private_fallback": 0,
        "selector_repairs_applied_from_runtime": 0,
        "selector_repairs_applied_from_private_fallback": 0,
    }
    output_steps = list(validated)
    findings: list[StepFinding] = []
    snapshots: list[StepSnapshot] = []
    failed_step_indexes: list[int] = []

    for index, step in enumerate(validated):
        step_number = index + 1

        if step.action != "navigate" and step.target is not None:
            counters.steps_with_target += 1
            collection = await collect_candidates(step, page, step_number, sink, options)
            counters.candidates_generated += len(collection.candidates)
            counters.selector_repairs_generated += collection.repairs_added
            extra["selector_repairs_generated_via_runtime"] += collection.runtime_generated
            extra["selector_repairs_generated_via_private_fallback"] += collection.private_fallback_generated

            scored = await score_candidates(page, collection.candidates, policy)
            selection = select_best_candidate(
                scored,
                step.target,
                apply_selectors=options.apply_selectors,
                policy=policy,
            )
            if selection is None:
                sink.warn(
                    "candidate_scoring_unavailable",
                    f"Step {step_number}: no selector candidates were available for scoring.",
                )
            else:
                findings.append(
                    StepFinding(
                        index=index,
                        action=step.action,
                        changed=selection.adopt,
                        old_target=step.target,
                        recommended_target=selection.recommended_target,
                        confidence=selection.effective.score,
                        old_score=selection.current.score,
                        confidence_delta=selection.confidence_delta,
                        reason_codes=selection.reason_codes,
                        candidates=tuple(scored),
                    )
                )
                if selection.adopt:
                    counters.selectors_recommended += 1
                if options.apply_selectors:
                    updated, metrics = apply_selection(
                        step,
                        selection,
                        scored,
                        sink,
                        step_number,
                        policy,
                        runtime_keys=collection.runtime_keys,
                        private_fallback_keys=collection.private_fallback_keys,
                    )
                    output_steps[index] = updated
                    if selection.adopt:
                        counters.selectors_applied += 1
                    counters.selector_repairs_adopted += metrics.repairs_applied
                    extra["selector_repairs_adopted_on_tie"] += metrics.repairs_adopted_on_tie
                    extra["selector_repairs_applied_from_runtime"] += metrics.applied_from_runtime
                    extra["selector_repairs_applied_from_private_fallback"] += metrics.applied_from_private_fallback

        if page is None:
            continue

        snapshot = await _replay_step(
            page,
            output_steps[index],
            index,
            options,
            sink,
            capture_snapshots=capture_snapshots,
            failed_step_indexes=failed_step_indexes,
        )
        if snapshot is not None:
            snapshots.append(snapshot)

    counters.extra.update(extra)
    return SelectorPassResult(
        output_steps=output_steps,
        diagnostics=sink.snapshot(),
        counters=counters,
        findings=findings,
        snapshots=snapshots,
        failed_step_indexes=failed_step_indexes,
    )


async def capture_step_snapshots(
    steps: Sequence[Step],
    page: PageHandle,
    options: ImproveOptions,
    diagnostics: DiagnosticsCollector,
) -> list[StepSnapshot]:
    """Replay the steps in analysis mode, keeping the ARIA snapshots taken around each one."""
    snapshots: list[StepSnapshot] = []
    failed: list[int] = []
    for index, step in enumerate(steps):
        snapshot = await _replay_step(
            page,
            step,
            index,
            options,
            diagnostics,
            capture_snapshots=True,
            failed_step_indexes=failed,
        )
        if snapshot is not None:
            snapshots.append(snapshot)
    return snapshots


async def _replay_step(
    page: PageHandle,
    step: Step,
    index: int,
    options: ImproveOptions,
    diagnostics: DiagnosticsCollector,
    *,
    capture_snapshots: bool,
    failed_step_indexes: list[int],
) -> StepSnapshot | None:
    policy = options.policy
    step_number = index + 1
    pre_snapshot: str | None = None
    pre_url = pre_title = ""
    if capture_snapshots:
        pre_snapshot = await _body_snapshot(page, policy.probe_timeout_ms)
        pre_url, pre_title = await _page_location(page)

    try:
        await page.execute_step(
            step,
            mode="analysis",
            timeout_ms=options.validation_timeout_ms,
            base_url=options.base_url,
        )
    except Exception as exc:
        failed_step_indexes.append(index)
        diagnostics.warn(
            "runtime_step_execution_failed",
            f"Runtime execution failed at step {step_number}; continuing with best-effort analysis. {exc}",
        )

    if not capture_snapshots:
        return None

    try:
        if await page.wait_for_network_idle(policy.network_idle_timeout_ms):
            diagnostics.warn(
                "runtime_network_idle_wait_timed_out",
                f"Runtime network idle wait timed out at step {step_number}; capturing best-effort snapshot state.",
            )
    except Exception as exc:
        diagnostics.warn(
            "runtime_network_idle_wait_failed",
            f"Runtime network idle wait failed at step {step_number}; continuing with best-effort analysis. {exc}",
        )

    if pre_snapshot is None:
        return None
    post_snapshot = await _body_snapshot(page, policy.probe_timeout_ms)
    if not post_snapshot:
        return None
    post_url, post_title = await _page_location(page)
    return StepSnapshot(
        index=index,
        step=step,
        pre_snapshot=pre_snapshot,
        post_snapshot=post_snapshot,
        pre_url=pre_url,
        post_url=post_url,
        pre_title=pre_title,
        post_title=post_title,
    )


async def _body_snapshot(page: PageHandle, timeout_ms: int) -> str | None:
    try:
        return await page.aria_snapshot(None, timeout_ms)
    except Exception:
        return None


async def _page_location(page: PageHandle) -> tuple[str, str]:
    try:
        return page.url(), await page.title()
    except Exception:
        return "", ""
