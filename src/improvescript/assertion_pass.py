from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Iterable, Sequence

from .assertion_apply import (
    COVERAGE_ACTIONS,
    CandidateOutcome,
    apply_order_key,
    finalize_candidate,
    insert_assertions,
    plan_coverage,
    policy_block_messages,
    select_for_apply,
    validate_candidates,
)
from .assertion_candidates import (
    build_deterministic_candidates,
    build_inventory_candidates,
    build_snapshot_cli_candidates,
    build_snapshot_native_candidates,
    dedupe_assertion_candidates,
)
from .assertion_stability import apply_category_caps, assess_stability, is_hard_filtered
from .diagnostics import Diagnostic, DiagnosticsCollector
from .models import AssertionCandidate, PassCounters, Step, StepFinding, StepSnapshot
from .page_handle import PageHandle
from .policy import ImproveOptions, ImprovePolicy
from .selector_pass import capture_step_snapshots
from .steps import validate_steps


@dataclass(slots=True)
class AssertionPassResult:
    output_steps: list[Step]
    assertion_candidates: list[AssertionCandidate]
    diagnostics: tuple[Diagnostic, ...]
    counters: PassCounters


def _new_extra_counters() -> dict[str, int]:
    return {
        "inventory_steps_evaluated": 0,
        "inventory_candidates_added": 0,
        "inventory_gap_steps_filled": 0,
        "coverage_fallbacks_synthesized": 0,
        "assertions_forced_by_coverage": 0,
    }


async def run_assertion_pass(
    steps: Sequence[Step],
    page: PageHandle | None,
    options: ImproveOptions,
    *,
    findings: Iterable[StepFinding] = (),
    snapshots: Sequence[StepSnapshot] | None = None,
    diagnostics: DiagnosticsCollector | None = None,
    original_indexes: Sequence[int] | None = None,
) -> AssertionPassResult:
    """Propose assertions after each step and, when requested, validate and insert the accepted ones.

    Snapshot sources use `snapshots` when given; otherwise, with a page, the steps are replayed once
    to capture them. Without a page or without `apply_assertions` every candidate is `not_requested`.
    When some recorded steps were dropped, `original_indexes` maps each of `steps` back to its
    recorded position and reported candidates use those positions.
    """
    validated = validate_steps(steps)
    if page is not None:
        page.ensure_usable()
    sink = diagnostics if diagnostics is not None else DiagnosticsCollector()
    policy = options.policy
    counters = PassCounters(steps_total=len(validated))
    extra = _new_extra_counters()
    origins = list(original_indexes) if original_indexes is not None else None

    def origin(index: int) -> int:
        if origins is None or not 0 <= index < len(origins):
            return index
        return origins[index]

    if options.assertions == "none":
        if options.apply_assertions:
            sink.info(
                "apply_assertions_disabled_by_assertions_none",
                "Assertion apply was requested but assertion mode is none; no assertions were generated.",
            )
        counters.extra.update(extra)
        return AssertionPassResult(list(validated), [], sink.snapshot(), counters)

    raw = build_deterministic_candidates(validated, findings, policy)
    source = options.assertion_source
    if source != "deterministic":
        captured = list(snapshots) if snapshots is not None else []
        if snapshots is None and page is not None:
            captured = await capture_step_snapshots(validated, page, options, sink)
        raw.extend(_snapshot_candidates(source, captured, raw, policy, sink, extra))

    offered: list[AssertionCandidate] = []
    for candidate in dedupe_assertion_candidates(raw):
        candidate = assess_stability(candidate, policy)
        if is_hard_filtered(candidate, policy):
            counters.assertions_filtered_volatile += 1
            flags = ", ".join(sorted(candidate.dynamic_signals & policy.hard_filter_flags))
            sink.info(
                "assertion_candidate_filtered_volatile",
                f"Step {origin(candidate.step_index) + 1}: filtered volatile "
                f"{candidate.candidate.action} candidate ({flags}).",
            )
            continue
        offered.append(candidate)
    offered = apply_category_caps(offered, policy)

    if not options.apply_assertions or page is None:
        if options.apply_assertions:
            sink.warn(
                "assertion_apply_requires_page",
                "Assertion apply was requested without a page; candidates were not validated.",
            )
        unapplied = [replace(candidate, apply_status="not_requested") for candidate in offered]
        counters.assertion_candidates = len(unapplied)
        counters.extra.update(extra)
        return AssertionPassResult(list(validated), _recorded(unapplied, origin), sink.snapshot(), counters)

    blocked = policy_block_messages(offered, policy)
    plan = plan_coverage(validated, offered, blocked, policy)
    selected, outcomes = select_for_apply(plan.candidates, blocked, plan.required, policy)
    outcomes.update(await validate_candidates(page, validated, plan.candidates, selected, plan.required, options))
    extra["coverage_fallbacks_synthesized"] = plan.synthesized

    final: list[AssertionCandidate] = []
    for position, candidate in enumerate(plan.candidates):
        outcome = outcomes.get(position) or CandidateOutcome("skipped_policy", "Candidate was not selected for apply.")
        final.append(finalize_candidate(candidate, outcome))
        if outcome.status == "skipped_runtime_failure":
            sink.warn(
                "assertion_apply_runtime_failure",
                f"Assertion candidate {position + 1} skipped: {outcome.message}",
            )

    applied = sorted(
        (position for position, candidate in enumerate(final) if candidate.apply_status == "applied"),
        key=lambda position: (final[position].step_index, apply_order_key(position, final[position], policy)),
    )
    output_steps = insert_assertions(
        validated,
        ((final[position].step_index, final[position].candidate) for position in applied),
    )

    counters.assertion_candidates = len(final)
    counters.assertions_applied = len(applied)
    counters.assertions_skipped = sum(1 for candidate in final if (candidate.apply_status or "").startswith("skipped_"))
    extra["assertions_forced_by_coverage"] = sum(1 for candidate in final if candidate.forced_by_coverage)
    counters.extra.update(extra)
    return AssertionPassResult(output_steps, _recorded(final, origin), sink.snapshot(), counters)


def _recorded(candidates: list[AssertionCandidate], origin: Callable[[int], int]) -> list[AssertionCandidate]:
    return [replace(candidate, step_index=origin(candidate.step_index)) for candidate in candidates]


def _snapshot_candidates(
    source: str,
    snapshots: list[StepSnapshot],
    existing: list[AssertionCandidate],
    policy: ImprovePolicy,
    diagnostics: DiagnosticsCollector,
    extra: dict[str, int],
) -> list[AssertionCandidate]:
    if not snapshots:
        diagnostics.warn(
            f"assertion_source_{source}_empty",
            f"No {source} snapshots were captured; using deterministic assertion candidates only.",
        )
        return []

    try:
        if source == "snapshot_cli":
            built = build_snapshot_cli_candidates(snapshots)
        else:
            built = build_snapshot_native_candidates(snapshots)
    except Exception as exc:
        diagnostics.warn(f"assertion_source_{source}_parse_failed", f"Could not build {source} candidates: {exc}")
        diagnostics.warn(
            f"assertion_source_{source}_fallback",
            f"Falling back to deterministic assertion candidates after {source} failure.",
        )
        return []

    if source != "snapshot_native":
        return built

    covered = {candidate.step_index for candidate in (*existing, *built) if not candidate.coverage_fallback}
    gaps = [
        snapshot
        for snapshot in snapshots
        if snapshot.step.action in COVERAGE_ACTIONS and snapshot.index not in covered
    ]
    inventory = build_inventory_candidates(gaps, policy)
    extra["inventory_steps_evaluated"] += len(gaps)
    extra["inventory_candidates_added"] += len(inventory)
    extra["inventory_gap_steps_filled"] += len({candidate.step_index for candidate in inventory})
    return [*built, *inventory]
