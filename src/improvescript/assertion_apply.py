from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Sequence

from .assertion_stability import (
    VOLUME_CAP_MESSAGE,
    assess_stability,
    is_snapshot_sourced,
    ranking_score,
    snapshot_volume_overflow,
)
from .dynamic_signals import classify_navigation_like
from .models import ApplyStatus, AssertionCandidate, Step, Target
from .page_handle import PageHandle
from .policy import ImproveOptions, ImprovePolicy
from .steps import target_key

FALLBACK_SUPPRESSED_MESSAGE = (
    "Skipped by policy: coverage fallback suppressed because stronger candidate exists for this step."
)
STRUCTURAL_ONLY_MESSAGE = (
    "Skipped by policy: reliable mode only auto-applies snapshot assert_visible candidates when stable structural."
)
EXISTING_MESSAGE = "Equivalent assertion already exists at source step or adjacent position."
NETWORK_IDLE_MESSAGE = "Post-step network idle wait timed out; assertion skipped."
BACKUP_ONLY_MESSAGE = (
    "Skipped by policy: coverage fallback assertions are backup-only once a stronger assertion is applied "
    "for this step."
)

COVERAGE_ACTIONS = frozenset({"click", "dblclick", "press", "hover", "fill", "select", "check", "uncheck"})
_CLICK_LIKE_ACTIONS = frozenset({"click", "dblclick", "press", "hover"})
_SOURCE_PRIORITY = {"deterministic": 0, "snapshot_native": 1}


@dataclass(frozen=True, slots=True)
class CandidateOutcome:
    status: ApplyStatus
    message: str | None = None
    forced: bool = False


@dataclass(slots=True)
class CoveragePlan:
    candidates: list[AssertionCandidate]
    required: set[int] = field(default_factory=set)
    synthesized: int = 0


def policy_block_messages(candidates: Sequence[AssertionCandidate], policy: ImprovePolicy) -> dict[int, str]:
    """Candidates that policy forbids from being auto-applied, keyed by position."""
    blocked = {position: VOLUME_CAP_MESSAGE for position in snapshot_volume_overflow(list(candidates), policy)}

    for position, candidate in enumerate(candidates):
        if position in blocked:
            continue
        if (
            policy.snapshot_visible_allowed == "stable_structural_only"
            and candidate.candidate.action == "assert_visible"
            and is_snapshot_sourced(candidate)
            and not candidate.coverage_fallback
            and not candidate.stable_structural
        ):
            blocked[position] = STRUCTURAL_ONLY_MESSAGE

    covered_steps = {
        candidate.step_index
        for position, candidate in enumerate(candidates)
        if not candidate.coverage_fallback and position not in blocked
    }
    for position, candidate in enumerate(candidates):
        if position not in blocked and candidate.coverage_fallback and candidate.step_index in covered_steps:
            blocked[position] = FALLBACK_SUPPRESSED_MESSAGE
    return blocked


def candidate_threshold(candidate: AssertionCandidate, policy: ImprovePolicy) -> float:
    if candidate.candidate.action == "assert_text" and is_snapshot_sourced(candidate):
        return policy.snapshot_text_min_score
    return policy.assertion_threshold


def apply_order_key(position: int, candidate: AssertionCandidate, policy: ImprovePolicy) -> tuple:
    """Per-step validation order: stronger candidates first, coverage fallbacks last."""
    source_priority = _SOURCE_PRIORITY.get(candidate.candidate_source, 2)
    return (
        1 if candidate.coverage_fallback else 0,
        source_priority if candidate.coverage_fallback else 0,
        -ranking_score(candidate),
        -candidate.confidence,
        policy.action_priority.get(candidate.candidate.action, len(policy.action_priority)),
        source_priority,
        position,
    )


def _bare(target: Target) -> Target:
    return Target(value=target.value, kind=target.kind, source=target.source, frame_path=target.frame_path)


def _on_target(candidate: AssertionCandidate, step: Step) -> bool:
    return candidate.candidate.target is not None and target_key(candidate.candidate.target) == target_key(step.target)


def _choose_primary(
    step: Step,
    entries: list[tuple[int, AssertionCandidate]],
    policy: ImprovePolicy,
) -> int | None:
    if not entries:
        return None
    ordered = sorted(entries, key=lambda entry: apply_order_key(entry[0], entry[1], policy))

    def first(predicate) -> int | None:
        return next((position for position, candidate in ordered if predicate(candidate)), None)

    preferred: int | None = None
    if step.action in {"fill", "select"}:
        preferred = first(lambda item: item.candidate.action == "assert_value" and _on_target(item, step))
    elif step.action in {"check", "uncheck"}:
        preferred = first(lambda item: item.candidate.action == "assert_checked" and _on_target(item, step))
    elif step.action in _CLICK_LIKE_ACTIONS:
        preferred = first(lambda item: item.candidate.action == "assert_text" and not _on_target(item, step))
        if preferred is None:
            preferred = first(lambda item: item.candidate.action == "assert_visible" and not _on_target(item, step))
        if preferred is None:
            preferred = first(lambda item: item.candidate.action == "assert_visible")
    return preferred if preferred is not None else ordered[0][0]


def plan_coverage(
    steps: Sequence[Step],
    candidates: Iterable[AssertionCandidate],
    blocked: Mapping[int, str],
    policy: ImprovePolicy,
) -> CoveragePlan:
    """Pick one required candidate per covered step, synthesizing a visibility fallback where none exists."""
    plan = CoveragePlan(candidates=list(candidates))
    by_step: dict[int, list[tuple[int, AssertionCandidate]]] = defaultdict(list)
    for position, candidate in enumerate(plan.candidates):
        if position not in blocked:
            by_step[candidate.step_index].append((position, candidate))

    for index, step in enumerate(steps):
        if step.action not in COVERAGE_ACTIONS or step.target is None:
            continue
        primary = _choose_primary(step, by_step.get(index, []), policy)
        if primary is not None:
            plan.required.add(primary)
            continue
        if any(candidate.step_index == index for candidate in plan.candidates):
            continue
        if classify_navigation_like(step, policy.signals):
            continue
        synthesized = AssertionCandidate(
            step_index=index,
            after_action=step.action,
            candidate=Step(action="assert_visible", target=_bare(step.target)),
            confidence=policy.coverage_fallback_confidence,
            rationale="Coverage fallback: no other candidate covers this step; verify the acted element stays visible.",
            candidate_source="deterministic",
            coverage_fallback=True,
        )
        plan.candidates.append(assess_stability(synthesized, policy))
        plan.required.add(len(plan.candidates) - 1)
        plan.synthesized += 1
    return plan


def select_for_apply(
    candidates: Sequence[AssertionCandidate],
    blocked: Mapping[int, str],
    required: set[int],
    policy: ImprovePolicy,
) -> tuple[list[int], dict[int, CandidateOutcome]]:
    selected: list[int] = []
    outcomes: dict[int, CandidateOutcome] = {}
    for position, candidate in enumerate(candidates):
        if position in blocked:
            outcomes[position] = CandidateOutcome("skipped_policy", blocked[position])
            continue
        score = ranking_score(candidate)
        threshold = candidate_threshold(candidate, policy)
        if position not in required and score < threshold:
            outcomes[position] = CandidateOutcome(
                "skipped_low_confidence",
                f"Candidate score {score:.3f} is below threshold {threshold:.3f}.",
            )
            continue
        selected.append(position)
    return selected, outcomes


def assertions_equivalent(left: Step, right: Step) -> bool:
    """Same action, same target identity and same expected values; target provenance is ignored."""
    if left.action != right.action:
        return False
    if (left.target is None) != (right.target is None):
        return False
    if left.target is not None and right.target is not None:
        if (left.target.value, left.target.kind, left.target.frame_path) != (
            right.target.value,
            right.target.kind,
            right.target.frame_path,
        ):
            return False
    return (
        left.text == right.text
        and left.value == right.value
        and left.expected_checked == right.expected_checked
        and left.expected_enabled == right.expected_enabled
        and left.url == right.url
        and left.title == right.title
    )


def duplicates_neighbor(steps: Sequence[Step], source_index: int, assertion: Step) -> bool:
    for index in (source_index, source_index + 1):
        if 0 <= index < len(steps) and assertions_equivalent(steps[index], assertion):
            return True
    return False


async def validate_candidates(
    page: PageHandle,
    steps: Sequence[Step],
    candidates: Sequence[AssertionCandidate],
    selected: Iterable[int],
    required: set[int],
    options: ImproveOptions,
) -> dict[int, CandidateOutcome]:
    """Replay the steps from a blank page and run each selected assertion right after its source step."""
    policy = options.policy
    outcomes: dict[int, CandidateOutcome] = {}
    pending: dict[int, list[int]] = defaultdict(list)
    for position in selected:
        candidate = candidates[position]
        if duplicates_neighbor(steps, candidate.step_index, candidate.candidate):
            outcomes[position] = CandidateOutcome("skipped_existing", EXISTING_MESSAGE)
        else:
            pending[candidate.step_index].append(position)
    if not pending:
        return outcomes
    for positions in pending.values():
        positions.sort(key=lambda position: apply_order_key(position, candidates[position], policy))

    def fail_remaining(from_index: int, message: str) -> None:
        for index, positions in pending.items():
            if index >= from_index:
                for position in positions:
                    outcomes.setdefault(position, CandidateOutcome("skipped_runtime_failure", message))

    try:
        await page.reset(options.validation_timeout_ms)
    except Exception as exc:
        fail_remaining(0, f"Runtime replay could not start: {exc}")
        return outcomes

    for index, step in enumerate(steps):
        try:
            await page.execute_step(
                step,
                mode="analysis",
                timeout_ms=options.validation_timeout_ms,
                base_url=options.base_url,
            )
        except Exception as exc:
            fail_remaining(index, f"Runtime replay failed at step {index + 1}: {exc}")
            break

        positions = pending.get(index)
        if not positions:
            continue
        try:
            timed_out = await page.wait_for_network_idle(policy.network_idle_timeout_ms)
        except Exception:
            timed_out = True
        if timed_out:
            for position in positions:
                outcomes[position] = CandidateOutcome("skipped_runtime_failure", NETWORK_IDLE_MESSAGE)
            continue

        applied = 0
        strong_applied = False
        for position in positions:
            candidate = candidates[position]
            if applied >= policy.applied_per_step_cap:
                outcomes[position] = CandidateOutcome(
                    "skipped_policy",
                    f"Skipped by policy: max {policy.applied_per_step_cap} applied assertion(s) per source step.",
                )
                continue
            if candidate.coverage_fallback and strong_applied:
                outcomes[position] = CandidateOutcome("skipped_policy", BACKUP_ONLY_MESSAGE)
                continue
            try:
                await page.execute_step(
                    candidate.candidate,
                    mode="playback",
                    timeout_ms=options.validation_timeout_ms,
                    base_url=options.base_url,
                )
            except Exception as exc:
                if position in required and applied == 0:
                    outcomes[position] = CandidateOutcome(
                        "applied",
                        f"Applied for coverage despite runtime validation failure: {exc}",
                        forced=True,
                    )
                else:
                    outcomes[position] = CandidateOutcome("skipped_runtime_failure", str(exc))
                    continue
            else:
                outcomes[position] = CandidateOutcome("applied")
            applied += 1
            if not candidate.coverage_fallback:
                strong_applied = True
    return outcomes


def insert_assertions(steps: Sequence[Step], insertions: Iterable[tuple[int, Step]]) -> list[Step]:
    """Insert each assertion after its source step, keeping insertion order within one source step."""
    out = list(steps)
    offset = 0
    for source_index, assertion in sorted(insertions, key=lambda item: item[0]):
        out.insert(source_index + 1 + offset, assertion)
        offset += 1
    return out


def finalize_candidate(candidate: AssertionCandidate, outcome: CandidateOutcome) -> AssertionCandidate:
    return replace(
        candidate,
        apply_status=outcome.status,
        apply_message=outcome.message,
        forced_by_coverage=outcome.forced,
    )
