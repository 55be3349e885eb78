from __future__ import annotations

from dataclasses import dataclass, replace

from .candidate_scorer import is_repair_candidate, is_runtime_repair_candidate, round_score, runtime_repair_bonus
from .diagnostics import DiagnosticsCollector
from .models import CandidateScore, Step, Target
from .policy import ImprovePolicy


@dataclass(frozen=True, slots=True)
class SelectionOutcome:
    current: CandidateScore
    selected: CandidateScore
    effective: CandidateScore
    improve_opportunity: bool
    tie_repair: bool
    adopt: bool
    recommended_target: Target
    confidence_delta: float
    reason_codes: tuple[str, ...]


@dataclass(slots=True)
class ApplyMetrics:
    repairs_applied: int = 0
    repairs_adopted_on_tie: int = 0
    applied_from_runtime: int = 0
    applied_from_private_fallback: int = 0


def choose_deterministic(scored: list[CandidateScore], fallback: CandidateScore) -> CandidateScore:
    best: CandidateScore | None = None
    for item in scored:
        if best is None or item.score > best.score:
            best = item
    return best or fallback


def should_adopt(current: CandidateScore, suggested: CandidateScore, policy: ImprovePolicy) -> bool:
    if suggested.candidate.target.value == current.candidate.target.value:
        return False
    return round_score(suggested.score - current.score) >= policy.adopt_threshold


def select_best_candidate(
    scored: list[CandidateScore],
    step_target: Target,
    *,
    apply_selectors: bool,
    policy: ImprovePolicy,
) -> SelectionOutcome | None:
    if not scored:
        return None
    current = next((item for item in scored if item.candidate.origin == "current"), scored[0])
    selected = choose_deterministic(scored, current)
    improve_opportunity = should_adopt(current, selected, policy)
    current_dynamic = bool(current.candidate.target.dynamic_signals) or "dynamic_target" in current.reason_codes

    tie_candidate: CandidateScore | None = None
    if not improve_opportunity and current_dynamic:
        for item in scored:
            if item.candidate.target.value == current.candidate.target.value:
                continue
            if not is_runtime_repair_candidate(item.candidate) or item.match_count != 1:
                continue
            # Ties are measured without the runtime repair bonus.
            unbonused = item.score - runtime_repair_bonus(item, policy)
            if abs(round_score(unbonused - current.score)) <= policy.tie_epsilon:
                tie_candidate = item
                break

    effective = tie_candidate or selected
    tie_repair = tie_candidate is not None
    runtime_validated = effective.match_count == 1
    adopt = (improve_opportunity or tie_repair) and (not apply_selectors or runtime_validated)
    recommended = effective.candidate.target if adopt else step_target

    reason_codes: list[str] = []
    for code in (*current.reason_codes, *effective.reason_codes):
        if code not in reason_codes:
            reason_codes.append(code)

    return SelectionOutcome(
        current=current,
        selected=selected,
        effective=effective,
        improve_opportunity=improve_opportunity,
        tie_repair=tie_repair,
        adopt=adopt,
        recommended_target=recommended,
        confidence_delta=round_score(effective.score - current.score),
        reason_codes=tuple(reason_codes),
    )


def fallback_targets(
    selection: SelectionOutcome, scored: list[CandidateScore], policy: ImprovePolicy
) -> tuple[Target, ...]:
    selected_value = selection.effective.candidate.target.value
    fallbacks: list[Target] = []
    for item in scored:
        if len(fallbacks) >= policy.max_fallback_targets:
            break
        target = item.candidate.target
        if target.value == selected_value or item.match_count != 1 or item.score < policy.fallback_min_score:
            continue
        fallbacks.append(Target(value=target.value, kind=target.kind, source=target.source))
    return tuple(fallbacks)


def apply_selection(
    step: Step,
    selection: SelectionOutcome,
    scored: list[CandidateScore],
    diagnostics: DiagnosticsCollector,
    step_number: int,
    policy: ImprovePolicy,
    *,
    runtime_keys: set[tuple[str, str, tuple[str, ...]]] | None = None,
    private_fallback_keys: set[tuple[str, str, tuple[str, ...]]] | None = None,
) -> tuple[Step, ApplyMetrics]:
    """Return the step with the recommended target written back, or the step unchanged."""
    metrics = ApplyMetrics()
    if not selection.adopt:
        if selection.improve_opportunity:
            diagnostics.warn(
                "apply_requires_runtime_unique_match",
                f"Step {step_number}: skipped apply because candidate did not have a unique runtime match.",
            )
        return step, metrics

    effective = selection.effective
    if is_repair_candidate(effective.candidate):
        if selection.tie_repair:
            metrics.repairs_adopted_on_tie += 1
            diagnostics.info(
                "selector_repair_adopted_on_tie_for_dynamic_target",
                f"Step {step_number}: adopted dynamic selector repair candidate on score tie.",
            )
        metrics.repairs_applied += 1
        key = effective.candidate.target.key()
        if is_runtime_repair_candidate(effective.candidate) and key in (runtime_keys or set()):
            metrics.applied_from_runtime += 1
            if key in (private_fallback_keys or set()):
                metrics.applied_from_private_fallback += 1
        diagnostics.info(
            "selector_repair_applied",
            f"Step {step_number}: applied selector repair candidate ({', '.join(effective.reason_codes)}).",
        )

    target = replace(selection.recommended_target, fallbacks=fallback_targets(selection, scored, policy))
    return replace(step, target=target), metrics
