from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .assertion_apply import COVERAGE_ACTIONS
from .diagnostics import Diagnostic
from .models import AssertionCandidate, PassCounters, Step, StepFinding
from .steps import step_to_dict, target_to_dict


def _rate(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total, 3)


def coverage_metrics(
    steps: Sequence[Step],
    candidates: Iterable[AssertionCandidate],
    original_indexes: Sequence[int] | None = None,
) -> dict[str, Any]:
    """How many coverable source steps received a candidate and how many an applied assertion.

    Candidate indexes refer to recorded steps; `original_indexes` maps each of `steps` back to one.
    """
    origins = list(original_indexes) if original_indexes else list(range(len(steps)))
    coverable = {origins[index] for index, step in enumerate(steps) if step.action in COVERAGE_ACTIONS}
    items = list(candidates)
    with_candidates = {item.step_index for item in items if item.step_index in coverable}
    with_applied = {
        item.step_index for item in items if item.step_index in coverable and item.apply_status == "applied"
    }
    fallbacks = [item for item in items if item.coverage_fallback]
    return {
        "total": len(coverable),
        "with_candidates": len(with_candidates),
        "with_applied": len(with_applied),
        "candidate_rate": _rate(len(with_candidates), len(coverable)),
        "applied_rate": _rate(len(with_applied), len(coverable)),
        "fallback_candidates": len(fallbacks),
        "fallback_applied": sum(1 for item in fallbacks if item.apply_status == "applied"),
        "forced_by_coverage": sum(1 for item in items if item.forced_by_coverage),
    }


def finding_to_dict(finding: StepFinding) -> dict[str, Any]:
    return {
        "index": finding.index,
        "action": finding.action,
        "changed": finding.changed,
        "old_target": target_to_dict(finding.old_target),
        "recommended_target": target_to_dict(finding.recommended_target),
        "old_score": finding.old_score,
        "recommended_score": finding.confidence,
        "confidence_delta": finding.confidence_delta,
        "reason_codes": list(finding.reason_codes),
    }


def assertion_candidate_to_dict(candidate: AssertionCandidate) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": candidate.step_index,
        "after_action": candidate.after_action,
        "candidate": step_to_dict(candidate.candidate),
        "confidence": candidate.confidence,
        "rationale": candidate.rationale,
        "candidate_source": candidate.candidate_source,
        "coverage_fallback": candidate.coverage_fallback,
    }
    if candidate.stability_score is not None:
        payload["stability_score"] = candidate.stability_score
    if candidate.dynamic_signals:
        payload["volatility_flags"] = sorted(candidate.dynamic_signals)
    if candidate.stable_structural:
        payload["stable_structural"] = True
    if candidate.apply_status is not None:
        payload["apply_status"] = candidate.apply_status
    if candidate.apply_message:
        payload["apply_message"] = candidate.apply_message
    if candidate.forced_by_coverage:
        payload["forced_by_coverage"] = True
    return payload


@dataclass(slots=True)
class ImproveReport:
    source_steps: list[Step]
    output_steps: list[Step]
    counters: PassCounters
    findings: list[StepFinding] = field(default_factory=list)
    assertion_candidates: list[AssertionCandidate] = field(default_factory=list)
    diagnostics: tuple[Diagnostic, ...] = ()
    failed_step_indexes: list[int] = field(default_factory=list)
    source_step_indexes: list[int] = field(default_factory=list)
    removed_step_indexes: list[int] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, Any]:
        statuses = Counter(item.apply_status for item in self.assertion_candidates if item.apply_status)
        payload: dict[str, Any] = dict(self.counters.as_dict())
        payload["assertion_status_counts"] = dict(sorted(statuses.items()))
        payload["assertion_coverage"] = coverage_metrics(
            self.source_steps, self.assertion_candidates, self.source_step_indexes
        )
        payload["runtime_failed_steps"] = len(self.failed_step_indexes)
        payload["runtime_removed_steps"] = len(self.removed_step_indexes)
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "step_findings": [finding_to_dict(item) for item in self.findings],
            "assertion_candidates": [assertion_candidate_to_dict(item) for item in self.assertion_candidates],
            "diagnostics": [item.as_dict() for item in self.diagnostics],
        }

    def output_payload(self) -> list[dict[str, Any]]:
        return [step_to_dict(step) for step in self.output_steps]
