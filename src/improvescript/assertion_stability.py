from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from typing import Iterable

from .dynamic_signals import LONG_TEXT, NAVIGATE_CONTEXT, detect_text_signals
from .errors import LocatorExpressionError
from .locator_expression import parse_locator_expression
from .models import AssertionCandidate
from .policy import ImprovePolicy

SNAPSHOT_SOURCES = frozenset({"snapshot_native", "snapshot_cli"})
HIGH_SIGNAL_ROLES = frozenset({"heading", "alert", "status"})

VOLUME_CAP_MESSAGE = "Skipped by policy: snapshot candidate cap reached for this source step."

_CATEGORY_BY_ACTION = {
    "assert_text": "text",
    "assert_visible": "visible",
    "assert_enabled": "state",
}


def is_snapshot_sourced(candidate: AssertionCandidate) -> bool:
    return candidate.candidate_source in SNAPSHOT_SOURCES


def target_role(candidate: AssertionCandidate) -> str | None:
    """Role argument of a `get_by_role(...)` target, if the target is one."""
    target = candidate.candidate.target
    if target is None or target.kind != "locator_expression":
        return None
    try:
        plan = parse_locator_expression(target.value)
    except LocatorExpressionError:
        return None
    if not plan.calls or plan.calls[0].method != "get_by_role" or not plan.calls[0].args:
        return None
    role = plan.calls[0].args[0]
    return role if isinstance(role, str) else None


def assessed_text(candidate: AssertionCandidate) -> str:
    step = candidate.candidate
    if step.action == "assert_text":
        return step.text or ""
    if step.action == "assert_title":
        return step.title or ""
    return ""


def assess_stability(candidate: AssertionCandidate, policy: ImprovePolicy | None = None) -> AssertionCandidate:
    """Return the candidate with its stability score and volatility tags filled in."""
    policy = policy or ImprovePolicy()
    action = candidate.candidate.action
    score = candidate.confidence
    signals: set[str] = set(candidate.dynamic_signals)

    if candidate.after_action == "navigate":
        score -= 0.18
        signals.add(NAVIGATE_CONTEXT)
    if is_snapshot_sourced(candidate):
        score -= 0.04

    if action in {"assert_value", "assert_checked"}:
        score += 0.08
    elif action == "assert_enabled":
        score += 0.07
    elif action in {"assert_url", "assert_title"}:
        score += 0.05

    text = assessed_text(candidate).strip()
    if action == "assert_text" and text:
        if 4 <= len(text) <= 48:
            score += 0.05
        elif len(text) > 90:
            score -= 0.08
            signals.add(LONG_TEXT)

    if target_role(candidate) in HIGH_SIGNAL_ROLES:
        score += 0.08

    if action == "assert_visible" and is_snapshot_sourced(candidate):
        score += 0.06 if candidate.stable_structural else -0.06

    signals.update(detect_text_signals(text, policy.signals))
    penalty = sum(policy.signal_penalties.get(signal, 0.0) for signal in signals)
    score -= min(penalty, policy.signal_penalty_cap)

    return replace(
        candidate,
        stability_score=round(max(0.0, min(1.0, score)), 3),
        dynamic_signals=frozenset(signals),
    )


def ranking_score(candidate: AssertionCandidate) -> float:
    return candidate.stability_score if candidate.stability_score is not None else candidate.confidence


def is_hard_filtered(candidate: AssertionCandidate, policy: ImprovePolicy | None = None) -> bool:
    """Snapshot-sourced text assertions carrying a hard-filter flag are never offered."""
    policy = policy or ImprovePolicy()
    if candidate.candidate.action != "assert_text" or not is_snapshot_sourced(candidate):
        return False
    return bool(candidate.dynamic_signals & policy.hard_filter_flags)


def apply_category_caps(
    candidates: Iterable[AssertionCandidate],
    policy: ImprovePolicy | None = None,
) -> list[AssertionCandidate]:
    """Keep at most the per-step text/visible/state cap of snapshot candidates, best stability first.

    Coverage fallbacks and non-snapshot candidates are never capped here. Input order is preserved.
    """
    policy = policy or ImprovePolicy()
    caps = {"text": policy.text_cap, "visible": policy.visible_cap, "state": policy.state_cap}
    items = list(candidates)
    groups: dict[tuple[int, str], list[int]] = defaultdict(list)
    for position, candidate in enumerate(items):
        category = _CATEGORY_BY_ACTION.get(candidate.candidate.action)
        if category is None or candidate.coverage_fallback or not is_snapshot_sourced(candidate):
            continue
        groups[(candidate.step_index, category)].append(position)

    dropped: set[int] = set()
    for (_, category), positions in groups.items():
        ranked = sorted(positions, key=lambda position: (-ranking_score(items[position]), position))
        dropped.update(ranked[caps[category]:])
    return [candidate for position, candidate in enumerate(items) if position not in dropped]


def snapshot_volume_overflow(
    candidates: list[AssertionCandidate],
    policy: ImprovePolicy | None = None,
) -> set[int]:
    """Positions of snapshot-sourced candidates beyond the per-step volume cap."""
    policy = policy or ImprovePolicy()
    groups: dict[int, list[int]] = defaultdict(list)
    for position, candidate in enumerate(candidates):
        if is_snapshot_sourced(candidate):
            groups[candidate.step_index].append(position)

    overflow: set[int] = set()
    for positions in groups.values():
        ranked = sorted(
            positions,
            key=lambda position: (
                -ranking_score(candidates[position]),
                -candidates[position].confidence,
                position,
            ),
        )
        cap = policy.snapshot_volume_cap(candidates[ranked[0]].after_action)
        overflow.update(ranked[cap:])
    return overflow
