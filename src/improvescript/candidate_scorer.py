from __future__ import annotations

from .dynamic_signals import EXACT_TRUE, HEADLINE_LIKE_TEXT, WEATHER_OR_NEWS_FRAGMENT, detect_target_signals
from .models import CandidateScore, TargetCandidate
from .page_handle import PageHandle
from .policy import ImprovePolicy
from .runtime_repair import RUNTIME_REPAIR_REASON

_REPAIR_PREFIX = "locator_repair_"


def round_score(value: float) -> float:
    return round(value, 3)


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, value))


def candidate_signals(candidate: TargetCandidate, policy: ImprovePolicy) -> frozenset[str]:
    target = candidate.target
    return frozenset(target.dynamic_signals | detect_target_signals(target, policy.signals))


def dynamic_penalty(candidate: TargetCandidate, policy: ImprovePolicy) -> float:
    signals = candidate_signals(candidate, policy)
    if not signals:
        return 0.0
    penalty = policy.dynamic_penalty_base
    if EXACT_TRUE in signals:
        penalty += policy.dynamic_penalty_exact
    if signals & {HEADLINE_LIKE_TEXT, WEATHER_OR_NEWS_FRAGMENT}:
        penalty += policy.dynamic_penalty_headline
    return min(penalty, policy.dynamic_penalty_cap)


def is_repair_candidate(candidate: TargetCandidate) -> bool:
    return any(code.startswith(_REPAIR_PREFIX) for code in candidate.reason_codes)


def is_runtime_repair_candidate(candidate: TargetCandidate) -> bool:
    return RUNTIME_REPAIR_REASON in candidate.reason_codes


def repair_bonus(candidate: TargetCandidate, policy: ImprovePolicy) -> float:
    if candidate.origin != "derived" or not is_repair_candidate(candidate):
        return 0.0
    if is_runtime_repair_candidate(candidate):
        return 0.0
    return policy.repair_bonus


def runtime_repair_bonus(score: CandidateScore, policy: ImprovePolicy) -> float:
    if is_runtime_repair_candidate(score.candidate) and score.match_count == 1:
        return policy.runtime_repair_bonus
    return 0.0


def score_candidate_offline(candidate: TargetCandidate, policy: ImprovePolicy) -> CandidateScore:
    """Score without a page: a pure function of kind, repair provenance and dynamic signals."""
    base = policy.base_score(candidate.target.kind)
    score = clamp_score(base + repair_bonus(candidate, policy) - dynamic_penalty(candidate, policy))
    return CandidateScore(
        candidate=candidate,
        score=round_score(score),
        base_score=base,
        uniqueness_score=0.0,
        visibility_score=0.0,
        probed=False,
        reason_codes=(*candidate.reason_codes, "runtime_unavailable"),
    )


async def score_candidate(page: PageHandle, candidate: TargetCandidate, policy: ImprovePolicy) -> CandidateScore:
    base = policy.base_score(candidate.target.kind)
    adjustment = repair_bonus(candidate, policy) - dynamic_penalty(candidate, policy)
    timeout_ms = policy.probe_timeout_ms

    try:
        match_count = await page.count(candidate.target, timeout_ms)
        if match_count == 1:
            uniqueness = 1.0
        elif match_count == 0:
            uniqueness = 0.0
        else:
            uniqueness = policy.multiple_match_uniqueness
        visible = match_count > 0 and await page.is_visible(candidate.target, timeout_ms)
    except Exception:
        return CandidateScore(
            candidate=candidate,
            score=round_score(clamp_score(base * policy.base_weight + adjustment)),
            base_score=base,
            uniqueness_score=0.0,
            visibility_score=0.0,
            probed=True,
            reason_codes=(*candidate.reason_codes, "runtime_resolution_failed"),
        )

    visibility = 1.0 if visible else 0.0
    reason_codes = list(candidate.reason_codes)
    if match_count == 0:
        reason_codes.append("no_matches")
    elif match_count > 1:
        reason_codes.append("multiple_matches")
    else:
        reason_codes.append("unique_match")
    if visible:
        reason_codes.append("visible_match")

    bonus = policy.runtime_repair_bonus if is_runtime_repair_candidate(candidate) and match_count == 1 else 0.0
    raw = (
        base * policy.base_weight
        + uniqueness * policy.uniqueness_weight
        + visibility * policy.visibility_weight
        + adjustment
        + bonus
    )
    return CandidateScore(
        candidate=candidate,
        score=round_score(clamp_score(raw)),
        base_score=base,
        uniqueness_score=uniqueness,
        visibility_score=visibility,
        probed=True,
        reason_codes=tuple(reason_codes),
        match_count=match_count,
    )


async def score_candidates(
    page: PageHandle | None,
    candidates: list[TargetCandidate],
    policy: ImprovePolicy,
) -> list[CandidateScore]:
    """Score every candidate one probe at a time and sort by score, keeping generation order on ties."""
    scored: list[CandidateScore] = []
    for candidate in candidates:
        if page is None:
            scored.append(score_candidate_offline(candidate, policy))
        else:
            scored.append(await score_candidate(page, candidate, policy))
    return sorted(scored, key=lambda item: -item.score)
