from __future__ import annotations

import re
from typing import Iterable, Sequence

from .dynamic_signals import classify_navigation_like
from .locator_expression import format_call
from .models import AssertionCandidate, AssertionSource, SnapshotNode, Step, StepFinding, StepSnapshot, Target
from .policy import ImprovePolicy
from .snapshot import diff_snapshots, node_signature, parse_snapshot
from .steps import target_key

VISIBLE_ROLES = frozenset(
    {
        "alert",
        "button",
        "checkbox",
        "combobox",
        "dialog",
        "heading",
        "link",
        "menuitem",
        "navigation",
        "radio",
        "status",
        "switch",
        "tab",
        "textbox",
    }
)
STABLE_STRUCTURAL_ROLES = frozenset({"navigation", "banner", "main", "contentinfo"})
TEXT_ROLES = frozenset({"heading", "status", "alert", "tab", "link"})
STATE_ROLES = frozenset({"button", "textbox", "combobox", "checkbox", "radio", "switch", "tab", "link"})
INVENTORY_VISIBLE_ROLES = frozenset({"navigation", "banner", "main", "contentinfo", "dialog", "status", "alert"})

_TEXT_ROLE_PRIORITY = {"heading": 0, "alert": 1, "status": 2, "tab": 3, "link": 4}
_VISIBLE_ROLE_PRIORITY = {"heading": 0, "dialog": 1, "alert": 2, "link": 3, "button": 4, "tab": 5}
_STRUCTURAL_ROLE_PRIORITY = {"navigation": 0, "banner": 1, "main": 2, "contentinfo": 3}
_INVENTORY_TEXT_PRIORITY = {"heading": 0, "status": 1, "alert": 2, "link": 3, "tab": 4}
_INVENTORY_VISIBLE_PRIORITY = {
    "navigation": 0,
    "banner": 1,
    "main": 2,
    "contentinfo": 3,
    "dialog": 4,
    "status": 5,
    "alert": 6,
}

_URL_TITLE_ACTIONS = frozenset({"click", "navigate"})
_NUMERIC_ONLY = re.compile(r"^\d+(?:[.,]\d+)?$")
_URL_TEXT = re.compile(r"^https?://", re.IGNORECASE)
_HAS_LETTER = re.compile(r"[a-zA-Z]")

COVERAGE_FALLBACK_CONFIDENCE = 0.76
URL_CONFIDENCE = 0.88
TITLE_CONFIDENCE = 0.82
TEXT_CHANGED_CONFIDENCE = 0.85
ENABLED_CONFIDENCE = 0.8
VISIBLE_DELTA_CONFIDENCE = 0.78
TEXT_DELTA_CONFIDENCE = 0.82
STABLE_VISIBLE_CONFIDENCE = 0.84
INVENTORY_TEXT_CONFIDENCE = 0.79
INVENTORY_VISIBLE_CONFIDENCE = 0.77

_SOURCE_DEDUPE_RANK = {"snapshot_native": 2, "deterministic": 1}


def normalize_for_compare(value: str | None) -> str:
    return re.sub(r"\s+", " ", (value or "").strip().lower())


def is_noisy_text(value: str | None) -> bool:
    text = (value or "").strip()
    if len(text) < 2 or len(text) > 120:
        return True
    if _NUMERIC_ONLY.match(text) or _URL_TEXT.match(text):
        return True
    return not _HAS_LETTER.search(text)


def acted_target_hint(step: Step) -> str:
    if step.action in {"navigate", "assert_url"}:
        return step.url or ""
    if step.action == "assert_title":
        return step.title or ""
    return step.target.value if step.target is not None else ""


def matches_acted_target(value: str | None, hint: str) -> bool:
    normalized_value = normalize_for_compare(value)
    normalized_hint = normalize_for_compare(hint)
    if not normalized_value or not normalized_hint:
        return False
    return normalized_value in normalized_hint or normalized_hint in normalized_value


def role_target(role: str, name: str, frame_path: tuple[str, ...] = ()) -> Target:
    return Target(
        value=format_call("get_by_role", role, name=name),
        kind="locator_expression",
        source="derived",
        frame_path=frame_path,
    )


def text_target(node: SnapshotNode, text: str, frame_path: tuple[str, ...] = (), *, any_named: bool = False) -> Target:
    if node.name and (any_named or node.role in VISIBLE_ROLES):
        return role_target(node.role, node.name, frame_path)
    return Target(
        value=format_call("get_by_text", text),
        kind="locator_expression",
        source="derived",
        frame_path=frame_path,
    )


def _frame_path(step: Step) -> tuple[str, ...]:
    return step.target.frame_path if step.target is not None else ()


def _node_text(node: SnapshotNode) -> str:
    return (node.text or node.name or "").strip()


def build_deterministic_candidates(
    steps: Sequence[Step],
    findings: Iterable[StepFinding] = (),
    policy: ImprovePolicy | None = None,
) -> list[AssertionCandidate]:
    """Action-keyed candidates: filled and selected values, check state, and a visibility fallback."""
    signals = (policy or ImprovePolicy()).signals
    by_index = {finding.index: finding for finding in findings}
    out: list[AssertionCandidate] = []

    for index, step in enumerate(steps):
        if step.action == "navigate" or step.is_assertion or step.target is None:
            continue
        finding = by_index.get(index)
        target = finding.recommended_target if finding is not None else step.target
        target = Target(
            value=target.value,
            kind=target.kind,
            source=target.source,
            frame_path=target.frame_path,
        )
        confidence = max(0.0, min(1.0, finding.confidence)) if finding is not None else 0.5

        if classify_navigation_like(Step(action=step.action, target=target), signals):
            continue

        if step.action == "fill":
            out.append(
                AssertionCandidate(
                    step_index=index,
                    after_action=step.action,
                    candidate=Step(action="assert_value", target=target, value=step.text or ""),
                    confidence=max(0.7, confidence),
                    rationale="Filled input values are stable candidates for value assertions.",
                    candidate_source="deterministic",
                )
            )
        elif step.action == "select":
            out.append(
                AssertionCandidate(
                    step_index=index,
                    after_action=step.action,
                    candidate=Step(action="assert_value", target=target, value=step.value or ""),
                    confidence=max(0.7, confidence),
                    rationale="Selected options can be validated with an assert_value step.",
                    candidate_source="deterministic",
                )
            )
        elif step.action in {"check", "uncheck"}:
            out.append(
                AssertionCandidate(
                    step_index=index,
                    after_action=step.action,
                    candidate=Step(action="assert_checked", target=target, checked=step.action == "check"),
                    confidence=max(0.75, confidence),
                    rationale="Check state transitions map directly to assert_checked.",
                    candidate_source="deterministic",
                )
            )
        elif step.action in {"click", "dblclick", "press", "hover"}:
            out.append(
                AssertionCandidate(
                    step_index=index,
                    after_action=step.action,
                    candidate=Step(action="assert_visible", target=target),
                    confidence=COVERAGE_FALLBACK_CONFIDENCE,
                    rationale="Coverage fallback: verify interacted element remains visible after action.",
                    candidate_source="deterministic",
                    coverage_fallback=True,
                )
            )
    return out


def build_url_candidates(snapshot: StepSnapshot, source: AssertionSource) -> list[AssertionCandidate]:
    pre, post = snapshot.pre_url, snapshot.post_url
    if not pre or not post or pre == post or snapshot.step.action not in _URL_TITLE_ACTIONS:
        return []
    return [
        AssertionCandidate(
            step_index=snapshot.index,
            after_action=snapshot.step.action,
            candidate=Step(action="assert_url", url=post),
            confidence=URL_CONFIDENCE,
            rationale="URL changed after navigation action.",
            candidate_source=source,
        )
    ]


def build_title_candidates(snapshot: StepSnapshot, source: AssertionSource) -> list[AssertionCandidate]:
    pre, post = snapshot.pre_title, snapshot.post_title
    if not pre or not post or pre == post or snapshot.step.action not in _URL_TITLE_ACTIONS:
        return []
    if is_noisy_text(post):
        return []
    return [
        AssertionCandidate(
            step_index=snapshot.index,
            after_action=snapshot.step.action,
            candidate=Step(action="assert_title", title=post),
            confidence=TITLE_CONFIDENCE,
            rationale="Page title changed after action.",
            candidate_source=source,
        )
    ]


def _text_candidates(
    snapshot: StepSnapshot,
    nodes: Iterable[SnapshotNode],
    source: AssertionSource,
    hint: str,
) -> list[AssertionCandidate]:
    qualifying = []
    for node in nodes:
        text = _node_text(node)
        if node.role not in TEXT_ROLES or not node.visible or is_noisy_text(text):
            continue
        if matches_acted_target(text, hint):
            continue
        qualifying.append((node, text))
    qualifying.sort(key=lambda item: _TEXT_ROLE_PRIORITY.get(item[0].role, 5))
    frame_path = _frame_path(snapshot.step)
    return [
        AssertionCandidate(
            step_index=snapshot.index,
            after_action=snapshot.step.action,
            candidate=Step(action="assert_text", target=text_target(node, text, frame_path), text=text),
            confidence=TEXT_DELTA_CONFIDENCE,
            rationale="Snapshot delta identified new high-signal text after this step.",
            candidate_source=source,
        )
        for node, text in qualifying
    ]


def _visible_candidates(
    snapshot: StepSnapshot,
    nodes: Iterable[SnapshotNode],
    source: AssertionSource,
    hint: str,
    excluded: set[str],
) -> list[AssertionCandidate]:
    qualifying = [
        node
        for node in nodes
        if node.role in VISIBLE_ROLES
        and node.visible
        and node.name
        and not is_noisy_text(node.name)
        and not matches_acted_target(node.name, hint)
    ]
    qualifying.sort(key=lambda node: _VISIBLE_ROLE_PRIORITY.get(node.role, 6))
    frame_path = _frame_path(snapshot.step)
    out: list[AssertionCandidate] = []
    for node in qualifying:
        target = role_target(node.role, node.name or "", frame_path)
        if normalize_for_compare(target.value) in excluded:
            continue
        out.append(
            AssertionCandidate(
                step_index=snapshot.index,
                after_action=snapshot.step.action,
                candidate=Step(action="assert_visible", target=target),
                confidence=VISIBLE_DELTA_CONFIDENCE,
                rationale="Snapshot delta found a new role/name element after this step.",
                candidate_source=source,
            )
        )
    return out


def build_snapshot_native_candidates(snapshots: Iterable[StepSnapshot]) -> list[AssertionCandidate]:
    """Candidates from the identity-keyed diff of the ARIA snapshots taken around each step.

    Per-step category caps are not applied here; they are applied after stability ranking.
    """
    candidates: list[AssertionCandidate] = []
    for snapshot in snapshots:
        before = parse_snapshot(snapshot.pre_snapshot)
        after = parse_snapshot(snapshot.post_snapshot)
        diff = diff_snapshots(before, after)
        hint = acted_target_hint(snapshot.step)
        frame_path = _frame_path(snapshot.step)
        action = snapshot.step.action

        candidates.extend(build_url_candidates(snapshot, "snapshot_native"))
        candidates.extend(build_title_candidates(snapshot, "snapshot_native"))

        for change in diff.text_changes:
            new_text = _node_text(change.after)
            if change.after.role not in TEXT_ROLES or is_noisy_text(new_text):
                continue
            if matches_acted_target(new_text, hint):
                continue
            candidates.append(
                AssertionCandidate(
                    step_index=snapshot.index,
                    after_action=action,
                    candidate=Step(
                        action="assert_text",
                        target=text_target(change.after, new_text, frame_path),
                        text=new_text,
                    ),
                    confidence=TEXT_CHANGED_CONFIDENCE,
                    rationale="Text content changed after action.",
                    candidate_source="snapshot_native",
                )
            )

        for state in diff.state_changes:
            node = state.after
            if "enabled" not in state.changed or not node.enabled or state.before.enabled:
                continue
            if node.role not in STATE_ROLES or not node.name or is_noisy_text(node.name):
                continue
            if matches_acted_target(node.name, hint):
                continue
            candidates.append(
                AssertionCandidate(
                    step_index=snapshot.index,
                    after_action=action,
                    candidate=Step(
                        action="assert_enabled",
                        target=role_target(node.role, node.name, frame_path),
                        enabled=True,
                    ),
                    confidence=ENABLED_CONFIDENCE,
                    rationale="Element became enabled after action.",
                    candidate_source="snapshot_native",
                )
            )

        text_candidates = _text_candidates(snapshot, diff.appeared, "snapshot_native", hint)
        candidates.extend(text_candidates)
        excluded = {normalize_for_compare(item.candidate.target.value) for item in text_candidates if item.candidate.target}
        candidates.extend(_visible_candidates(snapshot, diff.appeared, "snapshot_native", hint, excluded))

        structural = [
            node
            for node in diff.stable
            if node.role in STABLE_STRUCTURAL_ROLES
            and node.name
            and not is_noisy_text(node.name)
            and not matches_acted_target(node.name, hint)
        ]
        structural.sort(key=lambda node: _STRUCTURAL_ROLE_PRIORITY.get(node.role, 5))
        for node in structural[:1]:
            candidates.append(
                AssertionCandidate(
                    step_index=snapshot.index,
                    after_action=action,
                    candidate=Step(action="assert_visible", target=role_target(node.role, node.name or "", frame_path)),
                    confidence=STABLE_VISIBLE_CONFIDENCE,
                    rationale="Stable structural element present in both pre- and post-snapshots.",
                    candidate_source="snapshot_native",
                    stable_structural=True,
                )
            )
    return candidates


def build_snapshot_cli_candidates(snapshots: Iterable[StepSnapshot]) -> list[AssertionCandidate]:
    """Delta-only variant: nodes of the post snapshot whose signature is absent before the step."""
    candidates: list[AssertionCandidate] = []
    for snapshot in snapshots:
        before_signatures = {node_signature(node) for node in parse_snapshot(snapshot.pre_snapshot)}
        delta = [node for node in parse_snapshot(snapshot.post_snapshot) if node_signature(node) not in before_signatures]
        if not delta:
            continue
        hint = acted_target_hint(snapshot.step)
        text_candidates = _text_candidates(snapshot, delta, "snapshot_cli", hint)
        candidates.extend(text_candidates)
        excluded = {normalize_for_compare(item.candidate.target.value) for item in text_candidates if item.candidate.target}
        candidates.extend(_visible_candidates(snapshot, delta, "snapshot_cli", hint, excluded))
    return candidates


def build_inventory_candidates(
    snapshots: Iterable[StepSnapshot],
    policy: ImprovePolicy | None = None,
) -> list[AssertionCandidate]:
    """Coverage-fallback candidates read from the full post-step inventory of steps without a delta."""
    policy = policy or ImprovePolicy()
    per_step_cap = max(policy.inventory_text_cap, policy.inventory_visible_cap)
    candidates: list[AssertionCandidate] = []

    for snapshot in snapshots:
        nodes = [node for node in parse_snapshot(snapshot.post_snapshot) if node.visible]
        if not nodes:
            continue
        hint = acted_target_hint(snapshot.step)
        frame_path = _frame_path(snapshot.step)
        step_candidates: list[AssertionCandidate] = []
        seen: set[str] = set()

        texts = [
            (node, _node_text(node))
            for node in nodes
            if node.role in TEXT_ROLES
            and not is_noisy_text(_node_text(node))
            and not matches_acted_target(_node_text(node), hint)
        ]
        texts.sort(key=lambda item: _INVENTORY_TEXT_PRIORITY.get(item[0].role, 5))
        text_count = 0
        for node, text in texts:
            if text_count >= policy.inventory_text_cap or len(step_candidates) >= per_step_cap:
                break
            target = text_target(node, text, frame_path, any_named=True)
            key = normalize_for_compare(target.value)
            if key in seen:
                continue
            seen.add(key)
            text_count += 1
            step_candidates.append(
                AssertionCandidate(
                    step_index=snapshot.index,
                    after_action=snapshot.step.action,
                    candidate=Step(action="assert_text", target=target, text=text),
                    confidence=INVENTORY_TEXT_CONFIDENCE,
                    rationale="Coverage fallback (inventory): full post-step aria inventory yielded high-signal text.",
                    candidate_source="snapshot_native",
                    coverage_fallback=True,
                )
            )

        landmarks = [
            node
            for node in nodes
            if node.role in INVENTORY_VISIBLE_ROLES
            and node.name
            and not is_noisy_text(node.name)
            and not matches_acted_target(node.name, hint)
        ]
        landmarks.sort(key=lambda node: _INVENTORY_VISIBLE_PRIORITY.get(node.role, 7))
        visible_count = 0
        for node in landmarks:
            if visible_count >= policy.inventory_visible_cap or len(step_candidates) >= per_step_cap:
                break
            target = role_target(node.role, node.name or "", frame_path)
            key = normalize_for_compare(target.value)
            if key in seen:
                continue
            seen.add(key)
            visible_count += 1
            step_candidates.append(
                AssertionCandidate(
                    step_index=snapshot.index,
                    after_action=snapshot.step.action,
                    candidate=Step(action="assert_visible", target=target),
                    confidence=INVENTORY_VISIBLE_CONFIDENCE,
                    rationale=(
                        "Coverage fallback (inventory): full post-step aria inventory "
                        "found stable landmark visibility."
                    ),
                    candidate_source="snapshot_native",
                    coverage_fallback=True,
                )
            )
        candidates.extend(step_candidates)
    return candidates


def assertion_candidate_key(candidate: AssertionCandidate) -> tuple[int, str, str]:
    step = candidate.candidate
    if step.action == "assert_url":
        key = f"url:{step.url}"
    elif step.action == "assert_title":
        key = f"title:{step.title}"
    else:
        key = target_key(step.target)
    return (candidate.step_index, step.action, key)


def _is_preferred(candidate: AssertionCandidate, existing: AssertionCandidate) -> bool:
    if candidate.coverage_fallback != existing.coverage_fallback:
        return not candidate.coverage_fallback
    if candidate.confidence != existing.confidence:
        return candidate.confidence > existing.confidence
    return _SOURCE_DEDUPE_RANK.get(candidate.candidate_source, 0) > _SOURCE_DEDUPE_RANK.get(
        existing.candidate_source, 0
    )


def dedupe_assertion_candidates(candidates: Iterable[AssertionCandidate]) -> list[AssertionCandidate]:
    """Keep one candidate per (step, action, target), preferring non-fallback, confidence, then source."""
    selected: dict[tuple[int, str, str], tuple[int, AssertionCandidate]] = {}
    for position, candidate in enumerate(candidates):
        key = assertion_candidate_key(candidate)
        existing = selected.get(key)
        if existing is None or _is_preferred(candidate, existing[1]):
            selected[key] = (position, candidate)
    return [candidate for _, candidate in sorted(selected.values(), key=lambda item: item[0])]
