from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

TargetKind = Literal["locator_expression", "engine_selector", "css", "xpath", "engine_internal", "unknown"]
TargetSource = Literal["manual", "recorded", "derived"]
CandidateOrigin = Literal["current", "derived"]
AssertionSource = Literal["deterministic", "snapshot_native", "snapshot_cli"]
ApplyStatus = Literal[
    "applied",
    "skipped_low_confidence",
    "skipped_runtime_failure",
    "skipped_policy",
    "skipped_existing",
    "not_requested",
]
StepAction = Literal[
    "navigate",
    "click",
    "dblclick",
    "hover",
    "check",
    "uncheck",
    "fill",
    "press",
    "select",
    "assert_visible",
    "assert_text",
    "assert_value",
    "assert_checked",
    "assert_enabled",
    "assert_url",
    "assert_title",
]

TARGET_KINDS: tuple[TargetKind, ...] = (
    "locator_expression",
    "engine_selector",
    "css",
    "xpath",
    "engine_internal",
    "unknown",
)
TARGET_SOURCES: tuple[TargetSource, ...] = ("manual", "recorded", "derived")

# Required payload fields per action; every action must be listed here.
STEP_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "navigate": ("url",),
    "click": ("target",),
    "dblclick": ("target",),
    "hover": ("target",),
    "check": ("target",),
    "uncheck": ("target",),
    "fill": ("target", "text"),
    "press": ("target", "key"),
    "select": ("target", "value"),
    "assert_visible": ("target",),
    "assert_text": ("target", "text"),
    "assert_value": ("target", "value"),
    "assert_checked": ("target",),
    "assert_enabled": ("target",),
    "assert_url": ("url",),
    "assert_title": ("title",),
}

ASSERTION_ACTIONS = frozenset(action for action in STEP_REQUIRED_FIELDS if action.startswith("assert_"))
INTERACTION_ACTIONS = frozenset({"click", "dblclick", "hover", "press"})


@dataclass(frozen=True, slots=True)
class Target:
    value: str
    kind: TargetKind = "locator_expression"
    source: TargetSource = "manual"
    frame_path: tuple[str, ...] = ()
    dynamic_signals: frozenset[str] = frozenset()
    fallbacks: tuple[Target, ...] = ()

    def key(self) -> tuple[str, str, tuple[str, ...]]:
        return (self.value, self.kind, self.frame_path)


@dataclass(frozen=True, slots=True)
class Step:
    action: StepAction
    target: Target | None = None
    url: str | None = None
    text: str | None = None
    key: str | None = None
    value: str | None = None
    title: str | None = None
    checked: bool | None = None
    enabled: bool | None = None
    description: str | None = None
    timeout_ms: int | None = None

    @property
    def is_assertion(self) -> bool:
        return self.action in ASSERTION_ACTIONS

    @property
    def expected_checked(self) -> bool:
        return self.checked is not False

    @property
    def expected_enabled(self) -> bool:
        return self.enabled is not False


@dataclass(frozen=True, slots=True)
class TargetCandidate:
    id: str
    target: Target
    origin: CandidateOrigin
    reason_codes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CandidateScore:
    candidate: TargetCandidate
    score: float
    base_score: float
    uniqueness_score: float
    visibility_score: float
    probed: bool
    reason_codes: tuple[str, ...] = ()
    match_count: int | None = None


@dataclass(frozen=True, slots=True)
class SnapshotNode:
    role: str
    name: str | None = None
    text: str | None = None
    ref: str | None = None
    visible: bool = True
    enabled: bool = True
    expanded: bool | None = None
    level: int = 0


@dataclass(frozen=True, slots=True)
class StepSnapshot:
    index: int
    step: Step
    pre_snapshot: str
    post_snapshot: str
    pre_url: str | None = None
    post_url: str | None = None
    pre_title: str | None = None
    post_title: str | None = None


@dataclass(frozen=True, slots=True)
class AssertionCandidate:
    step_index: int
    after_action: StepAction
    candidate: Step
    confidence: float
    rationale: str
    candidate_source: AssertionSource
    stability_score: float | None = None
    dynamic_signals: frozenset[str] = frozenset()
    stable_structural: bool = False
    coverage_fallback: bool = False
    apply_status: ApplyStatus | None = None
    apply_message: str | None = None
    forced_by_coverage: bool = False


@dataclass(frozen=True, slots=True)
class StepFinding:
    index: int
    action: StepAction
    changed: bool
    old_target: Target
    recommended_target: Target
    confidence: float
    old_score: float = 0.0
    confidence_delta: float = 0.0
    reason_codes: tuple[str, ...] = ()
    candidates: tuple[CandidateScore, ...] = ()


@dataclass(slots=True)
class PassCounters:
    steps_total: int = 0
    steps_with_target: int = 0
    candidates_generated: int = 0
    selector_repairs_generated: int = 0
    selector_repairs_adopted: int = 0
    selectors_recommended: int = 0
    selectors_applied: int = 0
    assertion_candidates: int = 0
    assertions_filtered_volatile: int = 0
    assertions_applied: int = 0
    assertions_skipped: int = 0
    extra: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, int]:
        payload = {
            "steps_total": self.steps_total,
            "steps_with_target": self.steps_with_target,
            "candidates_generated": self.candidates_generated,
            "selector_repairs_generated": self.selector_repairs_generated,
            "selector_repairs_adopted": self.selector_repairs_adopted,
            "selectors_recommended": self.selectors_recommended,
            "selectors_applied": self.selectors_applied,
            "assertion_candidates": self.assertion_candidates,
            "assertions_filtered_volatile": self.assertions_filtered_volatile,
            "assertions_applied": self.assertions_applied,
            "assertions_skipped": self.assertions_skipped,
        }
        payload.update(self.extra)
        return payload
