from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from types import MappingProxyType
from typing import Literal, Mapping

from .models import AssertionSource

PolicyName = Literal["reliable", "balanced", "aggressive"]
AssertionMode = Literal["none", "candidates"]
SnapshotVisiblePolicy = Literal["stable_structural_only", "runtime_validated"]

DEFAULT_DYNAMIC_KEYWORDS: tuple[str, ...] = (
    "weather",
    "winterweer",
    "winter",
    "storm",
    "sneeuw",
    "rain",
    "regen",
    "temperatuur",
    "temperature",
    "breaking",
    "liveblog",
    "update",
    "live",
    "video",
    "vandaag",
    "today",
    "gisteren",
    "yesterday",
)

ALL_VOLATILITY_FLAGS = frozenset(
    {
        "contains_numeric_fragment",
        "contains_date_or_time_fragment",
        "contains_weather_or_news_fragment",
        "long_text",
        "contains_headline_like_text",
        "contains_pipe_separator",
    }
)

_KIND_BASE_SCORES = MappingProxyType(
    {
        "locator_expression": 1.0,
        "engine_selector": 0.75,
        "css": 0.45,
        "xpath": 0.35,
        "engine_internal": 0.2,
        "unknown": 0.1,
    }
)

_SIGNAL_PENALTIES = MappingProxyType(
    {
        "contains_numeric_fragment": 0.10,
        "contains_date_or_time_fragment": 0.12,
        "contains_weather_or_news_fragment": 0.12,
        "contains_headline_like_text": 0.10,
        "contains_pipe_separator": 0.08,
        "long_text": 0.10,
    }
)

_RELIABLE_ACTION_PRIORITY = MappingProxyType(
    {
        "assert_value": 0,
        "assert_checked": 1,
        "assert_text": 2,
        "assert_enabled": 3,
        "assert_url": 4,
        "assert_title": 5,
        "assert_visible": 6,
    }
)

_BALANCED_ACTION_PRIORITY = MappingProxyType(
    {
        "assert_text": 0,
        "assert_value": 1,
        "assert_checked": 2,
        "assert_enabled": 3,
        "assert_url": 4,
        "assert_title": 5,
        "assert_visible": 6,
    }
)

_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class SignalConfig:
    """Tunable heuristics for dynamic text detection. The keyword list is not exhaustive."""

    keywords: tuple[str, ...] = DEFAULT_DYNAMIC_KEYWORDS
    headline_min_chars: int = 30
    headline_min_words: int = 5
    long_fragment_chars: int = 48
    runtime_fragment_min_chars: int = 4


@dataclass(frozen=True, slots=True)
class ImprovePolicy:
    name: PolicyName = "reliable"

    kind_base_scores: Mapping[str, float] = field(default_factory=lambda: _KIND_BASE_SCORES)
    repair_bonus: float = 0.05
    runtime_repair_bonus: float = 0.01
    dynamic_penalty_base: float = 0.08
    dynamic_penalty_exact: float = 0.05
    dynamic_penalty_headline: float = 0.04
    dynamic_penalty_cap: float = 0.2
    base_weight: float = 0.5
    uniqueness_weight: float = 0.35
    visibility_weight: float = 0.15
    multiple_match_uniqueness: float = 0.3
    probe_timeout_ms: int = 1500
    adopt_threshold: float = 0.15
    tie_epsilon: float = 0.001
    max_fallback_targets: int = 2
    fallback_min_score: float = 0.5

    assertion_threshold: float = 0.75
    snapshot_text_min_score: float = 0.82
    coverage_fallback_confidence: float = 0.55
    applied_per_step_cap: int = 1
    snapshot_volume_cap_navigate: int = 1
    snapshot_volume_cap_other: int = 2
    text_cap: int = 2
    visible_cap: int = 3
    state_cap: int = 2
    inventory_text_cap: int = 2
    inventory_visible_cap: int = 1
    snapshot_visible_allowed: SnapshotVisiblePolicy = "stable_structural_only"
    hard_filter_flags: frozenset[str] = ALL_VOLATILITY_FLAGS
    action_priority: Mapping[str, int] = field(default_factory=lambda: _RELIABLE_ACTION_PRIORITY)
    signal_penalties: Mapping[str, float] = field(default_factory=lambda: _SIGNAL_PENALTIES)
    signal_penalty_cap: float = 0.30
    network_idle_timeout_ms: int = 2000

    signals: SignalConfig = field(default_factory=SignalConfig)

    def base_score(self, kind: str) -> float:
        return self.kind_base_scores.get(kind, self.kind_base_scores["unknown"])

    def snapshot_volume_cap(self, after_action: str) -> int:
        if after_action == "navigate":
            return self.snapshot_volume_cap_navigate
        return self.snapshot_volume_cap_other


_PRESETS: dict[str, ImprovePolicy] = {
    "reliable": ImprovePolicy(),
    "balanced": ImprovePolicy(
        name="balanced",
        applied_per_step_cap=2,
        snapshot_volume_cap_navigate=2,
        snapshot_volume_cap_other=3,
        snapshot_visible_allowed="runtime_validated",
        snapshot_text_min_score=0.78,
        hard_filter_flags=frozenset({"contains_headline_like_text", "contains_pipe_separator"}),
        action_priority=_BALANCED_ACTION_PRIORITY,
    ),
    "aggressive": ImprovePolicy(
        name="aggressive",
        applied_per_step_cap=3,
        snapshot_volume_cap_navigate=3,
        snapshot_volume_cap_other=4,
        snapshot_visible_allowed="runtime_validated",
        snapshot_text_min_score=0.72,
        hard_filter_flags=frozenset({"contains_headline_like_text"}),
        action_priority=_BALANCED_ACTION_PRIORITY,
    ),
}


def policy_preset(name: str) -> ImprovePolicy:
    normalized = str(name or "").strip().lower()
    if normalized not in _PRESETS:
        allowed = ", ".join(sorted(_PRESETS))
        raise ValueError(f"Unknown policy preset: {name!r}. Use one of: {allowed}.")
    return _PRESETS[normalized]


def _env_flag(name: str, environ: Mapping[str, str]) -> bool:
    return str(environ.get(name, "")).strip().lower() in _TRUTHY_ENV_VALUES


@dataclass(frozen=True, slots=True)
class ImproveOptions:
    apply_selectors: bool = False
    apply_assertions: bool = False
    assertions: AssertionMode = "candidates"
    assertion_source: AssertionSource = "snapshot_native"
    policy: ImprovePolicy = field(default_factory=ImprovePolicy)
    disable_runtime_regen: bool = False
    disable_internal_fallback: bool = False
    validation_timeout_ms: int = 5000
    base_url: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> ImproveOptions:
        env = os.environ if environ is None else environ
        options = cls(
            disable_runtime_regen=_env_flag("IMPROVESCRIPT_DISABLE_RUNTIME_REGEN", env),
            disable_internal_fallback=_env_flag("IMPROVESCRIPT_DISABLE_INTERNAL_FALLBACK", env),
        )
        if overrides:
            options = replace(options, **overrides)  # type: ignore[arg-type]
        return options

    @property
    def assertion_threshold(self) -> float:
        return self.policy.assertion_threshold
