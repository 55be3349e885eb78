import asyncio

from page_fakes import FakePageHandle

from improvescript.candidate_generator import collect_candidates, generate_target_candidates
from improvescript.candidate_scorer import score_candidate_offline, score_candidates
from improvescript.diagnostics import DiagnosticsCollector
from improvescript.models import Step, Target, TargetCandidate
from improvescript.policy import ImproveOptions, ImprovePolicy
from improvescript.runtime_repair import RUNTIME_REPAIR_REASON
from improvescript.selection import apply_selection, select_best_candidate

POLICY = ImprovePolicy()
SUBMIT = Target("#submit", kind="css", source="recorded")
SAVE_ROLE = Target('get_by_role("button", name="Save")', source="derived")


def _candidate(target: Target, origin: str = "derived", *reasons: str) -> TargetCandidate:
    return TargetCandidate(id=f"{origin}-x", target=target, origin=origin, reason_codes=reasons)


def test_offline_score_is_pure_function_of_kind_and_flags() -> None:
    css = _candidate(SUBMIT, "current", "existing_target")
    assert score_candidate_offline(css, POLICY).score == 0.45
    assert score_candidate_offline(css, POLICY) == score_candidate_offline(css, POLICY)
    assert "runtime_unavailable" in score_candidate_offline(css, POLICY).reason_codes

    repaired = _candidate(Target('get_by_text(re.compile("treinen", re.IGNORECASE))'), "derived", "locator_repair_regex")
    assert score_candidate_offline(repaired, POLICY).score == 1.0

    dynamic = _candidate(Target('get_by_text("Breaking 12:30 update")'))
    # base 1.0 minus the 0.08 dynamic base penalty and 0.04 for news-like text
    assert score_candidate_offline(dynamic, POLICY).score == 0.88


def test_kind_ranking_without_page() -> None:
    kinds = ["locator_expression", "engine_selector", "css", "xpath", "engine_internal", "unknown"]
    scores = [score_candidate_offline(_candidate(Target("x", kind=kind)), POLICY).score for kind in kinds]
    assert scores == sorted(scores, reverse=True)
    assert scores == [1.0, 0.75, 0.45, 0.35, 0.2, 0.1]


def test_role_locator_beats_css_submit_and_is_applied() -> None:
    page = FakePageHandle(
        counts={SUBMIT.value: 1, SAVE_ROLE.value: 1},
        visible={SUBMIT.value, SAVE_ROLE.value},
    )
    candidates = [_candidate(SUBMIT, "current", "existing_target"), _candidate(SAVE_ROLE, "derived", "aria_role_name")]
    scored = asyncio.run(score_candidates(page, candidates, POLICY))

    assert [item.candidate.target.value for item in scored] == [SAVE_ROLE.value, SUBMIT.value]
    assert scored[0].score == 1.0
    assert scored[1].score == 0.725
    assert "unique_match" in scored[0].reason_codes and "visible_match" in scored[0].reason_codes

    selection = select_best_candidate(scored, SUBMIT, apply_selectors=True, policy=POLICY)
    assert selection is not None
    assert selection.improve_opportunity and selection.adopt
    assert selection.confidence_delta == 0.275
    assert selection.recommended_target == SAVE_ROLE

    diagnostics = DiagnosticsCollector()
    step, metrics = apply_selection(Step(action="click", target=SUBMIT), selection, scored, diagnostics, 1, POLICY)
    assert step.target is not None
    assert step.target.value == SAVE_ROLE.value
    assert [fallback.value for fallback in step.target.fallbacks] == [SUBMIT.value]
    assert metrics.repairs_applied == 0
    assert len(diagnostics) == 0


def test_non_unique_winner_is_not_applied() -> None:
    page = FakePageHandle(counts={SAVE_ROLE.value: 2}, visible={SAVE_ROLE.value})
    candidates = [_candidate(SUBMIT, "current", "existing_target"), _candidate(SAVE_ROLE, "derived", "aria_role_name")]
    scored = asyncio.run(score_candidates(page, candidates, POLICY))
    selection = select_best_candidate(scored, SUBMIT, apply_selectors=True, policy=POLICY)
    assert selection is not None
    assert selection.improve_opportunity and not selection.adopt

    diagnostics = DiagnosticsCollector()
    step, _ = apply_selection(Step(action="click", target=SUBMIT), selection, scored, diagnostics, 2, POLICY)
    assert step.target == SUBMIT
    assert diagnostics.codes() == ["apply_requires_runtime_unique_match"]


def test_runtime_repair_is_adopted_on_tie_for_dynamic_target() -> None:
    signals = frozenset({"contains_date_or_time_fragment", "contains_weather_or_news_fragment"})
    current = Target('get_by_role("link", name="Storm 12:30")', dynamic_signals=signals)
    repaired = Target(
        'get_by_role("link", name=re.compile("storm", re.IGNORECASE))',
        source="derived",
        dynamic_signals=signals,
    )
    page = FakePageHandle(counts={current.value: 1, repaired.value: 1}, visible={current.value, repaired.value})
    candidates = [_candidate(current, "current", "existing_target"), _candidate(repaired, "derived", RUNTIME_REPAIR_REASON)]
    scored = asyncio.run(score_candidates(page, candidates, POLICY))
    selection = select_best_candidate(scored, current, apply_selectors=True, policy=POLICY)

    assert selection is not None
    assert selection.tie_repair and selection.adopt
    assert selection.recommended_target.value == repaired.value

    diagnostics = DiagnosticsCollector()
    _, metrics = apply_selection(
        Step(action="click", target=current),
        selection,
        scored,
        diagnostics,
        1,
        POLICY,
        runtime_keys={repaired.key()},
    )
    assert metrics.repairs_adopted_on_tie == 1
    assert metrics.applied_from_runtime == 1
    assert diagnostics.codes() == ["selector_repair_adopted_on_tie_for_dynamic_target", "selector_repair_applied"]


def test_probe_failure_degrades_score() -> None:
    class BrokenPage(FakePageHandle):
        async def count(self, target: Target, timeout_ms: int) -> int:
            raise TimeoutError("probe timed out")

    scored = asyncio.run(score_candidates(BrokenPage(), [_candidate(SUBMIT, "current", "existing_target")], POLICY))
    assert scored[0].score == 0.225
    assert "runtime_resolution_failed" in scored[0].reason_codes


def test_generate_target_candidates_normalizes_selectors() -> None:
    css = generate_target_candidates(SUBMIT)
    assert [(item.id, item.target.value) for item in css] == [("current-1", "#submit"), ("derived-2", 'locator("#submit")')]

    engine = generate_target_candidates(Target("data-testid=login", kind="engine_selector"))
    assert engine[1].target.value == 'get_by_test_id("login")'
    assert engine[1].reason_codes == ("engine_data_testid_to_expression",)

    xpath = generate_target_candidates(Target("//button", kind="xpath"))
    assert xpath[1].target.value == 'locator("xpath=//button")'


def test_engine_text_selector_keeps_quoted_exactness() -> None:
    quoted = generate_target_candidates(Target('text="Sign in"', kind="engine_selector"))
    assert quoted[1].target.value == 'get_by_text("Sign in", exact=True)'
    assert quoted[1].reason_codes == ("engine_text_to_expression",)

    bare = generate_target_candidates(Target("text=Sign in", kind="engine_selector"))
    assert bare[1].target.value == 'get_by_text("Sign in")'


def test_collect_candidates_adds_aria_candidates_and_respects_runtime_kill_switch() -> None:
    target = Target('get_by_text("Breaking 12:30 update", exact=True)')
    page = FakePageHandle(
        counts={target.value: 1},
        element_snapshots={target.value: '- textbox "Search news"'},
        attributes={(target.value, "placeholder"): "Search"},
    )
    diagnostics = DiagnosticsCollector()
    options = ImproveOptions(disable_runtime_regen=True)
    collection = asyncio.run(collect_candidates(Step(action="click", target=target), page, 1, diagnostics, options))

    values = [candidate.target.value for candidate in collection.candidates]
    assert values[0] == target.value
    assert 'get_by_role("textbox", name="Search news")' in values
    assert 'get_by_label("Search news")' in values
    assert 'get_by_placeholder("Search")' in values
    assert collection.repairs_added >= 1
    assert collection.candidates[0].target.dynamic_signals
    assert "selector_repair_playwright_runtime_disabled" in diagnostics.codes()
