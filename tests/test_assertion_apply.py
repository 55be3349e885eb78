import asyncio

from page_fakes import FakePageHandle

from improvescript.assertion_apply import (
    EXISTING_MESSAGE,
    FALLBACK_SUPPRESSED_MESSAGE,
    NETWORK_IDLE_MESSAGE,
    STRUCTURAL_ONLY_MESSAGE,
    CandidateOutcome,
    assertions_equivalent,
    insert_assertions,
    plan_coverage,
    policy_block_messages,
    select_for_apply,
    validate_candidates,
)
from improvescript.assertion_stability import assess_stability
from improvescript.models import AssertionCandidate, Step, Target
from improvescript.policy import ImproveOptions, ImprovePolicy, policy_preset

EMAIL = Target('get_by_label("Email")')
SIGN_IN = Target('get_by_role("button", name="Sign in")')
FILL = Step(action="fill", target=EMAIL, text="a@b.c")
CLICK = Step(action="click", target=SIGN_IN)


def _candidate(
    step_index: int,
    step: Step,
    *,
    confidence: float,
    source: str = "deterministic",
    fallback: bool = False,
    after_action: str = "click",
) -> AssertionCandidate:
    return assess_stability(
        AssertionCandidate(
            step_index=step_index,
            after_action=after_action,  # type: ignore[arg-type]
            candidate=step,
            confidence=confidence,
            rationale="test",
            candidate_source=source,  # type: ignore[arg-type]
            coverage_fallback=fallback,
        )
    )


def _run(
    page: FakePageHandle,
    steps: list[Step],
    candidates: list[AssertionCandidate],
    options: ImproveOptions | None = None,
) -> tuple[list[AssertionCandidate], dict[int, CandidateOutcome], set[int]]:
    options = options or ImproveOptions()
    policy = options.policy
    blocked = policy_block_messages(candidates, policy)
    plan = plan_coverage(steps, candidates, blocked, policy)
    selected, outcomes = select_for_apply(plan.candidates, blocked, plan.required, policy)
    outcomes.update(asyncio.run(validate_candidates(page, steps, plan.candidates, selected, plan.required, options)))
    return plan.candidates, outcomes, plan.required


def _fill_and_click_candidates() -> list[AssertionCandidate]:
    return [
        _candidate(0, Step(action="assert_value", target=EMAIL, value="a@b.c"), confidence=0.9, after_action="fill"),
        _candidate(0, Step(action="assert_visible", target=EMAIL), confidence=0.76, fallback=True, after_action="fill"),
        _candidate(1, Step(action="assert_visible", target=SIGN_IN), confidence=0.76, fallback=True),
    ]


def test_fallback_is_suppressed_only_where_a_stronger_candidate_exists() -> None:
    page = FakePageHandle()
    candidates, outcomes, required = _run(page, [FILL, CLICK], _fill_and_click_candidates())

    assert len(candidates) == 3
    assert required == {0, 2}
    assert outcomes[0] == CandidateOutcome("applied")
    assert outcomes[1] == CandidateOutcome("skipped_policy", FALLBACK_SUPPRESSED_MESSAGE)
    assert outcomes[2] == CandidateOutcome("applied")
    assert page.resets == 1
    assert page.executed == [
        ("fill", "analysis", EMAIL.value),
        ("assert_value", "playback", EMAIL.value),
        ("click", "analysis", SIGN_IN.value),
        ("assert_visible", "playback", SIGN_IN.value),
    ]


def test_required_candidate_is_forced_when_validation_fails() -> None:
    page = FakePageHandle(failing={"assert_visible"})
    _, outcomes, _ = _run(page, [FILL, CLICK], _fill_and_click_candidates())

    forced = outcomes[2]
    assert forced.status == "applied" and forced.forced
    assert forced.message is not None
    assert forced.message.startswith("Applied for coverage despite runtime validation failure:")


def test_non_required_failure_is_skipped_under_balanced_policy() -> None:
    alert = _candidate(
        0,
        Step(action="assert_text", target=Target('get_by_role("alert", name="Welcome")'), text="Welcome"),
        confidence=0.82,
        source="snapshot_native",
    )
    heading = _candidate(
        0,
        Step(action="assert_text", target=Target('get_by_role("heading", name="Dashboard")'), text="Dashboard"),
        confidence=0.82,
        source="snapshot_native",
    )
    page = FakePageHandle(failing={"assert_text"})
    _, outcomes, required = _run(page, [CLICK], [alert, heading], ImproveOptions(policy=policy_preset("balanced")))

    assert required == {0}
    assert outcomes[0].forced
    assert outcomes[1] == CandidateOutcome(
        "skipped_runtime_failure",
        'assert_text failed for get_by_role("heading", name="Dashboard")',
    )


def test_per_step_cap_skips_extra_candidates() -> None:
    alert = _candidate(
        0,
        Step(action="assert_text", target=Target('get_by_role("alert", name="Welcome")'), text="Welcome"),
        confidence=0.82,
        source="snapshot_native",
    )
    heading = _candidate(
        0,
        Step(action="assert_text", target=Target('get_by_role("heading", name="Dashboard")'), text="Dashboard"),
        confidence=0.82,
        source="snapshot_native",
    )
    _, outcomes, _ = _run(FakePageHandle(), [CLICK], [alert, heading])
    assert outcomes[0] == CandidateOutcome("applied")
    assert outcomes[1] == CandidateOutcome(
        "skipped_policy",
        "Skipped by policy: max 1 applied assertion(s) per source step.",
    )


def test_replay_failure_skips_remaining_steps() -> None:
    navigate = Step(action="navigate", url="https://app.test/login")
    page = FakePageHandle(failing={SIGN_IN.value})
    candidates = [_candidate(1, Step(action="assert_visible", target=SIGN_IN), confidence=0.76, fallback=True)]
    _, outcomes, _ = _run(page, [navigate, CLICK], candidates)

    assert outcomes[0].status == "skipped_runtime_failure"
    assert outcomes[0].message is not None
    assert outcomes[0].message.startswith("Runtime replay failed at step 2:")


def test_network_idle_timeout_skips_assertions() -> None:
    page = FakePageHandle(network_idle_timeout=True)
    _, outcomes, _ = _run(page, [FILL, CLICK], _fill_and_click_candidates())
    assert outcomes[0] == CandidateOutcome("skipped_runtime_failure", NETWORK_IDLE_MESSAGE)
    assert outcomes[2] == CandidateOutcome("skipped_runtime_failure", NETWORK_IDLE_MESSAGE)


def test_existing_assertion_is_not_duplicated() -> None:
    existing = Step(action="assert_value", target=EMAIL, value="a@b.c")
    page = FakePageHandle()
    candidates = [_candidate(0, existing, confidence=0.9, after_action="fill")]
    _, outcomes, _ = _run(page, [FILL, existing], candidates)

    assert outcomes[0] == CandidateOutcome("skipped_existing", EXISTING_MESSAGE)
    assert page.resets == 0


def test_low_score_and_structural_only_blocks() -> None:
    policy = ImprovePolicy()
    visible = _candidate(
        0,
        Step(action="assert_visible", target=Target('get_by_role("link", name="Billing")')),
        confidence=0.78,
        source="snapshot_native",
    )
    assert policy_block_messages([visible], policy) == {0: STRUCTURAL_ONLY_MESSAGE}
    assert policy_block_messages([visible], policy_preset("balanced")) == {}

    text = _candidate(
        0,
        Step(action="assert_text", target=Target('get_by_text("Welcome back")'), text="Welcome back"),
        confidence=0.82,
        source="snapshot_native",
        after_action="navigate",
    )
    selected, outcomes = select_for_apply([text], {}, set(), policy)
    assert selected == []
    assert outcomes[0] == CandidateOutcome("skipped_low_confidence", "Candidate score 0.650 is below threshold 0.820.")


def test_coverage_synthesizes_fallback_for_uncovered_step() -> None:
    hover = Step(action="hover", target=Target("#menu", kind="css", source="recorded"))
    plan = plan_coverage([hover], [], {}, ImprovePolicy())

    assert plan.synthesized == 1
    assert plan.required == {0}
    synthesized = plan.candidates[0]
    assert synthesized.coverage_fallback
    assert synthesized.candidate == Step(action="assert_visible", target=Target("#menu", kind="css", source="recorded"))
    assert synthesized.confidence == 0.55
    assert synthesized.stability_score == 0.55


def test_insert_assertions_keeps_source_order() -> None:
    steps = [FILL, CLICK, Step(action="navigate", url="https://app.test/")]
    first = Step(action="assert_value", target=EMAIL, value="a@b.c")
    second = Step(action="assert_url", url="https://app.test/home")
    out = insert_assertions(steps, [(1, second), (0, first)])
    assert out == [FILL, first, CLICK, second, steps[2]]

    inserted = insert_assertions(steps, [(1, first), (2, second)])
    assert len(inserted) == 5
    assert inserted[3] == steps[2]


def test_assertions_equivalent_ignores_target_provenance() -> None:
    left = Step(action="assert_checked", target=Target("#remember", kind="css", source="recorded"))
    right = Step(action="assert_checked", target=Target("#remember", kind="css", source="derived"), checked=True)
    assert assertions_equivalent(left, right)
    assert not assertions_equivalent(left, Step(action="assert_checked", target=left.target, checked=False))
