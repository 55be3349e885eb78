import asyncio

from page_fakes import FakePageHandle

from improvescript.assertion_apply import FALLBACK_SUPPRESSED_MESSAGE
from improvescript.assertion_pass import run_assertion_pass
from improvescript.assertion_stability import VOLUME_CAP_MESSAGE
from improvescript.models import Step, StepSnapshot, Target
from improvescript.policy import ImproveOptions

EMAIL = Target('get_by_label("Email")')
SIGN_IN = Target('get_by_role("button", name="Sign in")')
STEPS = [
    Step(action="navigate", url="https://app.test/login"),
    Step(action="fill", target=EMAIL, text="a@b.c"),
    Step(action="click", target=SIGN_IN),
]
LOGIN_PAGE = '- heading "Welcome back"\n- navigation "Primary"'
SNAPSHOTS = [
    StepSnapshot(
        index=0,
        step=STEPS[0],
        pre_snapshot="",
        post_snapshot=LOGIN_PAGE,
        pre_url="about:blank",
        post_url="https://app.test/login",
    ),
    StepSnapshot(index=1, step=STEPS[1], pre_snapshot=LOGIN_PAGE, post_snapshot=LOGIN_PAGE),
    StepSnapshot(
        index=2,
        step=STEPS[2],
        pre_snapshot=LOGIN_PAGE,
        post_snapshot=LOGIN_PAGE + '\n- alert "Signed in successfully"',
    ),
]


def test_login_flow_inserts_one_assertion_per_covered_step() -> None:
    page = FakePageHandle()
    result = asyncio.run(
        run_assertion_pass(STEPS, page, ImproveOptions(apply_assertions=True), snapshots=SNAPSHOTS)
    )

    assert len(result.output_steps) == 5
    assert result.output_steps[2] == Step(
        action="assert_visible",
        target=Target('get_by_role("navigation", name="Primary")', source="derived"),
    )
    assert result.output_steps[4].action == "assert_text"
    assert result.output_steps[4].text == "Signed in successfully"
    assert [step.action for step in result.output_steps[::2]] == ["navigate", "assert_visible", "assert_text"]

    statuses = [(item.step_index, item.candidate.action, item.apply_status) for item in result.assertion_candidates]
    assert statuses == [
        (1, "assert_value", "skipped_policy"),
        (2, "assert_visible", "skipped_policy"),
        (0, "assert_url", "skipped_policy"),
        (0, "assert_text", "skipped_low_confidence"),
        (0, "assert_visible", "skipped_policy"),
        (1, "assert_visible", "applied"),
        (2, "assert_text", "applied"),
        (2, "assert_visible", "skipped_policy"),
    ]
    messages = [item.apply_message for item in result.assertion_candidates]
    assert messages[1] == FALLBACK_SUPPRESSED_MESSAGE
    assert messages[2] == VOLUME_CAP_MESSAGE
    assert messages[3] == "Candidate score 0.730 is below threshold 0.820."
    assert messages[0] == "Skipped by policy: max 1 applied assertion(s) per source step."

    assert result.counters.assertion_candidates == 8
    assert result.counters.assertions_applied == 2
    assert result.counters.assertions_skipped == 6
    assert result.counters.extra["assertions_forced_by_coverage"] == 0
    assert result.diagnostics == ()


def test_candidates_are_not_requested_without_apply() -> None:
    result = asyncio.run(run_assertion_pass(STEPS, None, ImproveOptions(), snapshots=SNAPSHOTS))
    assert result.output_steps == STEPS
    assert len(result.assertion_candidates) == 8
    assert {item.apply_status for item in result.assertion_candidates} == {"not_requested"}
    assert result.diagnostics == ()


def test_apply_without_page_warns() -> None:
    result = asyncio.run(
        run_assertion_pass(STEPS, None, ImproveOptions(apply_assertions=True), snapshots=SNAPSHOTS)
    )
    assert [item.code for item in result.diagnostics] == ["assertion_apply_requires_page"]
    assert result.output_steps == STEPS


def test_assertions_none_generates_nothing() -> None:
    options = ImproveOptions(apply_assertions=True, assertions="none")
    result = asyncio.run(run_assertion_pass(STEPS, FakePageHandle(), options))
    assert result.assertion_candidates == []
    assert result.output_steps == STEPS
    assert [item.code for item in result.diagnostics] == ["apply_assertions_disabled_by_assertions_none"]


def test_deterministic_source_and_empty_snapshots() -> None:
    deterministic = asyncio.run(run_assertion_pass(STEPS, None, ImproveOptions(assertion_source="deterministic")))
    assert [item.candidate.action for item in deterministic.assertion_candidates] == ["assert_value", "assert_visible"]
    assert deterministic.diagnostics == ()

    empty = asyncio.run(run_assertion_pass(STEPS, None, ImproveOptions(), snapshots=[]))
    assert [item.code for item in empty.diagnostics] == ["assertion_source_snapshot_native_empty"]
    assert len(empty.assertion_candidates) == 2


def test_inventory_fills_steps_without_a_delta() -> None:
    click = Step(action="click", target=Target('get_by_role("button", name="Continue")'))
    page_text = '- heading "Account settings"\n- link "Billing"'
    snapshot = StepSnapshot(index=0, step=click, pre_snapshot=page_text, post_snapshot=page_text)
    result = asyncio.run(run_assertion_pass([click], None, ImproveOptions(), snapshots=[snapshot]))

    inventory = [item for item in result.assertion_candidates if item.candidate_source == "snapshot_native"]
    assert [item.candidate.text for item in inventory] == ["Account settings", "Billing"]
    assert all(item.coverage_fallback for item in inventory)
    assert result.counters.extra["inventory_steps_evaluated"] == 1
    assert result.counters.extra["inventory_candidates_added"] == 2
    assert result.counters.extra["inventory_gap_steps_filled"] == 1


def test_snapshots_are_captured_from_the_page_when_not_given() -> None:
    page = FakePageHandle(body_snapshots=["- main", '- main\n- alert "Saved"'])
    click = Step(action="click", target=SIGN_IN)
    result = asyncio.run(run_assertion_pass([click], page, ImproveOptions()))

    texts = [item.candidate.text for item in result.assertion_candidates if item.candidate.action == "assert_text"]
    assert texts == ["Saved"]
    assert page.executed == [("click", "analysis", SIGN_IN.value)]


def test_second_run_over_improved_steps_inserts_nothing() -> None:
    fill = Step(action="fill", target=EMAIL, text="a@b.c")
    options = ImproveOptions(apply_assertions=True, assertion_source="deterministic")

    first = asyncio.run(run_assertion_pass([fill], FakePageHandle(), options))
    assert [step.action for step in first.output_steps] == ["fill", "assert_value"]
    assert [item.apply_status for item in first.assertion_candidates] == ["applied"]

    page = FakePageHandle()
    second = asyncio.run(run_assertion_pass(first.output_steps, page, options))
    assert second.output_steps == first.output_steps
    assert [item.apply_status for item in second.assertion_candidates] == ["skipped_existing"]
    assert second.counters.assertions_applied == 0
    assert page.resets == 0
