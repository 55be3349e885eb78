from improvescript.assertion_candidates import (
    build_deterministic_candidates,
    build_inventory_candidates,
    build_snapshot_cli_candidates,
    build_snapshot_native_candidates,
    build_title_candidates,
    build_url_candidates,
    dedupe_assertion_candidates,
    is_noisy_text,
)
from improvescript.models import AssertionCandidate, Step, StepFinding, StepSnapshot, Target

SIGN_IN = Step(action="click", target=Target('get_by_role("button", name="Sign in")'))
CONTINUE = Step(action="click", target=Target('get_by_role("button", name="Continue")'))


def _snapshot(step: Step, pre: str, post: str, **kwargs) -> StepSnapshot:
    return StepSnapshot(index=0, step=step, pre_snapshot=pre, post_snapshot=post, **kwargs)


def _visible(value: str, *, source: str = "snapshot_native", confidence: float = 0.78, fallback: bool = False):
    return AssertionCandidate(
        step_index=0,
        after_action="click",
        candidate=Step(action="assert_visible", target=Target(value)),
        confidence=confidence,
        rationale="test",
        candidate_source=source,  # type: ignore[arg-type]
        coverage_fallback=fallback,
    )


def test_zero_diff_yields_single_stable_structural_candidate() -> None:
    page = '- navigation "Main"\n- heading "Dashboard"'
    candidates = build_snapshot_native_candidates([_snapshot(CONTINUE, page, page)])

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.candidate.action == "assert_visible"
    assert candidate.candidate.target == Target('get_by_role("navigation", name="Main")', source="derived")
    assert candidate.confidence == 0.84
    assert candidate.stable_structural

    heading_only = '- heading "Dashboard"'
    assert build_snapshot_native_candidates([_snapshot(CONTINUE, heading_only, heading_only)]) == []


def test_appeared_alert_becomes_text_candidate_without_duplicate_visible() -> None:
    snapshot = _snapshot(SIGN_IN, "- main", '- main\n- alert "Signed in successfully"')

    native = build_snapshot_native_candidates([snapshot])
    assert [(item.candidate.action, item.candidate.text) for item in native] == [
        ("assert_text", "Signed in successfully")
    ]
    assert native[0].candidate.target is not None
    assert native[0].candidate.target.value == 'get_by_role("alert", name="Signed in successfully")'
    assert native[0].confidence == 0.82

    cli = build_snapshot_cli_candidates([snapshot])
    assert [item.candidate_source for item in cli] == ["snapshot_cli"]
    assert cli[0].candidate == native[0].candidate


def test_text_change_and_enabled_flip() -> None:
    pre = '- status "Status": Draft\n- button "Publish" [disabled]'
    post = '- status "Status": Saved\n- button "Publish"'
    candidates = build_snapshot_native_candidates([_snapshot(CONTINUE, pre, post)])

    actions = [item.candidate.action for item in candidates]
    assert actions == ["assert_text", "assert_enabled"]
    assert candidates[0].candidate.text == "Saved"
    assert candidates[0].confidence == 0.85
    assert candidates[1].candidate.target == Target('get_by_role("button", name="Publish")', source="derived")


def test_acted_target_text_is_not_proposed() -> None:
    snapshot = _snapshot(SIGN_IN, "", '- button "Sign in"')
    assert build_snapshot_native_candidates([snapshot]) == []


def test_deterministic_rules_per_action() -> None:
    steps = [
        Step(action="navigate", url="https://app.test/"),
        Step(action="fill", target=Target('get_by_label("Email")'), text="a@b.c"),
        Step(action="check", target=Target('get_by_role("checkbox", name="Remember me")')),
        SIGN_IN,
        Step(action="click", target=Target('get_by_role("link", name="Storm 12:30 update")')),
        Step(action="assert_visible", target=Target('get_by_text("Welcome")')),
    ]
    candidates = build_deterministic_candidates(steps)

    assert [(item.step_index, item.candidate.action) for item in candidates] == [
        (1, "assert_value"),
        (2, "assert_checked"),
        (3, "assert_visible"),
    ]
    assert candidates[0].candidate.value == "a@b.c"
    assert candidates[0].confidence == 0.7
    assert candidates[1].candidate.checked is True
    assert candidates[1].confidence == 0.75
    assert candidates[2].coverage_fallback
    assert candidates[2].confidence == 0.76
    assert all(item.candidate_source == "deterministic" for item in candidates)


def test_deterministic_candidates_use_recommended_target() -> None:
    fill = Step(action="fill", target=Target("#email", kind="css"), text="a@b.c")
    recommended = Target('get_by_role("textbox", name="Email")', source="derived")
    finding = StepFinding(
        index=0,
        action="fill",
        changed=True,
        old_target=Target("#email", kind="css"),
        recommended_target=recommended,
        confidence=0.93,
    )
    candidates = build_deterministic_candidates([fill], [finding])
    assert candidates[0].candidate.target == recommended
    assert candidates[0].confidence == 0.93


def test_url_and_title_candidates() -> None:
    snapshot = _snapshot(
        SIGN_IN,
        "",
        "",
        pre_url="https://app.test/login",
        post_url="https://app.test/home",
        pre_title="Login",
        post_title="Home",
    )
    urls = build_url_candidates(snapshot, "snapshot_native")
    assert [(item.candidate.url, item.confidence) for item in urls] == [("https://app.test/home", 0.88)]
    titles = build_title_candidates(snapshot, "snapshot_native")
    assert [(item.candidate.title, item.confidence) for item in titles] == [("Home", 0.82)]

    hover = _snapshot(
        Step(action="hover", target=Target("#menu", kind="css")),
        "",
        "",
        pre_url="https://app.test/a",
        post_url="https://app.test/b",
    )
    assert build_url_candidates(hover, "snapshot_native") == []


def test_noisy_text() -> None:
    assert is_noisy_text("42")
    assert is_noisy_text("https://app.test")
    assert is_noisy_text("x")
    assert is_noisy_text("— · —")
    assert not is_noisy_text("Saved")


def test_inventory_candidates_respect_caps() -> None:
    post = '- heading "Account settings"\n- link "Billing"\n- status "Ready"\n- navigation "Primary"\n- main'
    candidates = build_inventory_candidates([_snapshot(CONTINUE, post, post)])

    assert [(item.candidate.action, item.candidate.text) for item in candidates] == [
        ("assert_text", "Account settings"),
        ("assert_text", "Ready"),
    ]
    assert all(item.coverage_fallback and item.candidate_source == "snapshot_native" for item in candidates)

    landmark_only = '- navigation "Primary"\n- button "Go"'
    landmarks = build_inventory_candidates([_snapshot(CONTINUE, landmark_only, landmark_only)])
    assert [(item.candidate.action, item.confidence) for item in landmarks] == [("assert_visible", 0.77)]


def test_dedupe_prefers_non_fallback_then_source() -> None:
    fallback = _visible('get_by_text("Saved")', source="deterministic", confidence=0.76, fallback=True)
    other = _visible('get_by_text("Other")')
    native = _visible('get_by_text("Saved")')
    assert dedupe_assertion_candidates([fallback, other, native]) == [other, native]

    deterministic = _visible('get_by_text("Saved")', source="deterministic")
    assert dedupe_assertion_candidates([native, deterministic]) == [native]
    assert dedupe_assertion_candidates([deterministic, native]) == [native]

    stronger = _visible('get_by_text("Saved")', source="deterministic", confidence=0.9)
    assert dedupe_assertion_candidates([native, stronger]) == [stronger]
