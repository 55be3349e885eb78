import asyncio

import pytest

from improvescript.errors import StepExecutionError
from improvescript.models import Step, Target
from improvescript.step_executor import (
    execute_step,
    resolve_locator,
    resolve_navigate_url,
    wildcard_to_pattern,
)


class FakeLocator:
    def __init__(self, label: str, log: list, *, text: str = "", value: str = "", checked: bool = False) -> None:
        self.label = label
        self.log = log
        self.text = text
        self.value = value
        self.checked = checked

    def locator(self, selector: str) -> "FakeLocator":
        return FakeLocator(f"{self.label} >> {selector}", self.log, text=self.text, value=self.value)

    def or_(self, other: "FakeLocator") -> "FakeLocator":
        return FakeLocator(f"{self.label} | {other.label}", self.log, text=self.text, value=self.value)

    async def wait_for(self, state: str, timeout: int) -> None:
        self.log.append(("wait_for", self.label, state))

    async def click(self, timeout: int) -> None:
        self.log.append(("click", self.label, timeout))

    async def fill(self, text: str, timeout: int) -> None:
        self.log.append(("fill", self.label, text))

    async def text_content(self, timeout: int) -> str:
        return self.text

    async def input_value(self, timeout: int) -> str:
        return self.value

    async def is_checked(self, timeout: int) -> bool:
        return self.checked


class FakeFrame:
    def __init__(self, selector: str, page: "FakePage") -> None:
        self.selector = selector
        self.page = page

    def locator(self, selector: str) -> FakeLocator:
        return self.page.make(f"{self.selector} -> {selector}")

    def get_by_role(self, role: str, name: str | None = None) -> FakeLocator:
        return self.page.make(f"{self.selector} -> role={role}[{name}]")

    def frame_locator(self, selector: str) -> "FakeFrame":
        return FakeFrame(f"{self.selector} -> {selector}", self.page)


class FakePage:
    def __init__(self, *, url: str = "about:blank", title: str = "", text: str = "", value: str = "") -> None:
        self.url = url
        self._title = title
        self.text = text
        self.value = value
        self.log: list = []

    def make(self, label: str) -> FakeLocator:
        return FakeLocator(label, self.log, text=self.text, value=self.value)

    def locator(self, selector: str) -> FakeLocator:
        return self.make(selector)

    def get_by_role(self, role: str, name: str | None = None) -> FakeLocator:
        return self.make(f"role={role}[{name}]")

    def frame_locator(self, selector: str) -> FakeFrame:
        return FakeFrame(selector, self)

    async def goto(self, url: str, timeout: int) -> None:
        self.log.append(("goto", url))
        self.url = url

    async def title(self) -> str:
        return self._title


def _execute(page: FakePage, step: Step, mode: str = "playback", base_url: str | None = None) -> None:
    asyncio.run(execute_step(page, step, mode=mode, timeout_ms=1000, base_url=base_url))  # type: ignore[arg-type]


def test_resolve_navigate_url() -> None:
    assert resolve_navigate_url("https://app.test/login", "https://other.test", None) == "https://app.test/login"
    assert resolve_navigate_url("login", "https://app.test/app/", None) == "https://app.test/app/login"
    assert resolve_navigate_url("/c", None, "https://app.test/a/b") == "https://app.test/c"
    assert resolve_navigate_url("login", None, "about:blank") == "login"


def test_wildcard_to_pattern() -> None:
    pattern = wildcard_to_pattern("https://app.test/*/settings")
    assert pattern.match("https://app.test/user/42/settings")
    assert not pattern.match("https://app.test/settings")
    assert wildcard_to_pattern("https://app.test/?a=1").match("https://app.test/?a=1")


def test_resolve_locator_chains_fallbacks_and_frames() -> None:
    page = FakePage()
    target = Target(
        'get_by_role("button", name="Save")',
        frame_path=("#app",),
        fallbacks=(Target("#save", kind="css"), Target("//button", kind="xpath")),
    )
    locator = resolve_locator(page, target)  # type: ignore[arg-type]
    assert locator.label == "#app -> role=button[Save] | #app -> #save | #app -> xpath=//button"


def test_navigate_uses_base_url() -> None:
    page = FakePage()
    _execute(page, Step(action="navigate", url="/login"), base_url="https://app.test")
    assert page.log == [("goto", "https://app.test/login")]


def test_analysis_mode_skips_assertions() -> None:
    page = FakePage(text="Something else")
    _execute(page, Step(action="assert_text", target=Target("#msg", kind="css"), text="Saved"), mode="analysis")
    assert page.log == []


def test_interactions_and_assertions() -> None:
    page = FakePage(text="Saved successfully", value="a@b.c")
    _execute(page, Step(action="click", target=Target("#save", kind="css"), timeout_ms=250))
    _execute(page, Step(action="fill", target=Target("#email", kind="css"), text="a@b.c"))
    _execute(page, Step(action="assert_text", target=Target("#msg", kind="css"), text="Saved"))
    _execute(page, Step(action="assert_value", target=Target("#email", kind="css"), value="a@b.c"))
    assert page.log == [
        ("click", "#save", 250),
        ("fill", "#email", "a@b.c"),
        ("wait_for", "#msg", "visible"),
        ("wait_for", "#email", "visible"),
    ]


def test_failed_assertions_raise() -> None:
    page = FakePage(url="https://app.test/home", title="Home | App", text="Error")
    with pytest.raises(StepExecutionError, match="Expected text 'Saved' but got 'Error'"):
        _execute(page, Step(action="assert_text", target=Target("#msg", kind="css"), text="Saved"))
    with pytest.raises(StepExecutionError, match="does not match pattern"):
        _execute(page, Step(action="assert_url", url="https://app.test/login*"))
    with pytest.raises(StepExecutionError, match="Expected element to be checked"):
        _execute(page, Step(action="assert_checked", target=Target("#remember", kind="css")))
    _execute(page, Step(action="assert_title", title="Home"))
    _execute(page, Step(action="assert_url", url="https://app.test/*"))
