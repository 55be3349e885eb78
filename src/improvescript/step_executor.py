from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Literal
from urllib.parse import urljoin

from .errors import StepExecutionError
from .locator_expression import evaluate_locator_expression, parse_locator_expression
from .models import Step, Target

if TYPE_CHECKING:
    from playwright.async_api import FrameLocator, Locator, Page

ExecutionMode = Literal["playback", "analysis"]


def resolve_locator_context(page: Page, frame_path: tuple[str, ...]) -> Page | FrameLocator:
    context: Any = page
    for frame_selector in frame_path:
        if not frame_selector.strip():
            continue
        context = context.frame_locator(frame_selector)
    return context


def resolve_locator(page: Page, target: Target) -> Locator:
    context = resolve_locator_context(page, target.frame_path)
    primary = _locator_for(context, target)
    for fallback in target.fallbacks:
        try:
            fallback_locator = _locator_for(context, fallback)
        except Exception:
            continue
        primary = primary.or_(fallback_locator)
    return primary


def _locator_for(context: Any, target: Target) -> Locator:
    if target.kind == "locator_expression":
        plan = parse_locator_expression(target.value)
        resolved = evaluate_locator_expression(context, plan)
        if not _is_locator(resolved):
            raise StepExecutionError(f"Locator expression did not resolve to a locator: {target.value}")
        return resolved
    if target.kind == "xpath" and not target.value.startswith("xpath="):
        return context.locator(f"xpath={target.value}")
    return context.locator(target.value)


def _is_locator(value: Any) -> bool:
    return callable(getattr(value, "locator", None)) and callable(getattr(value, "wait_for", None))


def resolve_navigate_url(step_url: str, base_url: str | None, current_url: str | None) -> str:
    if step_url.startswith(("http://", "https://", "about:", "data:", "file:")):
        return step_url
    base = base_url or current_url
    if not base or base.startswith("about:"):
        return step_url
    return urljoin(base, step_url)


def wildcard_to_pattern(pattern: str) -> re.Pattern[str]:
    segments = (re.escape(segment) for segment in pattern.split("*"))
    return re.compile("^" + ".*".join(segments) + "$")


async def execute_step(
    page: Page,
    step: Step,
    *,
    mode: ExecutionMode,
    timeout_ms: int,
    base_url: str | None = None,
) -> None:
    timeout = step.timeout_ms or timeout_ms
    action = step.action

    if action == "navigate":
        await page.goto(resolve_navigate_url(step.url or "", base_url, page.url), timeout=timeout)
        return
    if step.is_assertion and mode == "analysis":
        return
    if action == "assert_url":
        current = page.url
        if not wildcard_to_pattern(step.url or "").match(current):
            raise StepExecutionError(f'URL "{current}" does not match pattern "{step.url}"')
        return
    if action == "assert_title":
        title = await page.title()
        if (step.title or "") not in title:
            raise StepExecutionError(f"Expected title to contain '{step.title}' but got '{title}'")
        return

    if step.target is None:
        raise StepExecutionError(f"Step '{action}' has no target.")
    locator = resolve_locator(page, step.target)

    if action == "click":
        await locator.click(timeout=timeout)
    elif action == "dblclick":
        await locator.dblclick(timeout=timeout)
    elif action == "hover":
        await locator.hover(timeout=timeout)
    elif action == "check":
        await locator.check(timeout=timeout)
    elif action == "uncheck":
        await locator.uncheck(timeout=timeout)
    elif action == "fill":
        await locator.fill(step.text or "", timeout=timeout)
    elif action == "press":
        await locator.press(step.key or "", timeout=timeout)
    elif action == "select":
        await locator.select_option(step.value, timeout=timeout)
    elif action == "assert_visible":
        await locator.wait_for(state="visible", timeout=timeout)
    elif action == "assert_text":
        await locator.wait_for(state="visible", timeout=timeout)
        text = await locator.text_content(timeout=timeout)
        if (step.text or "") not in (text or ""):
            raise StepExecutionError(f"Expected text '{step.text}' but got '{text or '(empty)'}'")
    elif action == "assert_value":
        await locator.wait_for(state="visible", timeout=timeout)
        value = await locator.input_value(timeout=timeout)
        if value != step.value:
            raise StepExecutionError(f"Expected value '{step.value}' but got '{value}'")
    elif action == "assert_checked":
        await locator.wait_for(state="visible", timeout=timeout)
        checked = await locator.is_checked(timeout=timeout)
        if checked != step.expected_checked:
            expected = "checked" if step.expected_checked else "unchecked"
            raise StepExecutionError(f"Expected element to be {expected}")
    elif action == "assert_enabled":
        await locator.wait_for(state="attached", timeout=timeout)
        enabled = await locator.is_enabled(timeout=timeout)
        if enabled != step.expected_enabled:
            expected = "enabled" if step.expected_enabled else "disabled"
            raise StepExecutionError(f"Expected element to be {expected}")
    else:
        raise StepExecutionError(f"Unsupported step action: {action}")
