from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from typing import TYPE_CHECKING, Any, Mapping

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import PageUnavailableError
from .models import Step, Target
from .selector_conversion import selector_to_expression
from .step_executor import ExecutionMode, execute_step, resolve_locator

if TYPE_CHECKING:
    from playwright.async_api import Page


class SelectorResolver(ABC):
    """Regenerates a locator expression for a target that already matches on the live page."""

    name: str = "resolver"

    @abstractmethod
    async def regenerate(self, target: Target) -> str | None:
        raise NotImplementedError


class PublicSelectorResolver(SelectorResolver):
    """Converts engine selectors through the documented selector grammar only."""

    name = "public"

    async def regenerate(self, target: Target) -> str | None:
        if target.kind not in {"engine_selector", "engine_internal"}:
            return None
        return selector_to_expression(target.value)


class PlaywrightInternalResolver(SelectorResolver):
    """Asks the locator's private `_resolve_selector` hook for the engine's preferred selector."""

    name = "internal"

    def __init__(self, handle: PlaywrightPageHandle) -> None:
        self._handle = handle

    async def regenerate(self, target: Target) -> str | None:
        locator = self._handle.resolve(target)
        hook = _private_resolve_selector(locator)
        if hook is None:
            raise PageUnavailableError("Locator does not expose _resolve_selector.")
        selector = read_resolved_selector(await hook())
        if not selector:
            return None
        return selector_to_expression(selector)


def read_resolved_selector(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        raw = value.get("resolvedSelector") or value.get("resolved_selector")
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return None


def _private_resolve_selector(locator: Any) -> Any:
    for owner in (locator, getattr(locator, "_impl_obj", None)):
        hook = getattr(owner, "_resolve_selector", None) if owner is not None else None
        if callable(hook):
            return hook
    return None


class PageHandle(ABC):
    """Live page operations used by the improve passes. All calls are awaited one at a time."""

    @abstractmethod
    def resolve(self, target: Target) -> Any:
        raise NotImplementedError

    @abstractmethod
    async def count(self, target: Target, timeout_ms: int) -> int:
        raise NotImplementedError

    @abstractmethod
    async def is_visible(self, target: Target, timeout_ms: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_attribute(self, target: Target, name: str, timeout_ms: int) -> str | None:
        raise NotImplementedError

    @abstractmethod
    async def text_content(self, target: Target, timeout_ms: int) -> str | None:
        raise NotImplementedError

    @abstractmethod
    async def aria_snapshot(self, target: Target | None, timeout_ms: int) -> str:
        raise NotImplementedError

    @abstractmethod
    async def execute_step(
        self,
        step: Step,
        *,
        mode: ExecutionMode,
        timeout_ms: int,
        base_url: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    async def wait_for_network_idle(self, timeout_ms: int) -> bool:
        """Return True when the wait timed out."""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, timeout_ms: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def url(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def title(self) -> str:
        raise NotImplementedError

    def public_resolver(self) -> SelectorResolver | None:
        return PublicSelectorResolver()

    def internal_resolver(self) -> SelectorResolver | None:
        return None

    def ensure_usable(self) -> None:
        return None


class PlaywrightPageHandle(PageHandle):
    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def page(self) -> Page:
        return self._page

    def ensure_usable(self) -> None:
        try:
            closed = self._page.is_closed()
        except Exception as exc:
            raise PageUnavailableError(f"Page handle is not usable: {exc}") from exc
        if closed:
            raise PageUnavailableError("Page handle is closed.")

    def resolve(self, target: Target) -> Any:
        return resolve_locator(self._page, target)

    async def count(self, target: Target, timeout_ms: int) -> int:
        locator = self.resolve(target)
        return await asyncio.wait_for(locator.count(), timeout=timeout_ms / 1000)

    async def is_visible(self, target: Target, timeout_ms: int) -> bool:
        locator = self.resolve(target).first
        return await asyncio.wait_for(locator.is_visible(), timeout=timeout_ms / 1000)

    async def get_attribute(self, target: Target, name: str, timeout_ms: int) -> str | None:
        return await self.resolve(target).first.get_attribute(name, timeout=timeout_ms)

    async def text_content(self, target: Target, timeout_ms: int) -> str | None:
        return await self.resolve(target).first.text_content(timeout=timeout_ms)

    async def aria_snapshot(self, target: Target | None, timeout_ms: int) -> str:
        if target is None:
            return await self._page.locator("body").aria_snapshot(timeout=timeout_ms)
        return await self.resolve(target).first.aria_snapshot(timeout=timeout_ms)

    async def execute_step(
        self,
        step: Step,
        *,
        mode: ExecutionMode,
        timeout_ms: int,
        base_url: str | None = None,
    ) -> None:
        await execute_step(self._page, step, mode=mode, timeout_ms=timeout_ms, base_url=base_url)

    async def wait_for_network_idle(self, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return True
        return False

    async def reset(self, timeout_ms: int) -> None:
        await self._page.goto("about:blank", timeout=timeout_ms)

    def url(self) -> str:
        return self._page.url

    async def title(self) -> str:
        return await self._page.title()

    def internal_resolver(self) -> SelectorResolver | None:
        if _private_resolve_selector(self._page.locator("body")) is None:
            return None
        return PlaywrightInternalResolver(self)
