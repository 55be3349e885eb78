from __future__ import annotations


class ImproveError(RuntimeError):
    """Base error for the improve pipeline."""


class LocatorExpressionError(ImproveError):
    """Raised when a locator expression falls outside the allowed chain grammar."""

    def __init__(self, message: str, expression: str = "", construct: str = "") -> None:
        super().__init__(message)
        self.expression = expression
        self.construct = construct


class InvalidStepSequenceError(ImproveError):
    """Raised when the input step sequence cannot be interpreted."""


class PageUnavailableError(ImproveError):
    """Raised when the page handle cannot be used at all."""


class StepExecutionError(ImproveError):
    """Raised when a step or assertion fails while executing against a page."""


_MISSING_BROWSER_ERROR_HINTS = (
    "executable doesn't exist",
    "executable does not exist",
    "download new browsers",
    "playwright install",
    "could not find browser",
    "failed to launch chromium because executable",
)


def is_missing_browser_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(hint in message for hint in _MISSING_BROWSER_ERROR_HINTS)
