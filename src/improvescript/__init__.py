from __future__ import annotations

from .assertion_pass import run_assertion_pass
from .runner import improve_steps
from .selector_pass import run_selector_pass

__version__ = "0.1.0"

__all__ = ["__version__", "improve_steps", "run_assertion_pass", "run_selector_pass"]
