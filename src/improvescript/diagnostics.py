from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Literal

DiagnosticLevel = Literal["info", "warn", "error"]


@dataclass(frozen=True, slots=True)
class Diagnostic:
    code: str
    level: DiagnosticLevel
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "level": self.level, "message": self.message}


class DiagnosticsCollector:
    """Append-only, ordered diagnostics sink shared by every pipeline stage."""

    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[Diagnostic] = []

    def add(self, code: str, level: DiagnosticLevel, message: str) -> Diagnostic:
        diagnostic = Diagnostic(code=code, level=level, message=message)
        self._items.append(diagnostic)
        return diagnostic

    def info(self, code: str, message: str) -> Diagnostic:
        return self.add(code, "info", message)

    def warn(self, code: str, message: str) -> Diagnostic:
        return self.add(code, "warn", message)

    def error(self, code: str, message: str) -> Diagnostic:
        return self.add(code, "error", message)

    def extend(self, diagnostics: DiagnosticsCollector | tuple[Diagnostic, ...] | list[Diagnostic]) -> None:
        for item in diagnostics:
            self._items.append(item)

    def codes(self) -> list[str]:
        return [item.code for item in self._items]

    def snapshot(self) -> tuple[Diagnostic, ...]:
        return tuple(self._items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(tuple(self._items))

    def __len__(self) -> int:
        return len(self._items)
