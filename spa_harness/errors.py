"""Structured failures raised by the harness.

Every fatal error carries a kind, a message, and (once the orchestrator has
captured diagnostics) the path of the report written for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class CdpError(Exception):
    """Transport-level DevTools protocol failure (timeouts, closed socket, error replies)."""


@dataclass(eq=False)
class HarnessError(Exception):
    """Base structured error: kind + message + report path."""

    kind: ClassVar[str] = "HarnessError"

    message: str
    report_path: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Keep Exception.args meaningful for tracebacks and pickling.
        self.args = (self.message,)

    def __str__(self) -> str:
        text = f"{self.kind}: {self.message}"
        if self.report_path:
            text += f" (report: {self.report_path})"
        return text

    def with_report(self, path: str | None) -> HarnessError:
        if path:
            self.report_path = str(path)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "message": self.message,
            "reportPath": self.report_path,
            "details": self.details,
        }


@dataclass(eq=False)
class NavigationTimeout(HarnessError):
    """No readiness strategy was satisfied before the policy bound elapsed."""

    kind: ClassVar[str] = "NavigationTimeout"

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self.details.get("pending") or ())


@dataclass(eq=False)
class NavigationFailed(HarnessError):
    """The browser refused the navigation outright (DNS, connection refused, ...)."""

    kind: ClassVar[str] = "NavigationFailed"


@dataclass(eq=False)
class InterceptMismatch(HarnessError):
    """A mock specification is malformed or conflicts with an existing rule."""

    kind: ClassVar[str] = "InterceptMismatch"


@dataclass(eq=False)
class CrashDetected(HarnessError):
    """The renderer terminated; the session cannot be used any further."""

    kind: ClassVar[str] = "CrashDetected"


@dataclass(eq=False)
class AssertionFailure(HarnessError, AssertionError):
    """Caller-level assertion failure routed through the reporting path."""

    kind: ClassVar[str] = "AssertionFailure"


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, HarnessError):
        return exc.kind
    if isinstance(exc, AssertionError):
        return AssertionFailure.kind
    return type(exc).__name__


__all__ = [
    "AssertionFailure",
    "CdpError",
    "CrashDetected",
    "HarnessError",
    "InterceptMismatch",
    "NavigationFailed",
    "NavigationTimeout",
    "error_kind",
]
