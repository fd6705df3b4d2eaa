"""Browser-session diagnostics for single-page-application end-to-end tests.

Keep this package import light: the pytest plugin imports it at collection
time, so public names are resolved lazily.
"""

from __future__ import annotations

from typing import Any

__version__ = "0.1.0"

_EXPORTS = {
    "Harness": "orchestrator",
    "HarnessConfig": "config",
    "Viewport": "config",
    "get_config": "config",
    "Session": "session",
    "SessionState": "session",
    "MockResponse": "interceptor",
    "external_asset_rules": "interceptor",
    "EventKind": "recorder",
    "CapturedEvent": "recorder",
    "POLICIES": "readiness",
    "ReadinessPolicy": "readiness",
    "ReadinessOutcome": "readiness",
    "DiagnosticReport": "reporter",
    "render_summary": "reporter",
    "HarnessError": "errors",
    "NavigationTimeout": "errors",
    "NavigationFailed": "errors",
    "InterceptMismatch": "errors",
    "CrashDetected": "errors",
    "AssertionFailure": "errors",
}

__all__ = ["__version__", *_EXPORTS]


def __getattr__(name: str) -> Any:  # pragma: no cover
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    from importlib import import_module

    return getattr(import_module(f".{module}", __name__), name)
