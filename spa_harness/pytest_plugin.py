"""pytest integration: fixtures for harness sessions and report paths on failures."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from typing import Any, TypeVar

import pytest

from .config import HarnessConfig, get_config
from .interceptor import MockResponse, Pattern
from .orchestrator import Harness, Scenario
from .readiness import ReadinessPolicy
from .reporter import DiagnosticReport

T = TypeVar("T")

REPORT_SECTION = "diagnostic report"


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("spa-harness")
    group.addoption("--spa-base-url", action="store", default=None, help="Override BASE_URL for harness sessions.")


def pytest_report_header(config: pytest.Config) -> list[str]:
    try:
        cfg = get_config()
    except ValueError as exc:
        return [f"spa-harness: invalid configuration ({exc})"]
    base_url = config.getoption("--spa-base-url", default=None) or cfg.base_url
    workers = cfg.workers if cfg.workers is not None else "auto"
    return [f"spa-harness: base_url={base_url} ci={cfg.ci} retries={cfg.retries} workers={workers}"]


class SpaRunner:
    """Binds the shared harness to the current test's name."""

    def __init__(self, harness: Harness, test_name: str) -> None:
        self.harness = harness
        self.test_name = test_name

    def run(self, scenario: Scenario[T], *, rules: list[tuple[Pattern, MockResponse]] | None = None) -> T:
        return self.harness.run(self.test_name, scenario, rules=rules)

    def diagnose(self, target: str | None = None, *, policy: ReadinessPolicy | str | None = None) -> DiagnosticReport:
        return self.harness.diagnose(target, policy=policy, test_name=self.test_name)


@pytest.fixture(scope="session")
def harness_config(request: pytest.FixtureRequest) -> HarnessConfig:
    cfg = get_config()
    override = request.config.getoption("--spa-base-url", default=None)
    if override:
        cfg = dataclasses.replace(cfg, base_url=override)
    return cfg


@pytest.fixture(scope="session")
def harness(harness_config: HarnessConfig) -> Iterator[Harness]:
    h = Harness(harness_config)
    yield h
    h.stop()


@pytest.fixture
def spa(harness: Harness, request: pytest.FixtureRequest) -> SpaRunner:
    return SpaRunner(harness, request.node.nodeid)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[Any]) -> Iterator[None]:
    outcome = yield
    rep = outcome.get_result()

    # Store test reports for each phase
    setattr(item, f"rep_{rep.when}", rep)

    if not rep.failed or call.excinfo is None:
        return
    path = getattr(call.excinfo.value, "report_path", None)
    if path:
        rep.sections.append((REPORT_SECTION, str(path)))
        item.user_properties.append(("diagnostic_report", str(path)))


__all__ = ["SpaRunner"]
