from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from conftest import FakeCdpConnection, FakePage
from spa_harness import pytest_plugin
from spa_harness.cdp import CdpConnection
from spa_harness.config import HarnessConfig
from spa_harness.errors import AssertionFailure
from spa_harness.orchestrator import Harness
from spa_harness.pytest_plugin import REPORT_SECTION, SpaRunner
from spa_harness.session import Session


def _drive_makereport(exc: BaseException | None, *, failed: bool = True) -> tuple[Any, Any]:
    item = SimpleNamespace(user_properties=[])
    call = SimpleNamespace(excinfo=SimpleNamespace(value=exc) if exc is not None else None)
    rep = SimpleNamespace(when="call", failed=failed, sections=[])
    gen = pytest_plugin.pytest_runtest_makereport(item, call)  # type: ignore[arg-type]
    next(gen)
    with pytest.raises(StopIteration):
        gen.send(SimpleNamespace(get_result=lambda: rep))
    return item, rep


def test_failed_test_report_links_diagnostic_report() -> None:
    item, rep = _drive_makereport(AssertionFailure("cards missing", report_path="/tmp/reports/t/1"))
    assert item.rep_call is rep
    assert rep.sections == [(REPORT_SECTION, "/tmp/reports/t/1")]
    assert item.user_properties == [("diagnostic_report", "/tmp/reports/t/1")]


def test_failures_without_report_and_passes_are_left_alone() -> None:
    item, rep = _drive_makereport(ValueError("plain"))
    assert rep.sections == [] and item.user_properties == []
    item, rep = _drive_makereport(None, failed=False)
    assert rep.sections == [] and item.rep_call is rep


def test_report_header_shows_ci_derived_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pytest_plugin, "get_config", lambda: HarnessConfig(ci=True))
    pytest_config = SimpleNamespace(getoption=lambda name, default=None: "http://staging:8080/admin-next")
    (line,) = pytest_plugin.pytest_report_header(pytest_config)  # type: ignore[arg-type]
    assert line == "spa-harness: base_url=http://staging:8080/admin-next ci=True retries=2 workers=1"


def test_report_header_survives_bad_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken() -> HarnessConfig:
        raise ValueError("HARNESS_NAV_TIMEOUT must be positive, got '-1'")

    monkeypatch.setattr(pytest_plugin, "get_config", broken)
    (line,) = pytest_plugin.pytest_report_header(SimpleNamespace(getoption=lambda *a, **k: None))  # type: ignore[arg-type]
    assert line.startswith("spa-harness: invalid configuration")


def test_runner_uses_the_test_node_id_for_reports(config: HarnessConfig) -> None:
    async def connect() -> tuple[CdpConnection, str | None]:
        conn = FakeCdpConnection()
        FakePage(conn)
        return conn, None

    runner = SpaRunner(Harness(config, connection_factory=connect), "tests/e2e/test_users.py::test_list")

    async def scenario(session: Session) -> None:
        await session.navigate("/users", "vue-mounted/v1")
        assert await session.title() == "Users", "wrong page"

    with pytest.raises(AssertionFailure) as excinfo:
        runner.run(scenario)
    assert excinfo.value.report_path is not None
    assert "tests_e2e_test_users.py_test_list" in excinfo.value.report_path

    report = runner.diagnose("/users", policy="vue-mounted/v1")
    assert report.test_name == "tests/e2e/test_users.py::test_list"
