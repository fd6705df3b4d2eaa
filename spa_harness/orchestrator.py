"""Session orchestration: setup, failure routing to the reporter, and teardown."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from .cdp import CdpConnection
from .config import HarnessConfig, Viewport, get_config
from .errors import AssertionFailure, CdpError, CrashDetected, HarnessError, error_kind
from .interceptor import MockResponse, Pattern, external_asset_rules
from .launcher import BrowserLauncher, LaunchResult
from .readiness import ReadinessPolicy
from .reporter import DiagnosticReport, DiagnosticReporter
from .session import Session, SessionState

_LOGGER = logging.getLogger("spa_harness.orchestrator")

T = TypeVar("T")

ConnectionFactory = Callable[[], Awaitable["tuple[CdpConnection, str | None]"]]
Scenario = Callable[[Session], Awaitable[T]]
Rules = list[tuple[Pattern, MockResponse]]


class Harness:
    """Owns the browser endpoint and the reporter; hands out isolated sessions."""

    def __init__(
        self,
        config: HarnessConfig | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        reporter: DiagnosticReporter | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config or get_config()
        self.launcher = launcher or BrowserLauncher(self.config)
        self.reporter = reporter or DiagnosticReporter(self.config)
        self._connect = connection_factory or self._open_target
        self._started = False
        self.last_report: DiagnosticReport | None = None

    # ──────────────────────────────────────────────────────────────────
    # Browser
    # ──────────────────────────────────────────────────────────────────

    def start(self) -> LaunchResult | None:
        if self._started:
            return None
        result = self.launcher.ensure_running()
        if not self.launcher.cdp_ready():
            detail = f"\n{result.log_tail}" if result.log_tail else ""
            raise CdpError(f"Browser is not reachable on CDP port {self.launcher.cdp_port}: {result.message}{detail}")
        self._started = True
        try:
            version = self.launcher.browser_version()
        except CdpError:
            version = "unknown"
        _LOGGER.info("%s (port %s, %s)", result.message, self.launcher.cdp_port, version)
        return result

    def stop(self) -> None:
        if self.config.mode == "launch":
            self.launcher.stop()
        self._started = False

    async def _open_target(self) -> tuple[CdpConnection, str | None]:
        await asyncio.to_thread(self.start)
        target = await asyncio.to_thread(self.launcher.new_page_target)
        conn = CdpConnection(str(target["webSocketDebuggerUrl"]), timeout=self.config.cdp_timeout)
        try:
            await conn.open()
        except CdpError:
            await asyncio.to_thread(self.launcher.close_target, str(target.get("id") or ""))
            raise
        return conn, target.get("id")

    async def _close_target(self, target_id: str | None) -> None:
        if target_id and self._connect == self._open_target:
            await asyncio.to_thread(self.launcher.close_target, target_id)

    # ──────────────────────────────────────────────────────────────────
    # Sessions
    # ──────────────────────────────────────────────────────────────────

    async def capture(
        self,
        session: Session,
        reason: str,
        *,
        test_name: str,
        error: BaseException | None = None,
    ) -> DiagnosticReport | None:
        """Move the session to reporting and write a report; never raises."""
        if session.can_transition(SessionState.REPORTING):
            session.transition(SessionState.REPORTING)
        try:
            report = await self.reporter.capture(
                session,
                reason,
                test_name=test_name,
                error_kind=error_kind(error) if error is not None else None,
            )
        except Exception:  # noqa: BLE001
            # The original failure must still surface even if the report cannot be written.
            _LOGGER.exception("diagnostic capture failed for %s", test_name)
            return None
        self.last_report = report
        return report

    @asynccontextmanager
    async def session(
        self,
        test_name: str,
        *,
        rules: Rules | None = None,
        viewport: Viewport | None = None,
        mock_external_assets: bool = True,
    ) -> AsyncIterator[Session]:
        """Open an instrumented session; failures inside the block are reported, then re-raised."""
        conn, target_id = await self._connect()
        session = Session(conn, self.config, target_id=target_id, viewport=viewport)
        _LOGGER.debug("session %s opened for %s", session.id, test_name)
        try:
            try:
                await session.open()
                all_rules = list(rules or ())
                if mock_external_assets:
                    all_rules.extend(external_asset_rules())
                await session.install_rules(all_rules)
                yield session
                if session.crashed:
                    # a crash after the last navigation still ends the session
                    raise CrashDetected(
                        f"renderer crashed during {test_name}", details={"sessionId": session.id, "url": session.url}
                    )
            except HarnessError as exc:
                report = await self.capture(session, exc.message, test_name=test_name, error=exc)
                raise exc.with_report(report.path if report else None)
            except AssertionError as exc:
                message = str(exc) or "assertion failed"
                report = await self.capture(session, message, test_name=test_name, error=exc)
                raise AssertionFailure(message, report_path=report.path if report else None) from exc
            except Exception as exc:
                report = await self.capture(session, f"{type(exc).__name__}: {exc}", test_name=test_name, error=exc)
                if report is not None:
                    exc.add_note(f"diagnostic report: {report.path}")
                raise
        finally:
            await session.close()
            await self._close_target(target_id)

    async def run_async(
        self,
        test_name: str,
        scenario: Scenario[T],
        *,
        rules: Rules | None = None,
        viewport: Viewport | None = None,
    ) -> T:
        async with self.session(test_name, rules=rules, viewport=viewport) as session:
            return await scenario(session)

    def run(
        self,
        test_name: str,
        scenario: Scenario[T],
        *,
        rules: Rules | None = None,
        viewport: Viewport | None = None,
    ) -> T:
        """Synchronous entry point: one event loop per scenario."""
        return asyncio.run(self.run_async(test_name, scenario, rules=rules, viewport=viewport))

    async def diagnose_async(
        self,
        target: str | None = None,
        *,
        policy: ReadinessPolicy | str | None = None,
        test_name: str = "diagnose",
        rules: Rules | None = None,
    ) -> DiagnosticReport:
        """Navigate once and always produce a report, whether or not the page became ready."""
        self.last_report = None
        try:
            async with self.session(test_name, rules=rules) as session:
                outcome = await session.navigate(target or "/", policy)
                report = await self.capture(session, f"diagnose requested ({outcome.status})", test_name=test_name)
        except HarnessError as exc:
            if self.last_report is None:
                raise
            _LOGGER.warning("%s", exc)
            return self.last_report
        if report is None:
            raise HarnessError(f"could not write diagnostic report for {test_name}")
        return report

    def diagnose(self, target: str | None = None, **kwargs: Any) -> DiagnosticReport:
        return asyncio.run(self.diagnose_async(target, **kwargs))


__all__ = ["ConnectionFactory", "Harness", "Rules", "Scenario"]
