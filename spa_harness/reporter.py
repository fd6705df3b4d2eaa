"""Diagnostic report capture.

A report is assembled from independent artifacts (event log, screenshot, DOM,
body text, page probes, backend probes). Each one is gathered under its own
timeout; whatever fails is listed in `missing` and capture carries on, so a
partial report is always written.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from .artifacts import ArtifactRef, ReportStore
from .config import HarnessConfig
from .http_client import DEFAULT_PROBE_PATHS, probe_endpoints
from .probes import app_shell_status, describe_element, visible_elements
from .recorder import EventKind
from .redaction import redact_url

if TYPE_CHECKING:
    from .readiness import ReadinessOutcome
    from .session import Session

_LOGGER = logging.getLogger("spa_harness.reporter")

T = TypeVar("T")

CRASHED = "renderer crashed"
TEXT_SNAPSHOT_CHARS = 2000
SUMMARY_LIST_LIMIT = 10


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def image_size(png: bytes) -> tuple[int, int] | None:
    """Pixel dimensions of an encoded image, or None if it cannot be decoded."""
    from PIL import Image, UnidentifiedImageError

    try:
        with Image.open(io.BytesIO(png)) as img:
            return img.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None


@dataclass(frozen=True)
class DiagnosticReport:
    report_id: str
    session_id: str
    test_name: str
    reason: str
    error_kind: str | None
    created_at: str
    url: str
    state: str
    path: str
    events: tuple[dict[str, Any], ...] = ()
    counts: dict[str, int] = field(default_factory=dict)
    screenshot: dict[str, Any] | None = None
    dom_path: str | None = None
    text: str | None = None
    readiness: dict[str, Any] | None = None
    app_shell: dict[str, Any] | None = None
    visible_elements: tuple[dict[str, Any], ...] = ()
    intercepts: tuple[dict[str, Any], ...] = ()
    backend: tuple[dict[str, Any], ...] = ()
    missing: dict[str, str] = field(default_factory=dict)

    @property
    def report_file(self) -> str:
        return str(Path(self.path) / "report.json")

    def to_dict(self) -> dict[str, Any]:
        return {
            "reportId": self.report_id,
            "sessionId": self.session_id,
            "testName": self.test_name,
            "reason": self.reason,
            "errorKind": self.error_kind,
            "createdAt": self.created_at,
            "url": self.url,
            "state": self.state,
            "path": self.path,
            "counts": dict(self.counts),
            "events": list(self.events),
            "screenshot": self.screenshot,
            "domPath": self.dom_path,
            "text": self.text,
            "readiness": self.readiness,
            "appShell": self.app_shell,
            "visibleElements": list(self.visible_elements),
            "intercepts": list(self.intercepts),
            "backend": list(self.backend),
            "missing": dict(self.missing),
        }


class DiagnosticReporter:
    def __init__(
        self,
        config: HarnessConfig,
        *,
        store: ReportStore | None = None,
        artifact_timeout: float | None = None,
        probe_backend: bool = True,
        probe_paths: tuple[str, ...] = DEFAULT_PROBE_PATHS,
    ) -> None:
        self.config = config
        self.store = store or ReportStore(config.reports_dir)
        self.artifact_timeout = artifact_timeout if artifact_timeout is not None else config.cdp_timeout
        self.probe_backend = probe_backend
        self.probe_paths = probe_paths

    async def _gather(self, name: str, fn: Callable[[], Awaitable[T]], missing: dict[str, str]) -> T | None:
        try:
            return await asyncio.wait_for(fn(), timeout=self.artifact_timeout)
        except asyncio.TimeoutError:
            missing[name] = f"timed out after {self.artifact_timeout:g}s"
        except Exception as exc:  # noqa: BLE001
            missing[name] = f"{type(exc).__name__}: {exc}"
        _LOGGER.debug("report artifact %s missing: %s", name, missing[name])
        return None

    def _write(self, name: str, fn: Callable[[], ArtifactRef], missing: dict[str, str]) -> ArtifactRef | None:
        try:
            return fn()
        except OSError as exc:
            missing[name] = f"write failed: {exc}"
        except ValueError as exc:
            # base64 payloads from the browser can arrive truncated
            missing[name] = f"undecodable payload: {exc}"
        _LOGGER.warning("could not write %s: %s", name, missing[name])
        return None

    async def capture(
        self,
        session: Session,
        reason: str,
        *,
        test_name: str,
        error_kind: str | None = None,
        readiness: ReadinessOutcome | None = None,
    ) -> DiagnosticReport:
        report_dir = self.store.new_report_dir(test_name)
        missing: dict[str, str] = {}

        # Freeze the event log first: it is what happened up to the failure.
        events = tuple(e.to_dict() for e in session.recorder.snapshot())
        counts = session.recorder.counts()
        outcome = readiness if readiness is not None else session.last_outcome

        screenshot: dict[str, Any] | None = None
        dom_path: str | None = None
        text: str | None = None
        app_shell: dict[str, Any] | None = None
        visible: list[dict[str, Any]] | None = None
        url = session.url

        if session.crashed:
            for name in ("screenshot", "dom", "text", "appShell", "visibleElements"):
                missing[name] = CRASHED
        else:
            url = await self._gather("url", session.current_url, missing) or session.url
            shot = await self._gather("screenshot", lambda: session.screenshot(timeout=self.artifact_timeout), missing)
            if shot:
                ref = self._write(
                    "screenshot", lambda: self.store.put_image_b64(report_dir, "screenshot.png", shot, kind="screenshot"), missing
                )
                if ref is not None:
                    size = image_size(base64.b64decode(shot, validate=False))
                    screenshot = {"path": ref.path, "bytes": ref.bytes}
                    if size:
                        screenshot.update({"width": size[0], "height": size[1]})
            dom = await self._gather("dom", lambda: session.get_dom(timeout=self.artifact_timeout), missing)
            if dom is not None:
                ref = self._write(
                    "dom", lambda: self.store.put_text(report_dir, "dom.html", dom, kind="dom", mime_type="text/html"), missing
                )
                dom_path = ref.path if ref is not None else None
            body = await self._gather("text", lambda: session.body_text(timeout=self.artifact_timeout), missing)
            if body is not None:
                self._write("text", lambda: self.store.put_text(report_dir, "text.txt", body, kind="text"), missing)
                text = body[:TEXT_SNAPSHOT_CHARS]
            app_shell = await self._gather("appShell", lambda: app_shell_status(session, timeout=self.artifact_timeout), missing)
            visible = await self._gather(
                "visibleElements", lambda: visible_elements(session, timeout=self.artifact_timeout), missing
            )

        backend: list[dict[str, Any]] = []
        if self.probe_backend and self.config.backend_url:
            backend_url = self.config.backend_url
            result = await self._gather(
                "backend",
                lambda: asyncio.to_thread(
                    probe_endpoints,
                    backend_url,
                    self.probe_paths,
                    timeout=max(0.5, self.artifact_timeout / (len(self.probe_paths) + 1)),
                ),
                missing,
            )
            backend = result or []

        intercepts = tuple(
            {"url": redact_url(h.url), "status": h.status, "pattern": h.pattern} for h in session.interceptor.hits()
        )

        self._write("events", lambda: self.store.put_json(report_dir, "events.json", list(events), kind="events"), missing)

        report = DiagnosticReport(
            report_id=uuid.uuid4().hex[:12],
            session_id=session.id,
            test_name=test_name,
            reason=reason,
            error_kind=error_kind,
            created_at=_now_iso(),
            url=redact_url(url),
            state=session.state.value,
            path=str(report_dir),
            events=events,
            counts=counts,
            screenshot=screenshot,
            dom_path=dom_path,
            text=text,
            readiness=outcome.to_dict() if outcome is not None else None,
            app_shell=app_shell,
            visible_elements=tuple(visible or ()),
            intercepts=intercepts,
            backend=tuple(backend),
            missing=dict(missing),
        )
        self.store.put_json(report_dir, "report.json", report.to_dict(), kind="report")
        _LOGGER.info("diagnostic report for %s written to %s", test_name, report_dir)
        return report


def _event_line(event: dict[str, Any]) -> str:
    payload = event.get("payload") or {}
    message = payload.get("message") or payload.get("reason") or ""
    where = payload.get("url") or ""
    if event.get("kind") in (EventKind.REQUEST_FAILED.value, EventKind.REQUEST_SUCCEEDED.value):
        status = payload.get("status")
        bits = [str(payload.get("method") or ""), str(where)]
        if status is not None:
            bits.append(str(status))
        if payload.get("reason"):
            bits.append(str(payload["reason"]))
        if payload.get("cause") and payload.get("cause") != payload.get("reason"):
            bits.append(f"({payload['cause']})")
        return " ".join(b for b in bits if b)
    if payload.get("line") is not None and where:
        where = f"{where}:{payload['line']}"
    return f"{message} ({where})" if where else str(message)


def render_summary(report: DiagnosticReport) -> str:
    """Operator-facing text summary of a report."""
    lines = [f"Diagnostic report: {report.test_name}" + (f" [{report.error_kind}]" if report.error_kind else "")]
    lines.append(f"Reason: {report.reason}")
    lines.append(f"URL: {report.url}  (session {report.session_id}, state {report.state})")

    if report.readiness:
        r = report.readiness
        verdict = f"ready via {r.get('winner')}" if r.get("status") == "ready" else "not ready"
        lines.append(f"Readiness: {r.get('policy')} {verdict} after {r.get('elapsed')}s")
        if r.get("pending") and r.get("status") != "ready":
            lines.append(f"  pending: {', '.join(r['pending'])}")

    lines.append("Events: " + " ".join(f"{k}={v}" for k, v in report.counts.items()))

    def section(title: str, items: list[dict[str, Any]]) -> None:
        if not items:
            return
        lines.append(f"{title} ({len(items)}):")
        for ev in items[:SUMMARY_LIST_LIMIT]:
            lines.append(f"  - {_event_line(ev)}")
        if len(items) > SUMMARY_LIST_LIMIT:
            lines.append(f"  … {len(items) - SUMMARY_LIST_LIMIT} more")

    by_kind: dict[str, list[dict[str, Any]]] = {}
    for ev in report.events:
        by_kind.setdefault(str(ev.get("kind")), []).append(ev)
    section("Crash", by_kind.get(EventKind.CRASH.value, []))
    section("Page errors", by_kind.get(EventKind.PAGE_ERROR.value, []))
    section(
        "Console errors",
        [e for e in by_kind.get(EventKind.CONSOLE.value, []) if (e.get("payload") or {}).get("level") == "error"],
    )
    section("Failed requests", by_kind.get(EventKind.REQUEST_FAILED.value, []))

    if report.app_shell:
        s = report.app_shell
        lines.append(
            f"App shell: #app exists={s.get('appExists')} visible={s.get('appVisible')} "
            f"children={s.get('appChildren')} vueMounted={s.get('vueMounted')} __VUE__={s.get('windowVue')}"
        )
    if report.visible_elements:
        lines.append("Visible elements:")
        for el in report.visible_elements[:SUMMARY_LIST_LIMIT]:
            lines.append(f"  - {describe_element(el)}")

    if report.backend:
        lines.append("Backend:")
        for probe in report.backend:
            status = probe.get("status", probe.get("error"))
            lines.append(f"  - {probe.get('path')}: {status}")

    artifacts = []
    if report.screenshot:
        dims = f" ({report.screenshot['width']}x{report.screenshot['height']})" if "width" in report.screenshot else ""
        artifacts.append(f"screenshot.png{dims}")
    if report.dom_path:
        artifacts.append("dom.html")
    if report.text is not None:
        artifacts.append("text.txt")
    lines.append("Artifacts: " + (", ".join(artifacts) if artifacts else "none"))
    for name, why in report.missing.items():
        lines.append(f"  missing {name}: {why}")
    lines.append(f"Report: {report.path}")
    return "\n".join(lines)


__all__ = ["DiagnosticReport", "DiagnosticReporter", "image_size", "render_summary"]
