"""One isolated browser session: a page target, its CDP connection and its instrumentation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import HarnessConfig, Viewport
from .errors import CdpError, CrashDetected
from .interceptor import Interceptor, MockResponse, Pattern
from .recorder import CapturedEvent, EventRecorder

if TYPE_CHECKING:
    from .cdp import CdpConnection
    from .readiness import ReadinessOutcome, ReadinessPolicy

_LOGGER = logging.getLogger("spa_harness.session")


class SessionState(str, Enum):
    CREATED = "created"
    INTERCEPTING = "intercepting"
    NAVIGATING = "navigating"
    READY = "ready"
    TIMED_OUT = "timedOut"
    CRASHED = "crashed"
    REPORTING = "reporting"
    CLOSED = "closed"


_S = SessionState
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    _S.CREATED: frozenset({_S.INTERCEPTING, _S.NAVIGATING, _S.CRASHED, _S.REPORTING, _S.CLOSED}),
    _S.INTERCEPTING: frozenset({_S.NAVIGATING, _S.CRASHED, _S.REPORTING, _S.CLOSED}),
    _S.NAVIGATING: frozenset({_S.READY, _S.TIMED_OUT, _S.CRASHED, _S.REPORTING, _S.CLOSED}),
    # A ready session may walk to another route; this is the only backward edge.
    _S.READY: frozenset({_S.NAVIGATING, _S.CRASHED, _S.REPORTING, _S.CLOSED}),
    _S.TIMED_OUT: frozenset({_S.CRASHED, _S.REPORTING, _S.CLOSED}),
    _S.CRASHED: frozenset({_S.REPORTING, _S.CLOSED}),
    _S.REPORTING: frozenset({_S.CLOSED}),
    _S.CLOSED: frozenset(),
}


class Session:
    """A live page target plus the per-session interceptor and event recorder."""

    def __init__(
        self,
        conn: CdpConnection,
        config: HarnessConfig,
        *,
        target_id: str | None = None,
        session_id: str | None = None,
        viewport: Viewport | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.conn = conn
        self.config = config
        self.target_id = target_id
        self.viewport = viewport or config.viewport
        self.url = "about:blank"
        self.state = SessionState.CREATED
        self.history: list[tuple[SessionState, float]] = [(SessionState.CREATED, time.time())]
        self.interceptor = Interceptor()
        self.recorder = EventRecorder(self.id, verbose=config.verbose)
        self.recorder.on_crash(self._on_crash)
        self.last_outcome: ReadinessOutcome | None = None
        self._crash_event = asyncio.Event()
        self._unsubscribe_nav = None

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value!r}, url={self.url!r})"

    # ──────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────

    @property
    def crashed(self) -> bool:
        return self._crash_event.is_set()

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def can_transition(self, new: SessionState) -> bool:
        return new in TRANSITIONS[self.state]

    def transition(self, new: SessionState) -> None:
        if new is self.state:
            return
        if not self.can_transition(new):
            raise RuntimeError(f"illegal session transition {self.state.value} -> {new.value}")
        _LOGGER.debug("session %s: %s -> %s", self.id, self.state.value, new.value)
        self.state = new
        self.history.append((new, time.time()))

    async def wait_crashed(self) -> None:
        await self._crash_event.wait()

    def _on_crash(self, event: CapturedEvent) -> None:
        self._crash_event.set()
        _LOGGER.warning("session %s: renderer crashed (event #%d)", self.id, event.seq)
        if self.can_transition(SessionState.CRASHED):
            self.transition(SessionState.CRASHED)

    def _on_frame_navigated(self, params: dict[str, Any]) -> None:
        frame = params.get("frame")
        if isinstance(frame, dict) and not frame.get("parentId") and isinstance(frame.get("url"), str):
            self.url = frame["url"]

    async def open(self) -> Session:
        """Attach the recorder and enable the CDP domains every session needs."""
        self.recorder.attach(self)
        self._unsubscribe_nav = self.conn.add_listener("Page.frameNavigated", self._on_frame_navigated)
        for domain in ("Page", "Runtime", "Network", "Inspector"):
            await self.conn.send(f"{domain}.enable")
        await self.conn.send(
            "Emulation.setDeviceMetricsOverride",
            {
                "width": self.viewport.width,
                "height": self.viewport.height,
                "deviceScaleFactor": 1,
                "mobile": False,
            },
        )
        return self

    async def install_rules(self, rules: list[tuple[Pattern, MockResponse]] | None = None) -> None:
        self.interceptor.register_rules(rules)
        await self.interceptor.install(self)
        self.transition(SessionState.INTERCEPTING)

    async def navigate(
        self,
        target: str,
        policy: ReadinessPolicy | str | None = None,
        *,
        timeout: float | None = None,
    ) -> ReadinessOutcome:
        """Navigate to a URL or route and wait until the page counts as ready."""
        from .readiness import navigate_and_wait

        return await navigate_and_wait(self, self.config.resolve_url(target), policy, timeout=timeout)

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self._unsubscribe_nav is not None:
            self._unsubscribe_nav()
            self._unsubscribe_nav = None
        await self.interceptor.uninstall()
        self.recorder.close()
        await self.conn.close()
        self.transition(SessionState.CLOSED)

    # ──────────────────────────────────────────────────────────────────
    # Page access
    # ──────────────────────────────────────────────────────────────────

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Page action on this session's target; bounded by ``action_timeout`` unless told otherwise."""
        if self.crashed:
            raise CrashDetected(f"{method}: renderer crashed", details={"sessionId": self.id})
        return await self.conn.send(method, params, timeout=self.config.action_timeout if timeout is None else timeout)

    async def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate JavaScript and return result (undefined/null become None)."""
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            timeout=timeout,
        )
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            raise CdpError(f"Runtime.evaluate threw: {exc.get('description') or details.get('text') or 'error'}")
        if "result" not in result:
            return None
        value = result["result"]
        if isinstance(value, dict) and value.get("type") == "undefined":
            return None
        if isinstance(value, dict) and value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value", value) if isinstance(value, dict) else value

    async def current_url(self) -> str:
        url = await self.eval_js("window.location.href")
        if isinstance(url, str) and url:
            self.url = url
        return self.url

    async def title(self) -> str:
        return await self.eval_js("document.title") or ""

    async def screenshot(self, *, timeout: float | None = None) -> str:
        """Capture the viewport as base64 PNG."""
        result = await self.send("Page.captureScreenshot", {"format": "png"}, timeout=timeout)
        data = result.get("data")
        if not isinstance(data, str) or not data:
            raise CdpError("Page.captureScreenshot returned no data")
        return data

    async def get_dom(self, selector: str | None = None, *, timeout: float | None = None) -> str:
        """Get DOM HTML."""
        if selector:
            js = f"document.querySelector({json.dumps(selector)})?.outerHTML || ''"
        else:
            js = "document.documentElement ? document.documentElement.outerHTML : ''"
        return await self.eval_js(js, timeout=timeout) or ""

    async def body_text(self, *, timeout: float | None = None) -> str:
        return await self.eval_js("document.body ? document.body.innerText : ''", timeout=timeout) or ""


__all__ = ["Session", "SessionState", "TRANSITIONS"]
