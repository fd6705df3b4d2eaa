from __future__ import annotations

import asyncio
import base64
import inspect
import io
import json
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from spa_harness.cdp import CdpConnection
from spa_harness.config import HarnessConfig
from spa_harness.errors import CdpError

Handler = Callable[[dict[str, Any]], Any]


def png_b64(width: int = 1280, height: int = 720) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (255, 255, 255)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class FakeCdpConnection(CdpConnection):
    """CdpConnection without a socket: commands hit canned handlers, events are injected with emit()."""

    def __init__(self, name: str = "fake") -> None:
        super().__init__(f"ws://{name}", timeout=1.0)
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.handlers: dict[str, Handler] = {}

    def on(self, method: str, handler: Handler) -> None:
        self.handlers[method] = handler

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def emit(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.dispatch(method, params or {})

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        if self.closed:
            raise CdpError(f"{method}: connection is closed")
        self.calls.append((method, params))
        handler = self.handlers.get(method)
        if handler is None:
            return {}
        result = handler(params or {})
        if inspect.isawaitable(result):
            try:
                result = await asyncio.wait_for(result, timeout=self.timeout if timeout is None else timeout)
            except asyncio.TimeoutError as exc:
                raise CdpError(f"{method}: CDP response timed out") from exc
        if isinstance(result, BaseException):
            raise result
        return result or {}


async def _never() -> dict[str, Any]:
    await asyncio.Event().wait()
    return {}


class FakePage:
    """Scripted page behind a FakeCdpConnection.

    On Page.navigate it commits, emits `script_events`, issues `requests`
    (through Fetch when interception is enabled) and fires DOMContentLoaded/load.
    """

    def __init__(
        self,
        conn: FakeCdpConnection,
        *,
        selectors: set[str] | None = None,
        requests: list[tuple[str, int | None]] | None = None,
        script_events: list[tuple[str, dict[str, Any]]] | None = None,
        error_text: str | None = None,
        commit: bool = True,
        crash: bool = False,
        hang_requests: bool = False,
        html: str = "<html><body><div id='app' data-v-app=''>Dashboard</div></body></html>",
        text: str = "Dashboard",
        screenshot: str | Exception | None = None,
    ) -> None:
        self.conn = conn
        self.selectors = {"#app", "[data-v-app]"} if selectors is None else selectors
        self.requests = list(requests or [])
        self.script_events = list(script_events or [])
        self.error_text = error_text
        self.commit = commit
        self.crash = crash
        self.hang_requests = hang_requests
        self.html = html
        self.text = text
        self.screenshot = png_b64() if screenshot is None else screenshot
        self.url = "about:blank"
        self.fetch_enabled = False
        self.navigations: list[str] = []
        self._paused: dict[str, tuple[str, str, int | None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

        conn.on("Page.navigate", self._navigate)
        conn.on("Fetch.enable", self._fetch_enable)
        conn.on("Fetch.disable", self._fetch_disable)
        conn.on("Fetch.fulfillRequest", self._fulfill)
        conn.on("Fetch.continueRequest", self._continue)
        conn.on("Runtime.evaluate", self._evaluate)
        conn.on("Page.captureScreenshot", self._screenshot)

    def _fetch_enable(self, _params: dict[str, Any]) -> dict[str, Any]:
        self.fetch_enabled = True
        return {}

    def _fetch_disable(self, _params: dict[str, Any]) -> dict[str, Any]:
        self.fetch_enabled = False
        return {}

    def _navigate(self, params: dict[str, Any]) -> dict[str, Any]:
        url = params["url"]
        self.navigations.append(url)
        if self.error_text:
            return {"frameId": "main", "errorText": self.error_text}
        self.url = url
        task = asyncio.ensure_future(self._play())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return {"frameId": "main", "loaderId": f"L{len(self.navigations)}"}

    async def _play(self) -> None:
        await asyncio.sleep(0)
        if not self.commit:
            return
        self.conn.emit("Page.frameNavigated", {"frame": {"id": "main", "url": self.url}})
        if self.crash:
            self.conn.emit("Inspector.targetCrashed", {})
            return
        for method, params in self.script_events:
            self.conn.emit(method, params)
        for i, (url, status) in enumerate(self.requests):
            request_id = f"{len(self.navigations)}.{i}"
            self.conn.emit(
                "Network.requestWillBeSent",
                {"requestId": request_id, "request": {"url": url, "method": "GET"}, "type": "XHR"},
            )
            if self.hang_requests:
                continue
            if self.fetch_enabled:
                fetch_id = f"f{request_id}"
                self._paused[fetch_id] = (request_id, url, status)
                self.conn.emit(
                    "Fetch.requestPaused",
                    {"requestId": fetch_id, "networkId": request_id, "request": {"url": url, "method": "GET"}},
                )
            else:
                self._respond(request_id, status)
            await asyncio.sleep(0)
        self.conn.emit("Page.domContentEventFired", {"timestamp": 1.0})
        self.conn.emit("Page.loadEventFired", {"timestamp": 1.1})

    def _respond(self, request_id: str, status: int | None) -> None:
        if status is None:
            self.conn.emit("Network.loadingFailed", {"requestId": request_id, "errorText": "net::ERR_CONNECTION_REFUSED"})
            return
        self.conn.emit(
            "Network.responseReceived",
            {"requestId": request_id, "response": {"status": status, "mimeType": "application/json"}},
        )
        self.conn.emit("Network.loadingFinished", {"requestId": request_id, "encodedDataLength": 42})

    def _fulfill(self, params: dict[str, Any]) -> dict[str, Any]:
        request_id, _url, _status = self._paused.pop(params["requestId"])
        self._respond(request_id, int(params["responseCode"]))
        return {}

    def _continue(self, params: dict[str, Any]) -> dict[str, Any]:
        request_id, _url, status = self._paused.pop(params["requestId"])
        self._respond(request_id, status)
        return {}

    def _screenshot(self, _params: dict[str, Any]) -> Any:
        if isinstance(self.screenshot, Exception):
            return self.screenshot
        if self.screenshot == "hang":
            return _never()
        return {"data": self.screenshot}

    def _evaluate(self, params: dict[str, Any]) -> dict[str, Any]:
        expr: str = params.get("expression", "")
        value: Any
        if "getElementById('app')" in expr:
            value = {
                "appExists": "#app" in self.selectors,
                "appVisible": "#app" in self.selectors,
                "appChildren": 1 if "#app" in self.selectors else 0,
                "appInnerHTML": "",
                "vueMounted": "[data-v-app]" in self.selectors,
                "windowVue": "[data-v-app]" in self.selectors,
                "scripts": 2,
                "styles": 1,
                "title": "Admin",
                "readyState": "complete",
                "bodyClassName": "",
            }
        elif "querySelectorAll('body *')" in expr:
            value = [{"tag": "div", "id": "app", "classes": [], "text": self.text}]
        elif expr.startswith("!!document.querySelector("):
            selector = json.loads(re.search(r"querySelector\((.*)\)$", expr).group(1))  # type: ignore[union-attr]
            value = selector in self.selectors
        elif expr.startswith("!!(document.body"):
            needle = json.loads(re.search(r"includes\((.*)\)\)$", expr).group(1))  # type: ignore[union-attr]
            value = needle in self.text
        elif "location.href" in expr:
            value = self.url
        elif "outerHTML" in expr:
            value = self.html
        elif "innerText" in expr:
            value = self.text
        elif "document.title" in expr:
            value = "Admin"
        else:
            return {"result": {"type": "undefined"}}
        return {"result": {"type": type(value).__name__, "value": value}}


@pytest.fixture
def config(tmp_path: Path) -> HarnessConfig:
    return HarnessConfig(
        base_url="http://localhost:8080/admin-next",
        backend_url=None,
        reports_dir=tmp_path / "reports",
        cdp_timeout=1.0,
        navigation_timeout=2.0,
    )


@pytest.fixture
def fake_conn() -> FakeCdpConnection:
    return FakeCdpConnection()
