"""Ordered, typed capture of a session's asynchronous events.

Several CDP event streams (console, exceptions, crash, network) feed one
append-only log. All appends happen on the connection's reader task and share
one sequence counter, which gives a total order without locks.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .redaction import redact_url, redact_url_brief

if TYPE_CHECKING:
    from .session import Session

_LOGGER = logging.getLogger("spa_harness.recorder")
_ECHO = logging.getLogger("spa_harness.events")


class EventKind(str, Enum):
    CONSOLE = "console"
    PAGE_ERROR = "pageError"
    CRASH = "crash"
    REQUEST_FAILED = "requestFailed"
    REQUEST_SUCCEEDED = "requestSucceeded"


@dataclass(frozen=True)
class CapturedEvent:
    kind: EventKind
    seq: int
    ts: float
    payload: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "seq": self.seq, "ts": self.ts, "payload": dict(self.payload)}

    @property
    def message(self) -> str:
        return str(self.payload.get("message") or self.payload.get("reason") or self.payload.get("url") or "")


def _str(x: Any, *, max_len: int = 2000) -> str:
    try:
        s = str(x)
    except Exception:  # noqa: BLE001
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def _remote_obj_to_str(obj: Any) -> str:
    """Best-effort conversion of CDP RemoteObject to short string."""
    if not isinstance(obj, dict):
        return _str(obj)
    for k in ("value", "unserializableValue", "description"):
        if obj.get(k) is not None:
            return _str(obj.get(k))
    typ = obj.get("type")
    subtype = obj.get("subtype")
    return _str(f"<{typ}{('/' + subtype) if subtype else ''}>")


def _stack_top(params: Mapping[str, Any]) -> dict[str, Any] | None:
    """Extract the top stack frame (if present) from CDP event params."""
    st = params.get("stackTrace")
    if not isinstance(st, dict):
        return None
    frames = st.get("callFrames")
    if not isinstance(frames, list) or not frames or not isinstance(frames[0], dict):
        return None
    f0 = frames[0]
    out: dict[str, Any] = {}
    if isinstance(f0.get("url"), str) and f0.get("url"):
        out["url"] = redact_url_brief(f0["url"])
    if isinstance(f0.get("functionName"), str) and f0.get("functionName"):
        out["function"] = _str(f0["functionName"], max_len=120)
    if isinstance(f0.get("lineNumber"), int):
        out["line"] = int(f0["lineNumber"])
    if isinstance(f0.get("columnNumber"), int):
        out["col"] = int(f0["columnNumber"])
    return out or None


def _console_payload(params: Mapping[str, Any]) -> dict[str, Any]:
    level = params.get("type")
    if level == "warning":
        level = "warn"
    args = params.get("args")
    text = " ".join(_remote_obj_to_str(a) for a in args) if isinstance(args, list) else _str(args)
    payload: dict[str, Any] = {"level": level if isinstance(level, str) else "log", "message": text}
    top = _stack_top(params)
    if top:
        payload["stackTop"] = top
    return payload


def _exception_payload(params: Mapping[str, Any]) -> dict[str, Any]:
    details = params["exceptionDetails"]
    exception = details.get("exception") if isinstance(details.get("exception"), dict) else {}
    description = exception.get("description") or exception.get("value")
    message = details.get("text") or "Uncaught exception"
    stack = None
    if isinstance(description, str) and description:
        # V8 descriptions are "Name: message\n    at frame..."; keep first line as the message.
        first, _, rest = description.partition("\n")
        message = first
        stack = rest.strip() or None
    payload: dict[str, Any] = {"message": _str(message, max_len=1200)}
    if stack:
        payload["stack"] = _str(stack, max_len=5000)
    if isinstance(details.get("url"), str) and details.get("url"):
        payload["url"] = redact_url_brief(details["url"])
    if isinstance(details.get("lineNumber"), int):
        payload["line"] = details["lineNumber"]
    if isinstance(details.get("columnNumber"), int):
        payload["col"] = details["columnNumber"]
    top = _stack_top(details)
    if top:
        payload["stackTop"] = top
    return payload


class EventRecorder:
    """Per-session append-only event log."""

    SOURCES: tuple[str, ...] = (
        "Runtime.consoleAPICalled",
        "Runtime.exceptionThrown",
        "Inspector.targetCrashed",
        "Network.requestWillBeSent",
        "Network.responseReceived",
        "Network.loadingFinished",
        "Network.loadingFailed",
    )

    def __init__(self, session_id: str = "", *, verbose: bool = False, max_request_map: int = 800) -> None:
        self.session_id = session_id
        self.verbose = verbose
        self.max_request_map = max_request_map
        self._seq = itertools.count(1)
        self._events: list[CapturedEvent] = []
        self._req: dict[str, dict[str, Any]] = {}
        self._causes: dict[str, dict[str, Any]] = {}
        self._unsubscribe: list[Callable[[], None]] = []
        self._crash_callbacks: list[Callable[[CapturedEvent], None]] = []
        self._closed = False

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribe)

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, session: Session) -> None:
        if self._closed:
            raise RuntimeError("recorder is closed")
        if self._unsubscribe:
            return
        handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "Runtime.consoleAPICalled": self._on_console,
            "Runtime.exceptionThrown": self._on_exception,
            "Inspector.targetCrashed": self._on_crash,
            "Network.requestWillBeSent": self._on_request,
            "Network.responseReceived": self._on_response,
            "Network.loadingFinished": self._on_finished,
            "Network.loadingFailed": self._on_failed,
        }
        for method in self.SOURCES:
            self._unsubscribe.append(session.conn.add_listener(method, handlers[method]))

    def detach(self) -> None:
        while self._unsubscribe:
            self._unsubscribe.pop()()

    def close(self) -> None:
        """Stop recording; the log is immutable from here on."""
        self.detach()
        self._closed = True
        self._req.clear()
        self._causes.clear()

    def on_crash(self, callback: Callable[[CapturedEvent], None]) -> None:
        self._crash_callbacks.append(callback)

    def annotate_failure(self, request_id: str, **details: Any) -> None:
        """Attach context to the requestFailed event the browser will emit for ``request_id``."""
        if not self._closed:
            self._causes[request_id] = details

    # ──────────────────────────────────────────────────────────────────
    # Log access
    # ──────────────────────────────────────────────────────────────────

    def record(self, kind: EventKind, payload: Mapping[str, Any] | Any) -> CapturedEvent | None:
        """Append one event; never raises."""
        if self._closed:
            return None
        try:
            if isinstance(payload, Mapping):
                data = {str(k): v for k, v in payload.items()}
            else:
                data = {"message": _str(payload)}
            event = CapturedEvent(kind=EventKind(kind), seq=next(self._seq), ts=time.time(), payload=MappingProxyType(data))
        except Exception:  # noqa: BLE001
            _LOGGER.debug("coercing malformed %s payload", kind, exc_info=True)
            event = CapturedEvent(
                kind=EventKind.CONSOLE if not isinstance(kind, EventKind) else kind,
                seq=next(self._seq),
                ts=time.time(),
                payload=MappingProxyType({"message": _str(payload), "coerced": True}),
            )
        self._events.append(event)
        if self.verbose:
            _ECHO.info("[%s #%d] %s %s", self.session_id, event.seq, event.kind.value, _str(event.message, max_len=300))
        return event

    def snapshot(self) -> tuple[CapturedEvent, ...]:
        return tuple(self._events)

    def events(self, kind: EventKind | str) -> tuple[CapturedEvent, ...]:
        want = EventKind(kind)
        return tuple(e for e in self._events if e.kind is want)

    def counts(self) -> dict[str, int]:
        out = {k.value: 0 for k in EventKind}
        for e in self._events:
            out[e.kind.value] += 1
        return out

    def __len__(self) -> int:
        return len(self._events)

    # ──────────────────────────────────────────────────────────────────
    # CDP handlers
    # ──────────────────────────────────────────────────────────────────

    def _ingest(self, kind: EventKind, parse: Callable[[dict[str, Any]], dict[str, Any] | None], params: Any) -> None:
        try:
            payload = parse(params)
        except Exception:  # noqa: BLE001
            _LOGGER.debug("coercing malformed %s event", kind.value, exc_info=True)
            payload = {"message": _str(params), "coerced": True}
        if payload is not None:
            self.record(kind, payload)

    def _on_console(self, params: dict[str, Any]) -> None:
        self._ingest(EventKind.CONSOLE, _console_payload, params)

    def _on_exception(self, params: dict[str, Any]) -> None:
        self._ingest(EventKind.PAGE_ERROR, _exception_payload, params)

    def _on_crash(self, params: dict[str, Any]) -> None:  # noqa: ARG002
        event = self.record(EventKind.CRASH, {"message": "Renderer process crashed"})
        if event is None:
            return
        for callback in list(self._crash_callbacks):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("crash callback failed")

    def _on_request(self, params: dict[str, Any]) -> None:
        try:
            request_id = params.get("requestId")
            req = params.get("request")
            if not isinstance(request_id, str) or not isinstance(req, dict):
                return
            self._req[request_id] = {
                "url": redact_url(_str(req.get("url") or "")),
                "method": req.get("method") if isinstance(req.get("method"), str) else None,
                "type": params.get("type") if isinstance(params.get("type"), str) else None,
                "startTs": time.time(),
            }
            if len(self._req) > self.max_request_map:
                # Drop oldest entries by insertion order.
                for k in list(self._req.keys())[: len(self._req) - self.max_request_map]:
                    self._req.pop(k, None)
        except Exception:  # noqa: BLE001
            _LOGGER.debug("ignoring malformed requestWillBeSent", exc_info=True)

    def _on_response(self, params: dict[str, Any]) -> None:
        try:
            meta = self._req.get(params.get("requestId"))  # type: ignore[arg-type]
            resp = params.get("response")
            if meta is None or not isinstance(resp, dict):
                return
            if resp.get("status") is not None:
                meta["status"] = int(resp["status"])
            if isinstance(resp.get("mimeType"), str) and resp["mimeType"]:
                meta["mimeType"] = resp["mimeType"]
        except Exception:  # noqa: BLE001
            _LOGGER.debug("ignoring malformed responseReceived", exc_info=True)

    def _complete(self, params: dict[str, Any]) -> dict[str, Any]:
        req_id = params.get("requestId")
        meta = self._req.pop(req_id, None) if isinstance(req_id, str) else None
        meta = meta or {}
        out: dict[str, Any] = {"url": meta.get("url", ""), "requestId": req_id}
        for key in ("method", "type", "status", "mimeType"):
            if meta.get(key) is not None:
                out[key] = meta[key]
        started = meta.get("startTs")
        if isinstance(started, float):
            out["durationMs"] = max(0, int((time.time() - started) * 1000))
        return out

    def _on_finished(self, params: dict[str, Any]) -> None:
        def parse(p: dict[str, Any]) -> dict[str, Any]:
            out = self._complete(p)
            if isinstance(p.get("encodedDataLength"), (int, float)):
                out["encodedDataLength"] = p["encodedDataLength"]
            status = out.get("status")
            out["ok"] = not (isinstance(status, int) and status >= 400)
            return out

        self._ingest(EventKind.REQUEST_SUCCEEDED, parse, params)

    def _on_failed(self, params: dict[str, Any]) -> None:
        def parse(p: dict[str, Any]) -> dict[str, Any]:
            out = self._complete(p)
            out["reason"] = _str(p.get("errorText") or "unknown")
            if isinstance(p.get("requestId"), str):
                out.update(self._causes.pop(p["requestId"], {}))
            if isinstance(p.get("blockedReason"), str) and p["blockedReason"]:
                out["blockedReason"] = p["blockedReason"]
            if p.get("canceled") is True:
                out["canceled"] = True
            return out

        self._ingest(EventKind.REQUEST_FAILED, parse, params)


__all__ = ["CapturedEvent", "EventKind", "EventRecorder"]
