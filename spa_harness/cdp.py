"""Asynchronous Chrome DevTools Protocol connection for one page target.

One connection per session: events from this socket only ever reach listeners
registered on it, so sessions cannot observe each other.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import CdpError

_LOGGER = logging.getLogger("spa_harness.cdp")

EventCallback = Callable[[dict[str, Any]], "Awaitable[None] | None"]


class CdpConnection:
    """Low-level CDP WebSocket connection (asyncio)."""

    def __init__(self, ws_url: str, timeout: float = 5.0):
        self.ws_url = ws_url
        self.timeout = timeout
        self._ws: Any = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._listeners: dict[str, list[EventCallback]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> CdpConnection:
        try:
            # CDP messages (screenshots, DOM dumps) can exceed the default frame limit.
            self._ws = await asyncio.wait_for(
                websockets.connect(self.ws_url, max_size=None, ping_interval=None),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise CdpError(f"Failed to connect to {self.ws_url}: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop(), name=f"cdp-reader:{self.ws_url}")
        return self

    def add_listener(self, method: str, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to a CDP event; returns the unsubscribe function."""
        self._listeners.setdefault(method, []).append(callback)

        def _remove() -> None:
            callbacks = self._listeners.get(method)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return _remove

    def listener_count(self, method: str | None = None) -> int:
        if method is not None:
            return len(self._listeners.get(method, ()))
        return sum(len(v) for v in self._listeners.values())

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send CDP command and wait for response."""
        if self._closed or self._ws is None:
            raise CdpError(f"{method}: connection is closed")
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            await self._ws.send(json.dumps(msg))
            return await asyncio.wait_for(fut, timeout=self.timeout if timeout is None else timeout)
        except asyncio.TimeoutError as exc:
            raise CdpError(f"{method}: CDP response timed out") from exc
        except WebSocketException as exc:
            raise CdpError(f"{method}: {exc}") from exc
        finally:
            self._pending.pop(msg_id, None)

    async def wait_for_event(
        self,
        method: str,
        timeout: float = 10.0,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> dict[str, Any] | None:
        """Wait for one event matching `predicate`; None on timeout."""
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

        def _on_event(params: dict[str, Any]) -> None:
            if fut.done():
                return
            if predicate is None or predicate(params):
                fut.set_result(params)

        remove = self.add_listener(method, _on_event)
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            remove()

    def dispatch(self, method: str, params: dict[str, Any]) -> None:
        """Deliver one event to its listeners, in registration order."""
        for callback in list(self._listeners.get(method, ())):
            try:
                result = callback(params)
            except Exception:  # noqa: BLE001
                # A broken listener must never stall the reader loop.
                _LOGGER.exception("cdp listener failed for %s", method)
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._tasks.add(task)  # type: ignore[arg-type]

        def _done(t: asyncio.Future[Any]) -> None:
            self._tasks.discard(t)  # type: ignore[arg-type]
            if not t.cancelled() and t.exception() is not None:
                _LOGGER.warning("cdp listener task failed: %s", t.exception())

        task.add_done_callback(_done)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue

                # CDP event: method + params, no id.
                if isinstance(data.get("method"), str) and "id" not in data:
                    params = data.get("params")
                    self.dispatch(data["method"], params if isinstance(params, dict) else {})
                    continue

                fut = self._pending.get(data.get("id"))  # type: ignore[arg-type]
                if fut is None or fut.done():
                    continue
                if "error" in data:
                    fut.set_exception(CdpError(str(data["error"])))
                else:
                    result = data.get("result")
                    fut.set_result(result if isinstance(result, dict) else {})
        except ConnectionClosed:
            _LOGGER.debug("cdp socket closed: %s", self.ws_url)
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(CdpError("connection closed"))

    async def close(self) -> None:
        """Close the socket, fail pending commands and cancel listener tasks."""
        self._mark_closed()
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None:
            with suppress(Exception):
                await asyncio.wait_for(self._ws.close(), timeout=1.0)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await self._reader
        self._listeners.clear()


__all__ = ["CdpConnection", "EventCallback"]
