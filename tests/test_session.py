from __future__ import annotations

import asyncio

import pytest

from conftest import FakeCdpConnection
from spa_harness.config import HarnessConfig, Viewport
from spa_harness.errors import CdpError, CrashDetected
from spa_harness.session import TRANSITIONS, Session, SessionState


def test_transition_table_only_moves_forward_except_ready_to_navigating() -> None:
    order = [
        SessionState.CREATED,
        SessionState.INTERCEPTING,
        SessionState.NAVIGATING,
        SessionState.READY,
        SessionState.REPORTING,
        SessionState.CLOSED,
    ]
    rank = {s: i for i, s in enumerate(order)}
    rank[SessionState.TIMED_OUT] = rank[SessionState.READY]
    rank[SessionState.CRASHED] = rank[SessionState.READY]
    for src, targets in TRANSITIONS.items():
        for dst in targets:
            if (src, dst) == (SessionState.READY, SessionState.NAVIGATING):
                continue
            if dst is SessionState.CRASHED:
                continue
            assert rank[dst] >= rank[src], (src, dst)
    # crashed is reachable from every live state
    live = set(SessionState) - {SessionState.CRASHED, SessionState.REPORTING, SessionState.CLOSED}
    assert all(SessionState.CRASHED in TRANSITIONS[s] for s in live)
    assert TRANSITIONS[SessionState.CLOSED] == frozenset()


def test_illegal_transition_raises() -> None:
    async def _main() -> None:
        session = Session(FakeCdpConnection(), HarnessConfig())
        session.transition(SessionState.NAVIGATING)
        with pytest.raises(RuntimeError, match="navigating -> created"):
            session.transition(SessionState.CREATED)
        session.transition(SessionState.READY)
        session.transition(SessionState.NAVIGATING)
        assert [s for s, _ in session.history] == [
            SessionState.CREATED,
            SessionState.NAVIGATING,
            SessionState.READY,
            SessionState.NAVIGATING,
        ]

    asyncio.run(_main())


def test_open_enables_domains_and_emulates_viewport() -> None:
    async def _main() -> None:
        conn = FakeCdpConnection()
        session = Session(conn, HarnessConfig(), viewport=Viewport(800, 600))
        await session.open()
        assert conn.methods()[:4] == ["Page.enable", "Runtime.enable", "Network.enable", "Inspector.enable"]
        metrics = dict(conn.calls)["Emulation.setDeviceMetricsOverride"]
        assert metrics == {"width": 800, "height": 600, "deviceScaleFactor": 1, "mobile": False}
        assert session.recorder.attached

        conn.emit("Page.frameNavigated", {"frame": {"id": "child", "parentId": "main", "url": "http://x/iframe"}})
        conn.emit("Page.frameNavigated", {"frame": {"id": "main", "url": "http://localhost:8080/admin-next/"}})
        assert session.url == "http://localhost:8080/admin-next/"

        await session.close()
        assert session.state is SessionState.CLOSED
        assert conn.closed
        assert session.recorder.closed
        await session.close()

    asyncio.run(_main())


def test_eval_js_normalizes_values_and_raises_on_exceptions() -> None:
    async def _main() -> None:
        conn = FakeCdpConnection()
        session = Session(conn, HarnessConfig())
        replies = iter(
            [
                {"result": {"type": "number", "value": 3}},
                {"result": {"type": "undefined"}},
                {"result": {"type": "object", "subtype": "null"}},
                {"result": {"type": "object"}, "exceptionDetails": {"exception": {"description": "SyntaxError: nope"}}},
            ]
        )
        conn.on("Runtime.evaluate", lambda p: next(replies))
        assert await session.eval_js("1 + 2") == 3
        assert await session.eval_js("undefined") is None
        assert await session.eval_js("null") is None
        with pytest.raises(CdpError, match="SyntaxError: nope"):
            await session.eval_js("(")
        params = conn.calls[0][1] or {}
        assert params["returnByValue"] is True and params["awaitPromise"] is True

    asyncio.run(_main())


def test_crash_marks_session_and_blocks_further_commands() -> None:
    async def _main() -> None:
        conn = FakeCdpConnection()
        session = Session(conn, HarnessConfig())
        await session.open()
        session.transition(SessionState.NAVIGATING)
        conn.emit("Inspector.targetCrashed", {})
        assert session.crashed
        assert session.state is SessionState.CRASHED
        with pytest.raises(CrashDetected):
            await session.screenshot()
        await asyncio.wait_for(session.wait_crashed(), 0.1)

    asyncio.run(_main())


def test_page_actions_default_to_action_timeout() -> None:
    async def _main() -> None:
        conn = FakeCdpConnection()
        session = Session(conn, HarnessConfig(action_timeout=0.1))

        async def stuck(_params: dict) -> dict:
            await asyncio.Event().wait()
            return {}

        conn.on("Runtime.evaluate", stuck)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(CdpError, match="timed out"):
            await session.eval_js("document.title")
        assert loop.time() - started < 0.5

        # an explicit timeout still wins over the configured default
        started = loop.time()
        with pytest.raises(CdpError, match="timed out"):
            await session.eval_js("document.title", timeout=0.3)
        assert loop.time() - started >= 0.25

    asyncio.run(_main())
