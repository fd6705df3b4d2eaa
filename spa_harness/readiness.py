"""Page readiness: named strategies composed into bounded policies.

A strategy is one observable condition (commit, DOMContentLoaded, network
quiet, selector present, ...). A policy races its strategies or tries them in
order, and always gives up at its own hard bound. Every watcher is armed before
`Page.navigate` is sent so early events are never missed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import CdpError, CrashDetected, NavigationFailed, NavigationTimeout
from .redaction import redact_url

if TYPE_CHECKING:
    from .session import Session

_LOGGER = logging.getLogger("spa_harness.readiness")

RACE = "race"
FALLBACK = "fallback"

# Long-lived streams never "finish" and would keep the network busy forever.
_IGNORED_RESOURCE_TYPES = {"EventSource", "WebSocket"}


class StrategyKind(str, Enum):
    COMMIT = "commit"
    DOM_CONTENT_LOADED = "domcontentloaded"
    LOAD = "load"
    NETWORK_QUIESCENT = "network-quiescent"
    SELECTOR_PRESENT = "selector-present"
    FIXED_DELAY = "fixed-delay"


@dataclass(frozen=True)
class ReadinessStrategy:
    kind: StrategyKind
    timeout: float = 10.0
    selector: str | None = None
    text: str | None = None
    quiet_window: float = 0.5
    delay: float = 0.0
    poll_interval: float = 0.1

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", StrategyKind(self.kind))
        if self.timeout <= 0:
            raise ValueError(f"{self.kind.value}: timeout must be positive")
        if self.kind is StrategyKind.NETWORK_QUIESCENT and not 0 < self.quiet_window < self.timeout:
            raise ValueError("network-quiescent: quiet window must be positive and shorter than the timeout")
        if self.kind is StrategyKind.SELECTOR_PRESENT and not (self.selector or self.text):
            raise ValueError("selector-present: a selector or a text is required")
        if self.kind is StrategyKind.FIXED_DELAY and not 0 <= self.delay < self.timeout:
            raise ValueError("fixed-delay: delay must be non-negative and shorter than the timeout")

    @property
    def name(self) -> str:
        if self.kind is StrategyKind.SELECTOR_PRESENT:
            return f"selector-present({self.selector})" if self.selector else f"text-present({self.text})"
        if self.kind is StrategyKind.FIXED_DELAY:
            return f"fixed-delay({self.delay:g}s)"
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "kind": self.kind.value, "timeout": self.timeout}
        if self.selector:
            out["selector"] = self.selector
        if self.text:
            out["text"] = self.text
        if self.kind is StrategyKind.NETWORK_QUIESCENT:
            out["quietWindow"] = self.quiet_window
        if self.kind is StrategyKind.FIXED_DELAY:
            out["delay"] = self.delay
        return out


def commit(timeout: float = 10.0) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.COMMIT, timeout=timeout)


def dom_content_loaded(timeout: float = 10.0) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.DOM_CONTENT_LOADED, timeout=timeout)


def load(timeout: float = 30.0) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.LOAD, timeout=timeout)


def network_quiescent(quiet_window: float = 0.5, timeout: float = 10.0) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.NETWORK_QUIESCENT, timeout=timeout, quiet_window=quiet_window)


def selector_present(selector: str | None = None, *, text: str | None = None, timeout: float = 10.0) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.SELECTOR_PRESENT, timeout=timeout, selector=selector, text=text)


def fixed_delay(delay: float) -> ReadinessStrategy:
    return ReadinessStrategy(StrategyKind.FIXED_DELAY, timeout=delay + 1.0, delay=delay)


@dataclass(frozen=True)
class ReadinessPolicy:
    name: str
    strategies: tuple[ReadinessStrategy, ...]
    mode: str = RACE
    timeout: float = 10.0
    rationale: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategies", tuple(self.strategies))
        if not self.strategies:
            raise ValueError(f"policy {self.name!r} has no strategies")
        if self.mode not in (RACE, FALLBACK):
            raise ValueError(f"policy {self.name!r}: mode must be {RACE!r} or {FALLBACK!r}")
        if self.timeout <= 0:
            raise ValueError(f"policy {self.name!r}: timeout must be positive")
        if not self.rationale.strip():
            raise ValueError(f"policy {self.name!r} must state a rationale")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode,
            "timeout": self.timeout,
            "rationale": self.rationale,
            "strategies": [s.to_dict() for s in self.strategies],
        }


POLICIES: dict[str, ReadinessPolicy] = {
    p.name: p
    for p in (
        ReadinessPolicy(
            "shell-race/v1",
            (network_quiescent(0.5, timeout=10.0), selector_present("#app", timeout=10.0)),
            mode=RACE,
            timeout=10.0,
            rationale="The app shell is usable as soon as #app exists or the network settles, whichever comes first.",
        ),
        ReadinessPolicy(
            "commit-then-shell/v1",
            (commit(timeout=5.0), selector_present("#app", timeout=10.0)),
            mode=FALLBACK,
            timeout=15.0,
            rationale="Routes that only need the document committed; fall back to the app shell if commit is not observed.",
        ),
        ReadinessPolicy(
            "dom-then-delay/v1",
            (dom_content_loaded(timeout=10.0), fixed_delay(2.0)),
            mode=FALLBACK,
            timeout=15.0,
            rationale="Static pages: DOMContentLoaded is enough; a fixed delay is the last resort when it never fires.",
        ),
        ReadinessPolicy(
            "network-idle/v1",
            (network_quiescent(0.5, timeout=30.0),),
            mode=RACE,
            timeout=30.0,
            rationale="Data-heavy pages whose assertions depend on every initial API call having completed.",
        ),
        ReadinessPolicy(
            "vue-mounted/v1",
            (selector_present("[data-v-app]", timeout=15.0),),
            mode=RACE,
            timeout=15.0,
            rationale="Vue marks its mount root with data-v-app; its presence means the root component rendered.",
        ),
    )
}

DEFAULT_POLICY = "shell-race/v1"


def resolve_policy(policy: ReadinessPolicy | str | None) -> ReadinessPolicy:
    if policy is None:
        return POLICIES[DEFAULT_POLICY]
    if isinstance(policy, ReadinessPolicy):
        return policy
    try:
        return POLICIES[policy]
    except KeyError:
        raise ValueError(f"unknown readiness policy {policy!r}; known: {', '.join(sorted(POLICIES))}") from None


@dataclass(frozen=True)
class ReadinessOutcome:
    status: str
    policy: str
    url: str
    elapsed: float
    state: str
    winner: str | None = None
    pending: tuple[str, ...] = ()
    attempts: dict[str, str] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.status == "ready"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "policy": self.policy,
            "url": redact_url(self.url),
            "elapsed": round(self.elapsed, 3),
            "state": self.state,
            "winner": self.winner,
            "pending": list(self.pending),
            "attempts": dict(self.attempts),
        }


class NavigationWatch:
    """Page/Network listeners armed for exactly one navigation."""

    def __init__(self, session: Session) -> None:
        self._loop = asyncio.get_running_loop()
        self.committed = asyncio.Event()
        self.dom_ready = asyncio.Event()
        self.loaded = asyncio.Event()
        self.inflight: set[str] = set()
        self.last_activity = self._loop.time()
        conn = session.conn
        self._unsubscribe: list[Callable[[], None]] = [
            conn.add_listener("Page.frameNavigated", self._on_frame_navigated),
            conn.add_listener("Page.domContentEventFired", lambda _p: self.dom_ready.set()),
            conn.add_listener("Page.loadEventFired", lambda _p: self.loaded.set()),
            conn.add_listener("Network.requestWillBeSent", self._on_request),
            conn.add_listener("Network.loadingFinished", self._on_done),
            conn.add_listener("Network.loadingFailed", self._on_done),
        ]

    def _on_frame_navigated(self, params: dict[str, Any]) -> None:
        frame = params.get("frame")
        if isinstance(frame, dict) and not frame.get("parentId"):
            self.committed.set()

    def _on_request(self, params: dict[str, Any]) -> None:
        request_id = params.get("requestId")
        if isinstance(request_id, str) and params.get("type") not in _IGNORED_RESOURCE_TYPES:
            self.inflight.add(request_id)
        self.last_activity = self._loop.time()

    def _on_done(self, params: dict[str, Any]) -> None:
        self.inflight.discard(params.get("requestId"))  # type: ignore[arg-type]
        self.last_activity = self._loop.time()

    def quiet_for(self) -> float:
        if self.inflight:
            return 0.0
        return self._loop.time() - self.last_activity

    def close(self) -> None:
        while self._unsubscribe:
            self._unsubscribe.pop()()


def _selector_probe(strategy: ReadinessStrategy) -> str:
    if strategy.selector:
        return f"!!document.querySelector({json.dumps(strategy.selector)})"
    return f"!!(document.body && document.body.innerText.includes({json.dumps(strategy.text)}))"


async def _wait_strategy(session: Session, watch: NavigationWatch, strategy: ReadinessStrategy) -> None:
    kind = strategy.kind
    if kind is StrategyKind.COMMIT:
        await watch.committed.wait()
    elif kind is StrategyKind.DOM_CONTENT_LOADED:
        await watch.dom_ready.wait()
    elif kind is StrategyKind.LOAD:
        await watch.loaded.wait()
    elif kind is StrategyKind.NETWORK_QUIESCENT:
        await watch.committed.wait()
        while True:
            quiet = watch.quiet_for()
            if quiet >= strategy.quiet_window:
                return
            await asyncio.sleep(min(strategy.poll_interval, max(0.01, strategy.quiet_window - quiet)))
    elif kind is StrategyKind.SELECTOR_PRESENT:
        # The previous document may still match until the new one commits.
        await watch.committed.wait()
        probe = _selector_probe(strategy)
        while True:
            try:
                if await session.eval_js(probe, timeout=max(strategy.poll_interval * 10, 1.0)):
                    return
            except CdpError:
                # Execution context is replaced while the document loads.
                pass
            await asyncio.sleep(strategy.poll_interval)
    elif kind is StrategyKind.FIXED_DELAY:
        _LOGGER.warning("session %s: waiting a fixed %.1fs; prefer an observable readiness signal", session.id, strategy.delay)
        await asyncio.sleep(strategy.delay)


async def _run_strategy(session: Session, watch: NavigationWatch, strategy: ReadinessStrategy, budget: float) -> None:
    await asyncio.wait_for(_wait_strategy(session, watch, strategy), timeout=min(strategy.timeout, budget))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return f"{type(exc).__name__}: {exc}"


def _crash_error(session: Session, url: str) -> CrashDetected:
    return CrashDetected(
        f"renderer crashed while navigating to {redact_url(url)}",
        details={"sessionId": session.id, "url": redact_url(url)},
    )


async def _cancel(*tasks: asyncio.Future[Any] | None) -> None:
    live = [t for t in tasks if t is not None and not t.done()]
    for t in live:
        t.cancel()
    if live:
        await asyncio.gather(*live, return_exceptions=True)


async def _race(
    session: Session,
    watch: NavigationWatch,
    policy: ReadinessPolicy,
    deadline: float,
    crash_task: asyncio.Future[Any],
    attempts: dict[str, str],
    url: str,
) -> ReadinessStrategy | None:
    loop = asyncio.get_running_loop()
    budget = max(0.0, deadline - loop.time())
    tasks = {asyncio.ensure_future(_run_strategy(session, watch, s, budget)): s for s in policy.strategies}
    try:
        pending: set[asyncio.Future[Any]] = set(tasks)
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, _ = await asyncio.wait(pending | {crash_task}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if crash_task in done:
                raise _crash_error(session, url)
            pending -= done
            # Policy order breaks ties between strategies finishing in the same tick.
            for task, strategy in tasks.items():
                if task not in done:
                    continue
                exc = task.exception()
                if exc is None:
                    attempts[strategy.name] = "satisfied"
                    return strategy
                if isinstance(exc, CrashDetected):
                    raise _crash_error(session, url) from exc
                attempts[strategy.name] = _describe(exc)
        return None
    finally:
        await _cancel(*tasks)


async def _fallback(
    session: Session,
    watch: NavigationWatch,
    policy: ReadinessPolicy,
    deadline: float,
    crash_task: asyncio.Future[Any],
    attempts: dict[str, str],
    url: str,
) -> ReadinessStrategy | None:
    loop = asyncio.get_running_loop()
    for strategy in policy.strategies:
        remaining = deadline - loop.time()
        if remaining <= 0:
            attempts.setdefault(strategy.name, "skipped: policy bound reached")
            continue
        task = asyncio.ensure_future(_run_strategy(session, watch, strategy, remaining))
        try:
            done, _ = await asyncio.wait({task, crash_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _cancel(task)
        if crash_task in done:
            raise _crash_error(session, url)
        exc = task.exception()
        if exc is None:
            attempts[strategy.name] = "satisfied"
            return strategy
        if isinstance(exc, CrashDetected):
            raise _crash_error(session, url) from exc
        attempts[strategy.name] = _describe(exc)
        _LOGGER.info("session %s: %s %s, falling back", session.id, strategy.name, attempts[strategy.name])
    return None


async def navigate_and_wait(
    session: Session,
    url: str,
    policy: ReadinessPolicy | str | None = None,
    *,
    timeout: float | None = None,
) -> ReadinessOutcome:
    """Navigate `session` to `url` and wait until `policy` deems the page ready.

    Raises NavigationTimeout (with the pending strategies), NavigationFailed
    when the browser rejects the navigation, or CrashDetected. On a crash the
    session's last outcome becomes a ``crashed`` one for this navigation.
    """
    policy = resolve_policy(policy)
    bound = float(timeout) if timeout else policy.timeout
    started = asyncio.get_running_loop().time()
    attempts: dict[str, str] = {}
    try:
        return await _navigate(session, url, policy, bound, started, attempts)
    except CrashDetected:
        session.last_outcome = ReadinessOutcome(
            status="crashed",
            policy=policy.name,
            url=url,
            elapsed=asyncio.get_running_loop().time() - started,
            state=session.state.value,
            pending=tuple(s.name for s in policy.strategies if attempts.get(s.name) != "satisfied"),
            attempts=attempts,
        )
        raise


async def _navigate(
    session: Session,
    url: str,
    policy: ReadinessPolicy,
    bound: float,
    started: float,
    attempts: dict[str, str],
) -> ReadinessOutcome:
    from .session import SessionState

    loop = asyncio.get_running_loop()
    deadline = started + bound

    if session.crashed:
        raise _crash_error(session, url)

    watch = NavigationWatch(session)
    session.interceptor.seal()
    session.transition(SessionState.NAVIGATING)
    crash_task = asyncio.ensure_future(session.wait_crashed())
    nav_task: asyncio.Future[dict[str, Any]] | None = None
    winner: ReadinessStrategy | None = None
    try:
        _LOGGER.info("session %s: navigating to %s (policy %s)", session.id, redact_url(url), policy.name)
        nav_task = asyncio.ensure_future(session.conn.send("Page.navigate", {"url": url}, timeout=bound))
        done, _ = await asyncio.wait({nav_task, crash_task}, timeout=bound, return_when=asyncio.FIRST_COMPLETED)
        if crash_task in done:
            raise _crash_error(session, url)
        if nav_task in done:
            try:
                result = nav_task.result()
            except CdpError as exc:
                raise NavigationFailed(
                    f"Page.navigate to {redact_url(url)} failed: {exc}", details={"url": redact_url(url)}
                ) from exc
            error_text = result.get("errorText")
            if error_text:
                raise NavigationFailed(
                    f"{redact_url(url)}: {error_text}",
                    details={"url": redact_url(url), "errorText": error_text},
                )
            session.url = url
            run = _race if policy.mode == RACE else _fallback
            winner = await run(session, watch, policy, deadline, crash_task, attempts, url)
        else:
            attempts["Page.navigate"] = "no response"
    finally:
        watch.close()
        await _cancel(nav_task, crash_task)

    if session.crashed:
        raise _crash_error(session, url)
    elapsed = loop.time() - started
    pending = tuple(s.name for s in policy.strategies if s is not winner)
    if winner is None:
        session.transition(SessionState.TIMED_OUT)
        outcome = ReadinessOutcome(
            status="timedOut",
            policy=policy.name,
            url=url,
            elapsed=elapsed,
            state=session.state.value,
            pending=tuple(s.name for s in policy.strategies),
            attempts=attempts,
        )
        session.last_outcome = outcome
        _LOGGER.warning("session %s: %s not ready after %.1fs (pending: %s)", session.id, redact_url(url), elapsed, ", ".join(outcome.pending))
        raise NavigationTimeout(
            f"{redact_url(url)} not ready within {bound:g}s under {policy.name}",
            details={"pending": list(outcome.pending), "outcome": outcome.to_dict()},
        )

    session.transition(SessionState.READY)
    outcome = ReadinessOutcome(
        status="ready",
        policy=policy.name,
        url=url,
        elapsed=elapsed,
        state=session.state.value,
        winner=winner.name,
        pending=pending,
        attempts=attempts,
    )
    session.last_outcome = outcome
    _LOGGER.info("session %s: ready via %s in %.2fs", session.id, winner.name, elapsed)
    return outcome


__all__ = [
    "DEFAULT_POLICY",
    "FALLBACK",
    "POLICIES",
    "RACE",
    "NavigationWatch",
    "ReadinessOutcome",
    "ReadinessPolicy",
    "ReadinessStrategy",
    "StrategyKind",
    "commit",
    "dom_content_loaded",
    "fixed_delay",
    "load",
    "navigate_and_wait",
    "network_quiescent",
    "resolve_policy",
    "selector_present",
]
