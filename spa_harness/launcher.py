from __future__ import annotations

import contextlib
import json
import logging
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .config import STABILITY_FLAGS, HarnessConfig, expand_path
from .errors import CdpError

_LOGGER = logging.getLogger("spa_harness.launcher")

_LOG_TAIL_CHARS = 4000


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str
    log_path: str | None = None
    log_tail: str | None = None


def _read_tail(path: str | None) -> str | None:
    if not path:
        return None
    try:
        raw = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw[-_LOG_TAIL_CHARS:]


def _free_local_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class BrowserLauncher:
    """Starts (or attaches to) the Chromium instance every session runs in.

    Sessions never share a tab: each one asks for a fresh page target through
    the DevTools HTTP endpoint and closes it when the session ends.
    """

    def __init__(self, config: HarnessConfig) -> None:
        self.config = config
        self.cdp_port = int(config.cdp_port)
        self.process: subprocess.Popen | None = None

    @property
    def http_base(self) -> str:
        return f"http://127.0.0.1:{self.cdp_port}"

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        try:
            with urlopen(f"{self.http_base}/json/version", timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, URLError):
            return False

    def _port_taken(self) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.2)
            try:
                return sock.connect_ex(("127.0.0.1", self.cdp_port)) == 0
            except OSError:
                return True

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        cfg = self.config
        cmd = [
            cfg.binary_path,
            f"--remote-debugging-port={self.cdp_port}",
            f"--user-data-dir={expand_path(cfg.profile_path)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--ignore-certificate-errors",
            f"--window-size={cfg.viewport.width},{cfg.viewport.height}",
            *STABILITY_FLAGS,
        ]
        if cfg.headless:
            cmd.append("--headless=new")
        cmd.extend(cfg.extra_flags)
        cmd.extend(extra or [])
        return cmd

    # ──────────────────────────────────────────────────────────────────
    # Process lifecycle
    # ──────────────────────────────────────────────────────────────────

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        """Reuse a browser already on the CDP port, or launch one (launch mode only)."""
        if self.cdp_ready():
            how = "Attached to existing browser" if self.config.mode == "attach" else "Browser already listening"
            return LaunchResult([], False, f"{how} on CDP port")
        if self.config.mode == "attach":
            return LaunchResult(
                [],
                False,
                f"Attach mode: nothing is serving DevTools on port {self.cdp_port} "
                "(start Chromium with --remote-debugging-port)",
            )

        if self._port_taken():
            busy, self.cdp_port = self.cdp_port, _free_local_port()
            _LOGGER.warning("port %s is taken by a non-DevTools listener; launching on %s", busy, self.cdp_port)

        with contextlib.suppress(OSError):
            Path(expand_path(self.config.profile_path)).mkdir(parents=True, exist_ok=True)

        cmd = self.build_launch_command()
        log_path = self._launch_log_path()
        try:
            self._spawn(cmd, log_path)
        except OSError as exc:
            return LaunchResult(cmd, False, f"Could not start {cmd[0]}: {exc}", log_path, _read_tail(log_path))

        if self._wait_for_devtools(timeout):
            _LOGGER.info("browser launched on CDP port %s", self.cdp_port)
            return LaunchResult(cmd, True, "Browser launched", log_path)
        exited = self.process is not None and self.process.poll() is not None
        message = "Browser exited before DevTools came up" if exited else f"DevTools not up after {timeout:g}s"
        return LaunchResult(cmd, False, message, log_path, _read_tail(log_path))

    def _launch_log_path(self) -> str | None:
        if not self.config.verbose:
            return None
        log_dir = Path(self.config.reports_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / f"browser_launch_{int(time.time() * 1000)}.log")

    def _spawn(self, cmd: list[str], log_path: str | None) -> None:
        sink: IO[bytes] | None = open(log_path, "ab", buffering=0) if log_path else None  # noqa: SIM115
        try:
            out: Any = sink if sink is not None else subprocess.DEVNULL
            self.process = subprocess.Popen(  # noqa: S603
                cmd, stdin=subprocess.DEVNULL, stdout=out, stderr=out, start_new_session=True
            )
        finally:
            if sink is not None:
                sink.close()

    def _wait_for_devtools(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.cdp_ready():
                return True
            if self.process is not None and self.process.poll() is not None:
                return False
            time.sleep(0.1)
        return False

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Terminate the browser this launcher started; attached browsers are left alone."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is None:
            with contextlib.suppress(OSError):
                proc.terminate()
            try:
                proc.wait(timeout=max(0.1, timeout))
            except subprocess.TimeoutExpired:
                _LOGGER.warning("browser pid %s ignored SIGTERM; killing", proc.pid)
                with contextlib.suppress(OSError):
                    proc.kill()
        self.process = None
        return True

    # ──────────────────────────────────────────────────────────────────
    # DevTools HTTP endpoint
    # ──────────────────────────────────────────────────────────────────

    def _json(self, path: str, *, method: str = "GET", timeout: float = 2.0) -> Any:
        req = Request(f"{self.http_base}{path}", method=method, headers={"User-Agent": "spa-harness"})
        try:
            with urlopen(req, timeout=timeout) as resp:
                body = resp.read().decode(errors="replace")
        except (OSError, URLError) as exc:
            raise CdpError(f"CDP endpoint {path} not reachable on port {self.cdp_port}: {exc}") from exc
        try:
            return json.loads(body) if body.strip() else {}
        except ValueError:
            return {"raw": body}

    def browser_version(self) -> str:
        """``Browser`` string from /json/version, e.g. ``HeadlessChrome/126.0.6478.126``."""
        payload = self._json("/json/version", timeout=1.0)
        return str(payload.get("Browser") or "unknown") if isinstance(payload, dict) else "unknown"

    def new_page_target(self, url: str = "about:blank") -> dict[str, Any]:
        """Open a fresh tab for one session."""
        # current Chrome rejects GET on /json/new
        target = self._json(f"/json/new?{quote(url, safe=':/?&=')}", method="PUT")
        if not isinstance(target, dict) or not target.get("webSocketDebuggerUrl"):
            raise CdpError(f"Browser did not return a debuggable target: {target!r}")
        return target

    def close_target(self, target_id: str) -> None:
        if not target_id:
            return
        try:
            self._json(f"/json/close/{quote(target_id)}")
        except CdpError as exc:
            _LOGGER.debug("close_target %s failed: %s", target_id, exc)


__all__ = ["BrowserLauncher", "LaunchResult"]
