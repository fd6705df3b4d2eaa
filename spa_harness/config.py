from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

DEFAULT_BASE_URL = "http://localhost:8080/admin-next"

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium for better compatibility.
    # IMPORTANT: Avoid snap versions - they ignore --user-data-dir!
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    # Chrome entries kept as fallback.
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]

# Flags that keep Chromium alive in containers and CI runners.
STABILITY_FLAGS: list[str] = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
]

_TRUTHY = {"1", "true", "yes", "on"}


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "", "", ""))


@dataclass(frozen=True)
class Viewport:
    width: int = 1280
    height: int = 720

    @classmethod
    def parse(cls, raw: str | None) -> Viewport:
        text = (raw or "").strip().lower().replace(",", "x")
        if not text:
            return cls()
        try:
            w, h = (int(p) for p in text.split("x", 1))
        except ValueError as exc:
            raise ValueError(f"viewport must look like 1280x720, got {raw!r}") from exc
        if w <= 0 or h <= 0:
            raise ValueError(f"viewport must be positive, got {raw!r}")
        return cls(width=w, height=h)

    def as_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True)
class HarnessConfig:
    """Process-wide settings, read once at start-up and never mutated."""

    base_url: str = DEFAULT_BASE_URL
    backend_url: str | None = None
    ci: bool = False
    verbose: bool = False
    binary_path: str = "google-chrome"
    cdp_port: int = 9222
    mode: str = "launch"
    headless: bool = True
    profile_path: str = "~/.cache/spa-harness/profile"
    extra_flags: tuple[str, ...] = field(default_factory=tuple)
    viewport: Viewport = field(default_factory=Viewport)
    reports_dir: Path = Path("playwright-report") / "diagnostics"
    navigation_timeout: float = 30.0
    action_timeout: float = 15.0
    cdp_timeout: float = 5.0

    @property
    def retries(self) -> int:
        return 2 if self.ci else 0

    @property
    def workers(self) -> int | None:
        # None lets the runner pick its own parallelism.
        return 1 if self.ci else None

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"attach", "connect", "external"}:
            return "attach"
        return "launch"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("HARNESS_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> HarnessConfig:
        base_url = (os.environ.get("BASE_URL") or DEFAULT_BASE_URL).strip()
        backend_raw = (os.environ.get("BACKEND_URL") or "").strip()
        port_raw = os.environ.get("HARNESS_CDP_PORT", "9222")
        try:
            port = int(port_raw)
        except ValueError as exc:
            raise ValueError(f"HARNESS_CDP_PORT must be an integer, got {port_raw!r}") from exc
        flags_raw = os.environ.get("HARNESS_BROWSER_FLAGS", "")
        extra_flags = tuple(flag.strip() for flag in flags_raw.split(",") if flag.strip())
        return cls(
            base_url=base_url,
            backend_url=backend_raw or _origin(base_url),
            ci=_env_flag("CI"),
            verbose=_env_flag("DEBUG") or _env_flag("HARNESS_VERBOSE"),
            binary_path=cls.detect_binary(),
            cdp_port=port,
            mode=cls.normalize_mode(os.environ.get("HARNESS_MODE")),
            headless=_env_flag("HARNESS_HEADLESS", default=True),
            profile_path=expand_path(os.environ.get("HARNESS_PROFILE", "~/.cache/spa-harness/profile")),
            extra_flags=extra_flags,
            viewport=Viewport.parse(os.environ.get("HARNESS_VIEWPORT")),
            reports_dir=Path(expand_path(os.environ.get("HARNESS_REPORTS_DIR", "playwright-report/diagnostics"))),
            navigation_timeout=_env_float("HARNESS_NAV_TIMEOUT", 30.0),
            action_timeout=_env_float("HARNESS_ACTION_TIMEOUT", 15.0),
            cdp_timeout=_env_float("HARNESS_CDP_TIMEOUT", 5.0),
        )

    def resolve_url(self, target: str) -> str:
        """Resolve a route like "/login" against the base URL."""
        if "://" in target or target.startswith(("about:", "data:")):
            return target
        base = self.base_url.rstrip("/")
        if not target or target == "/":
            return base + "/"
        return base + "/" + target.lstrip("/")


@lru_cache(maxsize=1)
def get_config() -> HarnessConfig:
    """Load configuration from the environment once per process."""
    return HarnessConfig.from_env()


__all__ = ["DEFAULT_BASE_URL", "HarnessConfig", "STABILITY_FLAGS", "Viewport", "expand_path", "get_config"]
