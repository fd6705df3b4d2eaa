"""Per-session request interception via the CDP Fetch domain.

Rules are matched in registration order; the first match is fulfilled with its
mock, everything else is resumed untouched. The interceptor only ever listens
on the connection of the session it was installed on.
"""

from __future__ import annotations

import base64
import logging
import re
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union
from urllib.parse import urlsplit

from .errors import CdpError, InterceptMismatch
from .recorder import EventKind
from .redaction import redact_url

if TYPE_CHECKING:
    from .session import Session

_LOGGER = logging.getLogger("spa_harness.interceptor")

Pattern = Union[str, "re.Pattern[str]"]

REGEX_PREFIX = "re:"


@dataclass(frozen=True)
class MockResponse:
    status: int = 200
    content_type: str = "text/plain"
    body: str | bytes = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if isinstance(self.status, bool) or not isinstance(self.status, int) or not 100 <= self.status <= 599:
            raise InterceptMismatch(f"mock status must be an HTTP status code (100-599), got {self.status!r}")
        if not isinstance(self.body, (str, bytes)):
            raise InterceptMismatch(f"mock body must be str or bytes, got {type(self.body).__name__}")
        if not isinstance(self.content_type, str) or not self.content_type.strip():
            raise InterceptMismatch("mock content type must be a non-empty string")
        if not isinstance(self.headers, Mapping):
            raise InterceptMismatch("mock headers must be a mapping")

    def body_bytes(self) -> bytes:
        return self.body.encode("utf-8") if isinstance(self.body, str) else bytes(self.body)

    def response_headers(self) -> list[dict[str, str]]:
        headers = [{"name": "Content-Type", "value": self.content_type}]
        for name, value in self.headers.items():
            if str(name).lower() == "content-type":
                continue
            headers.append({"name": str(name), "value": str(value)})
        return headers


def glob_to_regex(glob: str) -> re.Pattern[str]:
    """Compile a URL glob: `**` any chars, `*` no slash, `?` one char, `{a,b}` alternation."""
    out: list[str] = []
    depth = 0
    i = 0
    while i < len(glob):
        c = glob[i]
        if c == "*":
            if glob.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append(".")
        elif c == "{":
            depth += 1
            out.append("(?:")
        elif c == "}" and depth:
            depth -= 1
            out.append(")")
        elif c == "," and depth:
            out.append("|")
        else:
            out.append(re.escape(c))
        i += 1
    if depth:
        raise ValueError(f"unbalanced '{{' in {glob!r}")
    return re.compile("^" + "".join(out) + "$")


def compile_pattern(pattern: Pattern) -> tuple[re.Pattern[str], bool]:
    """Return (regex, is_glob). Raises InterceptMismatch on malformed input."""
    if isinstance(pattern, re.Pattern):
        return pattern, False
    if not isinstance(pattern, str) or not pattern.strip():
        raise InterceptMismatch(f"pattern must be a non-empty string or compiled regex, got {pattern!r}")
    try:
        if pattern.startswith(REGEX_PREFIX):
            return re.compile(pattern[len(REGEX_PREFIX) :]), False
        return glob_to_regex(pattern), True
    except (re.error, ValueError) as exc:
        raise InterceptMismatch(f"pattern {pattern!r} does not compile: {exc}", details={"pattern": pattern}) from exc


def _pattern_key(pattern: Pattern) -> str:
    if isinstance(pattern, re.Pattern):
        return REGEX_PREFIX + pattern.pattern
    return pattern


def _url_candidates(url: str) -> tuple[str, ...]:
    try:
        parts = urlsplit(url)
    except ValueError:
        return (url,)
    bare = f"{parts.scheme}://{parts.netloc}{parts.path}" if parts.scheme else url
    host_path = f"{parts.netloc}{parts.path}" if parts.netloc else url
    return tuple(dict.fromkeys((url, bare, host_path)))


@dataclass(frozen=True)
class InterceptRule:
    pattern: Pattern
    mock: MockResponse
    regex: re.Pattern[str] = field(compare=False, repr=False)
    glob: bool = field(default=True, compare=False, repr=False)

    @property
    def key(self) -> str:
        return _pattern_key(self.pattern)

    def matches(self, url: str) -> bool:
        for candidate in _url_candidates(url):
            if self.glob and self.regex.match(candidate):
                return True
            if not self.glob and self.regex.search(candidate):
                return True
        return False


@dataclass(frozen=True)
class InterceptHit:
    url: str
    status: int
    pattern: str


def external_asset_rules() -> list[tuple[str, MockResponse]]:
    """Mocks for CDN-hosted fonts and stylesheets, so tests never wait on third parties."""
    return [
        ("**/*{fonts.googleapis,cdnjs.cloudflare}*/**", MockResponse(200, "text/css", "/* Mocked CSS */")),
        ("**/*fonts.gstatic*/**", MockResponse(200, "font/woff2", b"")),
        (
            "**/*{googleapis,gstatic,cdnjs,jsdelivr,cloudflare}*/**",
            MockResponse(200, "application/octet-stream", b""),
        ),
    ]


class Interceptor:
    """Ordered rule set bound to one session's Fetch domain."""

    def __init__(self) -> None:
        self._rules: list[InterceptRule] = []
        self._hits: list[InterceptHit] = []
        self._sealed = False
        self._session: Session | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._fetch_enabled = False

    @property
    def rules(self) -> tuple[InterceptRule, ...]:
        return tuple(self._rules)

    @property
    def installed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        """Refuse further registrations (navigation has begun)."""
        self._sealed = True

    def register_rule(self, pattern: Pattern, mock: MockResponse) -> InterceptRule:
        if self._sealed:
            raise InterceptMismatch(
                "rules must be registered before the session navigates",
                details={"pattern": _pattern_key(pattern) if isinstance(pattern, (str, re.Pattern)) else repr(pattern)},
            )
        if not isinstance(mock, MockResponse):
            raise InterceptMismatch(f"mock must be a MockResponse, got {type(mock).__name__}")
        mock.validate()
        regex, is_glob = compile_pattern(pattern)
        rule = InterceptRule(pattern=pattern, mock=mock, regex=regex, glob=is_glob)
        for existing in self._rules:
            if existing.key != rule.key:
                continue
            if existing.mock == mock:
                return existing
            raise InterceptMismatch(
                f"pattern {rule.key!r} is already registered with a different mock",
                details={"pattern": rule.key},
            )
        self._rules.append(rule)
        return rule

    def register_rules(self, rules: list[tuple[Pattern, MockResponse]] | None) -> None:
        for pattern, mock in rules or ():
            self.register_rule(pattern, mock)

    def match(self, url: str) -> InterceptRule | None:
        for rule in self._rules:
            if rule.matches(url):
                return rule
        return None

    def hits(self) -> tuple[InterceptHit, ...]:
        return tuple(self._hits)

    async def install(self, session: Session) -> None:
        if self._session is not None and self._session is not session:
            raise RuntimeError("interceptor is already installed on another session")
        self._session = session
        if self._unsubscribe is not None or not self._rules:
            return
        self._unsubscribe = session.conn.add_listener("Fetch.requestPaused", self._on_paused)
        await session.conn.send("Fetch.enable", {"patterns": [{"urlPattern": "*", "requestStage": "Request"}]})
        self._fetch_enabled = True
        _LOGGER.debug("session %s: %d intercept rule(s) installed", session.id, len(self._rules))

    async def uninstall(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        session = self._session
        if self._fetch_enabled and session is not None and not session.conn.closed:
            with suppress(CdpError):
                await session.conn.send("Fetch.disable", timeout=1.0)
        self._fetch_enabled = False

    async def _on_paused(self, params: dict[str, Any]) -> None:
        session = self._session
        if session is None:
            return
        request_id = params.get("requestId")
        request = params.get("request") if isinstance(params.get("request"), dict) else {}
        url = str(request.get("url") or "")
        rule = self.match(url)

        if rule is None:
            try:
                await session.conn.send("Fetch.continueRequest", {"requestId": request_id})
            except CdpError as exc:
                _LOGGER.debug("continueRequest failed for %s: %s", redact_url(url), exc)
            return

        mock = rule.mock
        try:
            await session.conn.send(
                "Fetch.fulfillRequest",
                {
                    "requestId": request_id,
                    "responseCode": mock.status,
                    "responseHeaders": mock.response_headers(),
                    "body": base64.b64encode(mock.body_bytes()).decode("ascii"),
                },
            )
        except CdpError as exc:
            _LOGGER.warning("mock fulfilment failed for %s: %s", redact_url(url), exc)
            cause = {"cause": f"mock fulfilment failed: {exc}", "intercepted": True, "pattern": rule.key}
            network_id = params.get("networkId")
            if isinstance(network_id, str) and network_id:
                # failRequest makes the browser emit loadingFailed for this request
                session.recorder.annotate_failure(network_id, **cause)
            else:
                session.recorder.record(EventKind.REQUEST_FAILED, {"url": redact_url(url), "reason": cause["cause"], **cause})
            with suppress(CdpError):
                await session.conn.send("Fetch.failRequest", {"requestId": request_id, "errorReason": "Failed"})
            return
        self._hits.append(InterceptHit(url=url, status=mock.status, pattern=rule.key))


__all__ = [
    "InterceptHit",
    "InterceptRule",
    "Interceptor",
    "MockResponse",
    "compile_pattern",
    "external_asset_rules",
    "glob_to_regex",
]
