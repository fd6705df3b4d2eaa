"""URL scrubbing for anything that ends up in a report or a log.

Reports are attached to CI runs, so credentials riding in URLs (userinfo,
``?token=`` style params, OAuth fragments) are removed before they are written.
"""

from __future__ import annotations

import re
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "<redacted>"

_CREDENTIAL_PARAM_RE = re.compile(
    r"^(?:pass|pwd|sid|code|key)$|token|secret|passw|api[_-]?key|session|auth|cookie|signature",
    re.IGNORECASE,
)


def is_credential_param(name: str) -> bool:
    name = (name or "").strip()
    return bool(name) and _CREDENTIAL_PARAM_RE.search(name) is not None


def _scrub_params(raw: str) -> str | None:
    """Return ``raw`` with credential values replaced, or None if nothing matched."""
    hits = 0
    params: list[tuple[str, str]] = []
    for name, value in parse_qsl(raw, keep_blank_values=True):
        if value and is_credential_param(name):
            value = REDACTED
            hits += 1
        params.append((name, value))
    return urlencode(params) if hits else None


def _split(url: str) -> SplitResult | None:
    if not isinstance(url, str) or not url:
        return None
    try:
        return urlsplit(url)
    except ValueError:
        return None


def _host_only(parts: SplitResult) -> str:
    return parts.netloc.rpartition("@")[2]


def redact_url(url: str) -> str:
    """Redact credential params in the query and fragment, and drop userinfo.

    Non-sensitive params stay readable; the URL comes back untouched when
    there is nothing to hide.
    """
    parts = _split(url)
    if parts is None:
        return url

    netloc = _host_only(parts)
    query = _scrub_params(parts.query) if parts.query else None
    # hash-router and OAuth implicit flows put key=value pairs after '#'
    fragment = _scrub_params(parts.fragment) if "=" in parts.fragment else None

    if netloc == parts.netloc and query is None and fragment is None:
        return url
    return urlunsplit(
        (
            parts.scheme,
            netloc,
            parts.path,
            parts.query if query is None else query,
            parts.fragment if fragment is None else fragment,
        )
    )


def redact_url_brief(url: str) -> str:
    """Scheme, host and path only; used for frame URLs in the event timeline."""
    parts = _split(url)
    if parts is None:
        return url
    return urlunsplit((parts.scheme, _host_only(parts), parts.path, "", ""))


__all__ = ["REDACTED", "is_credential_param", "redact_url", "redact_url_brief"]
