from __future__ import annotations

import json
import logging
import ssl
import time
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, Request, build_opener

_LOGGER = logging.getLogger("spa_harness.http_client")

DEFAULT_PROBE_PATHS: tuple[str, ...] = ("/webapi/health", "/webapi/oem/settings", "/health")


class HttpClientError(Exception):
    pass


def http_get(url: str, *, timeout: float = 5.0, max_bytes: int = 64_000, verify_tls: bool = False) -> dict[str, Any]:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    req = Request(url, headers={"User-Agent": "spa-harness/1.0", "Accept": "application/json, */*"})
    ctx = ssl.create_default_context()
    if not verify_tls:
        # Local backends run on self-signed certificates.
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    opener = build_opener(HTTPSHandler(context=ctx))
    try:
        with opener.open(req, timeout=timeout) as resp:
            body = resp.read(max_bytes + 1)
            status = resp.status
            headers = dict(resp.headers)
    except HTTPError as exc:
        # 4xx/5xx still carry a useful body for diagnostics.
        body = exc.read(max_bytes + 1) if exc.fp is not None else b""
        status = exc.code
        headers = dict(exc.headers or {})
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(getattr(exc, "reason", exc))) from exc
    truncated = len(body) > max_bytes
    if truncated:
        body = body[:max_bytes]
    return {
        "status": status,
        "headers": headers,
        "body": body.decode(errors="replace"),
        "truncated": truncated,
    }


def probe_endpoints(
    base_url: str,
    paths: tuple[str, ...] | list[str] = DEFAULT_PROBE_PATHS,
    *,
    timeout: float = 5.0,
) -> list[dict[str, Any]]:
    """GET each backend endpoint directly, bypassing the SPA."""
    results: list[dict[str, Any]] = []
    base = base_url.rstrip("/")
    for path in paths:
        url = f"{base}/{path.lstrip('/')}"
        started = time.monotonic()
        entry: dict[str, Any] = {"path": path, "url": url}
        try:
            resp = http_get(url, timeout=timeout, max_bytes=4000)
        except HttpClientError as exc:
            entry.update({"ok": False, "error": str(exc)})
        else:
            body = resp["body"]
            try:
                parsed: Any = json.loads(body) if body.strip() else None
            except ValueError:
                parsed = None
            entry.update(
                {
                    "ok": 200 <= int(resp["status"]) < 400,
                    "status": resp["status"],
                    "body": parsed if parsed is not None else body[:500],
                }
            )
        entry["elapsedMs"] = int((time.monotonic() - started) * 1000)
        _LOGGER.debug("probe %s -> %s", url, entry.get("status", entry.get("error")))
        results.append(entry)
    return results


__all__ = ["DEFAULT_PROBE_PATHS", "HttpClientError", "http_get", "probe_endpoints"]
