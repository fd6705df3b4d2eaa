from __future__ import annotations

from typing import Any

import pytest

from spa_harness import http_client
from spa_harness.http_client import HttpClientError, http_get, probe_endpoints


def test_only_http_schemes_are_allowed() -> None:
    with pytest.raises(HttpClientError, match="http/https"):
        http_get("file:///etc/passwd")


def test_probe_endpoints_reports_status_body_and_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[str] = []

    def fake_get(url: str, *, timeout: float = 5.0, max_bytes: int = 64_000, verify_tls: bool = False) -> dict[str, Any]:
        seen.append(url)
        if url.endswith("/webapi/health"):
            return {"status": 200, "headers": {}, "body": '{"status": "ok"}', "truncated": False}
        if url.endswith("/webapi/oem/settings"):
            return {"status": 502, "headers": {}, "body": "<html>Bad Gateway</html>", "truncated": False}
        raise HttpClientError("Connection refused")

    monkeypatch.setattr(http_client, "http_get", fake_get)
    results = probe_endpoints("http://localhost:8080/", timeout=0.5)

    assert seen == [
        "http://localhost:8080/webapi/health",
        "http://localhost:8080/webapi/oem/settings",
        "http://localhost:8080/health",
    ]
    health, settings, plain = results
    assert health["ok"] is True and health["body"] == {"status": "ok"}
    assert settings["ok"] is False and settings["status"] == 502 and settings["body"] == "<html>Bad Gateway</html>"
    assert plain["ok"] is False and plain["error"] == "Connection refused" and "status" not in plain
    assert all(isinstance(r["elapsedMs"], int) for r in results)
