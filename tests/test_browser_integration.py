from __future__ import annotations

import dataclasses
import http.server
import os
import socketserver
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest

from spa_harness.config import HarnessConfig
from spa_harness.errors import CrashDetected
from spa_harness.interceptor import MockResponse
from spa_harness.orchestrator import Harness
from spa_harness.session import Session

pytestmark = pytest.mark.skipif(
    os.environ.get("RUN_BROWSER_INTEGRATION") != "1",
    reason="Requires real Chrome/Chromium. Set RUN_BROWSER_INTEGRATION=1 to enable.",
)

INDEX = """<!doctype html>
<html><head><title>Admin</title></head>
<body><div id="root"></div>
<script>
  console.log('booting');
  fetch('/webapi/users')
    .then((r) => r.json())
    .then((data) => {
      const app = document.createElement('div');
      app.id = 'app';
      app.textContent = 'Users: ' + data.users.join(', ');
      document.getElementById('root').appendChild(app);
    })
    .catch((err) => { throw new Error('users failed: ' + err); });
</script>
</body></html>
"""


@contextmanager
def _local_spa() -> Iterator[str]:
    with tempfile.TemporaryDirectory() as tmp_dir:
        root = Path(tmp_dir)
        (root / "admin-next").mkdir()
        (root / "admin-next" / "index.html").write_text(INDEX, encoding="utf-8")

        class _Handler(http.server.SimpleHTTPRequestHandler):
            def __init__(self, *args, **kwargs):  # noqa: ANN001
                super().__init__(*args, directory=str(root), **kwargs)

            def log_message(self, format, *args):  # noqa: ANN001
                return

        socketserver.TCPServer.allow_reuse_address = True
        with socketserver.TCPServer(("127.0.0.1", 0), _Handler) as httpd:
            port = httpd.server_address[1]
            thread = threading.Thread(target=httpd.serve_forever, daemon=True)
            thread.start()
            try:
                yield f"http://127.0.0.1:{port}/admin-next"
            finally:
                httpd.shutdown()
                thread.join(timeout=1.0)


@pytest.fixture(scope="module")
def live(tmp_path_factory: pytest.TempPathFactory) -> Iterator[Harness]:
    with _local_spa() as base_url:
        cfg = dataclasses.replace(
            HarnessConfig.from_env(),
            base_url=base_url,
            backend_url=None,
            reports_dir=tmp_path_factory.mktemp("reports"),
        )
        harness = Harness(cfg)
        yield harness
        harness.stop()


def test_mocked_api_renders_app_shell(live: Harness) -> None:
    rules = [("**/webapi/users", MockResponse(200, "application/json", '{"users": ["ada", "linus"]}'))]

    async def scenario(session: Session) -> str:
        outcome = await session.navigate("/", "shell-race/v1")
        assert outcome.ready
        assert session.interceptor.hits()
        return await session.body_text()

    assert "Users: ada, linus" in live.run("test_mocked_api", scenario, rules=rules)


def test_unmocked_api_timeout_is_diagnosed(live: Harness) -> None:
    report = live.diagnose("/", policy="vue-mounted/v1", test_name="test_unmocked")
    assert report.error_kind == "NavigationTimeout"
    assert report.counts["console"] >= 1
    assert report.app_shell is not None and report.app_shell["appExists"] is False
    assert report.screenshot is not None and report.screenshot["width"] > 0


def test_renderer_crash_is_reported(live: Harness) -> None:
    async def scenario(session: Session) -> None:
        await session.navigate("chrome://crash", "network-idle/v1")

    with pytest.raises(CrashDetected) as excinfo:
        live.run("test_crash", scenario)
    assert excinfo.value.report_path is not None
    assert (Path(excinfo.value.report_path) / "events.json").is_file()
