"""On-disk layout for diagnostic reports.

Each report gets its own directory, `<base>/<test-slug>/<UTC timestamp>-<n>/`,
and every file inside is created exclusively: a written report is never
overwritten.
"""

from __future__ import annotations

import base64
import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_SLUG_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def slugify(name: str, max_len: int = 120) -> str:
    safe = _SLUG_RE.sub("_", (name or "").strip()).strip("._")
    return (safe or "unnamed")[:max_len]


@dataclass(frozen=True)
class ArtifactRef:
    name: str
    kind: str
    mime_type: str
    bytes: int
    created_at: str
    path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "mimeType": self.mime_type,
            "bytes": self.bytes,
            "createdAt": self.created_at,
            "path": self.path,
        }


class ReportStore:
    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)

    def new_report_dir(self, test_name: str) -> Path:
        """Create and return a fresh, unique report directory for `test_name`."""
        parent = self.base_dir / slugify(test_name)
        parent.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
        n = 1
        while True:
            candidate = parent / f"{stamp}-{n}"
            try:
                candidate.mkdir()
            except FileExistsError:
                n += 1
                continue
            return candidate

    def _write(self, path: Path, data: bytes) -> int:
        # "xb" refuses to replace an existing artifact.
        with open(path, "xb") as fh:
            fh.write(data)
        return path.stat().st_size

    def _ref(self, path: Path, *, kind: str, mime_type: str, size: int) -> ArtifactRef:
        return ArtifactRef(
            name=path.name,
            kind=kind,
            mime_type=mime_type,
            bytes=int(size),
            created_at=_now_iso(),
            path=str(path),
        )

    def put_text(self, report_dir: Path, name: str, text: str, *, kind: str, mime_type: str = "text/plain") -> ArtifactRef:
        path = Path(report_dir) / name
        raw = text if isinstance(text, str) else str(text)
        size = self._write(path, raw.encode("utf-8"))
        return self._ref(path, kind=kind, mime_type=mime_type, size=size)

    def put_json(self, report_dir: Path, name: str, obj: Any, *, kind: str) -> ArtifactRef:
        path = Path(report_dir) / name
        raw = json.dumps(obj, ensure_ascii=False, indent=2, default=str)
        size = self._write(path, raw.encode("utf-8"))
        return self._ref(path, kind=kind, mime_type="application/json", size=size)

    def put_image_b64(self, report_dir: Path, name: str, data_b64: str, *, kind: str, mime_type: str = "image/png") -> ArtifactRef:
        path = Path(report_dir) / name
        binary = base64.b64decode(data_b64 or "", validate=False)
        size = self._write(path, binary)
        return self._ref(path, kind=kind, mime_type=mime_type, size=size)

    def list_reports(self, *, test_name: str | None = None, limit: int = 20) -> list[Path]:
        """Most recent report directories first."""
        limit = max(0, int(limit))
        pattern = f"{slugify(test_name)}/*/report.json" if test_name else "*/*/report.json"
        found = sorted(self.base_dir.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.parent for p in found[:limit]]

    def load(self, report_dir: Path | str) -> dict[str, Any]:
        path = Path(report_dir)
        if path.is_dir():
            path = path / "report.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"invalid report: {path}")
        return data


__all__ = ["ArtifactRef", "ReportStore", "slugify"]
