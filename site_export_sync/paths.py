"""
Path and file helpers shared by the site_export sync pipeline.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


EXPORT_BUNDLE_NAME = "site_export.v1"
REPORTS_INDEX_REL = "index/index.reports.v1.json"
EVIDENCE_INDEX_CANDIDATES = [
    "evidence/index/index.evidence.v1.json",
    "evidence/evidence_index.v1.json",
    "index/index.evidence.v1.json",
]
SOURCE_STAMP_REL = "_meta/source_stamp.json"
DEFAULT_DEST_REL = f"public/data/{EXPORT_BUNDLE_NAME}"

EXCLUDED_DIR_NAMES = {
    "node_modules",
    ".git",
    ".next",
    "dist",
    "build",
    "out",
    "coverage",
    "fixtures",
    "__fixtures__",
    "__pycache__",
    ".venv",
}
EXCLUDED_PATH_SEGMENTS = [
    "/node_modules/",
    "/.next/",
    "/.git/",
    "/dist/",
    "/build/",
    "/coverage/",
    "/out/",
    f"/public/data/{EXPORT_BUNDLE_NAME}/",
    "/_machine/fixtures/",
    "/fixtures/",
]
TRUE_VALUES = {"1", "true", "yes", "on"}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_path(value: Any) -> str:
    return str(value or "").replace("\\", "/")


def normalize_path_for_match(value: Any) -> str:
    return normalize_path(value).lower()


def is_excluded_discovery_path(path_value: Any) -> bool:
    """
    True when a path (absolute or relative to a scan root) falls inside build
    output, dependency caches, fixtures or golden-file trees.
    """
    normalized = "/" + normalize_path_for_match(path_value).strip("/") + "/"
    if any(segment in normalized for segment in EXCLUDED_PATH_SEGMENTS):
        return True
    return "golden" in normalized


def is_excluded_dir_name(name: str) -> bool:
    return name.lower() in EXCLUDED_DIR_NAMES


def parse_csv_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in TRUE_VALUES


def has_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def find_evidence_index(export_root: Path) -> Path | None:
    for rel in EVIDENCE_INDEX_CANDIDATES:
        candidate = export_root / rel
        if candidate.is_file():
            return candidate
    return None


def payload_rel_path(report_id: str) -> str:
    return f"index/{report_id}.payload.v1.json"


def to_export_path(export_root: Path, raw_path: str) -> Path:
    return export_root / normalize_path(raw_path).lstrip("/")


def evidence_markdown_path(export_root: Path, evidence_id: str) -> Path:
    return to_export_path(export_root / "evidence", f"{evidence_id}.md")


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        try:
            if tmp_path.exists():
                tmp_path.unlink()
        except FileNotFoundError:
            pass


def write_json(path: Path, payload: Any, sort_keys: bool = True) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=sort_keys) + "\n")
