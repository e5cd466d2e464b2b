from __future__ import annotations

import json
import os
import subprocess
import sys
import zipfile
from pathlib import Path
from typing import Any

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SCRUBBED_ENV_PREFIXES = ("CLARUM_",)
SCRUBBED_ENV_KEYS = {"SYNC_EXPECT_TRACKS"}


def run_cmd(
    args: list[str],
    cwd: Path,
    expect_code: int = 0,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(args, cwd=str(cwd), text=True, capture_output=True, check=False, env=env)
    if proc.returncode != expect_code:
        raise AssertionError(
            f"command failed\ncwd={cwd}\nargs={args}\n"
            f"expected={expect_code} got={proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n\nstderr:\n{proc.stderr}"
        )
    return proc


def sync_env(overrides: dict[str, str] | None = None) -> dict[str, str]:
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith(SCRUBBED_ENV_PREFIXES) and key not in SCRUBBED_ENV_KEYS
    }
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), env.get("PYTHONPATH", "")]))
    env.update(overrides or {})
    return env


def run_sync(
    *sync_args: str,
    expect_code: int = 0,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    args = [sys.executable, "-m", "site_export_sync.sync", *sync_args]
    return run_cmd(args, cwd=REPO_ROOT, expect_code=expect_code, env=sync_env(env))


def load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def report_entry(report_id: str) -> dict[str, Any]:
    return {
        "id": report_id,
        "report_id": report_id,
        "country": "XX",
        "track": "other",
        "profile_id": "ev",
        "path": f"reports/{report_id}.json",
    }


def write_bundle(
    root: Path,
    report_ids: list[str],
    evidence_ids: list[str] | None = None,
    with_payloads: bool = True,
    evidence_refs: list[str] | None = None,
) -> Path:
    """
    Write a complete, contract-clean site_export bundle under `root`.

    Every report gets an artifact; payloads (when requested) carry
    `evidence_refs`, each of which gets an evidence index entry and markdown
    file unless it is absent from `evidence_ids`.
    """
    refs = list(evidence_refs or [])
    evidence = list(evidence_ids) if evidence_ids is not None else list(refs)
    write_json(root / "index" / "index.reports.v1.json", {"reports": [report_entry(rid) for rid in report_ids]})
    for rid in report_ids:
        write_json(
            root / "reports" / f"{rid}.json",
            {"meta": {"title": f"Report {rid}"}, "indicators": {}, "evidence_refs": refs},
        )
        if with_payloads:
            write_json(
                root / "index" / f"{rid}.payload.v1.json",
                {"version": "v1", "report_id": rid, "evidence_refs": refs},
            )
    if evidence_ids is not None or refs:
        write_json(root / "evidence" / "index" / "index.evidence.v1.json", [{"id": eid} for eid in evidence])
        for eid in evidence:
            md = root / "evidence" / f"{eid}.md"
            md.parent.mkdir(parents=True, exist_ok=True)
            md.write_text(f"# {eid}\n", encoding="utf-8")
    return root


def report_ids(track: str, count: int, start: int = 0) -> list[str]:
    return [f"lrf.xx.{track}.r{n:03d}" for n in range(start, start + count)]


def zip_directory(source: Path, archive_path: Path, prefix: str) -> Path:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path, "w") as archive:
        for path in sorted(source.rglob("*")):
            if path.is_file():
                archive.write(path, prefix + path.relative_to(source).as_posix())
    return archive_path


@pytest.fixture()
def site_dir(tmp_path: Path) -> Path:
    path = tmp_path / "site"
    path.mkdir()
    return path


@pytest.fixture()
def dest_dir(site_dir: Path) -> Path:
    return site_dir / "public" / "data" / "site_export.v1"
