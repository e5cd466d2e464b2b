"""
Locate the best dashboards directory near an export root and copy its known
files into the destination bundle.

Dashboards may live in a sibling ontology tree rather than under the export
bundle, so discovery scans from an ancestor of the export root.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any

from site_export_sync.paths import (
    is_excluded_dir_name,
    is_excluded_discovery_path,
    normalize_path_for_match,
)


DASHBOARD_TARGET_FILENAMES = [
    "index.dashboards.v1.json",
    "track_counts_from_export.v1.json",
    "static_usage_report_7c.v1.json",
    "tier_a_backlog_bundle_7c.v1.json",
    "deltas_7c.v1.json",
    "wave_engine_state.v1.json",
    "latest.wave_engine.v1.json",
]
DASHBOARD_OPTIONAL_PATTERNS = [re.compile(r"^quality_lift_wave.*_summary_7c\.v1\.json$", re.IGNORECASE)]
DASHBOARD_RELATIVE_CANDIDATES = [
    "dashboards",
    "../../04 - Data & Ontology/Ontology/_machine/dashboards",
    "../_machine/dashboards",
    "../../_machine/dashboards",
]
DASHBOARD_SCAN_MAX_DEPTH = 6
DASHBOARD_SCAN_ANCESTOR_LEVELS = 3
DASHBOARD_EXTRA_EXCLUDED_DIRS = {"public"}
DASHBOARDS_DEST_DIRNAME = "dashboards"

# Order matters: "deltas" would also match names that carry other kinds.
DASHBOARD_KIND_RULES = (
    ("tier_a_backlog_bundle", "tier_a_backlog_bundle"),
    ("deltas", "deltas"),
    ("static_usage_report", "static_usage_report"),
    ("track_counts_from_export", "track_counts_from_export"),
    ("wave_engine_state", "wave_engine_state"),
    ("latest.wave_engine", "latest_wave_engine"),
    ("latest_wave_engine", "latest_wave_engine"),
)
QUALITY_LIFT_KIND_RE = re.compile(r"quality_lift_wave.*_summary")


def detect_dashboard_kind(name: str | None, kind: str | None = None) -> str:
    combined = f"{(kind or '').strip().lower()} {(name or '').strip().lower()}"
    for token, detected in DASHBOARD_KIND_RULES:
        if token in combined:
            return detected
    if QUALITY_LIFT_KIND_RE.search(combined):
        return "quality_lift_wave_summary"
    return "unknown"


def is_optional_dashboard(file_name: str) -> bool:
    return any(pattern.match(file_name) for pattern in DASHBOARD_OPTIONAL_PATTERNS)


def discover_machine_dashboards(root_dir: Path, max_depth: int = DASHBOARD_SCAN_MAX_DEPTH) -> list[Path]:
    scan_root = root_dir.resolve()
    found: set[Path] = set()
    stack: list[tuple[Path, int]] = [(scan_root, 0)]
    while stack:
        current, depth = stack.pop()
        if depth > max_depth:
            continue
        rel = current.relative_to(scan_root).as_posix()
        if depth > 0 and is_excluded_discovery_path(rel):
            continue
        if normalize_path_for_match(current).endswith("/_machine/dashboards"):
            found.add(current)
            continue
        try:
            children = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        for child in children:
            if child.is_symlink() or not child.is_dir():
                continue
            if is_excluded_dir_name(child.name) or child.name.lower() in DASHBOARD_EXTRA_EXCLUDED_DIRS:
                continue
            stack.append((child, depth + 1))
    return sorted(found, key=str)


def evaluate_dashboards_directory(dir_path: Path) -> dict[str, Any]:
    result: dict[str, Any] = {
        "dir": str(dir_path),
        "exists": False,
        "fixed_matches": [],
        "optional_matches": [],
        "files_missing": list(DASHBOARD_TARGET_FILENAMES),
        "score": 0,
    }
    if not dir_path.is_dir():
        return result
    result["exists"] = True
    try:
        file_names = sorted(p.name for p in dir_path.iterdir() if p.is_file())
    except OSError:
        return result

    present = set(file_names)
    result["fixed_matches"] = [name for name in DASHBOARD_TARGET_FILENAMES if name in present]
    result["files_missing"] = [name for name in DASHBOARD_TARGET_FILENAMES if name not in present]
    result["optional_matches"] = [name for name in file_names if is_optional_dashboard(name)]
    result["score"] = len(result["fixed_matches"]) + len(result["optional_matches"])
    return result


def collect_dashboards_candidates(export_root: Path) -> list[dict[str, Any]]:
    dirs: set[Path] = set()
    for rel in DASHBOARD_RELATIVE_CANDIDATES:
        dirs.add((export_root / rel).resolve())

    scan_start = export_root.resolve()
    for _ in range(DASHBOARD_SCAN_ANCESTOR_LEVELS):
        scan_start = scan_start.parent
    if scan_start.is_dir():
        dirs.update(discover_machine_dashboards(scan_start, DASHBOARD_SCAN_MAX_DEPTH))

    evaluated = [evaluate_dashboards_directory(d) for d in dirs]
    return sorted(evaluated, key=lambda c: (-c["score"], c["dir"]))


def _base_result(candidates: list[dict[str, Any]]) -> dict[str, Any]:
    selected = candidates[0] if candidates else None
    return {
        "mode": "missing",
        "source_dir": None,
        "files_copied": [],
        "fixed_files_copied": [],
        "optional_files_copied": [],
        "files_missing": list(DASHBOARD_TARGET_FILENAMES),
        "file_kinds": {},
        "warnings": [],
        "candidate_count": len(candidates),
        "selected_score": selected["score"] if selected else 0,
        "selected_reason": "best_match" if selected else "no_candidate",
        "candidates": [
            {
                "dir": c["dir"],
                "score": c["score"],
                "fixed_matches": c["fixed_matches"],
                "optional_matches": c["optional_matches"],
            }
            for c in candidates[:5]
        ],
    }


def skipped_dashboards_result(reason: str) -> dict[str, Any]:
    result = _base_result([])
    result["mode"] = "skipped"
    result["selected_reason"] = reason
    result["warnings"] = [f"Dashboards sync skipped: {reason}"]
    return result


def copy_dashboards_to_destination(export_root: Path, dest_root: Path) -> dict[str, Any]:
    candidates = collect_dashboards_candidates(export_root)
    result = _base_result(candidates)
    selected = candidates[0] if candidates else None
    if selected is None or not selected["exists"] or selected["score"] == 0:
        return result

    source_dir = Path(selected["dir"])
    result["source_dir"] = selected["dir"]
    result["files_missing"] = selected["files_missing"]
    dest_dir = dest_root / DASHBOARDS_DEST_DIRNAME
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        for file_name in [*selected["fixed_matches"], *selected["optional_matches"]]:
            shutil.copyfile(source_dir / file_name, dest_dir / file_name)
    except OSError as exc:
        result["mode"] = "error"
        result["warnings"] = [f"Failed to copy dashboards: {exc}"]
        return result

    copied = sorted([*selected["fixed_matches"], *selected["optional_matches"]])
    result["mode"] = "copied"
    result["files_copied"] = copied
    result["fixed_files_copied"] = sorted(selected["fixed_matches"])
    result["optional_files_copied"] = sorted(selected["optional_matches"])
    result["file_kinds"] = {name: detect_dashboard_kind(name) for name in copied}
    return result
