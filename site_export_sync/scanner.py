"""
Discover site_export bundle roots in a vault directory or zip archive and
build a candidate record for each.
"""

from __future__ import annotations

import json
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from site_export_sync.dashboards import DASHBOARD_TARGET_FILENAMES
from site_export_sync.paths import (
    EVIDENCE_INDEX_CANDIDATES,
    REPORTS_INDEX_REL,
    is_excluded_dir_name,
    is_excluded_discovery_path,
    normalize_path,
    normalize_path_for_match,
)
from site_export_sync.schemas import REPORTS_INDEX_SCHEMA, schema_errors
from site_export_sync.selector import sha256_hex
from site_export_sync.tracks import (
    CANONICAL_TRACK_KEYS,
    compute_focus_metrics,
    compute_track_counts_from_reports,
)


DEFAULT_MAX_DEPTH = 8
FAST_PATH_RELATIVE_ROOTS = [
    "Clarum/09 - Publishing/site_export/v1",
    "09 - Publishing/site_export/v1",
    "site_export/v1",
    ".",
]
ZIP_ROOT_SEPARATOR = "::"


def compute_path_preference(root: str) -> int:
    normalized = normalize_path_for_match(root).rstrip("/")
    if normalized.endswith("09 - publishing/site_export/v1"):
        return 2
    if "site_export" in normalized:
        return 1
    return 0


def empty_candidate(root: str, source_type: str, focus_tracks: list[str]) -> dict[str, Any]:
    track_counts = {key: 0 for key in CANONICAL_TRACK_KEYS}
    candidate: dict[str, Any] = {
        "root": root,
        "valid": False,
        "reason": "",
        "total_reports": 0,
        "track_counts": track_counts,
        "index_sha256": "",
        "index_mtime_ms": 0,
        "source_type": source_type,
        "has_evidence_index": False,
        "evidence_index_path": None,
        "dashboards_found": 0,
        "path_preference": compute_path_preference(root),
    }
    candidate.update(compute_focus_metrics(track_counts, focus_tracks))
    return candidate


def apply_reports_index(candidate: dict[str, Any], raw: bytes, focus_tracks: list[str]) -> dict[str, Any]:
    """Fill index-derived stats on a candidate; marks it invalid on parse or shape failure."""
    candidate["index_sha256"] = sha256_hex(raw)
    try:
        index_obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        candidate["reason"] = f"failed to parse {REPORTS_INDEX_REL}: {exc}"
        return candidate

    errors = schema_errors(index_obj, REPORTS_INDEX_SCHEMA)
    if errors:
        candidate["reason"] = f"invalid reports index shape: {errors[0]}"
        return candidate

    reports = index_obj["reports"]
    track_counts = compute_track_counts_from_reports(reports, CANONICAL_TRACK_KEYS)
    candidate["total_reports"] = len(reports)
    candidate["track_counts"] = track_counts
    candidate.update(compute_focus_metrics(track_counts, focus_tracks))
    candidate["valid"] = True
    candidate["reason"] = "valid"
    return candidate


def discover_vault_roots(root: Path, max_depth: int = DEFAULT_MAX_DEPTH) -> list[Path]:
    scan_root = root.resolve()
    found: set[Path] = set()

    for rel in FAST_PATH_RELATIVE_ROOTS:
        candidate = (scan_root / rel).resolve()
        if (candidate / REPORTS_INDEX_REL).is_file():
            found.add(candidate)

    stack: list[tuple[Path, int]] = [(scan_root, 0)]
    while stack:
        current, depth = stack.pop()
        if depth > max_depth:
            continue
        if depth > 0 and is_excluded_discovery_path(current.relative_to(scan_root).as_posix()):
            continue
        if (current / REPORTS_INDEX_REL).is_file():
            found.add(current)
            continue
        try:
            children = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        for child in children:
            if child.is_symlink() or not child.is_dir():
                continue
            if is_excluded_dir_name(child.name):
                continue
            stack.append((child, depth + 1))

    return sorted(found, key=str)


def build_vault_candidate(root: Path, focus_tracks: list[str]) -> dict[str, Any]:
    candidate = empty_candidate(str(root), "vault", focus_tracks)
    index_path = root / REPORTS_INDEX_REL
    if not index_path.is_file():
        candidate["reason"] = f"missing {REPORTS_INDEX_REL}"
        return candidate
    try:
        raw = index_path.read_bytes()
        candidate["index_mtime_ms"] = int(index_path.stat().st_mtime * 1000)
    except OSError as exc:
        candidate["reason"] = f"failed to parse {REPORTS_INDEX_REL}: {exc}"
        return candidate

    apply_reports_index(candidate, raw, focus_tracks)
    for rel in EVIDENCE_INDEX_CANDIDATES:
        if (root / rel).is_file():
            candidate["has_evidence_index"] = True
            candidate["evidence_index_path"] = rel
            break
    candidate["dashboards_found"] = sum(
        1 for name in DASHBOARD_TARGET_FILENAMES if (root / "dashboards" / name).is_file()
    )
    return candidate


def scan_vault_candidates(
    vault_dir: Path,
    focus_tracks: list[str],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[dict[str, Any]]:
    return [build_vault_candidate(root, focus_tracks) for root in discover_vault_roots(vault_dir, max_depth)]


def zip_entry_map(archive: zipfile.ZipFile) -> dict[str, zipfile.ZipInfo]:
    return {normalize_path(info.filename): info for info in archive.infolist() if not info.is_dir()}


def discover_zip_prefixes(entry_names: Iterable[str]) -> list[str]:
    marker = "/" + REPORTS_INDEX_REL
    prefixes: set[str] = set()
    for name in entry_names:
        if name == REPORTS_INDEX_REL:
            prefix = ""
        elif name.endswith(marker):
            prefix = name[: -len(REPORTS_INDEX_REL)]
        else:
            continue
        if prefix and is_excluded_discovery_path(prefix):
            continue
        prefixes.add(prefix)
    return sorted(prefixes)


def zip_candidate_root(archive_path: Path, prefix: str) -> str:
    return f"{archive_path}{ZIP_ROOT_SEPARATOR}{prefix}"


def split_zip_root(root: str) -> tuple[str, str]:
    archive, _, prefix = root.partition(ZIP_ROOT_SEPARATOR)
    return archive, prefix


def build_zip_candidate(
    archive: zipfile.ZipFile,
    archive_path: Path,
    entries: dict[str, zipfile.ZipInfo],
    prefix: str,
    focus_tracks: list[str],
) -> dict[str, Any]:
    candidate = empty_candidate(zip_candidate_root(archive_path, prefix), "zip", focus_tracks)
    info = entries.get(prefix + REPORTS_INDEX_REL)
    if info is None:
        candidate["reason"] = f"missing {REPORTS_INDEX_REL}"
        return candidate
    try:
        raw = archive.read(info)
    except (OSError, zipfile.BadZipFile) as exc:
        candidate["reason"] = f"failed to parse {REPORTS_INDEX_REL}: {exc}"
        return candidate
    candidate["index_mtime_ms"] = int(datetime(*info.date_time).timestamp() * 1000)

    apply_reports_index(candidate, raw, focus_tracks)
    for rel in EVIDENCE_INDEX_CANDIDATES:
        if prefix + rel in entries:
            candidate["has_evidence_index"] = True
            candidate["evidence_index_path"] = rel
            break
    candidate["dashboards_found"] = sum(
        1 for name in DASHBOARD_TARGET_FILENAMES if f"{prefix}dashboards/{name}" in entries
    )
    return candidate


def scan_zip_candidates(archive_path: Path, focus_tracks: list[str]) -> list[dict[str, Any]]:
    """Raises zipfile.BadZipFile / OSError when the archive cannot be opened."""
    resolved = archive_path.resolve()
    with zipfile.ZipFile(resolved) as archive:
        entries = zip_entry_map(archive)
        return [
            build_zip_candidate(archive, resolved, entries, prefix, focus_tracks)
            for prefix in discover_zip_prefixes(entries.keys())
        ]
