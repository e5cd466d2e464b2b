"""
Consistency checks for a synced site_export bundle.

Three layers:
  - sync-time guard: focus-track regressions between source and destination
    (fatal) plus non-fatal post-sync warnings.
  - verification report: shape and counts of the destination index with
    optional flag-gated requirements.
  - referential-integrity scan: every report, payload, memo and evidence
    reference is checked; all violations are collected, never short-circuited.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from site_export_sync.dashboards import DASHBOARD_TARGET_FILENAMES, DASHBOARDS_DEST_DIRNAME
from site_export_sync.paths import (
    EVIDENCE_INDEX_CANDIDATES,
    REPORTS_INDEX_REL,
    SOURCE_STAMP_REL,
    evidence_markdown_path,
    find_evidence_index,
    has_string,
    payload_rel_path,
    read_json,
    to_export_path,
)
from site_export_sync.schemas import (
    EVIDENCE_ENTRY_SCHEMA,
    EVIDENCE_INDEX_SCHEMA,
    REPORT_ENTRY_OPTIONAL_SCHEMA,
    REPORT_REQUIRED_FIELDS,
    REPORTS_INDEX_SCHEMA,
    SOURCE_STAMP_SCHEMA,
    schema_errors,
)
from site_export_sync.selector import parse_focus_tracks
from site_export_sync.tracks import (
    CANONICAL_TRACK_KEYS,
    compute_focus_metrics,
    compute_track_counts_from_reports,
    payload_identifier,
    report_identifier,
)


MISSING_BUNDLE_MESSAGE = (
    "Missing site_export bundle. Run `site-export-sync sync` with CLARUM_VAULT_DIR "
    "or CLARUM_VAULT_ZIP pointing at the vault."
)
REPORT_ISSUE_SECTIONS = [
    ("missing_files", "MISSING_FILES"),
    ("json_parse_failures", "JSON_PARSE_FAILURES"),
    ("invalid_reports_index_shape", "INVALID_REPORTS_INDEX_SHAPE"),
    ("invalid_report_index_entries", "INVALID_REPORT_INDEX_ENTRIES"),
    ("duplicate_report_ids", "DUPLICATE_REPORT_IDS"),
]
EVIDENCE_ISSUE_SECTIONS = [
    ("missing_files", "MISSING_FILES"),
    ("json_parse_failures", "JSON_PARSE_FAILURES"),
    ("invalid_evidence_index_entries", "INVALID_EVIDENCE_INDEX_ENTRIES"),
    ("missing_evidence_index_entries", "MISSING_EVIDENCE_INDEX_ENTRIES"),
    ("missing_evidence_markdown_for_refs", "MISSING_EVIDENCE_MARKDOWN_FOR_REFS"),
    ("invalid_payload_evidence_refs", "INVALID_PAYLOAD_EVIDENCE_REFS"),
]
MAX_WARNING_IDS = 20


def make_warning(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"code": code, "message": message, "details": details or {}}


def read_reports_index(export_root: Path) -> list[Any]:
    """Return the `reports` array; raises ValueError when missing or malformed."""
    index_path = export_root / REPORTS_INDEX_REL
    if not index_path.is_file():
        raise ValueError(f"Missing reports index: {index_path}")
    try:
        index_obj = read_json(index_path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to parse reports index at {index_path}: {exc}") from exc
    if schema_errors(index_obj, REPORTS_INDEX_SCHEMA):
        raise ValueError(f"Invalid reports index shape in {index_path}: expected top-level reports array.")
    return index_obj["reports"]


def check_focus_regression(
    source_counts: dict[str, int],
    dest_counts: dict[str, int],
    focus_tracks: list[str],
) -> list[str]:
    errors: list[str] = []
    for track in focus_tracks:
        source_value = int(source_counts.get(track, 0))
        dest_value = int(dest_counts.get(track, 0))
        if source_value > 0 and dest_value == 0:
            errors.append(
                f"focus track {track} has {source_value} report(s) in source but 0 in destination"
            )
    source_sum = compute_focus_metrics(source_counts, focus_tracks)["focus_sum"]
    dest_sum = compute_focus_metrics(dest_counts, focus_tracks)["focus_sum"]
    if source_sum > 0 and dest_sum == 0:
        errors.append(f"focus sum dropped from {source_sum} in source to 0 in destination")
    return errors


def collect_post_sync_warnings(
    export_root: Path,
    reports: list[Any],
    dest_counts: dict[str, int],
    focus_tracks: list[str],
) -> list[dict[str, Any]]:
    warnings: list[dict[str, Any]] = []
    focus = compute_focus_metrics(dest_counts, focus_tracks)
    if focus_tracks and focus["focus_sum"] == 0:
        warnings.append(
            make_warning(
                "FOCUS_TRACKS_ALL_ZERO",
                f"All focus tracks are zero in destination: {', '.join(focus_tracks)}",
                {"focus_counts": focus["focus_counts"]},
            )
        )

    dangling: list[str] = []
    for entry in reports:
        report_id = payload_identifier(entry)
        if report_id and not (export_root / payload_rel_path(report_id)).exists():
            dangling.append(report_id)
    if dangling:
        warnings.append(
            make_warning(
                "DANGLING_PAYLOADS",
                f"{len(dangling)} report(s) have no payload file after repair",
                {"count": len(dangling), "report_ids": sorted(dangling)[:MAX_WARNING_IDS]},
            )
        )
    return warnings


def load_source_stamp(export_root: Path) -> dict[str, Any] | None:
    stamp_path = export_root / SOURCE_STAMP_REL
    if not stamp_path.is_file():
        return None
    try:
        stamp = read_json(stamp_path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    return stamp if isinstance(stamp, dict) else None


def compute_verify_report(
    export_root: Path,
    focus_tracks: list[str] | None = None,
    require_nonzero_focus: bool = False,
    require_dashboards: bool = False,
    min_total_reports: int | None = None,
) -> tuple[list[str], dict[str, Any]]:
    report: dict[str, Any] = {
        "version": "v1",
        "index": str(export_root / REPORTS_INDEX_REL),
    }
    try:
        reports = read_reports_index(export_root)
    except ValueError as exc:
        return [str(exc)], report

    stamp = load_source_stamp(export_root)
    if focus_tracks:
        tracks = list(focus_tracks)
    elif stamp and isinstance(stamp.get("focus_tracks"), list) and stamp["focus_tracks"]:
        tracks = [t for t in stamp["focus_tracks"] if isinstance(t, str)]
    else:
        tracks = parse_focus_tracks(None)

    track_counts = compute_track_counts_from_reports(reports, CANONICAL_TRACK_KEYS)
    focus = compute_focus_metrics(track_counts, tracks)
    dashboards_dir = export_root / DASHBOARDS_DEST_DIRNAME
    dashboards_present = [name for name in DASHBOARD_TARGET_FILENAMES if (dashboards_dir / name).is_file()]

    report.update(
        {
            "total_reports": len(reports),
            "track_counts": track_counts,
            "focus_tracks": tracks,
            "focus_counts": focus["focus_counts"],
            "focus_sum": focus["focus_sum"],
            "first_report_ids": [rid for rid in (report_identifier(e) for e in reports) if rid][:10],
            "dashboards_present": dashboards_present,
            "dashboards_missing": [n for n in DASHBOARD_TARGET_FILENAMES if n not in dashboards_present],
            "stamp": None,
            "stamp_warnings": [],
        }
    )
    if stamp is not None:
        report["stamp"] = {
            "mode": stamp.get("mode"),
            "export_root": stamp.get("export_root"),
            "candidate_count": stamp.get("candidate_count"),
            "selected_candidate_score": stamp.get("selected_candidate_score"),
            "selected_candidate_reason": stamp.get("selected_candidate_reason"),
            "synced_at": stamp.get("synced_at"),
        }
        report["stamp_warnings"] = schema_errors(stamp, SOURCE_STAMP_SCHEMA)

    errors: list[str] = []
    if min_total_reports is not None and len(reports) < min_total_reports:
        errors.append(f"total_reports {len(reports)} is below required minimum {min_total_reports}.")
    if require_nonzero_focus and all(track_counts.get(t, 0) == 0 for t in tracks):
        errors.append(f"All focus tracks are zero: {', '.join(tracks)}")
    if require_dashboards and not dashboards_present:
        errors.append("No dashboards files found in destination dashboards directory.")
    return errors, report


def _rel(path: Path, export_root: Path) -> str:
    try:
        return path.relative_to(export_root).as_posix()
    except ValueError:
        return path.as_posix()


def _parse_json_file(path: Path, export_root: Path, failures: list[str]) -> Any:
    try:
        return read_json(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        failures.append(f"{_rel(path, export_root)} :: {exc}")
        return None


def _empty_issues(sections: list[tuple[str, str]]) -> dict[str, list[str]]:
    return {key: [] for key, _ in sections}


def _scan_report_entries(
    export_root: Path,
    issues: dict[str, list[str]],
) -> dict[str, dict[str, Any]]:
    index_path = export_root / REPORTS_INDEX_REL
    index_obj = _parse_json_file(index_path, export_root, issues["json_parse_failures"])
    if index_obj is None:
        return {}
    if not isinstance(index_obj, dict):
        issues["invalid_reports_index_shape"].append(
            f"{_rel(index_path, export_root)} :: expected JSON object at top level"
        )
        return {}
    raw_reports = index_obj.get("reports")
    if not isinstance(raw_reports, list):
        issues["invalid_reports_index_shape"].append(
            f'{_rel(index_path, export_root)} :: expected "reports" to be an array'
        )
        return {}

    entries: list[dict[str, Any]] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_reports):
        if not isinstance(raw, dict):
            issues["invalid_report_index_entries"].append(f"reports[{index}] :: expected object entry")
            continue
        missing = [field for field in REPORT_REQUIRED_FIELDS if not has_string(raw.get(field))]
        if missing:
            issues["invalid_report_index_entries"].append(
                f"reports[{index}] :: missing required field(s): {', '.join(missing)}"
            )
            continue
        for message in schema_errors(raw, REPORT_ENTRY_OPTIONAL_SCHEMA):
            issues["invalid_report_index_entries"].append(f"reports[{index}] :: {message}")
        if raw["id"] in seen:
            issues["duplicate_report_ids"].append(raw["id"])
        seen.add(raw["id"])
        entries.append(raw)

    payloads: dict[str, dict[str, Any]] = {}
    for entry in sorted(entries, key=lambda e: e["id"]):
        report_id = entry["id"]
        artifact_path = to_export_path(export_root, entry["path"])
        if not artifact_path.is_file():
            issues["missing_files"].append(_rel(artifact_path, export_root))
        else:
            artifact = _parse_json_file(artifact_path, export_root, issues["json_parse_failures"])
            if artifact is not None and not isinstance(artifact, dict):
                issues["invalid_report_index_entries"].append(
                    f"{_rel(artifact_path, export_root)} :: expected report artifact JSON object"
                )

        payload_path = export_root / payload_rel_path(report_id)
        if not payload_path.is_file():
            issues["missing_files"].append(_rel(payload_path, export_root))
        else:
            payload = _parse_json_file(payload_path, export_root, issues["json_parse_failures"])
            if payload is not None:
                if isinstance(payload, dict):
                    payloads[report_id] = payload
                else:
                    issues["invalid_report_index_entries"].append(
                        f"{_rel(payload_path, export_root)} :: expected payload JSON object"
                    )

        memo_json = entry.get("memo_json_path")
        if has_string(memo_json):
            memo_path = to_export_path(export_root, memo_json)
            if not memo_path.is_file():
                issues["missing_files"].append(_rel(memo_path, export_root))
            else:
                memo = _parse_json_file(memo_path, export_root, issues["json_parse_failures"])
                if memo is not None and not isinstance(memo, dict):
                    issues["invalid_report_index_entries"].append(
                        f"{_rel(memo_path, export_root)} :: expected memo JSON object"
                    )

        memo_md = entry.get("memo_md_path")
        if has_string(memo_md):
            memo_md_path = to_export_path(export_root, memo_md)
            if not memo_md_path.is_file():
                issues["missing_files"].append(_rel(memo_md_path, export_root))
    return payloads


def _scan_evidence(
    export_root: Path,
    payloads: dict[str, dict[str, Any]],
    issues: dict[str, list[str]],
) -> None:
    evidence_ids: set[str] = set()
    evidence_index = find_evidence_index(export_root)
    if evidence_index is None:
        issues["missing_files"].append(f"evidence index (one of: {', '.join(EVIDENCE_INDEX_CANDIDATES)})")
    else:
        index_obj = _parse_json_file(evidence_index, export_root, issues["json_parse_failures"])
        if index_obj is not None:
            if schema_errors(index_obj, EVIDENCE_INDEX_SCHEMA):
                issues["invalid_evidence_index_entries"].append(
                    f"{_rel(evidence_index, export_root)} :: expected top-level array"
                )
            else:
                for index, raw in enumerate(index_obj):
                    if schema_errors(raw, EVIDENCE_ENTRY_SCHEMA):
                        issues["invalid_evidence_index_entries"].append(
                            f'evidence_index[{index}] :: missing required string field "id"'
                        )
                        continue
                    evidence_id = raw["id"].strip()
                    evidence_ids.add(evidence_id)
                    markdown = evidence_markdown_path(export_root, evidence_id)
                    if not markdown.is_file():
                        issues["missing_files"].append(_rel(markdown, export_root))

    for report_id in sorted(payloads):
        refs = payloads[report_id].get("evidence_refs")
        if refs is None:
            continue
        if not isinstance(refs, list):
            issues["invalid_payload_evidence_refs"].append(
                f"{report_id} :: payload.evidence_refs must be an array when present"
            )
            continue
        for raw_ref in refs:
            if not has_string(raw_ref):
                issues["invalid_payload_evidence_refs"].append(
                    f"{report_id} :: payload.evidence_refs contains a non-string/blank value"
                )
                continue
            ref_id = raw_ref.strip()
            if ref_id not in evidence_ids:
                issues["missing_evidence_index_entries"].append(f"{report_id} -> {ref_id}")
            markdown = evidence_markdown_path(export_root, ref_id)
            if not markdown.is_file():
                issues["missing_evidence_markdown_for_refs"].append(
                    f"{report_id} -> {_rel(markdown, export_root)}"
                )


def scan_bundle_contract(export_root: Path) -> dict[str, Any]:
    report_issues = _empty_issues(REPORT_ISSUE_SECTIONS)
    evidence_issues = _empty_issues(EVIDENCE_ISSUE_SECTIONS)
    if not (export_root / REPORTS_INDEX_REL).is_file():
        return {
            "bundle_missing_message": MISSING_BUNDLE_MESSAGE,
            "report_issues": report_issues,
            "evidence_issues": evidence_issues,
        }

    payloads = _scan_report_entries(export_root, report_issues)
    _scan_evidence(export_root, payloads, evidence_issues)
    return {
        "bundle_missing_message": None,
        "report_issues": report_issues,
        "evidence_issues": evidence_issues,
    }


def format_contract_failure(title: str, sections: list[tuple[str, list[str]]]) -> str | None:
    non_empty = [(header, sorted(set(items))) for header, items in sections if items]
    if not non_empty:
        return None
    body = "\n\n".join(
        f"{header}:\n" + "\n".join(f"- {item}" for item in items) for header, items in non_empty
    )
    return f"{title}\n\n{body}"


def contract_failures(scan: dict[str, Any]) -> list[str]:
    if scan.get("bundle_missing_message"):
        return [scan["bundle_missing_message"]]
    out: list[str] = []
    for title, issues, sections in (
        ("site_export report contract failed.", scan["report_issues"], REPORT_ISSUE_SECTIONS),
        ("site_export evidence contract failed.", scan["evidence_issues"], EVIDENCE_ISSUE_SECTIONS),
    ):
        message = format_contract_failure(title, [(header, issues[key]) for key, header in sections])
        if message:
            out.append(message)
    return out
