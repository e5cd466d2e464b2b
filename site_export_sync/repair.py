"""
Idempotent post-copy repairs on a destination site_export bundle.

1. report_id aliasing: entries with a legacy `id` but no `report_id` get the
   alias added to the reports index.
2. payload backfill: reports without `index/<id>.payload.v1.json` get one
   synthesized from the raw report artifact referenced by the index entry.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from site_export_sync.paths import (
    REPORTS_INDEX_REL,
    has_string,
    payload_rel_path,
    read_json,
    to_export_path,
    write_json,
)
from site_export_sync.tracks import payload_identifier, report_identifier


PAYLOAD_VERSION = "v1"
DEFAULT_CONFIDENCE_CAP = "medium"
MAX_RECORDED_FAILURES = 50


def _first_string(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    return default


def _url_list(*values: Any) -> list[str]:
    for value in values:
        if isinstance(value, list):
            urls = [str(item).strip() for item in value if isinstance(item, str) and item.strip()]
            if urls:
                return urls
        elif isinstance(value, str) and value.strip():
            return [value.strip()]
    return []


def _string_refs(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for value in values:
        if isinstance(value, str) and value.strip() and value.strip() not in out:
            out.append(value.strip())
    return out


def normalize_indicator(indicator_id: str, raw: Any) -> dict[str, Any]:
    """
    Fallback chains:
      label:              label -> name -> indicator id
      value:              value -> latest_value -> ""
      unit:               unit -> ""
      year:               year -> retrieved_date -> None
      source_institution: source_institution -> source -> ""
      urls:               urls (list or string) -> url -> source_url -> []
      missing_* flags:    bool(), absent = False
      is_complete_strict: bool(), absent = no missing_* flag set
    """
    item = _as_dict(raw)
    value = item.get("value")
    if value is None or (isinstance(value, str) and not value.strip()):
        value = item.get("latest_value")
    if value is None:
        value = ""
    missing_value = bool(item.get("missing_value", False))
    missing_url = bool(item.get("missing_url", False))
    missing_date = bool(item.get("missing_date", False))
    complete = item.get("is_complete_strict")
    if complete is None:
        complete = not (missing_value or missing_url or missing_date)
    domain = _first_string(item.get("domain"))
    return {
        "id": indicator_id,
        "label": _first_string(item.get("label"), item.get("name"), indicator_id),
        "value": value,
        "unit": _first_string(item.get("unit")),
        "year": _first_string(item.get("year"), item.get("retrieved_date")) or None,
        "source_institution": _first_string(item.get("source_institution"), item.get("source")),
        "domain": domain or None,
        "urls": _url_list(item.get("urls"), item.get("url"), item.get("source_url")),
        "notes": _first_string(item.get("notes")),
        "is_complete_strict": bool(complete),
        "missing_value": missing_value,
        "missing_url": missing_url,
        "missing_date": missing_date,
    }


def build_report_payload(entry: dict[str, Any], artifact: dict[str, Any]) -> dict[str, Any]:
    """
    Build the per-report payload from an index entry and its raw artifact.

    title:   artifact.meta.title -> artifact.title -> entry.title -> report id
    case_id: artifact.meta.case.case_id -> artifact.meta.case_id
             -> artifact.case_id -> report id
    """
    report_id = report_identifier(entry)
    meta = _as_dict(artifact.get("meta"))
    case = _as_dict(meta.get("case"))
    confidence = _as_dict(artifact.get("confidence"))
    completeness = _as_dict(artifact.get("completeness"))

    indicators_raw = artifact.get("indicators")
    indicators: list[dict[str, Any]] = []
    if isinstance(indicators_raw, dict):
        indicators = [normalize_indicator(str(key), value) for key, value in indicators_raw.items()]

    evidence_refs = _string_refs(artifact.get("evidence_refs")) or _string_refs(entry.get("evidence_refs"))
    overall_pct = _as_number(completeness.get("overall_pct"))

    return {
        "version": PAYLOAD_VERSION,
        "report_id": report_id,
        "meta": {
            "title": _first_string(meta.get("title"), artifact.get("title"), entry.get("title"), report_id),
            "case_id": _first_string(case.get("case_id"), meta.get("case_id"), artifact.get("case_id"), report_id),
            "backfilled": True,
        },
        "confidence": {
            "overall_cap": _first_string(confidence.get("overall_cap")) or DEFAULT_CONFIDENCE_CAP,
        },
        "completeness": {
            "overall_pct": overall_pct,
            "profile_weighted_pct": _as_number(completeness.get("profile_weighted_pct"), overall_pct),
            "weights_used": _as_dict(completeness.get("weights_used")),
            "domain_breakdown": _as_dict(completeness.get("domain_breakdown")),
        },
        "indicators": indicators,
        "evidence_refs": evidence_refs,
    }


def _load_reports_index(export_root: Path) -> tuple[dict[str, Any] | None, list[Any]]:
    index_path = export_root / REPORTS_INDEX_REL
    if not index_path.is_file():
        return None, []
    try:
        index_obj = read_json(index_path)
    except (OSError, ValueError):
        return None, []
    if not isinstance(index_obj, dict) or not isinstance(index_obj.get("reports"), list):
        return None, []
    return index_obj, index_obj["reports"]


def backfill_report_id_aliases(export_root: Path) -> dict[str, int]:
    index_obj, reports = _load_reports_index(export_root)
    updated = 0
    for entry in reports:
        if not isinstance(entry, dict):
            continue
        if has_string(entry.get("report_id")) or not has_string(entry.get("id")):
            continue
        entry["report_id"] = entry["id"].strip()
        updated += 1
    if index_obj is not None and updated:
        write_json(export_root / REPORTS_INDEX_REL, index_obj, sort_keys=False)
    return {"updated": updated, "total": len(reports)}


def backfill_payloads(export_root: Path) -> dict[str, Any]:
    _, reports = _load_reports_index(export_root)
    created = 0
    existing = 0
    failures: list[str] = []
    for entry in reports:
        if not isinstance(entry, dict):
            continue
        report_id = payload_identifier(entry)
        if not report_id:
            continue
        payload_path = export_root / payload_rel_path(report_id)
        if payload_path.exists():
            existing += 1
            continue

        artifact_rel = entry.get("path")
        if not has_string(artifact_rel):
            failures.append(f"{report_id} :: index entry has no artifact path")
            continue
        artifact_path = to_export_path(export_root, artifact_rel)
        if not artifact_path.is_file():
            failures.append(f"{report_id} :: missing report artifact {artifact_rel}")
            continue
        try:
            artifact = read_json(artifact_path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            failures.append(f"{report_id} :: failed to parse {artifact_rel}: {exc}")
            continue
        if not isinstance(artifact, dict):
            failures.append(f"{report_id} :: report artifact is not a JSON object")
            continue

        write_json(payload_path, build_report_payload(entry, artifact))
        created += 1

    return {
        "created": created,
        "existing": existing,
        "failed": len(failures),
        "failures": failures[:MAX_RECORDED_FAILURES],
    }


def repair_destination(export_root: Path) -> dict[str, Any]:
    aliases = backfill_report_id_aliases(export_root)
    payloads = backfill_payloads(export_root)
    return {
        "report_id_aliases_added": aliases["updated"],
        "payloads_created": payloads["created"],
        "payloads_existing": payloads["existing"],
        "payload_failures": payloads["failed"],
        "payload_failure_details": payloads["failures"],
    }
