"""
Scoring, ranking and selection of site_export bundle candidates.
"""

from __future__ import annotations

import hashlib
import math
from typing import Any

from site_export_sync.paths import parse_csv_list
from site_export_sync.tracks import DEFAULT_FOCUS_TRACKS


REPORTS_WEIGHT = 1000
FOCUS_WEIGHT = 100
EVIDENCE_WEIGHT = 10


def parse_focus_tracks(value: str | None, fallback: list[str] | None = None) -> list[str]:
    default = list(fallback if fallback is not None else DEFAULT_FOCUS_TRACKS)
    if not value or not isinstance(value, str):
        return default
    parsed = parse_csv_list(value)
    return parsed or default


def parse_min_reports(value: Any, fallback: int = 1) -> int:
    if value is None or value == "":
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(parsed) or parsed < 0:
        return fallback
    return int(math.floor(parsed))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def short_hash(full_hash: str | None) -> str:
    return str(full_hash or "")[:12]


def compute_candidate_score(candidate: dict[str, Any] | None) -> float:
    if not candidate or not candidate.get("valid"):
        return float("-inf")
    total_reports = int(candidate.get("total_reports") or 0)
    focus_sum = int(candidate.get("focus_sum") or 0)
    evidence = 1 if candidate.get("has_evidence_index") else 0
    return float(total_reports * REPORTS_WEIGHT + focus_sum * FOCUS_WEIGHT + evidence * EVIDENCE_WEIGHT)


def candidate_sort_key(candidate: dict[str, Any]) -> tuple[Any, ...]:
    """
    Ordering: valid first, score desc, focus_sum desc, total_reports desc,
    index mtime desc (newer wins), root asc.
    """
    return (
        0 if candidate.get("valid") else 1,
        -compute_candidate_score(candidate),
        -int(candidate.get("focus_sum") or 0),
        -int(candidate.get("total_reports") or 0),
        -float(candidate.get("index_mtime_ms") or 0),
        str(candidate.get("root") or ""),
    )


def rank_candidates(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(candidates, key=candidate_sort_key)


def mark_below_minimum(candidates: list[dict[str, Any]], min_reports: int) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for candidate in candidates:
        total = int(candidate.get("total_reports") or 0)
        if candidate.get("valid") and total < min_reports:
            candidate = dict(candidate)
            candidate["valid"] = False
            candidate["reason"] = f"below minimum reports ({total} < {min_reports})"
        out.append(candidate)
    return out


def _selection(
    selected: dict[str, Any] | None,
    ranked: list[dict[str, Any]],
    reason: str,
    focus_tracks: list[str],
) -> dict[str, Any]:
    return {
        "selected": selected,
        "ranked": ranked,
        "reason": reason,
        "selected_score": compute_candidate_score(selected) if selected else float("-inf"),
        "focus_tracks": focus_tracks,
    }


def choose_candidate_from_list(
    candidates: list[dict[str, Any]],
    focus_tracks: list[str] | None = None,
    explicit_root: str | None = None,
    min_reports: int = 1,
) -> dict[str, Any]:
    tracks = list(focus_tracks) if focus_tracks is not None else list(DEFAULT_FOCUS_TRACKS)

    if explicit_root:
        matched = next((c for c in candidates if c.get("root") == explicit_root), None)
        if matched is None:
            raise ValueError(f"Explicit export root not found among candidates: {explicit_root}")
        return _selection(matched, [matched], "explicit_override", tracks)

    eligible = [
        c for c in candidates if c.get("valid") and int(c.get("total_reports") or 0) >= min_reports
    ]
    if not eligible:
        return _selection(None, [], "no_valid_candidates", tracks)

    ranked = rank_candidates(eligible)
    reason = "only_candidate" if len(ranked) == 1 else "best_score"
    return _selection(ranked[0], ranked, reason, tracks)


def find_better_focus_candidate(
    selected: dict[str, Any] | None,
    candidates: list[dict[str, Any]],
) -> dict[str, Any] | None:
    """
    Suggest a positive-focus candidate when the selection has zero focus
    reports. Callers treat a non-None result as fatal unless the operator
    explicitly allows the mismatch.
    """
    if not selected or not selected.get("valid"):
        return None
    if int(selected.get("focus_sum") or 0) > 0:
        return None
    with_focus = [c for c in candidates if c.get("valid") and int(c.get("focus_sum") or 0) > 0]
    if not with_focus:
        return None
    return rank_candidates(with_focus)[0]


def json_score(score: float) -> float | None:
    return score if math.isfinite(score) else None


def candidate_summary(candidate: dict[str, Any]) -> dict[str, Any]:
    return {
        "root": candidate.get("root"),
        "source_type": candidate.get("source_type"),
        "valid": bool(candidate.get("valid")),
        "reason": candidate.get("reason"),
        "score": json_score(compute_candidate_score(candidate)),
        "total_reports": int(candidate.get("total_reports") or 0),
        "focus_counts": dict(candidate.get("focus_counts") or {}),
        "focus_sum": int(candidate.get("focus_sum") or 0),
        "has_evidence_index": bool(candidate.get("has_evidence_index")),
        "dashboards_found": int(candidate.get("dashboards_found") or 0),
        "path_preference": int(candidate.get("path_preference") or 0),
        "index_sha256": short_hash(candidate.get("index_sha256")),
    }
