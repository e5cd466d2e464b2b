"""
Scenario track classification for site_export report identifiers.
"""

from __future__ import annotations

from typing import Any, Iterable


CANONICAL_TRACK_KEYS = [
    "ev_oem_domestic",
    "ev_oem_export",
    "semi_osat_export",
    "battery_supply_chain",
    "industrial_power_grid",
    "critical_minerals",
    "maritime_logistics",
    "sanctions_controls",
    "other",
]
DEFAULT_FOCUS_TRACKS = ["critical_minerals", "maritime_logistics"]

# First match wins. A track whose dotted token is a substring of an existing
# one must be inserted before it.
TRACK_ID_RULES = (
    (".ev_oem_domestic.", "ev_oem_domestic"),
    (".ev_oem_export.", "ev_oem_export"),
    (".semi_osat_export.", "semi_osat_export"),
    (".battery_supply_chain.", "battery_supply_chain"),
    (".industrial_power_grid.", "industrial_power_grid"),
    (".critical_minerals.", "critical_minerals"),
    (".maritime_logistics.", "maritime_logistics"),
    (".sanctions_controls.", "sanctions_controls"),
)

TRACK_LABELS = {
    "ev_oem_domestic": "EV OEM (Domestic)",
    "ev_oem_export": "EV OEM (Export)",
    "semi_osat_export": "Semiconductor OSAT (Export)",
    "battery_supply_chain": "Battery Supply Chain",
    "industrial_power_grid": "Industrial Power & Grid",
    "critical_minerals": "Critical Minerals & Materials",
    "maritime_logistics": "Maritime & Logistics Resilience",
    "sanctions_controls": "Sanctions & Controls",
    "other": "Other",
}
TRACK_ALIASES = {
    "domestic": "ev_oem_domestic",
    "export": "ev_oem_export",
}


def derive_track_from_report_id(report_id: Any) -> str:
    normalized = str(report_id or "").lower()
    for token, track in TRACK_ID_RULES:
        if token in normalized:
            return track
    return "other"


def normalize_track(value: str | None) -> str:
    if not value:
        return "other"
    normalized = value.strip().lower()
    if normalized in TRACK_LABELS:
        return normalized
    return TRACK_ALIASES.get(normalized, "other")


def get_track_label(track: str) -> str:
    return TRACK_LABELS.get(track, TRACK_LABELS["other"])


def report_identifier(entry: Any) -> str:
    if not isinstance(entry, dict):
        return ""
    for key in ("report_id", "id"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def payload_identifier(entry: Any) -> str:
    """Payload files are named after the legacy `id`; `report_id` only when `id` is blank."""
    if not isinstance(entry, dict):
        return ""
    for key in ("id", "report_id"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def compute_track_counts_from_reports(
    reports: Iterable[Any],
    track_keys: Iterable[str] = CANONICAL_TRACK_KEYS,
) -> dict[str, int]:
    counts = {key: 0 for key in track_keys}
    for entry in reports:
        track = derive_track_from_report_id(report_identifier(entry))
        counts[track] = counts.get(track, 0) + 1
    return counts


def compute_focus_metrics(track_counts: dict[str, int] | None, focus_tracks: list[str]) -> dict[str, Any]:
    """
    Restrict track counts to the focus tracks.

    `min_focus` is not used by the default selection policy; it is exposed for
    stricter policies that require every focus track to be populated.
    """
    counts = track_counts or {}
    focus_counts = {track: int(counts.get(track, 0)) for track in focus_tracks}
    values = list(focus_counts.values())
    return {
        "focus_counts": focus_counts,
        "focus_sum": sum(values),
        "min_focus": min(values) if values else 0,
    }
