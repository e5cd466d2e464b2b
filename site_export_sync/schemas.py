"""
JSON Schema shapes for site_export bundle indices and the sync source stamp.
"""

from __future__ import annotations

from typing import Any

import jsonschema


NON_BLANK_STRING = {"type": "string", "pattern": r"\S"}
OPTIONAL_STRING = {"type": ["string", "null"]}

REPORTS_INDEX_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["reports"],
    "properties": {
        "reports": {"type": "array"},
    },
}

REPORT_REQUIRED_FIELDS = ["id", "country", "track", "profile_id", "path"]
REPORT_OPTIONAL_STRING_FIELDS = ["dossier_slug", "memo_json_path", "memo_md_path"]

REPORT_ENTRY_OPTIONAL_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {field: OPTIONAL_STRING for field in REPORT_OPTIONAL_STRING_FIELDS},
}

EVIDENCE_INDEX_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "array",
}

EVIDENCE_ENTRY_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": NON_BLANK_STRING,
    },
}

SOURCE_STAMP_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": [
        "version",
        "synced_at",
        "mode",
        "export_root",
        "candidate_count",
        "focus_tracks",
        "source_total_reports",
        "destination_total_reports",
        "destination_track_counts",
        "dashboards",
        "warnings",
    ],
    "properties": {
        "version": {"const": "v1"},
        "mode": {"enum": ["vault_dir", "zip", "zip_fallback"]},
        "candidate_count": {"type": "integer", "minimum": 0},
        "focus_tracks": {"type": "array", "items": {"type": "string"}},
        "selected_candidate_score": {"type": ["number", "null"]},
        "destination_track_counts": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "warnings": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["code", "message", "details"],
                "properties": {
                    "code": NON_BLANK_STRING,
                    "message": {"type": "string"},
                    "details": {"type": "object"},
                },
            },
        },
    },
}


def schema_errors(instance: Any, schema: dict[str, Any]) -> list[str]:
    validator = jsonschema.Draft7Validator(schema)
    out: list[str] = []
    for error in sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path]):
        location = "/".join(str(p) for p in error.absolute_path)
        out.append(f"{location}: {error.message}" if location else error.message)
    return out
