"""
Copy the framework/product reference notes from the vault into the site's
local `.context/` tree so they are available to editors and assistants.
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Any

from site_export_sync.paths import normalize_path


VAULT_ZIP_PREFIX = "13 - Lattice Labs/Clarum/"
DEFAULT_NOTES_DEST_REL = ".context/clarum-vault/13 - Lattice Labs/Clarum"
NOTE_PATHS = [
    "01 - Framework/Lattice Risk Framework.md",
    "01 - Framework/LRF-1 — Indicator Library (v1).md",
    "01 - Framework/LRF-1 — Rubric Anchors & Thresholds (v1).md",
    "01 - Framework/LRF-1 — Weight Profiles (EV, Battery, Semis).md",
    "02 - Evidence Library/Evidence Tiering & Gating.md",
    "02 - Evidence Library/Source Register.md",
    "03 - Product/Clarum — PRD.md",
    "03 - Product/Clarum — Output Spec (Dossier).md",
    "03 - Product/Clarum — Report Schema (JSON).md",
    "04 - Data & Ontology/Clarum — Data Quality Flags.md",
    "08 - Operations/Clarum — AI Chat Context.md",
    "09 - Legal & Brand/Disclaimers & Limitations.md",
    "00 - Dashboard & Index/Clarum — Roadmap.md",
]


def vault_note_roots(vault_dir: Path | None) -> list[Path]:
    if vault_dir is None:
        return []
    root = vault_dir.resolve()
    return [root, root / "Clarum"]


def resolve_note_from_vault(rel_path: str, roots: list[Path]) -> tuple[Path, Path] | None:
    for root in roots:
        candidate = root / rel_path
        if candidate.is_file():
            return candidate, root
    return None


def sync_vault_notes(
    dest_root: Path,
    vault_dir: Path | None,
    zip_path: Path | None,
    note_paths: list[str] | None = None,
) -> dict[str, Any]:
    """
    Directory sources win; notes not found there are read from the zip.
    Raises FileNotFoundError when notes remain unresolved and the zip is
    absent, zipfile.BadZipFile when it cannot be read.
    """
    notes = list(note_paths if note_paths is not None else NOTE_PATHS)
    roots = vault_note_roots(vault_dir)
    written: list[str] = []
    roots_used: set[str] = set()
    unresolved: list[str] = []

    for rel in notes:
        resolved = resolve_note_from_vault(rel, roots)
        if resolved is None:
            unresolved.append(rel)
            continue
        source, root_used = resolved
        out_path = dest_root / rel
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(source.read_bytes())
        written.append(rel)
        roots_used.add(str(root_used))

    used_zip = False
    if unresolved:
        if zip_path is None or not zip_path.is_file():
            raise FileNotFoundError(f"Missing vault zip at {zip_path}")
        used_zip = True
        with zipfile.ZipFile(zip_path) as archive:
            entries = {normalize_path(info.filename): info for info in archive.infolist() if not info.is_dir()}
            for rel in unresolved:
                info = entries.get(normalize_path(f"{VAULT_ZIP_PREFIX}{rel}"))
                if info is None:
                    continue
                out_path = dest_root / rel
                out_path.parent.mkdir(parents=True, exist_ok=True)
                out_path.write_bytes(archive.read(info))
                written.append(rel)

    if used_zip:
        source = "mixed" if roots_used else "vault_zip"
    else:
        source = "vault_dir"
    written_set = set(written)
    return {
        "source": source,
        "roots_used": sorted(roots_used),
        "zip_path": str(zip_path) if used_zip else None,
        "written": len(written),
        "top_level_folders": sorted({rel.split("/")[0] for rel in written}),
        "missing": [rel for rel in notes if rel not in written_set],
    }
