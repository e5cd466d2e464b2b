"""
Materialize a selected bundle into the destination directory.
"""

from __future__ import annotations

import shutil
import zipfile
from pathlib import Path, PurePosixPath

from site_export_sync.paths import normalize_path


def reset_destination(dest_dir: Path) -> None:
    if dest_dir.exists():
        shutil.rmtree(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)


def copy_directory_recursive(source_dir: Path, target_dir: Path) -> int:
    file_count = 0
    stack: list[tuple[Path, Path]] = [(source_dir, target_dir)]
    while stack:
        src, dst = stack.pop()
        dst.mkdir(parents=True, exist_ok=True)
        for entry in sorted(src.iterdir(), key=lambda p: p.name):
            target = dst / entry.name
            if entry.is_dir():
                stack.append((entry, target))
                continue
            shutil.copyfile(entry, target)
            file_count += 1
    return file_count


def _safe_relative(rel: str) -> PurePosixPath | None:
    rel_path = PurePosixPath(rel)
    if rel_path.is_absolute() or ".." in rel_path.parts or not rel_path.parts:
        return None
    return rel_path


def extract_zip_prefix(archive_path: Path, prefix: str, target_dir: Path) -> int:
    """
    Extract every file entry under `prefix` into `target_dir` with the prefix
    stripped. Entries that would land outside `target_dir` are skipped.
    """
    norm_prefix = normalize_path(prefix)
    file_count = 0
    with zipfile.ZipFile(archive_path) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = normalize_path(info.filename)
            if not name.startswith(norm_prefix):
                continue
            rel_path = _safe_relative(name[len(norm_prefix):])
            if rel_path is None:
                continue
            out_path = target_dir.joinpath(*rel_path.parts)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, out_path.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            file_count += 1
    return file_count
