#!/usr/bin/env python3
"""
Site Export Sync v1

CLI to resolve, copy, repair and verify the `site_export.v1` data bundle from a
vault directory or vault zip into the website's public data folder.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from site_export_sync.contract import (
    check_focus_regression,
    collect_post_sync_warnings,
    compute_verify_report,
    contract_failures,
    make_warning,
    read_reports_index,
    scan_bundle_contract,
)
from site_export_sync.copier import copy_directory_recursive, extract_zip_prefix, reset_destination
from site_export_sync.dashboards import copy_dashboards_to_destination, skipped_dashboards_result
from site_export_sync.notes import DEFAULT_NOTES_DEST_REL, sync_vault_notes
from site_export_sync.paths import (
    DEFAULT_DEST_REL,
    SOURCE_STAMP_REL,
    parse_bool,
    utc_now,
    write_json,
)
from site_export_sync.repair import repair_destination
from site_export_sync.scanner import (
    DEFAULT_MAX_DEPTH,
    ZIP_ROOT_SEPARATOR,
    scan_vault_candidates,
    scan_zip_candidates,
    split_zip_root,
)
from site_export_sync.selector import (
    candidate_summary,
    choose_candidate_from_list,
    find_better_focus_candidate,
    json_score,
    mark_below_minimum,
    parse_focus_tracks,
    parse_min_reports,
    rank_candidates,
)
from site_export_sync.tracks import (
    CANONICAL_TRACK_KEYS,
    compute_track_counts_from_reports,
    get_track_label,
    normalize_track,
)


STAMP_VERSION = "v1"
DEFAULT_VAULT_ZIP = "13 - Lattice Labs.zip"
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_STALE_SECONDS = 300.0
MAX_STAMP_CANDIDATES = 10

ENV_VAULT_DIR = "CLARUM_VAULT_DIR"
ENV_VAULT_ZIP = "CLARUM_VAULT_ZIP"
ENV_EXPORT_ROOT = "CLARUM_EXPORT_ROOT"
ENV_FOCUS_TRACKS = "CLARUM_SYNC_FOCUS_TRACKS"
ENV_VERIFY_FOCUS_TRACKS = "SYNC_EXPECT_TRACKS"
ENV_MIN_REPORTS = "CLARUM_SYNC_MIN_REPORTS"
ENV_ALLOW_ZIP_FALLBACK = "CLARUM_ALLOW_ZIP_FALLBACK"
ENV_ALLOW_FOCUS_MISMATCH = "CLARUM_ALLOW_FOCUS_MISMATCH"


def resolve_site_dir(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "site_dir", None) or ".").resolve()


def resolve_dest_dir(args: argparse.Namespace) -> Path:
    site_dir = resolve_site_dir(args)
    raw = getattr(args, "dest_dir", None)
    if not raw:
        return (site_dir / DEFAULT_DEST_REL).resolve()
    dest = Path(raw)
    return dest.resolve() if dest.is_absolute() else (site_dir / dest).resolve()


def normalize_explicit_root(raw: str | None) -> str | None:
    if not raw or not raw.strip():
        return None
    value = raw.strip()
    if ZIP_ROOT_SEPARATOR in value:
        archive, prefix = split_zip_root(value)
        return f"{Path(archive).resolve()}{ZIP_ROOT_SEPARATOR}{prefix}"
    return str(Path(value).resolve())


def resolve_sync_options(args: argparse.Namespace) -> dict[str, Any]:
    """Flag, then environment variable, then default."""
    env = os.environ
    site_dir = resolve_site_dir(args)
    vault_raw = getattr(args, "vault_dir", None) or env.get(ENV_VAULT_DIR)
    zip_raw = getattr(args, "vault_zip", None) or env.get(ENV_VAULT_ZIP)
    zip_path = Path(zip_raw).resolve() if zip_raw else (site_dir / DEFAULT_VAULT_ZIP).resolve()
    min_raw = getattr(args, "min_reports", None)
    return {
        "site_dir": site_dir,
        "dest_dir": resolve_dest_dir(args),
        "vault_dir": Path(vault_raw).resolve() if vault_raw else None,
        "zip_path": zip_path,
        "explicit_root": normalize_explicit_root(getattr(args, "export_root", None) or env.get(ENV_EXPORT_ROOT)),
        "focus_tracks": parse_focus_tracks(getattr(args, "focus", None) or env.get(ENV_FOCUS_TRACKS)),
        "min_reports": parse_min_reports(min_raw if min_raw is not None else env.get(ENV_MIN_REPORTS)),
        "allow_zip_fallback": bool(getattr(args, "allow_zip_fallback", False))
        or parse_bool(env.get(ENV_ALLOW_ZIP_FALLBACK)),
        "allow_focus_mismatch": bool(getattr(args, "allow_focus_mismatch", False))
        or parse_bool(env.get(ENV_ALLOW_FOCUS_MISMATCH)),
        "max_depth": args.max_depth,
    }


def _read_lock_metadata(lock_path: Path) -> dict[str, Any]:
    try:
        obj = json.loads(lock_path.read_text(encoding="utf-8"))
        return obj if isinstance(obj, dict) else {}
    except (OSError, ValueError):
        return {}


def _lock_is_stale(lock_path: Path, stale_seconds: float) -> bool:
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return False
    return age > stale_seconds


def destination_lock_path(dest_dir: Path) -> Path:
    return dest_dir.parent / f".{dest_dir.name}.lock"


@contextmanager
def destination_lock(
    dest_dir: Path,
    lock_timeout_seconds: float,
    lock_stale_seconds: float,
    force_unlock: bool,
):
    """Lock file lives beside the destination, which is removed and recreated on every sync."""
    lock_path = destination_lock_path(dest_dir)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    token = f"{os.getpid()}-{int(time.time() * 1000)}"
    start = time.monotonic()

    while True:
        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            break
        except FileExistsError:
            if force_unlock or _lock_is_stale(lock_path, lock_stale_seconds):
                lock_path.unlink(missing_ok=True)
                continue
            if (time.monotonic() - start) >= lock_timeout_seconds:
                owner = _read_lock_metadata(lock_path)
                raise RuntimeError(f"lock_timeout: unable to acquire destination lock {lock_path}; owner={owner or 'unknown'}")
            time.sleep(0.1)

    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({"token": token, "pid": os.getpid(), "created_at": utc_now()}, f)
    try:
        yield
    finally:
        if _read_lock_metadata(lock_path).get("token") == token:
            lock_path.unlink(missing_ok=True)


def fail(prefix: str, message: str) -> int:
    print(f"[{prefix}] ERROR: {message}", file=sys.stderr)
    return 1


def print_warnings(prefix: str, warnings: list[dict[str, Any]]) -> None:
    for warning in warnings:
        print(f"[{prefix}] WARN: {warning['code']}: {warning['message']}", file=sys.stderr)


def print_candidate_table(candidates: list[dict[str, Any]], out: Any = None) -> None:
    stream = out or sys.stdout
    print(f"[sync] candidates ({len(candidates)}):", file=stream)
    for position, candidate in enumerate(rank_candidates(candidates), start=1):
        row = candidate_summary(candidate)
        score = "-inf" if row["score"] is None else f"{row['score']:.0f}"
        print(
            f"[sync]   #{position} score={score} reports={row['total_reports']} "
            f"focus={row['focus_sum']} evidence={'yes' if row['has_evidence_index'] else 'no'} "
            f"dashboards={row['dashboards_found']} sha={row['index_sha256'] or 'n/a'} "
            f"root={row['root']} reason={row['reason']}",
            file=stream,
        )


def discover_candidates(options: dict[str, Any]) -> tuple[str, list[dict[str, Any]], list[dict[str, Any]]]:
    """
    Return (mode, candidates, warnings). Candidates under the minimum-report
    threshold stay in the list, marked invalid. Raises zipfile.BadZipFile or
    OSError when the zip cannot be opened.
    """
    focus_tracks = options["focus_tracks"]
    min_reports = options["min_reports"]
    warnings: list[dict[str, Any]] = []
    vault_dir: Path | None = options["vault_dir"]
    zip_path: Path = options["zip_path"]

    if vault_dir is not None:
        candidates: list[dict[str, Any]] = []
        if vault_dir.is_dir():
            candidates = scan_vault_candidates(vault_dir, focus_tracks, options["max_depth"])
        else:
            warnings.append(
                make_warning("VAULT_DIR_MISSING", f"Vault directory not found: {vault_dir}", {"vault_dir": str(vault_dir)})
            )
        candidates = mark_below_minimum(candidates, min_reports)
        if any(c["valid"] for c in candidates) or not options["allow_zip_fallback"]:
            return "vault_dir", candidates, warnings
        warnings.append(
            make_warning(
                "ZIP_FALLBACK_USED",
                "No valid candidates under the vault directory; falling back to the vault zip.",
                {"vault_dir": str(vault_dir), "zip_path": str(zip_path), "vault_candidates": len(candidates)},
            )
        )
        mode = "zip_fallback"
    else:
        mode = "zip"

    if not zip_path.is_file():
        warnings.append(make_warning("ZIP_MISSING", f"Vault zip not found: {zip_path}", {"zip_path": str(zip_path)}))
        return mode, [], warnings
    return mode, mark_below_minimum(scan_zip_candidates(zip_path, focus_tracks), min_reports), warnings


def dashboards_warnings(dashboards: dict[str, Any]) -> list[dict[str, Any]]:
    mode = dashboards.get("mode")
    details = {"source_dir": dashboards.get("source_dir"), "files_missing": dashboards.get("files_missing", [])}
    if mode == "missing":
        return [make_warning("DASHBOARDS_MISSING", "No dashboards directory with known files was found.", details)]
    if mode == "error":
        return [make_warning("DASHBOARDS_COPY_FAILED", "; ".join(dashboards.get("warnings", [])), details)]
    if mode == "copied" and dashboards.get("files_missing"):
        return [
            make_warning(
                "DASHBOARDS_PARTIAL",
                f"{len(dashboards['files_missing'])} expected dashboards file(s) missing from {dashboards['source_dir']}",
                details,
            )
        ]
    return []


def build_source_stamp(
    mode: str,
    options: dict[str, Any],
    candidates: list[dict[str, Any]],
    selection: dict[str, Any],
    files_copied: int,
    dest_reports: list[Any],
    dest_counts: dict[str, int],
    dashboards: dict[str, Any],
    repair: dict[str, Any],
    warnings: list[dict[str, Any]],
) -> dict[str, Any]:
    selected = selection["selected"]
    return {
        "version": STAMP_VERSION,
        "synced_at": utc_now(),
        "mode": mode,
        "export_root": selected["root"],
        "candidate_count": len(candidates),
        "selected_candidate_score": json_score(selection["selected_score"]),
        "selected_candidate_reason": selection["reason"],
        "selected_candidate": candidate_summary(selected),
        "focus_tracks": list(options["focus_tracks"]),
        "min_reports": options["min_reports"],
        "source_total_reports": int(selected.get("total_reports") or 0),
        "source_track_counts": dict(selected.get("track_counts") or {}),
        "destination_total_reports": len(dest_reports),
        "destination_track_counts": dest_counts,
        "files_copied": files_copied,
        "dashboards": dashboards,
        "repair": repair,
        "candidates": [candidate_summary(c) for c in rank_candidates(candidates)[:MAX_STAMP_CANDIDATES]],
        "warnings": warnings,
    }


def sync_project(args: argparse.Namespace) -> int:
    options = resolve_sync_options(args)
    dest_dir: Path = options["dest_dir"]
    focus_tracks: list[str] = options["focus_tracks"]

    mode, candidates, warnings = discover_candidates(options)
    if not candidates:
        print_warnings("sync", warnings)
        return fail("sync", f"No site_export candidates discovered (mode={mode}).")

    selection = choose_candidate_from_list(
        candidates,
        focus_tracks=focus_tracks,
        explicit_root=options["explicit_root"],
        min_reports=options["min_reports"],
    )
    selected = selection["selected"]
    if selected is None:
        print_candidate_table(candidates, out=sys.stderr)
        return fail("sync", f"No valid site_export candidates (min_reports={options['min_reports']}).")

    better = None
    if selection["reason"] != "explicit_override":
        better = find_better_focus_candidate(selected, candidates)
    if better is not None:
        message = (
            f"Selected export root {selected['root']} has zero focus-track reports "
            f"({', '.join(focus_tracks)}) but {better['root']} has {better['focus_sum']}."
        )
        if not options["allow_focus_mismatch"]:
            print_candidate_table(candidates, out=sys.stderr)
            return fail(
                "sync",
                f"{message} Set {ENV_EXPORT_ROOT} to choose explicitly or pass --allow-focus-mismatch.",
            )
        warnings.append(
            make_warning(
                "FOCUS_MISMATCH_BYPASSED",
                message,
                {"selected_root": selected["root"], "suggested_root": better["root"], "suggested_focus_sum": better["focus_sum"]},
            )
        )

    reset_destination(dest_dir)
    if selected["source_type"] == "zip":
        archive, prefix = split_zip_root(selected["root"])
        files_copied = extract_zip_prefix(Path(archive), prefix, dest_dir)
        dashboards = skipped_dashboards_result("zip source")
        warnings.append(
            make_warning("DASHBOARDS_SKIPPED_ZIP", "Dashboards are not resolved from zip sources.", {"mode": mode})
        )
    else:
        files_copied = copy_directory_recursive(Path(selected["root"]), dest_dir)
        dashboards = copy_dashboards_to_destination(Path(selected["root"]), dest_dir)
        warnings.extend(dashboards_warnings(dashboards))

    repair = repair_destination(dest_dir)
    if repair["payload_failures"]:
        warnings.append(
            make_warning(
                "PAYLOAD_BACKFILL_FAILED",
                f"{repair['payload_failures']} payload(s) could not be backfilled",
                {"failures": repair["payload_failure_details"]},
            )
        )

    dest_reports = read_reports_index(dest_dir)
    dest_counts = compute_track_counts_from_reports(dest_reports, CANONICAL_TRACK_KEYS)
    regressions = check_focus_regression(selected.get("track_counts") or {}, dest_counts, focus_tracks)
    if regressions:
        for message in regressions:
            fail("sync", message)
        return 1
    warnings.extend(collect_post_sync_warnings(dest_dir, dest_reports, dest_counts, focus_tracks))

    stamp = build_source_stamp(
        mode,
        options,
        candidates,
        selection,
        files_copied,
        dest_reports,
        dest_counts,
        dashboards,
        repair,
        warnings,
    )
    write_json(dest_dir / SOURCE_STAMP_REL, stamp)

    if args.format == "json":
        print(json.dumps(stamp, indent=2, sort_keys=True))
    else:
        print(f"[sync] mode={mode}")
        print(f"[sync] export_root={selected['root']}")
        print(f"[sync] selection={selection['reason']} score={stamp['selected_candidate_score']}")
        print(f"[sync] candidates={len(candidates)}")
        print(f"[sync] files_copied={files_copied} -> {dest_dir}")
        print(f"[sync] total_reports={len(dest_reports)}")
        for track in focus_tracks:
            print(f"[sync] focus {track}={dest_counts.get(track, 0)}")
        print(f"[sync] dashboards={dashboards['mode']} files={len(dashboards['files_copied'])}")
        print(f"[sync] payloads_created={repair['payloads_created']} report_id_aliases={repair['report_id_aliases_added']}")
        print(f"[sync] stamp={dest_dir / SOURCE_STAMP_REL}")
    print_warnings("sync", warnings)
    return 0


def candidates_project(args: argparse.Namespace) -> int:
    options = resolve_sync_options(args)
    mode, candidates, warnings = discover_candidates(options)
    selection = choose_candidate_from_list(
        candidates,
        focus_tracks=options["focus_tracks"],
        explicit_root=options["explicit_root"],
        min_reports=options["min_reports"],
    )
    selected = selection["selected"]
    better = None
    if selection["reason"] != "explicit_override":
        better = find_better_focus_candidate(selected, candidates)
    report = {
        "mode": mode,
        "focus_tracks": options["focus_tracks"],
        "min_reports": options["min_reports"],
        "candidates": [candidate_summary(c) for c in rank_candidates(candidates)],
        "selection": {
            "root": selected["root"] if selected else None,
            "reason": selection["reason"],
            "score": json_score(selection["selected_score"]),
            "better_focus_root": better["root"] if better else None,
        },
        "warnings": warnings,
    }

    if args.format == "json":
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(f"[sync] mode={mode}")
        print_candidate_table(candidates)
        print(f"[sync] selection={selection['reason']} root={report['selection']['root'] or 'n/a'}")
        if better is not None:
            print(f"[sync] better_focus_candidate={better['root']}")
        print_warnings("sync", warnings)
    return 0 if selected is not None else 1


def verify_project(args: argparse.Namespace) -> int:
    dest_dir = resolve_dest_dir(args)
    if args.min_total_reports is not None and args.min_total_reports < 0:
        return fail("verify", f"Invalid --min-total-reports value: {args.min_total_reports}")
    focus_raw = args.focus or os.environ.get(ENV_FOCUS_TRACKS) or os.environ.get(ENV_VERIFY_FOCUS_TRACKS)
    errors, report = compute_verify_report(
        dest_dir,
        focus_tracks=[normalize_track(t) for t in parse_focus_tracks(focus_raw)] if focus_raw else None,
        require_nonzero_focus=args.require_nonzero_focus,
        require_dashboards=args.require_dashboards,
        min_total_reports=args.min_total_reports,
    )
    if "total_reports" not in report:
        return fail("verify", errors[0])

    if args.format == "json":
        print(json.dumps({**report, "status": "fail" if errors else "pass", "errors": errors}, indent=2, sort_keys=True))
    else:
        stamp = report["stamp"] or {}
        print("[verify] site_export track counts")
        print(f"[verify] index={report['index']}")
        print(f"[verify] total_reports={report['total_reports']}")
        for key in ("mode", "export_root", "candidate_count", "selected_candidate_score", "selected_candidate_reason"):
            value = stamp.get(key)
            print(f"[verify] stamp_{key}={'n/a' if value is None else value}")
        for track in CANONICAL_TRACK_KEYS:
            print(f"[verify] {track}={report['track_counts'].get(track, 0)}")
        print("[verify] focus_tracks")
        for track in report["focus_tracks"]:
            print(f"[verify] {track}={report['track_counts'].get(track, 0)} ({get_track_label(track)})")
        print(f"[verify] first_report_ids={', '.join(report['first_report_ids'])}")
        print(
            f"[verify] dashboards_present={len(report['dashboards_present'])} "
            f"dashboards_missing={len(report['dashboards_missing'])}"
        )
        for message in report["stamp_warnings"]:
            print(f"[verify] WARN: source stamp {message}", file=sys.stderr)

    for message in errors:
        print(f"[verify] ERROR: {message}", file=sys.stderr)
    return 1 if errors else 0


def contract_check_project(args: argparse.Namespace) -> int:
    dest_dir = resolve_dest_dir(args)
    scan = scan_bundle_contract(dest_dir)
    failures = contract_failures(scan)

    if args.format == "json":
        print(
            json.dumps(
                {**scan, "export_root": str(dest_dir), "status": "fail" if failures else "pass"},
                indent=2,
                sort_keys=True,
            )
        )
    else:
        print(f"[contract] export_root={dest_dir}")
        print(f"[contract] status={'fail' if failures else 'pass'}")
        for message in failures:
            print(message, file=sys.stderr)
    return 1 if failures else 0


def sync_notes_project(args: argparse.Namespace) -> int:
    site_dir = resolve_site_dir(args)
    vault_raw = args.vault_dir or os.environ.get(ENV_VAULT_DIR)
    zip_raw = args.vault_zip or os.environ.get(ENV_VAULT_ZIP)
    zip_path = Path(zip_raw).resolve() if zip_raw else (site_dir / DEFAULT_VAULT_ZIP).resolve()
    notes_dest = Path(args.notes_dest) if args.notes_dest else site_dir / DEFAULT_NOTES_DEST_REL
    if not notes_dest.is_absolute():
        notes_dest = site_dir / notes_dest

    try:
        result = sync_vault_notes(notes_dest, Path(vault_raw) if vault_raw else None, zip_path)
    except FileNotFoundError as exc:
        return fail("sync-notes", str(exc))

    if args.format == "json":
        print(json.dumps({**result, "dest": str(notes_dest)}, indent=2, sort_keys=True))
        return 0

    if result["missing"]:
        print(f"[sync-notes] Missing {len(result['missing'])} note(s):", file=sys.stderr)
        for rel in result["missing"]:
            print(f"- {rel}", file=sys.stderr)
    if result["source"] == "vault_dir":
        print(f"[sync-notes] Source: vault_dir ({', '.join(result['roots_used'])})")
    else:
        print(f"[sync-notes] Source: {result['source']} ({zip_path})")
    print(f"[sync-notes] Wrote {result['written']} notes.")
    print(f"[sync-notes] Top-level folders: {', '.join(result['top_level_folders'])}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Site Export Sync v1")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_site_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--site-dir", default=".", help="Website project root (default: current directory).")
        p.add_argument(
            "--dest-dir",
            help=f"Destination bundle directory (default: <site-dir>/{DEFAULT_DEST_REL}).",
        )

    def add_source_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--vault-dir", help=f"Vault directory to scan (default: ${ENV_VAULT_DIR}).")
        p.add_argument(
            "--vault-zip",
            help=f"Vault zip archive (default: ${ENV_VAULT_ZIP} or <site-dir>/{DEFAULT_VAULT_ZIP}).",
        )

    def add_selection_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--export-root",
            help=f"Explicit candidate root; bypasses scoring (default: ${ENV_EXPORT_ROOT}).",
        )
        p.add_argument(
            "--focus",
            help=f"Comma-separated focus tracks (default: ${ENV_FOCUS_TRACKS} or critical_minerals,maritime_logistics).",
        )
        p.add_argument(
            "--min-reports",
            help=f"Minimum reports for a candidate to be eligible (default: ${ENV_MIN_REPORTS} or 1).",
        )
        p.add_argument(
            "--allow-zip-fallback",
            action="store_true",
            help=f"Use the vault zip when the vault directory has no valid candidates (or ${ENV_ALLOW_ZIP_FALLBACK}=1).",
        )
        p.add_argument(
            "--allow-focus-mismatch",
            action="store_true",
            help=f"Downgrade the zero-focus selection guard to a warning (or ${ENV_ALLOW_FOCUS_MISMATCH}=1).",
        )
        p.add_argument(
            "--max-depth",
            type=int,
            default=DEFAULT_MAX_DEPTH,
            help=f"Max directory depth for vault discovery (default: {DEFAULT_MAX_DEPTH}).",
        )

    def add_lock_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--lock-timeout-seconds",
            type=float,
            default=DEFAULT_LOCK_TIMEOUT_SECONDS,
            help=f"Max time to wait for the destination lock (default: {DEFAULT_LOCK_TIMEOUT_SECONDS}).",
        )
        p.add_argument(
            "--lock-stale-seconds",
            type=float,
            default=DEFAULT_LOCK_STALE_SECONDS,
            help=f"Lock age threshold for stale recovery (default: {DEFAULT_LOCK_STALE_SECONDS}).",
        )
        p.add_argument(
            "--force-unlock",
            action="store_true",
            help="Force lock takeover if a lock file exists.",
        )

    def add_format_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument("--format", choices=["text", "json"], default="text", help="Output format (default: text).")

    p_sync = sub.add_parser("sync", help="Select, copy, repair and stamp the site_export bundle.")
    add_site_args(p_sync)
    add_source_args(p_sync)
    add_selection_args(p_sync)
    add_lock_args(p_sync)
    add_format_arg(p_sync)
    p_sync.set_defaults(func=sync_project, log_prefix="sync")

    p_candidates = sub.add_parser("candidates", help="List ranked bundle candidates without copying.")
    add_site_args(p_candidates)
    add_source_args(p_candidates)
    add_selection_args(p_candidates)
    add_format_arg(p_candidates)
    p_candidates.set_defaults(func=candidates_project, log_prefix="sync")

    p_verify = sub.add_parser("verify", help="Verify destination report counts and optional requirements.")
    add_site_args(p_verify)
    p_verify.add_argument("--focus", help="Comma-separated focus tracks (default: stamp focus tracks).")
    p_verify.add_argument("--require-nonzero-focus", action="store_true", help="Fail when every focus track is zero.")
    p_verify.add_argument("--require-dashboards", action="store_true", help="Fail when no dashboards file is present.")
    p_verify.add_argument("--min-total-reports", type=int, help="Fail when total reports are below this value.")
    add_format_arg(p_verify)
    p_verify.set_defaults(func=verify_project, log_prefix="verify")

    p_contract = sub.add_parser(
        "contract-check",
        help="Check referential integrity between indices, artifacts, payloads and evidence.",
    )
    add_site_args(p_contract)
    add_format_arg(p_contract)
    p_contract.set_defaults(func=contract_check_project, log_prefix="contract")

    p_notes = sub.add_parser("sync-notes", help="Copy framework/product notes from the vault into .context/.")
    p_notes.add_argument("--site-dir", default=".", help="Website project root (default: current directory).")
    add_source_args(p_notes)
    p_notes.add_argument("--notes-dest", help=f"Notes destination (default: <site-dir>/{DEFAULT_NOTES_DEST_REL}).")
    add_format_arg(p_notes)
    p_notes.set_defaults(func=sync_notes_project, log_prefix="sync-notes")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.cmd == "sync":
            with destination_lock(
                dest_dir=resolve_dest_dir(args),
                lock_timeout_seconds=args.lock_timeout_seconds,
                lock_stale_seconds=args.lock_stale_seconds,
                force_unlock=args.force_unlock,
            ):
                return args.func(args)
        return args.func(args)
    except (ValueError, RuntimeError, OSError, zipfile.BadZipFile) as exc:
        return fail(args.log_prefix, str(exc))


if __name__ == "__main__":
    raise SystemExit(main())
