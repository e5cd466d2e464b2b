from __future__ import annotations

import json
import os
import time
from pathlib import Path

from conftest import load_json, report_ids, run_sync, write_bundle, write_json, zip_directory


PUBLISHING_REL = Path("Clarum") / "09 - Publishing" / "site_export" / "v1"
STAMP_REL = Path("_meta") / "source_stamp.json"


def make_vault(tmp_path: Path) -> tuple[Path, Path]:
    vault = tmp_path / "vault"
    export_root = write_bundle(
        vault / PUBLISHING_REL,
        report_ids("critical_minerals", 3) + report_ids("other", 2),
        evidence_refs=["ev-1"],
    )
    write_json(vault / "Clarum" / "09 - Publishing" / "_machine" / "dashboards" / "index.dashboards.v1.json", {})
    return vault, export_root


def make_mismatch_vault(tmp_path: Path) -> tuple[Path, Path, Path]:
    """Bundle `a` outscores bundle `b` (30010 vs 21410) but has no focus-track reports."""
    vault = tmp_path / "vault"
    big = write_bundle(vault / "a" / "site_export" / "v1", report_ids("other", 30), evidence_refs=["ev-1"])
    focused = write_bundle(
        vault / "b" / "site_export" / "v1",
        report_ids("critical_minerals", 4) + report_ids("other", 17),
        evidence_refs=["ev-1"],
    )
    return vault, big, focused


def warning_codes(stamp: dict) -> list[str]:
    return [w["code"] for w in stamp["warnings"]]


def test_sync_from_vault_dir_writes_bundle_and_stamp(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, export_root = make_vault(tmp_path)
    proc = run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--format", "json")
    stamp = json.loads(proc.stdout)

    assert stamp == load_json(dest_dir / STAMP_REL)
    assert stamp["version"] == "v1"
    assert stamp["mode"] == "vault_dir"
    assert stamp["export_root"] == str(export_root.resolve())
    assert stamp["candidate_count"] == 1
    assert stamp["selected_candidate_reason"] == "only_candidate"
    assert stamp["selected_candidate_score"] == 5310
    assert stamp["focus_tracks"] == ["critical_minerals", "maritime_logistics"]
    assert stamp["min_reports"] == 1
    assert stamp["source_total_reports"] == 5
    assert stamp["destination_total_reports"] == 5
    assert stamp["destination_track_counts"]["critical_minerals"] == 3
    assert stamp["destination_track_counts"]["other"] == 2
    assert stamp["files_copied"] > 0
    assert stamp["dashboards"]["mode"] == "copied"
    assert stamp["dashboards"]["files_copied"] == ["index.dashboards.v1.json"]
    assert warning_codes(stamp) == ["DASHBOARDS_PARTIAL"]

    assert (dest_dir / "index" / "index.reports.v1.json").is_file()
    assert (dest_dir / "dashboards" / "index.dashboards.v1.json").is_file()
    assert not (dest_dir.parent / ".site_export.v1.lock").exists()


def test_sync_text_output_and_destination_reset(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, _ = make_vault(tmp_path)
    stale = dest_dir / "stale.json"
    write_json(stale, {})
    proc = run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault))
    assert "[sync] mode=vault_dir" in proc.stdout
    assert "[sync] total_reports=5" in proc.stdout
    assert "[sync] focus critical_minerals=3" in proc.stdout
    assert "[sync] WARN: DASHBOARDS_PARTIAL" in proc.stderr
    assert not stale.exists()


def test_vault_dir_from_environment(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, _ = make_vault(tmp_path)
    run_sync("sync", "--site-dir", str(site_dir), env={"CLARUM_VAULT_DIR": str(vault)})
    assert load_json(dest_dir / STAMP_REL)["mode"] == "vault_dir"


def test_zero_focus_selection_is_fatal(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, big, focused = make_mismatch_vault(tmp_path)
    proc = run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault), expect_code=1)
    assert "[sync] ERROR:" in proc.stderr
    assert "zero focus-track reports" in proc.stderr
    assert str(focused.resolve()) in proc.stderr
    assert "CLARUM_EXPORT_ROOT" in proc.stderr
    assert "score=30010" in proc.stderr
    assert "score=21410" in proc.stderr
    assert not dest_dir.exists()


def test_focus_mismatch_bypass_records_warning(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, big, focused = make_mismatch_vault(tmp_path)
    run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(vault),
        env={"CLARUM_ALLOW_FOCUS_MISMATCH": "yes"},
    )
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["export_root"] == str(big.resolve())
    assert stamp["selected_candidate_reason"] == "best_score"
    assert stamp["selected_candidate_score"] == 30010
    assert "FOCUS_MISMATCH_BYPASSED" in warning_codes(stamp)
    assert "FOCUS_TRACKS_ALL_ZERO" in warning_codes(stamp)
    bypass = next(w for w in stamp["warnings"] if w["code"] == "FOCUS_MISMATCH_BYPASSED")
    assert bypass["details"]["suggested_root"] == str(focused.resolve())


def test_explicit_export_root_bypasses_scoring(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, big, focused = make_mismatch_vault(tmp_path)
    run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(vault),
        env={"CLARUM_EXPORT_ROOT": str(focused)},
    )
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["export_root"] == str(focused.resolve())
    assert stamp["selected_candidate_reason"] == "explicit_override"
    assert stamp["destination_track_counts"]["critical_minerals"] == 4


def test_explicit_export_root_must_be_a_candidate(tmp_path: Path, site_dir: Path) -> None:
    vault, _, _ = make_mismatch_vault(tmp_path)
    proc = run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(vault),
        "--export-root",
        str(tmp_path / "elsewhere"),
        expect_code=1,
    )
    assert "Explicit export root not found among candidates" in proc.stderr


def test_below_minimum_candidates_are_listed_as_invalid(tmp_path: Path, site_dir: Path) -> None:
    vault, _ = make_vault(tmp_path)
    proc = run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(vault),
        "--min-reports",
        "10",
        expect_code=1,
    )
    assert "No valid site_export candidates (min_reports=10)" in proc.stderr
    assert "below minimum reports (5 < 10)" in proc.stderr


def test_zip_mode_skips_dashboards(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    bundle = write_bundle(tmp_path / "bundle", report_ids("maritime_logistics", 2), evidence_refs=["ev-1"])
    prefix = "13 - Lattice Labs/Clarum/09 - Publishing/site_export/v1/"
    archive_path = zip_directory(bundle, tmp_path / "vault.zip", prefix)

    run_sync("sync", "--site-dir", str(site_dir), "--vault-zip", str(archive_path))
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["mode"] == "zip"
    assert stamp["export_root"] == f"{archive_path.resolve()}::{prefix}"
    assert stamp["dashboards"]["mode"] == "skipped"
    assert warning_codes(stamp) == ["DASHBOARDS_SKIPPED_ZIP"]
    assert stamp["destination_track_counts"]["maritime_logistics"] == 2
    assert (dest_dir / "evidence" / "ev-1.md").is_file()


def test_default_zip_lives_in_site_dir(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    bundle = write_bundle(tmp_path / "bundle", report_ids("critical_minerals", 1))
    zip_directory(bundle, site_dir / "13 - Lattice Labs.zip", "13 - Lattice Labs/site_export/v1/")
    run_sync("sync", "--site-dir", str(site_dir))
    assert load_json(dest_dir / STAMP_REL)["mode"] == "zip"


def test_zip_fallback_requires_opt_in(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    empty_vault = tmp_path / "vault"
    empty_vault.mkdir()
    bundle = write_bundle(tmp_path / "bundle", report_ids("critical_minerals", 2))
    archive_path = zip_directory(bundle, tmp_path / "vault.zip", "vault/site_export/v1/")

    proc = run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(empty_vault),
        "--vault-zip",
        str(archive_path),
        expect_code=1,
    )
    assert "No site_export candidates discovered (mode=vault_dir)" in proc.stderr

    run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(empty_vault),
        "--vault-zip",
        str(archive_path),
        "--allow-zip-fallback",
    )
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["mode"] == "zip_fallback"
    assert warning_codes(stamp) == ["ZIP_FALLBACK_USED", "DASHBOARDS_SKIPPED_ZIP"]


def test_corrupt_zip_is_fatal(tmp_path: Path, site_dir: Path) -> None:
    bogus = tmp_path / "vault.zip"
    bogus.write_bytes(b"garbage")
    proc = run_sync("sync", "--site-dir", str(site_dir), "--vault-zip", str(bogus), expect_code=1)
    assert "[sync] ERROR:" in proc.stderr


def test_sync_repairs_legacy_ids_and_missing_payloads(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault = tmp_path / "vault"
    ids = report_ids("critical_minerals", 2)
    export_root = write_bundle(vault / "site_export" / "v1", ids, with_payloads=False)
    index_path = export_root / "index" / "index.reports.v1.json"
    index = load_json(index_path)
    for entry in index["reports"]:
        del entry["report_id"]
    write_json(index_path, index)

    run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault))
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["repair"]["report_id_aliases_added"] == 2
    assert stamp["repair"]["payloads_created"] == 2
    assert "DANGLING_PAYLOADS" not in warning_codes(stamp)
    for rid in ids:
        payload = load_json(dest_dir / "index" / f"{rid}.payload.v1.json")
        assert payload["meta"]["backfilled"] is True
    assert all("report_id" in e for e in load_json(dest_dir / "index" / "index.reports.v1.json")["reports"])
    assert "report_id" not in load_json(index_path)["reports"][0]


def test_held_lock_times_out_and_force_unlock_recovers(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, _ = make_vault(tmp_path)
    lock_path = dest_dir.parent / ".site_export.v1.lock"
    write_json(lock_path, {"token": "other", "pid": os.getpid(), "created_epoch": time.time(), "command": "sync"})

    proc = run_sync(
        "sync",
        "--site-dir",
        str(site_dir),
        "--vault-dir",
        str(vault),
        "--lock-timeout-seconds",
        "0.2",
        expect_code=1,
    )
    assert "lock_timeout" in proc.stderr
    assert lock_path.exists()

    run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--force-unlock")
    assert not lock_path.exists()
    assert (dest_dir / STAMP_REL).is_file()


def test_candidates_lists_ranked_roots_without_copying(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, big, focused = make_mismatch_vault(tmp_path)
    proc = run_sync("candidates", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--format", "json")
    report = json.loads(proc.stdout)
    assert report["mode"] == "vault_dir"
    assert [c["root"] for c in report["candidates"]] == [str(big.resolve()), str(focused.resolve())]
    assert [c["score"] for c in report["candidates"]] == [30010, 21410]
    assert report["selection"]["reason"] == "best_score"
    assert report["selection"]["better_focus_root"] == str(focused.resolve())
    assert not dest_dir.exists()


def test_explicit_export_root_skips_focus_guard(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, big, _ = make_mismatch_vault(tmp_path)
    run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--export-root", str(big))
    stamp = load_json(dest_dir / STAMP_REL)
    assert stamp["export_root"] == str(big.resolve())
    assert stamp["selected_candidate_reason"] == "explicit_override"
    assert "FOCUS_MISMATCH_BYPASSED" not in warning_codes(stamp)
    assert "FOCUS_TRACKS_ALL_ZERO" in warning_codes(stamp)

    proc = run_sync(
        "candidates", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--export-root", str(big), "--format", "json"
    )
    selection = json.loads(proc.stdout)["selection"]
    assert selection["reason"] == "explicit_override"
    assert selection["better_focus_root"] is None


def test_max_depth_bounds_discovery(tmp_path: Path, site_dir: Path) -> None:
    vault = tmp_path / "vault"
    nested = write_bundle(vault / "x" / "y" / "z", report_ids("other", 1))
    args = ("candidates", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--format", "json")

    proc = run_sync(*args, "--max-depth", "0", expect_code=1)
    assert json.loads(proc.stdout)["candidates"] == []

    proc = run_sync(*args, "--max-depth", "3")
    assert [c["root"] for c in json.loads(proc.stdout)["candidates"]] == [str(nested.resolve())]


def test_stale_lock_is_reclaimed(tmp_path: Path, site_dir: Path, dest_dir: Path) -> None:
    vault, _ = make_vault(tmp_path)
    lock_path = dest_dir.parent / ".site_export.v1.lock"
    write_json(lock_path, {"token": "abandoned", "pid": 999999, "created_at": "2020-01-01T00:00:00Z"})
    old = time.time() - 3600
    os.utime(lock_path, (old, old))

    run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault), "--lock-timeout-seconds", "1")
    assert not lock_path.exists()
    assert (dest_dir / STAMP_REL).is_file()
