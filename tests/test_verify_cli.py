from __future__ import annotations

import json
import zipfile
from pathlib import Path

from conftest import report_ids, run_sync, write_bundle, write_json
from site_export_sync.notes import DEFAULT_NOTES_DEST_REL, NOTE_PATHS, VAULT_ZIP_PREFIX


def synced_site(tmp_path: Path, site_dir: Path) -> Path:
    vault = tmp_path / "vault"
    export_root = write_bundle(
        vault / "Clarum" / "09 - Publishing" / "site_export" / "v1",
        report_ids("critical_minerals", 2) + report_ids("maritime_logistics", 1),
        evidence_refs=["ev-1"],
    )
    write_json(export_root / "dashboards" / "deltas_7c.v1.json", {})
    run_sync("sync", "--site-dir", str(site_dir), "--vault-dir", str(vault))
    return site_dir


def test_verify_passes_after_sync(tmp_path: Path, site_dir: Path) -> None:
    synced_site(tmp_path, site_dir)
    proc = run_sync(
        "verify",
        "--site-dir",
        str(site_dir),
        "--require-nonzero-focus",
        "--require-dashboards",
        "--min-total-reports",
        "3",
    )
    assert "[verify] total_reports=3" in proc.stdout
    assert "[verify] critical_minerals=2" in proc.stdout
    assert "[verify] stamp_mode=vault_dir" in proc.stdout
    assert "[verify] stamp_selected_candidate_reason=only_candidate" in proc.stdout
    assert "dashboards_present=1" in proc.stdout
    assert "ERROR" not in proc.stderr


def test_verify_json_reports_failures(tmp_path: Path, site_dir: Path) -> None:
    synced_site(tmp_path, site_dir)
    proc = run_sync(
        "verify",
        "--site-dir",
        str(site_dir),
        "--min-total-reports",
        "50",
        "--format",
        "json",
        expect_code=1,
    )
    report = json.loads(proc.stdout)
    assert report["status"] == "fail"
    assert report["total_reports"] == 3
    assert report["focus_counts"] == {"critical_minerals": 2, "maritime_logistics": 1}
    assert report["stamp"]["mode"] == "vault_dir"
    assert report["stamp_warnings"] == []
    assert "[verify] ERROR: total_reports 3 is below required minimum 50." in proc.stderr


def test_verify_focus_from_environment(tmp_path: Path, site_dir: Path) -> None:
    synced_site(tmp_path, site_dir)
    proc = run_sync(
        "verify",
        "--site-dir",
        str(site_dir),
        "--require-nonzero-focus",
        env={"SYNC_EXPECT_TRACKS": "sanctions_controls"},
        expect_code=1,
    )
    assert "All focus tracks are zero: sanctions_controls" in proc.stderr


def test_verify_rejects_negative_minimum_and_missing_bundle(site_dir: Path) -> None:
    proc = run_sync("verify", "--site-dir", str(site_dir), "--min-total-reports", "-1", expect_code=1)
    assert "Invalid --min-total-reports value: -1" in proc.stderr
    proc = run_sync("verify", "--site-dir", str(site_dir), expect_code=1)
    assert "[verify] ERROR: Missing reports index" in proc.stderr


def test_contract_check_passes_after_sync(tmp_path: Path, site_dir: Path) -> None:
    synced_site(tmp_path, site_dir)
    proc = run_sync("contract-check", "--site-dir", str(site_dir), "--format", "json")
    payload = json.loads(proc.stdout)
    assert payload["status"] == "pass"
    assert payload["bundle_missing_message"] is None


def test_contract_check_fails_on_dangling_evidence(tmp_path: Path) -> None:
    bundle = tmp_path / "bundle"
    [rid] = report_ids("other", 1)
    write_bundle(bundle, [rid], evidence_ids=[], evidence_refs=["ev-lost"])
    proc = run_sync("contract-check", "--dest-dir", str(bundle), expect_code=1)
    assert "[contract] status=fail" in proc.stdout
    assert "site_export evidence contract failed." in proc.stderr
    assert f"- {rid} -> ev-lost" in proc.stderr


def test_contract_check_missing_bundle(site_dir: Path) -> None:
    proc = run_sync("contract-check", "--site-dir", str(site_dir), expect_code=1)
    assert "Missing site_export bundle" in proc.stderr


def test_sync_notes_from_zip(tmp_path: Path, site_dir: Path) -> None:
    archive_path = tmp_path / "vault.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        for rel in NOTE_PATHS:
            archive.writestr(VAULT_ZIP_PREFIX + rel, f"# {rel}\n")
    proc = run_sync("sync-notes", "--site-dir", str(site_dir), "--vault-zip", str(archive_path))
    assert f"[sync-notes] Wrote {len(NOTE_PATHS)} notes." in proc.stdout
    assert "[sync-notes] Source: vault_zip" in proc.stdout
    for rel in NOTE_PATHS:
        assert (site_dir / DEFAULT_NOTES_DEST_REL / rel).is_file()


def test_sync_notes_without_sources_fails(tmp_path: Path, site_dir: Path) -> None:
    proc = run_sync("sync-notes", "--site-dir", str(site_dir), "--vault-dir", str(tmp_path / "nothing"), expect_code=1)
    assert "[sync-notes] ERROR: Missing vault zip" in proc.stderr
