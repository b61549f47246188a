from __future__ import annotations

import zipfile
from pathlib import Path

from gstr2b_automation.util.debug_bundle import create_debug_bundle


def test_create_debug_bundle_includes_debug_samples_and_log(tmp_path: Path) -> None:
    debug_dir = tmp_path / "debug"
    debug_dir.mkdir()
    (debug_dir / "step_01_login_page_loaded.png").write_bytes(b"png")
    (debug_dir / "login_attempt.html").write_text("<html/>", encoding="utf-8")
    (debug_dir / ".env").write_text("GST_PASSWORD=secret", encoding="utf-8")

    samples = tmp_path / "samples"
    samples.mkdir()
    (samples / "captcha-1.png").write_bytes(b"cap")

    log_file = tmp_path / "automation.log"
    log_file.write_text("hello", encoding="utf-8")

    out = create_debug_bundle(
        debug_dir=str(debug_dir),
        log_file=str(log_file),
        out_dir=str(tmp_path),
        label="DOWNLOAD_FAILED",
        samples_dir=str(samples),
    )
    assert out.exists()
    assert out.suffix == ".zip"
    assert out.name.startswith("debug_bundle_download_failed_")

    with zipfile.ZipFile(out, "r") as z:
        names = set(z.namelist())
        assert "automation.log" in names
        assert "debug/step_01_login_page_loaded.png" in names
        assert "debug/login_attempt.html" in names
        assert "captcha_samples/captcha-1.png" in names
        assert "debug/.env" not in names


def test_create_debug_bundle_tolerates_missing_inputs(tmp_path: Path) -> None:
    out = create_debug_bundle(
        debug_dir=str(tmp_path / "missing"),
        log_file=str(tmp_path / "missing.log"),
        out_dir=str(tmp_path / "out"),
    )
    with zipfile.ZipFile(out, "r") as z:
        assert z.namelist() == []
