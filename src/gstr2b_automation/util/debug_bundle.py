from __future__ import annotations

import re
import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


# Never bundled even when they sit inside a collected directory.
_SECRET_NAMES = {".env", "config.yaml", "config.yml"}


def _safe_label(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", (value or "").strip()).strip("_").lower()[:40]


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    label: str = "",
    samples_dir: Optional[str] = None,
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Zip the portal debug artifacts (screenshots, HTML, rendered text), captcha samples and the
    log file into one shareable archive. Env/config files are skipped.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    lab = _safe_label(label)
    out_path = out_root / f"debug_bundle{'_' + lab if lab else ''}_{stamp}.zip"

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if file_path.name in _SECRET_NAMES:
            return
        try:
            if file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # A screenshot may be replaced while we bundle.
            return

    def _add_tree(z: zipfile.ZipFile, root: Path, prefix: Path) -> None:
        if not root.is_dir():
            return
        for p in sorted(root.rglob("*")):
            if p.is_file():
                _add_file(z, p, arcname=str(prefix / p.relative_to(root)))

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        log = Path(log_file)
        _add_file(z, log, arcname=log.name)
        _add_tree(z, Path(debug_dir), Path("debug"))
        if samples_dir:
            _add_tree(z, Path(samples_dir), Path("captcha_samples"))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add_file(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                _add_tree(z, p, Path("extra") / p.name)

    return out_path
