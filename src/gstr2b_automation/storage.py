from __future__ import annotations

import base64
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)

DOCUMENT_PREFIX = "GSTR-2B"
CANONICAL_EXTENSION = ".xlsx"

_WS_RE = re.compile(r"\s+")


def _period_part(value: str) -> str:
    return _WS_RE.sub("", value or "")


@dataclass(frozen=True)
class StorageLayout:
    """
    Canonical on-disk location for one period/client: `root/FY/Q/M[/client]/GSTR-2B-FY-Q-M.xlsx`.
    """

    root: Path
    year_dir: Path
    quarter_dir: Path
    month_dir: Path
    target_dir: Path
    base_name: str
    extension: str = CANONICAL_EXTENSION

    @property
    def file_name(self) -> str:
        return f"{self.base_name}{self.extension}"

    @property
    def final_path(self) -> Path:
        return self.target_dir / self.file_name

    def levels(self) -> list[tuple[str, Path]]:
        out = [
            ("Base storage", self.root),
            (f"Year folder ({self.year_dir.name})", self.year_dir),
            (f"Quarter folder ({self.quarter_dir.name})", self.quarter_dir),
            (f"Month folder ({self.month_dir.name})", self.month_dir),
        ]
        if self.target_dir != self.month_dir:
            out.append((f"Client folder ({self.target_dir.name})", self.target_dir))
        return out


def build_layout(
    storage_root: Union[str, Path],
    fiscal_year: str,
    quarter: str,
    month: str,
    client_folder: str = "",
    *,
    document_prefix: str = DOCUMENT_PREFIX,
    extension: str = CANONICAL_EXTENSION,
) -> StorageLayout:
    """
    Pure: the same inputs always give the same layout; nothing on disk is consulted.
    """
    fy, q, m = _period_part(fiscal_year), _period_part(quarter), _period_part(month)
    root = Path(str(storage_root).strip())
    year_dir = root / fy
    quarter_dir = year_dir / q
    month_dir = quarter_dir / m
    client = (client_folder or "").strip()
    target = month_dir / client if client else month_dir
    return StorageLayout(
        root=root,
        year_dir=year_dir,
        quarter_dir=quarter_dir,
        month_dir=month_dir,
        target_dir=target,
        base_name=f"{document_prefix}-{fy}-{q}-{m}",
        extension=extension,
    )


def ensure_layout(layout: StorageLayout) -> list[tuple[Path, bool]]:
    """
    Create only the missing directory levels. Returns (path, created) per level; safe to repeat.
    """
    out: list[tuple[Path, bool]] = []
    for desc, path in layout.levels():
        if path.is_dir():
            logger.info("  %s: already exists - %s", desc, path)
            out.append((path, False))
            continue
        path.mkdir(parents=True, exist_ok=True)
        logger.info("  %s: created - %s", desc, path)
        out.append((path, True))
    return out


def resolve_save_name(suggested: Optional[str], layout: StorageLayout) -> str:
    name = Path((suggested or "").strip()).name
    if not name.lower().endswith(layout.extension.lower()):
        return layout.file_name
    return name


@dataclass(frozen=True)
class PersistedFile:
    path: Path
    # Where the transfer was first written when the portal's suggested name differs from ours.
    saved_path: Path

    def all_paths(self) -> list[Path]:
        if self.saved_path == self.path:
            return [self.path]
        return [self.path, self.saved_path]


def _copy_stream(src: Path, dest: Path, *, chunk_size: int = 64 * 1024) -> None:
    with src.open("rb") as fin, dest.open("wb") as fout:
        while True:
            chunk = fin.read(chunk_size)
            if not chunk:
                break
            fout.write(chunk)


def persist_transfer(transfer: Any, layout: StorageLayout) -> Optional[PersistedFile]:
    """
    Save a captured file transfer (Playwright `Download`) into the layout.

    `save_as` is the primary mechanism; if it fails, the transfer's temporary file is streamed
    across by hand. Returns None when neither produced a file.
    """
    try:
        suggested = transfer.suggested_filename
    except Exception:
        suggested = ""
    save_path = layout.target_dir / resolve_save_name(suggested, layout)

    try:
        transfer.save_as(str(save_path))
    except Exception as e:
        logger.warning("save_as failed, trying stream copy: %s", e)

    if not save_path.exists():
        try:
            src = transfer.path()
            if src:
                _copy_stream(Path(src), save_path)
        except Exception as e:
            logger.warning("Stream fallback failed: %s", e)

    if not save_path.exists():
        return None

    final_path = layout.final_path
    if save_path != final_path:
        try:
            shutil.copyfile(save_path, final_path)
        except OSError as e:
            logger.warning("Could not copy %s to canonical path %s: %s", save_path, final_path, e)
            return PersistedFile(path=save_path, saved_path=save_path)

    logger.info("Download saved at %s", final_path)
    return PersistedFile(path=final_path, saved_path=save_path)


def encode_file(path: Union[str, Path]) -> str:
    return base64.b64encode(Path(path).read_bytes()).decode("ascii")


def remove_files(paths: list[Path]) -> bool:
    ok = True
    for p in paths:
        try:
            p.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Cleanup failed for %s: %s", p, e)
            ok = False
    return ok
