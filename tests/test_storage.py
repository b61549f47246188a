from __future__ import annotations

import base64
from pathlib import Path
from typing import Optional

from gstr2b_automation.storage import (
    build_layout,
    encode_file,
    ensure_layout,
    persist_transfer,
    remove_files,
    resolve_save_name,
)


class _FakeTransfer:
    def __init__(
        self,
        *,
        suggested: str,
        data: bytes = b"xlsx-bytes",
        save_fails: bool = False,
        temp_path: Optional[Path] = None,
    ) -> None:
        self.suggested_filename = suggested
        self.data = data
        self.save_fails = save_fails
        self.temp_path = temp_path
        self.saved_to: list[str] = []

    def save_as(self, path: str) -> None:
        self.saved_to.append(path)
        if self.save_fails:
            raise RuntimeError("target closed")
        Path(path).write_bytes(self.data)

    def path(self) -> Optional[Path]:
        return self.temp_path


def test_layout_is_pure_and_strips_whitespace(tmp_path: Path) -> None:
    args = (tmp_path, "2024 - 2025", " Quarter 1 (Apr - Jun) ", "April", " ACME Traders ")
    a = build_layout(*args)
    b = build_layout(*args)
    assert a == b
    assert str(a.final_path) == str(b.final_path)
    assert a.target_dir == tmp_path / "2024-2025" / "Quarter1(Apr-Jun)" / "April" / "ACME Traders"
    assert a.file_name == "GSTR-2B-2024-2025-Quarter1(Apr-Jun)-April.xlsx"
    # Nothing is created by computing the layout.
    assert not a.year_dir.exists()


def test_layout_without_client_folder(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    assert layout.target_dir == layout.month_dir
    assert [desc.split(" ")[0] for desc, _ in layout.levels()] == ["Base", "Year", "Quarter", "Month"]


def test_ensure_layout_is_idempotent(tmp_path: Path) -> None:
    layout = build_layout(tmp_path / "root", "2024-2025", "Q1", "April", "client")

    first = ensure_layout(layout)
    assert all(created for _, created in first)
    assert layout.target_dir.is_dir()

    second = ensure_layout(layout)
    assert not any(created for _, created in second)
    assert [p for p, _ in first] == [p for p, _ in second]


def test_ensure_layout_only_creates_missing_levels(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    layout.year_dir.mkdir(parents=True)

    created = dict(ensure_layout(layout))
    assert created[layout.root] is False
    assert created[layout.year_dir] is False
    assert created[layout.quarter_dir] is True
    assert created[layout.month_dir] is True


def test_resolve_save_name(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    assert resolve_save_name("27ABCDE1234F1Z5_042024_R2B.xlsx", layout) == "27ABCDE1234F1Z5_042024_R2B.xlsx"
    assert resolve_save_name("download", layout) == layout.file_name
    assert resolve_save_name("", layout) == layout.file_name
    assert resolve_save_name("../../evil.xlsx", layout) == "evil.xlsx"


def test_persist_copies_to_canonical_path(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    ensure_layout(layout)
    transfer = _FakeTransfer(suggested="R2B_042024.xlsx")

    persisted = persist_transfer(transfer, layout)

    assert persisted is not None
    assert persisted.path == layout.final_path
    assert persisted.saved_path == layout.target_dir / "R2B_042024.xlsx"
    assert layout.final_path.read_bytes() == b"xlsx-bytes"
    assert len(persisted.all_paths()) == 2


def test_persist_with_canonical_name_writes_once(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    ensure_layout(layout)

    persisted = persist_transfer(_FakeTransfer(suggested="blob"), layout)

    assert persisted is not None
    assert persisted.all_paths() == [layout.final_path]


def test_persist_falls_back_to_stream_copy(tmp_path: Path) -> None:
    layout = build_layout(tmp_path / "out", "2024-2025", "Q1", "April")
    ensure_layout(layout)
    temp = tmp_path / "playwright-tmp"
    temp.write_bytes(b"streamed")

    persisted = persist_transfer(_FakeTransfer(suggested="x.xlsx", save_fails=True, temp_path=temp), layout)

    assert persisted is not None
    assert layout.final_path.read_bytes() == b"streamed"


def test_persist_returns_none_when_nothing_saved(tmp_path: Path) -> None:
    layout = build_layout(tmp_path, "2024-2025", "Q1", "April")
    ensure_layout(layout)
    assert persist_transfer(_FakeTransfer(suggested="x.xlsx", save_fails=True), layout) is None


def test_encode_and_remove(tmp_path: Path) -> None:
    p = tmp_path / "f.xlsx"
    p.write_bytes(b"PK\x03\x04")
    assert base64.b64decode(encode_file(p)) == b"PK\x03\x04"

    assert remove_files([p, tmp_path / "already-gone.xlsx"]) is True
    assert not p.exists()
