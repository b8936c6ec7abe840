"""Tests for resilient file I/O helpers used by the artifact store."""

from __future__ import annotations

from pathlib import Path

import pytest

import duet.file_io as file_io

pytestmark = pytest.mark.unit


def test_path_lock_reuses_same_lock_for_resolved_aliases(tmp_path: Path) -> None:
    primary = tmp_path / "runs" / "summary.md"
    alias = tmp_path / "runs" / ".." / "runs" / "summary.md"

    assert file_io._path_lock(primary) is file_io._path_lock(alias)


def test_replace_file_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.txt"
    dst = tmp_path / "dst.txt"
    src.write_text("new-content", encoding="utf-8")
    dst.write_text("old-content", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and Path(target) == dst and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io, "_ATOMIC_REPLACE_RETRY_SECONDS", 0)

    file_io._replace_file_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "new-content"


def test_atomic_write_text_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "out.json"
    file_io.atomic_write_text(target, "{}\n")

    assert target.read_text(encoding="utf-8") == "{}\n"
    assert [p.name for p in target.parent.iterdir()] == ["out.json"]


def test_read_text_or_none(tmp_path: Path) -> None:
    assert file_io.read_text_or_none(tmp_path / "missing.txt") is None
    file_io.append_text(tmp_path / "log.txt", "a")
    file_io.append_text(tmp_path / "log.txt", "b")
    assert file_io.read_text_or_none(tmp_path / "log.txt") == "ab"


def test_read_jsonl_skips_blank_and_malformed_lines(tmp_path: Path) -> None:
    log = tmp_path / "memory.jsonl"
    file_io.append_jsonl(log, {"text": "first"})
    file_io.append_text(log, "\nnot json\n[1, 2]\n")
    file_io.append_jsonl(log, {"text": "second"})

    assert file_io.read_jsonl(log) == [{"text": "first"}, {"text": "second"}]
    assert file_io.read_jsonl(tmp_path / "missing.jsonl") == []
