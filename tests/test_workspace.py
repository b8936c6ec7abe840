"""Tests for plain-copy workspaces and tree syncing."""

from __future__ import annotations

from pathlib import Path

import pytest

from duet.errors import WorktreeExistsError
from duet.workspace import WorktreeManager, copy_tree, sync_tree

pytestmark = pytest.mark.integration


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_copy_tree_skips_housekeeping_directories(tmp_path: Path) -> None:
    src = tmp_path / "src"
    _write(src / "main.py", "print('x')\n")
    _write(src / "pkg" / "node_modules" / "dep.js", "dep\n")
    _write(src / ".git" / "HEAD", "ref\n")
    _write(src / ".orchestrator" / "config.json", "{}\n")

    dest = tmp_path / "dest"
    copy_tree(src, dest)

    assert (dest / "main.py").read_text(encoding="utf-8") == "print('x')\n"
    assert not (dest / ".git").exists()
    assert not (dest / ".orchestrator").exists()
    assert not (dest / "pkg" / "node_modules").exists()


def test_sync_tree_mirrors_source_and_keeps_excluded_entries(tmp_path: Path) -> None:
    source, dest = tmp_path / "source", tmp_path / "dest"
    _write(source / "a.txt", "new a\n")
    _write(source / "dir" / "b.txt", "b\n")
    _write(source / "swap", "now a file\n")
    _write(dest / "a.txt", "old a\n")
    _write(dest / "stale" / "deep" / "c.txt", "c\n")
    _write(dest / "swap" / "inner.txt", "was a directory\n")
    _write(dest / ".orchestrator" / "keep.json", "{}\n")

    sync_tree(source, dest)

    assert (dest / "a.txt").read_text(encoding="utf-8") == "new a\n"
    assert (dest / "dir" / "b.txt").is_file()
    assert (dest / "swap").read_text(encoding="utf-8") == "now a file\n"
    assert not (dest / "stale").exists()
    assert (dest / ".orchestrator" / "keep.json").is_file()


def test_acquire_refuses_existing_destination(tmp_path: Path) -> None:
    base = tmp_path / "base"
    _write(base / "file.txt", "x\n")
    manager = WorktreeManager(vcs=False)

    first = manager.acquire(base, tmp_path / "wt" / "codex")
    assert (first / "file.txt").is_file()

    with pytest.raises(WorktreeExistsError):
        manager.acquire(base, tmp_path / "wt" / "codex")
    with pytest.raises(WorktreeExistsError):
        manager.clone(first, tmp_path / "wt" / "codex")


def test_clone_captures_current_workspace_state(tmp_path: Path) -> None:
    base = tmp_path / "base"
    _write(base / "file.txt", "original\n")
    manager = WorktreeManager(vcs=False)
    driver = manager.acquire(base, tmp_path / "driver")
    (driver / "file.txt").write_text("driver edit\n", encoding="utf-8")

    navigator = manager.clone(driver, tmp_path / "navigator")

    assert (navigator / "file.txt").read_text(encoding="utf-8") == "driver edit\n"
    assert (base / "file.txt").read_text(encoding="utf-8") == "original\n"
