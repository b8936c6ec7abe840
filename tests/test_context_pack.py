"""Tests for the shared context pack written at run start."""

from __future__ import annotations

from pathlib import Path

import pytest

from duet.config import parse_config
from duet.context_pack import build_context_pack, list_repo_files, summarize_repo
from duet.memory import MemoryEntry
from duet.schemas import RunContext
from duet.store import RunStore

pytestmark = pytest.mark.unit


def _config(**context):
    return parse_config(
        {"agents": {"codex": {"command": "codex"}, "claude": {"command": "claude"}}, "context": context}
    )


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "a.py").write_text("a = 1\n", encoding="utf-8")
    (root / "src" / "b.py").write_text("b = 2\n", encoding="utf-8")
    (root / "README.md").write_text("# Title\n" + "x" * 500, encoding="utf-8")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("dep\n", encoding="utf-8")
    return root


def test_repo_map_skips_housekeeping(tmp_path: Path) -> None:
    repo_map = list_repo_files(_project(tmp_path))
    assert [entry["path"] for entry in repo_map] == ["README.md", "src/a.py", "src/b.py"]
    assert summarize_repo(repo_map) == "Files: 3. Top-level: src: 2, README.md: 1"


def test_build_context_pack_writes_artifacts_and_summary(tmp_path: Path) -> None:
    root = _project(tmp_path)
    store = RunStore(tmp_path / "run")
    run = RunContext(session_id="s", run_id="r", task="Add CSV export", branch_prompt="Keep it small")
    memory = [MemoryEntry(id="m1", type="summary", text="Earlier run added JSON export")]

    shared = build_context_pack(
        root,
        store,
        run,
        _config(include_files=["README.md", "missing.txt"], max_excerpt_chars=50),
        memory,
        vcs=False,
    )

    assert "Task: Add CSV export" in shared.summary
    assert "Branch prompt: Keep it small" in shared.summary
    assert "- summary: Earlier run added JSON export" in shared.summary
    assert "- README.md" in shared.summary
    assert shared.memory == memory
    assert store.get_json("context", "repo_map.json")[0]["path"] == "README.md"
    excerpt = store.get_text("context", "key_files", "README.md") or ""
    assert excerpt.startswith("# Title") and excerpt.endswith("...") and len(excerpt) == 53
    assert store.get_text("context", "context.md") == shared.summary
    assert store.exists("context", "memory.json")
    assert not store.exists("context", "recent_commits.txt")


def test_summary_without_memory_or_key_files(tmp_path: Path) -> None:
    root = tmp_path / "empty"
    root.mkdir()
    store = RunStore(tmp_path / "run")
    run = RunContext(session_id="s", run_id="r", task="t")

    shared = build_context_pack(root, store, run, _config(include_files=[]), [], vcs=False)

    assert "Memory highlights: none" in shared.summary
    assert "Key files: none" in shared.summary
    assert not store.exists("context", "memory.json")


def test_key_files_sharing_a_stored_name_are_written_once(tmp_path: Path) -> None:
    root = tmp_path / "project"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "a.md").write_text("nested doc\n", encoding="utf-8")
    (root / "docs_a.md").write_text("flat doc\n", encoding="utf-8")
    store = RunStore(tmp_path / "run")
    run = RunContext(session_id="s", run_id="r", task="t")

    shared = build_context_pack(
        root,
        store,
        run,
        _config(include_files=["docs/a.md", "docs/a.md", "docs_a.md"]),
        [],
        vcs=False,
    )

    assert store.get_text("context", "key_files", "docs_a.md") == "nested doc\n"
    assert shared.summary.count("- docs/a.md") == 1
    assert "- docs_a.md" not in shared.summary
