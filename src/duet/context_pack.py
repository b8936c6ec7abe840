"""Shared context pack: repo inventory, recent commits, key files and memory."""

from __future__ import annotations

import json
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from duet import git_tools
from duet.config import OrchestratorConfig
from duet.memory import MemoryEntry
from duet.schemas import RunContext
from duet.store import RunStore
from duet.workspace import DEFAULT_EXCLUDES

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass
class SharedContext:
    """Summary text shared by every prompt of a run."""

    summary: str
    memory: list[MemoryEntry] = field(default_factory=list)


def truncate_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars] + "..."


def sanitize_file_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name)


def list_repo_files(root: Path) -> list[dict[str, object]]:
    """Return ``{path, bytes}`` for every regular file outside housekeeping dirs."""
    entries: list[dict[str, object]] = []
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in DEFAULT_EXCLUDES)
        base = Path(current)
        for name in sorted(filenames):
            path = base / name
            if path.is_symlink() or not path.is_file():
                continue
            entries.append({"path": path.relative_to(root).as_posix(), "bytes": path.stat().st_size})
    return entries


def summarize_repo(repo_map: list[dict[str, object]]) -> str:
    """``Files: N. Top-level: src: 12, tests: 4`` (five largest segments)."""
    counts = Counter(str(entry["path"]).split("/", 1)[0] for entry in repo_map)
    top = ", ".join(f"{segment}: {count}" for segment, count in counts.most_common(5))
    return f"Files: {len(repo_map)}. Top-level: {top}"


def build_context_pack(
    root: Path,
    store: RunStore,
    run: RunContext,
    config: OrchestratorConfig,
    memory_entries: list[MemoryEntry],
    *,
    vcs: bool,
) -> SharedContext:
    """Write ``context/`` artifacts and return the shared summary."""
    repo_map = list_repo_files(root)
    store.put_json("context", "repo_map.json", payload=repo_map)

    if vcs:
        store.put_text("context", "recent_commits.txt", content=git_tools.recent_log(root, 5))

    settings = config.context
    included: list[str] = []
    stored_names: set[str] = set()
    for name in settings.include_files:
        path = root / name
        stored_name = sanitize_file_name(name)
        if stored_name in stored_names:
            logger.debug("Skipping key file %s: already stored as %s", name, stored_name)
            continue
        if not path.is_file():
            continue
        with path.open(encoding="utf-8", errors="replace") as handle:
            content = handle.read(settings.max_file_bytes)
        store.put_text(
            "context",
            "key_files",
            stored_name,
            content=truncate_text(content, settings.max_excerpt_chars),
        )
        stored_names.add(stored_name)
        included.append(name)

    parts = [f"Task: {run.task}"]
    if run.branch_prompt:
        parts.append(f"Branch prompt: {run.branch_prompt}")
    parts.append(f"Run mode: {run.run_mode}")
    parts.extend(["Repo summary:", summarize_repo(repo_map)])
    if memory_entries:
        parts.append("Memory highlights:")
        parts.append("\n".join(f"- {entry.type}: {truncate_text(entry.text, 200)}" for entry in memory_entries))
    else:
        parts.append("Memory highlights: none")
    if included:
        parts.append("Key files (inspect in workspace):")
        parts.append("\n".join(f"- {name}" for name in included))
    else:
        parts.append("Key files: none")
    summary = "\n\n".join(parts)

    store.put_text("context", "context.md", content=summary)
    if memory_entries:
        store.put_text(
            "context",
            "memory.json",
            content=json.dumps([entry.to_dict() for entry in memory_entries], indent=2) + "\n",
        )
    logger.info("Context pack: %d files, %d key files, %d memories", len(repo_map), len(included), len(memory_entries))
    return SharedContext(summary=summary, memory=list(memory_entries))
