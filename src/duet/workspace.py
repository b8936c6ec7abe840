"""Isolated workspaces per (run, role): git worktrees or plain directory copies."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable
from pathlib import Path

from duet import git_tools
from duet.errors import WorktreeExistsError

logger = logging.getLogger(__name__)

# Housekeeping directories never copied, synced or diffed.
DEFAULT_EXCLUDES: frozenset[str] = frozenset({".git", ".orchestrator", "node_modules", "dist", "build"})


def _ignore_names(excludes: Iterable[str]):
    excluded = frozenset(excludes)

    def _ignore(_directory: str, names: list[str]) -> set[str]:
        return {name for name in names if name in excluded}

    return _ignore


def copy_tree(source: Path, dest: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> None:
    """Recursively copy *source* into *dest*, skipping excluded entry names."""
    excluded = frozenset(excludes)
    ignore = _ignore_names(excluded)
    dest.mkdir(parents=True, exist_ok=True)
    for entry in sorted(source.iterdir()):
        if entry.name in excluded:
            continue
        target = dest / entry.name
        if entry.is_symlink():
            if target.is_symlink() or target.is_file():
                target.unlink()
            target.symlink_to(os.readlink(entry))
        elif entry.is_dir():
            shutil.copytree(entry, target, symlinks=True, ignore=ignore, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)


def _relative_entries(root: Path, excludes: frozenset[str]) -> set[str]:
    """Return every file and directory below *root* as a posix relative path."""
    entries: set[str] = set()
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in excludes]
        base = Path(current)
        for name in [*dirnames, *filenames]:
            if name in excludes:
                continue
            entries.add((base / name).relative_to(root).as_posix())
    return entries


def sync_tree(source: Path, dest: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> None:
    """Make *dest* mirror *source* (apart from excluded names).

    Entries missing from *source* are removed deepest-first before the copy so
    a directory is only deleted after its children.
    """
    excluded = frozenset(excludes)
    dest.mkdir(parents=True, exist_ok=True)
    wanted = _relative_entries(source, excluded)
    existing = _relative_entries(dest, excluded)
    for rel in sorted(existing - wanted, key=lambda item: (item.count("/"), len(item)), reverse=True):
        target = dest / rel
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
    # A path may switch between file and directory.
    for rel in sorted(wanted & existing):
        src_path, dst_path = source / rel, dest / rel
        if src_path.is_dir() != dst_path.is_dir():
            if dst_path.is_dir() and not dst_path.is_symlink():
                shutil.rmtree(dst_path)
            elif dst_path.exists() or dst_path.is_symlink():
                dst_path.unlink()
    copy_tree(source, dest, excluded)


class WorktreeManager:
    """Creates exclusively-owned workspaces for one run.

    Parameters
    ----------
    vcs:
        When true, workspaces are git worktrees checked out from ``HEAD``;
        otherwise they are recursive copies of the base tree.
    excludes:
        Entry names skipped when copying or syncing plain trees.
    """

    def __init__(self, *, vcs: bool, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> None:
        self.vcs = vcs
        self.excludes = frozenset(excludes)

    def acquire(self, base_root: Path, dest: Path) -> Path:
        """Create a fresh workspace of *base_root* at *dest*.

        Raises :class:`WorktreeExistsError` when *dest* already exists: a run
        never re-acquires a workspace.
        """
        self._guard(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        if self.vcs:
            git_tools.add_worktree(base_root, dest)
        else:
            copy_tree(base_root, dest, self.excludes)
            logger.info("Copied workspace %s -> %s", base_root, dest)
        return dest

    def clone(self, source: Path, dest: Path) -> Path:
        """Create *dest* as a plain copy of another workspace's current state."""
        self._guard(dest)
        copy_tree(source, dest, self.excludes)
        logger.debug("Cloned workspace %s -> %s", source, dest)
        return dest

    def sync(self, source_root: Path, dest_root: Path) -> None:
        """Reconcile *dest_root* so it mirrors *source_root*."""
        sync_tree(source_root, dest_root, self.excludes)
        logger.info("Synced workspace %s -> %s", source_root, dest_root)

    @staticmethod
    def _guard(dest: Path) -> None:
        if dest.exists() or dest.is_symlink():
            raise WorktreeExistsError(f"Worktree destination already exists: {dest}")
