"""Git helpers for repository detection, worktrees, diffs and patch application."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Iterable
from pathlib import Path

from duet.errors import VcsError

logger = logging.getLogger(__name__)

_DIFF_FLAGS = (
    "--binary",
    "--no-color",
    "--no-ext-diff",
    "--no-renames",
    "--src-prefix=a/",
    "--dst-prefix=b/",
)
_SCRATCH_CONFIG = ("-c", "core.autocrlf=false", "-c", "core.quotepath=off")


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 120,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            input=input_text,
            timeout=timeout,
            **_git_subprocess_isolation_kwargs(),
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        raise VcsError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise VcsError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


def exclude_pathspecs(names: Iterable[str]) -> list[str]:
    """Return pathspecs excluding every entry called one of *names*, at any depth."""
    specs: list[str] = []
    for name in sorted(names):
        if name != ".git":
            specs.extend([f":(exclude,glob)**/{name}", f":(exclude,glob)**/{name}/**"])
    return specs


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def is_git_repo(path: str | Path) -> bool:
    """Return True when *path* is inside a git work tree."""
    try:
        result = _run_git("rev-parse", "--is-inside-work-tree", cwd=Path(path), check=False)
    except VcsError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def recent_log(repo: str | Path, count: int = 5) -> str:
    """Return ``git log --oneline`` for the last *count* commits (empty when unborn)."""
    result = _run_git("log", f"-{count}", "--oneline", cwd=Path(repo), check=False)
    return result.stdout.strip() if result.returncode == 0 else ""


def diff_head(worktree: str | Path, excludes: Iterable[str] = ()) -> str:
    """Return the diff of *worktree* against its HEAD commit.

    Untracked files are registered with ``--intent-to-add`` first so new files
    show up alongside staged and unstaged edits.  Falls back to a plain
    ``git diff`` when the repository has no commits.
    """
    cwd = Path(worktree)
    pathspecs = ["--", ".", *exclude_pathspecs(excludes)]
    _run_git("add", "--intent-to-add", *pathspecs, cwd=cwd, check=False)
    result = _run_git("diff", "HEAD", *_DIFF_FLAGS, *pathspecs, cwd=cwd, check=False)
    if result.returncode == 0:
        return result.stdout
    logger.debug("git diff HEAD failed in %s; falling back to plain diff", cwd)
    return _run_git("diff", *_DIFF_FLAGS, *pathspecs, cwd=cwd).stdout


def snapshot_tree(git_dir: Path, work_tree: Path, excludes: Iterable[str] = ()) -> str:
    """Stage every file under *work_tree* into a fresh index of *git_dir* and return the tree id.

    Ignore rules are overridden (``--force``) so the snapshot matches the
    directory contents exactly, minus the *excludes*.
    """
    (git_dir / "index").unlink(missing_ok=True)
    base = (*_SCRATCH_CONFIG, f"--git-dir={git_dir}", f"--work-tree={work_tree}")
    _run_git(*base, "add", "--all", "--force", "--", ".", *exclude_pathspecs(excludes), cwd=work_tree)
    return _run_git(*base, "write-tree", cwd=work_tree).stdout.strip()


def diff_trees(left: str | Path, right: str | Path, excludes: Iterable[str] = ()) -> str:
    """Return a git-format binary diff turning directory *left* into *right*.

    Neither directory needs to be a repository: both are snapshotted into a
    throwaway object store, so new empty files, binary content and mode
    changes all survive in the patch.
    """
    with tempfile.TemporaryDirectory(prefix="duet-diff-") as scratch:
        scratch_dir = Path(scratch)
        _run_git("init", "--quiet", str(scratch_dir / "snapshots"), cwd=scratch_dir)
        git_dir = scratch_dir / "snapshots" / ".git"
        left_tree = snapshot_tree(git_dir, Path(left), excludes)
        right_tree = snapshot_tree(git_dir, Path(right), excludes)
        result = _run_git(
            *_SCRATCH_CONFIG,
            f"--git-dir={git_dir}",
            "diff",
            *_DIFF_FLAGS,
            left_tree,
            right_tree,
            cwd=scratch_dir,
            timeout=300,
        )
        return result.stdout


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def add_worktree(repo: str | Path, dest: str | Path) -> None:
    """Create a detached worktree of HEAD at *dest*."""
    _run_git("worktree", "add", "--detach", str(dest), "HEAD", cwd=Path(repo))
    logger.info("Created git worktree %s", dest)


def apply_patch(repo: str | Path, patch_text: str) -> subprocess.CompletedProcess[str]:
    """Apply a unified diff read from stdin; the caller inspects the return code."""
    return _run_git(
        "apply", "-p1", "--whitespace=nowarn", "-", cwd=Path(repo), check=False, input_text=patch_text
    )
