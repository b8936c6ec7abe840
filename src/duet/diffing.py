"""Diff computation, changed-file extraction and patch application.

Diffs are plain unified-diff text.  Tree diffs produced here use ``a/`` and
``b/`` path prefixes, like git, so every patch applies with ``-p1`` whether
it is applied by ``git apply`` or by ``patch``.

Header paths may be C-style quoted (``"a/my notes.txt"``, ``"caf\\303\\251"``);
both git and GNU diff quote names they cannot print verbatim.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Iterable
from pathlib import Path

from duet import git_tools
from duet.errors import DiffError, VcsError
from duet.schemas import DiffStats, PatchOutcome
from duet.workspace import DEFAULT_EXCLUDES

logger = logging.getLogger(__name__)

DEV_NULL = "/dev/null"
_HUNK_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")
_BINARY_RE = re.compile(r"^Binary files (.+) and (.+) differ$")
_GIT_PATCH_RE = re.compile(r"^diff --git ", re.MULTILINE)
_DIFF_TOOL_TIMEOUT_SECONDS = 300
_OCTAL_DIGITS = "01234567"
_C_ESCAPES = {"a": 7, "b": 8, "t": 9, "n": 10, "v": 11, "f": 12, "r": 13, '"': 34, "\\": 92}
_C_QUOTED = {34: '\\"', 92: "\\\\", 9: "\\t", 10: "\\n", 13: "\\r"}


# ---------------------------------------------------------------------------
# Quoted header paths
# ---------------------------------------------------------------------------


def _read_quoted(text: str, start: int) -> tuple[str | None, int]:
    """Decode the C-style quoted name opening at ``text[start]``.

    Returns the name and the index just past the closing quote, or
    ``(None, start)`` when the quote is never closed.
    """
    out = bytearray()
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == '"':
            return out.decode("utf-8", errors="replace"), i + 1
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in _OCTAL_DIGITS:
                end = i + 1
                while end < min(i + 4, len(text)) and text[end] in _OCTAL_DIGITS:
                    end += 1
                out.append(int(text[i + 1 : end], 8) & 0xFF)
                i = end
                continue
            if nxt in _C_ESCAPES:
                out.append(_C_ESCAPES[nxt])
            else:
                out.extend(nxt.encode("utf-8"))
            i += 2
            continue
        out.extend(ch.encode("utf-8"))
        i += 1
    return None, start


def quote_path(name: str) -> str:
    """C-quote *name* the way git and GNU diff do."""
    parts = ['"']
    for byte in name.encode("utf-8"):
        if byte in _C_QUOTED:
            parts.append(_C_QUOTED[byte])
        elif 32 <= byte < 127:
            parts.append(chr(byte))
        else:
            parts.append(f"\\{byte:03o}")
    parts.append('"')
    return "".join(parts)


def _split_header_path(rest: str) -> tuple[str, str, bool]:
    """Split a ``---``/``+++`` header body into ``(path, remainder, quoted)``.

    Unquoted paths run up to the tab before the timestamp (or end of line),
    so they may contain spaces.
    """
    if rest.startswith('"'):
        name, end = _read_quoted(rest, 0)
        if name is not None:
            return name, rest[end:], True
    path, sep, stamp = rest.partition("\t")
    return path, sep + stamp, False


def _tokenize(line: str) -> list[tuple[str, bool, int]]:
    """Split *line* on spaces, keeping quoted names whole.

    Yields ``(value, quoted, start_offset)`` per token.
    """
    tokens: list[tuple[str, bool, int]] = []
    i = 0
    while i < len(line):
        if line[i] == " ":
            i += 1
            continue
        if line[i] == '"':
            name, end = _read_quoted(line, i)
            if name is not None:
                tokens.append((name, True, i))
                i = end
                continue
        end = line.find(" ", i)
        if end == -1:
            end = len(line)
        tokens.append((line[i:end], False, i))
        i = end
    return tokens


def _git_header_paths(rest: str) -> list[str]:
    """Return the two names of a ``diff --git`` line (text after the command).

    Unquoted names may contain spaces; without renames both sides name the
    same path, which makes ``a/<p> b/<p>`` splittable.
    """
    if not rest.startswith('"') and len(rest) % 2 == 1:
        mid = len(rest) // 2
        left, right = rest[:mid], rest[mid + 1 :]
        if rest[mid] == " " and left.startswith("a/") and right.startswith("b/") and left[2:] == right[2:]:
            return [left, right]
    tokens = _tokenize(rest)
    if len(tokens) == 2:
        return [tokens[0][0], tokens[1][0]]
    return []


def _needs_quoting(name: str) -> bool:
    return any(not (32 < ord(ch) < 127) or ch in "\"\\" for ch in name)


def _format_path(name: str, quoted: bool) -> str:
    """Re-emit a relabeled name, quoting only when the source was quoted and still needs it."""
    return quote_path(name) if quoted and _needs_quoting(name) else name


# ---------------------------------------------------------------------------
# Diff production
# ---------------------------------------------------------------------------


def diff_worktree(base_root: Path, worktree: Path, *, vcs: bool) -> str:
    """Return the changes made in *worktree* relative to its base.

    Git worktrees are diffed against their own ``HEAD`` (staged, unstaged and
    new files); plain copies are diffed against *base_root*.
    """
    if vcs:
        return git_tools.diff_head(worktree, DEFAULT_EXCLUDES)
    return diff_trees(base_root, worktree)


def diff_trees(left: Path, right: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> str:
    """Return a recursive diff turning directory *left* into *right*.

    With git installed the result is a git-format binary patch, which keeps
    new empty files and binary content.  Otherwise ``diff -ruN`` is used and
    its headers are relabeled.  Missing directories and tool failures raise
    :class:`DiffError`.
    """
    left = Path(left).resolve()
    right = Path(right).resolve()
    for tree in (left, right):
        if not tree.is_dir():
            raise DiffError(f"Not a directory: {tree}")
    logger.debug("diff trees %s -> %s", left, right)
    if shutil.which("git") is None:
        return unified_tree_diff(left, right, excludes)
    try:
        return git_tools.diff_trees(left, right, excludes)
    except VcsError as exc:
        raise DiffError(str(exc)) from exc


def unified_tree_diff(left: Path, right: Path, excludes: Iterable[str] = DEFAULT_EXCLUDES) -> str:
    """Return ``diff -ruN`` output for two trees with ``a/``/``b/`` relative headers.

    Exit code 1 from ``diff`` means "differences found"; anything above that
    raises :class:`DiffError`.
    """
    left = Path(left).resolve()
    right = Path(right).resolve()
    cmd = ["diff", "-ruN"]
    cmd.extend(f"--exclude={name}" for name in sorted(excludes))
    cmd.extend([str(left), str(right)])
    try:
        proc = subprocess.run(
            cmd,
            cwd=left,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=_DIFF_TOOL_TIMEOUT_SECONDS,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        raise DiffError(f"diff could not run: {exc}") from exc
    if proc.returncode not in (0, 1):
        raise DiffError(f"diff failed (rc={proc.returncode}): {proc.stderr.strip()}")
    return _relabel_tree_diff(proc.stdout, left_label=str(left), right_label=str(right))


def _strip_label(path: str, label: str) -> str | None:
    if path == label:
        return ""
    if path.startswith(label + "/"):
        return path[len(label) + 1 :]
    return None


def _relabel_tree_diff(text: str, *, left_label: str, right_label: str) -> str:
    """Rewrite ``diff -ruN`` header paths into ``a/<rel>`` / ``b/<rel>`` form.

    Quoted paths stay quoted after relabeling.
    """
    out: list[str] = []
    for kind, raw in _iter_header_aware(text):
        if kind == "diff":
            tokens = _tokenize(raw)
            if len(tokens) >= 3:
                (left_path, left_quoted, left_start), (right_path, right_quoted, _) = tokens[-2:]
                left_rel = _strip_label(left_path, left_label)
                right_rel = _strip_label(right_path, right_label)
                if left_rel is not None and right_rel is not None:
                    raw = (
                        raw[:left_start]
                        + _format_path(f"a/{left_rel}", left_quoted)
                        + " "
                        + _format_path(f"b/{right_rel}", right_quoted)
                    )
        elif kind in ("old", "new"):
            path, remainder, quoted = _split_header_path(raw[4:])
            rel = _strip_label(path, left_label if kind == "old" else right_label)
            if rel is not None:
                side = "a" if kind == "old" else "b"
                raw = f"{raw[:4]}{_format_path(f'{side}/{rel}', quoted)}{remainder}"
        elif kind == "other":
            binary = _BINARY_RE.match(raw)
            if binary:
                left_path, _, left_quoted = _split_header_path(binary.group(1))
                right_path, _, right_quoted = _split_header_path(binary.group(2))
                left_rel = _strip_label(left_path, left_label)
                right_rel = _strip_label(right_path, right_label)
                if left_rel is not None and right_rel is not None:
                    raw = (
                        f"Binary files {_format_path(f'a/{left_rel}', left_quoted)} "
                        f"and {_format_path(f'b/{right_rel}', right_quoted)} differ"
                    )
        out.append(raw)
    relabeled = "\n".join(out)
    if text.endswith("\n") and not relabeled.endswith("\n"):
        relabeled += "\n"
    return relabeled


def _iter_header_aware(text: str):
    """Yield ``(kind, line)`` pairs where kind is diff/old/new/hunk/body/other.

    Hunk bodies are tracked by the line counts in ``@@`` headers so content
    lines that happen to start with ``---`` or ``+++`` are never mistaken for
    file headers.
    """
    old_left = new_left = 0
    for line in text.splitlines():
        if old_left > 0 or new_left > 0:
            if line.startswith("\\"):
                yield "body", line
                continue
            tag = line[:1]
            if tag in (" ", ""):
                old_left -= 1
                new_left -= 1
            elif tag == "-":
                old_left -= 1
            elif tag == "+":
                new_left -= 1
            yield "body", line
            continue
        match = _HUNK_RE.match(line)
        if match:
            old_left = int(match.group(1)) if match.group(1) is not None else 1
            new_left = int(match.group(2)) if match.group(2) is not None else 1
            yield "hunk", line
        elif line.startswith("diff "):
            yield "diff", line
        elif line.startswith("--- "):
            yield "old", line
        elif line.startswith("+++ "):
            yield "new", line
        else:
            yield "other", line


# ---------------------------------------------------------------------------
# Diff inspection
# ---------------------------------------------------------------------------


def _strip_root(path: str, roots: Iterable[str]) -> tuple[str, bool]:
    for root in roots:
        prefix = root.replace("\\", "/").rstrip("/") + "/"
        if path.startswith(prefix):
            return path[len(prefix) :], True
    return path, False


def _normalize_path(path: str, roots: Iterable[str]) -> str | None:
    """Turn an unquoted header path into a repo-relative path (``None`` for /dev/null)."""
    path = path.strip()
    if not path or path == DEV_NULL:
        return None
    path, _ = _strip_root(path.replace("\\", "/"), roots)
    if path.startswith(("a/", "b/")):
        path = path[2:]
    while path.startswith("./"):
        path = path[2:]
    return path or None


def _tree_diff_candidates(line: str, roots: list[str]) -> list[str]:
    """Return the right then left path of a ``diff -ruN left right`` line.

    When *roots* are known, only paths under a root or with ``a/``/``b/``
    prefixes count; anything else is a mis-split unquoted name, and the
    ``---``/``+++`` headers that follow name the file anyway.
    """
    tokens = _tokenize(line)
    if len(tokens) < 3:
        return []
    candidates: list[str] = []
    for value, _, _ in reversed(tokens[-2:]):
        normalized = value.replace("\\", "/")
        if roots and not (_strip_root(normalized, roots)[1] or normalized.startswith(("a/", "b/"))):
            continue
        candidates.append(value)
    return candidates


def extract_changed_files(diff_text: str, *roots: str | Path) -> list[str]:
    """Return the sorted, de-duplicated relative paths touched by *diff_text*.

    Understands ``diff --git a/x b/y`` headers, ``diff -ruN left right``
    headers and plain ``---``/``+++`` file headers, quoted or not.  *roots*
    are absolute prefixes to strip from tree-diff paths.
    """
    root_prefixes = [str(root) for root in roots]
    files: set[str] = set()
    for kind, line in _iter_header_aware(diff_text or ""):
        if kind == "diff":
            if line.startswith("diff --git "):
                candidates = _git_header_paths(line[len("diff --git ") :])[::-1]
            else:
                candidates = _tree_diff_candidates(line, root_prefixes)
            for candidate in candidates:
                path = _normalize_path(candidate, root_prefixes)
                if path:
                    files.add(path)
                    break
        elif kind in ("old", "new"):
            header_path, _, _ = _split_header_path(line[4:])
            path = _normalize_path(header_path, root_prefixes)
            if path:
                files.add(path)
        elif kind == "other":
            binary = _BINARY_RE.match(line)
            if binary:
                header_path, _, _ = _split_header_path(binary.group(2))
                path = _normalize_path(header_path, root_prefixes)
                if path:
                    files.add(path)
    return sorted(files)


def summarize_diff(diff_text: str) -> DiffStats:
    """Count added and removed lines inside hunks."""
    added = removed = 0
    for kind, line in _iter_header_aware(diff_text or ""):
        if kind != "body":
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return DiffStats(added=added, removed=removed)


# ---------------------------------------------------------------------------
# Patch application
# ---------------------------------------------------------------------------


def _use_git_apply(patch_text: str, *, vcs: bool) -> bool:
    if vcs:
        return True
    if shutil.which("patch") is None:
        return True
    # Binary hunks and empty-file headers only exist in git-format patches.
    return _GIT_PATCH_RE.search(patch_text) is not None and shutil.which("git") is not None


def apply_patch(target_root: Path, patch_text: str, *, vcs: bool) -> PatchOutcome:
    """Apply *patch_text* to *target_root*.

    Git-format patches go through ``git apply`` (which also works outside a
    repository); classic unified diffs use ``patch`` when the root is not
    version-controlled.  A failed apply is reported as ``applied=False`` and
    never raises.
    """
    if not (patch_text or "").strip():
        return PatchOutcome(applied=True, output="Empty patch; nothing to apply.\n")

    if _use_git_apply(patch_text, vcs=vcs):
        try:
            proc = git_tools.apply_patch(target_root, patch_text)
        except VcsError as exc:
            return PatchOutcome(applied=False, output=f"{exc}\n")
    else:
        try:
            proc = subprocess.run(
                ["patch", "-p1", "--batch", "--forward"],
                cwd=target_root,
                input=patch_text,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=_DIFF_TOOL_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired as exc:
            return PatchOutcome(applied=False, output=f"patch timed out: {exc}\n")

    output = f"{proc.stdout}{proc.stderr}"
    if proc.returncode != 0:
        logger.warning("Patch did not apply cleanly in %s (rc=%s)", target_root, proc.returncode)
    return PatchOutcome(applied=proc.returncode == 0, output=output)
