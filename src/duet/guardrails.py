"""Pre-apply safety policy: size ceilings, forbidden paths, dependency files."""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache
from pathlib import PurePosixPath

from duet.config import GuardrailsConfig
from duet.schemas import DiffStats

GuardrailPolicy = GuardrailsConfig


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Compile a glob where ``*`` matches any run of characters (``/`` included)."""
    escaped = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{escaped}$")


def matches_glob(path: str, pattern: str) -> bool:
    """Return True when *path* matches *pattern*.

    Patterns without ``/`` are matched against the basename only.
    """
    normalized = path.replace("\\", "/")
    target = normalized if "/" in pattern else PurePosixPath(normalized).name
    return _glob_regex(pattern).match(target) is not None


def _is_dependency_file(path: str, dependency_files: Iterable[str]) -> bool:
    normalized = path.replace("\\", "/")
    basename = PurePosixPath(normalized).name
    for entry in dependency_files:
        entry = entry.replace("\\", "/")
        if normalized == entry or ("/" not in entry and basename == entry):
            return True
    return False


def evaluate_guardrails(
    policy: GuardrailPolicy,
    changed_files: Iterable[str],
    stats: DiffStats,
) -> list[str]:
    """Return every policy violation for a change set (empty when allowed).

    All checks run; nothing short-circuits.  A disabled policy never reports
    violations.
    """
    if not policy.enabled:
        return []

    files = sorted(set(changed_files))
    violations: list[str] = []

    if len(files) > policy.max_files_changed:
        violations.append(f"Too many files changed ({len(files)} > {policy.max_files_changed}).")
    if stats.added > policy.max_lines_added:
        violations.append(f"Too many lines added ({stats.added} > {policy.max_lines_added}).")
    if stats.removed > policy.max_lines_removed:
        violations.append(f"Too many lines removed ({stats.removed} > {policy.max_lines_removed}).")

    forbidden = [
        path for path in files if any(matches_glob(path, pattern) for pattern in policy.forbidden_paths)
    ]
    if forbidden:
        violations.append(f"Forbidden paths changed: {', '.join(forbidden)}")

    if policy.forbid_dependency_changes:
        dependency_files = policy.effective_dependency_files
        touched = [path for path in files if _is_dependency_file(path, dependency_files)]
        if touched:
            violations.append(f"Dependency files changed (not allowed): {', '.join(touched)}")

    return violations
