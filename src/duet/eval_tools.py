"""Auxiliary checks (tests, lint) run inside a workspace."""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Sequence
from pathlib import Path

from duet.config import CommandConfig
from duet.runner_common import CommandResult, run_command
from duet.store import RunStore

logger = logging.getLogger(__name__)


def _is_windows_platform() -> bool:
    """Return ``True`` when command parsing should follow Windows rules."""
    return os.name == "nt"


def _strip_wrapping_quotes(token: str) -> str:
    """Remove one pair of matching wrapping quotes from *token* when present."""
    if len(token) >= 2 and token[0] == token[-1] and token[0] in {'"', "'"}:
        return token[1:-1]
    return token


def parse_check_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Parse a command into argv-style tokens.

    Accepts either a shell-like string (supports quoted arguments) or a
    pre-tokenized sequence. Returns ``None`` for empty/blank commands.
    """
    if command is None:
        return None

    if isinstance(command, str):
        raw = command.strip()
        if not raw:
            return None
        try:
            if _is_windows_platform():
                parts = [_strip_wrapping_quotes(part) for part in shlex.split(raw, posix=False)]
            else:
                parts = shlex.split(raw, posix=True)
        except ValueError:
            logger.warning(
                "Could not parse command %r with shell quoting; falling back to whitespace split.",
                raw,
            )
            parts = raw.split()
        cleaned = [part for part in parts if part]
        return cleaned or None

    cleaned = [str(part).strip() for part in command if part is not None and str(part).strip()]
    return cleaned or None


def command_argv(check: CommandConfig) -> list[str] | None:
    """Return the full argv for a configured check (command tokens + args)."""
    base = parse_check_command(check.command)
    if base is None:
        return None
    return [*base, *check.args]


def _summarise_output(text: str, max_lines: int = 30) -> str:
    """Keep the first third and last two thirds of *max_lines* from long check output."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    head_count = max_lines // 3
    tail_count = max_lines - head_count
    omitted = len(lines) - max_lines
    return "\n".join([*lines[:head_count], f"  ... ({omitted} lines omitted) ...", *lines[-tail_count:]])


def run_check(
    check: CommandConfig,
    cwd: Path,
    *,
    store: RunStore,
    log_key: tuple[str, ...],
    timeout_seconds: float | None = None,
    name: str = "tests",
) -> CommandResult | None:
    """Run *check* in *cwd* and store combined output under *log_key*.

    Returns ``None`` when the check is disabled or has no command.
    """
    if not check.enabled:
        return None
    argv = command_argv(check)
    if argv is None:
        logger.warning("%s enabled but no command configured; skipping.", name.capitalize())
        return None

    logger.info("Running %s: %s (cwd=%s)", name, " ".join(argv), cwd)
    result = run_command(argv, cwd=cwd, timeout_seconds=timeout_seconds, process_name=name)
    store.put_text(*log_key, content=result.combined_output)
    if result.exit_code != 0:
        logger.warning(
            "%s exited with %s:\n%s", name.capitalize(), result.exit_code, _summarise_output(result.combined_output)
        )
    return result
