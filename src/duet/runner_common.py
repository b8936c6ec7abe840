"""Subprocess execution shared by agent invocation, verification and checks."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


def _process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that put the child in its own process group.

    A timed-out agent is killed together with any helpers it spawned, and the
    child never receives Ctrl+C aimed at the orchestrator.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def substitute_placeholders(template: str, values: Mapping[str, str]) -> str:
    """Replace ``{name}`` tokens in *template* with entries from *values*.

    Unknown tokens and other braces are left untouched.
    """
    result = template
    for key, value in values.items():
        result = result.replace("{" + key + "}", value)
    return result


@dataclass(slots=True)
class CommandResult:
    """Captured output and metadata from a finished subprocess."""

    cmd: list[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def combined_output(self) -> str:
        return f"{self.stdout}{self.stderr}"


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    stdin_text: str | None = None,
    timeout_seconds: float | None = None,
    process_name: str = "command",
) -> CommandResult:
    """Run *cmd* to completion and capture its output.

    A timeout terminates the whole process group and reports
    :data:`TIMEOUT_EXIT_CODE`.  A missing executable is reported as
    :data:`NOT_FOUND_EXIT_CODE` instead of raising.
    """
    argv = [str(part) for part in cmd]
    logger.debug("%s: %s (cwd=%s)", process_name, " ".join(argv), cwd)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=dict(env) if env is not None else None,
            **_process_isolation_kwargs(),
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        logger.warning("%s could not be started: %s", process_name, exc)
        return CommandResult(
            cmd=argv,
            exit_code=NOT_FOUND_EXIT_CODE,
            stdout="",
            stderr=f"{exc}\n",
            duration_seconds=time.monotonic() - started,
        )

    timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
    timed_out = False
    try:
        stdout, stderr = proc.communicate(input=stdin_text, timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("%s timed out after %ss; terminating.", process_name, timeout)
        _terminate_process_with_fallback(proc, process_name=process_name, reason="timeout")
        stdout, stderr = _drain(proc)
        stderr = f"{stderr}\n[timed out after {timeout}s]\n"

    exit_code = TIMEOUT_EXIT_CODE if timed_out else proc.returncode
    return CommandResult(
        cmd=argv,
        exit_code=exit_code if exit_code is not None else -1,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
    )


def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
    """Collect whatever output a killed process left in its pipes."""
    try:
        stdout, stderr = proc.communicate(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - grandchild kept pipes open
        return "", ""
    return stdout or "", stderr or ""


def _terminate_process_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        return

    _terminate_process(proc)
    try:
        proc.wait(timeout=max(0.1, float(terminate_timeout_seconds)))
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s did not exit after terminate during %s; forcing kill.",
            process_name,
            reason,
        )

    _kill_process(proc)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _terminate_process(proc: subprocess.Popen[str]) -> None:
    """Best-effort graceful termination for a child process (and its group)."""
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGTERM)
    with suppress(OSError):
        proc.terminate()


def _kill_process(proc: subprocess.Popen[str]) -> None:
    """Best-effort force kill for a child process (and its group)."""
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGKILL)
    with suppress(OSError):
        proc.kill()


def _signal_process_group(proc: subprocess.Popen[str], sig: int) -> None:
    """Best-effort signal delivery to the subprocess process-group on POSIX."""
    if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
        return
    pid = int(getattr(proc, "pid", 0) or 0)
    if pid <= 0:
        return
    with suppress(OSError):
        os.killpg(os.getpgid(pid), sig)
