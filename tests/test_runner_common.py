"""Tests for shared subprocess helpers."""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from duet.runner_common import (
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    resolve_binary,
    run_command,
    substitute_placeholders,
)


def _make_executable(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    if os.name == "nt":
        path.write_text("@echo off\r\nexit /b 0\r\n", encoding="utf-8")
    else:
        path.write_text("#!/usr/bin/env sh\nexit 0\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def test_resolve_binary_expands_environment_variables(monkeypatch, tmp_path: Path) -> None:
    var_name = "DUET_TEST_BIN_DIR"
    monkeypatch.setenv(var_name, str(tmp_path))

    if os.name == "nt":
        tool = _make_executable(tmp_path, "agent-tool.cmd")
        configured = f"%{var_name}%\\{tool.name}"
    else:
        tool = _make_executable(tmp_path, "agent-tool")
        configured = f"${var_name}/{tool.name}"

    resolved = resolve_binary(configured)
    assert Path(resolved).resolve() == tool.resolve()


def test_resolve_binary_accepts_wrapped_quotes(tmp_path: Path) -> None:
    if os.name == "nt":
        tool = _make_executable(tmp_path, "agent tool.cmd")
    else:
        tool = _make_executable(tmp_path, "agent tool")

    resolved = resolve_binary(f'"{tool}"')
    assert Path(resolved).resolve() == tool.resolve()


def test_substitute_placeholders_leaves_unknown_tokens() -> None:
    assert substitute_placeholders("{phase}:{other}", {"phase": "plan"}) == "plan:{other}"


@pytest.mark.integration
def test_run_command_feeds_stdin_and_captures_output(tmp_path: Path) -> None:
    script = "import sys; data = sys.stdin.read(); print(data.upper()); print('warn', file=sys.stderr)"
    result = run_command([sys.executable, "-c", script], cwd=tmp_path, stdin_text="hello")

    assert result.exit_code == 0
    assert result.stdout.strip() == "HELLO"
    assert "warn" in result.stderr
    assert result.timed_out is False


@pytest.mark.integration
def test_run_command_reports_nonzero_exit(tmp_path: Path) -> None:
    result = run_command([sys.executable, "-c", "raise SystemExit(3)"], cwd=tmp_path)
    assert result.exit_code == 3


@pytest.mark.integration
def test_run_command_missing_binary_is_not_an_exception(tmp_path: Path) -> None:
    result = run_command([str(tmp_path / "no-such-agent")], cwd=tmp_path)
    assert result.exit_code == NOT_FOUND_EXIT_CODE
    assert result.stdout == ""


@pytest.mark.integration
@pytest.mark.slow
def test_run_command_timeout_kills_the_process(tmp_path: Path) -> None:
    result = run_command(
        [sys.executable, "-c", "import time; print('start', flush=True); time.sleep(30)"],
        cwd=tmp_path,
        timeout_seconds=0.5,
    )

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.stderr
    assert result.duration_seconds < 20
