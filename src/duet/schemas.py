"""Pydantic models for structured data passed between pipeline phases."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

NEITHER = "neither"

RunMode = Literal["full", "plan", "implement", "bugfix"]
RUN_MODES: tuple[str, ...] = ("full", "plan", "implement", "bugfix")


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Sessions and runs
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """A named lineage of runs sharing one task."""

    session_id: str
    task: str
    created_at: str = Field(default_factory=utc_now)


class RunContext(BaseModel):
    """Identity and inputs of a single pipeline run."""

    session_id: str
    run_id: str
    task: str
    run_mode: RunMode = "full"
    created_at: str = Field(default_factory=utc_now)
    parent_run_id: str | None = None
    branch_prompt: str | None = None


# ---------------------------------------------------------------------------
# Agent execution
# ---------------------------------------------------------------------------


class AgentRunResult(BaseModel):
    """Result of one agent process invocation for one phase."""

    agent: str
    phase: str
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def text(self) -> str:
        """Agent output used downstream: stdout, or stderr when stdout is blank."""
        if self.stdout.strip():
            return self.stdout
        return self.stderr if self.stderr.strip() else ""


class AgentMeta(BaseModel):
    """Verified metadata for a configured agent."""

    name: str
    version: str | None = None
    capabilities: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Decisions and reviews
# ---------------------------------------------------------------------------


class Judgment(BaseModel):
    """A single judge's verdict on the two proposals."""

    winner: str
    rationale: str = ""


class Decision(BaseModel):
    """The reduced outcome of the decision phase."""

    mode: str
    winner: str
    rationale: str = ""
    judge_agent: str | None = None
    execution_driver: str | None = None

    @property
    def has_winner(self) -> bool:
        return self.winner != NEITHER


class ReviewIssue(BaseModel):
    """One finding reported by a reviewer."""

    id: str
    summary: str
    file: str | None = None
    suggested_fix: str | None = None


class ReviewSummary(BaseModel):
    """Structured review output: blocking issues, warnings and free-form notes."""

    blockers: list[ReviewIssue] = Field(default_factory=list)
    warnings: list[ReviewIssue] = Field(default_factory=list)
    notes: str = ""

    @property
    def has_blockers(self) -> bool:
        return bool(self.blockers)


# ---------------------------------------------------------------------------
# Diffs and patches
# ---------------------------------------------------------------------------


class DiffStats(BaseModel):
    """Added/removed line counts for a unified diff."""

    added: int = 0
    removed: int = 0


class PatchOutcome(BaseModel):
    """Result of applying a patch to a tree."""

    applied: bool
    output: str = ""


# ---------------------------------------------------------------------------
# Implementation and convergence
# ---------------------------------------------------------------------------


class ImplementationResult(BaseModel):
    """Output of one agent's independent (parallel) implementation."""

    agent: str
    exit_code: int
    worktree: Path
    diff: str = ""
    changed_files: list[str] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)
    test_exit_code: int | None = None


class JointStopReason(str, Enum):
    """Reason the joint implementation loop stopped."""

    CONVERGED = "converged"
    APPLY_FAILED = "apply_failed"
    MAX_ROUNDS = "max_rounds"


class JointRound(BaseModel):
    """Snapshot of one driver/navigator round."""

    round_number: int
    driver: str
    navigator: str
    driver_exit_code: int
    navigator_exit_code: int
    test_exit_code: int | None = None
    navigator_patch_empty: bool = True
    patch_applied: bool | None = None


class JointOutcome(BaseModel):
    """Result of the joint implementation loop."""

    driver: str
    navigator: str
    worktree: Path
    rounds: list[JointRound] = Field(default_factory=list)
    stop_reason: JointStopReason = JointStopReason.MAX_ROUNDS
    diff: str = ""
    changed_files: list[str] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)


class ConvergenceRound(BaseModel):
    """Snapshot of one fixer/critic round."""

    round_number: int
    fixer: str
    critic: str
    fixer_exit_code: int
    test_exit_code: int | None = None
    blockers: int = 0
    warnings: int = 0


class ConvergenceOutcome(BaseModel):
    """Result of the convergence loop (possibly skipped)."""

    ran: bool = False
    converged: bool = False
    rounds: list[ConvergenceRound] = Field(default_factory=list)
    review: ReviewSummary = Field(default_factory=ReviewSummary)
    diff: str = ""
    changed_files: list[str] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)
    last_test_exit_code: int | None = None


class RunOutcome(BaseModel):
    """Summary of a completed pipeline run returned to callers."""

    session_id: str
    run_id: str
    run_dir: Path
    decision: Decision
    executed: bool = True
    final_patch: Path | None = None
    applied: bool = False
    violations: list[str] = Field(default_factory=list)
