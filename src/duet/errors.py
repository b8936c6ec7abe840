"""Exception hierarchy for fatal orchestrator failures.

Only conditions that must abort a run are modelled as exceptions.  Agent
failures, unparseable agent output, patch-apply failures and guardrail
violations are recorded as artifacts instead.
"""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for errors that terminate a run."""


class ConfigError(OrchestratorError):
    """Raised when the orchestrator configuration is missing or invalid."""


class VerificationError(OrchestratorError):
    """Raised when an agent binary is missing or older than required."""

    def __init__(self, message: str, breakdown: list[str] | None = None) -> None:
        self.breakdown = list(breakdown or [])
        if self.breakdown:
            message = message + "\n" + "\n".join(f"  - {line}" for line in self.breakdown)
        super().__init__(message)


class VcsError(OrchestratorError):
    """Raised when a git command fails unexpectedly."""


class DiffError(OrchestratorError):
    """Raised when the diff tool fails (exit code other than 0 or 1)."""


class WorktreeExistsError(OrchestratorError):
    """Raised when a worktree destination already exists."""


class BranchingError(OrchestratorError):
    """Raised for invalid branch requests (missing session, prompt or parent run)."""


class ArtifactExistsError(OrchestratorError):
    """Raised when a run artifact would be overwritten."""
