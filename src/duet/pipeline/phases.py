"""Pipeline phase names and the per-run context shared by every engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from duet import diffing
from duet.agent_runner import AgentCall, AgentInvoker
from duet.config import ORCHESTRATOR_DIR, OrchestratorConfig
from duet.eval_tools import run_check
from duet.prompts.builders import PromptBuilder, ProposalInputs
from duet.schemas import AgentRunResult, RunContext
from duet.store import RunStore
from duet.transcript import Transcript
from duet.workspace import WorktreeManager

logger = logging.getLogger(__name__)

WORKTREES_DIR = "worktrees"


class PipelinePhase(str, Enum):
    """Phases of a run, in execution order.  Values are artifact directory names."""

    PLAN = "plan"
    PROPOSE = "propose"
    DECIDE = "decide"
    EXECUTION_PLAN = "execution_plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    CONVERGE = "converge"
    FINAL = "final"


PHASE_ORDER: list[PipelinePhase] = list(PipelinePhase)


@dataclass
class PhaseContext:
    """Everything a phase engine needs for one run.

    Parameters
    ----------
    root:
        Project root; worktrees are created from it and final patches are
        applied to it.
    vcs:
        Whether *root* is a git work tree.
    analysis_worktrees:
        Per-agent read-only workspaces for analysis phases (empty when
        ``context.isolate_workspaces`` is off).
    """

    root: Path
    config: OrchestratorConfig
    run: RunContext
    store: RunStore
    invoker: AgentInvoker
    transcript: Transcript
    prompts: PromptBuilder
    worktrees: WorktreeManager
    vcs: bool
    analysis_worktrees: dict[str, Path] = field(default_factory=dict)

    @property
    def agents(self) -> tuple[str, str]:
        return self.config.agent_names

    @property
    def worktrees_root(self) -> Path:
        return self.root / ORCHESTRATOR_DIR / WORKTREES_DIR / self.run.run_id

    def worktree_path(self, *parts: str) -> Path:
        return self.worktrees_root.joinpath(*parts)

    def analysis_cwd(self, agent: str) -> Path:
        return self.analysis_worktrees.get(agent, self.root)

    def other_agent(self, agent: str) -> str:
        return self.config.other_agent(agent)

    # ------------------------------------------------------------------
    # Agent calls
    # ------------------------------------------------------------------

    def call_agent(
        self,
        agent: str,
        phase: str,
        prompt: str,
        *,
        cwd: Path,
        log_key: tuple[str, ...],
        output_key: tuple[str, ...] | None = None,
        transcript_phase: str | None = None,
        round_number: int | None = None,
        timeout_seconds: float | None = None,
    ) -> AgentRunResult:
        """Invoke *agent* and record its response in the transcript."""
        result = self.invoker.run_phase(
            AgentCall(
                agent=agent,
                phase=phase,
                prompt=prompt,
                cwd=cwd,
                log_key=log_key,
                output_key=output_key,
                timeout_seconds=timeout_seconds,
            )
        )
        self.transcript.response(transcript_phase or phase, agent, result.text, round_number=round_number)
        return result

    def proposal_inputs(self) -> ProposalInputs:
        """Read both agents' plan and proposal outputs from the store."""
        inputs = ProposalInputs()
        for agent in self.agents:
            inputs.plans[agent] = self.store.get_text(PipelinePhase.PLAN.value, f"{agent}.md") or ""
            inputs.proposals[agent] = self.store.get_text(PipelinePhase.PROPOSE.value, f"{agent}.md") or ""
        return inputs

    # ------------------------------------------------------------------
    # Workspace helpers
    # ------------------------------------------------------------------

    def diff(self, worktree: Path) -> str:
        """Changes made in *worktree* relative to the pristine project."""
        return diffing.diff_worktree(self.root, worktree, vcs=self.vcs)

    def run_tests(self, cwd: Path, log_key: tuple[str, ...]) -> int | None:
        """Run the configured tests; ``None`` when tests are disabled."""
        result = run_check(
            self.config.tests,
            cwd,
            store=self.store,
            log_key=log_key,
            timeout_seconds=self.config.limits.command_timeout_seconds,
            name="tests",
        )
        return None if result is None else result.exit_code

    def run_lint(self, cwd: Path, log_key: tuple[str, ...]) -> int | None:
        result = run_check(
            self.config.lint,
            cwd,
            store=self.store,
            log_key=log_key,
            timeout_seconds=self.config.limits.command_timeout_seconds,
            name="lint",
        )
        return None if result is None else result.exit_code
