"""Pipeline controller - sequences one orchestrated run.

A run moves through::

    plan -> propose -> decide -> execution plan -> [interactive gate]
    -> implement -> review -> converge -> final -> [apply]

Every phase commits its output to the run's artifact directory before the
next phase reads it, so a finished run can be inspected (or branched from)
phase by phase.

Usage::

    from duet.pipeline import PipelineController, RunOptions

    outcome = PipelineController("/path/to/repo").run(RunOptions(task="Fix the parser"))
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from duet import diffing, git_tools
from duet.agent_runner import AgentInvoker
from duet.config import OrchestratorConfig, load_config
from duet.context_pack import build_context_pack
from duet.errors import BranchingError
from duet.eval_tools import run_check
from duet.guardrails import evaluate_guardrails
from duet.interactive import InputFn, ask_choice, ask_yes_no
from duet.memory import create_memory_store, persist_run_memory
from duet.pipeline.convergence import ConvergenceEngine
from duet.pipeline.decision import DecisionEngine
from duet.pipeline.execution_plan import ExecutionPlanner
from duet.pipeline.implementation import DRIVER_WORKTREE, JOINT_DIR, ImplementationEngine
from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.pipeline.review import run_review
from duet.prompts.builders import PromptBuilder
from duet.prompts.catalog import PromptCatalog
from duet.schemas import (
    AgentMeta,
    ConvergenceOutcome,
    Decision,
    RunContext,
    RunMode,
    RunOutcome,
)
from duet.store import RunStore, SessionStore, timestamp_id
from duet.transcript import Transcript
from duet.verify import AgentVerification, raise_for_failures, verify_agents
from duet.workspace import WorktreeManager

logger = logging.getLogger(__name__)

InvokerFactory = Callable[[OrchestratorConfig, RunContext, RunStore, Mapping[str, AgentMeta]], AgentInvoker]
Verifier = Callable[[OrchestratorConfig, Path], list[AgentVerification]]

_FINAL = PipelinePhase.FINAL.value
_IMPLEMENT = PipelinePhase.IMPLEMENT.value
_INTERACTIVE = "interactive"


@dataclass
class RunOptions:
    """Caller-supplied inputs of one run.

    Parameters
    ----------
    session_id:
        Existing or new session to attach the run to; generated when omitted.
    branch_from:
        Parent run id inside *session_id*; its final summary becomes extra
        context.  Requires *session_id* and *branch_prompt*.
    decision_mode:
        Overrides ``decision.mode`` from the configuration.
    apply:
        Apply the final patch to the project root after guardrail checks.
    interactive:
        Ask for approval (and a driver) before implementation when stdin is a
        terminal.
    stream:
        Echo transcript events as JSON lines on stdout.
    """

    task: str
    session_id: str | None = None
    branch_from: str | None = None
    branch_prompt: str | None = None
    mode: RunMode = "full"
    decision_mode: str | None = None
    apply: bool = False
    interactive: bool = False
    stream: bool = False


def render_task(task: str, branch_prompt: str | None = None) -> str:
    if not branch_prompt:
        return task
    return f"{task}\n\nBranch prompt:\n{branch_prompt}"


def build_summary(store: RunStore, run: RunContext, decision: Decision) -> str:
    task = store.get_text("task.md") or run.task
    lines = [
        f"Task: {task}",
        f"Run mode: {run.run_mode}",
        f"Decision winner: {decision.winner}",
        f"Decision rationale: {decision.rationale}",
    ]
    return "\n\n".join(lines)


class PipelineController:
    """Runs the full two-agent pipeline for a project root.

    Parameters
    ----------
    root:
        Project root.  Configuration, sessions and worktrees live under
        ``<root>/.orchestrator``; the final patch is applied here.
    config:
        Pre-loaded configuration; loaded from *root* when omitted.
    invoker_factory:
        Builds the :class:`AgentInvoker` for a run (tests inject scripted
        invokers here).
    verifier:
        Agent verification callable; defaults to :func:`verify_agents`.
    input_fn, stdin_isatty:
        Terminal hooks for the interactive gate.
    """

    def __init__(
        self,
        root: str | Path,
        config: OrchestratorConfig | None = None,
        *,
        invoker_factory: InvokerFactory | None = None,
        verifier: Verifier | None = None,
        input_fn: InputFn | None = None,
        stdin_isatty: bool | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config if config is not None else load_config(self.root)
        self.invoker_factory: InvokerFactory = invoker_factory or AgentInvoker
        self.verifier: Verifier = verifier or verify_agents
        self.input_fn: InputFn = input_fn or input
        self.stdin_isatty = stdin_isatty

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, options: RunOptions) -> RunOutcome:
        config = self._effective_config(options)
        sessions = SessionStore(self.root)

        parent_summary = self._validate_branch(sessions, options)
        session = sessions.open_session(options.task, options.session_id)
        run = RunContext(
            session_id=session.session_id,
            run_id=timestamp_id("run"),
            task=session.task,
            run_mode=options.mode,
            parent_run_id=options.branch_from,
            branch_prompt=options.branch_prompt,
        )
        store = sessions.create_run(run)
        logger.info("Run %s (session %s) in %s", run.run_id, run.session_id, store.run_dir)
        store.put_json("context.json", payload=run)
        store.put_text("task.md", content=render_task(run.task, run.branch_prompt))

        verification = self.verifier(config, self.root)
        store.put_json("verify.json", payload=[item.to_dict() for item in verification])
        raise_for_failures(verification)
        agent_meta = {item.agent: item.to_meta() for item in verification}

        memory = create_memory_store(config.memory, self.root)
        query = " ".join(part for part in (run.task, run.branch_prompt) if part)
        memory_entries = memory.query(query, config.memory.max_results) if memory and query else []

        vcs = git_tools.is_git_repo(self.root)
        shared = build_context_pack(self.root, store, run, config, memory_entries, vcs=vcs)
        transcript = Transcript(store, stream=options.stream)
        ctx = PhaseContext(
            root=self.root,
            config=config,
            run=run,
            store=store,
            invoker=self.invoker_factory(config, run, store, agent_meta),
            transcript=transcript,
            prompts=PromptBuilder(
                PromptCatalog.for_root(self.root),
                run,
                config.agent_names,
                shared.summary,
                parent_summary,
            ),
            worktrees=WorktreeManager(vcs=vcs),
            vcs=vcs,
        )
        ctx.analysis_worktrees = self._analysis_worktrees(ctx)

        self._analysis_phases(ctx)
        decision = DecisionEngine(ctx).decide()
        execution_plan = ExecutionPlanner(ctx).run(decision)

        if options.interactive:
            approved, decision = self._interactive_gate(ctx, decision)
            if not approved:
                transcript.note(_INTERACTIVE, "Execution skipped by user.")
                self._final_phase(ctx, decision, ConvergenceOutcome())
                persist_run_memory(memory, store, run, decision)
                self._final_note(ctx, decision, applied_requested=False, skipped=True)
                return RunOutcome(
                    session_id=run.session_id,
                    run_id=run.run_id,
                    run_dir=store.run_dir,
                    decision=decision,
                    executed=False,
                    final_patch=self._final_patch_path(store),
                )

        transcript.note(_IMPLEMENT, "Starting implementation phase.")
        ImplementationEngine(ctx).run(decision, execution_plan)
        review = run_review(ctx, decision)
        convergence = ConvergenceEngine(ctx).run(decision, review)

        self._final_phase(ctx, decision, convergence)
        persist_run_memory(memory, store, run, decision)

        applied = False
        violations: list[str] = []
        if options.apply:
            applied, violations = self._apply(ctx, decision)
        self._final_note(ctx, decision, applied_requested=options.apply)
        logger.info("Run %s finished (winner=%s)", run.run_id, decision.winner)
        return RunOutcome(
            session_id=run.session_id,
            run_id=run.run_id,
            run_dir=store.run_dir,
            decision=decision,
            final_patch=self._final_patch_path(store),
            applied=applied,
            violations=violations,
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _effective_config(self, options: RunOptions) -> OrchestratorConfig:
        config = self.config
        if options.decision_mode:
            config = config.with_decision_mode(options.decision_mode)
        if options.interactive:
            config = config.with_interactive_overrides(decision_mode_given=bool(options.decision_mode))
        return config

    @staticmethod
    def _validate_branch(sessions: SessionStore, options: RunOptions) -> str | None:
        """Check a branch request and return the parent's summary."""
        if not options.branch_from:
            return None
        if not options.session_id:
            raise BranchingError("Branching requires --session to be set.")
        if not options.branch_prompt:
            raise BranchingError("Branching requires --branch-prompt to be set.")
        return sessions.parent_summary(options.session_id, options.branch_from)

    @staticmethod
    def _analysis_worktrees(ctx: PhaseContext) -> dict[str, Path]:
        if not ctx.config.context.isolate_workspaces:
            return {}
        return {
            agent: ctx.worktrees.acquire(ctx.root, ctx.worktree_path("analysis", agent)) for agent in ctx.agents
        }

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @staticmethod
    def _analysis_phases(ctx: PhaseContext) -> None:
        """Plan, then propose, with both agents working independently."""
        for phase, prompt in (
            (PipelinePhase.PLAN, ctx.prompts.plan()),
            (PipelinePhase.PROPOSE, ctx.prompts.propose()),
        ):
            logger.info("Phase %s", phase.value)
            ctx.transcript.prompt(phase.value, prompt)
            for agent in ctx.agents:
                ctx.call_agent(
                    agent,
                    phase.value,
                    prompt,
                    cwd=ctx.analysis_cwd(agent),
                    log_key=(phase.value, agent),
                    output_key=(phase.value, f"{agent}.md"),
                )

    def _interactive_gate(self, ctx: PhaseContext, decision: Decision) -> tuple[bool, Decision]:
        """Ask whether to implement and with which driver.

        Without a terminal on stdin the run proceeds with the decided driver.
        """
        transcript = ctx.transcript
        transcript.note(
            _INTERACTIVE, "Execution plan generated. Waiting for your approval to execute implementation."
        )
        isatty = self.stdin_isatty if self.stdin_isatty is not None else sys.stdin.isatty()
        if not isatty:
            transcript.note(
                _INTERACTIVE, "Non-TTY stdin detected; auto-approving execution and using auto driver."
            )
            return True, decision

        approved = ask_yes_no("Execute the implementation now? (y/N) ", default=False, input_fn=self.input_fn)
        transcript.note(_INTERACTIVE, f"User approval: {'yes' if approved else 'no'}")
        if not approved:
            return False, decision

        choices = ["auto", *ctx.agents]
        menu = "  ".join(
            f"[{index}] {name}{' (decision)' if name == 'auto' else ''}" for index, name in enumerate(choices, 1)
        )
        choice = ask_choice(f"Pick implementation driver: {menu}  > ", choices, input_fn=self.input_fn)
        transcript.note(_INTERACTIVE, f"Driver choice: {choice}")
        if choice != "auto":
            decision = decision.model_copy(update={"execution_driver": choice})
            transcript.note(_INTERACTIVE, f"Execution driver overridden to: {choice}")
        return True, decision

    def _final_phase(self, ctx: PhaseContext, decision: Decision, convergence: ConvergenceOutcome) -> None:
        store = ctx.store
        store.put_json(_FINAL, "winner.json", payload=decision)

        if convergence.ran:
            patch = store.get_text(PipelinePhase.CONVERGE.value, "final.patch")
        elif ctx.config.implementation.mode == "joint":
            patch = store.get_text(_IMPLEMENT, JOINT_DIR, "final.patch")
        elif decision.has_winner:
            patch = store.get_text(_IMPLEMENT, decision.winner, "diff.patch")
        else:
            patch = None
        if patch:
            store.put_text(_FINAL, "final.patch", content=patch)

        store.put_text(_FINAL, "summary.md", content=build_summary(store, ctx.run, decision))

    @staticmethod
    def _final_patch_path(store: RunStore) -> Path | None:
        path = store.path(_FINAL, "final.patch")
        return path if path.is_file() else None

    def _apply(self, ctx: PhaseContext, decision: Decision) -> tuple[bool, list[str]]:
        """Apply the final patch to the project root.

        Guardrails are checked first; any violation blocks the apply and
        leaves the working tree untouched.
        """
        config = ctx.config
        store = ctx.store
        if config.implementation.mode == "joint":
            source = ctx.worktree_path(DRIVER_WORKTREE)
        elif decision.has_winner:
            source = ctx.worktree_path(decision.winner)
        else:
            logger.info("Apply skipped: no winner in parallel mode")
            return False, []

        patch = store.get_text(_FINAL, "final.patch") or ""
        if config.guardrails.enabled:
            files = diffing.extract_changed_files(patch, ctx.root, ctx.root if ctx.vcs else source)
            violations = evaluate_guardrails(config.guardrails, files, diffing.summarize_diff(patch))
            if violations:
                store.put_text(
                    _FINAL,
                    "apply.log",
                    content="Guardrails blocked apply.\n\n" + "\n".join(f"- {v}" for v in violations) + "\n",
                )
                logger.warning("Guardrails blocked apply: %s", "; ".join(violations))
                return False, violations

        if ctx.vcs:
            if not patch.strip():
                logger.info("Apply skipped: final patch is empty")
                return False, []
            outcome = diffing.apply_patch(ctx.root, patch, vcs=True)
            store.put_text(_FINAL, "apply.log", content=outcome.output)
            applied = outcome.applied
        else:
            ctx.worktrees.sync(source, ctx.root)
            store.put_text(
                _FINAL,
                "apply.log",
                content=f"Synced worktree into workspace (non-git mode).\nSource: {source}\nTarget: {ctx.root}\n",
            )
            applied = True

        run_check(
            config.tests,
            ctx.root,
            store=store,
            log_key=(_FINAL, "tests.log"),
            timeout_seconds=config.limits.command_timeout_seconds,
            name="tests",
        )
        return applied, []

    @staticmethod
    def _final_note(ctx: PhaseContext, decision: Decision, *, applied_requested: bool, skipped: bool = False) -> None:
        store = ctx.store
        lines = [
            f"Winner: {decision.winner}",
            f"Summary: {store.path(_FINAL, 'summary.md')}",
            f"Patch: {store.path(_FINAL, 'final.patch')}",
        ]
        if skipped:
            lines.append("Execution was skipped; no changes were applied.")
        elif applied_requested:
            lines.append(f"Apply log: {store.path(_FINAL, 'apply.log')}")
        ctx.transcript.note(_FINAL, "\n".join(lines))
