"""Implementation phase: parallel (independent) or joint (driver/navigator).

Parallel mode gives each agent its own worktree and the same inputs.  Joint
mode shares one driver worktree across a bounded number of rounds; each
round a navigator edits a clone of the driver's state and its delta is
patched back into the driver worktree.
"""

from __future__ import annotations

import logging
from pathlib import Path

from duet import diffing
from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.roles import DriverNavigator, resolve_driver
from duet.schemas import (
    Decision,
    ImplementationResult,
    JointOutcome,
    JointRound,
    JointStopReason,
)

logger = logging.getLogger(__name__)

_PHASE = PipelinePhase.IMPLEMENT.value
JOINT_DIR = "joint"
DRIVER_WORKTREE = "driver"


class ImplementationEngine:
    """Runs the configured implementation strategy for one run."""

    def __init__(self, ctx: PhaseContext) -> None:
        self.ctx = ctx

    def run(self, decision: Decision, execution_plan: str) -> list[ImplementationResult] | JointOutcome:
        if self.ctx.config.implementation.mode == "joint":
            return self.run_joint(decision, execution_plan)
        return self.run_parallel(decision, execution_plan)

    # ------------------------------------------------------------------
    # Parallel
    # ------------------------------------------------------------------

    def run_parallel(self, decision: Decision, execution_plan: str) -> list[ImplementationResult]:
        """Let each agent implement independently, one after the other."""
        ctx = self.ctx
        prompt = ctx.prompts.implement(decision, execution_plan)
        results: list[ImplementationResult] = []
        for agent in ctx.agents:
            logger.info("Parallel implementation: %s", agent)
            worktree = ctx.worktrees.acquire(ctx.root, ctx.worktree_path(agent))
            ctx.transcript.prompt(_PHASE, prompt)
            result = ctx.call_agent(
                agent,
                "implement",
                prompt,
                cwd=worktree,
                log_key=(_PHASE, agent),
                output_key=(_PHASE, agent, "output.md"),
            )

            diff = ctx.diff(worktree)
            ctx.store.put_text(_PHASE, agent, "diff.patch", content=diff)
            changed = diffing.extract_changed_files(diff, ctx.root, worktree)
            stats = diffing.summarize_diff(diff)
            test_exit = ctx.run_tests(worktree, (_PHASE, agent, "test.log"))
            ctx.run_lint(worktree, (_PHASE, agent, "lint.log"))

            ctx.store.put_json(
                _PHASE,
                agent,
                "meta.json",
                payload={
                    "agent": agent,
                    "exit_code": result.exit_code,
                    "changed_files": changed,
                    "diff_stats": stats.model_dump(),
                    "test_exit_code": test_exit,
                },
            )
            results.append(
                ImplementationResult(
                    agent=agent,
                    exit_code=result.exit_code,
                    worktree=worktree,
                    diff=diff,
                    changed_files=changed,
                    stats=stats,
                    test_exit_code=test_exit,
                )
            )
        return results

    # ------------------------------------------------------------------
    # Joint
    # ------------------------------------------------------------------

    def run_joint(self, decision: Decision, execution_plan: str) -> JointOutcome:
        """Drive the bounded driver/navigator loop on a shared worktree.

        After each round the loop stops when the navigator had nothing to add
        and tests are absent or passing, or when the navigator patch was not
        applied (it was rejected, or is left for manual apply).  Otherwise
        roles swap on a failing test run (when ``swap_driver_on_fail``) or
        every round (when ``swap_driver_each_round``).
        """
        ctx = self.ctx
        settings = ctx.config.implementation
        max_rounds = settings.max_rounds
        roles = resolve_driver(decision, ctx.agents, settings.driver)
        driver_worktree = ctx.worktrees.acquire(ctx.root, ctx.worktree_path(DRIVER_WORKTREE))
        logger.info("Joint implementation (driver=%s, navigator=%s, max_rounds=%d)", roles.driver, roles.navigator, max_rounds)

        rounds: list[JointRound] = []
        stop_reason = JointStopReason.MAX_ROUNDS
        navigator_notes = ""
        last_test_exit: int | None = None

        for round_number in range(1, max_rounds + 1):
            record, navigator_notes, patch = self._joint_round(
                decision,
                roles,
                driver_worktree,
                execution_plan,
                navigator_notes,
                last_test_exit,
                round_number,
            )
            rounds.append(record)
            last_test_exit = record.test_exit_code

            if not patch.strip() and last_test_exit in (None, 0):
                ctx.transcript.note(
                    _PHASE,
                    "Stopping early: tests passing and no navigator changes."
                    if last_test_exit == 0
                    else "Stopping early: no navigator changes.",
                    round_number=round_number,
                )
                stop_reason = JointStopReason.CONVERGED
                break

            if record.patch_applied is False:
                ctx.transcript.note(
                    _PHASE,
                    "Stopping early: navigator patch left for manual apply."
                    if settings.apply_navigator_patch == "manual"
                    else "Stopping early: navigator patch failed to apply.",
                    round_number=round_number,
                )
                stop_reason = JointStopReason.APPLY_FAILED
                break

            if settings.swap_driver_on_fail and last_test_exit not in (None, 0):
                roles = self._swap(roles, "due to failing tests", round_number)
            elif settings.swap_driver_each_round and round_number < max_rounds:
                roles = self._swap(roles, "for next round", round_number)

        base_key = (_PHASE, JOINT_DIR)
        final_diff = ctx.diff(driver_worktree)
        ctx.store.put_text(*base_key, "final.patch", content=final_diff)
        changed = diffing.extract_changed_files(final_diff, ctx.root, driver_worktree)
        stats = diffing.summarize_diff(final_diff)
        ctx.store.put_json(
            *base_key,
            "meta.json",
            payload={
                "driver": roles.driver,
                "navigator": roles.navigator,
                "rounds": len(rounds),
                "stop_reason": stop_reason.value,
                "changed_files": changed,
                "diff_stats": stats.model_dump(),
            },
        )
        logger.info("Joint implementation finished after %d round(s): %s", len(rounds), stop_reason.value)
        return JointOutcome(
            driver=roles.driver,
            navigator=roles.navigator,
            worktree=driver_worktree,
            rounds=rounds,
            stop_reason=stop_reason,
            diff=final_diff,
            changed_files=changed,
            stats=stats,
        )

    def _swap(self, roles: DriverNavigator, reason: str, round_number: int) -> DriverNavigator:
        swapped = roles.swap()
        self.ctx.transcript.note(
            _PHASE,
            f"Swapping driver role from {roles.driver} to {swapped.driver} {reason}.",
            round_number=round_number,
        )
        return swapped

    def _joint_round(
        self,
        decision: Decision,
        roles: DriverNavigator,
        driver_worktree: Path,
        execution_plan: str,
        navigator_notes: str,
        last_test_exit: int | None,
        round_number: int,
    ) -> tuple[JointRound, str, str]:
        """Run one driver turn and one navigator turn.

        Returns the round record, the navigator's notes and the navigator
        patch text.
        """
        ctx = self.ctx
        settings = ctx.config.implementation
        max_rounds = settings.max_rounds
        round_key = (_PHASE, JOINT_DIR, f"round_{round_number}")
        driver_key = (*round_key, "driver")
        navigator_key = (*round_key, "navigator")
        logger.info("Joint round %d/%d: driver=%s navigator=%s", round_number, max_rounds, roles.driver, roles.navigator)

        # Driver turn
        prompt = ctx.prompts.joint_driver(
            decision,
            roles.driver,
            roles.navigator,
            execution_plan,
            navigator_notes,
            last_test_exit,
            round_number,
            max_rounds,
        )
        ctx.transcript.prompt(_PHASE, prompt, round_number=round_number)
        driver_result = ctx.call_agent(
            roles.driver,
            "implement",
            prompt,
            cwd=driver_worktree,
            log_key=driver_key,
            output_key=(*driver_key, "output.md"),
            round_number=round_number,
        )
        driver_diff = ctx.diff(driver_worktree)
        ctx.store.put_text(*driver_key, "diff.patch", content=driver_diff)

        test_exit: int | None = None
        if settings.tests_during_loop:
            test_exit = ctx.run_tests(driver_worktree, (*driver_key, "test.log"))
            if test_exit is not None:
                ctx.transcript.note(_PHASE, f"Driver tests exit code: {test_exit}", round_number=round_number)

        # Navigator turn on a clone of the driver's current state
        navigator_worktree = ctx.worktrees.clone(
            driver_worktree, ctx.worktree_path(f"navigator_round_{round_number}")
        )
        prompt = ctx.prompts.joint_navigator(
            decision,
            roles.driver,
            roles.navigator,
            execution_plan,
            driver_diff,
            test_exit,
            round_number,
            max_rounds,
        )
        ctx.transcript.prompt(_PHASE, prompt, round_number=round_number)
        navigator_result = ctx.call_agent(
            roles.navigator,
            "collab",
            prompt,
            cwd=navigator_worktree,
            log_key=navigator_key,
            output_key=(*navigator_key, "output.md"),
            transcript_phase=_PHASE,
            round_number=round_number,
        )

        patch = diffing.diff_trees(driver_worktree, navigator_worktree)
        ctx.store.put_text(*navigator_key, "navigator.patch", content=patch)

        applied: bool | None = None
        if patch.strip():
            if settings.apply_navigator_patch == "auto":
                outcome = diffing.apply_patch(driver_worktree, patch, vcs=ctx.vcs)
                applied = outcome.applied
                ctx.store.put_text(*navigator_key, "apply.log", content=outcome.output)
                ctx.transcript.note(
                    _PHASE, f"Navigator patch apply: {'ok' if applied else 'failed'}", round_number=round_number
                )
            else:
                applied = False
                ctx.store.put_text(
                    *navigator_key,
                    "apply.log",
                    content="Navigator patch left for manual apply (apply_navigator_patch=manual).\n",
                )

        if settings.tests_during_loop:
            post_exit = ctx.run_tests(driver_worktree, (*navigator_key, "post_test.log"))
            if post_exit is not None:
                test_exit = post_exit
                ctx.transcript.note(_PHASE, f"Post-patch tests exit code: {post_exit}", round_number=round_number)

        record = JointRound(
            round_number=round_number,
            driver=roles.driver,
            navigator=roles.navigator,
            driver_exit_code=driver_result.exit_code,
            navigator_exit_code=navigator_result.exit_code,
            test_exit_code=test_exit,
            navigator_patch_empty=not patch.strip(),
            patch_applied=applied,
        )
        return record, navigator_result.text, patch
