"""Convergence: a bounded fixer/critic loop over the implemented patch."""

from __future__ import annotations

import logging
from pathlib import Path

from duet import diffing
from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.pipeline.review import merge_review_summaries, parse_review_summary, read_review_summaries
from duet.roles import FixerCritic
from duet.schemas import ConvergenceOutcome, ConvergenceRound, Decision, ReviewSummary

logger = logging.getLogger(__name__)

_PHASE = PipelinePhase.CONVERGE.value


class ConvergenceEngine:
    """Address review blockers and failing tests until both are clear.

    The loop runs only when review and convergence are enabled and either the
    initial review reported blockers or the pre-convergence tests failed.  It
    never exceeds ``converge.max_rounds``; an exhausted loop is not an error
    and leaves the latest review and diff in place.
    """

    def __init__(self, ctx: PhaseContext) -> None:
        self.ctx = ctx

    def _canonical_worktree(self, decision: Decision) -> Path | None:
        ctx = self.ctx
        if ctx.config.implementation.mode == "joint":
            return ctx.worktree_path("driver")
        if decision.has_winner:
            return ctx.worktree_path(decision.winner)
        return None

    def _initial_roles(self, decision: Decision) -> FixerCritic:
        ctx = self.ctx
        fixer = decision.winner if decision.has_winner else ctx.agents[0]
        if ctx.config.implementation.mode == "joint":
            meta = ctx.store.get_json(PipelinePhase.IMPLEMENT.value, "joint", "meta.json")
            driver = meta.get("driver") if isinstance(meta, dict) else None
            if driver in ctx.agents:
                fixer = driver
        return FixerCritic(fixer=fixer, critic=ctx.other_agent(fixer))

    def run(self, decision: Decision, initial_review: ReviewSummary | None = None) -> ConvergenceOutcome:
        ctx = self.ctx
        if not (ctx.config.converge.enabled and ctx.config.review.enabled):
            return ConvergenceOutcome()
        worktree = self._canonical_worktree(decision)
        if worktree is None or not worktree.exists():
            logger.info("Convergence skipped: no implementation worktree")
            return ConvergenceOutcome()

        review = initial_review
        if review is None:
            review = read_review_summaries(ctx.store, ctx.config.reviewers)
        roles = self._initial_roles(decision)

        diff = ctx.diff(worktree)
        changed = diffing.extract_changed_files(diff, ctx.root, worktree)
        stats = diffing.summarize_diff(diff)
        last_test_exit = ctx.run_tests(worktree, (_PHASE, "pre_test.log"))
        if last_test_exit is not None:
            ctx.transcript.note(_PHASE, f"Pre-converge tests exit code: {last_test_exit}")

        if not review.has_blockers and last_test_exit in (None, 0):
            logger.info("Convergence not needed: no blockers and tests passing (if enabled)")
            return ConvergenceOutcome(
                review=review, diff=diff, changed_files=changed, stats=stats, last_test_exit_code=last_test_exit
            )

        execution_plan = ctx.store.get_text(PipelinePhase.EXECUTION_PLAN.value, "final.md") or ""
        max_rounds = ctx.config.converge.max_rounds
        rounds: list[ConvergenceRound] = []
        converged = False

        for round_number in range(1, max_rounds + 1):
            round_key = (_PHASE, f"round_{round_number}")
            logger.info("Converge round %d/%d: fixer=%s critic=%s", round_number, max_rounds, roles.fixer, roles.critic)

            prompt = ctx.prompts.converge_fix(
                decision,
                roles.fixer,
                roles.critic,
                execution_plan,
                review,
                changed,
                stats,
                last_test_exit,
                round_number,
                max_rounds,
            )
            ctx.transcript.prompt(_PHASE, prompt, round_number=round_number)
            fixer_result = ctx.call_agent(
                roles.fixer,
                "converge",
                prompt,
                cwd=worktree,
                log_key=(*round_key, "fixer"),
                output_key=(*round_key, "fixer.md"),
                round_number=round_number,
            )

            diff = ctx.diff(worktree)
            changed = diffing.extract_changed_files(diff, ctx.root, worktree)
            stats = diffing.summarize_diff(diff)
            ctx.store.put_text(*round_key, "diff.patch", content=diff)

            test_exit = ctx.run_tests(worktree, (*round_key, "test.log"))
            if test_exit is not None:
                last_test_exit = test_exit
                ctx.transcript.note(
                    _PHASE, f"Round {round_number} tests exit code: {test_exit}", round_number=round_number
                )

            review_prompt = ctx.prompts.review(f"converge (fixer: {roles.fixer})", diff)
            ctx.transcript.prompt(_PHASE, review_prompt, round_number=round_number)
            critic_result = ctx.call_agent(
                roles.critic,
                "review",
                review_prompt,
                cwd=worktree,
                log_key=(*round_key, "critic"),
                output_key=(*round_key, "critic.md"),
                transcript_phase=_PHASE,
                round_number=round_number,
            )
            parsed = parse_review_summary(critic_result.stdout)
            review = merge_review_summaries([parsed] if parsed else [])
            ctx.store.put_json(*round_key, "review.json", payload=review)

            rounds.append(
                ConvergenceRound(
                    round_number=round_number,
                    fixer=roles.fixer,
                    critic=roles.critic,
                    fixer_exit_code=fixer_result.exit_code,
                    test_exit_code=test_exit,
                    blockers=len(review.blockers),
                    warnings=len(review.warnings),
                )
            )

            if not review.has_blockers and last_test_exit in (None, 0):
                ctx.transcript.note(
                    _PHASE,
                    "Converge complete: no blockers and tests passing (if enabled).",
                    round_number=round_number,
                )
                converged = True
                break

            if round_number < max_rounds:
                swapped = roles.swap()
                ctx.transcript.note(
                    _PHASE,
                    f"Swapping fixer role from {roles.fixer} to {swapped.fixer} for next converge round.",
                    round_number=round_number,
                )
                roles = swapped

        if not converged:
            logger.warning(
                "Convergence stopped after %d round(s) with %d blocker(s)", len(rounds), len(review.blockers)
            )

        ctx.store.put_text(_PHASE, "final.patch", content=diff)
        ctx.store.put_json(
            _PHASE,
            "meta.json",
            payload={
                "worktree": str(worktree),
                "converged": converged,
                "rounds": len(rounds),
                "final": review.model_dump(),
                "diff_stats": stats.model_dump(),
                "files": changed,
            },
        )
        return ConvergenceOutcome(
            ran=True,
            converged=converged,
            rounds=rounds,
            review=review,
            diff=diff,
            changed_files=changed,
            stats=stats,
            last_test_exit_code=last_test_exit,
        )
