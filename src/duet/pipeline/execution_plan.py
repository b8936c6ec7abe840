"""Execution plan: draft, cross-review and finalize in exactly three calls."""

from __future__ import annotations

import logging

from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.schemas import Decision

logger = logging.getLogger(__name__)

_PHASE = PipelinePhase.EXECUTION_PLAN.value
_TRANSCRIPT_PHASE = "execution-plan"


class ExecutionPlanner:
    """The winner (or the first agent) drafts, the other critiques, the planner revises.

    There is no iteration: whatever the critique says, the third call's
    output is the final plan.
    """

    def __init__(self, ctx: PhaseContext) -> None:
        self.ctx = ctx

    def roles(self, decision: Decision) -> tuple[str, str]:
        planner = decision.winner if decision.winner in self.ctx.agents else self.ctx.agents[0]
        return planner, self.ctx.other_agent(planner)

    def run(self, decision: Decision) -> str:
        ctx = self.ctx
        planner, reviewer = self.roles(decision)
        logger.info("Execution plan (planner=%s, reviewer=%s)", planner, reviewer)

        prompt = ctx.prompts.execution_plan_draft(decision, planner, reviewer, ctx.proposal_inputs())
        ctx.transcript.prompt(_TRANSCRIPT_PHASE, prompt)
        draft = ctx.call_agent(
            planner,
            "execution-plan",
            prompt,
            cwd=ctx.analysis_cwd(planner),
            log_key=(_PHASE, planner),
            output_key=(_PHASE, f"{planner}_draft.md"),
            transcript_phase=_TRANSCRIPT_PHASE,
        ).stdout

        prompt = ctx.prompts.execution_plan_review(decision, planner, reviewer, draft)
        ctx.transcript.prompt(_TRANSCRIPT_PHASE, prompt)
        feedback = ctx.call_agent(
            reviewer,
            "execution-plan-review",
            prompt,
            cwd=ctx.analysis_cwd(reviewer),
            log_key=(_PHASE, reviewer),
            output_key=(_PHASE, f"{reviewer}_review.md"),
            transcript_phase=_TRANSCRIPT_PHASE,
        ).stdout

        prompt = ctx.prompts.execution_plan_finalize(decision, planner, reviewer, draft, feedback)
        ctx.transcript.prompt(_TRANSCRIPT_PHASE, prompt)
        final = ctx.call_agent(
            planner,
            "execution-plan-final",
            prompt,
            cwd=ctx.analysis_cwd(planner),
            log_key=(_PHASE, f"{planner}_final"),
            output_key=(_PHASE, "final.md"),
            transcript_phase=_TRANSCRIPT_PHASE,
        ).stdout

        ctx.store.put_json(_PHASE, "meta.json", payload={"planner": planner, "reviewer": reviewer})
        return final
