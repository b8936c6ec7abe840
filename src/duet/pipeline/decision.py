"""Decision phase: pick which agent's approach the run follows.

Three strategies are supported:

* rule-based (``prefer-<agent>`` / ``neither``): no agent call;
* ``judge``: one configured agent compares both proposals;
* ``debate``: both agents judge independently, then critique each other's
  judgment for at most ``decision.debate_rounds`` rounds.

Judge output that cannot be parsed is treated as "no signal", never as an
error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from duet.json_extract import extract_json_object
from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.schemas import NEITHER, Decision, Judgment

logger = logging.getLogger(__name__)

DECISION_FILE = "decision.json"
UNPARSEABLE_RATIONALE = "Judge output was not parseable. Defaulting to neither."

_DECIDE = PipelinePhase.DECIDE.value


def parse_judgment(text: str | None, agents: tuple[str, str]) -> Judgment | None:
    """Parse ``{"winner", "rationale"}`` from judge output.

    Returns ``None`` when no JSON object is found or the winner is not one of
    *agents* / ``neither``.
    """
    payload = extract_json_object(text)
    if payload is None:
        return None
    winner = payload.get("winner")
    if not isinstance(winner, str):
        return None
    winner = winner.strip().lower()
    if winner not in (*agents, NEITHER):
        return None
    rationale = payload.get("rationale")
    return Judgment(winner=winner, rationale=rationale if isinstance(rationale, str) else "")


def agreed_winner(judgments: Mapping[str, Judgment | None]) -> str | None:
    """Return the shared winner when every judgment parsed and agrees."""
    picks = list(judgments.values())
    if not picks or any(pick is None for pick in picks):
        return None
    winners = {pick.winner for pick in picks}
    return winners.pop() if len(winners) == 1 else None


def _consensus_rationale(prefix: str, judgments: Mapping[str, Judgment | None]) -> str:
    details = " ".join(f"{agent}: {pick.rationale}" for agent, pick in judgments.items() if pick)
    return f"{prefix} {details}".strip()


class DecisionEngine:
    """Runs the decision phase and persists ``decide/decision.json``."""

    def __init__(self, ctx: PhaseContext) -> None:
        self.ctx = ctx

    def decide(self) -> Decision:
        mode = self.ctx.config.decision.mode
        logger.info("Decision phase (mode=%s)", mode)
        if mode == "judge":
            decision = self._judge(mode)
            transcript_phase = "judge"
        elif mode == "debate":
            decision = self._debate(mode)
            transcript_phase = "debate"
        else:
            decision = self._rule_based(mode)
            transcript_phase = _DECIDE

        self.ctx.store.put_json(_DECIDE, DECISION_FILE, payload=decision)
        self.ctx.transcript.decision(transcript_phase, decision.model_dump_json(indent=2))
        logger.info("Decision: %s (%s)", decision.winner, decision.rationale)
        return decision

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _rule_based(self, mode: str) -> Decision:
        if mode.startswith("prefer-"):
            winner = mode.removeprefix("prefer-")
            return Decision(mode=mode, winner=winner, rationale=f"Rule-based decision: {mode.replace('-', ' ')}.")
        return Decision(mode=mode, winner=NEITHER, rationale="Rule-based decision: neither.")

    def _judge(self, mode: str) -> Decision:
        ctx = self.ctx
        judge_agent = ctx.config.decision.judge_agent or ctx.agents[0]
        prompt = ctx.prompts.judge(ctx.proposal_inputs())
        ctx.transcript.prompt("judge", prompt)
        result = ctx.call_agent(
            judge_agent,
            "judge",
            prompt,
            cwd=ctx.analysis_cwd(judge_agent),
            log_key=(_DECIDE, "judge"),
            output_key=(_DECIDE, "judge.md"),
            timeout_seconds=ctx.config.limits.judge_timeout_seconds,
        )
        judgment = parse_judgment(result.stdout, ctx.agents)
        if judgment is None:
            logger.warning("Judge %s returned no parseable decision", judge_agent)
            return Decision(mode=mode, winner=NEITHER, rationale=UNPARSEABLE_RATIONALE, judge_agent=judge_agent)
        return Decision(mode=mode, winner=judgment.winner, rationale=judgment.rationale, judge_agent=judge_agent)

    def _debate(self, mode: str) -> Decision:
        ctx = self.ctx
        inputs = ctx.proposal_inputs()

        prompt = ctx.prompts.judge(inputs)
        ctx.transcript.prompt("debate", prompt, round_number=0)
        outputs = self._collect_judgments(prompt, (_DECIDE,), round_number=0)
        judgments = {agent: parse_judgment(text, ctx.agents) for agent, text in outputs.items()}
        winner = agreed_winner(judgments)
        if winner is not None:
            return Decision(
                mode=mode,
                winner=winner,
                rationale=_consensus_rationale("Consensus after initial judgment.", judgments),
            )

        rounds = ctx.config.decision.debate_rounds
        for round_number in range(1, rounds + 1):
            logger.info("Debate round %d/%d", round_number, rounds)
            prompt = ctx.prompts.debate(inputs, outputs)
            ctx.transcript.prompt("debate", prompt, round_number=round_number)
            outputs = self._collect_judgments(
                prompt, (_DECIDE, f"debate_round_{round_number}"), round_number=round_number
            )
            judgments = {agent: parse_judgment(text, ctx.agents) for agent, text in outputs.items()}
            winner = agreed_winner(judgments)
            if winner is not None:
                return Decision(
                    mode=mode,
                    winner=winner,
                    rationale=_consensus_rationale(f"Consensus after debate round {round_number}.", judgments),
                )

        return Decision(
            mode=mode,
            winner=NEITHER,
            rationale=f"Judges did not converge after {rounds} debate round(s); no convergence.",
        )

    def _collect_judgments(
        self, prompt: str, base_key: tuple[str, ...], *, round_number: int
    ) -> dict[str, str]:
        ctx = self.ctx
        outputs: dict[str, str] = {}
        for agent in ctx.agents:
            result = ctx.call_agent(
                agent,
                "judge",
                prompt,
                cwd=ctx.analysis_cwd(agent),
                log_key=(*base_key, agent),
                output_key=(*base_key, f"{agent}.md"),
                transcript_phase="debate",
                round_number=round_number,
                timeout_seconds=ctx.config.limits.judge_timeout_seconds,
            )
            outputs[agent] = result.stdout
        return outputs
