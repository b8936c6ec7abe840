"""Assemble agent prompts from catalog text and run inputs."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from duet.prompts.catalog import PromptCatalog
from duet.runner_common import substitute_placeholders
from duet.schemas import NEITHER, Decision, DiffStats, ReviewIssue, ReviewSummary, RunContext

_TRAILING_SPACE_RE = re.compile(r"\s+\n")
_MAX_LISTED_ISSUES = 8
_MAX_LISTED_FILES = 20


def truncate_inline(text: str | None, max_chars: int) -> str:
    """Normalize trailing whitespace and clip *text* to *max_chars*.

    A clipped result ends with a single space as the truncation marker.
    """
    normalized = _TRAILING_SPACE_RE.sub("\n", text or "").strip()
    if max_chars <= 0:
        return ""
    if len(normalized) <= max_chars:
        return normalized
    return normalized[:max_chars] + " "


def _join(parts: Iterable[str | None], sep: str = "\n\n") -> str:
    return sep.join(part for part in parts if part)


def _issue_lines(issues: list[ReviewIssue]) -> str:
    if not issues:
        return "none"
    return "\n".join(
        f"- {issue.id}: {issue.summary}{f' ({issue.file})' if issue.file else ''}"
        for issue in issues[:_MAX_LISTED_ISSUES]
    )


@dataclass
class ProposalInputs:
    """Plan and proposal texts of both agents, keyed by agent name."""

    plans: dict[str, str] = field(default_factory=dict)
    proposals: dict[str, str] = field(default_factory=dict)

    def lines(self, agents: Iterable[str], limit: int) -> list[str]:
        agents = list(agents)
        rows = [f"{agent}.plan: {truncate_inline(self.plans.get(agent, ''), limit)}" for agent in agents]
        rows += [f"{agent}.propose: {truncate_inline(self.proposals.get(agent, ''), limit)}" for agent in agents]
        return rows


class PromptBuilder:
    """Builds every prompt of one run.

    Parameters
    ----------
    catalog:
        Source of instruction text.
    run:
        Task, run mode and branch prompt of the current run.
    agents:
        The two configured agent names, in configuration order.
    shared_context:
        Context-pack summary included (trimmed) in most prompts.
    parent_summary:
        Final summary of the parent run when branching.
    """

    def __init__(
        self,
        catalog: PromptCatalog,
        run: RunContext,
        agents: tuple[str, str],
        shared_context: str,
        parent_summary: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.run = run
        self.agents = agents
        self.shared_context = shared_context
        self.parent_summary = parent_summary

    def _t(self, section: str, key: str) -> str:
        return self.catalog.text(section, key)

    def _winner_choices(self) -> str:
        return "|".join(f"'{name}'" for name in (*self.agents, NEITHER))

    def _header(self) -> list[str]:
        return [f"Task: {self.run.task}", f"Run mode: {self.run.run_mode}"]

    @staticmethod
    def _decision_line(decision: Decision, limit: int = 240) -> str:
        return f"Decision: {decision.winner} ({truncate_inline(decision.rationale, limit)})"

    # ------------------------------------------------------------------
    # Analysis phases
    # ------------------------------------------------------------------

    def _analysis(self, section: str) -> str:
        parts = [self._t(section, "intro"), *self._header(), self._t(section, "output"), self._t(section, "rules")]
        if self.run.branch_prompt:
            parts.append(f"Branch prompt: {self.run.branch_prompt}")
        if self.parent_summary:
            parts.append(f"Parent summary: {truncate_inline(self.parent_summary, 800)}")
        if self.run.run_mode == "bugfix":
            parts.append(self._t(section, "bugfix"))
        elif self.run.run_mode == "plan":
            parts.append(self._t(section, "plan_only"))
        parts.extend(["Context:", self.shared_context])
        return _join(parts)

    def plan(self) -> str:
        return self._analysis("plan")

    def propose(self) -> str:
        return self._analysis("propose")

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def judge(self, inputs: ProposalInputs) -> str:
        output = substitute_placeholders(self._t("judge", "output"), {"choices": self._winner_choices()})
        return _join(
            [
                self._t("judge", "intro"),
                *self._header(),
                self._t("judge", "independent"),
                output,
                "Context:" if self.shared_context else "",
                truncate_inline(self.shared_context, 2000),
                "Inputs (trimmed):",
                *inputs.lines(self.agents, 1400),
            ]
        )

    def debate(self, inputs: ProposalInputs, prior: Mapping[str, str]) -> str:
        """Debate prompt exposing both judges' latest judgments."""
        output = substitute_placeholders(self._t("debate", "output"), {"choices": self._winner_choices()})
        return _join(
            [
                self._t("debate", "intro"),
                *self._header(),
                self._t("debate", "stance"),
                output,
                "Context:" if self.shared_context else "",
                truncate_inline(self.shared_context, 2000),
                "Inputs (trimmed):",
                *inputs.lines(self.agents, 1200),
                *(f"{agent}.judge: {truncate_inline(prior.get(agent, ''), 1200)}" for agent in self.agents),
            ]
        )

    # ------------------------------------------------------------------
    # Execution plan
    # ------------------------------------------------------------------

    def _roles_line(self, planner: str, reviewer: str) -> str:
        return f"Planner: {planner} | Reviewer: {reviewer}"

    def execution_plan_draft(self, decision: Decision, planner: str, reviewer: str, inputs: ProposalInputs) -> str:
        return _join(
            [
                self._t("execution_plan", "intro"),
                *self._header(),
                f"Branch prompt: {self.run.branch_prompt}" if self.run.branch_prompt else "",
                self._roles_line(planner, reviewer),
                self._decision_line(decision),
                self._t("execution_plan", "format"),
                "Context:",
                self.shared_context,
                "Inputs (trimmed):",
                *inputs.lines(self.agents, 1200),
            ],
            sep="\n",
        )

    def execution_plan_review(self, decision: Decision, planner: str, reviewer: str, draft: str) -> str:
        return _join(
            [
                self._t("execution_plan_review", "intro"),
                *self._header(),
                self._roles_line(planner, reviewer),
                self._decision_line(decision),
                self._t("execution_plan_review", "format"),
                "Context:",
                self.shared_context,
                "Draft:",
                truncate_inline(draft, 6000),
            ],
            sep="\n",
        )

    def execution_plan_finalize(
        self, decision: Decision, planner: str, reviewer: str, draft: str, feedback: str
    ) -> str:
        return _join(
            [
                self._t("execution_plan_finalize", "intro"),
                *self._header(),
                self._roles_line(planner, reviewer),
                self._decision_line(decision),
                self._t("execution_plan_finalize", "output"),
                "Context:",
                self.shared_context,
                "Draft:",
                truncate_inline(draft, 5000),
                "Feedback:",
                truncate_inline(feedback, 2000),
            ],
            sep="\n",
        )

    # ------------------------------------------------------------------
    # Implementation and review
    # ------------------------------------------------------------------

    def implement(self, decision: Decision, execution_plan: str) -> str:
        return _join(
            [
                self._t("implement", "intro"),
                *self._header(),
                f"Branch prompt: {self.run.branch_prompt}" if self.run.branch_prompt else "",
                self._decision_line(decision),
                "Execution plan (follow this):" if execution_plan else "",
                truncate_inline(execution_plan, 8000),
                "Context (short):",
                truncate_inline(self.shared_context, 2000),
                self._t("implement", "bugfix") if self.run.run_mode == "bugfix" else "",
                self._t("implement", "no_paste"),
                self._t("implement", "summary"),
            ]
        )

    def review(self, author: str, diff_text: str) -> str:
        return _join(
            [
                self._t("review", "intro"),
                *self._header(),
                f"Patch author: {author}",
                "Patch:",
                f"```diff\n{diff_text}\n```",
                self._t("review", "output"),
                self._t("review", "issue_shape"),
                self._t("review", "no_markdown"),
            ]
        )

    def joint_driver(
        self,
        decision: Decision,
        driver: str,
        navigator: str,
        execution_plan: str,
        navigator_notes: str,
        last_test_exit: int | None,
        round_number: int,
        max_rounds: int,
    ) -> str:
        return _join(
            [
                self._t("joint_driver", "intro"),
                *self._header(),
                f"Driver: {driver}",
                f"Navigator: {navigator}",
                f"Round: {round_number} of {max_rounds}",
                self._decision_line(decision, 200),
                "" if last_test_exit is None else f"Last test exit code: {last_test_exit} (fix failures if any).",
                "Navigator notes from prior round:" if navigator_notes else "",
                truncate_inline(navigator_notes, 1500),
                "Joint execution plan:" if execution_plan else "",
                truncate_inline(execution_plan, 8000),
                "Context (short):",
                truncate_inline(self.shared_context, 2000),
                self._t("joint_driver", "rules"),
            ]
        )

    def joint_navigator(
        self,
        decision: Decision,
        driver: str,
        navigator: str,
        execution_plan: str,
        driver_diff: str,
        test_exit: int | None,
        round_number: int,
        max_rounds: int,
    ) -> str:
        return _join(
            [
                self._t("joint_navigator", "intro"),
                *self._header(),
                f"Driver: {driver}",
                f"Navigator: {navigator}",
                f"Round: {round_number} of {max_rounds}",
                self._decision_line(decision, 200),
                "" if test_exit is None else f"Latest test exit code: {test_exit}.",
                "Joint execution plan:" if execution_plan else "",
                truncate_inline(execution_plan, 4000),
                "Context (short):",
                truncate_inline(self.shared_context, 1200),
                "Driver diff:",
                f"```diff\n{driver_diff}\n```",
                self._t("joint_navigator", "instructions"),
                self._t("joint_navigator", "brevity"),
            ]
        )

    def converge_fix(
        self,
        decision: Decision,
        fixer: str,
        critic: str,
        execution_plan: str,
        review: ReviewSummary,
        changed_files: list[str],
        stats: DiffStats,
        last_test_exit: int | None,
        round_number: int,
        max_rounds: int,
    ) -> str:
        files = ""
        if changed_files:
            listed = ", ".join(changed_files[:_MAX_LISTED_FILES])
            more = f" (+{len(changed_files) - _MAX_LISTED_FILES} more)" if len(changed_files) > _MAX_LISTED_FILES else ""
            files = f"Changed files: {listed}{more}"
        return _join(
            [
                self._t("converge_fix", "intro"),
                *self._header(),
                f"Round: {round_number} of {max_rounds}",
                f"Fixer: {fixer} | Critic: {critic}",
                self._decision_line(decision, 200),
                "" if last_test_exit is None else f"Latest tests exit code: {last_test_exit}",
                f"Current diff stats: +{stats.added} -{stats.removed}",
                files,
                "Blockers:",
                _issue_lines(review.blockers),
                "Warnings:",
                _issue_lines(review.warnings),
                "Execution plan (keep aligned):" if execution_plan else "",
                truncate_inline(execution_plan, 3000),
                "Context (short):",
                truncate_inline(self.shared_context, 1200),
                self._t("converge_fix", "rules"),
            ]
        )
