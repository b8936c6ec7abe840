"""Review phase and structured review parsing.

Reviewers answer with a JSON object::

    {"ok": bool, "blockers": [{"id", "summary", "file", "suggested_fix"}],
     "warnings": [...], "notes": "..."}

Output that does not parse is treated as "this reviewer asserted nothing".
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from duet.json_extract import extract_json_object
from duet.pipeline.phases import PhaseContext, PipelinePhase
from duet.prompts.builders import truncate_inline
from duet.schemas import Decision, ReviewIssue, ReviewSummary
from duet.store import RunStore

logger = logging.getLogger(__name__)

_PHASE = PipelinePhase.REVIEW.value
_IMPLEMENT = PipelinePhase.IMPLEMENT.value
_NOTES_LIMIT = 240


def _normalize_issues(items: Any, prefix: str) -> list[ReviewIssue]:
    if not isinstance(items, list):
        return []
    issues: list[ReviewIssue] = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            continue
        summary = str(item.get("summary") or "").strip()
        if not summary:
            continue
        file = item.get("file")
        fix = item.get("suggested_fix")
        issues.append(
            ReviewIssue(
                id=str(item.get("id") or f"{prefix}-{index}"),
                summary=summary,
                file=str(file) if file else None,
                suggested_fix=str(fix) if fix else None,
            )
        )
    return issues


def parse_review_summary(text: str | None) -> ReviewSummary | None:
    """Parse one reviewer's output; ``None`` when it holds no JSON object."""
    payload = extract_json_object(text)
    if payload is None:
        return None
    notes = payload.get("notes")
    return ReviewSummary(
        blockers=_normalize_issues(payload.get("blockers"), "B"),
        warnings=_normalize_issues(payload.get("warnings"), "W"),
        notes=str(notes) if notes else "",
    )


def merge_review_summaries(summaries: Iterable[ReviewSummary]) -> ReviewSummary:
    """Concatenate findings of several reviewers; notes are joined and clipped."""
    blockers: list[ReviewIssue] = []
    warnings: list[ReviewIssue] = []
    notes: list[str] = []
    for summary in summaries:
        blockers.extend(summary.blockers)
        warnings.extend(summary.warnings)
        if summary.notes.strip():
            notes.append(summary.notes.strip())
    return ReviewSummary(
        blockers=blockers,
        warnings=warnings,
        notes=truncate_inline(" | ".join(notes), _NOTES_LIMIT),
    )


def read_review_summaries(store: RunStore, reviewers: Iterable[str]) -> ReviewSummary:
    """Merge the stored ``review/<agent>.md`` outputs that parse."""
    parsed = []
    for reviewer in reviewers:
        summary = parse_review_summary(store.get_text(_PHASE, f"{reviewer}.md"))
        if summary is None:
            logger.debug("No structured review from %s", reviewer)
            continue
        parsed.append(summary)
    return merge_review_summaries(parsed)


def review_target(ctx: PhaseContext, decision: Decision) -> tuple[str, str, Path] | None:
    """Return ``(author, diff_text, worktree)`` of the patch under review.

    ``None`` when there is nothing to review: parallel mode without a
    winner, or an empty diff.
    """
    if ctx.config.implementation.mode == "joint":
        meta = ctx.store.get_json(_IMPLEMENT, "joint", "meta.json")
        driver = meta.get("driver") if isinstance(meta, dict) else None
        author = f"joint (driver: {driver})" if driver else "joint"
        diff_text = ctx.store.get_text(_IMPLEMENT, "joint", "final.patch") or ""
        worktree = ctx.worktree_path("driver")
    elif decision.has_winner:
        author = decision.winner
        diff_text = ctx.store.get_text(_IMPLEMENT, decision.winner, "diff.patch") or ""
        worktree = ctx.worktree_path(decision.winner)
    else:
        return None
    if not diff_text.strip():
        return None
    return author, diff_text, worktree


def run_review(ctx: PhaseContext, decision: Decision) -> ReviewSummary | None:
    """Ask the configured reviewer(s) to review the implemented patch.

    Returns the merged review, or ``None`` when the phase was skipped.
    """
    if not ctx.config.review.enabled:
        return None
    target = review_target(ctx, decision)
    if target is None:
        logger.info("Review skipped: no patch to review")
        return None
    author, diff_text, worktree = target

    prompt = ctx.prompts.review(author, diff_text)
    for reviewer in ctx.config.reviewers:
        logger.info("Review by %s of patch from %s", reviewer, author)
        ctx.transcript.prompt(_PHASE, prompt)
        ctx.call_agent(
            reviewer,
            "review",
            prompt,
            cwd=worktree,
            log_key=(_PHASE, reviewer),
            output_key=(_PHASE, f"{reviewer}.md"),
        )
    summary = read_review_summaries(ctx.store, ctx.config.reviewers)
    logger.info("Review: %d blocker(s), %d warning(s)", len(summary.blockers), len(summary.warnings))
    return summary
