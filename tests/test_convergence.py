"""Tests for the bounded fixer/critic convergence loop."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from duet.pipeline.convergence import ConvergenceEngine
from duet.schemas import Decision, ReviewIssue, ReviewSummary

pytestmark = pytest.mark.integration

WINNER = Decision(mode="judge", winner="codex")
BLOCKED = ReviewSummary(blockers=[ReviewIssue(id="B-1", summary="No error handling", file="app.py")])
CLEAN_REVIEW = json.dumps({"ok": True, "blockers": [], "warnings": [], "notes": "fixed"})
BLOCKING_REVIEW = json.dumps({"ok": False, "blockers": [{"summary": "Still broken"}]})


def _enabled(**extra) -> dict:
    return {"review": {"enabled": True}, "converge": {"enabled": True, "max_rounds": extra.pop("max_rounds", 2)}, **extra}


def _prepare_winner_worktree(ctx) -> Path:
    worktree = ctx.worktrees.acquire(ctx.root, ctx.worktree_path("codex"))
    (worktree / "app.py").write_text("def greet():\n    return 'hello'\n", encoding="utf-8")
    return worktree


def _notes(ctx) -> list[str]:
    text = ctx.store.get_text("conversation", "transcript.jsonl") or ""
    return [event["content"] for event in map(json.loads, text.splitlines()) if event["kind"] == "note"]


def test_skipped_unless_review_and_converge_are_enabled(make_context) -> None:
    ctx = make_context(converge={"enabled": True})
    _prepare_winner_worktree(ctx)

    outcome = ConvergenceEngine(ctx).run(WINNER, BLOCKED)

    assert outcome.ran is False
    assert ctx.invoker.calls == []
    assert not ctx.store.exists("converge")


def test_skipped_without_implementation_worktree(make_context) -> None:
    ctx = make_context(**_enabled())
    assert ConvergenceEngine(ctx).run(WINNER, BLOCKED).ran is False
    assert ConvergenceEngine(ctx).run(Decision(mode="neither", winner="neither"), BLOCKED).ran is False


def test_not_needed_when_review_is_clean(make_context) -> None:
    ctx = make_context(**_enabled())
    _prepare_winner_worktree(ctx)

    outcome = ConvergenceEngine(ctx).run(WINNER, ReviewSummary())

    assert outcome.ran is False
    assert outcome.changed_files == ["app.py"]
    assert ctx.invoker.calls == []


def test_fixer_resolves_blockers_in_one_round(make_context) -> None:
    def handler(agent, phase, cwd, prompt):
        if phase == "converge":
            (cwd / "app.py").write_text(
                "def greet():\n    try:\n        return 'hello'\n    except Exception:\n        raise\n",
                encoding="utf-8",
            )
            return "Added error handling"
        return CLEAN_REVIEW

    ctx = make_context(handler, **_enabled())
    worktree = _prepare_winner_worktree(ctx)

    outcome = ConvergenceEngine(ctx).run(WINNER, BLOCKED)

    assert outcome.ran and outcome.converged
    assert len(outcome.rounds) == 1
    assert (outcome.rounds[0].fixer, outcome.rounds[0].critic) == ("codex", "claude")
    assert [(agent, phase) for agent, phase, _ in ctx.invoker.calls] == [("codex", "converge"), ("claude", "review")]
    assert all(cwd == worktree for _, _, cwd in ctx.invoker.calls)
    assert "Converge complete: no blockers and tests passing (if enabled)." in _notes(ctx)

    fix_prompt = ctx.store.get_text("converge", "round_1", "fixer", "prompt.txt") or ""
    assert "- B-1: No error handling (app.py)" in fix_prompt
    critic_prompt = ctx.store.get_text("converge", "round_1", "critic", "prompt.txt") or ""
    assert "Patch author: converge (fixer: codex)" in critic_prompt
    assert ctx.store.get_json("converge", "round_1", "review.json")["blockers"] == []

    meta = ctx.store.get_json("converge", "meta.json")
    assert meta["converged"] is True
    assert meta["rounds"] == 1
    assert meta["files"] == ["app.py"]
    assert meta["worktree"] == str(worktree)
    assert "except Exception" in (ctx.store.get_text("converge", "final.patch") or "")


def test_loop_is_bounded_and_swaps_roles(make_context) -> None:
    ctx = make_context(lambda agent, phase, *rest: BLOCKING_REVIEW if phase == "review" else "tried", **_enabled(max_rounds=3))
    _prepare_winner_worktree(ctx)

    outcome = ConvergenceEngine(ctx).run(WINNER, BLOCKED)

    assert outcome.ran is True
    assert outcome.converged is False
    assert [r.fixer for r in outcome.rounds] == ["codex", "claude", "codex"]
    assert [issue.summary for issue in outcome.review.blockers] == ["Still broken"]
    assert len([note for note in _notes(ctx) if note.startswith("Swapping fixer role")]) == 2
    assert not ctx.store.exists("converge", "round_4")
    assert ctx.store.get_json("converge", "meta.json")["converged"] is False


def test_failing_pre_tests_trigger_convergence(make_context) -> None:
    tests = {"enabled": True, "command": sys.executable, "args": ["-c", "raise SystemExit(2)"]}
    ctx = make_context(lambda *args: CLEAN_REVIEW, tests=tests, **_enabled(max_rounds=1))
    _prepare_winner_worktree(ctx)

    outcome = ConvergenceEngine(ctx).run(WINNER, ReviewSummary())

    assert outcome.ran is True
    assert outcome.converged is False
    assert outcome.last_test_exit_code == 2
    assert "Pre-converge tests exit code: 2" in _notes(ctx)
    assert ctx.store.exists("converge", "pre_test.log")
    assert ctx.store.exists("converge", "round_1", "test.log")


def test_joint_mode_starts_with_the_final_driver(make_context) -> None:
    ctx = make_context(lambda *args: CLEAN_REVIEW, implementation={"mode": "joint"}, **_enabled())
    ctx.worktrees.acquire(ctx.root, ctx.worktree_path("driver"))
    ctx.store.put_json("implement", "joint", "meta.json", payload={"driver": "claude"})

    outcome = ConvergenceEngine(ctx).run(WINNER, BLOCKED)

    assert outcome.rounds[0].fixer == "claude"
    assert outcome.converged is True
