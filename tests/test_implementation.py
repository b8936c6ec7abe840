"""Tests for parallel and joint (driver/navigator) implementation."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

import duet.diffing as diffing
from duet.pipeline.implementation import ImplementationEngine
from duet.schemas import Decision, JointOutcome, JointStopReason, PatchOutcome

pytestmark = pytest.mark.integration

DECISION = Decision(mode="judge", winner="codex", rationale="clear plan")


def _notes(ctx) -> list[str]:
    text = ctx.store.get_text("conversation", "transcript.jsonl") or ""
    return [event["content"] for event in map(json.loads, text.splitlines()) if event["kind"] == "note"]


def _driver_writes(agent: str, phase: str, cwd: Path, prompt: str) -> str:
    target = cwd / f"{agent}_change.txt"
    if phase == "implement" and not target.exists():
        target.write_text(f"written by {agent}\n", encoding="utf-8")
    return f"{agent} done"


def _navigator_always_edits(agent: str, phase: str, cwd: Path, prompt: str) -> str:
    if phase == "collab":
        (cwd / f"{cwd.name}.txt").write_text(f"navigator {agent}\n", encoding="utf-8")
        return f"{agent}: added {cwd.name}.txt"
    return _driver_writes(agent, phase, cwd, prompt)


def _failing_tests() -> dict:
    return {"enabled": True, "command": sys.executable, "args": ["-c", "raise SystemExit(1)"]}


def test_parallel_gives_each_agent_its_own_worktree(make_context) -> None:
    ctx = make_context(_driver_writes)

    results = ImplementationEngine(ctx).run(DECISION, "1. do it")

    assert [result.agent for result in results] == ["codex", "claude"]
    codex, claude = results
    assert codex.worktree == ctx.worktree_path("codex")
    assert codex.changed_files == ["codex_change.txt"]
    assert claude.changed_files == ["claude_change.txt"]
    assert codex.stats.added == 1
    assert codex.test_exit_code is None
    assert not (ctx.root / "codex_change.txt").exists()

    meta = ctx.store.get_json("implement", "codex", "meta.json")
    assert meta["changed_files"] == ["codex_change.txt"]
    assert meta["diff_stats"] == {"added": 1, "removed": 0}
    assert meta["test_exit_code"] is None
    assert "+++ b/codex_change.txt" in (ctx.store.get_text("implement", "codex", "diff.patch") or "")
    assert ctx.store.get_text("implement", "claude", "output.md") == "claude done"


def test_parallel_records_test_exit_codes(make_context) -> None:
    check = "import pathlib, sys; sys.exit(0 if pathlib.Path('codex_change.txt').exists() else 1)"

    def handler(agent, phase, cwd, prompt):
        if agent == "codex":
            return _driver_writes(agent, phase, cwd, prompt)
        return "no changes"

    ctx = make_context(handler, tests={"enabled": True, "command": sys.executable, "args": ["-c", check]})
    codex, claude = ImplementationEngine(ctx).run_parallel(DECISION, "")

    assert codex.test_exit_code == 0
    assert claude.test_exit_code == 1
    assert claude.diff == ""
    assert ctx.store.exists("implement", "claude", "test.log")


def test_joint_stops_early_when_navigator_has_nothing_to_add(make_context) -> None:
    ctx = make_context(_driver_writes, implementation={"mode": "joint", "max_rounds": 3})

    outcome = ImplementationEngine(ctx).run(DECISION, "plan")

    assert isinstance(outcome, JointOutcome)
    assert outcome.stop_reason is JointStopReason.CONVERGED
    assert len(outcome.rounds) == 1
    assert outcome.rounds[0].navigator_patch_empty is True
    assert outcome.rounds[0].patch_applied is None
    assert outcome.changed_files == ["codex_change.txt"]
    assert "Stopping early: no navigator changes." in _notes(ctx)

    meta = ctx.store.get_json("implement", "joint", "meta.json")
    assert meta["rounds"] == 1
    assert meta["stop_reason"] == "converged"
    assert meta["driver"] == "codex"
    assert ctx.store.get_text("implement", "joint", "round_1", "navigator", "navigator.patch") == ""
    assert "+++ b/codex_change.txt" in (ctx.store.get_text("implement", "joint", "final.patch") or "")


def test_joint_applies_navigator_patch_into_driver_worktree(make_context) -> None:
    def handler(agent, phase, cwd, prompt):
        if phase == "collab" and cwd.name == "navigator_round_1":
            (cwd / "codex_change.txt").write_text("written by codex\nreviewed\n", encoding="utf-8")
            return "tightened wording"
        return _driver_writes(agent, phase, cwd, prompt)

    ctx = make_context(handler, implementation={"mode": "joint", "max_rounds": 2})
    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    driver_file = ctx.worktree_path("driver") / "codex_change.txt"
    assert driver_file.read_text(encoding="utf-8") == "written by codex\nreviewed\n"
    assert outcome.rounds[0].patch_applied is True
    assert outcome.stop_reason is JointStopReason.CONVERGED
    assert len(outcome.rounds) == 2
    assert "Navigator patch apply: ok" in _notes(ctx)
    assert ctx.store.exists("implement", "joint", "round_1", "navigator", "apply.log")
    round_two_prompt = ctx.store.get_text("implement", "joint", "round_2", "driver", "prompt.txt") or ""
    assert "tightened wording" in round_two_prompt


def test_joint_swaps_driver_each_round_until_max_rounds(make_context) -> None:
    ctx = make_context(
        _navigator_always_edits,
        implementation={"mode": "joint", "max_rounds": 3, "swap_driver_each_round": True},
    )

    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    assert outcome.stop_reason is JointStopReason.MAX_ROUNDS
    assert [(r.driver, r.navigator) for r in outcome.rounds] == [
        ("codex", "claude"),
        ("claude", "codex"),
        ("codex", "claude"),
    ]
    swaps = [note for note in _notes(ctx) if note.startswith("Swapping driver role")]
    assert swaps == [
        "Swapping driver role from codex to claude for next round.",
        "Swapping driver role from claude to codex for next round.",
    ]
    meta = ctx.store.get_json("implement", "joint", "meta.json")
    assert meta["rounds"] == 3
    assert meta["stop_reason"] == "max_rounds"
    for round_number in (1, 2, 3):
        assert (ctx.worktree_path("driver") / f"navigator_round_{round_number}.txt").is_file()


def test_joint_swaps_on_failing_tests(make_context) -> None:
    ctx = make_context(
        _navigator_always_edits,
        tests=_failing_tests(),
        implementation={
            "mode": "joint",
            "max_rounds": 2,
            "tests_during_loop": True,
            "swap_driver_on_fail": True,
        },
    )

    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    assert [r.driver for r in outcome.rounds] == ["codex", "claude"]
    assert all(r.test_exit_code == 1 for r in outcome.rounds)
    notes = _notes(ctx)
    assert "Swapping driver role from codex to claude due to failing tests." in notes
    assert "Swapping driver role from claude to codex due to failing tests." in notes
    assert outcome.driver == "codex"
    assert ctx.store.exists("implement", "joint", "round_1", "driver", "test.log")
    assert ctx.store.exists("implement", "joint", "round_1", "navigator", "post_test.log")


def test_joint_does_not_stop_early_while_tests_fail(make_context) -> None:
    ctx = make_context(
        _driver_writes,
        tests=_failing_tests(),
        implementation={"mode": "joint", "max_rounds": 2, "tests_during_loop": True},
    )

    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    assert len(outcome.rounds) == 2
    assert outcome.stop_reason is JointStopReason.MAX_ROUNDS


def test_joint_stops_when_navigator_patch_fails_to_apply(make_context, monkeypatch) -> None:
    monkeypatch.setattr(diffing, "apply_patch", lambda *args, **kwargs: PatchOutcome(applied=False, output="rejected\n"))
    ctx = make_context(_navigator_always_edits, implementation={"mode": "joint", "max_rounds": 3})

    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    assert outcome.stop_reason is JointStopReason.APPLY_FAILED
    assert len(outcome.rounds) == 1
    assert outcome.rounds[0].patch_applied is False
    assert ctx.store.get_text("implement", "joint", "round_1", "navigator", "apply.log") == "rejected\n"
    assert "Stopping early: navigator patch failed to apply." in _notes(ctx)


def test_manual_navigator_patch_stops_the_loop_unapplied(make_context) -> None:
    ctx = make_context(
        _navigator_always_edits,
        implementation={"mode": "joint", "max_rounds": 3, "apply_navigator_patch": "manual"},
    )

    outcome = ImplementationEngine(ctx).run_joint(DECISION, "plan")

    assert outcome.stop_reason is JointStopReason.APPLY_FAILED
    assert len(outcome.rounds) == 1
    assert outcome.rounds[0].patch_applied is False
    assert not outcome.rounds[0].navigator_patch_empty
    assert "Stopping early: navigator patch left for manual apply." in _notes(ctx)
    assert not (ctx.worktree_path("driver") / "navigator_round_1.txt").exists()
    assert "manual apply" in (ctx.store.get_text("implement", "joint", "round_1", "navigator", "apply.log") or "")
    assert "+++ b/navigator_round_1.txt" in (
        ctx.store.get_text("implement", "joint", "round_1", "navigator", "navigator.patch") or ""
    )


def test_execution_driver_override_wins(make_context) -> None:
    ctx = make_context(_driver_writes, implementation={"mode": "joint", "max_rounds": 1, "driver": "codex"})
    decision = DECISION.model_copy(update={"execution_driver": "claude"})

    outcome = ImplementationEngine(ctx).run_joint(decision, "plan")

    assert outcome.rounds[0].driver == "claude"
    assert outcome.changed_files == ["claude_change.txt"]
