"""Tests for the append-only run transcript."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from duet.store import RunStore
from duet.transcript import Transcript

pytestmark = pytest.mark.unit


def _events(store: RunStore) -> list[dict]:
    text = store.get_text("conversation", "transcript.jsonl") or ""
    return [json.loads(line) for line in text.splitlines()]


def test_events_are_written_as_jsonl_and_markdown(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "run")
    transcript = Transcript(store)

    transcript.prompt("plan", "Plan the work")
    transcript.response("plan", "codex", "Step 1", round_number=2)
    transcript.note("implement", "Starting implementation phase.")
    transcript.decision("judge", '{"winner": "codex"}')

    events = _events(store)
    assert [(e["phase"], e["role"], e["kind"]) for e in events] == [
        ("plan", "system", "prompt"),
        ("plan", "agent", "response"),
        ("implement", "system", "note"),
        ("judge", "system", "decision"),
    ]
    assert events[1]["agent"] == "codex"
    assert events[1]["round"] == 2
    assert "agent" not in events[0]

    markdown = store.get_text("conversation", "transcript.md") or ""
    assert "### plan (round 2) | agent:codex | response |" in markdown
    assert "Starting implementation phase." in markdown


def test_stream_echoes_each_event(tmp_path: Path) -> None:
    out = io.StringIO()
    transcript = Transcript(RunStore(tmp_path / "run"), stream=True, out=out)

    transcript.note("final", "done")

    lines = out.getvalue().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["content"] == "done"
