"""Append-only conversation transcript for a run (JSONL + markdown)."""

from __future__ import annotations

import json
import logging
import sys
import threading
from dataclasses import dataclass
from typing import Any, TextIO

from duet.schemas import utc_now
from duet.store import RunStore

logger = logging.getLogger(__name__)

CONVERSATION_DIR = "conversation"
JSONL_FILE = "transcript.jsonl"
MARKDOWN_FILE = "transcript.md"


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    """One conversation event: a prompt, a response, a decision or a note."""

    timestamp: str
    phase: str
    role: str  # system | agent
    kind: str  # prompt | response | decision | note
    content: str
    agent: str | None = None
    round_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "phase": self.phase,
            "role": self.role,
            "kind": self.kind,
            "content": self.content,
        }
        if self.agent is not None:
            payload["agent"] = self.agent
        if self.round_number is not None:
            payload["round"] = self.round_number
        return payload

    def to_markdown(self) -> str:
        who = f"agent:{self.agent or 'unknown'}" if self.role == "agent" else self.role
        round_label = f" (round {self.round_number})" if self.round_number else ""
        header = f"### {self.phase}{round_label} | {who} | {self.kind} | {self.timestamp}"
        return f"{header}\n\n{self.content}\n\n"


class Transcript:
    """Writes transcript events under ``conversation/`` of a run.

    Parameters
    ----------
    store:
        Artifact store of the run being recorded.
    stream:
        When true every event is also echoed to *out* as one JSON line.
    """

    def __init__(self, store: RunStore, *, stream: bool = False, out: TextIO | None = None) -> None:
        self.store = store
        self.stream = stream
        self.out = out
        self._lock = threading.Lock()

    def append(
        self,
        phase: str,
        role: str,
        kind: str,
        content: str,
        *,
        agent: str | None = None,
        round_number: int | None = None,
    ) -> TranscriptEvent:
        event = TranscriptEvent(
            timestamp=utc_now(),
            phase=phase,
            role=role,
            kind=kind,
            content=content,
            agent=agent,
            round_number=round_number,
        )
        line = json.dumps(event.to_dict(), ensure_ascii=False)
        with self._lock:
            self.store.append_text(CONVERSATION_DIR, JSONL_FILE, content=line + "\n")
            self.store.append_text(CONVERSATION_DIR, MARKDOWN_FILE, content=event.to_markdown())
            if self.stream:
                out = self.out or sys.stdout
                out.write(line + "\n")
                out.flush()
        return event

    # -- convenience wrappers --

    def prompt(self, phase: str, content: str, *, round_number: int | None = None) -> None:
        self.append(phase, "system", "prompt", content, round_number=round_number)

    def response(self, phase: str, agent: str, content: str, *, round_number: int | None = None) -> None:
        self.append(phase, "agent", "response", content, agent=agent, round_number=round_number)

    def note(self, phase: str, content: str, *, round_number: int | None = None) -> None:
        logger.info("[%s] %s", phase, content.splitlines()[0] if content else "")
        self.append(phase, "system", "note", content, round_number=round_number)

    def decision(self, phase: str, content: str) -> None:
        self.append(phase, "system", "decision", content)
