"""On-disk artifact store for sessions and runs.

Every phase communicates through files under
``.orchestrator/sessions/<session>/runs/<run>/``.  :class:`RunStore` is the
only writer of that tree: artifacts are addressed by path parts (phase,
agent, file name), written once, and read back by later phases.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from duet.config import ORCHESTRATOR_DIR
from duet.errors import ArtifactExistsError, BranchingError
from duet.file_io import append_text, atomic_write_text, read_text_or_none
from duet.schemas import RunContext, Session

logger = logging.getLogger(__name__)

SESSIONS_DIR = "sessions"
RUNS_DIR = "runs"
SESSION_FILE = "session.json"


def timestamp_id(prefix: str) -> str:
    """Return an id like ``run-20260101_120000-ab12cd``."""
    stamp = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:6]}"


def _check_part(part: str) -> str:
    if not part or part in {".", ".."} or "/" in part or "\\" in part:
        raise ValueError(f"invalid artifact path part: {part!r}")
    return part


class RunStore:
    """Write-once, path-addressed artifact store for one run directory."""

    def __init__(self, run_dir: str | Path) -> None:
        self.run_dir = Path(run_dir)

    def path(self, *parts: str) -> Path:
        """Return the absolute path for an artifact key (no I/O)."""
        return self.run_dir.joinpath(*(_check_part(part) for part in parts))

    def dir(self, *parts: str) -> Path:
        """Return (and create) a directory inside the run."""
        directory = self.path(*parts)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def exists(self, *parts: str) -> bool:
        return self.path(*parts).exists()

    def put_text(self, *parts: str, content: str) -> Path:
        """Store *content* under the key; raises if the artifact already exists."""
        target = self.path(*parts)
        if target.exists():
            raise ArtifactExistsError(f"Artifact already written: {target}")
        atomic_write_text(target, content)
        return target

    def put_json(self, *parts: str, payload: Any) -> Path:
        if isinstance(payload, BaseModel):
            text = payload.model_dump_json(indent=2)
        else:
            text = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
        return self.put_text(*parts, content=text + "\n")

    def append_text(self, *parts: str, content: str) -> Path:
        """Append to a log-style artifact (transcripts)."""
        target = self.path(*parts)
        append_text(target, content)
        return target

    def get_text(self, *parts: str) -> str | None:
        return read_text_or_none(self.path(*parts))

    def get_json(self, *parts: str) -> Any | None:
        text = self.get_text(*parts)
        if text is None or not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Artifact is not valid JSON: %s", self.path(*parts))
            return None


class SessionStore:
    """Creates and loads sessions and their runs under ``<root>/.orchestrator``.

    Parameters
    ----------
    root:
        Project root; sessions live in ``<root>/.orchestrator/sessions``.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / ORCHESTRATOR_DIR / SESSIONS_DIR

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / _check_part(session_id)

    def run_dir(self, session_id: str, run_id: str) -> Path:
        return self.session_dir(session_id) / RUNS_DIR / _check_part(run_id)

    def load_session(self, session_id: str) -> Session | None:
        path = self.session_dir(session_id) / SESSION_FILE
        text = read_text_or_none(path)
        if text is None:
            return None
        try:
            return Session.model_validate_json(text)
        except ValidationError as exc:
            logger.warning("Could not load session file %s: %s", path, exc)
            return None

    def open_session(self, task: str, session_id: str | None = None) -> Session:
        """Return the named session, creating it (with *task*) on first use.

        An existing session keeps its original task.
        """
        session_id = session_id or timestamp_id("session")
        existing = self.load_session(session_id)
        if existing is not None:
            return existing
        session = Session(session_id=session_id, task=task)
        atomic_write_text(
            self.session_dir(session_id) / SESSION_FILE, session.model_dump_json(indent=2) + "\n"
        )
        logger.info("Created session %s", session_id)
        return session

    def create_run(self, run: RunContext) -> RunStore:
        """Create the directory for a new run and return its store."""
        run_dir = self.run_dir(run.session_id, run.run_id)
        if run_dir.exists():
            raise ArtifactExistsError(f"Run directory already exists: {run_dir}")
        run_dir.mkdir(parents=True)
        return RunStore(run_dir)

    def parent_summary(self, session_id: str, parent_run_id: str) -> str:
        """Return the final summary of a parent run, for branching."""
        parent_dir = self.run_dir(session_id, parent_run_id)
        if not parent_dir.is_dir():
            raise BranchingError(f"Parent run {parent_run_id!r} not found in session {session_id!r}")
        return RunStore(parent_dir).get_text("final", "summary.md") or ""
