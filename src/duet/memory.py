"""Cross-run memory: an append-only JSONL log queried by naive term overlap."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from duet.config import MemoryConfig
from duet.file_io import append_jsonl, read_jsonl
from duet.schemas import Decision, RunContext, utc_now
from duet.store import RunStore

logger = logging.getLogger(__name__)

_TERM_CLEAN_RE = re.compile(r"[^a-z0-9_-]")


@dataclass
class MemoryEntry:
    """A single remembered fact (run summary, decision, ...)."""

    id: str
    type: str
    text: str
    tags: list[str] = field(default_factory=list)
    run_id: str = ""
    session_id: str = ""
    timestamp: str = ""
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MemoryEntry:
        tags = d.get("tags") or []
        return cls(
            id=str(d.get("id", "")),
            type=str(d.get("type", "")),
            text=str(d.get("text", "")),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
            run_id=str(d.get("run_id", "")),
            session_id=str(d.get("session_id", "")),
            timestamp=str(d.get("timestamp", "")),
            source=str(d.get("source", "")),
        )


def query_terms(query: str) -> list[str]:
    """Lowercase, strip punctuation and keep terms longer than two characters."""
    terms = (_TERM_CLEAN_RE.sub("", raw) for raw in query.lower().split())
    return [term for term in terms if len(term) > 2]


def score_entry(entry: MemoryEntry, terms: list[str]) -> int:
    """Count how many query terms appear in the entry text or tags."""
    haystack = f"{entry.text} {' '.join(entry.tags)}".lower()
    return sum(1 for term in terms if term in haystack)


class FileMemoryStore:
    """Memory entries stored one JSON object per line."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def put(self, entry: MemoryEntry) -> None:
        with self._lock:
            append_jsonl(self.path, entry.to_dict())

    def entries(self) -> list[MemoryEntry]:
        return [MemoryEntry.from_dict(data) for data in read_jsonl(self.path)]

    def query(self, text: str, limit: int) -> list[MemoryEntry]:
        """Return up to *limit* entries with a positive score, best first."""
        terms = query_terms(text)
        if not terms or limit <= 0:
            return []
        scored = [(score_entry(entry, terms), entry) for entry in self.entries()]
        scored = [item for item in scored if item[0] > 0]
        # sorted() is stable: equal scores keep file order.
        scored.sort(key=lambda item: item[0], reverse=True)
        return [entry for _, entry in scored[:limit]]


def create_memory_store(config: MemoryConfig, root: str | Path) -> FileMemoryStore | None:
    """Return the configured store, or ``None`` when memory is disabled."""
    if not config.enabled:
        return None
    path = Path(config.path)
    if not path.is_absolute():
        path = Path(root) / path
    return FileMemoryStore(path)


def persist_run_memory(
    memory: FileMemoryStore | None,
    store: RunStore,
    run: RunContext,
    decision: Decision,
) -> None:
    """Record the run summary and decision so later runs can recall them."""
    if memory is None:
        return
    summary = store.get_text("final", "summary.md") or ""
    if summary:
        memory.put(
            MemoryEntry(
                id=f"{run.run_id}-summary",
                type="summary",
                text=summary,
                tags=[run.run_mode, "summary"],
                run_id=run.run_id,
                session_id=run.session_id,
                timestamp=utc_now(),
                source=str(store.path("final", "summary.md")),
            )
        )
    memory.put(
        MemoryEntry(
            id=f"{run.run_id}-decision",
            type="decision",
            text=f"Winner: {decision.winner}. Rationale: {decision.rationale}",
            tags=[run.run_mode, "decision"],
            run_id=run.run_id,
            session_id=run.session_id,
            timestamp=utc_now(),
            source=str(store.path("decide", "decision.json")),
        )
    )
    logger.debug("Stored run memory for %s", run.run_id)
