"""Prompt logging that records metadata instead of prompt text by default."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Final

_PROMPT_DEBUG_ENV: Final[str] = "DUET_PROMPT_DEBUG"

_TRUTHY = {"1", "true", "yes", "on"}

_SECRET_PATTERNS = (
    re.compile(
        r"(?i)\b(api[_-]?key|access[_-]?token|client[_-]?secret|token|secret|password)\b"
        r"(\s*[:=]\s*)([^\s,;]+)"
    ),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-+/=]{10,}"),
    re.compile(r"\bsk-(?:proj-|ant-)?[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
)


def is_prompt_debug_enabled() -> bool:
    """Return true when full prompt logging is explicitly enabled."""
    return os.getenv(_PROMPT_DEBUG_ENV, "").strip().lower() in _TRUTHY


def count_secret_hits(text: str) -> int:
    """Return how many secret-looking substrings *text* contains."""
    return sum(len(pattern.findall(text or "")) for pattern in _SECRET_PATTERNS)


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    """Return compact metadata used for prompt-safe runtime logging."""
    text = str(prompt or "")
    return {
        "length_chars": len(text),
        "sha256": hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
        "secret_hits": count_secret_hits(text),
    }


def log_prompt(logger: logging.Logger, prompt: str, *, label: str) -> None:
    """Log *prompt* at DEBUG, as full text only when prompt debugging is on."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    if is_prompt_debug_enabled():
        logger.debug("%s: %s", label, prompt)
        return
    meta = prompt_metadata(prompt)
    logger.debug(
        "%s metadata: len=%s, sha256=%s, secret_hits=%s (set %s=1 to include full prompt text)",
        label,
        meta["length_chars"],
        meta["sha256"],
        meta["secret_hits"],
        _PROMPT_DEBUG_ENV,
    )
