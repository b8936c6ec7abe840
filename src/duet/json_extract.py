"""Tolerant extraction of a JSON object from free-form agent output."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def _loads(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_json(text: str | None) -> Any | None:
    """Return the first JSON value found in *text*, or ``None``.

    Tried in order: the whole text, the first ```` ```json ```` fenced block,
    then the substring from the first ``{`` to the last ``}``.
    """
    raw = (text or "").strip()
    if not raw:
        return None

    parsed = _loads(raw)
    if parsed is not None:
        return parsed

    fenced = _FENCED_JSON_RE.search(raw)
    if fenced:
        parsed = _loads(fenced.group(1).strip())
        if parsed is not None:
            return parsed

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        return _loads(raw[start : end + 1])
    return None


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Like :func:`extract_json` but only accepts a JSON object."""
    parsed = extract_json(text)
    return parsed if isinstance(parsed, dict) else None
