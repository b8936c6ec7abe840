"""Prompt catalog: instruction text loaded from ``templates.yaml``.

Built-in templates live next to this module.  A project may override any
entry with ``.orchestrator/prompts.yaml``; it is deep-merged on top of the
built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
PROJECT_OVERRIDE = Path(".orchestrator") / "prompts.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Serves prompt instruction lines by ``(section, key)``.

    Usage::

        catalog = PromptCatalog.for_root(root)
        intro = catalog.text("plan", "intro")
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._load(extra_path)

    @classmethod
    def for_root(cls, root: str | Path) -> PromptCatalog:
        """Catalog with the project's ``.orchestrator/prompts.yaml`` merged in."""
        return cls(extra_path=Path(root) / PROJECT_OVERRIDE)

    def _load(self, extra_path: Path | None = None) -> None:
        self._data = _load_yaml(_BUILTIN_YAML)
        if extra_path and extra_path.exists():
            extra = _load_yaml(extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded prompt overrides from %s", extra_path)

    def text(self, section: str, key: str) -> str:
        """Return the stripped instruction text, or ``""`` when undefined."""
        entry = self._data.get(section, {})
        if not isinstance(entry, dict):
            return ""
        value = entry.get(key)
        return str(value).strip() if value is not None else ""

    def sections(self) -> list[str]:
        return list(self._data)

    @property
    def raw(self) -> dict[str, Any]:
        """Direct access to the full parsed data."""
        return self._data
