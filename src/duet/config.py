"""Orchestrator configuration: pydantic models, defaults and loading.

The configuration is read from ``<root>/.orchestrator/config.json`` (or
``config.yaml``), validated once at run start and then passed by value to
every component.  All defaults are resolved here so no phase re-defaults a
setting mid-run.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from duet.errors import ConfigError
from duet.schemas import NEITHER

logger = logging.getLogger(__name__)

ORCHESTRATOR_DIR = ".orchestrator"
CONFIG_FILENAMES = ("config.json", "config.yaml", "config.yml")

PromptMode = Literal["stdin", "file", "arg"]
ImplementationMode = Literal["parallel", "joint"]
NavigatorPatchMode = Literal["auto", "manual"]

RESERVED_AGENT_NAMES = frozenset({NEITHER, "joint", "driver", "navigator", "analysis", "both", "auto"})
_AGENT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

DEFAULT_DEPENDENCY_FILES: tuple[str, ...] = (
    "package.json",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "bun.lockb",
    "Cargo.toml",
    "Cargo.lock",
    "pyproject.toml",
    "poetry.lock",
    "requirements.txt",
    "go.mod",
    "go.sum",
)

DEFAULT_INCLUDE_FILES: tuple[str, ...] = (
    "README.md",
    "README",
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    "Cargo.toml",
    "go.mod",
)


class AgentConfig(BaseModel):
    """How to launch one agent CLI."""

    command: str
    args: list[str] = Field(default_factory=list)
    prompt_mode: PromptMode = "stdin"
    version_args: list[str] = Field(default_factory=lambda: ["--version"])
    min_version: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class DecisionConfig(BaseModel):
    """Decision strategy: ``judge``, ``debate``, ``neither`` or ``prefer-<agent>``."""

    mode: str = NEITHER
    judge_agent: str | None = None
    debate_rounds: int = Field(default=1, ge=0)


class ReviewConfig(BaseModel):
    enabled: bool = False
    reviewer: str = "both"


class CommandConfig(BaseModel):
    """An auxiliary command (tests or lint) run inside a workspace."""

    enabled: bool = False
    command: str = ""
    args: list[str] = Field(default_factory=list)


class MemoryConfig(BaseModel):
    enabled: bool = False
    path: str = f"{ORCHESTRATOR_DIR}/memory/memory.jsonl"
    max_results: int = Field(default=5, ge=0)


class ContextConfig(BaseModel):
    include_files: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_FILES))
    max_file_bytes: int = Field(default=20_000, ge=0)
    max_excerpt_chars: int = Field(default=2_000, ge=0)
    isolate_workspaces: bool = False


class LimitsConfig(BaseModel):
    """Per-call timeouts in seconds; ``None`` disables the timeout."""

    agent_timeout_seconds: float | None = Field(default=None, gt=0)
    judge_timeout_seconds: float | None = Field(default=None, gt=0)
    command_timeout_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _inherit_agent_timeout(self) -> LimitsConfig:
        if self.judge_timeout_seconds is None:
            self.judge_timeout_seconds = self.agent_timeout_seconds
        if self.command_timeout_seconds is None:
            self.command_timeout_seconds = self.agent_timeout_seconds
        return self


class ImplementationConfig(BaseModel):
    mode: ImplementationMode = "parallel"
    driver: str = "auto"
    max_rounds: int = Field(default=1, ge=1)
    apply_navigator_patch: NavigatorPatchMode = "auto"
    tests_during_loop: bool = False
    swap_driver_on_fail: bool = False
    swap_driver_each_round: bool = False


class ConvergeConfig(BaseModel):
    enabled: bool = False
    max_rounds: int = Field(default=1, ge=1)


class GuardrailsConfig(BaseModel):
    """Safety policy checked right before the final patch is applied."""

    enabled: bool = False
    max_files_changed: int = Field(default=50, ge=0)
    max_lines_added: int = Field(default=2_000, ge=0)
    max_lines_removed: int = Field(default=2_000, ge=0)
    forbidden_paths: list[str] = Field(default_factory=list)
    forbid_dependency_changes: bool = False
    dependency_files: list[str] | None = None

    @property
    def effective_dependency_files(self) -> list[str]:
        if self.dependency_files is None:
            return list(DEFAULT_DEPENDENCY_FILES)
        return list(self.dependency_files)


class OrchestratorConfig(BaseModel):
    """Fully resolved orchestrator configuration.

    Parameters
    ----------
    agents:
        Exactly two named agents.  The first one is "agent A" and is used as
        the default judge, planner and driver whenever a rule needs one.
    """

    agents: dict[str, AgentConfig]
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    tests: CommandConfig = Field(default_factory=CommandConfig)
    lint: CommandConfig = Field(default_factory=CommandConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    implementation: ImplementationConfig = Field(default_factory=ImplementationConfig)
    converge: ConvergeConfig = Field(default_factory=ConvergeConfig)
    guardrails: GuardrailsConfig = Field(default_factory=GuardrailsConfig)

    @model_validator(mode="after")
    def _validate_agents(self) -> OrchestratorConfig:
        names = list(self.agents)
        if len(names) != 2:
            raise ValueError(f"exactly two agents must be configured (got {len(names)}: {names})")
        for name in names:
            if not _AGENT_NAME_RE.match(name) or name in RESERVED_AGENT_NAMES:
                raise ValueError(f"invalid agent name {name!r}")
            if not self.agents[name].command.strip():
                raise ValueError(f"agent {name!r} has an empty command")

        mode = self.decision.mode
        if mode not in {"judge", "debate", NEITHER}:
            preferred = mode.removeprefix("prefer-")
            if not mode.startswith("prefer-") or preferred not in self.agents:
                raise ValueError(f"unknown decision mode {mode!r}")

        if self.decision.judge_agent is None:
            self.decision.judge_agent = names[0]
        elif self.decision.judge_agent not in self.agents:
            raise ValueError(f"decision.judge_agent {self.decision.judge_agent!r} is not a configured agent")

        if self.review.reviewer != "both" and self.review.reviewer not in self.agents:
            raise ValueError(f"review.reviewer {self.review.reviewer!r} is not a configured agent")
        if self.implementation.driver != "auto" and self.implementation.driver not in self.agents:
            raise ValueError(
                f"implementation.driver {self.implementation.driver!r} is not a configured agent"
            )
        return self

    # -- helpers --

    @property
    def agent_names(self) -> tuple[str, str]:
        first, second = self.agents
        return first, second

    def other_agent(self, agent: str) -> str:
        first, second = self.agent_names
        if agent == first:
            return second
        if agent == second:
            return first
        raise KeyError(agent)

    @property
    def reviewers(self) -> list[str]:
        if self.review.reviewer == "both":
            return list(self.agent_names)
        return [self.review.reviewer]

    def with_interactive_overrides(self, *, decision_mode_given: bool) -> OrchestratorConfig:
        """Return a copy tuned for interactive runs (debate + joint with swaps)."""
        data = self.model_dump()
        if not decision_mode_given:
            data["decision"]["mode"] = "debate"
        implementation = data["implementation"]
        implementation["mode"] = "joint"
        implementation["swap_driver_each_round"] = True
        implementation["max_rounds"] = max(2, int(implementation["max_rounds"]))
        return parse_config(data, source="interactive overrides")

    def with_decision_mode(self, mode: str) -> OrchestratorConfig:
        """Return a copy using *mode* as the decision strategy."""
        data = self.model_dump()
        data["decision"]["mode"] = mode
        return parse_config(data, source=f"--decision {mode}")


def default_config_dict() -> dict[str, Any]:
    """Return the starter configuration written by ``duet init``."""
    return {
        "agents": {
            "codex": {
                "command": "codex",
                "args": ["exec", "--full-auto", "-"],
                "prompt_mode": "stdin",
                "version_args": ["--version"],
                "min_version": None,
                "capabilities": ["edit", "shell"],
                "env": {},
            },
            "claude": {
                "command": "claude",
                "args": ["-p", "--permission-mode", "acceptEdits"],
                "prompt_mode": "stdin",
                "version_args": ["--version"],
                "min_version": None,
                "capabilities": ["edit", "shell"],
                "env": {},
            },
        },
        "decision": {"mode": "judge", "judge_agent": "codex", "debate_rounds": 1},
        "review": {"enabled": True, "reviewer": "both"},
        "tests": {"enabled": False, "command": "", "args": []},
        "lint": {"enabled": False, "command": "", "args": []},
        "memory": {"enabled": True},
        "context": {"isolate_workspaces": True},
        "limits": {"agent_timeout_seconds": 1800, "judge_timeout_seconds": 600},
        "implementation": {
            "mode": "parallel",
            "driver": "auto",
            "max_rounds": 1,
            "apply_navigator_patch": "auto",
            "tests_during_loop": False,
            "swap_driver_on_fail": False,
            "swap_driver_each_round": False,
        },
        "converge": {"enabled": False, "max_rounds": 1},
        "guardrails": {
            "enabled": True,
            "max_files_changed": 50,
            "max_lines_added": 2000,
            "max_lines_removed": 2000,
            "forbidden_paths": [".env", "*.pem"],
            "forbid_dependency_changes": False,
        },
    }


def find_config_path(root: str | Path) -> Path | None:
    """Return the first existing config file under ``<root>/.orchestrator``."""
    base = Path(root) / ORCHESTRATOR_DIR
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def parse_config(data: Any, *, source: str = "<config>") -> OrchestratorConfig:
    """Validate a raw mapping into an :class:`OrchestratorConfig`."""
    if not isinstance(data, dict):
        raise ConfigError(f"Config at {source} must be a mapping, got {type(data).__name__}")
    try:
        return OrchestratorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config at {source}:\n{exc}") from exc


def load_config(root: str | Path) -> OrchestratorConfig:
    """Load and validate the configuration for the project at *root*."""
    path = find_config_path(root)
    if path is None:
        expected = Path(root) / ORCHESTRATOR_DIR / CONFIG_FILENAMES[0]
        raise ConfigError(f"Missing config at {expected}. Run 'duet init' first.")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config at {path}: {exc}") from exc

    try:
        data = json.loads(raw) if path.suffix == ".json" else yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Malformed config at {path}: {exc}") from exc

    config = parse_config(data, source=str(path))
    logger.debug("Loaded config from %s (agents: %s)", path, ", ".join(config.agent_names))
    return config


def write_default_config(root: str | Path, *, force: bool = False) -> Path:
    """Write the starter config to ``<root>/.orchestrator/config.json``."""
    path = Path(root) / ORCHESTRATOR_DIR / CONFIG_FILENAMES[0]
    if path.exists() and not force:
        raise ConfigError(f"Config already exists at {path} (use --force to overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(default_config_dict(), indent=2) + "\n", encoding="utf-8")
    return path
