"""Shared pytest configuration: markers, ordering and pipeline fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from duet.agent_runner import AgentInvoker
from duet.config import OrchestratorConfig, parse_config
from duet.pipeline.phases import PhaseContext
from duet.prompts.builders import PromptBuilder
from duet.prompts.catalog import PromptCatalog
from duet.runner_common import CommandResult
from duet.schemas import RunContext
from duet.store import RunStore
from duet.transcript import Transcript
from duet.workspace import WorktreeManager


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


# ---------------------------------------------------------------------------
# Shared fixtures: configuration, scripted agents and a phase context
# ---------------------------------------------------------------------------

Handler = Callable[[str, str, Path, str], "str | CommandResult"]


def base_config_data() -> dict[str, Any]:
    agent = {"command": sys.executable, "args": [], "prompt_mode": "stdin", "version_args": ["--version"]}
    return {"agents": {"codex": dict(agent), "claude": dict(agent)}}


def build_config(**sections: Any) -> OrchestratorConfig:
    return parse_config({**base_config_data(), **sections}, source="tests")


class ScriptedInvoker(AgentInvoker):
    """Invoker whose agents are a Python callable instead of a process.

    ``handler(agent, phase, cwd, prompt)`` returns the agent's stdout (or a
    full :class:`CommandResult`) and may edit files under ``cwd``.
    """

    def __init__(self, config, run, store, agent_meta=None, *, handler: Handler) -> None:
        super().__init__(config, run, store, agent_meta)
        self.handler = handler
        self.calls: list[tuple[str, str, Path]] = []

    def _execute(self, cmd, *, cwd, env, stdin_text, timeout) -> CommandResult:
        agent = env["ORCHESTRATOR_AGENT"]
        phase = env["ORCHESTRATOR_PHASE"]
        self.calls.append((agent, phase, Path(cwd)))
        out = self.handler(agent, phase, Path(cwd), stdin_text or "")
        if isinstance(out, CommandResult):
            return out
        return CommandResult(cmd=list(cmd), exit_code=0, stdout=out or "", stderr="")


def silent_agent(agent: str, phase: str, cwd: Path, prompt: str) -> str:
    return f"{agent} {phase} output"


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    (root / "app.py").write_text("def greet():\n    return 'hi'\n", encoding="utf-8")
    return root


@pytest.fixture
def make_context(tmp_path: Path, project_root: Path) -> Callable[..., PhaseContext]:
    """Return a factory building a plain-tree :class:`PhaseContext`."""

    def _make(handler: Handler = silent_agent, **sections: Any) -> PhaseContext:
        config = build_config(**sections)
        run = RunContext(session_id="session-test", run_id="run-test", task="Add a greeting")
        store = RunStore(tmp_path / "artifacts" / "run-test")
        return PhaseContext(
            root=project_root,
            config=config,
            run=run,
            store=store,
            invoker=ScriptedInvoker(config, run, store, handler=handler),
            transcript=Transcript(store),
            prompts=PromptBuilder(PromptCatalog(), run, config.agent_names, "Repo summary: test"),
            worktrees=WorktreeManager(vcs=False),
            vcs=False,
        )

    return _make


@pytest.fixture
def config_factory() -> Callable[..., OrchestratorConfig]:
    return build_config


@pytest.fixture
def scripted_invoker_factory() -> Callable[[Handler], Callable[..., ScriptedInvoker]]:
    """Return ``factory_for(handler)`` suitable for ``PipelineController(invoker_factory=...)``."""

    def _factory_for(handler: Handler) -> Callable[..., ScriptedInvoker]:
        def _factory(config, run, store, agent_meta):
            return ScriptedInvoker(config, run, store, agent_meta, handler=handler)

        return _factory

    return _factory_for
