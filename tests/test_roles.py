"""Tests for driver/navigator and fixer/critic role helpers."""

from __future__ import annotations

import pytest

from duet.roles import DriverNavigator, FixerCritic, other_agent, resolve_driver
from duet.schemas import Decision

pytestmark = pytest.mark.unit

AGENTS = ("codex", "claude")


def test_swap_is_an_involution() -> None:
    roles = DriverNavigator(driver="codex", navigator="claude")
    assert roles.swap() == DriverNavigator(driver="claude", navigator="codex")
    assert roles.swap().swap() == roles

    pair = FixerCritic(fixer="claude", critic="codex")
    assert pair.swap() == FixerCritic(fixer="codex", critic="claude")


def test_other_agent_rejects_unknown_names() -> None:
    assert other_agent("codex", AGENTS) == "claude"
    assert other_agent("claude", AGENTS) == "codex"
    with pytest.raises(ValueError):
        other_agent("gemini", AGENTS)


def test_resolve_driver_prefers_execution_driver_then_config_then_winner() -> None:
    decision = Decision(mode="judge", winner="claude", execution_driver="codex")
    assert resolve_driver(decision, AGENTS, "claude").driver == "codex"

    decision = Decision(mode="judge", winner="claude")
    assert resolve_driver(decision, AGENTS, "codex").driver == "codex"
    assert resolve_driver(decision, AGENTS, "auto").driver == "claude"


def test_resolve_driver_defaults_to_first_agent_without_winner() -> None:
    decision = Decision(mode="neither", winner="neither")
    roles = resolve_driver(decision, AGENTS)
    assert roles == DriverNavigator(driver="codex", navigator="claude")
