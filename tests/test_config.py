"""Tests for configuration defaults, validation and loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from duet.config import (
    default_config_dict,
    find_config_path,
    load_config,
    parse_config,
    write_default_config,
)
from duet.errors import ConfigError

pytestmark = pytest.mark.unit


def _agents() -> dict:
    return {"agents": {"codex": {"command": "codex"}, "claude": {"command": "claude"}}}


def test_defaults_are_resolved_once() -> None:
    config = parse_config({**_agents(), "limits": {"agent_timeout_seconds": 30}})

    assert config.agent_names == ("codex", "claude")
    assert config.decision.mode == "neither"
    assert config.decision.judge_agent == "codex"
    assert config.limits.judge_timeout_seconds == 30
    assert config.limits.command_timeout_seconds == 30
    assert config.implementation.mode == "parallel"
    assert config.guardrails.enabled is False
    assert config.reviewers == ["codex", "claude"]


def test_exactly_two_agents_are_required() -> None:
    with pytest.raises(ConfigError, match="exactly two agents"):
        parse_config({"agents": {"codex": {"command": "codex"}}})


@pytest.mark.parametrize("name", ["neither", "joint", "Bad Name"])
def test_reserved_or_malformed_agent_names_are_rejected(name: str) -> None:
    with pytest.raises(ConfigError, match="invalid agent name"):
        parse_config({"agents": {name: {"command": "x"}, "claude": {"command": "claude"}}})


def test_decision_mode_must_name_a_known_strategy_or_agent() -> None:
    assert parse_config({**_agents(), "decision": {"mode": "prefer-claude"}}).decision.mode == "prefer-claude"
    with pytest.raises(ConfigError, match="unknown decision mode"):
        parse_config({**_agents(), "decision": {"mode": "prefer-gemini"}})
    with pytest.raises(ConfigError, match="unknown decision mode"):
        parse_config({**_agents(), "decision": {"mode": "coin-flip"}})


def test_cross_references_must_be_configured_agents() -> None:
    with pytest.raises(ConfigError, match="judge_agent"):
        parse_config({**_agents(), "decision": {"judge_agent": "gemini"}})
    with pytest.raises(ConfigError, match="review.reviewer"):
        parse_config({**_agents(), "review": {"reviewer": "gemini"}})
    with pytest.raises(ConfigError, match="implementation.driver"):
        parse_config({**_agents(), "implementation": {"driver": "gemini"}})


def test_interactive_overrides_force_debate_and_joint_mode() -> None:
    config = parse_config({**_agents(), "decision": {"mode": "judge"}})

    tuned = config.with_interactive_overrides(decision_mode_given=False)

    assert tuned.decision.mode == "debate"
    assert tuned.implementation.mode == "joint"
    assert tuned.implementation.swap_driver_each_round is True
    assert tuned.implementation.max_rounds == 2
    assert config.implementation.mode == "parallel"

    kept = config.with_interactive_overrides(decision_mode_given=True)
    assert kept.decision.mode == "judge"


def test_with_decision_mode_validates_the_override() -> None:
    config = parse_config(_agents())
    assert config.with_decision_mode("prefer-codex").decision.mode == "prefer-codex"
    with pytest.raises(ConfigError):
        config.with_decision_mode("prefer-nobody")


def test_load_config_reports_missing_and_malformed_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="duet init"):
        load_config(tmp_path)

    config_dir = tmp_path / ".orchestrator"
    config_dir.mkdir()
    (config_dir / "config.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError, match="Malformed config"):
        load_config(tmp_path)


def test_load_config_accepts_yaml(tmp_path: Path) -> None:
    config_dir = tmp_path / ".orchestrator"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text(
        "agents:\n  codex:\n    command: codex\n  claude:\n    command: claude\n"
        "implementation:\n  mode: joint\n  max_rounds: 3\n",
        encoding="utf-8",
    )

    assert find_config_path(tmp_path) == config_dir / "config.yaml"
    config = load_config(tmp_path)
    assert config.implementation.mode == "joint"
    assert config.implementation.max_rounds == 3


def test_write_default_config_round_trips_and_refuses_overwrite(tmp_path: Path) -> None:
    path = write_default_config(tmp_path)

    assert json.loads(path.read_text(encoding="utf-8")) == default_config_dict()
    assert load_config(tmp_path).decision.mode == "judge"
    with pytest.raises(ConfigError, match="already exists"):
        write_default_config(tmp_path)
    assert write_default_config(tmp_path, force=True) == path
