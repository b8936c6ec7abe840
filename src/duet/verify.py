"""Agent readiness checks: binary presence and minimum version."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from duet.config import OrchestratorConfig
from duet.errors import VerificationError
from duet.runner_common import run_command
from duet.schemas import AgentMeta

logger = logging.getLogger(__name__)

_VERSION_TIMEOUT_SECONDS = 30
_FULL_VERSION_RE = re.compile(r"(\d+)\.(\d+)\.(\d+)")
_SHORT_VERSION_RE = re.compile(r"(\d+)\.(\d+)")


@dataclass
class AgentVerification:
    """Verification result for one configured agent."""

    agent: str
    command: str
    found: bool
    version: str | None = None
    version_raw: str = ""
    min_version: str | None = None
    version_ok: bool | None = None
    capabilities: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return not self.found or self.version_ok is False

    def to_dict(self) -> dict[str, object]:
        return {
            "agent": self.agent,
            "command": self.command,
            "found": self.found,
            "version": self.version,
            "version_raw": self.version_raw,
            "min_version": self.min_version,
            "version_ok": self.version_ok,
            "capabilities": list(self.capabilities),
            "error": self.error,
        }

    def to_meta(self) -> AgentMeta:
        return AgentMeta(name=self.agent, version=self.version, capabilities=list(self.capabilities))


def binary_exists(binary: str) -> bool:
    """Return ``True`` when an executable exists for *binary*."""
    binary = os.path.expandvars(os.path.expanduser(str(binary or "").strip()))
    if not binary:
        return False
    try:
        candidate = Path(binary)
        if candidate.is_file():
            return os.access(candidate, os.X_OK)
    except OSError:
        pass
    return shutil.which(binary) is not None


def parse_version(output: str) -> str | None:
    """Extract ``X.Y.Z`` from version output (``X.Y`` becomes ``X.Y.0``)."""
    match = _FULL_VERSION_RE.search(output or "")
    if match:
        return ".".join(match.groups())
    match = _SHORT_VERSION_RE.search(output or "")
    if match:
        return f"{match.group(1)}.{match.group(2)}.0"
    return None


def _version_parts(value: str) -> list[int]:
    parts = []
    for part in value.split(".")[:3]:
        digits = re.sub(r"\D", "", part)
        parts.append(int(digits) if digits else 0)
    while len(parts) < 3:
        parts.append(0)
    return parts


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 comparing the first three numeric parts."""
    a, b = _version_parts(left), _version_parts(right)
    return (a > b) - (a < b)


def verify_agent(name: str, config: OrchestratorConfig, cwd: Path) -> AgentVerification:
    agent_config = config.agents[name]
    command = agent_config.command
    result = AgentVerification(
        agent=name,
        command=command,
        found=binary_exists(command),
        min_version=agent_config.min_version,
        capabilities=list(agent_config.capabilities),
    )
    if not result.found:
        result.error = f"Command not found: {command}"
        return result
    if not agent_config.version_args:
        return result

    probe = run_command(
        [command, *agent_config.version_args],
        cwd=cwd,
        timeout_seconds=_VERSION_TIMEOUT_SECONDS,
        process_name=f"{name} version check",
    )
    result.version_raw = f"{probe.stdout}{probe.stderr}".strip()
    result.version = parse_version(result.version_raw)
    if result.version is None:
        if agent_config.min_version:
            result.version_ok = False
            result.error = f"Unable to parse version output for {command}"
    elif agent_config.min_version:
        result.version_ok = compare_versions(result.version, agent_config.min_version) >= 0
        if not result.version_ok:
            result.error = f"Version {result.version} is below required {agent_config.min_version}"
    else:
        result.version_ok = True
    return result


def verify_agents(config: OrchestratorConfig, cwd: str | Path) -> list[AgentVerification]:
    """Check every configured agent in configuration order."""
    results = [verify_agent(name, config, Path(cwd)) for name in config.agent_names]
    for item in results:
        if item.failed:
            logger.warning("Agent %s failed verification: %s", item.agent, item.error)
        else:
            logger.debug("Agent %s verified (version %s)", item.agent, item.version or "unknown")
    return results


def verification_failures(results: list[AgentVerification]) -> list[AgentVerification]:
    return [item for item in results if item.failed]


def format_verification(results: list[AgentVerification]) -> str:
    """Render one line per agent, e.g. ``codex: version 1.2.3 (ok) | capabilities: edit``."""
    lines = []
    for item in results:
        if not item.found:
            lines.append(f"{item.agent}: missing ({item.command})")
            continue
        version = f"version {item.version}" if item.version else "version unknown"
        if item.version_ok is False:
            status = "(version too low)" if item.version else "(version unparseable)"
        elif item.version_ok is True:
            status = "(ok)"
        else:
            status = ""
        caps = f"capabilities: {', '.join(item.capabilities)}" if item.capabilities else "capabilities: none"
        lines.append(" ".join(part for part in (f"{item.agent}: {version}", status, f"| {caps}") if part))
    return "\n".join(lines)


def raise_for_failures(results: list[AgentVerification]) -> None:
    """Raise :class:`VerificationError` with a per-agent breakdown on any failure."""
    failures = verification_failures(results)
    if failures:
        raise VerificationError(
            "Agent verification failed:",
            [f"{item.agent}: {item.error}" for item in failures],
        )
