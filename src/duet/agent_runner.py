"""Run one external agent CLI for one phase of a run.

The invoker is the only place agent processes are spawned.  Every call
writes ``prompt.txt``, ``stdout.log`` and ``stderr.log`` under the call's log
key and (optionally) the agent's stdout under its output key.  Agent failures
and timeouts are reported in the returned :class:`AgentRunResult`; they never
raise.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from duet.config import OrchestratorConfig
from duet.prompt_logging import log_prompt
from duet.runner_common import CommandResult, resolve_binary, run_command, substitute_placeholders
from duet.schemas import AgentMeta, AgentRunResult, RunContext
from duet.store import RunStore

logger = logging.getLogger(__name__)

PROMPT_FILE = "prompt.txt"
STDOUT_FILE = "stdout.log"
STDERR_FILE = "stderr.log"


@dataclass(frozen=True, slots=True)
class AgentCall:
    """One agent invocation.

    Parameters
    ----------
    log_key:
        Artifact directory (path parts inside the run) for prompt and logs.
    output_key:
        Artifact file that receives the agent's stdout, when set.
    timeout_seconds:
        Overrides the configured agent timeout for this call.
    """

    agent: str
    phase: str
    prompt: str
    cwd: Path
    log_key: tuple[str, ...]
    output_key: tuple[str, ...] | None = None
    timeout_seconds: float | None = None


class AgentInvoker:
    """Launches configured agents with placeholder-expanded arguments.

    Parameters
    ----------
    config:
        Resolved configuration; only ``agents`` and ``limits`` are read.
    run:
        Identity of the current run (exposed to agents as placeholders and
        ``ORCHESTRATOR_*`` environment variables).
    store:
        Artifact store the call logs are written to.
    agent_meta:
        Verified version and capabilities per agent.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        run: RunContext,
        store: RunStore,
        agent_meta: Mapping[str, AgentMeta] | None = None,
    ) -> None:
        self.config = config
        self.run = run
        self.store = store
        self.agent_meta = dict(agent_meta or {})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_phase(self, call: AgentCall) -> AgentRunResult:
        agent_config = self.config.agents[call.agent]
        prompt_path = self.store.put_text(*call.log_key, PROMPT_FILE, content=call.prompt)
        values = self._placeholder_values(call, prompt_path)

        args = [substitute_placeholders(arg, values) for arg in agent_config.args]
        stdin_text: str | None = None
        if agent_config.prompt_mode == "stdin":
            stdin_text = call.prompt
        elif agent_config.prompt_mode == "file":
            if not any("{prompt_file}" in arg for arg in agent_config.args):
                args.append(str(prompt_path))
        elif not any("{prompt}" in arg for arg in agent_config.args):
            args.append(call.prompt)

        env = dict(os.environ)
        env.update(agent_config.env)
        env.update(self._orchestrator_env(values))

        timeout = call.timeout_seconds or self.config.limits.agent_timeout_seconds
        cmd = [resolve_binary(agent_config.command), *args]
        logger.info("Running %s for phase %s (cwd=%s)", call.agent, call.phase, call.cwd)
        log_prompt(logger, call.prompt, label=f"{call.agent}/{call.phase} prompt")

        result = self._execute(cmd, cwd=Path(call.cwd), env=env, stdin_text=stdin_text, timeout=timeout)

        self.store.put_text(*call.log_key, STDOUT_FILE, content=result.stdout)
        self.store.put_text(*call.log_key, STDERR_FILE, content=result.stderr)
        if call.output_key is not None:
            self.store.put_text(*call.output_key, content=result.stdout)

        if result.timed_out:
            logger.warning("%s timed out during %s", call.agent, call.phase)
        elif result.exit_code != 0:
            logger.warning("%s exited with %s during %s", call.agent, result.exit_code, call.phase)

        return AgentRunResult(
            agent=call.agent,
            phase=call.phase,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=result.timed_out,
            duration_seconds=result.duration_seconds,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute(
        self,
        cmd: list[str],
        *,
        cwd: Path,
        env: dict[str, str],
        stdin_text: str | None,
        timeout: float | None,
    ) -> CommandResult:
        """Spawn the agent process.  Tests override this seam."""
        return run_command(
            cmd,
            cwd=cwd,
            env=env,
            stdin_text=stdin_text,
            timeout_seconds=timeout,
            process_name=f"agent {Path(cmd[0]).name}",
        )

    def _placeholder_values(self, call: AgentCall, prompt_path: Path) -> dict[str, str]:
        meta = self.agent_meta.get(call.agent)
        return {
            "workdir": str(call.cwd),
            "phase": call.phase,
            "prompt": call.prompt,
            "prompt_file": str(prompt_path),
            "task": self.run.task,
            "session_id": self.run.session_id,
            "run_id": self.run.run_id,
            "agent": call.agent,
            "agent_version": (meta.version or "") if meta else "",
            "capabilities": ",".join(meta.capabilities) if meta else "",
            "run_mode": self.run.run_mode,
        }

    @staticmethod
    def _orchestrator_env(values: Mapping[str, str]) -> dict[str, str]:
        keys = (
            "phase",
            "task",
            "session_id",
            "run_id",
            "agent",
            "agent_version",
            "capabilities",
            "run_mode",
            "workdir",
            "prompt_file",
        )
        env = {f"ORCHESTRATOR_{key.upper()}": values[key] for key in keys}
        env["ORCHESTRATOR_AGENT_CAPABILITIES"] = env.pop("ORCHESTRATOR_CAPABILITIES")
        return env
