"""Two-agent role assignments with pure swap transitions."""

from __future__ import annotations

from dataclasses import dataclass

from duet.schemas import Decision


@dataclass(frozen=True, slots=True)
class DriverNavigator:
    """Joint implementation roles: the driver edits, the navigator reviews."""

    driver: str
    navigator: str

    def swap(self) -> DriverNavigator:
        return DriverNavigator(driver=self.navigator, navigator=self.driver)


@dataclass(frozen=True, slots=True)
class FixerCritic:
    """Convergence roles: the fixer addresses findings, the critic re-reviews."""

    fixer: str
    critic: str

    def swap(self) -> FixerCritic:
        return FixerCritic(fixer=self.critic, critic=self.fixer)


def other_agent(agent: str, agents: tuple[str, str]) -> str:
    """Return the member of *agents* that is not *agent*."""
    first, second = agents
    if agent == first:
        return second
    if agent == second:
        return first
    raise ValueError(f"unknown agent {agent!r}; expected one of {agents}")


def resolve_driver(
    decision: Decision,
    agents: tuple[str, str],
    configured_driver: str = "auto",
) -> DriverNavigator:
    """Pick the initial driver for joint implementation.

    Precedence: an explicit execution driver on the decision, the configured
    driver, the decision winner, then the first agent.
    """
    candidates = (
        decision.execution_driver,
        None if configured_driver == "auto" else configured_driver,
        decision.winner,
    )
    driver = next((name for name in candidates if name in agents), agents[0])
    return DriverNavigator(driver=driver, navigator=other_agent(driver, agents))
