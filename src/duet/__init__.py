"""duet - coordinate two coding agents through plan, decide, implement and review."""

from importlib.metadata import PackageNotFoundError, version

from duet.schemas import Decision, ReviewSummary, RunContext, RunOutcome

__all__ = ["Decision", "ReviewSummary", "RunContext", "RunOutcome"]

try:
    __version__ = version("duet-orchestrator")
except PackageNotFoundError:
    __version__ = "0.0.0"
