"""Two-agent orchestration pipeline.

The pipeline coordinates two agent CLIs through a fixed sequence of phases:

    plan -> propose -> decide -> execution plan -> implement -> review
    -> converge -> final

Each phase writes its artifacts under
``.orchestrator/sessions/<session>/runs/<run>/`` before the next one starts.

Usage::

    from duet.pipeline import PipelineController, RunOptions

    controller = PipelineController("/path/to/repo")
    outcome = controller.run(RunOptions(task="Add input validation", apply=True))
"""

from duet.pipeline.convergence import ConvergenceEngine
from duet.pipeline.decision import DecisionEngine
from duet.pipeline.execution_plan import ExecutionPlanner
from duet.pipeline.implementation import ImplementationEngine
from duet.pipeline.orchestrator import PipelineController, RunOptions
from duet.pipeline.phases import PhaseContext, PipelinePhase

__all__ = [
    "ConvergenceEngine",
    "DecisionEngine",
    "ExecutionPlanner",
    "ImplementationEngine",
    "PhaseContext",
    "PipelineController",
    "PipelinePhase",
    "RunOptions",
]
