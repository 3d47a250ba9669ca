"""Plan generation, pre-execution simulation and task decomposition."""

from joule_orchestrator.planning.decomposition import TaskDecomposer
from joule_orchestrator.planning.planner import Planner
from joule_orchestrator.planning.simulator import ExecutionSimulator

__all__ = ["ExecutionSimulator", "Planner", "TaskDecomposer"]
