"""Control-plane public API: budgets, the execution engine and crew orchestration."""

from joule_orchestrator.control_plane.blackboard import Blackboard
from joule_orchestrator.control_plane.budgets import (
    BUDGET_PRESETS,
    BudgetEnvelope,
    BudgetManager,
    BudgetSession,
    BudgetUsage,
)
from joule_orchestrator.control_plane.crew import (
    AgentDefinition,
    AgentResult,
    CrewDefinition,
    CrewOrchestrator,
    CrewResult,
    CrewStatus,
    CrewStrategy,
    load_crew_definition,
    validate_crew,
)
from joule_orchestrator.control_plane.engine import (
    EngineEvent,
    EngineEventType,
    ExecutionSettings,
    TaskExecutionEngine,
)

__all__ = [
    "AgentDefinition",
    "AgentResult",
    "BUDGET_PRESETS",
    "Blackboard",
    "BudgetEnvelope",
    "BudgetManager",
    "BudgetSession",
    "BudgetUsage",
    "CrewDefinition",
    "CrewOrchestrator",
    "CrewResult",
    "CrewStatus",
    "CrewStrategy",
    "EngineEvent",
    "EngineEventType",
    "ExecutionSettings",
    "TaskExecutionEngine",
    "load_crew_definition",
    "validate_crew",
]
