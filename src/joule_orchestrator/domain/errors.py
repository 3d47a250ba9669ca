"""Error taxonomy for task execution, budgets, tools, planning and crews.

Provider transport failures live in
:mod:`joule_orchestrator.synthesis_plane.providers.base` and are normalized there.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetUsage


class JouleError(RuntimeError):
    """Base class for orchestrator errors with a stable machine-readable code."""

    code: str = "joule_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "message": self.message}


class BudgetExhaustedError(JouleError):
    """A budget dimension's usage went strictly above its limit."""

    code = "budget_exhausted"

    def __init__(self, dimension: str, usage: BudgetUsage) -> None:
        super().__init__(f"Budget exhausted: {dimension}")
        self.dimension = dimension
        self.usage = usage

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["dimension"] = self.dimension
        payload["usage"] = self.usage.to_dict()
        return payload


class ToolNotFoundError(JouleError):
    code = "tool_not_found"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(JouleError):
    code = "tool_execution_failed"

    def __init__(self, tool_name: str, cause: str | BaseException) -> None:
        detail = cause if isinstance(cause, str) else f"{type(cause).__name__}: {cause}"
        super().__init__(f"Tool '{tool_name}' failed: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class PlanValidationError(JouleError):
    code = "plan_validation_failed"

    def __init__(self, message: str, *, errors: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.errors = errors

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["errors"] = list(self.errors)
        return payload


class ConstitutionViolationError(JouleError):
    """A constitutional rule blocked a task, tool call or output. Never retried."""

    code = "constitution_violation"

    def __init__(self, rule_id: str, rule_name: str, message: str) -> None:
        super().__init__(f"Constitution violation [{rule_id}]: {message}")
        self.rule_id = rule_id
        self.rule_name = rule_name
        self.detail = message

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["rule_id"] = self.rule_id
        payload["rule_name"] = self.rule_name
        return payload


class ConfigError(JouleError, ValueError):
    code = "config_error"


class InvalidTransitionError(JouleError):
    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"Invalid state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class CrewValidationError(JouleError, ValueError):
    code = "crew_validation_failed"


__all__ = [
    "BudgetExhaustedError",
    "ConfigError",
    "ConstitutionViolationError",
    "CrewValidationError",
    "InvalidTransitionError",
    "JouleError",
    "PlanValidationError",
    "ToolExecutionError",
    "ToolNotFoundError",
]
