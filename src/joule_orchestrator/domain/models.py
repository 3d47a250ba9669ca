"""Dataclass domain models for tasks, plans, step results and task outcomes."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, NoReturn, TypeAlias, TypeVar, cast

from joule_orchestrator.domain import ids as domain_ids

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetEnvelope, BudgetUsage
    from joule_orchestrator.observability.decision_graph import DecisionGraph
    from joule_orchestrator.observability.trace import ExecutionTrace
    from joule_orchestrator.synthesis_plane.model_catalog import EfficiencyReport
    from joule_orchestrator.synthesis_plane.providers.base import ChatMessage

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65_536
_CHECK_KEYS = (
    "pattern",
    "tool_name",
    "toolName",
    "path",
    "url_contains",
    "urlContains",
    "title_contains",
    "titleContains",
    "assertion",
)


class TaskStatus(StrEnum):
    PENDING = "pending"
    SPECIFYING = "specifying"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    RECOVERING = "recovering"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_EXHAUSTED = "budget_exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BUDGET_EXHAUSTED}


class AgentState(StrEnum):
    IDLE = "idle"
    SPEC = "spec"
    PLAN = "plan"
    CRITIQUE = "critique"
    SIMULATE = "simulate"
    DECOMPOSE = "decompose"
    ACT = "act"
    OBSERVE = "observe"
    VERIFY = "verify"
    RECOVER = "recover"
    CHECKPOINT = "checkpoint"
    SYNTHESIZE = "synthesize"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in {AgentState.DONE, AgentState.FAILED, AgentState.STOPPED}


class CriterionType(StrEnum):
    OUTPUT_CONTAINS = "output_contains"
    TOOL_SUCCEEDED = "tool_succeeded"
    FILE_EXISTS = "file_exists"
    PAGE_STATE = "page_state"
    CUSTOM = "custom"


class VerificationType(StrEnum):
    OUTPUT_CHECK = "output_check"
    NONE = "none"


class IssueSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SimulationIssueType(StrEnum):
    MISSING_TOOL = "missing_tool"
    INVALID_ARGS = "invalid_args"
    MISSING_DEPENDENCY = "missing_dependency"
    HIGH_RISK = "high_risk"
    BUDGET_RISK = "budget_risk"


class DecompositionStrategy(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MIXED = "mixed"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    __slots__ = ()

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class SuccessCriterion(CanonicalModel):
    description: str
    type: CriterionType = CriterionType.CUSTOM
    check: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "description", _as_str(self.description, "SuccessCriterion.description")
        )
        object.__setattr__(
            self, "type", _as_enum(CriterionType, self.type, "SuccessCriterion.type")
        )
        object.__setattr__(
            self, "check", _as_str(self.check, "SuccessCriterion.check", min_len=0)
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> SuccessCriterion:
        raw_type = data.get("type", CriterionType.CUSTOM.value)
        try:
            criterion_type = CriterionType(str(raw_type))
        except ValueError:
            criterion_type = CriterionType.CUSTOM
        raw_check = data.get("check", "")
        if isinstance(raw_check, Mapping):
            # Structured checks carry one meaningful value per criterion type.
            picked = next(
                (
                    raw_check[key]
                    for key in _CHECK_KEYS
                    if isinstance(raw_check.get(key), str) and raw_check[key]
                ),
                "",
            )
            check = str(picked)
        else:
            check = "" if raw_check is None else str(raw_check)
        return cls(
            description=str(data.get("description", "")).strip() or "criterion",
            type=criterion_type,
            check=check,
        )


@dataclass(frozen=True, slots=True)
class TaskSpec(CanonicalModel):
    """Structured goal, constraints and measurable success criteria for one task."""

    goal: str
    constraints: tuple[str, ...] = ()
    success_criteria: tuple[SuccessCriterion, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "goal", _as_str(self.goal, "TaskSpec.goal"))
        object.__setattr__(
            self,
            "constraints",
            tuple(_as_str(item, "TaskSpec.constraints[]") for item in self.constraints),
        )
        object.__setattr__(self, "success_criteria", tuple(self.success_criteria))


@dataclass(frozen=True, slots=True)
class CriterionResult(CanonicalModel):
    criterion: SuccessCriterion
    met: bool
    evidence: str = ""


@dataclass(frozen=True, slots=True)
class StepVerification(CanonicalModel):
    type: VerificationType = VerificationType.NONE
    assertion: str = ""
    retry_on_fail: bool = False
    max_retries: int = 2

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "type", _as_enum(VerificationType, self.type, "StepVerification.type")
        )
        object.__setattr__(
            self, "max_retries", _as_int(self.max_retries, "StepVerification.max_retries", minimum=0)
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> StepVerification:
        raw_type = str(data.get("type", VerificationType.NONE.value))
        try:
            verification_type = VerificationType(raw_type)
        except ValueError:
            verification_type = VerificationType.NONE
        max_retries = data.get("max_retries", data.get("maxRetries", 2))
        return cls(
            type=verification_type,
            assertion=str(data.get("assertion", "")),
            retry_on_fail=bool(data.get("retry_on_fail", data.get("retryOnFail", False))),
            max_retries=max_retries if isinstance(max_retries, int) and max_retries >= 0 else 2,
        )


@dataclass(frozen=True, slots=True)
class PlanStep(CanonicalModel):
    index: int
    description: str
    tool_name: str
    tool_args: Mapping[str, object] = field(default_factory=dict)
    verify: StepVerification | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "index", _as_int(self.index, "PlanStep.index", minimum=0))
        object.__setattr__(self, "tool_name", _as_str(self.tool_name, "PlanStep.tool_name"))
        object.__setattr__(
            self, "description", _as_str(self.description, "PlanStep.description", min_len=0)
        )
        object.__setattr__(self, "tool_args", dict(self.tool_args))

    def with_index(self, index: int) -> PlanStep:
        return PlanStep(
            index=index,
            description=self.description,
            tool_name=self.tool_name,
            tool_args=self.tool_args,
            verify=self.verify,
        )


@dataclass(frozen=True, slots=True)
class ExecutionPlan(CanonicalModel):
    task_id: str
    complexity: float
    steps: tuple[PlanStep, ...] = ()
    raw_response: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "complexity",
            _clamp(_as_float(self.complexity, "ExecutionPlan.complexity"), 0.0, 1.0),
        )
        object.__setattr__(self, "steps", tuple(self.steps))

    @property
    def is_empty(self) -> bool:
        return not self.steps


@dataclass(frozen=True, slots=True)
class PlanScore(CanonicalModel):
    overall: float
    step_confidences: tuple[float, ...] = ()
    issues: tuple[str, ...] = ()
    refined_steps: tuple[PlanStep, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "overall", _clamp(_as_float(self.overall, "PlanScore.overall"), 0.0, 1.0)
        )
        object.__setattr__(
            self,
            "step_confidences",
            tuple(
                _clamp(_as_float(item, "PlanScore.step_confidences[]"), 0.0, 1.0)
                for item in self.step_confidences
            ),
        )
        object.__setattr__(self, "issues", tuple(str(item) for item in self.issues))
        if self.refined_steps is not None:
            object.__setattr__(self, "refined_steps", tuple(self.refined_steps))


@dataclass(frozen=True, slots=True)
class SimulationIssue(CanonicalModel):
    step_index: int
    type: SimulationIssueType
    severity: IssueSeverity
    message: str


@dataclass(frozen=True, slots=True)
class SimulationResult(CanonicalModel):
    valid: bool
    issues: tuple[SimulationIssue, ...] = ()
    estimated_tokens: int = 0
    estimated_cost_usd: float = 0.0
    estimated_tool_calls: int = 0

    @property
    def high_severity_issues(self) -> tuple[SimulationIssue, ...]:
        return tuple(issue for issue in self.issues if issue.severity is IssueSeverity.HIGH)


@dataclass(frozen=True, slots=True)
class SubTaskDefinition(CanonicalModel):
    id: str
    description: str
    depends_on: tuple[str, ...] = ()
    budget_share: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "SubTaskDefinition.id"))
        object.__setattr__(
            self, "description", _as_str(self.description, "SubTaskDefinition.description")
        )
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if self.budget_share is not None:
            object.__setattr__(
                self,
                "budget_share",
                _as_float(self.budget_share, "SubTaskDefinition.budget_share", minimum=0.0),
            )


@dataclass(frozen=True, slots=True)
class DecompositionPlan(CanonicalModel):
    strategy: DecompositionStrategy
    subtasks: tuple[SubTaskDefinition, ...]


@dataclass(frozen=True, slots=True)
class StepResult(CanonicalModel):
    """Outcome of one tool invocation; appended to a run's results, never mutated."""

    step_index: int
    tool_name: str
    tool_args: Mapping[str, object]
    output: object
    success: bool
    duration_ms: float
    error: str | None = None
    confidence: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_args", dict(self.tool_args))


@dataclass(frozen=True, slots=True)
class Task(CanonicalModel):
    """A natural-language task submitted with a budget preset or envelope."""

    description: str
    budget: str | Mapping[str, object] | BudgetEnvelope = "medium"
    id: str = field(default_factory=domain_ids.generate_task_id)
    context: Mapping[str, object] | None = None
    tools: tuple[str, ...] | None = None
    messages: tuple[ChatMessage, ...] = ()
    session_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Task.id"))
        object.__setattr__(self, "description", _as_str(self.description, "Task.description"))
        if isinstance(self.budget, Mapping):
            object.__setattr__(self, "budget", dict(self.budget))
        if self.context is not None:
            object.__setattr__(self, "context", dict(self.context))
        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "messages", tuple(self.messages))
        if self.created_at.tzinfo is None:
            raise ValueError("Task.created_at must be timezone-aware")


@dataclass(frozen=True, slots=True)
class TaskResult(CanonicalModel):
    task_id: str
    trace_id: str
    status: TaskStatus
    budget_used: BudgetUsage
    trace: ExecutionTrace
    result: str | None = None
    step_results: tuple[StepResult, ...] = ()
    error: str | None = None
    spec: TaskSpec | None = None
    criteria_results: tuple[CriterionResult, ...] | None = None
    simulation_result: SimulationResult | None = None
    decision_graph: DecisionGraph | None = None
    efficiency_report: EfficiencyReport | None = None
    id: str = field(default_factory=domain_ids.generate_result_id)
    completed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "TaskResult.status"))
        if not self.status.is_terminal:
            raise ValueError(f"TaskResult.status must be terminal, got {self.status.value!r}")
        object.__setattr__(self, "step_results", tuple(self.step_results))

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.COMPLETED


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{path}: expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{path}: expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{path}: expected number, got {type(value).__name__}")
    parsed = float(value)
    if math.isnan(parsed):
        _fail(path, "must not be NaN")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        raise TypeError(f"{path}: expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if math.isinf(value):
            return None
        return value
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            out[str(key)] = _serialize_value(item, f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, CanonicalModel) and is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return cast("JSONValue", to_dict())
    return repr(value)


__all__ = [
    "AgentState",
    "CanonicalModel",
    "CriterionResult",
    "CriterionType",
    "DecompositionPlan",
    "DecompositionStrategy",
    "ExecutionPlan",
    "IssueSeverity",
    "JSONValue",
    "PlanScore",
    "PlanStep",
    "SimulationIssue",
    "SimulationIssueType",
    "SimulationResult",
    "StepResult",
    "StepVerification",
    "SubTaskDefinition",
    "SuccessCriterion",
    "Task",
    "TaskResult",
    "TaskSpec",
    "TaskStatus",
    "VerificationType",
]
