"""
Multi-agent crew orchestration.

A crew run splits one budget session between its agents, runs them sequentially, in
parallel, or in ``depends_on`` order, and publishes every agent's outcome to a shared
:class:`Blackboard`. Agents run either as a single model pass (``direct``) or as a full
engine run (``full``). The orchestrator also serves as the engine's sub-task runner: a
decomposition is executed as a generated crew against the caller's session.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog
import yaml

from joule_orchestrator.constants import (
    BUDGET_SHARE_TOLERANCE,
    DEFAULT_AGENT_MAX_ITERATIONS,
    DEFAULT_AGENT_RETRY_DELAY_MS,
    DEFAULT_CREW_CONCURRENCY,
    SEQUENTIAL_AGENT_MAX_RETRIES,
)
from joule_orchestrator.control_plane.blackboard import Blackboard, EntryStatus, render_entries
from joule_orchestrator.domain import ids as domain_ids
from joule_orchestrator.domain.errors import BudgetExhaustedError, CrewValidationError, JouleError
from joule_orchestrator.domain.models import DecompositionPlan, Task, TaskStatus
from joule_orchestrator.observability.logging import correlation_scope
from joule_orchestrator.observability.trace import TraceEventType
from joule_orchestrator.planning.decomposition import enrich_with_dependency_results, order_subtasks
from joule_orchestrator.planning.planner import extract_json
from joule_orchestrator.synthesis_plane.model_catalog import build_efficiency_report
from joule_orchestrator.synthesis_plane.providers.base import ProviderError
from joule_orchestrator.synthesis_plane.router import RoutingPurpose
from joule_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetManager, BudgetSession, BudgetUsage
    from joule_orchestrator.control_plane.engine import TaskExecutionEngine
    from joule_orchestrator.observability.trace import ExecutionTrace
    from joule_orchestrator.synthesis_plane.model_catalog import EfficiencyReport

AGENT_CONTEXT_CHARS: Final[int] = 500
AGGREGATION_COMPLEXITY: Final[float] = 0.5
AGGREGATION_TEMPERATURE: Final[float] = 0.3
AGENT_COMPLEXITY: Final[float] = 0.5
NO_AGENTS_TEXT: Final[str] = "No agents executed."
NO_COMPLETED_AGENTS_TEXT: Final[str] = "No agents completed."

_AGENT_ALIASES: Final[Mapping[str, str]] = {
    "executionMode": "execution_mode",
    "allowedTools": "allowed_tools",
    "budgetShare": "budget_share",
    "memoryMode": "memory_mode",
    "maxRetries": "max_retries",
    "retryDelayMs": "retry_delay_ms",
    "maxIterations": "max_iterations",
    "outputSchema": "output_schema",
    "dependsOn": "depends_on",
}
_CREW_ALIASES: Final[Mapping[str, str]] = {"aggregationPrompt": "aggregation_prompt"}

Sleep = Callable[[float], Awaitable[None]]


class CrewStrategy(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MIXED = "mixed"


class AggregationMode(StrEnum):
    CONCAT = "concat"
    LAST = "last"
    CUSTOM = "custom"


class ExecutionMode(StrEnum):
    DIRECT = "direct"
    FULL = "full"


class MemoryMode(StrEnum):
    SHARED = "shared"
    ISOLATED = "isolated"
    NONE = "none"


class CrewStatus(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    BUDGET_EXHAUSTED = "budget_exhausted"


def _enum(enum_type: type[StrEnum], value: object, path: str) -> Any:
    try:
        return enum_type(str(value))
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise CrewValidationError(f"{path} must be one of: {allowed} (got {value!r})") from None


def _optional_int(value: object, path: str, *, minimum: int) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise CrewValidationError(f"{path} must be an integer >= {minimum}")
    return value


def _normalize_keys(raw: Mapping[str, object], aliases: Mapping[str, str]) -> dict[str, object]:
    return {aliases.get(str(key), str(key)): value for key, value in raw.items()}


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    """One crew member: its role, tools, budget share and retry policy."""

    id: str
    role: str
    instructions: str = ""
    execution_mode: ExecutionMode = ExecutionMode.DIRECT
    allowed_tools: tuple[str, ...] = ()
    budget_share: float | None = None
    memory_mode: MemoryMode = MemoryMode.SHARED
    max_retries: int | None = None
    retry_delay_ms: int = DEFAULT_AGENT_RETRY_DELAY_MS
    max_iterations: int = DEFAULT_AGENT_MAX_ITERATIONS
    output_schema: Mapping[str, object] | None = None
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise CrewValidationError("Agent id must be a non-empty string")
        if not isinstance(self.role, str) or not self.role.strip():
            raise CrewValidationError(f"Agent {self.id}: role must be a non-empty string")
        object.__setattr__(
            self,
            "execution_mode",
            _enum(ExecutionMode, self.execution_mode, f"Agent {self.id}: execution_mode"),
        )
        object.__setattr__(
            self,
            "memory_mode",
            _enum(MemoryMode, self.memory_mode, f"Agent {self.id}: memory_mode"),
        )
        object.__setattr__(self, "allowed_tools", tuple(str(name) for name in self.allowed_tools))
        object.__setattr__(self, "depends_on", tuple(str(dep) for dep in self.depends_on))
        if self.budget_share is not None:
            share = self.budget_share
            if isinstance(share, bool) or not isinstance(share, (int, float)):
                raise CrewValidationError(f"Agent {self.id}: budget_share must be a number")
            if not 0.0 <= share <= 1.0:
                raise CrewValidationError(f"Agent {self.id}: budget_share must be within [0, 1]")
            object.__setattr__(self, "budget_share", float(share))
        _optional_int(self.max_retries, f"Agent {self.id}: max_retries", minimum=0)
        _optional_int(self.retry_delay_ms, f"Agent {self.id}: retry_delay_ms", minimum=0)
        _optional_int(self.max_iterations, f"Agent {self.id}: max_iterations", minimum=1)
        if self.output_schema is not None:
            if not isinstance(self.output_schema, Mapping):
                raise CrewValidationError(f"Agent {self.id}: output_schema must be an object")
            object.__setattr__(self, "output_schema", dict(self.output_schema))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> AgentDefinition:
        data = _normalize_keys(raw, _AGENT_ALIASES)
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise CrewValidationError(
                f"Agent {data.get('id')!r}: unknown field(s) {', '.join(unknown)}"
            )
        for key in ("allowed_tools", "depends_on"):
            value = data.get(key)
            if value is None:
                data.pop(key, None)
            elif isinstance(value, str) or not isinstance(value, Sequence):
                raise CrewValidationError(f"Agent {data.get('id')!r}: {key} must be a list")
        if data.get("instructions") is None:
            data.pop("instructions", None)
        for key in ("retry_delay_ms", "max_iterations"):
            if data.get(key) is None:
                data.pop(key, None)
        return cls(**data)  # type: ignore[arg-type]

    def resolved_max_retries(self, strategy: CrewStrategy) -> int:
        if self.max_retries is not None:
            return self.max_retries
        return SEQUENTIAL_AGENT_MAX_RETRIES if strategy is CrewStrategy.SEQUENTIAL else 0

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "role": self.role,
            "instructions": self.instructions,
            "execution_mode": self.execution_mode.value,
            "allowed_tools": list(self.allowed_tools),
            "budget_share": self.budget_share,
            "memory_mode": self.memory_mode.value,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "max_iterations": self.max_iterations,
            "output_schema": dict(self.output_schema) if self.output_schema is not None else None,
            "depends_on": list(self.depends_on),
        }


@dataclass(frozen=True, slots=True)
class CrewDefinition:
    name: str
    agents: tuple[AgentDefinition, ...]
    strategy: CrewStrategy = CrewStrategy.SEQUENTIAL
    description: str | None = None
    aggregation: AggregationMode = AggregationMode.CONCAT
    aggregation_prompt: str | None = None
    budget: str | Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise CrewValidationError("Crew name must be a non-empty string")
        object.__setattr__(self, "agents", tuple(self.agents))
        object.__setattr__(self, "strategy", _enum(CrewStrategy, self.strategy, "Crew strategy"))
        object.__setattr__(
            self, "aggregation", _enum(AggregationMode, self.aggregation, "Crew aggregation")
        )
        if isinstance(self.budget, Mapping):
            object.__setattr__(self, "budget", dict(self.budget))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> CrewDefinition:
        data = _normalize_keys(raw, _CREW_ALIASES)
        agents_raw = data.pop("agents", None)
        if not isinstance(agents_raw, Sequence) or isinstance(agents_raw, str):
            raise CrewValidationError("Crew agents must be a list")
        agents = []
        for position, item in enumerate(agents_raw):
            if not isinstance(item, Mapping):
                raise CrewValidationError(f"Crew agents[{position}] must be an object")
            agents.append(AgentDefinition.from_mapping(item))
        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        if unknown:
            raise CrewValidationError(f"Crew: unknown field(s) {', '.join(unknown)}")
        for key in ("strategy", "aggregation"):
            if data.get(key) is None:
                data.pop(key, None)
        return cls(agents=tuple(agents), **data)  # type: ignore[arg-type]

    def agent(self, agent_id: str) -> AgentDefinition | None:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "strategy": self.strategy.value,
            "description": self.description,
            "aggregation": self.aggregation.value,
            "aggregation_prompt": self.aggregation_prompt,
            "budget": self.budget,
            "agents": [agent.to_dict() for agent in self.agents],
        }


def load_crew_definition(source: str | Path | Mapping[str, object]) -> CrewDefinition:
    """Load and validate a crew from a mapping or a JSON/YAML file."""

    if isinstance(source, Mapping):
        raw: object = source
    else:
        path = Path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CrewValidationError(f"Unable to read crew definition {path}: {exc}") from exc
        try:
            raw = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise CrewValidationError(f"Invalid crew definition {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise CrewValidationError("Crew definition must be an object")
    crew = CrewDefinition.from_mapping(raw)
    validate_crew(crew)
    return crew


def validate_crew(crew: CrewDefinition) -> None:
    if not crew.agents:
        raise CrewValidationError("Crew must have at least one agent")

    seen: set[str] = set()
    for agent in crew.agents:
        if agent.id in seen:
            raise CrewValidationError(f"Duplicate agent ID: {agent.id}")
        seen.add(agent.id)

    total = sum(agent.budget_share or 0.0 for agent in crew.agents)
    if total > BUDGET_SHARE_TOLERANCE:
        raise CrewValidationError(f"Agent budget shares sum to {total:.3f}, exceeds 1.0")

    for agent in crew.agents:
        for dependency in agent.depends_on:
            if dependency not in seen:
                raise CrewValidationError(
                    f"Agent {agent.id} depends on unknown agent: {dependency}"
                )
            if dependency == agent.id:
                raise CrewValidationError(f"Agent {agent.id} depends on itself")

    cycle = _find_cycle(crew.agents)
    if cycle:
        raise CrewValidationError(f"Agent dependency cycle: {' -> '.join(cycle)}")


def _find_cycle(agents: Sequence[AgentDefinition]) -> list[str]:
    edges = {agent.id: agent.depends_on for agent in agents}
    state: dict[str, int] = {}
    path: list[str] = []

    def visit(node: str) -> list[str]:
        state[node] = 1
        path.append(node)
        for dependency in edges.get(node, ()):
            if state.get(dependency) == 1:
                return path[path.index(dependency):] + [dependency]
            if dependency not in state:
                found = visit(dependency)
                if found:
                    return found
        state[node] = 2
        path.pop()
        return []

    for agent in agents:
        if agent.id not in state:
            found = visit(agent.id)
            if found:
                return found
    return []


def resolve_shares(agents: Sequence[AgentDefinition]) -> dict[str, float]:
    """Explicit shares as given, the remainder split equally, normalized above 1."""

    explicit = {agent.id: agent.budget_share for agent in agents if agent.budget_share is not None}
    unspecified = [agent.id for agent in agents if agent.budget_share is None]
    remainder = max(0.0, 1.0 - sum(explicit.values()))
    shares: dict[str, float] = {}
    for agent in agents:
        share = explicit.get(agent.id)
        shares[agent.id] = share if share is not None else remainder / len(unspecified)
    total = sum(shares.values())
    if total > 1.0:
        shares = {agent_id: share / total for agent_id, share in shares.items()}
    return shares


def allocate_budgets(
    budget_manager: BudgetManager,
    parent: BudgetSession,
    agents: Sequence[AgentDefinition],
) -> dict[str, BudgetSession]:
    """One child session per agent, carved from the parent's remaining budget."""

    shares = resolve_shares(agents)
    return {
        agent.id: budget_manager.create_sub_envelope(parent, shares[agent.id]) for agent in agents
    }


def validate_agent_output(output: str | None, schema: Mapping[str, object]) -> str | None:
    """Return a violation message, or ``None`` when the output satisfies ``schema``."""

    try:
        parsed = extract_json(output or "")
    except (ValueError, TypeError):
        return "Output is not a valid JSON object"
    required = schema.get("required")
    if isinstance(required, Sequence) and not isinstance(required, str):
        keys = [str(key) for key in required]
    else:
        properties = schema.get("properties")
        keys = [str(key) for key in properties] if isinstance(properties, Mapping) else []
    missing = [key for key in keys if key not in parsed]
    if missing:
        return f"Output is missing required keys: {', '.join(missing)}"
    return None


def build_agent_task_description(
    description: str,
    agent: AgentDefinition,
    context: str = "",
) -> str:
    text = f"[Your Role: {agent.role}]\n"
    if agent.instructions:
        text += f"[Instructions: {agent.instructions}]\n"
    text += f"\n[Task]\n{description}"
    if agent.output_schema is not None:
        text += (
            "\n\n[Output Format]\nYour response MUST be valid JSON conforming to this schema: "
            f"{json.dumps(agent.output_schema, sort_keys=True)}"
        )
    if context:
        text += context
    return text


@dataclass(frozen=True, slots=True)
class AgentResult:
    agent_id: str
    role: str
    status: TaskStatus
    result: str | None = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    budget_used: BudgetUsage | None = None
    trace_id: str | None = None

    @property
    def completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def to_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "role": self.role,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "budget_used": self.budget_used.to_dict() if self.budget_used is not None else None,
            "trace_id": self.trace_id,
        }


@dataclass(frozen=True, slots=True)
class CrewResult:
    crew_name: str
    status: CrewStatus
    result: str | None
    agent_results: tuple[AgentResult, ...]
    blackboard: Mapping[str, object]
    budget_used: BudgetUsage
    trace: ExecutionTrace
    efficiency_report: EfficiencyReport | None = None
    error: str | None = None
    id: str = field(default_factory=domain_ids.generate_crew_run_id)
    completed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "crew_name": self.crew_name,
            "status": self.status.value,
            "result": self.result,
            "agent_results": [item.to_dict() for item in self.agent_results],
            "blackboard": dict(self.blackboard),
            "budget_used": self.budget_used.to_dict(),
            "trace": self.trace.to_dict(),
            "efficiency_report": (
                self.efficiency_report.to_dict() if self.efficiency_report is not None else None
            ),
            "error": self.error,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass(slots=True)
class _CrewRun:
    crew: CrewDefinition
    task: Task
    session: BudgetSession
    trace_id: str
    sessions: dict[str, BudgetSession]
    blackboard: Blackboard = field(default_factory=Blackboard)
    results: dict[str, AgentResult] = field(default_factory=dict)


class CrewOrchestrator:
    """Run crews of agents over a shared budget session and blackboard."""

    def __init__(
        self,
        engine: TaskExecutionEngine,
        *,
        max_concurrency: int = DEFAULT_CREW_CONCURRENCY,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._engine = engine
        self._budget = engine.budget_manager
        self._dispatcher = engine.dispatcher
        self._trace = engine.trace_logger
        self._max_concurrency = max_concurrency
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        crew: CrewDefinition | Mapping[str, object],
        task: Task,
        *,
        session: BudgetSession | None = None,
        trace_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CrewResult:
        """Run every agent of ``crew`` on ``task``.

        Raises :class:`CrewValidationError` for an invalid crew; agent failures are
        reported through the result.
        """

        if not isinstance(crew, CrewDefinition):
            crew = load_crew_definition(crew)
        validate_crew(crew)

        crew_run_id = domain_ids.generate_crew_run_id()
        if session is None:
            session = self._budget.create_envelope(
                crew.budget if crew.budget is not None else task.budget
            )
        if trace_id is None:
            trace_id = self._trace.create_trace(task.id, session.envelope)

        with correlation_scope(crew_id=crew_run_id, task_id=task.id, trace_id=trace_id):
            run = _CrewRun(
                crew=crew,
                task=task,
                session=session,
                trace_id=trace_id,
                sessions=allocate_budgets(self._budget, session, crew.agents),
            )
            self._logger.info(
                "crew_run_started",
                crew_name=crew.name,
                strategy=crew.strategy.value,
                agent_count=len(crew.agents),
            )
            self._trace.log_event(
                trace_id,
                TraceEventType.STRATEGY_SELECTED,
                {
                    "crew_id": crew_run_id,
                    "crew_name": crew.name,
                    "strategy": crew.strategy.value,
                    "agents": [agent.id for agent in crew.agents],
                },
            )

            error: str | None = None
            try:
                await run_with_timeout(
                    self._run_strategy(run), self._deadline_seconds(session), cancel_token
                )
            except asyncio.CancelledError:
                if cancel_token is None or not cancel_token.is_cancelled:
                    raise
                error = f"Cancelled: {cancel_token.reason or 'operation cancelled'}"
                self._fill_unfinished(run, TaskStatus.FAILED, error)
            except TimeoutError:
                error = BudgetExhaustedError("latency", self._budget.get_usage(session)).message
                self._fill_unfinished(run, TaskStatus.BUDGET_EXHAUSTED, error)

            agent_results = tuple(run.results[agent.id] for agent in crew.agents)
            result = await self._aggregate(run, agent_results)
            status = self._crew_status(run, agent_results)
            if error is None and status is not CrewStatus.COMPLETED:
                error = _agent_errors(agent_results)

            usage = self._budget.get_usage(session)
            crew_result = CrewResult(
                id=crew_run_id,
                crew_name=crew.name,
                status=status,
                result=result,
                agent_results=agent_results,
                blackboard=run.blackboard.to_dict(),
                budget_used=usage,
                trace=self._trace.get_trace(trace_id, usage),
                efficiency_report=self._efficiency(session),
                error=error,
            )
            self._logger.info(
                "crew_run_finished",
                crew_name=crew.name,
                status=status.value,
                completed_agents=sum(1 for item in agent_results if item.completed),
                tokens_used=usage.tokens_used,
            )
            return crew_result

    async def run_subtasks(
        self,
        task: Task,
        plan: DecompositionPlan,
        *,
        session: BudgetSession,
        trace_id: str | None = None,
    ) -> CrewResult:
        """Execute a decomposition as a generated crew of full-mode agents."""

        ordered = order_subtasks(plan.subtasks)
        known = {subtask.id for subtask in ordered}
        total = sum(subtask.budget_share or 0.0 for subtask in ordered)
        scale = 1.0 / total if total > 1.0 else 1.0
        agents = tuple(
            AgentDefinition(
                id=subtask.id,
                role=f"Sub-task {position} of {len(ordered)}",
                instructions=subtask.description,
                execution_mode=ExecutionMode.FULL,
                allowed_tools=task.tools or (),
                budget_share=(
                    subtask.budget_share * scale if subtask.budget_share is not None else None
                ),
                memory_mode=MemoryMode.ISOLATED,
                max_retries=0,
                depends_on=tuple(dep for dep in subtask.depends_on if dep in known),
            )
            for position, subtask in enumerate(ordered, start=1)
        )
        crew = CrewDefinition(
            name=f"decomposition-{task.id}",
            agents=agents,
            strategy=CrewStrategy(plan.strategy.value),
            aggregation=AggregationMode.CONCAT,
        )
        return await self.run(crew, task, session=session, trace_id=trace_id)

    async def _run_strategy(self, run: _CrewRun) -> None:
        strategy = run.crew.strategy
        if strategy is CrewStrategy.SEQUENTIAL:
            for agent in run.crew.agents:
                await self._execute_agent(run, agent)
        elif strategy is CrewStrategy.PARALLEL:
            pool: WorkerPool[AgentResult] = WorkerPool(max_concurrency=self._max_concurrency)
            await pool.run_all(self._execute_agent(run, agent) for agent in run.crew.agents)
        else:
            await self._run_mixed(run)

    async def _run_mixed(self, run: _CrewRun) -> None:
        finished = {agent.id: asyncio.Event() for agent in run.crew.agents}
        permits = BoundedSemaphore(self._max_concurrency)

        async def run_when_ready(agent: AgentDefinition) -> None:
            try:
                for dependency in agent.depends_on:
                    await finished[dependency].wait()
                failed = [dep for dep in agent.depends_on if not run.results[dep].completed]
                if failed:
                    await self._skip_agent(run, agent, failed)
                    return
                async with permits.permit():
                    await self._execute_agent(run, agent)
            finally:
                finished[agent.id].set()

        await asyncio.gather(*(run_when_ready(agent) for agent in run.crew.agents))

    async def _skip_agent(
        self, run: _CrewRun, agent: AgentDefinition, failed: Sequence[str]
    ) -> AgentResult:
        message = f"Skipped: dependency failed ({', '.join(failed)})"
        outcome = _agent_failure(agent, TaskStatus.FAILED, message)
        run.results[agent.id] = outcome
        await run.blackboard.write(
            agent.id,
            None,
            agent_id=agent.id,
            status=EntryStatus.FAILED,
            metadata={"error": message},
        )
        self._logger.info("crew_agent_skipped", agent_id=agent.id, failed_dependencies=list(failed))
        return outcome

    async def _execute_agent(self, run: _CrewRun, agent: AgentDefinition) -> AgentResult:
        with correlation_scope(agent_id=agent.id):
            session = run.sessions[agent.id]
            max_retries = agent.resolved_max_retries(run.crew.strategy)
            started = self._clock()
            await run.blackboard.write(
                agent.id, None, agent_id=agent.id, status=EntryStatus.RUNNING
            )
            self._trace.log_event(
                run.trace_id,
                TraceEventType.INFO,
                {"message": "agent_started", "agent_id": agent.id, "role": agent.role},
            )

            attempt = 0
            while True:
                outcome = await self._attempt(run, agent, session)
                attempt += 1
                if outcome.completed and agent.output_schema is not None:
                    violation = validate_agent_output(outcome.result, agent.output_schema)
                    if violation is not None:
                        outcome = replace(outcome, status=TaskStatus.FAILED, error=violation)
                if outcome.status is not TaskStatus.FAILED or attempt > max_retries:
                    break
                delay_ms = agent.retry_delay_ms * 2 ** (attempt - 1)
                self._logger.info(
                    "crew_agent_retry",
                    agent_id=agent.id,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error=outcome.error,
                )
                await self._sleep(delay_ms / 1000.0)

            outcome = replace(
                outcome,
                attempts=attempt,
                duration_ms=max(0.0, (self._clock() - started) * 1000.0),
                budget_used=self._budget.get_usage(session),
            )
            run.results[agent.id] = outcome
            await run.blackboard.write(
                agent.id,
                outcome.result if outcome.completed else None,
                agent_id=agent.id,
                status=EntryStatus.COMPLETED if outcome.completed else EntryStatus.FAILED,
                metadata={"role": agent.role, "attempts": attempt, "error": outcome.error},
            )
            self._trace.log_event(
                run.trace_id,
                TraceEventType.INFO,
                {
                    "message": "agent_finished",
                    "agent_id": agent.id,
                    "status": outcome.status.value,
                    "attempts": attempt,
                },
            )
            self._logger.info(
                "crew_agent_finished",
                agent_id=agent.id,
                status=outcome.status.value,
                attempts=attempt,
                duration_ms=outcome.duration_ms,
            )
            return outcome

    async def _attempt(
        self, run: _CrewRun, agent: AgentDefinition, session: BudgetSession
    ) -> AgentResult:
        exhausted = self._exhausted_dimension(session)
        if exhausted is not None:
            return _agent_failure(
                agent, TaskStatus.BUDGET_EXHAUSTED, f"Budget exhausted: {exhausted}"
            )
        description = build_agent_task_description(
            run.task.description, agent, self._agent_context(run, agent)
        )
        try:
            if agent.execution_mode is ExecutionMode.FULL:
                return await self._run_full(run, agent, session, description)
            return await self._run_direct(run, agent, session, description)
        except BudgetExhaustedError as exc:
            return _agent_failure(agent, TaskStatus.BUDGET_EXHAUSTED, exc.message)
        except (JouleError, ProviderError) as exc:
            return _agent_failure(agent, TaskStatus.FAILED, str(exc))
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "crew_agent_error", agent_id=agent.id, error=str(exc), exc_info=True
            )
            return _agent_failure(agent, TaskStatus.FAILED, str(exc))

    async def _run_direct(
        self, run: _CrewRun, agent: AgentDefinition, session: BudgetSession, description: str
    ) -> AgentResult:
        system = f"You are {agent.role}."
        if agent.instructions:
            system += f" {agent.instructions}"
        constitution = self._engine.constitution
        if constitution is not None:
            system += constitution.build_prompt_injection()
        reply = await self._dispatcher.dispatch(
            RoutingPurpose.EXECUTE,
            session,
            system=system,
            user_message=description,
            complexity=AGENT_COMPLEXITY,
            trace_id=run.trace_id,
            response_format="json" if agent.output_schema is not None else "text",
        )
        return AgentResult(
            agent_id=agent.id,
            role=agent.role,
            status=TaskStatus.COMPLETED,
            result=reply.content,
            trace_id=run.trace_id,
        )

    async def _run_full(
        self, run: _CrewRun, agent: AgentDefinition, session: BudgetSession, description: str
    ) -> AgentResult:
        settings = replace(
            self._engine.settings,
            max_steps=agent.max_iterations,
            instructions=agent.instructions or self._engine.settings.instructions,
        )
        tools = self._engine.tools.filtered(agent.allowed_tools or None)
        engine = self._engine.derive(tools=tools, settings=settings)
        agent_task = Task(
            description=description,
            budget=session.envelope,
            tools=agent.allowed_tools or None,
            session_id=run.task.session_id,
        )
        result = await engine.run(agent_task, session=session)
        return AgentResult(
            agent_id=agent.id,
            role=agent.role,
            status=result.status,
            result=result.result,
            error=result.error,
            trace_id=result.trace_id,
        )

    def _agent_context(self, run: _CrewRun, agent: AgentDefinition) -> str:
        if agent.memory_mode is MemoryMode.NONE:
            return ""
        if agent.memory_mode is MemoryMode.ISOLATED:
            entries = run.blackboard.select(agent.depends_on)
            values = [
                entry.value if isinstance(entry.value, str) else None
                for entry in entries.values()
                if entry.status is EntryStatus.COMPLETED
            ]
            return enrich_with_dependency_results("", values)
        others = {
            key: entry for key, entry in run.blackboard.entries().items() if key != agent.id
        }
        rendered = render_entries(others, max_chars=AGENT_CONTEXT_CHARS)
        return f"\n\n[Context from other agents]\n{rendered}" if rendered else ""

    async def _aggregate(self, run: _CrewRun, results: Sequence[AgentResult]) -> str:
        if not results:
            return NO_AGENTS_TEXT
        mode = run.crew.aggregation
        if mode is AggregationMode.LAST:
            completed = [item for item in results if item.completed]
            if not completed:
                return NO_COMPLETED_AGENTS_TEXT
            return completed[-1].result or "Completed."
        if mode is AggregationMode.CUSTOM and run.crew.aggregation_prompt:
            return await self._aggregate_custom(run, results)
        return concat_results(results)

    async def _aggregate_custom(self, run: _CrewRun, results: Sequence[AgentResult]) -> str:
        body = "\n\n".join(
            f"[{item.role} ({item.agent_id})]: {(item.result or '')[:AGENT_CONTEXT_CHARS]}"
            for item in results
            if item.completed
        )
        try:
            reply = await self._dispatcher.dispatch(
                RoutingPurpose.SYNTHESIZE,
                run.session,
                system=run.crew.aggregation_prompt,
                user_message=f"Agent results:\n\n{body}",
                complexity=AGGREGATION_COMPLEXITY,
                trace_id=run.trace_id,
                temperature=AGGREGATION_TEMPERATURE,
            )
        except (JouleError, ProviderError) as exc:
            self._logger.info("crew_aggregation_fallback", crew_name=run.crew.name, error=str(exc))
            return concat_results(results)
        return reply.content

    def _crew_status(self, run: _CrewRun, results: Sequence[AgentResult]) -> CrewStatus:
        completed = sum(1 for item in results if item.completed)
        if results and completed == len(results):
            return CrewStatus.COMPLETED
        if completed:
            return CrewStatus.PARTIAL
        if self._budget.is_exhausted(run.session) is not None or any(
            item.status is TaskStatus.BUDGET_EXHAUSTED for item in results
        ):
            return CrewStatus.BUDGET_EXHAUSTED
        return CrewStatus.FAILED

    def _fill_unfinished(self, run: _CrewRun, status: TaskStatus, error: str) -> None:
        for agent in run.crew.agents:
            if agent.id not in run.results:
                run.results[agent.id] = _agent_failure(agent, status, error)

    def _exhausted_dimension(self, session: BudgetSession) -> str | None:
        for current in session.lineage():
            dimension = self._budget.is_exhausted(current)
            if dimension is not None:
                return dimension
        return None

    def _efficiency(self, session: BudgetSession) -> EfficiencyReport | None:
        energy_config = self._engine.router.energy_config
        if not energy_config.enabled:
            return None
        return build_efficiency_report(
            self._budget.get_energy_totals(session),
            energy_config,
            catalog=self._engine.model_catalog,
        )

    def _deadline_seconds(self, session: BudgetSession) -> float | None:
        remaining = self._budget.get_usage(session).latency_remaining
        if math.isinf(remaining):
            return None
        return max(remaining, 1.0) / 1000.0


def concat_results(results: Sequence[AgentResult]) -> str:
    parts = []
    for item in results:
        if item.completed:
            body = item.result or "Completed."
        else:
            body = f"Failed: {item.error or 'unknown error'}"
        parts.append(f"[{item.role} ({item.agent_id})]: {body}")
    return "\n\n".join(parts)


def _agent_failure(agent: AgentDefinition, status: TaskStatus, error: str) -> AgentResult:
    return AgentResult(agent_id=agent.id, role=agent.role, status=status, error=error)


def _agent_errors(results: Sequence[AgentResult]) -> str | None:
    errors = [
        f"{item.agent_id}: {item.error}"
        for item in results
        if not item.completed and item.error
    ]
    return "; ".join(errors) if errors else None


__all__ = [
    "AgentDefinition",
    "AgentResult",
    "AggregationMode",
    "CrewDefinition",
    "CrewOrchestrator",
    "CrewResult",
    "CrewStatus",
    "CrewStrategy",
    "ExecutionMode",
    "MemoryMode",
    "allocate_budgets",
    "build_agent_task_description",
    "concat_results",
    "load_crew_definition",
    "resolve_shares",
    "validate_agent_output",
    "validate_crew",
]
