"""
Task execution engine.

One :class:`TaskExecutionEngine` run drives a single task through a bounded state
machine::

    idle -> spec -> plan -> critique -> simulate -> (decompose | act)
    act -> observe -> verify -> (act | recover | checkpoint)
    recover -> (plan | act | checkpoint)
    checkpoint -> (act | plan | synthesize) -> synthesize -> done | failed

Any non-terminal state may move to ``synthesize`` (best-effort partial answer),
``recover`` (deadline expiry), ``stopped`` (external cancellation) or ``failed``.
Every model call is routed and charged through the shared budget session, and every
transition is recorded in the task trace. :meth:`TaskExecutionEngine.run` never
raises for task-level failures; they resolve to a terminal :class:`TaskResult`.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import re
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import aclosing, suppress
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from joule_orchestrator.constants import (
    DEFAULT_STEP_CONFIDENCE,
    MAX_STEP_CONFIDENCE,
    MIN_CHECKPOINT_INTERVAL,
    MIN_STEP_CONFIDENCE,
)
from joule_orchestrator.domain.errors import (
    BudgetExhaustedError,
    ConstitutionViolationError,
    InvalidTransitionError,
    JouleError,
    PlanValidationError,
    ToolNotFoundError,
)
from joule_orchestrator.domain.models import (
    AgentState,
    ExecutionPlan,
    PlanStep,
    SimulationIssueType,
    SimulationResult,
    StepResult,
    Task,
    TaskResult,
    TaskSpec,
    TaskStatus,
)
from joule_orchestrator.knowledge_plane.memory import FailurePattern
from joule_orchestrator.observability.decision_graph import DecisionGraphBuilder
from joule_orchestrator.observability.logging import correlation_scope
from joule_orchestrator.observability.trace import TraceEventType, TraceLogger
from joule_orchestrator.planning.decomposition import TaskDecomposer
from joule_orchestrator.planning.planner import Planner, extract_json, summarize_step_results
from joule_orchestrator.planning.simulator import ExecutionSimulator, drop_missing_tools
from joule_orchestrator.synthesis_plane.dispatch import ModelDispatcher
from joule_orchestrator.synthesis_plane.model_catalog import build_efficiency_report
from joule_orchestrator.synthesis_plane.providers.base import ProviderError
from joule_orchestrator.synthesis_plane.router import RoutingPurpose
from joule_orchestrator.synthesis_plane.tools import ToolResult
from joule_orchestrator.utils.concurrency import CancellationToken, run_with_timeout
from joule_orchestrator.verification_plane.step_checks import (
    compress_step_history,
    evaluate_criteria,
    output_text,
    verify_step,
)

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetManager, BudgetSession
    from joule_orchestrator.domain.models import DecompositionPlan
    from joule_orchestrator.knowledge_plane.memory import AgentMemory
    from joule_orchestrator.security.constitution import Constitution
    from joule_orchestrator.synthesis_plane.model_catalog import EfficiencyReport, ModelCatalog
    from joule_orchestrator.synthesis_plane.router import AdaptiveRouter
    from joule_orchestrator.synthesis_plane.tools import ToolRegistry

_S = AgentState

TRANSITIONS: Final[Mapping[AgentState, frozenset[AgentState]]] = MappingProxyType(
    {
        _S.IDLE: frozenset({_S.SPEC}),
        _S.SPEC: frozenset({_S.PLAN}),
        _S.PLAN: frozenset({_S.CRITIQUE, _S.SIMULATE, _S.SYNTHESIZE, _S.ACT}),
        _S.CRITIQUE: frozenset({_S.SIMULATE}),
        _S.SIMULATE: frozenset({_S.DECOMPOSE, _S.ACT, _S.SYNTHESIZE}),
        _S.DECOMPOSE: frozenset({_S.SYNTHESIZE, _S.ACT}),
        _S.ACT: frozenset({_S.OBSERVE, _S.CHECKPOINT}),
        _S.OBSERVE: frozenset({_S.VERIFY}),
        _S.VERIFY: frozenset({_S.ACT, _S.RECOVER, _S.CHECKPOINT}),
        _S.RECOVER: frozenset({_S.PLAN, _S.ACT, _S.CHECKPOINT, _S.FAILED}),
        _S.CHECKPOINT: frozenset({_S.ACT, _S.PLAN, _S.SYNTHESIZE}),
        _S.SYNTHESIZE: frozenset({_S.DONE, _S.FAILED}),
    }
)
# Reachable from every non-terminal state.
UNIVERSAL_TARGETS: Final[frozenset[AgentState]] = frozenset(
    {_S.SYNTHESIZE, _S.RECOVER, _S.STOPPED, _S.FAILED}
)
TERMINAL_STATES: Final[frozenset[AgentState]] = frozenset({_S.DONE, _S.FAILED, _S.STOPPED})

RECENT_FAILURE_WINDOW: Final[int] = 3
RECENT_FAILURE_PENALTY: Final[float] = 0.2
FAILURE_PATTERN_PENALTY: Final[float] = 0.15
PRIOR_SUCCESS_BONUS: Final[float] = 0.1
REFINE_BELOW_SCORE: Final[float] = 0.5
DIRECT_ANSWER_COMPLEXITY: Final[float] = 0.2
FAILED_SYNTHESIS_COMPLEXITY: Final[float] = 0.8
SYNTHESIS_COMPLEXITY: Final[float] = 0.3
GOAL_CHECK_COMPLEXITY: Final[float] = 0.3
NO_ANSWER_TEXT: Final[str] = "I could not process your request."

SYNTHESIZE_SYSTEM_PROMPT: Final[str] = """You are a helpful assistant completing a task for a user.
Use the tool results provided to write a concise, accurate final answer.
Do not invent results that are not present in the tool output. If a step failed, say so plainly."""

DIRECT_SYSTEM_PROMPT: Final[str] = (
    "You are a helpful assistant. Answer the user's request directly and concisely."
)

GOAL_CHECK_SYSTEM_PROMPT: Final[str] = """\
You check whether an agent's execution is still aligned with its goal.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"onTrack": true|false, "drift": ["<how execution drifted from the goal>", ...]}"""

_OUTPUT_REF_RE: Final[re.Pattern[str]] = re.compile(r"\$output_(\d+)")

ConfirmCallback = Callable[[str, Mapping[str, object]], bool | Awaitable[bool]]


def is_legal_transition(current: AgentState, target: AgentState) -> bool:
    if current in TERMINAL_STATES:
        return False
    return target in UNIVERSAL_TARGETS or target in TRANSITIONS.get(current, frozenset())


def substitute_outputs(value: object, outputs: Mapping[int, object]) -> object:
    """Replace ``$output_N`` references with the output of step ``N``.

    A string that is exactly one reference takes the raw output value; references
    embedded in longer strings are replaced with the output's text. Unknown indices
    are left untouched.
    """

    if isinstance(value, str):
        whole = _OUTPUT_REF_RE.fullmatch(value)
        if whole is not None:
            index = int(whole.group(1))
            return outputs[index] if index in outputs else value

        def _replace(match: re.Match[str]) -> str:
            index = int(match.group(1))
            return output_text(outputs[index]) if index in outputs else match.group(0)

        return _OUTPUT_REF_RE.sub(_replace, value)
    if isinstance(value, Mapping):
        return {key: substitute_outputs(item, outputs) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute_outputs(item, outputs) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Runtime knobs for the engine; built from the ``execution`` config section."""

    abort_on_high_severity: bool = False
    enable_critique: bool = True
    enable_goal_checkpoints: bool = True
    step_timeout_ms: float | None = None
    synthesis_temperature: float = 0.3
    max_steps: int | None = None
    instructions: str | None = None

    def __post_init__(self) -> None:
        if self.step_timeout_ms is not None and (
            isinstance(self.step_timeout_ms, bool) or self.step_timeout_ms <= 0
        ):
            raise ValueError("ExecutionSettings.step_timeout_ms must be > 0")
        if not 0.0 <= self.synthesis_temperature <= 2.0:
            raise ValueError("ExecutionSettings.synthesis_temperature must be within [0, 2]")
        if self.max_steps is not None and (isinstance(self.max_steps, bool) or self.max_steps < 1):
            raise ValueError("ExecutionSettings.max_steps must be >= 1")

    @classmethod
    def from_mapping(cls, section: Mapping[str, object]) -> ExecutionSettings:
        defaults = cls()
        step_timeout = section.get("step_timeout_ms")
        max_steps = section.get("max_steps")
        instructions = section.get("instructions")
        return cls(
            abort_on_high_severity=bool(
                section.get("abort_on_high_severity", defaults.abort_on_high_severity)
            ),
            enable_critique=bool(section.get("enable_critique", defaults.enable_critique)),
            enable_goal_checkpoints=bool(
                section.get("enable_goal_checkpoints", defaults.enable_goal_checkpoints)
            ),
            step_timeout_ms=float(step_timeout) if isinstance(step_timeout, (int, float)) else None,
            synthesis_temperature=_number(
                section.get("synthesis_temperature"), defaults.synthesis_temperature
            ),
            max_steps=int(max_steps) if isinstance(max_steps, int) else None,
            instructions=str(instructions) if instructions else None,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "abort_on_high_severity": self.abort_on_high_severity,
            "enable_critique": self.enable_critique,
            "enable_goal_checkpoints": self.enable_goal_checkpoints,
            "step_timeout_ms": self.step_timeout_ms,
            "synthesis_temperature": self.synthesis_temperature,
            "max_steps": self.max_steps,
            "instructions": self.instructions,
        }


class EngineEventType(StrEnum):
    STATE = "state"
    STEP = "step"
    CHUNK = "chunk"
    RESULT = "result"


@dataclass(frozen=True, slots=True)
class EngineEvent:
    type: EngineEventType
    state: AgentState | None = None
    step: StepResult | None = None
    text: str | None = None
    result: TaskResult | None = None


class SubtaskOutcome(Protocol):
    status: str
    result: str | None
    error: str | None


class SubtaskRunner(Protocol):
    """Runs a decomposition as a generated crew against the caller's budget session."""

    async def run_subtasks(
        self,
        task: Task,
        plan: DecompositionPlan,
        *,
        session: BudgetSession,
        trace_id: str | None = None,
    ) -> SubtaskOutcome: ...


@dataclass(frozen=True, slots=True)
class _QueuedStep:
    step: PlanStep
    confidence: float


@dataclass(slots=True)
class _RunContext:
    task: Task
    session: BudgetSession
    trace_id: str
    sink: Callable[[EngineEvent], None] | None = None
    state: AgentState = AgentState.IDLE
    status: TaskStatus | None = None
    error: str | None = None
    spec: TaskSpec | None = None
    complexity: float = 0.5
    plan: ExecutionPlan | None = None
    confidences: tuple[float, ...] = ()
    simulation: SimulationResult | None = None
    queue: deque[_QueuedStep] = field(default_factory=deque)
    results: list[StepResult] = field(default_factory=list)
    outputs: dict[int, object] = field(default_factory=dict)
    failure_patterns: list[FailurePattern] = field(default_factory=list)
    replan_depth: int = 0
    next_index: int = 0
    executed_steps: int = 0
    checkpoint_interval: int = MIN_CHECKPOINT_INTERVAL
    last_step: PlanStep | None = None
    direct_answer: bool = False
    aggregated: str | None = None
    subtask_status: str | None = None
    answer: str | None = None

    @property
    def any_failed(self) -> bool:
        return any(not item.success for item in self.results)


class TaskExecutionEngine:
    """Drive one task at a time through plan, act, verify and synthesis."""

    def __init__(
        self,
        *,
        budget_manager: BudgetManager,
        router: AdaptiveRouter,
        tools: ToolRegistry,
        trace_logger: TraceLogger | None = None,
        dispatcher: ModelDispatcher | None = None,
        planner: Planner | None = None,
        simulator: ExecutionSimulator | None = None,
        decomposer: TaskDecomposer | None = None,
        crew_runner: SubtaskRunner | None = None,
        memory: AgentMemory | None = None,
        constitution: Constitution | None = None,
        settings: ExecutionSettings | None = None,
        confirm: ConfirmCallback | None = None,
        model_catalog: ModelCatalog | None = None,
        logger: Any | None = None,
    ) -> None:
        self._budget = budget_manager
        self._router = router
        self._tools = tools
        self._trace = trace_logger if trace_logger is not None else TraceLogger()
        self._model_catalog = model_catalog
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._dispatcher = dispatcher or ModelDispatcher(
            router, budget_manager, self._trace, model_catalog=model_catalog
        )
        self._planner = planner or Planner(
            self._dispatcher, tools, self._trace, constitution=constitution
        )
        self._simulator = simulator or ExecutionSimulator(tools)
        self._decomposer = decomposer
        self._crew_runner = crew_runner
        self._memory = memory
        self._constitution = constitution
        self._settings = settings if settings is not None else ExecutionSettings()
        self._confirm = confirm

    @property
    def settings(self) -> ExecutionSettings:
        return self._settings

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def budget_manager(self) -> BudgetManager:
        return self._budget

    @property
    def router(self) -> AdaptiveRouter:
        return self._router

    @property
    def dispatcher(self) -> ModelDispatcher:
        return self._dispatcher

    @property
    def trace_logger(self) -> TraceLogger:
        return self._trace

    @property
    def constitution(self) -> Constitution | None:
        return self._constitution

    @property
    def model_catalog(self) -> ModelCatalog | None:
        return self._model_catalog

    def attach_crew_runner(self, runner: SubtaskRunner | None) -> None:
        self._crew_runner = runner

    def derive(
        self,
        *,
        tools: ToolRegistry | None = None,
        settings: ExecutionSettings | None = None,
    ) -> TaskExecutionEngine:
        """A sibling engine sharing collaborators, with its own tools or settings."""

        return TaskExecutionEngine(
            budget_manager=self._budget,
            router=self._router,
            tools=tools if tools is not None else self._tools,
            trace_logger=self._trace,
            dispatcher=self._dispatcher,
            planner=self._planner if tools is None else None,
            simulator=self._simulator if tools is None else None,
            memory=self._memory,
            constitution=self._constitution,
            settings=settings if settings is not None else self._settings,
            confirm=self._confirm,
            model_catalog=self._model_catalog,
            logger=self._logger,
        )

    async def run(
        self,
        task: Task,
        *,
        session: BudgetSession | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TaskResult:
        return await self._execute(task, session=session, cancel_token=cancel_token, sink=None)

    async def run_stream(
        self,
        task: Task,
        *,
        session: BudgetSession | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[EngineEvent]:
        """Yield state, step and synthesis chunk events, then one ``result`` event.

        Closing the iterator early cancels the run.
        """

        events: asyncio.Queue[EngineEvent | None] = asyncio.Queue()

        async def produce() -> None:
            try:
                result = await self._execute(
                    task, session=session, cancel_token=cancel_token, sink=events.put_nowait
                )
                events.put_nowait(EngineEvent(type=EngineEventType.RESULT, result=result))
            finally:
                events.put_nowait(None)

        runner = asyncio.create_task(produce())
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                yield event
            await runner
        finally:
            if not runner.done():
                runner.cancel()
                with suppress(asyncio.CancelledError):
                    await runner

    async def _execute(
        self,
        task: Task,
        *,
        session: BudgetSession | None,
        cancel_token: CancellationToken | None,
        sink: Callable[[EngineEvent], None] | None,
    ) -> TaskResult:
        session = session if session is not None else self._budget.create_envelope(task.budget)
        trace_id = self._trace.create_trace(task.id, session.envelope)
        ctx = _RunContext(task=task, session=session, trace_id=trace_id, sink=sink)

        with correlation_scope(task_id=task.id, trace_id=trace_id):
            self._logger.info("engine_run_started", task_id=task.id, session_id=session.id)
            try:
                await run_with_timeout(
                    self._drive(ctx), self._deadline_seconds(session), cancel_token
                )
            except asyncio.CancelledError:
                if cancel_token is None or not cancel_token.is_cancelled:
                    raise
                self._stop(ctx, cancel_token.reason or "operation cancelled")
            except BudgetExhaustedError as exc:
                self._fail(ctx, exc)
            except (JouleError, ProviderError) as exc:
                self._fail(ctx, exc)
            except TimeoutError:
                self._fail(
                    ctx,
                    BudgetExhaustedError("latency", self._budget.get_usage(session)),
                    deadline_expired=True,
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("engine_run_crashed", task_id=task.id)
                self._fail(ctx, exc)
            return await self._finish(ctx)

    def _deadline_seconds(self, session: BudgetSession) -> float | None:
        remaining = self._budget.get_usage(session).latency_remaining
        if math.isinf(remaining):
            return None
        return max(remaining, 1.0) / 1000.0

    async def _drive(self, ctx: _RunContext) -> None:
        self._admit(ctx)

        self._transition(ctx, AgentState.SPEC)
        ctx.spec = await self._planner.specify_task(ctx.task, ctx.session, ctx.trace_id)

        self._transition(ctx, AgentState.PLAN)
        await self._plan(ctx)
        if ctx.direct_answer:
            await self._synthesize(ctx)
            self._complete(ctx)
            return

        if self._settings.enable_critique:
            self._transition(ctx, AgentState.CRITIQUE)
            await self._critique(ctx)

        self._transition(ctx, AgentState.SIMULATE)
        self._simulate(ctx)
        if not ctx.queue:
            await self._synthesize(ctx)
            self._complete(ctx)
            return

        if not await self._decompose(ctx):
            self._transition(ctx, AgentState.ACT)
            await self._act(ctx)
        await self._synthesize(ctx)
        self._complete(ctx)

    def _admit(self, ctx: _RunContext) -> None:
        if self._constitution is None:
            return
        violation = self._constitution.validate_task(ctx.task.description)
        if violation is None:
            return
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.CONSTITUTION_VIOLATION,
            {"rule_id": violation.rule_id, "message": violation.message, "phase": "task"},
        )
        raise violation.to_error()

    async def _plan(self, ctx: _RunContext) -> None:
        failure_context, memory_context = await self._recall(ctx)
        ctx.complexity = await self._planner.classify_complexity(
            ctx.task, ctx.session, ctx.trace_id
        )
        self._budget.check_budget(ctx.session)
        plan = await self._planner.plan(
            ctx.task,
            ctx.complexity,
            ctx.session,
            ctx.trace_id,
            spec=ctx.spec,
            failure_context=failure_context,
            memory_context=memory_context,
        )
        self._budget.check_budget(ctx.session)
        try:
            self._planner.validate_plan(plan)
        except PlanValidationError as exc:
            # Unknown tools are dropped by the simulator.
            self._logger.info("engine_plan_invalid", task_id=ctx.task.id, errors=list(exc.errors))
        ctx.plan = plan
        ctx.direct_answer = plan.is_empty

    async def _recall(self, ctx: _RunContext) -> tuple[tuple[str, ...], tuple[str, ...]]:
        if self._memory is None:
            return (), ()
        ctx.failure_patterns = list(await self._memory.failure_patterns())
        procedure = await self._memory.find_procedure(ctx.task.description)
        memory_context: tuple[str, ...] = ()
        if procedure is not None:
            memory_context = (
                f"Known procedure '{procedure.name}': {'; '.join(procedure.steps)}",
            )
        return tuple(pattern.describe() for pattern in ctx.failure_patterns), memory_context

    async def _critique(self, ctx: _RunContext) -> None:
        plan = ctx.plan
        assert plan is not None
        score = await self._planner.critique_plan(
            ctx.task, plan, ctx.spec, ctx.session, ctx.trace_id
        )
        ctx.confidences = score.step_confidences
        if score.overall < REFINE_BELOW_SCORE and score.refined_steps:
            ctx.plan = ExecutionPlan(
                task_id=plan.task_id,
                complexity=plan.complexity,
                steps=tuple(
                    step.with_index(index) for index, step in enumerate(score.refined_steps)
                ),
                raw_response=plan.raw_response,
            )
            ctx.confidences = (DEFAULT_STEP_CONFIDENCE,) * len(score.refined_steps)
            self._trace.log_event(
                ctx.trace_id,
                TraceEventType.INFO,
                {
                    "message": "plan_refined",
                    "overall": score.overall,
                    "step_count": len(score.refined_steps),
                },
            )

    def _simulate(self, ctx: _RunContext) -> None:
        plan = ctx.plan
        assert plan is not None
        result = self._simulator.simulate(plan, self._budget.get_usage(ctx.session))
        ctx.simulation = result
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.SIMULATION_RESULT,
            {
                "valid": result.valid,
                "issue_count": len(result.issues),
                "estimated_cost_usd": result.estimated_cost_usd,
                "estimated_tool_calls": result.estimated_tool_calls,
            },
        )
        for issue in result.issues:
            self._trace.log_event(ctx.trace_id, TraceEventType.SIMULATION_ISSUE, issue.to_dict())

        high = result.high_severity_issues
        if self._settings.abort_on_high_severity and high:
            raise PlanValidationError(
                f"Simulation found {len(high)} high-severity issue(s)",
                errors=tuple(issue.message for issue in high),
            )

        kept = drop_missing_tools(plan, result)
        missing = {
            issue.step_index
            for issue in result.issues
            if issue.type is SimulationIssueType.MISSING_TOOL
        }
        confidences = [
            (
                ctx.confidences[position]
                if position < len(ctx.confidences)
                else DEFAULT_STEP_CONFIDENCE
            )
            for position in range(len(plan.steps))
            if position not in missing
        ]
        ctx.plan = kept
        ctx.direct_answer = not kept.steps
        ctx.queue = deque(
            _QueuedStep(step, confidence) for step, confidence in zip(kept.steps, confidences)
        )
        ctx.next_index = len(kept.steps)
        ctx.checkpoint_interval = max(
            MIN_CHECKPOINT_INTERVAL, math.ceil(len(kept.steps) / MIN_CHECKPOINT_INTERVAL)
        )

    async def _decompose(self, ctx: _RunContext) -> bool:
        if self._decomposer is None or self._crew_runner is None:
            return False
        if not self._decomposer.should_decompose(ctx.task, ctx.complexity):
            return False
        self._transition(ctx, AgentState.DECOMPOSE)
        decomposition = await self._decomposer.decompose(ctx.task, ctx.session, ctx.trace_id)
        if len(decomposition.subtasks) <= 1:
            return False
        outcome = await self._crew_runner.run_subtasks(
            ctx.task, decomposition, session=ctx.session, trace_id=ctx.trace_id
        )
        ctx.aggregated = outcome.result or ""
        ctx.subtask_status = str(outcome.status)
        if outcome.error:
            ctx.error = outcome.error
        return True

    async def _act(self, ctx: _RunContext) -> None:
        while ctx.queue:
            max_steps = self._settings.max_steps
            if max_steps is not None and ctx.executed_steps >= max_steps:
                self._logger.info(
                    "engine_step_limit_reached",
                    task_id=ctx.task.id,
                    max_steps=max_steps,
                    skipped=len(ctx.queue),
                )
                ctx.queue.clear()
                break
            queued = ctx.queue.popleft()
            if ctx.state is not AgentState.ACT:
                self._transition(ctx, AgentState.ACT)
            ctx.last_step = queued.step
            ctx.executed_steps += 1

            result, blocked = await self._attempt(ctx, queued)
            if not result.success and not blocked:
                self._transition(ctx, AgentState.RECOVER)
                await self._recover(ctx, queued, result)

            if ctx.queue and ctx.executed_steps % ctx.checkpoint_interval == 0:
                self._transition(ctx, AgentState.CHECKPOINT)
                self._checkpoint(ctx, f"step_{queued.step.index}")
                await self._goal_check(ctx)

        self._transition(ctx, AgentState.CHECKPOINT)
        self._checkpoint(ctx, "act_complete")

    async def _attempt(self, ctx: _RunContext, queued: _QueuedStep) -> tuple[StepResult, bool]:
        """One act -> observe -> verify pass; returns the recorded result and a blocked flag."""

        result, blocked = await self._invoke(ctx, queued)
        self._transition(ctx, AgentState.OBSERVE)
        self._transition(ctx, AgentState.VERIFY)
        result = self._verify(ctx, queued.step, result)
        self._record(ctx, result)
        self._budget.check_budget(ctx.session)
        return result, blocked

    async def _invoke(self, ctx: _RunContext, queued: _QueuedStep) -> tuple[StepResult, bool]:
        self._budget.check_budget(ctx.session)
        if not self._budget.can_afford_tool_call(ctx.session):
            raise BudgetExhaustedError("tool_calls", self._budget.get_usage(ctx.session))

        step = queued.step
        confidence = self._estimate_confidence(ctx, queued)
        args = substitute_outputs(step.tool_args, ctx.outputs)
        assert isinstance(args, dict)
        span_id = self._trace.start_span(
            ctx.trace_id,
            f"step-{step.index}",
            {"tool_name": step.tool_name, "description": step.description},
        )
        try:
            blocked = self._blocked_reason(ctx, step, args)
            if blocked is None and self._tools.requires_confirmation(step.tool_name):
                if not await self._confirmed(step.tool_name, args):
                    blocked = f"User declined {step.tool_name}"
            if blocked is not None:
                return (
                    StepResult(
                        step_index=step.index,
                        tool_name=step.tool_name,
                        tool_args=args,
                        output=None,
                        success=False,
                        duration_ms=0.0,
                        error=blocked,
                        confidence=confidence,
                    ),
                    True,
                )

            self._budget.deduct_tool_call(ctx.session)
            try:
                tool_result = await self._tools.execute(
                    step.tool_name, args, timeout_ms=self._settings.step_timeout_ms
                )
            except ToolNotFoundError as exc:
                tool_result = ToolResult(tool_name=step.tool_name, success=False, error=str(exc))
            self._budget.deduct(ctx.session, latency_ms=tool_result.duration_ms)
            self._trace.log_tool_call(ctx.trace_id, args, tool_result)
            if not tool_result.success and self._memory is not None:
                await self._memory.record_failure(
                    step.tool_name, tool_result.error or "unknown error"
                )
            return (
                StepResult(
                    step_index=step.index,
                    tool_name=step.tool_name,
                    tool_args=args,
                    output=tool_result.output,
                    success=tool_result.success,
                    duration_ms=tool_result.duration_ms,
                    error=tool_result.error,
                    confidence=confidence,
                ),
                False,
            )
        finally:
            self._trace.end_span(ctx.trace_id, span_id)

    def _estimate_confidence(self, ctx: _RunContext, queued: _QueuedStep) -> float:
        step = queued.step
        confidence = queued.confidence
        recent = ctx.results[-RECENT_FAILURE_WINDOW:]
        confidence -= RECENT_FAILURE_PENALTY * sum(1 for item in recent if not item.success)

        matches = [
            pattern for pattern in ctx.failure_patterns if pattern.tool_name == step.tool_name
        ]
        if matches:
            confidence -= FAILURE_PATTERN_PENALTY
            self._trace.log_event(
                ctx.trace_id,
                TraceEventType.FAILURE_PATTERN_MATCH,
                {
                    "step_index": step.index,
                    "tool_name": step.tool_name,
                    "pattern_count": len(matches),
                },
            )
        if any(item.tool_name == step.tool_name and item.success for item in ctx.results):
            confidence += PRIOR_SUCCESS_BONUS

        confidence = min(MAX_STEP_CONFIDENCE, max(MIN_STEP_CONFIDENCE, confidence))
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.CONFIDENCE_UPDATE,
            {
                "step_index": step.index,
                "tool_name": step.tool_name,
                "base": queued.confidence,
                "confidence": confidence,
            },
        )
        return confidence

    def _blocked_reason(
        self, ctx: _RunContext, step: PlanStep, args: Mapping[str, object]
    ) -> str | None:
        if self._constitution is None:
            return None
        try:
            violation = self._constitution.validate_tool_call(step.tool_name, args)
        except ConstitutionViolationError as exc:
            self._log_violation(ctx, step, exc.rule_id, exc.detail)
            return str(exc)
        if violation is None:
            return None
        self._log_violation(ctx, step, violation.rule_id, violation.message)
        return str(violation.to_error())

    def _log_violation(self, ctx: _RunContext, step: PlanStep, rule_id: str, message: str) -> None:
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.CONSTITUTION_VIOLATION,
            {
                "rule_id": rule_id,
                "message": message,
                "step_index": step.index,
                "tool_name": step.tool_name,
            },
        )
        self._logger.warning(
            "engine_tool_blocked", task_id=ctx.task.id, tool_name=step.tool_name, rule_id=rule_id
        )

    async def _confirmed(self, tool_name: str, args: Mapping[str, object]) -> bool:
        if self._confirm is None:
            return False
        decision = self._confirm(tool_name, dict(args))
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)

    def _verify(self, ctx: _RunContext, step: PlanStep, result: StepResult) -> StepResult:
        if step.verify is None or not result.success:
            return result
        outcome = verify_step(step, result)
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.STEP_VERIFICATION,
            {"step_index": step.index, "passed": outcome.passed, "evidence": outcome.evidence},
        )
        if outcome.passed:
            return result
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.VERIFICATION_FAILED,
            {"step_index": step.index, "tool_name": step.tool_name, "evidence": outcome.evidence},
        )
        return replace(result, success=False, error=f"Verification failed: {outcome.evidence}")

    def _record(self, ctx: _RunContext, result: StepResult) -> None:
        ctx.results.append(result)
        if result.success:
            ctx.outputs[result.step_index] = result.output
        if ctx.sink is not None:
            ctx.sink(EngineEvent(type=EngineEventType.STEP, step=result))

    async def _recover(self, ctx: _RunContext, queued: _QueuedStep, result: StepResult) -> None:
        verify = queued.step.verify
        if verify is not None and verify.retry_on_fail:
            for attempt in range(1, verify.max_retries + 1):
                self._logger.info(
                    "engine_step_retry",
                    task_id=ctx.task.id,
                    step_index=queued.step.index,
                    attempt=attempt,
                )
                self._transition(ctx, AgentState.ACT)
                result, blocked = await self._attempt(ctx, queued)
                if result.success:
                    return
                self._transition(ctx, AgentState.RECOVER)
                if blocked:
                    return

        await self._replan(
            ctx,
            queued.step,
            result.error or "step failed",
            reason=f"Step {queued.step.index} ({queued.step.tool_name}) failed",
        )

    async def _replan(
        self, ctx: _RunContext, failed_step: PlanStep, error: str, *, reason: str
    ) -> bool:
        """Replace the remaining steps with a recovery plan if an escalation is granted."""

        granted = await self._router.escalate(
            ctx.session, reason, replan_depth=ctx.replan_depth, trace_id=ctx.trace_id
        )
        if not granted:
            return False

        self._transition(ctx, AgentState.PLAN)
        ctx.replan_depth += 1
        try:
            recovery = await self._planner.replan(
                ctx.task, failed_step, error, ctx.results, ctx.session, ctx.trace_id
            )
            self._planner.validate_plan(recovery)
        except (PlanValidationError, ProviderError) as exc:
            self._trace.log_event(
                ctx.trace_id,
                TraceEventType.ERROR,
                {"message": "replan_failed", "error": str(exc), "step_index": failed_step.index},
            )
            self._transition(ctx, AgentState.ACT)
            return False
        self._budget.check_budget(ctx.session)

        ctx.queue = deque(
            _QueuedStep(step.with_index(ctx.next_index + offset), DEFAULT_STEP_CONFIDENCE)
            for offset, step in enumerate(recovery.steps)
        )
        ctx.next_index += len(recovery.steps)
        self._transition(ctx, AgentState.ACT)
        return True

    def _checkpoint(self, ctx: _RunContext, label: str) -> None:
        checkpoint = self._budget.checkpoint(ctx.session, label)
        self._trace.log_budget_checkpoint(ctx.trace_id, label, checkpoint.usage)

    async def _goal_check(self, ctx: _RunContext) -> None:
        if not self._settings.enable_goal_checkpoints or ctx.spec is None:
            return
        if self._budget.is_exhausted(ctx.session) is not None:
            return
        step_index = ctx.last_step.index if ctx.last_step is not None else -1
        try:
            reply = await self._dispatcher.dispatch(
                RoutingPurpose.CLASSIFY,
                ctx.session,
                system=GOAL_CHECK_SYSTEM_PROMPT,
                user_message=(
                    f"Goal: {ctx.spec.goal}\n\n"
                    f"Progress so far:\n{compress_step_history(ctx.results)}\n\n"
                    f"Remaining steps: {len(ctx.queue)}"
                ),
                complexity=GOAL_CHECK_COMPLEXITY,
                trace_id=ctx.trace_id,
                response_format="json",
                temperature=0.0,
            )
            parsed = extract_json(reply.content)
            on_track = bool(parsed.get("onTrack", parsed.get("on_track", True)))
            raw_drift = parsed.get("drift") or []
            if isinstance(raw_drift, list):
                drift = [str(item) for item in raw_drift]
            else:
                drift = [str(raw_drift)]
        except (ProviderError, ValueError) as exc:
            self._logger.info("engine_goal_check_skipped", task_id=ctx.task.id, error=str(exc))
            on_track, drift = True, []

        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.GOAL_CHECKPOINT,
            {"step_index": step_index, "on_track": on_track, "drift": drift},
        )
        if not on_track and ctx.queue and ctx.last_step is not None:
            await self._replan(
                ctx,
                ctx.last_step,
                f"Goal drift: {'; '.join(drift) or 'execution diverged from goal'}",
                reason="goal_drift",
            )

    async def _synthesize(self, ctx: _RunContext) -> None:
        self._transition(ctx, AgentState.SYNTHESIZE)
        if ctx.aggregated is not None:
            ctx.answer = self._guard_output(ctx, ctx.aggregated)
            return

        if ctx.direct_answer:
            complexity = DIRECT_ANSWER_COMPLEXITY
            system = DIRECT_SYSTEM_PROMPT
            message = ctx.task.description
        else:
            complexity = FAILED_SYNTHESIS_COMPLEXITY if ctx.any_failed else SYNTHESIS_COMPLEXITY
            system = SYNTHESIZE_SYSTEM_PROMPT
            message = (
                f"Task: {ctx.task.description}\n\n"
                f"Step results:\n{compress_step_history(ctx.results)}\n\n"
                "Write the final answer for the user."
            )
        if self._settings.instructions:
            system = f"{self._settings.instructions}\n\n{system}"
        if self._constitution is not None:
            system = f"{system}\n\n{self._constitution.build_prompt_injection()}"

        try:
            if ctx.sink is not None:
                answer = await self._stream_answer(ctx, system, message, complexity)
            else:
                reply = await self._dispatcher.dispatch(
                    RoutingPurpose.SYNTHESIZE,
                    ctx.session,
                    system=system,
                    user_message=message,
                    history=ctx.task.messages,
                    complexity=complexity,
                    trace_id=ctx.trace_id,
                    temperature=self._settings.synthesis_temperature,
                )
                answer = reply.content
        except ProviderError as exc:
            self._logger.warning("engine_synthesis_fallback", task_id=ctx.task.id, error=str(exc))
            answer = summarize_step_results(ctx.results) if ctx.results else NO_ANSWER_TEXT
        ctx.answer = self._guard_output(ctx, answer)

    async def _stream_answer(
        self, ctx: _RunContext, system: str, message: str, complexity: float
    ) -> str:
        assert ctx.sink is not None
        parts: list[str] = []
        stream = self._dispatcher.dispatch_stream(
            RoutingPurpose.SYNTHESIZE,
            ctx.session,
            system=system,
            user_message=message,
            history=ctx.task.messages,
            complexity=complexity,
            trace_id=ctx.trace_id,
            temperature=self._settings.synthesis_temperature,
        )
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                if chunk.content:
                    parts.append(chunk.content)
                    ctx.sink(EngineEvent(type=EngineEventType.CHUNK, text=chunk.content))
        return "".join(parts)

    def _guard_output(self, ctx: _RunContext, text: str) -> str:
        if self._constitution is None:
            return text
        violation = self._constitution.validate_output(text)
        if violation is not None:
            self._trace.log_event(
                ctx.trace_id,
                TraceEventType.CONSTITUTION_OUTPUT_VIOLATION,
                {"rule_id": violation.rule_id, "message": violation.message},
            )
            return f"[Response filtered by constitution rule {violation.rule_id}]"
        disclaimers = self._constitution.required_disclaimers(text)
        if disclaimers:
            return "\n\n".join([text, *disclaimers])
        return text

    def _complete(self, ctx: _RunContext) -> None:
        if ctx.subtask_status in {"failed", "budget_exhausted"}:
            ctx.status = (
                TaskStatus.BUDGET_EXHAUSTED
                if ctx.subtask_status == "budget_exhausted"
                else TaskStatus.FAILED
            )
            ctx.error = ctx.error or f"Sub-tasks {ctx.subtask_status}"
            self._transition(ctx, AgentState.FAILED)
            return
        if ctx.results and not any(item.success for item in ctx.results):
            ctx.status = TaskStatus.FAILED
            ctx.error = ctx.results[-1].error or "All steps failed"
            self._transition(ctx, AgentState.FAILED)
            return
        ctx.status = TaskStatus.COMPLETED
        self._transition(ctx, AgentState.DONE)

    def _fail(
        self, ctx: _RunContext, exc: BaseException, *, deadline_expired: bool = False
    ) -> None:
        ctx.error = str(exc)
        ctx.status = (
            TaskStatus.BUDGET_EXHAUSTED
            if isinstance(exc, BudgetExhaustedError)
            else TaskStatus.FAILED
        )
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.ERROR,
            {"message": "task_failed", "error": ctx.error, "state": ctx.state.value},
        )
        self._logger.warning(
            "engine_run_failed",
            task_id=ctx.task.id,
            state=ctx.state.value,
            error=ctx.error,
            error_type=type(exc).__name__,
        )
        if deadline_expired:
            self._force(ctx, AgentState.RECOVER)
        self._force(ctx, AgentState.SYNTHESIZE)
        ctx.answer = _partial_answer(ctx.results, exc)
        self._force(ctx, AgentState.FAILED)

    def _stop(self, ctx: _RunContext, reason: str) -> None:
        ctx.status = TaskStatus.FAILED
        ctx.error = f"Cancelled: {reason}"
        self._logger.info("engine_run_cancelled", task_id=ctx.task.id, reason=reason)
        ctx.answer = summarize_step_results(ctx.results) if ctx.results else None
        self._force(ctx, AgentState.STOPPED)

    def _transition(self, ctx: _RunContext, target: AgentState) -> None:
        current = ctx.state
        if not is_legal_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)
        ctx.state = target
        self._trace.log_event(
            ctx.trace_id,
            TraceEventType.STATE_TRANSITION,
            {"from": current.value, "to": target.value},
        )
        self._logger.debug(
            "engine_state_transition",
            task_id=ctx.task.id,
            from_state=current.value,
            to_state=target.value,
        )
        if ctx.sink is not None:
            ctx.sink(EngineEvent(type=EngineEventType.STATE, state=target))

    def _force(self, ctx: _RunContext, target: AgentState) -> None:
        """Transition on failure paths, skipping edges that are not legal from here."""

        if ctx.state is target or not is_legal_transition(ctx.state, target):
            return
        self._transition(ctx, target)

    async def _finish(self, ctx: _RunContext) -> TaskResult:
        session = ctx.session
        self._checkpoint(ctx, "final")

        efficiency: EfficiencyReport | None = None
        energy_config = self._router.energy_config
        if energy_config.enabled:
            totals = self._budget.get_energy_totals(session)
            efficiency = build_efficiency_report(
                totals, energy_config, catalog=self._model_catalog
            )
            self._trace.log_event(
                ctx.trace_id,
                TraceEventType.ENERGY_REPORT,
                {"totals": totals.to_dict(), "efficiency": efficiency.to_dict()},
            )

        criteria = (
            evaluate_criteria(ctx.spec, ctx.results, ctx.answer) if ctx.spec is not None else None
        )
        status = ctx.status if ctx.status is not None else TaskStatus.FAILED
        await self._remember(ctx, status)

        usage = self._budget.get_usage(session)
        trace = self._trace.get_trace(ctx.trace_id, usage)
        result = TaskResult(
            task_id=ctx.task.id,
            trace_id=ctx.trace_id,
            status=status,
            budget_used=usage,
            trace=trace,
            result=ctx.answer,
            step_results=tuple(ctx.results),
            error=ctx.error if status is not TaskStatus.COMPLETED else None,
            spec=ctx.spec,
            criteria_results=criteria,
            simulation_result=ctx.simulation,
            decision_graph=DecisionGraphBuilder().build_from_trace(trace),
            efficiency_report=efficiency,
        )
        self._logger.info(
            "engine_run_finished",
            task_id=ctx.task.id,
            status=status.value,
            steps=len(ctx.results),
            tokens_used=usage.tokens_used,
            cost_usd=usage.cost_usd,
        )
        return result

    async def _remember(self, ctx: _RunContext, status: TaskStatus) -> None:
        if self._memory is None:
            return
        summary = ctx.answer or ctx.error or ctx.task.description
        try:
            await self._memory.record_episode(
                ctx.task.id,
                summary[:500],
                status.value,
                sorted({item.tool_name for item in ctx.results}),
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("engine_memory_record_failed", task_id=ctx.task.id, error=str(exc))


def _number(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _partial_answer(results: Sequence[StepResult], exc: BaseException) -> str | None:
    body = summarize_step_results(results) if results else ""
    if isinstance(exc, BudgetExhaustedError):
        header = f"[Partial Result - Budget Exhausted ({exc.dimension})]"
        return f"{header}\n\n{body}" if body else header
    return body or None


__all__ = [
    "ConfirmCallback",
    "EngineEvent",
    "EngineEventType",
    "ExecutionSettings",
    "SubtaskOutcome",
    "SubtaskRunner",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "TaskExecutionEngine",
    "UNIVERSAL_TARGETS",
    "is_legal_transition",
    "substitute_outputs",
]
