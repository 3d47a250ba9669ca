"""
Model-backed task specification, complexity classification and planning.

Each public coroutine runs inside its own trace span and makes its model calls
through :class:`~joule_orchestrator.synthesis_plane.dispatch.ModelDispatcher`, so
every call is routed, charged to the budget session and traced. Specification and
critique degrade to safe fallbacks; planning escalates once on an unparseable or
empty action plan and otherwise raises
:class:`~joule_orchestrator.domain.errors.PlanValidationError`.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

import structlog

from joule_orchestrator.domain.errors import PlanValidationError
from joule_orchestrator.domain.models import (
    CriterionType,
    ExecutionPlan,
    PlanScore,
    PlanStep,
    StepResult,
    StepVerification,
    SuccessCriterion,
    Task,
    TaskSpec,
)
from joule_orchestrator.observability.trace import TraceEventType
from joule_orchestrator.synthesis_plane.providers.base import ModelTier, ProviderError
from joule_orchestrator.synthesis_plane.router import RoutingPurpose

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetSession
    from joule_orchestrator.observability.trace import TraceLogger
    from joule_orchestrator.security.constitution import Constitution
    from joule_orchestrator.synthesis_plane.dispatch import DispatchResult, ModelDispatcher
    from joule_orchestrator.synthesis_plane.tools import ToolRegistry

DEFAULT_SLM_COMPLEXITY: Final[float] = 0.5
FALLBACK_STEP_CONFIDENCE: Final[float] = 0.7
CRITIQUE_COMPLEXITY: Final[float] = 0.8
REPLAN_COMPLEXITY: Final[float] = 0.9

CLASSIFIER_SYSTEM_PROMPT: Final[str] = """You are a task complexity classifier. Analyze the given task and respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"complexity": <number between 0.0 and 1.0>, "reason": "<brief reason>"}

Complexity guidelines:
- 0.0-0.3: Simple greetings, pure knowledge questions, or mental math that needs no tools
- 0.3-0.6: Multi-step reasoning tasks that can be answered from knowledge alone
- 0.6-0.8: Tasks requiring one or two tool calls
- 0.8-1.0: Tasks requiring multiple tool steps, deep reasoning, or chained actions

Any task that requires a real-world ACTION (writing a file, making an HTTP request, running a command, sending a message) MUST be rated at least 0.7."""

SPEC_SYSTEM_PROMPT: Final[str] = """You are a task specification generator. Given a task description, extract a structured specification.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"goal": "<clear one-sentence goal>", "constraints": ["<constraint>", ...], "success_criteria": [{"description": "<what must be true>", "type": "<type>", "check": {<details>}}]}

Success criteria types:
- "output_contains": the final output contains a pattern -> check: {"pattern": "..."}
- "tool_succeeded": a specific tool completed without error -> check: {"tool_name": "..."}
- "page_state": a browser page reached a state -> check: {"url_contains": "..."}
- "file_exists": a file was created or modified -> check: {"path": "..."}
- "custom": freeform assertion -> check: {"assertion": "..."}

Extract 1-3 measurable success criteria. For a simple greeting or question return a single "custom" criterion."""

PLANNER_SYSTEM_PROMPT: Final[str] = """You are a task planner for an autonomous agent. Given a task and the available tools, create an execution plan.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"steps": [{"description": "<what this step does>", "tool_name": "<tool_name>", "tool_args": {<arguments>}}]}

Rules:
- ONLY return {"steps": []} if the task is a pure knowledge question, greeting, or conversation that needs no real-world action
- If the task asks to DO something you MUST include tool steps
- Use ONLY the tools listed below and never invent tools
- Each step must use exactly one tool, with argument names exactly as described
- A later step may reference an earlier step's output as "$output_N", where N is the zero-based index of that step

Available tools:
"""

REPLANNER_SYSTEM_PROMPT: Final[str] = """You are a recovery planner. A previous execution step failed. Given the original task, the error, and the completed steps, create a recovery plan.

Rules:
- Do NOT repeat steps that already succeeded
- Create minimal steps that recover from or work around the failure
- Use ONLY the tools listed below
- Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"steps": [{"description": "<what this step does>", "tool_name": "<tool_name>", "tool_args": {<arguments>}}]}

Available tools:
"""

CRITIQUE_SYSTEM_PROMPT: Final[str] = """You are a plan quality reviewer. Evaluate the execution plan for feasibility, completeness, and correctness.
Respond with ONLY a raw JSON object (no markdown, no code fences, no explanation):
{"overall": <0.0-1.0>, "step_confidences": [<per-step confidence 0.0-1.0>], "issues": ["<issue>", ...], "refined_plan": {"steps": [...]}}

Scoring: 0.9-1.0 excellent, 0.7-0.9 good, 0.5-0.7 has issues, below 0.5 poor.
If overall < 0.5, provide refined_plan with corrected steps."""

# Keyword patterns marking tasks that need real-world tool actions, with the
# complexity floor each one implies.
ACTION_PATTERNS: Final[tuple[tuple[re.Pattern[str], float], ...]] = tuple(
    (re.compile(pattern, re.IGNORECASE), floor)
    for pattern, floor in (
        (r"\b(open|navigate|browse|visit|go\s+to)\b.*(\b(url|website|page|browser|link|site)\b|https?://)", 0.75),
        (r"\b(play|watch|stream)\b.*\b(video|song|music|media)\b", 0.75),
        (r"\b(search|look\s+up)\b.*\b(on|in|using)\b.*\b(web|browser|google)\b", 0.75),
        (r"\b(click|type|fill|submit|screenshot)\b", 0.7),
        (r"\b(send|write|compose)\b.*\b(email|mail)\b", 0.8),
        (r"\b(discord|slack|telegram|whatsapp|teams)\b", 0.8),
        (r"\b(create|write|save|make)\b.*\b(file|document|note|text)\b", 0.7),
        (r"\b(read|open|load)\b.*\b(file|document)\b", 0.7),
        (r"\b(download|upload)\b", 0.7),
        (r"\b(run|execute|launch|start)\b.*\b(command|script|program|app|application)\b", 0.7),
        (r"\b(install|uninstall|kill|restart)\b", 0.7),
        (r"\b(fetch|request|call|post|get)\b.*\b(api|endpoint|url|http|server)\b", 0.7),
        (r"\b(send|forward)\b.*\b(message|notification|webhook)\b", 0.7),
        (r"\b(turn\s+on|turn\s+off|toggle|control)\b.*\b(light|device|switch|thermostat)\b", 0.7),
        (r"\b(minimize|maximize|close|resize|focus|switch)\b.*\b(window|app|application)\b", 0.7),
        (r"\b(clipboard|copy|paste)\b.*\b(text|content|data)\b", 0.7),
        (r"\buse\s+(?:the\s+)?(?:browser|shell|http|file|tool)\b", 0.7),
    )
)

_FENCE_RE: Final[re.Pattern[str]] = re.compile(r"```(?:json)?\s*\n?", re.IGNORECASE)
_OBJECT_RE: Final[re.Pattern[str]] = re.compile(r"\{.*\}", re.DOTALL)


def detect_action_intent(description: str) -> float:
    """Complexity floor implied by action keywords; 0.0 for pure knowledge tasks."""

    floor = 0.0
    for pattern, minimum in ACTION_PATTERNS:
        if pattern.search(description):
            floor = max(floor, minimum)
    return floor


def extract_json(raw: str) -> dict[str, Any]:
    """Parse the first JSON object in a model reply, tolerating code fences and prose."""

    cleaned = _FENCE_RE.sub("", raw).replace("```", "").strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(cleaned)
        if match is None:
            raise ValueError("No JSON object found in response") from None
        parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model response JSON is not an object")
    return parsed


def parse_plan(content: str, task_id: str, complexity: float) -> ExecutionPlan:
    try:
        parsed = extract_json(content)
        steps = parse_steps(parsed.get("steps", []))
    except (ValueError, TypeError) as exc:
        raise PlanValidationError(f"Failed to parse plan from model response: {exc}") from exc
    return ExecutionPlan(task_id=task_id, complexity=complexity, steps=steps, raw_response=content)


def parse_steps(raw_steps: object) -> tuple[PlanStep, ...]:
    if not isinstance(raw_steps, list):
        raise ValueError("'steps' must be a list")
    steps: list[PlanStep] = []
    for index, item in enumerate(raw_steps):
        if not isinstance(item, Mapping):
            raise ValueError(f"step {index} must be an object")
        tool_name = item.get("tool_name", item.get("toolName"))
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise ValueError(f"step {index} has no tool name")
        tool_args = item.get("tool_args", item.get("toolArgs")) or {}
        if not isinstance(tool_args, Mapping):
            raise ValueError(f"step {index} tool arguments must be an object")
        raw_verify = item.get("verify")
        steps.append(
            PlanStep(
                index=index,
                description=str(item.get("description") or ""),
                tool_name=tool_name,
                tool_args=tool_args,
                verify=(
                    StepVerification.from_mapping(raw_verify)
                    if isinstance(raw_verify, Mapping)
                    else None
                ),
            )
        )
    return tuple(steps)


def fallback_spec(description: str) -> TaskSpec:
    return TaskSpec(
        goal=description,
        success_criteria=(
            SuccessCriterion(
                description="Task completed successfully",
                type=CriterionType.TOOL_SUCCEEDED,
            ),
        ),
    )


def fallback_score(step_count: int) -> PlanScore:
    return PlanScore(
        overall=FALLBACK_STEP_CONFIDENCE,
        step_confidences=(FALLBACK_STEP_CONFIDENCE,) * step_count,
    )


def summarize_step_results(results: Sequence[StepResult]) -> str:
    if not results:
        return "No steps completed yet."
    lines = []
    for position, result in enumerate(results, start=1):
        status = "SUCCESS" if result.success else "FAILED"
        detail = _short_json(result.output) if result.success else result.error
        lines.append(f"Step {position} ({result.tool_name}): {status} - {detail}")
    return "\n".join(lines)


class Planner:
    """Turns task text into a spec, a complexity score and an executable plan."""

    def __init__(
        self,
        dispatcher: ModelDispatcher,
        tools: ToolRegistry,
        trace_logger: TraceLogger,
        *,
        constitution: Constitution | None = None,
        logger: Any | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._tools = tools
        self._trace = trace_logger
        self._constitution = constitution
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    async def specify_task(self, task: Task, session: BudgetSession, trace_id: str) -> TaskSpec:
        span_id = self._trace.start_span(trace_id, "specify-task")
        try:
            try:
                reply = await self._call(
                    RoutingPurpose.CLASSIFY,
                    session,
                    trace_id,
                    system=SPEC_SYSTEM_PROMPT,
                    user_message=task.description,
                    task=task,
                )
                parsed = extract_json(reply.content)
            except (ProviderError, ValueError) as exc:
                self._logger.info("planner_spec_fallback", task_id=task.id, error=str(exc))
                return fallback_spec(task.description)

            spec = _spec_from_payload(parsed, task.description)
            self._trace.log_event(
                trace_id,
                TraceEventType.SPEC_GENERATED,
                {
                    "goal": spec.goal,
                    "constraint_count": len(spec.constraints),
                    "criteria_count": len(spec.success_criteria),
                },
            )
            return spec
        finally:
            self._trace.end_span(trace_id, span_id)

    async def classify_complexity(
        self, task: Task, session: BudgetSession, trace_id: str
    ) -> float:
        span_id = self._trace.start_span(trace_id, "classify-complexity")
        action_floor = detect_action_intent(task.description)
        try:
            try:
                reply = await self._call(
                    RoutingPurpose.CLASSIFY,
                    session,
                    trace_id,
                    system=CLASSIFIER_SYSTEM_PROMPT + self._constitution_text(),
                    user_message=task.description,
                    task=task,
                )
                parsed = extract_json(reply.content)
                raw = parsed.get("complexity", DEFAULT_SLM_COMPLEXITY)
                if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                    raise ValueError("complexity must be a number")
            except (ProviderError, ValueError) as exc:
                self._logger.info(
                    "planner_complexity_fallback", task_id=task.id, error=str(exc)
                )
                return max(DEFAULT_SLM_COMPLEXITY, action_floor)

            slm_score = max(0.0, min(1.0, float(raw)))
            complexity = max(slm_score, action_floor)
            if action_floor > slm_score:
                self._trace.log_event(
                    trace_id,
                    TraceEventType.COMPLEXITY_BOOSTED,
                    {
                        "slm_score": slm_score,
                        "action_floor": action_floor,
                        "final_complexity": complexity,
                    },
                )
            return complexity
        finally:
            self._trace.end_span(trace_id, span_id)

    async def plan(
        self,
        task: Task,
        complexity: float,
        session: BudgetSession,
        trace_id: str,
        *,
        spec: TaskSpec | None = None,
        failure_context: Sequence[str] = (),
        memory_context: Sequence[str] = (),
    ) -> ExecutionPlan:
        """Generate a plan; escalate at most once on an unparseable or empty action plan."""

        span_id = self._trace.start_span(trace_id, "generate-plan")
        try:
            system = self._plan_prompt(spec, failure_context, memory_context)
            reply = await self._call(
                RoutingPurpose.PLAN,
                session,
                trace_id,
                system=system,
                user_message=task.description,
                task=task,
                complexity=complexity,
            )
            action_floor = detect_action_intent(task.description)

            try:
                plan = parse_plan(reply.content, task.id, complexity)
            except PlanValidationError as exc:
                self._trace.log_event(
                    trace_id,
                    TraceEventType.PARSE_FAILURE_ESCALATION,
                    {"action_floor": action_floor, "parse_error": exc.message},
                )
                plan = await self._escalated_plan(
                    task, complexity, session, trace_id, system, reason="SLM plan parse failure"
                )
                if plan is None:
                    raise
                self._log_plan(trace_id, plan, escalated=True, reason="parse_failure")
                return plan

            self._log_plan(trace_id, plan)
            if plan.is_empty and action_floor > 0:
                self._trace.log_event(
                    trace_id,
                    TraceEventType.EMPTY_PLAN_ESCALATION,
                    {"action_floor": action_floor, "reason": "empty plan for action task"},
                )
                escalated = await self._escalated_plan(
                    task, complexity, session, trace_id, system, reason="Empty plan for action task"
                )
                if escalated is None or escalated.is_empty:
                    raise PlanValidationError("Planner produced no steps for an action task")
                self._log_plan(trace_id, escalated, escalated=True, reason="empty_plan")
                return escalated
            return plan
        finally:
            self._trace.end_span(trace_id, span_id)

    async def critique_plan(
        self,
        task: Task,
        plan: ExecutionPlan,
        spec: TaskSpec | None,
        session: BudgetSession,
        trace_id: str,
    ) -> PlanScore:
        span_id = self._trace.start_span(trace_id, "critique-plan")
        step_count = len(plan.steps)
        try:
            summary = "\n".join(
                f"Step {position}: [{step.tool_name}] {step.description}"
                for position, step in enumerate(plan.steps, start=1)
            )
            spec_context = ""
            if spec is not None:
                criteria = "; ".join(item.description for item in spec.success_criteria)
                spec_context = f"\nGoal: {spec.goal}\nSuccess criteria: {criteria}"
            message = (
                f"Task: {task.description}{spec_context}\n\nPlan to evaluate:\n{summary}\n\n"
                f"Available tools: {', '.join(self._tools.list_names())}"
            )
            try:
                reply = await self._call(
                    RoutingPurpose.PLAN,
                    session,
                    trace_id,
                    system=CRITIQUE_SYSTEM_PROMPT,
                    user_message=message,
                    complexity=CRITIQUE_COMPLEXITY,
                )
                parsed = extract_json(reply.content)
                score = _score_from_payload(parsed, step_count)
            except (ProviderError, ValueError, TypeError) as exc:
                self._logger.info("planner_critique_fallback", task_id=task.id, error=str(exc))
                return fallback_score(step_count)

            self._trace.log_event(
                trace_id,
                TraceEventType.PLAN_CRITIQUE,
                {
                    "overall": score.overall,
                    "issue_count": len(score.issues),
                    "has_refined_plan": score.refined_steps is not None,
                    "issues": list(score.issues),
                },
            )
            return score
        finally:
            self._trace.end_span(trace_id, span_id)

    async def replan(
        self,
        task: Task,
        failed_step: PlanStep,
        error: str,
        completed: Sequence[StepResult],
        session: BudgetSession,
        trace_id: str,
    ) -> ExecutionPlan:
        """Recovery plan from the LLM tier; callers own the escalation decision."""

        span_id = self._trace.start_span(trace_id, "replan")
        try:
            system = REPLANNER_SYSTEM_PROMPT + self._tool_list() + self._constitution_text()
            message = (
                f"Original task: {task.description}\n\n"
                f"Failed step {failed_step.index + 1}: {failed_step.description}\n"
                f"Tool: {failed_step.tool_name}\n"
                f"Error: {error}\n\n"
                f"Completed steps:\n{summarize_step_results(completed)}\n\n"
                "Create a recovery plan to complete the original task."
            )
            reply = await self._call(
                RoutingPurpose.PLAN,
                session,
                trace_id,
                system=system,
                user_message=message,
                tier=ModelTier.LLM,
            )
            plan = parse_plan(reply.content, task.id, REPLAN_COMPLEXITY)
            self._trace.log_event(
                trace_id,
                TraceEventType.REPLAN,
                {
                    "failed_step": failed_step.index,
                    "reason": error,
                    "recovery_steps": len(plan.steps),
                },
            )
            return plan
        finally:
            self._trace.end_span(trace_id, span_id)

    def validate_plan(self, plan: ExecutionPlan) -> None:
        """Raise when a step names an unregistered tool. Empty plans are valid."""

        missing = [
            f"Step {step.index}: tool {step.tool_name!r} not found"
            for step in plan.steps
            if not self._tools.has(step.tool_name)
        ]
        if missing:
            available = ", ".join(self._tools.list_names())
            raise PlanValidationError(
                f"{missing[0]}. Available: {available}", errors=tuple(missing)
            )

    async def _escalated_plan(
        self,
        task: Task,
        complexity: float,
        session: BudgetSession,
        trace_id: str,
        system: str,
        *,
        reason: str,
    ) -> ExecutionPlan | None:
        if not await self._dispatcher.router.escalate(session, reason, trace_id=trace_id):
            return None
        reply = await self._call(
            RoutingPurpose.PLAN,
            session,
            trace_id,
            system=system,
            user_message=task.description,
            task=task,
            tier=ModelTier.LLM,
        )
        try:
            return parse_plan(reply.content, task.id, complexity)
        except PlanValidationError:
            return None

    async def _call(
        self,
        purpose: RoutingPurpose,
        session: BudgetSession,
        trace_id: str,
        *,
        system: str,
        user_message: str,
        task: Task | None = None,
        complexity: float | None = None,
        tier: ModelTier | None = None,
    ) -> DispatchResult:
        return await self._dispatcher.dispatch(
            purpose,
            session,
            system=system,
            user_message=user_message,
            history=task.messages if task is not None else (),
            complexity=complexity,
            tier=tier,
            trace_id=trace_id,
            response_format="json",
        )

    def _plan_prompt(
        self,
        spec: TaskSpec | None,
        failure_context: Sequence[str],
        memory_context: Sequence[str],
    ) -> str:
        prompt = PLANNER_SYSTEM_PROMPT + self._tool_list()
        if memory_context:
            prompt += "\n\nKNOWN FACTS:\n" + "\n".join(f"- {item}" for item in memory_context)
        if failure_context:
            prompt += "\n\nKNOWN FAILURE PATTERNS - consider these when planning:\n" + "\n".join(
                f"- {item}" for item in failure_context
            )
        if spec is not None and spec.success_criteria:
            criteria = "\n".join(
                f"{position}. [{item.type.value}] {item.description}"
                for position, item in enumerate(spec.success_criteria, start=1)
            )
            prompt += f"\n\nSUCCESS CRITERIA - the plan must achieve these goals:\n{criteria}"
            if spec.constraints:
                prompt += f"\nConstraints: {'; '.join(spec.constraints)}"
            prompt += (
                '\n\nFor critical steps you MAY add a "verify" field: '
                '{"type": "output_check"|"none", "assertion": "<regex or text>", '
                '"retry_on_fail": true, "max_retries": 2}'
            )
        return prompt + self._constitution_text()

    def _tool_list(self) -> str:
        return "\n".join(f"- {item['name']}: {item['description']}" for item in self._tools.describe())

    def _constitution_text(self) -> str:
        return self._constitution.build_prompt_injection() if self._constitution else ""

    def _log_plan(
        self,
        trace_id: str,
        plan: ExecutionPlan,
        *,
        escalated: bool = False,
        reason: str | None = None,
    ) -> None:
        data: dict[str, object] = {
            "steps": len(plan.steps),
            "complexity": plan.complexity,
            "escalated": escalated,
        }
        if reason is not None:
            data["reason"] = reason
        self._trace.log_event(trace_id, TraceEventType.PLAN_GENERATED, data)
        self._logger.debug("planner_plan_generated", trace_id=trace_id, **data)


def _spec_from_payload(parsed: Mapping[str, Any], description: str) -> TaskSpec:
    goal = parsed.get("goal")
    constraints = parsed.get("constraints")
    raw_criteria = parsed.get("success_criteria", parsed.get("successCriteria"))
    criteria = [
        SuccessCriterion.from_mapping(
            {"type": CriterionType.TOOL_SUCCEEDED.value, **item}
        )
        for item in (raw_criteria if isinstance(raw_criteria, list) else [])
        if isinstance(item, Mapping)
    ]
    if not criteria:
        criteria = list(fallback_spec(description).success_criteria)
    return TaskSpec(
        goal=goal.strip() if isinstance(goal, str) and goal.strip() else description,
        constraints=tuple(
            str(item)
            for item in (constraints if isinstance(constraints, list) else [])
            if str(item).strip()
        ),
        success_criteria=tuple(criteria),
    )


def _score_from_payload(parsed: Mapping[str, Any], step_count: int) -> PlanScore:
    overall = parsed.get("overall", FALLBACK_STEP_CONFIDENCE)
    if isinstance(overall, bool) or not isinstance(overall, (int, float)):
        overall = FALLBACK_STEP_CONFIDENCE
    raw_confidences = parsed.get("step_confidences", parsed.get("stepConfidences"))
    confidences = [
        max(0.0, min(1.0, float(item)))
        for item in (raw_confidences if isinstance(raw_confidences, list) else [])
        if isinstance(item, (int, float)) and not isinstance(item, bool)
    ]
    while len(confidences) < step_count:
        confidences.append(FALLBACK_STEP_CONFIDENCE)
    issues = parsed.get("issues")

    refined: tuple[PlanStep, ...] | None = None
    raw_refined = parsed.get("refined_plan", parsed.get("refinedPlan"))
    if isinstance(raw_refined, Mapping) and raw_refined.get("steps"):
        try:
            refined = parse_steps(raw_refined["steps"])
        except ValueError:
            refined = None

    return PlanScore(
        overall=max(0.0, min(1.0, float(overall))),
        step_confidences=tuple(confidences),
        issues=tuple(str(item) for item in (issues if isinstance(issues, list) else [])),
        refined_steps=refined,
    )


def _short_json(value: object, limit: int = 200) -> str:
    try:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = repr(value)
    return text[:limit]


__all__ = [
    "ACTION_PATTERNS",
    "Planner",
    "detect_action_intent",
    "extract_json",
    "fallback_score",
    "fallback_spec",
    "parse_plan",
    "parse_steps",
    "summarize_step_results",
]
