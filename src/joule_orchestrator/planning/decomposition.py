"""
Decomposition of large compound tasks into dependent sub-tasks.

The decomposer only produces a :class:`DecompositionPlan`; running the sub-tasks is
the crew orchestrator's job, which receives them as a generated crew.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

import structlog

from joule_orchestrator.domain import ids as domain_ids
from joule_orchestrator.domain.models import (
    DecompositionPlan,
    DecompositionStrategy,
    SubTaskDefinition,
    Task,
)
from joule_orchestrator.observability.trace import TraceEventType
from joule_orchestrator.planning.planner import extract_json
from joule_orchestrator.synthesis_plane.providers.base import ProviderError
from joule_orchestrator.synthesis_plane.router import RoutingPurpose

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetSession
    from joule_orchestrator.observability.trace import TraceLogger
    from joule_orchestrator.synthesis_plane.dispatch import ModelDispatcher

DECOMPOSE_COMPLEXITY_THRESHOLD: Final[float] = 0.85
DECOMPOSE_MIN_DESCRIPTION_CHARS: Final[int] = 200
DEPENDENCY_CONTEXT_CHARS: Final[int] = 300

DECOMPOSE_SYSTEM_PROMPT: Final[str] = """You are a task decomposition specialist. Break complex tasks into self-contained sub-tasks.

Rules:
- Each sub-task should be self-contained and clearly described
- Identify dependencies between sub-tasks by zero-based index
- Assign budget shares (fractions that sum to 1.0)
- Keep decomposition minimal and prefer fewer, well-scoped sub-tasks

Respond with ONLY a raw JSON object (no markdown, no code fences):
{"subtasks": [{"description": "<what to do>", "depends_on": [], "budget_share": <0-1>}], "strategy": "sequential"|"parallel"|"mixed"}"""

COMPOUND_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\band\s+then\b", re.IGNORECASE),
    re.compile(r"\bafter\s+that\b", re.IGNORECASE),
    re.compile(r"\bfirst\s*,?\s*.*\bthen\b", re.IGNORECASE),
    re.compile(r"\bnext\s*,?\s*", re.IGNORECASE),
    re.compile(r"\bfinally\b", re.IGNORECASE),
    re.compile(r"\b(?:step\s*\d|task\s*\d)", re.IGNORECASE),
    re.compile(r"\d+\)\s+"),
    re.compile(r"[-•]\s+"),
)

_SENTENCE_SPLIT_RE: Final[re.Pattern[str]] = re.compile(r"[.!?]+")


def has_compound_structure(text: str) -> bool:
    """Two or more compound markers, or four or more substantial sentences."""

    markers = sum(1 for pattern in COMPOUND_PATTERNS if pattern.search(text))
    sentences = [part for part in _SENTENCE_SPLIT_RE.split(text) if len(part.strip()) > 10]
    return markers >= 2 or len(sentences) >= 4


def should_decompose(description: str, complexity: float) -> bool:
    if complexity <= DECOMPOSE_COMPLEXITY_THRESHOLD:
        return False
    if len(description) <= DECOMPOSE_MIN_DESCRIPTION_CHARS:
        return False
    return has_compound_structure(description)


def single_subtask_plan(task: Task) -> DecompositionPlan:
    return DecompositionPlan(
        strategy=DecompositionStrategy.SEQUENTIAL,
        subtasks=(
            SubTaskDefinition(
                id=domain_ids.generate_subtask_id(),
                description=task.description,
                budget_share=1.0,
            ),
        ),
    )


def order_subtasks(subtasks: Sequence[SubTaskDefinition]) -> list[SubTaskDefinition]:
    """Dependency-first order; unknown dependency ids are ignored and cycles are cut."""

    by_id = {subtask.id: subtask for subtask in subtasks}
    visited: set[str] = set()
    ordered: list[SubTaskDefinition] = []
    for root in subtasks:
        if root.id in visited:
            continue
        visited.add(root.id)
        stack: list[tuple[SubTaskDefinition, int]] = [(root, 0)]
        while stack:
            current, position = stack.pop()
            if position < len(current.depends_on):
                stack.append((current, position + 1))
                dependency = by_id.get(current.depends_on[position])
                if dependency is not None and dependency.id not in visited:
                    visited.add(dependency.id)
                    stack.append((dependency, 0))
            else:
                ordered.append(current)
    return ordered


def enrich_with_dependency_results(description: str, results: Sequence[str | None]) -> str:
    if not results:
        return description
    context = "\n".join(
        f"Previous result {position}: {(result or 'completed')[:DEPENDENCY_CONTEXT_CHARS]}"
        for position, result in enumerate(results, start=1)
    )
    return f"{description}\n\n[Context from prior sub-tasks]\n{context}"


class TaskDecomposer:
    def __init__(
        self,
        dispatcher: ModelDispatcher,
        trace_logger: TraceLogger,
        *,
        logger: Any | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._trace = trace_logger
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def should_decompose(self, task: Task, complexity: float) -> bool:
        return should_decompose(task.description, complexity)

    async def decompose(
        self, task: Task, session: BudgetSession, trace_id: str
    ) -> DecompositionPlan:
        """Ask the model for sub-tasks; any failure yields a single sub-task plan."""

        try:
            reply = await self._dispatcher.dispatch(
                RoutingPurpose.PLAN,
                session,
                system=DECOMPOSE_SYSTEM_PROMPT,
                user_message=f"Decompose this task:\n\n{task.description}",
                complexity=DECOMPOSE_COMPLEXITY_THRESHOLD,
                trace_id=trace_id,
                response_format="json",
                temperature=0.2,
            )
            plan = parse_decomposition(extract_json(reply.content))
        except (ProviderError, ValueError, TypeError) as exc:
            self._logger.info("decomposition_fallback", task_id=task.id, error=str(exc))
            return single_subtask_plan(task)
        if plan is None:
            return single_subtask_plan(task)

        self._trace.log_event(
            trace_id,
            TraceEventType.DECOMPOSITION,
            {"subtask_count": len(plan.subtasks), "strategy": plan.strategy.value},
        )
        return plan


def parse_decomposition(parsed: Mapping[str, Any]) -> DecompositionPlan | None:
    raw = parsed.get("subtasks", parsed.get("subTasks", parsed.get("sub_tasks")))
    if not isinstance(raw, list):
        return None
    entries = [
        item
        for item in raw
        if isinstance(item, Mapping) and str(item.get("description") or "").strip()
    ]
    if not entries:
        return None

    shares = [_share(item) for item in entries]
    total = sum(shares)
    ids = [domain_ids.generate_subtask_id() for _ in entries]
    subtasks = []
    for position, item in enumerate(entries):
        raw_deps = item.get("depends_on", item.get("dependsOn")) or []
        depends_on = []
        for dependency in raw_deps if isinstance(raw_deps, list) else []:
            resolved = _resolve_dependency(dependency, ids)
            if resolved is not None and resolved != ids[position]:
                depends_on.append(resolved)
        subtasks.append(
            SubTaskDefinition(
                id=ids[position],
                description=str(item["description"]).strip(),
                depends_on=tuple(depends_on),
                budget_share=shares[position] / total if total > 0 else 1.0 / len(entries),
            )
        )

    try:
        strategy = DecompositionStrategy(str(parsed.get("strategy", "sequential")))
    except ValueError:
        strategy = DecompositionStrategy.SEQUENTIAL
    return DecompositionPlan(strategy=strategy, subtasks=tuple(subtasks))


def _share(item: Mapping[str, Any]) -> float:
    value = item.get("budget_share", item.get("budgetShare", 0))
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return 0.0
    return float(value)


def _resolve_dependency(value: object, ids: Sequence[str]) -> str | None:
    if isinstance(value, str) and value in ids:
        return value
    try:
        index = int(str(value))
    except ValueError:
        return None
    if 0 <= index < len(ids):
        return ids[index]
    return None


__all__ = [
    "COMPOUND_PATTERNS",
    "DECOMPOSE_COMPLEXITY_THRESHOLD",
    "TaskDecomposer",
    "enrich_with_dependency_results",
    "has_compound_structure",
    "order_subtasks",
    "parse_decomposition",
    "should_decompose",
    "single_subtask_plan",
]
