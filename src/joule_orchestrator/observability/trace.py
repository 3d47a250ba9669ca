"""
Per-task execution traces.

A trace is a tree of spans, each holding events in emission order. Events logged
while no span is open land on the trace root. Every event carries a per-trace
sequence number so the flattened event stream is strictly ordered even when two
events share a monotonic timestamp.
"""

from __future__ import annotations

import copy
import threading
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from joule_orchestrator.domain import ids as domain_ids

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetEnvelope, BudgetUsage
    from joule_orchestrator.synthesis_plane.providers.base import ModelResponse
    from joule_orchestrator.synthesis_plane.tools import ToolResult


class TraceEventType(StrEnum):
    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    ROUTING_DECISION = "routing_decision"
    BUDGET_CHECKPOINT = "budget_checkpoint"
    ESCALATION = "escalation"
    PLAN_GENERATED = "plan_generated"
    REPLAN = "replan"
    ERROR = "error"
    INFO = "info"
    ENERGY_REPORT = "energy_report"
    CONSTITUTION_VIOLATION = "constitution_violation"
    CONSTITUTION_OUTPUT_VIOLATION = "constitution_output_violation"
    COMPLEXITY_BOOSTED = "complexity_boosted"
    EMPTY_PLAN_ESCALATION = "empty_plan_escalation"
    PARSE_FAILURE_ESCALATION = "parse_failure_escalation"
    SPEC_GENERATED = "spec_generated"
    STEP_VERIFICATION = "step_verification"
    VERIFICATION_FAILED = "verification_failed"
    STATE_TRANSITION = "state_transition"
    PLAN_CRITIQUE = "plan_critique"
    CONFIDENCE_UPDATE = "confidence_update"
    GOAL_CHECKPOINT = "goal_checkpoint"
    FAILURE_PATTERN_MATCH = "failure_pattern_match"
    SIMULATION_RESULT = "simulation_result"
    SIMULATION_ISSUE = "simulation_issue"
    DECISION_POINT = "decision_point"
    DECOMPOSITION = "decomposition"
    STRATEGY_SELECTED = "strategy_selected"


@dataclass(frozen=True, slots=True)
class TraceEvent:
    id: str
    trace_id: str
    span_id: str | None
    type: TraceEventType
    sequence: int
    timestamp: float
    wall_clock: str
    data: Mapping[str, object]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "type": self.type.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "wall_clock": self.wall_clock,
            "data": _jsonable(self.data),
        }


@dataclass(slots=True)
class TraceSpan:
    id: str
    trace_id: str
    name: str
    start_time: float
    end_time: float | None = None
    attributes: dict[str, object] = field(default_factory=dict)
    events: list[TraceEvent] = field(default_factory=list)
    children: list[TraceSpan] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "attributes": _jsonable(self.attributes),
            "events": [event.to_dict() for event in self.events],
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(frozen=True, slots=True)
class ExecutionTrace:
    """Immutable snapshot of one task's trace."""

    trace_id: str
    task_id: str
    started_at: str
    completed_at: str | None
    total_duration_ms: float | None
    budget_allocated: BudgetEnvelope | None
    budget_used: BudgetUsage | None
    spans: tuple[TraceSpan, ...]
    root_events: tuple[TraceEvent, ...] = ()

    def events(self) -> list[TraceEvent]:
        """All events in emission order."""

        collected = list(self.root_events)
        for span in self.spans:
            collected.extend(_walk_events(span))
        return sorted(collected, key=lambda event: event.sequence)

    def events_of(self, *types: TraceEventType | str) -> list[TraceEvent]:
        wanted = {TraceEventType(item) for item in types}
        return [event for event in self.events() if event.type in wanted]

    def to_dict(self) -> dict[str, object]:
        return {
            "trace_id": self.trace_id,
            "task_id": self.task_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_duration_ms": self.total_duration_ms,
            "budget": {
                "allocated": (
                    self.budget_allocated.to_dict() if self.budget_allocated is not None else None
                ),
                "used": self.budget_used.to_dict() if self.budget_used is not None else None,
            },
            "spans": [span.to_dict() for span in self.spans],
            "root_events": [event.to_dict() for event in self.root_events],
        }


@dataclass(slots=True)
class _TraceState:
    trace_id: str
    task_id: str
    started_at: str
    start_time: float
    budget: BudgetEnvelope | None
    spans: list[TraceSpan] = field(default_factory=list)
    span_stack: list[str] = field(default_factory=list)
    span_index: dict[str, TraceSpan] = field(default_factory=dict)
    root_events: list[TraceEvent] = field(default_factory=list)
    sequence: int = 0


class TraceLogger:
    """Collect spans and events for any number of concurrent task traces."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._traces: dict[str, _TraceState] = {}
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def create_trace(
        self,
        task_id: str,
        budget: BudgetEnvelope | None = None,
        *,
        trace_id: str | None = None,
    ) -> str:
        resolved = trace_id if trace_id is not None else domain_ids.generate_trace_id()
        with self._lock:
            self._traces[resolved] = _TraceState(
                trace_id=resolved,
                task_id=task_id,
                started_at=_iso_now(),
                start_time=_monotonic_ms(),
                budget=budget,
            )
        self._logger.debug("trace_created", trace_id=resolved, task_id=task_id)
        return resolved

    def has_trace(self, trace_id: str) -> bool:
        with self._lock:
            return trace_id in self._traces

    def start_span(
        self,
        trace_id: str,
        name: str,
        attributes: Mapping[str, object] | None = None,
    ) -> str:
        with self._lock:
            state = self._state(trace_id)
            span = TraceSpan(
                id=domain_ids.generate_span_id(),
                trace_id=trace_id,
                name=name,
                start_time=_monotonic_ms(),
                attributes=dict(attributes or {}),
            )
            parent_id = state.span_stack[-1] if state.span_stack else None
            if parent_id is None:
                state.spans.append(span)
            else:
                state.span_index[parent_id].children.append(span)
            state.span_index[span.id] = span
            state.span_stack.append(span.id)
            return span.id

    def end_span(self, trace_id: str, span_id: str) -> None:
        with self._lock:
            state = self._state(trace_id)
            span = state.span_index.get(span_id)
            if span is not None and span.end_time is None:
                span.end_time = _monotonic_ms()
            if span_id in state.span_stack:
                state.span_stack.remove(span_id)

    def log_event(
        self,
        trace_id: str,
        event_type: TraceEventType | str,
        data: Mapping[str, object] | None = None,
        *,
        span_id: str | None = None,
    ) -> TraceEvent:
        resolved_type = TraceEventType(event_type)
        with self._lock:
            state = self._state(trace_id)
            target_span_id = span_id if span_id is not None else (
                state.span_stack[-1] if state.span_stack else None
            )
            state.sequence += 1
            event = TraceEvent(
                id=domain_ids.generate_event_id(),
                trace_id=trace_id,
                span_id=target_span_id,
                type=resolved_type,
                sequence=state.sequence,
                timestamp=_monotonic_ms(),
                wall_clock=_iso_now(),
                data=dict(data or {}),
            )
            span = state.span_index.get(target_span_id) if target_span_id is not None else None
            if span is None:
                state.root_events.append(event)
            else:
                span.events.append(event)
        return event

    def log_model_call(self, trace_id: str, response: ModelResponse, *, purpose: str) -> None:
        self.log_event(
            trace_id,
            TraceEventType.MODEL_CALL,
            {
                "purpose": purpose,
                "model": response.model,
                "provider": response.provider,
                "tier": response.tier.value,
                "prompt_tokens": response.token_usage.prompt_tokens,
                "completion_tokens": response.token_usage.completion_tokens,
                "total_tokens": response.token_usage.total_tokens,
                "latency_ms": response.latency_ms,
                "cost_usd": response.cost_usd,
                "energy_wh": response.energy_wh,
                "carbon_grams": response.carbon_grams,
                "finish_reason": response.finish_reason,
            },
        )

    def log_tool_call(
        self,
        trace_id: str,
        tool_args: Mapping[str, object],
        result: ToolResult,
    ) -> None:
        self.log_event(
            trace_id,
            TraceEventType.TOOL_CALL,
            {
                "tool_name": result.tool_name,
                "input": dict(tool_args),
                "success": result.success,
                "duration_ms": result.duration_ms,
                "error": result.error,
            },
        )

    def log_routing_decision(self, trace_id: str, decision: Mapping[str, object]) -> None:
        self.log_event(trace_id, TraceEventType.ROUTING_DECISION, decision)

    def log_budget_checkpoint(self, trace_id: str, label: str, usage: BudgetUsage) -> None:
        self.log_event(
            trace_id,
            TraceEventType.BUDGET_CHECKPOINT,
            {"label": label, **usage.to_dict()},
        )

    def get_trace(self, trace_id: str, budget_used: BudgetUsage | None = None) -> ExecutionTrace:
        with self._lock:
            state = self._state(trace_id)
            return ExecutionTrace(
                trace_id=state.trace_id,
                task_id=state.task_id,
                started_at=state.started_at,
                completed_at=_iso_now(),
                total_duration_ms=_monotonic_ms() - state.start_time,
                budget_allocated=state.budget,
                budget_used=budget_used,
                spans=tuple(copy.deepcopy(state.spans)),
                root_events=tuple(state.root_events),
            )

    def discard(self, trace_id: str) -> None:
        with self._lock:
            self._traces.pop(trace_id, None)

    def _state(self, trace_id: str) -> _TraceState:
        state = self._traces.get(trace_id)
        if state is None:
            raise KeyError(f"trace not found: {trace_id}")
        return state


def _walk_events(span: TraceSpan) -> Iterator[TraceEvent]:
    yield from span.events
    for child in span.children:
        yield from _walk_events(child)


def _jsonable(value: object) -> object:
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, StrEnum):
        return value.value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return value


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "ExecutionTrace",
    "TraceEvent",
    "TraceEventType",
    "TraceLogger",
    "TraceSpan",
]
