"""Unit tests for span and event tracing."""

from __future__ import annotations

import json

import pytest

from joule_orchestrator.observability.trace import TraceEventType, TraceLogger
from joule_orchestrator.synthesis_plane.providers.base import ModelResponse, TokenUsage
from joule_orchestrator.synthesis_plane.tools import ToolResult

pytestmark = pytest.mark.unit


def test_events_nest_under_the_innermost_open_span(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    trace_logger.log_event(trace_id, TraceEventType.INFO, {"stage": "start"})
    outer = trace_logger.start_span(trace_id, "plan", {"attempt": 1})
    inner = trace_logger.start_span(trace_id, "critique")
    trace_logger.log_event(trace_id, "plan_critique", {"overall": 0.9})
    trace_logger.end_span(trace_id, inner)
    trace_logger.log_event(trace_id, TraceEventType.PLAN_GENERATED)
    trace_logger.end_span(trace_id, outer)

    trace = trace_logger.get_trace(trace_id)

    assert [event.data for event in trace.root_events] == [{"stage": "start"}]
    (span,) = trace.spans
    assert span.name == "plan"
    assert span.attributes == {"attempt": 1}
    assert span.end_time is not None
    assert [event.type for event in span.events] == [TraceEventType.PLAN_GENERATED]
    assert span.children[0].id == inner
    assert span.children[0].events[0].span_id == inner


def test_flattened_events_follow_emission_order(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    span = trace_logger.start_span(trace_id, "execute")
    trace_logger.log_event(trace_id, TraceEventType.TOOL_CALL)
    trace_logger.end_span(trace_id, span)
    trace_logger.log_event(trace_id, TraceEventType.INFO)
    trace_logger.log_event(trace_id, TraceEventType.ERROR, span_id=span)

    events = trace_logger.get_trace(trace_id).events()

    assert [event.sequence for event in events] == [1, 2, 3]
    assert [event.type for event in events] == [
        TraceEventType.TOOL_CALL,
        TraceEventType.INFO,
        TraceEventType.ERROR,
    ]


def test_events_of_filters_by_type(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    trace_logger.log_routing_decision(trace_id, {"tier": "slm", "reason": "simple"})
    trace_logger.log_event(trace_id, TraceEventType.INFO)

    trace = trace_logger.get_trace(trace_id)

    assert [event.data["tier"] for event in trace.events_of("routing_decision")] == ["slm"]
    with pytest.raises(ValueError):
        trace.events_of("not_a_type")


def test_model_and_tool_call_helpers_record_accounting(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    response = ModelResponse(
        model="llama3.2:3b",
        provider="ollama",
        tier="slm",  # type: ignore[arg-type]
        content="ok",
        token_usage=TokenUsage(prompt_tokens=20, completion_tokens=10),
        latency_ms=50.0,
        energy_wh=0.1,
    )
    trace_logger.log_model_call(trace_id, response, purpose="plan")
    trace_logger.log_tool_call(
        trace_id, {"query": "paris"}, ToolResult(tool_name="search", success=False, error="down")
    )

    model_event, tool_event = trace_logger.get_trace(trace_id).events()

    assert model_event.data["purpose"] == "plan"
    assert model_event.data["tier"] == "slm"
    assert model_event.data["total_tokens"] == 30
    assert tool_event.data == {
        "tool_name": "search",
        "input": {"query": "paris"},
        "success": False,
        "duration_ms": 0.0,
        "error": "down",
    }


def test_budget_checkpoint_and_serialization(trace_logger, budget_manager) -> None:
    envelope = budget_manager.resolve_envelope("low")
    session = budget_manager.create_envelope("low")
    trace_id = trace_logger.create_trace("task-1", envelope, trace_id="trace-fixed")
    trace_logger.log_budget_checkpoint(trace_id, "after-plan", budget_manager.get_usage(session))

    trace = trace_logger.get_trace(trace_id, budget_manager.get_usage(session))
    payload = trace.to_dict()

    assert trace_id == "trace-fixed"
    assert trace.events()[0].data["label"] == "after-plan"
    assert payload["budget"]["allocated"]["max_tokens"] == 4_000
    assert payload["budget"]["used"]["tokens_used"] == 0
    assert payload["root_events"][0]["type"] == "budget_checkpoint"
    assert trace.total_duration_ms is not None and trace.total_duration_ms >= 0
    json.dumps(payload)


def test_snapshots_are_isolated_from_later_events(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    span = trace_logger.start_span(trace_id, "execute")
    snapshot = trace_logger.get_trace(trace_id)

    trace_logger.log_event(trace_id, TraceEventType.INFO, span_id=span)

    assert snapshot.spans[0].events == []
    assert len(trace_logger.get_trace(trace_id).spans[0].events) == 1


def test_unknown_and_discarded_traces(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-1")
    assert trace_logger.has_trace(trace_id)

    trace_logger.discard(trace_id)
    trace_logger.discard(trace_id)

    assert not trace_logger.has_trace(trace_id)
    with pytest.raises(KeyError, match="trace not found"):
        trace_logger.log_event(trace_id, TraceEventType.INFO)
