"""Unit tests for the explainability graph built from trace events."""

from __future__ import annotations

import pytest

from joule_orchestrator.observability.decision_graph import (
    DecisionEdge,
    DecisionGraphBuilder,
    DecisionNode,
    EdgeType,
    find_critical_path,
)
from joule_orchestrator.observability.trace import TraceEventType, TraceLogger

pytestmark = pytest.mark.unit


def _node(node_id: str, sequence: int) -> DecisionNode:
    return DecisionNode(
        id=node_id, phase="act", decision=node_id, rationale="", confidence=1.0, sequence=sequence
    )


def _recovery_trace(trace_logger: TraceLogger):
    trace_id = trace_logger.create_trace("task-7")
    log = trace_logger.log_event
    log(trace_id, TraceEventType.STATE_TRANSITION, {"from": "idle", "to": "plan"})
    log(trace_id, TraceEventType.INFO, {"note": "ignored"})
    log(
        trace_id,
        TraceEventType.ROUTING_DECISION,
        {
            "tier": "llm",
            "provider": "anthropic",
            "model": "claude-sonnet-4-20250514",
            "reason": "high complexity",
            "estimated_cost_usd": 0.25,
        },
    )
    log(
        trace_id,
        TraceEventType.ESCALATION,
        {"reason": "step failed", "granted": True, "replan_depth": 1},
    )
    log(trace_id, TraceEventType.STATE_TRANSITION, {"from": "act", "to": "recover"})
    log(trace_id, TraceEventType.REPLAN, {"reason": "tool failure"})
    log(
        trace_id,
        TraceEventType.CONSTITUTION_VIOLATION,
        {"rule_id": "SAFETY-001", "message": "Blocked pattern"},
    )
    log(trace_id, TraceEventType.STATE_TRANSITION, {"from": "recover", "to": "act"})
    return trace_logger.get_trace(trace_id)


def test_builder_turns_decision_events_into_nodes(trace_logger: TraceLogger) -> None:
    graph = DecisionGraphBuilder().build_from_trace(_recovery_trace(trace_logger))

    assert graph.task_id == "task-7"
    assert [node.phase for node in graph.nodes] == [
        "plan",
        "act",
        "recover",
        "recover",
        "recover",
        "act",
        "act",
    ]
    routing = graph.nodes[1]
    assert routing.decision == "Routed to anthropic/claude-sonnet-4-20250514 (llm)"
    assert routing.rationale == "high complexity"
    assert routing.confidence == pytest.approx(0.75)
    assert routing.alternatives == ["slm"]
    assert graph.nodes[2].rationale == "Granted=True, replan depth 1"
    assert graph.nodes[5].decision == "Blocked by SAFETY-001"


def test_builder_links_recovery_and_blocks(trace_logger: TraceLogger) -> None:
    graph = DecisionGraphBuilder().build_from_trace(_recovery_trace(trace_logger))
    ids = [node.id for node in graph.nodes]
    edges = {(edge.source, edge.target): edge for edge in graph.edges}

    assert edges[(ids[2], ids[3])].type is EdgeType.TRIGGERED
    assert edges[(ids[2], ids[3])].label == "recovery"
    assert edges[(ids[5], ids[6])].type is EdgeType.BLOCKED
    assert edges[(ids[0], ids[1])].type is EdgeType.LED_TO
    assert len(graph.edges) == len(ids) - 1
    assert graph.nodes[0].children == [ids[1]]
    assert graph.critical_path == tuple(ids[:6])


def test_graph_serialization_and_lookup(trace_logger: TraceLogger) -> None:
    graph = DecisionGraphBuilder().build_from_trace(_recovery_trace(trace_logger))
    payload = graph.to_dict()

    assert payload["task_id"] == "task-7"
    assert payload["edges"][0].keys() >= {"from", "to", "type"}
    assert "sequence" not in payload["nodes"][0]
    assert graph.node(graph.nodes[3].id) is graph.nodes[3]
    assert graph.node("missing") is None


def test_checkpoint_critique_and_simulation_nodes(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-8")
    trace_logger.log_event(
        trace_id, TraceEventType.PLAN_CRITIQUE, {"overall": 0.8, "issue_count": 2}
    )
    trace_logger.log_event(
        trace_id,
        TraceEventType.SIMULATION_RESULT,
        {"valid": False, "issue_count": 1, "estimated_cost_usd": 0.002},
    )
    trace_logger.log_event(
        trace_id, TraceEventType.GOAL_CHECKPOINT, {"on_track": False, "drift": ["a", "b"]}
    )

    critique, simulation, checkpoint = (
        DecisionGraphBuilder().build_from_trace(trace_logger.get_trace(trace_id)).nodes
    )

    assert critique.decision == "Plan scored 0.8/1.0"
    assert critique.rationale == "2 issues identified"
    assert critique.alternatives == ["Refine plan"]
    assert simulation.confidence == 0.4
    assert simulation.rationale == "1 issues, estimated cost $0.002"
    assert checkpoint.decision == "Goal drift detected"
    assert checkpoint.rationale == "Drift: a; b"
    assert checkpoint.alternatives == ["Replan", "Continue anyway"]


def test_empty_trace_builds_empty_graph(trace_logger: TraceLogger) -> None:
    trace_id = trace_logger.create_trace("task-9")

    graph = DecisionGraphBuilder().build_from_trace(trace_logger.get_trace(trace_id))

    assert graph.nodes == ()
    assert graph.edges == ()
    assert graph.critical_path == ()


def test_critical_path_prefers_longest_forward_chain() -> None:
    nodes = [_node(name, index) for index, name in enumerate("abcde")]
    edges = [
        DecisionEdge("a", "e", EdgeType.CAUSED),
        DecisionEdge("a", "b", EdgeType.LED_TO),
        DecisionEdge("b", "c", EdgeType.TRIGGERED),
        DecisionEdge("c", "d", EdgeType.BLOCKED),
        DecisionEdge("c", "e", EdgeType.LED_TO),
        DecisionEdge("e", "a", EdgeType.LED_TO),
    ]

    assert find_critical_path(nodes, edges) == ["a", "b", "c", "e"]
    assert find_critical_path([], []) == []
