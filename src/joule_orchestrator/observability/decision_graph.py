"""Explainability graph derived from an execution trace's decision events."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from joule_orchestrator.observability.trace import TraceEventType

if TYPE_CHECKING:
    from joule_orchestrator.observability.trace import ExecutionTrace, TraceEvent


class EdgeType(StrEnum):
    CAUSED = "caused"
    LED_TO = "led_to"
    TRIGGERED = "triggered"
    BLOCKED = "blocked"


DECISION_EVENT_TYPES: Final[frozenset[TraceEventType]] = frozenset(
    {
        TraceEventType.STATE_TRANSITION,
        TraceEventType.ROUTING_DECISION,
        TraceEventType.PLAN_CRITIQUE,
        TraceEventType.ESCALATION,
        TraceEventType.REPLAN,
        TraceEventType.SIMULATION_RESULT,
        TraceEventType.GOAL_CHECKPOINT,
        TraceEventType.STRATEGY_SELECTED,
    }
)
BLOCKING_EVENT_TYPES: Final[frozenset[TraceEventType]] = frozenset(
    {
        TraceEventType.CONSTITUTION_VIOLATION,
        TraceEventType.CONSTITUTION_OUTPUT_VIOLATION,
    }
)
_PATH_EDGE_TYPES: Final[frozenset[EdgeType]] = frozenset(
    {EdgeType.CAUSED, EdgeType.LED_TO, EdgeType.TRIGGERED}
)


@dataclass(slots=True)
class DecisionNode:
    id: str
    phase: str
    decision: str
    rationale: str
    confidence: float
    sequence: int
    alternatives: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "phase": self.phase,
            "decision": self.decision,
            "rationale": self.rationale,
            "confidence": self.confidence,
            "alternatives": list(self.alternatives),
            "children": list(self.children),
        }


@dataclass(frozen=True, slots=True)
class DecisionEdge:
    source: str
    target: str
    type: EdgeType
    label: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": self.source,
            "to": self.target,
            "type": self.type.value,
        }
        if self.label is not None:
            payload["label"] = self.label
        return payload


@dataclass(frozen=True, slots=True)
class DecisionGraph:
    task_id: str
    nodes: tuple[DecisionNode, ...]
    edges: tuple[DecisionEdge, ...]
    critical_path: tuple[str, ...]

    def node(self, node_id: str) -> DecisionNode | None:
        for candidate in self.nodes:
            if candidate.id == node_id:
                return candidate
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "critical_path": list(self.critical_path),
        }


class DecisionGraphBuilder:
    """Turn decision-relevant trace events into nodes, causal edges and a critical path."""

    def build_from_trace(self, trace: ExecutionTrace) -> DecisionGraph:
        nodes: list[DecisionNode] = []
        edges: list[DecisionEdge] = []
        escalation_ids: list[str] = []
        blocking_ids: list[str] = []

        for event in trace.events():
            node = _event_to_node(event)
            if node is None:
                continue
            nodes.append(node)
            if event.type is TraceEventType.ESCALATION:
                escalation_ids.append(node.id)
            elif event.type in BLOCKING_EVENT_TYPES:
                blocking_ids.append(node.id)

        for escalation_id in escalation_ids:
            _link_following(escalation_id, nodes, edges, EdgeType.TRIGGERED, "recovery", "recover")
        for blocking_id in blocking_ids:
            _link_following(blocking_id, nodes, edges, EdgeType.BLOCKED, "constitution", None)

        linked = {(edge.source, edge.target) for edge in edges}
        for current, following in zip(nodes, nodes[1:]):
            if (current.id, following.id) not in linked:
                edges.append(DecisionEdge(current.id, following.id, EdgeType.LED_TO))
            if following.id not in current.children:
                current.children.append(following.id)

        return DecisionGraph(
            task_id=trace.task_id,
            nodes=tuple(nodes),
            edges=tuple(edges),
            critical_path=tuple(find_critical_path(nodes, edges)),
        )


def find_critical_path(nodes: list[DecisionNode], edges: list[DecisionEdge]) -> list[str]:
    """Longest chain over caused/led_to/triggered edges."""

    if not nodes:
        return []
    order = {node.id: node.sequence for node in nodes}
    adjacency: dict[str, list[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        # Edges only point forward in emission order, so the walk is acyclic.
        if (
            edge.type in _PATH_EDGE_TYPES
            and edge.source in adjacency
            and order.get(edge.target, -1) > order[edge.source]
        ):
            adjacency[edge.source].append(edge.target)

    # Memoized longest-path table, filled from the latest node backwards.
    longest_from: dict[str, tuple[str, ...]] = {}
    for node in sorted(nodes, key=lambda item: item.sequence, reverse=True):
        best: tuple[str, ...] = ()
        for successor in adjacency[node.id]:
            candidate = longest_from.get(successor, ())
            if len(candidate) > len(best):
                best = candidate
        longest_from[node.id] = (node.id, *best)

    longest: tuple[str, ...] = ()
    for node in sorted(nodes, key=lambda item: item.sequence):
        path = longest_from[node.id]
        if len(path) > len(longest):
            longest = path
    return list(longest)


def _link_following(
    source_id: str,
    nodes: list[DecisionNode],
    edges: list[DecisionEdge],
    edge_type: EdgeType,
    label: str,
    phase: str | None,
) -> None:
    index = next((i for i, node in enumerate(nodes) if node.id == source_id), -1)
    if index < 0:
        return
    for candidate in nodes[index + 1 :]:
        if phase is None or candidate.phase == phase:
            edges.append(DecisionEdge(source_id, candidate.id, edge_type, label))
            return


def _event_to_node(event: TraceEvent) -> DecisionNode | None:
    data = event.data
    if event.type not in DECISION_EVENT_TYPES and event.type not in BLOCKING_EVENT_TYPES:
        return None

    def make(
        phase: str,
        decision: str,
        rationale: str,
        confidence: float,
        alternatives: list[str] | None = None,
    ) -> DecisionNode:
        return DecisionNode(
            id=event.id,
            phase=phase,
            decision=decision,
            rationale=rationale,
            confidence=max(0.0, min(1.0, confidence)),
            sequence=event.sequence,
            alternatives=list(alternatives or []),
        )

    if event.type is TraceEventType.STATE_TRANSITION:
        target = str(data.get("to", "idle"))
        return make(
            target,
            f"Transitioned to {target}",
            f"From {data.get('from')} to {target}",
            1.0,
        )
    if event.type is TraceEventType.ROUTING_DECISION:
        tier = str(data.get("tier", "slm"))
        return make(
            "act",
            f"Routed to {data.get('provider')}/{data.get('model')} ({tier})",
            str(data.get("reason") or "Model routing decision"),
            1.0 - _as_float(data.get("estimated_cost_usd"), 0.0),
            ["slm"] if tier == "llm" else ["llm"],
        )
    if event.type is TraceEventType.PLAN_CRITIQUE:
        issue_count = int(_as_float(data.get("issue_count"), 0))
        return make(
            "critique",
            f"Plan scored {data.get('overall')}/1.0",
            f"{issue_count} issues identified" if issue_count else "Plan approved with no issues",
            _as_float(data.get("overall"), 0.7),
            ["Refine plan"] if issue_count else [],
        )
    if event.type is TraceEventType.ESCALATION:
        return make(
            "recover",
            f"Escalated: {data.get('reason')}",
            f"Granted={data.get('granted')}, replan depth {data.get('replan_depth')}",
            0.5,
            ["Skip step", "Abort task"],
        )
    if event.type is TraceEventType.REPLAN:
        return make(
            "recover",
            "Replanned execution",
            str(data.get("reason") or "Recovery replan"),
            0.6,
        )
    if event.type is TraceEventType.SIMULATION_RESULT:
        valid = bool(data.get("valid"))
        return make(
            "simulate",
            "Simulation passed" if valid else "Simulation found issues",
            f"{data.get('issue_count')} issues, estimated cost ${data.get('estimated_cost_usd')}",
            0.9 if valid else 0.4,
            [] if valid else ["Replan", "Proceed with caution"],
        )
    if event.type is TraceEventType.GOAL_CHECKPOINT:
        on_track = bool(data.get("on_track"))
        drift = data.get("drift")
        drift_items = [str(item) for item in drift] if isinstance(drift, list) else []
        return make(
            "checkpoint",
            "On track" if on_track else "Goal drift detected",
            f"Drift: {'; '.join(drift_items)}" if drift_items else "Execution aligned with goal",
            0.9 if on_track else 0.3,
            [] if on_track else ["Replan", "Continue anyway"],
        )
    if event.type is TraceEventType.STRATEGY_SELECTED:
        return make(
            "act",
            f"Strategy: {data.get('strategy')}",
            str(data.get("reason") or "Strategy change"),
            0.6,
        )
    # Remaining types are constitution blocks.
    return make(
        "act",
        f"Blocked by {data.get('rule_id')}",
        str(data.get("message") or "Constitution rule"),
        1.0,
    )


def _as_float(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


__all__ = [
    "DECISION_EVENT_TYPES",
    "DecisionEdge",
    "DecisionGraph",
    "DecisionGraphBuilder",
    "DecisionNode",
    "EdgeType",
    "find_critical_path",
]
