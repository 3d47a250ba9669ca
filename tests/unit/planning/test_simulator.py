"""Unit tests for plan pre-flight simulation."""

from __future__ import annotations

from collections.abc import Mapping

import pytest

from joule_orchestrator.domain.models import (
    ExecutionPlan,
    IssueSeverity,
    PlanStep,
    SimulationIssueType,
)
from joule_orchestrator.planning.simulator import ExecutionSimulator, drop_missing_tools
from joule_orchestrator.synthesis_plane.tools import ToolParameter, ToolRegistry, ToolSpec

pytestmark = pytest.mark.unit


def _noop(args: Mapping[str, object]) -> object:
    return "ok"


def _tool(name: str, *parameters: ToolParameter) -> ToolSpec:
    return ToolSpec(
        name=name, description=name.replace("_", " "), execute=_noop, input_schema=parameters
    )


@pytest.fixture
def simulator() -> ExecutionSimulator:
    registry = ToolRegistry(
        [
            _tool("search", ToolParameter(name="query", type="string")),
            _tool("file_write", ToolParameter(name="path", type="string")),
            _tool("http_fetch"),
            _tool("browser_navigate"),
            _tool("browser_click"),
        ]
    )
    return ExecutionSimulator(registry)


def _plan(*steps: tuple[str, dict[str, object]]) -> ExecutionPlan:
    return ExecutionPlan(
        task_id="task-1",
        complexity=0.5,
        steps=tuple(
            PlanStep(index=index, description=f"step {index}", tool_name=name, tool_args=args)
            for index, (name, args) in enumerate(steps)
        ),
    )


def _kinds(result) -> list[tuple[int, SimulationIssueType, IssueSeverity]]:
    return [(issue.step_index, issue.type, issue.severity) for issue in result.issues]


def test_clean_plan_is_valid_with_estimates(simulator) -> None:
    result = simulator.simulate(_plan(("search", {"query": "a"}), ("search", {"query": "b"})))

    assert result.valid
    assert result.issues == ()
    assert result.estimated_tool_calls == 2
    assert result.estimated_cost_usd == pytest.approx(0.002)


def test_missing_tool_and_invalid_args_are_high_severity(simulator) -> None:
    result = simulator.simulate(_plan(("teleport", {}), ("search", {"query": 3})))

    assert not result.valid
    assert _kinds(result) == [
        (0, SimulationIssueType.MISSING_TOOL, IssueSeverity.HIGH),
        (1, SimulationIssueType.INVALID_ARGS, IssueSeverity.HIGH),
    ]
    assert result.issues[0].message == 'Tool "teleport" is not registered'
    assert "must be of type string" in result.issues[1].message


def test_forward_output_reference_is_high_severity(simulator) -> None:
    result = simulator.simulate(
        _plan(
            ("search", {"query": "$output_1"}),
            ("search", {"query": "use $output_0"}),
        )
    )

    assert _kinds(result) == [(0, SimulationIssueType.MISSING_DEPENDENCY, IssueSeverity.HIGH)]
    assert "references $output_1 which hasn't executed yet" in result.issues[0].message


def test_browser_action_needs_prior_navigation(simulator) -> None:
    without = simulator.simulate(_plan(("browser_click", {})))
    with_nav = simulator.simulate(_plan(("browser_navigate", {}), ("browser_click", {})))

    assert without.valid
    assert (0, SimulationIssueType.MISSING_DEPENDENCY, IssueSeverity.MEDIUM) in _kinds(without)
    assert all(
        issue.type is not SimulationIssueType.MISSING_DEPENDENCY for issue in with_nav.issues
    )


def test_risky_tools_are_flagged_by_tier(simulator) -> None:
    result = simulator.simulate(_plan(("file_write", {"path": "/tmp/x"}), ("http_fetch", {})))

    assert result.valid
    assert _kinds(result) == [
        (0, SimulationIssueType.HIGH_RISK, IssueSeverity.MEDIUM),
        (1, SimulationIssueType.HIGH_RISK, IssueSeverity.LOW),
    ]
    assert result.issues[0].message == "File write may overwrite existing data"


def test_plan_larger_than_tool_budget_is_a_budget_risk(simulator, budget_manager) -> None:
    session = budget_manager.create_envelope("low")
    budget_manager.deduct_tool_call(session)
    usage = budget_manager.get_usage(session)

    result = simulator.simulate(
        _plan(*[("search", {"query": str(index)}) for index in range(4)]), usage
    )

    assert result.valid
    assert _kinds(result) == [(2, SimulationIssueType.BUDGET_RISK, IssueSeverity.MEDIUM)]
    assert result.issues[0].message == "Plan needs 4 tool calls but only 2 remain in the budget"


def test_drop_missing_tools_reindexes_remaining_steps(simulator) -> None:
    plan = _plan(("search", {"query": "a"}), ("teleport", {}), ("http_fetch", {}))
    result = simulator.simulate(plan)

    trimmed = drop_missing_tools(plan, result)

    assert [(step.index, step.tool_name) for step in trimmed.steps] == [
        (0, "search"),
        (1, "http_fetch"),
    ]
    clean = _plan(("search", {"query": "a"}))
    assert drop_missing_tools(clean, simulator.simulate(clean)) is clean
