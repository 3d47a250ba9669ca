"""Side-effect-free pre-flight checks for execution plans."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Final

from joule_orchestrator.constants import HIGH_RISK_TOOLS, MEDIUM_RISK_TOOLS
from joule_orchestrator.domain.models import (
    ExecutionPlan,
    IssueSeverity,
    PlanStep,
    SimulationIssue,
    SimulationIssueType,
    SimulationResult,
)

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetUsage
    from joule_orchestrator.synthesis_plane.tools import ToolRegistry

ESTIMATED_COST_PER_STEP_USD: Final[float] = 0.001

RISK_NOTES: Final[Mapping[str, str]] = {
    "file_write": "File write may overwrite existing data",
    "os_keyboard": "OS keyboard input may trigger unintended actions",
    "os_mouse": "OS mouse input may click unintended targets",
    "browser_evaluate": "Browser script evaluation may mutate page state",
    "browser_click": "Browser click may trigger navigation or form submission",
    "browser_type": "Browser type may submit forms",
    "os_clipboard": "Clipboard operations may overwrite clipboard contents",
    "http_fetch": "HTTP request may trigger side effects",
}

# Browser tools that need a page opened by an earlier browser_navigate step.
BROWSER_ACTION_TOOLS: Final[frozenset[str]] = frozenset(
    {
        "browser_click",
        "browser_type",
        "browser_extract",
        "browser_observe",
        "browser_wait_and_click",
        "browser_evaluate",
        "browser_screenshot",
    }
)

_OUTPUT_REF_RE: Final[re.Pattern[str]] = re.compile(r"\$output_(\d+)")


class ExecutionSimulator:
    """Flag missing tools, bad arguments, forward references, risk and budget pressure."""

    def __init__(self, tools: ToolRegistry) -> None:
        self._tools = tools

    def simulate(
        self, plan: ExecutionPlan, usage: BudgetUsage | None = None
    ) -> SimulationResult:
        issues: list[SimulationIssue] = []
        for position, step in enumerate(plan.steps):
            tool = self._tools.get(step.tool_name)
            if tool is None:
                issues.append(
                    SimulationIssue(
                        step_index=position,
                        type=SimulationIssueType.MISSING_TOOL,
                        severity=IssueSeverity.HIGH,
                        message=f'Tool "{step.tool_name}" is not registered',
                    )
                )
                continue

            errors = tool.validate_args(step.tool_args)
            if errors:
                issues.append(
                    SimulationIssue(
                        step_index=position,
                        type=SimulationIssueType.INVALID_ARGS,
                        severity=IssueSeverity.HIGH,
                        message=f'Invalid args for "{step.tool_name}": {errors[0]}',
                    )
                )
            issues.extend(_dependency_issues(step, position, plan.steps))
            issues.extend(_risk_issues(step, position))

        if usage is not None and plan.steps:
            issues.extend(_budget_issues(len(plan.steps), usage))

        return SimulationResult(
            valid=not any(issue.severity is IssueSeverity.HIGH for issue in issues),
            issues=tuple(issues),
            estimated_tool_calls=len(plan.steps),
            estimated_cost_usd=len(plan.steps) * ESTIMATED_COST_PER_STEP_USD,
        )


def drop_missing_tools(plan: ExecutionPlan, result: SimulationResult) -> ExecutionPlan:
    """Plan without steps whose tool is not registered, re-indexed from zero."""

    missing = {
        issue.step_index
        for issue in result.issues
        if issue.type is SimulationIssueType.MISSING_TOOL
    }
    if not missing:
        return plan
    kept = [step for position, step in enumerate(plan.steps) if position not in missing]
    return ExecutionPlan(
        task_id=plan.task_id,
        complexity=plan.complexity,
        steps=tuple(step.with_index(index) for index, step in enumerate(kept)),
        raw_response=plan.raw_response,
    )


def _dependency_issues(
    step: PlanStep, position: int, steps: tuple[PlanStep, ...]
) -> list[SimulationIssue]:
    issues: list[SimulationIssue] = []
    if step.tool_name in BROWSER_ACTION_TOOLS and not any(
        earlier.tool_name == "browser_navigate" for earlier in steps[:position]
    ):
        issues.append(
            SimulationIssue(
                step_index=position,
                type=SimulationIssueType.MISSING_DEPENDENCY,
                severity=IssueSeverity.MEDIUM,
                message=f'"{step.tool_name}" at step {position} has no prior browser_navigate',
            )
        )

    rendered = json.dumps(step.tool_args, default=str)
    for match in _OUTPUT_REF_RE.finditer(rendered):
        referenced = int(match.group(1))
        if referenced >= position:
            issues.append(
                SimulationIssue(
                    step_index=position,
                    type=SimulationIssueType.MISSING_DEPENDENCY,
                    severity=IssueSeverity.HIGH,
                    message=(
                        f"Step {position} references $output_{referenced} "
                        "which hasn't executed yet"
                    ),
                )
            )
    return issues


def _risk_issues(step: PlanStep, position: int) -> list[SimulationIssue]:
    if step.tool_name in HIGH_RISK_TOOLS:
        severity = IssueSeverity.MEDIUM
    elif step.tool_name in MEDIUM_RISK_TOOLS:
        severity = IssueSeverity.LOW
    else:
        return []
    return [
        SimulationIssue(
            step_index=position,
            type=SimulationIssueType.HIGH_RISK,
            severity=severity,
            message=RISK_NOTES.get(step.tool_name, f"{step.tool_name} has side effects"),
        )
    ]


def _budget_issues(step_count: int, usage: BudgetUsage) -> list[SimulationIssue]:
    if step_count <= usage.tool_calls_remaining:
        return []
    return [
        SimulationIssue(
            step_index=max(0, min(usage.tool_calls_remaining, step_count - 1)),
            type=SimulationIssueType.BUDGET_RISK,
            severity=IssueSeverity.MEDIUM,
            message=(
                f"Plan needs {step_count} tool calls but only "
                f"{usage.tool_calls_remaining} remain in the budget"
            ),
        )
    ]


__all__ = [
    "BROWSER_ACTION_TOOLS",
    "ESTIMATED_COST_PER_STEP_USD",
    "ExecutionSimulator",
    "drop_missing_tools",
]
