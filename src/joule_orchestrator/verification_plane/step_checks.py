"""
Deterministic step verification and success-criteria evaluation.

Neither check calls a model: step assertions are matched against tool output, and
criteria are evaluated from the recorded step results and the final answer text.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from joule_orchestrator.domain.models import (
    CriterionResult,
    CriterionType,
    PlanStep,
    StepResult,
    SuccessCriterion,
    TaskSpec,
    VerificationType,
)

FILE_TOOLS: Final[frozenset[str]] = frozenset({"file_write", "file_read"})
BROWSER_TOOL_PREFIX: Final[str] = "browser_"
HISTORY_HEAD: Final[int] = 2
HISTORY_TAIL: Final[int] = 3
HISTORY_DETAIL_CHARS: Final[int] = 200


@dataclass(frozen=True, slots=True)
class VerificationOutcome:
    passed: bool
    evidence: str = ""

    def to_dict(self) -> dict[str, object]:
        return {"passed": self.passed, "evidence": self.evidence}


def output_text(output: object) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps("" if output is None else output, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return repr(output)


def match_assertion(assertion: str, text: str) -> VerificationOutcome:
    """Case-insensitive regex match, or a substring check when ``assertion`` is not a regex."""

    try:
        pattern = re.compile(assertion, re.IGNORECASE)
    except re.error:
        contains = assertion.lower() in text.lower()
        return VerificationOutcome(
            passed=contains,
            evidence=(
                f'Output contains "{assertion}"'
                if contains
                else f'Output does not contain "{assertion}"'
            ),
        )
    matched = pattern.search(text) is not None
    return VerificationOutcome(
        passed=matched,
        evidence=(
            f'Output matches pattern "{assertion}"'
            if matched
            else f'Output does not match pattern "{assertion}"'
        ),
    )


def verify_step(step: PlanStep, result: StepResult) -> VerificationOutcome:
    verify = step.verify
    if verify is None or verify.type is VerificationType.NONE:
        return VerificationOutcome(passed=True)
    if not result.success:
        return VerificationOutcome(passed=False, evidence=result.error or "step failed")
    return match_assertion(verify.assertion, output_text(result.output))


def evaluate_criteria(
    spec: TaskSpec,
    step_results: Sequence[StepResult],
    result: str | None,
) -> tuple[CriterionResult, ...]:
    return tuple(
        evaluate_criterion(criterion, step_results, result)
        for criterion in spec.success_criteria
    )


def evaluate_criterion(
    criterion: SuccessCriterion,
    step_results: Sequence[StepResult],
    result: str | None,
) -> CriterionResult:
    check = criterion.check
    if criterion.type is CriterionType.OUTPUT_CONTAINS:
        outcome = match_assertion(check, result or "")
        return CriterionResult(criterion=criterion, met=outcome.passed, evidence=outcome.evidence)

    if criterion.type is CriterionType.TOOL_SUCCEEDED and check:
        met = any(item.tool_name == check and item.success for item in step_results)
        return CriterionResult(
            criterion=criterion,
            met=met,
            evidence=f'Tool "{check}" succeeded' if met else f'Tool "{check}" did not succeed',
        )

    if criterion.type is CriterionType.FILE_EXISTS:
        met = any(
            item.tool_name in FILE_TOOLS
            and item.success
            and check in json.dumps(item.tool_args, default=str)
            for item in step_results
        )
        return CriterionResult(
            criterion=criterion,
            met=met,
            evidence=(
                f'File operation on "{check}" succeeded'
                if met
                else f'No file operation on "{check}" found'
            ),
        )

    if criterion.type is CriterionType.PAGE_STATE:
        return _page_state(criterion, step_results)

    # Generic tool_succeeded and custom criteria are met by any successful step.
    met = any(item.success for item in step_results)
    return CriterionResult(
        criterion=criterion,
        met=met,
        evidence="At least one step succeeded" if met else "No steps succeeded",
    )


def compress_step_history(results: Sequence[StepResult], max_context: int = 5) -> str:
    """Keep the first two and last three steps verbatim and summarize the middle."""

    if len(results) <= max_context:
        return "\n".join(
            _history_line(position, item) for position, item in enumerate(results, start=1)
        )
    head = results[:HISTORY_HEAD]
    middle = results[HISTORY_HEAD:-HISTORY_TAIL]
    tail = results[-HISTORY_TAIL:]
    succeeded = sum(1 for item in middle if item.success)
    lines = [_history_line(item.step_index + 1, item) for item in head]
    lines.append(
        f"... {len(middle)} steps ({succeeded} succeeded, {len(middle) - succeeded} failed) ..."
    )
    lines.extend(_history_line(item.step_index + 1, item) for item in tail)
    return "\n".join(lines)


def _history_line(number: int, item: StepResult) -> str:
    detail = output_text(item.output if item.output is not None else item.error)
    return (
        f"Step {number} ({item.tool_name}): {'OK' if item.success else 'FAIL'} - "
        f"{detail[:HISTORY_DETAIL_CHARS]}"
    )


def _page_state(criterion: SuccessCriterion, step_results: Sequence[StepResult]) -> CriterionResult:
    needle = criterion.check.lower()
    for item in step_results:
        if not (item.success and item.tool_name.startswith(BROWSER_TOOL_PREFIX)):
            continue
        if not isinstance(item.output, Mapping):
            continue
        for key in ("url", "title"):
            value = item.output.get(key)
            if isinstance(value, str) and needle and needle in value.lower():
                return CriterionResult(
                    criterion=criterion,
                    met=True,
                    evidence=f'{key.capitalize()} contains "{criterion.check}": {value}',
                )
    return CriterionResult(criterion=criterion, met=False, evidence="Page state not matched")


__all__ = [
    "VerificationOutcome",
    "compress_step_history",
    "evaluate_criteria",
    "evaluate_criterion",
    "match_assertion",
    "output_text",
    "verify_step",
]
