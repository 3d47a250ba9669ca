"""Unit tests for crew definitions, budget splits and orchestrated crew runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import pytest

from joule_orchestrator.control_plane.crew import (
    AgentDefinition,
    AggregationMode,
    CrewDefinition,
    CrewOrchestrator,
    CrewStatus,
    CrewStrategy,
    ExecutionMode,
    build_agent_task_description,
    load_crew_definition,
    resolve_shares,
    validate_agent_output,
    validate_crew,
)
from joule_orchestrator.domain.errors import CrewValidationError
from joule_orchestrator.domain.models import (
    DecompositionPlan,
    DecompositionStrategy,
    SubTaskDefinition,
    Task,
    TaskStatus,
)
from joule_orchestrator.planning.decomposition import DECOMPOSE_SYSTEM_PROMPT, TaskDecomposer
from joule_orchestrator.planning.planner import (
    CLASSIFIER_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    SPEC_SYSTEM_PROMPT,
)
from joule_orchestrator.synthesis_plane.providers.base import ProviderServiceError

pytestmark = pytest.mark.unit


@dataclass(slots=True)
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _agent(agent_id: str, **overrides: object) -> AgentDefinition:
    options: dict[str, object] = {"id": agent_id, "role": agent_id.capitalize()}
    options.update(overrides)
    return AgentDefinition(**options)  # type: ignore[arg-type]


def _crew(*agents: AgentDefinition, **overrides: object) -> CrewDefinition:
    return CrewDefinition(name="research-crew", agents=agents, **overrides)  # type: ignore[arg-type]


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def orchestrator(make_engine, sleep: RecordingSleep) -> CrewOrchestrator:
    return CrewOrchestrator(make_engine(), sleep=sleep)


@pytest.mark.parametrize(
    ("agents", "message"),
    [
        ((), "at least one agent"),
        ((_agent("a"), _agent("a")), "Duplicate agent ID: a"),
        ((_agent("a", budget_share=0.7), _agent("b", budget_share=0.5)), "shares sum to 1.200"),
        ((_agent("a", depends_on=("ghost",)),), "depends on unknown agent: ghost"),
        ((_agent("a", depends_on=("a",)),), "a depends on itself"),
        (
            (_agent("a", depends_on=("b",)), _agent("b", depends_on=("a",))),
            "Agent dependency cycle: a -> b -> a",
        ),
    ],
)
def test_validate_crew_rejects_invalid_definitions(agents, message: str) -> None:
    with pytest.raises(CrewValidationError, match=message):
        validate_crew(CrewDefinition(name="bad", agents=agents))


def test_agent_definition_accepts_camel_case_and_rejects_unknown_fields() -> None:
    agent = AgentDefinition.from_mapping(
        {
            "id": "writer",
            "role": "Writer",
            "executionMode": "full",
            "allowedTools": ["search"],
            "budgetShare": 0.25,
            "dependsOn": ["researcher"],
        }
    )

    assert agent.execution_mode is ExecutionMode.FULL
    assert agent.allowed_tools == ("search",)
    assert agent.depends_on == ("researcher",)
    assert agent.resolved_max_retries(CrewStrategy.SEQUENTIAL) == 2
    assert agent.resolved_max_retries(CrewStrategy.PARALLEL) == 0
    with pytest.raises(CrewValidationError, match="unknown field"):
        AgentDefinition.from_mapping({"id": "x", "role": "X", "temperature": 0.2})
    with pytest.raises(CrewValidationError, match="execution_mode must be one of"):
        AgentDefinition(id="x", role="X", execution_mode="turbo")  # type: ignore[arg-type]
    with pytest.raises(CrewValidationError, match="budget_share"):
        AgentDefinition(id="x", role="X", budget_share=1.5)


def test_load_crew_definition_from_yaml_and_json(tmp_path) -> None:
    yaml_path = tmp_path / "crew.yaml"
    yaml_path.write_text(
        "name: writers\n"
        "strategy: parallel\n"
        "aggregation: last\n"
        "agents:\n"
        "  - id: drafter\n"
        "    role: Drafter\n"
        "  - id: editor\n"
        "    role: Editor\n"
        "    maxRetries: 1\n",
        encoding="utf-8",
    )
    json_path = tmp_path / "crew.json"
    json_path.write_text(
        json.dumps({"name": "solo", "agents": [{"id": "only", "role": "Only"}]}),
        encoding="utf-8",
    )

    from_yaml = load_crew_definition(yaml_path)
    from_json = load_crew_definition(str(json_path))

    assert from_yaml.strategy is CrewStrategy.PARALLEL
    assert from_yaml.aggregation is AggregationMode.LAST
    assert from_yaml.agent("editor") is not None
    assert from_yaml.agent("editor").max_retries == 1  # type: ignore[union-attr]
    assert from_json.strategy is CrewStrategy.SEQUENTIAL
    assert [agent.id for agent in from_json.agents] == ["only"]


def test_load_crew_definition_reports_unreadable_and_malformed_files(tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    with pytest.raises(CrewValidationError, match="Unable to read"):
        load_crew_definition(tmp_path / "missing.yaml")
    with pytest.raises(CrewValidationError, match="Invalid crew definition"):
        load_crew_definition(broken)
    with pytest.raises(CrewValidationError, match="agents must be a list"):
        load_crew_definition({"name": "empty"})


def test_resolve_shares_splits_remainder_and_normalizes() -> None:
    split = resolve_shares([_agent("a", budget_share=0.5), _agent("b"), _agent("c")])
    normalized = resolve_shares([_agent("a", budget_share=0.8), _agent("b", budget_share=0.6)])

    assert split == {"a": 0.5, "b": 0.25, "c": 0.25}
    assert normalized["a"] == pytest.approx(0.8 / 1.4)
    assert sum(normalized.values()) == pytest.approx(1.0)


def test_validate_agent_output_checks_required_keys() -> None:
    schema = {"required": ["answer", "sources"]}

    assert validate_agent_output('{"answer": 1, "sources": []}', schema) is None
    assert validate_agent_output('{"answer": 1}', schema) == (
        "Output is missing required keys: sources"
    )
    assert validate_agent_output("plain text", schema) == "Output is not a valid JSON object"
    assert validate_agent_output('{"a": 1}', {"properties": {"a": {}}}) is None


def test_build_agent_task_description_includes_role_schema_and_context() -> None:
    agent = _agent("analyst", instructions="Be precise.", output_schema={"required": ["x"]})

    text = build_agent_task_description("Summarize Q3", agent, "\n\nextra context")

    assert text.startswith("[Your Role: Analyst]\n[Instructions: Be precise.]\n")
    assert "[Task]\nSummarize Q3" in text
    assert '{"required": ["x"]}' in text
    assert text.endswith("extra context")


async def test_sequential_crew_shares_context_and_concatenates(
    orchestrator, script, local_provider
) -> None:
    script.set("You are Researcher.", "Paris has 2.1 million residents")
    script.set("You are Writer.", "Paris is a big city")
    crew = _crew(_agent("researcher"), _agent("writer"))

    result = await orchestrator.run(crew, Task(description="Write about Paris"))

    assert result.status is CrewStatus.COMPLETED
    assert result.error is None
    assert result.result == (
        "[Researcher (researcher)]: Paris has 2.1 million residents\n\n"
        "[Writer (writer)]: Paris is a big city"
    )
    writer_prompt = local_provider.requests[-1].messages[-1].content
    assert "[Context from other agents]\n[researcher]: Paris has 2.1 million residents" in (
        writer_prompt
    )
    assert result.budget_used.tokens_used == 2 * 30
    assert set(result.blackboard["entries"]) == {"researcher", "writer"}  # type: ignore[index]
    assert [item.attempts for item in result.agent_results] == [1, 1]


async def test_sequential_agent_retries_with_backoff(
    orchestrator, local_provider, sleep: RecordingSleep
) -> None:
    local_provider.errors.append(ProviderServiceError("overloaded", provider="ollama"))

    result = await orchestrator.run(
        _crew(_agent("solo", retry_delay_ms=200)), Task(description="Say hi")
    )

    assert result.status is CrewStatus.COMPLETED
    assert result.agent_results[0].attempts == 2
    assert sleep.delays == [0.2]


async def test_parallel_crew_reports_partial_on_schema_violation(orchestrator, sleep) -> None:
    crew = _crew(
        _agent("talker"),
        _agent("formatter", output_schema={"required": ["answer"]}),
        strategy="parallel",
    )

    result = await orchestrator.run(crew, Task(description="Answer briefly"))

    statuses = {item.agent_id: item.status for item in result.agent_results}
    assert statuses == {"talker": TaskStatus.COMPLETED, "formatter": TaskStatus.FAILED}
    assert result.status is CrewStatus.PARTIAL
    assert result.error == "formatter: Output is not a valid JSON object"
    assert "[Formatter (formatter)]: Failed: Output is not a valid JSON object" in (
        result.result or ""
    )
    assert sleep.delays == []


async def test_parallel_crew_rolls_agent_usage_into_the_parent_session(
    orchestrator, budget_manager, local_provider
) -> None:
    local_provider.available = False
    parent = budget_manager.create_envelope("high")
    crew = _crew(_agent("left"), _agent("right"), strategy="parallel")

    result = await orchestrator.run(crew, Task(description="Split the work"), session=parent)

    assert result.status is CrewStatus.COMPLETED
    entries = result.blackboard["entries"]  # type: ignore[index]
    assert sorted(entries) == ["left", "right"]
    assert [entries[key]["agent_id"] for key in ("left", "right")] == ["left", "right"]
    per_agent = [item.budget_used for item in result.agent_results]
    assert all(usage is not None and usage.tokens_used == 30 for usage in per_agent)
    parent_usage = budget_manager.get_usage(parent)
    assert parent_usage.tokens_used == sum(usage.tokens_used for usage in per_agent) == 60
    assert parent_usage.cost_usd > 0.0
    assert parent_usage.cost_usd == pytest.approx(sum(usage.cost_usd for usage in per_agent))
    assert result.budget_used.tokens_used == parent_usage.tokens_used


async def test_mixed_crew_skips_agents_whose_dependencies_failed(orchestrator) -> None:
    crew = _crew(
        _agent("source", output_schema={"required": ["answer"]}),
        _agent("consumer", depends_on=("source",)),
        _agent("independent"),
        strategy="mixed",
    )

    result = await orchestrator.run(crew, Task(description="Collect and reuse"))

    by_id = {item.agent_id: item for item in result.agent_results}
    assert by_id["consumer"].error == "Skipped: dependency failed (source)"
    assert by_id["consumer"].attempts == 0
    assert by_id["independent"].completed
    assert result.status is CrewStatus.PARTIAL


async def test_last_aggregation_and_no_completed_agents(orchestrator, script) -> None:
    script.set("You are First.", "first answer")
    script.set("You are Second.", "second answer")

    last = await orchestrator.run(
        _crew(_agent("first"), _agent("second"), aggregation="last"),
        Task(description="Answer"),
    )
    none_completed = await orchestrator.run(
        _crew(
            _agent("strict", output_schema={"required": ["x"]}, max_retries=0),
            aggregation="last",
        ),
        Task(description="Answer"),
    )

    assert last.result == "second answer"
    assert none_completed.result == "No agents completed."
    assert none_completed.status is CrewStatus.FAILED


async def test_custom_aggregation_uses_the_aggregation_prompt(orchestrator, script) -> None:
    script.set("Merge the agent findings", "merged summary")

    result = await orchestrator.run(
        _crew(
            _agent("one"),
            _agent("two"),
            aggregation="custom",
            aggregation_prompt="Merge the agent findings into one paragraph.",
        ),
        Task(description="Research"),
    )

    assert result.result == "merged summary"
    assert result.budget_used.tokens_used == 3 * 30


async def test_exhausted_session_marks_crew_budget_exhausted(
    orchestrator, budget_manager
) -> None:
    session = budget_manager.create_envelope({"max_tokens": 10})
    budget_manager.deduct(session, tokens_used=50)

    result = await orchestrator.run(
        _crew(_agent("a"), _agent("b")), Task(description="Anything"), session=session
    )

    assert result.status is CrewStatus.BUDGET_EXHAUSTED
    assert all(item.status is TaskStatus.BUDGET_EXHAUSTED for item in result.agent_results)
    assert all(item.attempts == 1 for item in result.agent_results)
    assert result.error == "a: Budget exhausted: tokens; b: Budget exhausted: tokens"


async def test_full_mode_agent_runs_the_engine_with_filtered_tools(
    orchestrator, script, local_provider
) -> None:
    crew = _crew(
        _agent("worker", execution_mode="full", allowed_tools=("search",)),
        aggregation="last",
    )

    result = await orchestrator.run(crew, Task(description="What is the capital of France?"))

    assert result.status is CrewStatus.COMPLETED
    assert result.result == script.default
    worker = result.agent_results[0]
    assert worker.trace_id is not None and worker.trace_id != result.trace.trace_id
    planner_prompts = [
        request.system or ""
        for request in local_provider.requests
        if (request.system or "").startswith(PLANNER_SYSTEM_PROMPT)
    ]
    assert planner_prompts
    assert "- search:" in planner_prompts[0]
    assert "- echo:" not in planner_prompts[0]


async def test_run_subtasks_passes_dependency_results_forward(
    orchestrator, budget_manager, local_provider
) -> None:
    first = SubTaskDefinition(id="subtask-a", description="Find the population")
    second = SubTaskDefinition(
        id="subtask-b", description="Write the memo", depends_on=("subtask-a",)
    )
    plan = DecompositionPlan(strategy=DecompositionStrategy.SEQUENTIAL, subtasks=(second, first))

    result = await orchestrator.run_subtasks(
        Task(description="Population memo"),
        plan,
        session=budget_manager.create_envelope("high"),
    )

    assert result.status is CrewStatus.COMPLETED
    assert [item.role for item in result.agent_results] == ["Sub-task 1 of 2", "Sub-task 2 of 2"]
    spec_messages = [
        request.messages[-1].content
        for request in local_provider.requests
        if (request.system or "").startswith(SPEC_SYSTEM_PROMPT)
    ]
    assert "[Instructions: Find the population]" in spec_messages[0]
    assert "Previous result 1: Paris is the capital of France." in spec_messages[1]


async def test_engine_delegates_compound_tasks_to_the_crew(make_engine, script, trace_logger) -> None:
    engine = make_engine()
    engine = make_engine(decomposer=TaskDecomposer(engine.dispatcher, trace_logger))
    engine.attach_crew_runner(CrewOrchestrator(engine))
    script.set(CLASSIFIER_SYSTEM_PROMPT, json.dumps({"complexity": 0.9}))
    script.set(
        DECOMPOSE_SYSTEM_PROMPT,
        json.dumps(
            {
                "subtasks": [
                    {"description": "Gather the figures", "budget_share": 0.5},
                    {"description": "Write it up", "depends_on": [0], "budget_share": 0.5},
                ],
                "strategy": "mixed",
            }
        ),
    )
    script.set(
        PLANNER_SYSTEM_PROMPT,
        json.dumps({"steps": [{"tool_name": "search", "tool_args": {"query": "revenue"}}]}),
    )
    description = (
        "First, gather the monthly revenue figures for each product line and check them "
        "for gaps. Then write up a summary that compares the product lines. Finally, list "
        "three recommendations for next quarter based on what the numbers show."
    )

    result = await engine.run(Task(description=description))

    assert result.status is TaskStatus.COMPLETED
    assert "[Sub-task 1 of 2 (" in (result.result or "")
    assert "[Sub-task 2 of 2 (" in (result.result or "")
    assert result.step_results == ()
