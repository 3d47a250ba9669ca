"""Shared fakes and fixtures: a scripted model provider and a small tool registry."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field

import pytest

from joule_orchestrator.control_plane.budgets import BudgetManager
from joule_orchestrator.control_plane.engine import GOAL_CHECK_SYSTEM_PROMPT, TaskExecutionEngine
from joule_orchestrator.observability.trace import TraceLogger
from joule_orchestrator.planning.planner import (
    CLASSIFIER_SYSTEM_PROMPT,
    CRITIQUE_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    SPEC_SYSTEM_PROMPT,
)
from joule_orchestrator.synthesis_plane.model_catalog import ModelCatalog, load_model_catalog
from joule_orchestrator.synthesis_plane.providers.base import (
    BackoffConfig,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelTier,
    ProviderRegistry,
    StreamChunk,
    TokenUsage,
)
from joule_orchestrator.synthesis_plane.router import AdaptiveRouter
from joule_orchestrator.synthesis_plane.tools import ToolParameter, ToolRegistry, ToolSpec

DEFAULT_ANSWER = "Paris is the capital of France."


@dataclass(slots=True)
class ReplyScript:
    """Replies keyed by the system prompt a call starts with; the last reply repeats."""

    replies: dict[str, deque[str]] = field(default_factory=dict)
    default: str = DEFAULT_ANSWER
    calls: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.set(SPEC_SYSTEM_PROMPT, json.dumps({"goal": "Answer the question"}))
        self.set(CLASSIFIER_SYSTEM_PROMPT, json.dumps({"complexity": 0.1, "reason": "simple"}))
        self.set(PLANNER_SYSTEM_PROMPT, json.dumps({"steps": []}))
        self.set(CRITIQUE_SYSTEM_PROMPT, json.dumps({"overall": 0.9, "issues": []}))
        self.set(GOAL_CHECK_SYSTEM_PROMPT, json.dumps({"onTrack": True, "drift": []}))

    def set(self, prefix: str, *replies: str) -> None:
        self.replies[prefix] = deque(replies)

    def reply_for(self, provider: str, system: str | None) -> str:
        text = system or ""
        for prefix, queue in self.replies.items():
            if text.startswith(prefix):
                self.calls.append((provider, prefix))
                return queue.popleft() if len(queue) > 1 else queue[0]
        self.calls.append((provider, text[:40]))
        return self.default

    def count(self, prefix: str) -> int:
        return sum(1 for _, called in self.calls if called == prefix)


class ScriptedProvider(ModelProvider):
    """In-memory provider answering from a :class:`ReplyScript`."""

    def __init__(
        self,
        name: str,
        tiers: tuple[ModelTier, ...],
        script: ReplyScript,
        *,
        usage: TokenUsage | None = None,
        model_catalog: ModelCatalog | None = None,
    ) -> None:
        super().__init__(model_catalog=model_catalog)
        self.name = name
        self.supported_tiers = tiers
        self.script = script
        self.usage = usage or TokenUsage(prompt_tokens=20, completion_tokens=10)
        self.available = True
        self.errors: deque[Exception] = deque()
        self.requests: list[ModelRequest] = []

    async def is_available(self) -> bool:
        return self.available

    async def chat(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self.errors:
            raise self.errors.popleft()
        return ModelResponse(
            model=request.model,
            provider=self.name,
            tier=request.tier,
            content=self.script.reply_for(self.name, request.system),
            token_usage=self.usage,
        )

    async def chat_stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        if self.errors:
            raise self.errors.popleft()
        words = self.script.reply_for(self.name, request.system).split(" ")
        for position, word in enumerate(words):
            yield StreamChunk(content=word if position == 0 else f" {word}")
        yield StreamChunk(content="", done=True, token_usage=self.usage, finish_reason="stop")


def make_tools(**extra: ToolSpec) -> ToolRegistry:
    def search(args: Mapping[str, object]) -> str:
        return f"Results for {args['query']}: Paris has 2.1 million residents"

    async def echo(args: Mapping[str, object]) -> object:
        return args["text"]

    def broken(args: Mapping[str, object]) -> object:
        raise RuntimeError("service unavailable")

    tools = [
        ToolSpec(
            name="search",
            description="Search the web",
            execute=search,
            input_schema=(ToolParameter(name="query", type="string"),),
        ),
        ToolSpec(
            name="echo",
            description="Echo text back",
            execute=echo,
            input_schema=(ToolParameter(name="text", type="any"),),
        ),
        ToolSpec(name="broken", description="Always fails", execute=broken),
        *extra.values(),
    ]
    return ToolRegistry(tools)


@pytest.fixture
def catalog() -> ModelCatalog:
    return load_model_catalog()


@pytest.fixture
def script() -> ReplyScript:
    return ReplyScript()


@pytest.fixture
def local_provider(script: ReplyScript, catalog: ModelCatalog) -> ScriptedProvider:
    return ScriptedProvider("ollama", (ModelTier.SLM,), script, model_catalog=catalog)


@pytest.fixture
def cloud_provider(script: ReplyScript, catalog: ModelCatalog) -> ScriptedProvider:
    return ScriptedProvider(
        "anthropic", (ModelTier.SLM, ModelTier.LLM), script, model_catalog=catalog
    )


@pytest.fixture
def registry(
    local_provider: ScriptedProvider, cloud_provider: ScriptedProvider
) -> ProviderRegistry:
    return ProviderRegistry([local_provider, cloud_provider])


@pytest.fixture
def budget_manager(catalog: ModelCatalog) -> BudgetManager:
    return BudgetManager(model_catalog=catalog)


@pytest.fixture
def trace_logger() -> TraceLogger:
    return TraceLogger()


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def router(
    registry: ProviderRegistry,
    budget_manager: BudgetManager,
    trace_logger: TraceLogger,
    catalog: ModelCatalog,
) -> AdaptiveRouter:
    return AdaptiveRouter(
        registry,
        budget_manager,
        model_catalog=catalog,
        trace_logger=trace_logger,
        backoff=BackoffConfig(max_retries=0),
        sleep=_no_sleep,
    )


@pytest.fixture
def tools() -> ToolRegistry:
    return make_tools()


@pytest.fixture
def make_engine(
    budget_manager: BudgetManager,
    router: AdaptiveRouter,
    tools: ToolRegistry,
    trace_logger: TraceLogger,
    catalog: ModelCatalog,
) -> Callable[..., TaskExecutionEngine]:
    def build(**overrides: object) -> TaskExecutionEngine:
        options: dict[str, object] = {
            "budget_manager": budget_manager,
            "router": router,
            "tools": tools,
            "trace_logger": trace_logger,
            "model_catalog": catalog,
        }
        options.update(overrides)
        return TaskExecutionEngine(**options)  # type: ignore[arg-type]

    return build
