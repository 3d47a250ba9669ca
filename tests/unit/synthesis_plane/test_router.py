"""Unit tests for tier selection, provider ranking, escalation and cooldown."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest

from joule_orchestrator.observability.trace import TraceEventType
from joule_orchestrator.synthesis_plane.model_catalog import EnergyConfig, ModelCatalog
from joule_orchestrator.synthesis_plane.providers.base import (
    BackoffConfig,
    ChatMessage,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelTier,
    ProviderNotAvailableError,
    ProviderRateLimitError,
    ProviderRegistry,
    ProviderServiceError,
    StreamChunk,
)
from joule_orchestrator.synthesis_plane.router import (
    FAILURE_COOLDOWN_SECONDS,
    AdaptiveRouter,
    RoutingConfig,
    RoutingPurpose,
)

pytestmark = pytest.mark.unit


@dataclass(slots=True)
class FakeClock:
    now: float = 1_000.0

    def __call__(self) -> float:
        return self.now


@dataclass(slots=True)
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class CatalogProvider(ModelProvider):
    """Always-available provider whose models and prices come from a test catalog."""

    def __init__(self, name: str, catalog: ModelCatalog) -> None:
        super().__init__(model_catalog=catalog)
        self.name = name

    async def is_available(self) -> bool:
        return True

    async def chat(self, request: ModelRequest) -> ModelResponse:
        raise NotImplementedError

    def chat_stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


def _slm_catalog(*entries: tuple[str, float, float]) -> ModelCatalog:
    """One SLM per ``(provider, usd_per_million, wh_per_million)`` entry."""

    return ModelCatalog.from_mapping(
        {
            "version": "test",
            "last_updated": "2026-10-01",
            "models": [
                {
                    "provider": provider,
                    "model": f"{provider}-slm",
                    "tier": "slm",
                    "pricing": {"input_per_million_usd": usd, "output_per_million_usd": usd},
                    "energy": {"input_wh_per_million": wh, "output_wh_per_million": wh},
                }
                for provider, usd, wh in entries
            ],
        }
    )


def _efficient_router(
    catalog: ModelCatalog, budget_manager, energy_config: EnergyConfig
) -> AdaptiveRouter:
    names = [entry.provider for entry in catalog.models]
    return AdaptiveRouter(
        ProviderRegistry([CatalogProvider(name, catalog) for name in names]),
        budget_manager,
        RoutingConfig(
            prefer_local=False,
            prefer_efficient_models=True,
            provider_priority={"slm": names, "llm": names},
        ),
        energy_config=energy_config,
        model_catalog=catalog,
    )


def _request(provider: str = "ollama", model: str = "llama3.2:3b") -> ModelRequest:
    return ModelRequest(
        model=model,
        provider=provider,
        tier=ModelTier.SLM,
        messages=(ChatMessage(role="user", content="hello"),),
    )


async def test_route_complexity_thresholds(router) -> None:
    route = router.route_complexity

    assert await route(0.99, purpose=RoutingPurpose.CLASSIFY) is ModelTier.SLM
    assert await route(0.99, purpose="verify") is ModelTier.SLM
    assert await route(0.9) is ModelTier.LLM
    assert await route(0.7) is ModelTier.SLM
    assert await route(None, previous_confidence=0.3) is ModelTier.LLM
    assert await route(0.5, previous_confidence=0.8) is ModelTier.SLM
    assert await route(0.5, RoutingConfig(complexity_threshold=0.4)) is ModelTier.LLM


async def test_prefer_local_keeps_borderline_work_on_available_local_model(
    router, local_provider
) -> None:
    cloud_leaning = RoutingConfig(prefer_local=False)

    assert await router.route_complexity(0.73) is ModelTier.SLM
    assert await router.route_complexity(0.73, cloud_leaning) is ModelTier.LLM
    assert await router.route_complexity(0.73, previous_confidence=0.3) is ModelTier.LLM
    assert await router.route_complexity(0.9) is ModelTier.LLM

    local_provider.available = False
    assert await router.route_complexity(0.73) is ModelTier.LLM


async def test_route_complexity_stays_on_slm_without_escalation_budget(
    router, budget_manager
) -> None:
    low = budget_manager.create_envelope("low")
    medium = budget_manager.create_envelope("medium")

    assert await router.route_complexity(0.95, session=low) is ModelTier.SLM
    assert await router.route_complexity(0.95, session=medium) is ModelTier.LLM


async def test_route_complexity_protects_scarce_energy(registry, budget_manager, catalog) -> None:
    energy_aware = AdaptiveRouter(
        registry,
        budget_manager,
        energy_config=EnergyConfig(include_in_routing=True),
        model_catalog=catalog,
    )
    scarce = budget_manager.create_envelope({"max_energy_wh": 0.005})
    plenty = budget_manager.create_envelope({"max_energy_wh": 1.0})

    assert await energy_aware.route_complexity(0.95, session=scarce) is ModelTier.SLM
    assert await energy_aware.route_complexity(0.95, session=plenty) is ModelTier.LLM


async def test_route_prefers_local_provider_for_slm(router, budget_manager) -> None:
    session = budget_manager.create_envelope("medium")

    decision = await router.route(RoutingPurpose.EXECUTE, session, complexity=0.2)

    assert decision.tier is ModelTier.SLM
    assert decision.provider == "ollama"
    assert decision.model == "llama3.2:3b"
    assert decision.estimated_cost_usd == 0.0
    assert "purpose=execute" in decision.reason
    assert "complexity=0.20" in decision.reason
    assert "candidates=2" in decision.reason


async def test_route_escalates_complex_work_and_logs_to_trace(
    router, budget_manager, trace_logger
) -> None:
    session = budget_manager.create_envelope("medium")
    trace_id = trace_logger.create_trace("task-1")

    decision = await router.route(
        RoutingPurpose.PLAN, session, complexity=0.9, trace_id=trace_id
    )

    assert decision.tier is ModelTier.LLM
    assert decision.provider == "anthropic"
    assert decision.model == "claude-sonnet-4-20250514"
    assert decision.estimated_cost_usd > 0
    events = trace_logger.get_trace(trace_id).events_of(TraceEventType.ROUTING_DECISION)
    assert [event.data["provider"] for event in events] == ["anthropic"]


async def test_route_falls_back_to_the_other_tier(
    local_provider, budget_manager, catalog
) -> None:
    local_only = AdaptiveRouter(
        ProviderRegistry([local_provider]), budget_manager, model_catalog=catalog
    )
    session = budget_manager.create_envelope("medium")

    decision = await local_only.route("synthesize", session, tier=ModelTier.LLM)

    assert decision.tier is ModelTier.SLM
    assert decision.provider == "ollama"
    assert "fallback_from=llm" in decision.reason


async def test_route_raises_when_nothing_is_available(
    router, budget_manager, local_provider, cloud_provider
) -> None:
    local_provider.available = False
    cloud_provider.available = False

    with pytest.raises(ProviderNotAvailableError, match="no available provider"):
        await router.route("execute", budget_manager.create_envelope("medium"))


async def test_priority_order_and_prefer_local(registry, budget_manager, catalog) -> None:
    session = budget_manager.create_envelope("medium")
    cloud_first = {"slm": ["anthropic", "ollama"]}

    pinned = AdaptiveRouter(
        registry,
        budget_manager,
        RoutingConfig(prefer_local=False, provider_priority=cloud_first),
        model_catalog=catalog,
    )
    local_first = AdaptiveRouter(
        registry,
        budget_manager,
        RoutingConfig(prefer_local=True, provider_priority=cloud_first),
        model_catalog=catalog,
    )

    assert (await pinned.route("execute", session)).provider == "anthropic"
    assert (await local_first.route("execute", session)).provider == "ollama"


async def test_prefer_efficient_models_ranks_by_cost(registry, budget_manager, catalog) -> None:
    session = budget_manager.create_envelope("medium")
    efficient = AdaptiveRouter(
        registry,
        budget_manager,
        RoutingConfig(
            prefer_local=False,
            prefer_efficient_models=True,
            provider_priority={"slm": ["anthropic", "ollama"]},
        ),
        model_catalog=catalog,
    )

    decision = await efficient.route("execute", session)

    assert decision.provider == "ollama"


async def test_efficient_ranking_weighs_energy_when_tracking_is_enabled(budget_manager) -> None:
    catalog = _slm_catalog(("hungry", 1.0, 10.0), ("frugal", 1.0, 0.1))
    session = budget_manager.create_envelope("medium")

    tracked = _efficient_router(catalog, budget_manager, EnergyConfig())
    untracked = _efficient_router(catalog, budget_manager, EnergyConfig(enabled=False))

    decision = await tracked.route("execute", session, tier=ModelTier.SLM)

    assert decision.provider == "frugal"
    assert decision.estimated_energy_wh == pytest.approx(0.0002)
    assert (await untracked.route("execute", session, tier=ModelTier.SLM)).provider == "hungry"


async def test_cost_pressure_favors_cheaper_models_until_the_budget_is_spent(
    budget_manager,
) -> None:
    catalog = _slm_catalog(("premium", 1.0, 1.0), ("budget", 0.7, 1.0))
    router = _efficient_router(catalog, budget_manager, EnergyConfig(enabled=False))
    relaxed = budget_manager.create_envelope("medium")
    tight = budget_manager.create_envelope("medium")
    spent = budget_manager.create_envelope("medium")
    budget_manager.deduct(tight, tokens_used=0, cost_usd=0.099, latency_ms=0)
    budget_manager.deduct(spent, tokens_used=0, cost_usd=0.2, latency_ms=0)

    async def provider_for(session) -> str:
        return (await router.route("execute", session, tier=ModelTier.SLM)).provider

    assert await provider_for(relaxed) == "premium"
    assert await provider_for(tight) == "budget"
    assert await provider_for(spent) == "premium"


async def test_model_pins_from_provider_sections(registry, budget_manager, catalog) -> None:
    config = RoutingConfig.from_mapping(
        {"complexity_threshold": 0.5, "max_replan_depth": 3},
        {
            "ollama": {"slm_model": "phi-3:mini"},
            "openai": {"enabled": False, "slm_model": "gpt-4o-mini"},
        },
    )
    pinned = AdaptiveRouter(registry, budget_manager, config, model_catalog=catalog)

    decision = await pinned.route("execute", budget_manager.create_envelope("medium"))

    assert config.complexity_threshold == 0.5
    assert config.max_replan_depth == 3
    assert config.model_override("ollama", ModelTier.SLM) == "phi-3:mini"
    assert config.model_override("openai", ModelTier.SLM) is None
    assert decision.model == "phi-3:mini"


def test_routing_config_validation_and_serialization() -> None:
    with pytest.raises(ValueError, match="complexity_threshold"):
        RoutingConfig(complexity_threshold=1.5)
    with pytest.raises(TypeError, match="max_replan_depth"):
        RoutingConfig(max_replan_depth=True)  # type: ignore[arg-type]
    with pytest.raises(TypeError, match="list of provider names"):
        RoutingConfig(provider_priority={"slm": "ollama"})  # type: ignore[dict-item]
    with pytest.raises(ValueError):
        RoutingConfig(provider_priority={"mega": ["ollama"]})

    payload = RoutingConfig(provider_priority={"llm": [" OpenAI "]}).to_dict()

    assert payload["provider_priority"] == {
        "slm": ["ollama", "google", "openai", "anthropic"],
        "llm": ["openai"],
    }


async def test_escalate_consumes_budget_and_respects_replan_depth(
    router, budget_manager, trace_logger
) -> None:
    session = budget_manager.create_envelope("high")
    trace_id = trace_logger.create_trace("task-1")

    assert await router.escalate(session, "low confidence", trace_id=trace_id) is True
    assert await router.escalate(session, "replan", replan_depth=2) is False
    assert budget_manager.get_usage(session).escalations_used == 1

    medium = budget_manager.create_envelope("medium")
    assert await router.escalate(medium, "first") is True
    assert await router.escalate(medium, "second") is False

    events = trace_logger.get_trace(trace_id).events_of(TraceEventType.ESCALATION)
    assert [event.data["granted"] for event in events] == [True]
    (decision,) = trace_logger.get_trace(trace_id).events_of(TraceEventType.ROUTING_DECISION)
    assert decision.data["tier"] == "llm"
    assert decision.data["provider"] == "anthropic"
    assert decision.data["reason"].startswith("escalation: low confidence; ")


async def test_repeated_failures_park_a_provider(registry, budget_manager, catalog) -> None:
    clock = FakeClock()
    router = AdaptiveRouter(registry, budget_manager, model_catalog=catalog, clock=clock)

    for _ in range(3):
        router.report_failure("ollama")

    assert router.is_in_cooldown("ollama")
    assert (await router.select_provider(ModelTier.SLM)).name == "anthropic"

    clock.now += FAILURE_COOLDOWN_SECONDS + 1
    assert not router.is_in_cooldown("ollama")

    router.report_failure("ollama")
    router.report_success("ollama")
    assert not router.is_in_cooldown("ollama")


async def test_select_provider_honors_explicit_priority(router, local_provider) -> None:
    assert (await router.select_provider(ModelTier.LLM)).name == "anthropic"
    assert (
        await router.select_provider(ModelTier.SLM, provider_priority=["anthropic", "ollama"])
    ).name == "anthropic"

    local_provider.available = False
    with pytest.raises(ProviderNotAvailableError):
        await router.select_provider(ModelTier.SLM, provider_priority=["ollama"])


async def test_call_provider_retries_retryable_errors(
    registry, budget_manager, catalog, local_provider, script
) -> None:
    sleep = RecordingSleep()
    router = AdaptiveRouter(
        registry,
        budget_manager,
        model_catalog=catalog,
        backoff=BackoffConfig(max_retries=1),
        sleep=sleep,
    )
    session = budget_manager.create_envelope("medium")
    decision = await router.route("execute", session)
    local_provider.errors.append(ProviderRateLimitError("slow down", provider="ollama"))

    response = await router.call_provider(decision, _request())

    assert response.content == script.default
    assert sleep.delays == [0.25]
    assert len(local_provider.requests) == 2


async def test_call_provider_maps_errors_and_counts_failures(
    router, budget_manager, local_provider
) -> None:
    decision = await router.route("execute", budget_manager.create_envelope("medium"))
    local_provider.errors.extend([ValueError("boom")] * 3)

    for _ in range(3):
        with pytest.raises(ProviderServiceError, match="ValueError: boom") as caught:
            await router.call_provider(decision, _request())
        assert caught.value.retryable is False

    assert router.is_in_cooldown("ollama")


async def test_stream_provider_relays_chunks(router, budget_manager, script) -> None:
    decision = await router.route("execute", budget_manager.create_envelope("medium"))

    chunks = [chunk async for chunk in router.stream_provider(decision, _request())]

    assert "".join(chunk.content for chunk in chunks) == script.default
    assert chunks[-1].done
    assert chunks[-1].token_usage is not None
