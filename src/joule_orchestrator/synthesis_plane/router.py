"""
Adaptive SLM/LLM routing and escalation policy.

The router decides a tier for each model call, collects available providers for that
tier in configured priority order, optionally ranks them by cost and energy, and
applies the escalation policy (SLM to LLM) against the task's budget session.
Providers that fail repeatedly are parked for a cooldown period.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from joule_orchestrator.constants import LOCAL_PROVIDER_NAME
from joule_orchestrator.observability.trace import TraceEventType
from joule_orchestrator.synthesis_plane.model_catalog import (
    EnergyConfig,
    ModelCatalog,
    estimate_energy,
    load_model_catalog,
)
from joule_orchestrator.synthesis_plane.providers.base import (
    BackoffConfig,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelTier,
    ProviderError,
    ProviderNotAvailableError,
    ProviderRegistry,
    StreamChunk,
    map_provider_exception,
    run_with_retries,
)

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetManager, BudgetSession
    from joule_orchestrator.observability.trace import TraceLogger

FAILURE_COOLDOWN_SECONDS: Final[float] = 60.0
MAX_FAILURES_BEFORE_COOLDOWN: Final[int] = 3
ESTIMATE_TOKENS: Final[int] = 1_000
CRITICAL_ENERGY_REMAINING_WH: Final[float] = 0.01
# Extra complexity headroom before leaving an available local SLM under prefer_local.
LOCAL_PREFERENCE_MARGIN: Final[float] = 0.05

DEFAULT_PROVIDER_PRIORITY: Final[Mapping[str, tuple[str, ...]]] = MappingProxyType(
    {
        ModelTier.SLM.value: ("ollama", "google", "openai", "anthropic"),
        ModelTier.LLM.value: ("anthropic", "openai", "google"),
    }
)


class RoutingPurpose(StrEnum):
    CLASSIFY = "classify"
    PLAN = "plan"
    EXECUTE = "execute"
    SYNTHESIZE = "synthesize"
    VERIFY = "verify"


def _unit_float(value: object, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be numeric")
    parsed = float(value)
    if not (0.0 <= parsed <= 1.0):
        raise ValueError(f"{field_name} must be between 0.0 and 1.0")
    return parsed


def _name_tuple(value: object, field_name: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise TypeError(f"{field_name} must be a list of provider names")
    names: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"{field_name}[{index}] must be a non-empty string")
        names.append(item.strip().lower())
    return tuple(names)


@dataclass(frozen=True, slots=True)
class RoutingConfig:
    """Tier thresholds, provider priority lists and per-provider model pins."""

    prefer_local: bool = True
    slm_confidence_threshold: float = 0.6
    complexity_threshold: float = 0.7
    max_replan_depth: int = 2
    prefer_efficient_models: bool = False
    provider_priority: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: DEFAULT_PROVIDER_PRIORITY
    )
    model_overrides: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "slm_confidence_threshold",
            _unit_float(self.slm_confidence_threshold, "RoutingConfig.slm_confidence_threshold"),
        )
        object.__setattr__(
            self,
            "complexity_threshold",
            _unit_float(self.complexity_threshold, "RoutingConfig.complexity_threshold"),
        )
        if isinstance(self.max_replan_depth, bool) or not isinstance(self.max_replan_depth, int):
            raise TypeError("RoutingConfig.max_replan_depth must be an integer")
        if not (0 <= self.max_replan_depth <= 10):
            raise ValueError("RoutingConfig.max_replan_depth must be between 0 and 10")

        priority: dict[str, tuple[str, ...]] = dict(DEFAULT_PROVIDER_PRIORITY)
        for tier_name, names in self.provider_priority.items():
            tier = ModelTier(str(tier_name).lower())
            priority[tier.value] = _name_tuple(names, f"RoutingConfig.provider_priority.{tier}")
        object.__setattr__(self, "provider_priority", MappingProxyType(priority))
        object.__setattr__(
            self,
            "model_overrides",
            MappingProxyType(
                {
                    str(provider).lower(): MappingProxyType(
                        {ModelTier(str(tier)).value: str(model) for tier, model in models.items()}
                    )
                    for provider, models in self.model_overrides.items()
                }
            ),
        )

    def priority_for(self, tier: ModelTier) -> tuple[str, ...]:
        return self.provider_priority[ModelTier(tier).value]

    def model_override(self, provider: str, tier: ModelTier) -> str | None:
        return self.model_overrides.get(provider, {}).get(ModelTier(tier).value)

    @classmethod
    def from_mapping(
        cls,
        routing: Mapping[str, object],
        providers: Mapping[str, object] | None = None,
    ) -> RoutingConfig:
        """Build from the ``routing`` config section plus optional ``providers`` pins."""

        defaults = cls()
        raw_priority = routing.get("provider_priority", {})
        if not isinstance(raw_priority, Mapping):
            raise TypeError("routing.provider_priority must be a table")

        overrides: dict[str, dict[str, str]] = {}
        for provider_name, section in (providers or {}).items():
            if not isinstance(section, Mapping) or section.get("enabled", True) is False:
                continue
            pins = {
                tier.value: str(section[f"{tier.value}_model"])
                for tier in ModelTier
                if isinstance(section.get(f"{tier.value}_model"), str)
            }
            if pins:
                overrides[str(provider_name)] = pins

        return cls(
            prefer_local=bool(routing.get("prefer_local", defaults.prefer_local)),
            slm_confidence_threshold=routing.get(  # type: ignore[arg-type]
                "slm_confidence_threshold", defaults.slm_confidence_threshold
            ),
            complexity_threshold=routing.get(  # type: ignore[arg-type]
                "complexity_threshold", defaults.complexity_threshold
            ),
            max_replan_depth=routing.get(  # type: ignore[arg-type]
                "max_replan_depth", defaults.max_replan_depth
            ),
            prefer_efficient_models=bool(
                routing.get("prefer_efficient_models", defaults.prefer_efficient_models)
            ),
            provider_priority=raw_priority,  # type: ignore[arg-type]
            model_overrides=overrides,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "prefer_local": self.prefer_local,
            "slm_confidence_threshold": self.slm_confidence_threshold,
            "complexity_threshold": self.complexity_threshold,
            "max_replan_depth": self.max_replan_depth,
            "prefer_efficient_models": self.prefer_efficient_models,
            "provider_priority": {tier: list(names) for tier, names in self.provider_priority.items()},
        }


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    tier: ModelTier
    provider: str
    model: str
    reason: str
    estimated_cost_usd: float
    estimated_energy_wh: float | None = None
    purpose: RoutingPurpose = RoutingPurpose.EXECUTE

    def to_dict(self) -> dict[str, object]:
        return {
            "tier": self.tier.value,
            "provider": self.provider,
            "model": self.model,
            "reason": self.reason,
            "estimated_cost_usd": self.estimated_cost_usd,
            "estimated_energy_wh": self.estimated_energy_wh,
            "purpose": self.purpose.value,
        }


@dataclass(slots=True)
class _Candidate:
    provider: str
    model: str
    estimated_cost_usd: float
    estimated_energy_wh: float
    score: float = 0.0


@dataclass(slots=True)
class _FailureRecord:
    count: int = 0
    last_failure: float = 0.0


class AdaptiveRouter:
    """Select a tier, provider and model per call and gate SLM-to-LLM escalation."""

    def __init__(
        self,
        registry: ProviderRegistry,
        budget_manager: BudgetManager,
        config: RoutingConfig | None = None,
        *,
        energy_config: EnergyConfig | None = None,
        model_catalog: ModelCatalog | None = None,
        trace_logger: TraceLogger | None = None,
        backoff: BackoffConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._registry = registry
        self._budget = budget_manager
        self._config = config if config is not None else RoutingConfig()
        self._energy_config = energy_config if energy_config is not None else EnergyConfig()
        self._catalog = model_catalog if model_catalog is not None else load_model_catalog()
        self._trace_logger = trace_logger
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._failures: dict[str, _FailureRecord] = {}

    @property
    def config(self) -> RoutingConfig:
        return self._config

    @property
    def energy_config(self) -> EnergyConfig:
        return self._energy_config

    async def select_provider(
        self,
        tier: ModelTier,
        provider_priority: Sequence[str] | None = None,
    ) -> ModelProvider:
        """First registered, supporting, non-cooling, available provider for ``tier``."""

        tier = ModelTier(tier)
        priority = (
            tuple(provider_priority)
            if provider_priority is not None
            else self._ordered_priority(tier)
        )
        for name in priority:
            provider = self._usable(name, tier)
            if provider is not None and await provider.is_available():
                return provider
        raise ProviderNotAvailableError(f"no available provider for tier {ModelTier(tier).value}")

    async def route_complexity(
        self,
        complexity: float | None,
        routing_config: RoutingConfig | None = None,
        *,
        purpose: RoutingPurpose | str = RoutingPurpose.EXECUTE,
        session: BudgetSession | None = None,
        previous_confidence: float | None = None,
    ) -> ModelTier:
        config = routing_config if routing_config is not None else self._config
        resolved_purpose = RoutingPurpose(purpose)
        if resolved_purpose in {RoutingPurpose.CLASSIFY, RoutingPurpose.VERIFY}:
            return ModelTier.SLM
        if session is not None:
            if not self._budget.can_afford_escalation(session):
                return ModelTier.SLM
            if self._energy_config.include_in_routing:
                energy_remaining = self._budget.get_usage(session).energy_remaining
                if energy_remaining is not None and energy_remaining < CRITICAL_ENERGY_REMAINING_WH:
                    return ModelTier.SLM
        low_confidence = (
            previous_confidence is not None
            and previous_confidence < config.slm_confidence_threshold
        )
        threshold = config.complexity_threshold
        if config.prefer_local and not low_confidence and await self._local_ready():
            threshold = min(1.0, threshold + LOCAL_PREFERENCE_MARGIN)
        if complexity is not None and complexity > threshold:
            return ModelTier.LLM
        if low_confidence:
            return ModelTier.LLM
        return ModelTier.SLM

    async def route(
        self,
        purpose: RoutingPurpose | str,
        session: BudgetSession,
        *,
        complexity: float | None = None,
        previous_confidence: float | None = None,
        tier: ModelTier | None = None,
        trace_id: str | None = None,
    ) -> RoutingDecision:
        resolved_purpose = RoutingPurpose(purpose)
        requested = (
            ModelTier(tier)
            if tier is not None
            else await self.route_complexity(
                complexity,
                purpose=resolved_purpose,
                session=session,
                previous_confidence=previous_confidence,
            )
        )

        chosen_tier = requested
        candidates = await self._collect_candidates(requested)
        if not candidates:
            chosen_tier = requested.other
            candidates = await self._collect_candidates(chosen_tier)
        if not candidates:
            raise ProviderNotAvailableError(
                f"no available provider for tier {requested.value} or {requested.other.value}"
            )

        best = self._rank(candidates, session)
        reason_parts = [
            f"purpose={resolved_purpose.value}",
            f"tier={chosen_tier.value}",
            f"provider={best.provider}",
        ]
        if complexity is not None:
            reason_parts.append(f"complexity={complexity:.2f}")
        if previous_confidence is not None:
            reason_parts.append(f"prev_confidence={previous_confidence:.2f}")
        if chosen_tier is not requested:
            reason_parts.append(f"fallback_from={requested.value}")
        if len(candidates) > 1:
            reason_parts.append(f"candidates={len(candidates)}")

        decision = RoutingDecision(
            tier=chosen_tier,
            provider=best.provider,
            model=best.model,
            reason=", ".join(reason_parts),
            estimated_cost_usd=best.estimated_cost_usd,
            estimated_energy_wh=best.estimated_energy_wh,
            purpose=resolved_purpose,
        )
        self._logger.debug("router_decision", **decision.to_dict())
        if trace_id is not None and self._trace_logger is not None:
            self._trace_logger.log_routing_decision(trace_id, decision.to_dict())
        return decision

    async def escalate(
        self,
        session: BudgetSession,
        reason: str,
        *,
        replan_depth: int = 0,
        trace_id: str | None = None,
    ) -> bool:
        """Consume one escalation if policy and budget allow; return whether granted."""

        granted = (
            self._budget.can_afford_escalation(session)
            and replan_depth < self._config.max_replan_depth
        )
        if granted:
            self._budget.deduct_escalation(session)
        self._logger.info(
            "router_escalation",
            session_id=session.id,
            reason=reason,
            granted=granted,
            replan_depth=replan_depth,
        )
        if trace_id is not None and self._trace_logger is not None:
            self._trace_logger.log_event(
                trace_id,
                TraceEventType.ESCALATION,
                {"reason": reason, "granted": granted, "replan_depth": replan_depth},
            )
            if granted:
                await self._log_escalated_decision(session, reason, trace_id)
        return granted

    async def _log_escalated_decision(
        self, session: BudgetSession, reason: str, trace_id: str
    ) -> None:
        if self._trace_logger is None:
            return
        try:
            decision = await self.route(RoutingPurpose.EXECUTE, session, tier=ModelTier.LLM)
        except ProviderNotAvailableError:
            return
        payload = decision.to_dict()
        payload["reason"] = f"escalation: {reason}; {decision.reason}"
        self._trace_logger.log_routing_decision(trace_id, payload)

    def report_failure(self, provider: str) -> None:
        record = self._failures.setdefault(provider.lower(), _FailureRecord())
        record.count += 1
        record.last_failure = self._clock()
        if record.count == MAX_FAILURES_BEFORE_COOLDOWN:
            self._logger.warning("router_provider_cooldown", provider=provider, failures=record.count)

    def report_success(self, provider: str) -> None:
        self._failures.pop(provider.lower(), None)

    def is_in_cooldown(self, provider: str) -> bool:
        record = self._failures.get(provider.lower())
        if record is None or record.count < MAX_FAILURES_BEFORE_COOLDOWN:
            return False
        return (self._clock() - record.last_failure) < FAILURE_COOLDOWN_SECONDS

    async def call_provider(self, decision: RoutingDecision, request: ModelRequest) -> ModelResponse:
        """Send ``request`` to the decided provider with bounded retries."""

        provider = self._registry.get(decision.provider)

        def _on_retry(retry_number: int, error: ProviderError, delay: float) -> None:
            self._logger.info(
                "router_provider_retry",
                provider=decision.provider,
                retry=retry_number,
                code=error.code,
                delay_seconds=delay,
            )

        try:
            response = await run_with_retries(
                lambda: provider.chat(request),
                map_exception=lambda exc: map_provider_exception(exc, provider=decision.provider),
                backoff=self._backoff,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except ProviderError:
            self.report_failure(decision.provider)
            raise
        self.report_success(decision.provider)
        return response

    async def stream_provider(
        self,
        decision: RoutingDecision,
        request: ModelRequest,
    ) -> AsyncIterator[StreamChunk]:
        """Relay the provider stream; closing this iterator closes the provider stream."""

        provider = self._registry.get(decision.provider)
        stream = provider.chat_stream(request)
        try:
            async for chunk in stream:
                yield chunk
        except Exception as exc:
            self.report_failure(decision.provider)
            raise map_provider_exception(exc, provider=decision.provider) from exc
        else:
            self.report_success(decision.provider)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _ordered_priority(self, tier: ModelTier) -> tuple[str, ...]:
        priority = self._config.priority_for(tier)
        if (
            tier is ModelTier.SLM
            and self._config.prefer_local
            and LOCAL_PROVIDER_NAME in priority
        ):
            rest = (name for name in priority if name != LOCAL_PROVIDER_NAME)
            return (LOCAL_PROVIDER_NAME, *rest)
        return priority

    async def _local_ready(self) -> bool:
        provider = self._usable(LOCAL_PROVIDER_NAME, ModelTier.SLM)
        return provider is not None and await provider.is_available()

    def _usable(self, name: str, tier: ModelTier) -> ModelProvider | None:
        if self.is_in_cooldown(name):
            return None
        provider = self._registry.find(name)
        if provider is None or not provider.supports(tier):
            return None
        return provider

    async def _collect_candidates(self, tier: ModelTier) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for name in self._ordered_priority(tier):
            provider = self._usable(name, tier)
            if provider is None or not await provider.is_available():
                continue
            model = self._config.model_override(name, tier)
            if model is None:
                models = await provider.list_models()
                model = next((info.id for info in models if info.tier is tier), None)
            if model is None:
                continue
            candidates.append(
                _Candidate(
                    provider=name,
                    model=model,
                    estimated_cost_usd=provider.estimate_cost(ESTIMATE_TOKENS, model),
                    estimated_energy_wh=estimate_energy(
                        model, ESTIMATE_TOKENS, ESTIMATE_TOKENS, catalog=self._catalog
                    ),
                )
            )
        return candidates

    def _rank(self, candidates: list[_Candidate], session: BudgetSession) -> _Candidate:
        if len(candidates) == 1 or not self._config.prefer_efficient_models:
            return candidates[0]

        usage = self._budget.get_usage(session)
        # An exhausted cost budget scores zero tightness.
        if usage.cost_remaining > 0:
            tightness = usage.cost_usd / (usage.cost_usd + usage.cost_remaining)
        else:
            tightness = 0.0
        cost_weight = 0.5 + tightness * 0.3
        energy_weight = self._energy_config.routing_weight
        priority_weight = max(0.0, 1.0 - cost_weight - energy_weight)

        max_cost = max(max(c.estimated_cost_usd for c in candidates), 0.001)
        max_energy = max(max(c.estimated_energy_wh for c in candidates), 0.001)
        count = len(candidates)
        for index, candidate in enumerate(candidates):
            cost_score = 1 - candidate.estimated_cost_usd / max_cost
            energy_score = 1 - candidate.estimated_energy_wh / max_energy
            priority_score = 1 - index / count
            candidate.score = (
                cost_weight * cost_score
                + energy_weight * energy_score
                + priority_weight * priority_score
            )
        # Stable sort keeps priority order among equal scores.
        return sorted(candidates, key=lambda item: -item.score)[0]


__all__ = [
    "DEFAULT_PROVIDER_PRIORITY",
    "FAILURE_COOLDOWN_SECONDS",
    "LOCAL_PREFERENCE_MARGIN",
    "MAX_FAILURES_BEFORE_COOLDOWN",
    "AdaptiveRouter",
    "RoutingConfig",
    "RoutingDecision",
    "RoutingPurpose",
]
