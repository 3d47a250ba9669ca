"""
Accounted model dispatch.

Every model call made by the planner, the execution engine and crew agents goes
through :class:`ModelDispatcher`: route the call, send it with bounded retries,
charge tokens, cost, latency and energy to the budget session, and record the call
on the task trace. Streaming dispatch charges the session only after the provider
stream has completed, so a stream closed early leaves no partial deduction.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from joule_orchestrator.synthesis_plane.model_catalog import ModelCatalog, load_model_catalog
from joule_orchestrator.synthesis_plane.providers.base import (
    ChatMessage,
    ModelRequest,
    ModelResponse,
    ModelTier,
    StreamChunk,
    TokenUsage,
)
from joule_orchestrator.synthesis_plane.router import RoutingDecision, RoutingPurpose

if TYPE_CHECKING:
    from joule_orchestrator.control_plane.budgets import BudgetManager, BudgetSession
    from joule_orchestrator.observability.trace import TraceLogger
    from joule_orchestrator.synthesis_plane.router import AdaptiveRouter


@dataclass(frozen=True, slots=True)
class DispatchResult:
    decision: RoutingDecision
    response: ModelResponse
    energy_wh: float = 0.0
    carbon_grams: float = 0.0

    @property
    def content(self) -> str:
        return self.response.content


class ModelDispatcher:
    """Route, call and account one model request against a budget session."""

    def __init__(
        self,
        router: AdaptiveRouter,
        budget_manager: BudgetManager,
        trace_logger: TraceLogger | None = None,
        *,
        model_catalog: ModelCatalog | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._router = router
        self._budget = budget_manager
        self._trace_logger = trace_logger
        self._catalog = model_catalog if model_catalog is not None else load_model_catalog()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def router(self) -> AdaptiveRouter:
        return self._router

    @property
    def budget_manager(self) -> BudgetManager:
        return self._budget

    async def dispatch(
        self,
        purpose: RoutingPurpose | str,
        session: BudgetSession,
        *,
        system: str | None,
        user_message: str,
        history: Sequence[ChatMessage] = (),
        complexity: float | None = None,
        previous_confidence: float | None = None,
        tier: ModelTier | None = None,
        trace_id: str | None = None,
        response_format: str = "text",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> DispatchResult:
        decision = await self._router.route(
            purpose,
            session,
            complexity=complexity,
            previous_confidence=previous_confidence,
            tier=tier,
            trace_id=trace_id,
        )
        request = build_request(
            decision,
            system=system,
            user_message=user_message,
            history=history,
            response_format=response_format,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        started = self._clock()
        response = await self._router.call_provider(decision, request)
        elapsed_ms = max(0.0, (self._clock() - started) * 1000.0)
        return self._account(decision, response, session, trace_id=trace_id, elapsed_ms=elapsed_ms)

    async def dispatch_stream(
        self,
        purpose: RoutingPurpose | str,
        session: BudgetSession,
        *,
        system: str | None,
        user_message: str,
        history: Sequence[ChatMessage] = (),
        complexity: float | None = None,
        tier: ModelTier | None = None,
        trace_id: str | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield stream chunks; the session is charged once the final chunk arrives."""

        decision = await self._router.route(
            purpose, session, complexity=complexity, tier=tier, trace_id=trace_id
        )
        request = build_request(
            decision,
            system=system,
            user_message=user_message,
            history=history,
            temperature=temperature,
        )
        started = self._clock()
        parts: list[str] = []
        usage: TokenUsage | None = None
        finish_reason = "stop"
        stream = self._router.stream_provider(decision, request)
        try:
            async for chunk in stream:
                if chunk.content:
                    parts.append(chunk.content)
                if chunk.token_usage is not None:
                    usage = chunk.token_usage
                if chunk.finish_reason is not None:
                    finish_reason = chunk.finish_reason
                yield chunk
        finally:
            await stream.aclose()

        response = ModelResponse(
            model=decision.model,
            provider=decision.provider,
            tier=decision.tier,
            content="".join(parts),
            token_usage=usage if usage is not None else TokenUsage(),
            finish_reason=finish_reason if finish_reason in {"stop", "length", "error"} else "stop",
        )
        self._account(
            decision,
            response,
            session,
            trace_id=trace_id,
            elapsed_ms=max(0.0, (self._clock() - started) * 1000.0),
        )

    def _account(
        self,
        decision: RoutingDecision,
        response: ModelResponse,
        session: BudgetSession,
        *,
        trace_id: str | None,
        elapsed_ms: float,
    ) -> DispatchResult:
        usage = response.token_usage
        cost_usd = response.cost_usd
        if cost_usd <= 0 and self._catalog.get(response.model) is not None:
            cost_usd = self._catalog.calculate_cost(
                response.model, usage.prompt_tokens, usage.completion_tokens
            )
        latency_ms = response.latency_ms if response.latency_ms > 0 else elapsed_ms

        self._budget.deduct(
            session,
            tokens_used=usage.total_tokens or 0,
            cost_usd=cost_usd,
            latency_ms=latency_ms,
        )
        energy_wh, carbon_grams = self._budget.deduct_energy(
            session, response.model, usage, self._router.energy_config
        )
        accounted = dataclasses.replace(
            response,
            cost_usd=cost_usd,
            latency_ms=latency_ms,
            energy_wh=energy_wh,
            carbon_grams=carbon_grams,
        )
        if trace_id is not None and self._trace_logger is not None:
            self._trace_logger.log_model_call(trace_id, accounted, purpose=decision.purpose.value)
        self._logger.debug(
            "model_dispatched",
            purpose=decision.purpose.value,
            provider=decision.provider,
            model=response.model,
            tier=decision.tier.value,
            total_tokens=usage.total_tokens,
            cost_usd=cost_usd,
            energy_wh=energy_wh,
        )
        return DispatchResult(
            decision=decision,
            response=accounted,
            energy_wh=energy_wh,
            carbon_grams=carbon_grams,
        )


def build_request(
    decision: RoutingDecision,
    *,
    system: str | None,
    user_message: str,
    history: Sequence[ChatMessage] = (),
    response_format: str = "text",
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> ModelRequest:
    messages = [*history, ChatMessage(role="user", content=user_message)]
    return ModelRequest(
        model=decision.model,
        provider=decision.provider,
        tier=decision.tier,
        messages=tuple(messages),
        system=system,
        max_tokens=max_tokens,
        temperature=temperature,
        response_format=response_format,
    )


__all__ = ["DispatchResult", "ModelDispatcher", "build_request"]
