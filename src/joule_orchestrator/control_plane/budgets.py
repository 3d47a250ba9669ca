"""
Multi-dimensional budget accounting and exhaustion detection.

A :class:`BudgetSession` pairs an immutable :class:`BudgetEnvelope` with running
counters for tokens, cost, latency, tool calls, escalations, energy and carbon. All
mutation goes through :class:`BudgetManager`; each deduction is a single synchronous
call that updates the session and its ancestors under their locks, so concurrent crew
agents sharing one parent never lose updates and cancellation never observes a
half-applied deduction.

Exhaustion is checked in a fixed order (tokens, cost, latency, tool_calls,
escalations, energy, carbon) and a dimension trips only when usage is strictly above
its limit. Undefined limits never trip.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from joule_orchestrator.constants import BUDGET_DIMENSIONS, DEFAULT_BUDGET_PRESET
from joule_orchestrator.domain import ids as domain_ids
from joule_orchestrator.domain.errors import BudgetExhaustedError, ConfigError
from joule_orchestrator.synthesis_plane.model_catalog import (
    EnergyConfig,
    EnergyTotals,
    ModelCatalog,
    calculate_carbon,
    load_model_catalog,
)

if TYPE_CHECKING:
    from joule_orchestrator.synthesis_plane.providers.base import TokenUsage

MonotonicClock = Callable[[], float]

_ENVELOPE_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "maxTokens": "max_tokens",
        "maxLatencyMs": "max_latency_ms",
        "maxToolCalls": "max_tool_calls",
        "maxEscalations": "max_escalations",
        "costCeilingUsd": "cost_ceiling_usd",
        "maxEnergyWh": "max_energy_wh",
        "maxCarbonGrams": "max_carbon_grams",
    }
)
_REQUIRED_FIELDS: Final[tuple[str, ...]] = (
    "max_tokens",
    "max_latency_ms",
    "max_tool_calls",
    "max_escalations",
    "cost_ceiling_usd",
)
_OPTIONAL_FIELDS: Final[tuple[str, ...]] = ("max_energy_wh", "max_carbon_grams")


def _non_negative(value: object, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be numeric")
    if math.isnan(value) or value < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return value


@dataclass(frozen=True, slots=True)
class BudgetEnvelope:
    """Resource ceilings for one task or crew run. ``None`` energy/carbon means no limit."""

    max_tokens: float
    max_latency_ms: float
    max_tool_calls: int
    max_escalations: int
    cost_ceiling_usd: float
    max_energy_wh: float | None = None
    max_carbon_grams: float | None = None

    def __post_init__(self) -> None:
        for name in _REQUIRED_FIELDS:
            _non_negative(getattr(self, name), f"BudgetEnvelope.{name}")
        for name in _OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value is not None:
                _non_negative(value, f"BudgetEnvelope.{name}")

    @classmethod
    def from_partial(
        cls,
        partial: Mapping[str, object],
        *,
        base: BudgetEnvelope | None = None,
    ) -> BudgetEnvelope:
        """Override the named fields of ``base`` (the medium preset by default).

        Optional energy/carbon limits are taken only from ``partial``.
        """

        defaults = base if base is not None else BUDGET_PRESETS[DEFAULT_BUDGET_PRESET]
        normalized: dict[str, object] = {}
        for key, value in partial.items():
            name = _ENVELOPE_ALIASES.get(key, key)
            if name not in _REQUIRED_FIELDS and name not in _OPTIONAL_FIELDS:
                raise ConfigError(f"unknown budget field: {key!r}")
            normalized[name] = value

        values: dict[str, Any] = {name: getattr(defaults, name) for name in _REQUIRED_FIELDS}
        values.update({name: None for name in _OPTIONAL_FIELDS})
        values.update(normalized)
        try:
            return cls(**values)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid budget envelope: {exc}") from exc

    def limit_for(self, dimension: str) -> float | None:
        return {
            "tokens": self.max_tokens,
            "cost": self.cost_ceiling_usd,
            "latency": self.max_latency_ms,
            "tool_calls": self.max_tool_calls,
            "escalations": self.max_escalations,
            "energy": self.max_energy_wh,
            "carbon": self.max_carbon_grams,
        }[dimension]

    def to_dict(self) -> dict[str, object]:
        return {
            "max_tokens": None if math.isinf(self.max_tokens) else self.max_tokens,
            "max_latency_ms": self.max_latency_ms,
            "max_tool_calls": self.max_tool_calls,
            "max_escalations": self.max_escalations,
            "cost_ceiling_usd": self.cost_ceiling_usd,
            "max_energy_wh": self.max_energy_wh,
            "max_carbon_grams": self.max_carbon_grams,
        }


BUDGET_PRESETS: Final[Mapping[str, BudgetEnvelope]] = MappingProxyType(
    {
        "low": BudgetEnvelope(
            max_tokens=4_000,
            max_latency_ms=10_000,
            max_tool_calls=3,
            max_escalations=0,
            cost_ceiling_usd=0.01,
            max_energy_wh=0.005,
            max_carbon_grams=0.002,
        ),
        "medium": BudgetEnvelope(
            max_tokens=16_000,
            max_latency_ms=30_000,
            max_tool_calls=10,
            max_escalations=1,
            cost_ceiling_usd=0.10,
            max_energy_wh=0.05,
            max_carbon_grams=0.02,
        ),
        "high": BudgetEnvelope(
            max_tokens=100_000,
            max_latency_ms=300_000,
            max_tool_calls=40,
            max_escalations=5,
            cost_ceiling_usd=1.00,
            max_energy_wh=0.5,
            max_carbon_grams=0.2,
        ),
        "unlimited": BudgetEnvelope(
            max_tokens=math.inf,
            max_latency_ms=600_000,
            max_tool_calls=100,
            max_escalations=10,
            cost_ceiling_usd=10.00,
        ),
    }
)


@dataclass(frozen=True, slots=True)
class BudgetUsage:
    """Usage snapshot; ``*_remaining`` is ``limit - used`` and may go negative."""

    tokens_used: int
    tokens_remaining: float
    cost_usd: float
    cost_remaining: float
    latency_ms: float
    latency_remaining: float
    tool_calls_used: int
    tool_calls_remaining: int
    escalations_used: int
    escalations_remaining: int
    energy_wh: float
    energy_remaining: float | None
    carbon_grams: float
    carbon_remaining: float | None
    elapsed_ms: float = 0.0

    def used_for(self, dimension: str) -> float:
        return {
            "tokens": self.tokens_used,
            "cost": self.cost_usd,
            "latency": self.latency_ms,
            "tool_calls": self.tool_calls_used,
            "escalations": self.escalations_used,
            "energy": self.energy_wh,
            "carbon": self.carbon_grams,
        }[dimension]

    def to_dict(self) -> dict[str, object]:
        return {
            "tokens_used": self.tokens_used,
            "tokens_remaining": (
                None if math.isinf(self.tokens_remaining) else self.tokens_remaining
            ),
            "cost_usd": self.cost_usd,
            "cost_remaining": self.cost_remaining,
            "latency_ms": self.latency_ms,
            "latency_remaining": self.latency_remaining,
            "tool_calls_used": self.tool_calls_used,
            "tool_calls_remaining": self.tool_calls_remaining,
            "escalations_used": self.escalations_used,
            "escalations_remaining": self.escalations_remaining,
            "energy_wh": self.energy_wh,
            "energy_remaining": self.energy_remaining,
            "carbon_grams": self.carbon_grams,
            "carbon_remaining": self.carbon_remaining,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(frozen=True, slots=True)
class BudgetCheckpoint:
    label: str
    timestamp: float
    usage: BudgetUsage

    def to_dict(self) -> dict[str, object]:
        return {"label": self.label, "timestamp": self.timestamp, "usage": self.usage.to_dict()}


@dataclass(slots=True)
class BudgetSession:
    """Mutable counters for one envelope. Mutate only through :class:`BudgetManager`."""

    envelope: BudgetEnvelope
    id: str = field(default_factory=domain_ids.generate_session_id)
    parent: BudgetSession | None = None
    started_at_ms: float = 0.0
    tokens_used: int = 0
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    tool_calls_used: int = 0
    escalations_used: int = 0
    energy_wh: float = 0.0
    carbon_grams: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    checkpoints: list[BudgetCheckpoint] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def lineage(self) -> list[BudgetSession]:
        chain: list[BudgetSession] = []
        current: BudgetSession | None = self
        while current is not None:
            chain.append(current)
            current = current.parent
        return chain


class BudgetManager:
    """Create budget sessions and apply deductions, checks and sub-envelope splits."""

    def __init__(
        self,
        *,
        presets: Mapping[str, BudgetEnvelope] | None = None,
        default_preset: str = DEFAULT_BUDGET_PRESET,
        model_catalog: ModelCatalog | None = None,
        clock: MonotonicClock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._presets = dict(presets) if presets is not None else dict(BUDGET_PRESETS)
        if default_preset not in self._presets:
            raise ConfigError(f"unknown default budget preset {default_preset!r}")
        self._default_preset = default_preset
        self._model_catalog = model_catalog
        self._clock = clock if clock is not None else time.monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def presets(self) -> Mapping[str, BudgetEnvelope]:
        return MappingProxyType(self._presets)

    def resolve_envelope(
        self,
        budget: str | Mapping[str, object] | BudgetEnvelope | None = None,
    ) -> BudgetEnvelope:
        if budget is None:
            return self._presets[self._default_preset]
        if isinstance(budget, BudgetEnvelope):
            return budget
        if isinstance(budget, str):
            envelope = self._presets.get(budget.strip().lower())
            if envelope is None:
                allowed = ", ".join(sorted(self._presets))
                raise ConfigError(f"unknown budget preset {budget!r}; expected one of: {allowed}")
            return envelope
        if isinstance(budget, Mapping):
            return BudgetEnvelope.from_partial(budget, base=self._presets[self._default_preset])
        raise ConfigError(f"unsupported budget specification: {type(budget).__name__}")

    def create_envelope(
        self,
        budget: str | Mapping[str, object] | BudgetEnvelope | None = None,
    ) -> BudgetSession:
        envelope = self.resolve_envelope(budget)
        session = BudgetSession(envelope=envelope, started_at_ms=self._now_ms())
        self._logger.debug(
            "budget_envelope_created",
            session_id=session.id,
            preset=budget if isinstance(budget, str) else None,
            envelope=envelope.to_dict(),
        )
        return session

    def create_sub_envelope(self, parent: BudgetSession, share: float) -> BudgetSession:
        """Carve a child session out of ``share`` of the parent's remaining budget.

        Every later deduction on the child is mirrored into the parent.
        """

        clamped = max(0.0, min(1.0, float(share)))
        remaining = self.get_usage(parent)
        parent_envelope = parent.envelope

        energy_limit: float | None = None
        if parent_envelope.max_energy_wh is not None:
            energy_limit = max(0.0, remaining.energy_remaining or 0.0) * clamped
        carbon_limit: float | None = None
        if parent_envelope.max_carbon_grams is not None:
            carbon_limit = max(0.0, remaining.carbon_remaining or 0.0) * clamped

        envelope = BudgetEnvelope(
            max_tokens=_floor_share(remaining.tokens_remaining, clamped),
            max_latency_ms=max(0.0, remaining.latency_remaining) * clamped,
            max_tool_calls=int(_floor_share(remaining.tool_calls_remaining, clamped)),
            max_escalations=max(1, int(_floor_share(remaining.escalations_remaining, clamped))),
            cost_ceiling_usd=max(0.0, remaining.cost_remaining) * clamped,
            max_energy_wh=energy_limit,
            max_carbon_grams=carbon_limit,
        )
        child = BudgetSession(envelope=envelope, parent=parent, started_at_ms=self._now_ms())
        self._logger.debug(
            "budget_sub_envelope_created",
            session_id=child.id,
            parent_session_id=parent.id,
            share=clamped,
            envelope=envelope.to_dict(),
        )
        return child

    def deduct(
        self,
        session: BudgetSession,
        tokens_used: int = 0,
        cost_usd: float = 0.0,
        latency_ms: float = 0.0,
        tool_calls_delta: int = 0,
        escalations_delta: int = 0,
    ) -> None:
        """Add to running usage. Purely additive; never raises.

        Negative, NaN or non-numeric deltas count as zero and are logged.
        """

        tokens_used = self._delta(session, "tokens_used", tokens_used)
        cost_usd = self._delta(session, "cost_usd", cost_usd)
        latency_ms = self._delta(session, "latency_ms", latency_ms)
        tool_calls_delta = self._delta(session, "tool_calls_delta", tool_calls_delta)
        escalations_delta = self._delta(session, "escalations_delta", escalations_delta)

        with _locked(session) as chain:
            for index, target in enumerate(chain):
                target.tokens_used += tokens_used
                target.cost_usd += cost_usd
                target.tool_calls_used += tool_calls_delta
                target.escalations_used += escalations_delta
                if index == 0:
                    target.latency_ms += latency_ms

    def _delta(self, session: BudgetSession, name: str, value: object) -> Any:
        if (
            not isinstance(value, bool)
            and isinstance(value, (int, float))
            and not math.isnan(value)
            and value >= 0
        ):
            return value
        self._logger.warning(
            "budget_delta_clamped", session_id=session.id, field=name, value=repr(value)
        )
        return 0

    def deduct_tool_call(self, session: BudgetSession, *, latency_ms: float = 0.0) -> None:
        self.deduct(session, latency_ms=latency_ms, tool_calls_delta=1)

    def deduct_escalation(self, session: BudgetSession) -> None:
        self.deduct(session, escalations_delta=1)

    def deduct_energy(
        self,
        session: BudgetSession,
        model_id: str,
        token_usage: TokenUsage,
        energy_config: EnergyConfig,
    ) -> tuple[float, float]:
        """Accumulate energy and carbon for one model call; returns the contribution."""

        if not energy_config.enabled:
            return (0.0, 0.0)
        catalog = self._catalog()
        prompt_tokens = token_usage.prompt_tokens
        completion_tokens = token_usage.completion_tokens
        energy_wh = catalog.calculate_energy(model_id, prompt_tokens, completion_tokens)
        carbon_grams = calculate_carbon(energy_wh, catalog.energy_source(model_id), energy_config)

        with _locked(session) as chain:
            for target in chain:
                target.energy_wh += energy_wh
                target.carbon_grams += carbon_grams
                target.total_input_tokens += prompt_tokens
                target.total_output_tokens += completion_tokens
        return (energy_wh, carbon_grams)

    def check_budget(self, session: BudgetSession) -> None:
        """Raise :class:`BudgetExhaustedError` for the first exhausted dimension."""

        usage = self.get_usage(session)
        dimension = _first_exhausted(session.envelope, usage)
        if dimension is None:
            return
        self._logger.warning(
            "budget_exhausted",
            session_id=session.id,
            dimension=dimension,
            usage=usage.to_dict(),
        )
        raise BudgetExhaustedError(dimension, usage)

    def is_exhausted(self, session: BudgetSession) -> str | None:
        """Return the first exhausted dimension without raising."""

        return _first_exhausted(session.envelope, self.get_usage(session))

    def can_afford_escalation(self, session: BudgetSession) -> bool:
        with session._lock:
            return session.escalations_used < session.envelope.max_escalations

    def can_afford_tool_call(self, session: BudgetSession) -> bool:
        with session._lock:
            return session.tool_calls_used < session.envelope.max_tool_calls

    def get_usage(self, session: BudgetSession) -> BudgetUsage:
        envelope = session.envelope
        with session._lock:
            return BudgetUsage(
                tokens_used=session.tokens_used,
                tokens_remaining=envelope.max_tokens - session.tokens_used,
                cost_usd=session.cost_usd,
                cost_remaining=envelope.cost_ceiling_usd - session.cost_usd,
                latency_ms=session.latency_ms,
                latency_remaining=envelope.max_latency_ms - session.latency_ms,
                tool_calls_used=session.tool_calls_used,
                tool_calls_remaining=envelope.max_tool_calls - session.tool_calls_used,
                escalations_used=session.escalations_used,
                escalations_remaining=envelope.max_escalations - session.escalations_used,
                energy_wh=session.energy_wh,
                energy_remaining=(
                    envelope.max_energy_wh - session.energy_wh
                    if envelope.max_energy_wh is not None
                    else None
                ),
                carbon_grams=session.carbon_grams,
                carbon_remaining=(
                    envelope.max_carbon_grams - session.carbon_grams
                    if envelope.max_carbon_grams is not None
                    else None
                ),
                elapsed_ms=max(0.0, self._now_ms() - session.started_at_ms),
            )

    def get_energy_totals(self, session: BudgetSession) -> EnergyTotals:
        with session._lock:
            return EnergyTotals(
                total_input_tokens=session.total_input_tokens,
                total_output_tokens=session.total_output_tokens,
                energy_wh=session.energy_wh,
                carbon_grams=session.carbon_grams,
            )

    def checkpoint(self, session: BudgetSession, label: str) -> BudgetCheckpoint:
        snapshot = BudgetCheckpoint(
            label=label,
            timestamp=self._now_ms(),
            usage=self.get_usage(session),
        )
        with session._lock:
            session.checkpoints.append(snapshot)
        self._logger.debug(
            "budget_checkpoint",
            session_id=session.id,
            label=label,
            tokens_used=snapshot.usage.tokens_used,
            cost_usd=snapshot.usage.cost_usd,
        )
        return snapshot

    def _catalog(self) -> ModelCatalog:
        if self._model_catalog is None:
            self._model_catalog = load_model_catalog()
        return self._model_catalog

    def _now_ms(self) -> float:
        return self._clock() * 1000.0


@contextmanager
def _locked(session: BudgetSession) -> Iterator[list[BudgetSession]]:
    # Locks are always taken child-first, so nested sessions cannot deadlock.
    chain = session.lineage()
    with ExitStack() as stack:
        for target in chain:
            stack.enter_context(target._lock)
        yield chain


def _first_exhausted(envelope: BudgetEnvelope, usage: BudgetUsage) -> str | None:
    for dimension in BUDGET_DIMENSIONS:
        limit = envelope.limit_for(dimension)
        if limit is None:
            continue
        if usage.used_for(dimension) > limit:
            return dimension
    return None


def _floor_share(remaining: float, share: float) -> float:
    if math.isinf(remaining):
        return math.inf
    return float(math.floor(max(0.0, remaining) * share))


__all__ = [
    "BUDGET_PRESETS",
    "BudgetCheckpoint",
    "BudgetEnvelope",
    "BudgetManager",
    "BudgetSession",
    "BudgetUsage",
    "EnergyTotals",
]
