"""
Bundled model pricing and energy catalog.

Loads the repository-shipped ``model_catalog.json`` and exposes the cost, energy and
carbon arithmetic used by budgeting, routing and efficiency reporting. Lookups are
by model id; unknown models price and consume at zero, and rank as infinitely
inefficient.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType

from joule_orchestrator.constants import BASELINE_MODEL_ID

_PER_MILLION = 1_000_000


class EnergySource(StrEnum):
    """Where a model's energy estimate comes from; ``zero`` marks local inference."""

    ESTIMATED = "estimated"
    MEASURED = "measured"
    ZERO = "zero"


def _validate_non_empty_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


def _validate_non_negative_float(value: object, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{field_name} must be numeric")
    parsed = float(value)
    if parsed < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return parsed


def _as_mapping(value: object, field_name: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be an object")
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise TypeError(f"{field_name} keys must be strings")
        out[key] = item
    return out


def _as_sequence(value: object, field_name: str) -> Sequence[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return value
    raise TypeError(f"{field_name} must be an array")


@dataclass(frozen=True, slots=True)
class ModelPricing:
    input_per_million_usd: float
    output_per_million_usd: float

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "input_per_million_usd",
            _validate_non_negative_float(
                self.input_per_million_usd, "ModelPricing.input_per_million_usd"
            ),
        )
        object.__setattr__(
            self,
            "output_per_million_usd",
            _validate_non_negative_float(
                self.output_per_million_usd, "ModelPricing.output_per_million_usd"
            ),
        )

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens * self.input_per_million_usd
            + completion_tokens * self.output_per_million_usd
        ) / _PER_MILLION


@dataclass(frozen=True, slots=True)
class EnergyProfile:
    input_wh_per_million: float
    output_wh_per_million: float
    source: EnergySource = EnergySource.ESTIMATED

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "input_wh_per_million",
            _validate_non_negative_float(
                self.input_wh_per_million, "EnergyProfile.input_wh_per_million"
            ),
        )
        object.__setattr__(
            self,
            "output_wh_per_million",
            _validate_non_negative_float(
                self.output_wh_per_million, "EnergyProfile.output_wh_per_million"
            ),
        )
        object.__setattr__(self, "source", EnergySource(self.source))

    def energy_wh(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens * self.input_wh_per_million
            + completion_tokens * self.output_wh_per_million
        ) / _PER_MILLION

    @property
    def efficiency(self) -> float:
        return (self.input_wh_per_million + self.output_wh_per_million) / 2


@dataclass(frozen=True, slots=True)
class ModelEntry:
    """Catalog record for one provider model."""

    provider: str
    model: str
    tier: str
    context_window: int
    pricing: ModelPricing
    energy: EnergyProfile | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "provider", _validate_non_empty_str(self.provider, "ModelEntry.provider").lower()
        )
        object.__setattr__(self, "model", _validate_non_empty_str(self.model, "ModelEntry.model"))
        tier = _validate_non_empty_str(self.tier, "ModelEntry.tier").lower()
        if tier not in {"slm", "llm"}:
            raise ValueError(f"ModelEntry.tier must be 'slm' or 'llm', got {tier!r}")
        object.__setattr__(self, "tier", tier)
        if isinstance(self.context_window, bool) or self.context_window <= 0:
            raise ValueError("ModelEntry.context_window must be > 0")


@dataclass(frozen=True, slots=True)
class EnergyConfig:
    """Energy accounting and routing knobs; carbon intensities are gCO2 per kWh."""

    enabled: bool = True
    grid_carbon_intensity: float = 400.0
    local_model_carbon_intensity: float = 0.0
    include_in_routing: bool = False
    energy_weight: float = 0.3

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "grid_carbon_intensity",
            _validate_non_negative_float(
                self.grid_carbon_intensity, "EnergyConfig.grid_carbon_intensity"
            ),
        )
        object.__setattr__(
            self,
            "local_model_carbon_intensity",
            _validate_non_negative_float(
                self.local_model_carbon_intensity, "EnergyConfig.local_model_carbon_intensity"
            ),
        )
        weight = _validate_non_negative_float(self.energy_weight, "EnergyConfig.energy_weight")
        if weight > 1.0:
            raise ValueError("EnergyConfig.energy_weight must be <= 1.0")
        object.__setattr__(self, "energy_weight", weight)

    @property
    def routing_weight(self) -> float:
        return self.energy_weight if self.enabled else 0.0

    @classmethod
    def from_mapping(cls, section: Mapping[str, object]) -> EnergyConfig:
        defaults = cls()
        return cls(
            enabled=bool(section.get("enabled", defaults.enabled)),
            grid_carbon_intensity=_number(
                section.get("grid_carbon_intensity"), defaults.grid_carbon_intensity
            ),
            local_model_carbon_intensity=_number(
                section.get("local_model_carbon_intensity"),
                defaults.local_model_carbon_intensity,
            ),
            include_in_routing=bool(section.get("include_in_routing", defaults.include_in_routing)),
            energy_weight=_number(section.get("energy_weight"), defaults.energy_weight),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "grid_carbon_intensity": self.grid_carbon_intensity,
            "local_model_carbon_intensity": self.local_model_carbon_intensity,
            "include_in_routing": self.include_in_routing,
            "energy_weight": self.energy_weight,
        }


@dataclass(frozen=True, slots=True)
class EnergyTotals:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    energy_wh: float = 0.0
    carbon_grams: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "energy_wh": self.energy_wh,
            "carbon_grams": self.carbon_grams,
        }


@dataclass(frozen=True, slots=True)
class EfficiencyReport:
    """Actual energy/carbon of a run versus the same tokens on a baseline cloud model."""

    actual_energy_wh: float
    actual_carbon_grams: float
    baseline_energy_wh: float
    baseline_carbon_grams: float
    saved_energy_wh: float
    saved_carbon_grams: float
    savings_percent: float
    baseline_model: str

    def to_dict(self) -> dict[str, object]:
        return {
            "actual_energy_wh": self.actual_energy_wh,
            "actual_carbon_grams": self.actual_carbon_grams,
            "baseline_energy_wh": self.baseline_energy_wh,
            "baseline_carbon_grams": self.baseline_carbon_grams,
            "saved_energy_wh": self.saved_energy_wh,
            "saved_carbon_grams": self.saved_carbon_grams,
            "savings_percent": self.savings_percent,
            "baseline_model": self.baseline_model,
        }


@dataclass(frozen=True, slots=True)
class ModelCatalog:
    """Immutable model catalog with lookup by model id."""

    version: str
    last_updated: str
    models: tuple[ModelEntry, ...]
    _by_model: Mapping[str, ModelEntry] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "version", _validate_non_empty_str(self.version, "ModelCatalog.version")
        )
        object.__setattr__(
            self,
            "last_updated",
            _validate_non_empty_str(self.last_updated, "ModelCatalog.last_updated"),
        )
        if not self.models:
            raise ValueError("ModelCatalog.models cannot be empty")

        by_model: dict[str, ModelEntry] = {}
        for entry in self.models:
            if not isinstance(entry, ModelEntry):
                raise TypeError("ModelCatalog.models entries must be ModelEntry")
            if entry.model in by_model:
                raise ValueError(f"duplicate model catalog entry for model={entry.model!r}")
            by_model[entry.model] = entry
        object.__setattr__(self, "_by_model", MappingProxyType(by_model))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> ModelCatalog:
        if "version" not in payload:
            raise ValueError("version is required")
        if "last_updated" not in payload:
            raise ValueError("last_updated is required")

        parsed_models: list[ModelEntry] = []
        for index, item in enumerate(_as_sequence(payload.get("models"), "models")):
            item_map = _as_mapping(item, f"models[{index}]")
            pricing_map = _as_mapping(item_map.get("pricing", {}), f"models[{index}].pricing")
            energy_raw = item_map.get("energy")
            energy: EnergyProfile | None = None
            if energy_raw is not None:
                energy_map = _as_mapping(energy_raw, f"models[{index}].energy")
                energy = EnergyProfile(
                    input_wh_per_million=_validate_non_negative_float(
                        energy_map.get("input_wh_per_million", 0.0),
                        f"models[{index}].energy.input_wh_per_million",
                    ),
                    output_wh_per_million=_validate_non_negative_float(
                        energy_map.get("output_wh_per_million", 0.0),
                        f"models[{index}].energy.output_wh_per_million",
                    ),
                    source=EnergySource(str(energy_map.get("source", "estimated"))),
                )
            context_window = item_map.get("context_window", 8192)
            if isinstance(context_window, bool) or not isinstance(context_window, int):
                raise TypeError(f"models[{index}].context_window must be an integer")
            parsed_models.append(
                ModelEntry(
                    provider=_validate_non_empty_str(
                        item_map.get("provider"), f"models[{index}].provider"
                    ),
                    model=_validate_non_empty_str(item_map.get("model"), f"models[{index}].model"),
                    tier=_validate_non_empty_str(item_map.get("tier"), f"models[{index}].tier"),
                    context_window=context_window,
                    pricing=ModelPricing(
                        input_per_million_usd=_validate_non_negative_float(
                            pricing_map.get("input_per_million_usd", 0.0),
                            f"models[{index}].pricing.input_per_million_usd",
                        ),
                        output_per_million_usd=_validate_non_negative_float(
                            pricing_map.get("output_per_million_usd", 0.0),
                            f"models[{index}].pricing.output_per_million_usd",
                        ),
                    ),
                    energy=energy,
                )
            )

        return cls(
            version=_validate_non_empty_str(str(payload["version"]), "version"),
            last_updated=_validate_non_empty_str(str(payload["last_updated"]), "last_updated"),
            models=tuple(parsed_models),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ModelCatalog:
        candidate = Path(path).expanduser().resolve()
        try:
            raw_text = candidate.read_text(encoding="utf-8")
            payload = json.loads(_strip_leading_slash_comment_header(raw_text))
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid model catalog JSON in {candidate}: {exc}") from exc
        except OSError as exc:
            raise ValueError(f"unable to read model catalog file {candidate}: {exc}") from exc
        return cls.from_mapping(_as_mapping(payload, "catalog"))

    def get(self, model: str) -> ModelEntry | None:
        return self._by_model.get(model.strip())

    def require(self, model: str) -> ModelEntry:
        found = self.get(model)
        if found is None:
            raise KeyError(f"unknown model {model!r}")
        return found

    def models_for(self, provider: str, tier: str | None = None) -> tuple[ModelEntry, ...]:
        provider_key = provider.strip().lower()
        return tuple(
            entry
            for entry in self.models
            if entry.provider == provider_key and (tier is None or entry.tier == tier)
        )

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        _check_token_counts(prompt_tokens, completion_tokens)
        entry = self.get(model)
        if entry is None:
            return 0.0
        return entry.pricing.cost(prompt_tokens, completion_tokens)

    def calculate_energy(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        _check_token_counts(prompt_tokens, completion_tokens)
        entry = self.get(model)
        if entry is None or entry.energy is None:
            return 0.0
        return entry.energy.energy_wh(prompt_tokens, completion_tokens)

    def energy_source(self, model: str) -> EnergySource | None:
        entry = self.get(model)
        if entry is None or entry.energy is None:
            return None
        return entry.energy.source

    def energy_efficiency(self, model: str) -> float:
        entry = self.get(model)
        if entry is None or entry.energy is None:
            return math.inf
        return entry.energy.efficiency


def calculate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    catalog: ModelCatalog | None = None,
) -> float:
    """USD cost of a call; 0 for models missing from the catalog."""

    return _catalog(catalog).calculate_cost(model, prompt_tokens, completion_tokens)


def calculate_energy(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    catalog: ModelCatalog | None = None,
) -> float:
    """Energy in Wh of a call; 0 for models without an energy profile."""

    return _catalog(catalog).calculate_energy(model, prompt_tokens, completion_tokens)


def estimate_energy(
    model: str,
    estimated_prompt_tokens: int,
    estimated_completion_tokens: int,
    *,
    catalog: ModelCatalog | None = None,
) -> float:
    return _catalog(catalog).calculate_energy(
        model, estimated_prompt_tokens, estimated_completion_tokens
    )


def calculate_carbon(
    energy_wh: float,
    source: EnergySource | str | None,
    config: EnergyConfig,
) -> float:
    """Grams of CO2 for ``energy_wh``; local (``zero``) models use the local intensity."""

    intensity = (
        config.local_model_carbon_intensity
        if source is not None and EnergySource(source) is EnergySource.ZERO
        else config.grid_carbon_intensity
    )
    return (energy_wh / 1000) * intensity


def carbon_for_model(
    energy_wh: float,
    model: str,
    config: EnergyConfig,
    *,
    catalog: ModelCatalog | None = None,
) -> float:
    return calculate_carbon(energy_wh, _catalog(catalog).energy_source(model), config)


def energy_efficiency(model: str, *, catalog: ModelCatalog | None = None) -> float:
    """Mean Wh per million tokens; ``math.inf`` for unknown models."""

    return _catalog(catalog).energy_efficiency(model)


def build_efficiency_report(
    totals: EnergyTotals,
    config: EnergyConfig,
    *,
    baseline_model: str = BASELINE_MODEL_ID,
    catalog: ModelCatalog | None = None,
) -> EfficiencyReport:
    resolved = _catalog(catalog)
    baseline_energy = resolved.calculate_energy(
        baseline_model, totals.total_input_tokens, totals.total_output_tokens
    )
    baseline_carbon = calculate_carbon(
        baseline_energy, resolved.energy_source(baseline_model), config
    )
    saved_energy = baseline_energy - totals.energy_wh
    return EfficiencyReport(
        actual_energy_wh=totals.energy_wh,
        actual_carbon_grams=totals.carbon_grams,
        baseline_energy_wh=baseline_energy,
        baseline_carbon_grams=baseline_carbon,
        saved_energy_wh=saved_energy,
        saved_carbon_grams=baseline_carbon - totals.carbon_grams,
        savings_percent=(saved_energy / baseline_energy) * 100 if baseline_energy > 0 else 0.0,
        baseline_model=baseline_model,
    )


def _catalog(catalog: ModelCatalog | None) -> ModelCatalog:
    return catalog if catalog is not None else load_model_catalog()


def _check_token_counts(prompt_tokens: int, completion_tokens: int) -> None:
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("token counts must be >= 0")


def _number(value: object, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected number, got {type(value).__name__}")
    return float(value)


def _bundled_catalog_path() -> Path:
    return Path(__file__).resolve().with_name("model_catalog.json")


def _strip_leading_slash_comment_header(text: str) -> str:
    lines = text.lstrip("\ufeff").splitlines()
    index = 0
    while index < len(lines) and (
        not lines[index].strip() or lines[index].lstrip().startswith("//")
    ):
        index += 1
    return "\n".join(lines[index:])


@lru_cache(maxsize=8)
def load_model_catalog(path: str | Path | None = None) -> ModelCatalog:
    """Load the model catalog from disk with caching."""

    resolved = _bundled_catalog_path() if path is None else Path(path).expanduser().resolve()
    return ModelCatalog.from_file(resolved)


__all__ = [
    "EfficiencyReport",
    "EnergyConfig",
    "EnergyProfile",
    "EnergySource",
    "EnergyTotals",
    "ModelCatalog",
    "ModelEntry",
    "ModelPricing",
    "build_efficiency_report",
    "calculate_carbon",
    "calculate_cost",
    "calculate_energy",
    "carbon_for_model",
    "energy_efficiency",
    "estimate_energy",
    "load_model_catalog",
]
