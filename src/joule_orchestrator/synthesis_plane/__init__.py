"""
Synthesis plane: provider adapters, model routing, dispatch, the tool registry and the
model energy catalog.

Providers are reached only through :class:`ModelDispatcher`, which asks the
:class:`AdaptiveRouter` for a tier and model and charges the budget session.
"""

from joule_orchestrator.synthesis_plane.dispatch import DispatchResult, ModelDispatcher
from joule_orchestrator.synthesis_plane.model_catalog import (
    EfficiencyReport,
    EnergyConfig,
    ModelCatalog,
    load_model_catalog,
)
from joule_orchestrator.synthesis_plane.router import (
    AdaptiveRouter,
    RoutingConfig,
    RoutingDecision,
    RoutingPurpose,
)
from joule_orchestrator.synthesis_plane.tools import ToolRegistry, ToolResult, ToolSpec

__all__ = [
    "AdaptiveRouter",
    "DispatchResult",
    "EfficiencyReport",
    "EnergyConfig",
    "ModelCatalog",
    "ModelDispatcher",
    "RoutingConfig",
    "RoutingDecision",
    "RoutingPurpose",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "load_model_catalog",
]
