"""Provider contract, error taxonomy and retry helpers shared by all model adapters."""

from joule_orchestrator.synthesis_plane.providers.base import (
    ChatMessage,
    ModelInfo,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ModelTier,
    ProviderError,
    ProviderRegistry,
    TokenUsage,
)

__all__ = [
    "ChatMessage",
    "ModelInfo",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "ModelTier",
    "ProviderError",
    "ProviderRegistry",
    "TokenUsage",
]
