"""
Provider base models and shared utilities.

Abstract model-provider interface plus the provider-agnostic request/response records
the router and engine exchange with it. Concrete providers (local Ollama, Anthropic,
OpenAI, Google) subclass :class:`ModelProvider` and register with a
:class:`ProviderRegistry`; the router selects among them by explicit priority lists.

Transport failures are normalized into the :class:`ProviderError` taxonomy so retry
and failover decisions depend only on ``retryable`` and never on vendor SDK types.
"""

from __future__ import annotations

import abc
import asyncio
import random as random_module
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeAlias, TypeVar

from joule_orchestrator.synthesis_plane.model_catalog import ModelCatalog, load_model_catalog

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

_VALID_ROLES = frozenset({"system", "user", "assistant"})
_VALID_FINISH_REASONS = frozenset({"stop", "length", "error"})


class ModelTier(StrEnum):
    SLM = "slm"
    LLM = "llm"

    @property
    def other(self) -> ModelTier:
        return ModelTier.LLM if self is ModelTier.SLM else ModelTier.SLM


def _validate_non_empty_str(value: str, field_name: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip() if strip else value
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_non_negative(value: float, field_name: str) -> None:
    if value < 0:
        raise ValueError(f"{field_name} must be >= 0")


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise ValueError(f"ChatMessage.role must be one of {sorted(_VALID_ROLES)}")
        if not isinstance(self.content, str):
            raise TypeError("ChatMessage.content must be a string")

    def to_dict(self) -> dict[str, object]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int | None = None

    def __post_init__(self) -> None:
        _validate_non_negative(self.prompt_tokens, "TokenUsage.prompt_tokens")
        _validate_non_negative(self.completion_tokens, "TokenUsage.completion_tokens")
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)
        else:
            _validate_non_negative(self.total_tokens, "TokenUsage.total_tokens")

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=(self.total_tokens or 0) + (other.total_tokens or 0),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class ModelRequest:
    """Provider-agnostic chat request."""

    model: str
    provider: str
    tier: ModelTier
    messages: tuple[ChatMessage, ...]
    system: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    response_format: str = "text"

    def __post_init__(self) -> None:
        object.__setattr__(self, "model", _validate_non_empty_str(self.model, "ModelRequest.model"))
        object.__setattr__(
            self, "provider", _validate_non_empty_str(self.provider, "ModelRequest.provider")
        )
        object.__setattr__(self, "tier", ModelTier(self.tier))
        object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages:
            raise ValueError("ModelRequest.messages cannot be empty")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("ModelRequest.max_tokens must be > 0")
        if self.response_format not in {"text", "json"}:
            raise ValueError("ModelRequest.response_format must be 'text' or 'json'")

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "provider": self.provider,
            "tier": self.tier.value,
            "messages": [message.to_dict() for message in self.messages],
            "response_format": self.response_format,
        }
        if self.system is not None:
            payload["system"] = self.system
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return payload


@dataclass(frozen=True, slots=True)
class ModelResponse:
    """Normalized provider response with accounting fields."""

    model: str
    provider: str
    tier: ModelTier
    content: str
    token_usage: TokenUsage
    latency_ms: float = 0.0
    cost_usd: float = 0.0
    finish_reason: str = "stop"
    confidence: float | None = None
    energy_wh: float | None = None
    carbon_grams: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", ModelTier(self.tier))
        _validate_non_negative(self.latency_ms, "ModelResponse.latency_ms")
        _validate_non_negative(self.cost_usd, "ModelResponse.cost_usd")
        if self.finish_reason not in _VALID_FINISH_REASONS:
            raise ValueError(f"ModelResponse.finish_reason must be one of {sorted(_VALID_FINISH_REASONS)}")

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "provider": self.provider,
            "tier": self.tier.value,
            "content": self.content,
            "token_usage": self.token_usage.to_dict(),
            "latency_ms": self.latency_ms,
            "cost_usd": self.cost_usd,
            "finish_reason": self.finish_reason,
        }
        for key in ("confidence", "energy_wh", "carbon_grams"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class StreamChunk:
    content: str
    done: bool = False
    token_usage: TokenUsage | None = None
    finish_reason: str | None = None


@dataclass(frozen=True, slots=True)
class ModelInfo:
    id: str
    name: str
    tier: ModelTier
    context_window: int
    cost_per_input_token: float
    cost_per_output_token: float

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "tier": ModelTier(self.tier).value,
            "context_window": self.context_window,
            "cost_per_input_token": self.cost_per_input_token,
            "cost_per_output_token": self.cost_per_output_token,
        }


class ModelProvider(abc.ABC):
    """Abstract chat-model adapter.

    ``list_models`` and ``estimate_cost`` default to the bundled catalog entries for
    ``name``; adapters that discover models at runtime override them.
    """

    name: str = "provider"
    supported_tiers: tuple[ModelTier, ...] = (ModelTier.SLM,)

    def __init__(self, *, model_catalog: ModelCatalog | None = None) -> None:
        self._model_catalog = model_catalog if model_catalog is not None else load_model_catalog()

    def supports(self, tier: ModelTier) -> bool:
        return tier in self.supported_tiers

    @abc.abstractmethod
    async def is_available(self) -> bool:
        """Return whether the provider can currently serve requests."""

    @abc.abstractmethod
    async def chat(self, request: ModelRequest) -> ModelResponse:
        """Send one chat request and return a normalized response."""

    @abc.abstractmethod
    def chat_stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        """Stream a chat response; the final chunk has ``done=True`` and carries usage."""

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=entry.model,
                name=entry.model,
                tier=ModelTier(entry.tier),
                context_window=entry.context_window,
                cost_per_input_token=entry.pricing.input_per_million_usd / 1_000_000,
                cost_per_output_token=entry.pricing.output_per_million_usd / 1_000_000,
            )
            for entry in self._model_catalog.models_for(self.name)
        ]

    def estimate_cost(self, tokens: int, model: str) -> float:
        """Estimate USD cost assuming ``tokens`` in and the same number out."""

        if tokens < 0:
            raise ValueError("tokens must be >= 0")
        normalized = _validate_non_empty_str(model, "model")
        return self._model_catalog.calculate_cost(normalized, tokens, tokens)


class ProviderError(RuntimeError):
    """Base normalized provider error with machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.provider = _validate_non_empty_str(provider, "provider")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = " ".join(str(detail).split()) or "no detail"
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"provider={self.provider}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderNotAvailableError(ProviderError):
    """No registered provider can serve the request (or the named one is down)."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="unavailable", detail=detail, retryable=False)


class ProviderAuthenticationError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="auth",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderRateLimitError(ProviderError):
    """Provider rate-limit responses (retryable)."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = 429,
    ) -> None:
        super().__init__(
            provider=provider,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class ProviderTimeoutError(ProviderError):
    """Provider timeout failures (retryable)."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class ProviderServiceError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class ProviderResponseError(ProviderError):
    """Raised when a provider response cannot be normalized."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def map_provider_exception(exc: Exception, *, provider: str) -> ProviderError:
    """Normalize an arbitrary adapter exception into the provider taxonomy."""

    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, TimeoutError):
        return ProviderTimeoutError(str(exc) or "request timed out", provider=provider)
    if isinstance(exc, ConnectionError):
        return ProviderServiceError(f"{type(exc).__name__}: {exc}", provider=provider)
    return ProviderServiceError(
        f"{type(exc).__name__}: {exc}",
        provider=provider,
        retryable=False,
    )


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.25
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return the bounded backoff delay for retry attempt N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)
    if config.jitter_ratio == 0.0:
        return bounded_delay

    random_value = random_fn()
    if not (0.0 <= random_value <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")
    jitter = ((random_value * 2.0) - 1.0) * bounded_delay * config.jitter_ratio
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


_ResultT = TypeVar("_ResultT")
RetryCallback: TypeAlias = Callable[[int, ProviderError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    map_exception: Callable[[Exception], ProviderError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _ResultT:
    """Run an async operation, retrying only errors whose mapping is retryable."""

    retry_count = 0
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            mapped = map_exception(exc)
            if not isinstance(mapped, ProviderError):
                raise TypeError("map_exception must return ProviderError") from exc

            if not mapped.retryable or retry_count >= backoff.max_retries:
                if mapped is exc:
                    raise
                raise mapped from exc

            retry_count += 1
            delay_seconds = compute_backoff_delay(
                retry_number=retry_count,
                config=backoff,
                random_fn=random_fn,
            )
            if on_retry is not None:
                on_retry(retry_count, mapped, delay_seconds)
            await sleep(delay_seconds)


class ProviderRegistry:
    """Registry of provider adapters keyed by lower-cased provider name."""

    def __init__(self, providers: Sequence[ModelProvider] = ()) -> None:
        self._providers: dict[str, ModelProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ModelProvider, *, overwrite: bool = False) -> None:
        if not isinstance(provider, ModelProvider):
            raise TypeError("provider must be a ModelProvider")
        normalized = _validate_non_empty_str(provider.name, "provider.name").lower()
        if normalized in self._providers and not overwrite:
            raise ValueError(f"provider already registered: {normalized}")
        self._providers[normalized] = provider

    def unregister(self, name: str) -> None:
        normalized = _validate_non_empty_str(name, "name").lower()
        self._providers.pop(normalized, None)

    def is_registered(self, name: str) -> bool:
        normalized = _validate_non_empty_str(name, "name").lower()
        return normalized in self._providers

    def list(self) -> tuple[str, ...]:
        return tuple(sorted(self._providers))

    def find(self, name: str) -> ModelProvider | None:
        return self._providers.get(_validate_non_empty_str(name, "name").lower())

    def get(self, name: str) -> ModelProvider:
        normalized = _validate_non_empty_str(name, "name").lower()
        provider = self._providers.get(normalized)
        if provider is None:
            raise ProviderNotAvailableError("provider is not registered", provider=normalized)
        return provider

    async def available(self, tier: ModelTier) -> list[ModelProvider]:
        """Registered providers supporting ``tier`` that report themselves available."""

        found: list[ModelProvider] = []
        for provider in self._providers.values():
            if provider.supports(tier) and await provider.is_available():
                found.append(provider)
        return found


__all__ = [
    "BackoffConfig",
    "ChatMessage",
    "ModelInfo",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "ModelTier",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderNotAvailableError",
    "ProviderRateLimitError",
    "ProviderRegistry",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "StreamChunk",
    "TokenUsage",
    "compute_backoff_delay",
    "is_retryable_error",
    "map_provider_exception",
    "run_with_retries",
]
