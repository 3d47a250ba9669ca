"""
Tool registry and invocation protocol.

Tools are declared with a static input spec (required/optional keys and their JSON
types) that is validated at the boundary before the handler runs. Invocation never
raises for handler failures: errors, timeouts and invalid arguments come back as a
failed :class:`ToolResult`. Only an unknown tool name raises
:class:`~joule_orchestrator.domain.errors.ToolNotFoundError`.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Final, TypeAlias

import structlog

from joule_orchestrator.domain.errors import ToolExecutionError, ToolNotFoundError

ToolHandler: TypeAlias = Callable[[Mapping[str, object]], Awaitable[object] | object]

DEFAULT_TOOL_TIMEOUT_MS: Final[float] = 30_000.0

_ARG_TYPES: Final[Mapping[str, tuple[type, ...]]] = MappingProxyType(
    {
        "string": (str,),
        "integer": (int,),
        "number": (int, float),
        "boolean": (bool,),
        "array": (list, tuple),
        "object": (dict, Mapping),
        "any": (object,),
    }
)


def _validate_text(value: str, field_name: str, *, max_len: int = 2048) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    if len(normalized) > max_len:
        raise ValueError(f"{field_name} must be <= {max_len} characters")
    return normalized


@dataclass(frozen=True, slots=True)
class ToolParameter:
    name: str
    type: str = "any"
    required: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_text(self.name, "ToolParameter.name", max_len=128))
        normalized_type = _validate_text(self.type, "ToolParameter.type", max_len=32).lower()
        if normalized_type not in _ARG_TYPES:
            allowed = ", ".join(sorted(_ARG_TYPES))
            raise ValueError(f"ToolParameter.type must be one of: {allowed}")
        object.__setattr__(self, "type", normalized_type)

    def accepts(self, value: object) -> bool:
        if self.type == "any":
            return True
        # bool is an int subclass; keep the JSON types distinct.
        if isinstance(value, bool) and self.type in {"integer", "number"}:
            return False
        return isinstance(value, _ARG_TYPES[self.type])

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Declared tool: name, input spec and the handler that runs it."""

    name: str
    description: str
    execute: ToolHandler
    input_schema: tuple[ToolParameter, ...] = ()
    timeout_ms: float = DEFAULT_TOOL_TIMEOUT_MS
    tags: tuple[str, ...] = ()
    requires_confirmation: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_text(self.name, "ToolSpec.name", max_len=128))
        object.__setattr__(
            self, "description", _validate_text(self.description, "ToolSpec.description")
        )
        if not callable(self.execute):
            raise TypeError("ToolSpec.execute must be callable")
        parameters = tuple(self.input_schema)
        names = [parameter.name for parameter in parameters]
        if len(names) != len(set(names)):
            raise ValueError(f"ToolSpec.input_schema has duplicate parameters for {self.name!r}")
        object.__setattr__(self, "input_schema", parameters)
        if self.timeout_ms <= 0:
            raise ValueError("ToolSpec.timeout_ms must be > 0")
        object.__setattr__(self, "tags", tuple(self.tags))

    @property
    def required_args(self) -> tuple[str, ...]:
        return tuple(parameter.name for parameter in self.input_schema if parameter.required)

    def validate_args(self, args: Mapping[str, object]) -> tuple[str, ...]:
        """Return validation errors for ``args``; empty when valid."""

        errors: list[str] = []
        for parameter in self.input_schema:
            if parameter.name not in args:
                if parameter.required:
                    errors.append(f"missing required argument {parameter.name!r}")
                continue
            value = args[parameter.name]
            if not parameter.accepts(value):
                errors.append(
                    f"argument {parameter.name!r} must be of type {parameter.type}, "
                    f"got {type(value).__name__}"
                )
        return tuple(errors)

    def describe(self) -> str:
        if not self.input_schema:
            return self.description
        rendered = ", ".join(
            (
                f"{parameter.name} ({parameter.type}"
                f"{'' if parameter.required else ', optional'})"
                f"{': ' + parameter.description if parameter.description else ''}"
            )
            for parameter in self.input_schema
        )
        return f"{self.description} | Args: {rendered}"


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_name: str
    success: bool
    output: object = None
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "tool_name": self.tool_name,
            "success": self.success,
            "duration_ms": self.duration_ms,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ToolRegistry:
    """Name-keyed tool registry with validated, time-bounded invocation."""

    def __init__(
        self,
        tools: Iterable[ToolSpec] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolSpec, *, overwrite: bool = False) -> None:
        if not isinstance(tool, ToolSpec):
            raise TypeError("tool must be a ToolSpec")
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def require(self, name: str) -> ToolSpec:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def list(self) -> tuple[ToolSpec, ...]:
        return tuple(self._tools.values())

    def list_names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def describe(self) -> list[dict[str, str]]:
        """Name/description pairs, with argument hints, for planner prompts."""

        return [{"name": tool.name, "description": tool.describe()} for tool in self._tools.values()]

    def validate_args(self, name: str, args: Mapping[str, object]) -> tuple[str, ...]:
        return self.require(name).validate_args(args)

    def requires_confirmation(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.requires_confirmation

    def filtered(self, allowed: Sequence[str] | None) -> ToolRegistry:
        """A registry holding only ``allowed`` tools (all tools when empty or ``None``)."""

        if not allowed:
            selected: Iterable[ToolSpec] = self._tools.values()
        else:
            selected = [self._tools[name] for name in allowed if name in self._tools]
        return ToolRegistry(selected, clock=self._clock, logger=self._logger)

    async def execute(
        self,
        tool_name: str,
        args: Mapping[str, object],
        timeout_ms: float | None = None,
    ) -> ToolResult:
        tool = self.require(tool_name)
        errors = tool.validate_args(args)
        if errors:
            return ToolResult(
                tool_name=tool_name,
                success=False,
                error=f"Invalid arguments for {tool_name}: {'; '.join(errors)}",
            )

        budget_ms = timeout_ms if timeout_ms is not None else tool.timeout_ms
        started = self._clock()
        try:
            output = await asyncio.wait_for(_invoke(tool.execute, args), timeout=budget_ms / 1000)
        except TimeoutError:
            result = ToolResult(
                tool_name=tool_name,
                success=False,
                error=f"Tool timed out after {budget_ms:g}ms",
                duration_ms=self._elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001
            result = ToolResult(
                tool_name=tool_name,
                success=False,
                error=str(ToolExecutionError(tool_name, exc)),
                duration_ms=self._elapsed_ms(started),
            )
        else:
            result = ToolResult(
                tool_name=tool_name,
                success=True,
                output=output,
                duration_ms=self._elapsed_ms(started),
            )

        self._logger.debug(
            "tool_executed",
            tool_name=tool_name,
            success=result.success,
            duration_ms=result.duration_ms,
            error=result.error,
        )
        return result

    def _elapsed_ms(self, started: float) -> float:
        return max(0.0, (self._clock() - started) * 1000.0)


async def _invoke(handler: ToolHandler, args: Mapping[str, object]) -> object:
    outcome = handler(dict(args))
    if inspect.isawaitable(outcome):
        return await outcome
    return outcome


__all__ = [
    "DEFAULT_TOOL_TIMEOUT_MS",
    "ToolHandler",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
]
