"""
Agent memory collaborator.

The engine reads facts, preferences, procedures and known failure patterns while
specifying and planning a task, and writes one episode per finished task plus a
failure record per failed tool call. Storage and decay internals belong to the
memory backend; :class:`InMemoryAgentMemory` is a process-local implementation used
by default and in tests.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class MemoryFact:
    key: str
    value: object
    category: str = "general"
    source: str = "user"
    confidence: float = 1.0


@dataclass(frozen=True, slots=True)
class MemoryPreference:
    key: str
    value: object
    learned_from: str = "user"


@dataclass(frozen=True, slots=True)
class Procedure:
    name: str
    description: str
    steps: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MemoryEpisode:
    task_id: str
    summary: str
    outcome: str
    tools_used: tuple[str, ...]
    tags: tuple[str, ...] = ()
    recorded_at: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True, slots=True)
class FailurePattern:
    tool_name: str
    error: str
    occurrences: int = 1

    def describe(self) -> str:
        return f"{self.tool_name}: {self.error} (seen {self.occurrences}x)"


@runtime_checkable
class AgentMemory(Protocol):
    async def get_fact(self, key: str) -> MemoryFact | None: ...

    async def get_preference(self, key: str) -> MemoryPreference | None: ...

    async def find_procedure(self, query: str) -> Procedure | None: ...

    async def record_episode(
        self,
        task_id: str,
        summary: str,
        outcome: str,
        tools_used: Sequence[str],
        tags: Sequence[str] | None = None,
    ) -> MemoryEpisode: ...

    async def failure_patterns(self) -> list[FailurePattern]: ...

    async def record_failure(self, tool_name: str, error: str) -> None: ...


class InMemoryAgentMemory:
    """Process-local memory with bounded episode history."""

    def __init__(self, *, max_episodes: int = 500, max_error_chars: int = 200) -> None:
        if max_episodes <= 0:
            raise ValueError("max_episodes must be > 0")
        self._facts: dict[str, MemoryFact] = {}
        self._preferences: dict[str, MemoryPreference] = {}
        self._procedures: list[Procedure] = []
        self._episodes: deque[MemoryEpisode] = deque(maxlen=max_episodes)
        self._failures: dict[tuple[str, str], int] = {}
        self._max_error_chars = max_error_chars
        self._lock = asyncio.Lock()

    async def store_fact(
        self,
        key: str,
        value: object,
        *,
        category: str = "general",
        source: str = "user",
    ) -> MemoryFact:
        fact = MemoryFact(key=key, value=value, category=category, source=source)
        async with self._lock:
            self._facts[key] = fact
        return fact

    async def get_fact(self, key: str) -> MemoryFact | None:
        return self._facts.get(key)

    async def facts(self) -> list[MemoryFact]:
        return list(self._facts.values())

    async def set_preference(
        self, key: str, value: object, *, learned_from: str = "user"
    ) -> MemoryPreference:
        preference = MemoryPreference(key=key, value=value, learned_from=learned_from)
        async with self._lock:
            self._preferences[key] = preference
        return preference

    async def get_preference(self, key: str) -> MemoryPreference | None:
        return self._preferences.get(key)

    async def add_procedure(self, procedure: Procedure) -> None:
        async with self._lock:
            self._procedures.append(procedure)

    async def find_procedure(self, query: str) -> Procedure | None:
        """Best keyword overlap between ``query`` and a procedure's name, description and tags."""

        words = {word for word in query.lower().split() if len(word) > 2}
        if not words:
            return None
        best: Procedure | None = None
        best_score = 0
        for procedure in self._procedures:
            haystack = " ".join(
                [procedure.name, procedure.description, *procedure.tags]
            ).lower()
            score = sum(1 for word in words if word in haystack)
            if score > best_score:
                best, best_score = procedure, score
        return best

    async def record_episode(
        self,
        task_id: str,
        summary: str,
        outcome: str,
        tools_used: Sequence[str],
        tags: Sequence[str] | None = None,
    ) -> MemoryEpisode:
        episode = MemoryEpisode(
            task_id=task_id,
            summary=summary,
            outcome=outcome,
            tools_used=tuple(tools_used),
            tags=tuple(tags or ()),
        )
        async with self._lock:
            self._episodes.append(episode)
        return episode

    async def recent_episodes(self, limit: int = 10) -> list[MemoryEpisode]:
        return list(self._episodes)[-limit:][::-1]

    async def failure_patterns(self) -> list[FailurePattern]:
        patterns = [
            FailurePattern(tool_name=tool_name, error=error, occurrences=count)
            for (tool_name, error), count in self._failures.items()
        ]
        return sorted(patterns, key=lambda item: (-item.occurrences, item.tool_name))

    async def record_failure(self, tool_name: str, error: str) -> None:
        key = (tool_name, error[: self._max_error_chars])
        async with self._lock:
            self._failures[key] = self._failures.get(key, 0) + 1


__all__ = [
    "AgentMemory",
    "FailurePattern",
    "InMemoryAgentMemory",
    "MemoryEpisode",
    "MemoryFact",
    "MemoryPreference",
    "Procedure",
]
