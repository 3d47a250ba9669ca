"""Shared key/value board that crew agents publish their results to."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType

from joule_orchestrator.utils.concurrency import KeyedLock


class EntryStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BlackboardEntry:
    agent_id: str
    value: object = None
    status: EntryStatus | None = None
    metadata: Mapping[str, object] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "agent_id": self.agent_id,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.status is not None:
            payload["status"] = self.status.value
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


class Blackboard:
    """Last writer per key wins; writes to one key are serialized."""

    def __init__(self) -> None:
        self._entries: dict[str, BlackboardEntry] = {}
        self._locks = KeyedLock()

    async def write(
        self,
        key: str,
        value: object,
        *,
        agent_id: str | None = None,
        status: EntryStatus | str | None = EntryStatus.COMPLETED,
        metadata: Mapping[str, object] | None = None,
    ) -> BlackboardEntry:
        entry = BlackboardEntry(
            agent_id=agent_id if agent_id is not None else key,
            value=value,
            status=EntryStatus(status) if status is not None else None,
            metadata=dict(metadata) if metadata is not None else None,
        )
        async with self._locks.hold(key):
            self._entries[key] = entry
        return entry

    def read(self, key: str) -> BlackboardEntry | None:
        return self._entries.get(key)

    def has_value(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.value is not None

    def status_of(self, key: str) -> EntryStatus | None:
        entry = self._entries.get(key)
        return entry.status if entry is not None else None

    def entries(self) -> Mapping[str, BlackboardEntry]:
        return MappingProxyType(dict(self._entries))

    def select(self, keys: Iterable[str]) -> dict[str, BlackboardEntry]:
        return {key: self._entries[key] for key in keys if key in self._entries}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def to_dict(self) -> dict[str, object]:
        return {"entries": {key: entry.to_dict() for key, entry in self._entries.items()}}


def render_entries(entries: Mapping[str, BlackboardEntry], *, max_chars: int = 2000) -> str:
    """Completed entries with values, formatted as prompt context."""

    lines = []
    for key, entry in entries.items():
        if entry.value is None or entry.status is EntryStatus.RUNNING:
            continue
        text = entry.value if isinstance(entry.value, str) else repr(entry.value)
        lines.append(f"[{key}]: {text[:max_chars]}")
    return "\n\n".join(lines)


__all__ = ["Blackboard", "BlackboardEntry", "EntryStatus", "render_entries"]
