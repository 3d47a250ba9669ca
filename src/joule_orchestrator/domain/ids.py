"""Prefixed, time-sortable identifiers for tasks, sessions, traces and crew runs.

An id reads ``<kind>-<ulid>``. The ULID part is 48 bits of epoch milliseconds followed
by 80 random bits in Crockford base32, so ids of one kind sort by creation time and a
trace's events can be ordered from their ids alone.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_CHARS: Final[int] = 26
MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BYTES: Final[int] = 10
_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(ALPHABET)}


class IdKind(StrEnum):
    TASK = "task"
    RESULT = "res"
    SESSION = "env"
    TRACE = "trace"
    SPAN = "span"
    EVENT = "evt"
    CREW_RUN = "crew"
    SUBTASK = "sub"


@dataclass(frozen=True, slots=True)
class ParsedId:
    kind: IdKind
    timestamp_ms: int
    ulid: str


def new_id(
    kind: IdKind,
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] = secrets.token_bytes,
) -> str:
    """Mint ``<kind>-<ulid>``; ``timestamp_ms`` and ``randbytes`` are for deterministic tests."""

    now = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(now, bool) or not isinstance(now, int) or not 0 <= now <= MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range 0..{MAX_TIMESTAMP_MS}: {now!r}")
    entropy = bytes(randbytes(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")
    value = (now << 80) | int.from_bytes(entropy, "big")
    chars = []
    for _ in range(ULID_CHARS):
        chars.append(ALPHABET[value & 0x1F])
        value >>= 5
    return f"{IdKind(kind).value}-{''.join(reversed(chars))}"


def parse_id(value: str, kind: IdKind | None = None) -> ParsedId:
    """Split an id into kind, creation time and ULID; ``kind`` pins the expected prefix."""

    if not isinstance(value, str) or "-" not in value:
        raise ValueError(f"not a prefixed id: {value!r}")
    prefix, ulid = value.split("-", 1)
    try:
        parsed_kind = IdKind(prefix)
    except ValueError:
        raise ValueError(f"unknown id kind {prefix!r} in {value!r}") from None
    if kind is not None and parsed_kind is not kind:
        raise ValueError(f"expected a {IdKind(kind).value} id, got {value!r}")
    if len(ulid) != ULID_CHARS:
        raise ValueError(f"ULID part must be {ULID_CHARS} characters: {value!r}")
    decoded = 0
    for position, char in enumerate(ulid.upper()):
        digit = _DIGITS.get(char)
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {position}")
        decoded = (decoded << 5) | digit
    if decoded >> 128:
        raise ValueError(f"ULID part overflows 128 bits: {value!r}")
    return ParsedId(kind=parsed_kind, timestamp_ms=decoded >> 80, ulid=ulid.upper())


def generate_task_id() -> str:
    return new_id(IdKind.TASK)


def generate_result_id() -> str:
    return new_id(IdKind.RESULT)


def generate_session_id() -> str:
    return new_id(IdKind.SESSION)


def generate_trace_id() -> str:
    return new_id(IdKind.TRACE)


def generate_span_id() -> str:
    return new_id(IdKind.SPAN)


def generate_event_id() -> str:
    return new_id(IdKind.EVENT)


def generate_crew_run_id() -> str:
    return new_id(IdKind.CREW_RUN)


def generate_subtask_id() -> str:
    return new_id(IdKind.SUBTASK)


__all__ = [
    "ALPHABET",
    "IdKind",
    "MAX_TIMESTAMP_MS",
    "ParsedId",
    "ULID_CHARS",
    "generate_crew_run_id",
    "generate_event_id",
    "generate_result_id",
    "generate_session_id",
    "generate_span_id",
    "generate_subtask_id",
    "generate_task_id",
    "generate_trace_id",
    "new_id",
    "parse_id",
]
