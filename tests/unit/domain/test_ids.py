"""Unit tests for prefixed entity ids."""

from __future__ import annotations

import pytest

from joule_orchestrator.domain import ids
from joule_orchestrator.domain.ids import IdKind

pytestmark = pytest.mark.unit


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_ids_do_not_collide() -> None:
    generated = {ids.generate_trace_id() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_new_id_encodes_kind_and_timestamp() -> None:
    value = ids.new_id(IdKind.SESSION, timestamp_ms=123_456, randbytes=_ff_bytes)

    prefix, ulid = value.split("-")
    assert prefix == "env"
    assert len(ulid) == ids.ULID_CHARS
    assert set(ulid) <= set(ids.ALPHABET)
    parsed = ids.parse_id(value.lower(), IdKind.SESSION)
    assert parsed.kind is IdKind.SESSION
    assert parsed.timestamp_ms == 123_456
    assert parsed.ulid == ulid


def test_ids_of_one_kind_sort_by_creation_time() -> None:
    earlier = ids.new_id(IdKind.EVENT, timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.new_id(IdKind.EVENT, timestamp_ms=1_001, randbytes=_zero_bytes)

    assert earlier < later


@pytest.mark.parametrize(
    ("factory", "kind"),
    [
        (ids.generate_task_id, IdKind.TASK),
        (ids.generate_result_id, IdKind.RESULT),
        (ids.generate_session_id, IdKind.SESSION),
        (ids.generate_trace_id, IdKind.TRACE),
        (ids.generate_span_id, IdKind.SPAN),
        (ids.generate_event_id, IdKind.EVENT),
        (ids.generate_crew_run_id, IdKind.CREW_RUN),
        (ids.generate_subtask_id, IdKind.SUBTASK),
    ],
)
def test_entity_factories_mint_their_kind(factory, kind: IdKind) -> None:
    generated = factory()

    assert generated.startswith(f"{kind.value}-")
    assert ids.parse_id(generated, kind).kind is kind


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("task", "not a prefixed id"),
        ("node-" + "0" * 26, "unknown id kind 'node'"),
        ("task-" + "0" * 25, "must be 26 characters"),
        ("task-" + "U" + "0" * 25, "invalid ULID character 'U'"),
        ("task-" + "8" + "0" * 25, "overflows 128 bits"),
    ],
)
def test_parse_id_rejects_malformed_ids(value: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.parse_id(value)


def test_parse_id_enforces_expected_kind() -> None:
    crew_id = ids.new_id(IdKind.CREW_RUN, timestamp_ms=1, randbytes=_zero_bytes)

    assert ids.parse_id(crew_id).timestamp_ms == 1
    with pytest.raises(ValueError, match="expected a trace id"):
        ids.parse_id(crew_id, IdKind.TRACE)


def test_new_id_validates_timestamp_and_entropy() -> None:
    with pytest.raises(ValueError, match="timestamp_ms out of range"):
        ids.new_id(IdKind.TASK, timestamp_ms=ids.MAX_TIMESTAMP_MS + 1)
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.new_id(IdKind.TASK, randbytes=lambda size: b"\x00" * (size - 1))
