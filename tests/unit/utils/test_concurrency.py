"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from joule_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedLock,
    WorkerPool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        entry = cast_unraisable(unraisable)
        captured.append(entry)

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


def cast_unraisable(unraisable: object) -> SimpleNamespace:
    if isinstance(unraisable, SimpleNamespace):
        return unraisable

    namespace = SimpleNamespace(
        exc_type=getattr(unraisable, "exc_type", None),
        exc_value=getattr(unraisable, "exc_value", None),
        err_msg=getattr(unraisable, "err_msg", None),
        object=getattr(unraisable, "object", None),
    )
    return namespace


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_without_deadline_returns_value() -> None:
    assert await run_with_timeout(_slow(), None) == 1


async def test_run_with_timeout_rejects_non_positive_deadline() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_slow(), 0)


async def test_child_token_observes_parent_cancellation() -> None:
    parent = CancellationToken()
    child = parent.child()

    parent.cancel("crew stopped")

    assert child.is_cancelled
    assert child.reason == "crew stopped"
    with pytest.raises(asyncio.CancelledError):
        child.raise_if_cancelled()
    await asyncio.wait_for(child.wait(), timeout=1.0)


async def test_run_with_timeout_cancels_when_token_fires_mid_flight() -> None:
    token = CancellationToken()

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.005)
        token.cancel("stop requested")

    canceller = asyncio.create_task(_cancel_soon())
    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(5, result=1), 2.0, token)
    await canceller


async def test_worker_pool_bounds_concurrency_and_keeps_submission_order() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    active = 0
    peak = 0

    async def _job(value: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001 * (5 - value))
        active -= 1
        return value

    results = await pool.run_all(_job(value) for value in range(5))

    assert results == [0, 1, 2, 3, 4]
    assert peak <= 2


async def test_worker_pool_run_propagates_first_failure() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=3)

    async def _boom() -> int:
        raise RuntimeError("worker failed")

    with pytest.raises(RuntimeError, match="worker failed"):
        async for _ in pool.run([_slower(), _boom()]):
            pass


async def test_bounded_semaphore_permit_tracks_usage() -> None:
    semaphore = BoundedSemaphore(2)

    async with semaphore.permit():
        assert semaphore.snapshot() == {"limit": 2, "in_use": 1, "available": 1}

    assert semaphore.in_use == 0
    with pytest.raises(RuntimeError):
        semaphore.release()


async def test_keyed_lock_serializes_writers_per_key() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def _writer(key: str, label: str) -> None:
        async with locks.hold(key):
            order.append(f"{label}:start")
            await asyncio.sleep(0.001)
            order.append(f"{label}:end")

    await asyncio.gather(_writer("shared", "a"), _writer("shared", "b"))

    assert order in (
        ["a:start", "a:end", "b:start", "b:end"],
        ["b:start", "b:end", "a:start", "a:end"],
    )
    assert not locks.is_locked("shared")
    assert len(locks) == 1
