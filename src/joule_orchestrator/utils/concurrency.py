"""Async concurrency primitives shared by the engine, router and crew orchestrator."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Hashable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    Tokens may be chained: a child token reports cancelled when its parent is.
    """

    def __init__(self, *, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "operation cancelled") -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    @property
    def reason(self) -> str | None:
        if self._reason is not None:
            return self._reason
        return self._parent.reason if self._parent is not None else None

    async def wait(self) -> None:
        if self._parent is None:
            await self._event.wait()
            return
        own = asyncio.create_task(self._event.wait())
        inherited = asyncio.create_task(self._parent.wait())
        try:
            await asyncio.wait({own, inherited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (own, inherited):
                waiter.cancel()
                with suppress(asyncio.CancelledError):
                    await waiter

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self.reason or "operation cancelled")


class BoundedSemaphore:
    """Small wrapper over ``asyncio.Semaphore`` with usage diagnostics."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {"limit": self._limit, "in_use": self._in_use, "available": self.available}


class KeyedLock:
    """Per-key ``asyncio.Lock`` registry; writers to the same key are serialized."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self.lock_for(key):
            yield

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run coroutines with bounded concurrency.

    ``run`` yields results as they finish and cancels the remaining work on the
    first failure; ``run_all`` returns results in submission order.
    """

    max_concurrency: int
    cancel_token: CancellationToken | None = None
    _token: CancellationToken = field(init=False, repr=False)
    _semaphore: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._token = self.cancel_token or CancellationToken()
        self._semaphore = BoundedSemaphore(self.max_concurrency)

    @property
    def semaphore(self) -> BoundedSemaphore:
        return self._semaphore

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        tasks = self._schedule(coroutines)
        try:
            while tasks:
                self._token.raise_if_cancelled()
                done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                tasks = set(pending)
                for task in done:
                    if task.cancelled():
                        raise asyncio.CancelledError("worker task cancelled")
                    exc = task.exception()
                    if exc is not None:
                        await _cancel_all(tasks)
                        raise exc
                    yield task.result()
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

    async def run_all(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        ordered = list(self._schedule_ordered(coroutines))
        try:
            return list(await asyncio.gather(*ordered))
        except BaseException:
            await _cancel_all(set(ordered))
            raise

    def _schedule(self, coroutines: Iterable[Awaitable[T]]) -> set[asyncio.Task[T]]:
        return set(self._schedule_ordered(coroutines))

    def _schedule_ordered(self, coroutines: Iterable[Awaitable[T]]) -> list[asyncio.Task[T]]:
        scheduled: list[asyncio.Task[T]] = []
        for coroutine in coroutines:
            if self._token.is_cancelled:
                _close_unscheduled_coroutine(coroutine)
                for task in scheduled:
                    task.cancel()
                self._token.raise_if_cancelled()
            scheduled.append(asyncio.create_task(self._run_one(coroutine)))
        return scheduled

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        async with self._semaphore.permit():
            if self._token.is_cancelled:
                _close_unscheduled_coroutine(coroutine)
                self._token.raise_if_cancelled()
            return await coroutine


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` with a hard deadline and cooperative cancellation.

    A ``timeout_seconds`` of ``None`` waits without a deadline.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` when the token
    fires first; in both cases the inner task is cancelled and awaited.
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError(token.reason or "operation cancelled")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    cancel_wait_task = asyncio.create_task(token.wait())

    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait_task},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return await task

        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        if cancel_wait_task in done and token.is_cancelled:
            raise asyncio.CancelledError(token.reason or "operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


async def _cancel_all(tasks: set[asyncio.Task[T]]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        with suppress(Exception):
            await asyncio.gather(*tasks, return_exceptions=True)


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects that never get scheduled must be closed explicitly.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "KeyedLock",
    "WorkerPool",
    "run_with_timeout",
]
