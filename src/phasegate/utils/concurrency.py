"""Async concurrency primitives used by the phase executor and check runner."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class OperationCancelled(asyncio.CancelledError):
    """Cancellation requested through a :class:`CancellationToken`.

    Distinguishes an operator abort from task cancellation coming from the
    event loop (shutdown, an outer ``wait_for``), which must still propagate.
    """

    def __init__(self, reason: str = "operation cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "operation cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "operation cancelled")


class BoundedSemaphore:
    """``asyncio.Semaphore`` that tracks how many permits are held."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)
        try:
            yield
        finally:
            self._in_use -= 1
            self._semaphore.release()


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run coroutines with bounded concurrency.

    ``run`` yields results as they finish; ``gather`` waits for every
    coroutine and returns results in submission order. In both cases the first
    exception cancels the remaining work and is re-raised.
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
    def peak_concurrency(self) -> int:
        return self._semaphore.peak

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        tasks = self._spawn(coroutines)
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    yield await self._collect(task, pending)
        except BaseException:
            await _cancel_all(pending)
            raise

    async def gather(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        tasks = self._spawn(coroutines)
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    await self._collect(task, pending)
        except BaseException:
            await _cancel_all(pending)
            raise
        return [task.result() for task in tasks]

    def _spawn(self, coroutines: Iterable[Awaitable[T]]) -> list[asyncio.Task[T]]:
        items = list(coroutines)
        if self._token.is_cancelled:
            for item in items:
                _close_unscheduled_coroutine(item)
            self._token.raise_if_cancelled()
        return [asyncio.create_task(self._run_one(item)) for item in items]

    async def _collect(self, task: asyncio.Task[T], pending: set[asyncio.Task[T]]) -> T:
        if task.cancelled():
            await _cancel_all(pending)
            raise asyncio.CancelledError("worker task cancelled")
        exc = task.exception()
        if exc is not None:
            await _cancel_all(pending)
            raise exc
        return task.result()

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        async with self._semaphore.permit():
            if self._token.is_cancelled:
                _close_unscheduled_coroutine(coroutine)
                self._token.raise_if_cancelled()
            return await coroutine


async def _cancel_all(tasks: set[asyncio.Task[T]]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        with suppress(Exception):
            await asyncio.gather(*tasks, return_exceptions=True)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` bounded by ``timeout_seconds`` and ``cancel_token``.

    Raises ``TimeoutError`` on expiry and :class:`OperationCancelled` when the
    token fires first. The inner task is cancelled and awaited in both cases.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        token.raise_if_cancelled()

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
        if token.is_cancelled:
            token.raise_if_cancelled()
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that will never be scheduled so CPython does
    # not warn "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "OperationCancelled",
    "WorkerPool",
    "run_with_timeout",
]
