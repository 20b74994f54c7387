"""Async concurrency primitives for the fetch pool and the convergence engine."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

T = TypeVar("T")

_CLOSED = object()


class QueueClosedError(RuntimeError):
    """Raised by :class:`ClosableQueue` once it is closed (and, for ``get``, drained)."""


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class ClosableQueue(Generic[T]):
    """
    Unbounded FIFO with explicit close/drain semantics.

    Producers never block. Consumers block only while the queue is empty and
    open; once closed, consumers drain the remaining items and then stop.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        size = self._queue.qsize()
        return size - 1 if self._closed else size

    def put(self, item: T) -> None:
        if self._closed:
            raise QueueClosedError("put on a closed queue")
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker in place so every other consumer also wakes up.
            self._queue.put_nowait(_CLOSED)
            raise QueueClosedError("queue closed and drained")
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.get()
            except QueueClosedError:
                return
            yield item


class WorkerGroup(Generic[T]):
    """
    Fixed-size group of consumer tasks draining one :class:`ClosableQueue`.

    ``start()`` spawns the workers, ``wait()`` is the barrier: it returns once
    every worker has observed the closed, empty queue. The first worker
    exception cancels the remaining workers and is re-raised; a cancelled
    token cancels all workers and raises ``asyncio.CancelledError``.
    """

    def __init__(
        self,
        queue: ClosableQueue[T],
        handler: Callable[[T], Awaitable[None]],
        *,
        size: int,
        cancel_token: CancellationToken | None = None,
        name: str = "worker",
    ) -> None:
        if size <= 0:
            raise ValueError("size must be > 0")
        self._queue = queue
        self._handler = handler
        self._size = size
        self._token = cancel_token or CancellationToken()
        self._name = name
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def size(self) -> int:
        return self._size

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("worker group already started")
        self._tasks = [
            asyncio.create_task(self._run_worker(), name=f"{self._name}-{index}")
            for index in range(self._size)
        ]

    async def wait(self) -> None:
        if not self._tasks:
            return

        cancel_wait_task = asyncio.create_task(self._token.wait())
        pending: set[asyncio.Task[None]] = set(self._tasks)
        try:
            while pending:
                done, still_pending = await asyncio.wait(
                    {*pending, cancel_wait_task}, return_when=asyncio.FIRST_COMPLETED
                )
                still_pending.discard(cancel_wait_task)
                pending = {task for task in still_pending if task is not cancel_wait_task}

                if cancel_wait_task in done:
                    await _cancel_all(pending)
                    raise asyncio.CancelledError("operation cancelled")

                for task in done:
                    if task.cancelled():
                        await _cancel_all(pending)
                        raise asyncio.CancelledError("worker task cancelled")
                    exc = task.exception()
                    if exc is not None:
                        await _cancel_all(pending)
                        raise exc
        except asyncio.CancelledError:
            await _cancel_all(pending)
            raise
        finally:
            cancel_wait_task.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait_task

    async def cancel(self) -> None:
        """Cancel every worker and wait until they have all stopped."""
        await _cancel_all({task for task in self._tasks if not task.done()})

    async def _run_worker(self) -> None:
        async for item in self._queue:
            self._token.raise_if_cancelled()
            await self._handler(item)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Run ``coroutine`` with timeout and cooperative cancellation support."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled_coroutine(coroutine)
        raise asyncio.CancelledError("operation cancelled")

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
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        cancel_wait_task.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait_task


async def _cancel_all(tasks: set[asyncio.Task[None]]) -> None:
    for task in tasks:
        task.cancel()
    if tasks:
        with suppress(Exception):
            await asyncio.gather(*tasks, return_exceptions=True)


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that were never scheduled so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "ClosableQueue",
    "QueueClosedError",
    "WorkerGroup",
    "run_with_timeout",
]
