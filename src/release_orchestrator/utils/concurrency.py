"""
release-orchestrator: asyncio helpers for the scheduling loop

File: src/release_orchestrator/utils/concurrency.py

Purpose
- ``CancellationToken`` stops ``run`` between ticks on SIGINT/SIGTERM and aborts an
  adapter call that is still in flight.
- ``WorkerPool`` evaluates the active releases of one tick with bounded concurrency.
- ``KeyedTryLock`` is the in-process half of the per-release lock: the tick skips a
  busy release, ingress waits for it.
- ``run_with_timeout`` bounds one adapter dispatch.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """One-shot cancellation signal that can also cancel registered work."""

    def __init__(self) -> None:
        self._fired = asyncio.Event()
        self._callbacks: list[Callable[[], object]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._fired.is_set()

    def cancel(self) -> None:
        if self._fired.is_set():
            return
        self._fired.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (now, if already cancelled); returns a detach."""
        if self.is_cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def detach() -> None:
            with suppress(ValueError):
                self._callbacks.remove(callback)

        return detach

    async def wait(self) -> None:
        await self._fired.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation; return ``is_cancelled``."""
        if seconds > 0 and not self.is_cancelled:
            with suppress(TimeoutError):
                async with asyncio.timeout(seconds):
                    await self._fired.wait()
        return self.is_cancelled

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")


class WorkerPool(Generic[T, R]):
    """Map an async callable over items, at most ``max_concurrency`` at a time.

    Results keep input order. The first exception escaping the callable cancels
    the remaining work and is re-raised as itself.
    """

    def __init__(
        self, max_concurrency: int, cancel_token: CancellationToken | None = None
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self.max_concurrency = max_concurrency
        self._token = cancel_token or CancellationToken()
        self._slots = asyncio.Semaphore(max_concurrency)
        self._running = 0

    @property
    def in_flight(self) -> int:
        return self._running

    async def map(self, func: Callable[[T], Awaitable[R]], items: Iterable[T]) -> list[R]:
        self._token.raise_if_cancelled()
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(self._slot(func, item)) for item in items]
        except BaseExceptionGroup as failures:
            raise failures.exceptions[0] from None
        return [task.result() for task in tasks]

    async def _slot(self, func: Callable[[T], Awaitable[R]], item: T) -> R:
        async with self._slots:
            self._token.raise_if_cancelled()
            self._running += 1
            try:
                return await func(item)
            finally:
                self._running -= 1


class KeyedTryLock:
    """Per-key mutual exclusion inside one event loop.

    ``try_acquire`` never waits; ``acquire`` waits up to a timeout. Release is
    synchronous so it can run from ``finally`` blocks and loop callbacks.
    """

    def __init__(self) -> None:
        self._held: dict[str, asyncio.Event] = {}

    def locked(self, key: str) -> bool:
        return key in self._held

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held[key] = asyncio.Event()
        return True

    async def acquire(self, key: str, *, timeout_seconds: float) -> bool:
        try:
            async with asyncio.timeout(max(timeout_seconds, 0.0)):
                while key in self._held:
                    await self._held[key].wait()
        except TimeoutError:
            return False
        return self.try_acquire(key)

    def release(self, key: str) -> None:
        released = self._held.pop(key, None)
        if released is None:
            raise RuntimeError(f"release of unheld key: {key}")
        released.set()


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` when the token
    fires first. The awaitable is always either finished or closed on return.
    """
    if timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(awaitable)
        raise asyncio.CancelledError("operation cancelled")

    work = asyncio.ensure_future(awaitable)
    detach = cancel_token.on_cancel(work.cancel) if cancel_token is not None else None
    try:
        async with asyncio.timeout(timeout_seconds):
            return await work
    except TimeoutError:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from None
    finally:
        if detach is not None:
            detach()


def _discard(awaitable: Awaitable[object]) -> None:
    # An unscheduled coroutine warns "never awaited" when collected.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "KeyedTryLock",
    "WorkerPool",
    "run_with_timeout",
]
