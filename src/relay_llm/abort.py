"""Cooperative cancellation.

An ``AbortSignal`` is shared between the caller and everything doing I/O on
its behalf (provider streams, tool executions, backoff sleeps). Once set it
stays set; awaiting through :meth:`AbortSignal.guard` rejects with
:class:`~relay_llm.errors.AbortError` as soon as the signal fires, without
waiting for the guarded operation to finish.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio

from relay_llm.errors import AbortError

T = TypeVar("T")


class AbortSignal:
    """A one-shot cancellation flag with callbacks. Not thread-safe."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def set(self, reason: str | None = None) -> None:
        """Fire the signal. Setting an already-set signal is a no-op."""
        if self._event.is_set():
            return
        self._reason = reason or "Operation aborted"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def on_abort(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if the signal is already set."""
        if self._event.is_set():
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AbortError(self._reason or "Operation aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, rejecting with AbortError as soon as the signal fires.

        The guarded operation is cancelled when the signal wins the race.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_aborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortError(self._reason or "Operation aborted")


async def sleep(delay: float, abort_signal: AbortSignal | None = None) -> None:
    """Sleep for *delay* seconds, rejecting immediately if *abort_signal* fires."""
    if abort_signal is None:
        await anyio.sleep(delay)
        return
    await abort_signal.guard(anyio.sleep(delay))
