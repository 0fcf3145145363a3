"""Admission control for expensive async work (one slot per generation pipeline)."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Deque, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionLimiter:
    """
    Bounds how many units of work run at once.

    Callers beyond ``max_concurrent`` wait in a FIFO queue. A finishing unit
    hands its slot straight to the head waiter, so a newcomer can never jump
    the queue and ``running`` never exceeds ``max_concurrent``.

    There is no wait timeout and no priority; a queued caller leaves the queue
    only when admitted or when its own task is cancelled.
    """

    def __init__(self, max_concurrent: int = 5) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def _acquire(self) -> None:
        if self._running < self.max_concurrent and not self._waiters:
            self._running += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Limiter full ({self._running}/{self.max_concurrent}), queued={len(self._waiters)}")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed over just before the cancel landed
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._running -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self._acquire()
        try:
            yield
        finally:
            self._release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self.slot():
            return await task()
