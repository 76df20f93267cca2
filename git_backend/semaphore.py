"""Counting semaphore with a FIFO wait queue."""

from __future__ import annotations

import asyncio
from collections import deque


class CountingSemaphore:
    """Limits how many units of work run at once.

    Slots are handed to waiters in arrival order. Every acquire must be
    paired with exactly one release; `async with` does this on all exit
    paths.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Semaphore capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._in_use = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def in_use(self) -> int:
        """Number of slots currently held."""
        return self._in_use

    @property
    def waiting(self) -> int:
        """Number of tasks queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._in_use < self.capacity and not self.waiting:
            self._in_use += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.cancelled():
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            else:
                # The slot was handed over before the cancellation landed
                self.release()
            raise

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release() called without a matching acquire()")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot straight to the next waiter
                waiter.set_result(None)
                return
        self._in_use -= 1

    async def __aenter__(self) -> CountingSemaphore:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return (
            f"CountingSemaphore(capacity={self.capacity}, in_use={self._in_use}, "
            f"waiting={self.waiting})"
        )
