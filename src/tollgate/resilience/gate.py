"""Concurrency gate bounding the number of in-flight calls.

:class:`ConcurrencyGate` admits at most ``max_concurrency`` callers at a
time. Callers beyond the limit park on a future in a FIFO queue; when a
running call finishes, its slot is handed straight to the oldest waiter, so
a newcomer can never overtake a caller that is already queued.

A caller may bound its wait with ``max_wait``; on timeout (or
cancellation) it leaves the queue and, if a slot was handed over at the
very moment it gave up, passes that slot on instead of leaking it.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from tollgate.exceptions import GateTimeoutError


class ConcurrencyGate:
    """FIFO admission control for coroutines.

    Args:
        max_concurrency: Maximum simultaneously running calls.
        max_wait: Seconds a caller may wait for a slot before
            :class:`~tollgate.exceptions.GateTimeoutError` is raised.
            ``None`` waits indefinitely.

    Example::

        gate = ConcurrencyGate(max_concurrency=2)
        results = await asyncio.gather(*(gate.run(fetch) for fetch in jobs))
    """

    def __init__(self, max_concurrency: int = 10, max_wait: Optional[float] = None) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.max_wait = max_wait
        self._running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def running(self) -> int:
        """Number of callers currently holding a slot."""
        return self._running

    @property
    def waiting(self) -> int:
        """Number of callers parked in the queue."""
        return sum(1 for fut in self._waiters if not fut.done())

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run *fn* once a slot is available and release the slot afterwards.

        Args:
            fn: Zero-argument coroutine factory.

        Returns:
            The result of ``await fn()``.

        Raises:
            GateTimeoutError: If ``max_wait`` elapsed before a slot freed up.
        """
        await self.acquire()
        try:
            return await fn()
        finally:
            self.release()

    async def acquire(self) -> None:
        """Take a slot, waiting in FIFO order if the gate is saturated."""
        if self._running < self.max_concurrency and not self.waiting:
            self._running += 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await asyncio.wait_for(fut, self.max_wait)
        except asyncio.TimeoutError as exc:
            self._abandon(fut)
            raise GateTimeoutError(
                f"No request slot became free within {self.max_wait}s "
                f"({self.max_concurrency} calls in flight)"
            ) from exc
        except asyncio.CancelledError:
            self._abandon(fut)
            raise
        # The releasing caller transferred its slot to us; _running is unchanged.

    def release(self) -> None:
        """Give the slot to the oldest live waiter, or free it."""
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._running -= 1

    def _abandon(self, fut: asyncio.Future[None]) -> None:
        if fut.done() and not fut.cancelled():
            # A slot was handed over as we gave up: pass it along.
            self.release()
        elif fut in self._waiters:
            self._waiters.remove(fut)
