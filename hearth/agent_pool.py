"""Worker pool bounding how many agent loops run at once.

A fixed set of AgentLoop instances is created up front. `acquire()` hands
out an idle one or parks the caller in a FIFO queue; `release()` passes
the worker straight to the longest-waiting caller, so a freed worker can
never be grabbed out of turn.
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from hearth.agent_loop import AgentLoop
from hearth.logging import get_logger

log = get_logger(__name__)

MIN_POOL_SIZE = 1
MAX_POOL_SIZE = 16


def _clamp_size(size: int) -> int:
    return max(MIN_POOL_SIZE, min(MAX_POOL_SIZE, int(size)))


class WorkerPool:
    """Pool of reusable AgentLoop workers."""

    def __init__(self, factory: Callable[[str], AgentLoop], size: int = 4):
        self._factory = factory
        self._lock = asyncio.Lock()
        self._idle: deque[AgentLoop] = deque()
        self._active: set[AgentLoop] = set()
        self._waiters: deque[asyncio.Future[AgentLoop]] = deque()
        self._created = 0
        self._retire = 0
        self.size = _clamp_size(size)
        for _ in range(self.size):
            self._idle.append(self._new_worker())
        log.info("Worker pool ready", size=self.size)

    def _new_worker(self) -> AgentLoop:
        self._created += 1
        return self._factory(f"worker-{self._created}")

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def queue_depth(self) -> int:
        """Callers currently waiting for a worker."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    def status(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "active": self.active_count,
            "idle": self.idle_count,
            "waiting": self.queue_depth,
        }

    async def acquire(self) -> AgentLoop:
        """Return an idle worker, waiting FIFO-fair when none is free."""
        async with self._lock:
            if self._idle and not self._waiters:
                worker = self._idle.popleft()
                self._active.add(worker)
                return worker
            waiter: asyncio.Future[AgentLoop] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            depth = len(self._waiters)
        log.debug("Waiting for worker", queue_depth=depth)

        try:
            return await waiter
        except asyncio.CancelledError:
            async with self._lock:
                if waiter.done() and not waiter.cancelled():
                    # Handed a worker just as we were cancelled: pass it on.
                    self._release_locked(waiter.result())
                else:
                    try:
                        self._waiters.remove(waiter)
                    except ValueError:
                        pass
            raise

    async def release(self, worker: AgentLoop) -> None:
        """Return a worker; wakes exactly one waiter if any are queued."""
        async with self._lock:
            self._release_locked(worker)

    def _release_locked(self, worker: AgentLoop) -> None:
        if worker not in self._active:
            raise ValueError(f"Worker {worker.agent_id} is not checked out")

        if self._retire > 0:
            self._retire -= 1
            self._active.discard(worker)
            log.info("Retired worker", worker=worker.agent_id, size=self.size)
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(worker)
                return

        self._active.discard(worker)
        self._idle.append(worker)

    @asynccontextmanager
    async def worker(self) -> AsyncIterator[AgentLoop]:
        """`async with pool.worker() as agent:` acquire/release pair."""
        agent = await self.acquire()
        try:
            yield agent
        finally:
            await self.release(agent)

    async def resize(self, size: int) -> None:
        """Grow immediately; shrink by retiring idle workers, then busy ones on release."""
        size = _clamp_size(size)
        async with self._lock:
            delta = size - self.size
            self.size = size
            if delta > 0:
                absorbed = min(delta, self._retire)
                self._retire -= absorbed
                for _ in range(delta - absorbed):
                    worker = self._new_worker()
                    self._active.add(worker)
                    self._release_locked(worker)
            elif delta < 0:
                to_remove = -delta
                while to_remove and self._idle:
                    self._idle.pop()
                    to_remove -= 1
                self._retire += to_remove
        log.info("Worker pool resized", size=size)

    def suspend_all(self) -> int:
        """Ask every running worker to checkpoint at its next step boundary."""
        running = [worker for worker in self._active if worker.is_running]
        for worker in running:
            worker.request_suspend()
        if running:
            log.info("Suspending running workers", count=len(running))
        return len(running)
