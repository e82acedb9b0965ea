import asyncio

import pytest

from hearth.agent_pool import WorkerPool


class FakeWorker:
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        self.is_running = False
        self.suspend_requested = False

    def request_suspend(self):
        self.suspend_requested = True


@pytest.mark.asyncio
async def test_never_more_than_size_workers_run_at_once():
    pool = WorkerPool(FakeWorker, size=2)
    running = 0
    peak = 0

    async def job():
        nonlocal running, peak
        async with pool.worker():
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

    await asyncio.gather(*(job() for _ in range(8)))

    assert peak == 2
    assert pool.idle_count == 2
    assert pool.active_count == 0


@pytest.mark.asyncio
async def test_release_hands_worker_to_waiters_in_fifo_order():
    pool = WorkerPool(FakeWorker, size=1)
    first = await pool.acquire()
    order: list[str] = []

    async def wait(name: str):
        worker = await pool.acquire()
        order.append(name)
        return worker

    tasks = []
    for name in ("a", "b", "c"):
        tasks.append(asyncio.create_task(wait(name)))
        await asyncio.sleep(0)
    assert pool.queue_depth == 3

    await pool.release(first)
    handed = await tasks[0]

    assert handed is first
    assert order == ["a"]
    assert pool.queue_depth == 2

    await pool.release(handed)
    await pool.release(await tasks[1])
    await pool.release(await tasks[2])

    assert order == ["a", "b", "c"]
    assert pool.idle_count == 1


@pytest.mark.asyncio
async def test_release_wakes_exactly_one_waiter():
    pool = WorkerPool(FakeWorker, size=1)
    held = await pool.acquire()
    waiters = [asyncio.create_task(pool.acquire()) for _ in range(2)]
    await asyncio.sleep(0)

    await pool.release(held)
    await asyncio.sleep(0)

    assert sum(task.done() for task in waiters) == 1
    assert pool.queue_depth == 1

    woken = next(task for task in waiters if task.done())
    other = next(task for task in waiters if task is not woken)
    await pool.release(woken.result())
    await pool.release(await other)
    assert pool.idle_count == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_the_queue():
    pool = WorkerPool(FakeWorker, size=1)
    held = await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    assert pool.queue_depth == 1

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert pool.queue_depth == 0
    await pool.release(held)
    assert pool.idle_count == 1


@pytest.mark.asyncio
async def test_release_of_unknown_worker_raises():
    pool = WorkerPool(FakeWorker, size=1)
    with pytest.raises(ValueError):
        await pool.release(FakeWorker("stranger"))


def test_size_is_clamped_and_status_reports_counts():
    assert WorkerPool(FakeWorker, size=0).size == 1
    assert WorkerPool(FakeWorker, size=64).size == 16
    assert WorkerPool(FakeWorker, size=3).status() == {"size": 3, "active": 0, "idle": 3, "waiting": 0}


@pytest.mark.asyncio
async def test_resize_shrinks_by_retiring_workers():
    pool = WorkerPool(FakeWorker, size=2)
    busy = await pool.acquire()

    await pool.resize(1)
    assert pool.idle_count == 0

    await pool.release(busy)
    assert pool.idle_count == 1

    await pool.resize(3)
    assert pool.idle_count == 3


@pytest.mark.asyncio
async def test_suspend_all_only_touches_running_workers():
    pool = WorkerPool(FakeWorker, size=2)
    running = await pool.acquire()
    running.is_running = True
    idle_checked_out = await pool.acquire()

    assert pool.suspend_all() == 1
    assert running.suspend_requested is True
    assert idle_checked_out.suspend_requested is False
