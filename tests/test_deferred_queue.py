import asyncio

import pytest

from infrastructure.tasks.deferred import DelayedTaskQueue


@pytest.mark.asyncio
async def test_scheduled_task_runs_once_after_delay():
    queue = DelayedTaskQueue()
    ran = []

    async def job():
        ran.append("x")

    assert queue.schedule("k", 0.01, job) is True
    assert queue.pending_keys() == ["k"]
    await queue.drain()
    assert ran == ["x"]
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_duplicate_key_is_ignored_while_waiting():
    queue = DelayedTaskQueue()
    ran = []

    async def job(tag):
        ran.append(tag)

    assert queue.schedule("k", 0.01, lambda: job("first")) is True
    assert queue.schedule("k", 0.01, lambda: job("second")) is False
    await queue.drain()
    assert ran == ["first"]
    # 执行完毕后同一个键可以再次排期
    assert queue.schedule("k", 0, lambda: job("third")) is True
    await queue.drain()
    assert ran == ["first", "third"]


@pytest.mark.asyncio
async def test_cancel_prevents_execution():
    queue = DelayedTaskQueue()
    ran = []

    async def job():
        ran.append("x")

    queue.schedule("k", 10, job)
    assert queue.cancel("k") is True
    assert queue.cancel("k") is False
    await asyncio.sleep(0)
    await queue.drain()
    assert ran == []


@pytest.mark.asyncio
async def test_failing_task_does_not_propagate():
    queue = DelayedTaskQueue()

    async def boom():
        raise RuntimeError("upstream down")

    queue.schedule("k", 0, boom)
    await queue.drain()
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_and_rejects_new_work():
    queue = DelayedTaskQueue()
    ran = []

    async def job():
        ran.append("x")

    queue.schedule("a", 10, job)
    queue.schedule("b", 10, job)
    await queue.shutdown()
    assert len(queue) == 0
    assert queue.schedule("c", 0, job) is False
    assert ran == []
