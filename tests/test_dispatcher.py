"""
Unit tests for the per-key ordered event dispatcher
"""

import asyncio

import pytest

from indexer.dispatcher import EventDispatcher
from indexer.types import IndexerError


def recording_job(log, name, delay=0.0):
    async def job():
        log.append(f"start:{name}")
        await asyncio.sleep(delay)
        log.append(f"end:{name}")
        return name
    return job


@pytest.mark.asyncio
async def test_same_key_jobs_run_in_submission_order():
    dispatcher = EventDispatcher(max_in_flight=4)
    log = []

    # The first job is slower; it must still finish before the second starts
    dispatcher.submit(["alice"], recording_job(log, "a1", delay=0.05))
    dispatcher.submit(["alice"], recording_job(log, "a2"))
    await dispatcher.drain()

    assert log == ["start:a1", "end:a1", "start:a2", "end:a2"]


@pytest.mark.asyncio
async def test_disjoint_keys_run_in_parallel():
    dispatcher = EventDispatcher(max_in_flight=4)
    log = []

    dispatcher.submit(["alice"], recording_job(log, "a", delay=0.05))
    dispatcher.submit(["bob"], recording_job(log, "b", delay=0.01))
    await dispatcher.drain()

    assert log.index("start:b") < log.index("end:a")
    assert log.index("end:b") < log.index("end:a")


@pytest.mark.asyncio
async def test_shared_key_orders_multi_key_jobs():
    dispatcher = EventDispatcher(max_in_flight=4)
    log = []

    dispatcher.submit(["alice"], recording_job(log, "alice", delay=0.03))
    dispatcher.submit(["bob"], recording_job(log, "bob", delay=0.01))
    # A liquidation touching both waits for both
    dispatcher.submit(["alice", "bob"], recording_job(log, "liquidation"))
    await dispatcher.drain()

    assert log.index("start:liquidation") > log.index("end:alice")
    assert log.index("start:liquidation") > log.index("end:bob")


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    dispatcher = EventDispatcher(max_in_flight=2)
    running = 0
    peak = 0

    async def job():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    for i in range(6):
        dispatcher.submit([f"user-{i}"], job)
    await dispatcher.drain()

    assert peak == 2


@pytest.mark.asyncio
async def test_failed_job_does_not_block_successors():
    dispatcher = EventDispatcher()
    log = []

    async def failing():
        raise RuntimeError("boom")

    dispatcher.submit(["alice"], failing)
    task = dispatcher.submit(["alice"], recording_job(log, "after"))
    await dispatcher.drain()

    assert task.result() == "after"
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_close_refuses_new_work():
    dispatcher = EventDispatcher()
    log = []
    dispatcher.submit(["alice"], recording_job(log, "a", delay=0.01))

    drained = await dispatcher.close(timeout=1.0)

    assert drained
    assert log == ["start:a", "end:a"]
    with pytest.raises(IndexerError):
        dispatcher.submit(["alice"], recording_job(log, "late"))


@pytest.mark.asyncio
async def test_close_cancels_jobs_past_grace_period():
    dispatcher = EventDispatcher()
    task = dispatcher.submit(["alice"], recording_job([], "slow", delay=5))

    drained = await dispatcher.close(timeout=0.05)

    assert not drained
    assert task.cancelled()
    assert dispatcher.in_flight == 0
