import asyncio

import pytest

from cosign.queue import ConcurrencyQueue


@pytest.mark.asyncio
async def test_never_runs_more_than_concurrency():
    q = ConcurrencyQueue(concurrency=2)
    running = 0
    peak = 0
    finished = []

    async def hold(i):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        finished.append(i)
        return i

    futures = [q.add(lambda i=i: hold(i)) for i in range(5)]
    await q.wait_all()

    assert peak == 2
    assert sorted(finished) == [0, 1, 2, 3, 4]
    assert all(f.done() for f in futures)
    assert [f.result() for f in futures] == [0, 1, 2, 3, 4]
    assert q.status() == {"running": 0, "pending": 0, "concurrency": 2}


@pytest.mark.asyncio
async def test_admission_is_fifo():
    q = ConcurrencyQueue(concurrency=1)
    started = []

    async def task(i):
        started.append(i)
        await asyncio.sleep(0)

    for i in range(4):
        q.add(lambda i=i: task(i))
    await q.wait_all()
    assert started == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_failure_only_rejects_its_own_future():
    q = ConcurrencyQueue(concurrency=2)

    async def ok(i):
        await asyncio.sleep(0.01)
        return i

    async def boom():
        raise RuntimeError("boom")

    f1 = q.add(lambda: ok(1))
    f2 = q.add(boom)
    f3 = q.add(lambda: ok(3))
    results = await asyncio.gather(f1, f2, f3, return_exceptions=True)

    assert results[0] == 1
    assert isinstance(results[1], RuntimeError)
    assert results[2] == 3


@pytest.mark.asyncio
async def test_wait_all_on_empty_queue_returns():
    q = ConcurrencyQueue()
    await asyncio.wait_for(q.wait_all(), timeout=1)


@pytest.mark.asyncio
async def test_cancel_all_drops_pending():
    q = ConcurrencyQueue(concurrency=1)
    gate = asyncio.Event()
    f1 = q.add(gate.wait)
    f2 = q.add(gate.wait)
    await asyncio.sleep(0)

    await q.cancel_all()
    assert f1.cancelled()
    assert f2.cancelled()
    await asyncio.wait_for(q.wait_all(), timeout=1)


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyQueue(concurrency=0)
