import asyncio

import pytest

from core.errors import PersistenceError
from core.scheduler import run_batch


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_limit():
    state = {"now": 0, "peak": 0}

    async def op(i):
        state["now"] += 1
        state["peak"] = max(state["peak"], state["now"])
        await asyncio.sleep(0.01 * (i % 3))
        state["now"] -= 1
        return 1

    out = await run_batch(list(range(12)), op, 3)
    assert state["peak"] <= 3
    assert out.completed == 12
    assert out.aggregate == 12
    assert len(out.results) == 12


@pytest.mark.asyncio
async def test_empty_items_returns_immediately():
    async def op(_):
        raise AssertionError("should not run")

    out = await run_batch([], op, 4, 200)
    assert out.results == []
    assert out.completed == 0
    assert out.aggregate == 0


@pytest.mark.asyncio
async def test_failures_are_isolated_and_counted():
    async def op(i):
        if i == 2:
            raise RuntimeError("boom")
        return i

    out = await run_batch([1, 2, 3], op, 2)
    assert out.results == [1, 0, 3]
    assert out.completed == 3
    assert out.failed == 1
    assert out.aggregate == 4


@pytest.mark.asyncio
async def test_dispatch_follows_input_order():
    started = []

    async def op(i):
        started.append(i)
        await asyncio.sleep(0.001)
        return 0

    await run_batch(list(range(8)), op, 1)
    assert started == list(range(8))


@pytest.mark.asyncio
async def test_freed_slot_is_refilled_without_waiting_for_batch():
    started = []
    release_slow = asyncio.Event()

    async def op(name):
        started.append(name)
        if name == "slow":
            await release_slow.wait()
        return 1

    task = asyncio.create_task(run_batch(["slow", "fast", "next"], op, 2))
    for _ in range(20):
        await asyncio.sleep(0)
    assert started == ["slow", "fast", "next"]
    release_slow.set()
    out = await task
    assert out.completed == 3


@pytest.mark.asyncio
async def test_limit_above_item_count_starts_everything():
    started = []
    gate = asyncio.Event()

    async def op(i):
        started.append(i)
        await gate.wait()
        return 1

    task = asyncio.create_task(run_batch([1, 2, 3], op, 10))
    for _ in range(20):
        await asyncio.sleep(0)
    assert sorted(started) == [1, 2, 3]
    gate.set()
    assert (await task).completed == 3


@pytest.mark.asyncio
async def test_initial_batch_is_staggered():
    loop = asyncio.get_running_loop()
    starts = {}

    async def op(i):
        starts[i] = loop.time()
        return 0

    await run_batch([0, 1, 2], op, 3, stagger_ms=40)
    assert starts[2] - starts[0] >= 0.07
    assert starts[1] >= starts[0]


@pytest.mark.asyncio
async def test_fatal_error_stops_dispatch_and_propagates():
    ran = []

    async def op(i):
        ran.append(i)
        if i == 0:
            raise PersistenceError("store down")
        await asyncio.sleep(0.01)
        return 1

    with pytest.raises(PersistenceError):
        await run_batch(list(range(10)), op, 2, fatal=(PersistenceError,))
    assert len(ran) < 10


@pytest.mark.asyncio
async def test_progress_callback_sees_every_completion():
    seen = []

    async def op(i):
        return i * 10

    await run_batch([1, 2, 3], op, 1, on_progress=lambda done, total, inserted: seen.append((done, total, inserted)))
    assert seen == [(1, 3, 10), (2, 3, 30), (3, 3, 60)]


@pytest.mark.asyncio
async def test_raising_progress_callback_does_not_break_batch():
    calls = []

    def on_progress(done, total, inserted):
        calls.append(done)
        raise RuntimeError("display gone")

    async def op(i):
        return i

    outcome = await run_batch([1, 2, 3], op, 2, on_progress=on_progress)
    assert calls == [1, 2, 3]
    assert outcome.completed == 3
    assert outcome.failed == 0
    assert outcome.results == [1, 2, 3]
    assert outcome.aggregate == 6


@pytest.mark.asyncio
async def test_invalid_arguments():
    async def op(i):
        return i

    with pytest.raises(ValueError):
        await run_batch([1], op, 0)
    with pytest.raises(ValueError):
        await run_batch([1], op, 1, stagger_ms=-1)
