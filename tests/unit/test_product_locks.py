import asyncio
import uuid

import pytest

from shopcore.errors import ConcurrencyConflictError
from shopcore.infrastructure.concurrency.product_locks import ProductLockRegistry


async def test_hold_serialises_same_product():
    locks = ProductLockRegistry()
    tid, pid = uuid.uuid4(), uuid.uuid4()
    order = []

    async def worker(name):
        async with locks.hold(tid, pid, timeout=1):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert len(locks) == 0


async def test_timeout_raises_concurrency_conflict():
    locks = ProductLockRegistry()
    tid, pid = uuid.uuid4(), uuid.uuid4()

    async with locks.hold(tid, pid, timeout=1):
        assert locks.is_locked(tid, pid)
        with pytest.raises(ConcurrencyConflictError):
            async with locks.hold(tid, pid, timeout=0.05):
                pass
    assert not locks.is_locked(tid, pid)
    assert len(locks) == 0


async def test_same_product_id_in_other_tenant_is_independent():
    locks = ProductLockRegistry()
    pid = uuid.uuid4()
    async with locks.hold(uuid.uuid4(), pid, timeout=1):
        async with locks.hold(uuid.uuid4(), pid, timeout=0.05):
            pass


async def test_lock_released_on_cancellation():
    locks = ProductLockRegistry()
    tid, pid = uuid.uuid4(), uuid.uuid4()
    entered = asyncio.Event()

    async def holder():
        async with locks.hold(tid, pid, timeout=1):
            entered.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(holder())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not locks.is_locked(tid, pid)
    async with locks.hold(tid, pid, timeout=0.05):
        pass


async def test_hold_many_acquires_in_sorted_order():
    locks = ProductLockRegistry()
    tid = uuid.uuid4()
    a, b = sorted([uuid.uuid4(), uuid.uuid4()], key=str)

    async def forward():
        async with locks.hold_many(tid, [a, b], timeout=1):
            await asyncio.sleep(0.01)

    async def backward():
        async with locks.hold_many(tid, [b, a, b], timeout=1):
            await asyncio.sleep(0.01)

    # Opposite request orders must not deadlock.
    await asyncio.wait_for(asyncio.gather(forward(), backward()), timeout=2)
    assert len(locks) == 0
