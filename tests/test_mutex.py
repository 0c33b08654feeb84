from __future__ import annotations

import asyncio

import pytest

from deploymachine.core.errors import InternalError
from deploymachine.utils.mutex import FifoMutex, QueueLock


async def test_acquire_never_completes_in_the_calling_turn() -> None:
    mutex = FifoMutex()
    order = []

    async def acquirer():
        await mutex.acquire("a")
        order.append("granted")

    task = asyncio.create_task(acquirer())
    await asyncio.sleep(0)
    order.append("caller")
    await task

    assert order == ["caller", "granted"]
    assert mutex.locked_by == "a"


async def test_waiters_are_granted_in_fifo_order() -> None:
    mutex = FifoMutex()
    await mutex.acquire("a")
    granted = []

    async def acquirer(owner):
        await mutex.acquire(owner)
        granted.append(owner)
        assert mutex.locked_by == owner
        await asyncio.sleep(0.01)
        mutex.release(owner)

    tasks = []
    for owner in ("b", "c", "d"):
        tasks.append(asyncio.create_task(acquirer(owner)))
        await asyncio.sleep(0)

    assert mutex.waiting == ("b", "c", "d")
    mutex.release("a")
    await asyncio.gather(*tasks)

    assert granted == ["b", "c", "d"]
    assert mutex.locked_by is None


async def test_release_by_non_owner_raises_and_keeps_state() -> None:
    mutex = FifoMutex()
    await mutex.acquire("a")
    waiter = asyncio.create_task(mutex.acquire("b"))
    await asyncio.sleep(0)

    with pytest.raises(InternalError):
        mutex.release("never-acquired")

    assert mutex.locked_by == "a"
    assert mutex.waiting == ("b",)

    mutex.release("a")
    await waiter
    assert mutex.locked_by == "b"


async def test_release_of_free_mutex_raises() -> None:
    mutex = FifoMutex()
    with pytest.raises(InternalError):
        mutex.release("a")


async def test_reentrant_acquire_is_a_no_op() -> None:
    mutex = FifoMutex()
    await mutex.acquire("a")
    await mutex.acquire("a")

    assert mutex.locked_by == "a"
    assert mutex.waiting == ()
    mutex.release("a")
    assert mutex.locked_by is None


async def test_cancelled_waiter_leaves_the_queue() -> None:
    mutex = FifoMutex()
    await mutex.acquire("a")
    waiter = asyncio.create_task(mutex.acquire("b"))
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert mutex.waiting == ()
    mutex.release("a")
    assert mutex.locked_by is None


async def test_queue_lock_releases_on_error(tmp_path) -> None:
    lock = QueueLock(tmp_path / "tasks" / "lock", poll_interval=0.01)
    try:
        with pytest.raises(RuntimeError):
            async with lock.hold("a"):
                assert lock.locked_by == "a"
                assert lock.file_lock.locked
                raise RuntimeError("boom")

        assert lock.locked_by is None
        assert not lock.file_lock.locked
        assert (tmp_path / "tasks" / "lock").exists()
    finally:
        lock.close()


async def test_queue_lock_release_by_non_owner_keeps_file_lock(tmp_path) -> None:
    lock = QueueLock(tmp_path / "lock", poll_interval=0.01)
    try:
        await lock.acquire("a")
        with pytest.raises(InternalError):
            lock.release("b")
        assert lock.locked_by == "a"
        assert lock.file_lock.locked
        lock.release("a")
    finally:
        lock.close()


async def test_queue_lock_excludes_other_lock_on_same_file(tmp_path) -> None:
    path = tmp_path / "lock"
    first = QueueLock(path, poll_interval=0.01)
    second = QueueLock(path, poll_interval=0.01)
    try:
        await first.acquire("a")
        waiter = asyncio.create_task(second.acquire("b"))
        await asyncio.sleep(0.1)
        assert not waiter.done()

        first.release("a")
        await asyncio.wait_for(waiter, timeout=2)
        assert second.file_lock.locked
        second.release("b")
    finally:
        first.close()
        second.close()
