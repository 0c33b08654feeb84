"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from deploymachine.services.task_queue import TaskQueue


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


class ControlledWorker:
    """Worker whose runs only finish when the test says so."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.current = 0
        self.max_concurrent = 0
        self._gates: Dict[str, asyncio.Future] = {}

    async def __call__(self, params: Dict[str, Any]) -> Any:
        self.calls.append(params)
        self.current += 1
        self.max_concurrent = max(self.max_concurrent, self.current)
        gate = asyncio.get_running_loop().create_future()
        self._gates[params["name"]] = gate
        try:
            return await gate
        finally:
            self.current -= 1

    @property
    def started(self) -> List[str]:
        return [params["name"] for params in self.calls]

    def is_running(self, name: str) -> bool:
        gate = self._gates.get(name)
        return gate is not None and not gate.done()

    def finish(self, name: str, result: Any = None) -> None:
        self._gates[name].set_result(result)

    def fail(self, name: str, exc: BaseException) -> None:
        self._gates[name].set_exception(exc)


@pytest.fixture()
def worker() -> ControlledWorker:
    return ControlledWorker()


@pytest.fixture()
async def make_queue(tmp_path):
    """Build task queues on a per-test task folder, closed at teardown."""
    queues: List[TaskQueue] = []

    def _make(worker, max_items: int = 1, folder=None) -> TaskQueue:
        queue = TaskQueue(worker, folder or tmp_path / "tasks", max_items=max_items,
                          lock_poll_interval=0.01)
        queues.append(queue)
        return queue

    yield _make

    for queue in queues:
        await queue.close()
