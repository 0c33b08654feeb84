# services/task_queue.py

"""
Task queue - stores tasks on the file system and runs them in the background

Tasks go from "pending" to "running" to "success" or "failure". Up to
``max_items`` tasks run at once (no limit when max_items <= 0). Pending tasks
are picked up whenever a task is pushed or completes, there is no polling.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set, Union

from deploymachine.core.errors import DeployError, ParamError, classify_failure
from deploymachine.models.job import Job, JobState, now_iso
from deploymachine.services.job_store import Bucket, JobStore, RECORD_SUFFIX
from deploymachine.utils.mutex import QueueLock

logger = logging.getLogger(__name__)

Worker = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class QueueState:
    """Mutable state owned by one TaskQueue instance"""
    running: Dict[str, Job] = field(default_factory=dict)
    initialized: bool = False
    init_error: Optional[DeployError] = None
    background: Set[asyncio.Task] = field(default_factory=set)


def _pending_order(filename: str):
    """Sort key for pending records: creation time embedded in the uuid1 ID"""
    stem = filename[:-len(RECORD_SUFFIX)]
    try:
        job_uuid = uuid.UUID(stem)
    except ValueError:
        return (1, 0, filename)
    if job_uuid.version != 1:
        return (1, 0, filename)
    return (0, job_uuid.time, filename)


class TaskQueue:
    def __init__(self, worker: Worker, task_folder: Union[str, Path], max_items: int = -1,
                 lock_poll_interval: float = 0.05):
        self.worker = worker
        self.max_items = max_items
        self.store = JobStore(task_folder)
        self.lock = QueueLock(self.store.lock_path, poll_interval=lock_poll_interval)
        self.state = QueueState()

    async def start(self) -> None:
        """Prepare the task folder and schedule the first pending task, if any"""
        await self._when_ready()
        self._schedule(self.check_next_task(), "check")

    async def _when_ready(self) -> None:
        if self.state.initialized:
            if self.state.init_error:
                raise self.state.init_error
            return
        try:
            await self.store.ensure_layout()
        except DeployError as e:
            self.state.init_error = e
            raise
        finally:
            self.state.initialized = True

    def _schedule(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self.state.background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self.state.background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background step {task.get_name()} crashed", exc_info=task.exception())

    def running_count(self) -> int:
        return len(self.state.running)

    async def push(self, params: Optional[Dict[str, Any]]) -> str:
        """Queue a new task and return its ID without waiting for it to run

        Empty params raise ParamError once the call is awaited, before any
        lock or file is touched.
        """
        if not params:
            logger.warning("push: no task received")
            raise ParamError("Invalid empty build task received")

        job = Job(params=dict(params))
        logger.info(f"push: taskId={job.id} name={job.name}")

        async with self.lock.hold(job.id):
            try:
                await self._when_ready()
                await self.store.save(job, Bucket.INDEX)
                await self.store.save(job, Bucket.PENDING)
            except DeployError as e:
                logger.error(f"push: taskId={job.id} error={e}")
                raise

        logger.debug(f"push: taskId={job.id} schedule check for next task")
        self._schedule(self.check_next_task(), "check")
        return job.id

    def _is_full(self) -> bool:
        return self.max_items > 0 and len(self.state.running) >= self.max_items

    async def check_next_task(self) -> None:
        """Move the oldest pending task to "running" and start it, if a slot is free"""
        if self._is_full():
            logger.debug("check: need to wait, too many tasks running at once")
            return

        runner_id = f"runner-{uuid.uuid1()}"
        try:
            async with self.lock.hold(runner_id):
                if self._is_full():
                    logger.debug("check: slot taken while waiting for the lock")
                    return
                await self._when_ready()
                job = await self._take_next_pending()
        except DeployError as e:
            logger.error(f"check: error={e} ({e.err})")
            return

        if job is None:
            logger.debug("check: no more task to run")
            return

        logger.info(f"check: taskId={job.id} schedule execution")
        self._schedule(self.run_task(job), f"run-{job.id}")
        self._schedule(self.check_next_task(), "check")

    async def _take_next_pending(self) -> Optional[Job]:
        filenames = sorted(await self.store.list_pending(), key=_pending_order)
        for filename in filenames:
            try:
                job = await self.store.read(Bucket.PENDING, filename)
            except DeployError as e:
                logger.error(f"check: skipping unreadable task file={filename}: {e} ({e.err})")
                continue
            if job is None:
                logger.warning(f"check: task file={filename} vanished, skipping")
                continue
            if job.status != JobState.PENDING:
                logger.warning(f"check: task file={filename} has status={job.status.value}, skipping")
                continue

            job.status = JobState.RUNNING
            self.state.running[job.id] = job
            try:
                await self.store.save(job, Bucket.INDEX)
                await self.store.save(job, Bucket.RUNNING)
                await self.store.remove(job, Bucket.PENDING)
            except DeployError:
                self.state.running.pop(job.id, None)
                raise
            return job
        return None

    async def run_task(self, job: Job) -> None:
        """Run the worker on the task and record the outcome"""
        logger.info(f"run task: taskId={job.id} apply worker")
        try:
            result = await self.worker(job.params)
        except Exception as e:
            kind = classify_failure(e)
            job.status = JobState.FAILURE
            job.error = str(e)
            job.error_code = kind.error_code
            if kind.error_code < 500:
                logger.warning(f"run task: taskId={job.id} failure kind={kind.value}: {job.error}")
            else:
                logger.error(f"run task: taskId={job.id} failure kind={kind.value}: {job.error}",
                             exc_info=not isinstance(e, DeployError))
        else:
            logger.info(f"run task: taskId={job.id} done")
            job.status = JobState.SUCCESS
            if result:
                job.result = result
        job.date_finished = now_iso()

        self.state.running.pop(job.id, None)
        try:
            async with self.lock.hold(job.id):
                try:
                    await self.store.save(job, Bucket.INDEX)
                except DeployError as e:
                    logger.error(f"run task: taskId={job.id} could not save task result "
                                 f"status={job.status.value}: {e} ({e.err})")
                try:
                    await self.store.remove(job, Bucket.RUNNING)
                except DeployError as e:
                    logger.error(f'run task: taskId={job.id} could not remove task from "running" '
                                 f"folder: {e} ({e.err})")
        except DeployError as e:
            logger.error(f"run task: taskId={job.id} could not take the lock: {e} ({e.err})")

        logger.debug(f"run task: taskId={job.id} on to next task")
        self._schedule(self.check_next_task(), "check")

    async def get(self, job_id: str) -> Optional[Job]:
        """Return a copy of the stored task, None when unknown"""
        reader_id = f"reader-{uuid.uuid1()}"
        async with self.lock.hold(reader_id):
            await self._when_ready()
            job = await self.store.read_index(job_id)
        if job is None:
            return None
        return job.model_copy(deep=True)

    async def wait_idle(self) -> None:
        """Wait until no scheduled check or running task is left"""
        while self.state.background:
            await asyncio.gather(*list(self.state.background), return_exceptions=True)

    async def close(self) -> None:
        """Cancel scheduled work and release the lock file.

        Tasks interrupted here stay in "running" on disk and get reported as
        ghosts on next start.
        """
        tasks = list(self.state.background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.lock.close()
