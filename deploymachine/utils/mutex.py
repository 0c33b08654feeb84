# utils/mutex.py

"""
Locks used to serialize task file operations

A mutex is held by one owner at a time. Owners are plain string IDs, the
application is responsible for keeping them unique. Pending acquirers are
granted the mutex in FIFO order, and granting always goes through the event
loop so that ``acquire`` never completes in the scheduling turn it was
called from.

QueueLock layers an advisory lock on a file over the in-process mutex, to
protect the task folder against other processes that share it.
"""

import asyncio
import fcntl
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Deque, Optional, Tuple, Union

from deploymachine.core.errors import InternalError

logger = logging.getLogger(__name__)


class FifoMutex:
    """In-process mutex with a FIFO queue of waiters"""

    def __init__(self):
        self.locked_by: Optional[str] = None
        self._waiters: Deque[Tuple[str, asyncio.Future]] = deque()

    @property
    def waiting(self) -> Tuple[str, ...]:
        return tuple(owner for owner, fut in self._waiters if not fut.done())

    async def acquire(self, owner_id: str) -> None:
        """Take the mutex, suspending until it is granted.

        The same owner may take the mutex more than once. That is a no-op,
        and usually the sign that something is wrong with the calling code.
        """
        if self.locked_by == owner_id:
            logger.warning(f"Mutex already held by {owner_id}, ignoring new lock request")
            await asyncio.sleep(0)
            return

        if self.locked_by is None:
            self.locked_by = owner_id
            try:
                await asyncio.sleep(0)
            except asyncio.CancelledError:
                self.release(owner_id)
                raise
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((owner_id, fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Granted and cancelled in the same turn
                self.release(owner_id)
            else:
                self._discard(fut)
            raise

    def release(self, owner_id: str) -> None:
        """Release the mutex and hand it over to the next waiter.

        Raises InternalError when the caller is not the current holder. That
        is the consequence of a bug in the calling code, the holder and the
        waiters are left untouched.
        """
        if owner_id is None or self.locked_by != owner_id:
            raise InternalError(
                "Mutex has been locked by someone else and cannot be unlocked",
                f"id={owner_id}, lockedBy={self.locked_by}"
            )

        self.locked_by = None
        while self._waiters:
            next_owner, fut = self._waiters.popleft()
            if fut.done():
                continue
            self.locked_by = next_owner
            fut.set_result(None)
            break

    def _discard(self, fut: asyncio.Future) -> None:
        for entry in self._waiters:
            if entry[1] is fut:
                self._waiters.remove(entry)
                break


class FileLock:
    """Exclusive advisory lock (flock) on a dedicated file"""

    def __init__(self, path: Union[str, Path], poll_interval: float = 0.05):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None
        self.locked = False

    def _open(self) -> int:
        if self._fd is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        return self._fd

    async def acquire(self) -> None:
        """Take the lock, polling while some other process holds it"""
        try:
            fd = self._open()
        except OSError as e:
            raise InternalError(f'Lock file "{self.path}" could not be opened', e) from e

        waited = False
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if not waited:
                    logger.info(f'Lock file "{self.path}" held by another process, waiting')
                    waited = True
                await asyncio.sleep(self.poll_interval)
            except OSError as e:
                raise InternalError(f'Lock file "{self.path}" could not be locked', e) from e
        self.locked = True

    def release(self) -> None:
        if self._fd is None or not self.locked:
            return
        self.locked = False
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f'Could not unlock "{self.path}": {e}')

    def close(self) -> None:
        self.release()
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


class QueueLock:
    """Two-tier lock: in-process FIFO mutex first, lock file second.

    The mutex is always acquired first and released last, so that a waiter
    never sits on the file lock while another owner in this process holds
    the mutex.
    """

    def __init__(self, path: Union[str, Path], poll_interval: float = 0.05):
        self.mutex = FifoMutex()
        self.file_lock = FileLock(path, poll_interval=poll_interval)

    @property
    def locked_by(self) -> Optional[str]:
        return self.mutex.locked_by

    @property
    def waiting(self) -> Tuple[str, ...]:
        return self.mutex.waiting

    async def acquire(self, owner_id: str) -> None:
        if self.mutex.locked_by == owner_id:
            await self.mutex.acquire(owner_id)
            return

        await self.mutex.acquire(owner_id)
        try:
            await self.file_lock.acquire()
        except BaseException:
            self.mutex.release(owner_id)
            raise

    def release(self, owner_id: str) -> None:
        if owner_id is None or self.mutex.locked_by != owner_id:
            raise InternalError(
                "Lock has been taken by someone else and cannot be released",
                f"id={owner_id}, lockedBy={self.mutex.locked_by}"
            )
        self.file_lock.release()
        self.mutex.release(owner_id)

    @asynccontextmanager
    async def hold(self, owner_id: str) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block, released on every exit path"""
        await self.acquire(owner_id)
        try:
            yield
        finally:
            self.release(owner_id)

    def close(self) -> None:
        self.file_lock.close()
