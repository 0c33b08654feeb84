# services/job_store.py

"""
Durable job store - keeps job records as JSON files in three folders

- "id": authoritative record of every job ever created, by job ID
- "pending": jobs waiting for a free slot
- "running": jobs being processed

A job listed in "pending" or "running" must have the same status in "id".
None of the methods below take the queue lock, callers must hold it around
any sequence of calls.
"""

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from deploymachine.core.errors import InternalError
from deploymachine.models.job import Job
from deploymachine.utils.file_handler import write_text_atomic, remove_file

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


class Bucket(str, Enum):
    INDEX = "id"
    PENDING = "pending"
    RUNNING = "running"


class JobStore:
    def __init__(self, base_folder: Union[str, Path]):
        self.base_folder = Path(base_folder).resolve()

    @property
    def lock_path(self) -> Path:
        return self.base_folder / "lock"

    def bucket_path(self, bucket: Bucket) -> Path:
        return self.base_folder / bucket.value

    def record_path(self, bucket: Bucket, filename: str) -> Path:
        return self.bucket_path(bucket) / filename

    async def ensure_layout(self) -> List[str]:
        """Create the bucket folders if needed, return ghost records found in "running"

        A record left in "running" means the process stopped in the middle of
        a job. It is reported, not repaired.
        """
        for bucket in Bucket:
            path = self.bucket_path(bucket)
            try:
                await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
            except OSError as e:
                raise InternalError(f'Path "{path}" could not be created', e) from e

        ghosts = await self._list(Bucket.RUNNING)
        for filename in ghosts:
            logger.warning(f'Ghost task in "running" folder: file={filename}')
        return ghosts

    async def save(self, job: Job, bucket: Bucket) -> None:
        filepath = self.record_path(bucket, job.id + RECORD_SUFFIX)
        try:
            contents = job.to_json()
        except (PydanticSerializationError, TypeError, ValueError) as e:
            logger.error(f"save: taskId={job.id} folder={bucket.value} record not serializable: {e}")
            raise InternalError("Could not serialize task", e) from e
        try:
            await asyncio.to_thread(write_text_atomic, filepath, contents)
        except OSError as e:
            logger.error(f"save: taskId={job.id} folder={bucket.value} error={e}")
            raise InternalError("Could not save task to file", e) from e
        logger.debug(f"save: taskId={job.id} folder={bucket.value} done")

    async def remove(self, job: Job, bucket: Bucket) -> None:
        filepath = self.record_path(bucket, job.id + RECORD_SUFFIX)
        try:
            removed = await asyncio.to_thread(remove_file, filepath)
        except OSError as e:
            logger.error(f"remove: taskId={job.id} folder={bucket.value} error={e}")
            raise InternalError("Could not remove task file", e) from e
        logger.debug(f"remove: taskId={job.id} folder={bucket.value} {'done' if removed else 'not found'}")

    async def list_pending(self) -> List[str]:
        """File names in "pending", in no particular order"""
        return await self._list(Bucket.PENDING)

    async def read(self, bucket: Bucket, filename: str) -> Optional[Job]:
        """Parse a record, None if the file does not exist (anymore)"""
        filepath = self.record_path(bucket, filename)
        try:
            contents = await asyncio.to_thread(filepath.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise InternalError(f"Could not parse task file {filename}", e) from e
        except OSError as e:
            raise InternalError(f"Could not read task file {filename}", e) from e

        try:
            return Job.model_validate_json(contents)
        except ValidationError as e:
            raise InternalError(f"Could not parse task file {filename}", e) from e

    async def read_index(self, job_id: str) -> Optional[Job]:
        if (not job_id or os.path.basename(job_id) != job_id or job_id.startswith(".")
                or "\x00" in job_id):
            return None
        return await self.read(Bucket.INDEX, job_id + RECORD_SUFFIX)

    async def _list(self, bucket: Bucket) -> List[str]:
        path = self.bucket_path(bucket)
        try:
            names = await asyncio.to_thread(os.listdir, path)
        except OSError as e:
            logger.error(f'Could not list "{bucket.value}" folder: {e}')
            raise InternalError(f'Could not list "{bucket.value}" folder', e) from e
        return [name for name in names if name.endswith(RECORD_SUFFIX) and not name.startswith(".")]
