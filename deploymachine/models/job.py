# models/job.py

"""
Job-related data models
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123Z'"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCESS, JobState.FAILURE)


class Job(BaseModel):
    """A queued unit of work, persisted as JSON with camelCase keys"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid1()))
    params: Dict[str, Any]
    status: JobState = JobState.PENDING
    date_created: str = Field(default_factory=now_iso, alias="dateCreated")
    date_finished: Optional[str] = Field(None, alias="dateFinished")
    error: Optional[str] = None
    error_code: Optional[int] = Field(None, alias="errorCode")
    result: Optional[Any] = None

    @property
    def name(self) -> Optional[str]:
        return self.params.get("name")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
