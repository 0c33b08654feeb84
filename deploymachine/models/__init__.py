# models/__init__.py

from .job import Job, JobState, now_iso
from .hook import HookConfig, GitAction

__all__ = [
    'Job',
    'JobState',
    'now_iso',
    'HookConfig',
    'GitAction'
]
