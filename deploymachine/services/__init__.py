# services/__init__.py

from .job_store import JobStore, Bucket
from .task_queue import TaskQueue, QueueState
from .git_action import run_git_action
from .hook_service import HookService, event_names

__all__ = ['JobStore', 'Bucket', 'TaskQueue', 'QueueState', 'run_git_action', 'HookService', 'event_names']
