# services/hook_service.py

"""
Hook service - turns GitHub notifications and periodic checks into queued tasks
"""

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from deploymachine.models.hook import HookConfig
from deploymachine.services.task_queue import TaskQueue

logger = logging.getLogger(__name__)


def event_names(event: str, reponame: Optional[str] = None, ref: Optional[str] = None) -> List[str]:
    """Names a delivery answers to: "push", "push:repo", "push:repo:refs/heads/main" """
    names = [event]
    if reponame:
        names.append(f"{event}:{reponame}")
        if ref:
            names.append(f"{event}:{reponame}:{ref}")
    return names


class HookService:
    def __init__(
            self,
            queue: TaskQueue,
            data_folder: Union[str, Path],
            post_receive_hooks: Optional[Dict[str, HookConfig]] = None,
            periodic_hooks: Optional[Dict[str, HookConfig]] = None,
            default_key: Optional[str] = None
    ):
        self.queue = queue
        self.data_folder = str(data_folder)
        self.post_receive_hooks = post_receive_hooks or {}
        self.periodic_hooks = periodic_hooks or {}
        self.default_key = default_key

        for name, hook in self.post_receive_hooks.items():
            logger.info(f"Registered GitHub hook handler {name} for event {hook.event_name}")

    def build_params(self, name: str, hook: HookConfig, source: str) -> Dict[str, Any]:
        params = copy.deepcopy(hook.action_params())
        params.setdefault("name", name)
        params["from"] = source
        params["dataFolder"] = self.data_folder
        if not params.get("privatekey") and self.default_key:
            params["privatekey"] = self.default_key
        return params

    async def handle_delivery(self, event: str, payload: Dict[str, Any]) -> List[str]:
        """Queue the action of every hook registered for this GitHub delivery"""
        repository = payload.get("repository") or {}
        reponame = repository.get("name")
        ref = payload.get("ref")
        names = event_names(event, reponame, ref)

        queued = []
        for name, hook in self.post_receive_hooks.items():
            if hook.event_name not in names:
                continue
            logger.info(f"Queue action {name} for {event} notification on repo {reponame} (ref {ref})")
            queued.append(await self.queue.push(self.build_params(name, hook, "github")))

        if not queued:
            logger.info(f"No hook registered for {names[-1]}")
        return queued

    async def run_periodic_check(self) -> List[str]:
        """Queue every periodic hook, unless some task is still running"""
        logger.info("Periodic check...")
        if self.queue.running_count() > 0:
            logger.info("Periodic check... postponed (running task detected)")
            return []

        queued = []
        for name, hook in self.periodic_hooks.items():
            queued.append(await self.queue.push(self.build_params(name, hook, "monitoring")))
            logger.info(f"Queued new monitoring action for {name}")
        logger.info("Periodic check... done")
        return queued

    async def monitor(self, interval: float) -> None:
        """Run the periodic check every ``interval`` seconds, until cancelled"""
        logger.info(f"Start monitoring, interval is {interval} seconds, "
                    f"{len(self.periodic_hooks)} tasks monitored")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_periodic_check()
            except Exception as e:
                logger.error(f"Periodic check failed: {e}", exc_info=True)
