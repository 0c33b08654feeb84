# services/git_action.py

"""
Git action worker

Clones a Git repository to a local folder if not already done, checks out
the requested branch and pulls the latest version if needed, runs the
"check" command if defined, and runs the "script" command if the check
exited with code 42 or if there is no check.

The worker does not lock anything, the task queue calls it outside of its
lock.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from deploymachine.core.errors import InternalError, ParamError, WorkerKilledError
from deploymachine.models.hook import GitAction

logger = logging.getLogger(__name__)

GIT_ACTION_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "gitaction.sh"
KILL_GRACE_SECONDS = 10
OUTPUT_DRAIN_SECONDS = 5
NOPROMPT_SSH = "ssh -o BatchMode=yes -o UserKnownHostsFile=/dev/null -o StrictHostKeyChecking=no"


def parse_action(params: Dict[str, Any]) -> GitAction:
    if not params.get("origin"):
        logger.warning("Git origin not found")
        raise ParamError("The origin of the Git repository to clone must be specified")
    if not params.get("script"):
        logger.warning("Action script not found")
        raise ParamError("No action script to run")
    try:
        return GitAction.model_validate(params)
    except ValidationError as e:
        raise ParamError("Invalid git action parameters", e) from e


def build_env(action: GitAction) -> Dict[str, str]:
    env = dict(action.env)
    env["PATH"] = os.environ.get("PATH", "")
    if "HOME" in os.environ:
        env.setdefault("HOME", os.environ["HOME"])
    if action.install:
        env["INSTALL"] = action.install
    if action.privatekey:
        env["GIT_SSH"] = str(
            Path(action.data_folder).resolve() / "deploykeys" / f"ssh-{action.privatekey}.sh"
        )
    else:
        env["GIT_SSH_COMMAND"] = NOPROMPT_SSH
    return env


def _describe(action: GitAction) -> str:
    return (f"origin={action.origin} branch={action.branch} "
            f"script={action.script} check={action.check or 'none'}")


async def _relay(stream: Optional[asyncio.StreamReader], label: str) -> None:
    if stream is None:
        return
    async for line in stream:
        logger.info(f"{label} | {line.decode('utf-8', errors='replace').rstrip()}")


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


async def run_git_action(
        params: Dict[str, Any],
        script_path: Union[str, Path] = GIT_ACTION_SCRIPT,
        kill_grace: float = KILL_GRACE_SECONDS
) -> None:
    """Run the git action described by params, raising on failure"""
    action = parse_action(params)
    logger.info(f"Action received: {_describe(action)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            "bash", str(script_path),
            action.origin,
            action.data_folder,
            action.branch,
            action.script,
            action.check or "",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=build_env(action),
            start_new_session=True
        )
    except OSError as e:
        logger.error(f"Could not start git action: {_describe(action)}: {e}")
        raise InternalError("git action script could not be started", e) from e

    relay = asyncio.gather(_relay(proc.stdout, "stdout"), _relay(proc.stderr, "stderr"))
    timed_out = False
    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout=action.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error(f"Git action timed out after {action.timeout}s, terminating: {_describe(action)}")
            _signal_group(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=kill_grace)
            except asyncio.TimeoutError:
                _signal_group(proc, signal.SIGKILL)
                await proc.wait()
    finally:
        if proc.returncode is None:
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()
        try:
            await asyncio.wait_for(relay, timeout=OUTPUT_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Git action output still open after exit, no longer relayed")

    code = proc.returncode
    if timed_out or code is None or code < 0:
        logger.error(f"Git action got killed: {_describe(action)}")
        raise WorkerKilledError("git action script got killed", code)
    if code != 0:
        logger.error(f"Could not run git action: {_describe(action)} exit code={code}")
        raise InternalError("git action script reported an error", code)

    logger.info(f"Run action done: {_describe(action)}")
