from __future__ import annotations

import logging
from pathlib import Path

import pytest

from deploymachine.core.errors import (
    FailureKind,
    InternalError,
    ParamError,
    WorkerKilledError,
    classify_failure,
)
from deploymachine.services.git_action import (
    GIT_ACTION_SCRIPT,
    NOPROMPT_SSH,
    build_env,
    parse_action,
    run_git_action,
)

ACTION = {
    "name": "website",
    "origin": "git@github.com:example/website.git",
    "script": "./deploy.sh",
}


def _fake_script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-gitaction.sh"
    script.write_text("#!/bin/bash\n" + body + "\n")
    return script


def test_parse_action_applies_defaults() -> None:
    action = parse_action({**ACTION, "dataFolder": "/srv/data", "from": "github"})

    assert action.branch == "master"
    assert action.data_folder == "/srv/data"
    assert action.source == "github"
    assert action.timeout == 600
    assert action.check is None


@pytest.mark.parametrize("missing, message", [("origin", "origin"), ("script", "script")])
def test_parse_action_requires_origin_and_script(missing: str, message: str) -> None:
    params = {k: v for k, v in ACTION.items() if k != missing}

    with pytest.raises(ParamError, match=message):
        parse_action(params)


def test_parse_action_rejects_invalid_timeout() -> None:
    with pytest.raises(ParamError) as excinfo:
        parse_action({**ACTION, "timeout": -5})
    assert classify_failure(excinfo.value) == FailureKind.PARAM


def test_build_env_uses_deploy_key_wrapper(tmp_path: Path) -> None:
    action = parse_action({**ACTION, "privatekey": "KEY_MAIN", "dataFolder": str(tmp_path),
                           "env": {"STAGE": "prod", "RETRIES": 3}, "install": "pip install ."})
    env = build_env(action)

    assert env["GIT_SSH"] == str(tmp_path.resolve() / "deploykeys" / "ssh-KEY_MAIN.sh")
    assert "GIT_SSH_COMMAND" not in env
    assert env["STAGE"] == "prod"
    assert env["RETRIES"] == "3"
    assert env["INSTALL"] == "pip install ."
    assert "PATH" in env


def test_build_env_without_key_disables_prompts() -> None:
    env = build_env(parse_action(ACTION))

    assert env["GIT_SSH_COMMAND"] == NOPROMPT_SSH
    assert "GIT_SSH" not in env


def test_bundled_script_is_packaged() -> None:
    assert GIT_ACTION_SCRIPT.is_file()


async def test_run_git_action_passes_arguments_and_relays_output(tmp_path: Path, caplog) -> None:
    script = _fake_script(tmp_path, 'echo "origin=$1 data=$2 branch=$3 script=$4 check=$5"\nexit 0')

    with caplog.at_level(logging.INFO):
        result = await run_git_action({**ACTION, "branch": "main", "check": "./check.sh",
                                       "dataFolder": "data"}, script_path=script)

    assert result is None
    assert ("stdout | origin=git@github.com:example/website.git data=data branch=main "
            "script=./deploy.sh check=./check.sh") in caplog.text


async def test_run_git_action_reports_non_zero_exit(tmp_path: Path) -> None:
    script = _fake_script(tmp_path, 'echo "fatal: repository not found" >&2\nexit 3')

    with pytest.raises(InternalError) as excinfo:
        await run_git_action(ACTION, script_path=script)

    assert not isinstance(excinfo.value, WorkerKilledError)
    assert excinfo.value.err == 3
    assert classify_failure(excinfo.value) == FailureKind.INTERNAL


async def test_run_git_action_kills_script_on_timeout(tmp_path: Path) -> None:
    script = _fake_script(tmp_path, "trap '' TERM\nsleep 30")

    with pytest.raises(WorkerKilledError):
        await run_git_action({**ACTION, "timeout": 1}, script_path=script, kill_grace=0.5)


async def test_run_git_action_rejects_bad_params_before_spawning(tmp_path: Path) -> None:
    marker = tmp_path / "spawned"
    script = _fake_script(tmp_path, f"touch {marker}")

    with pytest.raises(ParamError):
        await run_git_action({"name": "website"}, script_path=script)
    assert not marker.exists()
