# services/deploy_keys.py

"""
Deploy keys - private SSH keys written to the data folder for git actions

Each key comes with an "ssh-<name>.sh" wrapper used as GIT_SSH. The key
cannot simply be passed to "git clone" because install commands run after
the clone (pip, npm...) only preserve GIT_SSH when they fetch private
dependencies themselves.
"""

import logging
from pathlib import Path
from typing import Dict, List

from deploymachine.utils.file_handler import write_text_atomic, delete_folder

logger = logging.getLogger(__name__)

KEY_MODE = 0o600
WRAPPER_MODE = 0o700


def ssh_wrapper(key_path: Path) -> str:
    return (
        "#!/bin/sh\n"
        f"exec ssh -i {key_path}"
        " -o IdentitiesOnly=yes"
        " -o BatchMode=yes"
        " -o UserKnownHostsFile=/dev/null"
        " -o StrictHostKeyChecking=no"
        ' "$@"\n'
    )


def clean_deploy_keys(folder: Path) -> None:
    logger.info("Clean deploy keys folder...")
    delete_folder(folder)
    logger.info("Clean deploy keys folder... done")


def provision_deploy_keys(folder: Path, deploy_keys: Dict[str, str]) -> List[str]:
    """Save deploy keys and their ssh wrappers, unless the folder already exists"""
    folder = Path(folder)
    if folder.exists():
        logger.info(f"Deploy keys folder {folder} already exists, keys not saved")
        return []

    logger.info(f"Save deploy keys in {folder}...")
    folder.mkdir(parents=True)
    saved = []
    for name, key in deploy_keys.items():
        if not name or Path(name).name != name:
            logger.warning(f"Skipping deploy key with invalid name {name!r}")
            continue
        logger.info(f"Save deploy key {name}...")
        key_path = (folder / name).resolve()
        key = key.replace("\\n", "\n")
        if not key.endswith("\n"):
            key += "\n"
        write_text_atomic(key_path, key, mode=KEY_MODE)
        write_text_atomic(folder / f"ssh-{name}.sh", ssh_wrapper(key_path), mode=WRAPPER_MODE)
        saved.append(name)
    logger.info(f"Save deploy keys in {folder}... done, {len(saved)} keys")
    return saved
