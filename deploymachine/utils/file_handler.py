# utils/file_handler.py

"""
File handling utilities
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def write_text_atomic(filepath: PathLike, contents: str, mode: int = None) -> str:
    """Write a file through a temp file in the same folder and rename it in place"""
    filepath = Path(filepath)
    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, prefix=f".{filepath.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(contents)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise

    return str(filepath)


def remove_file(filepath: PathLike) -> bool:
    """Delete a file, returns False when there was nothing to delete"""
    try:
        os.unlink(filepath)
    except FileNotFoundError:
        return False
    return True


def delete_folder(path: PathLike) -> None:
    """Recursively delete a folder. Errors are logged, not raised."""
    path = Path(path)
    if not path.exists():
        return

    logger.info(f'Delete folder "{path}"...')
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.error(f'Delete folder "{path}"... an error occurred: {e}')
        return
    logger.info(f'Delete folder "{path}"... done')
