from __future__ import annotations

import logging
import os
from pathlib import Path

from .utils import log_event

DIR_MODE = 0o775


def prepare_runtime(config, logger: logging.Logger | None = None) -> list[str]:
    """Apply ``SD_UMASK`` and create the data and object store directories.

    Returns the directories that could not be created.
    """
    _apply_umask(os.environ.get("SD_UMASK", "002"))
    skipped = []
    for path in runtime_dirs(config.paths.data_dir, config.paths.object_store_dir):
        if not _make_dir(Path(path)):
            skipped.append(path)
    if skipped and logger is not None:
        log_event(logger, logging.WARNING, "runtime_dirs_skipped", paths=",".join(skipped))
    return skipped


def runtime_dirs(data_dir: str, object_store_dir: str) -> list[str]:
    dirs = [data_dir, object_store_dir, os.path.join(object_store_dir, "domains")]
    log_file = os.environ.get("SD_LOG_FILE")
    if log_file:
        dirs.append(os.path.dirname(os.path.abspath(log_file)))
    return [path for path in dirs if path]


def _apply_umask(value: str) -> None:
    try:
        os.umask(int(value, 8))
    except (TypeError, ValueError):
        os.umask(0o002)


def _make_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return False
    try:
        path.chmod(DIR_MODE)
    except PermissionError:
        # directory owned by another user
        pass
    return True
