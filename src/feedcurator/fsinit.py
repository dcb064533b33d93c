from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from .config import PathsConfig


def set_umask_from_env() -> None:
    umask_value = os.environ.get("FC_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def runtime_paths(paths: PathsConfig) -> list[str]:
    items = [
        paths.data_dir,
        os.path.dirname(paths.state_db),
        paths.vector_dir,
    ]
    log_file = os.environ.get("FC_LOG_FILE")
    if log_file:
        items.append(os.path.dirname(os.path.abspath(log_file)))
    return items


def ensure_runtime_dirs(paths: Iterable[str]) -> list[str]:
    created = []
    for path in paths:
        if not path:
            continue
        target = Path(path)
        if target.is_dir():
            continue
        try:
            target.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            continue
        try:
            target.chmod(0o775)
        except PermissionError:
            pass
        created.append(str(target))
    return created
