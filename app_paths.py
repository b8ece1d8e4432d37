"""On-disk locations used by the server.

Data (config, logs, transient uploads) lives in ``$SERREBISTREAM_DATA_DIR`` when
set, otherwise in a ``SerrebiStream_Data`` folder next to the code when that is
writable, otherwise in the per-user data directory.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

APP_DIR_NAME = "SerrebiStream"
PORTABLE_DATA_DIR_NAME = "SerrebiStream_Data"
DATA_DIR_ENV = "SERREBISTREAM_DATA_DIR"

_CACHED_DATA_DIR: Optional[str] = None


def _is_writable_dir(path: str) -> bool:
    try:
        p = Path(path)
        p.mkdir(parents=True, exist_ok=True)
        return os.access(p, os.W_OK)
    except OSError:
        return False


def get_portable_base_dir() -> str:
    return os.path.dirname(os.path.abspath(__file__))


def get_user_data_base_dir() -> str:
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.environ.get("LOCALAPPDATA")
        if base:
            return base
    return os.environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")


def get_data_dir() -> str:
    """Return the directory where config, logs and transient files are kept."""
    global _CACHED_DATA_DIR
    if _CACHED_DATA_DIR:
        return _CACHED_DATA_DIR

    override = os.environ.get(DATA_DIR_ENV)
    candidates = [override] if override else []
    candidates.append(os.path.join(get_portable_base_dir(), PORTABLE_DATA_DIR_NAME))
    for candidate in candidates:
        if _is_writable_dir(candidate):
            _CACHED_DATA_DIR = os.path.abspath(candidate)
            return _CACHED_DATA_DIR

    _CACHED_DATA_DIR = ensure_dir(os.path.join(get_user_data_base_dir(), APP_DIR_NAME))
    return _CACHED_DATA_DIR


def reset_cache() -> None:
    global _CACHED_DATA_DIR
    _CACHED_DATA_DIR = None


def ensure_dir(path: str) -> str:
    Path(path).mkdir(parents=True, exist_ok=True)
    return path


def get_config_path() -> str:
    return os.path.join(get_data_dir(), "config.json")


def get_state_dir() -> str:
    return ensure_dir(os.path.join(get_data_dir(), "state"))


def get_default_download_dir() -> str:
    return os.path.join(os.getcwd(), "downloads")


def get_logs_dir() -> str:
    return ensure_dir(os.path.join(get_data_dir(), "logs"))


def get_log_path(filename: str = "server.log") -> str:
    return os.path.join(get_logs_dir(), filename)
