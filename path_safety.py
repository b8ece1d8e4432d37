"""Resolve torrent-declared file paths against a download directory.

A torrent is untrusted input: its file list can declare ``../../etc/passwd`` or
an absolute path. Every path is checked here before any file is opened.
"""

from __future__ import annotations

import logging
import os
import re

from errors import PathViolation

log = logging.getLogger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def _split_segments(relative_path: str):
    return [seg for seg in re.split(r"[\\/]+", relative_path) if seg not in ("", ".")]


def is_contained(base_dir: str, candidate: str) -> bool:
    base = os.path.normcase(os.path.abspath(base_dir))
    target = os.path.normcase(os.path.abspath(candidate))
    try:
        return os.path.commonpath([base, target]) == base
    except ValueError:
        # Different drives on Windows.
        return False


def resolve_safe_path(download_dir: str, relative_path: str) -> str:
    """Return the absolute on-disk path of ``relative_path`` inside ``download_dir``.

    Both ``/`` and ``\\`` count as separators. Raises ``PathViolation`` when the
    path is empty, absolute, drive-qualified or escapes the directory once
    ``..`` segments are resolved.
    """
    if not download_dir:
        _reject(download_dir, relative_path, "no download directory")
    if not relative_path or "\x00" in relative_path:
        _reject(download_dir, relative_path, "empty or NUL in path")
    if relative_path[0] in "/\\" or _DRIVE_RE.match(relative_path):
        _reject(download_dir, relative_path, "absolute path")

    segments = _split_segments(relative_path)
    if not segments:
        _reject(download_dir, relative_path, "no file component")

    base = os.path.abspath(download_dir)
    candidate = os.path.normpath(os.path.join(base, *segments))
    if candidate == base or not is_contained(base, candidate):
        _reject(download_dir, relative_path, "escapes download directory")
    return candidate


def _reject(download_dir, relative_path, reason):
    log.warning(
        "Blocked file path %r under %r: %s", relative_path, download_dir, reason
    )
    raise PathViolation(details=reason)
