"""Canonical torrent model and the backend-agnostic summary built from it."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_MIME = "application/octet-stream"

# Container formats media players care about that the platform table often lacks.
_EXTRA_TYPES = {
    ".mkv": "video/x-matroska",
    ".mka": "audio/x-matroska",
    ".webm": "video/webm",
    ".m4v": "video/x-m4v",
    ".flac": "audio/flac",
    ".opus": "audio/ogg",
    ".srt": "application/x-subrip",
    ".vtt": "text/vtt",
    ".ts": "video/mp2t",
}


def leaf_name(path: str) -> str:
    """Last component of a torrent path, whichever separator it was declared with."""
    if not path:
        return ""
    return path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def mime_for(name: str) -> str:
    leaf = leaf_name(name or "").lower()
    dot = leaf.rfind(".")
    if dot > 0:
        ext = leaf[dot:]
        if ext in _EXTRA_TYPES:
            return _EXTRA_TYPES[ext]
    guessed, _ = mimetypes.guess_type(leaf, strict=False)
    return guessed or DEFAULT_MIME


@dataclass(frozen=True)
class FileEntry:
    index: int
    name: str
    length: int
    relative_path: str
    mime_type: str = DEFAULT_MIME

    @classmethod
    def build(cls, index: int, relative_path: str, length: int) -> "FileEntry":
        name = leaf_name(relative_path)
        return cls(
            index=index,
            name=name,
            length=max(0, int(length or 0)),
            relative_path=relative_path,
            mime_type=mime_for(name),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "length": self.length,
            "path": self.relative_path,
            "mime": self.mime_type,
        }


@dataclass(frozen=True)
class TorrentHandle:
    """Snapshot of one tracked torrent, as reported by a backend."""

    id: Any
    info_hash: str
    name: Optional[str] = None
    total_size: int = 0
    downloaded_bytes: int = 0
    download_rate_bps: int = 0
    upload_rate_bps: int = 0
    peer_count: int = 0
    files: Tuple[FileEntry, ...] = field(default_factory=tuple)
    ready: bool = False
    download_dir: Optional[str] = None


@dataclass(frozen=True)
class TorrentView:
    info_hash: str
    name: Optional[str]
    progress_percent: float
    download_rate_bps: int
    upload_rate_bps: int
    peer_count: int
    total_size: int
    downloaded_bytes: int
    ready: bool
    files: Tuple[FileEntry, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "infoHash": self.info_hash,
            "name": self.name,
            "progressPercent": self.progress_percent,
            "downloadRateBps": self.download_rate_bps,
            "uploadRateBps": self.upload_rate_bps,
            "peerCount": self.peer_count,
            "totalSize": self.total_size,
            "downloadedBytes": self.downloaded_bytes,
            "ready": self.ready,
            "files": [f.to_dict() for f in self.files],
        }


def _non_negative(value: Any) -> int:
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


def progress_percent(downloaded: int, total: int) -> float:
    if total <= 0:
        return 0.0
    pct = downloaded / total * 100
    return round(min(100.0, max(0.0, pct)), 2)


def normalize(handle: TorrentHandle) -> TorrentView:
    total = _non_negative(handle.total_size)
    downloaded = min(_non_negative(handle.downloaded_bytes), total)
    files: List[FileEntry] = []
    for i, entry in enumerate(handle.files):
        files.append(entry if entry.index == i else FileEntry.build(i, entry.relative_path, entry.length))
    return TorrentView(
        info_hash=handle.info_hash,
        name=handle.name or None,
        progress_percent=progress_percent(downloaded, total),
        download_rate_bps=_non_negative(handle.download_rate_bps),
        upload_rate_bps=_non_negative(handle.upload_rate_bps),
        peer_count=_non_negative(handle.peer_count),
        total_size=total,
        downloaded_bytes=downloaded,
        ready=bool(handle.ready),
        files=tuple(files),
    )
