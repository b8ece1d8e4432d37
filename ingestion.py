"""Turn an add request (magnet link or .torrent upload) into a tracked torrent."""

from __future__ import annotations

import logging
import os
import tempfile
import time
from typing import Optional

from backends import BaseBackend, MagnetSource, TorrentFileSource
from errors import BackendError, InvalidRequest, InvalidSource, NotFound
from torrent_parsing import looks_like_torrent, parse_magnet_infohash, safe_torrent_info_hash
from torrent_view import TorrentHandle, TorrentView, normalize

log = logging.getLogger(__name__)


class Ingestor:
    def __init__(self, backend: BaseBackend, state_dir: str, lookup_retries: int = 10,
                 lookup_interval: float = 0.5) -> None:
        self.backend = backend
        self.state_dir = state_dir
        self.lookup_retries = max(0, int(lookup_retries))
        self.lookup_interval = max(0.0, float(lookup_interval))

    def ingest(self, magnet_uri: Optional[str] = None, torrent_bytes: Optional[bytes] = None) -> TorrentView:
        magnet_uri = (magnet_uri or "").strip() or None
        if magnet_uri and torrent_bytes:
            raise InvalidRequest("Provide either a magnetUri or a .torrent file, not both.")
        if not magnet_uri and not torrent_bytes:
            raise InvalidRequest("Provide a magnetUri or upload a .torrent file.")

        if magnet_uri:
            info_hash = parse_magnet_infohash(magnet_uri)
            if not info_hash:
                raise InvalidSource(details="Magnet link has no usable info-hash")
            existing = self._existing(info_hash)
            if existing is not None:
                return normalize(existing)
            handle = self.backend.add(MagnetSource(magnet_uri))
        else:
            existing = self._existing(safe_torrent_info_hash(torrent_bytes))
            if existing is not None:
                return normalize(existing)
            handle = self._add_file(torrent_bytes)

        return normalize(self._lookup(handle.info_hash))

    def _existing(self, info_hash: Optional[str]) -> Optional[TorrentHandle]:
        if not info_hash:
            return None
        try:
            handle = self.backend.get(info_hash)
        except NotFound:
            return None
        log.info("Torrent %s is already tracked", info_hash)
        return handle

    def _add_file(self, torrent_bytes: bytes) -> TorrentHandle:
        if not looks_like_torrent(torrent_bytes):
            raise InvalidSource(details="Upload is not a bencoded torrent file")
        if not self.backend.requires_transient_file:
            return self.backend.add(TorrentFileSource(data=torrent_bytes))

        fd, path = tempfile.mkstemp(prefix="upload-", suffix=".torrent", dir=self.state_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(torrent_bytes)
            return self.backend.add(TorrentFileSource(path=path))
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def _lookup(self, info_hash: str) -> TorrentHandle:
        """Fetch the handle by hash, giving a daemon time to register it."""
        attempt = 0
        while True:
            try:
                return self.backend.get(info_hash)
            except NotFound as e:
                if attempt >= self.lookup_retries:
                    raise BackendError(
                        "Failed to add torrent",
                        details=f"{info_hash} not visible after {attempt + 1} lookups",
                    ) from e
                attempt += 1
                log.debug("Torrent %s not visible yet, retry %d/%d", info_hash, attempt, self.lookup_retries)
                time.sleep(self.lookup_interval)
