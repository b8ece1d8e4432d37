import abc
import logging
import os
import pathlib
import posixpath
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from config_manager import BACKEND_EMBEDDED, BACKEND_TRANSMISSION, session_preferences
from errors import BackendError, BackendUnavailable, InvalidSource, NotFound, NotReady
from path_safety import resolve_safe_path
from range_streaming import ByteRange, ByteStream, ResolvedFile
from torrent_parsing import is_magnet, looks_like_torrent, normalize_info_hash, parse_magnet_infohash
from torrent_view import FileEntry, TorrentHandle

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MagnetSource:
    uri: str


@dataclass(frozen=True)
class TorrentFileSource:
    data: Optional[bytes] = None
    path: Optional[str] = None

    def read(self) -> bytes:
        if self.data is not None:
            return self.data
        with open(self.path, "rb") as f:
            return f.read()


Source = Union[MagnetSource, TorrentFileSource]


class BaseBackend(abc.ABC):
    name = "base"
    # Daemons that only accept uploads as files get a temp file path instead of bytes.
    requires_transient_file = False

    def __init__(self):
        self._ready_lock = threading.Lock()
        self._ready_hashes = set()

    @abc.abstractmethod
    def add(self, source: Source) -> TorrentHandle:
        pass

    @abc.abstractmethod
    def list(self) -> List[TorrentHandle]:
        pass

    @abc.abstractmethod
    def get(self, info_hash: str) -> TorrentHandle:
        pass

    @abc.abstractmethod
    def remove(self, info_hash: str, delete_files: bool = False) -> None:
        pass

    def close(self) -> None:
        pass

    def _check_source(self, source: Source) -> None:
        if isinstance(source, MagnetSource):
            if not is_magnet(source.uri) or not parse_magnet_infohash(source.uri):
                raise InvalidSource(details="Magnet link has no usable info-hash")
        elif isinstance(source, TorrentFileSource):
            if source.data is None and not source.path:
                raise InvalidSource(details="Empty torrent upload")
            if source.data is not None and not looks_like_torrent(source.data):
                raise InvalidSource(details="Upload is not a bencoded torrent file")
        else:
            raise InvalidSource()

    def _latch_ready(self, handle: TorrentHandle) -> TorrentHandle:
        """Keep ``ready`` true once it has been seen, until the torrent is removed."""
        with self._ready_lock:
            if handle.ready:
                if handle.info_hash not in self._ready_hashes:
                    self._ready_hashes.add(handle.info_hash)
                    log.info("Torrent %s (%s) is ready", handle.info_hash, handle.name)
                return handle
            if handle.info_hash in self._ready_hashes:
                return replace(handle, ready=True)
        return handle

    def _forget_ready(self, info_hash: str) -> None:
        with self._ready_lock:
            self._ready_hashes.discard(info_hash)

    def resolve_file(self, info_hash: str, file_index: int) -> ResolvedFile:
        handle = self.get(info_hash)
        if file_index < 0 or file_index >= len(handle.files):
            raise NotFound("File not found")
        if not handle.ready:
            raise NotReady()
        if not handle.download_dir:
            raise BackendError(details="Backend did not report a download directory")
        entry = handle.files[file_index]
        path = resolve_safe_path(handle.download_dir, entry.relative_path)
        return ResolvedFile(path=path, size=entry.length, mime_type=entry.mime_type, name=entry.name)

    def resolve_file_stream(self, info_hash: str, file_index: int,
                            byte_range: Optional[ByteRange] = None) -> ByteStream:
        return self.resolve_file(info_hash, file_index).open(byte_range)


# --- Transmission ---
from transmission_rpc import Client as TransClient
from transmission_rpc.error import TransmissionConnectError, TransmissionError, TransmissionTimeoutError

TRANSMISSION_FIELDS = [
    "id", "name", "hashString", "totalSize", "haveValid", "rateDownload", "rateUpload",
    "peersConnected", "files", "downloadDir", "metadataPercentComplete",
]


class TransmissionBackend(BaseBackend):
    name = "transmission"
    requires_transient_file = True

    def __init__(self, url, user=None, password=None, download_dir=None, remote_download_dir=None, timeout=30):
        super().__init__()
        if not url.startswith(("http://", "https://")):
            url = "http://" + url
        p = urlparse(url)
        self._conn = {
            "protocol": p.scheme,
            "host": p.hostname or "localhost",
            "port": p.port or 9091,
            "path": p.path if p.path and p.path != "/" else "/transmission/rpc",
            "username": user or None,
            "password": password or None,
            "timeout": timeout,
        }
        self.download_dir = download_dir
        self.remote_download_dir = remote_download_dir or None
        self._c = None
        self._c_lock = threading.Lock()

    @property
    def c(self):
        with self._c_lock:
            if self._c is None:
                try:
                    self._c = TransClient(**self._conn)
                except TransmissionError as e:
                    raise BackendUnavailable(details=str(e)) from e
            return self._c

    def _call(self, method, *args, **kwargs):
        try:
            return getattr(self.c, method)(*args, **kwargs)
        except (TransmissionConnectError, TransmissionTimeoutError) as e:
            with self._c_lock:
                self._c = None
            raise BackendUnavailable(details=str(e)) from e
        except TransmissionError as e:
            msg = str(e)
            if "invalid or corrupt" in msg.lower():
                raise InvalidSource(details=msg) from e
            raise BackendError(details=msg) from e

    def _local_dir(self, remote_dir):
        if not remote_dir:
            return self.download_dir
        if not self.remote_download_dir or not self.download_dir:
            return remote_dir
        root = self.remote_download_dir.rstrip("/") or "/"
        remote = posixpath.normpath(remote_dir)
        if remote == root:
            return self.download_dir
        if remote.startswith(root.rstrip("/") + "/"):
            rest = remote[len(root.rstrip("/")) + 1:]
            return os.path.join(self.download_dir, *rest.split("/"))
        return remote_dir

    def _snapshot(self, fields: Dict[str, Any]) -> TorrentHandle:
        raw_files = fields.get("files") or []
        files = tuple(FileEntry.build(i, f.get("name", ""), f.get("length", 0)) for i, f in enumerate(raw_files))
        total = int(fields.get("totalSize") or 0)
        downloaded = int(fields.get("haveValid") or 0)
        has_metadata = float(fields.get("metadataPercentComplete", 1) or 0) >= 1
        files_complete = all(int(f.get("bytesCompleted") or 0) >= int(f.get("length") or 0) for f in raw_files)
        return self._latch_ready(TorrentHandle(
            id=fields.get("id"),
            info_hash=normalize_info_hash(fields.get("hashString")) or "",
            name=fields.get("name") or None,
            total_size=total,
            downloaded_bytes=downloaded,
            download_rate_bps=int(fields.get("rateDownload") or 0),
            upload_rate_bps=int(fields.get("rateUpload") or 0),
            peer_count=int(fields.get("peersConnected") or 0),
            files=files,
            ready=bool(has_metadata and raw_files and total > 0 and downloaded >= total and files_complete),
            download_dir=self._local_dir(fields.get("downloadDir")),
        ))

    def add(self, source):
        self._check_source(source)
        if isinstance(source, MagnetSource):
            torrent = source.uri.strip()
        elif source.path:
            torrent = pathlib.Path(source.path)
        else:
            torrent = source.data
        kwargs = {}
        if self.remote_download_dir:
            kwargs["download_dir"] = self.remote_download_dir
        t = self._call("add_torrent", torrent, **kwargs)
        fields = dict(t.fields)
        if not normalize_info_hash(fields.get("hashString")):
            raise BackendError(details="Transmission did not return an info-hash")
        # The daemon answers before it has metadata; callers re-fetch by hash.
        return self._snapshot(fields)

    def list(self):
        return [self._snapshot(dict(t.fields)) for t in self._call("get_torrents", arguments=TRANSMISSION_FIELDS)]

    def get(self, info_hash):
        ih = normalize_info_hash(info_hash)
        if not ih:
            raise NotFound()
        try:
            t = self._call("get_torrent", ih, arguments=TRANSMISSION_FIELDS)
        except KeyError:
            raise NotFound()
        return self._snapshot(dict(t.fields))

    def remove(self, info_hash, delete_files=False):
        ih = self.get(info_hash).info_hash
        self._call("remove_torrent", ih, delete_data=bool(delete_files))
        self._forget_ready(ih)
        log.info("Removed torrent %s from Transmission (delete_files=%s)", ih, delete_files)

    def close(self):
        with self._c_lock:
            self._c = None


# --- Local ---
from session_manager import SessionManager, TorrentFailed


class LocalBackend(BaseBackend):
    name = "embedded"

    def __init__(self, download_dir, prefs=None, metadata_timeout=0, manager=None):
        super().__init__()
        self.download_dir = download_dir
        self.metadata_timeout = metadata_timeout or None
        self.m = manager or SessionManager(download_dir, prefs)

    def _snapshot(self, ih, h) -> TorrentHandle:
        s = h.status()
        files = ()
        total = 0
        if s.has_metadata:
            ti = h.torrent_file()
            if ti is not None:
                fs = ti.files()
                files = tuple(FileEntry.build(i, fs.file_path(i), fs.file_size(i)) for i in range(fs.num_files()))
                total = int(ti.total_size())
        downloaded = int(s.total_done)
        return self._latch_ready(TorrentHandle(
            id=ih,
            info_hash=ih,
            name=str(s.name) if s.name else None,
            total_size=total,
            downloaded_bytes=downloaded,
            download_rate_bps=int(s.download_payload_rate),
            upload_rate_bps=int(s.upload_payload_rate),
            peer_count=int(s.num_peers),
            files=files,
            ready=bool(s.has_metadata) and total > 0 and downloaded >= total,
            download_dir=str(s.save_path or self.download_dir),
        ))

    def add(self, source):
        self._check_source(source)
        try:
            if isinstance(source, MagnetSource):
                ih = self.m.add_magnet(source.uri.strip())
            else:
                ih = self.m.add_torrent_file(source.read())
        except ValueError as e:
            raise InvalidSource(details=str(e)) from e

        try:
            if not self.m.wait_for_metadata(ih, self.metadata_timeout):
                log.info("Torrent %s still fetching metadata after %ss", ih, self.metadata_timeout)
        except TorrentFailed as e:
            self.m.remove_torrent(ih)
            raise BackendError("Failed to add torrent", details=str(e)) from e
        except KeyError as e:
            raise BackendError("Failed to add torrent", details=f"{ih} was removed while fetching metadata") from e
        try:
            return self.get(ih)
        except NotFound as e:
            raise BackendError("Failed to add torrent", details=f"{ih} was removed while fetching metadata") from e

    def list(self):
        res = []
        for ih, h in self.m.tracked():
            try:
                if h.is_valid():
                    res.append(self._snapshot(ih, h))
            except RuntimeError as e:
                log.debug("Skipping torrent %s: %s", ih, e)
        return res

    def get(self, info_hash):
        ih = normalize_info_hash(info_hash)
        h = self.m.find_handle(ih) if ih else None
        if h is None:
            raise NotFound()
        try:
            return self._snapshot(ih, h)
        except RuntimeError as e:
            raise NotFound(details=str(e)) from e

    def remove(self, info_hash, delete_files=False):
        ih = normalize_info_hash(info_hash)
        if not ih or not self.m.remove_torrent(ih, delete_files):
            raise NotFound()
        self._forget_ready(ih)

    def close(self):
        self.m.shutdown()


def create_backend(settings: Dict[str, Any]) -> BaseBackend:
    """Build the backend selected by ``settings['backend']``."""
    kind = settings.get("backend")
    if kind == BACKEND_TRANSMISSION:
        return TransmissionBackend(
            settings["transmission_url"],
            settings.get("transmission_user"),
            settings.get("transmission_password"),
            download_dir=settings["download_dir"],
            remote_download_dir=settings.get("transmission_download_dir"),
            timeout=settings.get("transmission_timeout", 30),
        )
    if kind == BACKEND_EMBEDDED:
        return LocalBackend(
            settings["download_dir"],
            session_preferences(settings),
            metadata_timeout=settings.get("metadata_timeout", 0),
        )
    raise ValueError(f"Unknown torrent backend: {kind}")
